import subprocess
from unittest import mock

import pytest

from clustercache.agent import ANNOTATION_GC_MARK, AgentSettings, split_yaml
from clustercache.resource import ResourceKey, get_resource_key

DEPLOY_YAML = """apiVersion: apps/v1
kind: Deployment
metadata:
  name: guestbook
  namespace: default
---
apiVersion: v1
kind: Service
metadata:
  name: guestbook
"""


def _git_ok(*args, **kwargs):
    return subprocess.CompletedProcess(args[0], 0, stdout=b"abc123\n")


def _git_fail(*args, **kwargs):
    return subprocess.CompletedProcess(args[0], 128, stdout=b"fatal: not a git repository\n")


def test_split_yaml_multiple_documents():
    items = split_yaml(DEPLOY_YAML)
    assert [i["kind"] for i in items] == ["Deployment", "Service"]
    assert items[0]["metadata"]["namespace"] == "default"


def test_split_yaml_skips_empty_documents_and_accepts_bytes():
    items = split_yaml(b"---\n---\nkind: Pod\nmetadata:\n  name: p\n---\n")
    assert len(items) == 1
    assert items[0]["metadata"]["name"] == "p"


def test_split_yaml_json():
    items = split_yaml('{"apiVersion": "v1", "kind": "ConfigMap", "metadata": {"name": "cm"}}')
    assert items == [{"apiVersion": "v1", "kind": "ConfigMap", "metadata": {"name": "cm"}}]


def test_split_yaml_invalid():
    with pytest.raises(ValueError):
        split_yaml("kind: [unclosed")


def test_split_yaml_non_mapping():
    with pytest.raises(ValueError):
        split_yaml("- a\n- b\n")


def test_gc_mark_format_and_determinism():
    s = AgentSettings("/repo", ["."])
    key = ResourceKey("apps", "Deployment", "default", "guestbook")
    mark = s.get_gc_mark(key)
    assert mark.startswith("sha256.")
    assert len(mark) == len("sha256.") + 43
    assert "=" not in mark
    assert mark == AgentSettings("/repo", ["."]).get_gc_mark(key)


def test_gc_mark_ignores_namespace_but_not_name_or_repo():
    s = AgentSettings("/repo", ["."])
    a = ResourceKey("apps", "Deployment", "ns1", "guestbook")
    b = ResourceKey("apps", "Deployment", "ns2", "guestbook")
    c = ResourceKey("apps", "Deployment", "ns1", "other")
    assert s.get_gc_mark(a) == s.get_gc_mark(b)
    assert s.get_gc_mark(a) != s.get_gc_mark(c)
    assert s.get_gc_mark(a) != AgentSettings("/other", ["."]).get_gc_mark(a)
    assert s.get_gc_mark(a) != AgentSettings("/repo", ["app"]).get_gc_mark(a)


def test_default_paths():
    assert AgentSettings("/repo").paths == ["."]


def test_parse_manifests(tmp_path):
    (tmp_path / "apps").mkdir()
    (tmp_path / "apps" / "deploy.YAML").write_text(DEPLOY_YAML)
    (tmp_path / "apps" / "cm.json").write_text(
        '{"apiVersion": "v1", "kind": "ConfigMap", "metadata": {"name": "cm"}}'
    )
    (tmp_path / "README.txt").write_text("kind: [not yaml")
    s = AgentSettings(str(tmp_path), ["."])
    with mock.patch("clustercache.agent.subprocess.run", side_effect=_git_ok) as run:
        items, revision = s.parse_manifests()
    assert run.call_args.args[0] == ["git", "rev-parse", "HEAD"]
    assert run.call_args.kwargs["cwd"] == str(tmp_path)
    assert revision == "abc123\n"
    assert sorted(i["kind"] for i in items) == ["ConfigMap", "Deployment", "Service"]
    for item in items:
        annotations = item["metadata"]["annotations"]
        assert annotations[ANNOTATION_GC_MARK] == s.get_gc_mark(get_resource_key(item))


def test_parse_manifests_keeps_existing_annotations(tmp_path):
    (tmp_path / "a.yml").write_text(
        "apiVersion: v1\nkind: Pod\nmetadata:\n  name: p\n  annotations:\n    keep: 'yes'\n"
    )
    s = AgentSettings(str(tmp_path), ["a.yml"])
    with mock.patch("clustercache.agent.subprocess.run", side_effect=_git_ok):
        items, _ = s.parse_manifests()
    assert len(items) == 1
    assert items[0]["metadata"]["annotations"]["keep"] == "yes"
    assert ANNOTATION_GC_MARK in items[0]["metadata"]["annotations"]


def test_parse_manifests_selected_paths_only(tmp_path):
    (tmp_path / "one").mkdir()
    (tmp_path / "two").mkdir()
    (tmp_path / "one" / "a.yaml").write_text("kind: Pod\nmetadata:\n  name: a\n")
    (tmp_path / "two" / "b.yaml").write_text("kind: Pod\nmetadata:\n  name: b\n")
    s = AgentSettings(str(tmp_path), ["two"])
    with mock.patch("clustercache.agent.subprocess.run", side_effect=_git_ok):
        items, _ = s.parse_manifests()
    assert [i["metadata"]["name"] for i in items] == ["b"]


def test_parse_manifests_git_failure(tmp_path):
    s = AgentSettings(str(tmp_path))
    with mock.patch("clustercache.agent.subprocess.run", side_effect=_git_fail):
        with pytest.raises(RuntimeError, match="not a git repository"):
            s.parse_manifests()


def test_parse_manifests_bad_yaml(tmp_path):
    bad = tmp_path / "bad.yaml"
    bad.write_text("kind: [unclosed")
    s = AgentSettings(str(tmp_path))
    with mock.patch("clustercache.agent.subprocess.run", side_effect=_git_ok):
        with pytest.raises(ValueError, match="failed to parse"):
            s.parse_manifests()


def test_parse_manifests_missing_path(tmp_path):
    s = AgentSettings(str(tmp_path), ["missing"])
    with mock.patch("clustercache.agent.subprocess.run", side_effect=_git_ok):
        with pytest.raises(FileNotFoundError):
            s.parse_manifests()