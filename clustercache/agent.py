"""GitOps agent helpers: load manifests from a Git work tree and mark them for pruning."""

from __future__ import annotations

import base64
import hashlib
import os
import subprocess
from collections.abc import Iterator, MutableMapping
from dataclasses import dataclass, field
from typing import Any, Union

import yaml

from clustercache.resource import ResourceKey, get_resource_key

ANNOTATION_GC_MARK = "gitops-agent.argoproj.io/gc-mark"
MANIFEST_EXTENSIONS = frozenset({".json", ".yml", ".yaml"})

Manifest = MutableMapping[str, Any]


def split_yaml(data: Union[str, bytes]) -> list[Manifest]:
    """Split a multi-document YAML (or JSON) text into manifests.

    Empty documents are skipped. Raises ValueError if the text cannot be
    parsed or a document is not a mapping.
    """
    if isinstance(data, bytes):
        data = data.decode("utf-8")
    try:
        documents = list(yaml.safe_load_all(data))
    except yaml.YAMLError as err:
        raise ValueError(str(err)) from err
    manifests: list[Manifest] = []
    for doc in documents:
        if doc is None:
            continue
        if not isinstance(doc, dict):
            raise ValueError(f"document is not an object: {doc!r}")
        if not doc:
            continue
        manifests.append(doc)
    return manifests


def _extension(name: str) -> str:
    dot = name.rfind(".")
    return name[dot:].lower() if dot >= 0 else ""


def _walk_files(root: str) -> Iterator[str]:
    """Yield every file below ``root`` in lexical order; ``root`` may be a file."""
    if not os.path.isdir(root):
        os.stat(root)  # raises if the path does not exist
        yield root
        return
    for name in sorted(os.listdir(root)):
        path = os.path.join(root, name)
        if os.path.isdir(path):
            yield from _walk_files(path)
        else:
            yield path


@dataclass
class AgentSettings:
    """Location of the manifests the agent applies."""

    repo_path: str
    paths: list[str] = field(default_factory=lambda: ["."])

    def get_gc_mark(self, key: ResourceKey) -> str:
        """Return the mark identifying resources created from this repository."""
        digest = hashlib.sha256()
        digest.update(f"{self.repo_path}/{','.join(self.paths)}".encode())
        digest.update("/".join([key.group, key.kind, key.name]).encode())
        encoded = base64.urlsafe_b64encode(digest.digest()).rstrip(b"=").decode("ascii")
        return "sha256." + encoded

    def parse_manifests(self) -> tuple[list[Manifest], str]:
        """Load every JSON and YAML manifest under the configured paths.

        Each manifest gets the garbage-collection mark annotation. Returns
        the manifests and the output of ``git rev-parse HEAD``.
        """
        proc = subprocess.run(
            ["git", "rev-parse", "HEAD"],
            cwd=self.repo_path,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            check=False,
        )
        output = proc.stdout.decode("utf-8", errors="replace") if proc.stdout else ""
        if proc.returncode != 0:
            raise RuntimeError(
                output.strip() or f"git rev-parse HEAD exited with status {proc.returncode}"
            )

        manifests: list[Manifest] = []
        for path in self.paths:
            for file_path in _walk_files(os.path.join(self.repo_path, path)):
                if _extension(os.path.basename(file_path)) not in MANIFEST_EXTENSIONS:
                    continue
                with open(file_path, "rb") as fh:
                    data = fh.read()
                try:
                    manifests.extend(split_yaml(data))
                except ValueError as err:
                    raise ValueError(f"failed to parse {file_path}: {err}") from err

        for manifest in manifests:
            metadata = manifest.get("metadata")
            if not isinstance(metadata, dict):
                metadata = {}
                manifest["metadata"] = metadata
            annotations = metadata.get("annotations")
            if not isinstance(annotations, dict):
                annotations = {}
                metadata["annotations"] = annotations
            annotations[ANNOTATION_GC_MARK] = self.get_gc_mark(get_resource_key(manifest))
        return manifests, output