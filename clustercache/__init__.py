"""Lightweight Kubernetes cluster cache of resource references and ownership."""

__version__ = "0.1.0"

__all__ = ["agent", "cluster", "kubectl", "references", "resource", "settings"]