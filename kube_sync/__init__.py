"""Kube-sync reconciles Applications declared in git into Kubernetes clusters."""

__all__ = [
    "manifest",
    "controller",
    "reconciler",
    "diff",
    "kustomize",
    "source",
    "cluster",
    "store",
    "exceptions",
    # Note this is exposed for CLI documentation, not to be used as a library
    "tool",
]
