"""Interactive shell for kube-sync."""

from .action import ShellAction

__all__ = ["ShellAction"]
