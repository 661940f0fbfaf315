"""Task tracking module for kube-sync.

This module tracks the long running reconciliation loop of each Application
so that the controller can cancel one loop when its Application is deleted
and every loop on shutdown.
"""

from .context import get_task_service
from .service import TaskService

__all__ = ["get_task_service", "TaskService"]
