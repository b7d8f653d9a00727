"""ClawDeploy instance orchestration core."""

from .config import DeployerConfig
from .lifecycle import LifecycleTools
from .logging_manager import LoggingManager, audit_log
from .simple_models import Instance, InstanceStatus, Task, TaskStatus, TaskType
from .task_queue import TaskQueueProcessor, enqueue_task

__all__ = [
    "DeployerConfig",
    "Instance",
    "InstanceStatus",
    "LifecycleTools",
    "LoggingManager",
    "Task",
    "TaskQueueProcessor",
    "TaskStatus",
    "TaskType",
    "audit_log",
    "enqueue_task",
]
