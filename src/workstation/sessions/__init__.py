"""Session models, registry and subprocess supervision."""

from .models import DirtyFile, GitState, Session, SessionRole, Step, StepStatus, Task
from .registry import Activity, SessionRegistry

__all__ = [
    "Activity",
    "DirtyFile",
    "GitState",
    "Session",
    "SessionRegistry",
    "SessionRole",
    "Step",
    "StepStatus",
    "Task",
]
