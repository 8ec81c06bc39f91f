from .execution import ExecutionCommands
from .sessions import SessionCommands
from .workspace import WorkspaceCommands

__all__ = ["ExecutionCommands", "SessionCommands", "WorkspaceCommands"]
