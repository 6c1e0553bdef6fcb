"""Exceptions raised by the AgentDispatch core."""

from __future__ import annotations

from typing import Iterable


class AgentDispatchError(Exception):
    """Base exception for AgentDispatch errors."""


class NotFoundError(AgentDispatchError):
    """Raised when a referenced record does not exist."""

    kind = "Record"

    def __init__(self, identifier: str, scope: str | None = None):
        self.identifier = identifier
        self.scope = scope
        message = f"{self.kind} {identifier} not found"
        if scope:
            message += f" in project {scope}"
        super().__init__(message)


class WorkItemNotFoundError(NotFoundError):
    kind = "Work item"


class ProjectNotFoundError(NotFoundError):
    kind = "Project"


class SessionNotFoundError(NotFoundError):
    kind = "Agent session"


class InvalidTransitionError(AgentDispatchError):
    """Raised when a work item is asked to move along an edge that does not exist."""

    def __init__(self, item_id: str, current: str, required: Iterable[str] | str):
        self.item_id = item_id
        self.current = current
        if isinstance(required, str):
            required = [required]
        self.required = sorted(required)
        super().__init__(
            f"Work item {item_id} is {current}; "
            f"operation requires status in {{{', '.join(self.required)}}}"
        )


class StorageIOError(AgentDispatchError):
    """Raised when the persistence backend fails to read or write.

    The operation that triggered it is considered not applied.
    """


class ConfirmationRequiredError(AgentDispatchError):
    """Raised when a destructive operation is invoked without explicit confirmation."""


class LaunchError(AgentDispatchError):
    """Raised when a provisioned session cannot be handed to its agent."""
