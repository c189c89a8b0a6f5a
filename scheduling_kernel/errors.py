"""Kernel exception hierarchy."""


class SchedulingKernelError(Exception):
    """Base class for errors raised by the scheduling kernel."""
    pass


class AuditStorageError(SchedulingKernelError):
    """Raised when the audit store cannot be written or read."""
    pass


class DecisionNotRecorded(SchedulingKernelError):
    """
    Raised by the orchestrator when a decision could not be audited.
    The decision is not considered taken and nothing may be sent for it.
    """

    def __init__(self, message_id: str, cause: str):
        super().__init__(f"Decision for message {message_id} was not recorded: {cause}")
        self.message_id = message_id
        self.cause = cause


class AuditEntryNotFound(SchedulingKernelError):
    """Raised when an override or lookup targets an unknown audit entry."""

    def __init__(self, entry_id: str):
        super().__init__(f"Audit entry not found: {entry_id}")
        self.entry_id = entry_id


class OverrideWindowExpired(SchedulingKernelError):
    """Raised when an override targets an entry older than the override window."""

    def __init__(self, entry_id: str, window_hours: float):
        super().__init__(
            f"Audit entry {entry_id} is older than the {window_hours:g}h override window"
        )
        self.entry_id = entry_id
        self.window_hours = window_hours


class InvalidPreferences(SchedulingKernelError):
    """Raised when a settings update fails validation."""
    pass


class CollaboratorFailure(SchedulingKernelError):
    """An external collaborator failed or timed out."""

    def __init__(self, collaborator: str, cause: str):
        super().__init__(f"{collaborator} failed: {cause}")
        self.collaborator = collaborator
        self.cause = cause
