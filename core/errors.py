"""
Exception hierarchy shared by the orchestrator, the marathon state machine
and the collaborator implementations.
"""


class CommandPilotError(Exception):
    """Base exception for all CommandPilot failures."""
    pass


class InvalidCommandError(CommandPilotError):
    """Raised when a command carries no symbol or no task description."""
    pass


class StepTimeoutError(CommandPilotError):
    """Raised when an external collaborator call exceeds its time budget."""
    pass


class SessionClosedError(CommandPilotError):
    """Raised when a finalised session is mutated."""
    pass


class CapabilityError(CommandPilotError):
    """Raised by an integration dispatch that could not be served."""
    pass


class CapabilityDisabledError(CapabilityError):
    pass


class CapabilityNotRegisteredError(CapabilityError):
    pass


class MarathonError(CommandPilotError):
    """Base exception for marathon lifecycle failures."""
    pass


class MarathonTransitionError(MarathonError):
    """Raised when an event is not legal in the current marathon status."""
    pass


class MarathonAlreadyActiveError(MarathonTransitionError):
    """Raised when starting a task while another one is still active."""
    pass


class NoActiveMarathonError(MarathonTransitionError):
    pass


class CheckpointNotFoundError(MarathonError):
    pass
