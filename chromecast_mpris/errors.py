"""Failure taxonomy shared by the state machine and its collaborators."""


class BridgeError(Exception):
    """Base class for bridge errors."""


class RequestTimeout(BridgeError):
    """A request to a collaborator did not complete in time."""


class OperationError(BridgeError):
    """A collaborator reported an explicit failure."""


class UnsolicitedClose(BridgeError):
    """A previously healthy channel closed without being asked to."""
