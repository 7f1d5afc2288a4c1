"""Exceptions raised at the FleetSync validation boundary."""


class FleetSyncError(Exception):
    """Base class for FleetSync errors."""


class UnrecognizedStatus(FleetSyncError, ValueError):
    """An external status or step-type token is not in the known set."""

    def __init__(self, token: str, kind: str = "status"):
        self.token = token
        self.kind = kind
        super().__init__(f"Unrecognized {kind} token: {token!r}")


class InvalidArgument(FleetSyncError, ValueError):
    """A caller-supplied argument is rejected before anything is applied."""
