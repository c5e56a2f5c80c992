class GateError(Exception):
    """Base class for access-gate errors."""


class StoreUnavailable(GateError):
    """A record store could not be reached. Transient."""


class InvalidIdentity(GateError, ValueError):
    """The player identity is malformed. Permanent, caller error."""


class InvalidTransition(GateError):
    """A verification status change outside the allowed lifecycle."""

    def __init__(self, identity: str, from_status, to_status):
        self.identity = identity
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"{identity}: illegal verification transition {from_status} -> {to_status}"
        )


class FetchError(GateError):
    """The reputation source failed. Transient, recovered locally."""


class FetchTimeout(FetchError):
    pass


class FetchFailure(FetchError):
    pass
