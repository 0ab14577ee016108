"""Exception hierarchy for the price updater.

Only :class:`ConfigInvalid` is fatal; it is raised while loading the
configuration document, before any loop starts. Everything else is raised
inside a polling cycle, logged, and the affected batch returns to idle.
"""


class UpdaterError(Exception):
    """Base exception for updater errors."""

    pass


class ConfigInvalid(UpdaterError):
    """Raised when the configuration document is malformed.

    Covers malformed rationals, zero divisors, unknown batch references and
    missing required fields.
    """

    pass


class EndpointFailure(UpdaterError):
    """Raised when every price endpoint failed for a cycle.

    :ivar errors: Mapping of endpoint name to the error it produced.
    """

    def __init__(self, errors: dict[str, str]):
        """Initialize the failure.

        :param errors: Endpoint name to error description.
        """
        self.errors = errors
        detail = ", ".join(f"{name}: {err}" for name, err in errors.items())
        super().__init__(f"All price endpoints failed ({detail or 'none configured'})")


class RpcFailure(UpdaterError):
    """Raised when a chain read, call or send fails."""

    pass


class SubmissionRejected(RpcFailure):
    """Raised when the chain rejects a transaction (nonce, fee too low, revert)."""

    pass
