"""Error types raised by the tracking engine."""


class TrackerError(Exception):
    """Base class for tracker errors."""


class ProtocolViolation(TrackerError):
    """The feed sent a frame that cannot belong to any subscribed account.

    Raised while handling a frame; the session closes its socket and
    resubscribes.
    """


class UnrecognisedTransition(TrackerError):
    """A position report matched none of the ledger transitions."""

    def __init__(self, symbol: str, status: str | None, bias: int | None):
        self.symbol = symbol
        self.status = status
        self.bias = bias
        super().__init__(
            f"Unrecognised transition for {symbol}: status={status}, bias={bias}"
        )
