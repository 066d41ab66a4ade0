"""Exception and warning types raised by the setsig package."""


class SetSigError(Exception):
    """Base class for setsig errors."""


class InvalidInputError(SetSigError, ValueError):
    """Raised when an input fails a precondition of an analysis function."""


class AllSetsDroppedError(SetSigError, ValueError):
    """Raised when no set passes the size filter in every contrast."""


class DroppedSetsWarning(UserWarning):
    """Emitted when some, but not all, sets are dropped by the size filter."""
