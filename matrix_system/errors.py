# matrix_system/errors.py
"""
Matrix engine exceptions.

Structural errors reject the single mutation attempted; none of them abort
a running period cycle. DuplicateEvent and PeriodAlreadySettled are absorbed
by the services and only logged.
"""


class MatrixError(Exception):
    """Base class for engine errors."""
    pass


class InvalidParent(MatrixError):
    """Parent does not exist or the new member would exceed max tree depth."""
    pass


class CycleDetected(MatrixError):
    """A parent chain revisits a member (corrupted tree)."""
    pass


class UnknownMember(MatrixError):
    """Referenced member does not exist."""
    pass


class InvalidSubscriptionStatus(MatrixError):
    """Subscription status outside active / past_due / canceled."""
    pass


class InvalidSupportAction(MatrixError):
    """Unknown support action type."""
    pass


class DuplicateEvent(MatrixError):
    """Event key was already processed."""

    def __init__(self, eventKey: str, resultRef=None):
        super().__init__(f"Event '{eventKey}' already processed")
        self.eventKey = eventKey
        self.resultRef = resultRef


class PeriodAlreadySettled(MatrixError):
    """Settlement or recording attempted against a settled period."""
    pass


class RankConfigurationError(MatrixError):
    """Rank ladder is invalid or a member references a missing rank. Fatal for that member."""
    pass


class LedgerIntegrityError(MatrixError):
    """Attempted mutation of an immutable snapshot or ledger row."""
    pass
