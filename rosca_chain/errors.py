"""
Error taxonomy for the circle-state engine.

Every error carries a stable ``code`` plus structured fields so an
off-ledger caller can tell an ignorable duplicate contribution apart from
a user input bug or a stale ledger reference without parsing messages.
"""
from typing import Optional


class CircleError(Exception):
    """Base class for all circle engine errors."""

    code = "CIRCLE_ERROR"
    retryable = False

    def __init__(self, message: str, field: Optional[str] = None, **details):
        super().__init__(message)
        self.message = message
        self.field = field
        self.details = details

    def to_dict(self) -> dict:
        data = {
            'code': self.code,
            'message': self.message,
            'retryable': self.retryable,
        }
        if self.field is not None:
            data['field'] = self.field
        if self.details:
            data['details'] = dict(self.details)
        return data

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r}, field={self.field!r})"


class TransitionError(CircleError):
    """Raised by the transition engine when an operation cannot be applied."""
    code = "TRANSITION_ERROR"


class InvalidParameter(TransitionError):
    """Malformed creation or operation input. The caller must fix it."""
    code = "INVALID_PARAMETER"


class InvariantViolation(TransitionError):
    """
    A state (or a proposed next state) breaks a circle invariant.

    ``invariant`` names the rule that failed; subclasses below are the
    specific violations an operation can run into.
    """
    code = "INVARIANT_VIOLATION"

    def __init__(self, message: str, invariant: Optional[str] = None,
                 field: Optional[str] = None, **details):
        super().__init__(message, field=field, **details)
        self.invariant = invariant or self.code.lower()

    def to_dict(self) -> dict:
        data = super().to_dict()
        data['invariant'] = self.invariant
        return data


class DuplicateMember(InvariantViolation):
    code = "DUPLICATE_MEMBER"


class DuplicatePayoutRound(InvariantViolation):
    code = "DUPLICATE_PAYOUT_ROUND"


class PayoutRoundOutOfRange(InvariantViolation):
    code = "PAYOUT_ROUND_OUT_OF_RANGE"


class EnrollmentClosed(InvariantViolation):
    code = "ENROLLMENT_CLOSED"


class CircleFull(InvariantViolation):
    code = "CIRCLE_FULL"


class UnknownMember(InvariantViolation):
    code = "UNKNOWN_MEMBER"


class WrongAmount(InvariantViolation):
    code = "WRONG_AMOUNT"

    def __init__(self, expected: int, got: int):
        super().__init__(
            f"Invalid contribution amount. Expected: {expected}, Got: {got}",
            field='amount',
            expected=expected,
            got=got,
        )
        self.expected = expected
        self.got = got


class DuplicateContribution(InvariantViolation):
    """Member already contributed this round. Callers may treat it as a no-op."""
    code = "DUPLICATE_CONTRIBUTION"
    ignorable = True


class CircleComplete(InvariantViolation):
    code = "CIRCLE_COMPLETE"


class DecodeError(CircleError):
    """Encoded state bytes are truncated, padded or out of range."""
    code = "DECODE_ERROR"

    def __init__(self, message: str, field: Optional[str] = None,
                 offset: Optional[int] = None):
        super().__init__(message, field=field, offset=offset)
        self.offset = offset


class ChainError(CircleError):
    """
    A state does not correctly supersede its predecessor.

    ``retryable`` is set for stale references: re-fetch the current state
    and recompute the transition. Forged or skipped predecessors are not
    retryable.
    """
    code = "CHAIN_ERROR"

    def __init__(self, message: str, reason: str = "broken_link",
                 retryable: bool = False, field: Optional[str] = None, **details):
        super().__init__(message, field=field, reason=reason, **details)
        self.reason = reason
        self.retryable = retryable


class AcceptanceRejected(CircleError):
    """The acceptance predicate refused to commit a proposed transition."""
    code = "ACCEPTANCE_REJECTED"

    def __init__(self, message: str, reason: str = "rejected", **details):
        super().__init__(message, reason=reason, **details)
        self.reason = reason
