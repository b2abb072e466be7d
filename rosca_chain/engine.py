"""
Pure transition functions over circle state.

Each function takes an immutable CircleState and returns a new one, or
raises a TransitionError subclass and leaves the input untouched. The
result is validated before it is returned, and every non-genesis result
links to its input through prev_state_hash.
"""
import logging
from dataclasses import dataclass, replace
from typing import Optional

from .chain import state_hash
from .crypto import (
    PUBKEY_LENGTH,
    HASH_LENGTH,
    CIRCLE_ID_LENGTH,
    is_valid_public_key,
    random_circle_id,
)
from .errors import (
    InvalidParameter,
    DuplicateMember,
    DuplicatePayoutRound,
    PayoutRoundOutOfRange,
    EnrollmentClosed,
    CircleFull,
    UnknownMember,
    WrongAmount,
    DuplicateContribution,
    CircleComplete,
)
from .operations import CreateCircle, AddMember, RecordContribution
from .state import (
    CircleState,
    Member,
    ContributionRecord,
    ZERO_HASH,
    MIN_MEMBER_CAPACITY,
    next_claimed_round,
    round_settled,
    validate,
)

logger = logging.getLogger(__name__)

_U32_MAX = 2**32 - 1
_U64_MAX = 2**64 - 1


@dataclass(frozen=True)
class Payout:
    """A pool disbursement performed by a transition."""
    recipient: bytes
    amount: int
    round: int


def _require_uint(value, name: str, limit: int = _U64_MAX, positive: bool = False):
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidParameter(f"{name} must be an integer", field=name)
    if value < 0 or value > limit:
        raise InvalidParameter(f"{name} out of range", field=name, value=value)
    if positive and value == 0:
        raise InvalidParameter(f"{name} must be positive", field=name)


def _require_pubkey(pubkey, name: str):
    if not isinstance(pubkey, (bytes, bytearray)) or len(pubkey) != PUBKEY_LENGTH:
        raise InvalidParameter(f"{name} must be {PUBKEY_LENGTH} bytes", field=name)
    if not is_valid_public_key(bytes(pubkey)):
        raise InvalidParameter(f"{name} is not a valid compressed point", field=name)


def create_circle(contribution_per_round: int,
                  round_duration: int,
                  created_at: int,
                  founder_pubkey: bytes,
                  member_capacity: int,
                  circle_id: Optional[bytes] = None) -> CircleState:
    """
    Build the genesis state of a new circle.

    The founder is the only member and is paid in round 0. A random
    circle_id is drawn when none is supplied.
    """
    _require_uint(contribution_per_round, 'contribution_per_round', positive=True)
    _require_uint(round_duration, 'round_duration', positive=True)
    _require_uint(created_at, 'created_at')
    _require_uint(member_capacity, 'member_capacity', limit=_U32_MAX)
    if member_capacity < MIN_MEMBER_CAPACITY:
        raise InvalidParameter(
            f"member_capacity must be at least {MIN_MEMBER_CAPACITY}, got {member_capacity}",
            field='member_capacity',
        )
    _require_pubkey(founder_pubkey, 'founder_pubkey')

    if circle_id is None:
        circle_id = random_circle_id()
    elif not isinstance(circle_id, (bytes, bytearray)) or len(circle_id) != CIRCLE_ID_LENGTH:
        raise InvalidParameter("circle_id must be 32 bytes", field='circle_id')

    founder = Member(
        pubkey=bytes(founder_pubkey),
        payout_round=0,
        joined_at=created_at,
    )
    state = CircleState(
        circle_id=bytes(circle_id),
        contribution_per_round=contribution_per_round,
        round_duration=round_duration,
        member_capacity=member_capacity,
        created_at=created_at,
        round_started_at=created_at,
        members=(founder,),
        prev_state_hash=ZERO_HASH,
    )
    validate(state)
    return state


def add_member(state: CircleState, new_pubkey: bytes, payout_round: int,
               joined_at: int) -> CircleState:
    """Enroll a member. Only allowed before the first round completes."""
    validate(state)

    if state.is_complete:
        raise CircleComplete("Circle is already complete", field='is_complete')
    if state.current_round > 0:
        raise EnrollmentClosed(
            "Cannot add members after circle has started",
            field='current_round', current_round=state.current_round,
        )
    if state.is_full:
        raise CircleFull(
            f"Circle already has {len(state.members)} of {state.member_capacity} members",
            field='members', capacity=state.member_capacity,
        )

    _require_pubkey(new_pubkey, 'new_pubkey')
    _require_uint(payout_round, 'payout_round', limit=_U32_MAX)
    _require_uint(joined_at, 'joined_at')
    new_pubkey = bytes(new_pubkey)

    if state.find_member(new_pubkey) is not None:
        raise DuplicateMember("Member already exists", field='new_pubkey',
                              pubkey=new_pubkey.hex())
    if payout_round >= state.member_capacity:
        raise PayoutRoundOutOfRange(
            f"Payout round {payout_round} outside [0, {state.member_capacity})",
            field='payout_round', payout_round=payout_round,
            capacity=state.member_capacity,
        )
    if state.member_for_round(payout_round) is not None:
        raise DuplicatePayoutRound(
            f"Payout round {payout_round} is already claimed",
            field='payout_round', payout_round=payout_round,
        )

    member = Member(pubkey=new_pubkey, payout_round=payout_round, joined_at=joined_at)
    next_state = replace(
        state,
        members=state.members + (member,),
        prev_state_hash=state_hash(state),
    )
    validate(next_state)
    return next_state


def record_contribution(state: CircleState, contributor_pubkey: bytes, amount: int,
                        timestamp: int, tx_reference: bytes) -> CircleState:
    """
    Record one member's contribution for the current round.

    Once every enrolled member other than the round's payee has
    contributed, the payee is paid the pool and the circle moves to the
    next round (or completes).

    The payee is exempt but not barred: a contribution from the payee is
    recorded and added to the pool it is about to receive, and it never
    settles the round on its own.
    """
    validate(state)

    if state.is_complete:
        raise CircleComplete("Circle is already complete", field='is_complete')

    index = state.find_member(bytes(contributor_pubkey)) \
        if isinstance(contributor_pubkey, (bytes, bytearray)) else None
    if index is None:
        raise UnknownMember("Member not found", field='contributor_pubkey')

    member = state.members[index]
    if member.has_contributed(state.current_round):
        raise DuplicateContribution(
            "Member already contributed this round",
            field='contributor_pubkey', round=state.current_round,
        )

    _require_uint(amount, 'amount')
    if amount != state.contribution_per_round:
        raise WrongAmount(state.contribution_per_round, amount)

    _require_uint(timestamp, 'timestamp')
    if not isinstance(tx_reference, (bytes, bytearray)) or len(tx_reference) != HASH_LENGTH:
        raise InvalidParameter("tx_reference must be 32 bytes", field='tx_reference')

    record = ContributionRecord(
        round=state.current_round,
        amount=amount,
        timestamp=timestamp,
        tx_reference=bytes(tx_reference),
    )
    members = list(state.members)
    members[index] = replace(member, contribution_history=member.contribution_history + (record,))
    members = tuple(members)

    updates = {
        'members': members,
        'current_pool': state.current_pool + amount,
        'prev_state_hash': state_hash(state),
    }

    if round_settled(members, state.current_round):
        updates.update(_payout(state, members, updates['current_pool'], timestamp))

    next_state = replace(state, **updates)
    validate(next_state)
    return next_state


def _payout(state: CircleState, members: tuple[Member, ...], pool: int,
            timestamp: int) -> dict:
    payee_index = state.current_payout_index
    members = list(members)
    members[payee_index] = replace(members[payee_index], has_received_payout=True)
    members = tuple(members)

    logger.debug(
        f"Circle {state.circle_id.hex()[:16]} round {state.current_round}: "
        f"paying {pool} to {members[payee_index].pubkey.hex()[:16]}"
    )

    next_round = next_claimed_round(members, state.current_round, state.member_capacity)
    is_complete = all(m.has_received_payout for m in members)
    if is_complete:
        payout_index = 0
    else:
        payout_index = next(i for i, m in enumerate(members) if m.payout_round == next_round)

    return {
        'members': members,
        'current_pool': 0,
        'current_round': next_round,
        'current_payout_index': payout_index,
        'round_started_at': timestamp,
        'is_complete': is_complete,
    }


def apply(state: Optional[CircleState], operation) -> CircleState:
    """Apply an operation object to a state (``None`` for circle creation)."""
    if isinstance(operation, CreateCircle):
        if state is not None:
            raise InvalidParameter("CreateCircle cannot be applied to an existing circle",
                                   field='operation')
        return create_circle(
            contribution_per_round=operation.contribution_per_round,
            round_duration=operation.round_duration,
            created_at=operation.created_at,
            founder_pubkey=operation.founder_pubkey,
            member_capacity=operation.member_capacity,
            circle_id=operation.circle_id,
        )
    if state is None:
        raise InvalidParameter("Operation requires an existing circle", field='operation')
    if isinstance(operation, AddMember):
        return add_member(state, operation.pubkey, operation.payout_round, operation.joined_at)
    if isinstance(operation, RecordContribution):
        return record_contribution(
            state,
            operation.pubkey,
            operation.amount,
            operation.timestamp,
            operation.tx_reference,
        )
    raise InvalidParameter(f"Unknown operation: {type(operation).__name__}", field='operation')


def find_payout(prev: CircleState, next_state: CircleState) -> Optional[Payout]:
    """Report the payout a transition from ``prev`` to ``next_state`` made, if any."""
    if prev.is_complete or next_state.current_round == prev.current_round:
        return None
    payee = prev.payee
    if payee is None:
        return None
    amount = sum(
        record.amount
        for member in next_state.members
        for record in member.contribution_history
        if record.round == prev.current_round
    )
    return Payout(recipient=payee.pubkey, amount=amount, round=prev.current_round)
