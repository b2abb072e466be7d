"""
Circle state model and its invariant checker.

A CircleState is an immutable snapshot. Transitions never mutate it; they
build a new value with dataclasses.replace and run validate() on it before
handing it back.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from .crypto import PUBKEY_LENGTH, HASH_LENGTH, CIRCLE_ID_LENGTH, COMPRESSED_PREFIXES
from .errors import (
    InvariantViolation,
    DuplicateMember,
    DuplicatePayoutRound,
    PayoutRoundOutOfRange,
    CircleFull,
    DuplicateContribution,
    WrongAmount,
)

ZERO_HASH = b'\x00' * HASH_LENGTH
MIN_MEMBER_CAPACITY = 2


class CirclePhase(Enum):
    OPEN = "open"
    ACTIVE = "active"
    COMPLETE = "complete"


@dataclass(frozen=True)
class ContributionRecord:
    """Record of a single contribution."""
    round: int
    amount: int
    timestamp: int
    tx_reference: bytes

    def to_dict(self) -> dict:
        return {
            'round': self.round,
            'amount': self.amount,
            'timestamp': self.timestamp,
            'tx_reference': self.tx_reference.hex(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'ContributionRecord':
        return cls(
            round=int(data['round']),
            amount=int(data['amount']),
            timestamp=int(data['timestamp']),
            tx_reference=bytes.fromhex(data['tx_reference']),
        )


@dataclass(frozen=True)
class Member:
    """A circle member. Owned by its CircleState, no lifecycle of its own."""
    pubkey: bytes
    payout_round: int
    joined_at: int
    has_received_payout: bool = False
    contribution_history: tuple[ContributionRecord, ...] = ()

    def contribution_for(self, round_number: int) -> Optional[ContributionRecord]:
        for record in self.contribution_history:
            if record.round == round_number:
                return record
        return None

    def has_contributed(self, round_number: int) -> bool:
        return self.contribution_for(round_number) is not None

    def to_dict(self) -> dict:
        return {
            'pubkey': self.pubkey.hex(),
            'payout_round': self.payout_round,
            'joined_at': self.joined_at,
            'has_received_payout': self.has_received_payout,
            'contribution_history': [c.to_dict() for c in self.contribution_history],
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'Member':
        return cls(
            pubkey=bytes.fromhex(data['pubkey']),
            payout_round=int(data['payout_round']),
            joined_at=int(data['joined_at']),
            has_received_payout=bool(data['has_received_payout']),
            contribution_history=tuple(
                ContributionRecord.from_dict(c) for c in data.get('contribution_history', [])
            ),
        )


@dataclass(frozen=True)
class CircleState:
    """
    The state of a savings circle as committed on the ledger.

    ``members`` is in insertion order, which is also the rotation order.
    ``member_capacity`` equals the number of rounds and never changes.
    """
    circle_id: bytes
    contribution_per_round: int
    round_duration: int
    member_capacity: int
    created_at: int
    round_started_at: int
    current_round: int = 0
    current_payout_index: int = 0
    current_pool: int = 0
    is_complete: bool = False
    members: tuple[Member, ...] = field(default_factory=tuple)
    prev_state_hash: bytes = ZERO_HASH

    @property
    def phase(self) -> CirclePhase:
        if self.is_complete:
            return CirclePhase.COMPLETE
        if self.current_round == 0:
            return CirclePhase.OPEN
        return CirclePhase.ACTIVE

    @property
    def is_genesis(self) -> bool:
        return self.prev_state_hash == ZERO_HASH

    @property
    def is_full(self) -> bool:
        return len(self.members) >= self.member_capacity

    @property
    def enrollment_open(self) -> bool:
        return self.current_round == 0 and not self.is_full and not self.is_complete

    @property
    def payee(self) -> Optional[Member]:
        """The member paid when the current round completes."""
        return self.member_for_round(self.current_round)

    def member_for_round(self, round_number: int) -> Optional[Member]:
        for member in self.members:
            if member.payout_round == round_number:
                return member
        return None

    def find_member(self, pubkey: bytes) -> Optional[int]:
        """Index of the member holding ``pubkey``, or None."""
        for index, member in enumerate(self.members):
            if member.pubkey == pubkey:
                return index
        return None

    def contributors(self, round_number: Optional[int] = None) -> list[Member]:
        if round_number is None:
            round_number = self.current_round
        return [m for m in self.members if m.has_contributed(round_number)]

    def pending_contributors(self) -> list[Member]:
        """Non-payee members who still owe a contribution this round."""
        if self.is_complete:
            return []
        return [
            m for m in self.members
            if m.payout_round != self.current_round and not m.has_contributed(self.current_round)
        ]

    @property
    def round_deadline(self) -> int:
        return self.round_started_at + self.round_duration

    def to_dict(self) -> dict:
        """Convert to dict for display and JSON storage."""
        return {
            'circle_id': self.circle_id.hex(),
            'contribution_per_round': self.contribution_per_round,
            'round_duration': self.round_duration,
            'member_capacity': self.member_capacity,
            'created_at': self.created_at,
            'round_started_at': self.round_started_at,
            'current_round': self.current_round,
            'current_payout_index': self.current_payout_index,
            'current_pool': self.current_pool,
            'is_complete': self.is_complete,
            'phase': self.phase.value,
            'members': [m.to_dict() for m in self.members],
            'prev_state_hash': self.prev_state_hash.hex(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'CircleState':
        return cls(
            circle_id=bytes.fromhex(data['circle_id']),
            contribution_per_round=int(data['contribution_per_round']),
            round_duration=int(data['round_duration']),
            member_capacity=int(data['member_capacity']),
            created_at=int(data['created_at']),
            round_started_at=int(data['round_started_at']),
            current_round=int(data['current_round']),
            current_payout_index=int(data['current_payout_index']),
            current_pool=int(data['current_pool']),
            is_complete=bool(data['is_complete']),
            members=tuple(Member.from_dict(m) for m in data['members']),
            prev_state_hash=bytes.fromhex(data['prev_state_hash']),
        )

    def validate(self):
        validate(self)

    def __repr__(self) -> str:
        return (
            f"CircleState("
            f"id={self.circle_id.hex()[:16]}, "
            f"members={len(self.members)}/{self.member_capacity}, "
            f"round={self.current_round}, "
            f"pool={self.current_pool}, "
            f"phase={self.phase.value})"
        )


def next_claimed_round(members: tuple[Member, ...], after: int, capacity: int) -> int:
    """
    First round after ``after`` that some member is paid in.

    Enrollment is closed once round 0 completes, so unclaimed rounds have
    nobody to pay and are skipped. Returns ``capacity`` when none remain.
    """
    claimed = {m.payout_round for m in members}
    candidate = after + 1
    while candidate < capacity and candidate not in claimed:
        candidate += 1
    return candidate


def round_settled(members: tuple[Member, ...], round_number: int) -> bool:
    """True once every member not paid in ``round_number`` has contributed to it."""
    non_payees = [m for m in members if m.payout_round != round_number]
    return bool(non_payees) and all(m.has_contributed(round_number) for m in non_payees)


def _fail(message: str, invariant: str, field: Optional[str] = None, **details):
    raise InvariantViolation(message, invariant=invariant, field=field, **details)


def validate(state: CircleState):
    """
    Check every invariant of a committed circle state.

    Raises InvariantViolation (or one of its subclasses) naming the rule
    and field that failed. Returns None when the state is consistent.
    """
    # Static shape
    if len(state.circle_id) != CIRCLE_ID_LENGTH:
        _fail("circle_id must be 32 bytes", 'circle_id_length', 'circle_id')
    if len(state.prev_state_hash) != HASH_LENGTH:
        _fail("prev_state_hash must be 32 bytes", 'hash_length', 'prev_state_hash')
    if state.contribution_per_round <= 0:
        _fail("contribution_per_round must be positive", 'positive_contribution',
              'contribution_per_round')
    if state.round_duration <= 0:
        _fail("round_duration must be positive", 'positive_duration', 'round_duration')
    if state.member_capacity < MIN_MEMBER_CAPACITY:
        _fail(f"member_capacity must be at least {MIN_MEMBER_CAPACITY}",
              'minimum_capacity', 'member_capacity')

    # Membership
    if not state.members:
        _fail("Circle has no members", 'members_non_empty', 'members')
    if len(state.members) > state.member_capacity:
        raise CircleFull(
            f"{len(state.members)} members exceed capacity {state.member_capacity}",
            invariant='capacity', field='members',
        )

    pubkeys = set()
    payout_rounds = set()
    for index, member in enumerate(state.members):
        if len(member.pubkey) != PUBKEY_LENGTH or member.pubkey[0] not in COMPRESSED_PREFIXES:
            _fail("Member pubkey must be a 33-byte compressed point", 'pubkey_format',
                  'members.pubkey', index=index)
        if member.pubkey in pubkeys:
            raise DuplicateMember("Member already exists", invariant='unique_pubkey',
                                  field='members.pubkey', index=index)
        pubkeys.add(member.pubkey)

        if not 0 <= member.payout_round < state.member_capacity:
            raise PayoutRoundOutOfRange(
                f"Payout round {member.payout_round} outside [0, {state.member_capacity})",
                invariant='payout_round_range', field='members.payout_round', index=index,
            )
        if member.payout_round in payout_rounds:
            raise DuplicatePayoutRound(
                f"Payout round {member.payout_round} claimed twice",
                invariant='unique_payout_round', field='members.payout_round', index=index,
            )
        payout_rounds.add(member.payout_round)

        # Payouts happen strictly in round order
        paid_expected = member.payout_round < state.current_round
        if member.has_received_payout != paid_expected:
            _fail(
                "Payout flag disagrees with the current round",
                'payout_order', 'members.has_received_payout',
                index=index, payout_round=member.payout_round,
                current_round=state.current_round,
            )

        rounds_seen = set()
        for record in member.contribution_history:
            if record.round in rounds_seen:
                raise DuplicateContribution(
                    f"Duplicate contribution for round {record.round}",
                    invariant='unique_contribution_round',
                    field='members.contribution_history', index=index,
                )
            rounds_seen.add(record.round)
            if record.round > state.current_round or record.round >= state.member_capacity:
                _fail("Contribution recorded for a future round", 'contribution_round',
                      'members.contribution_history', index=index, round=record.round)
            if record.amount != state.contribution_per_round:
                raise WrongAmount(state.contribution_per_round, record.amount)
            if len(record.tx_reference) != HASH_LENGTH:
                _fail("tx_reference must be 32 bytes", 'hash_length',
                      'members.contribution_history.tx_reference', index=index)

    # Rounds and completion
    if state.current_round > state.member_capacity:
        _fail(
            f"Current round ({state.current_round}) exceeds total rounds ({state.member_capacity})",
            'round_range', 'current_round',
        )
    all_paid = all(m.has_received_payout for m in state.members)
    if state.is_complete != all_paid:
        _fail("is_complete must be set exactly when every member was paid",
              'completion', 'is_complete')
    if state.current_round == state.member_capacity and not state.is_complete:
        _fail("Circle ran out of rounds without completing", 'completion', 'is_complete')

    if state.is_complete:
        if state.current_payout_index != 0:
            _fail("Completed circle must reset the payout index", 'payout_index',
                  'current_payout_index')
    else:
        if not 0 <= state.current_payout_index < len(state.members):
            _fail(
                f"Invalid payout index ({state.current_payout_index}), must be < {len(state.members)}",
                'payout_index', 'current_payout_index',
            )
        if state.members[state.current_payout_index].payout_round != state.current_round:
            _fail("Payout index does not point at the current round's payee",
                  'payout_index', 'current_payout_index')

    # Pool
    expected_pool = sum(
        record.amount
        for member in state.members
        for record in member.contribution_history
        if record.round == state.current_round
    )
    if state.current_pool != expected_pool:
        _fail(
            f"Current pool mismatch. Expected: {expected_pool}, Got: {state.current_pool}",
            'pool_balance', 'current_pool', expected=expected_pool, got=state.current_pool,
        )

    if state.round_started_at < state.created_at:
        _fail("Round cannot start before the circle was created", 'timestamps',
              'round_started_at')
