"""
Chain linkage between successive circle states.

Each committed state names its predecessor through ``prev_state_hash``,
the SHA-256 of the predecessor's canonical bytes. Given only the new state
and the bytes held at the ledger output it consumes, a verifier can
confirm continuity without replaying the whole history.
"""
from typing import Iterable

from .codec import encode
from .crypto import sha256
from .errors import ChainError
from .state import CircleState, ZERO_HASH, next_claimed_round, round_settled


def state_hash(state: CircleState) -> bytes:
    """Calculate the hash of a state's canonical encoding."""
    return sha256(encode(state))


def bytes_hash(data: bytes) -> bytes:
    """Hash of already-encoded state bytes, as held by a ledger output."""
    return sha256(data)


def verify_genesis(state: CircleState):
    if state.prev_state_hash != ZERO_HASH:
        raise ChainError(
            "Genesis state must carry the zero predecessor hash",
            reason='genesis_with_predecessor',
            field='prev_state_hash',
        )


def verify_link(prev: CircleState, next_state: CircleState):
    """
    Check that ``next_state`` directly supersedes ``prev``.

    Raises ChainError for a state presented as genesis, for a different
    circle, or for a predecessor hash that does not match (skipped or
    forged predecessor).
    """
    if next_state.circle_id != prev.circle_id:
        raise ChainError("Circle ID mismatch", reason='circle_mismatch', field='circle_id')
    if next_state.prev_state_hash == ZERO_HASH:
        raise ChainError(
            "Genesis state cannot supersede an existing state",
            reason='unexpected_genesis',
            field='prev_state_hash',
        )
    expected = state_hash(prev)
    if next_state.prev_state_hash != expected:
        raise ChainError(
            "Predecessor hash mismatch",
            reason='predecessor_mismatch',
            field='prev_state_hash',
            expected=expected.hex(),
            got=next_state.prev_state_hash.hex(),
        )


def verify_successor(prev: CircleState, next_state: CircleState):
    """
    Check linkage plus the structural rules every transition obeys.

    This does not replay the operation; it confirms that nothing a
    transition may never touch has changed, that counters only move
    forward and that the step adds exactly one member or one contribution.
    """
    verify_link(prev, next_state)

    for name in ('contribution_per_round', 'round_duration', 'member_capacity', 'created_at'):
        if getattr(prev, name) != getattr(next_state, name):
            raise ChainError(f"Immutable field {name} changed", reason='immutable_changed',
                             field=name)

    if prev.is_complete:
        raise ChainError("Completed circle cannot be advanced", reason='advanced_complete',
                         field='is_complete')

    if next_state.current_round < prev.current_round:
        raise ChainError("Round cannot decrease", reason='round_regressed',
                         field='current_round')

    added = len(next_state.members) - len(prev.members)
    if added < 0:
        raise ChainError("Members cannot be removed", reason='member_removed', field='members')
    if added and prev.current_round > 0:
        raise ChainError("Cannot change member count after start", reason='late_enrollment',
                         field='members')

    for old, new in zip(prev.members, next_state.members):
        if old.pubkey != new.pubkey or old.payout_round != new.payout_round \
                or old.joined_at != new.joined_at:
            raise ChainError("Existing member record was rewritten", reason='member_rewritten',
                             field='members')
        if new.contribution_history[:len(old.contribution_history)] != old.contribution_history:
            raise ChainError("Contribution history is append-only", reason='history_rewritten',
                             field='members.contribution_history')
        if old.has_received_payout and not new.has_received_payout:
            raise ChainError("Payout cannot be revoked", reason='payout_revoked',
                             field='members.has_received_payout')

    if next_state.current_round == prev.current_round:
        if next_state.current_pool < prev.current_pool:
            raise ChainError("Pool cannot decrease within round", reason='pool_decreased',
                             field='current_pool')
    elif next_state.current_pool != 0:
        raise ChainError("Pool must reset on new round", reason='pool_not_reset',
                         field='current_pool')

    _verify_step(prev, next_state, added)


def _verify_step(prev: CircleState, next_state: CircleState, added: int):
    """One transition adds exactly one member or exactly one contribution."""
    appended = []
    for old, new in zip(prev.members, next_state.members):
        appended.extend(new.contribution_history[len(old.contribution_history):])
    for new in next_state.members[len(prev.members):]:
        appended.extend(new.contribution_history)
    if added + len(appended) != 1:
        raise ChainError(
            f"Expected one new member or one new contribution, "
            f"got {added} member(s) and {len(appended)} contribution(s)",
            reason='step_size',
            field='members',
            added=added,
            contributions=len(appended),
        )

    if added:
        joined = next_state.members[-1]
        if joined.has_received_payout:
            raise ChainError("New member cannot arrive paid", reason='member_prepaid',
                             field='members')
        _require_unchanged(prev, next_state, 'current_round', 'current_pool', 'round_started_at')
        return

    record = appended[0]
    if record.round != prev.current_round:
        raise ChainError(
            f"Contribution for round {record.round} recorded in round {prev.current_round}",
            reason='contribution_round',
            field='members.contribution_history',
        )

    if not round_settled(next_state.members, prev.current_round):
        _require_unchanged(prev, next_state, 'current_round', 'round_started_at')
        if next_state.current_pool != prev.current_pool + record.amount:
            raise ChainError("Pool must grow by the recorded contribution",
                             reason='pool_mismatch', field='current_pool')
        return

    expected = next_claimed_round(next_state.members, prev.current_round, prev.member_capacity)
    if next_state.current_round != expected:
        raise ChainError(
            f"Settled round {prev.current_round} must advance to {expected}",
            reason='round_skipped',
            field='current_round',
            expected=expected,
            got=next_state.current_round,
        )
    if next_state.round_started_at != record.timestamp:
        raise ChainError("New round must start at the settling contribution",
                         reason='round_start', field='round_started_at')


def _require_unchanged(prev: CircleState, next_state: CircleState, *names: str):
    for name in names:
        if getattr(prev, name) != getattr(next_state, name):
            raise ChainError(f"{name} cannot change in this transition",
                             reason='unexpected_change', field=name)


def verify_history(states: Iterable[CircleState]):
    """Verify a full sequence of states, starting from genesis."""
    previous = None
    for state in states:
        if previous is None:
            verify_genesis(state)
        else:
            verify_successor(previous, state)
        previous = state
