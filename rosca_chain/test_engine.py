"""
Tests for the circle transition engine: creation, enrollment,
contributions and the payout rotation.
"""
import unittest
import pytest

from rosca_chain.chain import state_hash, verify_successor
from rosca_chain.crypto import generate_key_pair, compress_public_key
from rosca_chain.engine import (
    create_circle,
    add_member,
    record_contribution,
    apply,
    find_payout,
)
from rosca_chain.errors import (
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
from rosca_chain.operations import CreateCircle, AddMember, RecordContribution
from rosca_chain.state import ZERO_HASH, CirclePhase

AMOUNT = 100_000
DURATION = 7 * 24 * 3600
T0 = 1_700_000_000


def new_pubkey() -> bytes:
    _, pub = generate_key_pair()
    return compress_public_key(pub)


def txid(n: int) -> bytes:
    return n.to_bytes(32, 'big')


@pytest.fixture
def keys():
    return {'founder': new_pubkey(), 'b': new_pubkey(), 'c': new_pubkey()}


@pytest.fixture
def enrolled(keys):
    """Scenario A: a full three-member circle that has not started."""
    state = create_circle(AMOUNT, DURATION, T0, keys['founder'], 3)
    state = add_member(state, keys['b'], 1, T0 + 10)
    state = add_member(state, keys['c'], 2, T0 + 20)
    return state


def test_create_circle_genesis(keys):
    state = create_circle(AMOUNT, DURATION, T0, keys['founder'], 3)

    assert len(state.circle_id) == 32
    assert state.prev_state_hash == ZERO_HASH
    assert state.is_genesis
    assert state.current_round == 0
    assert state.current_pool == 0
    assert state.round_started_at == T0
    assert state.phase == CirclePhase.OPEN
    assert len(state.members) == 1
    founder = state.members[0]
    assert founder.pubkey == keys['founder']
    assert founder.payout_round == 0
    assert founder.joined_at == T0
    assert not founder.has_received_payout


def test_create_circle_fixed_id(keys):
    circle_id = b'\x42' * 32
    state = create_circle(AMOUNT, DURATION, T0, keys['founder'], 3, circle_id=circle_id)
    assert state.circle_id == circle_id


def test_create_circle_ids_are_random(keys):
    a = create_circle(AMOUNT, DURATION, T0, keys['founder'], 3)
    b = create_circle(AMOUNT, DURATION, T0, keys['founder'], 3)
    assert a.circle_id != b.circle_id


@pytest.mark.parametrize("kwargs, field", [
    ({'contribution_per_round': 0}, 'contribution_per_round'),
    ({'round_duration': 0}, 'round_duration'),
    ({'member_capacity': 1}, 'member_capacity'),
    ({'member_capacity': 0}, 'member_capacity'),
    ({'founder_pubkey': b'\x02' * 10}, 'founder_pubkey'),
    ({'founder_pubkey': b'\x04' + b'\x01' * 32}, 'founder_pubkey'),
    ({'circle_id': b'short'}, 'circle_id'),
    ({'contribution_per_round': -5}, 'contribution_per_round'),
])
def test_create_circle_rejects_bad_parameters(keys, kwargs, field):
    params = {
        'contribution_per_round': AMOUNT,
        'round_duration': DURATION,
        'created_at': T0,
        'founder_pubkey': keys['founder'],
        'member_capacity': 3,
    }
    params.update(kwargs)
    with pytest.raises(InvalidParameter) as exc_info:
        create_circle(**params)
    assert exc_info.value.field == field


def test_scenario_a_enrollment(enrolled, keys):
    assert len(enrolled.members) == 3
    assert enrolled.current_round == 0
    assert [m.pubkey for m in enrolled.members] == [keys['founder'], keys['b'], keys['c']]
    assert [m.payout_round for m in enrolled.members] == [0, 1, 2]
    assert enrolled.is_full
    assert not enrolled.enrollment_open


def test_add_member_links_to_predecessor(keys):
    genesis = create_circle(AMOUNT, DURATION, T0, keys['founder'], 3)
    state = add_member(genesis, keys['b'], 1, T0 + 10)
    assert state.prev_state_hash == state_hash(genesis)
    assert state.circle_id == genesis.circle_id
    verify_successor(genesis, state)


def test_add_member_errors(keys):
    state = create_circle(AMOUNT, DURATION, T0, keys['founder'], 3)

    with pytest.raises(DuplicateMember):
        add_member(state, keys['founder'], 1, T0)
    with pytest.raises(DuplicatePayoutRound):
        add_member(state, keys['b'], 0, T0)
    with pytest.raises(PayoutRoundOutOfRange):
        add_member(state, keys['b'], 3, T0)
    with pytest.raises(InvalidParameter):
        add_member(state, b'\x05' * 33, 1, T0)


def test_add_member_full_circle(enrolled):
    with pytest.raises(CircleFull):
        add_member(enrolled, new_pubkey(), 0, T0)


def test_add_member_after_start(keys):
    state = create_circle(AMOUNT, DURATION, T0, keys['founder'], 4)
    state = add_member(state, keys['b'], 1, T0)
    state = record_contribution(state, keys['b'], AMOUNT, T0 + 100, txid(1))
    assert state.current_round == 1

    with pytest.raises(EnrollmentClosed):
        add_member(state, keys['c'], 2, T0 + 200)


def test_scenario_b_first_payout(enrolled, keys):
    state = record_contribution(enrolled, keys['b'], AMOUNT, T0 + 100, txid(1))
    assert state.current_round == 0
    assert state.current_pool == AMOUNT
    assert state.pending_contributors()[0].pubkey == keys['c']

    before = state
    state = record_contribution(state, keys['c'], AMOUNT, T0 + 200, txid(2))
    assert state.current_round == 1
    assert state.current_pool == 0
    assert state.current_payout_index == 1
    assert state.round_started_at == T0 + 200
    assert state.members[0].has_received_payout
    assert not state.members[1].has_received_payout
    assert state.phase == CirclePhase.ACTIVE

    payout = find_payout(before, state)
    assert payout.recipient == keys['founder']
    assert payout.amount == 2 * AMOUNT
    assert payout.round == 0


def test_payee_contribution_counts_toward_pool(enrolled, keys):
    state = record_contribution(enrolled, keys['founder'], AMOUNT, T0 + 50, txid(1))
    assert state.current_round == 0
    assert state.current_pool == AMOUNT

    state = record_contribution(state, keys['b'], AMOUNT, T0 + 60, txid(2))
    before = state
    state = record_contribution(state, keys['c'], AMOUNT, T0 + 70, txid(3))
    assert state.current_round == 1
    assert find_payout(before, state).amount == 3 * AMOUNT


def test_scenario_c_wrong_amount(enrolled, keys):
    snapshot = enrolled.to_dict()
    with pytest.raises(WrongAmount) as exc_info:
        record_contribution(enrolled, keys['b'], 99_999, T0 + 100, txid(1))
    assert exc_info.value.expected == AMOUNT
    assert exc_info.value.got == 99_999
    assert enrolled.to_dict() == snapshot


def test_scenario_d_complete(enrolled, keys):
    state = record_contribution(enrolled, keys['b'], AMOUNT, T0 + 1, txid(1))
    state = record_contribution(state, keys['c'], AMOUNT, T0 + 2, txid(2))
    state = record_contribution(state, keys['founder'], AMOUNT, T0 + 3, txid(3))
    state = record_contribution(state, keys['c'], AMOUNT, T0 + 4, txid(4))
    assert state.current_round == 2
    state = record_contribution(state, keys['founder'], AMOUNT, T0 + 5, txid(5))
    state = record_contribution(state, keys['b'], AMOUNT, T0 + 6, txid(6))

    assert state.is_complete
    assert state.phase == CirclePhase.COMPLETE
    assert state.current_round == 3
    assert state.current_payout_index == 0
    assert state.current_pool == 0
    assert all(m.has_received_payout for m in state.members)

    for key in ('founder', 'b', 'c'):
        with pytest.raises(CircleComplete):
            record_contribution(state, keys[key], AMOUNT, T0 + 7, txid(7))
    with pytest.raises(CircleComplete):
        add_member(state, new_pubkey(), 0, T0 + 8)


def test_duplicate_contribution(enrolled, keys):
    state = record_contribution(enrolled, keys['b'], AMOUNT, T0 + 1, txid(1))
    with pytest.raises(DuplicateContribution) as exc_info:
        record_contribution(state, keys['b'], AMOUNT, T0 + 1, txid(1))
    assert exc_info.value.ignorable
    assert state.current_pool == AMOUNT
    assert len(state.members[1].contribution_history) == 1


def test_unknown_member(enrolled):
    with pytest.raises(UnknownMember):
        record_contribution(enrolled, new_pubkey(), AMOUNT, T0, txid(1))


def test_bad_tx_reference(enrolled, keys):
    with pytest.raises(InvalidParameter) as exc_info:
        record_contribution(enrolled, keys['b'], AMOUNT, T0, b'\x01' * 31)
    assert exc_info.value.field == 'tx_reference'


def test_founder_alone_is_never_paid(keys):
    state = create_circle(AMOUNT, DURATION, T0, keys['founder'], 2)
    state = record_contribution(state, keys['founder'], AMOUNT, T0 + 1, txid(1))
    assert state.current_round == 0
    assert state.current_pool == AMOUNT
    assert state.enrollment_open


def test_unclaimed_rounds_are_skipped(keys):
    state = create_circle(AMOUNT, DURATION, T0, keys['founder'], 5)
    state = add_member(state, keys['b'], 3, T0)

    state = record_contribution(state, keys['b'], AMOUNT, T0 + 1, txid(1))
    assert state.current_round == 3
    assert state.payee.pubkey == keys['b']

    state = record_contribution(state, keys['founder'], AMOUNT, T0 + 2, txid(2))
    assert state.is_complete
    assert state.current_round == 5


def test_transitions_do_not_mutate_input(enrolled, keys):
    snapshot = enrolled.to_dict()
    record_contribution(enrolled, keys['b'], AMOUNT, T0 + 1, txid(1))
    assert enrolled.to_dict() == snapshot


def test_every_transition_is_a_valid_successor(enrolled, keys):
    state = enrolled
    steps = [('b', 1), ('c', 2), ('founder', 3), ('c', 4), ('founder', 5), ('b', 6)]
    for key, n in steps:
        nxt = record_contribution(state, keys[key], AMOUNT, T0 + n, txid(n))
        verify_successor(state, nxt)
        assert nxt.prev_state_hash == state_hash(state)
        state = nxt


class TestApply(unittest.TestCase):
    def setUp(self):
        self.founder = new_pubkey()
        self.member = new_pubkey()

    def test_apply_sequence(self):
        state = apply(None, CreateCircle(AMOUNT, DURATION, T0, self.founder, 2,
                                         circle_id=b'\x01' * 32))
        state = apply(state, AddMember(self.member, 1, T0 + 1))
        state = apply(state, RecordContribution(self.member, AMOUNT, T0 + 2, txid(1)))
        self.assertEqual(state.current_round, 1)
        self.assertEqual(state.circle_id, b'\x01' * 32)

    def test_apply_is_deterministic(self):
        op = CreateCircle(AMOUNT, DURATION, T0, self.founder, 2, circle_id=b'\x01' * 32)
        self.assertEqual(apply(None, op), apply(None, op))

    def test_create_requires_no_state(self):
        state = apply(None, CreateCircle(AMOUNT, DURATION, T0, self.founder, 2))
        with self.assertRaises(InvalidParameter):
            apply(state, CreateCircle(AMOUNT, DURATION, T0, self.founder, 2))

    def test_operation_requires_state(self):
        with self.assertRaises(InvalidParameter):
            apply(None, AddMember(self.member, 1, T0))

    def test_unknown_operation(self):
        state = apply(None, CreateCircle(AMOUNT, DURATION, T0, self.founder, 2))
        with self.assertRaises(InvalidParameter):
            apply(state, object())

    def test_find_payout_without_round_change(self):
        state = apply(None, CreateCircle(AMOUNT, DURATION, T0, self.founder, 3))
        state2 = apply(state, AddMember(self.member, 1, T0 + 1))
        self.assertIsNone(find_payout(state, state2))


if __name__ == '__main__':
    unittest.main()
