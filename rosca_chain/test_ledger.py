"""
Tests for the in-memory ledger and local prover.
"""
import threading
import unittest
from dataclasses import replace

from rosca_chain.chain import state_hash
from rosca_chain.codec import encode
from rosca_chain.core import OutputRef, LedgerOutput, Transition
from rosca_chain.crypto import generate_key_pair, compress_public_key
from rosca_chain.engine import create_circle, add_member, record_contribution
from rosca_chain.errors import AcceptanceRejected, ChainError
from rosca_chain.ledger import LocalProver, MemoryLedger, SubmitOutcome, SubmitResult
from rosca_chain.predicate import AcceptanceLevel

APP = "rosca/test"
AMOUNT = 1_000


class TestMemoryLedger(unittest.TestCase):
    def setUp(self):
        self.ledger = MemoryLedger(APP)
        self.prover = LocalProver(APP)
        self.a = compress_public_key(generate_key_pair()[1])
        self.b = compress_public_key(generate_key_pair()[1])
        self.genesis = create_circle(AMOUNT, 60, 0, self.a, 2)
        bundle = self.prover.prove(None, encode(self.genesis), b'')
        self.genesis_ref, = self.ledger.submit([bundle.transition])

    def _advance(self, ref, state):
        old = self.ledger.fetch_output(ref).payload
        return self.prover.prove(old, encode(state), b'', spends=ref)

    def test_genesis_committed(self):
        out = self.ledger.fetch_output(self.genesis_ref)
        self.assertEqual(out.app_id, APP)
        self.assertEqual(out.payload, encode(self.genesis))
        self.assertFalse(self.ledger.is_spent(self.genesis_ref))
        self.assertEqual(self.ledger.list_unspent(APP), [(self.genesis_ref, out)])
        self.assertTrue(self.ledger.fetch_prior_transaction(self.genesis_ref))

    def test_prover_records_checks(self):
        bundle = self.prover.prove(None, encode(self.genesis), b'')
        self.assertEqual(bundle.checks, ('payload_present', 'state_valid', 'chain_link'))
        self.assertIsNone(bundle.old_state)
        self.assertIsNone(bundle.transition.spends)

    def test_advance_spends_output(self):
        s1 = add_member(self.genesis, self.b, 1, 1)
        new_ref, = self.ledger.submit([self._advance(self.genesis_ref, s1).transition])
        self.assertTrue(self.ledger.is_spent(self.genesis_ref))
        self.assertEqual(self.ledger.list_unspent(APP)[0][0], new_ref)
        self.assertEqual(self.ledger.stats['committed'], 2)

    def test_scenario_e_single_consumption(self):
        # Two callers fetch the same committed state and compute valid successors
        s1 = add_member(self.genesis, self.b, 1, 1)
        ref1, = self.ledger.submit([self._advance(self.genesis_ref, s1).transition])

        first = record_contribution(s1, self.b, AMOUNT, 2, b'\x01' * 32)
        second = record_contribution(s1, self.a, AMOUNT, 3, b'\x02' * 32)
        bundle_1 = self._advance(ref1, first)
        bundle_2 = self._advance(ref1, second)

        self.ledger.submit([bundle_1.transition])
        with self.assertRaises(ChainError) as ctx:
            self.ledger.submit([bundle_2.transition])
        self.assertTrue(ctx.exception.retryable)
        self.assertEqual(ctx.exception.reason, 'stale_reference')
        self.assertEqual(self.ledger.stats['stale'], 1)
        self.assertEqual(len(self.ledger.list_unspent(APP)), 1)

    def test_concurrent_submissions(self):
        s1 = add_member(self.genesis, self.b, 1, 1)
        ref1, = self.ledger.submit([self._advance(self.genesis_ref, s1).transition])
        bundles = [
            self._advance(ref1, record_contribution(s1, self.b, AMOUNT, 2 + i, bytes([i]) * 32))
            for i in range(8)
        ]
        outcomes = []

        def worker(bundle):
            try:
                self.ledger.submit([bundle.transition])
                outcomes.append('committed')
            except ChainError:
                outcomes.append('stale')

        threads = [threading.Thread(target=worker, args=(b,)) for b in bundles]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        self.assertEqual(outcomes.count('committed'), 1)
        self.assertEqual(outcomes.count('stale'), 7)

    def test_unknown_reference(self):
        ghost = OutputRef(b'\x99' * 32, 0)
        with self.assertRaises(ChainError) as ctx:
            self.ledger.fetch_output(ghost)
        self.assertEqual(ctx.exception.reason, 'unknown_reference')
        with self.assertRaises(ChainError):
            self.ledger.fetch_prior_transaction(ghost)

    def test_rejected_by_predicate(self):
        forged = add_member(self.genesis, self.b, 1, 1)
        transition = Transition(
            app_id=APP,
            spends=self.genesis_ref,
            outputs=(LedgerOutput(app_id=APP, payload=b'garbage'),),
        )
        with self.assertRaises(AcceptanceRejected):
            self.ledger.submit([transition])
        # Rejection leaves the output unspent
        self.assertFalse(self.ledger.is_spent(self.genesis_ref))
        self.ledger.submit([self._advance(self.genesis_ref, forged).transition])

    def test_rejects_forking_transition(self):
        c = compress_public_key(generate_key_pair()[1])
        transition = Transition(
            app_id=APP,
            spends=self.genesis_ref,
            outputs=(
                LedgerOutput(app_id=APP, payload=encode(add_member(self.genesis, self.b, 1, 1))),
                LedgerOutput(app_id=APP, payload=encode(add_member(self.genesis, c, 1, 1))),
            ),
        )
        with self.assertRaises(AcceptanceRejected) as ctx:
            self.ledger.submit([transition])
        self.assertEqual(ctx.exception.reason, 'multiple_payloads')
        self.assertFalse(self.ledger.is_spent(self.genesis_ref))
        self.assertEqual([ref for ref, _ in self.ledger.list_unspent(APP)], [self.genesis_ref])

    def test_rejects_skip_to_completion(self):
        s1 = add_member(self.genesis, self.b, 1, 1)
        ref1, = self.ledger.submit([self._advance(self.genesis_ref, s1).transition])
        paid = tuple(replace(m, has_received_payout=True) for m in s1.members)
        skipped = replace(s1, members=paid, current_round=2, is_complete=True,
                          prev_state_hash=state_hash(s1))
        transition = Transition(app_id=APP, spends=ref1,
                                outputs=(LedgerOutput(app_id=APP, payload=encode(skipped)),))
        with self.assertRaises(AcceptanceRejected) as ctx:
            self.ledger.submit([transition])
        self.assertEqual(ctx.exception.reason, 'chain')
        self.assertEqual(self.ledger.list_unspent(APP)[0][0], ref1)

    def test_full_level_rejects_unwitnessed(self):
        ledger = MemoryLedger(APP, level=AcceptanceLevel.FULL)
        with self.assertRaises(AcceptanceRejected) as ctx:
            ledger.submit([self.prover.prove(None, encode(self.genesis), b'').transition])
        self.assertEqual(ctx.exception.reason, 'missing_witness')

    def test_duplicate_transaction(self):
        bundle = self.prover.prove(None, encode(self.genesis), b'')
        with self.assertRaises(AcceptanceRejected) as ctx:
            self.ledger.submit([bundle.transition])
        self.assertEqual(ctx.exception.reason, 'duplicate_transaction')

    def test_empty_submission(self):
        with self.assertRaises(AcceptanceRejected):
            self.ledger.submit([])

    def test_funding_and_change(self):
        funding = self.ledger.fund(5_000, "alice")
        s1 = add_member(self.genesis, self.b, 1, 1)
        new_ref, = self.ledger.submit([self._advance(self.genesis_ref, s1).transition],
                                      funding=funding, change_address="alice")
        self.assertTrue(self.ledger.is_spent(funding))
        change = self.ledger.fetch_output(OutputRef(new_ref.txid, 1))
        self.assertEqual(change.value, 5_000)
        self.assertEqual(change.payload, b'alice')

    def test_spent_funding_is_stale(self):
        funding = self.ledger.fund(5_000)
        s1 = add_member(self.genesis, self.b, 1, 1)
        self.ledger.submit([self._advance(self.genesis_ref, s1).transition], funding=funding)
        other = create_circle(AMOUNT, 60, 0, self.b, 2)
        with self.assertRaises(ChainError) as ctx:
            self.ledger.submit([self.prover.prove(None, encode(other), b'').transition],
                               funding=funding)
        self.assertTrue(ctx.exception.retryable)


class TestSubmitResult(unittest.TestCase):
    def test_flags(self):
        self.assertTrue(SubmitResult(SubmitOutcome.COMMITTED).committed)
        self.assertTrue(SubmitResult(SubmitOutcome.STALE_REFERENCE).retryable)
        rejected = SubmitResult(SubmitOutcome.REJECTED_BY_PREDICATE)
        self.assertFalse(rejected.committed)
        self.assertFalse(rejected.retryable)


if __name__ == '__main__':
    unittest.main()
