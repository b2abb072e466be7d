"""
Ledger and prover collaborators.

The engine never talks to a ledger itself. Callers go through the typed
interfaces below. MemoryLedger and LocalProver are in-process reference
implementations: they keep the single-consumption rule and run the
acceptance predicate exactly where a real ledger would.
"""
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence

import msgpack

from .core import OutputRef, LedgerOutput, Transition, Bundle
from .crypto import generate_hash
from .errors import AcceptanceRejected, ChainError, CircleError
from .predicate import AcceptanceLevel, DEFAULT_MAX_PAYLOAD_SIZE, check

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SubmitOutcome(Enum):
    COMMITTED = "committed"
    REJECTED_BY_PREDICATE = "rejected_by_predicate"
    STALE_REFERENCE = "stale_reference"


@dataclass(frozen=True)
class SubmitResult:
    outcome: SubmitOutcome
    refs: tuple[OutputRef, ...] = ()
    error: Optional[CircleError] = None

    @property
    def committed(self) -> bool:
        return self.outcome == SubmitOutcome.COMMITTED

    @property
    def retryable(self) -> bool:
        return self.outcome == SubmitOutcome.STALE_REFERENCE


class Ledger(ABC):
    """What the circle client needs from a ledger."""

    @abstractmethod
    def fetch_prior_transaction(self, ref) -> bytes:
        """Raw bytes of the transaction that created ``ref`` (or with that txid)."""

    @abstractmethod
    def fetch_output(self, ref: OutputRef) -> LedgerOutput:
        """The output at ``ref``. Raises ChainError when it does not exist."""

    @abstractmethod
    def is_spent(self, ref: OutputRef) -> bool:
        """Whether ``ref`` has already been consumed."""

    @abstractmethod
    def list_unspent(self, app_id: str) -> list[tuple[OutputRef, LedgerOutput]]:
        """Unspent outputs tagged with ``app_id``."""

    @abstractmethod
    def submit(self, transitions: Sequence[Transition],
               funding: Optional[OutputRef] = None,
               change_address: Optional[str] = None) -> list[OutputRef]:
        """
        Commit ``transitions`` atomically.

        Returns the references of the new circle-state outputs in order.
        Raises ChainError (retryable) when a spent output was already
        consumed, and AcceptanceRejected when the predicate refuses.
        """


class Prover(ABC):
    """Turns a transition and its encoded states into a ledger-ready bundle."""

    @abstractmethod
    def prove(self, old_state: Optional[bytes], new_state: bytes, witness: bytes,
              spends: Optional[OutputRef] = None) -> Bundle:
        """Raises AcceptanceRejected when the transition would not be accepted."""


class LocalProver(Prover):
    """Builds the transition and pre-checks it with the acceptance predicate."""

    def __init__(self, app_id: str,
                 level: AcceptanceLevel = AcceptanceLevel.STRUCTURAL,
                 max_payload_size: int = DEFAULT_MAX_PAYLOAD_SIZE):
        self.app_id = app_id
        self.level = level
        self.max_payload_size = max_payload_size

    def prove(self, old_state: Optional[bytes], new_state: bytes, witness: bytes,
              spends: Optional[OutputRef] = None) -> Bundle:
        transition = Transition(
            app_id=self.app_id,
            spends=spends,
            outputs=(LedgerOutput(app_id=self.app_id, payload=new_state),),
            witness=witness or b'',
        )
        passed = check(transition, self.app_id, old_state, self.level, self.max_payload_size)
        return Bundle(
            transition=transition,
            old_state=old_state,
            new_state=new_state,
            checks=tuple(passed),
        )


class MemoryLedger(Ledger):
    """
    In-process ledger with single-consumption outputs.

    Every output can be spent once. Of two transactions racing to spend
    the same circle output, the first to arrive commits and the second is
    rejected as stale.
    """

    def __init__(self, app_id: str,
                 level: AcceptanceLevel = AcceptanceLevel.STRUCTURAL,
                 max_payload_size: int = DEFAULT_MAX_PAYLOAD_SIZE):
        self.app_id = app_id
        self.level = level
        self.max_payload_size = max_payload_size
        # {txid: raw transaction bytes}
        self.transactions = {}
        # {OutputRef: LedgerOutput}
        self.outputs = {}
        self.spent = set()
        self.lock = threading.Lock()
        self._funding_nonce = 0
        self.stats = {
            'committed': 0,
            'rejected': 0,
            'stale': 0,
        }

    def fund(self, value: int, address: str = "funding") -> OutputRef:
        """Create a plain funding output, standing in for a wallet UTXO."""
        with self.lock:
            self._funding_nonce += 1
            raw = msgpack.packb({'fund': address, 'value': value, 'nonce': self._funding_nonce},
                                use_bin_type=True)
            txid = generate_hash(raw)
            ref = OutputRef(txid, 0)
            self.transactions[txid] = raw
            self.outputs[ref] = LedgerOutput(app_id='', payload=address.encode(), value=value)
            return ref

    def fetch_prior_transaction(self, ref) -> bytes:
        txid = ref.txid if isinstance(ref, OutputRef) else bytes(ref)
        with self.lock:
            raw = self.transactions.get(txid)
        if raw is None:
            raise ChainError(f"Unknown transaction {txid.hex()[:16]}", reason='unknown_reference')
        return raw

    def fetch_output(self, ref: OutputRef) -> LedgerOutput:
        with self.lock:
            out = self.outputs.get(ref)
        if out is None:
            raise ChainError(f"Unknown output {ref}", reason='unknown_reference')
        return out

    def is_spent(self, ref: OutputRef) -> bool:
        with self.lock:
            return ref in self.spent

    def list_unspent(self, app_id: str) -> list[tuple[OutputRef, LedgerOutput]]:
        with self.lock:
            return [
                (ref, out) for ref, out in self.outputs.items()
                if out.app_id == app_id and ref not in self.spent
            ]

    def submit(self, transitions: Sequence[Transition],
               funding: Optional[OutputRef] = None,
               change_address: Optional[str] = None) -> list[OutputRef]:
        if not transitions:
            raise AcceptanceRejected("Nothing to submit", reason='empty_submission')

        with self.lock:
            consumed = set()
            for transition in transitions:
                self._check_transition(transition, consumed)

            funding_value = 0
            if funding is not None:
                self._check_unspent(funding, consumed)
                funding_value = self.outputs[funding].value

            raw = msgpack.packb({
                'transitions': [t.to_dict() for t in transitions],
                'funding': str(funding) if funding else None,
                'change': change_address,
            }, use_bin_type=True)
            txid = generate_hash(raw)
            if txid in self.transactions:
                self.stats['rejected'] += 1
                raise AcceptanceRejected("Transaction already committed",
                                         reason='duplicate_transaction')

            # Everything checked; commit atomically
            self.spent.update(consumed)
            self.transactions[txid] = raw
            refs = []
            index = 0
            for transition in transitions:
                for out in transition.outputs:
                    ref = OutputRef(txid, index)
                    self.outputs[ref] = out
                    if out.app_id == self.app_id:
                        refs.append(ref)
                    index += 1
            if funding is not None and change_address:
                self.outputs[OutputRef(txid, index)] = LedgerOutput(
                    app_id='', payload=change_address.encode(), value=funding_value)

            self.stats['committed'] += 1
            logger.info(f"Committed transaction {txid.hex()[:16]} with {len(refs)} circle output(s)")
            return refs

    def _check_unspent(self, ref: OutputRef, consumed: set):
        if ref not in self.outputs:
            self.stats['rejected'] += 1
            raise ChainError(f"Unknown output {ref}", reason='unknown_reference')
        if ref in self.spent or ref in consumed:
            self.stats['stale'] += 1
            raise ChainError(
                f"Output {ref} was already spent",
                reason='stale_reference',
                retryable=True,
                ref=str(ref),
            )
        consumed.add(ref)

    def _check_transition(self, transition: Transition, consumed: set):
        prev_payload = None
        if transition.spends is not None:
            self._check_unspent(transition.spends, consumed)
            prev_payload = self.outputs[transition.spends].payload
        try:
            check(transition, self.app_id, prev_payload, self.level, self.max_payload_size)
        except AcceptanceRejected:
            self.stats['rejected'] += 1
            raise
