"""
Off-ledger caller: load a committed circle, apply an operation, prove and
submit the result.

The client passes the exact output it means to supersede with every
submission. Uniqueness of that spend is the ledger's job; nothing here
tracks "used" outputs in process memory.
"""
import time
import logging
from dataclasses import dataclass, replace
from typing import Optional

from .codec import decode, encode
from .config import Config
from .core import OutputRef, Bundle
from .crypto import random_circle_id
from .engine import apply, find_payout
from .errors import AcceptanceRejected, ChainError, DecodeError, TransitionError
from .ledger import Ledger, Prover, LocalProver, MemoryLedger, SubmitOutcome, SubmitResult
from .monitoring import Monitor
from .operations import CreateCircle, AddMember, RecordContribution, Witness
from .state import CircleState, validate
from .store import DB, CircleStore

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PreparedTransition:
    """A computed next state and its bundle, not yet submitted."""
    circle_id: bytes
    spends: Optional[OutputRef]
    prev_state: Optional[CircleState]
    new_state: CircleState
    bundle: Bundle
    operation: object


class CircleClient:
    def __init__(self,
                 ledger: Ledger,
                 prover: Prover,
                 store: Optional[CircleStore] = None,
                 config: Optional[Config] = None,
                 monitor: Optional[Monitor] = None):
        self.ledger = ledger
        self.prover = prover
        self.store = store
        self.config = config or Config.default()
        self.monitor = monitor

    @classmethod
    def from_config(cls, config: Config, ledger: Optional[Ledger] = None) -> 'CircleClient':
        """
        Build a client whose components follow ``config``.

        Without an explicit ledger an in-memory one is created with the
        configured acceptance level and payload bound. The head store is
        opened at ``database.path`` and a metrics server is started when
        monitoring is enabled. Call close() to release both.
        """
        app_id = config.ledger.app_id
        level = config.ledger.level
        max_payload_size = config.ledger.max_payload_size
        if ledger is None:
            ledger = MemoryLedger(app_id, level=level, max_payload_size=max_payload_size)
        prover = LocalProver(app_id, level=level, max_payload_size=max_payload_size)

        logger.info(f"Opening circle store at {config.database.path}")
        db = DB(
            config.database.path,
            write_buffer_size=config.database.write_buffer_size,
            max_open_files=config.database.max_open_files,
        )

        monitor = None
        if config.monitoring.enabled:
            monitor = Monitor(host=config.monitoring.host, port=config.monitoring.port)
            try:
                monitor.start_server()
            except OSError:
                db.close()
                raise

        logger.info(f"Circle client ready for {app_id} at {level.value} acceptance")
        return cls(ledger, prover, store=CircleStore(db), config=config, monitor=monitor)

    def close(self):
        """Stop the metrics server and close the head store."""
        if self.monitor is not None:
            self.monitor.stop_server()
        if self.store is not None:
            self.store.db.close()

    @property
    def app_id(self) -> str:
        return self.config.ledger.app_id

    def load(self, ref: OutputRef) -> CircleState:
        """Fetch, decode and validate the state held at ``ref``."""
        out = self.ledger.fetch_output(ref)
        if out.app_id != self.app_id:
            raise ChainError(f"Output {ref} is not tagged {self.app_id}", reason='foreign_output')
        state = decode(out.payload)
        validate(state)
        return state

    def find_head(self, circle_id: bytes) -> OutputRef:
        """
        Locate the unspent output currently holding ``circle_id``.

        Uses the local store when it is fresh, otherwise scans the ledger's
        unspent outputs for the app.
        """
        if self.store is not None:
            head = self.store.get_head(circle_id)
            if head is not None and not self.ledger.is_spent(head[0]):
                return head[0]

        for ref, out in self.ledger.list_unspent(self.app_id):
            try:
                state = decode(out.payload)
            except DecodeError:
                logger.warning(f"Skipping undecodable output {ref}")
                continue
            if state.circle_id == circle_id:
                return ref
        raise ChainError(f"No unspent output holds circle {circle_id.hex()[:16]}",
                         reason='circle_not_found')

    def prepare(self, ref: Optional[OutputRef], operation, signer=None) -> PreparedTransition:
        """
        Compute and prove the next state without submitting it.

        ``ref`` is the output being superseded (None for CreateCircle).
        ``signer`` is the acting member's private key; when given, a
        witness bound to ``ref`` is signed and attached.
        """
        prev_state = None
        old_bytes = None
        if ref is not None:
            old_bytes = self.ledger.fetch_output(ref).payload
            prev_state = decode(old_bytes)

        op_name = operation.op_type
        try:
            new_state = apply(prev_state, operation)
        except TransitionError as e:
            self._record_transition(op_name, e.code)
            raise
        self._record_transition(op_name, 'ok')

        witness = b''
        if signer is not None:
            w = Witness(operation, new_state.circle_id, str(ref) if ref else None)
            w.sign(signer)
            witness = w.pack()

        new_bytes = encode(new_state)
        bundle = self.prover.prove(old_bytes, new_bytes, witness, spends=ref)
        return PreparedTransition(
            circle_id=new_state.circle_id,
            spends=ref,
            prev_state=prev_state,
            new_state=new_state,
            bundle=bundle,
            operation=operation,
        )

    def submit(self, prepared: PreparedTransition,
               funding: Optional[OutputRef] = None,
               change_address: Optional[str] = None) -> SubmitResult:
        """Submit a prepared transition. Exactly one of three outcomes is returned."""
        start = time.time()
        try:
            refs = self.ledger.submit([prepared.bundle.transition], funding, change_address)
        except ChainError as e:
            if not e.retryable:
                raise
            logger.warning(f"Stale reference for circle {prepared.circle_id.hex()[:16]}: {e}")
            return self._result(SubmitOutcome.STALE_REFERENCE, start, error=e)
        except AcceptanceRejected as e:
            logger.warning(f"Predicate rejected circle {prepared.circle_id.hex()[:16]}: {e}")
            return self._result(SubmitOutcome.REJECTED_BY_PREDICATE, start, error=e)

        new_ref = refs[0]
        if self.store is not None:
            self.store.put_head(prepared.circle_id, new_ref, prepared.bundle.new_state)
        if self.monitor is not None:
            self.monitor.record_state(prepared.circle_id, prepared.new_state.current_round)
            if prepared.prev_state is not None:
                payout = find_payout(prepared.prev_state, prepared.new_state)
                if payout is not None:
                    self.monitor.record_payout(payout.amount)

        logger.info(f"Circle {prepared.circle_id.hex()[:16]} advanced to {new_ref} "
                    f"(round {prepared.new_state.current_round})")
        return self._result(SubmitOutcome.COMMITTED, start, refs=tuple(refs))

    def advance(self, ref: Optional[OutputRef], operation, signer=None,
                funding: Optional[OutputRef] = None,
                change_address: Optional[str] = None) -> SubmitResult:
        """One attempt: prepare against ``ref`` and submit."""
        try:
            prepared = self.prepare(ref, operation, signer)
        except AcceptanceRejected as e:
            return SubmitResult(SubmitOutcome.REJECTED_BY_PREDICATE, error=e)
        return self.submit(prepared, funding, change_address)

    def advance_with_retry(self, circle_id: bytes, operation, signer=None) -> SubmitResult:
        """
        Advance the circle's current head, re-fetching and re-applying on
        stale references up to ``client.max_retries`` extra times.

        Transition errors from re-applying (e.g. DuplicateContribution when
        a competing submission already recorded the same thing) propagate.
        """
        attempts = self.config.client.max_retries + 1
        result = None
        for attempt in range(attempts):
            ref = self.find_head(circle_id)
            result = self.advance(ref, operation, signer)
            if not result.retryable:
                return result
            logger.info(f"Retrying circle {circle_id.hex()[:16]} "
                        f"(attempt {attempt + 1}/{attempts})")
        return result

    def create(self, operation: CreateCircle, signer=None,
               funding: Optional[OutputRef] = None,
               change_address: Optional[str] = None) -> tuple[SubmitResult, CircleState]:
        """Create a circle. The returned state is the genesis state."""
        if operation.circle_id is None:
            operation = replace(operation, circle_id=random_circle_id())
        prepared = self.prepare(None, operation, signer)
        return self.submit(prepared, funding, change_address), prepared.new_state

    def join(self, ref: OutputRef, pubkey: bytes, payout_round: int, joined_at: int,
             signer=None) -> SubmitResult:
        return self.advance(ref, AddMember(pubkey, payout_round, joined_at), signer)

    def contribute(self, ref: OutputRef, pubkey: bytes, amount: int, timestamp: int,
                   tx_reference: bytes, signer=None) -> SubmitResult:
        return self.advance(ref, RecordContribution(pubkey, amount, timestamp, tx_reference),
                            signer)

    def _record_transition(self, operation: str, status: str):
        if self.monitor is not None:
            self.monitor.record_transition(operation, status)

    def _result(self, outcome: SubmitOutcome, start: float, refs=(), error=None) -> SubmitResult:
        if self.monitor is not None:
            self.monitor.record_submission(outcome.value, time.time() - start)
        return SubmitResult(outcome, refs, error)
