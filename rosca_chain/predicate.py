"""
Acceptance predicate run by the ledger before it commits a transition.

MINIMAL only requires a non-empty payload tagged with the circle's app
identifier. STRUCTURAL additionally decodes the payload, checks every
state invariant and checks the link to the state being spent. FULL also
requires a signed witness and replays its operation, accepting only when
the replay reproduces the proposed state byte for byte.
"""
import logging
from enum import Enum
from typing import Optional

from .chain import verify_genesis, verify_successor
from .codec import decode, encode
from .core import Transition
from .engine import apply
from .errors import (
    AcceptanceRejected,
    ChainError,
    DecodeError,
    InvalidParameter,
    TransitionError,
)
from .operations import Witness, CreateCircle
from .state import validate

logger = logging.getLogger(__name__)

DEFAULT_MAX_PAYLOAD_SIZE = 64 * 1024


class AcceptanceLevel(Enum):
    MINIMAL = "minimal"
    STRUCTURAL = "structural"
    FULL = "full"


def check(transition: Transition,
          app_id: str,
          prev_payload: Optional[bytes] = None,
          level: AcceptanceLevel = AcceptanceLevel.STRUCTURAL,
          max_payload_size: int = DEFAULT_MAX_PAYLOAD_SIZE) -> list[str]:
    """
    Run the predicate. Raises AcceptanceRejected with a reason code.

    Args:
        transition: The proposed transition.
        app_id: The identifier the circle's outputs are tagged with.
        prev_payload: Bytes held at the spent output, None for creation.
        level: How deep to check.
        max_payload_size: Upper bound on the encoded state size.

    Returns:
        The names of the checks that passed.
    """
    passed = []

    payloads = transition.payloads_for(app_id)
    if not payloads:
        raise AcceptanceRejected("No circle data found for app in outputs",
                                 reason='missing_payload', app_id=app_id)
    if len(payloads) > 1:
        # A circle has exactly one head
        raise AcceptanceRejected(f"Transition carries {len(payloads)} circle outputs",
                                 reason='multiple_payloads', app_id=app_id)
    payload = payloads[0]
    if not payload:
        raise AcceptanceRejected("Circle data cannot be empty", reason='empty_payload')
    passed.append('payload_present')

    if level == AcceptanceLevel.MINIMAL:
        return passed

    if len(payload) > max_payload_size:
        raise AcceptanceRejected(
            f"Payload of {len(payload)} bytes exceeds {max_payload_size}",
            reason='payload_too_large',
        )

    try:
        new_state = decode(payload)
        validate(new_state)
    except DecodeError as e:
        raise AcceptanceRejected(f"Payload does not decode: {e}", reason='undecodable',
                                 field=e.field)
    except TransitionError as e:
        raise AcceptanceRejected(f"Proposed state is invalid: {e}", reason='invariant',
                                 error=e.to_dict())
    passed.append('state_valid')

    if (transition.spends is None) != (prev_payload is None):
        raise AcceptanceRejected("Spent output and previous payload disagree",
                                 reason='missing_predecessor')

    prev_state = None
    try:
        if prev_payload is None:
            verify_genesis(new_state)
        else:
            prev_state = decode(prev_payload)
            verify_successor(prev_state, new_state)
    except DecodeError as e:
        raise AcceptanceRejected(f"Spent output does not hold circle state: {e}",
                                 reason='undecodable_predecessor')
    except ChainError as e:
        raise AcceptanceRejected(f"Broken chain link: {e}", reason='chain', error=e.to_dict())
    passed.append('chain_link')

    if transition.witness:
        witness = _check_witness(transition, new_state.circle_id)
        passed.append('witness_signature')
    elif level == AcceptanceLevel.FULL:
        raise AcceptanceRejected("Full acceptance requires a witness", reason='missing_witness')
    else:
        return passed

    if level == AcceptanceLevel.FULL:
        _replay(witness, prev_state, payload)
        passed.append('replay')

    return passed


def _check_witness(transition: Transition, circle_id: bytes) -> Witness:
    try:
        witness = Witness.unpack(transition.witness)
    except InvalidParameter as e:
        raise AcceptanceRejected(f"Malformed witness: {e}", reason='bad_witness')

    if witness.circle_id != circle_id:
        raise AcceptanceRejected("Witness names another circle", reason='witness_circle')
    spent = str(transition.spends) if transition.spends else None
    if witness.prev_ref != spent:
        raise AcceptanceRejected("Witness was signed for another output",
                                 reason='witness_replay', expected=spent, got=witness.prev_ref)
    if not witness.verify_signature():
        raise AcceptanceRejected("Invalid witness signature", reason='bad_signature')
    return witness


def _replay(witness: Witness, prev_state, payload: bytes):
    operation = witness.operation
    if isinstance(operation, CreateCircle) and operation.circle_id is None:
        raise AcceptanceRejected("Creation witness must fix the circle id",
                                 reason='replay_mismatch')
    try:
        replayed = apply(prev_state, operation)
    except TransitionError as e:
        raise AcceptanceRejected(f"Witness operation is not applicable: {e}",
                                 reason='replay_failed', error=e.to_dict())
    if encode(replayed) != payload:
        raise AcceptanceRejected("Replayed operation does not reproduce the proposed state",
                                 reason='replay_mismatch')


def accepts(transition: Transition, app_id: str, prev_payload: Optional[bytes] = None,
            level: AcceptanceLevel = AcceptanceLevel.STRUCTURAL,
            max_payload_size: int = DEFAULT_MAX_PAYLOAD_SIZE) -> bool:
    """Boolean form of check(), as the ledger consumes it."""
    try:
        check(transition, app_id, prev_payload, level, max_payload_size)
        return True
    except AcceptanceRejected as e:
        logger.warning(f"Contract validation failed: {e.reason}: {e}")
        return False
