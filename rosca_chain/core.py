"""
Ledger-facing data structures: output references, outputs and transitions.
"""
from dataclasses import dataclass, field
from typing import Optional

import msgpack

from .crypto import generate_hash, HASH_LENGTH
from .errors import InvalidParameter


@dataclass(frozen=True)
class OutputRef:
    """Address of one ledger output, written ``txid:index``."""
    txid: bytes
    index: int

    def __post_init__(self):
        if len(self.txid) != HASH_LENGTH:
            raise InvalidParameter("txid must be 32 bytes", field='txid')
        if self.index < 0:
            raise InvalidParameter("output index cannot be negative", field='index')

    @classmethod
    def parse(cls, text: str) -> 'OutputRef':
        try:
            txid_hex, index = text.strip().split(':')
            return cls(bytes.fromhex(txid_hex), int(index))
        except ValueError as e:
            raise InvalidParameter(f"Invalid output reference {text!r}: {e}", field='ref')

    def __str__(self) -> str:
        return f"{self.txid.hex()}:{self.index}"


@dataclass(frozen=True)
class LedgerOutput:
    """An output tagged with an application identifier and its payload bytes."""
    app_id: str
    payload: bytes
    value: int = 0

    def to_dict(self) -> dict:
        return {
            'app_id': self.app_id,
            'payload': self.payload,
            'value': self.value,
        }


@dataclass(frozen=True)
class Transition:
    """
    One proposed advance of a circle.

    ``spends`` is the output holding the state being superseded, or None
    when the transition creates a circle.
    """
    app_id: str
    spends: Optional[OutputRef]
    outputs: tuple[LedgerOutput, ...]
    witness: bytes = b''

    def payloads_for(self, app_id: str) -> list[bytes]:
        """Payloads of every output tagged with ``app_id``, in output order."""
        return [out.payload for out in self.outputs if out.app_id == app_id]

    def to_dict(self) -> dict:
        return {
            'app_id': self.app_id,
            'spends': str(self.spends) if self.spends else None,
            'outputs': [out.to_dict() for out in self.outputs],
            'witness': self.witness,
        }

    def serialize(self) -> bytes:
        return msgpack.packb(self.to_dict(), use_bin_type=True)

    @property
    def id(self) -> bytes:
        """The unique hash identifier of the transition."""
        return generate_hash(self.serialize())


@dataclass(frozen=True)
class Bundle:
    """A prover-checked transition, ready for submission."""
    transition: Transition
    old_state: Optional[bytes]
    new_state: bytes
    checks: tuple[str, ...] = field(default_factory=tuple)
