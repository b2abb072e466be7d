"""
Circle operations and the signed witnesses that accompany them on the ledger.
"""
from dataclasses import dataclass
from typing import Optional

import msgpack

from .crypto import sign, verify_signature, generate_hash
from .errors import InvalidParameter

CREATE_CIRCLE = "CREATE_CIRCLE"
ADD_MEMBER = "ADD_MEMBER"
RECORD_CONTRIBUTION = "RECORD_CONTRIBUTION"


@dataclass(frozen=True)
class CreateCircle:
    contribution_per_round: int
    round_duration: int
    created_at: int
    founder_pubkey: bytes
    member_capacity: int
    circle_id: Optional[bytes] = None

    op_type = CREATE_CIRCLE

    @property
    def actor(self) -> bytes:
        return self.founder_pubkey

    def to_dict(self) -> dict:
        return {
            'op_type': self.op_type,
            'contribution_per_round': self.contribution_per_round,
            'round_duration': self.round_duration,
            'created_at': self.created_at,
            'founder_pubkey': self.founder_pubkey.hex(),
            'member_capacity': self.member_capacity,
            'circle_id': self.circle_id.hex() if self.circle_id else None,
        }


@dataclass(frozen=True)
class AddMember:
    pubkey: bytes
    payout_round: int
    joined_at: int

    op_type = ADD_MEMBER

    @property
    def actor(self) -> bytes:
        return self.pubkey

    def to_dict(self) -> dict:
        return {
            'op_type': self.op_type,
            'pubkey': self.pubkey.hex(),
            'payout_round': self.payout_round,
            'joined_at': self.joined_at,
        }


@dataclass(frozen=True)
class RecordContribution:
    pubkey: bytes
    amount: int
    timestamp: int
    tx_reference: bytes

    op_type = RECORD_CONTRIBUTION

    @property
    def actor(self) -> bytes:
        return self.pubkey

    def to_dict(self) -> dict:
        return {
            'op_type': self.op_type,
            'pubkey': self.pubkey.hex(),
            'amount': self.amount,
            'timestamp': self.timestamp,
            'tx_reference': self.tx_reference.hex(),
        }


def operation_from_dict(data: dict):
    """Creates an operation object from its dictionary form."""
    op_type = data.get('op_type')
    try:
        if op_type == CREATE_CIRCLE:
            return CreateCircle(
                contribution_per_round=data['contribution_per_round'],
                round_duration=data['round_duration'],
                created_at=data['created_at'],
                founder_pubkey=bytes.fromhex(data['founder_pubkey']),
                member_capacity=data['member_capacity'],
                circle_id=bytes.fromhex(data['circle_id']) if data.get('circle_id') else None,
            )
        if op_type == ADD_MEMBER:
            return AddMember(
                pubkey=bytes.fromhex(data['pubkey']),
                payout_round=data['payout_round'],
                joined_at=data['joined_at'],
            )
        if op_type == RECORD_CONTRIBUTION:
            return RecordContribution(
                pubkey=bytes.fromhex(data['pubkey']),
                amount=data['amount'],
                timestamp=data['timestamp'],
                tx_reference=bytes.fromhex(data['tx_reference']),
            )
    except (KeyError, ValueError, TypeError) as e:
        raise InvalidParameter(f"Malformed {op_type} operation: {e}", field='operation')
    raise InvalidParameter(f"Unknown operation type: {op_type}", field='op_type')


class Witness:
    """
    An operation signed by the member performing it.

    The signature covers the circle id and the ledger reference being
    superseded, so a witness cannot be replayed against another output.
    """

    def __init__(self,
                 operation,
                 circle_id: bytes,
                 prev_ref: Optional[str] = None,
                 signature: Optional[bytes] = None):
        self.operation = operation
        self.circle_id = circle_id
        self.prev_ref = prev_ref
        self.signature = signature

    @property
    def signer(self) -> bytes:
        return self.operation.actor

    def to_dict(self, include_signature=True) -> dict:
        data = {
            'circle_id': self.circle_id.hex(),
            'prev_ref': self.prev_ref,
            'operation': self.operation.to_dict(),
        }
        if include_signature and self.signature:
            data['signature'] = self.signature
        return data

    @classmethod
    def from_dict(cls, data: dict) -> 'Witness':
        return cls(
            operation=operation_from_dict(data['operation']),
            circle_id=bytes.fromhex(data['circle_id']),
            prev_ref=data.get('prev_ref'),
            signature=data.get('signature'),
        )

    def get_signing_data(self) -> bytes:
        """Returns the canonical byte representation for signing."""
        return msgpack.packb(self.to_dict(include_signature=False), use_bin_type=True)

    def sign(self, private_key):
        """Signs the witness."""
        self.signature = sign(private_key, self.get_signing_data())

    def verify_signature(self) -> bool:
        """Verifies the witness signature against the acting member's key."""
        if not self.signature:
            return False
        return verify_signature(self.signer, self.signature, self.get_signing_data())

    @property
    def id(self) -> bytes:
        return generate_hash(self.get_signing_data())

    def pack(self) -> bytes:
        return msgpack.packb(self.to_dict(), use_bin_type=True)

    @classmethod
    def unpack(cls, data: bytes) -> 'Witness':
        try:
            raw = msgpack.unpackb(data, raw=False)
        except (msgpack.ExtraData, msgpack.FormatError, msgpack.StackError, ValueError) as e:
            raise InvalidParameter(f"Malformed witness bytes: {e}", field='witness')
        if not isinstance(raw, dict):
            raise InvalidParameter("Witness must be a map", field='witness')
        try:
            return cls.from_dict(raw)
        except (KeyError, ValueError, TypeError) as e:
            raise InvalidParameter(f"Malformed witness: {e}", field='witness')
