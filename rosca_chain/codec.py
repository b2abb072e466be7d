"""
Canonical binary encoding of circle state.

Layout (format version 1). Every integer is fixed width and big-endian,
collections are written in insertion order and prefixed by a u32 count:

    u8   version
    32   circle_id
    u64  contribution_per_round
    u64  round_duration
    u64  created_at
    u64  round_started_at
    u32  member_capacity
    u32  current_round
    u32  current_payout_index
    u64  current_pool
    u8   is_complete
    32   prev_state_hash
    u32  member count, then per member:
         33   pubkey
         u32  payout_round
         u64  joined_at
         u8   has_received_payout
         u32  history count, then per record:
              u32  round
              u64  amount
              u64  timestamp
              32   tx_reference

There is exactly one encoding per state, so hashing the bytes identifies
the state.
"""
import struct

from .crypto import PUBKEY_LENGTH, HASH_LENGTH, CIRCLE_ID_LENGTH, COMPRESSED_PREFIXES
from .errors import DecodeError, InvalidParameter
from .state import CircleState, Member, ContributionRecord

FORMAT_VERSION = 1

U8 = struct.Struct('>B')
U32 = struct.Struct('>I')
U64 = struct.Struct('>Q')

_HEADER = struct.Struct('>B32sQQQQIIIQB32sI')
_MEMBER = struct.Struct('>33sIQBI')
_RECORD = struct.Struct('>IQQ32s')

_U32_MAX = 2**32 - 1
_U64_MAX = 2**64 - 1


def _check_uint(value, bits: int, name: str):
    limit = _U32_MAX if bits == 32 else _U64_MAX
    if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= limit:
        raise InvalidParameter(f"{name} must be an unsigned {bits}-bit integer", field=name)


def _check_bytes(value, length: int, name: str):
    if not isinstance(value, (bytes, bytearray)) or len(value) != length:
        raise InvalidParameter(f"{name} must be {length} bytes", field=name)


def encode(state: CircleState) -> bytes:
    """Encode a circle state into its canonical byte form."""
    _check_bytes(state.circle_id, CIRCLE_ID_LENGTH, 'circle_id')
    _check_bytes(state.prev_state_hash, HASH_LENGTH, 'prev_state_hash')
    for name in ('contribution_per_round', 'round_duration', 'created_at',
                 'round_started_at', 'current_pool'):
        _check_uint(getattr(state, name), 64, name)
    for name in ('member_capacity', 'current_round', 'current_payout_index'):
        _check_uint(getattr(state, name), 32, name)
    _check_uint(len(state.members), 32, 'members')

    out = bytearray(_HEADER.pack(
        FORMAT_VERSION,
        bytes(state.circle_id),
        state.contribution_per_round,
        state.round_duration,
        state.created_at,
        state.round_started_at,
        state.member_capacity,
        state.current_round,
        state.current_payout_index,
        state.current_pool,
        1 if state.is_complete else 0,
        bytes(state.prev_state_hash),
        len(state.members),
    ))

    for member in state.members:
        _check_bytes(member.pubkey, PUBKEY_LENGTH, 'members.pubkey')
        _check_uint(member.payout_round, 32, 'members.payout_round')
        _check_uint(member.joined_at, 64, 'members.joined_at')
        out += _MEMBER.pack(
            bytes(member.pubkey),
            member.payout_round,
            member.joined_at,
            1 if member.has_received_payout else 0,
            len(member.contribution_history),
        )
        for record in member.contribution_history:
            _check_uint(record.round, 32, 'contribution.round')
            _check_uint(record.amount, 64, 'contribution.amount')
            _check_uint(record.timestamp, 64, 'contribution.timestamp')
            _check_bytes(record.tx_reference, HASH_LENGTH, 'contribution.tx_reference')
            out += _RECORD.pack(
                record.round,
                record.amount,
                record.timestamp,
                bytes(record.tx_reference),
            )

    return bytes(out)


class _Reader:
    """Cursor over an encoded blob that reports where decoding failed."""

    def __init__(self, data: bytes):
        self.data = data
        self.offset = 0

    def unpack(self, fmt: struct.Struct, name: str) -> tuple:
        end = self.offset + fmt.size
        if end > len(self.data):
            raise DecodeError(
                f"Truncated input while reading {name}: need {fmt.size} bytes, "
                f"{len(self.data) - self.offset} left",
                field=name,
                offset=self.offset,
            )
        values = fmt.unpack_from(self.data, self.offset)
        self.offset = end
        return values

    def finish(self):
        if self.offset != len(self.data):
            raise DecodeError(
                f"{len(self.data) - self.offset} trailing bytes after circle state",
                field='trailing',
                offset=self.offset,
            )


def _bool(value: int, name: str, offset: int) -> bool:
    if value not in (0, 1):
        raise DecodeError(f"{name} must be 0 or 1, got {value}", field=name, offset=offset)
    return value == 1


def decode(data: bytes) -> CircleState:
    """
    Decode canonical bytes into a circle state.

    Only static ranges are checked here; run state.validate() for the
    circle invariants.
    """
    if not isinstance(data, (bytes, bytearray, memoryview)):
        raise DecodeError("Encoded state must be bytes", field='data', offset=0)
    reader = _Reader(bytes(data))

    header_offset = reader.offset
    (version, circle_id, contribution_per_round, round_duration, created_at,
     round_started_at, member_capacity, current_round, current_payout_index,
     current_pool, is_complete, prev_state_hash, member_count) = reader.unpack(_HEADER, 'header')
    if version != FORMAT_VERSION:
        raise DecodeError(f"Unsupported state format version {version}",
                          field='version', offset=header_offset)
    is_complete = _bool(is_complete, 'is_complete', header_offset)

    members = []
    for _ in range(member_count):
        member_offset = reader.offset
        pubkey, payout_round, joined_at, paid, history_count = reader.unpack(_MEMBER, 'member')
        if pubkey[0] not in COMPRESSED_PREFIXES:
            raise DecodeError("Member pubkey is not a compressed point encoding",
                              field='members.pubkey', offset=member_offset)
        paid = _bool(paid, 'members.has_received_payout', member_offset)

        history = []
        for _ in range(history_count):
            round_number, amount, timestamp, tx_reference = reader.unpack(_RECORD, 'contribution')
            history.append(ContributionRecord(
                round=round_number,
                amount=amount,
                timestamp=timestamp,
                tx_reference=tx_reference,
            ))

        members.append(Member(
            pubkey=pubkey,
            payout_round=payout_round,
            joined_at=joined_at,
            has_received_payout=paid,
            contribution_history=tuple(history),
        ))

    reader.finish()

    return CircleState(
        circle_id=circle_id,
        contribution_per_round=contribution_per_round,
        round_duration=round_duration,
        member_capacity=member_capacity,
        created_at=created_at,
        round_started_at=round_started_at,
        current_round=current_round,
        current_payout_index=current_payout_index,
        current_pool=current_pool,
        is_complete=is_complete,
        members=tuple(members),
        prev_state_hash=prev_state_hash,
    )


def encode_hex(state: CircleState) -> str:
    """Hex form used as the ledger output payload."""
    return encode(state).hex()


def decode_hex(blob: str) -> CircleState:
    try:
        data = bytes.fromhex(blob.strip())
    except ValueError as e:
        raise DecodeError(f"State blob is not valid hex: {e}", field='data', offset=0)
    return decode(data)
