"""
Circle State Tool

Command-line access to the transition engine. States go in and come out
as hex blobs, so the tool can be scripted against any ledger client:

    python -m rosca_chain.cli create <contribution> <duration> <created_at> <founder> <capacity>
    python -m rosca_chain.cli add-member <state_hex> <pubkey_hex> <payout_round> <joined_at>
    python -m rosca_chain.cli contribute <state_hex> <pubkey_hex> <amount> <timestamp> <txid_hex>
    python -m rosca_chain.cli decode <state_hex>
    python -m rosca_chain.cli hash <state_hex>

Errors are written to stderr as JSON and the exit status is 1.
"""
import sys
import json
import argparse
import logging

from .chain import state_hash
from .codec import decode_hex, encode_hex
from .config import Config
from .engine import create_circle, add_member, record_contribution
from .errors import CircleError
from .state import validate

logger = logging.getLogger(__name__)


def _hex_bytes(value: str) -> bytes:
    try:
        return bytes.fromhex(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not a hex string: {value!r}")


def _load(state_hex: str):
    state = decode_hex(state_hex)
    validate(state)
    return state


def cmd_create(args) -> str:
    state = create_circle(
        contribution_per_round=args.contribution_per_round,
        round_duration=args.round_duration,
        created_at=args.created_at,
        founder_pubkey=args.founder_pubkey,
        member_capacity=args.member_capacity,
        circle_id=args.circle_id,
    )
    return encode_hex(state)


def cmd_add_member(args) -> str:
    state = add_member(_load(args.state), args.pubkey, args.payout_round, args.joined_at)
    return encode_hex(state)


def cmd_contribute(args) -> str:
    state = record_contribution(_load(args.state), args.pubkey, args.amount,
                                args.timestamp, args.txid)
    return encode_hex(state)


def cmd_decode(args) -> str:
    state = _load(args.state)
    view = state.to_dict()
    view['state_hash'] = state_hash(state).hex()
    return json.dumps(view, indent=2)


def cmd_hash(args) -> str:
    return state_hash(_load(args.state)).hex()


def cmd_sample_config(args) -> str:
    Config.default().to_file(args.output)
    return f"Generated sample configuration at: {args.output}"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Circle State Tool")
    subparsers = parser.add_subparsers(dest="command", required=True)

    p = subparsers.add_parser("create", help="Create a genesis circle state")
    p.add_argument("contribution_per_round", type=int)
    p.add_argument("round_duration", type=int, help="Seconds per round")
    p.add_argument("created_at", type=int, help="Unix timestamp")
    p.add_argument("founder_pubkey", type=_hex_bytes, help="33-byte compressed pubkey (hex)")
    p.add_argument("member_capacity", type=int, help="Number of members and rounds")
    p.add_argument("--circle-id", type=_hex_bytes, default=None, help="32-byte id (hex)")
    p.set_defaults(handler=cmd_create)

    p = subparsers.add_parser("add-member", help="Enroll a member")
    p.add_argument("state", help="Current state (hex)")
    p.add_argument("pubkey", type=_hex_bytes)
    p.add_argument("payout_round", type=int)
    p.add_argument("joined_at", type=int)
    p.set_defaults(handler=cmd_add_member)

    p = subparsers.add_parser("contribute", help="Record a contribution")
    p.add_argument("state", help="Current state (hex)")
    p.add_argument("pubkey", type=_hex_bytes)
    p.add_argument("amount", type=int)
    p.add_argument("timestamp", type=int)
    p.add_argument("txid", type=_hex_bytes, help="Funding transaction id (hex)")
    p.set_defaults(handler=cmd_contribute)

    p = subparsers.add_parser("decode", help="Show a state as JSON")
    p.add_argument("state", help="State (hex)")
    p.set_defaults(handler=cmd_decode)

    p = subparsers.add_parser("hash", help="Canonical hash of a state")
    p.add_argument("state", help="State (hex)")
    p.set_defaults(handler=cmd_hash)

    p = subparsers.add_parser("sample-config", help="Write a default configuration file")
    p.add_argument("--output", type=str, default="rosca.json", help="Output file path")
    p.set_defaults(handler=cmd_sample_config)

    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    try:
        output = args.handler(args)
    except CircleError as e:
        logger.debug(f"{args.command} failed: {e!r}")
        print(json.dumps(e.to_dict()), file=sys.stderr)
        return 1
    print(output)
    return 0


if __name__ == '__main__':
    sys.exit(main())
