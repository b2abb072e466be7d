"""
Core cryptographic functions for circle state.
"""
import hashlib
import nacl.utils
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives import serialization
from cryptography.exceptions import InvalidSignature

PUBKEY_LENGTH = 33
HASH_LENGTH = 32
CIRCLE_ID_LENGTH = 32
COMPRESSED_PREFIXES = (0x02, 0x03)

CURVE = ec.SECP256K1()


def sha256(data: bytes) -> bytes:
    """SHA-256 digest, used for canonical state hashes."""
    return hashlib.sha256(data).digest()


def generate_hash(data: bytes) -> bytes:
    """Generates a Keccak-256 hash."""
    from Crypto.Hash import keccak
    return keccak.new(digest_bits=256, data=data).digest()


def random_circle_id() -> bytes:
    """Draws a fresh 32-byte circle identifier from the OS CSPRNG."""
    return nacl.utils.random(CIRCLE_ID_LENGTH)


def generate_key_pair() -> tuple[ec.EllipticCurvePrivateKey, ec.EllipticCurvePublicKey]:
    """Generates an ECDSA private/public key pair (SECP256k1)."""
    private_key = ec.generate_private_key(CURVE)
    return private_key, private_key.public_key()


def compress_public_key(public_key: ec.EllipticCurvePublicKey) -> bytes:
    """Serializes a public key into its 33-byte compressed point form."""
    return public_key.public_bytes(
        encoding=serialization.Encoding.X962,
        format=serialization.PublicFormat.CompressedPoint
    )


def load_public_key(pubkey: bytes) -> ec.EllipticCurvePublicKey:
    """
    Loads a compressed SECP256k1 point.

    Raises ValueError when the bytes are not a point on the curve.
    """
    if len(pubkey) != PUBKEY_LENGTH or pubkey[0] not in COMPRESSED_PREFIXES:
        raise ValueError("Public key must be a 33-byte compressed point")
    return ec.EllipticCurvePublicKey.from_encoded_point(CURVE, pubkey)


def is_valid_public_key(pubkey: bytes) -> bool:
    try:
        load_public_key(pubkey)
        return True
    except ValueError:
        return False


def sign(private_key: ec.EllipticCurvePrivateKey, data: bytes) -> bytes:
    """Signs byte data using ECDSA with SHA256."""
    return private_key.sign(data, ec.ECDSA(hashes.SHA256()))


def verify_signature(pubkey: bytes, signature: bytes, data: bytes) -> bool:
    """Verifies an ECDSA/SHA256 signature against a compressed public key."""
    try:
        public_key = load_public_key(pubkey)
        public_key.verify(signature, data, ec.ECDSA(hashes.SHA256()))
        return True
    except (InvalidSignature, ValueError):
        return False
