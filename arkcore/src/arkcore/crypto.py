"""
Cryptographic primitives for Ark.

Hashes, BIP-340 Schnorr signatures and the small amount of secp256k1 point
arithmetic needed by Taproot and MuSig2, all on top of coincurve.
"""

from __future__ import annotations

import hashlib
import secrets

from coincurve import PrivateKey, PublicKey, PublicKeyXOnly

from arkcore.constants import CURVE_ORDER


class CryptoError(Exception):
    pass


def sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def double_sha256(data: bytes) -> bytes:
    return sha256(sha256(data))


def hash160(data: bytes) -> bytes:
    """RIPEMD160(SHA256(data))."""
    h = hashlib.new("ripemd160")
    h.update(sha256(data))
    return h.digest()


def tagged_hash(tag: str, data: bytes) -> bytes:
    """BIP-340 tagged hash: SHA256(SHA256(tag) || SHA256(tag) || data)."""
    tag_digest = sha256(tag.encode("utf-8"))
    return sha256(tag_digest + tag_digest + data)


def int_from_bytes(data: bytes) -> int:
    return int.from_bytes(data, "big")


def bytes_from_int(value: int) -> bytes:
    return value.to_bytes(32, "big")


def random_private_key() -> bytes:
    while True:
        candidate = secrets.token_bytes(32)
        if 0 < int_from_bytes(candidate) < CURVE_ORDER:
            return candidate


def public_key_from_private(private_key: bytes) -> bytes:
    """Compressed (33 byte) public key for a private key."""
    return PrivateKey(private_key).public_key.format(compressed=True)


def x_only(public_key: bytes) -> bytes:
    """Drop the parity byte of a compressed key. x-only keys pass through."""
    if len(public_key) == 32:
        return public_key
    if len(public_key) == 33:
        return public_key[1:]
    raise CryptoError(f"Invalid public key length: {len(public_key)}")


def lift_x(x: bytes) -> PublicKey:
    """The point with x coordinate ``x`` and even y (BIP-340 lift_x)."""
    if len(x) != 32:
        raise CryptoError(f"Invalid x-only key length: {len(x)}")
    try:
        return PublicKey(b"\x02" + x)
    except Exception as e:
        raise CryptoError(f"Invalid x-only key {x.hex()}: {e}") from e


def load_point(public_key: bytes) -> PublicKey:
    """Parse a compressed or x-only public key."""
    if len(public_key) == 32:
        return lift_x(public_key)
    try:
        return PublicKey(public_key)
    except Exception as e:
        raise CryptoError(f"Invalid public key {public_key.hex()}: {e}") from e


def has_even_y(point: PublicKey) -> bool:
    return point.format(compressed=True)[0] == 0x02


def point_x(point: PublicKey) -> bytes:
    return point.format(compressed=True)[1:]


def point_negate(point: PublicKey) -> PublicKey:
    compressed = point.format(compressed=True)
    prefix = b"\x03" if compressed[0] == 0x02 else b"\x02"
    return PublicKey(prefix + compressed[1:])


def point_add(*points: PublicKey) -> PublicKey:
    """Sum of points. Raises CryptoError if the sum is the point at infinity."""
    try:
        if len(points) == 1:
            return points[0]
        return PublicKey.combine_keys(list(points))
    except Exception as e:
        raise CryptoError(f"Point addition failed: {e}") from e


def point_mul(point: PublicKey, scalar: int) -> PublicKey:
    scalar %= CURVE_ORDER
    if scalar == 0:
        raise CryptoError("Multiplication by zero scalar")
    return point.multiply(bytes_from_int(scalar))


def scalar_base_mul(scalar: int) -> PublicKey:
    scalar %= CURVE_ORDER
    if scalar == 0:
        raise CryptoError("Multiplication by zero scalar")
    return PublicKey.from_secret(bytes_from_int(scalar))


def schnorr_sign(message: bytes, private_key: bytes, aux_rand: bytes | None = None) -> bytes:
    """
    Create a BIP-340 Schnorr signature.

    Args:
        message: 32-byte message (usually a sighash)
        private_key: 32-byte private key
        aux_rand: Optional 32 bytes of auxiliary randomness

    Returns:
        64-byte signature
    """
    if len(message) != 32:
        raise CryptoError(f"Schnorr message must be 32 bytes, got {len(message)}")
    key = PrivateKey(private_key)
    if aux_rand is None:
        aux_rand = secrets.token_bytes(32)
    return key.sign_schnorr(message, aux_rand)


def schnorr_verify(message: bytes, signature: bytes, public_key: bytes) -> bool:
    """Verify a BIP-340 signature against an x-only (or compressed) key."""
    try:
        if len(signature) != 64:
            return False
        return PublicKeyXOnly(x_only(public_key)).verify(signature, message)
    except Exception:
        return False


def taproot_tweak_private_key(private_key: bytes, merkle_root: bytes = b"") -> bytes:
    """Private key matching the BIP-341 tweaked output key (key path spends)."""
    d = int_from_bytes(private_key)
    point = scalar_base_mul(d)
    if not has_even_y(point):
        d = CURVE_ORDER - d
    tweak = int_from_bytes(tagged_hash("TapTweak", point_x(point) + merkle_root))
    if tweak >= CURVE_ORDER:
        raise CryptoError("TapTweak out of range")
    return bytes_from_int((d + tweak) % CURVE_ORDER)
