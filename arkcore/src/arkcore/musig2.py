"""
MuSig2 multi-signatures (BIP-327) on top of coincurve.

Covers what the tree signing protocol needs: key aggregation with an x-only
taproot tweak, nonce generation and aggregation, partial signing, partial
signature verification and aggregation into a BIP-340 signature.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass, field

from coincurve import PublicKey

from arkcore.constants import CURVE_ORDER
from arkcore.crypto import (
    CryptoError,
    bytes_from_int,
    has_even_y,
    int_from_bytes,
    load_point,
    point_add,
    point_mul,
    point_negate,
    point_x,
    public_key_from_private,
    scalar_base_mul,
    tagged_hash,
)

PUBNONCE_SIZE = 66
PARTIAL_SIG_SIZE = 32
_INFINITY_ENCODING = b"\x00" * 33


class Musig2Error(Exception):
    """Raised on invalid MuSig2 inputs or protocol misuse."""

    pass


def key_sort(pubkeys: list[bytes]) -> list[bytes]:
    """Sort compressed public keys lexicographically (BIP-327 KeySort)."""
    return sorted(pubkeys)


def _hash_keys(pubkeys: list[bytes]) -> bytes:
    return tagged_hash("KeyAgg list", b"".join(pubkeys))


def _second_key(pubkeys: list[bytes]) -> bytes:
    for pk in pubkeys[1:]:
        if pk != pubkeys[0]:
            return pk
    return _INFINITY_ENCODING


def key_agg_coeff(pubkeys: list[bytes], pubkey: bytes) -> int:
    if pubkey == _second_key(pubkeys):
        return 1
    digest = tagged_hash("KeyAgg coefficient", _hash_keys(pubkeys) + pubkey)
    return int_from_bytes(digest) % CURVE_ORDER


@dataclass
class KeyAggContext:
    """Aggregated key ``q`` plus the accumulated tweak state."""

    pubkeys: list[bytes]
    q: PublicKey
    gacc: int = 1
    tacc: int = 0

    @property
    def xonly(self) -> bytes:
        return point_x(self.q)

    @property
    def compressed(self) -> bytes:
        return self.q.format(compressed=True)

    def apply_tweak(self, tweak: bytes, is_xonly: bool) -> KeyAggContext:
        """Return a new context with ``tweak`` added (BIP-327 ApplyTweak)."""
        if len(tweak) != 32:
            raise Musig2Error("The tweak must be a 32-byte array")
        t = int_from_bytes(tweak)
        if t >= CURVE_ORDER:
            raise Musig2Error("The tweak must be less than n")
        negate = is_xonly and not has_even_y(self.q)
        g = CURVE_ORDER - 1 if negate else 1
        gq = point_negate(self.q) if negate else self.q
        try:
            q = point_add(gq, scalar_base_mul(t)) if t else gq
        except CryptoError as e:
            raise Musig2Error("The result of tweaking cannot be infinity") from e
        return KeyAggContext(
            pubkeys=self.pubkeys,
            q=q,
            gacc=(g * self.gacc) % CURVE_ORDER,
            tacc=(t + g * self.tacc) % CURVE_ORDER,
        )


def key_agg(pubkeys: list[bytes]) -> KeyAggContext:
    """Aggregate compressed public keys in the given order."""
    if not pubkeys:
        raise Musig2Error("Cannot aggregate an empty key list")
    for pk in pubkeys:
        if len(pk) != 33:
            raise Musig2Error(f"Invalid compressed public key length: {len(pk)}")
    terms = []
    for pk in pubkeys:
        try:
            point = load_point(pk)
        except CryptoError as e:
            raise Musig2Error(f"Invalid public key {pk.hex()}") from e
        terms.append(point_mul(point, key_agg_coeff(pubkeys, pk)))
    try:
        q = point_add(*terms)
    except CryptoError as e:
        raise Musig2Error("Aggregated key is the point at infinity") from e
    return KeyAggContext(pubkeys=list(pubkeys), q=q)


@dataclass
class AggregateKey:
    pre_tweaked_key: bytes
    final_key: bytes
    context: KeyAggContext


def aggregate_keys(
    pubkeys: list[bytes], sort: bool = True, taproot_tweak: bytes | None = None
) -> AggregateKey:
    """
    Aggregate keys and optionally apply the BIP-341 taproot tweak.

    Args:
        pubkeys: 33-byte compressed keys
        sort: Sort the keys before aggregation
        taproot_tweak: Merkle root committed by the tweak (``None`` for no tweak)

    Returns:
        Compressed pre-tweaked and final keys with the signing context
    """
    if sort:
        pubkeys = key_sort(pubkeys)
    ctx = key_agg(pubkeys)
    pre_tweaked = ctx.compressed
    if taproot_tweak is not None:
        tweak = tagged_hash("TapTweak", ctx.xonly + taproot_tweak)
        ctx = ctx.apply_tweak(tweak, is_xonly=True)
    return AggregateKey(pre_tweaked_key=pre_tweaked, final_key=ctx.compressed, context=ctx)


@dataclass
class SecretNonce:
    """
    Secret half of a MuSig2 nonce.

    A secret nonce may be used for exactly one partial signature; reuse would
    leak the private key, so ``take`` clears it.
    """

    k1: int
    k2: int
    pubkey: bytes
    used: bool = field(default=False)

    def take(self) -> tuple[int, int]:
        if self.used:
            raise Musig2Error("Secret nonce has already been used")
        k1, k2 = self.k1, self.k2
        self.k1 = self.k2 = 0
        self.used = True
        return k1, k2


def _nonce_hash(
    rand: bytes, pubkey: bytes, aggpk: bytes, i: int, msg: bytes | None, extra_in: bytes
) -> int:
    if msg is None:
        msg_prefixed = b"\x00"
    else:
        msg_prefixed = b"\x01" + len(msg).to_bytes(8, "big") + msg
    data = (
        rand
        + bytes([len(pubkey)])
        + pubkey
        + bytes([len(aggpk)])
        + aggpk
        + msg_prefixed
        + len(extra_in).to_bytes(4, "big")
        + extra_in
        + bytes([i])
    )
    return int_from_bytes(tagged_hash("MuSig/nonce", data)) % CURVE_ORDER


def nonce_gen(
    pubkey: bytes,
    private_key: bytes | None = None,
    aggpk: bytes = b"",
    msg: bytes | None = None,
    extra_in: bytes = b"",
) -> tuple[SecretNonce, bytes]:
    """
    Generate a fresh nonce pair (BIP-327 NonceGen).

    Returns:
        (secret nonce, 66-byte public nonce)
    """
    if len(pubkey) != 33:
        raise Musig2Error(f"Invalid compressed public key length: {len(pubkey)}")
    while True:
        rand = secrets.token_bytes(32)
        if private_key is not None:
            aux = tagged_hash("MuSig/aux", rand)
            rand = bytes(a ^ b for a, b in zip(private_key, aux, strict=True))
        k1 = _nonce_hash(rand, pubkey, aggpk, 0, msg, extra_in)
        k2 = _nonce_hash(rand, pubkey, aggpk, 1, msg, extra_in)
        if k1 and k2:
            break
    pubnonce = (
        scalar_base_mul(k1).format(compressed=True) + scalar_base_mul(k2).format(compressed=True)
    )
    return SecretNonce(k1=k1, k2=k2, pubkey=pubkey), pubnonce


def _decode_point_ext(data: bytes) -> PublicKey | None:
    if data == _INFINITY_ENCODING:
        return None
    try:
        return load_point(data)
    except CryptoError as e:
        raise Musig2Error(f"Invalid nonce point {data.hex()}") from e


def _encode_point_ext(point: PublicKey | None) -> bytes:
    return _INFINITY_ENCODING if point is None else point.format(compressed=True)


def _add_ext(a: PublicKey | None, b: PublicKey | None) -> PublicKey | None:
    if a is None:
        return b
    if b is None:
        return a
    try:
        return point_add(a, b)
    except CryptoError:
        return None


def nonce_agg(pubnonces: list[bytes]) -> bytes:
    """Aggregate public nonces into a 66-byte aggregate nonce."""
    if not pubnonces:
        raise Musig2Error("Cannot aggregate an empty nonce list")
    aggregated = []
    for j in range(2):
        total: PublicKey | None = None
        for pubnonce in pubnonces:
            if len(pubnonce) != PUBNONCE_SIZE:
                raise Musig2Error(f"Invalid public nonce length: {len(pubnonce)}")
            point = _decode_point_ext(pubnonce[j * 33 : (j + 1) * 33])
            if point is None:
                raise Musig2Error("Public nonce contains the point at infinity")
            total = _add_ext(total, point)
        aggregated.append(_encode_point_ext(total))
    return aggregated[0] + aggregated[1]


@dataclass
class _SessionValues:
    q: PublicKey
    gacc: int
    tacc: int
    b: int
    r: PublicKey
    e: int


def _session_values(ctx: KeyAggContext, aggnonce: bytes, msg: bytes) -> _SessionValues:
    if len(aggnonce) != PUBNONCE_SIZE:
        raise Musig2Error(f"Invalid aggregate nonce length: {len(aggnonce)}")
    r1 = _decode_point_ext(aggnonce[:33])
    r2 = _decode_point_ext(aggnonce[33:])
    b = int_from_bytes(tagged_hash("MuSig/noncecoef", aggnonce + ctx.xonly + msg)) % CURVE_ORDER
    r2b = point_mul(r2, b) if r2 is not None and b else None
    r = _add_ext(r1, r2b)
    if r is None:
        r = scalar_base_mul(1)
    e = int_from_bytes(tagged_hash("BIP0340/challenge", point_x(r) + ctx.xonly + msg))
    return _SessionValues(q=ctx.q, gacc=ctx.gacc, tacc=ctx.tacc, b=b, r=r, e=e % CURVE_ORDER)


def partial_sign(
    secnonce: SecretNonce,
    private_key: bytes,
    ctx: KeyAggContext,
    aggnonce: bytes,
    msg: bytes,
) -> bytes:
    """
    Produce a 32-byte partial signature (BIP-327 Sign).

    Raises:
        Musig2Error: If the nonce was already used, the key does not match the
            nonce or the key is not part of the aggregate
    """
    pubkey = public_key_from_private(private_key)
    if pubkey != secnonce.pubkey:
        raise Musig2Error("Secret nonce was generated for a different public key")
    if pubkey not in ctx.pubkeys:
        raise Musig2Error("Signer key is not part of the aggregated keys")
    k1, k2 = secnonce.take()
    values = _session_values(ctx, aggnonce, msg)
    if not has_even_y(values.r):
        k1, k2 = CURVE_ORDER - k1, CURVE_ORDER - k2
    d = int_from_bytes(private_key)
    if not 0 < d < CURVE_ORDER:
        raise Musig2Error("Invalid private key")
    g = 1 if has_even_y(values.q) else CURVE_ORDER - 1
    d = (g * values.gacc * d) % CURVE_ORDER
    a = key_agg_coeff(ctx.pubkeys, pubkey)
    s = (k1 + values.b * k2 + values.e * a * d) % CURVE_ORDER
    return bytes_from_int(s)


def partial_sig_verify(
    partial_sig: bytes,
    pubnonce: bytes,
    pubkey: bytes,
    ctx: KeyAggContext,
    aggnonce: bytes,
    msg: bytes,
) -> bool:
    """Check one signer's partial signature against its public nonce and key."""
    if len(partial_sig) != PARTIAL_SIG_SIZE or len(pubnonce) != PUBNONCE_SIZE:
        return False
    s = int_from_bytes(partial_sig)
    if s == 0 or s >= CURVE_ORDER:
        return False
    try:
        values = _session_values(ctx, aggnonce, msg)
        r1 = load_point(pubnonce[:33])
        r2 = load_point(pubnonce[33:])
        r_i = _add_ext(r1, point_mul(r2, values.b) if values.b else None)
        if r_i is None:
            return False
        if not has_even_y(values.r):
            r_i = point_negate(r_i)
        g = 1 if has_even_y(values.q) else CURVE_ORDER - 1
        a = key_agg_coeff(ctx.pubkeys, pubkey)
        scalar = (values.e * a * g * values.gacc) % CURVE_ORDER
        expected = _add_ext(r_i, point_mul(load_point(pubkey), scalar) if scalar else None)
    except (CryptoError, Musig2Error):
        return False
    if expected is None:
        return False
    return scalar_base_mul(s).format() == expected.format()


def partial_sig_agg(
    partial_sigs: list[bytes], ctx: KeyAggContext, aggnonce: bytes, msg: bytes
) -> bytes:
    """Combine partial signatures into a 64-byte BIP-340 signature."""
    values = _session_values(ctx, aggnonce, msg)
    s = 0
    for psig in partial_sigs:
        value = int_from_bytes(psig)
        if len(psig) != PARTIAL_SIG_SIZE or value >= CURVE_ORDER:
            raise Musig2Error("Invalid partial signature")
        s = (s + value) % CURVE_ORDER
    g = 1 if has_even_y(values.q) else CURVE_ORDER - 1
    s = (s + values.e * g * values.tacc) % CURVE_ORDER
    return point_x(values.r) + bytes_from_int(s)
