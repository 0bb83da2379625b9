"""
MuSig2 Multi-Signature Implementation for the Bridge

This module implements BIP327 key aggregation, nonce generation and
aggregation, partial signing, partial signature verification and
aggregation. Curve arithmetic is delegated to coincurve; the point at
infinity is represented as None.

References:
- MuSig2 Paper: https://eprint.iacr.org/2020/1261.pdf
- BIP327: https://github.com/bitcoin/bips/blob/master/bip-0327.mediawiki
"""

import secrets
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from coincurve import PublicKey as CoinCurvePublicKey

from .exceptions import InvalidContributionError, MuSig2Error
from .keys import CURVE_ORDER, tagged_hash


n = CURVE_ORDER

Point = CoinCurvePublicKey

SECNONCE_SIZE = 97
PUBNONCE_SIZE = 66
AGGNONCE_SIZE = 66
PARTIAL_SIG_SIZE = 32


# Point helpers

def _int(b: bytes) -> int:
    return int.from_bytes(b, 'big')


def _bytes32(x: int) -> bytes:
    return x.to_bytes(32, 'big')


def point_mul_g(k: int) -> Optional[Point]:
    k %= n
    if k == 0:
        return None
    return CoinCurvePublicKey.from_secret(_bytes32(k))


def point_mul(P: Optional[Point], k: int) -> Optional[Point]:
    k %= n
    if P is None or k == 0:
        return None
    return P.multiply(_bytes32(k))


def point_add(P1: Optional[Point], P2: Optional[Point]) -> Optional[Point]:
    if P1 is None:
        return P2
    if P2 is None:
        return P1
    c1, c2 = P1.format(), P2.format()
    if c1[1:] == c2[1:] and c1[0] != c2[0]:
        # P + (-P)
        return None
    return CoinCurvePublicKey.combine_keys([P1, P2])


def point_negate(P: Optional[Point]) -> Optional[Point]:
    if P is None:
        return None
    c = P.format()
    return CoinCurvePublicKey(bytes([c[0] ^ 1]) + c[1:])


def points_equal(P1: Optional[Point], P2: Optional[Point]) -> bool:
    if P1 is None or P2 is None:
        return P1 is None and P2 is None
    return P1.format() == P2.format()


def has_even_y(P: Point) -> bool:
    return P.format()[0] == 0x02


def xbytes(P: Point) -> bytes:
    return P.format()[1:]


def cbytes(P: Point) -> bytes:
    return P.format()


def cbytes_ext(P: Optional[Point]) -> bytes:
    if P is None:
        return b'\x00' * 33
    return cbytes(P)


def cpoint(x: bytes) -> Point:
    """Parse a 33-byte compressed point, raising ValueError if it is invalid."""
    if len(x) != 33 or x[0] not in (2, 3):
        raise ValueError('x is not a valid compressed point.')
    try:
        return CoinCurvePublicKey(x)
    except ValueError as e:
        raise ValueError('x is not a valid compressed point.') from e


def cpoint_ext(x: bytes) -> Optional[Point]:
    if x == b'\x00' * 33:
        return None
    return cpoint(x)


# Key aggregation

@dataclass(frozen=True)
class KeyAggContext:
    """
    Aggregated key with accumulated tweak state.
    """
    Q: Point
    gacc: int = 1
    tacc: int = 0

    @property
    def xonly_pk(self) -> bytes:
        return xbytes(self.Q)


def individual_pk(seckey: bytes) -> bytes:
    """Return the 33-byte plain public key for a secret key."""
    d0 = _int(seckey)
    if not 1 <= d0 <= n - 1:
        raise ValueError('The secret key must be an integer in the range 1..n-1.')
    return cbytes(point_mul_g(d0))


def xonly_to_plain(x_only: bytes) -> bytes:
    """Map an x-only key to the even-y plain key used by key aggregation."""
    if len(x_only) != 32:
        raise ValueError('x-only public keys must be 32 bytes.')
    return b'\x02' + x_only


def hash_keys(pubkeys: List[bytes]) -> bytes:
    return tagged_hash('KeyAgg list', b''.join(pubkeys))


def get_second_key(pubkeys: List[bytes]) -> bytes:
    for pk in pubkeys[1:]:
        if pk != pubkeys[0]:
            return pk
    return b'\x00' * 33


def key_agg_coeff(pubkeys: List[bytes], pk_: bytes) -> int:
    return _key_agg_coeff_internal(pubkeys, pk_, get_second_key(pubkeys))


def _key_agg_coeff_internal(pubkeys: List[bytes], pk_: bytes, pk2: bytes) -> int:
    if pk_ == pk2:
        return 1
    return _int(tagged_hash('KeyAgg coefficient', hash_keys(pubkeys) + pk_)) % n


def key_agg(pubkeys: List[bytes]) -> KeyAggContext:
    """
    Aggregate plain public keys in the given order.

    Args:
        pubkeys: List of 33-byte compressed public keys

    Returns:
        KeyAggContext holding the aggregate point
    """
    if not pubkeys:
        raise ValueError('At least one public key is required.')
    pk2 = get_second_key(pubkeys)
    Q = None
    for i, pk in enumerate(pubkeys):
        try:
            P_i = cpoint(pk)
        except ValueError:
            raise InvalidContributionError(i, "pubkey")
        Q = point_add(Q, point_mul(P_i, _key_agg_coeff_internal(pubkeys, pk, pk2)))
    if Q is None:
        raise MuSig2Error('Aggregate public key is the point at infinity')
    return KeyAggContext(Q)


def apply_tweak(keyagg_ctx: KeyAggContext, tweak: bytes, is_xonly: bool) -> KeyAggContext:
    if len(tweak) != 32:
        raise ValueError('The tweak must be a 32-byte array.')
    g = n - 1 if is_xonly and not has_even_y(keyagg_ctx.Q) else 1
    t = _int(tweak)
    if t >= n:
        raise ValueError('The tweak must be less than n.')
    Q_ = point_add(point_mul(keyagg_ctx.Q, g), point_mul_g(t))
    if Q_ is None:
        raise ValueError('The result of tweaking cannot be infinity.')
    return KeyAggContext(Q_, g * keyagg_ctx.gacc % n, (t + g * keyagg_ctx.tacc) % n)


def key_agg_and_tweak(pubkeys: List[bytes], tweaks: List[bytes],
                      is_xonly: List[bool]) -> KeyAggContext:
    if len(tweaks) != len(is_xonly):
        raise ValueError('The `tweaks` and `is_xonly` arrays must have the same length.')
    keyagg_ctx = key_agg(pubkeys)
    for tweak, xonly in zip(tweaks, is_xonly):
        keyagg_ctx = apply_tweak(keyagg_ctx, tweak, xonly)
    return keyagg_ctx


# Nonces

def _bytes_xor(a: bytes, b: bytes) -> bytes:
    return bytes(x ^ y for x, y in zip(a, b))


def _nonce_hash(rand: bytes, pk: bytes, aggpk: bytes, i: int,
                msg_prefixed: bytes, extra_in: bytes) -> int:
    buf = rand
    buf += len(pk).to_bytes(1, 'big') + pk
    buf += len(aggpk).to_bytes(1, 'big') + aggpk
    buf += msg_prefixed
    buf += len(extra_in).to_bytes(4, 'big') + extra_in
    buf += i.to_bytes(1, 'big')
    return _int(tagged_hash('MuSig/nonce', buf))


def nonce_gen(sk: Optional[bytes], pk: bytes, aggpk: Optional[bytes] = None,
              msg: Optional[bytes] = None, extra_in: Optional[bytes] = None,
              rand_: Optional[bytes] = None) -> Tuple[bytearray, bytes]:
    """
    Generate a secret/public nonce pair.

    Args:
        sk: Optional 32-byte signing key mixed into the nonce derivation
        pk: 33-byte plain public key of the signer
        aggpk: Optional 32-byte x-only aggregate key
        msg: Optional message to bind
        extra_in: Optional extra input
        rand_: 32 bytes of randomness (fresh randomness when omitted)

    Returns:
        Tuple of (97-byte secnonce, 66-byte pubnonce)
    """
    if sk is not None and len(sk) != 32:
        raise ValueError('The optional byte array sk must have length 32.')
    if aggpk is not None and len(aggpk) != 32:
        raise ValueError('The optional byte array aggpk must have length 32.')
    if rand_ is None:
        rand_ = secrets.token_bytes(32)

    rand = _bytes_xor(sk, tagged_hash('MuSig/aux', rand_)) if sk is not None else rand_
    if msg is None:
        msg_prefixed = b'\x00'
    else:
        msg_prefixed = b'\x01' + len(msg).to_bytes(8, 'big') + msg

    k_1 = _nonce_hash(rand, pk, aggpk or b'', 0, msg_prefixed, extra_in or b'') % n
    k_2 = _nonce_hash(rand, pk, aggpk or b'', 1, msg_prefixed, extra_in or b'') % n
    if k_1 == 0 or k_2 == 0:
        raise MuSig2Error('Generated nonce is zero')

    pubnonce = cbytes(point_mul_g(k_1)) + cbytes(point_mul_g(k_2))
    secnonce = bytearray(_bytes32(k_1) + _bytes32(k_2) + pk)
    return secnonce, pubnonce


def nonce_agg(pubnonces: List[bytes]) -> bytes:
    """
    Aggregate public nonces into a 66-byte aggregate nonce.
    """
    aggnonce = b''
    for j in (1, 2):
        R_j = None
        for i, pubnonce in enumerate(pubnonces):
            try:
                R_ij = cpoint(pubnonce[(j - 1) * 33:j * 33])
            except ValueError:
                raise InvalidContributionError(i, "pubnonce")
            R_j = point_add(R_j, R_ij)
        aggnonce += cbytes_ext(R_j)
    return aggnonce


# Signing sessions

@dataclass
class SessionContext:
    """
    Everything a signer needs to produce or check partial signatures.
    """
    aggnonce: bytes
    pubkeys: List[bytes]
    msg: bytes
    tweaks: List[bytes] = field(default_factory=list)
    is_xonly: List[bool] = field(default_factory=list)


@dataclass(frozen=True)
class SessionValues:
    Q: Point
    gacc: int
    tacc: int
    b: int
    R: Point
    e: int


def get_session_values(session_ctx: SessionContext) -> SessionValues:
    keyagg_ctx = key_agg_and_tweak(session_ctx.pubkeys, session_ctx.tweaks, session_ctx.is_xonly)
    Q = keyagg_ctx.Q
    aggnonce = session_ctx.aggnonce
    b = _int(tagged_hash('MuSig/noncecoef', aggnonce + xbytes(Q) + session_ctx.msg)) % n
    try:
        R_1 = cpoint_ext(aggnonce[0:33])
        R_2 = cpoint_ext(aggnonce[33:66])
    except ValueError:
        raise InvalidContributionError(None, "aggnonce")
    R_ = point_add(R_1, point_mul(R_2, b))
    R = R_ if R_ is not None else point_mul_g(1)
    e = _int(tagged_hash('BIP0340/challenge', xbytes(R) + xbytes(Q) + session_ctx.msg)) % n
    return SessionValues(Q, keyagg_ctx.gacc, keyagg_ctx.tacc, b, R, e)


def _session_key_agg_coeff(session_ctx: SessionContext, P: Point) -> int:
    pk = cbytes(P)
    if pk not in session_ctx.pubkeys:
        raise ValueError("The signer's pubkey must be included in the list of pubkeys.")
    return key_agg_coeff(session_ctx.pubkeys, pk)


def sign(secnonce: bytearray, sk: bytes, session_ctx: SessionContext) -> bytes:
    """
    Produce a 32-byte partial signature.

    The first 64 bytes of secnonce are zeroed so the same buffer can never
    sign twice.
    """
    values = get_session_values(session_ctx)
    k_1_ = _int(secnonce[0:32])
    k_2_ = _int(secnonce[32:64])
    secnonce[:64] = bytearray(64)
    if not 0 < k_1_ < n:
        raise ValueError('first secnonce value is out of range.')
    if not 0 < k_2_ < n:
        raise ValueError('second secnonce value is out of range.')
    k_1 = k_1_ if has_even_y(values.R) else n - k_1_
    k_2 = k_2_ if has_even_y(values.R) else n - k_2_

    d_ = _int(sk)
    if not 0 < d_ < n:
        raise ValueError('secret key value is out of range.')
    P = point_mul_g(d_)
    pk = cbytes(P)
    if pk != bytes(secnonce[64:97]):
        raise ValueError('Public key does not match nonce_gen argument')

    a = _session_key_agg_coeff(session_ctx, P)
    g = 1 if has_even_y(values.Q) else n - 1
    d = g * values.gacc * d_ % n
    s = (k_1 + values.b * k_2 + values.e * a * d) % n
    psig = _bytes32(s)

    pubnonce = cbytes(point_mul_g(k_1_)) + cbytes(point_mul_g(k_2_))
    if not partial_sig_verify_internal(psig, pubnonce, pk, session_ctx):
        raise MuSig2Error('Produced partial signature does not verify')
    return psig


def partial_sig_verify(psig: bytes, pubnonces: List[bytes], pubkeys: List[bytes],
                       msg: bytes, i: int, tweaks: Optional[List[bytes]] = None,
                       is_xonly: Optional[List[bool]] = None) -> bool:
    if len(pubnonces) != len(pubkeys):
        raise ValueError('The `pubnonces` and `pubkeys` arrays must have the same length.')
    session_ctx = SessionContext(nonce_agg(pubnonces), pubkeys, msg,
                                 tweaks or [], is_xonly or [])
    return partial_sig_verify_internal(psig, pubnonces[i], pubkeys[i], session_ctx)


def partial_sig_verify_internal(psig: bytes, pubnonce: bytes, pk: bytes,
                                session_ctx: SessionContext) -> bool:
    values = get_session_values(session_ctx)
    s = _int(psig)
    if s >= n:
        return False
    R_s1 = cpoint(pubnonce[0:33])
    R_s2 = cpoint(pubnonce[33:66])
    Re_s_ = point_add(R_s1, point_mul(R_s2, values.b))
    Re_s = Re_s_ if has_even_y(values.R) else point_negate(Re_s_)
    P = cpoint(pk)
    a = _session_key_agg_coeff(session_ctx, P)
    g = 1 if has_even_y(values.Q) else n - 1
    g_ = g * values.gacc % n
    return points_equal(point_mul_g(s), point_add(Re_s, point_mul(P, values.e * a * g_ % n)))


def partial_sig_agg(psigs: List[bytes], session_ctx: SessionContext) -> bytes:
    """
    Sum partial signatures into a 64-byte BIP340 signature for the aggregate key.
    """
    values = get_session_values(session_ctx)
    s = 0
    for i, psig in enumerate(psigs):
        s_i = _int(psig)
        if s_i >= n:
            raise InvalidContributionError(i, "psig")
        s = (s + s_i) % n
    g = 1 if has_even_y(values.Q) else n - 1
    s = (s + values.e * g * values.tacc) % n
    return xbytes(values.R) + _bytes32(s)


def normalize_signing_key(sk: bytes) -> bytes:
    """
    Return the secret key whose public key has even y.

    Signers registered by x-only key must sign with this key so that their
    plain key matches xonly_to_plain.
    """
    d = _int(sk)
    if has_even_y(point_mul_g(d)):
        return sk
    return _bytes32(n - d)
