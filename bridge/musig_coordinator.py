"""
Bridge - MuSig2 Nonce and Partial Signature Lifecycle

Each deposit owns a fixed number of nonce slots. A slot moves through
generated -> aggregated nonce received -> partially signed, and every step
is persisted in the caller's database transaction so that retries return
the stored values instead of producing new ones.

Slot layout for a deposit with K kickoffs:
    0             move commit
    1             move reveal
    2 .. 2+K      operator take, one per kickoff
    2+K .. 2+2K   burn, one per kickoff
"""

import logging
from typing import List, Optional, Sequence

from crypto import musig2
from crypto.signatures import verify_schnorr
from database.schema import NonceRecord, PartialSigRecord, SignatureRole
from database.verifier_db import VerifierSession

from .errors import AggNonceMissing, NonceReuseDetected, NoncesNotFound, PublicKeyNotFound


MOVE_COMMIT_SLOT = 0
MOVE_REVEAL_SLOT = 1
FIRST_KICKOFF_SLOT = 2


def max_kickoffs(num_nonces: int) -> int:
    """Largest kickoff count whose take and burn slots fit in num_nonces."""
    return (num_nonces - FIRST_KICKOFF_SLOT) // 2


def slots_used(num_kickoffs: int) -> int:
    return FIRST_KICKOFF_SLOT + 2 * num_kickoffs


def operator_take_slot(kickoff_index: int) -> int:
    return FIRST_KICKOFF_SLOT + kickoff_index


def burn_slot(kickoff_index: int, num_kickoffs: int) -> int:
    return FIRST_KICKOFF_SLOT + num_kickoffs + kickoff_index


def aggregate_key(verifiers_pks: Sequence[bytes]) -> bytes:
    """x-only MuSig2 aggregate of the verifier keys, in configured order."""
    return musig2.key_agg([musig2.xonly_to_plain(pk) for pk in verifiers_pks]).xonly_pk


def aggregate_partial_signatures(verifiers_pks: Sequence[bytes], agg_nonce: bytes,
                                 message: bytes, partial_sigs: Sequence[bytes]) -> bytes:
    """
    Combine every verifier's partial signature into one BIP340 signature.

    Args:
        verifiers_pks: x-only verifier keys in configured order
        agg_nonce: 66-byte aggregated nonce of the slot
        message: Signed 32-byte sighash
        partial_sigs: 32-byte partial signatures

    Returns:
        64-byte Schnorr signature valid for aggregate_key(verifiers_pks)
    """
    pubkeys = [musig2.xonly_to_plain(pk) for pk in verifiers_pks]
    return musig2.partial_sig_agg(list(partial_sigs), musig2.SessionContext(agg_nonce, pubkeys, message))


class MuSig2Coordinator:
    """
    Verifier-side MuSig2 state machine backed by the verifier database.

    The signing key is normalized to even y so that its plain public key is
    the one the x-only verifier set aggregates.
    """

    def __init__(self, secret_key: bytes, verifiers_pks: Sequence[bytes], num_nonces: int = 10):
        """
        Initialize the coordinator.

        Args:
            secret_key: Verifier's 32-byte secret key
            verifiers_pks: x-only verifier keys in configured order
            num_nonces: Nonce slots per deposit

        Raises:
            PublicKeyNotFound: If the key is not in the verifier set
        """
        self.logger = logging.getLogger("bridge.musig")
        self.signing_key = musig2.normalize_signing_key(secret_key)
        self.pubkey = musig2.individual_pk(self.signing_key)
        self.verifiers_pks = list(verifiers_pks)
        self.pubkeys = [musig2.xonly_to_plain(pk) for pk in self.verifiers_pks]
        if self.pubkey not in self.pubkeys:
            raise PublicKeyNotFound(
                f"Public key {self.pubkey[1:].hex()} is not in the verifier set",
                {"public_key": self.pubkey[1:].hex()},
            )
        self.signer_index = self.pubkeys.index(self.pubkey)
        self.key_agg_ctx = musig2.key_agg(self.pubkeys)
        self.num_nonces = num_nonces

    @property
    def aggregate_x_only(self) -> bytes:
        return self.key_agg_ctx.xonly_pk

    def get_or_create_nonces(self, session: VerifierSession, deposit_outpoint: str,
                             count: Optional[int] = None) -> List[bytes]:
        """
        Public nonces for a deposit's slots, generating missing ones.

        Generated nonces are written to the session before anything is
        returned; a slot that already holds a nonce is never regenerated.

        Returns:
            66-byte public nonces in slot order
        """
        count = self.num_nonces if count is None else count
        stored = session.get_nonces(deposit_outpoint)
        pub_nonces = []
        created = 0

        for index in range(count):
            record = stored.get(index)
            if record is None:
                secnonce, pubnonce = musig2.nonce_gen(
                    self.signing_key, self.pubkey, self.aggregate_x_only,
                    extra_in=f"{deposit_outpoint}/{index}".encode(),
                )
                record = session.save_nonce(deposit_outpoint, NonceRecord(
                    index=index, pub_nonce=pubnonce.hex(), sec_nonce=bytes(secnonce).hex(),
                ))
                created += 1
            pub_nonces.append(bytes.fromhex(record.pub_nonce))

        if created:
            self.logger.info(f"Generated {created} nonces for deposit {deposit_outpoint}")
        return pub_nonces

    def save_agg_nonces(self, session: VerifierSession, deposit_outpoint: str,
                        agg_nonces: Sequence[bytes], first_slot: int = 0) -> None:
        """
        Attach aggregated nonces to consecutive slots.

        Raises:
            NoncesNotFound: If a slot has no nonce of ours
            NonceReuseDetected: If a slot already carries a different aggregated nonce
        """
        for offset, agg_nonce in enumerate(agg_nonces):
            slot = first_slot + offset
            record = session.get_nonce(deposit_outpoint, slot)
            if record is None:
                raise NoncesNotFound(f"No nonce in slot {slot} of deposit {deposit_outpoint}",
                                     {"slot": slot})
            if record.agg_nonce is not None and record.agg_nonce != agg_nonce.hex():
                raise NonceReuseDetected(
                    f"Slot {slot} of deposit {deposit_outpoint} is bound to another aggregated nonce",
                    {"slot": slot},
                )
            session.save_agg_nonce(deposit_outpoint, slot, agg_nonce.hex())

    def partial_sign(self, session: VerifierSession, deposit_outpoint: str, slot: int,
                     role: SignatureRole, sighash: bytes) -> bytes:
        """
        Partial signature of a sighash from one nonce slot.

        A repeated request for the same message returns the stored partial
        signature. The secret nonce is consumed by the first signature.

        Args:
            session: Open database session
            deposit_outpoint: Deposit the slot belongs to
            slot: Nonce slot index
            role: Transaction the signature is for
            sighash: 32-byte script path sighash

        Returns:
            32-byte partial signature

        Raises:
            NoncesNotFound: No nonce was generated for the slot
            AggNonceMissing: The aggregated nonce was not received
            NonceReuseDetected: The slot already signed a different message
        """
        record = session.get_nonce(deposit_outpoint, slot)
        if record is None:
            raise NoncesNotFound(f"No nonce in slot {slot} of deposit {deposit_outpoint}",
                                 {"slot": slot})
        if record.agg_nonce is None:
            raise AggNonceMissing(f"No aggregated nonce for slot {slot} of deposit {deposit_outpoint}",
                                  {"slot": slot})

        cached = session.get_partial_sig(deposit_outpoint, slot)
        if cached is not None:
            if cached.sighash == sighash.hex() and cached.role == role:
                return bytes.fromhex(cached.partial_sig)
            self.logger.warning(f"Refusing second message for slot {slot} of deposit {deposit_outpoint}")
            raise NonceReuseDetected(
                f"Slot {slot} of deposit {deposit_outpoint} already signed another message",
                {"slot": slot, "role": cached.role.value},
            )

        secnonce = bytearray.fromhex(record.sec_nonce)
        session_ctx = musig2.SessionContext(bytes.fromhex(record.agg_nonce), self.pubkeys, sighash)
        psig = musig2.sign(secnonce, self.signing_key, session_ctx)
        record.sec_nonce = secnonce.hex()

        session.save_partial_sig(deposit_outpoint, PartialSigRecord(
            slot=slot, role=role, sighash=sighash.hex(), partial_sig=psig.hex(),
        ))
        self.logger.debug(f"Partial signature for {role.value} slot {slot} of {deposit_outpoint}")
        return psig

    def verify_aggregate(self, signature: bytes, message: bytes) -> bool:
        """Check a full signature against the verifier set's aggregate key."""
        return verify_schnorr(self.aggregate_x_only, signature, message)
