"""
Bridge - Verifier Protocol

The verifier side of the bridge. For each deposit the verifier:
1. checks the deposit UTXO and hands out its public nonces (new_deposit)
2. registers the operator's kickoff UTXOs and co-signs their burn
   transactions (operator_kickoffs_generated)
3. co-signs the operator take transactions once burns are fully signed
   (burn_txs_signed)
4. co-signs the move transactions once takes are fully signed
   (operator_take_txs_signed)

Independently it signs direct withdrawals from bridge UTXOs, at most one
bridge fund transaction per withdrawal index (new_withdrawal_direct).

Every transaction signed here is rebuilt locally by TransactionBuilder from
persisted deposit data; nothing the caller sends is signed blindly.
"""

import hashlib
import logging
import struct
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from crypto.exceptions import InvalidKeyError
from crypto.musig2 import AGGNONCE_SIZE
from crypto.signatures import verify_schnorr
from database.schema import DepositInfo, KickoffRecord, MoveTxRecord, SignatureRole, WithdrawalSigRecord
from database.verifier_db import VerifierDB, VerifierSession
from network.extended_rpc import ExtendedRpc, UtxoCheckFailed
from transactions.addresses import AddressError, decode_segwit_address
from transactions.builder import SpendTemplate, TransactionBuilder
from transactions.primitives import OutPoint, Transaction

from .actor import Actor
from .config import BridgeConfig
from .errors import (
    AddressNetworkMismatch,
    AlreadySpentWithdrawal,
    DepositInfoNotFound,
    InvalidBridgeUtxo,
    InvalidDepositUtxo,
    InvalidKickoffUtxo,
    KickoffOutpointsNotFound,
    PublicKeyNotFound,
    SignatureVerificationFailed,
)
from .musig_coordinator import (
    MOVE_COMMIT_SLOT,
    MOVE_REVEAL_SLOT,
    MuSig2Coordinator,
    burn_slot,
    max_kickoffs,
    operator_take_slot,
    slots_used,
)


OutPointLike = Union[OutPoint, str]


def _outpoint(value: OutPointLike) -> OutPoint:
    if isinstance(value, OutPoint):
        return OutPoint(value.txid.lower(), value.vout)
    return OutPoint.from_str(value)


def kickoff_commitment_digest(deposit_outpoint: OutPoint, kickoff_outpoint: OutPoint) -> bytes:
    """
    Message the operator signs to bind a kickoff UTXO to a deposit.

    sha256(deposit_txid || deposit_vout || kickoff_txid || kickoff_vout) with
    txids in internal byte order and output indexes as 4-byte big endian.
    """
    return hashlib.sha256(
        deposit_outpoint.txid_bytes + struct.pack('>I', deposit_outpoint.vout)
        + kickoff_outpoint.txid_bytes + struct.pack('>I', kickoff_outpoint.vout)
    ).digest()


@dataclass
class KickoffUtxo:
    """Kickoff UTXO declared by the operator, optionally with its funding transaction."""
    outpoint: OutPoint
    amount: int
    funding_tx: Optional[Transaction] = None

    @classmethod
    def from_funding_tx(cls, funding_tx: Transaction, vout: int) -> 'KickoffUtxo':
        if not 0 <= vout < len(funding_tx.outputs):
            raise InvalidKickoffUtxo(
                f"Funding transaction {funding_tx.txid} has no output {vout}",
                {"txid": funding_tx.txid, "vout": vout},
            )
        return cls(funding_tx.outpoint(vout), funding_tx.outputs[vout].value, funding_tx)

    def to_record(self) -> KickoffRecord:
        return KickoffRecord(outpoint=str(self.outpoint), amount=self.amount)


class Verifier:
    """
    One verifier of the bridge federation.

    Example:
        verifier = Verifier(config, MockRpc(), VerifierDB.in_memory())
        pub_nonces = verifier.new_deposit(outpoint, recovery_address, evm_address)
    """

    def __init__(self, config: BridgeConfig, rpc: ExtendedRpc, db: VerifierDB,
                 secret_key: Optional[bytes] = None):
        """
        Initialize the verifier.

        Args:
            config: Bridge configuration with the verifier set and operator key
            rpc: Chain access
            db: Verifier state store
            secret_key: Signing key (config.secret_key if None)

        Raises:
            PublicKeyNotFound: If the signing key is not in the verifier set
        """
        self.logger = logging.getLogger("bridge.verifier")
        self.config = config
        self.rpc = rpc
        self.db = db

        if secret_key is None:
            if config.secret_key is None:
                raise InvalidKeyError("No verifier secret key configured")
            secret_key = bytes.fromhex(config.secret_key)
        if config.operator_public_key is None:
            raise InvalidKeyError("No operator public key configured")

        self.signer = Actor(secret_key, config.network)
        self.verifiers_pks = [bytes.fromhex(pk) for pk in config.verifiers_public_keys]
        if self.signer.x_only not in self.verifiers_pks:
            raise PublicKeyNotFound(
                f"Public key {self.signer.x_only.hex()} is not in the verifier set",
                {"public_key": self.signer.x_only.hex()},
            )
        self.operator_pk = bytes.fromhex(config.operator_public_key)

        self.transaction_builder = TransactionBuilder.from_config(config)
        self.musig = MuSig2Coordinator(secret_key, self.verifiers_pks, config.num_nonces)
        self.max_kickoffs = max_kickoffs(config.num_nonces)

        self.stats = {
            "deposits_accepted": 0,
            "kickoffs_registered": 0,
            "withdrawals_signed": 0,
            "requests_rejected": 0,
        }
        self.logger.info(f"Verifier {self.signer.x_only.hex()} ready "
                         f"({len(self.verifiers_pks)} verifiers, {config.network})")

    @property
    def public_key(self) -> bytes:
        return self.signer.x_only

    @property
    def aggregate_public_key(self) -> bytes:
        return self.musig.aggregate_x_only

    # Deposit

    def new_deposit(self, deposit_outpoint: OutPointLike, recovery_address: str,
                    evm_address: bytes) -> List[bytes]:
        """
        Accept a deposit and return this verifier's public nonces for it.

        Args:
            deposit_outpoint: Deposit UTXO
            recovery_address: Depositor's Taproot address for the refund path
            evm_address: 20-byte peg-in destination

        Returns:
            num_nonces 66-byte public nonces, identical on every call

        Raises:
            AddressNetworkMismatch: Recovery address belongs to another network
            InvalidDepositUtxo: Deposit UTXO is unconfirmed, spent or pays the wrong amount or script
        """
        outpoint = _outpoint(deposit_outpoint)
        key = str(outpoint)
        self.logger.info(f"New deposit {key}")

        try:
            _, deposit_info = self._deposit_address(recovery_address, evm_address)
            self.rpc.check_deposit_utxo(
                outpoint, deposit_info.script_pubkey,
                self.transaction_builder.bridge_amount_sats, self.config.confirmation_threshold,
            )
        except InvalidDepositUtxo:
            self.stats["requests_rejected"] += 1
            raise
        except UtxoCheckFailed as e:
            self.stats["requests_rejected"] += 1
            self.logger.warning(f"Deposit {key} rejected: {e.reason}")
            raise InvalidDepositUtxo(str(e), {"deposit_outpoint": key, "reason": e.reason}) from e

        info = DepositInfo(
            deposit_outpoint=key,
            recovery_address=recovery_address,
            evm_address=evm_address.hex(),
            amount=self.transaction_builder.bridge_amount_sats,
        )
        with self.db.transaction() as session:
            stored = session.save_deposit_info(info)
            if not stored.same_deposit(info):
                raise InvalidDepositUtxo(
                    f"Deposit {key} is already registered with different parameters",
                    {"deposit_outpoint": key},
                )
            pub_nonces = self.musig.get_or_create_nonces(session, key)

        self.stats["deposits_accepted"] += 1
        return pub_nonces

    def _deposit_address(self, recovery_address: str, evm_address: bytes):
        try:
            decode_segwit_address(recovery_address)
        except AddressError as e:
            raise InvalidDepositUtxo(f"Invalid recovery address: {e}",
                                     {"recovery_address": recovery_address}) from e
        if len(evm_address) != 20:
            raise InvalidDepositUtxo("EVM address must be 20 bytes", {"evm_address": evm_address.hex()})
        try:
            return self.transaction_builder.generate_deposit_address(recovery_address, evm_address)
        except AddressError as e:
            raise AddressNetworkMismatch(
                f"Recovery address is not a {self.config.network} taproot address: {e}",
                {"recovery_address": recovery_address, "network": self.config.network},
            ) from e

    # Kickoffs

    def operator_kickoffs_generated(self, deposit_outpoint: OutPointLike,
                                    kickoff_utxos: Sequence[KickoffUtxo],
                                    operator_sigs: Sequence[bytes],
                                    agg_nonces: Sequence[bytes]) -> List[bytes]:
        """
        Register the operator's kickoff UTXOs for a deposit.

        Args:
            deposit_outpoint: Accepted deposit
            kickoff_utxos: One kickoff UTXO per claim the operator may make
            operator_sigs: Operator signatures over kickoff_commitment_digest, one per kickoff
            agg_nonces: Aggregated nonces for slots 0 .. 2+2K, in slot order

        Returns:
            Partial signatures over the burn transaction of each kickoff

        Raises:
            InvalidKickoffUtxo: Count, value or funding transaction mismatch
            SignatureVerificationFailed: An operator signature does not verify
            DepositInfoNotFound: The deposit was never accepted
        """
        outpoint = _outpoint(deposit_outpoint)
        key = str(outpoint)
        try:
            self._check_kickoffs(outpoint, kickoff_utxos, operator_sigs, agg_nonces)
        except (InvalidKickoffUtxo, SignatureVerificationFailed) as e:
            self.stats["requests_rejected"] += 1
            self.logger.warning(f"Kickoffs for {key} rejected: {e.message}")
            raise

        records = [kickoff.to_record() for kickoff in kickoff_utxos]
        num_kickoffs = len(records)

        with self.db.transaction() as session:
            self._require_deposit(session, key)
            stored = session.save_kickoffs(key, records)
            if stored != records:
                raise InvalidKickoffUtxo(
                    f"Deposit {key} already has a different kickoff set",
                    {"deposit_outpoint": key},
                )
            self.musig.save_agg_nonces(session, key, agg_nonces)

            partial_sigs = []
            for i, kickoff in enumerate(records):
                template = self._burn_template(kickoff)
                partial_sigs.append(self.musig.partial_sign(
                    session, key, burn_slot(i, num_kickoffs), SignatureRole.BURN, template.sighash()
                ))

        self.stats["kickoffs_registered"] += num_kickoffs
        self.logger.info(f"Registered {num_kickoffs} kickoffs for deposit {key}")
        return partial_sigs

    def _check_kickoffs(self, outpoint: OutPoint, kickoff_utxos: Sequence[KickoffUtxo],
                        operator_sigs: Sequence[bytes], agg_nonces: Sequence[bytes]) -> None:
        num_kickoffs = len(kickoff_utxos)
        if not 1 <= num_kickoffs <= self.max_kickoffs:
            raise InvalidKickoffUtxo(
                f"Between 1 and {self.max_kickoffs} kickoffs are required, got {num_kickoffs}",
                {"count": num_kickoffs},
            )
        if len(operator_sigs) != num_kickoffs:
            raise InvalidKickoffUtxo(
                f"{len(operator_sigs)} operator signatures for {num_kickoffs} kickoffs",
                {"signatures": len(operator_sigs), "kickoffs": num_kickoffs},
            )
        if len(agg_nonces) != slots_used(num_kickoffs):
            raise InvalidKickoffUtxo(
                f"{len(agg_nonces)} aggregated nonces, {slots_used(num_kickoffs)} expected",
                {"agg_nonces": len(agg_nonces)},
            )
        for agg_nonce in agg_nonces:
            if len(agg_nonce) != AGGNONCE_SIZE:
                raise InvalidKickoffUtxo(f"Aggregated nonce must be {AGGNONCE_SIZE} bytes")

        seen = set()
        for kickoff in kickoff_utxos:
            if kickoff.outpoint in seen:
                raise InvalidKickoffUtxo(f"Duplicate kickoff {kickoff.outpoint}")
            seen.add(kickoff.outpoint)
            if kickoff.amount < self.config.kickoff_min_amount:
                raise InvalidKickoffUtxo(
                    f"Kickoff {kickoff.outpoint} holds {kickoff.amount} sats, "
                    f"minimum is {self.config.kickoff_min_amount}",
                    {"outpoint": str(kickoff.outpoint), "amount": kickoff.amount},
                )
            if kickoff.funding_tx is not None:
                self._check_funding_tx(kickoff)
            else:
                self._check_kickoff_txout(kickoff)

        for kickoff, signature in zip(kickoff_utxos, operator_sigs):
            digest = kickoff_commitment_digest(outpoint, kickoff.outpoint)
            if not verify_schnorr(self.operator_pk, signature, digest):
                raise SignatureVerificationFailed(
                    f"Operator signature for kickoff {kickoff.outpoint} does not verify",
                    {"outpoint": str(kickoff.outpoint)},
                )

    def _check_kickoff_txout(self, kickoff: KickoffUtxo) -> None:
        """The declared amount must match the unspent output on chain."""
        txout = self.rpc.get_txout(kickoff.outpoint)
        if txout is None:
            raise InvalidKickoffUtxo(f"Kickoff {kickoff.outpoint} is unknown or spent",
                                     {"outpoint": str(kickoff.outpoint)})
        if txout.value != kickoff.amount:
            raise InvalidKickoffUtxo(
                f"Kickoff {kickoff.outpoint} declares {kickoff.amount} sats, "
                f"chain output holds {txout.value}",
                {"outpoint": str(kickoff.outpoint), "amount": kickoff.amount, "on_chain": txout.value},
            )

    @staticmethod
    def _check_funding_tx(kickoff: KickoffUtxo) -> None:
        tx = kickoff.funding_tx
        if tx.txid != kickoff.outpoint.txid.lower():
            raise InvalidKickoffUtxo(f"Funding transaction {tx.txid} does not create {kickoff.outpoint}")
        if kickoff.outpoint.vout >= len(tx.outputs):
            raise InvalidKickoffUtxo(f"Funding transaction has no output {kickoff.outpoint.vout}")
        if tx.outputs[kickoff.outpoint.vout].value != kickoff.amount:
            raise InvalidKickoffUtxo(
                f"Kickoff {kickoff.outpoint} declares {kickoff.amount} sats, "
                f"funding output holds {tx.outputs[kickoff.outpoint.vout].value}"
            )

    # Burn and operator take

    def burn_txs_signed(self, deposit_outpoint: OutPointLike, burn_sigs: Sequence[bytes]) -> List[bytes]:
        """
        Accept the aggregated burn signatures and co-sign the operator takes.

        Args:
            deposit_outpoint: Deposit with registered kickoffs
            burn_sigs: Aggregated burn transaction signatures, one per kickoff

        Returns:
            Partial signatures over the operator take transaction of each kickoff
        """
        key = str(_outpoint(deposit_outpoint))

        with self.db.transaction() as session:
            info = self._require_deposit(session, key)
            kickoffs = self._require_kickoffs(session, key)
            self._verify_aggregate_sigs(
                [self._burn_template(kickoff) for kickoff in kickoffs], burn_sigs, "burn", key
            )

            bridge_outpoint = self._bridge_outpoint(info, kickoffs)
            partial_sigs = []
            for i, kickoff in enumerate(kickoffs):
                template = self._operator_take_template(bridge_outpoint, kickoff)
                partial_sigs.append(self.musig.partial_sign(
                    session, key, operator_take_slot(i), SignatureRole.OPERATOR_TAKE, template.sighash()
                ))

        self.logger.info(f"Burn transactions of {key} signed, released {len(partial_sigs)} take signatures")
        return partial_sigs

    def operator_take_txs_signed(self, deposit_outpoint: OutPointLike,
                                 operator_take_sigs: Sequence[bytes]) -> Tuple[bytes, bytes]:
        """
        Accept the aggregated operator take signatures and co-sign the move transactions.

        Returns:
            Tuple of (move commit partial signature, move reveal partial signature)
        """
        key = str(_outpoint(deposit_outpoint))

        with self.db.transaction() as session:
            info = self._require_deposit(session, key)
            kickoffs = self._require_kickoffs(session, key)
            kickoff_txids = [OutPoint.from_str(k.outpoint).txid_bytes for k in kickoffs]
            move_commit = self._move_commit_template(info, kickoff_txids)
            move_reveal = self.transaction_builder.create_move_reveal_tx(move_commit.tx.txid, kickoff_txids)
            bridge_outpoint = move_reveal.tx.outpoint(0)

            self._verify_aggregate_sigs(
                [self._operator_take_template(bridge_outpoint, kickoff) for kickoff in kickoffs],
                operator_take_sigs, "operator take", key,
            )

            commit_sig = self.musig.partial_sign(
                session, key, MOVE_COMMIT_SLOT, SignatureRole.MOVE_COMMIT, move_commit.sighash()
            )
            reveal_sig = self.musig.partial_sign(
                session, key, MOVE_REVEAL_SLOT, SignatureRole.MOVE_REVEAL, move_reveal.sighash()
            )
            session.save_move_tx(key, MoveTxRecord(
                move_commit_txid=move_commit.tx.txid, move_reveal_txid=move_reveal.tx.txid,
            ))

        self.logger.info(f"Move transactions of {key} signed: commit {move_commit.tx.txid}, "
                         f"reveal {move_reveal.tx.txid}")
        return commit_sig, reveal_sig

    # Withdrawals

    def new_withdrawal_direct(self, idx: int, bridge_fund_txid: str, withdrawal_address: str) -> bytes:
        """
        Sign a withdrawal paying a bridge UTXO out to the user.

        Args:
            idx: Withdrawal index
            bridge_fund_txid: Transaction holding the bridge UTXO at output 0
            withdrawal_address: Destination on the configured network

        Returns:
            64-byte Schnorr signature over the withdrawal's N-of-N leaf spend

        Raises:
            AlreadySpentWithdrawal: The index is bound to another bridge fund txid
            AddressNetworkMismatch: Destination belongs to another network
            InvalidBridgeUtxo: Output 0 of bridge_fund_txid is not an unspent bridge UTXO
        """
        bridge_fund_txid = bridge_fund_txid.lower()

        with self.db.transaction() as session:
            existing = session.get_withdrawal_sig(idx)
            if existing is not None:
                if existing.bridge_fund_txid == bridge_fund_txid:
                    return bytes.fromhex(existing.signature)
                self.stats["requests_rejected"] += 1
                self.logger.warning(f"Withdrawal {idx} already bound to {existing.bridge_fund_txid}")
                raise AlreadySpentWithdrawal(
                    f"Withdrawal {idx} is already bound to {existing.bridge_fund_txid}",
                    {"index": idx, "bridge_fund_txid": existing.bridge_fund_txid},
                )

            try:
                template = self.transaction_builder.create_withdrawal_tx(bridge_fund_txid, withdrawal_address)
            except AddressError as e:
                raise AddressNetworkMismatch(
                    f"Withdrawal address is not a {self.config.network} address: {e}",
                    {"withdrawal_address": withdrawal_address},
                ) from e
            self._check_bridge_utxo(template)

            signature = self.signer.sign_taproot_script_spend_tx(
                template.tx, template.prevouts, template.script, template.input_index
            )
            session.save_withdrawal_sig(WithdrawalSigRecord(
                index=idx, bridge_fund_txid=bridge_fund_txid,
                withdrawal_address=withdrawal_address, signature=signature.hex(),
            ))

        self.stats["withdrawals_signed"] += 1
        self.logger.info(f"Signed withdrawal {idx} from {bridge_fund_txid}")
        return signature

    def _check_bridge_utxo(self, template: SpendTemplate) -> None:
        outpoint = template.tx.inputs[template.input_index].previous_output
        txout = self.rpc.get_txout(outpoint)
        if txout != template.prevouts[template.input_index]:
            self.stats["requests_rejected"] += 1
            reason = "unknown or spent" if txout is None else "not a bridge UTXO"
            raise InvalidBridgeUtxo(f"Bridge fund output {outpoint} is {reason}", {"outpoint": str(outpoint)})

    # Template reconstruction

    def _require_deposit(self, session: VerifierSession, key: str) -> DepositInfo:
        info = session.get_deposit_info(key)
        if info is None:
            raise DepositInfoNotFound(f"Deposit {key} has not been accepted", {"deposit_outpoint": key})
        return info

    def _require_kickoffs(self, session: VerifierSession, key: str) -> List[KickoffRecord]:
        kickoffs = session.get_kickoffs(key)
        if not kickoffs:
            raise KickoffOutpointsNotFound(f"No kickoffs registered for deposit {key}",
                                           {"deposit_outpoint": key})
        return kickoffs

    def _move_commit_template(self, info: DepositInfo, kickoff_txids: List[bytes]) -> SpendTemplate:
        return self.transaction_builder.create_move_commit_tx(
            OutPoint.from_str(info.deposit_outpoint), info.recovery_address,
            bytes.fromhex(info.evm_address), kickoff_txids,
        )

    def _bridge_outpoint(self, info: DepositInfo, kickoffs: List[KickoffRecord]) -> OutPoint:
        """Bridge UTXO the deposit ends up in: output 0 of the move reveal."""
        kickoff_txids = [OutPoint.from_str(k.outpoint).txid_bytes for k in kickoffs]
        move_commit = self._move_commit_template(info, kickoff_txids)
        move_reveal = self.transaction_builder.create_move_reveal_tx(move_commit.tx.txid, kickoff_txids)
        return move_reveal.tx.outpoint(0)

    def _claim_txid(self, kickoff: KickoffRecord) -> str:
        return self.transaction_builder.create_claim_tx(OutPoint.from_str(kickoff.outpoint), kickoff.amount).txid

    def _burn_template(self, kickoff: KickoffRecord) -> SpendTemplate:
        return self.transaction_builder.create_burn_tx(self._claim_txid(kickoff), kickoff.amount)

    def _operator_take_template(self, bridge_outpoint: OutPoint, kickoff: KickoffRecord) -> SpendTemplate:
        return self.transaction_builder.create_operator_take_tx(
            bridge_outpoint, self._claim_txid(kickoff), kickoff.amount
        )

    def _verify_aggregate_sigs(self, templates: List[SpendTemplate], signatures: Sequence[bytes],
                               label: str, key: str) -> None:
        if len(signatures) != len(templates):
            raise SignatureVerificationFailed(
                f"{len(signatures)} {label} signatures for {len(templates)} kickoffs",
                {"deposit_outpoint": key},
            )
        for i, (template, signature) in enumerate(zip(templates, signatures)):
            if not self.musig.verify_aggregate(signature, template.sighash()):
                self.stats["requests_rejected"] += 1
                self.logger.warning(f"Aggregated {label} signature {i} of {key} does not verify")
                raise SignatureVerificationFailed(
                    f"Aggregated {label} signature {i} does not verify",
                    {"deposit_outpoint": key, "index": i},
                )

    def get_statistics(self) -> Dict[str, Any]:
        return dict(self.stats)
