"""
Bridge - Transaction Templates

This module rebuilds, byte for byte, every transaction the bridge parties
exchange signatures over:
- Deposit, bridge, claim, burn and operator addresses
- Move commit and move reveal transactions for a deposit
- Claim, burn and operator take transactions for each kickoff
- Withdrawal payouts from the bridge UTXO
- Connector tree node and root addresses, inscription commit/reveal

All templates are pure builders. Nothing here signs or broadcasts except
the inscription helper, which drives a caller-supplied actor.
"""

import logging
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence, Tuple

from scripts.builder import ScriptBuilder

from .addresses import AddressError, decode_segwit_address, network_hrp
from .exceptions import InsufficientFundsError, TransactionError
from .primitives import ENABLE_RBF_NO_LOCKTIME, OutPoint, Transaction, TxIn, TxOut, sequence_from_height
from .sighash import SighashType, taproot_signature_hash
from .taproot import (
    UNSPENDABLE_INTERNAL_KEY,
    TaprootSpendInfo,
    create_taproot_address,
    key_path_spend_info,
)


logger = logging.getLogger(__name__)


# Protocol defaults, overridden through BridgeConfig
BRIDGE_AMOUNT_SATS = 100_000_000
MIN_RELAY_FEE = 289
DUST_VALUE = 1000
USER_TAKES_AFTER = 200
OPERATOR_TAKES_AFTER = 5
CONNECTOR_TREE_OPERATOR_TAKES_AFTER = 1


@dataclass
class SpendTemplate:
    """
    A transaction together with what is needed to sign one script-path input.
    """
    tx: Transaction
    prevouts: List[TxOut]
    input_index: int
    script: bytes
    spend_info: TaprootSpendInfo

    def sighash(self, hash_type: int = SighashType.DEFAULT) -> bytes:
        """Script path sighash of the template's input over its leaf."""
        return taproot_signature_hash(
            self.tx, self.input_index, self.prevouts, hash_type, leaf_script=self.script
        )

    def control_block(self) -> bytes:
        return self.spend_info.control_block(self.script)

    def finalize(self, witness_elements: Sequence[bytes]) -> Transaction:
        """Attach the script-path witness and return the transaction."""
        handle_taproot_witness(self.tx, self.input_index, witness_elements,
                               self.script, self.spend_info)
        return self.tx


def handle_taproot_witness(tx: Transaction, index: int, witness_elements: Sequence[bytes],
                           script: bytes, spend_info: TaprootSpendInfo) -> None:
    """
    Set a script-path witness: the elements, then the script, then the control block.

    Args:
        tx: Transaction to modify
        index: Input index
        witness_elements: Stack items consumed by the script
        script: Leaf script being executed
        spend_info: Spend info of the output being spent
    """
    witness = list(witness_elements)
    witness.append(script)
    witness.append(spend_info.control_block(script))
    tx.inputs[index].witness = witness


class TransactionBuilder:
    """
    Builder for bridge addresses and transaction templates.

    Every address is a pure function of the leaf scripts and the internal
    key, so verifiers and the operator derive identical transactions
    without exchanging them.
    """

    def __init__(self, verifiers_pks: List[bytes], network: str = "regtest",
                 operator_pk: Optional[bytes] = None,
                 bridge_amount_sats: int = BRIDGE_AMOUNT_SATS,
                 min_relay_fee: int = MIN_RELAY_FEE,
                 dust_value: int = DUST_VALUE,
                 user_takes_after: int = USER_TAKES_AFTER,
                 operator_takes_after: int = OPERATOR_TAKES_AFTER,
                 connector_tree_operator_takes_after: int = CONNECTOR_TREE_OPERATOR_TAKES_AFTER):
        """
        Initialize the transaction builder.

        Args:
            verifiers_pks: 32-byte x-only verifier keys in configured order
            network: Network used for address encoding and checks
            operator_pk: 32-byte x-only operator key, needed for claim and take templates
            bridge_amount_sats: Fixed deposit amount
            min_relay_fee: Fee paid by each fee-bearing transaction
            dust_value: Connector tree leaf value
            user_takes_after: Relative delay before a depositor can refund
            operator_takes_after: Relative delay before the operator can take a claim
            connector_tree_operator_takes_after: Relative delay on connector tree spends
        """
        network_hrp(network)
        self.network = network
        self.verifiers_pks = list(verifiers_pks)
        self.operator_pk = operator_pk
        self.script_builder = ScriptBuilder(self.verifiers_pks)
        self.bridge_amount_sats = bridge_amount_sats
        self.min_relay_fee = min_relay_fee
        self.dust_value = dust_value
        self.user_takes_after = user_takes_after
        self.operator_takes_after = operator_takes_after
        self.connector_tree_operator_takes_after = connector_tree_operator_takes_after

    @classmethod
    def from_config(cls, config: Any) -> 'TransactionBuilder':
        """Build from a BridgeConfig."""
        operator_pk = (bytes.fromhex(config.operator_public_key)
                       if config.operator_public_key else None)
        return cls(
            [bytes.fromhex(pk) for pk in config.verifiers_public_keys],
            network=config.network,
            operator_pk=operator_pk,
            bridge_amount_sats=config.bridge_amount_sats,
            min_relay_fee=config.min_relay_fee,
            dust_value=config.dust_value,
            user_takes_after=config.user_takes_after,
            operator_takes_after=config.operator_takes_after,
            connector_tree_operator_takes_after=config.connector_tree_operator_takes_after,
        )

    # Generic templates

    @staticmethod
    def create_btc_tx(tx_ins: List[TxIn], tx_outs: List[TxOut], locktime: int = 0) -> Transaction:
        return Transaction(inputs=tx_ins, outputs=tx_outs, version=2, locktime=locktime)

    @staticmethod
    def create_tx_ins(utxos: List[OutPoint], sequence: int = ENABLE_RBF_NO_LOCKTIME) -> List[TxIn]:
        return [TxIn(utxo, sequence) for utxo in utxos]

    def create_tx_ins_with_sequence(self, utxos: List[OutPoint],
                                    block_count: Optional[int] = None) -> List[TxIn]:
        """Inputs with a relative height lock (connector tree delay by default)."""
        if block_count is None:
            block_count = self.connector_tree_operator_takes_after
        sequence = sequence_from_height(block_count)
        return [TxIn(utxo, sequence) for utxo in utxos]

    @staticmethod
    def create_tx_outs(pairs: List[Tuple[int, bytes]]) -> List[TxOut]:
        return [TxOut(value, script_pubkey) for value, script_pubkey in pairs]

    @staticmethod
    def create_utxo(txid: str, vout: int) -> OutPoint:
        return OutPoint(txid, vout)

    def create_taproot_address(self, scripts: List[bytes],
                               internal_key: bytes = UNSPENDABLE_INTERNAL_KEY) -> Tuple[str, TaprootSpendInfo]:
        return create_taproot_address(scripts, self.network, internal_key)

    def address_to_x_only(self, address: str) -> bytes:
        """
        Extract the 32-byte witness program of a Taproot address.

        Raises AddressError if the address belongs to another network or is
        not a witness v1 output.
        """
        witver, program = decode_segwit_address(address, network_hrp(self.network))
        if witver != 1 or len(program) != 32:
            raise AddressError(f"Not a taproot address: {address}")
        return program

    def address_to_script_pubkey(self, address: str) -> bytes:
        witver, program = decode_segwit_address(address, network_hrp(self.network))
        version_op = 0x00 if witver == 0 else 0x50 + witver
        return bytes([version_op, len(program)]) + program

    def _require_operator(self) -> bytes:
        if self.operator_pk is None:
            raise TransactionError("Operator public key is not configured")
        return self.operator_pk

    # Amounts

    @property
    def anchor_value(self) -> int:
        return ScriptBuilder.anyone_can_spend_txout().value

    @property
    def move_commit_value(self) -> int:
        return self.bridge_amount_sats - self.min_relay_fee - self.anchor_value

    @property
    def bridge_utxo_value(self) -> int:
        return self.bridge_amount_sats - 2 * (self.min_relay_fee + self.anchor_value)

    def _checked_value(self, value: int, available: int) -> int:
        if value <= 0:
            raise InsufficientFundsError(available - value, available)
        return value

    # Addresses

    def generate_deposit_address(self, recovery_address: str, evm_address: bytes,
                                 amount: Optional[int] = None) -> Tuple[str, TaprootSpendInfo]:
        """
        Deposit address: Taproot(deposit N-of-N leaf, depositor refund leaf).

        Args:
            recovery_address: Depositor's Taproot address used for the refund leaf
            evm_address: 20-byte peg-in destination
            amount: Deposit amount committed in the leaf (bridge amount by default)

        Returns:
            Tuple of (address, spend info)
        """
        if amount is None:
            amount = self.bridge_amount_sats
        user_pk = self.address_to_x_only(recovery_address)
        return self.create_taproot_address([
            self.script_builder.generate_deposit_script(evm_address, amount),
            ScriptBuilder.generate_timelock_script(user_pk, self.user_takes_after),
        ])

    def generate_bridge_address(self) -> Tuple[str, TaprootSpendInfo]:
        return self.create_taproot_address([self.script_builder.generate_n_of_n_script()])

    def generate_move_commit_address(self, kickoff_txids: List[bytes]) -> Tuple[str, TaprootSpendInfo]:
        return self.create_taproot_address(
            [self.script_builder.generate_move_commit_script(kickoff_txids)]
        )

    def generate_claim_address(self) -> Tuple[str, TaprootSpendInfo]:
        """Claim address: Taproot(N-of-N leaf, operator relative timelock leaf)."""
        operator_pk = self._require_operator()
        return self.create_taproot_address([
            self.script_builder.generate_n_of_n_script(),
            ScriptBuilder.generate_timelock_script(operator_pk, self.operator_takes_after),
        ])

    def generate_burn_address(self) -> Tuple[str, TaprootSpendInfo]:
        """Key path only output of the unspendable key; coins sent here are lost."""
        spend_info = key_path_spend_info(UNSPENDABLE_INTERNAL_KEY)
        return spend_info.address(self.network), spend_info

    def generate_operator_address(self) -> Tuple[str, TaprootSpendInfo]:
        spend_info = key_path_spend_info(self._require_operator())
        return spend_info.address(self.network), spend_info

    # Bridge transaction chain

    def create_move_commit_tx(self, deposit_outpoint: OutPoint, recovery_address: str,
                              evm_address: bytes, kickoff_txids: List[bytes]) -> SpendTemplate:
        """
        Move commit: spend the deposit into the move-commit address.

        Args:
            deposit_outpoint: Deposit UTXO
            recovery_address: Depositor's recovery address
            evm_address: 20-byte peg-in destination
            kickoff_txids: Registered kickoff txids (internal byte order)

        Returns:
            SpendTemplate over the deposit N-of-N leaf
        """
        _, deposit_info = self.generate_deposit_address(recovery_address, evm_address)
        _, commit_info = self.generate_move_commit_address(kickoff_txids)
        deposit_script = self.script_builder.generate_deposit_script(evm_address, self.bridge_amount_sats)

        tx = self.create_btc_tx(
            self.create_tx_ins([deposit_outpoint]),
            [TxOut(self._checked_value(self.move_commit_value, self.bridge_amount_sats),
                   commit_info.script_pubkey),
             ScriptBuilder.anyone_can_spend_txout()],
        )
        prevouts = [TxOut(self.bridge_amount_sats, deposit_info.script_pubkey)]
        return SpendTemplate(tx, prevouts, 0, deposit_script, deposit_info)

    def create_move_reveal_tx(self, move_commit_txid: str, kickoff_txids: List[bytes]) -> SpendTemplate:
        """Move reveal: spend the move commit output into the bridge address."""
        _, commit_info = self.generate_move_commit_address(kickoff_txids)
        _, bridge_info = self.generate_bridge_address()
        commit_script = self.script_builder.generate_move_commit_script(kickoff_txids)

        tx = self.create_btc_tx(
            self.create_tx_ins([OutPoint(move_commit_txid, 0)]),
            [TxOut(self._checked_value(self.bridge_utxo_value, self.move_commit_value),
                   bridge_info.script_pubkey),
             ScriptBuilder.anyone_can_spend_txout()],
        )
        prevouts = [TxOut(self.move_commit_value, commit_info.script_pubkey)]
        return SpendTemplate(tx, prevouts, 0, commit_script, commit_info)

    def create_claim_tx(self, kickoff_outpoint: OutPoint, kickoff_amount: int) -> Transaction:
        """Claim: the operator spends a kickoff UTXO into the claim address."""
        _, claim_info = self.generate_claim_address()
        return self.create_btc_tx(
            self.create_tx_ins([kickoff_outpoint]),
            [TxOut(self._checked_value(kickoff_amount - self.anchor_value, kickoff_amount),
                   claim_info.script_pubkey),
             ScriptBuilder.anyone_can_spend_txout()],
        )

    def create_burn_tx(self, claim_txid: str, kickoff_amount: int) -> SpendTemplate:
        """Burn: verifiers spend a disputed claim output to the burn address."""
        _, claim_info = self.generate_claim_address()
        _, burn_info = self.generate_burn_address()
        claim_value = kickoff_amount - self.anchor_value

        tx = self.create_btc_tx(
            self.create_tx_ins([OutPoint(claim_txid, 0)]),
            [TxOut(self._checked_value(kickoff_amount - 2 * self.anchor_value, claim_value),
                   burn_info.script_pubkey),
             ScriptBuilder.anyone_can_spend_txout()],
        )
        prevouts = [TxOut(claim_value, claim_info.script_pubkey)]
        return SpendTemplate(tx, prevouts, 0, self.script_builder.generate_n_of_n_script(), claim_info)

    def create_operator_take_tx(self, bridge_outpoint: OutPoint, claim_txid: str,
                                kickoff_amount: int) -> SpendTemplate:
        """
        Operator take: the operator collects the bridge UTXO and its claim output.

        The bridge input is signed by the verifiers over the N-of-N leaf; the
        claim input becomes spendable by the operator after the claim delay.

        Args:
            bridge_outpoint: Bridge UTXO (move reveal output 0)
            claim_txid: Claim transaction of the kickoff
            kickoff_amount: Kickoff UTXO value

        Returns:
            SpendTemplate for input 0 over the bridge N-of-N leaf
        """
        _, bridge_info = self.generate_bridge_address()
        _, claim_info = self.generate_claim_address()
        _, operator_info = self.generate_operator_address()
        claim_value = kickoff_amount - self.anchor_value

        tx_ins = self.create_tx_ins([bridge_outpoint])
        tx_ins += self.create_tx_ins_with_sequence([OutPoint(claim_txid, 0)], self.operator_takes_after)
        total_in = self.bridge_utxo_value + claim_value
        tx = self.create_btc_tx(
            tx_ins,
            [TxOut(self._checked_value(total_in - self.anchor_value, total_in),
                   operator_info.script_pubkey),
             ScriptBuilder.anyone_can_spend_txout()],
        )
        prevouts = [
            TxOut(self.bridge_utxo_value, bridge_info.script_pubkey),
            TxOut(claim_value, claim_info.script_pubkey),
        ]
        return SpendTemplate(tx, prevouts, 0, self.script_builder.generate_n_of_n_script(), bridge_info)

    def create_withdrawal_tx(self, bridge_fund_txid: str, withdrawal_address: str) -> SpendTemplate:
        """
        Withdrawal: pay out a bridge UTXO to the destination address.

        Args:
            bridge_fund_txid: Transaction whose output 0 holds the bridge UTXO
            withdrawal_address: Destination address on the configured network

        Returns:
            SpendTemplate over the bridge N-of-N leaf
        """
        _, bridge_info = self.generate_bridge_address()
        tx = self.create_btc_tx(
            self.create_tx_ins([self.create_utxo(bridge_fund_txid, 0)]),
            [TxOut(self._checked_value(self.bridge_utxo_value - self.min_relay_fee - self.anchor_value,
                                       self.bridge_utxo_value),
                   self.address_to_script_pubkey(withdrawal_address)),
             ScriptBuilder.anyone_can_spend_txout()],
        )
        prevouts = [TxOut(self.bridge_utxo_value, bridge_info.script_pubkey)]
        return SpendTemplate(tx, prevouts, 0, self.script_builder.generate_n_of_n_script(), bridge_info)

    # Connector tree

    def create_connector_tree_root_address(self, operator_pk: bytes,
                                           absolute_block_height: int) -> Tuple[str, TaprootSpendInfo]:
        """Root address: operator absolute timelock leaf, then one 2-of-2 leaf per verifier."""
        scripts = [ScriptBuilder.generate_absolute_timelock_script(operator_pk, absolute_block_height)]
        scripts += [ScriptBuilder.generate_2_of_2_script(operator_pk, pk) for pk in self.verifiers_pks]
        return self.create_taproot_address(scripts)

    def create_connector_tree_node_address(self, actor_pk: bytes,
                                           hash_value: bytes) -> Tuple[str, TaprootSpendInfo]:
        """Node address: actor relative timelock leaf and hash preimage leaf."""
        return self.create_taproot_address([
            ScriptBuilder.generate_timelock_script(actor_pk, self.connector_tree_operator_takes_after),
            ScriptBuilder.generate_hash_script(hash_value),
        ])

    def create_connector_tree_tx(self, utxo: OutPoint, child_value: int,
                                 first_script_pubkey: bytes, second_script_pubkey: bytes) -> Transaction:
        """Split a connector tree UTXO into two children of equal value."""
        return self.create_btc_tx(
            self.create_tx_ins_with_sequence([utxo]),
            self.create_tx_outs([
                (child_value, first_script_pubkey),
                (child_value, second_script_pubkey),
            ]),
        )

    # Inscriptions

    def create_inscription_commit_address(self, actor_pk: bytes,
                                          preimages: List[bytes]) -> Tuple[str, TaprootSpendInfo, bytes]:
        script = ScriptBuilder.create_inscription_script_32_bytes(actor_pk, preimages)
        address, spend_info = self.create_taproot_address([script])
        return address, spend_info, script

    def create_inscription_transactions(self, actor: Any, utxo: OutPoint,
                                        preimages: List[bytes]) -> Tuple[Transaction, Transaction]:
        """
        Build and sign the inscription commit and reveal transactions.

        The commit spends a 3*dust key path output of the actor into the
        inscription address (2*dust); the reveal spends it back to the actor
        (dust) through the inscription leaf, publishing the preimages.

        Args:
            actor: Signer exposing x_only, script_pubkey and taproot signing methods
            utxo: Actor-owned outpoint worth 3*dust
            preimages: 32-byte preimages to publish

        Returns:
            Tuple of (commit_tx, reveal_tx), both fully witnessed
        """
        _, inscription_info, script = self.create_inscription_commit_address(actor.x_only, preimages)

        commit_tx = self.create_btc_tx(
            self.create_tx_ins([utxo]),
            self.create_tx_outs([(self.dust_value * 2, inscription_info.script_pubkey)]),
        )
        commit_prevouts = [TxOut(self.dust_value * 3, actor.script_pubkey)]
        commit_sig = actor.sign_taproot_pubkey_spend_tx(commit_tx, commit_prevouts, 0)
        commit_tx.inputs[0].witness = [commit_sig]

        reveal_tx = self.create_btc_tx(
            self.create_tx_ins([OutPoint(commit_tx.txid, 0)]),
            self.create_tx_outs([(self.dust_value, actor.script_pubkey)]),
        )
        reveal_prevouts = [TxOut(self.dust_value * 2, inscription_info.script_pubkey)]
        reveal_sig = actor.sign_taproot_script_spend_tx(reveal_tx, reveal_prevouts, script, 0)
        handle_taproot_witness(reveal_tx, 0, [reveal_sig], script, inscription_info)

        logger.debug(f"Inscription commit {commit_tx.txid} reveal {reveal_tx.txid}")
        return commit_tx, reveal_tx
