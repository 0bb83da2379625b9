"""
Bridge - Verifier State Schema

Pydantic models for everything a verifier persists per deposit: deposit
metadata, MuSig2 nonce slots, kickoff UTXOs, partial signatures, move
transaction records and withdrawal signatures.
"""

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _validate_hex(v: str, length: int, name: str) -> str:
    if v.startswith('0x'):
        v = v[2:]
    if not re.match(rf'^[a-fA-F0-9]{{{length}}}$', v):
        raise ValueError(f'{name} must be {length}-character hex string')
    return v.lower()


def _validate_outpoint(v: str) -> str:
    if not re.match(r'^[a-fA-F0-9]{64}:\d+$', v):
        raise ValueError('Outpoint must be in txid:vout form')
    txid, vout = v.split(':')
    if int(vout) > 0xffffffff:
        raise ValueError('Output index out of range')
    return f"{txid.lower()}:{int(vout)}"


class SignatureRole(str, Enum):
    """Transaction a partial signature belongs to."""
    MOVE_COMMIT = "move_commit"
    MOVE_REVEAL = "move_reveal"
    OPERATOR_TAKE = "operator_take"
    BURN = "burn"


class DepositInfo(BaseModel):
    """Deposit metadata recorded on first contact."""

    deposit_outpoint: str = Field(..., description="Deposit UTXO (txid:vout)")
    recovery_address: str = Field(..., description="Depositor's taproot recovery address")
    evm_address: str = Field(..., description="Peg-in destination (hex)")
    amount: int = Field(..., gt=0, description="Deposit amount in satoshis")
    created_at: datetime = Field(default_factory=_utcnow)

    @field_validator('deposit_outpoint')
    @classmethod
    def validate_outpoint(cls, v):
        return _validate_outpoint(v)

    @field_validator('evm_address')
    @classmethod
    def validate_evm_address(cls, v):
        return _validate_hex(v, 40, 'EVM address')

    def same_deposit(self, other: 'DepositInfo') -> bool:
        return (self.deposit_outpoint == other.deposit_outpoint
                and self.recovery_address == other.recovery_address
                and self.evm_address == other.evm_address
                and self.amount == other.amount)


class NonceRecord(BaseModel):
    """One MuSig2 nonce slot. The secret half never leaves the verifier."""

    index: int = Field(..., ge=0)
    pub_nonce: str = Field(..., description="66-byte public nonce (hex)")
    sec_nonce: str = Field(..., description="97-byte secret nonce (hex)")
    agg_nonce: Optional[str] = Field(None, description="66-byte aggregated nonce (hex)")
    created_at: datetime = Field(default_factory=_utcnow)

    @field_validator('pub_nonce', 'agg_nonce')
    @classmethod
    def validate_nonce(cls, v):
        if v is None:
            return v
        return _validate_hex(v, 132, 'Nonce')

    @field_validator('sec_nonce')
    @classmethod
    def validate_sec_nonce(cls, v):
        return _validate_hex(v, 194, 'Secret nonce')


class KickoffRecord(BaseModel):
    """Operator-declared kickoff UTXO."""

    outpoint: str = Field(..., description="Kickoff UTXO (txid:vout)")
    amount: int = Field(..., gt=0)

    @field_validator('outpoint')
    @classmethod
    def validate_outpoint(cls, v):
        return _validate_outpoint(v)


class PartialSigRecord(BaseModel):
    """Partial signature produced from one nonce slot."""

    slot: int = Field(..., ge=0)
    role: SignatureRole
    sighash: str = Field(..., description="Signed message (hex)")
    partial_sig: str = Field(..., description="32-byte partial signature (hex)")
    created_at: datetime = Field(default_factory=_utcnow)

    @field_validator('sighash', 'partial_sig')
    @classmethod
    def validate_hex32(cls, v):
        return _validate_hex(v, 64, 'Value')


class MoveTxRecord(BaseModel):
    """Move transactions whose partial signatures were released."""

    move_commit_txid: str
    move_reveal_txid: str

    @field_validator('move_commit_txid', 'move_reveal_txid')
    @classmethod
    def validate_txid(cls, v):
        return _validate_hex(v, 64, 'Transaction ID')


class WithdrawalSigRecord(BaseModel):
    """Verifier signature over a withdrawal payout."""

    index: int = Field(..., ge=0)
    bridge_fund_txid: str
    withdrawal_address: str
    signature: str = Field(..., description="64-byte Schnorr signature (hex)")
    created_at: datetime = Field(default_factory=_utcnow)

    @field_validator('bridge_fund_txid')
    @classmethod
    def validate_txid(cls, v):
        return _validate_hex(v, 64, 'Transaction ID')

    @field_validator('signature')
    @classmethod
    def validate_signature(cls, v):
        return _validate_hex(v, 128, 'Signature')


class DepositState(BaseModel):
    """Everything recorded for one deposit."""

    info: DepositInfo
    nonces: Dict[int, NonceRecord] = Field(default_factory=dict)
    kickoffs: List[KickoffRecord] = Field(default_factory=list)
    partial_sigs: Dict[int, PartialSigRecord] = Field(default_factory=dict)
    move_tx: Optional[MoveTxRecord] = None


class VerifierState(BaseModel):
    """Root of the persisted verifier state."""

    schema_version: str = Field(default="1.0.0")
    deposits: Dict[str, DepositState] = Field(default_factory=dict)
    withdrawals: Dict[int, WithdrawalSigRecord] = Field(default_factory=dict)
    updated_at: datetime = Field(default_factory=_utcnow)
