"""
Bridge and redemption records — the durable state of every conversion.

A BridgeRecord tracks one forward conversion (XRP → FXRP → vault shares);
a RedemptionRecord tracks one reverse conversion (vault shares → FXRP →
XRP). Records are immutable snapshots: the store returns a fresh record
after every write and callers never mutate one in place.

Bridge status transitions:
    pending → bridging → awaiting_payment → xrpl_confirmed
        → fdc_proof_generated → completed → vault_minting → vault_minted
    xrpl_confirmed → fdc_timeout (recoverable) → fdc_proof_generated
    vault_minting → vault_mint_failed (recoverable) → vault_minting
    pre-payment states → cancelled (expiry)
    any working state → failed; failed → resume edges (reconciliation)

Redemption status transitions:
    pending → redeeming_shares → redeemed_fxrp → redeeming_fxrp
        → xrpl_payout → xrpl_received → completed
    redeeming_fxrp → redeemed_fxrp (redeem tx reverted, redeem again)
    xrpl_received → awaiting_proof (recoverable) → xrpl_received
    any working state → failed; failed → resume edges (reconciliation)

Invariants:
    - status only moves along ``*_TRANSITIONS``; the store enforces it.
    - vault_mint_tx_hash / confirmation_tx_hash are written at most once.
    - Fee-paying transaction hashes are stored before their receipt is
      awaited; a stored hash is finished, never sent again.
    - total_amount_raw == reserved_value_raw + reserved_fee_raw.
    - expires_at is set only while waiting for the user's payment.
    - All timestamps are timezone-aware UTC.
"""

from __future__ import annotations

from dataclasses import dataclass, fields
from datetime import datetime, timezone
from decimal import Decimal
from enum import StrEnum
from typing import Any, ClassVar


class BridgeStatus(StrEnum):
    """Life-cycle states of a forward bridge."""

    PENDING = "pending"
    BRIDGING = "bridging"
    AWAITING_PAYMENT = "awaiting_payment"
    XRPL_CONFIRMED = "xrpl_confirmed"
    FDC_PROOF_GENERATED = "fdc_proof_generated"
    FDC_TIMEOUT = "fdc_timeout"
    COMPLETED = "completed"
    VAULT_MINTING = "vault_minting"
    VAULT_MINTED = "vault_minted"
    VAULT_MINT_FAILED = "vault_mint_failed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class RedemptionStatus(StrEnum):
    """Life-cycle states of a redemption."""

    PENDING = "pending"
    REDEEMING_SHARES = "redeeming_shares"
    REDEEMED_FXRP = "redeemed_fxrp"
    REDEEMING_FXRP = "redeeming_fxrp"
    XRPL_PAYOUT = "xrpl_payout"
    XRPL_RECEIVED = "xrpl_received"
    AWAITING_PROOF = "awaiting_proof"
    COMPLETED = "completed"
    FAILED = "failed"


B = BridgeStatus
R = RedemptionStatus

BRIDGE_TRANSITIONS: dict[BridgeStatus, frozenset[BridgeStatus]] = {
    B.PENDING: frozenset({B.BRIDGING, B.CANCELLED, B.FAILED}),
    B.BRIDGING: frozenset({B.AWAITING_PAYMENT, B.CANCELLED, B.FAILED}),
    B.AWAITING_PAYMENT: frozenset({B.XRPL_CONFIRMED, B.CANCELLED, B.FAILED}),
    B.XRPL_CONFIRMED: frozenset({B.FDC_PROOF_GENERATED, B.FDC_TIMEOUT, B.FAILED}),
    B.FDC_TIMEOUT: frozenset({B.FDC_PROOF_GENERATED, B.FDC_TIMEOUT, B.FAILED}),
    B.FDC_PROOF_GENERATED: frozenset({B.COMPLETED, B.FAILED}),
    B.COMPLETED: frozenset({B.VAULT_MINTING}),
    B.VAULT_MINTING: frozenset({B.VAULT_MINTED, B.VAULT_MINT_FAILED}),
    B.VAULT_MINT_FAILED: frozenset({B.VAULT_MINTING}),
    B.FAILED: frozenset(
        {B.AWAITING_PAYMENT, B.XRPL_CONFIRMED, B.FDC_PROOF_GENERATED, B.COMPLETED}
    ),
    B.VAULT_MINTED: frozenset(),
    B.CANCELLED: frozenset(),
}

REDEMPTION_TRANSITIONS: dict[RedemptionStatus, frozenset[RedemptionStatus]] = {
    R.PENDING: frozenset({R.REDEEMING_SHARES, R.FAILED}),
    R.REDEEMING_SHARES: frozenset({R.REDEEMED_FXRP, R.FAILED}),
    R.REDEEMED_FXRP: frozenset({R.REDEEMING_FXRP, R.FAILED}),
    R.REDEEMING_FXRP: frozenset({R.XRPL_PAYOUT, R.REDEEMED_FXRP, R.FAILED}),
    R.XRPL_PAYOUT: frozenset({R.XRPL_RECEIVED, R.FAILED}),
    R.XRPL_RECEIVED: frozenset({R.AWAITING_PROOF, R.COMPLETED, R.FAILED}),
    R.AWAITING_PROOF: frozenset({R.XRPL_RECEIVED, R.AWAITING_PROOF, R.FAILED}),
    R.FAILED: frozenset({R.REDEEMED_FXRP, R.XRPL_PAYOUT, R.XRPL_RECEIVED}),
    R.COMPLETED: frozenset(),
}

# Terminal for the purposes of retries and expiry. FAILED may still be
# resumed by reconciliation when its error kind is recoverable.
BRIDGE_TERMINAL: frozenset[BridgeStatus] = frozenset(
    {B.COMPLETED, B.VAULT_MINTED, B.CANCELLED, B.FAILED}
)
REDEMPTION_TERMINAL: frozenset[RedemptionStatus] = frozenset({R.COMPLETED, R.FAILED})

# States in which the user has not paid yet; only these carry expires_at.
BRIDGE_PRE_PAYMENT: frozenset[BridgeStatus] = frozenset(
    {B.PENDING, B.BRIDGING, B.AWAITING_PAYMENT}
)

BRIDGE_NON_TERMINAL: frozenset[BridgeStatus] = frozenset(
    s for s in BridgeStatus if s not in BRIDGE_TERMINAL
)

del B, R


def now_utc() -> datetime:
    """Current time, timezone-aware UTC."""
    return datetime.now(timezone.utc)


# =========================================================================
# Column codecs
# =========================================================================


def _encode(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, StrEnum):
        return value.value
    if isinstance(value, datetime):
        return value.astimezone(timezone.utc).isoformat()
    if isinstance(value, Decimal):
        return f"{value:f}"
    if isinstance(value, bool):
        return int(value)
    return value


def _decode_datetime(value: str | None) -> datetime | None:
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class _RecordCodec:
    """Row ↔ dataclass conversion shared by both record types.

    Subclasses declare which columns hold datetimes, decimals and big
    integers (stored as TEXT since raw on-chain amounts exceed int64).
    """

    TABLE: ClassVar[str]
    DATETIME_FIELDS: ClassVar[frozenset[str]]
    DECIMAL_FIELDS: ClassVar[frozenset[str]] = frozenset()
    BIGINT_FIELDS: ClassVar[frozenset[str]] = frozenset()

    @classmethod
    def column_names(cls) -> list[str]:
        return [f.name for f in fields(cls)]  # type: ignore[arg-type]

    def to_row(self) -> dict[str, Any]:
        return {name: self.encode_field(name, getattr(self, name)) for name in self.column_names()}

    @classmethod
    def encode_field(cls, name: str, value: Any) -> Any:
        if name in cls.BIGINT_FIELDS and value is not None:
            return str(value)
        return _encode(value)

    @classmethod
    def decode_field(cls, name: str, value: Any) -> Any:
        if value is None:
            return None
        if name in cls.DATETIME_FIELDS:
            return _decode_datetime(value)
        if name in cls.DECIMAL_FIELDS:
            return Decimal(value)
        if name in cls.BIGINT_FIELDS:
            return int(value)
        return value


# =========================================================================
# Records
# =========================================================================


@dataclass(frozen=True)
class BridgeRecord(_RecordCodec):
    """One forward conversion attempt.

    Attributes:
        id: Opaque record id.
        wallet_address: User's destination-chain (EVM) address.
        vault_id: Target vault for the share mint.
        source_amount: XRP amount the user intends to bridge.
        status: Current BridgeStatus.
        source_payment_reference: 32-byte hex memo correlating the XRPL
            payment with the collateral reservation.
        agent_vault_address: FAssets agent vault on the destination chain.
        agent_source_address: Agent's XRPL address the user pays into.
        reservation_tx_hash: reserveCollateral transaction, stored before its
            receipt is awaited.
        collateral_reservation_id: Reservation id from CollateralReserved.
        reserved_value_raw: Drops that will be minted as FXRP.
        reserved_fee_raw: Drops kept by the agent as minting fee.
        total_amount_raw: Drops the user must pay (value + fee).
        reservation_expiry: Deadline for the XRPL payment.
        request_bytes: ABI-encoded attestation request, kept for retries.
        proof_blob: Canonical JSON of the finalized proof.
        destination_amount_received: FXRP actually minted, read from the
            Transfer event.
        vault_mint_tx_hash: Share mint transaction. Written at most once.
        error_kind: ErrorKind tag of the last failure.
        expires_at: Payment deadline; cleared once the payment is seen.
    """

    TABLE: ClassVar[str] = "bridges"
    DATETIME_FIELDS: ClassVar[frozenset[str]] = frozenset(
        {
            "reservation_expiry",
            "source_confirmed_at",
            "created_at",
            "updated_at",
            "bridge_started_at",
            "reserved_at",
            "proof_generated_at",
            "destination_received_at",
            "completed_at",
            "vault_minted_at",
            "expires_at",
            "cancelled_at",
        }
    )
    DECIMAL_FIELDS: ClassVar[frozenset[str]] = frozenset(
        {"source_amount", "destination_amount_expected", "destination_amount_received"}
    )
    BIGINT_FIELDS: ClassVar[frozenset[str]] = frozenset(
        {"collateral_reservation_id", "reserved_value_raw", "reserved_fee_raw", "total_amount_raw"}
    )

    id: str
    wallet_address: str
    vault_id: str
    source_amount: Decimal
    status: BridgeStatus
    created_at: datetime
    updated_at: datetime
    destination_amount_expected: Decimal | None = None
    position_id: str | None = None
    source_payment_reference: str | None = None
    agent_vault_address: str | None = None
    agent_source_address: str | None = None
    reservation_tx_hash: str | None = None
    collateral_reservation_id: int | None = None
    reserved_value_raw: int | None = None
    reserved_fee_raw: int | None = None
    total_amount_raw: int | None = None
    minting_fee_bips: int | None = None
    reservation_expiry: datetime | None = None
    source_tx_hash: str | None = None
    source_confirmed_at: datetime | None = None
    attestation_tx_hash: str | None = None
    voting_round_id: int | None = None
    request_bytes: str | None = None
    proof_blob: str | None = None
    destination_tx_hash: str | None = None
    destination_amount_received: Decimal | None = None
    vault_mint_tx_hash: str | None = None
    error_message: str | None = None
    error_kind: str | None = None
    retry_count: int = 0
    bridge_started_at: datetime | None = None
    reserved_at: datetime | None = None
    proof_generated_at: datetime | None = None
    destination_received_at: datetime | None = None
    completed_at: datetime | None = None
    vault_minted_at: datetime | None = None
    expires_at: datetime | None = None
    cancelled_at: datetime | None = None
    cancellation_reason: str | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> BridgeRecord:
        values = {name: cls.decode_field(name, row[name]) for name in cls.column_names()}
        values["status"] = BridgeStatus(values["status"])
        return cls(**values)

    @property
    def is_terminal(self) -> bool:
        return self.status in BRIDGE_TERMINAL

    def is_expired(self, now: datetime) -> bool:
        """True if the payment deadline has passed while still waiting."""
        return (
            self.expires_at is not None
            and self.status in BRIDGE_PRE_PAYMENT
            and self.expires_at <= now
        )


@dataclass(frozen=True)
class RedemptionRecord(_RecordCodec):
    """One reverse conversion attempt.

    Attributes:
        share_amount: Vault shares being redeemed.
        fxrp_redeemed: FXRP received from the vault, read from the
            Transfer event of the share redemption.
        redemption_tx_hash: redeem transaction, stored before its receipt
            is awaited.
        destination_request_id: FAssets redemption request id.
        agent_source_address: Agent's XRPL address the payout must come from.
        payment_reference: Memo the payout carries.
        expected_payout_raw: Drops the agent must pay to the user.
        source_payout_tx_hash: The agent's XRPL payout transaction.
        xrp_sent: Payout amount observed on the XRPL.
        confirmation_tx_hash: confirmRedemptionPayment transaction.
            Written at most once; marks the redemption as settled.
    """

    TABLE: ClassVar[str] = "redemptions"
    DATETIME_FIELDS: ClassVar[frozenset[str]] = frozenset(
        {"created_at", "updated_at", "last_retry_at", "payout_received_at", "completed_at"}
    )
    DECIMAL_FIELDS: ClassVar[frozenset[str]] = frozenset(
        {"share_amount", "fxrp_redeemed", "xrp_sent"}
    )
    BIGINT_FIELDS: ClassVar[frozenset[str]] = frozenset(
        {"destination_request_id", "expected_payout_raw"}
    )

    id: str
    wallet_address: str
    vault_id: str
    position_id: str
    share_amount: Decimal
    user_source_address: str
    status: RedemptionStatus
    created_at: datetime
    updated_at: datetime
    vault_redeem_tx_hash: str | None = None
    fxrp_redeemed: Decimal | None = None
    redemption_tx_hash: str | None = None
    destination_request_id: int | None = None
    agent_vault_address: str | None = None
    agent_source_address: str | None = None
    payment_reference: str | None = None
    expected_payout_raw: int | None = None
    source_payout_tx_hash: str | None = None
    xrp_sent: Decimal | None = None
    attestation_tx_hash: str | None = None
    voting_round_id: int | None = None
    request_bytes: str | None = None
    proof_blob: str | None = None
    confirmation_tx_hash: str | None = None
    error_message: str | None = None
    error_kind: str | None = None
    retry_count: int = 0
    last_retry_at: datetime | None = None
    payout_received_at: datetime | None = None
    completed_at: datetime | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> RedemptionRecord:
        values = {name: cls.decode_field(name, row[name]) for name in cls.column_names()}
        values["status"] = RedemptionStatus(values["status"])
        return cls(**values)

    @property
    def is_terminal(self) -> bool:
        return self.status in REDEMPTION_TERMINAL
