"""
FAssets AssetManager client — collateral reservation, minting, redemption.

Wraps the AssetManager contract behind plain async methods and frozen
result types. Agent selection and event parsing are pure functions so
they can be tested without a chain.

Minting flow on the contract side:
    reserveCollateral(agent, lots, maxFeeBIPS, executor) {value: CRF}
        → CollateralReserved(reservationId, valueUBA, feeUBA,
          paymentAddress, paymentReference, lastUnderlyingTimestamp)
    user pays valueUBA + feeUBA to paymentAddress with the reference
    executeMinting(proof, reservationId)
        → FXRP Transfer(0x0 → minter, valueUBA)

Redemption flow:
    redeem(lots, redeemerUnderlyingAddress, executor)
        → RedemptionRequested(requestId, valueUBA, feeUBA)
    agent pays valueUBA - feeUBA to the redeemer on the XRPL
    confirmRedemptionPayment(proof, requestId)
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from fassets_bridge.amounts import to_raw
from fassets_bridge.errors import BridgeError, DestinationTransactionError, ErrorKind
from fassets_bridge.evm.abis import ASSET_MANAGER_ABI, ERC20_ABI, PAYMENT_RESPONSE
from fassets_bridge.evm.gateway import (
    ZERO_ADDRESS,
    EvmGateway,
    OnSent,
    TxReceipt,
    mined_receipt,
    transact,
)

logger = logging.getLogger(__name__)

# AgentInfo.Status.NORMAL
AGENT_STATUS_NORMAL = 0


@dataclass(frozen=True)
class AgentCandidate:
    """An agent offering free collateral lots."""

    vault_address: str
    fee_bips: int
    free_lots: int
    status: int


@dataclass(frozen=True)
class CollateralReservation:
    """Outcome of reserveCollateral, read from the CollateralReserved event.

    Attributes:
        reservation_id: collateralReservationId.
        reservation_tx_hash: The reserveCollateral transaction.
        agent_vault: Agent vault address on the destination chain.
        agent_source_address: XRPL address the user must pay.
        fee_bips: Agent minting fee in basis points.
        value_raw: Drops that will be minted as FXRP.
        fee_raw: Drops the agent keeps as minting fee.
        payment_reference: 0x-prefixed 32-byte memo for the payment.
        last_underlying_block: Last XRPL ledger the payment may land in.
        last_underlying_timestamp: Payment deadline (unix seconds).
    """

    reservation_id: int
    reservation_tx_hash: str
    agent_vault: str
    agent_source_address: str
    fee_bips: int
    value_raw: int
    fee_raw: int
    payment_reference: str
    last_underlying_block: int
    last_underlying_timestamp: int

    @property
    def total_raw(self) -> int:
        return self.value_raw + self.fee_raw

    @property
    def expires_at(self) -> datetime:
        return datetime.fromtimestamp(self.last_underlying_timestamp, tz=timezone.utc)


@dataclass(frozen=True)
class RedemptionTicket:
    """Outcome of redeem, read from the RedemptionRequested event.

    Attributes:
        payment_address: Redeemer's XRPL address the agent pays.
        agent_source_address: Agent's XRPL address the payout comes from.
        payment_reference: 0x-prefixed memo the payout carries.
    """

    request_id: int
    tx_hash: str
    agent_vault: str
    payment_address: str
    value_raw: int
    fee_raw: int
    agent_source_address: str | None = None
    payment_reference: str | None = None

    @property
    def expected_payout_raw(self) -> int:
        return self.value_raw - self.fee_raw


# =====================================================================
# Pure helpers
# =====================================================================


def select_agent(agents: Iterable[AgentCandidate], lots: int) -> AgentCandidate | None:
    """Cheapest healthy agent with at least ``lots`` free lots.

    Ties on fee are broken by the larger free capacity, then by address,
    so the choice is deterministic for a given agent list.
    """
    eligible = [
        a for a in agents if a.free_lots >= lots and a.status == AGENT_STATUS_NORMAL
    ]
    if not eligible:
        return None
    eligible.sort(key=lambda a: (a.fee_bips, -a.free_lots, a.vault_address.lower()))
    return eligible[0]


def sum_transfers(
    events: Iterable[dict[str, Any]],
    *,
    recipient: str,
    sender: str | None = None,
) -> int:
    """Total ``value`` of Transfer events to ``recipient`` (optionally from ``sender``)."""
    total = 0
    for event in events:
        if str(event["to"]).lower() != recipient.lower():
            continue
        if sender is not None and str(event["from"]).lower() != sender.lower():
            continue
        total += int(event["value"])
    return total


def _hex32(value: Any) -> str:
    if isinstance(value, str):
        return value if value.startswith("0x") else f"0x{value}"
    return f"0x{bytes(value).hex()}"


def _coerce(value: Any, components: list[dict[str, Any]]) -> dict[str, Any]:
    result: dict[str, Any] = {}
    for component in components:
        name = component["name"]
        field_type = component["type"]
        raw = value[name]
        if field_type == "tuple":
            result[name] = _coerce(raw, component["components"])
        elif field_type.startswith(("uint", "int")):
            result[name] = raw if isinstance(raw, int) else int(str(raw), 0)
        elif field_type == "bool":
            result[name] = raw if isinstance(raw, bool) else str(raw).lower() == "true"
        else:
            result[name] = raw
    return result


def payment_proof_argument(proof: dict[str, Any]) -> dict[str, Any]:
    """Shape a DA-layer proof as the IPayment.Proof contract argument.

    The DA layer serves numbers as JSON numbers or decimal strings;
    the contract argument needs Python ints.
    """
    return {
        "merkleProof": list(proof["proof"]),
        "data": _coerce(proof["response"], PAYMENT_RESPONSE),
    }


def parse_collateral_reserved(
    event: dict[str, Any], tx_hash: str, fee_bips: int | None = None
) -> CollateralReservation:
    """Reservation from a CollateralReserved event.

    Without ``fee_bips`` the agent fee is derived from the event amounts.
    """
    value_raw = int(event["valueUBA"])
    fee_raw = int(event["feeUBA"])
    if fee_bips is None:
        fee_bips = (fee_raw * 10_000 + value_raw // 2) // value_raw if value_raw else 0
    return CollateralReservation(
        reservation_id=int(event["collateralReservationId"]),
        reservation_tx_hash=tx_hash,
        agent_vault=str(event["agentVault"]),
        agent_source_address=str(event["paymentAddress"]),
        fee_bips=fee_bips,
        value_raw=value_raw,
        fee_raw=fee_raw,
        payment_reference=_hex32(event["paymentReference"]),
        last_underlying_block=int(event["lastUnderlyingBlock"]),
        last_underlying_timestamp=int(event["lastUnderlyingTimestamp"]),
    )


def parse_redemption_requested(
    event: dict[str, Any],
    tx_hash: str,
    agent_source_address: str | None = None,
) -> RedemptionTicket:
    reference = event.get("paymentReference")
    return RedemptionTicket(
        request_id=int(event["requestId"]),
        tx_hash=tx_hash,
        agent_vault=str(event["agentVault"]),
        payment_address=str(event["paymentAddress"]),
        value_raw=int(event["valueUBA"]),
        fee_raw=int(event["feeUBA"]),
        agent_source_address=agent_source_address,
        payment_reference=_hex32(reference) if reference is not None else None,
    )


# =====================================================================
# Client
# =====================================================================


class FAssetsClient:
    """AssetManager operations over an EvmGateway.

    Args:
        gateway: Destination chain gateway (signs as the operator).
        asset_manager_name: Registry name of the FXRP asset manager.
        page_size: Agents fetched per getAvailableAgentsDetailedList call.
    """

    def __init__(
        self,
        gateway: EvmGateway,
        *,
        asset_manager_name: str = "AssetManagerFXRP",
        page_size: int = 100,
    ) -> None:
        self._gateway = gateway
        self._asset_manager_name = asset_manager_name
        self._page_size = page_size
        self._lot_size: int | None = None
        self._decimals: int | None = None
        self._fasset: str | None = None

    async def asset_manager(self) -> str:
        return await self._gateway.resolve_contract(self._asset_manager_name)

    async def _call(self, fn_name: str, *args: Any) -> Any:
        return await self._gateway.call(await self.asset_manager(), ASSET_MANAGER_ABI, fn_name, *args)

    async def lot_size(self) -> int:
        if self._lot_size is None:
            self._lot_size = int(await self._call("lotSize"))
        return self._lot_size

    async def asset_decimals(self) -> int:
        if self._decimals is None:
            self._decimals = int(await self._call("assetMintingDecimals"))
        return self._decimals

    async def fasset_address(self) -> str:
        if self._fasset is None:
            self._fasset = str(await self._call("fAsset"))
        return self._fasset

    async def calculate_lots(self, amount: Decimal) -> int:
        """Lots needed to cover ``amount``, rounded up."""
        if amount <= 0:
            raise ValueError(f"amount must be positive, got {amount}")
        amount_raw = to_raw(amount, await self.asset_decimals())
        lot_size = await self.lot_size()
        return -(-amount_raw // lot_size)

    async def list_agents(self) -> list[AgentCandidate]:
        agents, _total = await self._call("getAvailableAgentsDetailedList", 0, self._page_size)
        return [
            AgentCandidate(
                vault_address=str(agent[0]),
                fee_bips=int(agent[2]),
                free_lots=int(agent[5]),
                status=int(agent[6]),
            )
            for agent in agents
        ]

    async def find_best_agent(self, lots: int) -> AgentCandidate | None:
        return select_agent(await self.list_agents(), lots)

    async def reserve_collateral(
        self,
        lots: int,
        on_sent: OnSent | None = None,
    ) -> CollateralReservation:
        """Reserve ``lots`` with the cheapest eligible agent.

        ``on_sent`` is awaited with the tx hash before waiting for the
        receipt; a hash stored that way is finished with
        ``reservation_from_tx`` rather than paying the reservation fee again.

        Raises:
            BridgeError: No agent has enough free collateral.
            DestinationTransactionError: The reservation reverted or
                no CollateralReserved event was emitted.
        """
        agent = await self.find_best_agent(lots)
        if agent is None:
            raise BridgeError(
                f"no agent with {lots} free lots",
                kind=ErrorKind.NO_AGENT_AVAILABLE,
                details={"lots": lots},
            )
        logger.info(
            f"Selected agent {agent.vault_address} "
            f"(fee {agent.fee_bips} BIPS, {agent.free_lots} free lots)"
        )

        asset_manager = await self.asset_manager()
        reservation_fee = int(await self._call("collateralReservationFee", lots))
        receipt = await transact(
            self._gateway,
            asset_manager,
            ASSET_MANAGER_ABI,
            "reserveCollateral",
            agent.vault_address,
            lots,
            agent.fee_bips,
            ZERO_ADDRESS,
            value=reservation_fee,
            on_sent=on_sent,
        )
        return await self._reservation(asset_manager, receipt, agent.fee_bips)

    async def reservation_from_tx(self, tx_hash: str) -> CollateralReservation | None:
        """Reservation made by an earlier reserveCollateral. None if it reverted.

        Raises:
            DestinationTransactionError: Not mined yet, or no event.
        """
        receipt = await mined_receipt(self._gateway, tx_hash)
        if receipt is None:
            return None
        return await self._reservation(await self.asset_manager(), receipt, None)

    async def _reservation(
        self, asset_manager: str, receipt: TxReceipt, fee_bips: int | None
    ) -> CollateralReservation:
        events = self._gateway.decode_events(
            asset_manager, ASSET_MANAGER_ABI, "CollateralReserved", receipt
        )
        if not events:
            raise DestinationTransactionError(
                "CollateralReserved event not found",
                tx_hash=receipt.tx_hash,
            )
        reservation = parse_collateral_reserved(events[0], receipt.tx_hash, fee_bips)
        logger.info(
            f"Reserved collateral {reservation.reservation_id}: "
            f"pay {reservation.total_raw} drops to {reservation.agent_source_address}"
        )
        return reservation

    async def _send_with_proof(
        self,
        fn_name: str,
        proof: dict[str, Any],
        record_key: int,
        on_sent: OnSent | None,
    ) -> TxReceipt:
        asset_manager = await self.asset_manager()
        tx_hash = await self._gateway.send(
            asset_manager,
            ASSET_MANAGER_ABI,
            fn_name,
            payment_proof_argument(proof),
            record_key,
        )
        if on_sent is not None:
            await on_sent(tx_hash)
        return await self._gateway.wait_for_receipt(tx_hash)

    async def execute_minting(
        self,
        proof: dict[str, Any],
        reservation_id: int,
        on_sent: OnSent | None = None,
    ) -> TxReceipt:
        """Submit the payment proof and mint FXRP for a reservation.

        ``on_sent`` is awaited with the tx hash before waiting for the
        receipt, so the caller can persist it first.
        """
        return await self._send_with_proof("executeMinting", proof, reservation_id, on_sent)

    async def confirm_redemption_payment(
        self,
        proof: dict[str, Any],
        request_id: int,
        on_sent: OnSent | None = None,
    ) -> TxReceipt:
        return await self._send_with_proof("confirmRedemptionPayment", proof, request_id, on_sent)

    async def transferred_amount(
        self,
        receipt: TxReceipt,
        *,
        recipient: str,
        minted_only: bool = False,
    ) -> int:
        """Raw FXRP moved to ``recipient`` in a transaction."""
        events = self._gateway.decode_events(
            await self.fasset_address(), ERC20_ABI, "Transfer", receipt
        )
        return sum_transfers(
            events,
            recipient=recipient,
            sender=ZERO_ADDRESS if minted_only else None,
        )

    async def agent_source_address(self, agent_vault: str) -> str:
        """The agent's XRPL address, from getAgentInfo."""
        info = await self._call("getAgentInfo", agent_vault)
        # underlyingAddressString is the last field of AgentInfo.
        return str(info[-1])

    async def redeem(
        self,
        amount_raw: int,
        redeemer_source_address: str,
        on_sent: OnSent | None = None,
    ) -> RedemptionTicket:
        """Burn FXRP for XRP paid to ``redeemer_source_address``.

        Only whole lots can be redeemed; the remainder stays with the
        operator. ``on_sent`` is awaited with the tx hash before the
        receipt wait.
        """
        lots = amount_raw // await self.lot_size()
        if lots < 1:
            raise BridgeError(
                f"{amount_raw} is below one lot",
                kind=ErrorKind.INVALID_RECORD,
                details={"amount_raw": amount_raw},
            )
        asset_manager = await self.asset_manager()
        receipt = await transact(
            self._gateway,
            asset_manager,
            ASSET_MANAGER_ABI,
            "redeem",
            lots,
            redeemer_source_address,
            ZERO_ADDRESS,
            on_sent=on_sent,
        )
        return await self._ticket(asset_manager, receipt)

    async def redemption_from_tx(self, tx_hash: str) -> RedemptionTicket | None:
        """Ticket of an earlier redeem call. None if it reverted.

        Raises:
            DestinationTransactionError: Not mined yet, or no event.
        """
        receipt = await mined_receipt(self._gateway, tx_hash)
        if receipt is None:
            return None
        return await self._ticket(await self.asset_manager(), receipt)

    async def _ticket(self, asset_manager: str, receipt: TxReceipt) -> RedemptionTicket:
        events = self._gateway.decode_events(
            asset_manager, ASSET_MANAGER_ABI, "RedemptionRequested", receipt
        )
        if not events:
            raise DestinationTransactionError(
                "RedemptionRequested event not found",
                tx_hash=receipt.tx_hash,
            )
        agent_address = await self.agent_source_address(str(events[0]["agentVault"]))
        ticket = parse_redemption_requested(events[0], receipt.tx_hash, agent_address)
        logger.info(
            f"Redemption {ticket.request_id} requested from agent {ticket.agent_vault} "
            f"({agent_address}): {ticket.expected_payout_raw} drops expected"
        )
        return ticket
