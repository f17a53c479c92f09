"""
External collaborators of the state machines.

Payment detector:
    Watches source-ledger addresses and emits PaymentDetected events.
    The state machines only tell it which addresses matter; the
    SubscriptionRegistry below is the in-process implementation owned
    by the runtime, and a ledger listener feeds payments into it.

Share accounting:
    Mints and redeems vault shares on the destination chain. Opaque to
    the bridge: it sees a tx hash and a position id, nothing more.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol, runtime_checkable

from fassets_bridge.canonical_json import sha256_hex

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PaymentDetected:
    """A source-ledger payment correlated with a bridge or redemption.

    Exactly one of ``bridge_id`` / ``redemption_id`` is set.
    """

    tx_hash: str
    amount_raw: int
    from_address: str
    to_address: str
    bridge_id: str | None = None
    redemption_id: str | None = None

    def __post_init__(self) -> None:
        if (self.bridge_id is None) == (self.redemption_id is None):
            raise ValueError("exactly one of bridge_id and redemption_id must be set")


@runtime_checkable
class PaymentDetector(Protocol):
    """Subscription interface the state machines drive.

    Watches are per record: several bridges may share one agent address
    and several redemptions one user address.
    """

    def add_agent_address(
        self,
        address: str,
        bridge_id: str,
        payment_reference: str,
        amount_raw: int,
    ) -> None:
        ...

    def remove_agent_address(self, address: str, bridge_id: str) -> None:
        ...

    def subscribe_user_for_redemption(
        self,
        address: str,
        redemption_id: str,
        agent_address: str | None = None,
        amount_raw: int | None = None,
        payment_reference: str | None = None,
    ) -> None:
        ...

    def unsubscribe_user_address(self, address: str, redemption_id: str) -> None:
        ...


def normalize_reference(reference: str | None) -> str | None:
    """Payment reference as carried in XRPL MemoData: uppercase hex, no 0x."""
    if reference is None:
        return None
    return reference.removeprefix("0x").removeprefix("0X").upper()


@dataclass(frozen=True)
class _Watch:
    record_id: str
    amount_raw: int | None
    reference: str | None
    sender: str | None = None


class SubscriptionRegistry:
    """In-memory PaymentDetector with an explicit start/stop lifecycle.

    Keeps one watch per record under the address it waits on. ``match``
    turns an incoming ledger payment into a PaymentDetected event:

        - to an agent address: the memo must equal the bridge's payment
          reference and the amount must cover the reserved total
        - to a user address: the sender must be the redemption's agent
          and the amount must cover the expected payout; a memo, when
          present, must also equal the redemption's reference

    Anything else returns None and leaves every watch in place.
    """

    def __init__(self) -> None:
        self._agents: dict[str, dict[str, _Watch]] = {}
        self._redeemers: dict[str, dict[str, _Watch]] = {}
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        self._running = True
        bridges = sum(len(w) for w in self._agents.values())
        redemptions = sum(len(w) for w in self._redeemers.values())
        logger.info(
            f"Subscription registry started "
            f"({bridges} bridges, {redemptions} redemptions)"
        )

    def stop(self) -> None:
        self._running = False
        logger.info("Subscription registry stopped")

    def add_agent_address(
        self,
        address: str,
        bridge_id: str,
        payment_reference: str,
        amount_raw: int,
    ) -> None:
        self._agents.setdefault(address, {})[bridge_id] = _Watch(
            bridge_id, amount_raw, normalize_reference(payment_reference)
        )
        logger.debug(f"Watching agent address {address} for bridge {bridge_id}")

    def remove_agent_address(self, address: str, bridge_id: str) -> None:
        if _discard(self._agents, address, bridge_id):
            logger.debug(f"Stopped watching agent address {address} for bridge {bridge_id}")

    def subscribe_user_for_redemption(
        self,
        address: str,
        redemption_id: str,
        agent_address: str | None = None,
        amount_raw: int | None = None,
        payment_reference: str | None = None,
    ) -> None:
        self._redeemers.setdefault(address, {})[redemption_id] = _Watch(
            redemption_id, amount_raw, normalize_reference(payment_reference), agent_address
        )
        logger.debug(f"Watching user address {address} for redemption {redemption_id}")

    def unsubscribe_user_address(self, address: str, redemption_id: str) -> None:
        if _discard(self._redeemers, address, redemption_id):
            logger.debug(
                f"Stopped watching user address {address} for redemption {redemption_id}"
            )

    def watched_addresses(self) -> set[str]:
        return set(self._agents) | set(self._redeemers)

    def match(
        self,
        tx_hash: str,
        from_address: str,
        to_address: str,
        amount_raw: int,
        memo: str | None = None,
    ) -> PaymentDetected | None:
        """Correlate a ledger payment with a waiting record."""
        if not self._running:
            return None
        reference = normalize_reference(memo)
        bridge_id = self._match_bridge(tx_hash, to_address, amount_raw, reference)
        if bridge_id is not None:
            return PaymentDetected(
                tx_hash=tx_hash,
                amount_raw=amount_raw,
                from_address=from_address,
                to_address=to_address,
                bridge_id=bridge_id,
            )
        for watch in self._redeemers.get(to_address, {}).values():
            if watch.sender is not None and from_address != watch.sender:
                continue
            if watch.amount_raw is not None and amount_raw < watch.amount_raw:
                continue
            if reference is not None and watch.reference not in (None, reference):
                continue
            return PaymentDetected(
                tx_hash=tx_hash,
                amount_raw=amount_raw,
                from_address=from_address,
                to_address=to_address,
                redemption_id=watch.record_id,
            )
        if to_address in self._redeemers:
            logger.info(
                f"Payment {tx_hash} from {from_address} to {to_address} matches no redemption"
            )
        return None

    def _match_bridge(
        self,
        tx_hash: str,
        to_address: str,
        amount_raw: int,
        reference: str | None,
    ) -> str | None:
        watches = self._agents.get(to_address)
        if not watches:
            return None
        for watch in watches.values():
            if reference is None or watch.reference != reference:
                continue
            if watch.amount_raw is not None and amount_raw < watch.amount_raw:
                logger.warning(
                    f"Payment {tx_hash} for bridge {watch.record_id} is short: "
                    f"{amount_raw} drops, {watch.amount_raw} reserved"
                )
                return None
            return watch.record_id
        logger.info(f"Payment {tx_hash} to agent {to_address} carries no known reference")
        return None


def _discard(watches: dict[str, dict[str, _Watch]], address: str, record_id: str) -> bool:
    by_record = watches.get(address)
    if by_record is None or by_record.pop(record_id, None) is None:
        return False
    if not by_record:
        del watches[address]
    return True


# =====================================================================
# Share accounting
# =====================================================================


@dataclass(frozen=True)
class ShareMint:
    """Result of a vault share mint."""

    tx_hash: str
    position_id: str


@runtime_checkable
class ShareAccounting(Protocol):
    """Vault share operations. Failures raise; retries are the caller's."""

    async def mint_shares(self, vault_id: str, user_address: str, amount: Decimal) -> ShareMint:
        ...

    async def redeem_shares(self, vault_id: str, user_address: str, share_amount: Decimal) -> str:
        ...


class SimulatedShareAccounting:
    """Deterministic ShareAccounting for the simulated settlement mode.

    One position per (vault, user); hashes derive from the inputs so a
    replay produces the same values.
    """

    def __init__(self) -> None:
        self.mints: list[tuple[str, str, Decimal]] = []
        self.redemptions: list[tuple[str, str, Decimal]] = []

    async def mint_shares(self, vault_id: str, user_address: str, amount: Decimal) -> ShareMint:
        self.mints.append((vault_id, user_address, amount))
        seed = f"{vault_id}:{user_address.lower()}"
        return ShareMint(
            tx_hash=f"0x{sha256_hex(f'mint-shares:{seed}:{len(self.mints)}')}",
            position_id=f"pos-{sha256_hex(seed)[:16]}",
        )

    async def redeem_shares(self, vault_id: str, user_address: str, share_amount: Decimal) -> str:
        self.redemptions.append((vault_id, user_address, share_amount))
        seed = f"{vault_id}:{user_address.lower()}:{len(self.redemptions)}"
        return f"0x{sha256_hex(f'redeem-shares:{seed}')}"
