"""
Settings and network profiles.

A NetworkProfile bundles the fixed facts about one deployment (RPC
endpoints, FDC service URLs, source id, contract registry). BridgeSettings
adds the operator's choices: which network, where the database lives,
which settlement backend to run, and the timing knobs of the polling
loops. Both are frozen; the runtime reads them once at construction.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from enum import StrEnum
from typing import Any

# FDC attestation type "Payment", UTF-8 right-padded to 32 bytes.
PAYMENT_ATTESTATION_TYPE = "0x5061796d656e7400000000000000000000000000000000000000000000000000"

# FDC source ids, UTF-8 right-padded to 32 bytes.
SOURCE_ID_XRP = "0x5852500000000000000000000000000000000000000000000000000000000000"
SOURCE_ID_TEST_XRP = "0x7465737458525000000000000000000000000000000000000000000000000000"

# Same address on every Flare network.
CONTRACT_REGISTRY_ADDRESS = "0xaD67FE66660Fb8dFE9d6b1b4240d8650e30F6019"

# Public development key accepted by the Flare-hosted verifiers.
PUBLIC_VERIFIER_API_KEY = "00000000-0000-0000-0000-000000000000"


class SettlementMode(StrEnum):
    """Which SettlementBackend the runtime builds."""

    CHAIN = "chain"
    SIMULATED = "simulated"


@dataclass(frozen=True)
class NetworkProfile:
    """Fixed endpoints and identifiers for one network.

    Attributes:
        name: "mainnet" or "coston2".
        chain_id: EVM chain id of the destination chain.
        evm_rpc_url: Destination chain JSON-RPC endpoint.
        xrpl_rpc_url: rippled JSON-RPC endpoint on the source ledger.
        verifier_url: FDC verifier base URL (prepareRequest).
        da_url: FDC data-availability layer base URL (proofs).
        source_id: FDC source id for the source ledger.
        contract_registry: Flare contract registry address.
        asset_decimals: Decimals of the underlying asset and of FXRP.
    """

    name: str
    chain_id: int
    evm_rpc_url: str
    xrpl_rpc_url: str
    verifier_url: str
    da_url: str
    source_id: str
    contract_registry: str = CONTRACT_REGISTRY_ADDRESS
    asset_decimals: int = 6


NETWORKS: dict[str, NetworkProfile] = {
    "mainnet": NetworkProfile(
        name="mainnet",
        chain_id=14,
        evm_rpc_url="https://flare-api.flare.network/ext/C/rpc",
        xrpl_rpc_url="https://xrplcluster.com",
        verifier_url="https://fdc-verifiers-mainnet.flare.network",
        da_url="https://flr-data-availability.flare.network",
        source_id=SOURCE_ID_XRP,
    ),
    "coston2": NetworkProfile(
        name="coston2",
        chain_id=114,
        evm_rpc_url="https://coston2-api.flare.network/ext/C/rpc",
        xrpl_rpc_url="https://s.altnet.rippletest.net:51234",
        verifier_url="https://fdc-verifiers-testnet.flare.network",
        da_url="https://ctn2-data-availability.flare.network",
        source_id=SOURCE_ID_TEST_XRP,
    ),
}


@dataclass(frozen=True)
class PollingSettings:
    """Timing of the attestation polling loops (seconds unless noted).

    Attributes:
        verifier_attempts: prepareRequest attempts before giving up.
        verifier_interval: Delay between prepareRequest attempts.
        proof_poll_interval: Delay between DA layer polls.
        proof_timeout: Ceiling on DA polling; 15 minutes.
        round_wait_multiplier: Round durations to wait before the first poll.
        submission_lookback_blocks: Blocks scanned for an "already known"
            submission.
        submission_search_attempts: Scans before giving up.
        submission_search_interval: Delay between scans.
    """

    verifier_attempts: int = 10
    verifier_interval: float = 10.0
    proof_poll_interval: float = 10.0
    proof_timeout: float = 900.0
    round_wait_multiplier: int = 2
    submission_lookback_blocks: int = 20
    submission_search_attempts: int = 12
    submission_search_interval: float = 5.0


@dataclass(frozen=True)
class BridgeSettings:
    """Operator configuration for one bridge process.

    Attributes:
        network: Active NetworkProfile.
        db_path: SQLite database path (":memory:" for ephemeral).
        settlement_mode: chain or simulated.
        verifier_api_key: X-API-KEY for the FDC verifier.
        operator_private_key: Key that signs destination transactions.
            Required in chain mode; never logged.
        http_timeout: Per-request HTTP timeout.
        payment_window: Seconds a new bridge waits for the user's payment.
        reconciliation_interval: Seconds between expiry sweeps.
        max_retries: Automatic recovery attempts per record.
        retry_backoff_base: Seconds; redemption retries back off as
            base * 2 ** retry_count.
        polling: Attestation polling timings.
    """

    network: NetworkProfile = field(default_factory=lambda: NETWORKS["coston2"])
    db_path: str = "fassets_bridge.db"
    settlement_mode: SettlementMode = SettlementMode.SIMULATED
    verifier_api_key: str = PUBLIC_VERIFIER_API_KEY
    operator_private_key: str | None = field(default=None, repr=False)
    http_timeout: float = 30.0
    payment_window: float = 1800.0
    reconciliation_interval: float = 300.0
    max_retries: int = 10
    retry_backoff_base: float = 60.0
    polling: PollingSettings = field(default_factory=PollingSettings)

    def __post_init__(self) -> None:
        if self.settlement_mode == SettlementMode.CHAIN and not self.operator_private_key:
            raise ValueError("chain settlement requires operator_private_key")
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")

    @classmethod
    def from_env(cls, env: dict[str, str] | None = None) -> BridgeSettings:
        """Build settings from environment variables.

        Recognized variables:
            BRIDGE_NETWORK, BRIDGE_DB_PATH, BRIDGE_SETTLEMENT,
            FLARE_RPC_URL, XRPL_RPC_URL, FDC_VERIFIER_URL, FDC_DA_URL,
            FDC_API_KEY, OPERATOR_PRIVATE_KEY, BRIDGE_PAYMENT_WINDOW,
            BRIDGE_RECONCILIATION_INTERVAL, BRIDGE_MAX_RETRIES,
            BRIDGE_PROOF_TIMEOUT.

        Args:
            env: Mapping to read instead of os.environ (tests).

        Raises:
            ValueError: Unknown network or settlement mode, or chain
                mode without a private key.
        """
        source = os.environ if env is None else env

        network_name = source.get("BRIDGE_NETWORK", "coston2")
        if network_name not in NETWORKS:
            raise ValueError(f"unknown network: {network_name}")
        overrides: dict[str, Any] = {}
        for var, attr in (
            ("FLARE_RPC_URL", "evm_rpc_url"),
            ("XRPL_RPC_URL", "xrpl_rpc_url"),
            ("FDC_VERIFIER_URL", "verifier_url"),
            ("FDC_DA_URL", "da_url"),
        ):
            if source.get(var):
                overrides[attr] = source[var]
        network = replace(NETWORKS[network_name], **overrides)

        polling = PollingSettings()
        if source.get("BRIDGE_PROOF_TIMEOUT"):
            polling = replace(polling, proof_timeout=float(source["BRIDGE_PROOF_TIMEOUT"]))

        return cls(
            network=network,
            db_path=source.get("BRIDGE_DB_PATH", "fassets_bridge.db"),
            settlement_mode=SettlementMode(source.get("BRIDGE_SETTLEMENT", "simulated")),
            verifier_api_key=source.get("FDC_API_KEY", PUBLIC_VERIFIER_API_KEY),
            operator_private_key=source.get("OPERATOR_PRIVATE_KEY") or None,
            payment_window=float(source.get("BRIDGE_PAYMENT_WINDOW", "1800")),
            reconciliation_interval=float(source.get("BRIDGE_RECONCILIATION_INTERVAL", "300")),
            max_retries=int(source.get("BRIDGE_MAX_RETRIES", "10")),
            polling=polling,
        )
