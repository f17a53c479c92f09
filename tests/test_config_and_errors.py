"""
Tests for settings and error classification.

Test plan:
- from_env defaults: coston2, simulated, testXRP source id
- from_env overrides: network URLs, numeric knobs, proof timeout
- Unknown network / chain mode without a key → ValueError
- The private key never appears in repr
- classify_exception: bridge errors keep their kind, transport errors
  are network_unavailable, anything else unknown
- is_recoverable: only the recoverable kinds, tolerant of junk
"""

import httpx
import pytest

from fassets_bridge.config import (
    NETWORKS,
    SOURCE_ID_TEST_XRP,
    SOURCE_ID_XRP,
    BridgeSettings,
    SettlementMode,
)
from fassets_bridge.errors import (
    ErrorKind,
    ProofTimeoutError,
    ReservationExpiredError,
    ShareAccountingError,
    classify_exception,
    is_recoverable,
)


class TestFromEnv:
    def test_defaults(self) -> None:
        settings = BridgeSettings.from_env({})
        assert settings.network.name == "coston2"
        assert settings.network.source_id == SOURCE_ID_TEST_XRP
        assert settings.settlement_mode == SettlementMode.SIMULATED
        assert settings.polling.proof_timeout == 900.0
        assert settings.max_retries == 10

    def test_mainnet(self) -> None:
        settings = BridgeSettings.from_env({"BRIDGE_NETWORK": "mainnet"})
        assert settings.network.chain_id == 14
        assert settings.network.source_id == SOURCE_ID_XRP

    def test_overrides(self) -> None:
        settings = BridgeSettings.from_env(
            {
                "FDC_DA_URL": "https://da.local",
                "BRIDGE_DB_PATH": ":memory:",
                "BRIDGE_PAYMENT_WINDOW": "600",
                "BRIDGE_MAX_RETRIES": "3",
                "BRIDGE_PROOF_TIMEOUT": "60",
            }
        )
        assert settings.network.da_url == "https://da.local"
        assert settings.network.verifier_url == NETWORKS["coston2"].verifier_url
        assert settings.db_path == ":memory:"
        assert settings.payment_window == 600.0
        assert settings.max_retries == 3
        assert settings.polling.proof_timeout == 60.0

    def test_unknown_network(self) -> None:
        with pytest.raises(ValueError):
            BridgeSettings.from_env({"BRIDGE_NETWORK": "devnet"})

    def test_chain_mode_requires_key(self) -> None:
        with pytest.raises(ValueError):
            BridgeSettings.from_env({"BRIDGE_SETTLEMENT": "chain"})

    def test_key_not_in_repr(self) -> None:
        settings = BridgeSettings.from_env(
            {"BRIDGE_SETTLEMENT": "chain", "OPERATOR_PRIVATE_KEY": "0xsecretkey"}
        )
        assert settings.settlement_mode == SettlementMode.CHAIN
        assert "0xsecretkey" not in repr(settings)


class TestClassification:
    def test_bridge_errors_keep_kind(self) -> None:
        assert classify_exception(ProofTimeoutError(1, 404, "0x")) == ErrorKind.PROOF_TIMEOUT
        assert classify_exception(ReservationExpiredError("late")) == ErrorKind.RESERVATION_EXPIRED

    def test_transport_errors(self) -> None:
        assert classify_exception(httpx.ConnectError("down")) == ErrorKind.NETWORK_UNAVAILABLE
        assert classify_exception(ConnectionResetError()) == ErrorKind.NETWORK_UNAVAILABLE
        assert classify_exception(TimeoutError()) == ErrorKind.NETWORK_UNAVAILABLE

    def test_unknown(self) -> None:
        assert classify_exception(KeyError("x")) == ErrorKind.UNKNOWN

    def test_explicit_kind_overrides_class(self) -> None:
        exc = ShareAccountingError("boom", kind=ErrorKind.NETWORK_UNAVAILABLE)
        assert classify_exception(exc) == ErrorKind.NETWORK_UNAVAILABLE


class TestRecoverable:
    @pytest.mark.parametrize(
        "kind",
        [
            ErrorKind.PROOF_TIMEOUT,
            ErrorKind.SHARE_MINT_FAILED,
            ErrorKind.NETWORK_UNAVAILABLE,
            ErrorKind.ATTESTATION_SUBMISSION_UNRESOLVED,
        ],
    )
    def test_recoverable(self, kind: ErrorKind) -> None:
        assert is_recoverable(kind)
        assert is_recoverable(str(kind))

    @pytest.mark.parametrize(
        "kind", [ErrorKind.CONTRACT_REVERTED, ErrorKind.INVALID_TIMESTAMP, ErrorKind.UNKNOWN]
    )
    def test_fatal(self, kind: ErrorKind) -> None:
        assert not is_recoverable(kind)

    def test_junk(self) -> None:
        assert not is_recoverable(None)
        assert not is_recoverable("no_such_kind")
