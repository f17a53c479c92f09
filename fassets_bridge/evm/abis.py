"""
Contract ABI fragments for the destination chain.

Only the functions and events the bridge touches are listed. Struct
layouts follow the Flare periphery interfaces (IPayment, IAssetManager).
"""

from __future__ import annotations

from typing import Any


def _fn(
    name: str,
    inputs: list[dict[str, Any]],
    outputs: list[dict[str, Any]] | None = None,
    mutability: str = "view",
) -> dict[str, Any]:
    return {
        "type": "function",
        "name": name,
        "inputs": inputs,
        "outputs": outputs or [],
        "stateMutability": mutability,
    }


def _arg(name: str, type_: str, **extra: Any) -> dict[str, Any]:
    return {"name": name, "type": type_, **extra}


def _event(name: str, inputs: list[tuple[str, str, bool]]) -> dict[str, Any]:
    return {
        "type": "event",
        "name": name,
        "anonymous": False,
        "inputs": [
            {"name": arg_name, "type": arg_type, "indexed": indexed}
            for arg_name, arg_type, indexed in inputs
        ],
    }


# =========================================================================
# IPayment.Proof
# =========================================================================

PAYMENT_REQUEST_BODY = [
    _arg("transactionId", "bytes32"),
    _arg("inUtxo", "uint256"),
    _arg("utxo", "uint256"),
]

PAYMENT_RESPONSE_BODY = [
    _arg("blockNumber", "uint64"),
    _arg("blockTimestamp", "uint64"),
    _arg("sourceAddressHash", "bytes32"),
    _arg("sourceAddressesRoot", "bytes32"),
    _arg("receivingAddressHash", "bytes32"),
    _arg("intendedReceivingAddressHash", "bytes32"),
    _arg("spentAmount", "int256"),
    _arg("intendedSpentAmount", "int256"),
    _arg("receivedAmount", "int256"),
    _arg("intendedReceivedAmount", "int256"),
    _arg("standardPaymentReference", "bytes32"),
    _arg("oneToOne", "bool"),
    _arg("status", "uint8"),
]

PAYMENT_RESPONSE = [
    _arg("attestationType", "bytes32"),
    _arg("sourceId", "bytes32"),
    _arg("votingRound", "uint64"),
    _arg("lowestUsedTimestamp", "uint64"),
    _arg("requestBody", "tuple", components=PAYMENT_REQUEST_BODY),
    _arg("responseBody", "tuple", components=PAYMENT_RESPONSE_BODY),
]

PAYMENT_PROOF = [
    _arg("merkleProof", "bytes32[]"),
    _arg("data", "tuple", components=PAYMENT_RESPONSE),
]


# =========================================================================
# Flare infrastructure
# =========================================================================

CONTRACT_REGISTRY_ABI = [
    _fn("getContractAddressByName", [_arg("_name", "string")], [_arg("", "address")]),
]

FDC_HUB_ABI = [
    _fn("requestAttestation", [_arg("_data", "bytes")], mutability="payable"),
]

FDC_FEE_CONFIGURATIONS_ABI = [
    _fn("getRequestFee", [_arg("_data", "bytes")], [_arg("", "uint256")]),
]

FLARE_SYSTEMS_MANAGER_ABI = [
    _fn("firstVotingRoundStartTs", [], [_arg("", "uint64")]),
    _fn("votingEpochDurationSeconds", [], [_arg("", "uint64")]),
]


# =========================================================================
# FAssets
# =========================================================================

AVAILABLE_AGENT_INFO = [
    _arg("agentVault", "address"),
    _arg("ownerManagementAddress", "address"),
    _arg("feeBIPS", "uint256"),
    _arg("mintingVaultCollateralRatioBIPS", "uint256"),
    _arg("mintingPoolCollateralRatioBIPS", "uint256"),
    _arg("freeCollateralLots", "uint256"),
    _arg("status", "uint8"),
]

AGENT_INFO = [
    _arg("agentVault", "address"),
    _arg("vaultCollateralToken", "address"),
    _arg("feeBIPS", "uint256"),
    _arg("poolFeeShareBIPS", "uint256"),
    _arg("mintedUBA", "uint256"),
    _arg("reservedUBA", "uint256"),
    _arg("redeemingUBA", "uint256"),
    _arg("announcedUnderlyingWithdrawalId", "uint256"),
    _arg("freeUnderlyingBalanceUBA", "uint256"),
    _arg("mintingVaultCollateralRatioBIPS", "uint256"),
    _arg("mintingPoolCollateralRatioBIPS", "uint256"),
    _arg("freeVaultCollateralWei", "uint256"),
    _arg("freePoolCollateralNATWei", "uint256"),
    _arg("totalVaultCollateralWei", "uint256"),
    _arg("totalPoolCollateralNATWei", "uint256"),
    _arg("underlyingAddressString", "string"),
]

ASSET_MANAGER_ABI = [
    _fn(
        "getAvailableAgentsDetailedList",
        [_arg("_start", "uint256"), _arg("_end", "uint256")],
        [
            _arg("_agents", "tuple[]", components=AVAILABLE_AGENT_INFO),
            _arg("_totalLength", "uint256"),
        ],
    ),
    _fn("collateralReservationFee", [_arg("_lots", "uint256")], [_arg("", "uint256")]),
    _fn(
        "reserveCollateral",
        [
            _arg("_agentVault", "address"),
            _arg("_lots", "uint256"),
            _arg("_maxMintingFeeBIPS", "uint256"),
            _arg("_executor", "address"),
        ],
        mutability="payable",
    ),
    _fn(
        "executeMinting",
        [
            _arg("_payment", "tuple", components=PAYMENT_PROOF),
            _arg("_collateralReservationId", "uint256"),
        ],
        mutability="nonpayable",
    ),
    _fn(
        "redeem",
        [
            _arg("_lots", "uint256"),
            _arg("_redeemerUnderlyingAddressString", "string"),
            _arg("_executor", "address"),
        ],
        [_arg("_redeemedAmountUBA", "uint256")],
        mutability="payable",
    ),
    _fn(
        "confirmRedemptionPayment",
        [
            _arg("_payment", "tuple", components=PAYMENT_PROOF),
            _arg("_redemptionRequestId", "uint256"),
        ],
        mutability="nonpayable",
    ),
    _fn(
        "getAgentInfo",
        [_arg("_agentVault", "address")],
        [_arg("_info", "tuple", components=AGENT_INFO)],
    ),
    _fn("lotSize", [], [_arg("_lotSizeUBA", "uint256")]),
    _fn("assetMintingDecimals", [], [_arg("", "uint256")]),
    _fn("fAsset", [], [_arg("", "address")]),
    _event(
        "CollateralReserved",
        [
            ("agentVault", "address", True),
            ("minter", "address", True),
            ("collateralReservationId", "uint256", True),
            ("valueUBA", "uint256", False),
            ("feeUBA", "uint256", False),
            ("firstUnderlyingBlock", "uint256", False),
            ("lastUnderlyingBlock", "uint256", False),
            ("lastUnderlyingTimestamp", "uint256", False),
            ("paymentAddress", "string", False),
            ("paymentReference", "bytes32", False),
            ("executor", "address", False),
            ("executorFeeNatWei", "uint256", False),
        ],
    ),
    _event(
        "RedemptionRequested",
        [
            ("agentVault", "address", True),
            ("redeemer", "address", True),
            ("requestId", "uint256", True),
            ("paymentAddress", "string", False),
            ("valueUBA", "uint256", False),
            ("feeUBA", "uint256", False),
            ("firstUnderlyingBlock", "uint256", False),
            ("lastUnderlyingBlock", "uint256", False),
            ("lastUnderlyingTimestamp", "uint256", False),
            ("paymentReference", "bytes32", False),
            ("executor", "address", False),
            ("executorFeeNatWei", "uint256", False),
        ],
    ),
]

ERC20_ABI = [
    _fn("decimals", [], [_arg("", "uint8")]),
    _fn("balanceOf", [_arg("account", "address")], [_arg("", "uint256")]),
    _event(
        "Transfer",
        [
            ("from", "address", True),
            ("to", "address", True),
            ("value", "uint256", False),
        ],
    ),
]
