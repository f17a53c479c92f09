"""Destination chain (Flare EVM) access: gateway, ABIs, FAssets client."""

from fassets_bridge.evm.fassets import CollateralReservation, FAssetsClient, RedemptionTicket
from fassets_bridge.evm.gateway import EvmGateway, TxReceipt, Web3Gateway

__all__ = [
    "CollateralReservation",
    "EvmGateway",
    "FAssetsClient",
    "RedemptionTicket",
    "TxReceipt",
    "Web3Gateway",
]
