"""
fassets-bridge: XRPL to Flare FAssets bridge orchestration engine.

Moves XRP from the XRP Ledger into FXRP on Flare (and back) by
reserving agent collateral, proving the user's payment through the
Flare Data Connector, and minting or settling on-chain. Every step is
persisted so the pipeline can resume after crashes and timeouts.
"""

__version__ = "0.1.0"
