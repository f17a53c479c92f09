"""
Flare Data Connector attestation pipeline.

prepare (verifier) → submit (FdcHub, fee paid) → round (block timestamp)
→ wait two rounds → poll (data-availability layer) → proof.
"""

from fassets_bridge.attestation.client import AttestationClient, AttestationRequest, AttestationResult
from fassets_bridge.attestation.rounds import RoundSchedule, compute_round

__all__ = [
    "AttestationClient",
    "AttestationRequest",
    "AttestationResult",
    "RoundSchedule",
    "compute_round",
]
