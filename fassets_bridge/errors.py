"""
Error taxonomy for the bridge engine.

Every failure that reaches a persisted record is tagged with an
``ErrorKind``. Reconciliation routes on the tag, never on message text.

Three classes of failure:
    - transient: polled in place (verifier not indexed yet, proof not
      finalized yet). These never surface as exceptions.
    - recoverable: persisted as a distinct status or as ``failed`` with a
      recoverable kind; the reconciler resumes them later.
    - fatal: persisted as ``failed`` with message and kind, then raised.

Exceptions carry ``kind`` and a ``details`` dict (no secrets, ever).
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any

import httpx
from web3.exceptions import ContractLogicError


class ErrorKind(StrEnum):
    """Tagged failure kinds persisted alongside error messages."""

    PROOF_TIMEOUT = "proof_timeout"
    VERIFIER_NOT_READY = "verifier_not_ready"
    ATTESTATION_SUBMISSION_UNRESOLVED = "attestation_submission_unresolved"
    DESTINATION_TX_UNCONFIRMED = "destination_tx_unconfirmed"
    SHARE_MINT_FAILED = "share_mint_failed"
    NETWORK_UNAVAILABLE = "network_unavailable"
    INVALID_RECORD = "invalid_record"
    RESERVATION_EXPIRED = "reservation_expired"
    INVALID_TIMESTAMP = "invalid_timestamp"
    SOURCE_TX_INVALID = "source_tx_invalid"
    CONTRACT_REVERTED = "contract_reverted"
    DATA_AVAILABILITY_ERROR = "data_availability_error"
    NO_AGENT_AVAILABLE = "no_agent_available"
    UNKNOWN = "unknown"


RECOVERABLE_KINDS: frozenset[ErrorKind] = frozenset(
    {
        ErrorKind.PROOF_TIMEOUT,
        ErrorKind.VERIFIER_NOT_READY,
        ErrorKind.ATTESTATION_SUBMISSION_UNRESOLVED,
        ErrorKind.DESTINATION_TX_UNCONFIRMED,
        ErrorKind.SHARE_MINT_FAILED,
        ErrorKind.NETWORK_UNAVAILABLE,
    }
)


def is_recoverable(kind: ErrorKind | str | None) -> bool:
    """True if a persisted kind can be resumed automatically."""
    if kind is None:
        return False
    try:
        return ErrorKind(kind) in RECOVERABLE_KINDS
    except ValueError:
        return False


# =========================================================================
# Exceptions
# =========================================================================


class BridgeError(Exception):
    """Base class for all bridge engine errors.

    Args:
        message: Human-readable description.
        kind: Error tag. Defaults to the class-level ``kind``.
        details: Structured context for logs and persisted records.
    """

    kind: ErrorKind = ErrorKind.UNKNOWN

    def __init__(
        self,
        message: str,
        *,
        kind: ErrorKind | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if kind is not None:
            self.kind = kind
        self.details = details or {}


class RecordNotFoundError(BridgeError):
    """No record with the given id."""

    kind = ErrorKind.INVALID_RECORD


class InvalidTransitionError(BridgeError):
    """Requested status change is not an edge of the transition graph."""

    kind = ErrorKind.INVALID_RECORD


class StaleRecordError(BridgeError):
    """Conditional update lost a race: the stored status moved on."""

    kind = ErrorKind.INVALID_RECORD


class IncompleteReservationError(BridgeError):
    """A record lacks the reservation fields an operation needs."""

    kind = ErrorKind.INVALID_RECORD

    def __init__(self, record_id: str, missing: list[str]) -> None:
        super().__init__(
            f"record {record_id} is missing required fields: {', '.join(missing)}",
            details={"record_id": record_id, "missing": missing},
        )
        self.missing = missing


class ReservationExpiredError(BridgeError):
    """The collateral reservation's payment window has passed."""

    kind = ErrorKind.RESERVATION_EXPIRED


class SourceTransactionError(BridgeError):
    """The source-ledger payment is missing, unvalidated or malformed."""

    kind = ErrorKind.SOURCE_TX_INVALID


class InvalidTimestampError(SourceTransactionError):
    """Source transaction timestamp is in the future or too old."""

    kind = ErrorKind.INVALID_TIMESTAMP


class AttestationError(BridgeError):
    """Base for failures in the attestation pipeline."""


class VerifierNotReadyError(AttestationError):
    """The verifier never returned a VALID prepared request."""

    kind = ErrorKind.VERIFIER_NOT_READY


class AttestationSubmissionUnresolvedError(AttestationError):
    """The node reported the request as already known but no mined
    submission could be found in the lookback window."""

    kind = ErrorKind.ATTESTATION_SUBMISSION_UNRESOLVED


class DataAvailabilityError(AttestationError):
    """The data-availability layer answered with a fatal HTTP status."""

    kind = ErrorKind.DATA_AVAILABILITY_ERROR

    def __init__(self, message: str, *, status_code: int, body: str = "") -> None:
        super().__init__(message, details={"status_code": status_code, "body": body[:500]})
        self.status_code = status_code
        self.body = body


class ProofTimeoutError(AttestationError):
    """No finalized proof within the polling ceiling.

    Recoverable: the request was paid for and submitted, so the proof
    can still be fetched later with the same round id and request bytes.

    Attributes:
        voting_round_id: The round the request was submitted in.
        last_status: Last HTTP status seen from the DA layer (None if
            every attempt failed at the transport level).
        request_bytes: ABI-encoded request, hex with 0x prefix.
    """

    kind = ErrorKind.PROOF_TIMEOUT

    def __init__(self, voting_round_id: int, last_status: int | None, request_bytes: str) -> None:
        super().__init__(
            f"proof for voting round {voting_round_id} not available "
            f"(last status: {last_status})",
            details={
                "voting_round_id": voting_round_id,
                "last_status": last_status,
                "request_bytes": request_bytes,
            },
        )
        self.voting_round_id = voting_round_id
        self.last_status = last_status
        self.request_bytes = request_bytes


class DestinationTransactionError(BridgeError):
    """A destination-chain transaction reverted or could not be confirmed."""

    kind = ErrorKind.CONTRACT_REVERTED

    def __init__(
        self,
        message: str,
        *,
        tx_hash: str | None = None,
        kind: ErrorKind | None = None,
    ) -> None:
        super().__init__(message, kind=kind, details={"tx_hash": tx_hash})
        self.tx_hash = tx_hash


class ShareAccountingError(BridgeError):
    """Vault share mint or redeem failed."""

    kind = ErrorKind.SHARE_MINT_FAILED


class TransactionAlreadyKnownError(BridgeError):
    """The node already holds an identical transaction in its pool."""

    kind = ErrorKind.NETWORK_UNAVAILABLE


# =========================================================================
# Classification
# =========================================================================


def classify_exception(exc: BaseException) -> ErrorKind:
    """Map any exception to an ErrorKind.

    Bridge errors carry their own tag. Transport-level httpx failures
    and connection errors mean the backend never answered. Contract
    reverts are fatal. Everything else is UNKNOWN rather than guessed.
    """
    if isinstance(exc, BridgeError):
        return exc.kind
    if isinstance(exc, (httpx.TransportError, ConnectionError, TimeoutError)):
        return ErrorKind.NETWORK_UNAVAILABLE
    if isinstance(exc, ContractLogicError):
        return ErrorKind.CONTRACT_REVERTED
    return ErrorKind.UNKNOWN