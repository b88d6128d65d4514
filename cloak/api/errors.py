"""
Errors raised by the service clients and the submission flows.

Crypto-level errors live next to the code that raises them:
NoteFormatError (commitments), MerkleProofFormatError and
ProofInconsistencyError (merkle), ConservationError (fees).
"""
from __future__ import annotations

from enum import Enum
from typing import Optional


class ServiceError(RuntimeError):
    """Non-2xx, transport failure or unusable payload from an external service."""

    service = "service"

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class IndexerError(ServiceError):
    service = "indexer"


class RelayError(ServiceError):
    service = "relay"


class ProverError(ServiceError):
    service = "prover"


class RpcError(ServiceError):
    service = "rpc"


class ErrorKind(str, Enum):
    MALFORMED_INPUT = "malformed_input"
    NOT_SPENDABLE = "not_spendable"
    PROOF_INCONSISTENCY = "proof_inconsistency"
    SERVICE_FAILURE = "service_failure"
    PROVER_FAILED = "prover_failed"
    CONFIRMATION_FAILED = "confirmation_failed"
    CONFIRMATION_TIMEOUT = "confirmation_timeout"
    RELAY_FAILED = "relay_failed"
    # the transaction may still land; not safe to blindly resubmit
    RELAY_TIMEOUT = "relay_timeout"


class FlowError(RuntimeError):
    """
    A submission flow stopped in `error`.

    `step` is the state the flow was in when it failed, `service` the external
    system involved (if any). RELAY_FAILED and RELAY_TIMEOUT are kept apart:
    only the former says the relay gave up on the job.
    """

    def __init__(self, kind: ErrorKind, step: str, message: str, service: Optional[str] = None):
        self.kind = kind
        self.step = step
        self.message = message
        self.service = service
        super().__init__(f"[{kind.value} @ {step}] {message}")


class SubmissionInProgressError(RuntimeError):
    """Another flow already holds this note."""

    def __init__(self, commitment: str):
        self.commitment = commitment
        super().__init__(f"a submission is already in flight for note {commitment[:16]}...")
