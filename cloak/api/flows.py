"""
Submission state machine shared by the send, swap, stake and unstake flows.

    idle -> depositing -> deposited -> generating_proof -> proof_generated
         -> queued -> being_mined -> mined -> sent

`error` is reachable from every non-terminal state; `sent` and `error` are
terminal. A flow for a note that is already deposited starts with
idle -> deposited.

Persistence follows the external systems: a note becomes `deposited` only
once the indexer has returned a leaf index and a proof that verifies
locally, and `spent` only once the relay reports `completed`. A cancelled
flow (asyncio.CancelledError) leaves the store at the last confirmed step.
"""
from __future__ import annotations

import base64
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Set, Tuple

from cloak import config
from cloak.api.errors import (
    ErrorKind,
    FlowError,
    ProverError,
    RpcError,
    ServiceError,
    SubmissionInProgressError,
)
from cloak.api.logging_config import get_logger, short
from cloak.api.notes import encrypt_note_for_indexer
from cloak.api.polling import Poll, PollTimeoutError
from cloak.api.prover_client import ProofGenerator
from cloak.api.rpc_client import TransactionFailedError
from cloak.api.schemas_api import (
    CloakNote,
    MerklePath,
    PrivateInputs,
    ProofInputs,
    ProverOutput,
    PublicInputs,
    RelayOutput,
    RelayPublicInputs,
    RelayStatus,
    RelayWithdrawReq,
    StakeParams,
    SwapParams,
    UnstakeParams,
)
from cloak.crypto_core import fees
from cloak.crypto_core.commitments import nullifier_hex
from cloak.crypto_core.keys import derive_view_key
from cloak.crypto_core.merkle import MerkleProof, MerkleProofFormatError, ProofInconsistencyError, verify_or_refresh
from cloak.database.note_store import NoteStore, is_spendable

logger = get_logger("flows")


class FlowState(str, Enum):
    IDLE = "idle"
    DEPOSITING = "depositing"
    DEPOSITED = "deposited"
    GENERATING_PROOF = "generating_proof"
    PROOF_GENERATED = "proof_generated"
    QUEUED = "queued"
    BEING_MINED = "being_mined"
    MINED = "mined"
    SENT = "sent"
    ERROR = "error"


class FlowKind(str, Enum):
    SEND = "send"
    SWAP = "swap"
    STAKE = "stake"
    UNSTAKE = "unstake"


TERMINAL_STATES = frozenset({FlowState.SENT, FlowState.ERROR})

TRANSITIONS: Dict[FlowState, frozenset] = {
    FlowState.IDLE: frozenset({FlowState.DEPOSITING, FlowState.DEPOSITED}),
    FlowState.DEPOSITING: frozenset({FlowState.DEPOSITED}),
    FlowState.DEPOSITED: frozenset({FlowState.GENERATING_PROOF}),
    FlowState.GENERATING_PROOF: frozenset({FlowState.PROOF_GENERATED}),
    FlowState.PROOF_GENERATED: frozenset({FlowState.QUEUED}),
    # relays may report completion without a processing phase in between
    FlowState.QUEUED: frozenset({FlowState.BEING_MINED, FlowState.MINED}),
    FlowState.BEING_MINED: frozenset({FlowState.MINED}),
    FlowState.MINED: frozenset({FlowState.SENT}),
    FlowState.SENT: frozenset(),
    FlowState.ERROR: frozenset(),
}


class FlowMachine:
    """State holder for one flow run. Illegal transitions raise ValueError."""

    def __init__(self, kind: FlowKind = FlowKind.SEND, on_change: Optional[Callable[[FlowState, FlowState], None]] = None):
        self.kind = kind
        self.state = FlowState.IDLE
        self.history: List[FlowState] = [FlowState.IDLE]
        self.error: Optional[FlowError] = None
        self._on_change = on_change

    @property
    def done(self) -> bool:
        return self.state in TERMINAL_STATES

    def can_transition(self, to: FlowState) -> bool:
        if to is FlowState.ERROR:
            return self.state not in TERMINAL_STATES
        return to in TRANSITIONS[self.state]

    def transition(self, to: FlowState) -> None:
        if not self.can_transition(to):
            raise ValueError(f"illegal flow transition {self.state.value} -> {to.value}")
        prev, self.state = self.state, to
        self.history.append(to)
        logger.debug(f"[{self.kind.value}] {prev.value} -> {to.value}")
        if self._on_change:
            self._on_change(prev, to)

    def fail(self, kind: ErrorKind, message: str, service: Optional[str] = None) -> FlowError:
        """Move to `error` and build the FlowError to raise."""
        err = FlowError(kind, self.state.value, message, service=service)
        if self.state is not FlowState.ERROR:
            self.transition(FlowState.ERROR)
        self.error = err
        logger.warning(f"[{self.kind.value}] failed: {err}")
        return err


class InFlightRegistry:
    """One in-flight submission per note commitment."""

    def __init__(self):
        self._active: Set[str] = set()

    def is_active(self, commitment: str) -> bool:
        return commitment.lower() in self._active

    @contextmanager
    def claim(self, commitment: str) -> Iterator[None]:
        key = commitment.lower()
        if key in self._active:
            raise SubmissionInProgressError(key)
        self._active.add(key)
        try:
            yield
        finally:
            self._active.discard(key)


@dataclass
class SpendRequest:
    """
    What to do with a deposited note.

    `recipients` (send, unstake) are (address, amount) pairs in payout order;
    at most one amount may be None and receives whatever the fee leaves.
    """
    kind: FlowKind = FlowKind.SEND
    recipients: List[Tuple[str, Optional[int]]] = field(default_factory=list)
    swap: Optional[SwapParams] = None
    stake: Optional[StakeParams] = None
    unstake: Optional[UnstakeParams] = None


@dataclass
class SpendPlan:
    outputs: List[Tuple[str, int]]
    outputs_hash: str
    fee: int
    fee_bps: int


@dataclass
class FlowResult:
    kind: FlowKind
    commitment: str
    state: FlowState
    history: List[FlowState]
    leaf_index: Optional[int] = None
    root: Optional[str] = None
    nullifier: Optional[str] = None
    request_id: Optional[str] = None
    tx_id: Optional[str] = None
    explorer_url: Optional[str] = None


def _resolve_recipients(recipients: Sequence[Tuple[str, Optional[int]]], distributable: int) -> List[Tuple[str, int]]:
    if not recipients:
        raise ValueError("at least one recipient is required")
    open_slots = [i for i, (_, amt) in enumerate(recipients) if amt is None]
    if len(open_slots) > 1:
        raise ValueError("only one recipient may take the remainder")
    fixed = sum(amt for _, amt in recipients if amt is not None)
    if any(amt is not None and amt <= 0 for _, amt in recipients):
        raise ValueError("recipient amounts must be positive")
    if fixed > distributable:
        raise ValueError(f"recipient amounts ({fixed}) exceed the {distributable} lamports left after fees")
    if not open_slots and fixed != distributable:
        raise ValueError(
            f"recipient amounts ({fixed}) must add up to {distributable} lamports, or leave one amount open for the remainder"
        )
    if open_slots and fixed == distributable:
        raise ValueError("nothing is left for the recipient taking the remainder")
    resolved: List[Tuple[str, int]] = []
    for addr, amt in recipients:
        resolved.append((addr, distributable - fixed if amt is None else amt))
    return resolved


def plan_spend(note: CloakNote, request: SpendRequest) -> SpendPlan:
    """
    Outputs, outputs hash and fee for ``request`` against ``note``.

    Raises ValueError on malformed request data, including recipient amounts
    that do not add up to what the fee leaves. ConservationError is the
    final internal check and should never fire for a validated request.
    """
    amount = note.amount
    total_fee = fees.fee(amount)
    distributable = fees.distributable_amount(amount)
    if distributable <= 0:
        raise ValueError(f"note amount {amount} does not cover the fee {total_fee}")

    if request.kind is FlowKind.SEND:
        outputs = _resolve_recipients(request.recipients, distributable)
        digest = fees.outputs_hash(outputs)
        fee_bps = fees.relay_fee_bps(amount, total_fee)
    elif request.kind is FlowKind.SWAP:
        if request.swap is None:
            raise ValueError("swap flow requires swap parameters")
        s = request.swap
        outputs = [(s.recipient_ata, distributable)]
        digest = fees.swap_outputs_hash(s.output_mint, s.recipient_ata, s.min_output_amount, amount)
        # the relay charges the fixed part out of band on swaps
        fee_bps = fees.relay_fee_bps(amount, fees.variable_fee(amount))
    elif request.kind is FlowKind.STAKE:
        if request.stake is None:
            raise ValueError("stake flow requires stake parameters")
        outputs = [(request.stake.stake_account, distributable)]
        digest = fees.stake_outputs_hash(request.stake.stake_account, amount)
        fee_bps = fees.relay_fee_bps(amount, total_fee)
    elif request.kind is FlowKind.UNSTAKE:
        if request.unstake is None:
            raise ValueError("unstake flow requires unstake parameters")
        outputs = _resolve_recipients(request.recipients, distributable)
        digest = fees.unstake_outputs_hash(request.unstake.stake_account, outputs)
        fee_bps = fees.relay_fee_bps(amount, total_fee)
    else:
        raise ValueError(f"unknown flow kind: {request.kind!r}")

    fees.check_conservation([amt for _, amt in outputs], total_fee, amount)
    return SpendPlan(outputs=outputs, outputs_hash=digest.hex(), fee=total_fee, fee_bps=fee_bps)


class SubmissionFlow:
    """
    Drives deposits and spends against the indexer, prover, relay and RPC.

    All collaborators are injected; one instance can serve many notes, the
    InFlightRegistry keeps two runs off the same note.
    """

    def __init__(
        self,
        store: NoteStore,
        indexer,
        relay,
        prover: ProofGenerator,
        rpc=None,
        registry: Optional[InFlightRegistry] = None,
        refetch_attempts: int = config.MERKLE_REFETCH_ATTEMPTS,
        relay_interval: float = config.RELAY_POLL_INTERVAL_SEC,
        relay_max_attempts: int = config.RELAY_MAX_ATTEMPTS,
        confirm_interval: float = config.CONFIRM_POLL_INTERVAL_SEC,
        confirm_max_attempts: int = config.CONFIRM_MAX_ATTEMPTS,
        sleep=None,
    ):
        self.store = store
        self.indexer = indexer
        self.relay = relay
        self.prover = prover
        self.rpc = rpc
        self.registry = registry or InFlightRegistry()
        self.refetch_attempts = refetch_attempts
        self.relay_interval = relay_interval
        self.relay_max_attempts = relay_max_attempts
        self.confirm_interval = confirm_interval
        self.confirm_max_attempts = confirm_max_attempts
        self._poll_kwargs = {"sleep": sleep} if sleep is not None else {}

    # ---------- public entry points ----------

    async def deposit(self, commitment: str, tx_signature: str, machine: Optional[FlowMachine] = None) -> FlowResult:
        machine = machine or FlowMachine(FlowKind.SEND)
        with self.registry.claim(commitment):
            note = await self._deposit(machine, commitment, tx_signature)
        return self._result(machine, note)

    async def spend(self, commitment: str, request: SpendRequest, machine: Optional[FlowMachine] = None) -> FlowResult:
        machine = machine or FlowMachine(request.kind)
        with self.registry.claim(commitment):
            note = self._load_spendable(machine, commitment)
            machine.transition(FlowState.DEPOSITED)
            return await self._spend(machine, note, request)

    async def run(
        self,
        commitment: str,
        request: SpendRequest,
        deposit_signature: Optional[str] = None,
        machine: Optional[FlowMachine] = None,
    ) -> FlowResult:
        """Deposit first when a signature is given, then spend, as one run."""
        machine = machine or FlowMachine(request.kind)
        with self.registry.claim(commitment):
            if deposit_signature:
                note = await self._deposit(machine, commitment, deposit_signature)
            else:
                note = self._load_spendable(machine, commitment)
                machine.transition(FlowState.DEPOSITED)
            return await self._spend(machine, note, request)

    # ---------- deposit ----------

    async def _deposit(self, machine: FlowMachine, commitment: str, tx_signature: str) -> CloakNote:
        note = self.store.get(commitment)
        if note is None:
            raise machine.fail(ErrorKind.MALFORMED_INPUT, f"unknown note {short(commitment)}")
        if note.status != "generated":
            raise machine.fail(ErrorKind.MALFORMED_INPUT, f"note {short(commitment)} is already {note.status}")
        if self.rpc is None:
            raise machine.fail(ErrorKind.SERVICE_FAILURE, "no RPC client configured for deposit confirmation", "rpc")

        machine.transition(FlowState.DEPOSITING)
        if note.leaf_index is None:
            note = await self._register_deposit(machine, note, tx_signature)
        elif note.deposit_signature not in (None, tx_signature):
            raise machine.fail(
                ErrorKind.MALFORMED_INPUT,
                f"note {short(note.commitment)} was registered by a different deposit transaction",
            )
        else:
            logger.info(f"note {short(note.commitment)} already registered at leaf {note.leaf_index}, checking proof")

        try:
            proof = await verify_or_refresh(
                note.commitment, note.leaf_index, None, self.indexer.get_merkle_proof, self.refetch_attempts
            )
        except ProofInconsistencyError as e:
            raise machine.fail(ErrorKind.PROOF_INCONSISTENCY, str(e), "indexer") from e
        except MerkleProofFormatError as e:
            raise machine.fail(ErrorKind.PROOF_INCONSISTENCY, f"indexer returned a malformed proof: {e}", "indexer") from e
        except ServiceError as e:
            raise machine.fail(ErrorKind.SERVICE_FAILURE, str(e), e.service) from e

        updated = self.store.update(
            note.commitment,
            {
                "root": proof.root,
                "merkle_proof": {"path_elements": proof.path_elements, "path_indices": proof.path_indices},
                "status": "deposited",
            },
        )
        machine.transition(FlowState.DEPOSITED)
        logger.info(f"note {short(note.commitment)} deposited at leaf {note.leaf_index}")
        return updated or note

    async def _register_deposit(self, machine: FlowMachine, note: CloakNote, tx_signature: str) -> CloakNote:
        """Confirm the deposit transaction and register the note with the indexer.

        The leaf index is stored as soon as the indexer assigns it, so a retry
        after a failed proof check does not register the commitment twice.
        """
        logger.info(f"confirming deposit {tx_signature[:16]}... for note {short(note.commitment)}")
        try:
            slot = await self.rpc.confirm_transaction(
                tx_signature,
                interval=self.confirm_interval,
                max_attempts=self.confirm_max_attempts,
                **self._poll_kwargs,
            )
        except TransactionFailedError as e:
            raise machine.fail(ErrorKind.CONFIRMATION_FAILED, str(e), "rpc") from e
        except PollTimeoutError as e:
            raise machine.fail(ErrorKind.CONFIRMATION_TIMEOUT, str(e), "rpc") from e
        except RpcError as e:
            raise machine.fail(ErrorKind.SERVICE_FAILURE, str(e), "rpc") from e

        # self-delivery: the note can be recovered later by scanning with our view key
        pvk = derive_view_key(bytes.fromhex(note.sk_spend)).pvk
        envelope = encrypt_note_for_indexer(note, pvk)
        try:
            reg = await self.indexer.submit_deposit(note.commitment, envelope, tx_signature, slot)
        except ServiceError as e:
            raise machine.fail(ErrorKind.SERVICE_FAILURE, str(e), e.service) from e

        updated = self.store.update(
            note.commitment,
            {"deposit_signature": tx_signature, "deposit_slot": slot, "leaf_index": reg.leaf_index},
        )
        return updated or note.model_copy(
            update={"deposit_signature": tx_signature, "deposit_slot": slot, "leaf_index": reg.leaf_index}
        )

    # ---------- spend ----------

    def _load_spendable(self, machine: FlowMachine, commitment: str) -> CloakNote:
        note = self.store.get(commitment)
        if note is None or not is_spendable(note):
            status = note.status if note else "unknown"
            raise machine.fail(ErrorKind.NOT_SPENDABLE, f"note {short(commitment)} is not spendable ({status})")
        return note

    async def _fresh_proof(self, machine: FlowMachine, note: CloakNote) -> MerkleProof:
        cached = None
        if note.merkle_proof is not None:
            cached = MerkleProof(
                path_elements=list(note.merkle_proof.path_elements),
                path_indices=list(note.merkle_proof.path_indices),
                root=note.root,
            )
        try:
            proof = await verify_or_refresh(
                note.commitment, note.leaf_index, cached, self.indexer.get_merkle_proof, self.refetch_attempts
            )
        except ProofInconsistencyError as e:
            raise machine.fail(ErrorKind.PROOF_INCONSISTENCY, str(e), "indexer") from e
        except MerkleProofFormatError as e:
            raise machine.fail(ErrorKind.PROOF_INCONSISTENCY, f"malformed proof: {e}", "indexer") from e
        except ServiceError as e:
            raise machine.fail(ErrorKind.SERVICE_FAILURE, str(e), e.service) from e

        if proof is not cached:
            self.store.update(
                note.commitment,
                {"root": proof.root, "merkle_proof": {"path_elements": proof.path_elements, "path_indices": proof.path_indices}},
            )
        return proof

    async def _spend(self, machine: FlowMachine, note: CloakNote, request: SpendRequest) -> FlowResult:
        proof = await self._fresh_proof(machine, note)

        try:
            plan = plan_spend(note, request)
        except fees.ConservationError:
            machine.transition(FlowState.ERROR)
            raise
        except ValueError as e:
            raise machine.fail(ErrorKind.MALFORMED_INPUT, str(e)) from e

        nf = nullifier_hex(note.sk_spend, note.leaf_index)
        inputs = ProofInputs(
            private_inputs=PrivateInputs(
                amount=note.amount,
                r=note.r,
                sk_spend=note.sk_spend,
                leaf_index=note.leaf_index,
                merkle_path=MerklePath(path_elements=proof.path_elements, path_indices=proof.path_indices),
            ),
            public_inputs=PublicInputs(root=proof.root, nf=nf, outputs_hash=plan.outputs_hash, amount=note.amount),
            outputs=[ProverOutput(address=a, amount=amt) for a, amt in plan.outputs],
            swap_params=request.swap if request.kind is FlowKind.SWAP else None,
            stake_params=request.stake if request.kind is FlowKind.STAKE else None,
            unstake_params=request.unstake if request.kind is FlowKind.UNSTAKE else None,
        )

        machine.transition(FlowState.GENERATING_PROOF)
        started = time.monotonic()
        try:
            result = await self.prover(inputs)
        except ProverError as e:
            raise machine.fail(ErrorKind.PROVER_FAILED, str(e), "prover") from e
        if not result.success or not result.proof:
            raise machine.fail(ErrorKind.PROVER_FAILED, result.error or "Proof generation failed", "prover")
        machine.transition(FlowState.PROOF_GENERATED)
        logger.info(f"[{machine.kind.value}] proof for {short(note.commitment)} in {time.monotonic() - started:.1f}s")

        try:
            withdraw = self._relay_request(request, plan, proof.root, nf, note.amount, result.proof)
        except ValueError as e:
            raise machine.fail(ErrorKind.PROVER_FAILED, f"prover returned an undecodable proof: {e}", "prover") from e
        try:
            request_id = await self.relay.submit_withdraw(withdraw)
        except ServiceError as e:
            raise machine.fail(ErrorKind.SERVICE_FAILURE, str(e), "relay") from e
        machine.transition(FlowState.QUEUED)

        def advance(status: RelayStatus) -> None:
            if status.status == "processing" and machine.state is FlowState.QUEUED:
                machine.transition(FlowState.BEING_MINED)

        try:
            outcome = await self.relay.wait_for_job(
                request_id,
                on_status=advance,
                interval=self.relay_interval,
                max_attempts=self.relay_max_attempts,
                **self._poll_kwargs,
            )
        except PollTimeoutError as e:
            raise machine.fail(
                ErrorKind.RELAY_TIMEOUT,
                f"relay job {request_id} did not finish after {e.attempts} polls; "
                f"the transaction may still land, check before resubmitting",
                "relay",
            ) from e

        if outcome.decision is Poll.FAILED:
            raise machine.fail(ErrorKind.RELAY_FAILED, outcome.value.error or "Relay job failed", "relay")

        machine.transition(FlowState.MINED)
        self.store.update(note.commitment, {"status": "spent"})
        machine.transition(FlowState.SENT)
        tx_id = outcome.value.tx_id
        logger.info(f"[{machine.kind.value}] note {short(note.commitment)} spent in tx {tx_id}")
        return self._result(machine, note, request_id=request_id, tx_id=tx_id, nf=nf, root=proof.root)

    def _relay_request(
        self, request: SpendRequest, plan: SpendPlan, root: str, nf: str, amount: int, proof_hex: str
    ) -> RelayWithdrawReq:
        swap = None
        if request.kind is FlowKind.SWAP and request.swap is not None:
            swap = request.swap.model_dump(exclude_none=True)
        return RelayWithdrawReq(
            outputs=[RelayOutput(recipient=a, amount=amt) for a, amt in plan.outputs],
            policy={"fee_bps": plan.fee_bps},
            public_inputs=RelayPublicInputs(
                root=root, nf=nf, amount=amount, fee_bps=plan.fee_bps, outputs_hash=plan.outputs_hash
            ),
            proof_bytes=base64.b64encode(bytes.fromhex(proof_hex)).decode(),
            swap=swap,
            stake=request.stake if request.kind is FlowKind.STAKE else None,
            unstake=request.unstake if request.kind is FlowKind.UNSTAKE else None,
        )

    def _result(
        self,
        machine: FlowMachine,
        note: CloakNote,
        request_id: Optional[str] = None,
        tx_id: Optional[str] = None,
        nf: Optional[str] = None,
        root: Optional[str] = None,
    ) -> FlowResult:
        return FlowResult(
            kind=machine.kind,
            commitment=note.commitment,
            state=machine.state,
            history=list(machine.history),
            leaf_index=note.leaf_index,
            root=root or note.root,
            nullifier=nf,
            request_id=request_id,
            tx_id=tx_id,
            explorer_url=config.explorer_url(tx_id, note.network, config.SOLANA_RPC_URL) if tx_id else None,
        )
