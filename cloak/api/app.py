# cloak/api/app.py
from __future__ import annotations

from fastapi import Depends, FastAPI, HTTPException, Query

from cloak import config
from cloak.api.deps import get_indexer, get_registry, get_rpc, get_store
from cloak.api.errors import ErrorKind, FlowError, SubmissionInProgressError
from cloak.api.flows import FlowMachine, InFlightRegistry, SubmissionFlow
from cloak.api.health_checks import comprehensive_health_check, liveness_check
from cloak.api.logging_config import configure_logging, get_logger, short
from cloak.api.routes_notes import router as notes_router
from cloak.api.schemas_api import DepositFinalizeReq, DepositFinalizeRes, FeeQuoteRes, MerklePath
from cloak.crypto_core import fees
from cloak.crypto_core.hashing import U64_MAX
from cloak.database.note_store import NoteStore

configure_logging()
logger = get_logger("api")

app = FastAPI(title="Cloak Note Engine API", version="0.1.0")
app.include_router(notes_router)

# FlowError kind -> HTTP status for /deposit/finalize
_FLOW_STATUS = {
    ErrorKind.MALFORMED_INPUT: 400,
    ErrorKind.CONFIRMATION_FAILED: 400,
    ErrorKind.PROOF_INCONSISTENCY: 409,
    ErrorKind.CONFIRMATION_TIMEOUT: 504,
    ErrorKind.SERVICE_FAILURE: 502,
}


# =========================
# Health
# =========================

@app.get("/health")
async def health():
    return await comprehensive_health_check(
        database_enabled=config.NOTE_STORE_BACKEND == "sql",
        indexer_url=config.INDEXER_URL,
        relay_url=config.RELAY_URL,
        rpc_url=config.SOLANA_RPC_URL,
    )


@app.get("/health/live")
async def health_live():
    return {"alive": await liveness_check()}


# =========================
# Fees
# =========================

@app.get("/fee", response_model=FeeQuoteRes)
def fee_quote(amount: int = Query(..., ge=0, le=U64_MAX, description="Note amount in lamports.")):
    total = fees.fee(amount)
    return FeeQuoteRes(
        amount=amount,
        fee=total,
        fixed_fee=fees.FIXED_FEE_LAMPORTS,
        variable_fee=fees.variable_fee(amount),
        distributable=fees.distributable_amount(amount),
        fee_bps=fees.relay_fee_bps(amount, total),
    )


# =========================
# Deposit finalization
# =========================

@app.post("/deposit/finalize", response_model=DepositFinalizeRes)
async def deposit_finalize(
    req: DepositFinalizeReq,
    store: NoteStore = Depends(get_store),
    indexer=Depends(get_indexer),
    rpc=Depends(get_rpc),
    registry: InFlightRegistry = Depends(get_registry),
):
    """
    Confirm the deposit transaction, register the commitment with the
    indexer and pin the returned Merkle proof on the stored note.
    """
    flow = SubmissionFlow(store, indexer, relay=None, prover=None, rpc=rpc, registry=registry)
    try:
        result = await flow.deposit(req.commitment, req.tx_signature, FlowMachine())
    except SubmissionInProgressError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except FlowError as e:
        logger.warning(f"deposit finalize for {short(req.commitment)} failed: {e}")
        raise HTTPException(
            status_code=_FLOW_STATUS.get(e.kind, 500),
            detail={"kind": e.kind.value, "step": e.step, "message": e.message, "service": e.service},
        )

    note = store.get(req.commitment)
    return DepositFinalizeRes(
        leaf_index=result.leaf_index,
        root=result.root,
        merkle_proof=note.merkle_proof if note and note.merkle_proof else MerklePath(),
        slot=note.deposit_slot if note and note.deposit_slot is not None else 0,
    )
