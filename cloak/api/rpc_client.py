"""
Minimal Solana JSON-RPC client: signature status, transaction slot, health.
"""
from __future__ import annotations

import itertools
from typing import Any, Dict, List, Optional

from cloak import config
from cloak.api.errors import RpcError
from cloak.api.http_base import ServiceClient
from cloak.api.logging_config import get_logger
from cloak.api.polling import Poll, poll_until

logger = get_logger("rpc")

CONFIRMED_LEVELS = ("confirmed", "finalized")


class TransactionFailedError(RpcError):
    """The transaction landed but the runtime reported an error."""

    def __init__(self, signature: str, err: Any):
        self.signature = signature
        self.err = err
        super().__init__(f"transaction {signature[:16]}... failed: {err}")


def classify_signature_status(status: Optional[Dict[str, Any]]) -> Poll:
    if not status:
        return Poll.PENDING
    if status.get("err"):
        return Poll.FAILED
    if status.get("confirmationStatus") in CONFIRMED_LEVELS:
        return Poll.DONE
    return Poll.PENDING


class SolanaRpcClient(ServiceClient):
    error_cls = RpcError

    def __init__(self, rpc_url: str = config.SOLANA_RPC_URL, **kwargs):
        super().__init__(rpc_url, **kwargs)
        self._ids = itertools.count(1)

    async def call(self, method: str, params: Optional[List[Any]] = None) -> Any:
        body = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params or []}
        data = await self._request("POST", self.base_url, json=body)
        if not isinstance(data, dict):
            raise RpcError(f"{method}: malformed JSON-RPC response")
        if data.get("error"):
            err = data["error"]
            msg = err.get("message") if isinstance(err, dict) else str(err)
            raise RpcError(f"{method}: {msg}")
        return data.get("result")

    async def get_signature_status(self, signature: str) -> Optional[Dict[str, Any]]:
        result = await self.call(
            "getSignatureStatuses", [[signature], {"searchTransactionHistory": True}]
        )
        values = (result or {}).get("value") or [None]
        return values[0]

    async def get_transaction_slot(self, signature: str) -> Optional[int]:
        result = await self.call(
            "getTransaction",
            [signature, {"encoding": "json", "commitment": "confirmed", "maxSupportedTransactionVersion": 0}],
        )
        return (result or {}).get("slot")

    async def get_health(self) -> str:
        return await self.call("getHealth")

    async def confirm_transaction(
        self,
        signature: str,
        interval: float = config.CONFIRM_POLL_INTERVAL_SEC,
        max_attempts: int = config.CONFIRM_MAX_ATTEMPTS,
        **kwargs,
    ) -> int:
        """
        Wait until the signature is confirmed; returns its slot.

        Raises TransactionFailedError if the transaction errored on-chain and
        PollTimeoutError if it never confirmed within the budget.
        """
        outcome = await poll_until(
            lambda: self.get_signature_status(signature),
            classify_signature_status,
            interval=interval,
            max_attempts=max_attempts,
            description=f"Confirmation of {signature[:16]}...",
            **kwargs,
        )
        if outcome.decision is Poll.FAILED:
            raise TransactionFailedError(signature, outcome.value.get("err"))

        slot = outcome.value.get("slot")
        if slot is None:
            slot = await self.get_transaction_slot(signature)
        if slot is None:
            raise RpcError(f"no slot reported for confirmed transaction {signature[:16]}...")
        logger.info(f"transaction {signature[:16]}... confirmed at slot {slot}")
        return int(slot)
