"""
Client for the withdrawal relay: submit a proven payout, then poll the job.
"""
from __future__ import annotations

from typing import Callable, Optional

from pydantic import ValidationError

from cloak import config
from cloak.api.errors import RelayError
from cloak.api.http_base import ServiceClient
from cloak.api.logging_config import get_logger
from cloak.api.polling import Poll, PollOutcome, poll_until
from cloak.api.schemas_api import RelayStatus, RelayWithdrawReq

logger = get_logger("relay")

TERMINAL_OK = "completed"
TERMINAL_FAILED = "failed"


def classify_relay_status(status: RelayStatus) -> Poll:
    if status.status == TERMINAL_OK:
        return Poll.DONE
    if status.status == TERMINAL_FAILED:
        return Poll.FAILED
    return Poll.PENDING


class RelayClient(ServiceClient):
    error_cls = RelayError

    def __init__(self, base_url: str = config.RELAY_URL, **kwargs):
        super().__init__(base_url, **kwargs)

    async def submit_withdraw(self, request: RelayWithdrawReq) -> str:
        """POST /withdraw; returns the relay's request id."""
        body = request.model_dump(exclude_none=True)
        data = await self._request("POST", "/withdraw", json=body)
        if not isinstance(data, dict) or not data.get("success"):
            err = data.get("error") if isinstance(data, dict) else None
            raise RelayError(err or "Relay withdraw failed")
        request_id = (data.get("data") or {}).get("request_id")
        if not request_id:
            raise RelayError("Relay response missing request_id")
        logger.info(f"relay accepted job {request_id}")
        return str(request_id)

    async def get_status(self, request_id: str) -> RelayStatus:
        data = await self._request("GET", f"/status/{request_id}")
        payload = data.get("data") if isinstance(data, dict) and "data" in data else data
        try:
            return RelayStatus.model_validate(payload or {})
        except ValidationError as e:
            raise RelayError(f"relay returned an unusable status: {e.errors()[0]['msg']}") from e

    async def wait_for_job(
        self,
        request_id: str,
        on_status: Optional[Callable[[RelayStatus], None]] = None,
        interval: float = config.RELAY_POLL_INTERVAL_SEC,
        max_attempts: int = config.RELAY_MAX_ATTEMPTS,
        **kwargs,
    ) -> PollOutcome[RelayStatus]:
        """
        Poll until the job completes or fails. Raises PollTimeoutError when the
        budget runs out; that does not mean the transaction did not land.
        """
        return await poll_until(
            lambda: self.get_status(request_id),
            classify_relay_status,
            interval=interval,
            max_attempts=max_attempts,
            description=f"Relay job {request_id}",
            on_value=on_status,
            **kwargs,
        )
