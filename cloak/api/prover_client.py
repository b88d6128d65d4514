"""
Proof generation over HTTP.

The flows only depend on the ProofGenerator call signature, so an in-process
prover (or a test double) can be swapped in for HttpProver.
"""
from __future__ import annotations

import json
from typing import Awaitable, Callable, Dict

from pydantic import ValidationError

from cloak import config
from cloak.api.errors import ProverError
from cloak.api.http_base import ServiceClient
from cloak.api.logging_config import get_logger
from cloak.api.schemas_api import ProofInputs, ProofResult

logger = get_logger("prover")

# async (ProofInputs) -> ProofResult; success=False carries the generator's message
ProofGenerator = Callable[[ProofInputs], Awaitable[ProofResult]]


def prover_payload(inputs: ProofInputs) -> Dict[str, str]:
    """The prover takes each section as a JSON-encoded string."""
    payload = {
        "private_inputs": json.dumps(inputs.private_inputs.model_dump()),
        "public_inputs": json.dumps(inputs.public_inputs.model_dump()),
        "outputs": json.dumps([o.model_dump() for o in inputs.outputs]),
    }
    if inputs.swap_params is not None:
        payload["swap_params"] = json.dumps(inputs.swap_params.model_dump(exclude_none=True))
    if inputs.stake_params is not None:
        payload["stake_params"] = json.dumps(inputs.stake_params.model_dump(exclude_none=True))
    if inputs.unstake_params is not None:
        payload["unstake_params"] = json.dumps(inputs.unstake_params.model_dump(exclude_none=True))
    return payload


class HttpProver(ServiceClient):
    error_cls = ProverError

    def __init__(self, url: str = config.PROVER_URL, timeout: float = config.PROVER_TIMEOUT_SEC, **kwargs):
        super().__init__(url, timeout=timeout, **kwargs)

    async def __call__(self, inputs: ProofInputs) -> ProofResult:
        logger.info(f"requesting proof for root {inputs.public_inputs.root[:16]}...")
        data = await self._request("POST", self.base_url, json=prover_payload(inputs))
        try:
            result = ProofResult.model_validate(data)
        except ValidationError as e:
            raise ProverError(f"prover returned an unusable result: {e.errors()[0]['msg']}") from e
        if result.success and not result.proof:
            return ProofResult(success=False, error="Proof generation returned no proof")
        if result.success:
            logger.info(f"proof generated in {result.generation_time_ms} ms")
        return result
