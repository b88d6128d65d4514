"""
Indexer, relay, prover and RPC client tests over httpx.MockTransport
"""

import json

import httpx
import pytest

from cloak.api.errors import IndexerError, ProverError, RelayError, RpcError
from cloak.api.indexer_client import IndexerClient
from cloak.api.polling import Poll, PollTimeoutError
from cloak.api.prover_client import HttpProver, prover_payload
from cloak.api.relay_client import RelayClient
from cloak.api.rpc_client import SolanaRpcClient, TransactionFailedError
from cloak.api.schemas_api import (
    MerklePath,
    PrivateInputs,
    ProofInputs,
    ProverOutput,
    PublicInputs,
    RelayOutput,
    RelayPublicInputs,
    RelayWithdrawReq,
    SwapParams,
)

from tests.helpers import address, mock_client, no_sleep

ROOT = "ab" * 32


class TestIndexerClient:
    async def test_submit_deposit_accepts_camel_case(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"leafIndex": 7, "root": ROOT})

        indexer = IndexerClient("http://indexer/", client=mock_client(handler))
        reg = await indexer.submit_deposit("cd" * 32, "ZW5j", "sig", 99)
        assert (reg.leaf_index, reg.root) == (7, ROOT)
        assert seen["path"] == "/api/v1/deposit"
        assert seen["body"] == {"leaf_commit": "cd" * 32, "encrypted_output": "ZW5j", "tx_signature": "sig", "slot": 99}

    async def test_merkle_proof_accepts_both_spellings(self):
        def handler(request):
            if request.url.path.endswith("/1"):
                return httpx.Response(200, json={"pathElements": [ROOT], "pathIndices": [1], "root": ROOT})
            return httpx.Response(200, json={"path_elements": [ROOT.upper()], "path_indices": [0], "root": ROOT})

        indexer = IndexerClient("http://indexer", client=mock_client(handler))
        a = await indexer.get_merkle_proof(1)
        b = await indexer.get_merkle_proof(0)
        assert (a.path_elements, a.path_indices, a.root) == ([ROOT], [1], ROOT)
        assert (b.path_elements, b.path_indices) == ([ROOT], [0])

    async def test_http_error_carries_status(self):
        def handler(request):
            return httpx.Response(500, json={"error": "tree locked"})

        indexer = IndexerClient("http://indexer", client=mock_client(handler))
        with pytest.raises(IndexerError) as exc:
            await indexer.get_merkle_root()
        assert exc.value.status_code == 500
        assert "tree locked" in str(exc.value)

    async def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        indexer = IndexerClient("http://indexer", client=mock_client(handler))
        with pytest.raises(IndexerError, match="unreachable"):
            await indexer.health()

    async def test_non_json_body(self):
        indexer = IndexerClient("http://indexer", client=mock_client(lambda r: httpx.Response(200, text="<html>")))
        with pytest.raises(IndexerError, match="non-JSON"):
            await indexer.health()

    async def test_bad_proof_payload(self):
        def handler(request):
            return httpx.Response(200, json={"pathElements": [ROOT], "pathIndices": [2]})

        indexer = IndexerClient("http://indexer", client=mock_client(handler))
        with pytest.raises(IndexerError, match="merkle proof"):
            await indexer.get_merkle_proof(0)

    async def test_get_all_notes_pages_inclusively(self):
        ranges = []

        def handler(request):
            if request.url.path == "/api/v1/merkle/root":
                return httpx.Response(200, json={"root": ROOT, "next_index": 5})
            start, end = int(request.url.params["start"]), int(request.url.params["end"])
            ranges.append((start, end))
            notes = [f"n{i}" for i in range(start, end + 1)]
            return httpx.Response(200, json={"notes": notes, "has_more": end < 4, "total": 5, "start": start, "end": end})

        indexer = IndexerClient("http://indexer", client=mock_client(handler))
        notes = await indexer.get_all_notes(page_size=2)
        assert ranges == [(0, 1), (2, 3), (4, 4)]
        assert notes == ["n0", "n1", "n2", "n3", "n4"]

    async def test_empty_tree(self):
        def handler(request):
            return httpx.Response(200, json={"root": ROOT, "next_index": 0})

        indexer = IndexerClient("http://indexer", client=mock_client(handler))
        assert await indexer.get_all_notes() == []


def _withdraw_request():
    return RelayWithdrawReq(
        outputs=[RelayOutput(recipient=address(1), amount=992_500_000)],
        policy={"fee_bps": 75},
        public_inputs=RelayPublicInputs(root=ROOT, nf="cd" * 32, amount=1_000_000_000, fee_bps=75, outputs_hash="ef" * 32),
        proof_bytes="AAAA",
    )


class TestRelayClient:
    async def test_submit_returns_request_id(self):
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"success": True, "data": {"request_id": "job-1"}})

        relay = RelayClient("http://relay", client=mock_client(handler))
        assert await relay.submit_withdraw(_withdraw_request()) == "job-1"
        assert "swap" not in seen["body"]
        assert seen["body"]["outputs"] == [{"recipient": address(1), "amount": 992_500_000}]

    @pytest.mark.parametrize(
        "body, message",
        [
            ({"success": False, "error": "nullifier already spent"}, "nullifier already spent"),
            ({"success": True, "data": {}}, "request_id"),
        ],
    )
    async def test_submit_rejections(self, body, message):
        relay = RelayClient("http://relay", client=mock_client(lambda r: httpx.Response(200, json=body)))
        with pytest.raises(RelayError, match=message):
            await relay.submit_withdraw(_withdraw_request())

    async def test_status_unwraps_data(self):
        def handler(request):
            assert request.url.path == "/status/job-1"
            return httpx.Response(200, json={"data": {"status": "completed", "tx_id": "abc"}})

        relay = RelayClient("http://relay", client=mock_client(handler))
        status = await relay.get_status("job-1")
        assert (status.status, status.tx_id) == ("completed", "abc")

    async def test_wait_for_job(self):
        statuses = iter(["queued", "processing", "completed"])

        def handler(request):
            return httpx.Response(200, json={"data": {"status": next(statuses), "tx_id": "abc"}})

        relay = RelayClient("http://relay", client=mock_client(handler))
        seen = []
        outcome = await relay.wait_for_job(
            "job-1", on_status=lambda s: seen.append(s.status), interval=0, max_attempts=5, sleep=no_sleep
        )
        assert outcome.decision is Poll.DONE
        assert seen == ["queued", "processing", "completed"]


def _proof_inputs(swap=False):
    return ProofInputs(
        private_inputs=PrivateInputs(
            amount=1_000_000_000, r="11" * 32, sk_spend="22" * 32, leaf_index=2,
            merkle_path=MerklePath(path_elements=[ROOT], path_indices=[0]),
        ),
        public_inputs=PublicInputs(root=ROOT, nf="cd" * 32, outputs_hash="ef" * 32, amount=1_000_000_000),
        outputs=[ProverOutput(address=address(1), amount=992_500_000)],
        swap_params=SwapParams(output_mint=address(2), recipient_ata=address(3), min_output_amount=10) if swap else None,
    )


class TestProver:
    def test_payload_sections_are_json_strings(self):
        payload = prover_payload(_proof_inputs())
        assert set(payload) == {"private_inputs", "public_inputs", "outputs"}
        assert all(isinstance(v, str) for v in payload.values())
        assert json.loads(payload["private_inputs"])["merkle_path"]["path_indices"] == [0]
        assert json.loads(payload["outputs"]) == [{"address": address(1), "amount": 992_500_000}]

    def test_swap_params_included(self):
        payload = prover_payload(_proof_inputs(swap=True))
        assert json.loads(payload["swap_params"]) == {
            "output_mint": address(2), "recipient_ata": address(3), "min_output_amount": 10,
        }

    async def test_http_prover(self):
        def handler(request):
            assert str(request.url) == "http://prover/api/v1/prove"
            return httpx.Response(200, json={"success": True, "proof": "00ff", "public_inputs": "aa", "generation_time_ms": 12})

        prover = HttpProver("http://prover/api/v1/prove", client=mock_client(handler))
        result = await prover(_proof_inputs())
        assert result.success and result.proof == "00ff"

    async def test_success_without_proof_is_failure(self):
        prover = HttpProver("http://prover", client=mock_client(lambda r: httpx.Response(200, json={"success": True})))
        result = await prover(_proof_inputs())
        assert result.success is False
        assert "no proof" in result.error

    async def test_http_failure_raises(self):
        prover = HttpProver("http://prover", client=mock_client(lambda r: httpx.Response(502, text="bad gateway")))
        with pytest.raises(ProverError):
            await prover(_proof_inputs())


def _rpc(statuses, slot_from_tx=None):
    it = iter(statuses)

    def handler(request):
        body = json.loads(request.content)
        if body["method"] == "getSignatureStatuses":
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": {"value": [next(it)]}})
        if body["method"] == "getTransaction":
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": {"slot": slot_from_tx}})
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "error": {"message": "unsupported"}})

    return SolanaRpcClient("http://rpc", client=mock_client(handler))


class TestRpcClient:
    async def test_confirm_returns_slot(self):
        rpc = _rpc([None, {"confirmationStatus": "processed", "slot": 10}, {"confirmationStatus": "confirmed", "slot": 10}])
        assert await rpc.confirm_transaction("sig" * 30, interval=0, max_attempts=5, sleep=no_sleep) == 10

    async def test_confirm_falls_back_to_get_transaction(self):
        rpc = _rpc([{"confirmationStatus": "finalized"}], slot_from_tx=77)
        assert await rpc.confirm_transaction("sig" * 30, interval=0, max_attempts=1, sleep=no_sleep) == 77

    async def test_failed_transaction(self):
        rpc = _rpc([{"confirmationStatus": "confirmed", "err": {"InstructionError": [0, "Custom"]}, "slot": 3}])
        with pytest.raises(TransactionFailedError) as exc:
            await rpc.confirm_transaction("sig" * 30, interval=0, max_attempts=3, sleep=no_sleep)
        assert "InstructionError" in str(exc.value)

    async def test_confirmation_timeout(self):
        rpc = _rpc([None, None])
        with pytest.raises(PollTimeoutError):
            await rpc.confirm_transaction("sig" * 30, interval=0, max_attempts=2, sleep=no_sleep)

    async def test_json_rpc_error(self):
        rpc = _rpc([])
        with pytest.raises(RpcError, match="unsupported"):
            await rpc.get_health()
