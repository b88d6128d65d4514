"""
cloak-wallet command-line tests
"""

import json
import os
import stat

import httpx
import pytest

from clients.cli import cloak_wallet
from cloak.api.flows import SubmissionFlow
from cloak.api.notes import note_to_json
from cloak.api.relay_client import RelayClient
from cloak.api.schemas_api import ProofResult
from cloak.crypto_core import fees
from cloak.crypto_core.keys import export_keys
from cloak.database.note_store import InMemoryNoteStore

from tests.helpers import FakeIndexer, FakeRpc, address, mock_client, no_sleep


@pytest.fixture
def keys_file(tmp_path, keys):
    path = tmp_path / "keys.json"
    path.write_text(export_keys(keys))
    return str(path)


def run(store, keys_file, *argv):
    return cloak_wallet.main(["--keys", keys_file, "--network", "localnet", *argv], store=store)


class TestKeyCommands:
    def test_keygen_writes_private_file(self, tmp_path, capsys):
        path = tmp_path / "wallet" / "keys.json"
        assert cloak_wallet.main(["--keys", str(path), "keygen"], store=InMemoryNoteStore()) == 0
        assert stat.S_IMODE(os.stat(path).st_mode) == 0o600
        assert json.loads(path.read_text())["version"] == "2.0"
        assert "pvk" in capsys.readouterr().out

    def test_keygen_refuses_to_overwrite(self, keys_file):
        assert cloak_wallet.main(["--keys", keys_file, "keygen"], store=InMemoryNoteStore()) == 1

    def test_keygen_restore(self, tmp_path, keys, keys_file):
        out = tmp_path / "restored.json"
        code = cloak_wallet.main(["keygen", "--restore", keys_file, "--out", str(out)], store=InMemoryNoteStore())
        assert code == 0
        assert json.loads(out.read_text())["pvk"] == keys.view.pvk_hex

    def test_keys_shows_public_keys(self, store, keys, keys_file, capsys):
        assert run(store, keys_file, "keys") == 0
        out = capsys.readouterr().out
        assert keys.view.pvk_hex in out
        assert keys.spend.sk_spend_hex not in out

    def test_missing_keys_file(self, tmp_path, store):
        with pytest.raises(SystemExit):
            run(store, str(tmp_path / "none.json"), "keys")


class TestNoteCommands:
    def test_new_note_in_sol(self, store, keys_file, capsys):
        assert run(store, keys_file, "new-note", "1", "--sol") == 0
        [note] = store.load_all()
        assert note.amount == 1_000_000_000
        assert note.status == "generated"
        assert note.commitment in capsys.readouterr().out

    def test_rejects_fractional_lamports(self, store, keys_file):
        with pytest.raises(SystemExit):
            run(store, keys_file, "new-note", "1.5")

    def test_import_and_export(self, tmp_path, store, keys_file, note, capsys):
        src = tmp_path / "note.json"
        src.write_text(note_to_json(note))
        assert run(store, keys_file, "import-note", str(src)) == 0
        assert store.get(note.commitment) == note

        out = tmp_path / "out.json"
        assert run(store, keys_file, "export-note", note.commitment[:10], "--out", str(out)) == 0
        assert json.loads(out.read_text())["commitment"] == note.commitment

    def test_import_rejects_tampered_note(self, tmp_path, store, keys_file, note, capsys):
        data = json.loads(note_to_json(note))
        data["amount"] += 1
        src = tmp_path / "bad.json"
        src.write_text(json.dumps(data))
        assert run(store, keys_file, "import-note", str(src)) == 1
        assert store.load_all() == []
        assert "does not match" in capsys.readouterr().out

    def test_list_spendable(self, store, keys_file, deposited, capsys):
        note, _ = deposited
        run(store, keys_file, "new-note", "5000000")
        capsys.readouterr()
        assert run(store, keys_file, "list", "--spendable") == 0
        out = capsys.readouterr().out
        assert note.commitment[:8] in out
        assert "1 note(s)" in out

    def test_unknown_prefix(self, store, keys_file, note):
        store.save(note)
        with pytest.raises(SystemExit):
            run(store, keys_file, "export-note", "zz")

    def test_fee(self, store, keys_file, capsys):
        assert run(store, keys_file, "fee", "1000000000") == 0
        out = capsys.readouterr().out
        assert "7500000" in out
        assert "992500000" in out
        assert "75 bps" in out

    def test_verify_stored_proof(self, store, keys_file, deposited, capsys):
        note, _ = deposited
        assert run(store, keys_file, "verify-proof", note.commitment) == 0
        assert "Proof OK" in capsys.readouterr().out

    def test_verify_without_leaf(self, store, keys_file, note):
        store.save(note)
        assert run(store, keys_file, "verify-proof", note.commitment) == 1


class _Prover:
    async def __call__(self, inputs):
        return ProofResult(success=True, proof="0a" * 64)


class TestSendCommand:
    def test_send_through_relay(self, store, keys_file, deposited, monkeypatch, capsys):
        note, tree = deposited

        def handler(request):
            if request.url.path == "/withdraw":
                return httpx.Response(200, json={"success": True, "data": {"request_id": "job-9"}})
            return httpx.Response(200, json={"data": {"status": "completed", "tx_id": "sig-abc"}})

        def fake_flow(args, store_, clients):
            relay = RelayClient("http://relay", client=mock_client(handler))
            return SubmissionFlow(store_, FakeIndexer(tree), relay, _Prover(), rpc=FakeRpc(),
                                  relay_interval=0, sleep=no_sleep)

        monkeypatch.setattr(cloak_wallet, "_flow", fake_flow)
        assert run(store, keys_file, "send", note.commitment[:12], "--to", address(1)) == 0
        out = capsys.readouterr().out
        assert "sent" in out
        assert "sig-abc" in out
        assert store.get(note.commitment).status == "spent"

    def test_send_unspendable_note(self, store, keys_file, note, monkeypatch, capsys):
        store.save(note)
        monkeypatch.setattr(
            cloak_wallet, "_flow",
            lambda args, store_, clients: SubmissionFlow(store_, None, None, _Prover(), rpc=FakeRpc()),
        )
        assert run(store, keys_file, "send", note.commitment, "--to", address(1)) == 1
        assert "not_spendable" in capsys.readouterr().out

    @pytest.mark.parametrize("targets", [["{a}:500000000"], ["{a}:992500001", "{b}"]])
    def test_send_amounts_that_do_not_add_up(self, store, keys_file, deposited, monkeypatch, capsys, targets):
        note, tree = deposited
        relay = RelayClient("http://relay", client=mock_client(lambda r: httpx.Response(500)))
        monkeypatch.setattr(
            cloak_wallet, "_flow",
            lambda args, store_, clients: SubmissionFlow(store_, FakeIndexer(tree), relay, _Prover(), rpc=FakeRpc()),
        )
        argv = []
        for t in targets:
            argv += ["--to", t.format(a=address(1), b=address(2))]
        assert run(store, keys_file, "send", note.commitment, *argv) == 1
        assert "malformed_input" in capsys.readouterr().out
        assert store.get(note.commitment).status == "deposited"


def _recording_flow(tree, submitted):
    def handler(request):
        if request.url.path == "/withdraw":
            submitted.append(json.loads(request.content))
            return httpx.Response(200, json={"success": True, "data": {"request_id": "job-3"}})
        return httpx.Response(200, json={"data": {"status": "completed", "tx_id": "sig-def"}})

    def fake_flow(args, store_, clients):
        relay = RelayClient("http://relay", client=mock_client(handler))
        return SubmissionFlow(store_, FakeIndexer(tree), relay, _Prover(), rpc=FakeRpc(),
                              relay_interval=0, sleep=no_sleep)

    return fake_flow


class TestSwapAndStakeCommands:
    def test_swap(self, store, keys_file, deposited, monkeypatch):
        note, tree = deposited
        submitted = []
        monkeypatch.setattr(cloak_wallet, "_flow", _recording_flow(tree, submitted))
        code = run(store, keys_file, "swap", note.commitment,
                   "--output-mint", address(4), "--recipient-ata", address(5), "--min-output", "1000")
        assert code == 0
        assert submitted[0]["swap"]["min_output_amount"] == 1000
        assert submitted[0]["policy"] == {"fee_bps": 50}
        assert store.get(note.commitment).status == "spent"

    def test_stake(self, store, keys_file, deposited, monkeypatch):
        note, tree = deposited
        submitted = []
        monkeypatch.setattr(cloak_wallet, "_flow", _recording_flow(tree, submitted))
        assert run(store, keys_file, "stake", note.commitment, "--stake-account", address(6)) == 0
        assert submitted[0]["stake"]["stake_account"] == address(6)
        assert submitted[0]["public_inputs"]["outputs_hash"] == fees.stake_outputs_hash(address(6), note.amount).hex()

    def test_unstake(self, store, keys_file, deposited, monkeypatch):
        note, tree = deposited
        submitted = []
        monkeypatch.setattr(cloak_wallet, "_flow", _recording_flow(tree, submitted))
        code = run(store, keys_file, "unstake", note.commitment, "--stake-account", address(6), "--to", address(1))
        assert code == 0
        body = submitted[0]
        assert body["unstake"]["stake_account"] == address(6)
        assert body["outputs"] == [{"recipient": address(1), "amount": 992_500_000}]
        expected = fees.unstake_outputs_hash(address(6), [(address(1), 992_500_000)]).hex()
        assert body["public_inputs"]["outputs_hash"] == expected

    def test_swap_requires_mint(self, store, keys_file, deposited):
        note, _ = deposited
        with pytest.raises(SystemExit):
            run(store, keys_file, "swap", note.commitment, "--recipient-ata", address(5), "--min-output", "1")
