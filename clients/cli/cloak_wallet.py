#!/usr/bin/env python3
# clients/cli/cloak_wallet.py
# Command-line Cloak wallet: keys, notes, fees, scanning, deposit and send.
# Secrets stay local; only commitments, envelopes and proofs leave the machine.

from __future__ import annotations
import argparse, asyncio, os, sys
from decimal import Decimal, InvalidOperation
from typing import List, Optional, Tuple

from cloak import config
from cloak.api.errors import FlowError, ServiceError, SubmissionInProgressError
from cloak.api.flows import FlowKind, SpendRequest, SubmissionFlow
from cloak.api.indexer_client import IndexerClient
from cloak.api.notes import create_note, note_to_json, parse_note, scan_and_import
from cloak.api.prover_client import HttpProver
from cloak.api.relay_client import RelayClient
from cloak.api.rpc_client import SolanaRpcClient
from cloak.api.schemas_api import StakeParams, SwapParams, UnstakeParams
from cloak.crypto_core import fees
from cloak.crypto_core.commitments import NoteFormatError
from cloak.crypto_core.keys import CloakKeys, export_keys, generate_cloak_keys, import_keys
from cloak.crypto_core.merkle import MerkleProof, MerkleProofFormatError, ProofInconsistencyError, verify_or_refresh, verify_proof
from cloak.database.note_store import DuplicateNoteError, NoteStore, make_store_from_config


# ======== Color accents (no deps) ========
class C:
    OK   = "\033[92m"
    WARN = "\033[93m"
    ERR  = "\033[91m"
    DIM  = "\033[2m"
    BOLD = "\033[1m"
    RST  = "\033[0m"

LAMPORTS_PER_SOL = 1_000_000_000


def _short(h: str) -> str:
    return f"{h[:8]}…{h[-6:]}" if h and len(h) > 16 else h

def _fmt_sol(lamports: int) -> str:
    return f"{Decimal(lamports) / LAMPORTS_PER_SOL:.9f}".rstrip("0").rstrip(".")

def _lamports(amount: str, sol: bool = False) -> int:
    try:
        value = Decimal(amount)
    except InvalidOperation:
        raise SystemExit(f"{C.ERR}Invalid amount: {amount}{C.RST}")
    if sol:
        value = value * LAMPORTS_PER_SOL
    if value != value.to_integral_value() or value < 0:
        raise SystemExit(f"{C.ERR}Amount must be a whole, non-negative number of lamports{C.RST}")
    return int(value)


# ======== Keys ========
def load_keys(path: str = config.KEYS_PATH) -> CloakKeys:
    if not os.path.exists(path):
        raise SystemExit(f"{C.ERR}No keys at {path}; run `cloak-wallet keygen` first.{C.RST}")
    with open(path) as f:
        try:
            return import_keys(f.read())
        except ValueError as e:
            raise SystemExit(f"{C.ERR}{e}{C.RST}")

def _write_private(path: str, text: str) -> None:
    os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w") as f:
        f.write(text)


# ======== Commands ========
def cmd_keygen(args, store: NoteStore) -> int:
    path = args.out or args.keys
    if os.path.exists(path) and not args.force:
        print(f"{C.WARN}Keys already exist at {path} (use --force to overwrite){C.RST}")
        return 1
    if args.restore:
        with open(args.restore) as f:
            keys = import_keys(f.read())
    else:
        keys = generate_cloak_keys()
    _write_private(path, export_keys(keys))
    print(f"{C.OK}Keys written to {path}{C.RST}")
    print(f"pvk      : {keys.view.pvk_hex}")
    print(f"{C.DIM}Back up this file: the master seed inside can spend every note.{C.RST}")
    return 0

def cmd_keys(args, store: NoteStore) -> int:
    keys = load_keys(args.keys)
    if args.export:
        print(export_keys(keys))
        return 0
    print(f"pk_spend : {keys.spend.pk_spend_hex}")
    print(f"pvk      : {keys.view.pvk_hex}")
    return 0

def cmd_new_note(args, store: NoteStore) -> int:
    keys = load_keys(args.keys)
    amount = _lamports(args.amount, args.sol)
    if fees.distributable_amount(amount) <= 0:
        print(f"{C.WARN}Warning: {amount} lamports does not cover the {fees.fee(amount)} lamport fee{C.RST}")
    note = create_note(amount, keys, args.network)
    store.save(note)
    print(f"{C.OK}New note{C.RST} {note.commitment}  {_fmt_sol(amount)} SOL  ({note.network})")
    print(f"{C.DIM}Deposit it on-chain, then run `cloak-wallet deposit {_short(note.commitment)} <signature>`.{C.RST}")
    return 0

def cmd_import_note(args, store: NoteStore) -> int:
    if args.file == "-":
        text = sys.stdin.read()
    else:
        with open(args.file) as f:
            text = f.read()
    try:
        note = parse_note(text)
        store.save(note)
    except NoteFormatError as e:
        print(f"{C.ERR}{e}{C.RST}")
        return 1
    except DuplicateNoteError as e:
        print(f"{C.WARN}{e}{C.RST}")
        return 1
    print(f"{C.OK}Imported{C.RST} {_short(note.commitment)}  {_fmt_sol(note.amount)} SOL  [{note.status}]")
    return 0

def _find(store: NoteStore, prefix: str):
    prefix = prefix.lower().split("…")[0]
    matches = [n for n in store.load_all() if n.commitment.startswith(prefix)]
    if len(matches) != 1:
        raise SystemExit(f"{C.ERR}{'No' if not matches else 'Ambiguous'} note matching {prefix!r}{C.RST}")
    return matches[0]

def cmd_export_note(args, store: NoteStore) -> int:
    note = _find(store, args.commitment)
    text = note_to_json(note)
    if args.out:
        _write_private(args.out, text)
        print(f"{C.OK}Exported to {args.out}{C.RST}")
    else:
        print(text)
    return 0

def cmd_list(args, store: NoteStore) -> int:
    notes = store.load_spendable() if args.spendable else store.load_all()
    if args.status:
        notes = [n for n in notes if n.status == args.status]
    if not notes:
        print(f"{C.DIM}(no notes){C.RST}")
        return 0
    print(f"{'commitment':<18} {'amount (SOL)':>14} {'status':<10} {'leaf':>6}  network")
    for n in notes:
        leaf = "-" if n.leaf_index is None else str(n.leaf_index)
        print(f"{_short(n.commitment):<18} {_fmt_sol(n.amount):>14} {n.status:<10} {leaf:>6}  {n.network}")
    total = sum(n.amount for n in notes)
    print(f"\nTotal: {C.BOLD}{_fmt_sol(total)} SOL{C.RST} in {len(notes)} note(s)")
    return 0

def cmd_fee(args, store: NoteStore) -> int:
    amount = _lamports(args.amount, args.sol)
    total = fees.fee(amount)
    print(f"Amount        : {amount} lamports ({_fmt_sol(amount)} SOL)")
    print(f"Fixed fee     : {fees.FIXED_FEE_LAMPORTS}")
    print(f"Variable fee  : {fees.variable_fee(amount)}")
    print(f"Total fee     : {total}  ({fees.relay_fee_bps(amount, total)} bps)")
    dist = fees.distributable_amount(amount)
    color = C.OK if dist > 0 else C.ERR
    print(f"Recipient gets: {color}{dist}{C.RST} lamports")
    return 0

async def _verify_remote(note, indexer: IndexerClient):
    cached = None
    if note.merkle_proof is not None:
        cached = MerkleProof(list(note.merkle_proof.path_elements), list(note.merkle_proof.path_indices), note.root)
    return await verify_or_refresh(note.commitment, note.leaf_index, cached, indexer.get_merkle_proof,
                                   config.MERKLE_REFETCH_ATTEMPTS)

def cmd_verify_proof(args, store: NoteStore) -> int:
    note = _find(store, args.commitment)
    if note.leaf_index is None:
        print(f"{C.WARN}Note {_short(note.commitment)} has no leaf index yet{C.RST}")
        return 1
    if args.refresh:
        async def _go():
            async with IndexerClient(args.indexer) as indexer:
                return await _verify_remote(note, indexer)
        try:
            proof = asyncio.run(_go())
        except (ProofInconsistencyError, MerkleProofFormatError, ServiceError) as e:
            print(f"{C.ERR}{e}{C.RST}")
            return 1
        print(f"{C.OK}Proof OK{C.RST} against root {_short(proof.root)}")
        return 0
    if note.merkle_proof is None or not note.root:
        print(f"{C.WARN}No stored proof; use --refresh to fetch one{C.RST}")
        return 1
    try:
        ok = verify_proof(note.commitment, note.merkle_proof.path_elements, note.merkle_proof.path_indices,
                          note.root, note.leaf_index)
    except MerkleProofFormatError as e:
        print(f"{C.ERR}{e}{C.RST}")
        return 1
    print(f"{C.OK}Proof OK{C.RST}" if ok else f"{C.ERR}Proof does not reproduce stored root{C.RST}")
    return 0 if ok else 1

def cmd_scan(args, store: NoteStore) -> int:
    keys = load_keys(args.keys)
    async def _go() -> List[str]:
        async with IndexerClient(args.indexer) as indexer:
            return await indexer.get_all_notes(args.page_size)
    try:
        outputs = asyncio.run(_go())
    except ServiceError as e:
        print(f"{C.ERR}{e}{C.RST}")
        return 1
    found = scan_and_import(store, keys.view, outputs, args.network)
    print(f"Scanned {len(outputs)} output(s); {C.OK}{len(found)} new note(s){C.RST}")
    for n in found:
        print(f"  {_short(n.commitment)}  {_fmt_sol(n.amount)} SOL")
    return 0

def _flow(args, store: NoteStore, clients: list) -> SubmissionFlow:
    indexer = IndexerClient(args.indexer)
    relay = RelayClient(args.relay)
    prover = HttpProver(args.prover)
    rpc = SolanaRpcClient(args.rpc)
    clients.extend([indexer, relay, prover, rpc])
    return SubmissionFlow(store, indexer, relay, prover, rpc=rpc)

def _run_flow(args, store: NoteStore, go) -> int:
    async def _main():
        clients: list = []
        try:
            return await go(_flow(args, store, clients))
        finally:
            for c in clients:
                await c.aclose()
    try:
        result = asyncio.run(_main())
    except FlowError as e:
        print(f"{C.ERR}{e}{C.RST}")
        return 1
    except SubmissionInProgressError as e:
        print(f"{C.WARN}{e}{C.RST}")
        return 1
    print(f"{C.OK}{result.state.value}{C.RST}  note={_short(result.commitment)} leaf={result.leaf_index}")
    if result.tx_id:
        print(f"tx: {result.tx_id}")
        print(f"{C.DIM}{result.explorer_url}{C.RST}")
    return 0

def cmd_deposit(args, store: NoteStore) -> int:
    note = _find(store, args.commitment)
    return _run_flow(args, store, lambda flow: flow.deposit(note.commitment, args.signature))

def _parse_recipient(target: str) -> Tuple[str, Optional[int]]:
    addr, _, amt = target.partition(":")
    return addr, (_lamports(amt) if amt else None)

def cmd_send(args, store: NoteStore) -> int:
    note = _find(store, args.commitment)
    request = SpendRequest(kind=FlowKind.SEND, recipients=[_parse_recipient(r) for r in args.to])
    return _run_flow(args, store, lambda flow: flow.spend(note.commitment, request))

def cmd_swap(args, store: NoteStore) -> int:
    note = _find(store, args.commitment)
    swap = SwapParams(
        output_mint=args.output_mint,
        recipient_ata=args.recipient_ata,
        min_output_amount=_lamports(args.min_output),
        slippage_bps=args.slippage_bps,
    )
    request = SpendRequest(kind=FlowKind.SWAP, swap=swap)
    return _run_flow(args, store, lambda flow: flow.spend(note.commitment, request))

def cmd_stake(args, store: NoteStore) -> int:
    note = _find(store, args.commitment)
    stake = StakeParams(
        stake_account=args.stake_account,
        stake_authority=args.authority,
        validator_vote_account=args.validator,
    )
    request = SpendRequest(kind=FlowKind.STAKE, stake=stake)
    return _run_flow(args, store, lambda flow: flow.spend(note.commitment, request))

def cmd_unstake(args, store: NoteStore) -> int:
    # the stake account is bound into the outputs hash; payouts go to --to
    note = _find(store, args.commitment)
    request = SpendRequest(
        kind=FlowKind.UNSTAKE,
        recipients=[_parse_recipient(r) for r in args.to],
        unstake=UnstakeParams(stake_account=args.stake_account, stake_authority=args.authority),
    )
    return _run_flow(args, store, lambda flow: flow.spend(note.commitment, request))


# ======== CLI main ========
def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="cloak-wallet", description="Cloak shielded note wallet")
    p.add_argument("--store", choices=["json", "sql", "memory"], default=None,
                   help="Note store backend (default: NOTE_STORE_BACKEND)")
    p.add_argument("--keys", default=config.KEYS_PATH, help="Keys file")
    p.add_argument("--network", default=config.NETWORK, choices=config.NETWORKS)
    p.add_argument("--indexer", default=config.INDEXER_URL)
    p.add_argument("--relay", default=config.RELAY_URL)
    p.add_argument("--prover", default=config.PROVER_URL)
    p.add_argument("--rpc", default=config.SOLANA_RPC_URL)
    sub = p.add_subparsers(dest="command", required=True)

    s = sub.add_parser("keygen", help="Generate (or restore) wallet keys")
    s.add_argument("--out", help="Where to write the keys file")
    s.add_argument("--restore", help="Restore from a key backup file")
    s.add_argument("--force", action="store_true")
    s.set_defaults(func=cmd_keygen)

    s = sub.add_parser("keys", help="Show public keys")
    s.add_argument("--export", action="store_true", help="Print the full backup (secret!)")
    s.set_defaults(func=cmd_keys)

    s = sub.add_parser("new-note", help="Create a note to deposit")
    s.add_argument("amount")
    s.add_argument("--sol", action="store_true", help="Amount is in SOL, not lamports")
    s.set_defaults(func=cmd_new_note)

    s = sub.add_parser("import-note", help="Import a note file ('-' for stdin)")
    s.add_argument("file")
    s.set_defaults(func=cmd_import_note)

    s = sub.add_parser("export-note", help="Export a note (contains secrets)")
    s.add_argument("commitment", help="Commitment or unique prefix")
    s.add_argument("--out")
    s.set_defaults(func=cmd_export_note)

    s = sub.add_parser("list", help="List notes")
    s.add_argument("--spendable", action="store_true")
    s.add_argument("--status", choices=["generated", "deposited", "spent"])
    s.set_defaults(func=cmd_list)

    s = sub.add_parser("fee", help="Fee quote for an amount")
    s.add_argument("amount")
    s.add_argument("--sol", action="store_true")
    s.set_defaults(func=cmd_fee)

    s = sub.add_parser("verify-proof", help="Check a note's Merkle proof")
    s.add_argument("commitment")
    s.add_argument("--refresh", action="store_true", help="Refetch from the indexer if stale")
    s.set_defaults(func=cmd_verify_proof)

    s = sub.add_parser("scan", help="Scan indexer outputs for notes addressed to us")
    s.add_argument("--page-size", type=int, default=config.INDEXER_PAGE_SIZE)
    s.set_defaults(func=cmd_scan)

    s = sub.add_parser("deposit", help="Finalize a deposit after the on-chain transaction")
    s.add_argument("commitment")
    s.add_argument("signature")
    s.set_defaults(func=cmd_deposit)

    s = sub.add_parser("send", help="Withdraw a note through the relay")
    s.add_argument("commitment")
    s.add_argument("--to", action="append", required=True,
                   help="recipient[:lamports]; one recipient may omit the amount and take the rest")
    s.set_defaults(func=cmd_send)

    s = sub.add_parser("swap", help="Spend a note into an SPL token through the relay")
    s.add_argument("commitment")
    s.add_argument("--output-mint", required=True)
    s.add_argument("--recipient-ata", required=True, help="Token account receiving the output")
    s.add_argument("--min-output", required=True, help="Minimum output, in token base units")
    s.add_argument("--slippage-bps", type=int)
    s.set_defaults(func=cmd_swap)

    s = sub.add_parser("stake", help="Spend a note into a stake account")
    s.add_argument("commitment")
    s.add_argument("--stake-account", required=True)
    s.add_argument("--authority")
    s.add_argument("--validator", help="Validator vote account")
    s.set_defaults(func=cmd_stake)

    s = sub.add_parser("unstake", help="Withdraw from a stake account to recipients")
    s.add_argument("commitment")
    s.add_argument("--stake-account", required=True)
    s.add_argument("--authority")
    s.add_argument("--to", action="append", required=True,
                   help="recipient[:lamports]; one recipient may omit the amount and take the rest")
    s.set_defaults(func=cmd_unstake)
    return p


def main(argv: Optional[List[str]] = None, store: Optional[NoteStore] = None) -> int:
    args = build_parser().parse_args(argv)
    store = store or make_store_from_config(args.store)
    return args.func(args, store)


if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print("\nInterrupted by user."); sys.exit(130)
