#!/usr/bin/env python3
"""cosign -- co-sign a document backed by a multisig escrow.

Usage:
    cosign keygen                        Create an identity key (~/.cosign/key)
    cosign id                            Print your pubkey
    cosign hash FILE                     Print a document's hash
    cosign propose FILE -c KEY... -a KEY... [-q N] [-n NETWORK]
                                         Send a contract-request to every party
    cosign status FILE                   Show contract and signature state
    cosign approve FILE [--contract H]   Sign the contract for FILE and notify every party
    cosign export FILE [-o DIR]          Write FILE's fully signed contract as <name>.json
    cosign listen                        Follow the inbox and report changes
    cosign relay [--port N]              Run a mailbox relay

Config:
    ~/.cosign/config.py                  Global config (Python)
    .cosign.py                           Project config (overrides global)

    Config vars: relay_url, key_file, network, poll_interval, export_dir
"""

import argparse
import asyncio
import logging
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.realpath(__file__)))

import httpx

from address import unconfidential_address
from client import RelayTransport
from coordinator.export import missing_signers, write_export
from coordinator.service import CosignService
from crypto import generate_keypair, hash_file, load_key, privkey_to_pubkey, save_key
from protocol import (
    DEFAULT_POLL_INTERVAL, DEFAULT_NETWORK, KEY_FILE, RELAY_URL, ChainFamily, CosignError,
    Network, SchemaValidationError, chain_family,
)

CONFIG_DIR = os.path.expanduser("~/.cosign")

C_RESET = "\033[0m"
C_RED = "\033[31m"
C_GREEN = "\033[32m"
C_YELLOW = "\033[33m"
C_DIM = "\033[2m"
C_BOLD = "\033[1m"

if not sys.stderr.isatty():
    C_RESET = C_RED = C_GREEN = C_YELLOW = C_DIM = C_BOLD = ""


def status(icon, msg):
    print(f"  {icon}  {msg}", file=sys.stderr)


# --- Config (Python) ---

DEFAULTS = {
    "relay_url": RELAY_URL,
    "key_file": KEY_FILE,
    "network": DEFAULT_NETWORK,
    "poll_interval": DEFAULT_POLL_INTERVAL,
    "export_dir": None,   # default: next to the document
}


def _exec_config(path):
    """Execute a Python config file and return its namespace as a dict."""
    ns = {"__builtins__": __builtins__}
    try:
        with open(path) as f:
            exec(f.read(), ns)
    except FileNotFoundError:
        return {}
    except Exception as e:
        status(f"{C_RED}✗{C_RESET}", f"Error in {path}: {e}")
        return {}
    return {k: v for k, v in ns.items() if not k.startswith("_")}


def _find_project_config():
    """Walk up from CWD to find .cosign.py (stops at git root or /)."""
    d = os.getcwd()
    while True:
        candidate = os.path.join(d, ".cosign.py")
        if os.path.isfile(candidate):
            return candidate
        if os.path.isdir(os.path.join(d, ".git")):
            break
        parent = os.path.dirname(d)
        if parent == d:
            break
        d = parent
    return None


def load_config():
    """Load config: defaults <- ~/.cosign/config.py <- .cosign.py (project-local)."""
    cfg = dict(DEFAULTS)
    cfg.update(_exec_config(os.path.join(CONFIG_DIR, "config.py")))
    project_path = _find_project_config()
    if project_path:
        cfg.update(_exec_config(project_path))
        cfg["_project_config"] = project_path
    return cfg


# --- Helpers ---

def _load_identity(cfg):
    path = os.path.expanduser(cfg["key_file"])
    if not os.path.exists(path):
        raise SystemExit(f"No key at {path}. Run: cosign keygen")
    return load_key(path)


def _make_service(cfg):
    privkey = _load_identity(cfg)
    transport = RelayTransport(privkey, base_url=cfg["relay_url"],
                               poll_interval=float(cfg["poll_interval"]))
    return CosignService(privkey, transport)


def _print_contract(service, file_hash):
    record = service.store.get_contract(file_hash)
    signatures = service.store.get_signatures(file_hash)
    if record is None:
        status(f"{C_YELLOW}?{C_RESET}", f"No contract for {file_hash}")
        if signatures:
            status(f"{C_DIM}▸{C_RESET}", f"{len(signatures)} signature(s) waiting for its request")
        return
    col = record["collateral"]
    pubkeys = record["document"]["pubkeys"]
    status(f"{C_BOLD}▸{C_RESET}", f"Contract {file_hash}")
    status(" ", f"network   {col['network']}")
    status(" ", f"escrow    {col['multisigAddress']}")
    if chain_family(col["network"]) is ChainFamily.LIQUID:
        status(" ", "unblinded " + unconfidential_address(
            col["network"], pubkeys["clients"], pubkeys["arbitrators"], col["arbitratorsQuorum"]))
    status(" ", f"quorum    {col['arbitratorsQuorum']} of {len(pubkeys['arbitrators'])} arbitrators")
    for role in ("clients", "arbitrators"):
        for key in pubkeys[role]:
            mark = f"{C_GREEN}✓{C_RESET}" if key in signatures else f"{C_DIM}·{C_RESET}"
            me = " (you)" if key == service.identity else ""
            status(mark, f"{role[:-1]:<10} {key}{me}")
    if service.is_complete(file_hash):
        status(f"{C_GREEN}✓{C_RESET}", "Fully signed, ready to export")
    else:
        status(f"{C_DIM}▸{C_RESET}", f"Waiting on {len(missing_signers(service.store, file_hash))} signature(s)")


# --- Commands ---

def cmd_keygen(cfg, args):
    path = os.path.expanduser(cfg["key_file"])
    if os.path.exists(path) and not args.force:
        status(f"{C_YELLOW}!{C_RESET}", f"Key already exists at {path} (use --force to replace)")
        return 1
    os.makedirs(os.path.dirname(path), exist_ok=True)
    privkey, pubkey = generate_keypair()
    save_key(path, privkey)
    status(f"{C_GREEN}✓{C_RESET}", f"Wrote {path}")
    print(pubkey)
    return 0


def cmd_id(cfg, args):
    print(privkey_to_pubkey(_load_identity(cfg)))
    return 0


def cmd_hash(cfg, args):
    print(hash_file(args.file))
    return 0


async def cmd_propose(cfg, args):
    service = _make_service(cfg)
    file_hash = hash_file(args.file)
    report = await service.propose(file_hash, args.client, args.arbitrator,
                                   args.quorum, args.network or cfg["network"])
    status(f"{C_GREEN}✓{C_RESET}", f"Proposed {file_hash} to {len(report.delivered)} part(ies)")
    for key, err in report.failed.items():
        status(f"{C_RED}✗{C_RESET}", f"{key[:16]}...: {err}")
    return 0 if report.ok else 1


async def cmd_status(cfg, args):
    service = _make_service(cfg)
    await service.sync()
    _print_contract(service, hash_file(args.file))
    return 0


async def cmd_approve(cfg, args):
    service = _make_service(cfg)
    await service.sync()
    local_hash = hash_file(args.file)
    file_hash = (args.contract or local_hash).lower()
    if service.store.get_contract(file_hash) is None:
        status(f"{C_RED}✗{C_RESET}", f"No contract for {file_hash}")
        return 1
    if not service.document_matches(file_hash, local_hash):
        status(f"{C_YELLOW}!{C_RESET}",
               f"{args.file} does not match contract {file_hash[:16]}... (local {local_hash[:16]}...). Not approving.")
        return 1
    result = await service.approve(file_hash, record_locally=args.record_locally)
    status(f"{C_GREEN}✓{C_RESET}", f"Approval sent to {len(result.delivered)} part(ies)")
    for key, err in result.failed.items():
        status(f"{C_RED}✗{C_RESET}", f"{key[:16]}...: {err}")
    return 0 if result.ok else 1


async def cmd_export(cfg, args):
    service = _make_service(cfg)
    await service.sync()
    file_hash = hash_file(args.file)
    try:
        artifact = service.export(file_hash)
    except SchemaValidationError as e:
        status(f"{C_RED}✗{C_RESET}", "Contract is not exportable:")
        for err in e.errors:
            status(" ", err)
        return 1
    path = write_export(artifact, args.file, args.out or cfg["export_dir"])
    status(f"{C_GREEN}✓{C_RESET}", f"Wrote {path}")
    return 0


async def cmd_listen(cfg, args):
    service = _make_service(cfg)

    def on_change(event, file_hash):
        if service.is_complete(file_hash):
            status(f"{C_GREEN}✓{C_RESET}", f"{file_hash[:16]}... fully signed")
        else:
            status(f"{C_DIM}▸{C_RESET}", f"{file_hash[:16]}... {event} update")

    service.store.add_listener(on_change)
    service.start()
    try:
        while service.running:
            await asyncio.sleep(1)
    finally:
        await service.stop()
    return 0


def cmd_relay(cfg, args):
    import uvicorn
    from relay import create_app
    uvicorn.run(create_app(), host=args.host, port=args.port)
    return 0


def build_parser():
    parser = argparse.ArgumentParser(prog="cosign", description="Co-sign documents over an encrypted relay.")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    parser.add_argument("--relay", help="relay URL (overrides config)")
    parser.add_argument("--key", help="key file (overrides config)")
    sub = parser.add_subparsers(dest="command")

    p = sub.add_parser("keygen", help="create an identity key")
    p.add_argument("--force", action="store_true")
    sub.add_parser("id", help="print your pubkey")
    p = sub.add_parser("hash", help="print a document's hash")
    p.add_argument("file")

    p = sub.add_parser("propose", help="propose a contract for a document")
    p.add_argument("file")
    p.add_argument("-c", "--client", action="append", required=True, help="client pubkey (repeat, order matters)")
    p.add_argument("-a", "--arbitrator", action="append", required=True, help="arbitrator pubkey (repeat, order matters)")
    p.add_argument("-q", "--quorum", type=int, default=1)
    p.add_argument("-n", "--network", choices=[n.value for n in Network])

    p = sub.add_parser("status", help="show contract state")
    p.add_argument("file")

    p = sub.add_parser("approve", help="sign and broadcast approval")
    p.add_argument("file")
    p.add_argument("--contract", help="contract file hash (hex), if different from the document's")
    p.add_argument("--record-locally", action="store_true",
                   help="store our own signature without waiting for the relay echo")

    p = sub.add_parser("export", help="write the fully signed contract")
    p.add_argument("file")
    p.add_argument("-o", "--out", help="output directory")

    sub.add_parser("listen", help="follow the inbox")

    p = sub.add_parser("relay", help="run a mailbox relay")
    p.add_argument("--host", default="127.0.0.1")
    p.add_argument("--port", type=int, default=8700)
    return parser


SYNC_COMMANDS = {"keygen": cmd_keygen, "id": cmd_id, "hash": cmd_hash, "relay": cmd_relay}
ASYNC_COMMANDS = {
    "propose": cmd_propose, "status": cmd_status, "approve": cmd_approve,
    "export": cmd_export, "listen": cmd_listen,
}


def main(argv=None):
    args = build_parser().parse_args(argv)
    if not args.command:
        print(__doc__.strip())
        return 0

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    cfg = load_config()
    if args.relay:
        cfg["relay_url"] = args.relay
    if args.key:
        cfg["key_file"] = args.key

    try:
        if args.command in SYNC_COMMANDS:
            return SYNC_COMMANDS[args.command](cfg, args)
        return asyncio.run(ASYNC_COMMANDS[args.command](cfg, args))
    except KeyboardInterrupt:
        status(f"{C_DIM}▸{C_RESET}", "Stopped.")
        return 130
    except (CosignError, OSError, httpx.HTTPError) as e:
        status(f"{C_RED}✗{C_RESET}", str(e))
        return 1


if __name__ == "__main__":
    sys.exit(main())
