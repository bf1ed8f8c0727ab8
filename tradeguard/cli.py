"""CLI tool for operator tasks.

Usage:
    python -m tradeguard.cli serve [host] [port]
    python -m tradeguard.cli reconcile
    python -m tradeguard.cli kill-switch [reason]
    python -m tradeguard.cli verify-audit
    python -m tradeguard.cli add-credential
"""

import asyncio
import getpass
import sys

from tradeguard.database import create_db_and_tables
from tradeguard.utils.logging import setup_logging


def serve(host: str = "127.0.0.1", port: int = 8000):
    import uvicorn

    uvicorn.run("tradeguard.main:app", host=host, port=port)


def reconcile():
    """Run one reconciliation tick against the configured broker."""
    from tradeguard.engine.reconciliation import run_reconciliation_tick

    result = asyncio.run(run_reconciliation_tick())
    print(
        f"Tick {result.status}: evaluated={result.evaluated} closed={result.closed_count} "
        f"skipped={result.skipped} errors={result.errors} "
        f"kill_switch={result.kill_switch_triggered}"
    )
    for position_id, reason in result.closed.items():
        print(f"  closed position {position_id}: {reason}")
    if result.status == "error":
        sys.exit(1)


def kill_switch(reason: str | None = None):
    from tradeguard.services.kill_switch import trigger_kill_switch

    confirm = input("Close ALL positions and cancel ALL orders? Type 'yes' to continue: ").strip()
    if confirm != "yes":
        print("Aborted.")
        sys.exit(1)

    result = asyncio.run(trigger_kill_switch(actor="cli", reason=reason))
    print(f"Positions closed: {result['positions_closed']}")
    print(f"Broker orders canceled: {result['orders_canceled']}")
    print(f"Broker positions liquidated: {result['broker_positions_liquidated']}")
    for error in result["errors"]:
        print(f"  error: {error}")


def verify_audit():
    from tradeguard.services.audit_ledger import verify_chain

    result = verify_chain()
    if result.valid:
        print(f"Audit chain OK ({result.checked} entries).")
        return
    print(f"Audit chain BROKEN at entry {result.first_invalid_id}: {result.reason}")
    print(f"{result.checked} entries verified before the break.")
    sys.exit(1)


def add_credential():
    """Store an encrypted broker key pair and make it active."""
    from tradeguard.services.credentials import mask, store_credential

    api_key_id = input("API key id: ").strip()
    if not api_key_id:
        print("API key id cannot be empty.")
        sys.exit(1)

    secret = getpass.getpass("API secret: ")
    if not secret:
        print("API secret cannot be empty.")
        sys.exit(1)

    paper = input("Paper trading? [Y/n]: ").strip().lower() != "n"
    name = input("Name [default]: ").strip() or "default"

    cred = store_credential(api_key_id=api_key_id, secret=secret, name=name, paper=paper)
    print(f"\nCredential {cred.id} ({mask(api_key_id)}) stored and activated.")


COMMANDS = ("serve", "reconcile", "kill-switch", "verify-audit", "add-credential")


def main():
    if len(sys.argv) < 2:
        print("Usage: python -m tradeguard.cli <command>")
        print(f"Commands: {', '.join(COMMANDS)}")
        sys.exit(1)

    command = sys.argv[1]
    args = sys.argv[2:]
    if command == "serve":
        serve(*args[:1], *[int(p) for p in args[1:2]])
        return

    setup_logging()
    create_db_and_tables()
    if command == "reconcile":
        reconcile()
    elif command == "kill-switch":
        kill_switch(" ".join(args) or None)
    elif command == "verify-audit":
        verify_audit()
    elif command == "add-credential":
        add_credential()
    else:
        print(f"Unknown command: {command}")
        sys.exit(1)


if __name__ == "__main__":
    main()
