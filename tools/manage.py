#!/usr/bin/env python3
"""
Asset Ledger Management CLI

Commands for operating the ledger:
- verify-chain: Verify ledger chain integrity (hashes, linkage, signatures)
- export-events: Export events to JSON
- generate-wallet: Generate an Ed25519 wallet (private key, public key, address)
- bulk-import: Register assets from a CSV file with the owner key
- health-check: Check store connectivity and chain integrity

The event store is selected by environment (DATABASE_URL, EVENTSTORE_DRIVER).
With the default in-memory store every run starts from an empty ledger.

Usage:
    python -m tools.manage <command> [options]

Examples:
    python -m tools.manage verify-chain
    python -m tools.manage generate-wallet
    ASSETLEDGER_OWNER_PRIVATE_KEY=... python -m tools.manage bulk-import assets.csv
"""

import argparse
import csv
import json
import os
import sys

from assetledger.config import LedgerConfig
from assetledger.core import BulkItem, ChainError, KeyWallet, LedgerService, Signer, bulk_register
from assetledger.db import create_event_store
from assetledger.db.config import DatabaseConfig, EventStoreDriver, get_database_url, get_eventstore_driver
from assetledger.observability import check_health


def cmd_verify_chain(args):
    """Verify the integrity of the ledger chain."""
    print("Loading ledger...")
    store = create_event_store()
    try:
        ledger = LedgerService.load_from_store(store, verify=True)
    except ChainError as e:
        print(f"[FAIL] Chain integrity verification FAILED: {e}")
        return 1

    print(f"Ledger loaded: {ledger.event_count} events, {ledger.total_assets()} assets")
    if ledger.last_event_hash:
        print(f"  Chain head: {ledger.last_event_hash[:16]}...")
    print("[OK] Chain integrity verified")
    return 0


def cmd_export_events(args):
    """Export all events to a JSON file."""
    store = create_event_store()
    events = store.list_all()
    print(f"Found {len(events)} events")

    export_data = [event.model_dump(mode="json") for event in events]

    output_file = args.output or "ledger_export.json"
    with open(output_file, "w") as f:
        json.dump(export_data, f, indent=2)

    print(f"[OK] Exported {len(events)} events to {output_file}")
    return 0


def cmd_generate_wallet(args):
    """Generate a keypair and print it with its actor address."""
    private_key, public_key = Signer.generate_keypair()
    print(json.dumps({
        "private_key": private_key,
        "public_key": public_key,
        "address": Signer.address_for(public_key),
    }, indent=2))
    print("\nKeep the private key secret. Set it as ASSETLEDGER_OWNER_PRIVATE_KEY "
          "to act as the contract owner.", file=sys.stderr)
    return 0


def _read_csv_items(path: str) -> list[BulkItem]:
    items = []
    with open(path, newline="") as f:
        for row in csv.DictReader(f):
            serial = row.get("serialNumber") or row.get("serial_number") or ""
            model = row.get("model") or ""
            items.append(BulkItem(serial_number=serial, model=model))
    return items


def cmd_bulk_import(args):
    """Register every row of a CSV (serialNumber,model) as the contract owner."""
    config = LedgerConfig.from_env()
    private_key = args.private_key or config.owner_private_key
    if not private_key:
        print("Error: no owner key. Set ASSETLEDGER_OWNER_PRIVATE_KEY or pass --private-key.")
        return 1

    wallet = KeyWallet(private_key)
    if config.contract_owner is None:
        config.contract_owner = wallet.identity()

    items = _read_csv_items(args.csv_file)
    if not items:
        print(f"Error: {args.csv_file} contains no rows")
        return 1

    ledger = LedgerService.from_config(config, event_store=create_event_store())
    summary = bulk_register(
        ledger,
        items,
        wallet,
        skip_duplicates=not args.fail_on_duplicates,
        continue_on_error=not args.stop_on_error,
        validate_only=args.validate_only,
    )

    for result in summary.results:
        if result.success:
            label = "[OK]  " if not args.validate_only else "[VALID]"
            detail = f"asset {result.asset_id}" if result.asset_id else ""
        elif result.skipped:
            label, detail = "[SKIP]", result.error_code
        else:
            label, detail = "[FAIL]", f"{result.error_code}: {result.error}"
        print(f"{label} {result.serial_number} {detail}".rstrip())

    print(
        f"\n{summary.successful} registered, {summary.skipped} skipped, "
        f"{summary.failed} failed ({summary.duration_ms} ms)"
    )
    return 0 if summary.failed == 0 else 1


def cmd_health_check(args):
    """Run store and chain health checks."""
    db_url = get_database_url()
    driver = get_eventstore_driver()

    print("=== Asset Ledger Health Check ===\n")

    print("Database:")
    if driver != EventStoreDriver.MEMORY and db_url:
        config = DatabaseConfig.from_url(db_url)
        print(f"  Type: PostgreSQL ({driver.value})")
        print(f"  Host: {config.host}:{config.port}")
    else:
        print("  Type: In-Memory")

    store = create_event_store()
    try:
        ledger = LedgerService.load_from_store(store, verify=True)
    except ChainError as e:
        print(f"  Chain integrity: [FAIL] {e}")
        return 1

    status = check_health(ledger=ledger, event_store=store)
    for name, check in status.checks.items():
        marker = "[OK]" if check.get("status") == "healthy" else "[FAIL]"
        print(f"  {name}: {marker} {check}")

    print("\nEnvironment:")
    if os.environ.get("ASSETLEDGER_OWNER_PRIVATE_KEY") or os.environ.get("ASSETLEDGER_CONTRACT_OWNER"):
        print("  Contract owner: [OK] Set")
    else:
        print("  Contract owner: [WARN] Not set (registration disabled)")

    print("\n=== Health Check Complete ===")
    return 0 if status.healthy else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Asset Ledger Management CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    subparsers.add_parser("verify-chain", help="Verify ledger chain integrity")

    p_export = subparsers.add_parser("export-events", help="Export all events to JSON")
    p_export.add_argument("--output", "-o", help="Output file (default: ledger_export.json)")

    subparsers.add_parser("generate-wallet", help="Generate an Ed25519 wallet")

    p_bulk = subparsers.add_parser("bulk-import", help="Register assets from a CSV file")
    p_bulk.add_argument("csv_file", help="CSV with serialNumber,model columns")
    p_bulk.add_argument("--private-key", help="Owner private key (default: from environment)")
    p_bulk.add_argument("--validate-only", action="store_true", help="Check rows without registering")
    p_bulk.add_argument("--fail-on-duplicates", action="store_true",
                        help="Count duplicate serial numbers as failures")
    p_bulk.add_argument("--stop-on-error", action="store_true", help="Stop at the first failed row")

    subparsers.add_parser("health-check", help="Run health checks")

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    commands = {
        "verify-chain": cmd_verify_chain,
        "export-events": cmd_export_events,
        "generate-wallet": cmd_generate_wallet,
        "bulk-import": cmd_bulk_import,
        "health-check": cmd_health_check,
    }

    return commands[args.command](args) or 0


if __name__ == "__main__":
    sys.exit(main())
