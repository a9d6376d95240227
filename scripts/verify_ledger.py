#!/usr/bin/env python3
"""
Replay every stock cell's ledger trail and report drift.

For each cell the script checks that versions run 1..n without gaps, that
every entry balances, that consecutive entries chain, and that the sum of
changes equals the stored quantity.  It also checks that no physical token
claims to be in transit without an open transfer.

Usage:
  python3 scripts/verify_ledger.py [--database-url URL] [--store-id UUID] [--json] [--hash]

Exit status is 0 when the ledger is consistent, 1 when any drift was found.
"""

import argparse
import json
import os
import sys
from pathlib import Path
from uuid import UUID

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

DEFAULT_DB_URL = os.environ.get("DATABASE_URL", "sqlite:///stock_ledger.db")


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Verify stock ledger trails against stored quantities")
    p.add_argument(
        "--database-url",
        default=DEFAULT_DB_URL,
        help="Database URL (default: $DATABASE_URL or sqlite:///stock_ledger.db)",
    )
    p.add_argument("--store-id", type=UUID, help="Only verify cells of this store")
    p.add_argument("--json", action="store_true", help="Print the report as JSON")
    p.add_argument("--hash", action="store_true", help="Also print the canonical ledger hash")
    p.add_argument("--verbose", action="store_true", help="List consistent cells too")
    return p.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)

    from stock_kernel.db.engine import get_session, init_engine_from_url
    from stock_kernel.selectors import LedgerSelector, TokenSelector

    init_engine_from_url(args.database_url)
    session = get_session()
    try:
        ledger = LedgerSelector(session)
        reports = ledger.verify_all(args.store_id)
        violations = TokenSelector(session).verify_bindings(args.store_id)
        ledger_hash = ledger.canonical_hash(args.store_id) if args.hash else None
    finally:
        session.close()

    drifted = [r for r in reports if not r.is_consistent]

    if args.json:
        print(json.dumps(
            {
                "cells_checked": len(reports),
                "cells_drifted": [
                    {
                        "stock_cell_id": str(r.stock_cell_id),
                        "product_id": str(r.product_id),
                        "location_id": str(r.location_id),
                        "stored_quantity": str(r.stored_quantity),
                        "reconstructed_quantity": str(r.reconstructed_quantity),
                        "stored_version": r.stored_version,
                        "entry_count": r.entry_count,
                        "version_gaps": list(r.version_gaps),
                    }
                    for r in drifted
                ],
                "token_violations": [
                    {"code": v.code, "status": v.status.value, "reason": v.reason}
                    for v in violations
                ],
                "ledger_hash": ledger_hash,
            },
            indent=2,
        ))
    else:
        print(f"Cells checked: {len(reports)}")
        for r in reports:
            if r.is_consistent and not args.verbose:
                continue
            marker = "OK   " if r.is_consistent else "DRIFT"
            print(
                f"  {marker} product={r.product_id} location={r.location_id} "
                f"stored={r.stored_quantity} replayed={r.reconstructed_quantity} "
                f"v{r.stored_version}/{r.entry_count} entries"
            )
            if r.version_gaps:
                print(f"        missing versions: {', '.join(map(str, r.version_gaps))}")
            if r.unbalanced_entry_ids:
                print(f"        unbalanced entries: {len(r.unbalanced_entry_ids)}")
            if r.broken_chain_entry_ids:
                print(f"        broken chain at: {len(r.broken_chain_entry_ids)} entries")
        for v in violations:
            print(f"  TOKEN {v.code}: {v.reason}")
        if ledger_hash:
            print(f"Ledger hash: {ledger_hash}")
        print("Ledger consistent." if not drifted and not violations else "Ledger DRIFT detected.")

    return 1 if drifted or violations else 0


if __name__ == "__main__":
    sys.exit(main())
