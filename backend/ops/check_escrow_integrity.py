from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _bootstrap_app():
    from soko import create_app

    app = create_app()
    app.app_context().push()
    return app


def main():
    parser = argparse.ArgumentParser(description="Compare every order's status with its escrow record and report drift.")
    parser.add_argument("--limit", type=int, default=None, help="Scan at most N orders, oldest first.")
    parser.add_argument("--report", action="store_true", help="Record each violation as a CRITICAL platform event.")
    args = parser.parse_args()

    _bootstrap_app()
    from soko.errors import EscrowIntegrityError
    from soko.services.escrow_service import report_integrity_violation, scan_integrity

    summary = scan_integrity(limit=args.limit)
    if args.report:
        for item in summary["violations"]:
            report_integrity_violation(EscrowIntegrityError("Escrow status drift detected", details=item))

    print(json.dumps(summary, indent=2, default=str))
    return 0 if summary["ok"] else 2


if __name__ == "__main__":
    sys.exit(main())
