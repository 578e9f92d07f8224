"""
Compare subscription records with Stripe and optionally repair drift.

Dry-run by default. Use --fix to reset records whose subscription ended on Stripe.
"""
from __future__ import annotations

import argparse
import json
import os
from datetime import datetime, timezone
from typing import Optional

from vvip.core.logging import configure_logging
from vvip.features.billing.reconcile_job import run_reconcile_job


def _parse_bool(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Reconcile subscription records with Stripe.")
    parser.add_argument("--fix", dest="fix", action="store_true", help="Reset records whose subscription ended on Stripe.")
    parser.add_argument("--dry-run", dest="fix", action="store_false", help="Report only.")
    parser.add_argument("--limit", type=int, default=int(os.getenv("VVIP_RECONCILE_LIMIT", "100")))
    parser.set_defaults(fix=_parse_bool(os.getenv("VVIP_RECONCILE_FIX"), False))
    args = parser.parse_args(argv)

    configure_logging(os.getenv("ENV", "development"))
    report = run_reconcile_job(datetime.now(timezone.utc), fix=args.fix, limit=args.limit)
    print(json.dumps(report, indent=2, default=str))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
