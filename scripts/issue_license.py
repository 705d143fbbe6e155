#!/usr/bin/env python3
"""Issue a license key on the platform database.

Usage:
  python scripts/issue_license.py --plan SERVICE_PRO --email owner@example.com --name "Reef Bistro"

The full key is printed once, here, and nowhere else.
"""

from __future__ import annotations

import argparse
import os
import sys
from datetime import datetime
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.reservehub.db import script_session
from app.reservehub.modules.licensing.service import PLANS, issue_license


def main() -> None:
    parser = argparse.ArgumentParser(description="Issue a license key.")
    parser.add_argument("--plan", required=True, choices=PLANS)
    parser.add_argument("--email", default=None, help="Holder email")
    parser.add_argument("--name", default=None, help="Holder / restaurant name")
    parser.add_argument("--expires", default=None, help="Expiry date (YYYY-MM-DD)")
    args = parser.parse_args()

    db_url = (os.environ.get("DATABASE_URL") or "sqlite:///reservehub.db").strip()
    expires_at = datetime.strptime(args.expires, "%Y-%m-%d") if args.expires else None

    with script_session(db_url) as s:
        lic = issue_license(
            s,
            plan=args.plan,
            holder_name=args.name,
            holder_email=(args.email or "").strip().lower() or None,
            expires_at=expires_at,
        )
        key = lic.license_key

    print(f"License key: {key}")


if __name__ == "__main__":
    main()
