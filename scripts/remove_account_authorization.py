from __future__ import annotations

import argparse
import asyncio
import sys

from cantodam.core.logging import configure_logging
from cantodam.persistence.db import SessionLocal
from cantodam.services.auth.token_store import TokenStore


def _build_parser() -> argparse.ArgumentParser:
    # Run when a host account is deleted so its Canto grant goes with it.
    parser = argparse.ArgumentParser(description="Remove the Canto authorization of a deleted account")
    parser.add_argument("account_identifier", help="Host account identifier")
    return parser


async def _remove(account_identifier: str) -> int:
    removed = await TokenStore(SessionLocal).remove_account(account_identifier)
    if not removed:
        print(f"No Canto authorization stored for {account_identifier}")
        return 0
    print(f"Removed Canto authorization of {account_identifier}")
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    configure_logging()
    try:
        return asyncio.run(_remove(args.account_identifier))
    except Exception as exc:  # noqa: BLE001 - surface persistence failures clearly
        print(f"remove_account_authorization failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
