from __future__ import annotations

import argparse
import asyncio
import json
import sys

from cantodam.core.config import get_settings
from cantodam.core.errors import AuthorizationRequiredError
from cantodam.core.logging import configure_logging
from cantodam.services.canto.wiring import build_asset_source


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Show the Canto user and folder tree for a connection")
    parser.add_argument("--account", default=None, help="Host account whose authorization to use")
    return parser


async def _show(account: str | None) -> int:
    asset_source = build_asset_source(get_settings())
    session = asset_source.create_session(
        principal=account,
        interactive=account is not None,
        allow_client_credentials=account is None,
    )
    async with asset_source.create_client(session=session) as client:
        try:
            user = await client.user()
            tree = await client.tree()
        except AuthorizationRequiredError as exc:
            print(f"Authorization needed, open: {exc.authorize_url}", file=sys.stderr)
            return 1
    print(json.dumps({"user": user, "tree": tree}, indent=2))
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    configure_logging()
    try:
        return asyncio.run(_show(args.account))
    except Exception as exc:  # noqa: BLE001 - surface connection failures clearly
        print(f"show_connection failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
