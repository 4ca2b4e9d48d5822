from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

from cantodam.core.config import get_settings
from cantodam.core.errors import AuthenticationFailedError, ConfigurationError, MissingClientSecretError
from cantodam.core.logging import configure_logging
from cantodam.services.canto.wiring import build_asset_source
from cantodam.services.host_contract import InMemoryImportedAssetStore
from cantodam.services.tagging import tag_used_assets


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Tag Canto assets that are used locally")
    parser.add_argument(
        "assets_file",
        type=Path,
        help="JSON lines file of local assets (local_identifier, asset_source_identifier, remote_identifier, usage_count)",
    )
    parser.add_argument("--quiet", action="store_true", help="Only print errors")
    return parser


async def _tag(assets_file: Path, quiet: bool) -> int:
    settings = get_settings()
    asset_source = build_asset_source(settings)
    imported_assets = InMemoryImportedAssetStore.from_json_lines(assets_file)
    session = asset_source.create_session(interactive=False, allow_client_credentials=True)
    if not quiet:
        print(f'Tagging used assets of asset source "{asset_source.identifier}" via Canto API:')
    async with asset_source.create_client(session=session) as client:
        try:
            outcomes = await tag_used_assets(
                asset_source=asset_source,
                client=client,
                imported_assets=imported_assets,
            )
        except MissingClientSecretError:
            print("Authentication error: Missing client secret", file=sys.stderr)
            return 1
        except AuthenticationFailedError as exc:
            print(f"Authentication error: {exc}", file=sys.stderr)
            return 1
        except ConfigurationError as exc:
            print(str(exc), file=sys.stderr)
            return 1
    for outcome in outcomes:
        if quiet and outcome.status != "error":
            continue
        print(outcome.render())
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    configure_logging()
    try:
        return asyncio.run(_tag(args.assets_file, args.quiet))
    except Exception as exc:  # noqa: BLE001 - surface batch failures clearly
        print(f"tag_used_assets failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
