from __future__ import annotations

import argparse
import asyncio
import sys

from cantodam.core.logging import configure_logging
from cantodam.domain.assets import normalize_identifier
from cantodam.services.cache import AssetProxyCache


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Flush cached Canto asset metadata")
    parser.add_argument("identifiers", nargs="*", help="Only remove these asset identifiers (scheme-id)")
    return parser


async def _flush(identifiers: list[str]) -> int:
    cache = AssetProxyCache.from_settings()
    if not identifiers:
        removed = await cache.flush()
        print(f"Flushed {removed} cached asset(s)")
        return 0
    for identifier in identifiers:
        removed = await cache.remove(normalize_identifier(identifier))
        print(f"{identifier}: {'removed' if removed else 'not cached'}")
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    configure_logging()
    try:
        return asyncio.run(_flush(args.identifiers))
    except Exception as exc:  # noqa: BLE001 - surface cache failures clearly
        print(f"flush_asset_cache failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
