from __future__ import annotations

import argparse
import asyncio
import json
import sys

from cantodam.core.config import get_settings
from cantodam.core.logging import configure_logging
from cantodam.services.canto.wiring import build_asset_source
from cantodam.services.custom_fields_import import import_custom_fields_as_collections_and_tags
from cantodam.services.host_contract import InMemoryTagCatalog


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Import Canto custom fields as asset collections and tags")
    parser.add_argument("--json", action="store_true", help="Print the resulting collections as JSON")
    return parser


async def _import(as_json: bool) -> int:
    settings = get_settings()
    asset_source = build_asset_source(settings)
    session = asset_source.create_session(interactive=False, allow_client_credentials=True)
    catalog = InMemoryTagCatalog()
    async with asset_source.create_client(session=session) as client:
        imported = await import_custom_fields_as_collections_and_tags(
            client=client,
            mapping=asset_source.custom_fields_mapping,
            catalog=catalog,
        )
    if as_json:
        print(json.dumps({title: list(catalog.labels(title)) for title in catalog.collections}, indent=2))
        return 0
    for collection in imported:
        print(f"{'+' if collection.created else '='} {collection.title}")
        for label in collection.added_tags:
            print(f"  + {label}")
    print("Import done.")
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    configure_logging()
    try:
        return asyncio.run(_import(args.json))
    except Exception as exc:  # noqa: BLE001 - surface import failures clearly
        print(f"import_custom_fields failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
