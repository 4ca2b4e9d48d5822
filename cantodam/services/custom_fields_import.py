from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Mapping

from cantodam.core.config import CustomFieldMapping
from cantodam.core.errors import ConfigurationError
from cantodam.services.canto.client import CantoClient
from cantodam.services.host_contract import TagCatalog


logger = logging.getLogger(__name__)


@dataclass
class ImportedCollection:
    title: str
    created: bool
    added_tags: list[str] = field(default_factory=list)


def _wanted(value: str, options: CustomFieldMapping) -> bool:
    if options.include and value not in options.include:
        return False
    if options.exclude and value in options.exclude:
        return False
    return True


async def import_custom_fields_as_collections_and_tags(
    *,
    client: CantoClient,
    mapping: Mapping[str, CustomFieldMapping],
    catalog: TagCatalog,
) -> list[ImportedCollection]:
    # Mirror collection-like custom fields into host collections and tags.
    if not mapping:
        raise ConfigurationError("No custom fields configured for mapping")
    imported: list[ImportedCollection] = []
    for custom_field in await client.get_custom_fields():
        options = mapping.get(custom_field.id)
        if options is None or not options.as_asset_collection:
            continue
        result = ImportedCollection(title=custom_field.name, created=await catalog.ensure_collection(custom_field.name))
        if options.values_as_tags:
            for value in custom_field.values:
                if not _wanted(value, options):
                    continue
                if await catalog.ensure_tag(value, custom_field.name):
                    result.added_tags.append(value)
        logger.info(
            "canto_custom_field_imported field=%s created=%s tags=%s",
            custom_field.id,
            result.created,
            len(result.added_tags),
        )
        imported.append(result)
    return imported
