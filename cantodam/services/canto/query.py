from __future__ import annotations

import copy
import json
import logging
from enum import Enum
from typing import AsyncIterator, Mapping, Sequence
from urllib.parse import quote

from cantodam.core.config import CustomFieldMapping
from cantodam.domain.assets import AssetCollection, CantoAssetProxy, CustomField, PreviewPresets, Tag
from cantodam.services.cache import AssetProxyCache
from cantodam.services.canto.client import CantoClient


logger = logging.getLogger(__name__)

# Canto reads this keyword value as "field has no value".
NULL_KEYWORD = "__null__"
DEFAULT_LIMIT = 30


class AssetTypeFilter(str, Enum):
    ALL = "All"
    IMAGE = "Image"
    VIDEO = "Video"
    AUDIO = "Audio"
    DOCUMENT = "Document"


FORMAT_TYPES: dict[AssetTypeFilter, tuple[str, ...]] = {
    AssetTypeFilter.ALL: ("image", "video", "audio", "document", "presentation", "other"),
    AssetTypeFilter.IMAGE: ("image",),
    AssetTypeFilter.VIDEO: ("video",),
    AssetTypeFilter.AUDIO: ("audio",),
    AssetTypeFilter.DOCUMENT: ("document",),
}


def _keyword_clause(field_id: str, value: str) -> str:
    return f'&{field_id}.keyword="{quote(value, safe="")}"'


def _collection_fields(
    custom_fields: Sequence[CustomField], mapping: Mapping[str, CustomFieldMapping]
) -> list[CustomField]:
    # Mapped collection-like fields, in mapping order.
    by_id = {custom_field.id: custom_field for custom_field in custom_fields}
    return [
        by_id[field_id]
        for field_id, options in mapping.items()
        if options.as_asset_collection and field_id in by_id
    ]


def build_tag_query(
    *,
    custom_fields: Sequence[CustomField],
    mapping: Mapping[str, CustomFieldMapping],
    tag: Tag,
    collection: AssetCollection | None = None,
) -> str:
    """Filter by tag through every collection-like field named after a relevant collection.

    Clauses are concatenated, which Canto evaluates as AND.
    """
    titles = [collection.title] if collection is not None else [c.title for c in tag.collections]
    query = ""
    for custom_field in _collection_fields(custom_fields, mapping):
        for title in titles:
            if custom_field.name == title:
                query += _keyword_clause(custom_field.id, tag.label)
    return query


def build_untagged_query(
    *,
    custom_fields: Sequence[CustomField],
    mapping: Mapping[str, CustomFieldMapping],
    collection: AssetCollection | None = None,
) -> str:
    query = ""
    for custom_field in _collection_fields(custom_fields, mapping):
        if collection is not None and custom_field.name != collection.title:
            continue
        query += _keyword_clause(custom_field.id, NULL_KEYWORD)
    return query


class QueryTranslator:
    # Fetches the remote custom field list once per translator.
    def __init__(self, client: CantoClient, mapping: Mapping[str, CustomFieldMapping]) -> None:
        self._client = client
        self._mapping = dict(mapping)
        self._custom_fields: list[CustomField] | None = None

    @property
    def mapping(self) -> dict[str, CustomFieldMapping]:
        return self._mapping

    async def custom_fields(self) -> list[CustomField]:
        if self._custom_fields is None:
            self._custom_fields = await self._client.get_custom_fields() if self._mapping else []
        return self._custom_fields

    async def prepare_tag_query(self, tag: Tag, collection: AssetCollection | None = None) -> str:
        if not self._mapping:
            return ""
        return build_tag_query(
            custom_fields=await self.custom_fields(),
            mapping=self._mapping,
            tag=tag,
            collection=collection,
        )

    async def prepare_untagged_query(self, collection: AssetCollection | None = None) -> str:
        if not self._mapping:
            return ""
        return build_untagged_query(
            custom_fields=await self.custom_fields(),
            mapping=self._mapping,
            collection=collection,
        )


class CantoAssetProxyQuery:
    """Mutable search description; ``execute()`` snapshots it."""

    def __init__(
        self,
        *,
        client: CantoClient,
        translator: QueryTranslator,
        cache: AssetProxyCache,
        presets: PreviewPresets | None = None,
    ) -> None:
        self.client = client
        self.translator = translator
        self.cache = cache
        self.presets = presets or PreviewPresets()
        self.search_term = ""
        self.asset_type_filter = AssetTypeFilter.ALL
        self.tag: Tag | None = None
        self.asset_collection: AssetCollection | None = None
        self.untagged = False
        self.orderings: dict[str, str] = {}
        self.offset = 0
        self.limit = DEFAULT_LIMIT

    def __copy__(self) -> "CantoAssetProxyQuery":
        clone = CantoAssetProxyQuery.__new__(CantoAssetProxyQuery)
        clone.__dict__.update(self.__dict__)
        clone.orderings = dict(self.orderings)
        return clone

    def execute(self) -> "CantoAssetProxyQueryResult":
        return CantoAssetProxyQueryResult(self)

    async def count(self) -> int:
        response = await self._send_search_request(limit=1, orderings={})
        return int(response.get("found") or 0)

    async def get_array_result(self) -> list[CantoAssetProxy]:
        response = await self._send_search_request(limit=self.limit, orderings=self.orderings)
        proxies: list[CantoAssetProxy] = []
        for raw_asset in response.get("results") or []:
            proxy = CantoAssetProxy.from_json(raw_asset, presets=self.presets)
            try:
                await self.cache.set(proxy.identifier, json.dumps(raw_asset))
            except Exception as exc:  # noqa: BLE001 - cache writes are best-effort
                logger.warning("asset_cache_write_failed identifier=%s", proxy.identifier, exc_info=exc)
            proxies.append(proxy)
        return proxies

    async def _custom_query_part(self) -> str:
        if self.untagged:
            return await self.translator.prepare_untagged_query(self.asset_collection)
        if self.tag is not None:
            return await self.translator.prepare_tag_query(self.tag, self.asset_collection)
        return ""

    async def _send_search_request(self, *, limit: int, orderings: Mapping[str, str]) -> dict:
        return await self.client.search(
            self.search_term,
            FORMAT_TYPES[AssetTypeFilter(self.asset_type_filter)],
            await self._custom_query_part(),
            self.offset,
            limit,
            orderings,
        )


class CantoAssetProxyQueryResult:
    """Lazy snapshot of a query's results.

    The search runs once on first access; later reads and iterations reuse
    the materialized list. Counting without materializing issues a
    ``limit=1`` search instead.
    """

    def __init__(self, query: CantoAssetProxyQuery) -> None:
        self._query = copy.copy(query)
        self._asset_proxies: list[CantoAssetProxy] | None = None
        self._count: int | None = None

    def get_query(self) -> CantoAssetProxyQuery:
        return copy.copy(self._query)

    async def _initialize(self) -> list[CantoAssetProxy]:
        if self._asset_proxies is None:
            self._asset_proxies = await self._query.get_array_result()
        return self._asset_proxies

    async def to_array(self) -> list[CantoAssetProxy]:
        return list(await self._initialize())

    async def get_first(self) -> CantoAssetProxy | None:
        proxies = await self._initialize()
        return proxies[0] if proxies else None

    async def count(self) -> int:
        if self._count is None:
            if self._asset_proxies is not None:
                self._count = len(self._asset_proxies)
            else:
                self._count = await self._query.count()
        return self._count

    async def __aiter__(self) -> AsyncIterator[CantoAssetProxy]:
        for proxy in await self._initialize():
            yield proxy
