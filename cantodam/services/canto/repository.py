from __future__ import annotations

import json
import logging
from typing import Awaitable, Callable, Mapping

from cantodam.core.errors import AccessToAssetDeniedError, AssetNotFoundError
from cantodam.domain.assets import AssetCollection, CantoAssetProxy, PreviewPresets, Tag, normalize_identifier
from cantodam.services.cache import AssetProxyCache
from cantodam.services.canto.client import CantoClient
from cantodam.services.canto.query import (
    AssetTypeFilter,
    CantoAssetProxyQuery,
    CantoAssetProxyQueryResult,
    QueryTranslator,
)


logger = logging.getLogger(__name__)

AccessPolicy = Callable[[str], Awaitable[bool]]


class CantoAssetProxyRepository:
    """Entry point for the host's media browser: lookups, searches and counts."""

    def __init__(
        self,
        *,
        client: CantoClient,
        cache: AssetProxyCache,
        translator: QueryTranslator,
        presets: PreviewPresets | None = None,
        access_policy: AccessPolicy | None = None,
    ) -> None:
        self.client = client
        self.cache = cache
        self.translator = translator
        self.presets = presets or PreviewPresets()
        self._access_policy = access_policy
        self.asset_type_filter = AssetTypeFilter.ALL
        self.orderings: dict[str, str] = {}

    async def get_asset_proxy(self, identifier: str) -> CantoAssetProxy:
        identifier = normalize_identifier(identifier)
        if self._access_policy is not None and not await self._access_policy(identifier):
            raise AccessToAssetDeniedError(f"Access to asset {identifier} was denied")

        raw = None
        try:
            cached = await self.cache.get(identifier)
        except Exception as exc:  # noqa: BLE001 - a broken cache must not block lookups
            logger.warning("asset_cache_read_failed identifier=%s", identifier, exc_info=exc)
            cached = None
        if cached is not None:
            try:
                raw = json.loads(cached)
            except ValueError:
                logger.warning("asset_cache_entry_corrupt identifier=%s", identifier)
                raw = None
        if raw is None:
            raw = await self.client.get_file(identifier)
            if isinstance(raw, dict):
                try:
                    await self.cache.set(identifier, json.dumps(raw))
                except Exception as exc:  # noqa: BLE001 - cache writes are best-effort
                    logger.warning("asset_cache_write_failed identifier=%s", identifier, exc_info=exc)
        if not isinstance(raw, dict):
            raise AssetNotFoundError(f"Canto asset {identifier} could not be decoded")
        return CantoAssetProxy.from_json(raw, presets=self.presets)

    def filter_by_type(self, asset_type_filter: AssetTypeFilter | str | None = None) -> None:
        self.asset_type_filter = AssetTypeFilter(asset_type_filter) if asset_type_filter else AssetTypeFilter.ALL

    def order_by(self, orderings: Mapping[str, str]) -> None:
        self.orderings = dict(orderings)

    def _new_query(self) -> CantoAssetProxyQuery:
        query = CantoAssetProxyQuery(
            client=self.client,
            translator=self.translator,
            cache=self.cache,
            presets=self.presets,
        )
        query.asset_type_filter = self.asset_type_filter
        query.orderings = dict(self.orderings)
        return query

    def find_all(self) -> CantoAssetProxyQueryResult:
        return self._new_query().execute()

    def find_by_search_term(self, search_term: str) -> CantoAssetProxyQueryResult:
        query = self._new_query()
        query.search_term = search_term
        return query.execute()

    def find_by_tag(self, tag: Tag, asset_collection: AssetCollection | None = None) -> CantoAssetProxyQueryResult:
        return self._tag_query(tag, asset_collection).execute()

    def find_untagged(self, asset_collection: AssetCollection | None = None) -> CantoAssetProxyQueryResult:
        return self._untagged_query(asset_collection).execute()

    async def count_all(self) -> int:
        return await self._new_query().count()

    async def count_by_tag(self, tag: Tag, asset_collection: AssetCollection | None = None) -> int:
        return await self._tag_query(tag, asset_collection).count()

    async def count_untagged(self, asset_collection: AssetCollection | None = None) -> int:
        return await self._untagged_query(asset_collection).count()

    def _tag_query(self, tag: Tag, asset_collection: AssetCollection | None) -> CantoAssetProxyQuery:
        query = self._new_query()
        query.tag = tag
        query.asset_collection = asset_collection
        return query

    def _untagged_query(self, asset_collection: AssetCollection | None) -> CantoAssetProxyQuery:
        query = self._new_query()
        query.untagged = True
        query.asset_collection = asset_collection
        return query
