from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable

from cantodam.domain.assets import build_identifier
from cantodam.services.canto.client import CantoClient
from cantodam.services.canto.source import CantoAssetSource
from cantodam.services.host_contract import ImportedAssetStore
from cantodam.services.telemetry import RequestContext, increment_counter


logger = logging.getLogger(__name__)

EVENT_UPDATE = "update"
EVENT_ADD = "add"
HANDLED_EVENTS = {EVENT_UPDATE, EVENT_ADD}

ClientFactory = Callable[[RequestContext], CantoClient]


class AssetUpdateService:
    """Apply Canto webhook events to the cache and to locally imported assets."""

    def __init__(
        self,
        *,
        asset_source: CantoAssetSource,
        imported_assets: ImportedAssetStore,
        client_factory: ClientFactory | None = None,
    ) -> None:
        self._asset_source = asset_source
        self._imported_assets = imported_assets
        self._client_factory = client_factory or self._service_client

    def _service_client(self, context: RequestContext) -> CantoClient:
        # Webhooks carry no account, so they run on the client-credentials grant.
        session = self._asset_source.create_session(interactive=False, allow_client_credentials=True)
        return self._asset_source.create_client(session=session, context=context)

    async def handle_event(
        self,
        event: str,
        payload: dict[str, Any],
        *,
        context: RequestContext | None = None,
    ) -> bool:
        if event not in HANDLED_EVENTS:
            logger.info("canto_webhook_event_ignored event=%s", event)
            return True
        identifier = build_identifier(str(payload["scheme"]), str(payload["id"]))
        try:
            await self._refresh_asset(identifier, context or RequestContext())
        except Exception as exc:  # noqa: BLE001 - reported to Canto as a failed delivery
            increment_counter("canto_webhook_failures_total")
            logger.error("canto_webhook_event_failed event=%s identifier=%s", event, identifier, exc_info=exc)
            return False
        increment_counter("canto_webhook_events_total")
        return True

    async def _refresh_asset(self, identifier: str, context: RequestContext) -> None:
        removed = await self._asset_source.cache.remove(identifier)
        logger.info("asset_cache_entry_removed identifier=%s removed=%s", identifier, removed)

        local_identifier = await self._imported_assets.find_local_identifier(
            self._asset_source.identifier, identifier
        )
        client = self._client_factory(context)
        try:
            repository = self._asset_source.create_repository(client)
            proxy = await repository.get_asset_proxy(identifier)
            if local_identifier is None:
                return
            original_uri = await self._asset_source.original_uri(client, identifier)
            await self._imported_assets.replace_resource(local_identifier, proxy, original_uri)
        finally:
            await client.aclose()
        logger.info(
            "canto_imported_asset_replaced identifier=%s local_identifier=%s",
            identifier,
            local_identifier,
        )
