from __future__ import annotations

from fastapi import HTTPException, Request, status

from cantodam.core.config import Settings
from cantodam.services.asset_update import AssetUpdateService
from cantodam.services.canto.source import CantoAssetSource
from cantodam.services.telemetry import RequestContext


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_asset_source(request: Request) -> CantoAssetSource:
    asset_source = getattr(request.app.state, "asset_source", None)
    if asset_source is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Canto asset source not configured")
    return asset_source


def get_update_service(request: Request) -> AssetUpdateService:
    update_service = getattr(request.app.state, "update_service", None)
    if update_service is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Webhook handling not configured")
    return update_service


def get_request_context(request: Request) -> RequestContext:
    # Set by the request middleware; fall back for routers mounted elsewhere.
    context = getattr(request.state, "request_context", None)
    return context if isinstance(context, RequestContext) else RequestContext()
