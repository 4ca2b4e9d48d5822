from __future__ import annotations

import time

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, RedirectResponse

from cantodam.apps.api.routes.authorization import router as authorization_router
from cantodam.apps.api.routes.webhook import build_webhook_router
from cantodam.core.config import Settings, get_settings
from cantodam.core.errors import AuthorizationRequiredError
from cantodam.core.logging import configure_logging
from cantodam.services.asset_update import AssetUpdateService
from cantodam.services.canto.source import CantoAssetSource
from cantodam.services.canto.wiring import build_asset_source
from cantodam.services.host_contract import ImportedAssetStore, InMemoryImportedAssetStore
from cantodam.services.telemetry import RequestContext, record_external_call


def create_app(
    settings: Settings | None = None,
    *,
    asset_source: CantoAssetSource | None = None,
    update_service: AssetUpdateService | None = None,
    imported_assets: ImportedAssetStore | None = None,
) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_level)
    app = FastAPI(title="Canto connector")
    app.state.settings = settings
    app.state.asset_source = asset_source or build_asset_source(settings)
    app.state.update_service = update_service or AssetUpdateService(
        asset_source=app.state.asset_source,
        imported_assets=imported_assets or InMemoryImportedAssetStore(),
    )

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        incoming = request.headers.get("X-Request-Id")
        context = RequestContext(request_id=incoming) if incoming else RequestContext()
        request.state.request_context = context
        start = time.monotonic()
        response = await call_next(request)
        record_external_call(
            integration="inbound",
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=response.status_code < 500,
        )
        response.headers["X-Request-Id"] = context.request_id
        return response

    @app.exception_handler(AuthorizationRequiredError)
    async def authorization_required_handler(_request: Request, exc: AuthorizationRequiredError):
        # Interactive callers are sent to Canto to log in.
        return RedirectResponse(exc.authorize_url, status_code=302)

    @app.get("/health")
    async def health() -> JSONResponse:
        return JSONResponse({"status": "ok"})

    app.include_router(build_webhook_router(settings.canto_webhook_path_prefix))
    app.include_router(authorization_router)
    return app
