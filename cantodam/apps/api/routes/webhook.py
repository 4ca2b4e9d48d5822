from __future__ import annotations

import hmac
import json
import logging

from fastapi import APIRouter, Depends, Request, Response, status
from fastapi.responses import JSONResponse

from cantodam.apps.api.deps import get_app_settings, get_request_context, get_update_service
from cantodam.core.config import Settings
from cantodam.services.asset_update import AssetUpdateService
from cantodam.services.telemetry import RequestContext


logger = logging.getLogger(__name__)

REQUIRED_KEYS = ("secure_token", "scheme", "id")


def _rejected(status_code: int, reason: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"accepted": False, "reason": reason})


def build_webhook_router(path_prefix: str) -> APIRouter:
    """Router for Canto push notifications under ``path_prefix``.

    The path segment after the prefix names the event, e.g. ``update``.
    """
    router = APIRouter(tags=["canto-webhook"])
    path = f"{path_prefix.rstrip('/')}/{{event}}"

    @router.post(path, status_code=status.HTTP_204_NO_CONTENT)
    async def receive_canto_event(
        event: str,
        request: Request,
        settings: Settings = Depends(get_app_settings),
        update_service: AssetUpdateService = Depends(get_update_service),
        context: RequestContext = Depends(get_request_context),
    ) -> Response:
        raw_body = await request.body()
        try:
            payload = json.loads(raw_body)
        except (UnicodeDecodeError, ValueError):
            logger.info("canto_webhook_rejected reason=invalid_json event=%s", event)
            return _rejected(status.HTTP_400_BAD_REQUEST, "invalid_json")
        if not isinstance(payload, dict) or any(key not in payload for key in REQUIRED_KEYS):
            logger.info("canto_webhook_rejected reason=missing_fields event=%s", event)
            return _rejected(status.HTTP_400_BAD_REQUEST, "missing_fields")

        expected_token = settings.canto_webhook_token
        # Without a configured token every delivery is refused.
        presented = str(payload["secure_token"]).encode("utf-8")
        if not expected_token or not hmac.compare_digest(presented, expected_token.encode("utf-8")):
            logger.warning("canto_webhook_rejected reason=invalid_token event=%s", event)
            return _rejected(status.HTTP_403_FORBIDDEN, "invalid_token")

        if not await update_service.handle_event(event, payload, context=context):
            return _rejected(status.HTTP_500_INTERNAL_SERVER_ERROR, "processing_failed")
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    return router
