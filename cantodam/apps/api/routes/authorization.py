from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import RedirectResponse

from cantodam.apps.api.deps import get_asset_source
from cantodam.core.errors import AuthenticationFailedError, IdentityProviderError, MissingClientSecretError
from cantodam.services.canto.source import CantoAssetSource


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/canto/authorization", tags=["canto-authorization"])

_NO_CACHE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}


@router.get("/finish")
async def finish_authorization(
    state: str = Query(...),
    code: str = Query(...),
    scope: str | None = Query(default=None),
    asset_source: CantoAssetSource = Depends(get_asset_source),
) -> RedirectResponse:
    # The state record names the account; no host session is needed here.
    session = asset_source.create_session()
    try:
        return_uri = await session.finish_authorization(state=state, code=code, scope=scope)
    except IdentityProviderError as exc:
        logger.warning("canto_authorization_finish_failed status=%s", exc.status_code)
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Canto token exchange failed") from exc
    except MissingClientSecretError as exc:
        logger.error("canto_authorization_finish_misconfigured reason=missing_client_secret")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Canto connection is not configured"
        ) from exc
    except AuthenticationFailedError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid or expired state") from exc
    return RedirectResponse(return_uri, status_code=status.HTTP_302_FOUND, headers=_NO_CACHE_HEADERS)
