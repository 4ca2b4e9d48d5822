from __future__ import annotations

import logging
from typing import Any, Mapping, Protocol, Sequence
from urllib.parse import quote, urlencode

import httpx

from cantodam.core.errors import (
    AssetNotFoundError,
    AuthenticationFailedError,
    CantoTransportError,
    MalformedResponseError,
)
from cantodam.domain.assets import CustomField, parse_identifier
from cantodam.services.resilience import CallTimeouts, call_with_deadline, default_call_timeouts
from cantodam.services.telemetry import RequestContext, timed_call


logger = logging.getLogger(__name__)

# Host ordering fields -> Canto sortBy values; anything else is ignored.
SORT_FIELDS = {
    "filename": "name",
    "resource.filename": "name",
    "lastModified": "last_modified",
}
SORT_DESCENDING = "DESC"


class AccessTokenProvider(Protocol):
    async def access_token(self) -> str: ...

    def invalidate(self) -> None: ...


def build_search_query(
    *,
    keyword: str,
    format_types: Sequence[str],
    custom_query_part: str = "",
    offset: int = 0,
    limit: int = 50,
    orderings: Mapping[str, str] | None = None,
) -> str:
    """Render the ``search`` query string.

    Format types are pipe-joined into ``scheme``; the custom part is already
    URL-safe and is appended as it is.
    """
    query = urlencode({"keyword": keyword, "limit": int(limit), "start": int(offset)})
    if format_types:
        query += "&scheme=" + "|".join(quote(str(format_type), safe="") for format_type in format_types)
    for field_name, direction in (orderings or {}).items():
        sort_by = SORT_FIELDS.get(field_name)
        if sort_by is None:
            logger.debug("canto_search_unsupported_ordering field=%s", field_name)
            continue
        sort_direction = "descending" if str(direction).upper() == SORT_DESCENDING else "ascending"
        query += f"&sortBy={sort_by}&sortDirection={sort_direction}"
        break
    if custom_query_part:
        query += custom_query_part if custom_query_part.startswith("&") else f"&{custom_query_part}"
    return query


def binary_base_uri(api_base_uri: str) -> str:
    # Binary endpoints live under /api_binary/ on the same host.
    return api_base_uri.replace("/api/", "/api_binary/")


class CantoClient:
    """Authenticated client for the Canto REST API.

    One instance serves one host request; ``context`` carries that request's
    id for timing logs.
    """

    def __init__(
        self,
        *,
        api_base_uri: str,
        session: AccessTokenProvider,
        http_client: httpx.AsyncClient | None = None,
        timeouts: CallTimeouts | None = None,
        context: RequestContext | None = None,
    ) -> None:
        self.api_base_uri = api_base_uri.rstrip("/")
        self.session = session
        self._timeouts = timeouts or default_call_timeouts()
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=self._timeouts.as_httpx())
        self.context = context or RequestContext()

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    async def __aenter__(self) -> "CantoClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    @property
    def binary_base_uri(self) -> str:
        return binary_base_uri(f"{self.api_base_uri}/").rstrip("/")

    async def search(
        self,
        keyword: str,
        format_types: Sequence[str],
        custom_query_part: str = "",
        offset: int = 0,
        limit: int = 50,
        orderings: Mapping[str, str] | None = None,
    ) -> dict[str, Any]:
        query = build_search_query(
            keyword=keyword,
            format_types=format_types,
            custom_query_part=custom_query_part,
            offset=offset,
            limit=limit,
            orderings=orderings,
        )
        response = await self._request("GET", f"{self.api_base_uri}/search?{query}")
        self._raise_for_status(response, "search")
        body = self._json(response)
        if not isinstance(body, dict):
            raise MalformedResponseError("Canto search response is not an object")
        return body

    async def get_file(self, identifier: str) -> Any:
        scheme, remote_id = parse_identifier(identifier)
        response = await self._request("GET", f"{self.api_base_uri}/{scheme}/{remote_id}")
        if response.status_code == 404:
            raise AssetNotFoundError(f"Canto asset {identifier} was not found")
        self._raise_for_status(response, "get_file")
        return self._json(response)

    async def get_custom_fields(self) -> list[CustomField]:
        response = await self._request("GET", f"{self.api_base_uri}/custom/field")
        if response.status_code != 200:
            logger.info("canto_custom_fields_unavailable status=%s", response.status_code)
            return []
        body = self._json(response)
        if isinstance(body, dict):
            body = body.get("results") or []
        if not isinstance(body, list):
            raise MalformedResponseError("Canto custom field response is not a list")
        return [CustomField.from_json(item) for item in body if isinstance(item, dict)]

    async def user(self) -> dict[str, Any]:
        response = await self._request("GET", f"{self.api_base_uri}/user")
        if response.status_code != 200:
            return {}
        body = self._json(response)
        return body if isinstance(body, dict) else {}

    async def tree(self) -> dict[str, Any]:
        response = await self._request("GET", f"{self.api_base_uri}/tree")
        if response.status_code != 200:
            return {}
        body = self._json(response)
        if isinstance(body, list):
            return {"results": body}
        return body if isinstance(body, dict) else {}

    async def direct_uri(self, identifier: str) -> str | None:
        # Returns a short-lived download URL; never cache it.
        scheme, remote_id = parse_identifier(identifier)
        response = await self._request("GET", f"{self.binary_base_uri}/{scheme}/{remote_id}/directuri")
        if response.status_code != 200:
            return None
        uri = response.text.strip().strip('"')
        return uri or None

    async def update_file(self, identifier: str, metadata: Mapping[str, Any]) -> bool:
        """Write metadata such as ``keywords`` back to the asset.

        Returns False when Canto refuses the update; transport and
        authentication failures still raise.
        """
        if "keywords" not in metadata:
            raise ValueError("Canto metadata updates must include 'keywords'")
        scheme, remote_id = parse_identifier(identifier)
        response = await self._request("PATCH", f"{self.api_base_uri}/{scheme}/{remote_id}", json_body=dict(metadata))
        if 200 <= response.status_code < 300:
            return True
        logger.warning("canto_update_file_failed identifier=%s status=%s", identifier, response.status_code)
        return False

    @timed_call("canto")
    async def _request(self, method: str, url: str, *, json_body: dict[str, Any] | None = None) -> httpx.Response:
        token = await self.session.access_token()
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

        async def _send() -> httpx.Response:
            return await self._http_client.request(method, url, headers=headers, json=json_body)

        try:
            response = await call_with_deadline(_send, timeouts=self._timeouts, integration="canto")
        except httpx.HTTPError as exc:
            raise CantoTransportError(f"Canto request {method} {url} failed: {exc}") from exc
        if response.status_code == 401:
            # Token revoked or expired early; the next call re-authenticates.
            self.session.invalidate()
            raise AuthenticationFailedError("Canto rejected the access token")
        return response

    @staticmethod
    def _raise_for_status(response: httpx.Response, operation: str) -> None:
        if 200 <= response.status_code < 300:
            return
        logger.warning("canto_request_failed operation=%s status=%s", operation, response.status_code)
        raise CantoTransportError(
            f"Canto {operation} answered {response.status_code}", status_code=response.status_code
        )

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as exc:
            raise MalformedResponseError("Canto returned a body that is not valid JSON") from exc
