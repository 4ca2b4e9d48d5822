from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

import httpx

from cantodam.core.config import Settings
from cantodam.domain.models import AccountAuthorization, Authorization
from cantodam.services.cache import AssetProxyCache
from cantodam.services.canto.source import CantoAssetSource


API_BASE = "https://acme.canto.test/api/v1"
OAUTH_BASE = "https://oauth.canto.test/oauth/api/oauth2"


def asset_json(scheme: str = "image", remote_id: str = "42", **overrides: Any) -> dict[str, Any]:
    # Minimal Canto asset object as returned by search and single-file lookups.
    payload: dict[str, Any] = {
        "scheme": scheme,
        "id": remote_id,
        "name": f"asset-{remote_id}.jpg",
        "size": "2048",
        "width": "1600",
        "height": "900",
        "tag": ["alpha"],
        "default": {"Date modified": "20210701152625123", "Copyright": "ACME Corp"},
        "url": {
            "directUrlPreview": f"https://acme.canto.test/direct/{scheme}/{remote_id}/preview/100",
            "directUrlOriginal": f"https://acme.canto.test/direct/{scheme}/{remote_id}/original",
        },
    }
    payload.update(overrides)
    return payload


class StaticTokenSession:
    """Token provider handing out a fixed bearer token."""

    def __init__(self, token: str = "token-1") -> None:
        self.token = token
        self.invalidations = 0

    async def access_token(self) -> str:
        return self.token

    def invalidate(self) -> None:
        self.invalidations += 1


# Async handlers are awaited by httpx.MockTransport.
Handler = Callable[[httpx.Request], "httpx.Response | Awaitable[httpx.Response]"]


@dataclass
class CantoApiStub:
    """Route-table fake of the Canto API; records every request it sees."""

    routes: dict[tuple[str, str], Handler] = field(default_factory=dict)
    requests: list[httpx.Request] = field(default_factory=list)

    def on(self, method: str, path: str, handler: Handler | httpx.Response | dict | list) -> None:
        if isinstance(handler, httpx.Response):
            response = handler
            self.routes[(method, path)] = lambda _request: response
        elif isinstance(handler, (dict, list)):
            body = handler
            self.routes[(method, path)] = lambda _request: httpx.Response(200, json=body)
        else:
            self.routes[(method, path)] = handler

    def handle(self, request: httpx.Request) -> httpx.Response | Awaitable[httpx.Response]:
        self.requests.append(request)
        handler = self.routes.get((request.method, request.url.path))
        if handler is None:
            return httpx.Response(404, json={"error": "not found"})
        return handler(request)

    def calls(self, method: str, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method and r.url.path == path]

    def http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handle))


class InMemoryTokenStore:
    """Dict-backed token store with the TokenStore interface."""

    def __init__(self) -> None:
        self.authorizations: dict[str, Authorization] = {}
        self.accounts: dict[str, str] = {}

    async def get_authorization(self, authorization_id: str) -> Authorization | None:
        return self.authorizations.get(authorization_id)

    async def save_authorization(self, authorization: Authorization) -> Authorization:
        self.authorizations[authorization.authorization_id] = authorization
        return authorization

    async def delete_authorization(self, authorization_id: str) -> bool:
        return self.authorizations.pop(authorization_id, None) is not None

    async def find_account_authorization(self, account_identifier: str) -> AccountAuthorization | None:
        authorization_id = self.accounts.get(account_identifier)
        if authorization_id is None:
            return None
        return AccountAuthorization(account_identifier=account_identifier, authorization_id=authorization_id)

    async def get_authorization_for_account(self, account_identifier: str) -> Authorization | None:
        authorization_id = self.accounts.get(account_identifier)
        return self.authorizations.get(authorization_id) if authorization_id else None

    async def bind_account(self, account_identifier: str, authorization_id: str) -> AccountAuthorization:
        previous = self.accounts.get(account_identifier)
        self.accounts[account_identifier] = authorization_id
        if previous and previous != authorization_id:
            self.authorizations.pop(previous, None)
        return AccountAuthorization(account_identifier=account_identifier, authorization_id=authorization_id)

    async def remove_account(self, account_identifier: str) -> bool:
        authorization_id = self.accounts.pop(account_identifier, None)
        if authorization_id is None:
            return False
        self.authorizations.pop(authorization_id, None)
        return True


def make_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "redis_url": "",
        "canto_api_base_uri": API_BASE,
        "canto_oauth_base_uri": OAUTH_BASE,
        "canto_app_id": "app-1",
        "canto_app_secret": "secret-1",
        "canto_redirect_uri": "https://cms.test/canto/authorization/finish",
        "canto_webhook_token": "hook-secret",
    }
    values.update(overrides)
    return Settings(**values)


def make_asset_source(
    http_client: httpx.AsyncClient,
    *,
    settings: Settings | None = None,
    token_store: Any | None = None,
    cache: AssetProxyCache | None = None,
) -> CantoAssetSource:
    # Asset source wired to the stub API with memory-only storage.
    settings = settings or make_settings()
    return CantoAssetSource.from_settings(
        settings,
        token_store=token_store or InMemoryTokenStore(),
        cache=cache or AssetProxyCache(prefix="test:"),
        http_client=http_client,
    )
