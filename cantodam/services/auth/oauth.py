from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
import asyncio
import hashlib
import json
import logging
import secrets
import time
import weakref
from typing import Any, Awaitable, Callable, Iterable
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse
from uuid import uuid4

import httpx
from redis.asyncio import Redis

from cantodam.core.config import get_settings
from cantodam.core.errors import (
    AuthenticationFailedError,
    AuthorizationRequiredError,
    IdentityProviderError,
    MissingClientSecretError,
)
from cantodam.domain.models import Authorization
from cantodam.services.auth.token_store import TokenStore
from cantodam.services.resilience import CallTimeouts, call_with_deadline, default_call_timeouts, get_resilience_redis
from cantodam.services.telemetry import record_external_call


logger = logging.getLogger(__name__)

GRANT_AUTHORIZATION_CODE = "authorization_code"
GRANT_CLIENT_CREDENTIALS = "client_credentials"
GRANT_REFRESH_TOKEN = "refresh_token"

# Query parameters that belong to the OAuth round trip, not to the host page.
AUTHORIZATION_ID_QUERY_PARAMETER = "canto_oauth_authorization_id"
INTERNAL_QUERY_PARAMETERS = ("code", "state", "scope", AUTHORIZATION_ID_QUERY_PARAMETER)

# Per event loop; a lock disappears once no coroutine holds or awaits it.
_authenticate_locks: weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, weakref.WeakValueDictionary[str, asyncio.Lock]]
_authenticate_locks = weakref.WeakKeyDictionary()


def _authenticate_lock(key: str) -> asyncio.Lock:
    locks = _authenticate_locks.setdefault(asyncio.get_running_loop(), weakref.WeakValueDictionary())
    lock = locks.get(key)
    if lock is None:
        lock = asyncio.Lock()
        locks[key] = lock
    return lock


class SessionState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    EXPIRED = "expired"


@dataclass(frozen=True)
class OAuthEndpoints:
    token_url: str
    authorize_url: str
    resource_owner_url: str

    @classmethod
    def from_base_uri(cls, base_uri: str) -> "OAuthEndpoints":
        base = base_uri.rstrip("/")
        return cls(
            token_url=f"{base}/token",
            authorize_url=f"{base}/token/authorize",
            resource_owner_url=f"{base}/token/resource",
        )


@dataclass(frozen=True)
class TokenResponse:
    access_token: str
    token_type: str | None
    expires_in: int | None
    refresh_token: str | None
    scope: str | None = None

    def expires_at(self, now: datetime) -> datetime | None:
        if self.expires_in is None:
            return None
        return now + timedelta(seconds=self.expires_in)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def has_expired(expires_at: datetime | None, now: datetime | None = None) -> bool:
    # A token expiring exactly now is already unusable.
    if expires_at is None:
        return False
    now = now or _utc_now()
    if expires_at.tzinfo is None:
        # sqlite hands back naive datetimes; they were written as UTC.
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    return expires_at <= now


def normalize_token_response(body: Any) -> TokenResponse:
    """Map Canto's camelCase token payload onto standard OAuth2 field names."""
    if not isinstance(body, dict):
        raise IdentityProviderError("Token endpoint did not return a JSON object")
    if body.get("error"):
        raise IdentityProviderError(
            f"Token endpoint rejected request: {body.get('error_description') or body.get('error')}"
        )
    access_token = body.get("accessToken") or body.get("access_token")
    if not access_token:
        raise IdentityProviderError("Token endpoint response lacks an access token")
    raw_expires = body.get("expiresIn", body.get("expires_in"))
    try:
        expires_in = int(raw_expires) if raw_expires not in (None, "") else None
    except (TypeError, ValueError) as exc:
        raise IdentityProviderError(f"Invalid token lifetime {raw_expires!r}") from exc
    return TokenResponse(
        access_token=str(access_token),
        token_type=body.get("tokenType") or body.get("token_type"),
        expires_in=expires_in,
        refresh_token=body.get("refreshToken") or body.get("refresh_token"),
        scope=body.get("scope"),
    )


def client_credentials_authorization_id(*, service_name: str, client_id: str, client_secret: str, scope: str) -> str:
    # Same credentials always map to the same stored grant.
    material = f"{service_name}:{client_id}:{client_secret}:{scope}".encode("utf-8")
    return hashlib.sha256(material).hexdigest()


def append_query_params(url: str, params: dict[str, str]) -> str:
    # Safely append query params to redirect URLs without clobbering existing data.
    parsed = urlparse(url)
    query = dict(parse_qsl(parsed.query))
    query.update(params)
    return urlunparse(parsed._replace(query=urlencode(query)))


def strip_query_params(url: str, names: Iterable[str]) -> str:
    parsed = urlparse(url)
    excluded = set(names)
    query = [(key, value) for key, value in parse_qsl(parsed.query, keep_blank_values=True) if key not in excluded]
    return urlunparse(parsed._replace(query=urlencode(query)))


class OAuthStateStore:
    """Single-use storage for issued OAuth ``state`` values.

    Uses Redis with TTL when available and an in-process dict otherwise.
    """

    def __init__(
        self,
        *,
        prefix: str | None = None,
        redis_factory: Callable[[], Awaitable[Redis | None]] | None = None,
    ) -> None:
        self._prefix = prefix if prefix is not None else get_settings().oauth_state_prefix
        self._redis_factory = redis_factory
        self._local: dict[str, tuple[float, dict[str, Any]]] = {}
        self._lock = asyncio.Lock()

    @classmethod
    def from_settings(cls) -> "OAuthStateStore":
        return cls(redis_factory=get_resilience_redis)

    async def _redis(self) -> Redis | None:
        if self._redis_factory is None:
            return None
        return await self._redis_factory()

    async def store(self, *, state: str, payload: dict[str, Any], ttl_seconds: int) -> None:
        redis = await self._redis()
        if redis is None:
            async with self._lock:
                self._local[state] = (time.time() + ttl_seconds, payload)
            return
        await redis.setex(f"{self._prefix}{state}", ttl_seconds, json.dumps(payload))

    async def pop(self, state: str) -> dict[str, Any] | None:
        # Fetch and delete state payload to enforce single use.
        redis = await self._redis()
        if redis is None:
            async with self._lock:
                entry = self._local.pop(state, None)
            if not entry:
                return None
            expires_at, payload = entry
            if expires_at <= time.time():
                return None
            return payload
        key = f"{self._prefix}{state}"
        raw = await redis.get(key)
        if raw is None:
            return None
        await redis.delete(key)
        return json.loads(raw)


class CantoOAuthSession:
    """OAuth2 session against Canto for one principal or for the service itself.

    ``principal`` is the host account identifier. Without one, the session can
    only authenticate through the client-credentials grant and only when that
    is explicitly allowed.
    """

    def __init__(
        self,
        *,
        app_id: str,
        app_secret: str,
        endpoints: OAuthEndpoints,
        token_store: TokenStore,
        redirect_uri: str,
        service_name: str = "canto",
        scope: str = "",
        principal: str | None = None,
        interactive: bool = True,
        allow_client_credentials: bool = False,
        return_uri: str | None = None,
        login_uri: str | None = None,
        state_store: OAuthStateStore | None = None,
        state_ttl_seconds: int = 600,
        http_client: httpx.AsyncClient | None = None,
        timeouts: CallTimeouts | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.app_id = app_id
        self._app_secret = app_secret
        self.endpoints = endpoints
        self._token_store = token_store
        self._redirect_uri = redirect_uri
        self.service_name = service_name
        self.scope = scope
        self.principal = principal
        self.interactive = interactive
        self.allow_client_credentials = allow_client_credentials
        self._return_uri = return_uri
        self._login_uri = login_uri
        self._state_store = state_store or OAuthStateStore(redis_factory=None)
        self._state_ttl_seconds = state_ttl_seconds
        self._http_client = http_client
        self._timeouts = timeouts or default_call_timeouts()
        self._clock = clock or _utc_now
        self._authorization: Authorization | None = None
        self.state = SessionState.UNAUTHENTICATED

    @property
    def authorization(self) -> Authorization | None:
        return self._authorization

    def _usable(self, authorization: Authorization | None) -> bool:
        return bool(
            authorization is not None
            and authorization.access_token
            and not has_expired(authorization.expires_at, self._clock())
        )

    def _lock_key(self) -> str:
        if self.principal is not None:
            return f"account:{self.principal}"
        return f"client:{self.service_name}:{self.app_id}"

    def invalidate(self) -> None:
        # Forget the in-memory token after the API rejected it.
        if self._authorization is not None:
            self.state = SessionState.EXPIRED
        self._authorization = None

    async def access_token(self) -> str:
        authorization = await self.authenticate()
        return str(authorization.access_token)

    async def authenticate(self) -> Authorization:
        """Return a usable grant, obtaining or refreshing one when needed.

        Concurrent calls for the same principal inside this process share one
        lock so only one of them talks to the token endpoint.
        """
        if self._usable(self._authorization):
            return self._authorization  # type: ignore[return-value]
        async with _authenticate_lock(self._lock_key()):
            self.state = SessionState.AUTHENTICATING
            try:
                if self.principal is not None:
                    authorization = await self._authenticate_account()
                elif self.allow_client_credentials:
                    authorization = await self._authenticate_client_credentials()
                else:
                    raise MissingClientSecretError(
                        "No account is authenticated and the client-credentials grant is not allowed"
                    )
            except Exception:
                self.state = SessionState.UNAUTHENTICATED
                self._authorization = None
                raise
        self._authorization = authorization
        self.state = SessionState.AUTHENTICATED
        return authorization

    async def _authenticate_account(self) -> Authorization:
        authorization = await self._token_store.get_authorization_for_account(str(self.principal))
        if self._usable(authorization):
            return authorization  # type: ignore[return-value]
        if authorization is not None and authorization.refresh_token:
            self.state = SessionState.EXPIRED
            try:
                return await self._refresh(authorization)
            except IdentityProviderError as exc:
                logger.warning(
                    "canto_token_refresh_failed account=%s status=%s",
                    self.principal,
                    exc.status_code,
                )
        if self.interactive:
            raise AuthorizationRequiredError(
                f"Canto authorization needed for account {self.principal}",
                authorize_url=await self._authorization_needed_url(),
            )
        raise AuthenticationFailedError(f"No valid Canto authorization for account {self.principal}")

    async def _authorization_needed_url(self) -> str:
        return_uri = self._return_uri or "/"
        if self._login_uri:
            return append_query_params(self._login_uri, {"returnUri": return_uri})
        return await self.start_authorization(return_uri=return_uri)

    async def _authenticate_client_credentials(self) -> Authorization:
        if not self._app_secret:
            raise MissingClientSecretError("Canto app secret is not configured")
        authorization_id = client_credentials_authorization_id(
            service_name=self.service_name,
            client_id=self.app_id,
            client_secret=self._app_secret,
            scope=self.scope,
        )
        authorization = await self._token_store.get_authorization(authorization_id)
        if self._usable(authorization):
            return authorization  # type: ignore[return-value]
        token = await self._request_token({"grant_type": GRANT_CLIENT_CREDENTIALS})
        authorization = self._authorization_from_token(
            authorization_id=authorization_id,
            grant_type=GRANT_CLIENT_CREDENTIALS,
            token=token,
            scope=self.scope,
        )
        saved = await self._token_store.save_authorization(authorization)
        logger.info("canto_client_credentials_token_issued authorization_id=%s", authorization_id)
        return saved

    async def _refresh(self, authorization: Authorization) -> Authorization:
        token = await self._request_token(
            {"grant_type": GRANT_REFRESH_TOKEN, "refresh_token": str(authorization.refresh_token)}
        )
        refreshed = self._authorization_from_token(
            authorization_id=authorization.authorization_id,
            grant_type=authorization.grant_type,
            token=token,
            scope=authorization.scope,
            metadata=authorization.metadata_json,
        )
        if refreshed.refresh_token is None:
            refreshed.refresh_token = authorization.refresh_token
        return await self._token_store.save_authorization(refreshed)

    def build_authorize_url(self, *, state: str) -> str:
        # Canto expects app_id in place of client_id and rejects approval_prompt.
        query = {
            "response_type": "code",
            "app_id": self.app_id,
            "redirect_uri": self._redirect_uri,
            "state": state,
        }
        if self.scope:
            query["scope"] = self.scope
        return f"{self.endpoints.authorize_url}?{urlencode(query)}"

    async def start_authorization(self, *, return_uri: str) -> str:
        if self.principal is None:
            raise AuthenticationFailedError("Interactive authorization requires an authenticated account")
        state = secrets.token_urlsafe(32)
        await self._state_store.store(
            state=state,
            payload={
                "principal": self.principal,
                "authorization_id": uuid4().hex,
                "return_uri": return_uri,
                "scope": self.scope,
            },
            ttl_seconds=self._state_ttl_seconds,
        )
        return self.build_authorize_url(state=state)

    async def finish_authorization(self, *, state: str, code: str, scope: str | None = None) -> str:
        """Complete the authorization-code grant started by :meth:`start_authorization`.

        Returns the page the account came from, without the OAuth parameters.
        """
        payload = await self._state_store.pop(state)
        if payload is None:
            raise AuthenticationFailedError("Unknown or expired OAuth state")
        principal = str(payload["principal"])
        authorization_id = str(payload["authorization_id"])
        token = await self._request_token(
            {"grant_type": GRANT_AUTHORIZATION_CODE, "code": code, "redirect_uri": self._redirect_uri}
        )
        authorization = self._authorization_from_token(
            authorization_id=authorization_id,
            grant_type=GRANT_AUTHORIZATION_CODE,
            token=token,
            scope=scope if scope is not None else str(payload.get("scope") or ""),
        )
        saved = await self._token_store.save_authorization(authorization)
        await self._token_store.bind_account(principal, authorization_id)
        if self.principal is None or self.principal == principal:
            self.principal = principal
            self._authorization = saved
            self.state = SessionState.AUTHENTICATED
        logger.info("canto_authorization_finished account=%s authorization_id=%s", principal, authorization_id)
        return strip_query_params(str(payload.get("return_uri") or "/"), INTERNAL_QUERY_PARAMETERS)

    def _authorization_from_token(
        self,
        *,
        authorization_id: str,
        grant_type: str,
        token: TokenResponse,
        scope: str,
        metadata: dict[str, Any] | None = None,
    ) -> Authorization:
        return Authorization(
            authorization_id=authorization_id,
            service_name=self.service_name,
            client_id=self.app_id,
            grant_type=grant_type,
            scope=scope,
            access_token=token.access_token,
            refresh_token=token.refresh_token,
            token_type=token.token_type,
            expires_at=token.expires_at(self._clock()),
            metadata_json=metadata,
        )

    async def _request_token(self, params: dict[str, str]) -> TokenResponse:
        if not self._app_secret:
            raise MissingClientSecretError("Canto app secret is not configured")
        # Canto names the client credentials app_id/app_secret.
        data = {"app_id": self.app_id, "app_secret": self._app_secret, **params}

        async def _send() -> httpx.Response:
            if self._http_client is not None:
                return await self._http_client.post(self.endpoints.token_url, data=data)
            async with httpx.AsyncClient(timeout=self._timeouts.as_httpx()) as client:
                return await client.post(self.endpoints.token_url, data=data)

        start = time.monotonic()
        try:
            response = await call_with_deadline(_send, timeouts=self._timeouts, integration="canto_oauth")
        except httpx.HTTPError as exc:
            record_external_call(
                integration="canto_oauth", latency_ms=(time.monotonic() - start) * 1000.0, success=False
            )
            raise IdentityProviderError(f"Token request failed: {exc}") from exc
        latency_ms = (time.monotonic() - start) * 1000.0
        record_external_call(integration="canto_oauth", latency_ms=latency_ms, success=response.status_code < 400)
        if response.status_code >= 400:
            logger.warning(
                "canto_token_request_failed grant=%s status=%s",
                params.get("grant_type"),
                response.status_code,
            )
            raise IdentityProviderError(
                f"Token endpoint answered {response.status_code}", status_code=response.status_code
            )
        try:
            body = response.json()
        except ValueError as exc:
            raise IdentityProviderError("Token endpoint returned invalid JSON", status_code=response.status_code) from exc
        return normalize_token_response(body)
