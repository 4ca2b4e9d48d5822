from __future__ import annotations

import mimetypes
import re
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from cantodam.core.config import CustomFieldMapping, Settings, get_settings
from cantodam.core.errors import ConfigurationError
from cantodam.domain.assets import PreviewPresets
from cantodam.services.auth.oauth import CantoOAuthSession, OAuthEndpoints, OAuthStateStore
from cantodam.services.auth.token_store import TokenStore
from cantodam.services.cache import AssetProxyCache
from cantodam.services.canto.client import CantoClient
from cantodam.services.canto.query import QueryTranslator
from cantodam.services.canto.repository import AccessPolicy, CantoAssetProxyRepository
from cantodam.services.resilience import CallTimeouts
from cantodam.services.telemetry import RequestContext


ASSET_SOURCE_IDENTIFIER_PATTERN = re.compile(r"^[a-z][a-z0-9-]{0,62}[a-z]$")


class AssetSourceOptions(BaseModel):
    # Unknown options are rejected so typos in host settings surface early.
    model_config = ConfigDict(extra="forbid")

    api_base_uri: str
    oauth_base_uri: str
    app_id: str
    app_secret: str
    media_types: dict[str, dict[str, Any]] = Field(default_factory=dict)
    icon_path: str = ""
    description: str = ""

    @field_validator("app_id", "app_secret")
    @classmethod
    def _not_empty(cls, value: str) -> str:
        if not value:
            raise ValueError("must not be empty")
        return value

    @field_validator("media_types")
    @classmethod
    def _known_media_types(cls, value: dict[str, dict[str, Any]]) -> dict[str, dict[str, Any]]:
        for media_type in value:
            if not mimetypes.guess_all_extensions(media_type):
                raise ValueError(f"unknown media type {media_type!r}")
        return value

    @classmethod
    def from_settings(cls, settings: Settings) -> "AssetSourceOptions":
        return cls(
            api_base_uri=settings.canto_api_base_uri,
            oauth_base_uri=settings.canto_oauth_base_uri,
            app_id=settings.canto_app_id,
            app_secret=settings.canto_app_secret,
        )


class CantoAssetSource:
    """Wires configuration, token storage and cache into per-request clients."""

    label = "Canto"
    read_only = True

    def __init__(
        self,
        identifier: str,
        options: AssetSourceOptions | dict[str, Any],
        *,
        token_store: TokenStore,
        cache: AssetProxyCache,
        settings: Settings | None = None,
        state_store: OAuthStateStore | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        if not ASSET_SOURCE_IDENTIFIER_PATTERN.match(identifier):
            raise ConfigurationError(f"Invalid asset source identifier {identifier!r}")
        if not isinstance(options, AssetSourceOptions):
            try:
                options = AssetSourceOptions.model_validate(options)
            except ValidationError as exc:
                raise ConfigurationError(f"Invalid options for Canto asset source {identifier}: {exc}") from exc
        self.identifier = identifier
        self.options = options
        self.settings = settings or get_settings()
        self.token_store = token_store
        self.cache = cache
        self._state_store = state_store or OAuthStateStore(prefix=self.settings.oauth_state_prefix)
        self._http_client = http_client

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        token_store: TokenStore,
        cache: AssetProxyCache | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> "CantoAssetSource":
        try:
            options = AssetSourceOptions.from_settings(settings)
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid Canto settings: {exc}") from exc
        return cls(
            settings.asset_source_identifier,
            options,
            token_store=token_store,
            cache=cache or AssetProxyCache.from_settings(),
            settings=settings,
            state_store=OAuthStateStore.from_settings(),
            http_client=http_client,
        )

    @property
    def description(self) -> str:
        return self.options.description

    @property
    def icon_path(self) -> str:
        return self.options.icon_path

    @property
    def auto_tagging_enabled(self) -> bool:
        return self.settings.canto_auto_tagging_enabled

    @property
    def auto_tagging_in_use_tag(self) -> str:
        return self.settings.canto_auto_tagging_in_use_tag

    @property
    def custom_fields_mapping(self) -> dict[str, CustomFieldMapping]:
        return self.settings.canto_custom_fields_mapping

    @property
    def presets(self) -> PreviewPresets:
        return PreviewPresets(
            thumbnail_width=self.settings.thumbnail_width,
            thumbnail_height=self.settings.thumbnail_height,
            preview_width=self.settings.preview_width,
            preview_height=self.settings.preview_height,
        )

    def _timeouts(self) -> CallTimeouts:
        return CallTimeouts(
            connect_ms=self.settings.ext_connect_timeout_ms,
            call_ms=self.settings.ext_call_timeout_ms,
        )

    def create_session(
        self,
        *,
        principal: str | None = None,
        interactive: bool = True,
        allow_client_credentials: bool | None = None,
        return_uri: str | None = None,
    ) -> CantoOAuthSession:
        return CantoOAuthSession(
            app_id=self.options.app_id,
            app_secret=self.options.app_secret,
            endpoints=OAuthEndpoints.from_base_uri(self.options.oauth_base_uri),
            token_store=self.token_store,
            redirect_uri=self.settings.canto_redirect_uri,
            service_name=self.settings.canto_service_name,
            scope=self.settings.canto_oauth_scope,
            principal=principal,
            interactive=interactive,
            allow_client_credentials=(
                self.settings.canto_allow_client_credentials
                if allow_client_credentials is None
                else allow_client_credentials
            ),
            return_uri=return_uri,
            login_uri=self.settings.canto_login_uri,
            state_store=self._state_store,
            state_ttl_seconds=self.settings.oauth_state_ttl_seconds,
            http_client=self._http_client,
            timeouts=self._timeouts(),
        )

    def create_client(
        self,
        *,
        session: CantoOAuthSession | None = None,
        context: RequestContext | None = None,
    ) -> CantoClient:
        return CantoClient(
            api_base_uri=self.options.api_base_uri,
            session=session or self.create_session(),
            http_client=self._http_client,
            timeouts=self._timeouts(),
            context=context,
        )

    def create_repository(
        self,
        client: CantoClient,
        *,
        access_policy: AccessPolicy | None = None,
    ) -> CantoAssetProxyRepository:
        return CantoAssetProxyRepository(
            client=client,
            cache=self.cache,
            translator=QueryTranslator(client, self.custom_fields_mapping),
            presets=self.presets,
            access_policy=access_policy,
        )

    async def original_uri(self, client: CantoClient, identifier: str) -> str | None:
        # Download URLs expire quickly, so always ask Canto for a fresh one.
        return await client.direct_uri(identifier)
