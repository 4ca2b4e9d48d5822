from __future__ import annotations

from cantodam.core.config import Settings
from cantodam.services.auth.token_store import TokenStore
from cantodam.services.canto.source import CantoAssetSource


def build_asset_source(settings: Settings) -> CantoAssetSource:
    # Imported here so the database engine is only built by processes that use it.
    from cantodam.persistence.db import SessionLocal

    return CantoAssetSource.from_settings(settings, token_store=TokenStore(SessionLocal))
