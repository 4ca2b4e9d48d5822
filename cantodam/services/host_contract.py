from __future__ import annotations

from dataclasses import dataclass, field
import json
from pathlib import Path
from threading import Lock
from typing import Iterable, Protocol

from cantodam.domain.assets import CantoAssetProxy


@dataclass(frozen=True)
class HostAsset:
    # Local asset imported from a remote source, as the host reports it.
    local_identifier: str
    label: str
    asset_source_identifier: str
    remote_identifier: str
    usage_count: int = 0


class ImportedAssetStore(Protocol):
    async def find_local_identifier(self, asset_source_identifier: str, remote_identifier: str) -> str | None: ...

    async def replace_resource(
        self,
        local_identifier: str,
        proxy: CantoAssetProxy,
        original_uri: str | None,
    ) -> None: ...

    async def list_assets(self, asset_source_identifier: str) -> list[HostAsset]: ...


class TagCatalog(Protocol):
    async def ensure_collection(self, title: str) -> bool: ...

    async def ensure_tag(self, label: str, collection_title: str) -> bool: ...


@dataclass
class InMemoryImportedAssetStore:
    """Process-local stand-in for the host's imported-asset bookkeeping."""

    assets: dict[str, HostAsset] = field(default_factory=dict)
    replacements: list[tuple[str, str, str | None]] = field(default_factory=list)
    _lock: Lock = field(default_factory=Lock, repr=False)

    @classmethod
    def from_json_lines(cls, path: Path) -> "InMemoryImportedAssetStore":
        # One JSON object per line with the HostAsset field names.
        store = cls()
        for line in path.read_text(encoding="utf-8").splitlines():
            if not line.strip():
                continue
            payload = json.loads(line)
            store.add(
                HostAsset(
                    local_identifier=str(payload["local_identifier"]),
                    label=str(payload.get("label") or payload["local_identifier"]),
                    asset_source_identifier=str(payload["asset_source_identifier"]),
                    remote_identifier=str(payload["remote_identifier"]),
                    usage_count=int(payload.get("usage_count") or 0),
                )
            )
        return store

    def add(self, asset: HostAsset) -> None:
        with self._lock:
            self.assets[asset.local_identifier] = asset

    async def find_local_identifier(self, asset_source_identifier: str, remote_identifier: str) -> str | None:
        with self._lock:
            for asset in self.assets.values():
                if (
                    asset.asset_source_identifier == asset_source_identifier
                    and asset.remote_identifier == remote_identifier
                ):
                    return asset.local_identifier
        return None

    async def replace_resource(
        self,
        local_identifier: str,
        proxy: CantoAssetProxy,
        original_uri: str | None,
    ) -> None:
        with self._lock:
            self.replacements.append((local_identifier, proxy.identifier, original_uri))

    async def list_assets(self, asset_source_identifier: str) -> list[HostAsset]:
        with self._lock:
            return [
                asset for asset in self.assets.values() if asset.asset_source_identifier == asset_source_identifier
            ]


@dataclass
class InMemoryTagCatalog:
    collections: dict[str, set[str]] = field(default_factory=dict)

    async def ensure_collection(self, title: str) -> bool:
        if title in self.collections:
            return False
        self.collections[title] = set()
        return True

    async def ensure_tag(self, label: str, collection_title: str) -> bool:
        tags = self.collections.setdefault(collection_title, set())
        if label in tags:
            return False
        tags.add(label)
        return True

    def labels(self, collection_title: str) -> Iterable[str]:
        return sorted(self.collections.get(collection_title, set()))
