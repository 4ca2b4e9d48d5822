from __future__ import annotations

from dataclasses import dataclass
import logging

from cantodam.core.errors import CantoError, ConfigurationError
from cantodam.services.canto.client import CantoClient
from cantodam.services.canto.source import CantoAssetSource
from cantodam.services.host_contract import HostAsset, ImportedAssetStore


logger = logging.getLogger(__name__)

STATUS_TAGGED = "tagged"
STATUS_ALREADY_TAGGED = "(tagged)"
STATUS_REMOVED = "removed"
STATUS_ALREADY_REMOVED = "(removed)"
STATUS_ERROR = "error"


@dataclass(frozen=True)
class TaggingOutcome:
    status: str
    asset: HostAsset
    message: str = ""

    def render(self) -> str:
        if self.status == STATUS_ERROR:
            return f"   error   {self.message}"
        if self.status in (STATUS_TAGGED, STATUS_ALREADY_TAGGED):
            return f"{self.status:^12}{self.asset.label} {self.asset.remote_identifier} ({self.asset.usage_count})"
        return f"{self.status:^12}{self.asset.label}"


def compute_keywords(current: list[str] | tuple[str, ...], *, in_use_tag: str, in_use: bool) -> list[str]:
    # Sorted unique keyword list with the in-use tag added or removed.
    tags = set(current)
    if in_use:
        tags.add(in_use_tag)
    else:
        tags.discard(in_use_tag)
    return sorted(tags)


async def tag_used_assets(
    *,
    asset_source: CantoAssetSource,
    client: CantoClient,
    imported_assets: ImportedAssetStore,
) -> list[TaggingOutcome]:
    """Mark Canto assets that are used locally with the configured in-use tag.

    The cache is flushed first so tag decisions are made on fresh metadata.
    A failure for one asset is recorded and the batch moves on.
    """
    if not asset_source.auto_tagging_enabled:
        raise ConfigurationError("Auto-tagging is disabled")
    in_use_tag = asset_source.auto_tagging_in_use_tag
    repository = asset_source.create_repository(client)
    await asset_source.cache.flush()

    outcomes: list[TaggingOutcome] = []
    for asset in await imported_assets.list_assets(asset_source.identifier):
        try:
            proxy = await repository.get_asset_proxy(asset.remote_identifier)
        except CantoError as exc:
            logger.warning("canto_tagging_lookup_failed asset=%s", asset.local_identifier, exc_info=exc)
            outcomes.append(
                TaggingOutcome(
                    STATUS_ERROR,
                    asset,
                    f'Asset "{asset.label}" ({asset.local_identifier}) could not be accessed via Canto-API: {exc}',
                )
            )
            continue

        current = sorted(proxy.tags)
        in_use = asset.usage_count > 0
        keywords = compute_keywords(current, in_use_tag=in_use_tag, in_use=in_use)
        if keywords == current:
            outcomes.append(TaggingOutcome(STATUS_ALREADY_TAGGED if in_use else STATUS_ALREADY_REMOVED, asset))
            continue
        try:
            updated = await client.update_file(proxy.identifier, {"keywords": ",".join(keywords)})
        except CantoError as exc:
            logger.warning("canto_tagging_update_failed asset=%s", asset.local_identifier, exc_info=exc)
            updated = False
        if not updated:
            outcomes.append(
                TaggingOutcome(STATUS_ERROR, asset, f'Keywords of "{asset.label}" ({proxy.identifier}) were not updated')
            )
            continue
        outcomes.append(TaggingOutcome(STATUS_TAGGED if in_use else STATUS_REMOVED, asset))
    return outcomes
