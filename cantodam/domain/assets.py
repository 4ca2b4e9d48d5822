from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
import mimetypes
import re
from typing import Any

from cantodam.core.errors import InvalidAssetIdentifierError, MalformedResponseError


logger = logging.getLogger(__name__)

IDENTIFIER_SEPARATOR = "-"
# Identifiers written by older releases used a pipe between scheme and id.
LEGACY_IDENTIFIER_SEPARATOR = "|"

_LAST_MODIFIED_PATTERN = re.compile(r"^\d{17}$")
_SIZE_SUFFIX_PATTERN = re.compile(r"/\d+$")


def build_identifier(scheme: str, remote_id: str) -> str:
    # Compose the stable proxy identifier used as cache key and host reference.
    return f"{scheme}{IDENTIFIER_SEPARATOR}{remote_id}"


def parse_identifier(identifier: str) -> tuple[str, str]:
    # Split on the first separator; schemes never contain one, remote ids may.
    scheme, separator, remote_id = identifier.partition(IDENTIFIER_SEPARATOR)
    if not separator:
        scheme, separator, remote_id = identifier.partition(LEGACY_IDENTIFIER_SEPARATOR)
        if separator:
            logger.debug("canto_legacy_identifier identifier=%s", identifier)
    if not separator or not scheme or not remote_id:
        raise InvalidAssetIdentifierError(f"Invalid Canto asset identifier: {identifier!r}")
    return scheme, remote_id


def normalize_identifier(identifier: str) -> str:
    # Rewrite legacy pipe identifiers into the current form.
    return build_identifier(*parse_identifier(identifier))


def parse_last_modified(value: Any) -> datetime:
    """Parse Canto's ``YmdHis`` + milliseconds timestamp, e.g. ``20210701152625123``.

    Anything that is not exactly seventeen digits is rejected instead of being
    coerced into a plausible but wrong date.
    """
    text = str(value).strip() if value is not None else ""
    if not _LAST_MODIFIED_PATTERN.match(text):
        raise MalformedResponseError(f"Invalid Canto modification timestamp: {value!r}")
    # Fixed-width fields: YYYY MM DD hh mm ss mmm.
    try:
        return datetime(
            int(text[0:4]),
            int(text[4:6]),
            int(text[6:8]),
            int(text[8:10]),
            int(text[10:12]),
            int(text[12:14]),
            microsecond=int(text[14:17]) * 1000,
            tzinfo=timezone.utc,
        )
    except ValueError as exc:
        raise MalformedResponseError(f"Invalid Canto modification timestamp: {value!r}") from exc


def sized_preview_uri(base_uri: str | None, width: int, height: int) -> str | None:
    # Replace the pixel-size suffix Canto embeds in preview URLs.
    if not base_uri:
        return None
    return f"{_SIZE_SUFFIX_PATTERN.sub('', base_uri)}/{max(width, height)}"


def _optional_int(value: Any) -> int | None:
    if not value:
        return None
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return None
    return parsed or None


@dataclass(frozen=True)
class PreviewPresets:
    # Host size presets applied to the preview URL template.
    thumbnail_width: int = 250
    thumbnail_height: int = 250
    preview_width: int = 1000
    preview_height: int = 1000


@dataclass(frozen=True)
class AssetCollection:
    title: str


@dataclass(frozen=True)
class Tag:
    label: str
    collections: tuple[AssetCollection, ...] = ()


@dataclass(frozen=True)
class CustomField:
    id: str
    name: str
    values: tuple[str, ...] = ()

    @classmethod
    def from_json(cls, raw: dict[str, Any]) -> "CustomField":
        values = raw.get("values") or []
        if not isinstance(values, list):
            values = []
        return cls(id=str(raw.get("id", "")), name=str(raw.get("name", "")), values=tuple(str(v) for v in values))


@dataclass(frozen=True)
class CantoAssetProxy:
    """Read-only snapshot of one remote Canto asset.

    Built from the JSON object Canto returns for search hits and single-file
    lookups. The raw object is kept so the proxy can be cached and rebuilt
    field-for-field.
    """

    identifier: str
    scheme: str
    remote_id: str
    label: str
    filename: str
    last_modified: datetime
    file_size: int
    media_type: str
    width: int | None
    height: int | None
    tags: tuple[str, ...]
    iptc_properties: dict[str, str] = field(default_factory=dict)
    thumbnail_uri: str | None = None
    preview_uri: str | None = None
    original_uri: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_json(cls, raw: dict[str, Any], *, presets: PreviewPresets | None = None) -> "CantoAssetProxy":
        if not isinstance(raw, dict):
            raise MalformedResponseError("Canto asset payload is not an object")
        presets = presets or PreviewPresets()
        try:
            scheme = str(raw["scheme"])
            remote_id = str(raw["id"])
        except KeyError as exc:
            raise MalformedResponseError(f"Canto asset payload lacks {exc.args[0]!r}") from exc

        name = str(raw.get("name") or "")
        default = raw.get("default") if isinstance(raw.get("default"), dict) else {}
        if default.get("Date modified") is not None:
            last_modified = parse_last_modified(default["Date modified"])
        elif raw.get("time") is not None:
            last_modified = parse_last_modified(raw["time"])
        else:
            raise MalformedResponseError(f"Canto asset {scheme}-{remote_id} has no modification date")

        iptc: dict[str, str] = {}
        copyright_notice = raw.get("copyright") or default.get("Copyright")
        if copyright_notice:
            iptc["CopyrightNotice"] = str(copyright_notice)

        urls = raw.get("url") if isinstance(raw.get("url"), dict) else {}
        preview_base = urls.get("directUrlPreview")
        tags = raw.get("tag") or []
        if not isinstance(tags, list):
            tags = [tags]

        return cls(
            identifier=build_identifier(scheme, remote_id),
            scheme=scheme,
            remote_id=remote_id,
            label=name,
            filename=name,
            last_modified=last_modified,
            file_size=_optional_int(raw.get("size")) or 0,
            media_type=mimetypes.guess_type(name)[0] or "application/octet-stream",
            width=_optional_int(raw.get("width")),
            height=_optional_int(raw.get("height")),
            tags=tuple(str(tag) for tag in tags),
            iptc_properties=iptc,
            thumbnail_uri=sized_preview_uri(preview_base, presets.thumbnail_width, presets.thumbnail_height),
            preview_uri=sized_preview_uri(preview_base, presets.preview_width, presets.preview_height),
            original_uri=urls.get("directUrlOriginal"),
            raw=raw,
        )

    def has_iptc_property(self, name: str) -> bool:
        return name in self.iptc_properties

    def get_iptc_property(self, name: str) -> str:
        return self.iptc_properties.get(name, "")
