from __future__ import annotations

import pytest

from cantodam.core.config import CustomFieldMapping
from cantodam.domain.assets import AssetCollection, CustomField, Tag
from cantodam.services.canto.client import CantoClient
from cantodam.services.canto.query import QueryTranslator, build_tag_query, build_untagged_query
from cantodam.tests.utils.canto import API_BASE, CantoApiStub, StaticTokenSession


CUSTOM_FIELDS = [
    CustomField(id="custom_field_1", name="Projects", values=("Apollo", "Gemini")),
    CustomField(id="custom_field_2", name="Regions", values=("EU", "US")),
    CustomField(id="custom_field_3", name="Internal", values=("x",)),
]
MAPPING = {
    "custom_field_2": CustomFieldMapping(as_asset_collection=True, values_as_tags=True),
    "custom_field_1": CustomFieldMapping(as_asset_collection=True),
    "custom_field_3": CustomFieldMapping(as_asset_collection=False),
}


def test_tag_query_uses_all_collections_of_tag_in_mapping_order() -> None:
    tag = Tag(label="Apollo", collections=(AssetCollection("Projects"), AssetCollection("Regions")))
    fragment = build_tag_query(custom_fields=CUSTOM_FIELDS, mapping=MAPPING, tag=tag)
    assert fragment == '&custom_field_2.keyword="Apollo"&custom_field_1.keyword="Apollo"'


def test_tag_query_restricted_to_active_collection() -> None:
    tag = Tag(label="EU", collections=(AssetCollection("Projects"), AssetCollection("Regions")))
    fragment = build_tag_query(
        custom_fields=CUSTOM_FIELDS,
        mapping=MAPPING,
        tag=tag,
        collection=AssetCollection("Regions"),
    )
    assert fragment == '&custom_field_2.keyword="EU"'


def test_tag_query_is_deterministic() -> None:
    tag = Tag(label="Apollo", collections=(AssetCollection("Projects"),))
    fragments = {build_tag_query(custom_fields=CUSTOM_FIELDS, mapping=MAPPING, tag=tag) for _ in range(5)}
    assert len(fragments) == 1


def test_tag_query_ignores_fields_not_mapped_as_collections() -> None:
    tag = Tag(label="x", collections=(AssetCollection("Internal"),))
    assert build_tag_query(custom_fields=CUSTOM_FIELDS, mapping=MAPPING, tag=tag) == ""


def test_untagged_query_without_collection_covers_every_collection_field() -> None:
    fragment = build_untagged_query(custom_fields=CUSTOM_FIELDS, mapping=MAPPING)
    assert fragment == '&custom_field_2.keyword="__null__"&custom_field_1.keyword="__null__"'


def test_untagged_query_with_collection_covers_only_its_field() -> None:
    fragment = build_untagged_query(
        custom_fields=CUSTOM_FIELDS,
        mapping=MAPPING,
        collection=AssetCollection("Projects"),
    )
    assert fragment == '&custom_field_1.keyword="__null__"'


def test_tag_label_is_url_quoted() -> None:
    tag = Tag(label="Sales & Marketing", collections=(AssetCollection("Projects"),))
    fragment = build_tag_query(custom_fields=CUSTOM_FIELDS, mapping=MAPPING, tag=tag)
    assert fragment == '&custom_field_1.keyword="Sales%20%26%20Marketing"'


@pytest.mark.asyncio
async def test_empty_mapping_produces_empty_fragments_without_api_calls() -> None:
    stub = CantoApiStub()
    async with stub.http_client() as http_client:
        client = CantoClient(api_base_uri=API_BASE, session=StaticTokenSession(), http_client=http_client)
        translator = QueryTranslator(client, {})
        tag = Tag(label="Apollo", collections=(AssetCollection("Projects"),))
        assert await translator.prepare_tag_query(tag) == ""
        assert await translator.prepare_untagged_query() == ""
    assert stub.requests == []


@pytest.mark.asyncio
async def test_translator_fetches_custom_fields_once() -> None:
    stub = CantoApiStub()
    stub.on(
        "GET",
        "/api/v1/custom/field",
        [{"id": f.id, "name": f.name, "values": list(f.values)} for f in CUSTOM_FIELDS],
    )
    async with stub.http_client() as http_client:
        client = CantoClient(api_base_uri=API_BASE, session=StaticTokenSession(), http_client=http_client)
        translator = QueryTranslator(client, MAPPING)
        tag = Tag(label="Apollo", collections=(AssetCollection("Projects"),))
        first = await translator.prepare_tag_query(tag)
        second = await translator.prepare_tag_query(tag)
        untagged = await translator.prepare_untagged_query(AssetCollection("Regions"))
    assert first == second == '&custom_field_1.keyword="Apollo"'
    assert untagged == '&custom_field_2.keyword="__null__"'
    assert len(stub.calls("GET", "/api/v1/custom/field")) == 1
