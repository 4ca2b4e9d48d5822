from __future__ import annotations

import pytest

from cantodam.core.config import CustomFieldMapping
from cantodam.core.errors import ConfigurationError
from cantodam.services.canto.client import CantoClient
from cantodam.services.custom_fields_import import import_custom_fields_as_collections_and_tags
from cantodam.services.host_contract import InMemoryTagCatalog
from cantodam.tests.utils.canto import API_BASE, CantoApiStub, StaticTokenSession


FIELDS = [
    {"id": "cf1", "name": "Projects", "values": ["Apollo", "Gemini", "Mercury"]},
    {"id": "cf2", "name": "Regions", "values": ["EU", "US"]},
    {"id": "cf3", "name": "Internal", "values": ["x"]},
]


@pytest.mark.asyncio
async def test_import_creates_collections_and_filtered_tags() -> None:
    stub = CantoApiStub()
    stub.on("GET", "/api/v1/custom/field", FIELDS)
    mapping = {
        "cf1": CustomFieldMapping(as_asset_collection=True, values_as_tags=True, exclude=["Mercury"]),
        "cf2": CustomFieldMapping(as_asset_collection=True, values_as_tags=True, include=["EU"]),
        "cf3": CustomFieldMapping(as_asset_collection=False, values_as_tags=True),
    }
    catalog = InMemoryTagCatalog()
    async with stub.http_client() as http_client:
        client = CantoClient(api_base_uri=API_BASE, session=StaticTokenSession(), http_client=http_client)
        first = await import_custom_fields_as_collections_and_tags(client=client, mapping=mapping, catalog=catalog)
        second = await import_custom_fields_as_collections_and_tags(client=client, mapping=mapping, catalog=catalog)

    assert [(item.title, item.created, item.added_tags) for item in first] == [
        ("Projects", True, ["Apollo", "Gemini"]),
        ("Regions", True, ["EU"]),
    ]
    assert [(item.title, item.created, item.added_tags) for item in second] == [
        ("Projects", False, []),
        ("Regions", False, []),
    ]
    assert list(catalog.labels("Projects")) == ["Apollo", "Gemini"]
    assert "Internal" not in catalog.collections


@pytest.mark.asyncio
async def test_collection_without_tags() -> None:
    stub = CantoApiStub()
    stub.on("GET", "/api/v1/custom/field", FIELDS)
    catalog = InMemoryTagCatalog()
    async with stub.http_client() as http_client:
        client = CantoClient(api_base_uri=API_BASE, session=StaticTokenSession(), http_client=http_client)
        imported = await import_custom_fields_as_collections_and_tags(
            client=client,
            mapping={"cf2": CustomFieldMapping(as_asset_collection=True)},
            catalog=catalog,
        )
    assert [(item.title, item.added_tags) for item in imported] == [("Regions", [])]
    assert catalog.collections == {"Regions": set()}


@pytest.mark.asyncio
async def test_empty_mapping_is_a_configuration_error() -> None:
    stub = CantoApiStub()
    async with stub.http_client() as http_client:
        client = CantoClient(api_base_uri=API_BASE, session=StaticTokenSession(), http_client=http_client)
        with pytest.raises(ConfigurationError):
            await import_custom_fields_as_collections_and_tags(client=client, mapping={}, catalog=InMemoryTagCatalog())
    assert stub.requests == []
