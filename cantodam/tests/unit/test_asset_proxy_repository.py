from __future__ import annotations

import json

import httpx
import pytest

from cantodam.core.config import CustomFieldMapping
from cantodam.core.errors import AccessToAssetDeniedError, AssetNotFoundError
from cantodam.domain.assets import AssetCollection, Tag
from cantodam.services.cache import AssetProxyCache
from cantodam.services.canto.client import CantoClient
from cantodam.services.canto.query import AssetTypeFilter, QueryTranslator
from cantodam.services.canto.repository import CantoAssetProxyRepository
from cantodam.tests.utils.canto import API_BASE, CantoApiStub, StaticTokenSession, asset_json


SEARCH_PATH = "/api/v1/search"


def _repository(
    http_client: httpx.AsyncClient,
    *,
    cache: AssetProxyCache | None = None,
    mapping: dict[str, CustomFieldMapping] | None = None,
    access_policy=None,
) -> CantoAssetProxyRepository:
    client = CantoClient(api_base_uri=API_BASE, session=StaticTokenSession(), http_client=http_client)
    return CantoAssetProxyRepository(
        client=client,
        cache=cache or AssetProxyCache(prefix="t:"),
        translator=QueryTranslator(client, mapping or {}),
        access_policy=access_policy,
    )


def _search_stub() -> CantoApiStub:
    # Mirror Canto's search: limit=1 answers only the count.
    def _search(request: httpx.Request) -> httpx.Response:
        results = [asset_json("image", "42"), asset_json("video", "7", name="clip.mp4")]
        if request.url.params["limit"] == "1":
            results = results[:1]
        return httpx.Response(200, json={"found": 2, "results": results})

    stub = CantoApiStub()
    stub.on("GET", SEARCH_PATH, _search)
    return stub


@pytest.mark.asyncio
async def test_successful_search_scenario() -> None:
    stub = _search_stub()
    async with stub.http_client() as http_client:
        repository = _repository(http_client)
        query = repository.find_all().get_query()
        proxies = await query.get_array_result()
        count = await query.count()
    assert [proxy.identifier for proxy in proxies] == ["image-42", "video-7"]
    assert proxies[1].media_type == "video/mp4"
    assert count == 2
    count_request = stub.calls("GET", SEARCH_PATH)[1]
    assert count_request.url.params["limit"] == "1"
    assert "sortBy" not in count_request.url.params


@pytest.mark.asyncio
async def test_query_result_materializes_once() -> None:
    stub = _search_stub()
    async with stub.http_client() as http_client:
        result = _repository(http_client).find_all()
        first = await result.to_array()
        second = await result.to_array()
        iterated = [proxy async for proxy in result]
        iterated_again = [proxy async for proxy in result]
        count = await result.count()
        head = await result.get_first()
    assert len(stub.calls("GET", SEARCH_PATH)) == 1
    assert first == second == iterated == iterated_again
    assert count == 2
    assert head is not None and head.identifier == "image-42"


@pytest.mark.asyncio
async def test_query_result_counts_without_materializing() -> None:
    stub = _search_stub()
    async with stub.http_client() as http_client:
        result = _repository(http_client).find_by_search_term("car")
        assert await result.count() == 2
        assert await result.count() == 2
    requests = stub.calls("GET", SEARCH_PATH)
    assert len(requests) == 1
    assert requests[0].url.params["limit"] == "1"
    assert requests[0].url.params["keyword"] == "car"


@pytest.mark.asyncio
async def test_mutating_repository_after_execute_does_not_change_result() -> None:
    stub = _search_stub()
    async with stub.http_client() as http_client:
        repository = _repository(http_client)
        result = repository.find_all()
        repository.filter_by_type(AssetTypeFilter.IMAGE)
        repository.order_by({"filename": "DESC"})
        await result.to_array()
    request = stub.calls("GET", SEARCH_PATH)[0]
    assert request.url.params["scheme"] == "image|video|audio|document|presentation|other"
    assert "sortBy" not in request.url.params


@pytest.mark.asyncio
async def test_search_populates_cache() -> None:
    stub = _search_stub()
    cache = AssetProxyCache(prefix="t:")
    async with stub.http_client() as http_client:
        await _repository(http_client, cache=cache).find_all().to_array()
    cached = await cache.get("video-7")
    assert cached is not None and json.loads(cached)["id"] == "7"


class _BrokenCache(AssetProxyCache):
    async def set(self, identifier: str, value: str) -> None:
        raise ConnectionError("cache down")

    async def get(self, identifier: str) -> str | None:
        raise ConnectionError("cache down")


@pytest.mark.asyncio
async def test_cache_failures_do_not_abort_search_or_fetch() -> None:
    stub = _search_stub()
    stub.on("GET", "/api/v1/image/42", asset_json())
    async with stub.http_client() as http_client:
        repository = _repository(http_client, cache=_BrokenCache(prefix="t:"))
        proxies = await repository.find_all().to_array()
        proxy = await repository.get_asset_proxy("image-42")
    assert len(proxies) == 2
    assert proxy.identifier == "image-42"


@pytest.mark.asyncio
async def test_get_asset_proxy_is_served_from_cache_the_second_time() -> None:
    stub = CantoApiStub()
    stub.on("GET", "/api/v1/image/42", asset_json())
    async with stub.http_client() as http_client:
        repository = _repository(http_client)
        first = await repository.get_asset_proxy("image-42")
        second = await repository.get_asset_proxy("image-42")
    assert len(stub.calls("GET", "/api/v1/image/42")) == 1
    assert first == second


@pytest.mark.asyncio
async def test_get_asset_proxy_accepts_legacy_identifier() -> None:
    stub = CantoApiStub()
    stub.on("GET", "/api/v1/image/42", asset_json())
    async with stub.http_client() as http_client:
        proxy = await _repository(http_client).get_asset_proxy("image|42")
    assert proxy.identifier == "image-42"


@pytest.mark.asyncio
async def test_get_asset_proxy_rejects_non_object_payload() -> None:
    stub = CantoApiStub()
    stub.on("GET", "/api/v1/image/42", [])
    async with stub.http_client() as http_client:
        with pytest.raises(AssetNotFoundError):
            await _repository(http_client).get_asset_proxy("image-42")


@pytest.mark.asyncio
async def test_access_policy_denial_is_distinct_from_not_found() -> None:
    stub = CantoApiStub()

    async def _deny(_identifier: str) -> bool:
        return False

    async with stub.http_client() as http_client:
        with pytest.raises(AccessToAssetDeniedError):
            await _repository(http_client, access_policy=_deny).get_asset_proxy("image-42")
    assert stub.requests == []


@pytest.mark.asyncio
async def test_count_by_tag_issues_a_filtered_count() -> None:
    stub = _search_stub()
    stub.on("GET", "/api/v1/custom/field", [{"id": "cf1", "name": "Projects", "values": ["Apollo"]}])
    mapping = {"cf1": CustomFieldMapping(as_asset_collection=True)}
    async with stub.http_client() as http_client:
        repository = _repository(http_client, mapping=mapping)
        tag = Tag(label="Apollo", collections=(AssetCollection("Projects"),))
        assert await repository.count_by_tag(tag) == 2
        assert await repository.count_untagged() == 2
    tagged, untagged = stub.calls("GET", SEARCH_PATH)
    assert tagged.url.params["cf1.keyword"] == '"Apollo"'
    assert untagged.url.params["cf1.keyword"] == '"__null__"'


@pytest.mark.asyncio
async def test_filter_by_type_limits_schemes() -> None:
    stub = _search_stub()
    async with stub.http_client() as http_client:
        repository = _repository(http_client)
        repository.filter_by_type(AssetTypeFilter.VIDEO)
        await repository.count_all()
    assert stub.calls("GET", SEARCH_PATH)[0].url.params["scheme"] == "video"
