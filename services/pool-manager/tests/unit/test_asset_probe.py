import httpx
import pytest
import respx

from pool_manager.assets import AssetProbe
from pool_manager.errors import AssetNotFound, BucketNameMissing


@pytest.mark.asyncio
@respx.mock
async def test_existing_asset():
    route = respx.head("https://assets.example.com/talks/intro%20v2.mp4").mock(
        return_value=httpx.Response(200)
    )

    await AssetProbe("https://assets.example.com/").ensure_exists("talks/intro v2.mp4")

    assert route.called


@pytest.mark.asyncio
@respx.mock
async def test_forbidden_means_missing():
    respx.head("https://assets.example.com/nope.mp4").mock(return_value=httpx.Response(403))

    with pytest.raises(AssetNotFound):
        await AssetProbe("https://assets.example.com").ensure_exists("nope.mp4")


@pytest.mark.asyncio
@respx.mock
async def test_bucket_errors_propagate():
    respx.head("https://assets.example.com/intro.mp4").mock(return_value=httpx.Response(500))

    with pytest.raises(httpx.HTTPStatusError):
        await AssetProbe("https://assets.example.com").ensure_exists("intro.mp4")


@pytest.mark.asyncio
async def test_missing_bucket():
    with pytest.raises(BucketNameMissing):
        await AssetProbe("").ensure_exists("intro.mp4")
