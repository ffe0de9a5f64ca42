import httpx
import pytest
import respx

from rankwatch.errors import QuotaExhaustedError, SerpQueryError
from rankwatch.serp.client import SERP_ENDPOINT, Locale, SerpClient
from rankwatch.serp.credentials import ApiCredential

CREDENTIAL = ApiCredential(id=1, name="primary", secret="key-primary-0001")

ORGANIC = {
    "organic_results": [
        {"position": 1, "title": "Tokoku", "link": "https://www.tokoku.co.id/", "snippet": "Official"},
        {"position": 2, "title": "No link"},
        {"position": 3, "title": "Review", "link": "https://review.example.com/tokoku"},
    ]
}


@pytest.fixture()
def no_backoff(monkeypatch):
    async def immediate(delay):
        return None

    monkeypatch.setattr("rankwatch.utils.retry.asyncio.sleep", immediate)


@pytest.mark.asyncio
async def test_query_parses_organic_results():
    async with respx.mock(assert_all_called=True) as router:
        route = router.get(SERP_ENDPOINT).mock(return_value=httpx.Response(200, json=ORGANIC))
        client = SerpClient()
        try:
            results = await client.query(CREDENTIAL, "tokoku official", Locale(gl="id", hl="en"), num=20)
        finally:
            await client.close()
    assert [item.rank for item in results] == [1, 3]
    assert results[0].link == "https://www.tokoku.co.id/"
    params = route.calls.last.request.url.params
    assert params["engine"] == "google"
    assert params["q"] == "tokoku official"
    assert params["gl"] == "id"
    assert params["hl"] == "en"
    assert params["num"] == "20"
    assert params["api_key"] == "key-primary-0001"


@pytest.mark.asyncio
async def test_http_429_is_quota_exhaustion():
    async with respx.mock() as router:
        router.get(SERP_ENDPOINT).mock(return_value=httpx.Response(429, json={"error": "Too many requests"}))
        client = SerpClient()
        with pytest.raises(QuotaExhaustedError):
            await client.query(CREDENTIAL, "tokoku")
        await client.close()


@pytest.mark.asyncio
async def test_error_body_about_searches_is_quota_exhaustion():
    body = {"error": "Your account has run out of searches."}
    async with respx.mock() as router:
        router.get(SERP_ENDPOINT).mock(return_value=httpx.Response(200, json=body))
        client = SerpClient()
        with pytest.raises(QuotaExhaustedError):
            await client.query(CREDENTIAL, "tokoku")
        await client.close()


@pytest.mark.asyncio
async def test_invalid_key_is_plain_query_error():
    async with respx.mock() as router:
        router.get(SERP_ENDPOINT).mock(return_value=httpx.Response(401, json={"error": "Invalid API key."}))
        client = SerpClient()
        with pytest.raises(SerpQueryError) as excinfo:
            await client.query(CREDENTIAL, "tokoku")
        await client.close()
    assert not isinstance(excinfo.value, QuotaExhaustedError)
    assert excinfo.value.status_code == 401


@pytest.mark.asyncio
async def test_empty_result_set():
    body = {"error": "Google hasn't returned any results for this query."}
    async with respx.mock() as router:
        router.get(SERP_ENDPOINT).mock(return_value=httpx.Response(200, json=body))
        client = SerpClient()
        assert await client.query(CREDENTIAL, "zzzz") == []
        await client.close()


@pytest.mark.asyncio
async def test_transport_errors_are_retried_then_raised(no_backoff):
    async with respx.mock() as router:
        route = router.get(SERP_ENDPOINT).mock(side_effect=httpx.ConnectError("connection refused"))
        client = SerpClient()
        with pytest.raises(SerpQueryError):
            await client.query(CREDENTIAL, "tokoku")
        await client.close()
    assert route.call_count == 3


@pytest.mark.asyncio
async def test_read_timeout_is_not_retried(no_backoff):
    async with respx.mock() as router:
        route = router.get(SERP_ENDPOINT).mock(
            side_effect=[httpx.ReadTimeout("read timed out"), httpx.Response(200, json={"organic_results": []})]
        )
        client = SerpClient()
        with pytest.raises(SerpQueryError):
            await client.query(CREDENTIAL, "tokoku")
        await client.close()
    assert route.call_count == 1
