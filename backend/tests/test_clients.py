"""Testes unitários para clientes (overpass com mirrors, foursquare)."""

import logging
import ssl

import httpx
import pytest

from app.clients import HTTPClient, build_verify
from app.clients.foursquare_client import FoursquareClient
from app.clients.overpass_client import Failed, RetryPolicy, Success, is_tls_error
from app.core.exceptions import UpstreamUnavailable
from app.services.query_builder import CompiledQuery

from conftest import overpass_json

GYM = {"type": "node", "id": 1, "lat": 33.89, "lon": 35.50, "tags": {"amenity": "fitness_centre", "name": "Gym"}}
QUERY = CompiledQuery(text='[out:json][timeout:25];\n(\n  node["amenity"](1,2,3,4);\n);\nout center 50;')


def ssl_failure() -> httpx.ConnectError:
    return httpx.ConnectError("[SSL: CERTIFICATE_VERIFY_FAILED] certificate verify failed")


class TestRetryPolicy:
    def test_fixed_delay(self):
        policy = RetryPolicy(max_retries=3, base_delay=1.8, backoff_factor=1.0)
        assert [policy.delay_for(n) for n in range(3)] == [1.8, 1.8, 1.8]

    def test_exponential_delay(self):
        policy = RetryPolicy(max_retries=3, base_delay=1.0, backoff_factor=2.0)
        assert [policy.delay_for(n) for n in range(3)] == [1.0, 2.0, 4.0]


class TestTlsDetection:
    def test_ssl_error_in_chain(self):
        try:
            try:
                raise ssl.SSLCertVerificationError("boom")
            except ssl.SSLError as inner:
                raise httpx.ConnectError("handshake") from inner
        except httpx.ConnectError as exc:
            assert is_tls_error(exc)

    def test_message_marker(self):
        assert is_tls_error(ssl_failure())

    def test_plain_connect_error(self):
        assert not is_tls_error(httpx.ConnectError("Name or service not known"))

    def test_generic_ssl_mention_is_not_tls(self):
        assert not is_tls_error(httpx.ConnectError("proxy returned 502 while opening SSL tunnel"))
        assert not is_tls_error(httpx.ReadError("SSL connection closed by peer"))


class TestOverpassDispatch:
    @pytest.mark.asyncio
    async def test_first_mirror_success(self, make_overpass, upstream):
        upstream.script = {"mirror-a.test": [overpass_json(GYM)]}
        result = await make_overpass().dispatch(QUERY.text)
        assert isinstance(result, Success)
        assert result.payload["elements"] == [GYM]
        assert upstream.total_calls == 1

    @pytest.mark.asyncio
    async def test_posts_form_encoded_query(self, make_overpass, upstream):
        upstream.script = {"mirror-a.test": [overpass_json()]}
        await make_overpass().dispatch(QUERY.text)
        request = upstream.requests[0]
        assert request.method == "POST"
        assert request.headers["content-type"] == "application/x-www-form-urlencoded"
        assert b"data=" in request.content

    @pytest.mark.asyncio
    async def test_falls_back_to_second_mirror(self, make_overpass, upstream):
        upstream.script = {
            "mirror-a.test": [httpx.Response(503, text="busy")],
            "mirror-b.test": [overpass_json(GYM)],
            "mirror-c.test": [overpass_json()],
        }
        result = await make_overpass().dispatch(QUERY.text)
        assert isinstance(result, Success)
        assert result.endpoint.startswith("https://mirror-b.test")
        assert result.payload["elements"] == [GYM]
        assert upstream.calls_to("mirror-a.test") == 3   # 1 + 2 retries
        assert upstream.calls_to("mirror-c.test") == 0

    @pytest.mark.asyncio
    async def test_retry_then_success_same_mirror(self, make_overpass, upstream, sleeps):
        upstream.script = {"mirror-a.test": [
            httpx.Response(429, text="rate limited"),
            httpx.ReadTimeout("timed out"),
            overpass_json(GYM),
        ]}
        result = await make_overpass().dispatch(QUERY.text)
        assert isinstance(result, Success)
        assert upstream.calls_to("mirror-a.test") == 3
        # jitter (0.1–0.3s) + backoff 1.0, 2.0
        assert 0.1 <= sleeps.calls[0] <= 0.3
        assert sleeps.calls[1:] == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_client_error_skips_retries(self, make_overpass, upstream):
        upstream.script = {
            "mirror-a.test": [httpx.Response(400, text="parse error")],
            "mirror-b.test": [overpass_json()],
        }
        result = await make_overpass().dispatch(QUERY.text)
        assert isinstance(result, Success)
        assert upstream.calls_to("mirror-a.test") == 1

    @pytest.mark.asyncio
    async def test_invalid_json_is_retryable(self, make_overpass, upstream):
        upstream.script = {"mirror-a.test": [
            httpx.Response(200, text="<html>overloaded</html>"),
            overpass_json(),
        ]}
        result = await make_overpass().dispatch(QUERY.text)
        assert isinstance(result, Success)
        assert upstream.calls_to("mirror-a.test") == 2

    @pytest.mark.asyncio
    async def test_all_mirrors_fail(self, make_overpass, upstream):
        upstream.script = {host: [httpx.Response(504)] for host in
                           ("mirror-a.test", "mirror-b.test", "mirror-c.test")}
        result = await make_overpass().dispatch(QUERY.text)
        assert isinstance(result, Failed)
        assert "504" in result.reason
        assert upstream.total_calls == 9

    @pytest.mark.asyncio
    async def test_jitter_before_each_mirror(self, make_overpass, upstream, sleeps):
        upstream.script = {
            "mirror-a.test": [httpx.Response(500)],
            "mirror-b.test": [overpass_json()],
        }
        await make_overpass(retry_policy=RetryPolicy(max_retries=0)).dispatch(QUERY.text)
        assert len(sleeps.calls) == 2
        assert all(0.1 <= s <= 0.3 for s in sleeps.calls)

    @pytest.mark.asyncio
    async def test_tls_error_without_fallback_moves_on(self, make_overpass, upstream):
        upstream.script = {
            "mirror-a.test": [ssl_failure(), overpass_json(GYM)],
            "mirror-b.test": [overpass_json()],
        }
        client = make_overpass(retry_policy=RetryPolicy(max_retries=0), insecure_fallback=False)
        result = await client.dispatch(QUERY.text)
        assert isinstance(result, Success)
        assert result.endpoint.startswith("https://mirror-b.test")
        assert upstream.calls_to("mirror-a.test") == 1

    @pytest.mark.asyncio
    async def test_tls_error_with_fallback_retries_once_insecure(
        self, make_overpass, upstream, caplog,
    ):
        upstream.script = {
            "mirror-a.test": [ssl_failure(), overpass_json(GYM)],
            "mirror-b.test": [overpass_json()],
        }
        client = make_overpass(retry_policy=RetryPolicy(max_retries=3), insecure_fallback=True)
        with caplog.at_level(logging.WARNING):
            result = await client.dispatch(QUERY.text)
        assert isinstance(result, Success)
        assert result.endpoint.startswith("https://mirror-a.test")
        assert upstream.calls_to("mirror-a.test") == 2
        assert upstream.calls_to("mirror-b.test") == 0
        assert any("sem verificar" in r.getMessage() for r in caplog.records)

    @pytest.mark.asyncio
    async def test_insecure_retry_failure_moves_to_next_mirror(self, make_overpass, upstream):
        upstream.script = {
            "mirror-a.test": [ssl_failure()],
            "mirror-b.test": [overpass_json(GYM)],
        }
        client = make_overpass(retry_policy=RetryPolicy(max_retries=3), insecure_fallback=True)
        result = await client.dispatch(QUERY.text)
        assert isinstance(result, Success)
        # 1 segura + exatamente 1 insegura
        assert upstream.calls_to("mirror-a.test") == 2

    @pytest.mark.asyncio
    async def test_bad_ca_bundle_fails_on_query_not_construction(self, make_overpass, upstream):
        client = make_overpass(ca_bundle="/nonexistent/ca.pem")
        with pytest.raises(OSError):
            await client.dispatch(QUERY.text)
        assert upstream.total_calls == 0


class TestOverpassFetch:
    @pytest.mark.asyncio
    async def test_cache_hit_skips_network(self, make_overpass, upstream):
        upstream.script = {"mirror-a.test": [overpass_json(GYM)]}
        client = make_overpass()
        first = await client.fetch(QUERY)
        second = await client.fetch(QUERY)
        assert first == second
        assert upstream.total_calls == 1

    @pytest.mark.asyncio
    async def test_stale_served_when_all_mirrors_fail(
        self, make_overpass, upstream, clock, caplog,
    ):
        upstream.script = {"mirror-a.test": [overpass_json(GYM), httpx.Response(503)]}
        client = make_overpass()
        fresh = await client.fetch(QUERY)

        clock.advance(601)   # TTL expirou
        upstream.script = {host: [httpx.Response(503)] for host in
                           ("mirror-a.test", "mirror-b.test", "mirror-c.test")}
        with caplog.at_level(logging.WARNING):
            stale = await client.fetch(QUERY)

        assert stale == fresh
        assert any("stale served" in r.getMessage().lower() for r in caplog.records)

    @pytest.mark.asyncio
    async def test_total_failure_without_cache_raises(self, make_overpass, upstream):
        upstream.script = {host: [httpx.ConnectError("down")] for host in
                           ("mirror-a.test", "mirror-b.test", "mirror-c.test")}
        with pytest.raises(UpstreamUnavailable):
            await make_overpass().fetch(QUERY)

    @pytest.mark.asyncio
    async def test_failed_fetch_does_not_write_cache(self, make_overpass, upstream, cache):
        upstream.script = {host: [httpx.Response(500)] for host in
                           ("mirror-a.test", "mirror-b.test", "mirror-c.test")}
        with pytest.raises(UpstreamUnavailable):
            await make_overpass().fetch(QUERY)
        assert await cache.get_stale(QUERY.cache_key) is None

    @pytest.mark.asyncio
    async def test_no_endpoints(self, make_overpass):
        with pytest.raises(UpstreamUnavailable):
            await make_overpass(endpoints=[]).fetch(QUERY)

    @pytest.mark.asyncio
    async def test_zero_ttl_disables_cache(self, make_overpass, upstream):
        upstream.script = {"mirror-a.test": [overpass_json(GYM), overpass_json(GYM)]}
        client = make_overpass(cache_ttl=0)
        assert client.cache_ttl == 0
        await client.fetch(QUERY)
        await client.fetch(QUERY)
        assert upstream.total_calls == 2


class TestFoursquareClient:
    SEARCH = CompiledQuery(
        text="ll=33.893800%2C35.501800&radius=1500&query=gym&limit=50&sort=DISTANCE",
        namespace="foursquare",
        category="gym",
        params=(("ll", "33.893800,35.501800"), ("radius", "1500"), ("query", "gym"),
                ("limit", "50"), ("sort", "DISTANCE")),
    )

    @pytest.mark.asyncio
    async def test_disabled_without_key(self, cache, upstream):
        client = FoursquareClient(api_key="", cache=cache, transport=upstream.transport)
        assert client.enabled is False
        assert await client.search(self.SEARCH) is None
        assert upstream.total_calls == 0

    @pytest.mark.asyncio
    async def test_search_sends_key_and_params(self, cache, upstream):
        upstream.script = {"fsq.test": [httpx.Response(200, json={"results": [{"name": "X"}]})]}
        client = FoursquareClient(
            api_key="fsq-secret", cache=cache,
            base_url="https://fsq.test/v3", transport=upstream.transport,
        )
        results = await client.search(self.SEARCH)
        assert results == [{"name": "X"}]
        request = upstream.requests[0]
        assert request.url.path == "/v3/places/search"
        assert request.headers["authorization"] == "fsq-secret"
        assert request.url.params["query"] == "gym"
        assert request.url.params["sort"] == "DISTANCE"

    @pytest.mark.asyncio
    async def test_search_is_cached(self, cache, upstream):
        upstream.script = {"fsq.test": [httpx.Response(200, json={"results": []})]}
        client = FoursquareClient(
            api_key="k", cache=cache, base_url="https://fsq.test/v3", transport=upstream.transport,
        )
        assert await client.search(self.SEARCH) == []
        assert await client.search(self.SEARCH) == []
        assert upstream.total_calls == 1

    @pytest.mark.asyncio
    async def test_failure_returns_none(self, cache, upstream):
        upstream.script = {"fsq.test": [httpx.Response(401, json={"message": "bad key"})]}
        client = FoursquareClient(
            api_key="k", cache=cache, base_url="https://fsq.test/v3", transport=upstream.transport,
        )
        assert await client.search(self.SEARCH) is None


class TestHTTPClient:
    def test_build_verify_default(self):
        assert build_verify("") is True

    @pytest.mark.asyncio
    async def test_user_agent_header(self, upstream):
        upstream.script = {"x.test": [httpx.Response(200, json={"ok": True})]}
        async with HTTPClient(user_agent="Hayetak/1.0 (+contact)", transport=upstream.transport) as http:
            assert await http.get("https://x.test/") == {"ok": True}
        assert upstream.requests[0].headers["user-agent"] == "Hayetak/1.0 (+contact)"
