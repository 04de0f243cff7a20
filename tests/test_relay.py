"""End-to-end relay tests against a fake upstream with a hit counter."""

import asyncio
from urllib.parse import parse_qs, urlsplit

import pytest
from aiohttp import ClientPayloadError, web
from aiohttp.test_utils import unused_port

from app import create_app
from extractors.registry import ProviderRegistry
from utils.decode_stages import encode_base64, xor_bytes

API_KEY = "s3cret-key"
SPOOF_UA = "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_0) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.0 Safari/605.1.15"
SEGMENT = bytes(range(256)) * 8
DIV_ID = "AbC9xQ"


def _upstream_app(hits, gate, dropped):
    """`gate` holds back the second half of /gated.ts; `dropped` is set when /endless.ts loses its reader."""

    async def record(request):
        hits.append((request.path, dict(request.headers)))

    async def playlist(request):
        await record(request)
        return web.Response(text="#EXTM3U\n#EXTINF:4.0,\nseg1.ts\n", content_type="application/vnd.apple.mpegurl")

    async def segment(request):
        await record(request)
        if "Range" in request.headers:
            return web.Response(status=206, body=SEGMENT[:100], content_type="video/mp2t",
                                headers={"Content-Range": f"bytes 0-99/{len(SEGMENT)}", "Accept-Ranges": "bytes"})
        return web.Response(body=SEGMENT, content_type="video/mp2t", headers={"Accept-Ranges": "bytes"})

    async def echo(request):
        await record(request)
        return web.json_response(dict(request.headers))

    async def gone(request):
        await record(request)
        return web.Response(status=404, text="gone", content_type="text/plain")

    async def broken_playlist(request):
        await record(request)
        return web.Response(text="this is not a playlist", content_type="application/vnd.apple.mpegurl")

    async def slow(request):
        await record(request)
        await asyncio.sleep(2)
        return web.Response(text="too late")

    async def truncated(request):
        await record(request)
        content_type = "application/vnd.apple.mpegurl" if request.path.endswith(".m3u8") else "video/mp2t"
        resp = web.StreamResponse(headers={"Content-Type": content_type})
        resp.content_length = 5000
        await resp.prepare(request)
        await resp.write(b"#EXTM3U\nseg1.ts\n")
        request.transport.close()
        return resp

    async def gated(request):
        await record(request)
        resp = web.StreamResponse(headers={"Content-Type": "video/mp2t"})
        await resp.prepare(request)
        await resp.write(b"A" * 1024)
        await gate.wait()
        await resp.write(b"B" * 1024)
        return resp

    async def endless(request):
        await record(request)
        resp = web.StreamResponse(headers={"Content-Type": "video/mp2t"})
        await resp.prepare(request)
        try:
            while True:
                await resp.write(b"x" * 1024)
                await asyncio.sleep(0.05)
        except (ConnectionError, asyncio.CancelledError):
            dropped.set()
            raise

    async def huge_error(request):
        await record(request)
        return web.Response(status=503, body=b"e" * 100_000, content_type="text/plain")

    async def page(request):
        await record(request)
        if request.match_info["id"] == "missing":
            return web.Response(status=404, text="no such title")
        target = f"http://{request.host}/live/index.m3u8"
        payload = encode_base64(xor_bytes(target, DIV_ID))
        html = (
            "<html><body><h1>Player</h1>"
            f'<div id="{DIV_ID}" style="display:none;">{payload}</div>'
            "</body></html>"
        )
        return web.Response(text=html, content_type="text/html")

    app = web.Application()
    app.router.add_get("/live/index.m3u8", playlist)
    app.router.add_get("/live/seg1.ts", segment)
    app.router.add_get("/echo", echo)
    app.router.add_get("/gone", gone)
    app.router.add_get("/broken.m3u8", broken_playlist)
    app.router.add_get("/slow", slow)
    app.router.add_get("/page/{id}", page)
    app.router.add_get("/short.m3u8", truncated)
    app.router.add_get("/short.ts", truncated)
    app.router.add_get("/gated.ts", gated)
    app.router.add_get("/endless.ts", endless)
    app.router.add_get("/huge-error", huge_error)
    return app


@pytest.fixture
async def upstream(aiohttp_server):
    hits = []
    gate = asyncio.Event()
    dropped = asyncio.Event()
    server = await aiohttp_server(_upstream_app(hits, gate, dropped))
    server.hits = hits
    server.gate = gate
    server.dropped = dropped
    server.base = f"http://{server.host}:{server.port}"
    return server


@pytest.fixture
def relay_registry(tables, upstream):
    def spoofed(provider_id, stages, **extra):
        data = {
            "id": provider_id,
            "headerProfile": {"userAgent": SPOOF_UA, "referer": "https://embed.test/", "origin": "https://embed.test"},
            "stageSequence": stages,
        }
        data.update(extra)
        return data

    return ProviderRegistry.from_dict({"providers": [
        spoofed("spoof", []),
        spoofed("b64", [{"kind": "base64"}]),
        spoofed("b64relay", [{"kind": "base64"}], extractMode="relay"),
        spoofed(
            "page",
            [{"kind": "base64"}, {"kind": "xor", "keySource": {"type": "context", "name": "div_id"}}],
            auxiliaryFetch={"url": f"{upstream.base}/page/{{id}}"},
            payloadLocator={"kind": "hidden_div"},
        ),
    ]}, tables)


@pytest.fixture
async def relay(aiohttp_client, tables, relay_registry):
    app = create_app(tables=tables, registry=relay_registry, api_password=API_KEY,
                     upstream_timeout=0.5, global_proxies=[], transport_routes=[])
    return await aiohttp_client(app)


def _relay_base(client):
    return f"http://{client.server.host}:{client.server.port}"


class TestAuth:
    async def test_missing_key_never_reaches_upstream(self, relay, upstream):
        resp = await relay.get("/proxy", params={"url": f"{upstream.base}/live/index.m3u8"})
        assert resp.status == 401
        assert upstream.hits == []

    async def test_wrong_key(self, relay, upstream):
        resp = await relay.get("/proxy", params={"url": f"{upstream.base}/live/index.m3u8", "key": "guess"})
        assert resp.status == 401
        assert upstream.hits == []

    async def test_header_key_accepted(self, relay, upstream):
        resp = await relay.get("/proxy", params={"url": f"{upstream.base}/live/seg1.ts"},
                               headers={"X-API-Key": API_KEY})
        assert resp.status == 200

    async def test_unset_secret_rejects_everything(self, aiohttp_client, tables, relay_registry, upstream):
        app = create_app(tables=tables, registry=relay_registry, api_password="",
                         global_proxies=[], transport_routes=[])
        client = await aiohttp_client(app)
        for key in ("", "anything"):
            resp = await client.get("/proxy", params={"url": f"{upstream.base}/echo", "key": key})
            assert resp.status == 401
        assert upstream.hits == []

    async def test_extract_requires_key(self, relay):
        resp = await relay.get("/extract", params={"providerId": "b64", "payload": "aGk"})
        assert resp.status == 401


class TestProxy:
    async def test_playlist_rewritten_through_relay(self, relay, upstream):
        resp = await relay.get("/proxy", params={"url": f"{upstream.base}/live/index.m3u8", "key": API_KEY})
        assert resp.status == 200
        assert resp.headers["Content-Type"].startswith("application/vnd.apple.mpegurl")
        text = await resp.text()
        (segment_line,) = [line for line in text.splitlines() if line and not line.startswith("#")]
        assert segment_line.startswith(f"{_relay_base(relay)}/proxy?")
        query = parse_qs(urlsplit(segment_line).query)
        assert query["url"] == [f"{upstream.base}/live/seg1.ts"]
        assert query["key"] == [API_KEY]

        # The rewritten reference is fetchable through the relay
        parts = urlsplit(segment_line)
        seg = await relay.get(f"{parts.path}?{parts.query}")
        assert seg.status == 200
        assert await seg.read() == SEGMENT

    async def test_segment_streamed_unchanged(self, relay, upstream):
        resp = await relay.get("/proxy", params={"url": f"{upstream.base}/live/seg1.ts", "key": API_KEY})
        assert resp.status == 200
        assert resp.headers["Content-Type"] == "video/mp2t"
        assert resp.headers["Content-Length"] == str(len(SEGMENT))
        assert resp.headers["Accept-Ranges"] == "bytes"
        assert resp.headers["Access-Control-Allow-Origin"] == "*"
        assert await resp.read() == SEGMENT

    async def test_range_passthrough(self, relay, upstream):
        resp = await relay.get("/proxy", params={"url": f"{upstream.base}/live/seg1.ts", "key": API_KEY},
                               headers={"Range": "bytes=0-99"})
        assert resp.status == 206
        assert resp.headers["Content-Range"] == f"bytes 0-99/{len(SEGMENT)}"
        assert await resp.read() == SEGMENT[:100]

    async def test_profile_identity_is_spoofed(self, relay, upstream):
        resp = await relay.get(
            "/proxy",
            params={"url": f"{upstream.base}/echo", "key": API_KEY, "providerId": "spoof"},
            headers={"X-Forwarded-For": "203.0.113.7", "Referer": "https://client.example/"},
        )
        assert resp.status == 200
        seen = await resp.json()
        assert seen["User-Agent"] == SPOOF_UA
        assert seen["Referer"] == "https://embed.test/"
        assert seen["Origin"] == "https://embed.test"
        assert seen["Accept-Encoding"] == "identity"
        assert "X-Forwarded-For" not in seen

    async def test_default_identity_uses_target_origin(self, relay, upstream):
        resp = await relay.get("/proxy", params={"url": f"{upstream.base}/echo", "key": API_KEY})
        seen = await resp.json()
        assert seen["Referer"] == f"{upstream.base}/"
        assert seen["Origin"] == upstream.base
        assert "Mozilla" in seen["User-Agent"]

    async def test_header_params_override_profile(self, relay, upstream):
        resp = await relay.get("/proxy", params={
            "url": f"{upstream.base}/echo", "key": API_KEY, "providerId": "spoof",
            "h_referer": "https://other.test/", "h_X-Custom": "1",
        })
        seen = await resp.json()
        assert seen["Referer"] == "https://other.test/"
        assert seen["X-Custom"] == "1"
        assert seen["User-Agent"] == SPOOF_UA

    async def test_upstream_error_passed_through(self, relay, upstream):
        resp = await relay.get("/proxy", params={"url": f"{upstream.base}/gone", "key": API_KEY})
        assert resp.status == 404
        assert resp.headers["Content-Type"].startswith("text/plain")
        assert await resp.text() == "gone"

    async def test_malformed_playlist_served_as_is(self, relay, upstream):
        resp = await relay.get("/proxy", params={"url": f"{upstream.base}/broken.m3u8", "key": API_KEY})
        assert resp.status == 200
        assert await resp.text() == "this is not a playlist"

    async def test_timeout_before_response(self, relay, upstream):
        resp = await relay.get("/proxy", params={"url": f"{upstream.base}/slow", "key": API_KEY})
        assert resp.status == 504
        assert (await resp.json())["error"].startswith("Upstream timeout")

    async def test_refused_connection(self, relay):
        target = f"http://127.0.0.1:{unused_port()}/live/index.m3u8"
        resp = await relay.get("/proxy", params={"url": target, "key": API_KEY})
        assert resp.status == 502
        assert "connection failed" in (await resp.json())["error"]

    async def test_truncated_playlist_is_bad_gateway(self, relay, upstream):
        resp = await relay.get("/proxy", params={"url": f"{upstream.base}/short.m3u8", "key": API_KEY})
        assert resp.status == 502
        assert (await resp.json())["error"].startswith("Upstream")

    async def test_error_body_is_bounded(self, aiohttp_client, tables, relay_registry, upstream):
        app = create_app(tables=tables, registry=relay_registry, api_password=API_KEY, upstream_timeout=0.5,
                         max_playlist_bytes=64, global_proxies=[], transport_routes=[])
        client = await aiohttp_client(app)
        resp = await client.get("/proxy", params={"url": f"{upstream.base}/huge-error", "key": API_KEY})
        assert resp.status == 503
        assert await resp.read() == b"e" * 64

    async def test_empty_header_param_drops_header(self, relay, upstream):
        resp = await relay.get("/proxy", params={"url": f"{upstream.base}/echo", "key": API_KEY, "h_Origin": ""})
        seen = await resp.json()
        assert "Origin" not in seen
        assert seen["Referer"] == f"{upstream.base}/"

    async def test_noreferer_drops_referer_and_origin(self, relay, upstream):
        resp = await relay.get("/proxy", params={
            "url": f"{upstream.base}/echo", "key": API_KEY, "providerId": "spoof", "noreferer": "1",
        })
        seen = await resp.json()
        assert "Referer" not in seen
        assert "Origin" not in seen
        assert seen["User-Agent"] == SPOOF_UA

    async def test_noreferer_carried_into_rewritten_playlist(self, relay, upstream):
        resp = await relay.get("/proxy", params={
            "url": f"{upstream.base}/live/index.m3u8", "key": API_KEY, "noref": "true",
        })
        segment_url = next(line for line in (await resp.text()).splitlines() if line and not line.startswith("#"))
        query = parse_qs(urlsplit(segment_url).query, keep_blank_values=True)
        assert query["h_Referer"] == [""]
        assert query["h_Origin"] == [""]

        parts = urlsplit(segment_url)
        await relay.get(f"{parts.path}?{parts.query}")
        path, headers = upstream.hits[-1]
        assert path == "/live/seg1.ts"
        assert "Referer" not in headers
        assert "Origin" not in headers

    async def test_missing_or_invalid_url(self, relay):
        assert (await relay.get("/proxy", params={"key": API_KEY})).status == 400
        assert (await relay.get("/proxy", params={"key": API_KEY, "url": "file:///etc/passwd"})).status == 400

    async def test_unknown_provider(self, relay, upstream):
        resp = await relay.get("/proxy", params={"url": f"{upstream.base}/echo", "key": API_KEY, "providerId": "nope"})
        assert resp.status == 404
        assert upstream.hits == []

    async def test_preflight(self, relay):
        resp = await relay.options("/proxy")
        assert resp.status == 200
        assert resp.headers["Access-Control-Allow-Origin"] == "*"
        assert "X-API-Key" in resp.headers["Access-Control-Allow-Headers"]


class TestStreaming:
    async def test_upstream_cut_mid_stream_aborts_client(self, relay, upstream):
        resp = await relay.get("/proxy", params={"url": f"{upstream.base}/short.ts", "key": API_KEY})
        assert resp.status == 200
        assert resp.headers["Content-Length"] == "5000"
        with pytest.raises(ClientPayloadError):
            await resp.read()

    async def test_body_reaches_client_before_upstream_finishes(self, relay, upstream):
        resp = await relay.get("/proxy", params={"url": f"{upstream.base}/gated.ts", "key": API_KEY})
        assert resp.status == 200
        first = await asyncio.wait_for(resp.content.readexactly(1024), timeout=5)
        assert first == b"A" * 1024
        assert not upstream.gate.is_set()
        upstream.gate.set()
        assert await resp.read() == b"B" * 1024

    async def test_client_disconnect_releases_upstream(self, relay, upstream):
        resp = await relay.get("/proxy", params={"url": f"{upstream.base}/endless.ts", "key": API_KEY})
        await asyncio.wait_for(resp.content.readexactly(1024), timeout=5)
        resp.close()
        await asyncio.wait_for(upstream.dropped.wait(), timeout=5)


class TestExtract:
    async def test_json_mode(self, relay, upstream):
        target = f"{upstream.base}/live/index.m3u8"
        params = {"providerId": "b64", "key": API_KEY, "payload": encode_base64(target, url_safe=True)}
        resp = await relay.get("/extract", params=params)
        assert resp.status == 200
        body = await resp.json()
        assert body["providerId"] == "b64"
        assert body["url"] == target
        assert body["cached"] is False
        assert body["stages"] == ["base64"]
        assert parse_qs(urlsplit(body["proxyUrl"]).query)["url"] == [target]
        assert upstream.hits == []

        again = await (await relay.get("/extract", params=params)).json()
        assert again["cached"] is True

    async def test_post_body_and_form(self, relay, upstream):
        target = f"{upstream.base}/live/seg1.ts"
        payload = encode_base64(target)
        raw = await relay.post("/extract", params={"providerId": "b64", "key": API_KEY}, data=payload)
        assert (await raw.json())["url"] == target
        form = await relay.post("/extract", params={"providerId": "b64", "key": API_KEY}, data={"payload": payload})
        assert (await form.json())["url"] == target

    async def test_relay_mode_streams_decoded_url(self, relay, upstream):
        payload = encode_base64(f"{upstream.base}/live/seg1.ts", url_safe=True)
        resp = await relay.get("/extract", params={"providerId": "b64relay", "key": API_KEY, "payload": payload})
        assert resp.status == 200
        assert await resp.read() == SEGMENT
        path, headers = upstream.hits[-1]
        assert path == "/live/seg1.ts"
        assert headers["User-Agent"] == SPOOF_UA

    async def test_relay_mode_rejects_non_url(self, relay, upstream):
        payload = encode_base64("hello world", url_safe=True)
        resp = await relay.get("/extract", params={"providerId": "b64relay", "key": API_KEY, "payload": payload})
        assert resp.status == 422
        assert upstream.hits == []

    async def test_decode_failure(self, relay):
        resp = await relay.get("/extract", params={"providerId": "b64", "key": API_KEY, "payload": "!!!!"})
        assert resp.status == 422
        assert "base64" in (await resp.json())["error"]

    async def test_unknown_provider(self, relay):
        resp = await relay.get("/extract", params={"providerId": "nope", "key": API_KEY, "payload": "x"})
        assert resp.status == 404

    async def test_missing_payload(self, relay):
        resp = await relay.get("/extract", params={"providerId": "b64", "key": API_KEY})
        assert resp.status == 400

    async def test_context_params(self, relay, upstream):
        # ctx_ parameters feed context-keyed stages when the payload is supplied directly
        target = f"{upstream.base}/live/index.m3u8"
        payload = encode_base64(xor_bytes(target, DIV_ID), url_safe=True)
        resp = await relay.get("/extract", params={
            "providerId": "page", "key": API_KEY, "payload": payload, "ctx_div_id": DIV_ID,
        })
        assert (await resp.json())["url"] == target


class TestAuxiliaryFetch:
    async def test_payload_located_in_fetched_page(self, relay, upstream):
        resp = await relay.get("/extract", params={"providerId": "page", "key": API_KEY, "id": "tt0133093"})
        assert resp.status == 200
        body = await resp.json()
        assert body["url"] == f"{upstream.base}/live/index.m3u8"
        assert body["stages"] == ["base64", "xor(context)"]

        path, headers = upstream.hits[0]
        assert path == "/page/tt0133093"
        assert headers["Referer"] == "https://embed.test/"
        assert headers["User-Agent"] == SPOOF_UA

    async def test_missing_template_variable(self, relay, upstream):
        resp = await relay.get("/extract", params={"providerId": "page", "key": API_KEY})
        assert resp.status == 400
        assert upstream.hits == []

    async def test_upstream_page_error(self, relay, upstream):
        resp = await relay.get("/extract", params={"providerId": "page", "key": API_KEY, "id": "missing"})
        assert resp.status == 502


class TestInfoRoutes:
    async def test_health_needs_no_key(self, relay):
        resp = await relay.get("/health")
        assert resp.status == 200
        assert (await resp.json())["status"] == "ok"

    async def test_api_info(self, relay):
        assert (await relay.get("/api/info")).status == 401
        resp = await relay.get("/api/info", params={"key": API_KEY})
        assert resp.status == 200
        info = await resp.json()
        assert info["providers"] == ["b64", "b64relay", "page", "spoof"]
        assert info["decrypt_tables"] == ["blocks", "shuffle"]
        assert "/extract" in info["endpoints"]
