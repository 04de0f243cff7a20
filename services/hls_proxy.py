import asyncio
import logging
import time
from urllib.parse import urlparse
from aiohttp import web, ClientSession, ClientTimeout, TCPConnector, ClientConnectionError, ClientError
from aiohttp_socks import ProxyConnector

from config import GLOBAL_PROXIES, TRANSPORT_ROUTES, get_proxy_for_url, get_ssl_setting_for_url, check_password
from extractors.generic import AuxiliaryFetcher, ExtractorError, build_upstream_headers
from services.errors import (
    PlaylistRewriteFailed, ProfileNotFound, RelayError, Unauthorized, UnknownProvider,
    UpstreamError, UpstreamTimeout,
)
from services.manifest_rewriter import ManifestRewriter

logger = logging.getLogger(__name__)

# Response headers carried over from upstream besides Content-Type
PASSTHROUGH_HEADERS = ('Content-Length', 'Content-Range', 'Accept-Ranges')

# Strip Referer and Origin upstream
NO_REFERER_PARAMS = ('noreferer', 'noref')

# Query parameters of /extract that are not auxiliary-fetch template variables
RESERVED_EXTRACT_PARAMS = ('key', 'providerId', 'payload') + NO_REFERER_PARAMS

PLAYLIST_EXTENSIONS = ('.m3u8', '.m3u')


def is_http_url(value: str) -> bool:
    try:
        parsed = urlparse(value)
    except ValueError:
        return False
    return parsed.scheme in ('http', 'https') and bool(parsed.netloc)


def header_overrides(request) -> dict:
    """h_<Header>=<value> query parameters. An empty value drops the header upstream."""
    overrides = {name[2:]: value for name, value in request.query.items() if name.startswith('h_') and len(name) > 2}
    if any(request.query.get(name, '').lower() in ('1', 'true', 'yes') for name in NO_REFERER_PARAMS):
        overrides['Referer'] = ''
        overrides['Origin'] = ''
    return overrides


def context_params(request) -> dict:
    """ctx_<name>=<value> query parameters, for payloads supplied together with their context."""
    return {name[4:]: value for name, value in request.query.items() if name.startswith('ctx_') and len(name) > 4}


class HLSProxy:
    """Authenticated relay: decodes provider payloads and streams upstream media with a spoofed identity."""

    def __init__(self, registry, pipeline, api_password=None, upstream_timeout: float = 20,
                 cors_origin: str = '*', max_playlist_bytes: int = 5 * 1024 * 1024,
                 global_proxies=None, transport_routes=None):
        self.registry = registry
        self.pipeline = pipeline
        self.api_password = api_password or ""
        self.upstream_timeout = upstream_timeout
        self.cors_origin = cors_origin
        self.max_playlist_bytes = max_playlist_bytes
        self.global_proxies = GLOBAL_PROXIES if global_proxies is None else global_proxies
        self.transport_routes = TRANSPORT_ROUTES if transport_routes is None else transport_routes

        # Shared session for direct connections
        self.session = None

        # proxy_url -> session, reused across requests
        self.proxy_sessions = {}

        self.fetcher = AuxiliaryFetcher(self._upstream_session, upstream_timeout)

    # --- Sessions ---

    async def _get_session(self):
        if self.session is None or self.session.closed:
            connector = TCPConnector(
                limit=0,
                limit_per_host=0,
                keepalive_timeout=60,
                enable_cleanup_closed=True
            )
            # Deadlines are per request (connect + per read), never on the whole stream
            self.session = ClientSession(timeout=ClientTimeout(total=None), connector=connector)
        return self.session

    async def _get_proxy_session(self, url: str):
        """Session for the URL: a cached ProxyConnector session when a route or global proxy applies."""
        proxy = get_proxy_for_url(url, self.transport_routes, self.global_proxies)
        if not proxy:
            return await self._get_session()

        cached_session = self.proxy_sessions.get(proxy)
        if cached_session is not None and not cached_session.closed:
            logger.debug(f"♻️ Reusing cached proxy session: {proxy}")
            return cached_session

        logger.info(f"🌍 Creating proxy session: {proxy}")
        try:
            connector = ProxyConnector.from_url(proxy, limit=0, limit_per_host=0, keepalive_timeout=60)
        except ValueError as e:
            logger.warning(f"⚠️ Invalid proxy URL {proxy}: {e}, falling back to direct")
            return await self._get_session()
        session = ClientSession(timeout=ClientTimeout(total=None), connector=connector)
        self.proxy_sessions[proxy] = session
        return session

    async def _upstream_session(self, url: str):
        """(session, ssl) for an upstream fetch, honouring DISABLE_SSL routes."""
        session = await self._get_proxy_session(url)
        disable_ssl = get_ssl_setting_for_url(url, self.transport_routes)
        return session, not disable_ssl

    # --- Helpers ---

    def _cors_headers(self, headers: dict = None) -> dict:
        headers = dict(headers or {})
        headers['Access-Control-Allow-Origin'] = self.cors_origin
        headers['Access-Control-Expose-Headers'] = 'Content-Length, Content-Range'
        return headers

    def _error(self, status: int, message: str, **extra):
        body = {"error": message}
        body.update(extra)
        return web.json_response(body, status=status, headers=self._cors_headers())

    def _relay_error(self, error: RelayError):
        return self._error(error.status, str(error))

    def _unauthorized(self, request):
        error = Unauthorized()
        logger.warning(f"⛔ Access denied: invalid or missing API key. IP: {request.remote}")
        return web.Response(status=error.status, text=f"Unauthorized: {error}", headers=self._cors_headers())

    @staticmethod
    def _proxy_base(request) -> str:
        # Behind a reverse proxy the public scheme/host come from X-Forwarded-*
        scheme = request.headers.get('X-Forwarded-Proto', request.scheme)
        host = request.headers.get('X-Forwarded-Host', request.host)
        return f"{scheme}://{host}"

    @staticmethod
    def _supplied_key(request) -> str:
        return request.query.get('key') or request.headers.get('X-API-Key') or ''

    def _lookup_profile(self, provider_id):
        if not provider_id:
            return None
        try:
            return self.registry.get(provider_id)
        except ProfileNotFound:
            raise UnknownProvider(provider_id)

    def _is_playlist_candidate(self, stream_url: str, resp) -> bool:
        content_type = resp.headers.get('Content-Type', '').lower()
        if 'mpegurl' in content_type:
            return True
        if urlparse(stream_url).path.lower().endswith(PLAYLIST_EXTENSIONS):
            return True
        if content_type.startswith('text/'):
            length = resp.content_length
            return length is None or length <= self.max_playlist_bytes
        return False

    async def _read_bounded(self, resp):
        """Reads at most max_playlist_bytes. Returns (buffered chunks, complete)."""
        chunks = []
        size = 0
        async for chunk in resp.content.iter_chunked(8192):
            chunks.append(chunk)
            size += len(chunk)
            if size > self.max_playlist_bytes:
                return chunks, False
        return chunks, True

    # --- Handlers ---

    async def handle_proxy_request(self, request):
        """GET /proxy?url=<target>&key=<api key>[&providerId=<id>][&h_<Header>=<value>]"""
        if not check_password(request, self.api_password):
            return self._unauthorized(request)

        target_url = request.query.get('url')
        if not target_url:
            return self._error(400, "Missing 'url' parameter")
        if not is_http_url(target_url):
            return self._error(400, f"Not an http(s) URL: {target_url}")

        try:
            profile = self._lookup_profile(request.query.get('providerId'))
        except UnknownProvider as e:
            return self._error(e.status, str(e))

        return await self._proxy_stream(request, target_url, profile, header_overrides(request))

    async def handle_extractor_request(self, request):
        """GET|POST /extract?providerId=<id>&key=<api key>

        The payload comes from `payload=` (query or form field) or the raw
        body. Profiles with an auxiliary fetch take the page's template
        variables (e.g. `id=`) instead and the payload is located in the page.
        """
        if not check_password(request, self.api_password):
            return self._unauthorized(request)

        provider_id = request.query.get('providerId')
        if not provider_id:
            return self._error(400, "Missing 'providerId' parameter")
        try:
            profile = self._lookup_profile(provider_id)
        except UnknownProvider as e:
            return self._error(e.status, str(e), providerId=provider_id)

        payload = request.query.get('payload')
        if payload is None and request.method == 'POST' and request.can_read_body:
            if request.content_type in ('application/x-www-form-urlencoded', 'multipart/form-data'):
                form = await request.post()
                payload = form.get('payload')
            else:
                payload = (await request.text()).strip() or None

        context = context_params(request)
        if payload is None:
            if profile.auxiliary_fetch is None:
                return self._error(400, "Missing payload", providerId=provider_id)
            variables = {
                name: value for name, value in request.query.items()
                if name not in RESERVED_EXTRACT_PARAMS and not name.startswith(('h_', 'ctx_'))
            }
            try:
                payload, located_context, page_url = await self.fetcher.extract(profile, variables)
            except ExtractorError as e:
                logger.warning(f"⚠️ [{provider_id}] Payload extraction failed: {e}")
                return self._error(e.status, str(e), providerId=provider_id)
            context.update(located_context)

        attempt = self.pipeline.run(provider_id, payload, context or None)
        if not attempt.ok:
            reason = attempt.outcome.reason
            return self._error(reason.status, str(reason), providerId=provider_id,
                               correlationId=attempt.correlation_id)

        decoded_url = attempt.outcome.url
        if profile.extract_mode == 'relay':
            if not is_http_url(decoded_url):
                return self._error(422, "Decoded value is not a URL", providerId=provider_id,
                                   correlationId=attempt.correlation_id)
            logger.info(f"↪️ [{provider_id}] Relaying decoded URL: {decoded_url}")
            return await self._proxy_stream(request, decoded_url, profile, header_overrides(request))

        proxy_url = None
        if is_http_url(decoded_url):
            proxy_url = ManifestRewriter.build_proxy_url(
                decoded_url, self._proxy_base(request), self._supplied_key(request), provider_id,
                header_overrides(request)
            )
        return web.json_response({
            "providerId": provider_id,
            "url": decoded_url,
            "cached": attempt.cached,
            "correlationId": attempt.correlation_id,
            "stages": attempt.stages_applied,
            "proxyUrl": proxy_url,
        }, headers=self._cors_headers())

    async def handle_options(self, request):
        """CORS preflight."""
        headers = self._cors_headers({
            'Access-Control-Allow-Methods': 'GET, POST, OPTIONS',
            'Access-Control-Allow-Headers': 'Range, Content-Type, X-API-Key',
            'Access-Control-Max-Age': '86400'
        })
        return web.Response(headers=headers)

    async def _proxy_stream(self, request, stream_url, profile=None, overrides=None):
        """Fetches stream_url with the spoofed identity and streams it back.

        Playlists are buffered (bounded) and rewritten; everything else is
        forwarded chunk by chunk as it arrives.
        """
        headers = build_upstream_headers(stream_url, profile.header_profile if profile else None, overrides)
        if 'Range' in request.headers:
            headers['Range'] = request.headers['Range']
        # Lengths and ranges must describe the bytes we forward
        headers['Accept-Encoding'] = 'identity'

        provider_id = profile.id if profile else None
        session, ssl_arg = await self._upstream_session(stream_url)
        timeout = ClientTimeout(total=None, sock_connect=self.upstream_timeout, sock_read=self.upstream_timeout)
        started = time.monotonic()
        response = None
        try:
            async with session.get(stream_url, headers=headers, timeout=timeout, ssl=ssl_arg) as resp:
                content_type = resp.headers.get('Content-Type', '')
                elapsed_ms = int((time.monotonic() - started) * 1000)
                logger.info(f"📡 Upstream {resp.status} [{content_type or '-'}] in {elapsed_ms}ms: {stream_url}")

                if not 200 <= resp.status < 300:
                    error = UpstreamError(resp.status)
                    chunks, _ = await self._read_bounded(resp)
                    error_body = b''.join(chunks)[:self.max_playlist_bytes]
                    logger.warning(f"⚠️ {error} for {stream_url}")
                    passthrough = {'Content-Type': content_type} if content_type else {}
                    return web.Response(body=error_body, status=error.status, headers=self._cors_headers(passthrough))

                prefix = []
                if self._is_playlist_candidate(stream_url, resp):
                    prefix, complete = await self._read_bounded(resp)
                    if complete:
                        return self._playlist_response(request, resp, b''.join(prefix), stream_url,
                                                       provider_id, overrides)
                    logger.info(f"📦 Response exceeds {self.max_playlist_bytes} bytes, streaming unmodified: {stream_url}")

                response_headers = {}
                if content_type:
                    response_headers['Content-Type'] = content_type
                for name in PASSTHROUGH_HEADERS:
                    if name in resp.headers:
                        response_headers[name] = resp.headers[name]
                if 'Content-Encoding' in resp.headers:
                    # The client library decompresses, so the upstream length no longer applies
                    response_headers.pop('Content-Length', None)

                response = web.StreamResponse(status=resp.status, headers=self._cors_headers(response_headers))
                await response.prepare(request)
                for chunk in prefix:
                    await response.write(chunk)
                async for chunk in resp.content.iter_chunked(8192):
                    await response.write(chunk)
                await response.write_eof()
                return response

        except asyncio.TimeoutError:
            logger.warning(f"⏱️ Upstream timeout after {self.upstream_timeout}s: {stream_url}")
            return self._upstream_failed(request, response, stream_url, UpstreamTimeout(f"Upstream timeout: {stream_url}"))

        except ConnectionResetError as e:
            if request.transport is None or request.transport.is_closing():
                logger.info(f"ℹ️ Client disconnected from stream: {stream_url} ({e})")
                return response if response is not None else web.Response(text="Client disconnected", status=499)
            logger.warning(f"⚠️ Upstream reset the connection {stream_url}: {e}")
            return self._upstream_failed(request, response, stream_url,
                                         UpstreamError(502, f"Upstream connection failed: {e}"))

        except ClientConnectionError as e:
            logger.warning(f"⚠️ Cannot reach upstream {stream_url}: {e}")
            return self._upstream_failed(request, response, stream_url,
                                         UpstreamError(502, f"Upstream connection failed: {e}"))

        except ClientError as e:
            # Truncated body, invalid URL, redirect loop
            logger.warning(f"⚠️ Upstream fetch failed {stream_url}: {type(e).__name__}: {e}")
            return self._upstream_failed(request, response, stream_url,
                                         UpstreamError(502, f"Upstream fetch failed: {type(e).__name__}"))

    def _upstream_failed(self, request, response, stream_url, error: RelayError):
        if response is not None and response.prepared:
            return self._abort_stream(request, response, stream_url, error)
        return self._relay_error(error)

    def _abort_stream(self, request, response, stream_url, reason):
        """Streaming already started: the only honest signal left is dropping the connection."""
        logger.warning(f"✂️ Stream aborted after start ({reason}): {stream_url}")
        if request.transport is not None:
            request.transport.close()
        return response

    def _playlist_response(self, request, resp, body: bytes, stream_url, provider_id, overrides):
        original_headers = {}
        if resp.headers.get('Content-Type'):
            original_headers['Content-Type'] = resp.headers['Content-Type']

        try:
            text = body.decode('utf-8')
        except UnicodeDecodeError:
            # Binary served under a text-ish type
            return web.Response(body=body, status=resp.status, headers=self._cors_headers(original_headers))

        if not text.lstrip('\ufeff').lstrip().startswith('#EXTM3U'):
            return web.Response(body=body, status=resp.status, headers=self._cors_headers(original_headers))

        try:
            rewritten = ManifestRewriter.rewrite(
                text, stream_url, self._proxy_base(request), self._supplied_key(request),
                provider_id, overrides
            )
        except PlaylistRewriteFailed as e:
            logger.warning(f"⚠️ Playlist rewrite failed for {stream_url}, serving original: {e}")
            return web.Response(body=body, status=resp.status, headers=self._cors_headers(original_headers))

        logger.info(f"📝 Rewrote playlist ({len(body)} bytes): {stream_url}")
        return web.Response(
            text=rewritten,
            status=resp.status,
            headers=self._cors_headers({
                'Content-Type': 'application/vnd.apple.mpegurl',
                'Cache-Control': 'no-cache'
            })
        )

    async def cleanup(self):
        """Closes the shared and per-proxy sessions."""
        if self.session and not self.session.closed:
            await self.session.close()
        for proxy_url, session in list(self.proxy_sessions.items()):
            if not session.closed:
                await session.close()
        self.proxy_sessions.clear()
        logger.info("🧹 Upstream sessions closed")


PROXY_KEY = web.AppKey("hls_proxy", HLSProxy)
