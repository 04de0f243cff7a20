import re
import asyncio
import logging
from urllib.parse import urlparse
from aiohttp import ClientTimeout, ClientError

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/136.0.0.0 Safari/537.36"

# Headers that would reveal the client behind the relay
LEAKING_HEADERS = ("x-forwarded-for", "x-real-ip", "forwarded", "via")

_HIDDEN_DIV = re.compile(
    r'<div\s+id="(?P<div_id>[A-Za-z0-9_-]+)"\s+style="display:\s*none;?"\s*>(?P<payload>[^<]+)</div>',
    re.IGNORECASE,
)

_CANONICAL_NAMES = {
    "user-agent": "User-Agent",
    "referer": "Referer",
    "origin": "Origin",
    "authorization": "Authorization",
    "cookie": "Cookie",
}


class ExtractorError(Exception):
    """Payload could not be fetched or located."""

    def __init__(self, message, status=502):
        super().__init__(message)
        self.status = status


def origin_of(url: str) -> str:
    parsed = urlparse(url)
    return f"{parsed.scheme}://{parsed.netloc}"


def build_upstream_headers(target_url: str, header_profile=None, overrides: dict = None) -> dict:
    """Spoofed identity for an upstream fetch.

    The provider profile wins when given; otherwise a browser User-Agent and
    the target's own origin as Referer/Origin. `overrides` (h_ parameters)
    are applied last and an empty value removes the header.
    Identity-leaking headers never survive.
    """
    if header_profile is not None:
        headers = header_profile.as_headers()
    else:
        origin = origin_of(target_url)
        headers = {"User-Agent": DEFAULT_USER_AGENT, "Referer": f"{origin}/", "Origin": origin}

    for name, value in (overrides or {}).items():
        canonical = _CANONICAL_NAMES.get(name.lower(), name)
        # drop any differently-cased duplicate before overriding
        for existing in [k for k in headers if k.lower() == name.lower()]:
            del headers[existing]
        if value:
            headers[canonical] = value

    for name in [k for k in headers if k.lower() in LEAKING_HEADERS]:
        del headers[name]
    return headers


def locate_payload(locator, document: str):
    """Pulls (payload, context) out of a fetched page according to the locator."""
    if locator.kind == "raw":
        payload = document.strip()
        if not payload:
            raise ExtractorError("Empty document", status=422)
        return payload, {}

    if locator.kind == "hidden_div":
        pattern = re.compile(locator.pattern, re.IGNORECASE) if locator.pattern else _HIDDEN_DIV
        match = pattern.search(document)
        if not match:
            raise ExtractorError("Hidden payload element not found", status=422)
        groups = match.groupdict()
        if "payload" in groups:
            return groups["payload"].strip(), {"div_id": groups.get("div_id") or ""}
        return match.group(2).strip(), {"div_id": match.group(1)}

    if locator.kind == "regex":
        match = re.search(locator.pattern, document, re.DOTALL)
        if not match:
            raise ExtractorError(f"Payload pattern did not match: {locator.pattern}", status=422)
        try:
            payload = match.group(locator.group)
        except IndexError:
            raise ExtractorError(f"Payload pattern has no group {locator.group}", status=422)
        context = {k: v for k, v in match.groupdict().items() if v is not None}
        return (payload or "").strip(), context

    raise ExtractorError(f"Unsupported payload locator '{locator.kind}'", status=422)


class AuxiliaryFetcher:
    """Fetches a provider page with the profile's identity and locates the payload in it.

    `get_session` is the relay's session factory, so proxy routing applies here too.
    """

    def __init__(self, get_session, timeout: float = 20):
        self.get_session = get_session
        self.timeout = timeout

    def build_url(self, profile, variables: dict) -> str:
        try:
            return profile.auxiliary_fetch.url.format(**variables)
        except KeyError as e:
            raise ExtractorError(f"Missing template variable {e} for provider '{profile.id}'", status=400)

    async def fetch_document(self, profile, url: str) -> str:
        template = profile.auxiliary_fetch
        headers = build_upstream_headers(url, profile.header_profile, dict(template.headers))
        session, ssl_arg = await self.get_session(url)
        timeout = ClientTimeout(total=None, sock_connect=self.timeout, sock_read=self.timeout)
        logger.info(f"📄 [{profile.id}] Fetching payload page: {url}")
        try:
            async with session.request(template.method, url, headers=headers,
                                       timeout=timeout, ssl=ssl_arg) as resp:
                if resp.status >= 400:
                    raise ExtractorError(f"Payload page returned {resp.status}", status=502)
                return await resp.text(errors="replace")
        except asyncio.TimeoutError:
            raise ExtractorError(f"Timeout fetching payload page {url}", status=504)
        except ClientError as e:
            raise ExtractorError(f"Cannot fetch payload page {url}: {e}", status=502)

    async def extract(self, profile, variables: dict):
        """Returns (payload, context, page_url)."""
        url = self.build_url(profile, variables)
        document = await self.fetch_document(profile, url)
        payload, context = locate_payload(profile.payload_locator, document)
        logger.info(f"🔎 [{profile.id}] Located payload ({len(payload)} chars, context keys: {sorted(context)})")
        return payload, context, url
