import re
import logging
import urllib.parse
from urllib.parse import urljoin

from services.errors import PlaylistRewriteFailed

logger = logging.getLogger(__name__)

_URI_ATTRIBUTE = re.compile(r'URI="([^"]*)"')


def is_relay_url(reference: str) -> bool:
    """Absolute /proxy?url=... reference, whichever host the relay was reached through."""
    try:
        parsed = urllib.parse.urlsplit(reference)
    except ValueError:
        return False
    return (parsed.scheme in ("http", "https") and bool(parsed.netloc) and parsed.path == "/proxy"
            and "url" in urllib.parse.parse_qs(parsed.query))


class ManifestRewriter:
    """Rewrites HLS playlist references so every fetch goes back through /proxy."""

    @staticmethod
    def build_proxy_url(target_url: str, proxy_base: str, api_key: str = None,
                        provider_id: str = None, forwarded_headers: dict = None) -> str:
        params = [("url", target_url)]
        if api_key:
            params.append(("key", api_key))
        if provider_id:
            params.append(("providerId", provider_id))
        for name, value in (forwarded_headers or {}).items():
            params.append((f"h_{name}", value))
        return f"{proxy_base}/proxy?{urllib.parse.urlencode(params, quote_via=urllib.parse.quote)}"

    @staticmethod
    def rewrite(content: str, base_url: str, proxy_base: str, api_key: str = None,
                provider_id: str = None, forwarded_headers: dict = None) -> str:
        """Resolves each URI line and URI="..." attribute against base_url and
        points it at the relay. URLs already pointing at the relay are kept, so
        rewriting twice is the same as rewriting once.
        """
        if not content.lstrip("\ufeff").lstrip().startswith("#EXTM3U"):
            raise PlaylistRewriteFailed("Content does not start with #EXTM3U")

        relay_prefix = f"{proxy_base}/proxy?"

        def _relay(reference: str) -> str:
            if reference.startswith(relay_prefix) or is_relay_url(reference):
                return reference
            try:
                absolute_url = urljoin(base_url, reference)
            except ValueError as e:
                raise PlaylistRewriteFailed(f"Unresolvable reference {reference!r}: {e}")
            return ManifestRewriter.build_proxy_url(
                absolute_url, proxy_base, api_key, provider_id, forwarded_headers
            )

        rewritten_lines = []
        for raw_line in content.splitlines():
            line = raw_line.strip()
            if not line:
                rewritten_lines.append(raw_line)
            elif line.startswith("#"):
                # EXT-X-KEY, EXT-X-MAP, EXT-X-MEDIA, I-FRAME variants...
                if 'URI="' in line:
                    line = _URI_ATTRIBUTE.sub(lambda m: f'URI="{_relay(m.group(1))}"', line)
                rewritten_lines.append(line)
            else:
                rewritten_lines.append(_relay(line))

        result = "\n".join(rewritten_lines)
        if content.endswith("\n"):
            result += "\n"
        return result
