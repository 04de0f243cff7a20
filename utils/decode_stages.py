import re
import time
import base64
import binascii
import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple, Union
from urllib.parse import urlparse

from services.errors import StageError, UnmappedUnit

logger = logging.getLogger(__name__)

Value = Union[str, bytes]

STAGE_KINDS = (
    "base64",
    "base64url",
    "hex",
    "xor",
    "charShift",
    "substitutionTable",
    "reverse",
    "urlTemplateResolve",
)

# Hard bound on stages executed per request, speculative pass included
MAX_DECODE_STAGES = 8

KEY_SOURCE_TYPES = ("literal", "self", "context", "timestamp")

# Printable ASCII band used by the observed shift schemes
PRINTABLE_LOW = 0x20
PRINTABLE_HIGH = 0x7E
PRINTABLE_SPAN = PRINTABLE_HIGH - PRINTABLE_LOW + 1

_B64_CANDIDATE = re.compile(r"^[A-Za-z0-9+/_-]+={0,2}$")
_HEX_DIGITS = re.compile(r"^[0-9A-Fa-f]*$")
_WHITESPACE = re.compile(r"\s+")
_PLACEHOLDER = re.compile(r"\{([A-Za-z][A-Za-z0-9_]*)\}")
_MEDIA_URL = re.compile(r"^https?://[^\s/?#]+[^\s]*$", re.IGNORECASE)
_MEDIA_EXTENSION = re.compile(r"\.(?:m3u8|m3u|mpd|mp4|ts|m4s|mkv|webm|mp3|aac)(?=$|[/._-])")


@dataclass(frozen=True)
class StageSpec:
    """Stateless descriptor of one decode stage: a kind plus its parameters."""

    kind: str
    params: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "params", MappingProxyType(dict(self.params)))

    @classmethod
    def from_dict(cls, data: dict) -> "StageSpec":
        """Accepts {"kind": "xor", "keySource": {...}} or {"kind": ..., "params": {...}}."""
        params = dict(data.get("params") or {})
        params.update({k: v for k, v in data.items() if k not in ("kind", "params")})
        return cls(kind=data.get("kind", ""), params=params)

    def describe(self) -> str:
        if self.kind == "xor":
            return f"xor({self.params.get('keySource', {}).get('type', '?')})"
        if self.kind == "charShift":
            return f"charShift({self.params.get('delta')})"
        if self.kind == "substitutionTable":
            return f"substitutionTable({self.params.get('tableId')})"
        return self.kind


@dataclass
class StageEnv:
    """Per-request inputs a stage may read. Never mutated by the stages."""

    tables: Any = None
    placeholder_map: Mapping[str, str] = field(default_factory=dict)
    context: Mapping[str, str] = field(default_factory=dict)
    now: Optional[float] = None


# --- Value conversion ---

def as_text(value: Value) -> str:
    """Bytes become text; undecodable bytes survive as surrogate escapes."""
    if isinstance(value, bytes):
        return value.decode("utf-8", "surrogateescape")
    return value


def as_bytes(value: Value) -> bytes:
    if isinstance(value, str):
        return value.encode("utf-8", "surrogateescape")
    return value


def to_display(value: Value) -> str:
    """Final textual form of a decoded value (escapes replaced)."""
    return as_bytes(value).decode("utf-8", "replace")


# --- Predicates ---

def looks_like_media_url(value: Value) -> bool:
    """Termination predicate: an http(s) URL whose path names a playlist/media file."""
    if isinstance(value, bytes):
        try:
            value = value.decode("utf-8")
        except UnicodeDecodeError:
            return False
    text = value.strip()
    if not _MEDIA_URL.match(text):
        return False
    try:
        path = urlparse(text).path.lower()
    except ValueError:
        return False
    return _MEDIA_EXTENSION.search(path) is not None


def looks_like_base64(value: Value) -> bool:
    """Base64 alphabet (either variant) and a length that can pad to a multiple of 4."""
    if isinstance(value, bytes):
        try:
            value = value.decode("ascii")
        except UnicodeDecodeError:
            return False
    text = value.strip()
    if len(text) < 4 or not _B64_CANDIDATE.match(text):
        return False
    return len(text.rstrip("=")) % 4 != 1


# --- Pure transforms ---

def base64_decode(value: Value, kind: str = "base64") -> bytes:
    text = _WHITESPACE.sub("", as_text(value))
    text = text.replace("-", "+").replace("_", "/")
    text += "=" * (-len(text) % 4)
    try:
        return base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError) as e:
        raise StageError(kind, f"invalid base64 input: {e}")


def encode_base64(value: Value, url_safe: bool = False) -> str:
    raw = as_bytes(value)
    if url_safe:
        return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")
    return base64.b64encode(raw).decode("ascii")


def hex_decode(value: Value) -> bytes:
    text = as_text(value).strip()
    if len(text) % 2:
        raise StageError("hex", f"odd-length input ({len(text)} characters)")
    if not _HEX_DIGITS.match(text):
        raise StageError("hex", "input contains non-hex characters")
    return bytes.fromhex(text)


def encode_hex(value: Value) -> str:
    return as_bytes(value).hex()


def xor_bytes(data: Value, key: Value) -> bytes:
    """Byte-wise XOR against a repeating key. Its own inverse."""
    raw = as_bytes(data)
    key_bytes = as_bytes(key)
    if not key_bytes:
        raise StageError("xor", "empty key")
    return bytes(b ^ key_bytes[i % len(key_bytes)] for i, b in enumerate(raw))


def validate_key_source(key_source) -> None:
    """Shape check used by the registry at load time."""
    if not isinstance(key_source, Mapping):
        raise ValueError("keySource must be an object")
    source_type = key_source.get("type", "literal")
    if source_type not in KEY_SOURCE_TYPES:
        raise ValueError(f"unknown keySource type '{source_type}'")
    if source_type == "literal" and not key_source.get("value"):
        raise ValueError("literal keySource needs a non-empty 'value'")
    if source_type == "self":
        length = key_source.get("length")
        start = key_source.get("start", 0)
        if not isinstance(length, int) or length <= 0 or not isinstance(start, int) or start < 0:
            raise ValueError("self keySource needs integer 'start' >= 0 and 'length' > 0")
    if source_type == "context" and not key_source.get("name"):
        raise ValueError("context keySource needs a 'name'")
    if source_type == "timestamp":
        period = key_source.get("period", 3600)
        if not isinstance(period, int) or period <= 0:
            raise ValueError("timestamp keySource needs a positive integer 'period'")


def resolve_xor_key(key_source: Mapping, data: Value,
                    context: Optional[Mapping[str, str]] = None,
                    now: Optional[float] = None) -> Tuple[bytes, bytes]:
    """Returns (key, data-to-xor). A self-referential key may be cut out of the data."""
    source_type = key_source.get("type", "literal")
    raw = as_bytes(data)

    if source_type == "literal":
        key = as_bytes(key_source.get("value", ""))
    elif source_type == "self":
        start = key_source.get("start", 0)
        length = key_source.get("length", 0)
        if start + length > len(raw):
            raise StageError("xor", f"input too short for a {length}-byte self key at offset {start}")
        key = raw[start:start + length]
        if key_source.get("strip", True):
            raw = raw[:start] + raw[start + length:]
    elif source_type == "context":
        name = key_source.get("name")
        if not context or not context.get(name):
            raise StageError("xor", f"context value '{name}' not supplied")
        key = as_bytes(context[name])
    elif source_type == "timestamp":
        period = key_source.get("period", 3600)
        offset = key_source.get("offset", 0)
        moment = time.time() if now is None else now
        key = str(int((moment + offset) // period)).encode("ascii")
    else:
        raise StageError("xor", f"unknown keySource type '{source_type}'")

    if not key:
        raise StageError("xor", "empty key")
    return key, raw


def char_shift(value: Value, delta: int, band: str = "printable") -> str:
    """Shifts code points by delta, wrapping inside the band only.

    Provider-specific, not a general cipher: "printable" wraps within
    0x20-0x7E, "alpha" shifts letters only (per case) and leaves digits
    and punctuation alone.
    """
    out = []
    for ch in as_text(value):
        code = ord(ch)
        if band == "alpha":
            if 97 <= code <= 122:
                code = (code - 97 + delta) % 26 + 97
            elif 65 <= code <= 90:
                code = (code - 65 + delta) % 26 + 65
        elif PRINTABLE_LOW <= code <= PRINTABLE_HIGH:
            code = (code - PRINTABLE_LOW + delta) % PRINTABLE_SPAN + PRINTABLE_LOW
        out.append(chr(code))
    return "".join(out)


def substitute(value: Value, table) -> str:
    """Maps each unit (character or fixed-width block) through a DecryptTable."""
    text = as_text(value)
    width = table.unit_width
    mapping = table.mapping
    out = []
    for i in range(0, len(text), width):
        unit = text[i:i + width]
        mapped = mapping.get(unit)
        if mapped is None:
            raise UnmappedUnit(table.table_id, unit)
        out.append(mapped)
    return "".join(out)


def reverse_value(value: Value) -> Value:
    return value[::-1]


def resolve_url_template(value: Value, placeholder_map: Mapping[str, str]) -> str:
    """Substitutes CDN placeholder tokens such as {v1}; no tokens means no-op."""
    text = as_text(value)

    def _replace(match):
        token = match.group(1)
        host = placeholder_map.get(token)
        if host is None:
            raise StageError("urlTemplateResolve", f"no CDN mapping for placeholder {{{token}}}")
        return host

    return _PLACEHOLDER.sub(_replace, text)


def normalize_placeholder_map(mapping: Optional[Mapping[str, str]]) -> Dict[str, str]:
    """Accepts keys written as "v1" or "{v1}"."""
    return {str(k).strip("{}"): str(v) for k, v in (mapping or {}).items()}


# --- Dispatch ---

def _run_base64(value, spec, env):
    return base64_decode(value, kind=spec.kind)


def _run_hex(value, spec, env):
    return hex_decode(value)


def _run_xor(value, spec, env):
    key, data = resolve_xor_key(spec.params.get("keySource", {}), value, env.context, env.now)
    return xor_bytes(data, key)


def _run_char_shift(value, spec, env):
    return char_shift(value, int(spec.params["delta"]), spec.params.get("band", "printable"))


def _run_substitution(value, spec, env):
    table = env.tables.get(spec.params["tableId"], spec.params.get("version"))
    return substitute(value, table)


def _run_reverse(value, spec, env):
    return reverse_value(value)


def _run_url_template(value, spec, env):
    return resolve_url_template(value, env.placeholder_map)


STAGES = {
    "base64": _run_base64,
    "base64url": _run_base64,
    "hex": _run_hex,
    "xor": _run_xor,
    "charShift": _run_char_shift,
    "substitutionTable": _run_substitution,
    "reverse": _run_reverse,
    "urlTemplateResolve": _run_url_template,
}


def apply_stage(spec: StageSpec, value: Value, env: StageEnv, stage_index: Optional[int] = None) -> Value:
    """Runs one stage. Every failure surfaces as a StageError tagged with its index."""
    handler = STAGES.get(spec.kind)
    if handler is None:
        raise StageError(spec.kind, "unknown stage kind", stage_index)
    try:
        return handler(value, spec, env)
    except StageError as e:
        e.stage_index = stage_index
        raise
    except (UnicodeError, KeyError, TypeError, ValueError) as e:
        raise StageError(spec.kind, str(e), stage_index)
