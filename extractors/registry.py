import json
import logging
import os
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Tuple

from services.errors import ConfigurationError, ProfileNotFound
from utils.decode_stages import (
    MAX_DECODE_STAGES,
    STAGE_KINDS,
    StageSpec,
    normalize_placeholder_map,
    validate_key_source,
)
from utils.decrypt_tables import DecryptTableStore

logger = logging.getLogger(__name__)

PAYLOAD_SHAPES = ("plain", "hash_colon_payload")
EXTRACT_MODES = ("json", "relay")
LOCATOR_KINDS = ("raw", "hidden_div", "regex")


@dataclass(frozen=True)
class HeaderProfile:
    user_agent: str
    referer: str = ""
    origin: str = ""

    def as_headers(self) -> Dict[str, str]:
        headers = {"User-Agent": self.user_agent}
        if self.referer:
            headers["Referer"] = self.referer
        if self.origin:
            headers["Origin"] = self.origin
        return headers


@dataclass(frozen=True)
class PayloadLocator:
    """Where the payload sits in a fetched page.

    raw: the whole body is the payload. hidden_div: the text of a
    display:none div, whose id is captured as context "div_id". regex:
    a pattern whose `group` is the payload and whose named groups become
    context values.
    """

    kind: str = "raw"
    pattern: Optional[str] = None
    group: int = 1


@dataclass(frozen=True)
class RequestTemplate:
    url: str
    method: str = "GET"
    headers: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "headers", MappingProxyType(dict(self.headers)))


@dataclass(frozen=True)
class ProviderProfile:
    id: str
    header_profile: HeaderProfile
    stage_sequence: Tuple[StageSpec, ...] = ()
    payload_locator: PayloadLocator = PayloadLocator()
    payload_shape: str = "plain"
    auxiliary_fetch: Optional[RequestTemplate] = None
    cdn_placeholder_map: Mapping[str, str] = field(default_factory=dict)
    cache_ttl: Optional[float] = None
    extract_mode: str = "json"

    def __post_init__(self):
        object.__setattr__(self, "cdn_placeholder_map", MappingProxyType(dict(self.cdn_placeholder_map)))


def _validate_stage(profile_id: str, index: int, spec: StageSpec, total: int, tables: DecryptTableStore):
    where = f"Profile '{profile_id}' stage {index}"
    if spec.kind not in STAGE_KINDS:
        raise ConfigurationError(f"{where}: unknown stage kind '{spec.kind}'")
    if spec.kind == "urlTemplateResolve" and index != total - 1:
        raise ConfigurationError(f"{where}: urlTemplateResolve must be the last stage")
    if spec.kind == "charShift":
        delta = spec.params.get("delta")
        if not isinstance(delta, int) or isinstance(delta, bool):
            raise ConfigurationError(f"{where}: charShift needs an integer 'delta'")
        if spec.params.get("band", "printable") not in ("printable", "alpha"):
            raise ConfigurationError(f"{where}: charShift band must be 'printable' or 'alpha'")
    if spec.kind == "xor":
        try:
            validate_key_source(spec.params.get("keySource"))
        except ValueError as e:
            raise ConfigurationError(f"{where}: {e}")
    if spec.kind == "substitutionTable":
        table_id = spec.params.get("tableId")
        if not table_id or not tables.has(table_id, spec.params.get("version")):
            raise ConfigurationError(f"{where}: decrypt table '{table_id}' is not in the store")


def profile_from_dict(data: dict, tables: DecryptTableStore) -> ProviderProfile:
    """Builds and validates one profile. Any invalid reference is fatal."""
    profile_id = data.get("id")
    if not profile_id:
        raise ConfigurationError("Provider profile without 'id'")

    headers = data.get("headerProfile") or {}
    user_agent = (headers.get("userAgent") or "").strip()
    if not user_agent:
        raise ConfigurationError(f"Profile '{profile_id}' needs a non-empty headerProfile.userAgent")

    stages = tuple(StageSpec.from_dict(s) for s in data.get("stageSequence", []))
    if len(stages) > MAX_DECODE_STAGES:
        raise ConfigurationError(
            f"Profile '{profile_id}' declares {len(stages)} stages (max {MAX_DECODE_STAGES})"
        )
    for index, spec in enumerate(stages):
        _validate_stage(profile_id, index, spec, len(stages), tables)

    locator_data = data.get("payloadLocator") or {"kind": "raw"}
    locator = PayloadLocator(
        kind=locator_data.get("kind", "raw"),
        pattern=locator_data.get("pattern"),
        group=int(locator_data.get("group", 1)),
    )
    if locator.kind not in LOCATOR_KINDS:
        raise ConfigurationError(f"Profile '{profile_id}': unknown payloadLocator kind '{locator.kind}'")
    if locator.kind == "regex" and not locator.pattern:
        raise ConfigurationError(f"Profile '{profile_id}': regex payloadLocator needs a 'pattern'")

    shape = data.get("payloadShape", "plain")
    if shape not in PAYLOAD_SHAPES:
        raise ConfigurationError(f"Profile '{profile_id}': unknown payloadShape '{shape}'")

    mode = data.get("extractMode", "json")
    if mode not in EXTRACT_MODES:
        raise ConfigurationError(f"Profile '{profile_id}': unknown extractMode '{mode}'")

    aux = data.get("auxiliaryFetch")
    auxiliary_fetch = None
    if aux:
        if not aux.get("url"):
            raise ConfigurationError(f"Profile '{profile_id}': auxiliaryFetch needs a 'url'")
        auxiliary_fetch = RequestTemplate(
            url=aux["url"], method=aux.get("method", "GET").upper(), headers=aux.get("headers") or {}
        )

    ttl = data.get("cacheTtl")
    return ProviderProfile(
        id=profile_id,
        header_profile=HeaderProfile(
            user_agent=user_agent,
            referer=headers.get("referer", ""),
            origin=headers.get("origin", ""),
        ),
        stage_sequence=stages,
        payload_locator=locator,
        payload_shape=shape,
        auxiliary_fetch=auxiliary_fetch,
        cdn_placeholder_map=normalize_placeholder_map(data.get("cdnPlaceholderMap")),
        cache_ttl=float(ttl) if ttl is not None else None,
        extract_mode=mode,
    )


class ProviderRegistry:
    """Read-only map of provider id -> ProviderProfile, validated at startup."""

    def __init__(self, profiles: List[ProviderProfile]):
        self._profiles: Dict[str, ProviderProfile] = {}
        for profile in profiles:
            if profile.id in self._profiles:
                raise ConfigurationError(f"Duplicate provider profile '{profile.id}'")
            self._profiles[profile.id] = profile

    @classmethod
    def from_dict(cls, data: dict, tables: DecryptTableStore) -> "ProviderRegistry":
        return cls([profile_from_dict(p, tables) for p in data.get("providers", [])])

    @classmethod
    def load(cls, path: str, tables: DecryptTableStore) -> "ProviderRegistry":
        if not os.path.exists(path):
            raise ConfigurationError(f"Provider profile bundle not found: {path}")
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Cannot read provider profiles {path}: {e}")
        registry = cls.from_dict(data, tables)
        logger.info(f"🧩 Loaded {len(registry)} provider profiles: {', '.join(registry.ids())}")
        return registry

    def get(self, provider_id: str) -> ProviderProfile:
        try:
            return self._profiles[provider_id]
        except KeyError:
            raise ProfileNotFound(provider_id)

    def ids(self) -> List[str]:
        return sorted(self._profiles)

    def __contains__(self, provider_id):
        return provider_id in self._profiles

    def __len__(self):
        return len(self._profiles)
