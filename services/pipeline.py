"""Decode pipeline: runs a provider's stage sequence over a raw payload.

Ordering is a profile decision. The engine only adds two explicit policies:
stop early once an intermediate value already is a media URL, and at most
one speculative base64 pass for double-wrapped payloads. Everything is
bounded by MAX_DECODE_STAGES.
"""

import time
import hashlib
import logging
from dataclasses import dataclass, field
from typing import Callable, List, Mapping, Optional

from services.errors import (
    DecodeError,
    MaxDepthExceeded,
    ProfileNotFound,
    StageError,
    StageFailed,
    UnknownProvider,
)
from services.result_cache import ResultCache
from utils.decode_stages import (
    MAX_DECODE_STAGES,
    StageEnv,
    StageSpec,
    apply_stage,
    looks_like_base64,
    looks_like_media_url,
    to_display,
)

logger = logging.getLogger(__name__)

SPECULATIVE_STAGE = StageSpec(kind="base64")


@dataclass
class Success:
    url: str


@dataclass
class Failure:
    reason: DecodeError


@dataclass
class DecodeAttempt:
    """Transient per-request record, logged and then discarded."""

    provider_id: str
    raw_input: str
    fingerprint: str = ""
    correlation_id: Optional[str] = None
    stages_applied: List[str] = field(default_factory=list)
    intermediate_lengths: List[int] = field(default_factory=list)
    speculative: bool = False
    cached: bool = False
    outcome: object = None

    @property
    def ok(self) -> bool:
        return isinstance(self.outcome, Success)


def fingerprint_of(raw_input: str, context: Optional[Mapping[str, str]] = None) -> str:
    """Stable hash of the payload (and its context, which can change the output)."""
    digest = hashlib.sha256(raw_input.encode("utf-8", "surrogateescape"))
    for name, value in sorted((context or {}).items()):
        digest.update(b"\x00" + f"{name}={value}".encode("utf-8", "surrogateescape"))
    return digest.hexdigest()


def split_hash_payload(raw_input: str):
    """'hashPart:payloadPart' -> (hashPart, payloadPart). No colon -> (None, input)."""
    if ":" not in raw_input:
        return None, raw_input
    hash_part, payload_part = raw_input.split(":", 1)
    return hash_part, payload_part


class DecodePipeline:
    def __init__(self, registry, tables, cache: Optional[ResultCache] = None,
                 default_ttl: float = 300, clock: Callable[[], float] = time.time):
        self.registry = registry
        self.tables = tables
        self.cache = cache if cache is not None else ResultCache()
        self.default_ttl = default_ttl
        self.clock = clock

    def decode(self, provider_id: str, raw_input: str, context: Optional[Mapping[str, str]] = None) -> str:
        """Returns the decoded URL or raises DecodeError."""
        attempt = self.run(provider_id, raw_input, context)
        if isinstance(attempt.outcome, Failure):
            raise attempt.outcome.reason
        return attempt.outcome.url

    def run(self, provider_id: str, raw_input: str, context: Optional[Mapping[str, str]] = None) -> DecodeAttempt:
        attempt = DecodeAttempt(provider_id=provider_id, raw_input=raw_input)
        try:
            attempt.outcome = Success(self._execute(attempt, context))
        except DecodeError as e:
            attempt.outcome = Failure(e)
        self._log_attempt(attempt)
        return attempt

    def _execute(self, attempt: DecodeAttempt, context) -> str:
        try:
            profile = self.registry.get(attempt.provider_id)
        except ProfileNotFound:
            raise UnknownProvider(attempt.provider_id)

        attempt.fingerprint = fingerprint_of(attempt.raw_input, context)
        payload = attempt.raw_input
        already_decoded = looks_like_media_url(payload)
        if profile.payload_shape == "hash_colon_payload" and not already_decoded:
            attempt.correlation_id, payload = split_hash_payload(payload)

        cached = self.cache.get(profile.id, attempt.fingerprint)
        if cached is not None:
            attempt.cached = True
            return cached

        env = StageEnv(
            tables=self.tables,
            placeholder_map=profile.cdn_placeholder_map,
            context=dict(context or {}),
            now=self.clock(),
        )
        stages = list(profile.stage_sequence)
        resolve = None
        if stages and stages[-1].kind == "urlTemplateResolve":
            resolve = stages.pop()

        value = payload
        if already_decoded:
            # Already decoded: another stage would only corrupt it
            logger.debug(f"🎯 [{profile.id}] input is already a URL, no decode stages applied")
        else:
            for index, spec in enumerate(stages):
                value = self._apply(attempt, spec, value, env, index)
                if looks_like_media_url(value):
                    logger.debug(f"🎯 [{profile.id}] URL recognised after stage {index} ({spec.kind})")
                    break
            else:
                value = self._speculate(attempt, value, env, len(stages), reserved=1 if resolve else 0)

        if resolve is not None:
            value = self._apply(attempt, resolve, value, env, len(profile.stage_sequence) - 1)

        result = to_display(value).strip()
        ttl = profile.cache_ttl if profile.cache_ttl is not None else self.default_ttl
        self.cache.set(profile.id, attempt.fingerprint, result, ttl)
        return result

    def _apply(self, attempt: DecodeAttempt, spec: StageSpec, value, env: StageEnv, index: int):
        if len(attempt.stages_applied) >= MAX_DECODE_STAGES:
            raise MaxDepthExceeded(MAX_DECODE_STAGES)
        try:
            value = apply_stage(spec, value, env, index)
        except StageError as e:
            raise StageFailed(index, spec.kind, e)
        attempt.stages_applied.append(spec.describe())
        attempt.intermediate_lengths.append(len(value))
        return value

    def _speculate(self, attempt: DecodeAttempt, value, env: StageEnv, index: int, reserved: int):
        """One extra base64 pass when the exhausted result still looks wrapped."""
        if looks_like_media_url(value) or not looks_like_base64(value):
            return value
        if len(attempt.stages_applied) + 1 + reserved > MAX_DECODE_STAGES:
            raise MaxDepthExceeded(MAX_DECODE_STAGES)
        try:
            candidate = apply_stage(SPECULATIVE_STAGE, value, env, index)
        except StageError:
            logger.debug(f"🔁 [{attempt.provider_id}] speculative base64 pass did not decode")
            return value
        if not looks_like_media_url(candidate):
            return value
        attempt.speculative = True
        attempt.stages_applied.append("base64*")
        attempt.intermediate_lengths.append(len(candidate))
        return candidate

    def _log_attempt(self, attempt: DecodeAttempt):
        fp = attempt.fingerprint[:12] or "-"
        corr = f" corr={attempt.correlation_id}" if attempt.correlation_id else ""
        if isinstance(attempt.outcome, Success):
            if attempt.cached:
                logger.info(f"♻️ [{attempt.provider_id}] cache hit fp={fp}{corr}")
            else:
                logger.info(
                    f"🔓 [{attempt.provider_id}] decoded fp={fp}{corr} "
                    f"stages={attempt.stages_applied} lengths={attempt.intermediate_lengths}"
                )
        else:
            logger.warning(
                f"❌ [{attempt.provider_id}] decode failed fp={fp}{corr} "
                f"stages={attempt.stages_applied}: {attempt.outcome.reason}"
            )
