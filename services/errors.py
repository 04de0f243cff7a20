"""Error taxonomy shared by the decode pipeline and the relay."""


class ConfigurationError(Exception):
    """Invalid profile/table bundle. Raised at startup, never per request."""
    pass


class ProfileNotFound(KeyError):
    """Registry lookup for an id that was never loaded."""
    pass


# --- Stage errors (raised by the pure transforms) ---

class StageError(Exception):
    """A single decode stage could not transform its input."""

    def __init__(self, kind, message, stage_index=None):
        super().__init__(message)
        self.kind = kind
        self.stage_index = stage_index

    def __str__(self):
        where = f" (stage {self.stage_index})" if self.stage_index is not None else ""
        return f"{self.kind}{where}: {self.args[0]}"


class UnmappedUnit(StageError):
    """A unit of the input has no entry in the substitution table."""

    def __init__(self, table_id, unit, stage_index=None):
        super().__init__("substitutionTable", f"unit {unit!r} not in table '{table_id}'", stage_index)
        self.table_id = table_id
        self.unit = unit


# --- Decode errors (raised by the pipeline) ---

class DecodeError(Exception):
    """Terminal failure of a decode request. Never retried by the engine."""
    status = 422


class UnknownProvider(DecodeError):
    status = 404

    def __init__(self, provider_id):
        super().__init__(f"Unknown provider '{provider_id}'")
        self.provider_id = provider_id


class StageFailed(DecodeError):
    def __init__(self, stage_index, stage_kind, cause):
        super().__init__(f"Stage {stage_index} ({stage_kind}) failed: {cause}")
        self.stage_index = stage_index
        self.stage_kind = stage_kind
        self.cause = cause


class MaxDepthExceeded(DecodeError):
    def __init__(self, limit):
        super().__init__(f"Decode exceeded the maximum of {limit} stages")
        self.limit = limit


# --- Relay errors ---

class RelayError(Exception):
    status = 502


class Unauthorized(RelayError):
    status = 401

    def __init__(self, message="Invalid API Key"):
        super().__init__(message)


class UpstreamTimeout(RelayError):
    status = 504


class UpstreamError(RelayError):
    """Origin failed or answered non-2xx. A non-2xx status is passed through."""

    def __init__(self, status, message=""):
        super().__init__(message or f"Upstream returned {status}")
        self.status = status


class PlaylistRewriteFailed(RelayError):
    """Malformed playlist. The relay serves it unrewritten instead of failing."""
    pass
