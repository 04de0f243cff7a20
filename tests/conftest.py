from pathlib import Path

import pytest

from extractors.registry import ProviderRegistry
from services.pipeline import DecodePipeline
from services.result_cache import ResultCache
from utils.decrypt_tables import DecryptTableStore

DATA_DIR = Path(__file__).resolve().parent.parent / "data"

BROWSER_UA = "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/136.0.0.0 Safari/537.36"

STANDARD_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789+/="
SHUFFLED_ALPHABET = "ABCDEFGHIJKLMabcdefghijklmNOPQRSTUVWXYZnopqrstuvwxyz0123456789+/="


class FakeClock:
    """Manually advanced clock for TTL tests."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def tables():
    return DecryptTableStore.from_dict({
        "tables": [
            {
                "tableId": "shuffle",
                "version": 1,
                "alphabet": {"from": SHUFFLED_ALPHABET, "to": STANDARD_ALPHABET},
            },
            {
                "tableId": "blocks",
                "version": 1,
                "unitWidth": 2,
                "mapping": {"q1": "h", "q2": "t", "q3": "p", "q4": "s", "q5": ":", "q6": "/"},
            },
            {
                "tableId": "blocks",
                "version": 2,
                "unitWidth": 2,
                "mapping": {"z1": "h", "z2": "i"},
            },
        ]
    })


def _profile(provider_id, stages, **extra):
    data = {"id": provider_id, "headerProfile": {"userAgent": BROWSER_UA}, "stageSequence": stages}
    data.update(extra)
    return data


@pytest.fixture
def provider():
    """Factory for minimal provider profile dicts."""
    return _profile


@pytest.fixture
def make_registry(tables):
    def _make(*providers):
        return ProviderRegistry.from_dict({"providers": list(providers)}, tables)
    return _make


@pytest.fixture
def make_pipeline(tables, make_registry):
    def _make(*providers, cache=None, default_ttl=300):
        registry = make_registry(*providers)
        return DecodePipeline(registry, tables, cache if cache is not None else ResultCache(), default_ttl=default_ttl)
    return _make


@pytest.fixture
def shipped_tables():
    return DecryptTableStore.load(str(DATA_DIR / "decrypt_tables.json"))


@pytest.fixture
def shipped_pipeline(shipped_tables):
    registry = ProviderRegistry.load(str(DATA_DIR / "profiles.json"), shipped_tables)
    return DecodePipeline(registry, shipped_tables, ResultCache())
