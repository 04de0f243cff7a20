import json
import logging
import os
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional

from services.errors import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DecryptTable:
    """Versioned one-directional lookup table (decode direction only)."""

    table_id: str
    version: int
    mapping: Mapping[str, str] = field(default_factory=dict)
    unit_width: int = 1

    def __post_init__(self):
        object.__setattr__(self, "mapping", MappingProxyType(dict(self.mapping)))

    def inverse(self) -> "DecryptTable":
        """Reverse table, for building encoders from the same fixture."""
        inverted = {}
        for unit, mapped in self.mapping.items():
            if mapped in inverted or len(mapped) != self.unit_width:
                raise ConfigurationError(f"Table '{self.table_id}' v{self.version} is not bijective")
            inverted[mapped] = unit
        return DecryptTable(self.table_id, self.version, inverted, self.unit_width)


def _alphabet_mapping(source: str, target: str) -> Dict[str, str]:
    if len(source) != len(target):
        raise ConfigurationError("Alphabet tables need source and target of equal length")
    return dict(zip(source, target))


class DecryptTableStore:
    """Process-lifetime, read-only store of DecryptTables keyed by id and version."""

    def __init__(self, tables: Optional[List[DecryptTable]] = None):
        self._tables: Dict[str, Dict[int, DecryptTable]] = {}
        for table in tables or []:
            versions = self._tables.setdefault(table.table_id, {})
            if table.version in versions:
                raise ConfigurationError(f"Duplicate table '{table.table_id}' v{table.version}")
            versions[table.version] = table

    @classmethod
    def from_dict(cls, data: dict) -> "DecryptTableStore":
        tables = []
        for entry in data.get("tables", []):
            table_id = entry.get("tableId")
            if not table_id:
                raise ConfigurationError("Decrypt table without 'tableId'")
            width = int(entry.get("unitWidth", 1))
            if "alphabet" in entry:
                # Shorthand for character tables: {"from": "...", "to": "..."}
                mapping = _alphabet_mapping(entry["alphabet"]["from"], entry["alphabet"]["to"])
            else:
                mapping = entry.get("mapping") or {}
            if not mapping:
                raise ConfigurationError(f"Decrypt table '{table_id}' has an empty mapping")
            bad = [unit for unit in mapping if len(unit) != width]
            if bad:
                raise ConfigurationError(
                    f"Decrypt table '{table_id}' has units not {width} wide: {bad[:3]}"
                )
            tables.append(DecryptTable(table_id, int(entry.get("version", 1)), mapping, width))
        return cls(tables)

    @classmethod
    def load(cls, path: str) -> "DecryptTableStore":
        """Loads the static bundle. A missing or unreadable bundle is fatal."""
        if not os.path.exists(path):
            raise ConfigurationError(f"Decrypt table bundle not found: {path}")
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Cannot read decrypt table bundle {path}: {e}")
        store = cls.from_dict(data)
        logger.info(f"🔐 Loaded {len(store)} decrypt tables from {path}")
        return store

    def get(self, table_id: str, version: Optional[int] = None) -> DecryptTable:
        versions = self._tables.get(table_id)
        if not versions:
            raise ConfigurationError(f"Unknown decrypt table '{table_id}'")
        if version is None:
            return versions[max(versions)]
        try:
            return versions[int(version)]
        except (KeyError, ValueError):
            raise ConfigurationError(f"Decrypt table '{table_id}' has no version {version}")

    def has(self, table_id: str, version: Optional[int] = None) -> bool:
        try:
            self.get(table_id, version)
        except ConfigurationError:
            return False
        return True

    def ids(self) -> List[str]:
        return sorted(self._tables)

    def __len__(self):
        return sum(len(v) for v in self._tables.values())
