from __future__ import annotations
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple
import yaml

from .config import RECORDS_DIRNAME, validate_record_id
from .rulesets import normalize_entity_type


# -------------------------------
# Persisted records layout (read-only)
# - records/<entity_type>/<record_id>.yml : one YAML mapping per record
# The file stem is the record identity.
# -------------------------------

def records_root(datarepo_path: Path) -> Path:
    return datarepo_path / RECORDS_DIRNAME


def entity_records_dir(datarepo_path: Path, entity_type: str) -> Path:
    key = normalize_entity_type(entity_type)
    validate_record_id(key)
    return records_root(datarepo_path) / key


def read_record(p: Path) -> Dict:
    """Read one record file. Raises ValueError if it is not a YAML mapping."""
    with open(p) as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ValueError(f"{p.name}: invalid YAML: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"{p.name}: record must be a YAML mapping")
    return data


def iter_record_files(datarepo_path: Path, entity_type: str) -> Iterator[Tuple[str, Path]]:
    """Yield (record_id, path) for every record file of an entity type, sorted by id."""
    d = entity_records_dir(datarepo_path, entity_type)
    if not d.is_dir():
        return
    for p in sorted(d.glob("*.yml")):
        if p.is_file():
            yield p.stem, p


def load_records(datarepo_path: Path, entity_type: str) -> List[Tuple[str, Dict]]:
    """Return [(record_id, record)] for an entity type.

    Raises ValueError on an invalid record id or unreadable record file.
    """
    out: List[Tuple[str, Dict]] = []
    for record_id, p in iter_record_files(datarepo_path, entity_type):
        validate_record_id(record_id)
        out.append((record_id, read_record(p)))
    return out


# -------------------------------
# Existing-records lookups
# -------------------------------

def _key(value) -> Any:
    try:
        hash(value)
    except TypeError:
        return repr(value)
    return value


class InMemoryLookup:
    """Exact-match lookup over records held in memory.

    Callable as lookup(field, value) -> [identities], in insertion order.
    """

    def __init__(self, records: Optional[Iterable[Tuple[Any, Mapping]]] = None):
        self._index: Dict[str, Dict[Any, List[Any]]] = {}
        for identity, record in records or ():
            self.add(identity, record)

    def add(self, identity, record: Mapping) -> None:
        if not isinstance(record, Mapping):
            return
        for field_name, value in record.items():
            if value is None:
                continue
            ids = self._index.setdefault(str(field_name), {}).setdefault(_key(value), [])
            if identity not in ids:
                ids.append(identity)

    def __call__(self, field_name: str, value) -> List[Any]:
        return list(self._index.get(field_name, {}).get(_key(value), []))


def _same_value(stored, value) -> bool:
    # YAML may load "123" as an int while candidates arrive as strings
    if stored is None:
        return False
    if stored == value:
        return True
    return isinstance(stored, (str, int)) and isinstance(value, (str, int)) and str(stored) == str(value)


class RecordDirectoryLookup:
    """Lookup over records/<entity_type>/*.yml in a datarepo.

    Reads the directory on every call, so each check sees the current files.
    A missing directory means there are no records; unreadable files raise.
    """

    def __init__(self, datarepo_path: Path, entity_type: str):
        self.datarepo_path = Path(datarepo_path)
        self.entity_type = normalize_entity_type(entity_type)

    def __call__(self, field_name: str, value) -> List[str]:
        matches: List[str] = []
        for record_id, record in load_records(self.datarepo_path, self.entity_type):
            if field_name in record and _same_value(record.get(field_name), value):
                matches.append(record_id)
        return matches
