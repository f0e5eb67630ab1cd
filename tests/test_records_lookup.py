from __future__ import annotations
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from supplydesk.core.v1.duplicates import LookupUnavailable, detect_duplicates
from supplydesk.core.v1.records import (
    InMemoryLookup,
    RecordDirectoryLookup,
    entity_records_dir,
    load_records,
    read_record,
)


def _write(p: Path, text: str) -> None:
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(text, encoding="utf-8")


def test_in_memory_lookup_exact_match():
    lookup = InMemoryLookup([
        ("s1", {"supplier_key": "ACME", "email": "a@acme.test"}),
        ("s2", {"supplier_key": "BETA", "email": "a@acme.test"}),
    ])
    assert lookup("supplier_key", "ACME") == ["s1"]
    assert lookup("email", "a@acme.test") == ["s1", "s2"]
    assert lookup("supplier_key", "acme") == []
    assert lookup("missing_field", "ACME") == []


def test_in_memory_lookup_skips_none_and_handles_unhashable():
    lookup = InMemoryLookup()
    lookup.add("s1", {"email": None, "tags": ["a", "b"]})
    assert lookup("email", None) == []
    assert lookup("tags", ["a", "b"]) == ["s1"]
    lookup.add("s1", {"tags": ["a", "b"]})
    assert lookup("tags", ["a", "b"]) == ["s1"]


def test_entity_records_dir_normalizes_type(tmp_path: Path):
    assert entity_records_dir(tmp_path, "Inventory Item") == tmp_path / "records" / "inventory_item"
    with pytest.raises(ValueError):
        entity_records_dir(tmp_path, "../etc")


def test_read_record(tmp_path: Path):
    p = tmp_path / "r.yml"
    _write(p, "")
    assert read_record(p) == {}
    _write(p, "- a\n- b\n")
    with pytest.raises(ValueError):
        read_record(p)
    _write(p, "key: [unclosed\n")
    with pytest.raises(ValueError):
        read_record(p)


def test_load_records_sorted_by_id(tmp_path: Path):
    _write(tmp_path / "records" / "supplier" / "s2.yml", "supplier_key: B\n")
    _write(tmp_path / "records" / "supplier" / "s1.yml", "supplier_key: A\n")
    _write(tmp_path / "records" / "supplier" / "notes.txt", "ignored\n")
    assert load_records(tmp_path, "supplier") == [("s1", {"supplier_key": "A"}), ("s2", {"supplier_key": "B"})]


def test_directory_lookup_matches(tmp_path: Path):
    _write(tmp_path / "records" / "supplier" / "s1.yml", "supplier_key: ACME\nemail: a@acme.test\n")
    _write(tmp_path / "records" / "supplier" / "s2.yml", "supplier_key: 123\n")
    lookup = RecordDirectoryLookup(tmp_path, "supplier")
    assert lookup("supplier_key", "ACME") == ["s1"]
    assert lookup("email", "a@acme.test") == ["s1"]
    # YAML loads 123 as an int; a string candidate still matches
    assert lookup("supplier_key", "123") == ["s2"]
    assert lookup("supplier_key", "NOPE") == []


def test_directory_lookup_sees_current_files(tmp_path: Path):
    lookup = RecordDirectoryLookup(tmp_path, "supplier")
    assert lookup("supplier_key", "ACME") == []  # no records/ yet
    _write(tmp_path / "records" / "supplier" / "s1.yml", "supplier_key: ACME\n")
    assert lookup("supplier_key", "ACME") == ["s1"]


def test_directory_lookup_with_detector(tmp_path: Path):
    _write(tmp_path / "records" / "supplier" / "s1.yml", "supplier_key: ACME\n")
    lookup = RecordDirectoryLookup(tmp_path, "supplier")
    issues = detect_duplicates({"supplier_key": "ACME"}, "supplier", None, lookup)
    assert [(i.code, i.duplicate_of) for i in issues] == [("DUPLICATE_VALUE", "s1")]
    assert detect_duplicates({"supplier_key": "ACME"}, "supplier", "s1", lookup) == []


def test_unreadable_record_makes_lookup_unavailable(tmp_path: Path):
    _write(tmp_path / "records" / "supplier" / "s1.yml", "supplier_key: [unclosed\n")
    lookup = RecordDirectoryLookup(tmp_path, "supplier")
    with pytest.raises(LookupUnavailable):
        detect_duplicates({"supplier_key": "ACME"}, "supplier", None, lookup)
