from __future__ import annotations
import sys
from datetime import date
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from supplydesk.core.v1.duplicates import LookupUnavailable
from supplydesk.core.v1.imports import (
    EXTRA_VALUES_KEY,
    SUPPLIER_IMPORT_FIELDS,
    map_import_to_schema,
    parse_csv,
    validate_import,
)
from supplydesk.core.v1.records import InMemoryLookup


SUPPLIERS_CSV = (
    "Supplier Key,Supplier Name,Email,Contact Name,Phone\n"
    "ACME,\"Acme, Inc.\",sales@acme.test,Jane,555-1234\n"
    "\n"
    ",Missing Key Ltd,bad-email,Bob,555-0000\n"
    "ACME,Acme Again,other@acme.test,Jim,555-9999\n"
)


def _by_row(result):
    out = {}
    for it in result["issues"]:
        out.setdefault(it["row"], []).append(it)
    return out


def test_parse_csv_handles_quotes_and_blank_lines():
    headers, rows = parse_csv(SUPPLIERS_CSV)
    assert headers == ["Supplier Key", "Supplier Name", "Email", "Contact Name", "Phone"]
    assert len(rows) == 3
    assert rows[0]["Supplier Name"] == "Acme, Inc."


def test_parse_csv_short_rows_are_padded():
    _, rows = parse_csv("a,b,c\n1\n")
    assert rows == [{"a": "1", "b": "", "c": ""}]


def test_parse_csv_keeps_values_past_the_headers():
    _, rows = parse_csv("a,b\n1,2,3,4\n5,6,,\n")
    assert rows[0] == {"a": "1", "b": "2", EXTRA_VALUES_KEY: ["3", "4"]}
    # trailing empty cells are not extra values
    assert rows[1] == {"a": "5", "b": "6"}


def test_map_import_to_schema():
    rows = [{"Supplier Key": "ACME", "supplier_name": "Acme", "Favourite Colour": "red"}]
    assert map_import_to_schema(rows, SUPPLIER_IMPORT_FIELDS) == [{"supplier_key": "ACME", "supplier_name": "Acme"}]


def test_validate_supplier_import():
    res = validate_import(SUPPLIERS_CSV, "supplier")
    assert res["entity_type"] == "supplier"
    assert res["rows"] == 3
    assert res["valid_rows"] == 1
    rows = _by_row(res)
    assert 2 not in rows  # first data row is clean
    assert [(i["field"], i["code"]) for i in rows[3]] == [
        ("supplier_key", "FIELD_REQUIRED"),
        ("email", "FIELD_FORMAT"),
    ]
    dup = rows[4]
    assert [(i["field"], i["code"], i["duplicate_of"]) for i in dup] == [("supplier_key", "DUPLICATE_VALUE", "row:2")]
    assert res["errors"] == 3
    assert res["warnings"] == 0


def test_validate_import_against_existing_records():
    existing = InMemoryLookup([("s9", {"supplier_key": "ACME", "email": "other@acme.test"})])
    res = validate_import(SUPPLIERS_CSV, "supplier", lookup=existing)
    rows = _by_row(res)
    assert [(i["field"], i["duplicate_of"]) for i in rows[2]] == [("supplier_key", "s9")]
    assert ("email", "warning", "s9") in [(i["field"], i["severity"], i.get("duplicate_of")) for i in rows[4]]


def test_validate_inventory_import_with_fixed_now():
    text = (
        "Item ID,Item Name,Date,Quantity,Reorder Level,Current Cost Per Unit,Unit Cost Paid\n"
        "WID-1,Widget,2024-05-01,0,5,2.00,2.00\n"
        "WID-2,Gadget,2030-01-01,-3,5,2.00,\n"
    )
    res = validate_import(text, "Inventory Item", now=date(2024, 6, 1))
    rows = _by_row(res)
    assert [i["message"] for i in rows[2]] == ["Item is out of stock", "Item is at or below reorder level"]
    assert [i["message"] for i in rows[3] if i["severity"] == "error"] == [
        "Quantity cannot be negative",
        "Date cannot be in the future",
    ]
    assert res["valid_rows"] == 1


def test_entity_without_mapping_uses_field_names():
    text = "vendor_name,vendor_email\nV1,v1@example.test\nV2,nope\n"
    res = validate_import(text, "vendor")
    assert res["valid_rows"] == 1
    assert [(i["row"], i["field"]) for i in res["issues"]] == [(3, "vendor_email")]


def test_lookup_failure_propagates():
    def broken(field, value):
        raise OSError("disk gone")

    with pytest.raises(LookupUnavailable):
        validate_import(SUPPLIERS_CSV, "supplier", lookup=broken)


def test_empty_csv():
    res = validate_import("", "supplier")
    assert res["rows"] == 0 and res["issues"] == []


def test_unknown_entity_type():
    with pytest.raises(ValueError):
        validate_import(SUPPLIERS_CSV, "spaceship")


def test_overlong_row_is_reported():
    text = "Supplier Key,Supplier Name\nACME,Acme,stray\nBETA,Beta\n"
    res = validate_import(text, "supplier")
    assert res["valid_rows"] == 1
    rows = _by_row(res)
    assert [i["code"] for i in rows[2] if i["severity"] == "error"] == ["ROW_EXTRA_VALUES"]
    assert "beyond the 2 header columns" in rows[2][0]["message"]
    assert all(i["code"] != "ROW_EXTRA_VALUES" for i in rows.get(3, []))
