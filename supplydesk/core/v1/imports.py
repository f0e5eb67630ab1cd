from __future__ import annotations
from typing import Dict, List, Mapping, Optional, Tuple, Union
import csv
import io

from .duplicates import RecordLookup, detect_duplicates
from .records import InMemoryLookup
from .rulesets import RuleSet, get_ruleset
from .validate import Issue, NowLike, validate_entity

# -------------------------------
# Bulk CSV import checking
# Spreadsheet headers -> record field names. Headers that already are field
# names pass through unchanged.
# -------------------------------

SUPPLIER_IMPORT_FIELDS: Dict[str, str] = {
    "Supplier Key": "supplier_key",
    "Supplier Name": "supplier_name",
    "Contact Name": "contact_name",
    "Contact Title": "contact_title",
    "Address": "address",
    "City": "city",
    "Region": "region",
    "Postal Code": "postal_code",
    "Country": "country",
    "Phone": "phone",
    "Email": "email",
    "Website": "website",
}

INVENTORY_IMPORT_FIELDS: Dict[str, str] = {
    "Item ID": "item_id",
    "Item Name": "item_name",
    "Date": "date",
    "Quantity": "quantity",
    "Reorder Level": "reorder_level",
    "Order Quantity": "order_quantity",
    "Current Cost Per Unit": "current_cost_per_unit",
    "Unit Cost Paid": "unit_cost_paid",
}

IMPORT_FIELD_MAPPINGS: Dict[str, Dict[str, str]] = {
    "supplier": SUPPLIER_IMPORT_FIELDS,
    "inventory_item": INVENTORY_IMPORT_FIELDS,
}

# First data row number as seen in a spreadsheet (row 1 is the header)
FIRST_DATA_ROW = 2

# Row key holding values found beyond the header columns (as csv.DictReader's restkey)
EXTRA_VALUES_KEY = None


def parse_csv(text: str) -> Tuple[List[str], List[Dict[str, str]]]:
    """Parse CSV text into (headers, rows). Blank lines are skipped; values are trimmed.

    Short rows are padded with "". Non-blank values past the last header are
    kept as a list under EXTRA_VALUES_KEY rather than dropped.
    """
    reader = csv.reader(io.StringIO(text.lstrip("\ufeff")))
    headers: List[str] = []
    rows: List[Dict[str, str]] = []
    for values in reader:
        if not any(v.strip() for v in values):
            continue
        if not headers:
            headers = [v.strip() for v in values]
            continue
        row = {}
        for idx, h in enumerate(headers):
            row[h] = values[idx].strip() if idx < len(values) else ""
        extra = [v.strip() for v in values[len(headers):]]
        if any(extra):
            row[EXTRA_VALUES_KEY] = extra
        rows.append(row)
    return headers, rows


def map_import_to_schema(rows: List[Mapping[str, str]], mapping: Mapping[str, str]) -> List[Dict[str, str]]:
    """Rename spreadsheet headers to record field names."""
    known = set(mapping.values())
    out: List[Dict[str, str]] = []
    for row in rows:
        mapped: Dict[str, str] = {}
        for header, value in row.items():
            if header in mapping:
                mapped[mapping[header]] = value
            elif header in known:
                mapped.setdefault(header, value)
        out.append(mapped)
    return out


def validate_import(
    text: str,
    entity_type: Union[str, RuleSet],
    *,
    lookup: Optional[RecordLookup] = None,
    now: NowLike = None,
    rulesets: Optional[Mapping[str, RuleSet]] = None,
    mapping: Optional[Mapping[str, str]] = None,
) -> Dict:
    """Check a CSV import without writing anything.

    Each row is validated against the entity rule set, then checked for
    duplicates against existing records (when lookup is given) and against
    earlier rows of the same file. Lookup failures propagate as
    DuplicateCheckError.

    Returns a dict: { entity_type, rows, valid_rows, errors, warnings,
    issues: [ {row, field, message, severity, code, duplicate_of?} ] }
    """
    rs = get_ruleset(entity_type, rulesets)
    if mapping is None:
        mapping = IMPORT_FIELD_MAPPINGS.get(rs.name)
        if mapping is None:
            # No spreadsheet mapping: headers must be field names
            mapping = {f.name: f.name for f in rs.fields}
    headers, rows = parse_csv(text)
    records = map_import_to_schema(rows, mapping)

    seen = InMemoryLookup()
    issues: List[Dict] = []
    valid_rows = 0
    for offset, (raw, record) in enumerate(zip(rows, records)):
        row_no = FIRST_DATA_ROW + offset
        result = validate_entity(record, rs, now)
        extra = raw.get(EXTRA_VALUES_KEY)
        if extra:
            result = result.merged([Issue(
                field="",
                message=f"Row has {len(extra)} value(s) beyond the {len(headers)} header columns",
                code="ROW_EXTRA_VALUES",
            )])
        dupes = []
        if lookup is not None:
            dupes.extend(detect_duplicates(record, rs, None, lookup))
        dupes.extend(detect_duplicates(record, rs, None, seen))
        result = result.merged(dupes)
        if result.is_valid:
            valid_rows += 1
        for it in result.issues:
            d = {"row": row_no}
            d.update(it.to_dict())
            issues.append(d)
        seen.add(f"row:{row_no}", record)

    errors = sum(1 for i in issues if i.get("severity") == "error")
    warnings = sum(1 for i in issues if i.get("severity") == "warning")
    return {
        "entity_type": rs.name,
        "rows": len(records),
        "valid_rows": valid_rows,
        "errors": errors,
        "warnings": warnings,
        "issues": issues,
    }
