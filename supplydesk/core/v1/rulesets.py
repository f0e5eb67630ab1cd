from __future__ import annotations
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Dict, Mapping, Optional, Tuple, Union
import re

from .config import get_validation_entity_specs
from .rules import FORMAT_RULES

FIELD_TYPES = ("text", "number", "date")
FORMAT_NAMES = tuple(FORMAT_RULES) + ("postal_code",)
SEVERITIES = ("error", "warning")
ADVISORY_KINDS = ("equals", "above", "at_or_below", "diverges_from")


# -------------------------------
# Rule set model
# -------------------------------
# One RuleSet per entity type. Rule sets are compiled from plain dict specs
# (built-ins below, or sddatarepo.yml: validation.entities), so adding an
# entity type never needs new validator code.

@dataclass(frozen=True)
class FieldRule:
    name: str
    label: str
    type: str = "text"
    required: bool = False
    format: Optional[str] = None
    country_field: str = "country"
    choices: Tuple[str, ...] = ()
    minimum: Optional[Decimal] = None
    not_future: bool = False
    recommended: Optional[str] = None
    unique: Optional[str] = None
    unique_message: Optional[str] = None
    messages: Mapping[str, str] = field(default_factory=dict, hash=False)

    def message(self, key: str, default: str) -> str:
        return self.messages.get(key) or default


@dataclass(frozen=True)
class Advisory:
    """Cross-field warning rule; kind is one of ADVISORY_KINDS."""

    kind: str
    field: str
    message: str
    value: Optional[Decimal] = None
    other: Optional[str] = None
    percent: Optional[Decimal] = None


@dataclass(frozen=True)
class RuleSet:
    name: str
    label: str
    fields: Tuple[FieldRule, ...] = ()
    advisories: Tuple[Advisory, ...] = ()

    def get_field(self, name: str) -> Optional[FieldRule]:
        for f in self.fields:
            if f.name == name:
                return f
        return None

    @property
    def unique_fields(self) -> Tuple[FieldRule, ...]:
        return tuple(f for f in self.fields if f.unique)

    def describe(self) -> Dict:
        """Return a plain dict (JSON/YAML friendly) view of this rule set."""
        fields: Dict[str, Dict] = {}
        for f in self.fields:
            d: Dict = {"label": f.label, "type": f.type}
            if f.required:
                d["required"] = True
            if f.format:
                d["format"] = f.format
                if f.format == "postal_code":
                    d["country_field"] = f.country_field
            if f.choices:
                d["choices"] = list(f.choices)
            if f.minimum is not None:
                d["min"] = _plain_number(f.minimum)
            if f.not_future:
                d["not_future"] = True
            if f.recommended:
                d["recommended"] = f.recommended
            if f.unique:
                d["unique"] = f.unique
            fields[f.name] = d
        warnings = []
        for a in self.advisories:
            w: Dict = {"field": a.field}
            if a.kind in ("equals", "above"):
                w[a.kind] = _plain_number(a.value)
            else:
                w[a.kind] = a.other
                if a.kind == "diverges_from":
                    w["percent"] = _plain_number(a.percent)
            w["message"] = a.message
            warnings.append(w)
        return {"name": self.name, "label": self.label, "fields": fields, "warnings": warnings}


def _plain_number(d: Optional[Decimal]):
    if d is None:
        return None
    return int(d) if d == d.to_integral_value() else float(d)


def humanize_field(name: str) -> str:
    """'supplier_key' -> 'Supplier key'."""
    return name.replace("_", " ").strip().capitalize()


def normalize_entity_type(name) -> str:
    """Map 'Inventory Item', 'inventory-item', 'InventoryItem' to 'inventory_item'."""
    if not isinstance(name, str):
        return ""
    s = re.sub(r"(?<=[a-z0-9])(?=[A-Z])", "_", name.strip())
    s = re.sub(r"[\s\-]+", "_", s.lower())
    return s.strip("_")


# -------------------------------
# Spec compilation
# -------------------------------

def _decimal(value, where: str) -> Decimal:
    if isinstance(value, bool):
        raise ValueError(f"{where}: expected a number, got {value!r}")
    try:
        d = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValueError(f"{where}: expected a number, got {value!r}")
    if not d.is_finite():
        raise ValueError(f"{where}: expected a finite number, got {value!r}")
    return d


def _field_from_spec(entity: str, fname: str, fspec) -> FieldRule:
    where = f"{entity}.{fname}"
    if fspec is None:
        fspec = {}
    if not isinstance(fspec, Mapping):
        raise ValueError(f"{where}: field spec must be a mapping")
    label = str(fspec.get("label") or humanize_field(fname))
    ftype = str(fspec.get("type") or "text")
    if ftype not in FIELD_TYPES:
        raise ValueError(f"{where}: type must be one of {', '.join(FIELD_TYPES)}")
    fmt = fspec.get("format")
    if fmt is not None and fmt not in FORMAT_NAMES:
        raise ValueError(f"{where}: format must be one of {', '.join(FORMAT_NAMES)}")
    choices = fspec.get("choices") or ()
    if not isinstance(choices, (list, tuple)):
        raise ValueError(f"{where}: choices must be a list")
    minimum = None
    if fspec.get("min") is not None:
        if ftype != "number":
            raise ValueError(f"{where}: 'min' requires type number")
        minimum = _decimal(fspec.get("min"), f"{where}.min")
    not_future = bool(fspec.get("not_future", False))
    if not_future and ftype != "date":
        raise ValueError(f"{where}: 'not_future' requires type date")
    recommended = fspec.get("recommended")
    if recommended is True:
        recommended = f"{label} is recommended"
    elif recommended is False or recommended is None:
        recommended = None
    else:
        recommended = str(recommended)
    unique = fspec.get("unique")
    if unique is True:
        unique = "error"
    elif unique is False:
        unique = None
    if unique is not None and unique not in SEVERITIES:
        raise ValueError(f"{where}: unique must be 'error' or 'warning'")
    messages = fspec.get("messages") or {}
    if not isinstance(messages, Mapping):
        raise ValueError(f"{where}: messages must be a mapping")
    return FieldRule(
        name=fname,
        label=label,
        type=ftype,
        required=bool(fspec.get("required", False)),
        format=fmt,
        country_field=str(fspec.get("country_field") or "country"),
        choices=tuple(str(c) for c in choices),
        minimum=minimum,
        not_future=not_future,
        recommended=recommended,
        unique=unique,
        unique_message=str(fspec["unique_message"]) if fspec.get("unique_message") else None,
        messages={str(k): str(v) for k, v in messages.items()},
    )


def _advisory_from_spec(entity: str, idx: int, wspec) -> Advisory:
    where = f"{entity} warning {idx}"
    if not isinstance(wspec, Mapping):
        raise ValueError(f"{where}: must be a mapping")
    fname = wspec.get("field")
    if not isinstance(fname, str) or not fname.strip():
        raise ValueError(f"{where}: 'field' is required")
    message = wspec.get("message")
    if not isinstance(message, str) or not message.strip():
        raise ValueError(f"{where}: 'message' is required")
    kinds = [k for k in ADVISORY_KINDS if k in wspec]
    if len(kinds) != 1:
        raise ValueError(f"{where}: exactly one of {', '.join(ADVISORY_KINDS)} is required")
    kind = kinds[0]
    if kind in ("equals", "above"):
        return Advisory(kind=kind, field=fname, message=message, value=_decimal(wspec[kind], f"{where}.{kind}"))
    other = wspec.get(kind)
    if not isinstance(other, str) or not other.strip():
        raise ValueError(f"{where}: '{kind}' must name another field")
    if kind == "at_or_below":
        return Advisory(kind=kind, field=fname, message=message, other=other)
    percent = _decimal(wspec.get("percent", 10), f"{where}.percent")
    return Advisory(kind=kind, field=fname, message=message, other=other, percent=percent)


def ruleset_from_spec(name: str, spec: Mapping) -> RuleSet:
    """Compile a rule set spec dict into a RuleSet.

    Raises ValueError when the spec is malformed.
    """
    key = normalize_entity_type(name)
    if not key:
        raise ValueError("entity type name is required")
    if not isinstance(spec, Mapping):
        raise ValueError(f"{key}: rule set spec must be a mapping")
    fields_spec = spec.get("fields") or {}
    if not isinstance(fields_spec, Mapping):
        raise ValueError(f"{key}: 'fields' must be a mapping")
    warnings_spec = spec.get("warnings") or []
    if not isinstance(warnings_spec, (list, tuple)):
        raise ValueError(f"{key}: 'warnings' must be a list")
    fields = tuple(_field_from_spec(key, str(fname), fspec) for fname, fspec in fields_spec.items())
    advisories = tuple(_advisory_from_spec(key, i, w) for i, w in enumerate(warnings_spec, start=1))
    label = str(spec.get("label") or humanize_field(key).title())
    return RuleSet(name=key, label=label, fields=fields, advisories=advisories)


# -------------------------------
# Built-in entity types
# -------------------------------
# Field order is evaluation order, so keep the most fundamental fields first.

BUILTIN_RULESET_SPECS: Dict[str, Dict] = {
    "supplier": {
        "label": "Supplier",
        "fields": {
            "supplier_key": {
                "label": "Supplier key",
                "required": True,
                "unique": "error",
                "unique_message": "Supplier key already exists",
            },
            "supplier_name": {"label": "Supplier name", "required": True},
            "email": {
                "label": "Email",
                "format": "email",
                "recommended": "Email address is recommended",
                "unique": "warning",
                "unique_message": "Email already registered to another supplier",
            },
            "contact_name": {"label": "Contact name", "recommended": "Contact name is recommended"},
            "phone": {"label": "Phone", "format": "phone", "recommended": "Phone number is recommended"},
            "website": {"label": "Website", "format": "url"},
            "postal_code": {"label": "Postal code", "format": "postal_code", "country_field": "country"},
            "country": {"label": "Country"},
        },
    },
    "inventory_item": {
        "label": "Inventory Item",
        "fields": {
            "item_id": {
                "label": "Item ID",
                "required": True,
                "unique": "error",
                "unique_message": "Item ID already exists",
            },
            "item_name": {"label": "Item name", "required": True},
            "quantity": {"label": "Quantity", "type": "number", "required": True, "min": 0},
            "reorder_level": {"label": "Reorder level", "type": "number", "required": True, "min": 0},
            "current_cost_per_unit": {
                "label": "Current cost per unit",
                "type": "number",
                "required": True,
                "min": 0,
            },
            "order_quantity": {"label": "Order quantity", "type": "number", "min": 0},
            "unit_cost_paid": {"label": "Unit cost paid", "type": "number", "min": 0},
            "date": {"label": "Date", "type": "date", "not_future": True},
        },
        "warnings": [
            {"field": "quantity", "equals": 0, "message": "Item is out of stock"},
            {
                "field": "current_cost_per_unit",
                "above": 10000,
                "message": "Unusually high cost per unit - please verify",
            },
            {
                "field": "unit_cost_paid",
                "diverges_from": "current_cost_per_unit",
                "percent": 10,
                "message": "Cost discrepancy detected: {percent:.1f}% difference between current and paid cost",
            },
            {"field": "quantity", "at_or_below": "reorder_level", "message": "Item is at or below reorder level"},
        ],
    },
    "vendor": {
        "label": "Vendor",
        "fields": {
            "vendor_name": {"label": "Vendor name", "required": True},
            "vendor_email": {"label": "Vendor email", "required": True, "format": "email"},
            "phone": {"label": "Phone", "format": "phone"},
            "vendor_rating": {"label": "Vendor rating", "type": "number", "min": 0},
            "total_orders": {"label": "Total orders", "type": "number", "min": 0},
            "last_order_date": {"label": "Last order date", "type": "date", "not_future": True},
        },
    },
    "partner": {
        "label": "Partner",
        "fields": {
            "partner_name": {"label": "Partner name", "required": True},
            "partner_email": {
                "label": "Partner email",
                "required": True,
                "format": "email",
                "unique": "error",
                "unique_message": "Partner with this email already exists",
            },
            "total_transactions": {"label": "Total transactions", "type": "number", "min": 0},
        },
    },
    "customer": {
        "label": "Customer",
        "fields": {
            "customer_name": {"label": "Customer name", "required": True},
            "customer_email": {"label": "Customer email", "required": True, "format": "email"},
            "phone": {"label": "Phone", "format": "phone"},
        },
    },
    "manufacturing_run": {
        "label": "Manufacturing Run",
        "fields": {
            "manufacturing_id": {
                "label": "Manufacturing ID",
                "required": True,
                "unique": "error",
                "unique_message": "Manufacturing ID already exists",
            },
            "factory_name": {"label": "Factory name", "required": True},
            "production_status": {
                "label": "Production status",
                "required": True,
                "choices": ["pending", "in-progress", "completed", "delayed", "cancelled"],
            },
            "total_units_produced": {"label": "Total units produced", "type": "number", "min": 0},
            "defective_units": {"label": "Defective units", "type": "number", "min": 0},
        },
    },
    "warehouse_item": {
        "label": "Warehouse Item",
        "fields": {
            "sku": {"label": "SKU", "required": True},
            "product_name": {"label": "Product name", "required": True},
        },
    },
}

BUILTIN_RULESETS: Dict[str, RuleSet] = {
    name: ruleset_from_spec(name, spec) for name, spec in BUILTIN_RULESET_SPECS.items()
}


def load_rulesets(repo_path: Path | None = None) -> Dict[str, RuleSet]:
    """Return built-in rule sets merged with the repository's sddatarepo.yml definitions."""
    rulesets = dict(BUILTIN_RULESETS)
    if repo_path is None:
        return rulesets
    for name, spec in get_validation_entity_specs(repo_path).items():
        rs = ruleset_from_spec(name, spec)
        rulesets[rs.name] = rs
    return rulesets


def get_ruleset(
    entity_type: Union[str, RuleSet],
    rulesets: Optional[Mapping[str, RuleSet]] = None,
) -> RuleSet:
    """Resolve an entity type name (or pass a RuleSet through).

    Raises ValueError for unknown entity types.
    """
    if isinstance(entity_type, RuleSet):
        return entity_type
    table = BUILTIN_RULESETS if rulesets is None else rulesets
    rs = table.get(normalize_entity_type(entity_type))
    if rs is None:
        raise ValueError(f"Unknown entity type '{entity_type}'")
    return rs
