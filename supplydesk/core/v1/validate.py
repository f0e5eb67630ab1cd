from __future__ import annotations
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple, Union
import math

from .rules import FORMAT_RULES, is_valid_postal_code
from .rulesets import Advisory, FieldRule, RuleSet, get_ruleset

NowLike = Union[date, datetime, Callable[[], Union[date, datetime]], None]

ADVISORY_CODES = {
    "equals": "ADV_EQUALS",
    "above": "ADV_ABOVE",
    "at_or_below": "ADV_AT_OR_BELOW",
    "diverges_from": "ADV_DIVERGENCE",
}


@dataclass(frozen=True)
class Issue:
    field: str
    message: str
    severity: str = "error"
    code: str = ""
    duplicate_of: Any = None

    def to_dict(self) -> Dict:
        d = {
            "field": self.field,
            "message": self.message,
            "severity": self.severity,
            "code": self.code,
        }
        if self.duplicate_of is not None:
            d["duplicate_of"] = self.duplicate_of
        return d


@dataclass(frozen=True)
class ValidationResult:
    errors: Tuple[Issue, ...] = ()
    warnings: Tuple[Issue, ...] = ()

    @property
    def is_valid(self) -> bool:
        return not self.errors

    @property
    def issues(self) -> Tuple[Issue, ...]:
        return self.errors + self.warnings

    def merged(self, issues: Iterable[Issue]) -> "ValidationResult":
        """Return a new result with extra issues appended by severity."""
        errors = list(self.errors)
        warnings = list(self.warnings)
        for it in issues:
            if it.severity == "error":
                errors.append(it)
            else:
                warnings.append(it)
        return ValidationResult(errors=tuple(errors), warnings=tuple(warnings))

    def to_dict(self) -> Dict:
        return {
            "is_valid": self.is_valid,
            "errors": [i.to_dict() for i in self.errors],
            "warnings": [i.to_dict() for i in self.warnings],
        }


# -------------------------------
# Value coercion
# -------------------------------
# Candidate records come from untrusted input (JSON bodies, CSV rows, YAML
# files). Anything that cannot be read as the declared type counts as absent.

def _text(value) -> Optional[str]:
    """Return value if it is a string with non-whitespace content."""
    if isinstance(value, str) and value.strip():
        return value
    return None


def _number(value) -> Optional[Decimal]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return value if value.is_finite() else None
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, float):
        return Decimal(str(value)) if math.isfinite(value) else None
    if isinstance(value, str):
        s = value.strip()
        if not s:
            return None
        try:
            d = Decimal(s)
        except InvalidOperation:
            return None
        return d if d.is_finite() else None
    return None


def _date(value) -> Optional[Union[date, datetime]]:
    if isinstance(value, (date, datetime)):
        return value
    if not isinstance(value, str) or not value.strip():
        return None
    s = value.strip()
    if s.endswith(("Z", "z")):
        s = s[:-1] + "+00:00"
    try:
        return date.fromisoformat(s)
    except ValueError:
        pass
    try:
        return datetime.fromisoformat(s)
    except ValueError:
        return None


def field_present(rule: FieldRule, value) -> bool:
    """True when value reads as the rule's declared type with content."""
    if rule.type == "number":
        return _number(value) is not None
    if rule.type == "date":
        return _date(value) is not None
    return _text(value) is not None


def _resolve_now(now: NowLike) -> Union[date, datetime]:
    if callable(now):
        now = now()
    if now is None:
        return datetime.now(timezone.utc)
    return now


def _is_after(value: Union[date, datetime], now: Union[date, datetime]) -> bool:
    """Strict 'value > now'; date-only operands compare on the calendar date."""
    if isinstance(value, datetime) and isinstance(now, datetime):
        if (value.tzinfo is None) != (now.tzinfo is None):
            # Naive datetimes are taken as UTC
            if value.tzinfo is None:
                value = value.replace(tzinfo=timezone.utc)
            else:
                now = now.replace(tzinfo=timezone.utc)
        return value > now
    value_d = value.date() if isinstance(value, datetime) else value
    now_d = now.date() if isinstance(now, datetime) else now
    return value_d > now_d


def _fmt_number(d: Decimal) -> str:
    return str(int(d)) if d == d.to_integral_value() else format(d.normalize(), "f")


# -------------------------------
# Check phases (evaluation order is reporting order)
# -------------------------------

def _check_required(rs: RuleSet, record: Mapping, errors: List[Issue]) -> None:
    for rule in rs.fields:
        if rule.required and not field_present(rule, record.get(rule.name)):
            errors.append(Issue(
                field=rule.name,
                message=rule.message("required", f"{rule.label} is required"),
                code="FIELD_REQUIRED",
            ))


def _check_formats(rs: RuleSet, record: Mapping, errors: List[Issue]) -> None:
    for rule in rs.fields:
        value = _text(record.get(rule.name))
        if value is None:
            continue
        if rule.format == "postal_code":
            country = _text(record.get(rule.country_field))
            if country is not None and not is_valid_postal_code(value, country):
                errors.append(Issue(
                    field=rule.name,
                    message=rule.message(
                        "format", f"Invalid {rule.label.lower()} format for {country.strip().upper()}"
                    ),
                    code="FIELD_FORMAT",
                ))
        elif rule.format:
            if not FORMAT_RULES[rule.format](value):
                errors.append(Issue(
                    field=rule.name,
                    message=rule.message("format", f"Invalid {rule.label.lower()} format"),
                    code="FIELD_FORMAT",
                ))
        if rule.choices and value not in rule.choices:
            errors.append(Issue(
                field=rule.name,
                message=rule.message("choices", f"{rule.label} must be one of: {', '.join(rule.choices)}"),
                code="FIELD_CHOICE",
            ))


def _check_ranges(rs: RuleSet, record: Mapping, errors: List[Issue]) -> None:
    for rule in rs.fields:
        if rule.minimum is None:
            continue
        value = _number(record.get(rule.name))
        if value is not None and value < rule.minimum:
            if rule.minimum == 0:
                default = f"{rule.label} cannot be negative"
            else:
                default = f"{rule.label} must be at least {_fmt_number(rule.minimum)}"
            errors.append(Issue(
                field=rule.name,
                message=rule.message("min", default),
                code="FIELD_RANGE",
            ))


def _check_dates(rs: RuleSet, record: Mapping, now: NowLike, errors: List[Issue]) -> None:
    resolved = None
    for rule in rs.fields:
        if not rule.not_future:
            continue
        value = _date(record.get(rule.name))
        if value is None:
            continue
        if resolved is None:
            resolved = _resolve_now(now)
        if _is_after(value, resolved):
            errors.append(Issue(
                field=rule.name,
                message=rule.message("not_future", f"{rule.label} cannot be in the future"),
                code="FIELD_FUTURE_DATE",
            ))


def _check_recommended(rs: RuleSet, record: Mapping, warnings: List[Issue]) -> None:
    for rule in rs.fields:
        if rule.recommended and not field_present(rule, record.get(rule.name)):
            warnings.append(Issue(
                field=rule.name,
                message=rule.recommended,
                severity="warning",
                code="FIELD_RECOMMENDED",
            ))


def _advisory_message(adv: Advisory, **values) -> str:
    try:
        return adv.message.format(**values)
    except (KeyError, IndexError, ValueError):
        return adv.message


def _check_advisories(rs: RuleSet, record: Mapping, warnings: List[Issue]) -> None:
    for adv in rs.advisories:
        value = _number(record.get(adv.field))
        if value is None:
            continue
        if adv.kind == "equals":
            hit = value == adv.value
            extra = {}
        elif adv.kind == "above":
            hit = value > adv.value
            extra = {}
        elif adv.kind == "at_or_below":
            other = _number(record.get(adv.other))
            hit = other is not None and value <= other
            extra = {}
        else:
            # diverges_from: percentage difference measured against the reference field
            reference = _number(record.get(adv.other))
            if not value or not reference:
                continue
            percent = abs(reference - value) / reference * 100
            hit = percent > adv.percent
            extra = {"percent": float(percent)}
        if hit:
            warnings.append(Issue(
                field=adv.field,
                message=_advisory_message(adv, **extra),
                severity="warning",
                code=ADVISORY_CODES[adv.kind],
            ))


def validate_entity(
    record: Mapping,
    entity_type: Union[str, RuleSet],
    now: NowLike = None,
    *,
    rulesets: Optional[Mapping[str, RuleSet]] = None,
) -> ValidationResult:
    """Validate a candidate record against its entity type's rule set.

    Errors come out in check order (required, format, range, future date);
    warnings are recommended-but-missing fields followed by advisories.
    `now` is a date/datetime (or a callable returning one) used for the
    future-date checks; the system clock is read only when it is None.

    Record content never raises: values of the wrong type count as absent.
    Raises ValueError for an unknown entity type.
    """
    rs = get_ruleset(entity_type, rulesets)
    if not isinstance(record, Mapping):
        record = {}
    errors: List[Issue] = []
    warnings: List[Issue] = []
    _check_required(rs, record, errors)
    _check_formats(rs, record, errors)
    _check_ranges(rs, record, errors)
    _check_dates(rs, record, now, errors)
    _check_recommended(rs, record, warnings)
    _check_advisories(rs, record, warnings)
    return ValidationResult(errors=tuple(errors), warnings=tuple(warnings))
