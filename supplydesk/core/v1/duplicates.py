from __future__ import annotations
from concurrent.futures import CancelledError as FutureCancelledError
from typing import Any, Awaitable, Callable, Iterable, Iterator, List, Mapping, Optional, Tuple, Union

from .rulesets import FieldRule, RuleSet, get_ruleset
from .validate import Issue, field_present

# Existing-records lookup capability: (field_name, value) -> identities of
# persisted records whose stored value for field_name equals value.
RecordLookup = Callable[[str, Any], Iterable[Any]]
AsyncRecordLookup = Callable[[str, Any], Awaitable[Iterable[Any]]]


class DuplicateCheckError(Exception):
    """The existing-records lookup could not answer; duplicates were not checked."""

    def __init__(self, message: str, *, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class LookupUnavailable(DuplicateCheckError):
    """The lookup failed (backing store unreachable, unreadable data, ...)."""


class LookupCancelled(DuplicateCheckError):
    """The in-flight lookup was abandoned by its caller."""


def _candidates(record: Mapping, rs: RuleSet) -> Iterator[Tuple[FieldRule, Any]]:
    """Yield (rule, value) for each uniqueness-sensitive field present in record."""
    if not isinstance(record, Mapping):
        return
    for rule in rs.unique_fields:
        value = record.get(rule.name)
        if field_present(rule, value):
            yield rule, value


def _same_identity(a, b) -> bool:
    # Ids from URLs/filenames arrive as strings; stored ids may be ints
    return a == b or str(a) == str(b)


def _collision(rule: FieldRule, matches: List[Any], exclude_id) -> Optional[Issue]:
    if exclude_id is not None:
        matches = [m for m in matches if not _same_identity(m, exclude_id)]
    if not matches:
        return None
    return Issue(
        field=rule.name,
        message=rule.unique_message or f"{rule.label} already exists",
        severity=rule.unique,
        code="DUPLICATE_VALUE",
        duplicate_of=matches[0],
    )


def _as_list(matches) -> List[Any]:
    if matches is None:
        return []
    if isinstance(matches, (str, bytes)):
        # A bare identity rather than a collection of them
        return [matches]
    return list(matches)


def detect_duplicates(
    record: Mapping,
    entity_type: Union[str, RuleSet],
    exclude_id=None,
    lookup: Optional[RecordLookup] = None,
    *,
    rulesets: Optional[Mapping[str, RuleSet]] = None,
) -> List[Issue]:
    """Find existing records colliding with record on uniqueness-sensitive fields.

    Fields absent from the record are skipped. exclude_id is the record's own
    identity when validating an update. Each colliding field yields one Issue
    with the severity its rule declares (e.g. supplier_key: error,
    email: warning) and duplicate_of set to the first other match.

    Raises DuplicateCheckError (LookupUnavailable / LookupCancelled) when the
    lookup fails, so callers can tell "no duplicates" from "not checked".
    """
    if lookup is None:
        raise ValueError("lookup is required")
    rs = get_ruleset(entity_type, rulesets)
    issues: List[Issue] = []
    for rule, value in _candidates(record, rs):
        try:
            matches = _as_list(lookup(rule.name, value))
        except DuplicateCheckError:
            raise
        except FutureCancelledError as e:
            raise LookupCancelled(f"Lookup for '{rule.name}' was cancelled", field=rule.name) from e
        except Exception as e:
            raise LookupUnavailable(f"Lookup for '{rule.name}' failed: {e}", field=rule.name) from e
        issue = _collision(rule, matches, exclude_id)
        if issue is not None:
            issues.append(issue)
    return issues


async def adetect_duplicates(
    record: Mapping,
    entity_type: Union[str, RuleSet],
    exclude_id=None,
    lookup: Optional[AsyncRecordLookup] = None,
    *,
    rulesets: Optional[Mapping[str, RuleSet]] = None,
) -> List[Issue]:
    """Coroutine variant of detect_duplicates for awaitable lookups.

    asyncio.CancelledError is not caught: a cancelled lookup propagates it
    unchanged instead of yielding a partial result.
    """
    if lookup is None:
        raise ValueError("lookup is required")
    rs = get_ruleset(entity_type, rulesets)
    issues: List[Issue] = []
    for rule, value in _candidates(record, rs):
        try:
            matches = _as_list(await lookup(rule.name, value))
        except DuplicateCheckError:
            raise
        except FutureCancelledError as e:
            raise LookupCancelled(f"Lookup for '{rule.name}' was cancelled", field=rule.name) from e
        except Exception as e:
            raise LookupUnavailable(f"Lookup for '{rule.name}' failed: {e}", field=rule.name) from e
        issue = _collision(rule, matches, exclude_id)
        if issue is not None:
            issues.append(issue)
    return issues
