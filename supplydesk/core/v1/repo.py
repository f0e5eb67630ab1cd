from __future__ import annotations
from pathlib import Path
from typing import Dict, Iterable, List, Optional
import yaml

from .config import (
    SD_TOOL_VERSION,
    DATAREPO_CONFIG_FILENAME,
    RECORDS_DIRNAME,
    load_config,
    save_config,
    validate_record_id,
)
from .duplicates import detect_duplicates
from .records import InMemoryLookup, read_record, records_root
from .rulesets import RuleSet, load_rulesets, normalize_entity_type
from .validate import NowLike, validate_entity


def write_datarepo_config(repo_path: Path) -> Path:
    datarepo_config = {
        "supplydesk_version": SD_TOOL_VERSION,
        "validation": {
            "entities": {},
        },
    }
    config_file = repo_path / DATAREPO_CONFIG_FILENAME
    with open(config_file, "w") as f:
        f.write(
            "# This file is a generated scaffold by supplyDesk.\n"
            "# It is safe to edit and customize the validation rules for your repository.\n"
            "#\n"
            "# Example custom entity type:\n"
            "# validation:\n"
            "#   entities:\n"
            "#     carrier:\n"
            "#       label: Carrier\n"
            "#       fields:\n"
            "#         carrier_code: {required: true, unique: true}\n"
            "#         contact_email: {format: email, recommended: true}\n"
        )
        yaml.safe_dump(datarepo_config, f, sort_keys=False)
    records_root(repo_path).mkdir(parents=True, exist_ok=True)
    return config_file


def init_datarepo(repo_path: Path) -> Path:
    """Create a datarepo directory and return its resolved path.

    Refuses to overwrite an existing sddatarepo.yml.
    """
    repo_path = Path(repo_path).expanduser().resolve()
    if (repo_path / DATAREPO_CONFIG_FILENAME).exists():
        raise FileExistsError(f"{DATAREPO_CONFIG_FILENAME} already exists in {repo_path}")
    repo_path.mkdir(parents=True, exist_ok=True)
    write_datarepo_config(repo_path)
    return repo_path


def set_default_datarepo(repo_path: Path) -> None:
    cfg = load_config()
    cfg["default_datarepo"] = str(repo_path)
    save_config(cfg)


# -------------------------------
# Repository scan
# -------------------------------

def _issue(severity: str, code: str, path: str, message: str, field: Optional[str] = None) -> Dict:
    d = {
        "severity": severity,
        "code": code,
        "path": path,
        "message": message,
    }
    if field is not None:
        d["field"] = field
    return d


def _scan_entity_dir(
    rs: RuleSet,
    type_dir: Path,
    issues: List[Dict],
    *,
    include_duplicates: bool,
    now: NowLike,
) -> None:
    loaded = []
    for p in sorted(type_dir.glob("*.yml")):
        rel = f"{RECORDS_DIRNAME}/{type_dir.name}/{p.name}"
        try:
            validate_record_id(p.stem)
        except ValueError as e:
            issues.append(_issue("error", "REC_ID_INVALID", rel, f"Invalid record id: {e}"))
            continue
        try:
            record = read_record(p)
        except (OSError, ValueError) as e:
            issues.append(_issue("error", "REC_YML_INVALID", rel, f"Record is not a valid YAML mapping: {e}"))
            continue
        loaded.append((p.stem, rel, record))

    index = InMemoryLookup((record_id, record) for record_id, _, record in loaded)
    for record_id, rel, record in loaded:
        result = validate_entity(record, rs, now)
        if include_duplicates:
            result = result.merged(detect_duplicates(record, rs, record_id, index))
        for it in result.issues:
            d = _issue(it.severity, it.code, rel, it.message, field=it.field)
            if it.duplicate_of is not None:
                d["duplicate_of"] = it.duplicate_of
            issues.append(d)


def validate_repo(
    repo_path: Path,
    *,
    entity_types: Optional[Iterable[str]] = None,
    include_duplicates: bool = True,
    now: NowLike = None,
) -> Dict:
    """Validate every persisted record under records/<entity_type>/.

    Each record is checked against its rule set and, unless
    include_duplicates is False, against the other records of the same type.
    Directories without a rule set are reported and skipped.

    Returns a dict: { errors: int, warnings: int,
    issues: [ {severity, code, path, field?, message, duplicate_of?} ] }
    with errors listed before warnings.
    """
    repo_path = Path(repo_path)
    rulesets = load_rulesets(repo_path)
    wanted = None
    if entity_types:
        wanted = set()
        for t in entity_types:
            key = normalize_entity_type(t)
            if key not in rulesets:
                raise ValueError(f"Unknown entity type '{t}'")
            wanted.add(key)

    issues: List[Dict] = []
    root = records_root(repo_path)
    if not root.is_dir():
        issues.append(_issue("warning", "REC_ROOT_MISSING", f"{RECORDS_DIRNAME}/", f"Missing {RECORDS_DIRNAME}/ directory"))
    else:
        for type_dir in sorted(p for p in root.iterdir() if p.is_dir()):
            key = normalize_entity_type(type_dir.name)
            if wanted is not None and key not in wanted:
                continue
            rs = rulesets.get(key)
            if rs is None or key != type_dir.name:
                issues.append(_issue(
                    "warning",
                    "REC_TYPE_UNKNOWN",
                    f"{RECORDS_DIRNAME}/{type_dir.name}/",
                    f"No rule set for '{type_dir.name}'; records not validated",
                ))
                continue
            _scan_entity_dir(rs, type_dir, issues, include_duplicates=include_duplicates, now=now)

    issues.sort(key=lambda i: 0 if i.get("severity") == "error" else 1)
    errors = sum(1 for i in issues if i.get("severity") == "error")
    warnings = sum(1 for i in issues if i.get("severity") == "warning")
    return {"errors": errors, "warnings": warnings, "issues": issues}
