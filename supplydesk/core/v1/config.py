import pathlib
import yaml
import re
import os

SD_TOOL_VERSION = "1.0"
CONFIG_FILENAME = ".supplydesk.yml"
DATAREPO_CONFIG_FILENAME = "sddatarepo.yml"
RECORDS_DIRNAME = "records"

# -------------------------------
# Record id validation
# -------------------------------
# Record ids double as file names (records/<entity_type>/<record_id>.yml), so
# they must be safe path components.
RECORD_ID_REGEX: str = r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,63}$"


def validate_record_id(record_id: str) -> None:
    """Validate that a record id (or entity type directory name) is a safe file name.

    Raises ValueError if invalid.
    """
    if not isinstance(record_id, str) or not record_id:
        raise ValueError("record id is required")
    if re.fullmatch(RECORD_ID_REGEX, record_id) is None or ".." in record_id:
        raise ValueError(
            "record id must match ^[A-Za-z0-9][A-Za-z0-9_.-]{0,63}$ and must not contain '..'"
        )


def _resolve_config_path() -> pathlib.Path:
    """Resolve the path to .supplydesk.yml with environment overrides.

    Precedence:
      1) SD_CONFIG_FILE = absolute or relative path to the config file
      2) SD_CONFIG_DIR = directory containing the config file
      3) SD_DATA_PATH  = parent data path (config at $SD_DATA_PATH/.supplydesk.yml)
      4) Fallback to CWD: ./.supplydesk.yml
    """
    env_file = os.environ.get("SD_CONFIG_FILE")
    if env_file:
        return pathlib.Path(env_file).expanduser().resolve()
    env_dir = os.environ.get("SD_CONFIG_DIR") or os.environ.get("SD_DATA_PATH")
    if env_dir:
        return pathlib.Path(env_dir).expanduser().resolve() / CONFIG_FILENAME
    return pathlib.Path(CONFIG_FILENAME).expanduser().resolve()


def ensure_config() -> pathlib.Path:
    """Ensure the user config exists; create with defaults if missing.

    Returns the path to the config file.
    """
    config_path = _resolve_config_path()
    if not config_path.exists():
        config_path.parent.mkdir(parents=True, exist_ok=True)
        config = {
            "default_datarepo": None,
        }
        with open(config_path, "w") as f:
            yaml.safe_dump(config, f)
    return config_path


def load_config() -> dict:
    config_path = ensure_config()
    with open(config_path) as f:
        return yaml.safe_load(f) or {}


def save_config(config: dict) -> None:
    config_path = _resolve_config_path()
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, "w") as f:
        yaml.safe_dump(config, f)


def get_datarepo_path() -> pathlib.Path:
    config = load_config()
    datarepo = config.get("default_datarepo")
    if not datarepo:
        raise RuntimeError(
            f"[supplyDesk] Error: default_datarepo not set in {CONFIG_FILENAME}. Run 'init' or pass --repo."
        )
    return pathlib.Path(datarepo).expanduser().resolve()


def load_datarepo_config(repo_path: pathlib.Path | None = None) -> dict:
    """Read repository-level configuration from sddatarepo.yml."""
    if repo_path is None:
        repo_path = get_datarepo_path()
    config_file = repo_path / DATAREPO_CONFIG_FILENAME
    if not config_file.exists():
        return {}
    with open(config_file) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{DATAREPO_CONFIG_FILENAME} must be a YAML mapping")
    return data


# -------------------------------
# Validation rule sets (YAML-driven)
# -------------------------------
# sddatarepo.yml may define or override entity rule sets under:
# validation:
#   entities:
#     vendor:
#       label: Vendor
#       fields:
#         vendor_code: { required: true, unique: error }
#         email: { format: email, unique: warning }
#       warnings:
#         - { field: credit_limit, above: 50000, message: Credit limit needs approval }
# A repository definition replaces the built-in rule set of the same name.

def get_validation_entity_specs(repo_path: pathlib.Path | None = None) -> dict:
    """Return the raw entity rule set specs from sddatarepo.yml.

    Shape: { entity_type: { label, fields: {..}, warnings: [..] } }
    Entries that are not mappings are ignored.
    """
    dr_cfg = load_datarepo_config(repo_path)
    validation = dr_cfg.get("validation") or {}
    if not isinstance(validation, dict):
        return {}
    entities = validation.get("entities") or {}
    if not isinstance(entities, dict):
        return {}
    return {str(k): v for k, v in entities.items() if isinstance(v, dict)}
