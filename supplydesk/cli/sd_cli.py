import sys
import os
import argparse
import pathlib
import json
import yaml
import datetime

from supplydesk import __version__
from supplydesk.core.v1.config import (
    get_datarepo_path,
    CONFIG_FILENAME,
)
from supplydesk.core.v1 import repo as repo_ops
from supplydesk.core.v1.duplicates import DuplicateCheckError, detect_duplicates
from supplydesk.core.v1.imports import validate_import
from supplydesk.core.v1.records import RecordDirectoryLookup
from supplydesk.core.v1.rulesets import load_rulesets, get_ruleset
from supplydesk.core.v1.validate import validate_entity

# Exit code when the existing-records lookup failed (duplicates not checked)
EXIT_LOOKUP_FAILED = 3


class SDArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that prints full help on error instead of short usage."""
    def error(self, message):
        self.print_help()
        sys.stderr.write(f"\nError: {message}\n")
        raise SystemExit(2)


def main():
    # Root parser and global options (git-like)
    env_format = os.getenv("SD_FORMAT", "human").lower()
    if env_format not in ("human", "json", "yaml"):
        env_format = "human"
    parser = SDArgumentParser(prog="sd", description="supplyDesk record validation CLI")
    parser.add_argument("-R", "--repo", dest="repo", default=os.getenv("SD_REPO"), help="Override datarepo path")
    parser.add_argument(
        "-F", "--format", dest="format", choices=["human", "json", "yaml"], default=env_format,
        help="Output format (default from SD_FORMAT or 'human')"
    )
    parser.add_argument("--version", action="version", version=f"supplyDesk {__version__}")

    subparsers = parser.add_subparsers(dest="command", required=False, parser_class=SDArgumentParser)

    # init
    init_parser = subparsers.add_parser("init", help="Initialize a new datarepo at PATH")
    init_parser.add_argument("path", nargs="?", default=".", help="Target directory for the datarepo (default: current directory)")
    init_parser.add_argument("--no-default", dest="set_default", action="store_false", help="Do not set as default datarepo")

    # check: validate a single candidate record
    check_parser = subparsers.add_parser(
        "check",
        help="Validate one candidate record",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  sd check supplier supplier_key=ACME supplier_name='Acme Corp' email=sales@acme.test\n"
            "  sd check inventory_item --file item.yml --exclude-id widget-1\n\n"
            "Notes:\n"
            "  - key=value pairs override values read from --file.\n"
            "  - Duplicates are checked against records/<type>/ in the datarepo."
        ),
    )
    check_parser.add_argument("entity_type", help="Entity type (e.g., supplier, inventory_item)")
    check_parser.add_argument("pairs", nargs="*", help="key=value fields of the candidate record")
    check_parser.add_argument("--file", dest="file", default=None, help="YAML or JSON file holding the record ('-' for stdin)")
    check_parser.add_argument("--exclude-id", dest="exclude_id", default=None, help="Record id to ignore in duplicate checks (for updates)")
    check_parser.add_argument("--now", dest="now", default=None, help="Reference date/time for future-date checks (ISO 8601)")
    check_parser.add_argument("--no-duplicates", dest="check_duplicates", action="store_false", help="Skip duplicate detection")

    # check-csv: validate a bulk import file
    csv_parser = subparsers.add_parser("check-csv", help="Validate a CSV import file without importing it")
    csv_parser.add_argument("entity_type", help="Entity type (e.g., supplier, inventory_item)")
    csv_parser.add_argument("file", help="CSV file path ('-' for stdin)")
    csv_parser.add_argument("--now", dest="now", default=None, help="Reference date/time for future-date checks (ISO 8601)")
    csv_parser.add_argument("--no-duplicates", dest="check_duplicates", action="store_false", help="Skip duplicate detection against existing records")

    # validate command (repo linter)
    validate_parser = subparsers.add_parser("validate", help="Validate all records in the datarepo")
    validate_parser.add_argument("--type", dest="types", action="append", default=None, help="Only validate this entity type (repeatable)")
    validate_parser.add_argument("--strict", action="store_true", help="Exit non-zero on warnings as well as errors")
    validate_parser.add_argument("--no-duplicates", dest="check_duplicates", action="store_false", help="Skip duplicate detection")
    validate_parser.add_argument("--now", dest="now", default=None, help="Reference date/time for future-date checks (ISO 8601)")

    # rules group
    rules_parser = subparsers.add_parser("rules", help="Inspect entity rule sets")
    rules_sub = rules_parser.add_subparsers(dest="rules_cmd", required=False, parser_class=SDArgumentParser)
    rules_sub.add_parser("ls", aliases=["list"], help="List entity types with rule sets")
    rules_show = rules_sub.add_parser("show", aliases=["view"], help="Show the rule set of an entity type")
    rules_show.add_argument("entity_type", help="Entity type")

    # web command
    web_parser = subparsers.add_parser("web", help="Start the validation web API")
    web_parser.add_argument("--port", type=int, default=8080, help="Port to run the web server on (default: 8080)")
    web_parser.add_argument("--host", default="0.0.0.0", help="Host to bind the web server to (default: 0.0.0.0)")
    web_parser.add_argument("--debug", action="store_true", help="Run in debug mode with auto-reload")

    args, unknown = parser.parse_known_args()

    # If there are unknown tokens, print the most relevant full help and exit with error
    if unknown:
        cmd = getattr(args, "command", None)
        if cmd == "rules":
            rules_parser.print_help()
        elif cmd == "check":
            check_parser.print_help()
        else:
            parser.print_help()
        sys.exit(2)

    # Helper: resolve repo path honoring -R/--repo
    def _repo_path() -> pathlib.Path:
        if getattr(args, "repo", None):
            return pathlib.Path(args.repo).expanduser().resolve()
        return get_datarepo_path()

    # Helper: repo path if one is configured; rule sets fall back to built-ins otherwise
    def _optional_repo_path():
        try:
            return _repo_path()
        except RuntimeError:
            return None

    # Helper: normalize format
    def _fmt() -> str:
        return args.format

    def _print_or_dump(obj, human_line: str | None = None):
        fmt = _fmt()
        if fmt == "json":
            print(json.dumps(obj, indent=2, default=str))
        elif fmt == "yaml":
            print(yaml.safe_dump(obj, sort_keys=False))
        elif human_line is not None:
            print(human_line)

    def _parse_now(val):
        if val is None:
            return None
        val = val.strip()
        probe = val[:-1] + "+00:00" if val.endswith("Z") else val
        try:
            return datetime.date.fromisoformat(probe)
        except ValueError:
            pass
        try:
            return datetime.datetime.fromisoformat(probe)
        except ValueError:
            print("[supplyDesk] Error: invalid ISO 8601 date/time for --now. Examples: 2024-06-01 or 2024-06-01T12:00:00Z")
            sys.exit(2)

    def _parse_pairs(pairs_list):
        updates = {}
        for pair in pairs_list or []:
            if "=" not in pair:
                print(f"[supplyDesk] Error: invalid key=value pair '{pair}'")
                sys.exit(1)
            k, v = pair.split("=", 1)
            updates[k.strip()] = v.strip()
        return updates

    def _read_text(path: str) -> str:
        if path == "-":
            return sys.stdin.read()
        return pathlib.Path(path).expanduser().read_text(encoding="utf-8")

    def _print_issues(issues, location_key: str):
        for it in issues:
            sev = it.get("severity", "?")
            code = it.get("code", "?")
            where = it.get(location_key, "")
            if location_key != "field" and it.get("field"):
                where = f"{where} {it['field']}"
            msg = it.get("message", "")
            line = f" - [{sev.upper()}] {code} :: {where} :: {msg}"
            if it.get("duplicate_of") is not None:
                line += f" (duplicate of {it['duplicate_of']})"
            print(line)

    def cmd_init(args):
        target_path = pathlib.Path(args.path)
        try:
            repo_path = repo_ops.init_datarepo(target_path)
            if args.set_default:
                repo_ops.set_default_datarepo(repo_path)
        except Exception as e:
            print(f"[supplyDesk] Error: {e}")
            sys.exit(1)

        fmt = _fmt()
        if fmt in ("json", "yaml"):
            _print_or_dump({"repo_path": str(repo_path), "default": bool(args.set_default)})
        else:
            print(f"[supplyDesk] Initialized new datarepo at '{repo_path}'")
            if args.set_default:
                print(f"[supplyDesk] Default datarepo set in '{CONFIG_FILENAME}'")

    def cmd_check(args):
        now = _parse_now(args.now)
        record = {}
        if args.file:
            try:
                loaded = yaml.safe_load(_read_text(args.file))
            except (OSError, yaml.YAMLError) as e:
                print(f"[supplyDesk] Error: could not read record file: {e}")
                sys.exit(1)
            if loaded is not None and not isinstance(loaded, dict):
                print("[supplyDesk] Error: record file must hold a YAML/JSON mapping")
                sys.exit(1)
            record.update(loaded or {})
        record.update(_parse_pairs(args.pairs))

        try:
            if args.check_duplicates:
                datarepo_path = _repo_path()
            else:
                datarepo_path = _optional_repo_path()
            rulesets = load_rulesets(datarepo_path)
            rs = get_ruleset(args.entity_type, rulesets)
            result = validate_entity(record, rs, now)
            if args.check_duplicates:
                lookup = RecordDirectoryLookup(datarepo_path, rs.name)
                result = result.merged(detect_duplicates(record, rs, args.exclude_id, lookup))
        except DuplicateCheckError as e:
            print(f"[supplyDesk] Error: duplicate check could not run: {e}")
            sys.exit(EXIT_LOOKUP_FAILED)
        except Exception as e:
            print(f"[supplyDesk] Error: {e}")
            sys.exit(1)

        out = result.to_dict()
        out["entity_type"] = rs.name
        fmt = _fmt()
        if fmt in ("json", "yaml"):
            _print_or_dump(out)
        else:
            if result.is_valid:
                print(f"[supplyDesk] {rs.label} record is valid ({len(result.warnings)} warning(s))")
            else:
                print(f"[supplyDesk] {rs.label} record is invalid ({len(result.errors)} error(s), {len(result.warnings)} warning(s))")
            _print_issues([i.to_dict() for i in result.issues], "field")
        if not result.is_valid:
            sys.exit(1)

    def cmd_check_csv(args):
        now = _parse_now(args.now)
        try:
            text = _read_text(args.file)
        except OSError as e:
            print(f"[supplyDesk] Error: could not read CSV file: {e}")
            sys.exit(1)
        try:
            if args.check_duplicates:
                datarepo_path = _repo_path()
            else:
                datarepo_path = _optional_repo_path()
            rulesets = load_rulesets(datarepo_path)
            rs = get_ruleset(args.entity_type, rulesets)
            lookup = RecordDirectoryLookup(datarepo_path, rs.name) if args.check_duplicates else None
            result = validate_import(text, rs, lookup=lookup, now=now)
        except DuplicateCheckError as e:
            print(f"[supplyDesk] Error: duplicate check could not run: {e}")
            sys.exit(EXIT_LOOKUP_FAILED)
        except Exception as e:
            print(f"[supplyDesk] Error: {e}")
            sys.exit(1)

        fmt = _fmt()
        if fmt in ("json", "yaml"):
            _print_or_dump(result)
        else:
            print(f"[supplyDesk] Import check for {args.file} ({result['entity_type']})")
            print(f"Rows: {result['rows']}, Valid: {result['valid_rows']}, Errors: {result['errors']}, Warnings: {result['warnings']}")
            _print_issues([dict(i, row=f"row {i['row']}") for i in result["issues"]], "row")
        if result["errors"] > 0:
            sys.exit(1)

    def cmd_validate(args):
        now = _parse_now(args.now)
        datarepo_path = None
        try:
            datarepo_path = _repo_path()
            result = repo_ops.validate_repo(
                datarepo_path,
                entity_types=args.types,
                include_duplicates=args.check_duplicates,
                now=now,
            )
        except DuplicateCheckError as e:
            print(f"[supplyDesk] Error: duplicate check could not run: {e}")
            sys.exit(EXIT_LOOKUP_FAILED)
        except Exception as e:
            print(f"[supplyDesk] Error: {e}")
            sys.exit(1)
        fmt = _fmt()
        errors = int(result.get("errors", 0))
        warnings = int(result.get("warnings", 0))
        if fmt in ("json", "yaml"):
            _print_or_dump(result)
        else:
            # Human report
            print(f"[supplyDesk] Validation results for {datarepo_path}")
            print(f"Errors: {errors}, Warnings: {warnings}")
            _print_issues(result.get("issues", []), "path")
        if errors > 0 or (getattr(args, "strict", False) and warnings > 0):
            sys.exit(1)

    def cmd_rules_ls(args):
        try:
            rulesets = load_rulesets(_optional_repo_path())
        except Exception as e:
            print(f"[supplyDesk] Error: {e}")
            sys.exit(1)
        rows = [
            {"name": rs.name, "label": rs.label, "fields": len(rs.fields), "unique": [f.name for f in rs.unique_fields]}
            for rs in sorted(rulesets.values(), key=lambda r: r.name)
        ]
        fmt = _fmt()
        if fmt in ("json", "yaml"):
            _print_or_dump(rows)
            return
        fields = ["name", "label", "fields"]
        header = " | ".join(f"{f.title():<20}" for f in fields)
        print(header)
        print("-" * len(header))
        for r in rows:
            print(" | ".join(f"{str(r.get(f, '')):<20}" for f in fields))

    def cmd_rules_show(args):
        try:
            rs = get_ruleset(args.entity_type, load_rulesets(_optional_repo_path()))
        except Exception as e:
            print(f"[supplyDesk] Error: {e}")
            sys.exit(1)
        desc = rs.describe()
        fmt = _fmt()
        if fmt in ("json", "yaml"):
            _print_or_dump(desc)
        else:
            print(yaml.safe_dump(desc, sort_keys=False))

    def cmd_web(args):
        try:
            # Import Flask app here to avoid import issues if Flask isn't installed
            project_root = pathlib.Path(__file__).parent.parent.parent
            sys.path.insert(0, str(project_root))

            from web.app import app

            print(" Starting supplyDesk validation API...")
            print(f" Access the API at: http://localhost:{args.port}/api/rules")
            print("=" * 50)

            try:
                app.run(
                    debug=args.debug,
                    host=args.host,
                    port=args.port,
                    use_reloader=args.debug
                )
            except KeyboardInterrupt:
                print("\n Shutting down supplyDesk web API...")
            except OSError as e:
                if "Address already in use" in str(e):
                    print(f" Error: Port {args.port} is already in use.")
                    print(f"   Try using a different port: sd web --port {args.port + 1}")
                else:
                    print(f" Error starting web server: {e}")
                sys.exit(1)

        except ImportError as e:
            # Only claim Flask is missing if that's the failing module
            missing = getattr(e, "name", "") or ""
            if missing == "flask":
                print(" Error: Flask is not installed.")
                print("   Install web dependencies: pip install flask prometheus-client")
            else:
                print(f" Import error starting web API: {e}")
            sys.exit(1)

    # Dispatch via table
    cmd = args.command

    # Determine subcommand for the current group
    if cmd == "rules":
        sub = getattr(args, "rules_cmd", None)
    else:
        sub = None

    DISPATCH = {
        ("init", None): cmd_init,
        ("check", None): cmd_check,
        ("check-csv", None): cmd_check_csv,
        ("validate", None): cmd_validate,
        ("rules", "ls"): cmd_rules_ls,
        ("rules", "list"): cmd_rules_ls,
        ("rules", "show"): cmd_rules_show,
        ("rules", "view"): cmd_rules_show,
        ("web", None): cmd_web,
    }

    handler = DISPATCH.get((cmd, sub))
    if handler:
        handler(args)
    else:
        if cmd == "rules":
            rules_parser.print_help()
        else:
            parser.print_help()


if __name__ == "__main__":
    main()
