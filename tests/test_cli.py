from __future__ import annotations
import json
import sys
from pathlib import Path

import pytest
import yaml

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from supplydesk.cli import sd_cli
from supplydesk.core.v1.repo import init_datarepo


def _write(p: Path, text: str) -> None:
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(text, encoding="utf-8")


@pytest.fixture()
def env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    monkeypatch.setenv("SD_CONFIG_FILE", str(tmp_path / "cfg" / ".supplydesk.yml"))
    monkeypatch.delenv("SD_REPO", raising=False)
    monkeypatch.delenv("SD_FORMAT", raising=False)
    repo = init_datarepo(tmp_path / "dr")
    return repo


def _run(monkeypatch, capsys, *argv):
    """Run the CLI; return (exit_code, stdout)."""
    monkeypatch.setattr(sys, "argv", ["sd", *argv])
    code = 0
    try:
        sd_cli.main()
    except SystemExit as e:
        code = e.code if isinstance(e.code, int) else 1
    return code, capsys.readouterr().out


GOOD_SUPPLIER = [
    "supplier_key=ACME",
    "supplier_name=Acme Corp",
    "email=sales@acme.test",
    "contact_name=Jane",
    "phone=555-1234",
]


def test_init_sets_default(monkeypatch, capsys, tmp_path: Path):
    monkeypatch.setenv("SD_CONFIG_FILE", str(tmp_path / "cfg.yml"))
    code, out = _run(monkeypatch, capsys, "init", str(tmp_path / "newrepo"))
    assert code == 0
    assert "Initialized new datarepo" in out
    assert (tmp_path / "newrepo" / "sddatarepo.yml").exists()
    cfg = yaml.safe_load((tmp_path / "cfg.yml").read_text())
    assert cfg["default_datarepo"] == str((tmp_path / "newrepo").resolve())


def test_init_refuses_existing_datarepo(monkeypatch, capsys, env):
    code, out = _run(monkeypatch, capsys, "init", str(env))
    assert code == 1
    assert "[supplyDesk] Error:" in out


def test_check_valid_record(monkeypatch, capsys, env):
    code, out = _run(monkeypatch, capsys, "-R", str(env), "-F", "json", "check", "supplier", *GOOD_SUPPLIER)
    assert code == 0
    res = json.loads(out)
    assert res["is_valid"] is True
    assert res["entity_type"] == "supplier"


def test_check_invalid_record_exits_1(monkeypatch, capsys, env):
    code, out = _run(monkeypatch, capsys, "-R", str(env), "check", "supplier", "supplier_name=Acme", "email=nope")
    assert code == 1
    assert "FIELD_REQUIRED" in out
    assert "Invalid email format" in out


def test_check_reports_duplicates(monkeypatch, capsys, env):
    _write(env / "records" / "supplier" / "s1.yml", "supplier_key: ACME\nsupplier_name: Acme\n")
    code, out = _run(monkeypatch, capsys, "-R", str(env), "-F", "json", "check", "supplier", *GOOD_SUPPLIER)
    assert code == 1
    res = json.loads(out)
    assert [(e["code"], e["duplicate_of"]) for e in res["errors"]] == [("DUPLICATE_VALUE", "s1")]

    code, out = _run(monkeypatch, capsys, "-R", str(env), "-F", "json", "check", "supplier", *GOOD_SUPPLIER, "--exclude-id", "s1")
    assert code == 0


def test_check_lookup_failure_exits_3(monkeypatch, capsys, env):
    _write(env / "records" / "supplier" / "bad.yml", "supplier_key: [oops\n")
    code, out = _run(monkeypatch, capsys, "-R", str(env), "check", "supplier", *GOOD_SUPPLIER)
    assert code == sd_cli.EXIT_LOOKUP_FAILED
    assert "duplicate check could not run" in out


def test_check_without_repo_when_duplicates_skipped(monkeypatch, capsys, env):
    code, out = _run(monkeypatch, capsys, "-F", "json", "check", "supplier", *GOOD_SUPPLIER, "--no-duplicates")
    assert code == 0
    assert json.loads(out)["is_valid"] is True
    # duplicates need a datarepo
    code, out = _run(monkeypatch, capsys, "check", "supplier", *GOOD_SUPPLIER)
    assert code == 1
    assert "default_datarepo not set" in out


def test_check_from_file_with_overrides(monkeypatch, capsys, env, tmp_path: Path):
    rec = tmp_path / "item.yml"
    _write(rec, "item_id: W1\nitem_name: Widget\nquantity: 5\nreorder_level: 1\ncurrent_cost_per_unit: 2\ndate: '2024-06-02'\n")
    code, out = _run(monkeypatch, capsys, "-R", str(env), "-F", "json", "check", "inventory_item",
                     "--file", str(rec), "--now", "2024-06-01")
    assert code == 1
    assert [e["field"] for e in json.loads(out)["errors"]] == ["date"]
    code, out = _run(monkeypatch, capsys, "-R", str(env), "-F", "json", "check", "inventory_item", "date=2024-05-01",
                     "--file", str(rec), "--now", "2024-06-01")
    assert code == 0


def test_check_invalid_now(monkeypatch, capsys, env):
    code, out = _run(monkeypatch, capsys, "-R", str(env), "check", "supplier", "--now", "soon")
    assert code == 2


def test_check_unknown_type(monkeypatch, capsys, env):
    code, out = _run(monkeypatch, capsys, "-R", str(env), "check", "spaceship", "a=b")
    assert code == 1
    assert "Unknown entity type" in out


def test_check_csv(monkeypatch, capsys, env, tmp_path: Path):
    csv_path = tmp_path / "suppliers.csv"
    _write(csv_path, "Supplier Key,Supplier Name\nACME,Acme\nACME,Acme Two\n")
    code, out = _run(monkeypatch, capsys, "-R", str(env), "-F", "json", "check-csv", "supplier", str(csv_path))
    assert code == 1
    res = json.loads(out)
    assert res["rows"] == 2 and res["valid_rows"] == 1
    assert any(i.get("duplicate_of") == "row:2" for i in res["issues"])


def test_validate_strict(monkeypatch, capsys, env):
    _write(env / "records" / "supplier" / "s1.yml", "supplier_key: ACME\nsupplier_name: Acme\n")
    code, out = _run(monkeypatch, capsys, "-R", str(env), "validate")
    assert code == 0
    assert "Errors: 0, Warnings: 3" in out
    code, _ = _run(monkeypatch, capsys, "-R", str(env), "validate", "--strict")
    assert code == 1


def test_validate_json(monkeypatch, capsys, env):
    _write(env / "records" / "supplier" / "s1.yml", "supplier_name: Acme\n")
    code, out = _run(monkeypatch, capsys, "-R", str(env), "-F", "json", "validate", "--type", "supplier")
    assert code == 1
    res = json.loads(out)
    assert res["errors"] == 1
    assert res["issues"][0]["path"] == "records/supplier/s1.yml"


def test_rules_ls_and_show(monkeypatch, capsys, env):
    code, out = _run(monkeypatch, capsys, "-R", str(env), "-F", "json", "rules", "ls")
    assert code == 0
    names = [r["name"] for r in json.loads(out)]
    assert "supplier" in names and "inventory_item" in names

    code, out = _run(monkeypatch, capsys, "-R", str(env), "-F", "yaml", "rules", "show", "inventory_item")
    assert code == 0
    desc = yaml.safe_load(out)
    assert "reorder_level" in desc["fields"]

    code, out = _run(monkeypatch, capsys, "-R", str(env), "rules", "show", "spaceship")
    assert code == 1


def test_format_from_env(monkeypatch, capsys, env):
    monkeypatch.setenv("SD_FORMAT", "json")
    code, out = _run(monkeypatch, capsys, "-R", str(env), "rules", "ls")
    assert code == 0
    assert isinstance(json.loads(out), list)
