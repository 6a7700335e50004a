"""
Tests for the command-line review workflow: mark, unmark and recompute
against an export on disk, plus profile management.
"""

from __future__ import annotations

import json

import pytest

from m365_identity_risk import profiles
from m365_identity_risk.__main__ import build_config, main, parse_args, read_accounts
from m365_identity_risk.assessment import assess_telemetry, report_id_for, write_outputs
from m365_identity_risk.config import EngineConfig, OutputConfig
from m365_identity_risk.exclusions.store import SQLiteExclusionStore

from builders import ACCOUNT_SCOPE, AS_OF, UPN, detection, raw_sign_in, telemetry

TIMESTAMP = "20240601T120000Z"
KEY = f"UR-01|{ACCOUNT_SCOPE}"


@pytest.fixture
def export_path(tmp_path, catalog):
    batch_dir = tmp_path / "batch"
    config = EngineConfig(
        detection=detection(),
        output=OutputConfig(base_dir=str(batch_dir), timestamp=TIMESTAMP),
    )
    assessment = assess_telemetry(
        telemetry(
            auth_methods=[{"@odata.type": "#microsoft.graph.passwordAuthenticationMethod"}],
            sign_ins=[raw_sign_in()],
        ),
        catalog,
        config,
        report_id=report_id_for(UPN, TIMESTAMP),
        as_of=AS_OF,
    )
    out = config.output.account_dir(UPN)
    write_outputs(assessment, out, ["json"])
    return out / "assessment.json"


@pytest.fixture
def profile_file(tmp_path, monkeypatch):
    path = tmp_path / "home" / "profiles.json"
    monkeypatch.setattr(profiles, "PROFILES_FILE", path)
    return path


def _account_points(path) -> int:
    return json.loads(path.read_text(encoding="utf-8"))["scores"]["account"]["raw_points"]


def test_mark_then_recompute(export_path, capsys):
    assert _account_points(export_path) == 3

    assert main(["mark", str(export_path), KEY, "--note", "service account"]) == 0
    store = SQLiteExclusionStore(export_path.parent.parent / "exclusions.db")
    [mark] = store.marks_for(report_id_for(UPN, TIMESTAMP))
    assert mark.note == "service account"

    # Marking alone never rewrites the export
    assert _account_points(export_path) == 3

    assert main(["recompute", str(export_path)]) == 0
    assert _account_points(export_path) == 3
    assert "After:   0 (None)" in capsys.readouterr().out

    assert main(["recompute", str(export_path), "--write"]) == 0
    assert _account_points(export_path) == 0
    assert (export_path.parent / "findings.csv").exists()
    assert (export_path.parent / "executive_summary.md").exists()


def test_unmark_restores_scores(export_path, capsys):
    main(["mark", str(export_path), KEY])
    main(["recompute", str(export_path), "--write"])
    assert _account_points(export_path) == 0

    assert main(["unmark", str(export_path), KEY]) == 0
    assert main(["unmark", str(export_path), KEY]) == 0
    assert "was not marked" in capsys.readouterr().out

    main(["recompute", str(export_path), "--write"])
    assert _account_points(export_path) == 3


def test_marking_a_mitigation_warns(export_path, capsys):
    assert main(["mark", str(export_path), "SR-15|signin:s1"]) == 0
    assert "SR-15 is a mitigating indicator" in capsys.readouterr().out

    assert main(["mark", str(export_path), KEY]) == 0
    assert "mitigating" not in capsys.readouterr().out


def test_mark_rejects_unknown_findings(export_path, capsys):
    assert main(["mark", str(export_path), "UR-01|account:bob@contoso.com"]) == 1
    assert "is not a finding" in capsys.readouterr().out
    assert main(["mark", str(export_path), "not-a-key"]) == 2


def test_recompute_rejects_non_exports(tmp_path, capsys):
    other = tmp_path / "other.json"
    other.write_text("{}", encoding="utf-8")
    assert main(["recompute", str(other)]) == 2
    assert "schema_version" in capsys.readouterr().out


def test_assess_rejects_malformed_accounts(capsys):
    assert main(["assess", "alice@contoso.com", "not-an-upn"]) == 2
    assert "not-an-upn" in capsys.readouterr().out


def test_accounts_file(tmp_path):
    accounts = tmp_path / "users.txt"
    accounts.write_text(
        "# pilot group\nAlice@Contoso.com\n\nbob@contoso.com  # finance\n", encoding="utf-8",
    )
    args = parse_args(["assess", "carol@contoso.com", "--accounts-file", str(accounts)])
    assert read_accounts(args) == ["carol@contoso.com", "alice@contoso.com", "bob@contoso.com"]


def test_permissions(capsys):
    assert main(["permissions"]) == 0
    assert "AuditLog.Read.All" in capsys.readouterr().out


def test_profile_commands(profile_file, capsys):
    assert main(["profile", "add", "contoso", "--tenant-id", "t-1", "--client-id", "c-1",
                 "--safe-countries", "us", "gb"]) == 0
    assert main(["profile", "add", "fabrikam", "--tenant-id", "t-2", "--client-id", "c-2"]) == 0
    assert main(["profile", "set-default", "fabrikam"]) == 0
    assert main(["profile", "set-default", "missing"]) == 1

    store = profiles.ProfileStore.load(profile_file)
    assert store.default_profile == "fabrikam"
    assert store.get("contoso").safe_countries == ["US", "GB"]

    assert main(["profile", "list"]) == 0
    assert "contoso" in capsys.readouterr().out
    assert main(["profile", "remove", "contoso"]) == 0
    assert main(["profile", "remove", "contoso"]) == 1


def test_build_config_from_profile(profile_file, tmp_path, monkeypatch):
    monkeypatch.setenv("CONTOSO_ABUSEIPDB_KEY", "k-contoso")
    main(["profile", "add", "contoso", "--tenant-id", "t-1", "--client-id", "c-1",
          "--safe-countries", "us", "--lookback-days", "14",
          "--abuseipdb-key-env", "CONTOSO_ABUSEIPDB_KEY"])
    args = parse_args(["assess", "alice@contoso.com", "--profile", "contoso",
                       "--output-dir", str(tmp_path / "out"), "--no-reputation",
                       "--formats", "json", "csv"])
    config = build_config(args)
    assert config.auth.certificate.tenant_id == "t-1"
    assert config.detection.safe_countries == ["US"]
    assert config.output.base_dir == str(tmp_path / "out")
    assert config.reputation.enabled is False
    assert config.reputation.api_key == "k-contoso"
    assert config.collection.lookback_days == 14
    assert config.output.formats == ["json", "csv"]

    overridden = build_config(parse_args(
        ["assess", "alice@contoso.com", "--profile", "contoso", "--safe-countries", "de"]
    ))
    assert overridden.detection.safe_countries == ["DE"]


def test_build_config_without_credentials(profile_file):
    with pytest.raises(SystemExit):
        build_config(parse_args(["assess", "alice@contoso.com"]))
