"""
Tests for tenant profile storage.
"""

from __future__ import annotations

import json

from m365_identity_risk.profiles import ProfileStore, TenantProfile, resolve_profile


def _profile(name: str, **overrides) -> TenantProfile:
    fields = dict(
        name=name,
        tenant_id=f"tenant-{name}",
        client_id=f"client-{name}",
        safe_countries=["US", "CA"],
    )
    fields.update(overrides)
    return TenantProfile(**fields)


def test_first_profile_becomes_default(tmp_path):
    path = tmp_path / "profiles.json"
    store = ProfileStore.load(path)
    store.add(_profile("contoso"))
    store.add(_profile("fabrikam"))

    reloaded = ProfileStore.load(path)
    assert reloaded.default_profile == "contoso"
    assert [p.name for p in reloaded.list_profiles()] == ["contoso", "fabrikam"]
    assert reloaded.get("FABRIKAM").safe_countries == ["US", "CA"]


def test_set_default_and_remove(tmp_path):
    path = tmp_path / "profiles.json"
    store = ProfileStore.load(path)
    store.add(_profile("contoso"))
    store.add(_profile("fabrikam"), set_default=True)
    assert resolve_profile(path=path).name == "fabrikam"

    assert store.set_default("missing") is False
    assert store.remove("fabrikam") is True
    assert store.remove("fabrikam") is False
    assert resolve_profile(path=path).name == "contoso"
    assert resolve_profile("contoso", path=path).tenant_id == "tenant-contoso"
    assert resolve_profile("other", path=path) is None


def test_missing_or_broken_file_is_an_empty_store(tmp_path):
    assert ProfileStore.load(tmp_path / "absent.json").profiles == {}

    broken = tmp_path / "profiles.json"
    broken.write_text("{", encoding="utf-8")
    assert ProfileStore.load(broken).profiles == {}
    assert resolve_profile(path=broken) is None


def test_safe_countries_are_upper_cased_on_load(tmp_path):
    path = tmp_path / "profiles.json"
    path.write_text(json.dumps({
        "default_profile": "contoso",
        "profiles": {"contoso": {"tenant_id": "t", "client_id": "c",
                                 "safe_countries": ["us", "gb"]}},
    }), encoding="utf-8")
    profile = resolve_profile(path=path)
    assert profile.safe_countries == ["US", "GB"]
    assert profile.cert_path == "./base64.txt"


def test_optional_fields_round_trip(tmp_path, monkeypatch):
    path = tmp_path / "profiles.json"
    ProfileStore.load(path).add(
        _profile("contoso", lookback_days=14, abuseipdb_key_env="CONTOSO_KEY")
    )
    plain = ProfileStore.load(path)
    plain.add(_profile("fabrikam"))
    saved = json.loads(path.read_text(encoding="utf-8"))["profiles"]
    assert saved["contoso"]["lookback_days"] == 14
    assert "lookback_days" not in saved["fabrikam"]

    profile = resolve_profile("contoso", path=path)
    assert profile.reputation_api_key() == ""
    monkeypatch.setenv("CONTOSO_KEY", "secret")
    assert profile.reputation_api_key() == "secret"
    assert resolve_profile("fabrikam", path=path).reputation_api_key() == ""


def test_resolve_cert_path(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    assert _profile("x", cert_path="certs/app.txt").resolve_cert_path() == str(
        tmp_path / "certs" / "app.txt"
    )
    absolute = str(tmp_path / "app.pfx")
    assert _profile("x", cert_path=absolute).resolve_cert_path() == absolute
