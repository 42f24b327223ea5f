from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from referral_watch.config import _parse_list_env, load_config


_ENV_NAMES = (
    "PORTAL_BASE_URL",
    "PORTAL_LOGIN_URL",
    "REFERRALS_API_URL",
    "PORTAL_REFERER",
    "PORTAL_USERNAME",
    "PORTAL_PASSWORD",
    "AVAILITY_USERNAME",
    "AVAILITY_PASSWORD",
    "PORTAL_TOTP_SECRET",
    "PORTAL_MFA_METHOD",
    "REFERRAL_BRAND",
    "REFERRAL_NPI",
    "REFERRAL_STATE",
    "REFERRAL_TAX_ID",
    "EMAIL_RECIPIENTS",
    "SMS_RECIPIENTS",
    "TWILIO_ACCOUNT_SID",
    "TWILIO_SID",
    "POLL_INTERVAL_MINUTES",
    "PORT",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in _ENV_NAMES:
        monkeypatch.delenv(name, raising=False)


def _write(tmp_path: Path, name: str, text: str) -> Path:
    p = tmp_path / name
    p.write_text(text, encoding="utf-8")
    return p


def test_defaults_derive_urls_from_base_url(tmp_path: Path) -> None:
    cfg = load_config(tmp_path / "missing.yaml")
    assert cfg.portal.base_url == "https://apps.availity.com"
    assert cfg.portal.login_url.startswith("https://apps.availity.com/")
    assert cfg.portal.referrals_api_url.endswith("/ltss/referral/details")
    assert cfg.portal.referer == "https://apps.availity.com/public/apps/care-central/"
    assert cfg.polling.interval_minutes == 3
    assert cfg.server.port == 3000
    assert cfg.referral_query.body()["tabStatus"] == "INCOMING"
    assert cfg.referral_query.body()["papi"] == ""


def test_env_values_and_aliases(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("AVAILITY_USERNAME", "agency-user")
    monkeypatch.setenv("PORTAL_PASSWORD", "pw")
    monkeypatch.setenv("TWILIO_SID", "AC123")
    monkeypatch.setenv("EMAIL_RECIPIENTS", "a@example.com, b@example.com;a@example.com")
    monkeypatch.setenv("SMS_RECIPIENTS", '["+15550001", "+15550002"]')
    monkeypatch.setenv("POLL_INTERVAL_MINUTES", "5")
    monkeypatch.setenv("PORT", "8080")

    cfg = load_config(tmp_path / "missing.yaml")
    assert cfg.portal.username == "agency-user"
    assert cfg.sms.account_sid == "AC123"
    assert cfg.email.recipients == ["a@example.com", "b@example.com"]
    assert cfg.sms.recipients == ["+15550001", "+15550002"]
    assert cfg.polling.interval_minutes == 5
    assert cfg.server.port == 8080


def test_yaml_overlay_expands_env_vars(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("MY_PORTAL_PASSWORD", "from-env")
    cfg_path = _write(
        tmp_path,
        "cfg.yaml",
        """
portal:
  base_url: "https://portal.example.com/"
  password: "${MY_PORTAL_PASSWORD}"
  organization_preference: "Acme Home Care|Acme"
email:
  recipients: "ops@example.com"
polling:
  secondary_extraction: true
""",
    )
    cfg = load_config(cfg_path)
    assert cfg.portal.base_url == "https://portal.example.com"
    assert cfg.portal.password == "from-env"
    assert cfg.portal.login_url.startswith("https://portal.example.com/")
    assert cfg.email.recipients == ["ops@example.com"]
    assert cfg.polling.secondary_extraction is True
    # Env defaults still apply to keys the overlay does not mention.
    assert cfg.sms.api_base.startswith("https://api.twilio.com/")


def test_secrets_are_hidden_from_repr(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("PORTAL_PASSWORD", "hunter2")
    monkeypatch.setenv("PORTAL_TOTP_SECRET", "JBSWY3DPEHPK3PXP")
    cfg = load_config(tmp_path / "missing.yaml")
    assert "hunter2" not in repr(cfg.portal)
    assert "JBSWY3DPEHPK3PXP" not in repr(cfg.portal)


def test_missing_settings_lists_required_values(tmp_path: Path) -> None:
    cfg = load_config(tmp_path / "missing.yaml")
    missing = cfg.missing_settings()
    assert "PORTAL_USERNAME" in missing
    assert "PORTAL_TOTP_SECRET" in missing
    assert "REFERRAL_NPI" in missing


def test_backup_code_method_does_not_require_totp_secret(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("PORTAL_MFA_METHOD", "backup_code")
    cfg = load_config(tmp_path / "missing.yaml")
    assert "PORTAL_TOTP_SECRET" not in cfg.missing_settings()


@pytest.mark.parametrize(
    "yaml_text",
    [
        "portal:\n  base_url: not-a-url\n",
        "polling:\n  interval_minutes: 0\n",
        "portal:\n  mfa_method: sms\n",
    ],
)
def test_invalid_values_are_rejected(tmp_path: Path, yaml_text: str) -> None:
    with pytest.raises(ValidationError):
        load_config(_write(tmp_path, "cfg.yaml", yaml_text))


def test_parse_list_env() -> None:
    assert _parse_list_env("") == []
    assert _parse_list_env(" a , b ;; a ") == ["a", "b"]
    assert _parse_list_env('["x", "y"]') == ["x", "y"]
