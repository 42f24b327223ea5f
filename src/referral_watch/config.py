from __future__ import annotations

import json
import os
import re
from pathlib import Path
from typing import Literal
from typing import Union
from urllib.parse import urlparse

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator


_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Z0-9_]+)\}")


def _expand_env_vars(value: object) -> object:
    if isinstance(value, str):
        def repl(match: re.Match[str]) -> str:
            var = match.group(1)
            return os.getenv(var, "")

        return _ENV_VAR_PATTERN.sub(repl, value)
    if isinstance(value, list):
        return [_expand_env_vars(v) for v in value]
    if isinstance(value, dict):
        return {k: _expand_env_vars(v) for k, v in value.items()}
    return value


def _env_bool(name: str, default: bool = False) -> bool:
    raw = (os.getenv(name, "") or "").strip().lower()
    if not raw:
        return bool(default)
    return raw in {"1", "true", "t", "yes", "y", "on"}


def _deep_merge(base: object, override: object) -> object:
    if isinstance(base, dict) and isinstance(override, dict):
        out = dict(base)
        for k, v in override.items():
            if k in out:
                out[k] = _deep_merge(out[k], v)
            else:
                out[k] = v
        return out
    return override


def _parse_list_env(value: str) -> list[str]:
    """
    Parse a recipient list from the environment.

    Accepts comma/semicolon separated values, or JSON list syntax: ["a@x.com","b@x.com"].
    Blank entries and duplicates are dropped; order is preserved.
    """
    s = (value or "").strip()
    if not s:
        return []

    if s.startswith("["):
        try:
            data = json.loads(s)
            items = [str(x) for x in data] if isinstance(data, list) else [s]
        except Exception:
            items = [s]
    else:
        items = re.split(r"[,;]", s)

    out: list[str] = []
    seen: set[str] = set()
    for item in items:
        v = (item or "").strip()
        if not v or v in seen:
            continue
        out.append(v)
        seen.add(v)
    return out


def _default_config_from_env() -> dict:
    """
    Env-only config so a `.env` file is all most deployments need.

    YAML remains an optional override (see `load_config`).
    """
    return {
        "portal": {
            "base_url": os.getenv("PORTAL_BASE_URL", "https://apps.availity.com"),
            "login_url": os.getenv("PORTAL_LOGIN_URL", ""),
            "referrals_api_url": os.getenv("REFERRALS_API_URL", ""),
            "referer": os.getenv("PORTAL_REFERER", ""),
            "user_agent": os.getenv("PORTAL_USER_AGENT", PortalConfig.model_fields["user_agent"].default),
            "username": os.getenv("PORTAL_USERNAME", "") or os.getenv("AVAILITY_USERNAME", ""),
            "password": os.getenv("PORTAL_PASSWORD", "") or os.getenv("AVAILITY_PASSWORD", ""),
            "totp_secret": os.getenv("PORTAL_TOTP_SECRET", ""),
            "mfa_method": os.getenv("PORTAL_MFA_METHOD", "authenticator_app"),
            "organization_preference": os.getenv("PORTAL_ORGANIZATION", ""),
            "provider_preference": os.getenv("PORTAL_PROVIDER", ""),
            "headless": _env_bool("PORTAL_HEADLESS", default=True),
            "browser_executable_path": os.getenv("BROWSER_EXECUTABLE_PATH", "")
            or os.getenv("PUPPETEER_EXECUTABLE_PATH", ""),
            "debug_dir": os.getenv("PORTAL_DEBUG_DIR", "data/debug"),
        },
        "referral_query": {
            "brand": os.getenv("REFERRAL_BRAND", ""),
            "npi": os.getenv("REFERRAL_NPI", ""),
            "state": os.getenv("REFERRAL_STATE", ""),
            "tax_id": os.getenv("REFERRAL_TAX_ID", ""),
            "tab_status": os.getenv("REFERRAL_TAB_STATUS", "INCOMING"),
        },
        "email": {
            "host": os.getenv("EMAIL_HOST", "smtp.sendgrid.net"),
            "port": os.getenv("EMAIL_PORT", "587"),
            "secure": _env_bool("EMAIL_SECURE", default=False),
            "user": os.getenv("EMAIL_USER", ""),
            "password": os.getenv("EMAIL_PASS", ""),
            "from_address": os.getenv("EMAIL_FROM", ""),
            "recipients": _parse_list_env(os.getenv("EMAIL_RECIPIENTS", "")),
        },
        "sms": {
            "account_sid": os.getenv("TWILIO_ACCOUNT_SID", "") or os.getenv("TWILIO_SID", ""),
            "auth_token": os.getenv("TWILIO_AUTH_TOKEN", ""),
            "from_number": os.getenv("TWILIO_PHONE_NUMBER", ""),
            "recipients": _parse_list_env(os.getenv("SMS_RECIPIENTS", "")),
        },
        "polling": {
            "interval_minutes": os.getenv("POLL_INTERVAL_MINUTES", "3"),
            "secondary_extraction": _env_bool("SECONDARY_EXTRACTION", default=False),
            "empty_ui_extraction_is_error": _env_bool("EMPTY_UI_EXTRACTION_IS_ERROR", default=False),
        },
        "server": {
            "host": os.getenv("HOST", "0.0.0.0"),
            "port": os.getenv("PORT", "3000"),
        },
        "state": {
            "db_path": os.getenv("STATE_DB_PATH", "data/state.db"),
        },
        "logging": {
            "level": os.getenv("LOG_LEVEL", "INFO"),
            "file_path": os.getenv("LOG_FILE", "data/referral_watch.log"),
            "format": os.getenv("LOG_FORMAT", "text"),
        },
    }


class PortalConfig(BaseModel):
    """
    Portal login + data API settings.

    `login_url`, `referrals_api_url` and `referer` default to paths under `base_url` when left blank.
    """

    base_url: str = "https://apps.availity.com"
    login_url: str = ""
    referrals_api_url: str = ""
    referer: str = ""
    user_agent: str = (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) "
        "Chrome/133.0.0.0 Safari/537.36"
    )
    username: str = ""
    password: str = Field(default="", repr=False)
    totp_secret: str = Field(default="", repr=False)
    mfa_method: Literal["authenticator_app", "backup_code"] = "authenticator_app"

    # "Preferred value, else first available" policy for the post-login dropdowns.
    organization_preference: str = ""
    provider_preference: str = ""

    xsrf_cookie_name: str = "XSRF-TOKEN"
    headless: bool = True
    browser_executable_path: str = ""
    debug_dir: str = "data/debug"

    navigation_timeout_seconds: float = 60.0
    status_timeout_seconds: float = 60.0
    challenge_timeout_seconds: float = 30.0
    api_timeout_seconds: float = 30.0

    @model_validator(mode="after")
    def _fill_defaults_and_validate(self) -> "PortalConfig":
        base_url = (self.base_url or "").strip().rstrip("/")
        parsed = urlparse(base_url)
        if not parsed.scheme or not parsed.netloc:
            raise ValueError("portal.base_url must be a full URL like 'https://apps.availity.com'")
        self.base_url = base_url

        if not self.login_url:
            self.login_url = f"{base_url}/availity/web/public.elegant.login"
        if not self.referrals_api_url:
            self.referrals_api_url = (
                f"{base_url}/api/v1/proxy/anthem/provconn/v1/carecentral/ltss/referral/details"
            )
        if not self.referer:
            self.referer = f"{base_url}/public/apps/care-central/"
        return self


class ReferralQueryConfig(BaseModel):
    brand: str = ""
    npi: str = ""
    state: str = ""
    tax_id: str = ""
    tab_status: str = "INCOMING"

    def body(self) -> dict[str, str]:
        return {
            "brand": self.brand,
            "npi": self.npi,
            "papi": "",
            "state": self.state,
            "tabStatus": self.tab_status,
            "taxId": self.tax_id,
        }


class EmailConfig(BaseModel):
    host: str = "smtp.sendgrid.net"
    port: int = 587
    # True = implicit TLS (SMTPS, usually port 465). False = plain SMTP upgraded with STARTTLS.
    secure: bool = False
    user: str = ""
    password: str = Field(default="", repr=False)
    from_address: str = ""
    recipients: list[str] = Field(default_factory=list)
    timeout_seconds: float = 30.0

    @field_validator("recipients", mode="before")
    @classmethod
    def _split_recipients(cls, v: object) -> object:
        if isinstance(v, str):
            return _parse_list_env(v)
        return v


class SmsConfig(BaseModel):
    account_sid: str = ""
    auth_token: str = Field(default="", repr=False)
    from_number: str = ""
    recipients: list[str] = Field(default_factory=list)
    api_base: str = "https://api.twilio.com/2010-04-01"
    timeout_seconds: float = 30.0

    @field_validator("recipients", mode="before")
    @classmethod
    def _split_recipients(cls, v: object) -> object:
        if isinstance(v, str):
            return _parse_list_env(v)
        return v


class PollingConfig(BaseModel):
    interval_minutes: float = 3.0
    secondary_extraction: bool = False
    empty_ui_extraction_is_error: bool = False

    @field_validator("interval_minutes")
    @classmethod
    def _positive_interval(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("polling.interval_minutes must be > 0")
        return v


class ServerConfig(BaseModel):
    host: str = "0.0.0.0"
    port: int = 3000
    start_timeout_seconds: float = 180.0


class StateConfig(BaseModel):
    db_path: str = "data/state.db"


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file_path: str = "data/referral_watch.log"
    format: Literal["text", "json"] = "text"


class AppConfig(BaseModel):
    portal: PortalConfig = PortalConfig()
    referral_query: ReferralQueryConfig = ReferralQueryConfig()
    email: EmailConfig = EmailConfig()
    sms: SmsConfig = SmsConfig()
    polling: PollingConfig = PollingConfig()
    server: ServerConfig = ServerConfig()
    state: StateConfig = StateConfig()
    logging: LoggingConfig = LoggingConfig()

    def missing_settings(self) -> list[str]:
        """Settings a live run cannot do without (used by `preflight`)."""
        missing: list[str] = []
        if not self.portal.username:
            missing.append("PORTAL_USERNAME")
        if not self.portal.password:
            missing.append("PORTAL_PASSWORD")
        if self.portal.mfa_method == "authenticator_app" and not self.portal.totp_secret:
            missing.append("PORTAL_TOTP_SECRET")
        for name, value in (
            ("REFERRAL_BRAND", self.referral_query.brand),
            ("REFERRAL_NPI", self.referral_query.npi),
            ("REFERRAL_STATE", self.referral_query.state),
            ("REFERRAL_TAX_ID", self.referral_query.tax_id),
        ):
            if not value:
                missing.append(name)
        return missing


def load_config(path: Union[str, Path, None] = None) -> AppConfig:
    raw: dict = {}
    if path:
        p = Path(path)
        if p.exists():
            raw = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
            raw = _expand_env_vars(raw)  # supports ${ENV_VAR} in YAML

    merged = _deep_merge(_default_config_from_env(), raw)
    return AppConfig.model_validate(merged)
