from __future__ import annotations

import os
import subprocess
import sys
from pathlib import Path
from typing import Optional

import pytest
from dotenv import dotenv_values

ROOT = Path(__file__).resolve().parents[1]


def _get_env_file() -> Optional[Path]:
    env_path = os.getenv("PORTAL_ENV_FILE")
    if env_path:
        return Path(env_path)

    default = ROOT / "portal.env"
    if default.exists():
        return default

    return None


def _skip_or_fail(reason: str) -> None:
    # Live smoke tests need real credentials and should not fail local unit test runs by default.
    # Set REQUIRE_PORTAL_TESTS=1 to turn skips into failures (dedicated integration runs).
    if os.getenv("REQUIRE_PORTAL_TESTS") == "1":
        pytest.fail(reason)
    pytest.skip(reason)


def _build_env(env_file: Optional[Path]) -> dict[str, str]:
    env = os.environ.copy()
    if env_file is not None and env_file.exists():
        for key, value in dotenv_values(env_file).items():
            if value is None or key in env:
                continue
            env[key] = value
    env["PYTHONPATH"] = os.pathsep.join(p for p in (str(ROOT / "src"), env.get("PYTHONPATH", "")) if p)
    return env


def _run_cmd(args: list[str], *, env: dict[str, str]) -> None:
    timeout = int(os.getenv("PORTAL_SMOKE_TIMEOUT", "600"))
    subprocess.run(args, cwd=ROOT, env=env, check=True, timeout=timeout)


@pytest.mark.portal
def test_preflight_and_single_cycle() -> None:
    env_file = _get_env_file()
    if env_file is not None and not env_file.exists():
        _skip_or_fail(f"Env file not found: {env_file}")

    env = _build_env(env_file)
    if not (env.get("PORTAL_USERNAME") or env.get("AVAILITY_USERNAME")):
        _skip_or_fail("Missing PORTAL_USERNAME/PORTAL_PASSWORD.")
    if not env.get("PORTAL_TOTP_SECRET") and env.get("PORTAL_MFA_METHOD", "authenticator_app") == "authenticator_app":
        _skip_or_fail("Missing PORTAL_TOTP_SECRET.")

    cmd_base = [sys.executable, "-m", "referral_watch"]
    if env_file:
        cmd_base += ["--env-file", str(env_file)]

    _run_cmd(cmd_base + ["preflight", "--skip-smtp"], env=env)
    _run_cmd(cmd_base + ["check"], env=env)
