from __future__ import annotations

import argparse
import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from . import totp
from .config import AppConfig, load_config
from .engine import PollingEngine
from .errors import DeliveryError, InvalidSecret
from .logging_config import configure_logging
from .notify import EmailChannel, NotificationDispatcher
from .session import SessionManager
from .source import ReferralSource
from .state import StateStore
from .util.debug_bundle import create_debug_bundle
from .worker import Worker


logger = logging.getLogger("referral_watch")


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="referral-watch")
    p.add_argument(
        "--env-file",
        default=".env",
        help="Path to a dotenv file (default: .env). If missing, env vars must already be set.",
    )
    p.add_argument("--config", default="config.yaml", help="Optional YAML config overlay (default: config.yaml)")

    sub = p.add_subparsers(dest="cmd", required=True)

    run = sub.add_parser("run", help="Poll the portal on a timer and serve the control surface (POST /start-bot)")
    run.add_argument("--headful", action="store_true", help="Run browser headful (debug)")
    run.add_argument("--host", default=None, help="Bind address (default: server.host / HOST)")
    run.add_argument("--port", type=int, default=None, help="Bind port (default: server.port / PORT)")

    check = sub.add_parser("check", help="Run a single poll cycle and exit (0 = cycle completed)")
    check.add_argument("--headful", action="store_true", help="Run browser headful (debug)")

    code = sub.add_parser("totp", help="Print the current authenticator code (to compare with your phone)")
    code.add_argument("--show", action="store_true", help="Print the full code instead of a masked one")

    codes = sub.add_parser("add-backup-codes", help="Store one-time backup codes for PORTAL_MFA_METHOD=backup_code")
    codes.add_argument("codes", nargs="+", help="Backup codes (spaces or commas)")

    preflight = sub.add_parser("preflight", help="Validate config, state DB and SMTP without logging in to the portal")
    preflight.add_argument("--skip-smtp", action="store_true", help="Skip the SMTP connectivity check")

    bundle = sub.add_parser("debug-bundle", help="Zip debug captures + logs for troubleshooting (secrets excluded)")
    bundle.add_argument("--out-dir", default="data", help="Where to write the zip (default: data)")
    return p


@dataclass
class Components:
    store: StateStore
    session_manager: SessionManager
    engine: PollingEngine
    worker: Worker


def build_components(cfg: AppConfig) -> Components:
    store = StateStore(cfg.state.db_path)
    session_manager = SessionManager(cfg.portal, store=store)
    engine = PollingEngine(
        session_manager=session_manager,
        source=ReferralSource(cfg.portal, cfg.referral_query),
        store=store,
        dispatcher=NotificationDispatcher.from_config(cfg),
        secondary_extraction=cfg.polling.secondary_extraction,
        empty_ui_is_error=cfg.polling.empty_ui_extraction_is_error,
    )
    worker = Worker(engine, session_manager, interval_minutes=cfg.polling.interval_minutes)
    return Components(store=store, session_manager=session_manager, engine=engine, worker=worker)


def main(argv: Optional[List[str]] = None) -> int:
    args = _build_parser().parse_args(argv)

    env_path = Path(args.env_file)
    if env_path.exists():
        load_dotenv(env_path)

    # Default logging: can be overridden once config is loaded.
    configure_logging(level=os.getenv("LOG_LEVEL", "INFO"))

    cfg = load_config(args.config)
    configure_logging(level=cfg.logging.level, file_path=cfg.logging.file_path, fmt=cfg.logging.format)

    if getattr(args, "headful", False):
        cfg.portal.headless = False

    if args.cmd == "run":
        import uvicorn

        from .server import create_app

        missing = cfg.missing_settings()
        if missing:
            logger.warning("Missing settings (login will fail until set): %s", ", ".join(missing))

        components = build_components(cfg)
        app = create_app(
            components.worker,
            start_timeout_seconds=cfg.server.start_timeout_seconds,
            manage_worker=True,
        )
        host = args.host or cfg.server.host
        port = args.port or cfg.server.port
        logger.info("Control surface on http://%s:%d (POST /start-bot, GET /health)", host, port)
        try:
            uvicorn.run(app, host=host, port=port, log_config=None)
        finally:
            components.store.close()
        return 0

    if args.cmd == "check":
        components = build_components(cfg)
        try:
            result = components.worker.run_once()
        finally:
            components.worker.stop()
            components.store.close()
        if result is None or not result.ok:
            print(f"❌ Cycle aborted: {result.reason if result else 'crashed (see log)'}")
            return 1
        print(
            f"✅ Cycle completed: candidates={result.candidates} new={result.new} "
            f"persisted={result.persisted} skipped={result.skipped} notify_failures={result.notify_failures}"
        )
        return 0

    if args.cmd == "totp":
        try:
            code = totp.generate(cfg.portal.totp_secret)
        except InvalidSecret as e:
            print(f"❌ {e}")
            return 1
        shown = code if args.show else totp.mask(code)
        print(f"{shown} (valid for {totp.seconds_remaining()}s)")
        return 0

    if args.cmd == "add-backup-codes":
        raw: list[str] = []
        for item in args.codes:
            raw.extend(part for part in item.replace(",", " ").split() if part)
        store = StateStore(cfg.state.db_path)
        try:
            added = store.add_backup_codes(raw)
            unused = store.count_unused_backup_codes()
        finally:
            store.close()
        print(f"Added {added} backup code(s); {unused} unused in total.")
        return 0

    if args.cmd == "preflight":
        return _preflight(cfg, skip_smtp=args.skip_smtp)

    if args.cmd == "debug-bundle":
        runs = None
        if Path(cfg.state.db_path).exists():
            store = StateStore(cfg.state.db_path)
            try:
                runs = [r.__dict__ for r in store.last_runs(limit=50)]
            finally:
                store.close()
        out_zip = create_debug_bundle(
            debug_dir=cfg.portal.debug_dir,
            log_file=cfg.logging.file_path,
            out_dir=args.out_dir,
            runs=runs,
        )
        print(f"✅ Debug bundle written: {out_zip}")
        return 0

    raise AssertionError("Unhandled command")


def _preflight(cfg: AppConfig, *, skip_smtp: bool) -> int:
    """Config + state DB + SMTP checks. Never opens a browser or logs in to the portal."""
    logger.info("Starting preflight checks")
    ok = True

    missing = cfg.missing_settings()
    if missing:
        ok = False
        print(f"❌ Missing settings: {', '.join(missing)}")

    if cfg.portal.mfa_method == "authenticator_app" and cfg.portal.totp_secret:
        try:
            totp.normalize_secret(cfg.portal.totp_secret)
        except InvalidSecret as e:
            ok = False
            print(f"❌ {e}")

    store = StateStore(cfg.state.db_path)
    try:
        referrals = store.count_referrals()
        if cfg.portal.mfa_method == "backup_code" and store.count_unused_backup_codes() == 0:
            ok = False
            print("❌ PORTAL_MFA_METHOD=backup_code but no unused backup codes are stored (see add-backup-codes)")
    finally:
        store.close()
    print(f"State DB OK ({cfg.state.db_path}, referrals={referrals})")

    email = EmailChannel(cfg.email)
    if not email.enabled:
        print("Email channel disabled (no host or recipients)")
    elif not skip_smtp:
        try:
            email.verify()
            print(f"SMTP OK ({cfg.email.host}:{cfg.email.port})")
        except DeliveryError as e:
            ok = False
            print(f"❌ {e}")

    sms = cfg.sms
    if not (sms.account_sid and sms.auth_token and sms.from_number and sms.recipients):
        print("SMS channel disabled (missing Twilio credentials or recipients)")

    if ok:
        logger.info("Preflight OK")
        return 0
    return 1


if __name__ == "__main__":
    sys.exit(main())
