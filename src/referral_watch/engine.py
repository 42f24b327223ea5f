from __future__ import annotations

import logging
import sqlite3
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional, Sequence

from .errors import AuthExpired, ReferralWatchError, SourceUnavailable
from .logging_config import log_event
from .models import CandidateReferral, ReferralRecord
from .notify.dispatcher import NotificationDispatcher, notification_text
from .session import SessionManager
from .source import ReferralSource
from .state import StateStore
from .util.dates import utcnow


logger = logging.getLogger(__name__)


@dataclass
class CycleResult:
    started_at: datetime
    ok: bool = False
    reason: str = ""
    candidates: int = 0
    new: int = 0
    persisted: int = 0
    skipped: int = 0
    notify_failures: int = 0
    ui_candidates: int = 0
    finished_at: Optional[datetime] = None

    def summary(self) -> dict[str, Any]:
        data = asdict(self)
        data["started_at"] = self.started_at.isoformat()
        data["finished_at"] = self.finished_at.isoformat() if self.finished_at else None
        return data


@dataclass
class WorkerContext:
    """
    Mutable polling state owned by the worker and passed into every cycle.

    `last_check_time` is the watermark: only candidates created after it are considered, and it only
    ever moves forward, to the start of a cycle that completed.
    """

    last_check_time: datetime = field(default_factory=utcnow)
    cycles_completed: int = 0
    last_cycle: Optional[CycleResult] = None
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def advance_watermark(self, to: datetime) -> None:
        if to > self.last_check_time:
            self.last_check_time = to


@dataclass
class IngestResult:
    persisted: list[ReferralRecord] = field(default_factory=list)
    skipped: int = 0
    notify_failures: int = 0


class PollingEngine:
    def __init__(
        self,
        *,
        session_manager: SessionManager,
        source: ReferralSource,
        store: StateStore,
        dispatcher: NotificationDispatcher,
        clock: Callable[[], datetime] = utcnow,
        secondary_extraction: bool = False,
        empty_ui_is_error: bool = False,
    ) -> None:
        self.session_manager = session_manager
        self.source = source
        self.store = store
        self.dispatcher = dispatcher
        self.clock = clock
        self.secondary_extraction = secondary_extraction
        self.empty_ui_is_error = empty_ui_is_error

    def run_cycle(self, ctx: WorkerContext) -> CycleResult:
        """
        One poll: ensure session, fetch, filter by watermark, upsert + notify, advance watermark.

        Never raises. Any failure before the upsert step completes leaves the watermark untouched;
        the next cycle re-evaluates the same window and deduplication keeps that safe.
        """
        if not ctx.lock.acquire(blocking=False):
            log_event(logger, "cycle.skipped", reason="previous cycle still running")
            return CycleResult(started_at=self.clock(), reason="previous cycle still running")

        try:
            cycle_start = self.clock()
            watermark = ctx.last_check_time
            result = CycleResult(started_at=cycle_start)
            run_id = self._start_run()
            log_event(logger, "cycle.start", watermark=watermark.isoformat())

            try:
                self._run(result, watermark)
            except AuthExpired as e:
                self.session_manager.invalidate(f"referral API returned HTTP {e.status_code}")
                result.reason = str(e)
            except ReferralWatchError as e:
                result.reason = f"{type(e).__name__}: {e}"
            except sqlite3.Error as e:
                logger.exception("State store failed mid-cycle")
                result.reason = f"store error: {e}"
            except Exception as e:
                logger.exception("Unexpected error during poll cycle")
                result.reason = f"{type(e).__name__}: {e}"
            else:
                result.ok = True
                ctx.advance_watermark(cycle_start)
                ctx.cycles_completed += 1

            result.finished_at = self.clock()
            ctx.last_cycle = result
            self._finish_run(run_id, result)
            if result.ok:
                log_event(
                    logger,
                    "cycle.summary",
                    candidates=result.candidates,
                    new=result.new,
                    persisted=result.persisted,
                    skipped=result.skipped,
                    notify_failures=result.notify_failures,
                    watermark=ctx.last_check_time.isoformat(),
                )
            else:
                log_event(logger, "cycle.aborted", level=logging.WARNING, reason=result.reason)
            return result
        finally:
            ctx.lock.release()

    def _run(self, result: CycleResult, watermark: datetime) -> None:
        self.session_manager.ensure()
        candidates = self.source.fetch(self.session_manager.session_cookies())
        result.candidates = len(candidates)

        new_ones = [c for c in candidates if c.creation_token().is_after(watermark)]
        result.new = len(new_ones)
        self._apply(result, self.ingest(new_ones, source="api"))

        if self.secondary_extraction:
            self._run_secondary(result)

    def _run_secondary(self, result: CycleResult) -> None:
        # Cards carry a bare "Requested On" date, so the listing is deduplicated by natural key only.
        try:
            listed = self.session_manager.list_ui_referrals()
        except Exception as e:
            logger.warning("UI referral extraction failed; keeping the API results (%s)", e)
            return

        result.ui_candidates = len(listed)
        if not listed:
            if self.empty_ui_is_error:
                raise SourceUnavailable("UI referral list rendered no referrals")
            logger.warning("UI referral extraction found no referrals.")
            return

        ingested = self.ingest(listed, source="ui", only=("sms",))
        result.new += len(ingested.persisted)
        self._apply(result, ingested)
        if ingested.persisted:
            members = [c for c in listed if self._was_persisted(c, ingested.persisted)]
            report = self.dispatcher.dispatch_digest(members)
            if not report.ok:
                result.notify_failures += 1

    def ingest(
        self,
        candidates: Sequence[CandidateReferral],
        *,
        source: str = "api",
        only: Sequence[str] = (),
    ) -> IngestResult:
        """
        Upsert by natural key, in input order. New records are persisted with `notified=false`,
        get a notification ledger entry, are dispatched, then marked notified.

        A crash between insert and `mark_notified` leaves a record with `notified=false`; it is never
        re-inserted, so notification is at-least-once per process run but persistence is exactly-once.
        """
        out = IngestResult()
        for candidate in candidates:
            member_id, request_on = candidate.natural_key()
            if self.store.find_referral(member_id, request_on) is not None:
                out.skipped += 1
                log_event(logger, "referral.skipped", level=logging.DEBUG, member_id=member_id, source=source)
                continue

            record = self.store.insert_referral(candidate, source=source)
            if record is None:
                out.skipped += 1
                log_event(logger, "referral.skipped", level=logging.DEBUG, member_id=member_id, source=source)
                continue

            self.store.add_notification(record, notification_text(record))
            report = self.dispatcher.dispatch(record, only=only)
            if not report.ok:
                out.notify_failures += 1
            self.store.mark_notified(record.id)
            record.notified = True
            out.persisted.append(record)
            log_event(logger, "referral.persisted", referral_id=record.id, member_id=member_id, source=source)
        return out

    @staticmethod
    def _apply(result: CycleResult, ingested: IngestResult) -> None:
        result.persisted += len(ingested.persisted)
        result.skipped += ingested.skipped
        result.notify_failures += ingested.notify_failures

    @staticmethod
    def _was_persisted(candidate: CandidateReferral, records: Sequence[ReferralRecord]) -> bool:
        return any((r.member_id, r.request_on) == candidate.natural_key() for r in records)

    def _start_run(self) -> Optional[int]:
        try:
            return self.store.record_run_start()
        except sqlite3.Error:
            logger.warning("Failed to record run start.", exc_info=True)
            return None

    def _finish_run(self, run_id: Optional[int], result: CycleResult) -> None:
        if run_id is None:
            return
        try:
            self.store.record_run_finish(
                run_id,
                ok=result.ok,
                message=result.reason or None,
                candidates=result.candidates,
                new_records=result.persisted,
            )
        except sqlite3.Error:
            logger.warning("Failed to record run result.", exc_info=True)
