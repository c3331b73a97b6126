"""
Telemetry pipeline: record, anonymize, batch, persist and escalate.

Flow:
1. record() anonymizes (if enabled) and enqueues; it never waits on storage
2. Qualifying events are handed to the regulatory worker pool
3. A flush drains up to batch_size events oldest-first and persists them
   - reactive: queue reaches batch_size after an enqueue
   - periodic: scheduled flush job runs every batch_timeout_ms
4. A failed flush puts the whole batch back at the front of the queue

Flushes are serialized by a lock, so reactive and periodic triggers never
drain the same events twice. With the scheduler running, a reactive trigger
moves the flush job to now instead of flushing on the caller thread.

Delivery is at-least-once while the process is alive. Nothing survives a
restart.
"""

import logging
import threading
from collections import Counter, deque
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Deque, List, Optional

from apscheduler.schedulers.background import BackgroundScheduler

from sfe_backend.core.config import TelemetryConfig
from sfe_backend.core.exceptions import RegulatorySubmissionError, TelemetryPersistenceError
from sfe_backend.core.scheduler import create_scheduler, run_job_now
from sfe_backend.core.security import epoch_ms_to_datetime
from sfe_backend.core.sentry import capture_business_error
from sfe_backend.models.telemetry import ComplianceReport, RegulatoryRecord, TelemetryEvent, TelemetryStats, now_ms
from sfe_backend.modules.telemetry.anonymizer import anonymize_event
from sfe_backend.modules.telemetry.sinks import (
    RegulatorySink,
    TelemetryStore,
    requires_regulatory_reporting,
    to_regulatory_record,
)

logger = logging.getLogger(__name__)


FLUSH_JOB_ID = "telemetry-flush"
REPORT_JOB_ID = "compliance-report"


class TelemetryPipeline:
    """
    In-process telemetry queue with background flush and compliance reporting.

    Usage:
        pipeline = TelemetryPipeline(settings.TELEMETRY, LoggingTelemetryStore())
        pipeline.start()
        pipeline.record(TelemetryEvent.policy_violation(fingerprint, "root_detection", "BLOCK"))
        ...
        pipeline.stop()  # final drain
    """

    def __init__(
        self,
        config: TelemetryConfig,
        store: TelemetryStore,
        regulatory_sink: Optional[RegulatorySink] = None,
        report_handler: Optional[Callable[[ComplianceReport], object]] = None,
        regulatory_workers: int = 2,
    ):
        self.config = config
        self.store = store
        self.regulatory_sink = regulatory_sink
        self.report_handler = report_handler

        self._queue: Deque[TelemetryEvent] = deque()
        self._queue_lock = threading.Lock()
        self._flush_lock = threading.Lock()
        self._counter_lock = threading.Lock()

        self._total_recorded = 0
        self._counts_by_type: Counter = Counter()
        self._counts_by_risk: Counter = Counter()
        self._window_start = epoch_ms_to_datetime(now_ms())

        self._regulatory_workers = regulatory_workers
        self._executor = self._new_executor()
        self._executor_closed = False

        # Read at start(); 0 disables the report job
        self.flush_interval_seconds: float = config.batch_timeout_seconds
        self.report_interval_seconds: float = config.report_interval_seconds

        self._scheduler: Optional[BackgroundScheduler] = None
        self._lifecycle_lock = threading.Lock()

    def _new_executor(self) -> ThreadPoolExecutor:
        return ThreadPoolExecutor(
            max_workers=self._regulatory_workers,
            thread_name_prefix="sfe-regulatory",
        )

    @property
    def is_running(self) -> bool:
        scheduler = self._scheduler
        return scheduler is not None and scheduler.running

    @property
    def queue_size(self) -> int:
        with self._queue_lock:
            return len(self._queue)

    def record(self, event: TelemetryEvent) -> Optional[TelemetryEvent]:
        """
        Record a telemetry event.

        Args:
            event: Event to record

        Returns:
            The event as enqueued (anonymized when enabled), or None when
            telemetry is disabled
        """
        if not self.config.enabled:
            return None

        if self.config.enable_anonymization:
            event = anonymize_event(event, self.config.salt_key)

        with self._queue_lock:
            self._queue.append(event)
            queue_size = len(self._queue)

        with self._counter_lock:
            self._total_recorded += 1
            self._counts_by_type[event.event_type.value] += 1
            if event.risk_level is not None:
                self._counts_by_risk[event.risk_level.value] += 1

        logger.debug(
            f"Telemetry event recorded: {event.event_type.value}",
            extra={"event_id": event.event_id, "queue_size": queue_size}
        )

        if self.regulatory_sink is not None and requires_regulatory_reporting(event):
            self._escalate(event)

        if not self.config.enable_batching or queue_size >= self.config.batch_size:
            scheduler = self._scheduler
            if scheduler is None or not run_job_now(scheduler, FLUSH_JOB_ID):
                self.flush()

        return event

    def flush(self) -> int:
        """
        Drain up to batch_size events and persist them.

        Returns:
            Number of events persisted (0 when empty or on failure)
        """
        with self._flush_lock:
            with self._queue_lock:
                count = min(self.config.batch_size, len(self._queue))
                batch = [self._queue.popleft() for _ in range(count)]

            if not batch:
                return 0

            try:
                self.store.persist(batch)
            except Exception as e:
                with self._queue_lock:
                    self._queue.extendleft(reversed(batch))

                error = e if isinstance(e, TelemetryPersistenceError) else TelemetryPersistenceError(
                    f"{type(e).__name__} while persisting batch"
                )
                logger.error(
                    f"Telemetry flush failed, re-queued {len(batch)} events: {error}",
                    extra={"batch_size": len(batch)}
                )
                capture_business_error(
                    error,
                    {"operation": "telemetry_flush", "batch_size": len(batch)},
                    level="warning"
                )
                return 0

            logger.info(
                f"Flushed {len(batch)} telemetry events",
                extra={"batch_size": len(batch)}
            )
            return len(batch)

    def _flush_job(self):
        """Scheduled flush. Keeps going while full batches are waiting."""
        threshold = self.config.batch_size if self.config.enable_batching else 1
        while self.flush() > 0 and self.queue_size >= threshold:
            pass

    def _escalate(self, event: TelemetryEvent):
        record = to_regulatory_record(event, self.config.salt_key)
        try:
            self._executor.submit(self._submit_regulatory, [record])
        except RuntimeError:
            logger.warning(
                "Regulatory worker pool is shut down - event not escalated",
                extra={"event_type": record.event_type}
            )

    def _submit_regulatory(self, records: List[RegulatoryRecord]):
        """Worker-side submission. Failures are logged and not retried."""
        try:
            self.regulatory_sink.submit(records, self.config.regulatory_timeout_ms / 1000.0)
        except Exception as e:
            error = e if isinstance(e, RegulatorySubmissionError) else RegulatorySubmissionError(
                f"{type(e).__name__} during regulatory submission"
            )
            logger.error(f"Regulatory submission failed: {error}", extra={"record_count": len(records)})
            capture_business_error(
                error,
                {"operation": "regulatory_submit", "record_count": len(records)},
                level="warning"
            )

    def generate_compliance_report(self) -> ComplianceReport:
        """
        Build the report for the window since the previous report and reset counters.

        An empty window still produces a report with zero counts.
        """
        period_end = epoch_ms_to_datetime(now_ms())
        with self._counter_lock:
            counts_by_type = dict(self._counts_by_type)
            counts_by_risk = dict(self._counts_by_risk)
            period_start = self._window_start
            self._counts_by_type.clear()
            self._counts_by_risk.clear()
            self._window_start = period_end

        report = ComplianceReport(
            period_start=period_start,
            period_end=period_end,
            total_events=sum(counts_by_type.values()),
            counts_by_type=counts_by_type,
            counts_by_risk_level=counts_by_risk,
        )

        logger.info(
            f"Compliance report generated: {report.total_events} events",
            extra={"counts_by_type": counts_by_type, "counts_by_risk_level": counts_by_risk}
        )

        if self.report_handler is not None:
            try:
                self.report_handler(report)
            except Exception as e:
                logger.error(f"Compliance report handler failed: {type(e).__name__}", exc_info=True)

        return report

    def stats(self) -> TelemetryStats:
        with self._counter_lock:
            total = self._total_recorded
        return TelemetryStats(
            total_events_recorded=total,
            events_in_queue=self.queue_size,
            telemetry_enabled=self.config.enabled,
            batching_enabled=self.config.enable_batching,
            anonymization_enabled=self.config.enable_anonymization,
        )

    def start(self):
        """Start the scheduler with the flush and compliance report jobs. No-op if running."""
        if not self.config.enabled:
            logger.info("Telemetry disabled - background jobs not started")
            return

        with self._lifecycle_lock:
            if self.is_running:
                return

            if self._executor_closed:
                self._executor = self._new_executor()
                self._executor_closed = False

            scheduler = create_scheduler()
            scheduler.add_job(
                self._flush_job,
                "interval",
                seconds=self.flush_interval_seconds,
                id=FLUSH_JOB_ID,
                name="Telemetry batch flush",
            )
            if self.report_interval_seconds > 0:
                scheduler.add_job(
                    self.generate_compliance_report,
                    "interval",
                    seconds=self.report_interval_seconds,
                    id=REPORT_JOB_ID,
                    name="Compliance report",
                )
            scheduler.start()
            self._scheduler = scheduler

        logger.info(
            f"Telemetry jobs started (flush every {self.flush_interval_seconds}s)",
            extra={"interval_seconds": self.flush_interval_seconds}
        )

    def stop(self, flush: bool = True):
        """
        Stop the scheduler (waiting for running jobs), optionally draining the
        queue afterwards.

        Events still queued after a failed final drain are lost with the
        process.
        """
        with self._lifecycle_lock:
            scheduler, self._scheduler = self._scheduler, None
        if scheduler is not None and scheduler.running:
            scheduler.shutdown(wait=True)
            logger.info("Telemetry jobs stopped")

        if flush:
            while self.flush() > 0:
                pass

        remaining = self.queue_size
        if remaining:
            logger.warning(f"Telemetry stopped with {remaining} events still queued")

        self._executor.shutdown(wait=True)
        self._executor_closed = True
