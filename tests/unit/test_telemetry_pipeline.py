"""
Unit tests for TelemetryPipeline.

Tests:
- Disabled telemetry is a no-op
- Anonymization on record
- Reactive and periodic flush (scheduled jobs)
- Re-queue on persistence failure (order and count preserved)
- Regulatory escalation
- Compliance reports and stats
- Concurrent producers

Run tests:
    pytest tests/unit/test_telemetry_pipeline.py -v
"""

import re
import threading
import time
from unittest.mock import Mock, patch

import pytest

from sfe_backend.core.config import TelemetryConfig
from sfe_backend.core.exceptions import TelemetryPersistenceError
from sfe_backend.core.security import hash_device_id, truncate_to_hour
from sfe_backend.models.risk import RiskLevel
from sfe_backend.models.telemetry import EventType, TelemetryEvent
from sfe_backend.modules.telemetry.pipeline import FLUSH_JOB_ID, REPORT_JOB_ID, TelemetryPipeline
from sfe_backend.modules.telemetry.sinks import InMemoryTelemetryStore, RegulatorySink, TelemetryStore

SALT = "test-salt"


# Test fixtures

@pytest.fixture
def store():
    return InMemoryTelemetryStore()


@pytest.fixture
def failing_store():
    store = Mock(spec=TelemetryStore)
    store.persist.side_effect = TelemetryPersistenceError("database unavailable")
    return store


def make_config(**overrides):
    values = {
        "enabled": True,
        "enable_batching": True,
        "batch_size": 5,
        "batch_timeout_ms": 60_000,
        "enable_anonymization": True,
        "salt_key": SALT,
        "report_interval_seconds": 0,
    }
    values.update(overrides)
    return TelemetryConfig(**values)


def make_event(seq=0, risk_level=RiskLevel.LOW, event_type=EventType.SECURITY_CHECK, **payload):
    payload.setdefault("seq", seq)
    return TelemetryEvent(
        event_type=event_type,
        device_fingerprint="fingerprint-1234567890",
        risk_level=risk_level,
        payload=payload,
    )


def wait_for(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


# Test record()

class TestRecord:
    """Test record()."""

    def test_disabled_telemetry_is_noop(self, store):
        """Globally disabled -> queue length unchanged."""
        pipeline = TelemetryPipeline(make_config(enabled=False), store)
        before = pipeline.queue_size

        result = pipeline.record(make_event())

        assert result is None
        assert pipeline.queue_size == before
        assert pipeline.stats().total_events_recorded == 0

    def test_event_ids_unique_within_same_millisecond(self, store):
        pipeline = TelemetryPipeline(make_config(batch_size=5000), store)

        with patch("sfe_backend.models.telemetry.now_ms", return_value=1735689600000):
            ids = [pipeline.record(make_event(i)).event_id for i in range(1000)]

        assert len(set(ids)) == 1000
        assert all(re.fullmatch(r"evt_1735689600000_[0-9a-f]{8}", event_id) for event_id in ids)

    def test_record_enqueues(self, store):
        pipeline = TelemetryPipeline(make_config(), store)

        pipeline.record(make_event())

        assert pipeline.queue_size == 1
        assert store.batches == []

    def test_record_anonymizes(self, store):
        pipeline = TelemetryPipeline(make_config(), store)
        event = make_event(deviceId="device-abc", imeiCount=3, note="kept")

        recorded = pipeline.record(event)

        assert recorded.anonymized is True
        assert recorded.device_fingerprint == hash_device_id("fingerprint-1234567890", SALT)
        assert recorded.timestamp == truncate_to_hour(event.timestamp)
        assert recorded.payload["deviceId"] == hash_device_id("device-abc", SALT)
        assert recorded.payload["imeiCount"] == "***"
        assert recorded.payload["note"] == "kept"

    def test_original_event_not_mutated(self, store):
        pipeline = TelemetryPipeline(make_config(), store)
        event = make_event()

        pipeline.record(event)

        assert event.anonymized is False
        assert event.device_fingerprint == "fingerprint-1234567890"

    def test_anonymization_disabled_keeps_event(self, store):
        pipeline = TelemetryPipeline(make_config(enable_anonymization=False), store)
        event = make_event()

        assert pipeline.record(event) is event


# Test flush

class TestFlush:
    """Test reactive and manual flush."""

    def test_batch_size_events_trigger_exactly_one_flush(self, store):
        """batch_size enqueues -> one batch of batch_size, queue empty."""
        pipeline = TelemetryPipeline(make_config(batch_size=5), store)

        for i in range(5):
            pipeline.record(make_event(i))

        assert len(store.batches) == 1
        assert len(store.batches[0]) == 5
        assert pipeline.queue_size == 0

    def test_below_batch_size_does_not_flush(self, store):
        pipeline = TelemetryPipeline(make_config(batch_size=5), store)

        for i in range(4):
            pipeline.record(make_event(i))

        assert store.batches == []
        assert pipeline.queue_size == 4

    def test_flush_drains_oldest_first(self, store):
        pipeline = TelemetryPipeline(make_config(batch_size=5), store)
        for i in range(3):
            pipeline.record(make_event(i))

        assert pipeline.flush() == 3
        assert [e.payload["seq"] for e in store.events] == [0, 1, 2]

    def test_flush_empty_queue(self, store):
        pipeline = TelemetryPipeline(make_config(), store)
        assert pipeline.flush() == 0
        assert store.batches == []

    def test_batching_disabled_flushes_every_event(self, store):
        pipeline = TelemetryPipeline(make_config(enable_batching=False), store)

        pipeline.record(make_event(0))
        pipeline.record(make_event(1))

        assert [len(batch) for batch in store.batches] == [1, 1]
        assert pipeline.queue_size == 0


class TestFlushFailure:
    """Persistence failures re-queue the batch."""

    def test_failed_batch_requeued_in_order(self, failing_store):
        """Count before failure == count after re-queue, original order kept."""
        pipeline = TelemetryPipeline(make_config(batch_size=5), failing_store)
        recorded = [pipeline.record(make_event(i)) for i in range(5)]

        assert failing_store.persist.call_count == 1
        assert pipeline.queue_size == 5
        assert [e.event_id for e in pipeline._queue] == [e.event_id for e in recorded]

    def test_requeued_batch_goes_before_newer_events(self, failing_store):
        pipeline = TelemetryPipeline(make_config(batch_size=5), failing_store)

        for i in range(7):
            pipeline.record(make_event(i))

        assert pipeline.queue_size == 7
        assert [e.payload["seq"] for e in pipeline._queue] == list(range(7))

    def test_failed_flush_returns_zero(self, failing_store):
        pipeline = TelemetryPipeline(make_config(batch_size=10), failing_store)
        pipeline.record(make_event())

        assert pipeline.flush() == 0
        assert pipeline.queue_size == 1

    def test_unexpected_store_error_also_requeues(self):
        store = Mock(spec=TelemetryStore)
        store.persist.side_effect = OSError("disk full")
        pipeline = TelemetryPipeline(make_config(batch_size=10), store)
        pipeline.record(make_event())

        assert pipeline.flush() == 0
        assert pipeline.queue_size == 1

    def test_recovery_after_failure_delivers_everything(self, failing_store):
        pipeline = TelemetryPipeline(make_config(batch_size=5), failing_store)
        for i in range(5):
            pipeline.record(make_event(i))

        recovered = InMemoryTelemetryStore()
        pipeline.store = recovered

        assert pipeline.flush() == 5
        assert [e.payload["seq"] for e in recovered.events] == [0, 1, 2, 3, 4]
        assert pipeline.queue_size == 0


# Test regulatory escalation

class TestRegulatoryEscalation:
    """Qualifying events are forwarded to the regulatory sink."""

    @pytest.fixture
    def sink(self):
        return Mock(spec=RegulatorySink)

    def test_high_risk_event_escalated(self, store, sink):
        pipeline = TelemetryPipeline(make_config(batch_size=100), store, regulatory_sink=sink)

        pipeline.record(make_event(risk_level=RiskLevel.HIGH, deviceId="device-abc"))
        pipeline.stop(flush=False)

        sink.submit.assert_called_once()
        records, timeout = sink.submit.call_args[0]
        assert len(records) == 1
        record = records[0]
        assert record.risk_level == "HIGH"
        assert record.compliance_required is True
        assert record.anonymized_data["deviceId"] == hash_device_id("device-abc", SALT)
        assert record.timestamp == truncate_to_hour(record.timestamp)
        assert timeout == 5.0

    def test_policy_violation_escalated_regardless_of_level(self, store, sink):
        pipeline = TelemetryPipeline(make_config(batch_size=100), store, regulatory_sink=sink)

        pipeline.record(make_event(risk_level=RiskLevel.MEDIUM, event_type=EventType.POLICY_VIOLATION))
        pipeline.stop(flush=False)

        sink.submit.assert_called_once()

    def test_low_risk_event_not_escalated(self, store, sink):
        pipeline = TelemetryPipeline(make_config(batch_size=100), store, regulatory_sink=sink)

        pipeline.record(make_event(risk_level=RiskLevel.LOW, event_type=EventType.ATTESTATION_VERIFICATION))
        pipeline.stop(flush=False)

        sink.submit.assert_not_called()

    def test_sink_failure_is_contained(self, store, sink):
        sink.submit.side_effect = ConnectionError("regulator offline")
        pipeline = TelemetryPipeline(make_config(batch_size=100), store, regulatory_sink=sink)

        recorded = pipeline.record(make_event(risk_level=RiskLevel.CRITICAL))
        pipeline.stop(flush=True)

        assert recorded is not None
        assert len(store.events) == 1

    def test_escalation_after_stop_does_not_raise(self, store, sink):
        pipeline = TelemetryPipeline(make_config(batch_size=100), store, regulatory_sink=sink)
        pipeline.stop()

        assert pipeline.record(make_event(risk_level=RiskLevel.CRITICAL)) is not None


# Test compliance reports

class TestComplianceReport:
    """Test generate_compliance_report()."""

    def test_counts_by_type_and_risk(self, store):
        pipeline = TelemetryPipeline(make_config(batch_size=100), store)
        pipeline.record(make_event(risk_level=RiskLevel.HIGH, event_type=EventType.POLICY_VIOLATION))
        pipeline.record(make_event(risk_level=RiskLevel.LOW, event_type=EventType.ATTESTATION_VERIFICATION))
        pipeline.record(make_event(risk_level=RiskLevel.LOW, event_type=EventType.ATTESTATION_VERIFICATION))

        report = pipeline.generate_compliance_report()

        assert report.total_events == 3
        assert report.counts_by_type == {"POLICY_VIOLATION": 1, "ATTESTATION_VERIFICATION": 2}
        assert report.counts_by_risk_level == {"HIGH": 1, "LOW": 2}
        assert report.period_start <= report.period_end

    def test_empty_window_produces_zero_report(self, store):
        pipeline = TelemetryPipeline(make_config(), store)

        report = pipeline.generate_compliance_report()

        assert report is not None
        assert report.total_events == 0
        assert report.counts_by_type == {}

    def test_counters_reset_per_window(self, store):
        pipeline = TelemetryPipeline(make_config(batch_size=100), store)
        pipeline.record(make_event())

        first = pipeline.generate_compliance_report()
        second = pipeline.generate_compliance_report()

        assert first.total_events == 1
        assert second.total_events == 0
        assert second.period_start == first.period_end

    def test_report_handler_called(self, store):
        handler = Mock()
        pipeline = TelemetryPipeline(make_config(), store, report_handler=handler)

        report = pipeline.generate_compliance_report()

        handler.assert_called_once_with(report)

    def test_report_handler_failure_contained(self, store):
        handler = Mock(side_effect=RuntimeError("mailer down"))
        pipeline = TelemetryPipeline(make_config(), store, report_handler=handler)

        assert pipeline.generate_compliance_report().total_events == 0


class TestStats:
    """Test stats()."""

    def test_stats(self, store):
        pipeline = TelemetryPipeline(make_config(batch_size=100, enable_anonymization=False), store)
        pipeline.record(make_event())
        pipeline.record(make_event())

        stats = pipeline.stats()

        assert stats.total_events_recorded == 2
        assert stats.events_in_queue == 2
        assert stats.telemetry_enabled is True
        assert stats.batching_enabled is True
        assert stats.anonymization_enabled is False

    def test_total_survives_report_reset(self, store):
        pipeline = TelemetryPipeline(make_config(batch_size=100), store)
        pipeline.record(make_event())
        pipeline.generate_compliance_report()

        assert pipeline.stats().total_events_recorded == 1


# Test scheduled jobs

class TestScheduledJobs:
    """Test start() / stop() and the scheduled flush and report jobs."""

    def test_periodic_flush(self, store):
        pipeline = TelemetryPipeline(make_config(batch_size=100, batch_timeout_ms=50), store)
        pipeline.start()
        try:
            for i in range(3):
                pipeline.record(make_event(i))

            assert wait_for(lambda: len(store.events) == 3)
            assert pipeline.queue_size == 0
        finally:
            pipeline.stop()

    def test_reactive_flush_with_running_worker(self, store):
        pipeline = TelemetryPipeline(make_config(batch_size=2, batch_timeout_ms=60_000), store)
        pipeline.start()
        try:
            pipeline.record(make_event(0))
            pipeline.record(make_event(1))

            assert wait_for(lambda: len(store.events) == 2)
        finally:
            pipeline.stop()

    def test_stop_drains_queue(self, store):
        pipeline = TelemetryPipeline(make_config(batch_size=2), store)
        pipeline.record(make_event(0))

        pipeline.stop(flush=True)

        assert len(store.events) == 1
        assert pipeline.queue_size == 0

    def test_stop_without_flush_keeps_queue(self, store):
        pipeline = TelemetryPipeline(make_config(batch_size=100), store)
        pipeline.record(make_event(0))

        pipeline.stop(flush=False)

        assert pipeline.queue_size == 1

    def test_stop_with_failing_store_terminates(self, failing_store):
        pipeline = TelemetryPipeline(make_config(batch_size=100), failing_store)
        pipeline.record(make_event(0))

        pipeline.stop(flush=True)

        assert pipeline.queue_size == 1

    def test_disabled_pipeline_does_not_start_workers(self, store):
        pipeline = TelemetryPipeline(make_config(enabled=False), store)

        pipeline.start()

        assert pipeline.is_running is False

    def test_periodic_report(self, store):
        handler = Mock()
        pipeline = TelemetryPipeline(make_config(report_interval_seconds=1), store, report_handler=handler)
        pipeline.report_interval_seconds = 0.05
        pipeline.start()
        try:
            assert wait_for(lambda: handler.call_count >= 1)
        finally:
            pipeline.stop()

    def test_jobs_never_overlap_and_coalesce(self, store):
        pipeline = TelemetryPipeline(make_config(report_interval_seconds=3600), store)
        pipeline.start()
        try:
            for job_id in (FLUSH_JOB_ID, REPORT_JOB_ID):
                job = pipeline._scheduler.get_job(job_id)
                assert job.max_instances == 1
                assert job.coalesce is True
        finally:
            pipeline.stop()

    def test_no_report_job_when_interval_zero(self, store):
        pipeline = TelemetryPipeline(make_config(report_interval_seconds=0), store)
        pipeline.start()
        try:
            assert pipeline._scheduler.get_job(REPORT_JOB_ID) is None
        finally:
            pipeline.stop()

    def test_start_is_idempotent(self, store):
        pipeline = TelemetryPipeline(make_config(), store)
        pipeline.start()
        scheduler = pipeline._scheduler
        try:
            pipeline.start()
            assert pipeline._scheduler is scheduler
        finally:
            pipeline.stop()

    def test_restart_after_stop(self, store):
        pipeline = TelemetryPipeline(make_config(batch_size=100, batch_timeout_ms=50), store)
        pipeline.start()
        pipeline.stop()

        pipeline.start()
        try:
            assert pipeline.is_running is True
            pipeline.record(make_event(0))
            assert wait_for(lambda: len(store.events) == 1)
        finally:
            pipeline.stop()

    def test_scheduled_flush_drains_full_batches(self, store):
        """One scheduled run keeps flushing while full batches are queued."""
        pipeline = TelemetryPipeline(make_config(batch_size=2), store)
        pipeline._queue.extend(make_event(i) for i in range(5))

        pipeline._flush_job()

        assert [len(batch) for batch in store.batches] == [2, 2]
        assert pipeline.queue_size == 1


class TestConcurrentProducers:
    """Multiple request threads record concurrently."""

    def test_no_event_lost_or_duplicated(self, store):
        pipeline = TelemetryPipeline(make_config(batch_size=10, enable_anonymization=False), store)

        def produce(thread_no):
            for i in range(50):
                pipeline.record(make_event(f"{thread_no}-{i}"))

        threads = [threading.Thread(target=produce, args=(n,)) for n in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        pipeline.stop(flush=True)

        seqs = [e.payload["seq"] for e in store.events]
        assert len(seqs) == 400
        assert len(set(seqs)) == 400
        assert all(len(batch) <= 10 for batch in store.batches)
