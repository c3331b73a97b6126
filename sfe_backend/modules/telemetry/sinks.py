"""
Telemetry persistence and regulatory collaborators.

Stores receive drained batches from the pipeline and raise
TelemetryPersistenceError (or anything else) on failure; the pipeline
re-queues the batch. Regulatory sinks receive anonymized records and are
never retried inline.
"""

import logging
import threading
from abc import ABC, abstractmethod
from collections import Counter
from typing import List, Optional, Sequence

from sfe_backend.core.security import truncate_to_hour
from sfe_backend.models.risk import RiskLevel
from sfe_backend.models.telemetry import EventType, RegulatoryRecord, TelemetryEvent
from sfe_backend.modules.telemetry.anonymizer import anonymize_payload

logger = logging.getLogger(__name__)


REGULATORY_EVENT_TYPES = {EventType.POLICY_VIOLATION, EventType.TRANSACTION_BLOCKED}


def requires_regulatory_reporting(event: TelemetryEvent) -> bool:
    """HIGH / CRITICAL events and policy violations or blocked transactions."""
    if event.risk_level is not None and event.risk_level >= RiskLevel.HIGH:
        return True
    return event.event_type in REGULATORY_EVENT_TYPES


def to_regulatory_record(event: TelemetryEvent, salt: str) -> RegulatoryRecord:
    """
    Convert an event into the record shape sent to the regulator.

    The device fingerprint is dropped entirely.
    """
    data = event.payload if event.anonymized else anonymize_payload(event.payload, salt)
    return RegulatoryRecord(
        event_type=event.event_type.value,
        timestamp=truncate_to_hour(event.timestamp),
        risk_level=event.risk_level.value if event.risk_level else None,
        anonymized_data=data,
        compliance_required=requires_regulatory_reporting(event),
    )


class TelemetryStore(ABC):
    """Destination for flushed telemetry batches."""

    @abstractmethod
    def persist(self, batch: Sequence[TelemetryEvent]) -> None:
        """
        Persist a batch.

        Raises:
            TelemetryPersistenceError: Batch was not stored
        """
        raise NotImplementedError


class LoggingTelemetryStore(TelemetryStore):
    """Writes a one-line summary per batch to the log."""

    def persist(self, batch: Sequence[TelemetryEvent]) -> None:
        counts = Counter(event.event_type.value for event in batch)
        logger.info(
            f"Persisted telemetry batch of {len(batch)} events",
            extra={"batch_size": len(batch), "counts_by_type": dict(counts)}
        )


class InMemoryTelemetryStore(TelemetryStore):
    """Keeps every persisted batch in memory, in flush order."""

    def __init__(self):
        self._lock = threading.Lock()
        self.batches: List[List[TelemetryEvent]] = []

    def persist(self, batch: Sequence[TelemetryEvent]) -> None:
        with self._lock:
            self.batches.append(list(batch))

    @property
    def events(self) -> List[TelemetryEvent]:
        with self._lock:
            return [event for batch in self.batches for event in batch]


class RegulatorySink(ABC):
    """External regulatory submission endpoint."""

    @abstractmethod
    def submit(self, records: Sequence[RegulatoryRecord], timeout_seconds: float) -> None:
        """
        Submit records.

        Raises:
            RegulatorySubmissionError: Submission rejected or endpoint unreachable
        """
        raise NotImplementedError


class LoggingRegulatorySink(RegulatorySink):
    """Logs what would be submitted to the configured endpoint."""

    def __init__(self, endpoint: Optional[str] = None, authority_id: str = "UNKNOWN"):
        self.endpoint = endpoint
        self.authority_id = authority_id

    def submit(self, records: Sequence[RegulatoryRecord], timeout_seconds: float) -> None:
        counts = Counter(record.event_type for record in records)
        logger.info(
            f"Regulatory submission to {self.authority_id}: {len(records)} records",
            extra={
                "authority_id": self.authority_id,
                "endpoint": self.endpoint,
                "counts_by_type": dict(counts),
            }
        )
