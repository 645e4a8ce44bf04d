"""Audit emitter.

Every authorization decision is recorded, but recording is best-effort and
never part of the decision: :meth:`AuditEmitter.record` only enqueues, and a
worker thread delivers the records to the sink. A slow or unavailable sink
delays nothing and fails nothing in the authorization path; delivery
failures and overflow are logged locally.
"""

import queue
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from tenantgate import config, tenantgate_logging
from tenantgate.audit.sinks import AuditSink, get_sink
from tenantgate.authorization.provider import AuthorizationRequest, Decision
from tenantgate.common.exception import AuditSinkUnavailable

logger = tenantgate_logging.init_logging("audit")


@dataclass(frozen=True)
class AuditRecord:
    timestamp: datetime
    principal: str
    action: str
    resource: str
    result: str
    statement_id: Optional[str] = None
    policy_subject: Optional[str] = None
    request_id: Optional[str] = None
    contributing_statements: Tuple[str, ...] = ()

    @classmethod
    def build(
        cls,
        request: AuthorizationRequest,
        decision: Decision,
        timestamp: Optional[datetime] = None,
        request_id: Optional[str] = None,
    ) -> "AuditRecord":
        return cls(
            timestamp=timestamp or datetime.now(timezone.utc),
            principal=request.principal,
            action=request.action,
            resource=request.resource,
            result=decision.result.value,
            statement_id=decision.statement_id,
            policy_subject=decision.policy_subject,
            request_id=request_id,
            contributing_statements=decision.contributing_statements,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "principal": self.principal,
            "action": self.action,
            "resource": self.resource,
            "result": self.result,
            "statementId": self.statement_id,
            "policySubject": self.policy_subject,
            "requestId": self.request_id,
            "contributingStatements": list(self.contributing_statements),
        }


class AuditEmitter:
    """Buffers audit records and delivers them from a background thread."""

    def __init__(self, sink: AuditSink, queue_size: int = config.DEFAULT_AUDIT_QUEUE_SIZE) -> None:
        if queue_size <= 0:
            logger.info("Invalid audit queue size %d, using default value", queue_size)
            queue_size = config.DEFAULT_AUDIT_QUEUE_SIZE

        self._sink = sink
        self._queue: "queue.Queue[Optional[AuditRecord]]" = queue.Queue(maxsize=queue_size)
        self._pending = 0
        self._idle = threading.Condition()
        self._shutdown = threading.Event()
        self._dropped = 0
        self._worker = threading.Thread(target=self._run, name="tenantgate-audit", daemon=True)
        self._worker.start()

    @classmethod
    def from_config(cls, component: str = "gateway") -> "AuditEmitter":
        return cls(
            get_sink(component),
            queue_size=config.getint(component, "audit_queue_size", fallback=config.DEFAULT_AUDIT_QUEUE_SIZE),
        )

    @property
    def sink(self) -> AuditSink:
        return self._sink

    @property
    def dropped(self) -> int:
        with self._idle:
            return self._dropped

    def record(
        self,
        request: AuthorizationRequest,
        decision: Decision,
        timestamp: Optional[datetime] = None,
        request_id: Optional[str] = None,
    ) -> None:
        """Queue an audit record for the decision. Never blocks, never raises."""
        entry = AuditRecord.build(request, decision, timestamp, request_id)

        if self._shutdown.is_set():
            logger.warning("Audit emitter is shut down, dropping record for %s", request.principal)
            with self._idle:
                self._dropped += 1
            return

        with self._idle:
            self._pending += 1
        try:
            self._queue.put_nowait(entry)
        except queue.Full:
            self._done()
            with self._idle:
                self._dropped += 1
            logger.warning(
                "Audit queue full, dropping record: %s %s %s %s",
                entry.result,
                entry.principal,
                entry.action,
                entry.resource,
            )

    def _done(self) -> None:
        with self._idle:
            self._pending -= 1
            if self._pending <= 0:
                self._idle.notify_all()

    def _run(self) -> None:
        while True:
            entry = self._queue.get()
            if entry is None:
                break
            try:
                self._sink.append(entry.to_dict())
            except AuditSinkUnavailable as e:
                logger.warning("Audit record not stored: %s", e)
            except Exception as e:
                logger.error("Audit sink %s failed: %s", self._sink.get_name(), e, exc_info=True)
            finally:
                self._done()

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Wait until every queued record was handed to the sink.

        Returns:
            True if the queue drained within ``timeout``
        """
        end = None if timeout is None else time.monotonic() + timeout
        with self._idle:
            while self._pending > 0:
                remaining = None if end is None else end - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                self._idle.wait(remaining)
        return True

    def shutdown(self, timeout: float = 30.0) -> None:
        """Deliver the queued records, then stop the worker and close the sink."""
        if self._shutdown.is_set():
            return
        self._shutdown.set()

        if not self.flush(timeout):
            logger.warning("Audit records still pending after %.1f seconds, some may be lost", timeout)

        try:
            self._queue.put(None, timeout=1.0)
        except queue.Full:
            logger.warning("Audit worker could not be signalled to stop")
        else:
            self._worker.join(timeout=1.0)
        self._sink.close()
