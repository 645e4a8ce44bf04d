"""Audit sinks: where audit records end up.

Sinks are called from the audit emitter's worker thread only, never from the
authorization path. They signal delivery failures with
:class:`~tenantgate.common.exception.AuditSinkUnavailable`.
"""

import json
import os
import threading
from abc import ABC, abstractmethod
from collections import deque
from typing import Any, Deque, Dict, List, Optional

import requests

from tenantgate import config, tenantgate_logging
from tenantgate.common import retry
from tenantgate.common.exception import AuditSinkUnavailable

logger = tenantgate_logging.init_logging("audit")


class AuditSink(ABC):
    @abstractmethod
    def append(self, entry: Dict[str, Any]) -> None:
        """Append one audit entry.

        Raises:
            AuditSinkUnavailable: The entry could not be stored
        """

    @abstractmethod
    def get_name(self) -> str:
        """Name of the sink for logging"""

    def close(self) -> None:
        pass


class NullAuditSink(AuditSink):
    def append(self, entry: Dict[str, Any]) -> None:
        pass

    def get_name(self) -> str:
        return "none"


class MemoryAuditSink(AuditSink):
    """Keeps the most recent entries in memory."""

    def __init__(self, maxlen: Optional[int] = None) -> None:
        self._entries: Deque[Dict[str, Any]] = deque(maxlen=maxlen)
        self._lock = threading.Lock()

    def append(self, entry: Dict[str, Any]) -> None:
        with self._lock:
            self._entries.append(entry)

    @property
    def entries(self) -> List[Dict[str, Any]]:
        with self._lock:
            return list(self._entries)

    def get_name(self) -> str:
        return "memory"


class JsonLinesFileSink(AuditSink):
    """Appends one JSON document per line to a local file."""

    def __init__(self, path: str) -> None:
        self._path = path
        self._lock = threading.Lock()

    def append(self, entry: Dict[str, Any]) -> None:
        line = _dumps(entry)
        with self._lock:
            try:
                directory = os.path.dirname(self._path)
                if directory:
                    os.makedirs(directory, exist_ok=True)
                with open(self._path, "a", encoding="utf-8") as f:
                    f.write(line + "\n")
            except OSError as e:
                raise AuditSinkUnavailable(f"Cannot append to audit log {self._path}: {e}") from e

    def get_name(self) -> str:
        return f"file:{self._path}"


class WebhookAuditSink(AuditSink):
    """Posts each entry as JSON to an HTTP endpoint, with retries."""

    def __init__(
        self,
        url: str,
        timeout: float = config.DEFAULT_TIMEOUT,
        retry_interval: float = 2.0,
        exponential_backoff: bool = True,
        max_retries: int = config.DEFAULT_MAX_RETRIES,
        verify: bool = True,
        session: Optional[requests.Session] = None,
    ) -> None:
        if max_retries <= 0:
            logger.info("Invalid value found in 'max_retries' option for the audit webhook, using default value")
            max_retries = config.DEFAULT_MAX_RETRIES

        self._url = url
        self._timeout = timeout
        self._retry_interval = retry_interval
        self._exponential_backoff = exponential_backoff
        self._max_retries = max_retries
        self._verify = verify
        self._session = session or requests.Session()
        self._closed = threading.Event()

    def append(self, entry: Dict[str, Any]) -> None:
        last_error = ""
        for i in range(self._max_retries):
            try:
                res = self._session.post(self._url, json=entry, timeout=self._timeout, verify=self._verify)
                if res.status_code in (200, 201, 202, 204):
                    return
                last_error = f"server returned status code {res.status_code}"
            except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
                last_error = str(e)

            if i == self._max_retries - 1 or self._closed.is_set():
                break

            next_retry = retry.retry_time(self._exponential_backoff, self._retry_interval, i, logger, ceiling=60.0)
            logger.debug(
                "Unable to deliver audit entry %d times via webhook (%s), trying again in %.1f seconds",
                i + 1,
                last_error,
                next_retry,
            )
            # wakes up early on close()
            self._closed.wait(next_retry)

        raise AuditSinkUnavailable(f"Audit webhook {self._url} unavailable: {last_error}")

    def close(self) -> None:
        self._closed.set()
        self._session.close()

    def get_name(self) -> str:
        return f"webhook:{self._url}"


def _dumps(entry: Dict[str, Any]) -> str:
    return json.dumps(entry, sort_keys=True, separators=(",", ":"))


def get_sink(component: str = "gateway") -> AuditSink:
    """Create the audit sink selected by the ``audit_sink`` option."""
    kind = config.get(component, "audit_sink", fallback="file").lower()

    if kind == "file":
        return JsonLinesFileSink(config.get(component, "audit_log_path", fallback=config.DEFAULT_AUDIT_LOG))
    if kind == "webhook":
        url = config.get(component, "audit_webhook_url", fallback="")
        if not url:
            logger.error("audit_sink is 'webhook' but no audit_webhook_url is set, audit records will be discarded")
            return NullAuditSink()
        return WebhookAuditSink(
            url,
            timeout=config.getfloat(component, "request_timeout", fallback=config.DEFAULT_TIMEOUT),
            retry_interval=config.getfloat(component, "retry_interval", fallback=2.0),
            exponential_backoff=config.getboolean(component, "exponential_backoff", fallback=True),
            max_retries=config.getint(component, "max_retries", fallback=config.DEFAULT_MAX_RETRIES),
        )
    if kind == "memory":
        return MemoryAuditSink()
    if kind in ("none", "null", ""):
        return NullAuditSink()

    logger.error("Unknown audit sink '%s', audit records will be discarded", kind)
    return NullAuditSink()
