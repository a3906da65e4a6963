from __future__ import annotations

import logging
import time
from concurrent.futures import Executor, Future
from typing import Any, Callable, Optional

from google.cloud import firestore

from .firestore import Collections, doc_to_dict
from .query import IN_QUERY_LIMIT, Filter, FilterOperator, OrderBy, QueryOptions, build_query, chunked
from .utils import as_datetime

logger = logging.getLogger(__name__)


class ActivityLogger:
    """Audit trail writer for `activity_logs`.

    Writes go straight to the client, never through the data facade, so
    logging an operation can't trigger another log entry. When an executor
    is given, writes are fire-and-forget; failures are only logged.
    """

    def __init__(
        self,
        client: firestore.Client,
        executor: Optional[Executor] = None,
        session_id_provider: Optional[Callable[[], Optional[str]]] = None,
        timeout: float = 30.0,
    ):
        self._client = client
        self._executor = executor
        self._session_id = session_id_provider or (lambda: None)
        self._timeout = timeout

    def log_activity(
        self,
        action: str,
        details: Optional[dict[str, Any]] = None,
        user_id: Optional[str] = None,
        user_role: Optional[str] = None,
    ) -> None:
        record = {
            "action": action,
            "details": details or {},
            "userId": user_id or "system",
            "userRole": user_role or "unknown",
            "sessionId": self._session_id() or "no-session",
            "timestamp": firestore.SERVER_TIMESTAMP,
            "clientTimestamp": int(time.time() * 1000),
        }
        if self._executor is None:
            self._write(record)
            return
        try:
            future = self._executor.submit(self._write, record)
        except RuntimeError as exc:
            logger.error("Activity executor unavailable, dropping %s: %s", action, exc)
            return
        future.add_done_callback(_report_failure)

    def _write(self, record: dict) -> None:
        try:
            self._client.collection(Collections.ACTIVITY_LOGS).add(record, timeout=self._timeout)
        except Exception as exc:
            logger.error("Failed to log activity %s: %s", record.get("action"), exc)

    def get_recent_activities(self, limit: int = 10, user_ids: Optional[list[str]] = None) -> list[dict]:
        """Newest first. Long `user_ids` lists are queried in `in`-sized chunks and merged."""
        if user_ids is None:
            return self._recent(limit)
        entries: list[dict] = []
        for chunk in chunked(list(user_ids)):
            entries.extend(self._recent(limit, Filter(field="userId", operator=FilterOperator.IN, value=chunk)))
        if len(user_ids) > IN_QUERY_LIMIT:
            entries.sort(key=_timestamp_desc, reverse=True)
        return entries[:limit]

    def _recent(self, limit: int, user_filter: Optional[Filter] = None) -> list[dict]:
        options = QueryOptions(
            filters=[user_filter] if user_filter else [],
            order_by=[OrderBy(field="timestamp", direction="desc")],
            limit=limit,
        )
        query = build_query(self._client.collection(Collections.ACTIVITY_LOGS), options)
        return [doc_to_dict(snap) for snap in query.stream(timeout=self._timeout)]


def _timestamp_desc(entry: dict):
    ts = as_datetime(entry.get("timestamp"))
    return (ts is not None, ts or 0)


def _report_failure(future: Future) -> None:
    exc = future.exception()
    if exc is not None:
        logger.error("Activity write failed: %s", exc)
