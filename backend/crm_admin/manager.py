"""
Data access facade over Firestore.

FirestoreManager adds, on top of the SDK:
- a TTL/FIFO query cache (invalidated on every successful write)
- sanitization and validation before any write
- optimistic locking through the `version` field
- one hand-off to the retry queue for transient failures
- fire-and-forget activity logging

Invariants:
    - `version` is 1 on create and grows by exactly one per versioned update
    - validation errors never reach the network
    - conflicts and permission errors are never retried
"""

from __future__ import annotations

import copy
import logging
import threading
from typing import Any, Callable, Iterable, Optional

from google.api_core import exceptions as gcp_exceptions
from google.cloud import firestore

from .activity import ActivityLogger
from .cache import QueryCache, canonical_json, make_key
from .errors import (
    ConflictError,
    NotFoundError,
    NotInitializedError,
    PermissionDeniedError,
    ValidationError,
    is_transient,
)
from .firestore import Collections, doc_to_dict
from .query import (
    AGGREGATORS,
    Aggregation,
    BatchOperation,
    QueryOptions,
    WriteOptions,
    apply_filters,
    apply_sort,
    build_query,
)
from .retry import RetryQueue
from .sanitizer import DataSanitizer

logger = logging.getLogger(__name__)

SYSTEM_FIELDS = frozenset({"id", "createdAt", "updatedAt", "createdBy", "updatedBy", "version"})

Listener = Callable[[Optional[list[dict]], Optional[BaseException]], None]


def _field_list(data: Any, limit: int = 10) -> list[str]:
    if not isinstance(data, dict):
        return []
    return sorted(data)[:limit]


class FirestoreManager:
    def __init__(
        self,
        client: firestore.Client,
        sanitizer: DataSanitizer,
        cache: QueryCache,
        retry_queue: RetryQueue,
        activity: Optional[ActivityLogger] = None,
        *,
        batch_size: int = 500,
        timeout: float = 30.0,
        actor_provider: Optional[Callable[[], str]] = None,
    ):
        self._client = client
        self.sanitizer = sanitizer
        self.cache = cache
        self.retry_queue = retry_queue
        self.activity = activity
        self.batch_size = batch_size
        self.timeout = timeout
        self._actor = actor_provider or (lambda: "system")
        self._metrics = {"operations": 0, "cache_hits": 0, "cache_misses": 0, "errors": 0}
        self._metrics_lock = threading.Lock()
        self._sanitizers = {
            Collections.LEADS: ("Lead", sanitizer.sanitize_lead_data),
            Collections.USERS: ("User", sanitizer.sanitize_user_data),
        }

    @property
    def is_initialized(self) -> bool:
        return self._client is not None

    @property
    def client(self) -> firestore.Client:
        if self._client is None:
            raise NotInitializedError("Firestore client")
        return self._client

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------
    def get(self, collection: str, doc_id: Optional[str] = None, options: Optional[QueryOptions] = None):
        """Fetch one document (dict or None) or a filtered list of documents."""
        options = options or QueryOptions()
        self._count("operations")
        key = make_key(collection, doc_id, options.signature())

        if options.use_cache:
            hit, data = self.cache.lookup(key)
            if hit:
                self._count("cache_hits")
                return copy.deepcopy(data)
        self._count("cache_misses")

        try:
            if doc_id:
                snap = self.client.collection(collection).document(doc_id).get(timeout=self.timeout)
                result = doc_to_dict(snap) if snap.exists else None
            else:
                query = build_query(self.client.collection(collection), options)
                result = [doc_to_dict(snap) for snap in query.stream(timeout=self.timeout)]
        except Exception as exc:
            return self._handle_failure(
                "get", exc, {"collection": collection, "doc_id": doc_id}, options.retry,
                self.get, collection, doc_id, options.model_copy(update={"retry": False}),
            )

        if options.use_cache:
            self.cache.cache_result(key, copy.deepcopy(result))

        count = len(result) if isinstance(result, list) else int(result is not None)
        self._log_activity("database_read", {"collection": collection, "docId": doc_id, "resultCount": count})
        return result

    def aggregate(
        self,
        collection: str,
        aggregations: dict[str, Aggregation | dict],
        options: Optional[QueryOptions] = None,
    ) -> dict[str, Any]:
        options = options or QueryOptions()
        self._count("operations")
        aggs = {name: a if isinstance(a, Aggregation) else Aggregation(**a) for name, a in aggregations.items()}
        signature = canonical_json({name: a.model_dump(mode="json") for name, a in aggs.items()})
        key = make_key(collection, f"aggregate:{signature}", options.signature())

        if options.use_cache:
            hit, data = self.cache.lookup(key)
            if hit:
                self._count("cache_hits")
                return dict(data)
        self._count("cache_misses")

        try:
            query = apply_filters(self.client.collection(collection), options)
            docs = [doc_to_dict(snap) for snap in query.stream(timeout=self.timeout)]
        except Exception as exc:
            self._count("errors")
            logger.error("Database error [aggregate] on %s: %s", collection, exc)
            raise self._translate(exc) from exc

        results = {name: AGGREGATORS[a.type](docs, a.field) for name, a in aggs.items()}
        if options.use_cache:
            self.cache.cache_result(key, dict(results))
        return results

    # ------------------------------------------------------------------
    # writes
    # ------------------------------------------------------------------
    def create(
        self,
        collection: str,
        data: dict[str, Any],
        options: Optional[WriteOptions] = None,
        actor: Optional[str] = None,
    ) -> str:
        options = options or WriteOptions()
        self._count("operations")
        actor = actor or self._actor()
        sanitized = self.validate_and_sanitize(collection, data, partial=False)

        doc = {
            **sanitized,
            "createdAt": firestore.SERVER_TIMESTAMP,
            "updatedAt": firestore.SERVER_TIMESTAMP,
            "createdBy": actor,
            "updatedBy": actor,
            "version": 1,
        }
        # id is fixed before the first attempt so a retried create can't duplicate
        ref = self.client.collection(collection).document(options.doc_id)
        try:
            ref.set(doc, timeout=self.timeout)
        except Exception as exc:
            return self._handle_failure(
                "create", exc, {"collection": collection, "fields": _field_list(data)}, options.retry,
                self.create, collection, data, options.model_copy(update={"retry": False, "doc_id": ref.id}), actor,
            )

        self.cache.invalidate(collection)
        self._log_activity("database_create",
                           {"collection": collection, "docId": ref.id, "dataKeys": sorted(sanitized)}, actor)
        return ref.id

    def update(
        self,
        collection: str,
        doc_id: str,
        data: dict[str, Any],
        options: Optional[WriteOptions] = None,
        actor: Optional[str] = None,
    ) -> bool:
        """Update a document.

        With `options.expected_version` this is a compare-and-swap: the
        stored version must equal it, and the write carries a
        last-update-time precondition so a writer sneaking in between the
        read and the write also produces a ConflictError.
        """
        options = options or WriteOptions()
        self._count("operations")
        actor = actor or self._actor()
        sanitized = self.validate_and_sanitize(collection, data, partial=True)
        ref = self.client.collection(collection).document(doc_id)

        try:
            if options.expected_version is not None:
                self._compare_and_set(ref, collection, doc_id, sanitized, options.expected_version, actor)
            else:
                ref.update(
                    {**sanitized, "updatedAt": firestore.SERVER_TIMESTAMP, "updatedBy": actor},
                    timeout=self.timeout,
                )
        except Exception as exc:
            return self._handle_failure(
                "update", exc, {"collection": collection, "doc_id": doc_id, "fields": _field_list(data)},
                options.retry,
                self.update, collection, doc_id, data, options.model_copy(update={"retry": False}), actor,
            )

        self.cache.invalidate(collection, doc_id)
        self._log_activity("database_update",
                           {"collection": collection, "docId": doc_id, "updateKeys": sorted(sanitized)}, actor)
        return True

    def delete(
        self,
        collection: str,
        doc_id: str,
        options: Optional[WriteOptions] = None,
        actor: Optional[str] = None,
    ) -> bool:
        options = options or WriteOptions()
        self._count("operations")
        actor = actor or self._actor()
        ref = self.client.collection(collection).document(doc_id)

        try:
            if options.soft_delete:
                ref.update(
                    {"deleted": True, "deletedAt": firestore.SERVER_TIMESTAMP, "deletedBy": actor},
                    timeout=self.timeout,
                )
            else:
                ref.delete(timeout=self.timeout)
        except Exception as exc:
            return self._handle_failure(
                "delete", exc, {"collection": collection, "doc_id": doc_id}, options.retry,
                self.delete, collection, doc_id, options.model_copy(update={"retry": False}), actor,
            )

        self.cache.invalidate(collection, doc_id)
        self._log_activity("database_delete",
                           {"collection": collection, "docId": doc_id, "softDelete": options.soft_delete}, actor)
        return True

    def batch_write(self, operations: Iterable[BatchOperation | dict], actor: Optional[str] = None) -> list[str]:
        """Commit operations in chunks of `batch_size`, one batch per chunk."""
        self._count("operations")
        actor = actor or self._actor()
        ops = [op if isinstance(op, BatchOperation) else BatchOperation(**op) for op in operations]
        prepared = [
            (op, {} if op.type == "delete"
             else self.validate_and_sanitize(op.collection, op.data, partial=op.type == "update"))
            for op in ops
        ]
        chunks = [prepared[i:i + self.batch_size] for i in range(0, len(prepared), self.batch_size)]
        affected = sorted({op.collection for op in ops})
        results: list[str] = []

        try:
            for chunk in chunks:
                batch = self.client.batch()
                for op, data in chunk:
                    ref = self.client.collection(op.collection).document(op.doc_id)
                    if op.type in ("create", "set"):
                        batch.set(ref, {
                            **data,
                            "createdAt": firestore.SERVER_TIMESTAMP,
                            "updatedAt": firestore.SERVER_TIMESTAMP,
                            "createdBy": actor,
                            "version": 1,
                        })
                    elif op.type == "update":
                        batch.update(ref, {**data, "updatedAt": firestore.SERVER_TIMESTAMP, "updatedBy": actor})
                    else:
                        batch.delete(ref)
                batch.commit(timeout=self.timeout)
                results.append(f"Batch {len(results) + 1} completed")
        except Exception as exc:
            self._count("errors")
            logger.error("Database error [batch_write] after %d of %d batches: %s",
                         len(results), len(chunks), exc)
            raise self._translate(exc) from exc
        finally:
            # committed chunks are visible even when a later one fails
            for collection in affected:
                self.cache.invalidate(collection)

        self._log_activity("database_batch_write",
                           {"operationCount": len(ops), "batchCount": len(chunks), "collections": affected}, actor)
        return results

    # ------------------------------------------------------------------
    # listeners
    # ------------------------------------------------------------------
    def create_listener(
        self,
        collection: str,
        callback: Listener,
        options: Optional[QueryOptions] = None,
    ) -> Callable[[], None]:
        """Attach an `on_snapshot` watch; returns an unsubscribe callable."""
        options = options or QueryOptions()
        query = apply_sort(apply_filters(self.client.collection(collection), options), options)

        def on_snapshot(docs, changes, read_time):
            try:
                data = [doc_to_dict(snap) for snap in docs]
            except Exception as exc:
                logger.error("Error processing snapshot for %s: %s", collection, exc)
                callback(None, exc)
                return
            try:
                callback(data, None)
            except Exception as exc:
                logger.error("Listener callback for %s raised: %s", collection, exc)

        watch = query.on_snapshot(on_snapshot)

        def unsubscribe() -> None:
            try:
                watch.unsubscribe()
                logger.info("Listener for %s unsubscribed", collection)
            except Exception as exc:
                logger.error("Error unsubscribing listener for %s: %s", collection, exc)

        return unsubscribe

    # ------------------------------------------------------------------
    # metrics / cache
    # ------------------------------------------------------------------
    def get_metrics(self) -> dict[str, Any]:
        with self._metrics_lock:
            metrics = dict(self._metrics)
        lookups = metrics["cache_hits"] + metrics["cache_misses"]
        metrics.update(
            retries=self.retry_queue.retries,
            cache_size=len(self.cache),
            cache_hit_rate=metrics["cache_hits"] / lookups if lookups else 0.0,
            retry_queue=len(self.retry_queue),
        )
        return metrics

    def clear_cache(self) -> None:
        self.cache.clear()
        logger.info("Query cache cleared")

    # ------------------------------------------------------------------
    # internals
    # ------------------------------------------------------------------
    def _compare_and_set(self, ref, collection, doc_id, sanitized, expected_version, actor) -> int:
        snap = ref.get(timeout=self.timeout)
        if not snap.exists:
            raise NotFoundError("Document not found", collection=collection, doc_id=doc_id)
        current = (snap.to_dict() or {}).get("version", 1)
        if current != expected_version:
            raise ConflictError(expected_version=expected_version, actual_version=current)

        payload = {
            **sanitized,
            "updatedAt": firestore.SERVER_TIMESTAMP,
            "updatedBy": actor,
            "version": current + 1,
        }
        try:
            ref.update(
                payload,
                option=self.client.write_option(last_update_time=snap.update_time),
                timeout=self.timeout,
            )
        except gcp_exceptions.FailedPrecondition as exc:
            raise ConflictError(expected_version=expected_version) from exc
        return current + 1

    def validate_and_sanitize(self, collection: str, data: dict[str, Any], *, partial: bool) -> dict[str, Any]:
        data = {k: v for k, v in (data or {}).items() if k not in SYSTEM_FIELDS}
        entry = self._sanitizers.get(collection)
        if entry is None:
            return self.sanitizer.sanitize_generic(data)

        label, sanitize = entry
        result = sanitize(data, partial=partial)
        if not result.is_valid:
            logger.info("%s validation failed: %s", label, result.errors)
            raise ValidationError(
                f"{label} validation failed: {', '.join(result.errors.values())}",
                errors=result.errors,
            )
        for warning in result.warnings:
            logger.warning("%s field %s: %s", label, warning["field"], warning["message"])
        return result.sanitized_data

    def _handle_failure(self, operation: str, exc: Exception, context: dict, allow_retry: bool, fn, *args):
        self._count("errors")
        logger.error("Database error [%s]: %s %s", operation, exc, context)
        if allow_retry and is_transient(exc):
            return self.retry_queue.retry_operation(fn, *args)
        translated = self._translate(exc)
        if translated is exc:
            raise
        raise translated from exc

    @staticmethod
    def _translate(exc: Exception) -> Exception:
        if isinstance(exc, gcp_exceptions.PermissionDenied):
            return PermissionDeniedError(str(exc.message))
        if isinstance(exc, gcp_exceptions.NotFound):
            return NotFoundError(str(exc.message))
        return exc

    def _count(self, metric: str) -> None:
        with self._metrics_lock:
            self._metrics[metric] = self._metrics.get(metric, 0) + 1

    def _log_activity(self, action: str, details: dict, actor: Optional[str] = None) -> None:
        if self.activity is None:
            return
        try:
            self.activity.log_activity(action, details, user_id=actor or self._actor())
        except Exception as exc:
            logger.error("Failed to log activity %s: %s", action, exc)
