from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Optional

from google.cloud import firestore

from .activity import ActivityLogger
from .cache import QueryCache
from .firestore import get_client
from .maintenance import Maintenance
from .manager import FirestoreManager
from .operations import DatabaseOperations
from .permissions import PermissionSystem
from .ratelimit import RateLimiter
from .realtime import RealtimeManager
from .retry import RetryQueue
from .sanitizer import DataSanitizer
from .session import SessionManager
from .settings import Settings, get_settings

logger = logging.getLogger(__name__)


@dataclass
class CrmServices:
    settings: Settings
    client: firestore.Client
    sanitizer: DataSanitizer
    cache: QueryCache
    retry_queue: RetryQueue
    activity: ActivityLogger
    manager: FirestoreManager
    realtime: RealtimeManager
    permissions: PermissionSystem
    operations: DatabaseOperations
    rate_limiter: RateLimiter
    maintenance: Maintenance
    session: SessionManager
    executor: Optional[ThreadPoolExecutor] = None

    def status(self) -> dict:
        return {
            "firestore": "connected" if self.manager.is_initialized else "unavailable",
            "metrics": self.manager.get_metrics(),
            "cache": self.cache.stats(),
            "realtime": self.realtime.get_connection_status(),
        }

    def close(self) -> None:
        self.realtime.unsubscribe_all()
        self.retry_queue.shutdown()
        if self.executor is not None:
            self.executor.shutdown(wait=True)
        logger.info("CRM services closed")


def build_services(
    settings: Optional[Settings] = None,
    client: Optional[firestore.Client] = None,
    *,
    executor: Optional[ThreadPoolExecutor] = None,
) -> CrmServices:
    """Wire every component from settings.

    Activity writes go to a single-worker executor unless one is given.
    """
    settings = settings or get_settings()
    client = client if client is not None else get_client()
    executor = executor or ThreadPoolExecutor(max_workers=1, thread_name_prefix="crm-activity")
    timeout = settings.request_timeout_seconds

    session = SessionManager(
        settings.session_file,
        timeout=settings.session_timeout_seconds,
        refresh_threshold=settings.session_refresh_threshold_seconds,
    )
    sanitizer = DataSanitizer()
    cache = QueryCache(ttl=settings.cache_ttl_seconds, max_entries=settings.cache_max_entries)
    retry_queue = RetryQueue(max_attempts=settings.retry_attempts, base_delay=settings.retry_delay_seconds)
    activity = ActivityLogger(client, executor=executor,
                              session_id_provider=lambda: session.session_id, timeout=timeout)
    manager = FirestoreManager(
        client, sanitizer, cache, retry_queue, activity,
        batch_size=settings.batch_size,
        timeout=timeout,
    )
    permissions = PermissionSystem()

    return CrmServices(
        settings=settings,
        client=client,
        sanitizer=sanitizer,
        cache=cache,
        retry_queue=retry_queue,
        activity=activity,
        manager=manager,
        realtime=RealtimeManager(
            manager,
            max_reconnect_attempts=settings.max_reconnect_attempts,
            base_delay=settings.reconnect_base_delay_seconds,
        ),
        permissions=permissions,
        operations=DatabaseOperations(manager, activity, permissions),
        rate_limiter=RateLimiter(client, timeout=timeout),
        maintenance=Maintenance(client, sanitizer, timeout=timeout, batch_size=settings.batch_size),
        session=session,
        executor=executor,
    )
