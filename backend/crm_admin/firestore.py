from __future__ import annotations

from functools import lru_cache

from google.cloud import firestore

from .settings import get_settings


class Collections:
    """Collection names used across the panel."""

    USERS = "users"
    LEADS = "leads"
    ACTIVITY_LOGS = "activity_logs"
    RATE_LIMITS = "rate_limits"
    SECURITY_ALERTS = "security_alerts"
    BACKUPS = "backups"
    VALIDATION_ERRORS = "validation_errors"
    DAILY_SUMMARIES = "daily_summaries"


@lru_cache
def get_client() -> firestore.Client:
    return firestore.Client(project=get_settings().gcp_project_id)


def doc_to_dict(snap) -> dict:
    """Flatten a snapshot into `{"id": ..., **fields}`."""
    return {"id": snap.id, **(snap.to_dict() or {})}
