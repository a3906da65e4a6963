"""
Periodic maintenance jobs: cleanup, backups, summaries and audits.

Jobs write directly through the Firestore client. They are triggered over
HTTP (`POST /api/maintenance/{job}`) by an external scheduler.
"""

from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from google.cloud import firestore
from google.cloud.firestore_v1.base_query import FieldFilter

from .errors import NotFoundError
from .firestore import Collections, doc_to_dict
from .sanitizer import LEAD_SCHEMA, DataSanitizer

logger = logging.getLogger(__name__)

RATE_LIMIT_RETENTION = timedelta(hours=24)
RECENT_LEADS_WINDOW = timedelta(days=7)
LOG_RETENTION = timedelta(days=90)
RAPID_ACTION_WINDOW = timedelta(minutes=1)
RAPID_ACTION_THRESHOLD = 20

SUSPICIOUS_ACTIONS = (
    "multiple_failed_logins",
    "access_denied_attempts",
    "rate_limit_exceeded",
    "invalid_input_detected",
)

JOBS = {
    "cleanup-rate-limits": "cleanup_rate_limits",
    "backup-critical-data": "backup_critical_data",
    "daily-summary": "generate_daily_summary",
    "clean-old-logs": "clean_old_logs",
    "security-scan": "security_scan",
    "validate-leads": "validate_leads",
}


def _midnight(moment: datetime) -> datetime:
    return moment.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)


class Maintenance:
    def __init__(
        self,
        client: firestore.Client,
        sanitizer: DataSanitizer,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        timeout: float = 30.0,
        batch_size: int = 500,
    ):
        self._client = client
        self._sanitizer = sanitizer
        self._now = now
        self._timeout = timeout
        self._batch_size = batch_size

    def run(self, job: str) -> Any:
        method = JOBS.get(job)
        if method is None:
            raise NotFoundError(f"Unknown maintenance job: {job}")
        logger.info("Running maintenance job %s", job)
        return getattr(self, method)()

    def cleanup_rate_limits(self) -> int:
        cutoff = self._now() - RATE_LIMIT_RETENTION
        query = self._client.collection(Collections.RATE_LIMITS).where(
            filter=FieldFilter("updatedAt", "<", cutoff))
        deleted = self._delete_all([snap.reference for snap in query.stream(timeout=self._timeout)])
        logger.info("Cleaned up %d old rate limit documents", deleted)
        return deleted

    def backup_critical_data(self) -> dict[str, int]:
        now = self._now()
        timestamp = now.isoformat()
        backups = self._client.collection(Collections.BACKUPS)

        users = [doc_to_dict(s) for s in self._client.collection(Collections.USERS).stream(timeout=self._timeout)]
        backups.add({"timestamp": timestamp, "collection": "users", "data": users}, timeout=self._timeout)

        recent = self._client.collection(Collections.LEADS).where(
            filter=FieldFilter("createdAt", ">", now - RECENT_LEADS_WINDOW))
        leads = [doc_to_dict(s) for s in recent.stream(timeout=self._timeout)]
        backups.add({"timestamp": timestamp, "collection": "leads_recent", "data": leads}, timeout=self._timeout)

        logger.info("Backup completed at %s", timestamp)
        return {"users": len(users), "leads_recent": len(leads)}

    def generate_daily_summary(self) -> dict[str, Any]:
        today = _midnight(self._now())
        yesterday = today - timedelta(days=1)
        query = (
            self._client.collection(Collections.ACTIVITY_LOGS)
            .where(filter=FieldFilter("timestamp", ">=", yesterday))
            .where(filter=FieldFilter("timestamp", "<", today))
        )
        logs = [s.to_dict() or {} for s in query.stream(timeout=self._timeout)]

        per_user: dict[str, dict[str, Any]] = {}
        for log in logs:
            uid = log.get("userId", "unknown")
            entry = per_user.setdefault(uid, {
                "userId": uid, "actions": [], "loginCount": 0, "leadsCreated": 0, "leadsUpdated": 0,
            })
            action = log.get("action", "")
            entry["actions"].append(action)
            if action == "login_success":
                entry["loginCount"] += 1
            elif action == "create_lead":
                entry["leadsCreated"] += 1
            elif action == "update_lead":
                entry["leadsUpdated"] += 1

        summary = {
            "date": yesterday.date().isoformat(),
            "userActivity": per_user,
            "totalActions": len(logs),
            "activeUsers": len(per_user),
        }
        self._client.collection(Collections.DAILY_SUMMARIES).add(
            {**summary, "timestamp": firestore.SERVER_TIMESTAMP}, timeout=self._timeout)
        logger.info("Daily activity summary generated for %s", summary["date"])
        return summary

    def clean_old_logs(self, limit: int = 500) -> int:
        cutoff = self._now() - LOG_RETENTION
        query = (
            self._client.collection(Collections.ACTIVITY_LOGS)
            .where(filter=FieldFilter("timestamp", "<", cutoff))
            .limit(limit)
        )
        deleted = self._delete_all([snap.reference for snap in query.stream(timeout=self._timeout)])
        logger.info("Cleaned %d old activity logs", deleted)
        return deleted

    # ------------------------------------------------------------------
    # security audit
    # ------------------------------------------------------------------
    def scan_activity_log(self, log: dict[str, Any]) -> list[str]:
        """Raise alerts for one activity record. Returns the new alert ids."""
        alerts = []
        if self._is_suspicious(log):
            alerts.append(self._alert(log.get("userId"), log.get("action"), log.get("details"), "medium"))

        since = self._now() - RAPID_ACTION_WINDOW
        recent = (
            self._client.collection(Collections.ACTIVITY_LOGS)
            .where(filter=FieldFilter("userId", "==", log.get("userId")))
            .where(filter=FieldFilter("timestamp", ">", since))
        )
        count = sum(1 for _ in recent.stream(timeout=self._timeout))
        if count > RAPID_ACTION_THRESHOLD:
            alerts.append(self._rapid_alert(log.get("userId"), count))
        return alerts

    def security_scan(self) -> int:
        """Scan the last minute of activity; one rapid-action alert per user at most."""
        since = self._now() - RAPID_ACTION_WINDOW
        query = self._client.collection(Collections.ACTIVITY_LOGS).where(
            filter=FieldFilter("timestamp", ">", since))
        logs = [s.to_dict() or {} for s in query.stream(timeout=self._timeout)]

        raised = 0
        for log in logs:
            if self._is_suspicious(log):
                self._alert(log.get("userId"), log.get("action"), log.get("details"), "medium")
                raised += 1
        for uid, count in Counter(log.get("userId") for log in logs).items():
            if count > RAPID_ACTION_THRESHOLD:
                self._rapid_alert(uid, count)
                raised += 1
        return raised

    # ------------------------------------------------------------------
    # lead audit
    # ------------------------------------------------------------------
    def validate_lead_document(self, lead_id: str, data: dict[str, Any]) -> dict[str, str]:
        """Check a stored lead against the lead rules; failures land in `validation_errors`."""
        checked = {k: v for k, v in data.items() if k in LEAD_SCHEMA}
        result = self._sanitizer.validate_form_data(checked, LEAD_SCHEMA)
        if result.errors:
            self._client.collection(Collections.VALIDATION_ERRORS).add({
                "collection": Collections.LEADS,
                "documentId": lead_id,
                "errors": [f"{field}: {message}" for field, message in sorted(result.errors.items())],
                "timestamp": firestore.SERVER_TIMESTAMP,
                "data": data,
            }, timeout=self._timeout)
            logger.warning("Validation errors in lead %s: %s", lead_id, result.errors)
        return result.errors

    def validate_leads(self) -> int:
        invalid = 0
        for snap in self._client.collection(Collections.LEADS).stream(timeout=self._timeout):
            if self.validate_lead_document(snap.id, snap.to_dict() or {}):
                invalid += 1
        return invalid

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _is_suspicious(log: dict[str, Any]) -> bool:
        action = log.get("action") or ""
        return any(pattern in action for pattern in SUSPICIOUS_ACTIONS)

    def _alert(self, user_id, action, details, severity: str) -> str:
        _, ref = self._client.collection(Collections.SECURITY_ALERTS).add({
            "userId": user_id,
            "action": action,
            "details": details or {},
            "timestamp": firestore.SERVER_TIMESTAMP,
            "severity": severity,
            "status": "pending",
            "resolved": False,
        }, timeout=self._timeout)
        log = logger.error if severity == "high" else logger.warning
        log("Security alert (%s): %s by user %s", severity, action, user_id)
        return ref.id

    def _rapid_alert(self, user_id, count: int) -> str:
        return self._alert(user_id, "rapid_successive_actions",
                           {"actionCount": count, "timeWindow": "1 minute"}, "high")

    def _delete_all(self, refs: list) -> int:
        for start in range(0, len(refs), self._batch_size):
            batch = self._client.batch()
            for ref in refs[start:start + self._batch_size]:
                batch.delete(ref)
            batch.commit(timeout=self._timeout)
        return len(refs)
