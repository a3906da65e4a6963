"""
Role-aware business operations for leads, users, alerts, backups and exports.

All reads and writes go through FirestoreManager, so they share its cache,
validation and retry behavior. Access rules come from PermissionSystem.
"""

from __future__ import annotations

import json
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from .activity import ActivityLogger
from .cache import canonical_json
from .errors import NotFoundError, PermissionDeniedError, ValidationError
from .firestore import Collections
from .manager import FirestoreManager
from .permissions import PermissionSystem, Role
from .query import IN_QUERY_LIMIT, Filter, FilterOperator, OrderBy, QueryOptions, WriteOptions, chunked
from .schemas import User
from .utils import as_datetime, to_csv

logger = logging.getLogger(__name__)

ACTIVE_EXCLUDED = {"closed", "dropped"}
COMPLETED = {"closed", "booked"}
MAX_ACTIVITY_LIMIT = 50
USER_EXPORT_ACTIVITY_LIMIT = 1000


@dataclass
class ExportResult:
    data: str
    filename: str
    media_type: str


def _created_desc(lead: dict):
    created = as_datetime(lead.get("createdAt"))
    return (created is not None, created)


class DatabaseOperations:
    def __init__(
        self,
        manager: FirestoreManager,
        activity: ActivityLogger,
        permissions: Optional[PermissionSystem] = None,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.manager = manager
        self.activity = activity
        self.permissions = permissions or PermissionSystem()
        self._now = now

    # ------------------------------------------------------------------
    # leads
    # ------------------------------------------------------------------
    def get_leads_for_user(self, user_id: str, role: str = Role.USER.value) -> list[dict]:
        order = [OrderBy(field="createdAt", direction="desc")]
        if role == Role.ADMIN.value:
            return self.manager.get(Collections.LEADS, None, QueryOptions(order_by=order))
        if role != Role.MASTER.value:
            return self.manager.get(Collections.LEADS, None, QueryOptions(
                filters=[Filter(field="assignedTo", operator=FilterOperator.EQ, value=user_id)],
                order_by=order,
            ))

        team_ids = [user_id, *self.get_team_user_ids(user_id)]
        leads: list[dict] = []
        for chunk in chunked(team_ids):
            leads.extend(self.manager.get(Collections.LEADS, None, QueryOptions(
                filters=[Filter(field="assignedTo", operator=FilterOperator.IN, value=chunk)],
                order_by=order,
            )))
        if len(team_ids) > IN_QUERY_LIMIT:
            leads.sort(key=_created_desc, reverse=True)
        return leads

    def get_team_members(self, master_id: str) -> list[dict]:
        return self.manager.get(Collections.USERS, None, QueryOptions(
            filters=[Filter(field="linkedMaster", operator=FilterOperator.EQ, value=master_id)],
        ))

    def get_team_user_ids(self, master_id: str) -> list[str]:
        try:
            return [member["id"] for member in self.get_team_members(master_id)]
        except Exception as exc:
            logger.error("Error getting team user ids for %s: %s", master_id, exc)
            return []

    def create_lead(self, user: User, data: dict[str, Any]) -> str:
        sanitized = self.manager.validate_and_sanitize(Collections.LEADS, data, partial=False)
        lead = {
            "status": "newLead",
            "priority": "medium",
            "assignedTo": user.uid,
            **sanitized,
        }
        lead_id = self.manager.create(Collections.LEADS, lead, actor=user.uid)
        self.activity.log_activity("create_lead", {
            "leadId": lead_id,
            "leadName": lead.get("name"),
            "leadPhone": lead.get("phone"),
        }, user_id=user.uid, user_role=user.role)
        return lead_id

    def update_lead(
        self,
        user: User,
        lead_id: str,
        updates: dict[str, Any],
        expected_version: Optional[int] = None,
    ) -> bool:
        lead = self._require_lead(lead_id)
        team_ids = self.get_team_user_ids(user.uid) if user.role == Role.MASTER.value else ()
        if not self.permissions.can_access_lead(user.role, user.uid, lead, team_ids):
            raise PermissionDeniedError("Not authorized to edit this lead", actor=user.uid)

        self.manager.update(
            Collections.LEADS, lead_id, updates,
            WriteOptions(expected_version=expected_version), actor=user.uid,
        )
        self.activity.log_activity("update_lead", {"leadId": lead_id, "changes": sorted(updates)},
                                   user_id=user.uid, user_role=user.role)
        return True

    def delete_lead(self, user: User, lead_id: str) -> bool:
        lead = self._require_lead(lead_id)
        if not self.permissions.can_delete_lead(user.role, user.uid, lead):
            raise PermissionDeniedError("Not authorized to delete this lead", actor=user.uid)

        self.manager.delete(Collections.LEADS, lead_id, actor=user.uid)
        self.activity.log_activity("delete_lead", {
            "leadId": lead_id,
            "leadName": lead.get("name"),
            "leadPhone": lead.get("phone"),
        }, user_id=user.uid, user_role=user.role)
        return True

    # ------------------------------------------------------------------
    # stats / activity
    # ------------------------------------------------------------------
    def get_user_stats(self, user: User) -> dict[str, Any]:
        leads = self.get_leads_for_user(user.uid, user.role)
        if user.role == Role.ADMIN.value:
            users = self.manager.get(Collections.USERS)
        elif user.role == Role.MASTER.value:
            users = self.get_team_members(user.uid)
        else:
            users = []

        today = self._now().astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
        statuses = [str(lead.get("status") or "").lower() for lead in leads]
        total = len(leads)
        booked = sum(1 for s in statuses if s in COMPLETED)
        new_today = 0
        for lead in leads:
            created = as_datetime(lead.get("createdAt"))
            if created is not None and created >= today:
                new_today += 1

        self.activity.log_activity("view_stats", user_id=user.uid, user_role=user.role)
        return {
            "totalLeads": total,
            "activeLeads": sum(1 for s in statuses if s not in ACTIVE_EXCLUDED),
            "completedLeads": booked,
            "newLeadsToday": new_today,
            "conversionRate": round(booked / total * 100) if total else 0,
            "totalUsers": len(users),
            "role": user.role,
        }

    def get_recent_activity(self, user: User, limit: Optional[int] = 10) -> dict[str, Any]:
        limit = min(limit or 10, MAX_ACTIVITY_LIMIT)
        if user.role == Role.ADMIN.value:
            user_ids = None
        elif user.role == Role.MASTER.value:
            user_ids = [user.uid, *self.get_team_user_ids(user.uid)]
        else:
            user_ids = [user.uid]

        activities = self.activity.get_recent_activities(limit, user_ids)
        for entry in activities:
            ts = as_datetime(entry.get("timestamp"))
            entry["timestamp"] = ts.isoformat() if ts else None
        return {"activities": activities, "role": user.role}

    # ------------------------------------------------------------------
    # users
    # ------------------------------------------------------------------
    def create_user_profile(self, actor: User, data: dict[str, Any], identity) -> str:
        """Create the auth account through `identity` (firebase_admin.auth) and its profile."""
        profile = self.manager.validate_and_sanitize(Collections.USERS, data, partial=False)
        if not all(profile.get(k) for k in ("email", "name", "role")):
            raise ValidationError("Email, name, and role are required",
                                  errors={"role": "This field is required"})

        record = identity.create_user(
            email=profile["email"],
            password=data.get("password") or secrets.token_urlsafe(12),
            display_name=profile["name"],
        )
        user_doc = {
            "name": profile["name"],
            "email": profile["email"],
            "role": profile["role"],
            "linkedMaster": profile.get("linkedMaster"),
            "status": "active",
        }
        self.manager.create(Collections.USERS, user_doc, WriteOptions(doc_id=record.uid), actor=actor.uid)
        self.activity.log_activity("create_user", {
            "newUserId": record.uid,
            "newUserEmail": profile["email"],
            "newUserRole": profile["role"],
        }, user_id=actor.uid, user_role=actor.role)
        return record.uid

    def export_user_data(self, actor: User, target_user_id: str) -> dict[str, Any]:
        profile = self.manager.get(Collections.USERS, target_user_id, QueryOptions(cache=False))
        if profile is None:
            raise NotFoundError("User not found", collection=Collections.USERS, doc_id=target_user_id)

        leads = self.manager.get(Collections.LEADS, None, QueryOptions(
            filters=[Filter(field="createdBy", operator=FilterOperator.EQ, value=target_user_id)],
            cache=False,
        ))
        activity_logs = self.manager.get(Collections.ACTIVITY_LOGS, None, QueryOptions(
            filters=[Filter(field="userId", operator=FilterOperator.EQ, value=target_user_id)],
            order_by=[OrderBy(field="timestamp", direction="desc")],
            limit=USER_EXPORT_ACTIVITY_LIMIT,
            cache=False,
        ))
        self.activity.log_activity("export_user_data", {"targetUserId": target_user_id},
                                   user_id=actor.uid, user_role=actor.role)
        return {
            "user": profile,
            "leads": leads,
            "activityLogs": activity_logs,
            "exportDate": self._now().isoformat(),
            "exportedBy": actor.uid,
        }

    # ------------------------------------------------------------------
    # security alerts
    # ------------------------------------------------------------------
    def create_security_alert(self, alert_type: str, severity: str, details: dict, user_id: str = "system") -> str:
        return self.manager.create(Collections.SECURITY_ALERTS, {
            "type": alert_type,
            "severity": severity,
            "details": details,
            "userId": user_id,
            "resolved": False,
            "status": "pending",
        }, actor=user_id)

    def get_security_alerts(self, severity: Optional[str] = None, limit: int = 50) -> list[dict]:
        filters = [Filter(field="resolved", value=False)]
        if severity:
            filters.append(Filter(field="severity", value=severity))
        return self.manager.get(Collections.SECURITY_ALERTS, None, QueryOptions(
            filters=filters,
            order_by=[OrderBy(field="createdAt", direction="desc")],
            limit=limit,
        ))

    # ------------------------------------------------------------------
    # backups / export
    # ------------------------------------------------------------------
    def create_backup(self, collection: str, description: str, actor: str = "system") -> str:
        data = self.manager.get(collection, None, QueryOptions(cache=False))
        return self.manager.create(Collections.BACKUPS, {
            "collection": collection,
            "description": description,
            "data": data,
            "timestamp": self._now().isoformat(),
            "size": len(canonical_json(data)),
        }, actor=actor)

    def get_recent_backups(self, limit: int = 10) -> list[dict]:
        return self.manager.get(Collections.BACKUPS, None, QueryOptions(
            order_by=[OrderBy(field="timestamp", direction="desc")],
            limit=limit,
        ))

    def export_data(
        self,
        collection: str,
        fmt: str = "json",
        options: Optional[QueryOptions] = None,
        actor: Optional[User] = None,
    ) -> ExportResult:
        data = self.manager.get(collection, None, options or QueryOptions(cache=False))
        if fmt == "csv":
            payload, media_type = to_csv(data), "text/csv"
        else:
            fmt = "json"
            payload, media_type = json.dumps(data, indent=2, default=str), "application/json"

        self.activity.log_activity("data_export", {
            "collection": collection,
            "format": fmt,
            "recordCount": len(data),
            "size": len(payload),
        }, user_id=actor.uid if actor else None, user_role=actor.role if actor else None)
        return ExportResult(
            data=payload,
            filename=f"{collection}_export_{self._now().date().isoformat()}.{fmt}",
            media_type=media_type,
        )

    def _require_lead(self, lead_id: str) -> dict:
        lead = self.manager.get(Collections.LEADS, lead_id, QueryOptions(cache=False))
        if lead is None:
            raise NotFoundError("Lead not found", collection=Collections.LEADS, doc_id=lead_id)
        return lead
