from __future__ import annotations

import json
import logging
import secrets
import time
from pathlib import Path
from typing import Callable, Optional

from pydantic import BaseModel, ValidationError as PydanticValidationError

logger = logging.getLogger(__name__)

STORAGE_KEY = "crm_session"


class SessionRecord(BaseModel):
    sessionId: str
    userId: str
    startTime: float
    lastActivity: float


class SessionManager:
    """Single local session persisted as JSON under `crm_session`.

    Times are in seconds from `clock`. A session idle for longer than
    `timeout` is destroyed the next time it is validated.
    """

    def __init__(
        self,
        path: str | Path,
        timeout: float = 30 * 60,
        refresh_threshold: float = 5 * 60,
        clock: Callable[[], float] = time.time,
    ):
        self.path = Path(path)
        self.timeout = timeout
        self.refresh_threshold = refresh_threshold
        self._clock = clock

    @property
    def session_id(self) -> Optional[str]:
        record = self._load()
        return record.sessionId if record else None

    def create_session(self, user_id: str) -> SessionRecord:
        now = self._clock()
        record = SessionRecord(
            sessionId=secrets.token_hex(16),
            userId=user_id,
            startTime=now,
            lastActivity=now,
        )
        self._save(record)
        logger.info("Session %s created for %s", record.sessionId, user_id)
        return record

    def validate_session(self) -> Optional[SessionRecord]:
        record = self._load()
        if record is None:
            return None
        now = self._clock()
        idle = now - record.lastActivity
        if idle > self.timeout:
            logger.warning("Session %s expired after %.0fs idle", record.sessionId, idle)
            self.destroy_session()
            return None
        record.lastActivity = now
        self._save(record)
        return record

    def ensure_session(self, user_id: str) -> SessionRecord:
        """Keep the live session for `user_id`, starting a new one if it expired or belongs to someone else."""
        record = self.validate_session()
        if record is None or record.userId != user_id:
            return self.create_session(user_id)
        return record

    def refresh_activity(self) -> None:
        record = self._load()
        if record is not None:
            record.lastActivity = self._clock()
            self._save(record)

    def destroy_session(self) -> None:
        record = self._load()
        if record is not None:
            logger.info("Session %s destroyed after %.0fs",
                        record.sessionId, self._clock() - record.startTime)
        try:
            data = self._read_file()
            if STORAGE_KEY in data:
                del data[STORAGE_KEY]
                self._write_file(data)
        except OSError as exc:
            logger.error("Error destroying session: %s", exc)

    def time_until_expiry(self) -> float:
        record = self._load()
        if record is None:
            return 0.0
        return max(0.0, self.timeout - (self._clock() - record.lastActivity))

    def is_close_to_expiry(self) -> bool:
        return self.time_until_expiry() < self.refresh_threshold

    def _load(self) -> Optional[SessionRecord]:
        raw = self._read_file().get(STORAGE_KEY)
        if raw is None:
            return None
        try:
            return SessionRecord.model_validate(raw)
        except PydanticValidationError:
            logger.warning("Discarding malformed session record in %s", self.path)
            return None

    def _save(self, record: SessionRecord) -> None:
        data = self._read_file()
        data[STORAGE_KEY] = record.model_dump()
        self._write_file(data)

    def _read_file(self) -> dict:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as exc:
            logger.warning("Unreadable session file %s: %s", self.path, exc)
            return {}
        return data if isinstance(data, dict) else {}

    def _write_file(self, data: dict) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(data), encoding="utf-8")
