"""
Input sanitization and validation applied before any write.

Each field type has a maximum length and, where applicable, a shape
constraint. Sanitization always runs before validation:

    trim -> truncate -> strip dangerous content -> type-specific cleaning

Enum ("select") fields outside their allow-list are coerced to an empty
string, which removes them from sanitized records instead of rejecting
the write. Callers that need strict enums must check `warnings`.
"""

from __future__ import annotations

import logging
import re
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable

logger = logging.getLogger(__name__)


class FieldType(str, Enum):
    NAME = "name"
    EMAIL = "email"
    PHONE = "phone"
    TEXT = "text"
    MULTILINE = "multiline"
    NUMBER = "number"
    SELECT = "select"
    ID = "id"


MAX_LENGTHS: dict[FieldType, int] = {
    FieldType.NAME: 100,
    FieldType.EMAIL: 254,
    FieldType.PHONE: 20,
    FieldType.TEXT: 255,
    FieldType.MULTILINE: 1000,
    FieldType.NUMBER: 32,
    FieldType.SELECT: 100,
    FieldType.ID: 128,
}

PATTERNS: dict[FieldType, re.Pattern] = {
    FieldType.NAME: re.compile(r"^[A-Za-z\s.\-']{1,100}$"),
    FieldType.EMAIL: re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$"),
    FieldType.PHONE: re.compile(r"^\+?[\d\s\-()]{7,20}$"),
    FieldType.ID: re.compile(r"^[A-Za-z0-9_-]{1,128}$"),
}

# Markup is removed but the text between tags survives, so
# "<script>alert(1)</script>John" keeps "alert(1)John" for the type rules.
SECURITY_PATTERNS: list[re.Pattern] = [
    re.compile(r"<!--.*?-->", re.S),
    re.compile(r"</?[a-zA-Z][^>]*>"),
    re.compile(r"javascript:", re.I),
    re.compile(r"vbscript:", re.I),
    re.compile(r"data:text/html", re.I),
    re.compile(r"\bon\w+\s*=", re.I),
    re.compile(r"eval\s*\(", re.I),
    re.compile(r"expression\s*\(", re.I),
]

LEAD_OPTIONS: dict[str, list[str]] = {
    "status": ["newLead", "contacted", "interested", "followup", "visit",
               "booked", "closed", "notinterested", "dropped"],
    "source": ["website", "facebook", "instagram", "google", "referral",
               "walk-in", "cold-call", "other"],
    "propertyType": ["apartment", "villa", "house", "plot", "commercial",
                     "office", "warehouse", "other"],
    "budget": ["under-50L", "50L-1Cr", "1Cr-2Cr", "2Cr-5Cr", "above-5Cr"],
    "priority": ["high", "medium", "low"],
}

USER_OPTIONS: dict[str, list[str]] = {
    "role": ["admin", "master", "user"],
    "status": ["active", "inactive"],
}

DISPOSABLE_DOMAINS = {
    "10minutemail.com", "tempmail.org", "guerrillamail.com",
    "mailinator.com", "trashmail.com", "yopmail.com",
}


@dataclass(frozen=True)
class FieldRule:
    type: FieldType = FieldType.TEXT
    required: bool = False
    valid_values: tuple[str, ...] = ()


def _select(values: Iterable[str]) -> FieldRule:
    return FieldRule(FieldType.SELECT, valid_values=tuple(values))


LEAD_SCHEMA: dict[str, FieldRule] = {
    "name": FieldRule(FieldType.NAME, required=True),
    "phone": FieldRule(FieldType.PHONE, required=True),
    "email": FieldRule(FieldType.EMAIL),
    "altPhone": FieldRule(FieldType.PHONE),
    "status": _select(LEAD_OPTIONS["status"]),
    "source": _select(LEAD_OPTIONS["source"]),
    "propertyType": _select(LEAD_OPTIONS["propertyType"]),
    "budget": _select(LEAD_OPTIONS["budget"]),
    "location": FieldRule(FieldType.TEXT),
    "requirements": FieldRule(FieldType.MULTILINE),
    "remarks": FieldRule(FieldType.MULTILINE),
    "assignedTo": FieldRule(FieldType.ID),
    "priority": _select(LEAD_OPTIONS["priority"]),
}

USER_SCHEMA: dict[str, FieldRule] = {
    "name": FieldRule(FieldType.NAME, required=True),
    "email": FieldRule(FieldType.EMAIL, required=True),
    "role": _select(USER_OPTIONS["role"]),
    "status": _select(USER_OPTIONS["status"]),
    "linkedMaster": FieldRule(FieldType.ID),
}


@dataclass
class ValidationResult:
    valid: bool
    message: str = ""
    code: str = "VALID"
    warning: str | None = None


@dataclass
class FormValidationResult:
    is_valid: bool
    errors: dict[str, str] = field(default_factory=dict)
    warnings: list[dict[str, str]] = field(default_factory=list)
    sanitized_data: dict[str, Any] = field(default_factory=dict)

    @property
    def summary(self) -> dict[str, int]:
        return {
            "valid_fields": len(self.sanitized_data),
            "error_count": len(self.errors),
            "warning_count": len(self.warnings),
        }


def _is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


class DataSanitizer:
    """Field-level cleaning and rule validation."""

    def __init__(self, security_log_size: int = 100):
        self._security_log: deque[dict] = deque(maxlen=security_log_size)

    # ------------------------------------------------------------------
    # sanitize
    # ------------------------------------------------------------------
    def sanitize(
        self,
        value: Any,
        field_type: FieldType | str = FieldType.TEXT,
        *,
        valid_values: Iterable[str] | None = None,
        max_length: int | None = None,
    ) -> Any:
        """Return the cleaned value for `field_type`.

        Numbers come back as int/float (0 when unparseable); every other
        type returns a string. `None` becomes "".
        """
        ftype = FieldType(field_type)
        if value is None:
            return 0 if ftype is FieldType.NUMBER else ""
        if ftype is FieldType.NUMBER:
            return self._sanitize_number(value)

        limit = max_length or MAX_LENGTHS[ftype]
        text = str(value).strip()
        if len(text) > limit:
            self._log_security_event("length_truncation", type=ftype.value,
                                     original_length=len(text), truncated_length=limit)
            text = text[:limit]

        if self.contains_dangerous_content(text):
            self._log_security_event("dangerous_content_detected", type=ftype.value,
                                     content=text[:100])
            text = self.remove_dangerous_content(text)

        cleaner = _CLEANERS[ftype]
        cleaned = cleaner(text)[:limit]
        if ftype is FieldType.SELECT:
            allowed = list(valid_values or [])
            if allowed and cleaned not in allowed:
                self._log_security_event("enum_value_dropped", value=cleaned[:100])
                return ""
        return cleaned

    def sanitize_generic(self, data: dict[str, Any]) -> dict[str, Any]:
        """Text-sanitize string values, recursing into nested maps and lists."""
        return {key: self._sanitize_any(value) for key, value in data.items()}

    def _sanitize_any(self, value: Any) -> Any:
        if isinstance(value, str):
            return self.sanitize(value, FieldType.TEXT, max_length=1000)
        if isinstance(value, dict):
            return self.sanitize_generic(value)
        if isinstance(value, list):
            return [self._sanitize_any(v) for v in value]
        return value

    # ------------------------------------------------------------------
    # validate
    # ------------------------------------------------------------------
    def validate(
        self,
        value: Any,
        field_type: FieldType | str = FieldType.TEXT,
        required: bool = False,
        *,
        valid_values: Iterable[str] | None = None,
    ) -> ValidationResult:
        ftype = FieldType(field_type)

        if ftype is FieldType.NUMBER:
            return self._validate_number(value, required)

        if _is_empty(value):
            if required:
                return ValidationResult(False, "This field is required", "REQUIRED_FIELD_EMPTY")
            return ValidationResult(True, code="VALID_EMPTY")

        sanitized = self.sanitize(value, ftype, valid_values=valid_values)
        if sanitized == "":
            if ftype is FieldType.SELECT:
                # Silent coercion: an unknown enum value is dropped, not rejected.
                if required:
                    return ValidationResult(False, "Please select a valid option", "INVALID_SELECT_VALUE")
                return ValidationResult(True, code="VALID_EMPTY",
                                        warning=f"Value '{str(value)[:50]}' is not an allowed option and was dropped")
            if required:
                return ValidationResult(False, "This field is required", "REQUIRED_FIELD_EMPTY")
            return ValidationResult(True, code="VALID_EMPTY")

        validator = _VALIDATORS.get(ftype)
        if validator is None:
            return ValidationResult(True)
        return validator(sanitized)

    def validate_form_data(
        self,
        data: dict[str, Any],
        schema: dict[str, FieldRule] | None = None,
        *,
        partial: bool = False,
    ) -> FormValidationResult:
        """Validate and sanitize a whole record.

        Fields without a rule are treated as optional text when they are
        strings and passed through otherwise. Unless `partial`, required
        fields absent from `data` are reported as errors.
        """
        schema = schema or {}
        result = FormValidationResult(is_valid=True)

        if not partial:
            for name, rule in schema.items():
                if rule.required and name not in data:
                    result.errors[name] = "This field is required"

        for name, value in data.items():
            rule = schema.get(name)
            if rule is None:
                if isinstance(value, str):
                    rule = FieldRule(FieldType.TEXT)
                else:
                    result.sanitized_data[name] = self._sanitize_any(value)
                    continue

            check = self.validate(value, rule.type, rule.required, valid_values=rule.valid_values)
            if not check.valid:
                result.errors[name] = check.message
                continue
            result.sanitized_data[name] = self.sanitize(value, rule.type, valid_values=rule.valid_values)
            if check.warning:
                result.warnings.append({"field": name, "message": check.warning})

        result.is_valid = not result.errors
        return result

    def sanitize_lead_data(self, data: dict[str, Any], *, partial: bool = False) -> FormValidationResult:
        result = self.validate_form_data(data, LEAD_SCHEMA, partial=partial)
        # empty strings never reach storage
        result.sanitized_data = {k: v for k, v in result.sanitized_data.items() if v != ""}
        return result

    def sanitize_user_data(self, data: dict[str, Any], *, partial: bool = False) -> FormValidationResult:
        result = self.validate_form_data(data, USER_SCHEMA, partial=partial)
        result.sanitized_data = {k: v for k, v in result.sanitized_data.items() if v != ""}
        return result

    # ------------------------------------------------------------------
    # security helpers
    # ------------------------------------------------------------------
    @staticmethod
    def contains_dangerous_content(text: str) -> bool:
        return any(p.search(text) for p in SECURITY_PATTERNS)

    @staticmethod
    def remove_dangerous_content(text: str) -> str:
        for pattern in SECURITY_PATTERNS:
            text = pattern.sub("", text)
        return text

    @staticmethod
    def is_disposable_email(email: str) -> bool:
        return email.rsplit("@", 1)[-1].lower() in DISPOSABLE_DOMAINS

    def get_security_log(self) -> list[dict]:
        return list(self._security_log)

    def _log_security_event(self, event_type: str, **details: Any) -> None:
        event = {
            "type": event_type,
            "details": details,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        self._security_log.append(event)
        logger.warning("Sanitizer event %s: %s", event_type, details)

    def _sanitize_number(self, value: Any) -> int | float:
        if isinstance(value, bool):
            return int(value)
        if isinstance(value, (int, float)):
            return value
        try:
            num = float(str(value).strip())
        except ValueError:
            return 0
        if num != num:  # NaN
            return 0
        return int(num) if num.is_integer() else num

    def _validate_number(self, value: Any, required: bool) -> ValidationResult:
        if _is_empty(value):
            if required:
                return ValidationResult(False, "This field is required", "REQUIRED_FIELD_EMPTY")
            return ValidationResult(True, code="VALID_EMPTY")
        if isinstance(value, bool):
            return ValidationResult(False, "Please enter a valid number", "INVALID_NUMBER")
        try:
            num = float(str(value).strip())
        except ValueError:
            return ValidationResult(False, "Please enter a valid number", "INVALID_NUMBER")
        if num != num:
            return ValidationResult(False, "Please enter a valid number", "INVALID_NUMBER")
        return ValidationResult(True)


def _clean_name(text: str) -> str:
    text = re.sub(r"[<>\"&]", "", text)
    text = re.sub(r"\s+", " ", text)
    return re.sub(r"[^A-Za-z\s.\-']", "", text).strip()


def _clean_email(text: str) -> str:
    return re.sub(r"[<>\"'&\s]", "", text.lower())


def _clean_phone(text: str) -> str:
    return re.sub(r"[^\d+\-\s()]", "", text).strip()


def _clean_text(text: str) -> str:
    return re.sub(r"[<>]", "", text)


def _clean_multiline(text: str) -> str:
    return _clean_text(text).replace("\r\n", "\n")


def _clean_id(text: str) -> str:
    return re.sub(r"[^A-Za-z0-9_-]", "", text)


_CLEANERS = {
    FieldType.NAME: _clean_name,
    FieldType.EMAIL: _clean_email,
    FieldType.PHONE: _clean_phone,
    FieldType.TEXT: _clean_text,
    FieldType.MULTILINE: _clean_multiline,
    FieldType.SELECT: _clean_text,
    FieldType.ID: _clean_id,
}


def _validate_name(name: str) -> ValidationResult:
    if len(name) < 2:
        return ValidationResult(False, "Name must be at least 2 characters", "NAME_TOO_SHORT")
    if not PATTERNS[FieldType.NAME].match(name):
        return ValidationResult(False, "Name contains invalid characters", "INVALID_NAME_CHARACTERS")
    return ValidationResult(True)


def _validate_email(email: str) -> ValidationResult:
    if not PATTERNS[FieldType.EMAIL].match(email):
        return ValidationResult(False, "Please enter a valid email address", "INVALID_EMAIL_FORMAT")
    return ValidationResult(True)


def _validate_phone(phone: str) -> ValidationResult:
    if len(phone) < 7:
        return ValidationResult(False, "Phone number must be at least 7 digits", "PHONE_TOO_SHORT")
    if not PATTERNS[FieldType.PHONE].match(phone):
        return ValidationResult(False, "Please enter a valid phone number", "INVALID_PHONE_FORMAT")
    return ValidationResult(True)


def _validate_id(value: str) -> ValidationResult:
    if not PATTERNS[FieldType.ID].match(value):
        return ValidationResult(False, "Invalid identifier", "INVALID_ID")
    return ValidationResult(True)


_VALIDATORS = {
    FieldType.NAME: _validate_name,
    FieldType.EMAIL: _validate_email,
    FieldType.PHONE: _validate_phone,
    FieldType.ID: _validate_id,
}
