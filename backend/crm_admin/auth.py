from __future__ import annotations

import logging

import firebase_admin
from firebase_admin import auth

from .errors import NotFoundError, PermissionDeniedError, UnauthenticatedError
from .firestore import Collections
from .manager import FirestoreManager
from .query import QueryOptions
from .schemas import User

logger = logging.getLogger(__name__)

ROLES = {"admin", "master", "user"}

_app = None


def init_firebase():
    global _app
    if _app:
        return
    firebase_admin.initialize_app()
    _app = True


def verify_token(authorization: str | None) -> dict:
    """Decode a `Bearer <Firebase ID token>` header."""
    init_firebase()
    if not authorization or not authorization.startswith("Bearer "):
        raise UnauthenticatedError("Missing bearer token")

    token = authorization.split(" ", 1)[1].strip()
    try:
        return auth.verify_id_token(token)
    except Exception as exc:
        logger.info("Rejected ID token: %s", exc)
        raise UnauthenticatedError("Invalid token") from exc


def load_user(manager: FirestoreManager, decoded: dict) -> User:
    """Resolve the caller's profile; role and status come from `users/{uid}`."""
    uid = decoded.get("uid")
    if not uid:
        raise UnauthenticatedError("Invalid token")

    profile = manager.get(Collections.USERS, uid, QueryOptions(cache=False))
    if profile is None:
        raise NotFoundError("User profile not found", collection=Collections.USERS, doc_id=uid)
    if profile.get("status") == "inactive":
        raise PermissionDeniedError("Account is inactive", actor=uid)

    return User(
        uid=uid,
        email=profile.get("email") or decoded.get("email"),
        name=profile.get("name"),
        role=profile.get("role") if profile.get("role") in ROLES else "user",
        status=profile.get("status", "active"),
    )


def require_role(user: User, *roles: str) -> User:
    if user.role not in roles:
        raise PermissionDeniedError("Insufficient permissions", actor=user.uid)
    return user
