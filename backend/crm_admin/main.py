from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Callable

from fastapi import Depends, FastAPI, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from firebase_admin import auth as firebase_auth

from .auth import init_firebase, load_user, require_role, verify_token
from .errors import CrmError, NotFoundError
from .firestore import Collections
from .schemas import (
    ActivityResponse,
    ExportFormat,
    HealthResponse,
    JobResult,
    LeadCreated,
    LeadIn,
    LeadsResponse,
    LeadUpdate,
    OkResponse,
    RateLimitRequest,
    RateLimitResponse,
    User,
    UserCreate,
    UserCreated,
    UserStats,
)
from .services import CrmServices, build_services
from .settings import get_settings
from .utils import _content_disposition

from prometheus_fastapi_instrumentator import Instrumentator

__version__ = "1.0.0"

logger = logging.getLogger(__name__)

EXPORTABLE = {
    Collections.LEADS,
    Collections.USERS,
    Collections.ACTIVITY_LOGS,
    Collections.SECURITY_ALERTS,
}


def configure_logging(level: str | None = None) -> None:
    logging.basicConfig(
        level=(level or get_settings().log_level).upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


@lru_cache
def _default_services() -> CrmServices:
    return build_services(get_settings())


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    yield
    if _default_services.cache_info().currsize:
        _default_services().close()


# =========================
# App
# =========================
app = FastAPI(title="CRM Admin API", version=__version__, lifespan=lifespan)

Instrumentator().instrument(app).expose(app, endpoint="/metrics")

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origin_list(),
    allow_credentials=False,
    allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type"],
)


@app.exception_handler(CrmError)
async def crm_error_handler(request: Request, exc: CrmError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": exc.code, "details": exc.details},
    )


# =========================
# Dependency providers
# =========================
def get_services() -> CrmServices:
    return _default_services()


def get_auth() -> Callable[[str | None], dict]:
    # token validator callable (in prod: Firebase)
    return verify_token


def get_identity():
    # account admin used for creating users (in prod: firebase_admin.auth)
    init_firebase()
    return firebase_auth


def get_current_user(
    authorization: str | None = Header(default=None),
    auth_fn: Callable[[str | None], dict] = Depends(get_auth),
    services: CrmServices = Depends(get_services),
) -> User:
    decoded = auth_fn(authorization)
    user = load_user(services.manager, decoded)
    # activity records are stamped with this session id
    services.session.ensure_session(user.uid)
    return user


def get_admin(user: User = Depends(get_current_user)) -> User:
    return require_role(user, "admin")


# =========================
# Routes
# =========================
@app.get("/healthz", response_model=HealthResponse)
def healthz():
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": __version__,
        "services": {"firestore": "connected", "auth": "active", "api": "running"},
    }


@app.get("/api/leads", response_model=LeadsResponse)
def list_leads(
    user: User = Depends(get_current_user),
    services: CrmServices = Depends(get_services),
):
    return {"items": services.operations.get_leads_for_user(user.uid, user.role)}


@app.post("/api/leads", response_model=LeadCreated)
def create_lead(
    body: LeadIn,
    user: User = Depends(get_current_user),
    services: CrmServices = Depends(get_services),
):
    lead_id = services.operations.create_lead(user, body.model_dump(exclude_none=True))
    return {"lead_id": lead_id}


@app.patch("/api/leads/{lead_id}", response_model=OkResponse)
def update_lead(
    lead_id: str,
    body: LeadUpdate,
    user: User = Depends(get_current_user),
    services: CrmServices = Depends(get_services),
):
    services.operations.update_lead(user, lead_id, body.updates, body.expected_version)
    return {"ok": True, "message": "Lead updated successfully"}


@app.delete("/api/leads/{lead_id}", response_model=OkResponse)
def delete_lead(
    lead_id: str,
    user: User = Depends(get_current_user),
    services: CrmServices = Depends(get_services),
):
    services.operations.delete_lead(user, lead_id)
    return {"ok": True, "message": "Lead deleted successfully"}


@app.get("/api/stats", response_model=UserStats)
def user_stats(
    user: User = Depends(get_current_user),
    services: CrmServices = Depends(get_services),
):
    return services.operations.get_user_stats(user)


@app.get("/api/activity", response_model=ActivityResponse)
def recent_activity(
    limit: int = 10,
    user: User = Depends(get_current_user),
    services: CrmServices = Depends(get_services),
):
    return services.operations.get_recent_activity(user, limit)


@app.post("/api/users", response_model=UserCreated)
def create_user(
    body: UserCreate,
    admin: User = Depends(get_admin),
    services: CrmServices = Depends(get_services),
    identity=Depends(get_identity),
):
    uid = services.operations.create_user_profile(admin, body.model_dump(exclude_none=True), identity)
    return {"user_id": uid}


@app.post("/api/rate-limit", response_model=RateLimitResponse)
def check_rate_limit(
    body: RateLimitRequest,
    user: User = Depends(get_current_user),
    services: CrmServices = Depends(get_services),
):
    result = services.rate_limiter.check(user.uid, body.operation, body.max_attempts, body.window_seconds)
    return {"allowed": result.allowed, "remaining_attempts": result.remaining_attempts}


@app.get("/api/users/{user_id}/export")
def export_user(
    user_id: str,
    admin: User = Depends(get_admin),
    services: CrmServices = Depends(get_services),
) -> dict[str, Any]:
    return {"success": True, "data": services.operations.export_user_data(admin, user_id)}


@app.get("/api/export/{collection}")
def export_collection(
    collection: str,
    format: ExportFormat = "json",
    admin: User = Depends(get_admin),
    services: CrmServices = Depends(get_services),
):
    if collection not in EXPORTABLE:
        raise NotFoundError(f"Collection not exportable: {collection}", collection=collection)

    result = services.operations.export_data(collection, format, actor=admin)
    headers = {
        "Content-Disposition": _content_disposition(result.filename),
        "X-Content-Type-Options": "nosniff",
    }
    return Response(content=result.data, media_type=result.media_type, headers=headers)


@app.post("/api/maintenance/{job}", response_model=JobResult)
def run_job(
    job: str,
    admin: User = Depends(get_admin),
    services: CrmServices = Depends(get_services),
):
    return {"job": job, "result": services.maintenance.run(job)}


@app.get("/api/admin/status")
def admin_status(
    admin: User = Depends(get_admin),
    services: CrmServices = Depends(get_services),
):
    return services.status()
