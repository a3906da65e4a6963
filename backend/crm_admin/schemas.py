from pydantic import BaseModel, Field
from typing import Any, Literal, Optional

Role = Literal["admin", "master", "user"]
ExportFormat = Literal["json", "csv"]


class User(BaseModel):
    uid: str
    email: Optional[str] = None
    name: Optional[str] = None
    role: Role = "user"
    status: str = "active"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


class LeadIn(BaseModel):
    name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    altPhone: Optional[str] = None
    status: Optional[str] = None
    source: Optional[str] = None
    propertyType: Optional[str] = None
    budget: Optional[str] = None
    location: Optional[str] = None
    requirements: Optional[str] = None
    remarks: Optional[str] = None
    assignedTo: Optional[str] = None
    priority: Optional[str] = None


class LeadUpdate(BaseModel):
    updates: dict[str, Any] = Field(default_factory=dict)
    expected_version: Optional[int] = None


class LeadCreated(BaseModel):
    success: bool = True
    lead_id: str
    message: str = "Lead created successfully"


class LeadsResponse(BaseModel):
    items: list[dict[str, Any]] = Field(default_factory=list)


class OkResponse(BaseModel):
    ok: bool = True
    message: Optional[str] = None


class UserStats(BaseModel):
    totalLeads: int = 0
    activeLeads: int = 0
    completedLeads: int = 0
    newLeadsToday: int = 0
    conversionRate: int = 0
    totalUsers: int = 0
    role: Role = "user"


class ActivityResponse(BaseModel):
    activities: list[dict[str, Any]] = Field(default_factory=list)
    role: Role = "user"


class UserCreate(BaseModel):
    email: str
    name: str
    role: Role
    password: Optional[str] = None
    linkedMaster: Optional[str] = None


class UserCreated(BaseModel):
    success: bool = True
    user_id: str
    message: str = "User created successfully"


class RateLimitRequest(BaseModel):
    operation: str
    max_attempts: int = Field(default=5, ge=1)
    window_seconds: float = Field(default=60, gt=0)


class RateLimitResponse(BaseModel):
    allowed: bool = True
    remaining_attempts: int


class JobResult(BaseModel):
    job: str
    result: Any = None


class HealthResponse(BaseModel):
    status: str = "healthy"
    timestamp: str
    version: str
    services: dict[str, str] = Field(default_factory=dict)
