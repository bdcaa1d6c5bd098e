"""
Request validation — pydantic models for every JSON body the API accepts.

The ``validate_*`` helpers never raise:
they return a ``ValidationResult`` whose ``errors`` are ``"field: message"``
strings, ready to be returned as the ``details`` of a 400 response.

Also home to the small contact-field syntax checks shared by filtering,
verification, and scoring.
"""

import re
from dataclasses import dataclass, field
from typing import Annotated, Any, Generic, Literal, Optional, TypeVar
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

UUID_PATTERN = r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$"
UUID_RE = re.compile(UUID_PATTERN)
EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_RE = re.compile(r"^\+?[\d\s\-()]{10,}$")

ROLE_HIERARCHY = {"member": 1, "admin": 2, "owner": 3}

T = TypeVar("T", bound=BaseModel)

UUIDStr = Annotated[str, Field(pattern=UUID_PATTERN)]


# ──────────────────────────────────────────────
# Lead generation
# ──────────────────────────────────────────────

class LeadGenerationRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    business_type: str = Field(..., min_length=1, max_length=100)
    country: str = Field(..., min_length=1, max_length=50)
    state: str = Field(..., min_length=1, max_length=50)
    city: str = Field(..., min_length=1, max_length=50)
    leads_requested: int = Field(..., ge=1, le=500, strict=True)
    organization_id: str = Field(..., pattern=UUID_PATTERN)


# ──────────────────────────────────────────────
# Webhook (n8n lead updates)
# ──────────────────────────────────────────────

class WebhookLead(BaseModel):
    business_name: str
    email: Optional[str] = Field(None, pattern=r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
    phone: Optional[str] = None
    website: Optional[str] = Field(None, pattern=r"^https?://\S+$")
    confidence_score: Optional[float] = Field(None, ge=0, le=100)


class WebhookPayload(BaseModel):
    search_id: str = Field(..., pattern=UUID_PATTERN)
    status: Literal["processing", "completed", "failed"]
    leads: Optional[list[WebhookLead]] = None
    error_message: Optional[str] = None


# ──────────────────────────────────────────────
# Dashboard request bodies
# ──────────────────────────────────────────────

class OrganizationCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(..., min_length=1, max_length=100)


class LeadMetadataUpdate(BaseModel):
    leadId: str = Field(..., pattern=UUID_PATTERN)
    isFavorited: Optional[bool] = None
    note: Optional[str] = Field(None, max_length=5000)


class LeadFilters(BaseModel):
    minConfidenceScore: int = Field(0, ge=0, le=100)
    hasEmail: bool = False
    hasPhone: bool = False
    hasWebsite: bool = False
    industry: Optional[str] = None
    sortBy: Literal["confidence_score", "business_name", "created_at"] = "confidence_score"
    sortOrder: Literal["asc", "desc"] = "desc"


class SearchExportRequest(BaseModel):
    format: Literal["csv", "json", "xlsx"] = "csv"
    filters: LeadFilters = Field(default_factory=LeadFilters)


class TagCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    organization_id: str = Field(..., pattern=UUID_PATTERN)
    name: str = Field(..., min_length=1, max_length=50)
    color: str = Field("#3B82F6", pattern=r"^#[0-9A-Fa-f]{6}$")
    description: Optional[str] = Field(None, max_length=200)


class BulkActionRequest(BaseModel):
    organization_id: str = Field(..., pattern=UUID_PATTERN)
    action_type: Literal["tag", "export", "delete", "update_score", "verify"]
    lead_ids: list[UUIDStr] = Field(..., min_length=1, max_length=1000)
    action_data: dict = Field(default_factory=dict)


class CheckoutRequest(BaseModel):
    organization_id: str = Field(..., pattern=UUID_PATTERN)
    plan: str = Field(..., pattern=r"^(starter|growth|agency)$")


# ──────────────────────────────────────────────
# Advanced search, saved searches & alerts
# ──────────────────────────────────────────────

CompanySize = Literal["startup", "small", "medium", "large", "enterprise"]
AlertFrequency = Literal["daily", "weekly", "monthly"]
AlertType = Literal["new_leads", "threshold_reached", "scheduled"]


class AdvancedFilters(BaseModel):
    """Post-generation filters.  ``True`` requires the field; ``None``/``False`` don't care."""
    has_email: Optional[bool] = None
    has_phone: Optional[bool] = None
    has_website: Optional[bool] = None
    lead_score_min: Optional[int] = Field(None, ge=0, le=100)
    lead_score_max: Optional[int] = Field(None, ge=0, le=100)
    tags: list[str] = Field(default_factory=list, max_length=20)

    @model_validator(mode="after")
    def _score_range(self):
        if (
            self.lead_score_min is not None
            and self.lead_score_max is not None
            and self.lead_score_min > self.lead_score_max
        ):
            raise ValueError("lead_score_min must not exceed lead_score_max")
        return self


class AdvancedSearchRequest(LeadGenerationRequest):
    industry: Optional[str] = Field(None, min_length=1, max_length=100)
    company_size: Optional[CompanySize] = None
    location_radius: int = Field(0, ge=0, le=500)
    advanced_filters: AdvancedFilters = Field(default_factory=AdvancedFilters)
    save_search: bool = False
    search_name: Optional[str] = Field(None, min_length=1, max_length=100)
    alert_enabled: bool = False
    alert_frequency: AlertFrequency = "weekly"

    @model_validator(mode="after")
    def _name_when_saving(self):
        if self.save_search and not self.search_name:
            raise ValueError("search_name is required when save_search is true")
        return self

    def criteria(self) -> dict:
        """The search as stored on a saved search."""
        return self.model_dump(
            exclude={"organization_id", "save_search", "search_name", "alert_enabled", "alert_frequency"}
        )


class SavedSearchCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    organization_id: str = Field(..., pattern=UUID_PATTERN)
    name: str = Field(..., min_length=1, max_length=100)
    search_criteria: dict
    alert_enabled: bool = False
    alert_frequency: AlertFrequency = "weekly"

    @field_validator("search_criteria")
    @classmethod
    def _criteria_not_empty(cls, v: dict) -> dict:
        if not v:
            raise ValueError("search_criteria must not be empty")
        return v


class SavedSearchUpdate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: Optional[str] = Field(None, min_length=1, max_length=100)
    search_criteria: Optional[dict] = None
    alert_enabled: Optional[bool] = None
    alert_frequency: Optional[AlertFrequency] = None


class SearchAlertUpsert(BaseModel):
    saved_search_id: str = Field(..., pattern=UUID_PATTERN)
    alert_type: AlertType = "new_leads"
    trigger_criteria: dict = Field(default_factory=dict)
    enabled: bool = True


# ──────────────────────────────────────────────
# Validation results
# ──────────────────────────────────────────────

@dataclass
class ValidationResult(Generic[T]):
    data: Optional[T] = None
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.data is not None and not self.errors


def format_errors(exc: ValidationError) -> list[str]:
    """Flatten pydantic errors to ``"path: message"`` strings."""
    out = []
    for err in exc.errors():
        path = ".".join(str(p) for p in err.get("loc", ())) or "body"
        out.append(f"{path}: {err.get('msg', 'Invalid value')}")
    return out


def _validate(model: type[T], data: Any) -> ValidationResult[T]:
    if not isinstance(data, dict):
        return ValidationResult(errors=["body: Request body must be a JSON object"])
    try:
        return ValidationResult(data=model.model_validate(data))
    except ValidationError as e:
        return ValidationResult(errors=format_errors(e))


def validate_search_request(data: Any) -> ValidationResult[LeadGenerationRequest]:
    return _validate(LeadGenerationRequest, data)


def validate_webhook_payload(data: Any) -> ValidationResult[WebhookPayload]:
    return _validate(WebhookPayload, data)


def validate_advanced_search_request(data: Any) -> ValidationResult[AdvancedSearchRequest]:
    return _validate(AdvancedSearchRequest, data)


def has_required_role(user_role: Optional[str], required_role: str = "member") -> bool:
    """Role hierarchy check: owner > admin > member.  Unknown roles rank 0."""
    return ROLE_HIERARCHY.get(user_role or "", 0) >= ROLE_HIERARCHY.get(required_role, 0)


# ──────────────────────────────────────────────
# Contact field checks
# ──────────────────────────────────────────────

def is_valid_uuid(value: Any) -> bool:
    return isinstance(value, str) and bool(UUID_RE.match(value))


def is_valid_email(email: Optional[str]) -> bool:
    return bool(email) and bool(EMAIL_RE.match(email))


def is_valid_url(url: Optional[str]) -> bool:
    if not url:
        return False
    parsed = urlparse(url)
    return bool(parsed.scheme and parsed.netloc)


def is_valid_phone(phone: Optional[str]) -> bool:
    return bool(phone) and bool(PHONE_RE.match(phone.strip()))


def normalize_phone(phone: str) -> str:
    """Strip everything except digits and a leading +."""
    return re.sub(r"[^\d+]", "", phone)


def normalize_email(email: str) -> str:
    return email.strip().lower()


def normalize_url(url: str) -> str:
    url = url.strip()
    if not url.startswith(("http://", "https://")):
        return f"https://{url}"
    return url
