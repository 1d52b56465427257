"""
Pydantic schemas for onboarding step payloads and status responses.

Each step has its own payload model; ``parse_step_payload`` validates the
raw request body at the boundary so the tracker only ever stores
well-formed settings.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional, Type

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from onboarding import steps
from utils.errors import InvalidStepPayload


class _Payload(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)


# ═══════════════════════════════════════════════════════════════════════════════
# Step payloads
# ═══════════════════════════════════════════════════════════════════════════════


class WelcomePayload(_Payload):
    accepted_terms: bool = True


class BusinessTypePayload(_Payload):
    business_type_id: int = Field(..., ge=1)
    business_name: Optional[str] = Field(default=None, max_length=200)


class EmailProviderPayload(_Payload):
    provider: Optional[str] = Field(default=None, max_length=32)


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class LabelMapping(_Payload):
    category: str = Field(..., min_length=1, max_length=128)
    label: str = Field(..., min_length=1, max_length=225)
    label_id: Optional[str] = Field(default=None, max_length=256)
    priority: Priority = Priority.MEDIUM
    enabled: bool = True


class LabelMappingPayload(_Payload):
    label_mappings: List[LabelMapping] = Field(..., min_length=1)
    # Free-form overrides: category name → label name
    custom_labels: Dict[str, str] = Field(default_factory=dict)

    @field_validator("custom_labels")
    @classmethod
    def _bounded_custom_labels(cls, value: Dict[str, str]) -> Dict[str, str]:
        if len(value) > 100:
            raise ValueError("at most 100 custom labels")
        for key, label in value.items():
            if not key.strip() or not label.strip():
                raise ValueError("custom label names must be non-empty")
            if len(key) > 128 or len(label) > 225:
                raise ValueError("custom label names are too long")
        return value


class NotificationType(str, Enum):
    EMAIL = "email"
    SMS = "sms"
    SLACK = "slack"
    WEBHOOK = "webhook"


class NotificationTrigger(str, Enum):
    WORKFLOW_STARTED = "workflow_started"
    WORKFLOW_COMPLETED = "workflow_completed"
    WORKFLOW_FAILED = "workflow_failed"
    HIGH_PRIORITY_EMAIL = "high_priority_email"
    CUSTOMER_RESPONSE_NEEDED = "customer_response_needed"
    SYSTEM_ERROR = "system_error"


class NotificationRecipient(_Payload):
    type: NotificationType = NotificationType.EMAIL
    recipient: str = Field(..., min_length=1, max_length=255)
    triggers: List[NotificationTrigger] = Field(..., min_length=1)
    enabled: bool = True


class TeamNotificationsPayload(_Payload):
    notifications: List[NotificationRecipient] = Field(default_factory=list)


class ReviewPayload(_Payload):
    business_info_confirmed: bool
    email_connection_confirmed: bool
    label_mappings_confirmed: bool
    notifications_confirmed: bool

    @field_validator(
        "business_info_confirmed",
        "email_connection_confirmed",
        "label_mappings_confirmed",
        "notifications_confirmed",
    )
    @classmethod
    def _must_confirm(cls, value: bool) -> bool:
        if value is not True:
            raise ValueError("must be confirmed")
        return value


class CompletePayload(_Payload):
    pass


STEP_PAYLOADS: Dict[str, Type[_Payload]] = {
    steps.WELCOME: WelcomePayload,
    steps.BUSINESS_TYPE: BusinessTypePayload,
    steps.EMAIL_PROVIDER: EmailProviderPayload,
    steps.LABEL_MAPPING: LabelMappingPayload,
    steps.TEAM_NOTIFICATIONS: TeamNotificationsPayload,
    steps.REVIEW: ReviewPayload,
    steps.COMPLETE: CompletePayload,
}


def parse_step_payload(step_id: str, raw: Optional[Dict[str, Any]]) -> _Payload:
    """Validate ``raw`` against the payload model registered for ``step_id``."""
    steps.get_step(step_id)
    model = STEP_PAYLOADS[step_id]
    try:
        return model.model_validate(raw or {})
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'body'}: {err['msg']}"
            for err in exc.errors()
        )
        raise InvalidStepPayload(f"Invalid payload for step '{step_id}': {problems}") from exc


class Category(_Payload):
    name: str = Field(..., min_length=1, max_length=128)
    description: Optional[str] = Field(default=None, max_length=500)


class CategoriesUpdate(_Payload):
    categories: List[Category] = Field(..., min_length=1, max_length=50)


# ═══════════════════════════════════════════════════════════════════════════════
# Responses
# ═══════════════════════════════════════════════════════════════════════════════


class ProgressSnapshot(BaseModel):
    """Tracker view of one user's persisted progress plus live connection state."""

    user_id: str
    completed_steps: List[str] = Field(default_factory=list)
    skipped_steps: List[str] = Field(default_factory=list)
    business_type_id: Optional[int] = None
    settings: Dict[str, Any] = Field(default_factory=dict)
    email_provider_connected: bool = False
    next_step: str = steps.WELCOME


class OnboardingStatus(BaseModel):
    next_step: str
    completed_steps: List[str]
    skipped_steps: List[str] = Field(default_factory=list)
    business_type_id: Optional[int] = None
    email_provider_connected: bool
    connected_providers: List[str] = Field(default_factory=list)
    settings: Dict[str, Any] = Field(default_factory=dict)
    onboarding_completed: bool = False


class BusinessTypeOut(BaseModel):
    model_config = {"from_attributes": True}

    id: int
    slug: str
    name: str
    description: Optional[str] = None
    default_categories: List[Dict[str, Any]] = Field(default_factory=list)
