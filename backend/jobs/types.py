# jobs/types.py — Job kinds and their payload shapes
"""
Each job kind owns one queue and one payload model. Payloads carry a `kind`
literal so a serialized job is self-describing; `validate_payload` is the
single entry point used by the dispatcher before anything reaches Redis.
"""
from enum import Enum
from typing import Any, Dict, Literal, Optional, Type, Union

from pydantic import BaseModel, EmailStr, Field, ValidationError, model_validator

from exceptions import PayloadValidationError


class JobKind(str, Enum):
    """Job kinds; values double as queue names"""
    EMAIL = "email"
    GITHUB_SYNC = "github-sync"
    NOTIFICATION = "notifications"


class EmailTemplate(str, Enum):
    WELCOME = "welcome"
    PROJECT_INVITATION = "project-invitation"
    ISSUE_ASSIGNED = "issue-assigned"


class NotificationType(str, Enum):
    ISSUE_ASSIGNED = "issue_assigned"
    MESSAGE_RECEIVED = "message_received"
    PROJECT_INVITATION = "project_invitation"
    ISSUE_COMMENT = "issue_comment"


# ============================================================
# EMAIL TEMPLATE DATA
# ============================================================

class WelcomeEmailData(BaseModel):
    user_name: str


class ProjectInvitationEmailData(BaseModel):
    project_name: str
    inviter_name: str
    invite_link: str


class IssueAssignedEmailData(BaseModel):
    assignee_name: str
    issue_title: str
    project_name: str
    priority: Optional[str] = None
    due_date: Optional[str] = None
    issue_link: str


TEMPLATE_DATA_MODELS: Dict[EmailTemplate, Type[BaseModel]] = {
    EmailTemplate.WELCOME: WelcomeEmailData,
    EmailTemplate.PROJECT_INVITATION: ProjectInvitationEmailData,
    EmailTemplate.ISSUE_ASSIGNED: IssueAssignedEmailData,
}


# ============================================================
# JOB PAYLOADS
# ============================================================

class EmailJobData(BaseModel):
    kind: Literal["email"] = "email"
    to: EmailStr
    subject: str = Field(..., min_length=1, max_length=300)
    template: EmailTemplate
    data: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def check_template_data(self):
        model = TEMPLATE_DATA_MODELS[self.template]
        self.data = model.model_validate(self.data).model_dump(exclude_none=True)
        return self


class GitHubSyncJobData(BaseModel):
    kind: Literal["github-sync"] = "github-sync"
    user_id: str = Field(..., min_length=1)
    repository_id: str = Field(..., min_length=1)
    access_token: str = Field(..., min_length=1)


class NotificationJobData(BaseModel):
    kind: Literal["notifications"] = "notifications"
    user_id: str = Field(..., min_length=1)
    # Free-form so that callers can introduce new types; rendering falls back
    # to a generic message for anything outside NotificationType.
    type: str = Field(..., min_length=1, max_length=64)
    data: Dict[str, Any] = Field(default_factory=dict)


JobPayload = Union[EmailJobData, GitHubSyncJobData, NotificationJobData]

PAYLOAD_MODELS: Dict[JobKind, Type[BaseModel]] = {
    JobKind.EMAIL: EmailJobData,
    JobKind.GITHUB_SYNC: GitHubSyncJobData,
    JobKind.NOTIFICATION: NotificationJobData,
}


def validate_payload(kind: JobKind, payload: Union[JobPayload, Dict[str, Any]]) -> JobPayload:
    """Coerce a dict (or check a model) against the payload model for `kind`"""
    model = PAYLOAD_MODELS[kind]
    if isinstance(payload, BaseModel):
        if not isinstance(payload, model):
            raise PayloadValidationError(
                f"{type(payload).__name__} is not a valid payload for {kind.value} jobs"
            )
        return payload
    if not isinstance(payload, dict):
        raise PayloadValidationError(f"Payload for {kind.value} jobs must be an object")
    try:
        return model.model_validate({**payload, "kind": kind.value})
    except ValidationError as e:
        errors = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise PayloadValidationError(f"Invalid {kind.value} payload: {errors}")
