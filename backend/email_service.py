# email_service.py — Transactional email rendering and delivery (Resend)
import os
import json
import logging
from html import escape
from typing import Any, Callable, Dict, Optional

import httpx

from exceptions import ExternalServiceError
from jobs.types import EmailTemplate

logger = logging.getLogger("collabute.email")

RESEND_API_KEY = os.getenv("RESEND_API_KEY", "")
RESEND_API_URL = os.getenv("RESEND_API_URL", "https://api.resend.com")
EMAIL_FROM = os.getenv("EMAIL_FROM", "Collabute <noreply@collabute.com>")

_BUTTON_STYLE = (
    "background-color: #007bff; color: white; padding: 10px 20px; "
    "text-decoration: none; border-radius: 5px;"
)


def _welcome(d: Dict[str, Any]) -> str:
    return (
        "<h1>Welcome to Collabute!</h1>"
        f"<p>Hi {d['user_name']},</p>"
        "<p>Thanks for joining Collabute. We're excited to have you on board!</p>"
        "<p>Get started by creating your first project or joining an existing one.</p>"
        "<p>Best regards,<br>The Collabute Team</p>"
    )


def _project_invitation(d: Dict[str, Any]) -> str:
    return (
        "<h1>You've been invited to join a project</h1>"
        "<p>Hi there,</p>"
        f"<p>You've been invited to join <strong>{d['project_name']}</strong> by {d['inviter_name']}.</p>"
        "<p>Click the link below to accept the invitation:</p>"
        f'<a href="{d["invite_link"]}" style="{_BUTTON_STYLE}">Accept Invitation</a>'
        "<p>Best regards,<br>The Collabute Team</p>"
    )


def _issue_assigned(d: Dict[str, Any]) -> str:
    return (
        "<h1>You've been assigned to an issue</h1>"
        f"<p>Hi {d['assignee_name']},</p>"
        f"<p>You've been assigned to issue <strong>\"{d['issue_title']}\"</strong> in {d['project_name']}.</p>"
        "<p>Issue details:</p>"
        "<ul>"
        f"<li><strong>Priority:</strong> {d.get('priority') or 'Normal'}</li>"
        f"<li><strong>Due Date:</strong> {d.get('due_date') or 'Not set'}</li>"
        "</ul>"
        "<p>Click the link below to view the issue:</p>"
        f'<a href="{d["issue_link"]}" style="{_BUTTON_STYLE}">View Issue</a>'
        "<p>Best regards,<br>The Collabute Team</p>"
    )


TEMPLATES: Dict[EmailTemplate, Callable[[Dict[str, Any]], str]] = {
    EmailTemplate.WELCOME: _welcome,
    EmailTemplate.PROJECT_INVITATION: _project_invitation,
    EmailTemplate.ISSUE_ASSIGNED: _issue_assigned,
}


def render_template(template: str, data: Dict[str, Any]) -> str:
    safe = {k: escape(str(v)) if v is not None else None for k, v in data.items()}
    try:
        renderer = TEMPLATES[EmailTemplate(template)]
    except ValueError:
        logger.warning(f"Template {template} not found, using default")
        return f"<p>Template: {escape(template)}</p><pre>{escape(json.dumps(data, indent=2, default=str))}</pre>"
    return renderer(safe)


class EmailService:
    """Sends rendered templates through the Resend HTTP API"""

    def __init__(
        self,
        api_key: str = RESEND_API_KEY,
        base_url: str = RESEND_API_URL,
        sender: str = EMAIL_FROM,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url
        self.sender = sender
        self._transport = transport
        if not api_key:
            logger.warning("RESEND_API_KEY not configured. Email sending will be disabled.")

    async def send_email(self, to: str, subject: str, template: str, data: Dict[str, Any]) -> Dict[str, Any]:
        if not self.api_key:
            logger.warning(f"Email sending disabled. Would have sent email to {to} with subject: {subject}")
            return {"success": False, "id": None}

        html = render_template(template, data)
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=15.0,
                transport=self._transport,
            ) as client:
                response = await client.post("/emails", json={
                    "from": self.sender,
                    "to": [to],
                    "subject": subject,
                    "html": html,
                })
                response.raise_for_status()
                body = response.json()
        except httpx.HTTPStatusError as e:
            raise ExternalServiceError("email", f"provider returned {e.response.status_code}")
        except httpx.HTTPError as e:
            raise ExternalServiceError("email", str(e) or type(e).__name__)

        logger.info(f"Email sent successfully to {to}, ID: {body.get('id')}")
        return {"success": True, "id": body.get("id")}
