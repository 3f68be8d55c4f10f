# jobs/processors.py — One consumer per queue
"""
Processors turn a job payload into a side effect and a small result dict.
They never retry: any exception propagates to the worker, which reports the
failure to the queue so the job's backoff policy decides what happens next.
"""
import uuid
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from database import async_session_maker
from email_service import EmailService
from exceptions import NotFoundError
from github_client import GitHubClient, parse_github_time
from jobs.queue import Job
from jobs.relay import NotificationRelay
from jobs.types import EmailJobData, GitHubSyncJobData, NotificationJobData, NotificationType
from models import GitHubRepository, Notification, utcnow

logger = logging.getLogger("collabute.jobs.processors")


# ============================================================
# EMAIL
# ============================================================

class EmailProcessor:
    def __init__(self, email_service: EmailService):
        self.email_service = email_service

    async def __call__(self, job: Job) -> Dict[str, Any]:
        payload = EmailJobData.model_validate(job.data)
        logger.info(f"Processing email job {job.id} for {payload.to}")
        try:
            result = await self.email_service.send_email(
                to=payload.to,
                subject=payload.subject,
                template=payload.template.value,
                data=payload.data,
            )
        except Exception as e:
            logger.error(f"Failed to send email to {payload.to}: {e}")
            raise
        return {"success": result.get("success", False), "recipient": payload.to, "email_id": result.get("id")}


# ============================================================
# GITHUB SYNC
# ============================================================

class GitHubSyncProcessor:
    def __init__(
        self,
        session_factory=async_session_maker,
        client_factory: Callable[[str], GitHubClient] = GitHubClient,
    ):
        self.session_factory = session_factory
        self.client_factory = client_factory

    async def __call__(self, job: Job) -> Dict[str, Any]:
        payload = GitHubSyncJobData.model_validate(job.data)
        logger.info(
            f"Processing GitHub sync job {job.id} for user {payload.user_id}, "
            f"repository {payload.repository_id}"
        )

        async with self.session_factory() as db:
            result = await db.execute(
                select(GitHubRepository).where(GitHubRepository.id == payload.repository_id)
            )
            repository = result.scalar_one_or_none()
            if not repository:
                raise NotFoundError(f"Repository {payload.repository_id} not found")

            logger.info(f"Syncing repository: {repository.full_name}")
            async with self.client_factory(payload.access_token) as github:
                sync = await github.sync_repository_data(repository.full_name)

            meta = sync["repository"]
            repository.description = meta.get("description")
            repository.language = meta.get("language")
            repository.default_branch = meta.get("default_branch") or repository.default_branch
            repository.updated_at = parse_github_time(meta.get("updated_at")) or utcnow()
            repository.pushed_at = parse_github_time(meta.get("pushed_at"))
            repository.last_synced_at = utcnow()
            await db.commit()

        logger.info(f"Successfully synced repository {repository.full_name}")
        return {
            "success": True,
            "repository_id": payload.repository_id,
            "synced_at": datetime.now(timezone.utc).isoformat(),
            "issues_count": len(sync["issues"]),
            "commits_count": len(sync["commits"]),
            "branches_count": len(sync["branches"]),
        }


# ============================================================
# NOTIFICATIONS
# ============================================================

# type -> (title, body template)
NOTIFICATION_TEMPLATES: Dict[NotificationType, Tuple[str, str]] = {
    NotificationType.ISSUE_ASSIGNED: ("Issue Assigned", "You've been assigned to issue \"{title}\""),
    NotificationType.MESSAGE_RECEIVED: ("New Message", "You received a new message from {sender_name}"),
    NotificationType.PROJECT_INVITATION: ("Project Invitation", "You've been invited to join project \"{project_name}\""),
    NotificationType.ISSUE_COMMENT: ("New Comment", "New comment on issue \"{issue_title}\""),
}


class _Missing(dict):
    def __missing__(self, key):
        return "unknown"


def render_notification(notification_type: str, data: Dict[str, Any]) -> Tuple[str, str]:
    """Return (title, body) for a notification type, with a generic fallback"""
    try:
        title, template = NOTIFICATION_TEMPLATES[NotificationType(notification_type)]
    except ValueError:
        return "Notification", f"New notification of type: {notification_type}"
    return title, template.format_map(_Missing(data))


def notification_id_for(job: Job) -> str:
    """Stable inbox row id for a notification job, shared by all of its attempts"""
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"collabute:{job.queue}:{job.id}:{job.timestamp}"))


class NotificationProcessor:
    def __init__(self, relay: NotificationRelay, session_factory=async_session_maker):
        self.relay = relay
        self.session_factory = session_factory

    async def __call__(self, job: Job) -> Dict[str, Any]:
        payload = NotificationJobData.model_validate(job.data)
        logger.info(f"Processing notification job {job.id} for user {payload.user_id}, type: {payload.type}")

        title, body = render_notification(payload.type, payload.data)
        notification = {
            "id": notification_id_for(job),
            "type": payload.type,
            "title": title,
            "message": body,
            "data": payload.data,
            "created_at": utcnow().isoformat(),
        }
        notification["id"] = await self._store(payload.user_id, notification)

        await self.relay.publish(payload.user_id, notification)
        logger.info(f"Notification sent successfully to user {payload.user_id}")
        return {"success": True, "notification_id": notification["id"]}

    async def _store(self, user_id: str, notification: Dict[str, Any]) -> Optional[str]:
        # Inbox persistence is best-effort; delivery continues without it
        try:
            async with self.session_factory() as db:
                # A retried job finds the row its earlier attempt wrote
                if await db.get(Notification, notification["id"]) is not None:
                    return notification["id"]
                row = Notification(
                    id=notification["id"],
                    user_id=user_id,
                    type=notification["type"],
                    title=notification["title"],
                    body=notification["message"],
                    data=notification["data"],
                )
                db.add(row)
                await db.commit()
                return row.id
        except SQLAlchemyError as e:
            logger.warning(f"Could not store notification for user {user_id}: {e}")
            return None
