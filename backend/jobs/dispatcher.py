# jobs/dispatcher.py — Typed enqueue API and queue administration
import os
import logging
from typing import Any, Dict, Optional, Union

from redis.asyncio import Redis

from exceptions import UnknownQueueError
from jobs.queue import BackoffPolicy, Job, JobOptions, RedisQueue
from jobs.types import (
    EmailJobData, EmailTemplate, GitHubSyncJobData, JobKind, JobPayload,
    NotificationJobData, NotificationType, validate_payload,
)

logger = logging.getLogger("collabute.jobs")

QUEUE_PREFIX = os.getenv("QUEUE_PREFIX", "collabute")
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000")

# Job name per kind, as stored on each job record
JOB_NAMES = {
    JobKind.EMAIL: "send-email",
    JobKind.GITHUB_SYNC: "sync-repository",
    JobKind.NOTIFICATION: "send-notification",
}

# Default retry policy per kind
JOB_POLICIES = {
    JobKind.EMAIL: {"attempts": 3, "backoff": BackoffPolicy("exponential", 2000)},
    JobKind.GITHUB_SYNC: {"attempts": 2, "backoff": BackoffPolicy("fixed", 5000)},
    JobKind.NOTIFICATION: {"attempts": 3, "backoff": BackoffPolicy("exponential", 1000)},
}

# Completed/failed jobs kept for inspection per queue
QUEUE_RETENTION = {
    JobKind.EMAIL: {"remove_on_complete": 100, "remove_on_fail": 50},
    JobKind.GITHUB_SYNC: {"remove_on_complete": 50, "remove_on_fail": 25},
    JobKind.NOTIFICATION: {"remove_on_complete": 200, "remove_on_fail": 100},
}

GITHUB_SYNC_CRON = "0 */6 * * *"  # every 6 hours
MESSAGE_NOTIFICATION_DELAY_MS = 1000  # lets rapid-fire messages batch up

STATS_KEYS = {
    JobKind.EMAIL: "email",
    JobKind.GITHUB_SYNC: "github_sync",
    JobKind.NOTIFICATION: "notifications",
}


class JobDispatcher:
    """Enqueues email, GitHub sync and notification jobs with their retry policy"""

    def __init__(self, redis: Redis, prefix: str = QUEUE_PREFIX):
        self.redis = redis
        self.queues: Dict[JobKind, RedisQueue] = {
            kind: RedisQueue(kind.value, redis, prefix=prefix, **QUEUE_RETENTION[kind])
            for kind in JobKind
        }

    def get_queue(self, queue_name: Union[str, JobKind]) -> RedisQueue:
        try:
            return self.queues[JobKind(queue_name)]
        except ValueError:
            raise UnknownQueueError(str(queue_name))

    # ============================================================
    # ENQUEUE
    # ============================================================

    async def enqueue(
        self,
        kind: JobKind,
        payload: Union[JobPayload, Dict[str, Any]],
        delay: int = 0,
    ) -> Job:
        """Validate `payload` for `kind` and submit it with the kind's policy"""
        queue = self.get_queue(kind)
        kind = JobKind(kind)
        model = validate_payload(kind, payload)
        policy = JOB_POLICIES[kind]
        opts = JobOptions(attempts=policy["attempts"], backoff=policy["backoff"], delay=delay)
        job = await queue.add(JOB_NAMES[kind], model.model_dump(mode="json"), opts)
        logger.info(f"Enqueued {kind.value} job {job.id} (delay={delay}ms)")
        return job

    async def send_email(self, email: Union[EmailJobData, Dict[str, Any]], delay: int = 0) -> Job:
        return await self.enqueue(JobKind.EMAIL, email, delay)

    async def send_welcome_email(self, user_email: str, user_name: str) -> Job:
        return await self.send_email({
            "to": user_email,
            "subject": "Welcome to Collabute!",
            "template": EmailTemplate.WELCOME,
            "data": {"user_name": user_name},
        })

    async def send_project_invitation(
        self, user_email: str, project_name: str, inviter_name: str, project_id: str,
    ) -> Job:
        return await self.send_email({
            "to": user_email,
            "subject": f"You've been invited to {project_name}",
            "template": EmailTemplate.PROJECT_INVITATION,
            "data": {
                "project_name": project_name,
                "inviter_name": inviter_name,
                "invite_link": f"{FRONTEND_URL}/projects/{project_id}",
            },
        })

    async def send_issue_assigned_email(
        self,
        user_email: str,
        assignee_name: str,
        issue_title: str,
        project_name: str,
        issue_link: str,
        priority: Optional[str] = None,
        due_date: Optional[str] = None,
    ) -> Job:
        return await self.send_email({
            "to": user_email,
            "subject": f"New issue assigned: {issue_title}",
            "template": EmailTemplate.ISSUE_ASSIGNED,
            "data": {
                "assignee_name": assignee_name,
                "issue_title": issue_title,
                "project_name": project_name,
                "priority": priority,
                "due_date": due_date,
                "issue_link": issue_link,
            },
        })

    async def schedule_github_sync(
        self, sync: Union[GitHubSyncJobData, Dict[str, Any]], delay: int = 0,
    ) -> Job:
        return await self.enqueue(JobKind.GITHUB_SYNC, sync, delay)

    async def schedule_periodic_github_sync(self, sync: Union[GitHubSyncJobData, Dict[str, Any]]) -> Job:
        kind = JobKind.GITHUB_SYNC
        model = validate_payload(kind, sync)
        opts = JobOptions(
            attempts=JOB_POLICIES[kind]["attempts"],
            backoff=JOB_POLICIES[kind]["backoff"],
            repeat_cron=GITHUB_SYNC_CRON,
        )
        job = await self.queues[kind].add(JOB_NAMES[kind], model.model_dump(mode="json"), opts)
        logger.info(f"Scheduled periodic GitHub sync for repository {model.repository_id} ({GITHUB_SYNC_CRON})")
        return job

    async def send_notification(
        self, notification: Union[NotificationJobData, Dict[str, Any]], delay: int = 0,
    ) -> Job:
        return await self.enqueue(JobKind.NOTIFICATION, notification, delay)

    async def send_issue_assigned_notification(self, user_id: str, issue_data: Dict[str, Any]) -> Job:
        return await self.send_notification({
            "user_id": user_id, "type": NotificationType.ISSUE_ASSIGNED.value, "data": issue_data,
        })

    async def send_message_received_notification(self, user_id: str, message_data: Dict[str, Any]) -> Job:
        return await self.send_notification(
            {"user_id": user_id, "type": NotificationType.MESSAGE_RECEIVED.value, "data": message_data},
            delay=MESSAGE_NOTIFICATION_DELAY_MS,
        )

    async def send_project_invitation_notification(self, user_id: str, project_data: Dict[str, Any]) -> Job:
        return await self.send_notification({
            "user_id": user_id, "type": NotificationType.PROJECT_INVITATION.value, "data": project_data,
        })

    async def send_issue_comment_notification(self, user_id: str, comment_data: Dict[str, Any]) -> Job:
        return await self.send_notification({
            "user_id": user_id, "type": NotificationType.ISSUE_COMMENT.value, "data": comment_data,
        })

    # ============================================================
    # ADMINISTRATION
    # ============================================================

    async def get_stats(self) -> Dict[str, Dict[str, int]]:
        return {
            STATS_KEYS[kind]: await queue.get_job_counts()
            for kind, queue in self.queues.items()
        }

    async def pause(self, queue_name: str) -> None:
        await self.get_queue(queue_name).pause()

    async def resume(self, queue_name: str) -> None:
        await self.get_queue(queue_name).resume()

    async def clear(self, queue_name: str) -> Dict[str, int]:
        """Drop completed, failed and active records; waiting/delayed jobs stay"""
        queue = self.get_queue(queue_name)
        return {
            state: await queue.clean(state)
            for state in ("completed", "failed", "active")
        }


# ============================================================
# APPLICATION SINGLETON
# ============================================================

_dispatcher: Optional[JobDispatcher] = None


def init_job_dispatcher(redis: Redis) -> JobDispatcher:
    global _dispatcher
    _dispatcher = JobDispatcher(redis)
    return _dispatcher


def get_job_dispatcher() -> JobDispatcher:
    """FastAPI dependency returning the process-wide dispatcher"""
    if _dispatcher is None:
        raise RuntimeError("Job dispatcher not initialised")
    return _dispatcher
