# routers/jobs.py — Background job triggers and queue administration
from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_user, require_admin_role, CurrentUser
from database import get_db_session
from exceptions import BadRequestError, NotFoundError
from jobs.dispatcher import JobDispatcher, get_job_dispatcher
from models import GitHubRepository, User

router = APIRouter(prefix="/api/v1/jobs", tags=["Jobs"])


# ============================================================
# TRIGGERS
# ============================================================

@router.post("/email/test", status_code=201)
async def send_test_email(
    user: CurrentUser = Depends(get_current_user),
    dispatcher: JobDispatcher = Depends(get_job_dispatcher),
):
    job = await dispatcher.send_email({
        "to": user.email,
        "subject": "Test Email from Collabute",
        "template": "welcome",
        "data": {"user_name": user.display_name or user.email},
    })
    return job.to_dict()


@router.post("/github-sync/{repository_id}", status_code=201)
async def trigger_github_sync(
    repository_id: str,
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(get_current_user),
    dispatcher: JobDispatcher = Depends(get_job_dispatcher),
):
    repository = (await db.execute(
        select(GitHubRepository).where(GitHubRepository.id == repository_id)
    )).scalar_one_or_none()
    if not repository:
        raise NotFoundError("Repository not found")

    owner = (await db.execute(select(User).where(User.id == user.id))).scalar_one()
    if not owner.github_access_token:
        raise BadRequestError("Connect a GitHub access token before syncing repositories")

    job = await dispatcher.schedule_github_sync({
        "user_id": user.id,
        "repository_id": repository.id,
        "access_token": owner.github_access_token,
    })
    return job.to_dict()


@router.post("/notifications/test", status_code=201)
async def send_test_notification(
    user: CurrentUser = Depends(get_current_user),
    dispatcher: JobDispatcher = Depends(get_job_dispatcher),
):
    job = await dispatcher.send_notification({
        "user_id": user.id,
        "type": "message_received",
        "data": {"sender_name": "System", "message": "This is a test notification"},
    })
    return job.to_dict()


# ============================================================
# ADMINISTRATION
# ============================================================

@router.get("/stats")
async def queue_stats(
    admin: CurrentUser = Depends(require_admin_role),
    dispatcher: JobDispatcher = Depends(get_job_dispatcher),
):
    return await dispatcher.get_stats()


@router.post("/queues/{queue_name}/pause")
async def pause_queue(
    queue_name: str,
    admin: CurrentUser = Depends(require_admin_role),
    dispatcher: JobDispatcher = Depends(get_job_dispatcher),
):
    await dispatcher.pause(queue_name)
    return {"message": f"Queue {queue_name} paused successfully"}


@router.post("/queues/{queue_name}/resume")
async def resume_queue(
    queue_name: str,
    admin: CurrentUser = Depends(require_admin_role),
    dispatcher: JobDispatcher = Depends(get_job_dispatcher),
):
    await dispatcher.resume(queue_name)
    return {"message": f"Queue {queue_name} resumed successfully"}


@router.post("/queues/{queue_name}/clear")
async def clear_queue(
    queue_name: str,
    admin: CurrentUser = Depends(require_admin_role),
    dispatcher: JobDispatcher = Depends(get_job_dispatcher),
):
    removed = await dispatcher.clear(queue_name)
    return {"message": f"Queue {queue_name} cleared successfully", "removed": removed}
