# routers/issues.py — Project issues, assignment and comments
import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_user, CurrentUser
from database import get_db_session
from exceptions import AppError, BadRequestError, NotFoundError
from jobs.dispatcher import FRONTEND_URL, JobDispatcher, get_job_dispatcher
from models import Issue, IssueComment, IssuePriority, IssueStatus, Project, User
from routers.projects import get_project_for_member, is_collaborator

router = APIRouter(prefix="/api/v1", tags=["Issues"])
logger = logging.getLogger("collabute.issues")


# --- Schemas ---

class IssueCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=300)
    description: Optional[str] = None
    priority: IssuePriority = IssuePriority.MEDIUM
    due_date: Optional[datetime] = None


class IssueAssign(BaseModel):
    assignee_id: str = Field(..., min_length=1)


class CommentCreate(BaseModel):
    content: str = Field(..., min_length=1, max_length=10000)


def _issue_out(i: Issue) -> dict:
    return {
        "id": i.id,
        "project_id": i.project_id,
        "title": i.title,
        "description": i.description,
        "status": i.status.value if isinstance(i.status, IssueStatus) else i.status,
        "priority": i.priority.value if isinstance(i.priority, IssuePriority) else i.priority,
        "reporter_id": i.reporter_id,
        "assignee_id": i.assignee_id,
        "due_date": i.due_date.isoformat() if i.due_date else None,
        "created_at": i.created_at.isoformat() if i.created_at else None,
        "updated_at": i.updated_at.isoformat() if i.updated_at else None,
    }


def _issue_link(issue: Issue) -> str:
    return f"{FRONTEND_URL}/projects/{issue.project_id}/issues/{issue.id}"


async def _get_issue_for_member(db: AsyncSession, issue_id: str, user: CurrentUser):
    issue = (await db.execute(select(Issue).where(Issue.id == issue_id))).scalar_one_or_none()
    if not issue:
        raise NotFoundError("Issue not found")
    project = await get_project_for_member(db, issue.project_id, user)
    return issue, project


# ============================================================
# ISSUES
# ============================================================

@router.post("/projects/{project_id}/issues", status_code=201)
async def create_issue(
    project_id: str,
    data: IssueCreate,
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(get_current_user),
):
    project = await get_project_for_member(db, project_id, user)
    issue = Issue(
        project_id=project.id,
        title=data.title,
        description=data.description,
        priority=data.priority,
        due_date=data.due_date,
        reporter_id=user.id,
    )
    db.add(issue)
    await db.commit()
    return _issue_out(issue)


@router.post("/issues/{issue_id}/assign")
async def assign_issue(
    issue_id: str,
    data: IssueAssign,
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(get_current_user),
    dispatcher: JobDispatcher = Depends(get_job_dispatcher),
):
    issue, project = await _get_issue_for_member(db, issue_id, user)

    assignee = (await db.execute(select(User).where(User.id == data.assignee_id))).scalar_one_or_none()
    if not assignee:
        raise NotFoundError("Assignee not found")
    if assignee.id != project.owner_id and not await is_collaborator(db, project.id, assignee.id):
        raise BadRequestError("Assignee must be a member of the project")

    issue.assignee_id = assignee.id
    await db.commit()

    if assignee.id != user.id:
        await _queue_assignment(dispatcher, issue, project, assignee)
    return _issue_out(issue)


async def _queue_assignment(dispatcher: JobDispatcher, issue: Issue, project: Project, assignee: User) -> None:
    priority = issue.priority.value if isinstance(issue.priority, IssuePriority) else issue.priority
    try:
        await dispatcher.send_issue_assigned_email(
            assignee.email,
            assignee.display_name or assignee.email,
            issue.title,
            project.title,
            _issue_link(issue),
            priority=priority,
            due_date=issue.due_date.date().isoformat() if issue.due_date else None,
        )
        await dispatcher.send_issue_assigned_notification(assignee.id, {
            "issue_id": issue.id,
            "title": issue.title,
            "project_id": project.id,
            "project_name": project.title,
        })
    except AppError as e:
        logger.warning(f"Could not queue assignment notice for issue {issue.id}: {e}")


# ============================================================
# COMMENTS
# ============================================================

@router.post("/issues/{issue_id}/comments", status_code=201)
async def comment_on_issue(
    issue_id: str,
    data: CommentCreate,
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(get_current_user),
    dispatcher: JobDispatcher = Depends(get_job_dispatcher),
):
    issue, project = await _get_issue_for_member(db, issue_id, user)

    comment = IssueComment(issue_id=issue.id, author_id=user.id, content=data.content)
    db.add(comment)
    await db.commit()

    recipients = []
    for uid in (issue.reporter_id, issue.assignee_id):
        if uid and uid != user.id and uid not in recipients:
            recipients.append(uid)
    try:
        for uid in recipients:
            await dispatcher.send_issue_comment_notification(uid, {
                "issue_id": issue.id,
                "issue_title": issue.title,
                "comment_id": comment.id,
                "author_id": user.id,
                "author_name": user.display_name or user.email,
            })
    except AppError as e:
        logger.warning(f"Could not queue comment notifications for issue {issue.id}: {e}")

    return {
        "id": comment.id,
        "issue_id": issue.id,
        "author_id": comment.author_id,
        "content": comment.content,
        "created_at": comment.created_at.isoformat() if comment.created_at else None,
        "notified": recipients,
    }
