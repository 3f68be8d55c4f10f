# routers/projects.py — Projects, collaborators and GitHub repository links
import re
import uuid
import logging
from typing import Optional, List, Callable

from fastapi import APIRouter, Depends
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_user, CurrentUser
from chat_service import ChatService
from database import get_db_session
from exceptions import (
    AppError, BadRequestError, ExternalServiceError, ForbiddenError, NotFoundError,
)
from github_client import GitHubClient, parse_github_time
from jobs.dispatcher import JobDispatcher, get_job_dispatcher
from models import (
    CollaboratorRole, Conversation, ConversationType, GitHubRepository, ParticipantRole,
    Project, ProjectCollaborator, User, UserRole, utcnow,
)
from routers.chat_gateway import gateway, room_for

router = APIRouter(prefix="/api/v1/projects", tags=["Projects"])
logger = logging.getLogger("collabute.projects")


# --- Schemas ---

class ProjectCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    description: str = Field(default="", max_length=5000)
    tags: List[str] = Field(default_factory=list)


class CollaboratorAdd(BaseModel):
    email: EmailStr
    role: CollaboratorRole = CollaboratorRole.MEMBER


class RepositoryConnect(BaseModel):
    repo_full_name: str = Field(..., pattern=r"^[\w.-]+/[\w.-]+$")


def get_github_client_factory() -> Callable[[str], GitHubClient]:
    """Dependency returning the GitHub client constructor"""
    return GitHubClient


# --- Helpers ---

def _slugify(name: str) -> str:
    base = re.sub(r'[^a-z0-9]+', '-', name.lower()).strip('-')[:60] or "project"
    return f"{base}-{uuid.uuid4().hex[:6]}"


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def _repository_out(r: Optional[GitHubRepository]) -> Optional[dict]:
    if r is None:
        return None
    return {
        "id": r.id,
        "repo_id": r.repo_id,
        "name": r.name,
        "full_name": r.full_name,
        "url": r.url,
        "is_private": r.is_private,
        "description": r.description,
        "language": r.language,
        "default_branch": r.default_branch,
        "pushed_at": _iso(r.pushed_at),
        "last_synced_at": _iso(r.last_synced_at),
    }


async def _project_out(db: AsyncSession, p: Project) -> dict:
    collaborators = (await db.execute(
        select(ProjectCollaborator).where(ProjectCollaborator.project_id == p.id)
    )).scalars().all()
    repository = (await db.execute(
        select(GitHubRepository).where(GitHubRepository.project_id == p.id)
    )).scalar_one_or_none()
    conversation = await _default_conversation(db, p.id)
    return {
        "id": p.id,
        "title": p.title,
        "slug": p.slug,
        "description": p.description,
        "owner_id": p.owner_id,
        "tags": p.tags or [],
        "collaborators": [
            {"user_id": c.user_id, "role": c.role.value if hasattr(c.role, "value") else c.role}
            for c in collaborators
        ],
        "repository": _repository_out(repository),
        "conversation_id": conversation.id if conversation else None,
        "created_at": _iso(p.created_at),
        "updated_at": _iso(p.updated_at),
    }


async def _default_conversation(db: AsyncSession, project_id: str) -> Optional[Conversation]:
    return (await db.execute(
        select(Conversation)
        .where(Conversation.project_id == project_id, Conversation.type == ConversationType.PROJECT)
        .order_by(Conversation.created_at)
        .limit(1)
    )).scalars().first()


async def get_project_for_member(db: AsyncSession, project_id: str, user: CurrentUser) -> Project:
    """Project if the user owns it, collaborates on it or is a platform admin"""
    project = (await db.execute(select(Project).where(Project.id == project_id))).scalar_one_or_none()
    if not project:
        raise NotFoundError("Project not found")
    if project.owner_id == user.id or UserRole(user.role) == UserRole.ADMIN:
        return project
    if await is_collaborator(db, project.id, user.id):
        return project
    raise ForbiddenError("You do not have access to this project")


async def is_collaborator(db: AsyncSession, project_id: str, user_id: str) -> bool:
    result = await db.execute(
        select(ProjectCollaborator.id).where(
            ProjectCollaborator.project_id == project_id,
            ProjectCollaborator.user_id == user_id,
        )
    )
    return result.scalar_one_or_none() is not None


# ============================================================
# CRUD
# ============================================================

@router.post("", status_code=201)
async def create_project(
    data: ProjectCreate,
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(get_current_user),
):
    project = Project(
        title=data.title,
        slug=_slugify(data.title),
        description=data.description,
        owner_id=user.id,
        tags=data.tags,
    )
    db.add(project)
    await db.flush()

    # Every project gets a discussion conversation, owned by the project owner
    conversation = Conversation(
        title=f"{project.title} Discussion",
        type=ConversationType.PROJECT,
        project_id=project.id,
        created_by_id=user.id,
    )
    db.add(conversation)
    await db.flush()
    await ChatService.ensure_participant(db, conversation.id, user.id, ParticipantRole.ADMIN)
    await db.commit()

    for connection in gateway.registry.connections_for_user(user.id):
        gateway.registry.join(connection.id, room_for(conversation.id))

    logger.info(f"Project {project.id} created by {user.id}")
    return await _project_out(db, project)


@router.get("/{project_id}")
async def get_project(
    project_id: str,
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(get_current_user),
):
    project = await get_project_for_member(db, project_id, user)
    return await _project_out(db, project)


# ============================================================
# COLLABORATORS
# ============================================================

@router.post("/{project_id}/collaborators", status_code=201)
async def add_collaborator(
    project_id: str,
    data: CollaboratorAdd,
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(get_current_user),
    dispatcher: JobDispatcher = Depends(get_job_dispatcher),
):
    project = (await db.execute(select(Project).where(Project.id == project_id))).scalar_one_or_none()
    if not project:
        raise NotFoundError("Project not found")
    if project.owner_id != user.id:
        raise ForbiddenError("Only the project owner can add collaborators")

    invitee = (await db.execute(select(User).where(User.email == data.email))).scalar_one_or_none()
    if not invitee:
        raise NotFoundError("User not found")
    if invitee.id == project.owner_id or await is_collaborator(db, project.id, invitee.id):
        raise BadRequestError("User is already a member of this project")

    db.add(ProjectCollaborator(project_id=project.id, user_id=invitee.id, role=data.role))
    conversation = await _default_conversation(db, project.id)
    if conversation:
        await ChatService.ensure_participant(db, conversation.id, invitee.id)
    await db.commit()

    if conversation:
        for connection in gateway.registry.connections_for_user(invitee.id):
            gateway.registry.join(connection.id, room_for(conversation.id))

    try:
        await dispatcher.send_project_invitation(
            invitee.email, project.title, user.display_name or user.email, project.id,
        )
        await dispatcher.send_project_invitation_notification(invitee.id, {
            "project_id": project.id,
            "project_name": project.title,
            "inviter_id": user.id,
        })
    except AppError as e:
        logger.warning(f"Could not queue invitation for {invitee.email}: {e}")

    return {
        "project_id": project.id,
        "user_id": invitee.id,
        "role": data.role.value,
        "conversation_id": conversation.id if conversation else None,
    }


# ============================================================
# GITHUB REPOSITORY
# ============================================================

@router.post("/{project_id}/repository")
async def connect_repository(
    project_id: str,
    data: RepositoryConnect,
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(get_current_user),
    dispatcher: JobDispatcher = Depends(get_job_dispatcher),
    client_factory: Callable[[str], GitHubClient] = Depends(get_github_client_factory),
):
    project = (await db.execute(select(Project).where(Project.id == project_id))).scalar_one_or_none()
    if not project:
        raise NotFoundError("Project not found")
    if project.owner_id != user.id and not await is_collaborator(db, project.id, user.id):
        raise ForbiddenError("You do not have permission to connect repository to this project")

    owner = (await db.execute(select(User).where(User.id == user.id))).scalar_one()
    token = owner.github_access_token
    if not token:
        raise BadRequestError("GitHub not connected. Please connect your GitHub account first.")

    try:
        async with client_factory(token) as github:
            repo = await github.get_repository(data.repo_full_name)
    except ExternalServiceError as e:
        raise BadRequestError(f"Failed to connect repository: {e}")

    repository = (await db.execute(
        select(GitHubRepository).where(GitHubRepository.project_id == project.id)
    )).scalar_one_or_none()
    if repository is None:
        repository = GitHubRepository(
            project_id=project.id,
            created_at=parse_github_time(repo.get("created_at")) or utcnow(),
        )
        db.add(repository)
    repository.repo_id = str(repo["id"])
    repository.name = repo["name"]
    repository.full_name = repo["full_name"]
    repository.url = repo.get("html_url") or f"https://github.com/{repo['full_name']}"
    repository.is_private = bool(repo.get("private"))
    repository.description = repo.get("description")
    repository.language = repo.get("language")
    repository.default_branch = repo.get("default_branch") or "main"
    repository.updated_at = parse_github_time(repo.get("updated_at")) or utcnow()
    repository.pushed_at = parse_github_time(repo.get("pushed_at"))
    await db.commit()

    sync = {"user_id": user.id, "repository_id": repository.id, "access_token": token}
    try:
        await dispatcher.schedule_github_sync(sync)
        await dispatcher.schedule_periodic_github_sync(sync)
    except AppError as e:
        logger.warning(f"Could not schedule sync for repository {repository.full_name}: {e}")

    logger.info(f"Project {project.id} connected to {repository.full_name}")
    return await _project_out(db, project)
