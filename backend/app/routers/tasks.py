"""Tasks API: cached dashboard list with filters, status/field updates, delete."""
import logging
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import ValidationError
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..auth import get_current_user_required
from ..config import settings
from ..database import get_db
from ..models import Task, User
from ..schemas import (
    TaskListResponse,
    TaskResponse,
    TaskStatus,
    TaskType,
    TaskUpdateRequest,
    TaskUpdateResponse,
)
from ..services.cache import CacheKeys, CacheService, get_cache_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["tasks"])


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


async def _load_tasks(db: AsyncSession, user_id: int, not_before: Optional[datetime]) -> List[TaskResponse]:
    q = select(Task).where(Task.user_id == user_id)
    if not_before is not None:
        q = q.where(or_(Task.deadline.is_(None), Task.deadline >= not_before))
    q = q.order_by(Task.priority.desc(), Task.created_at.desc(), Task.id.desc())
    rows = (await db.execute(q)).scalars().all()
    return [TaskResponse.model_validate(row) for row in rows]


async def _cached_upcoming_tasks(
    db: AsyncSession, cache: CacheService, user_id: int, now: datetime
) -> List[TaskResponse]:
    """Tasks with no deadline or a future one, read through the per-user cache."""
    key = CacheKeys.user_tasks(user_id)
    cached = await cache.get_json(key)
    if isinstance(cached, list):
        try:
            tasks = [TaskResponse.model_validate(item) for item in cached]
            return [t for t in tasks if t.deadline is None or t.deadline >= now]
        except ValidationError:
            logger.warning(f"Unusable cached task list for user {user_id}, reloading")
            await cache.delete(key)

    tasks = await _load_tasks(db, user_id, now)
    await cache.set_json(
        key,
        [t.model_dump(mode="json", by_alias=True) for t in tasks],
        settings.tasks_cache_ttl_s,
    )
    return tasks


def _matches(task: TaskResponse, needle: str) -> bool:
    haystack = " ".join(filter(None, [task.title, task.details, task.company, task.role])).lower()
    return needle in haystack


@router.get("/tasks", response_model=TaskListResponse)
async def list_tasks(
    status: Optional[TaskStatus] = None,
    task_type: Optional[TaskType] = None,
    q: Optional[str] = Query(None, max_length=200),
    include_overdue: bool = False,
    db: AsyncSession = Depends(get_db),
    cache: CacheService = Depends(get_cache_service),
    current_user: User = Depends(get_current_user_required),
):
    """Dashboard list, most urgent first. Overdue tasks are hidden unless include_overdue=true."""
    if include_overdue:
        tasks = await _load_tasks(db, current_user.id, None)
    else:
        tasks = await _cached_upcoming_tasks(db, cache, current_user.id, _utcnow())

    if status:
        tasks = [t for t in tasks if t.status == status]
    if task_type:
        tasks = [t for t in tasks if t.task_type == task_type]
    needle = (q or "").strip().lower()
    if needle:
        tasks = [t for t in tasks if _matches(t, needle)]
    return TaskListResponse(tasks=tasks, count=len(tasks))


async def _get_owned_task(db: AsyncSession, task_id: int, user_id: int) -> Task:
    task = (
        await db.execute(select(Task).where(Task.id == task_id, Task.user_id == user_id))
    ).scalar_one_or_none()
    if task is None:
        raise HTTPException(status_code=404, detail="Task not found or access denied")
    return task


@router.patch("/tasks/{task_id}", response_model=TaskUpdateResponse)
async def update_task(
    task_id: int,
    req: TaskUpdateRequest,
    db: AsyncSession = Depends(get_db),
    cache: CacheService = Depends(get_cache_service),
    current_user: User = Depends(get_current_user_required),
):
    """Update status (drag and drop) and optionally priority, title or details."""
    task = await _get_owned_task(db, task_id, current_user.id)
    task.status = req.status
    if req.priority is not None:
        task.priority = req.priority
    if req.title is not None:
        task.title = req.title.strip()
    if req.details is not None:
        task.details = req.details
    await db.commit()
    await db.refresh(task)
    await cache.clear_user_cache(current_user.id)
    logger.info(f"Task {task_id} updated by user {current_user.id}: status={task.status}")
    return TaskUpdateResponse(data=TaskResponse.model_validate(task))


@router.delete("/tasks/{task_id}")
async def delete_task(
    task_id: int,
    db: AsyncSession = Depends(get_db),
    cache: CacheService = Depends(get_cache_service),
    current_user: User = Depends(get_current_user_required),
):
    task = await _get_owned_task(db, task_id, current_user.id)
    await db.delete(task)
    await db.commit()
    await cache.clear_user_cache(current_user.id)
    logger.info(f"Task {task_id} deleted by user {current_user.id}")
    return {"success": True, "message": "Task deleted"}
