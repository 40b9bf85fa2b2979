"""Interview prep API: generate questions for an interview task, list saved preps."""
import asyncio
import logging

from fastapi import APIRouter, Depends, HTTPException
from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..auth import get_current_user_required
from ..config import settings
from ..database import get_db
from ..interview_prep import (
    QuestionGenerationError,
    extract_company_from_content,
    extract_role_from_content,
    fallback_questions,
    generate_interview_questions,
)
from ..models import InterviewPrep, Task, User
from ..schemas import (
    InterviewListResponse,
    InterviewPrepData,
    InterviewPrepRequest,
    InterviewPrepResponse,
    InterviewResponse,
    Question,
)
from ..services.cache import CacheKeys, CacheService, get_cache_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["interviews"])


@router.post("/interviews/prep", response_model=InterviewPrepResponse)
async def prepare_interview(
    req: InterviewPrepRequest,
    db: AsyncSession = Depends(get_db),
    cache: CacheService = Depends(get_cache_service),
    current_user: User = Depends(get_current_user_required),
):
    """Generate (or regenerate) questions for one of the user's interview tasks."""
    task = (
        await db.execute(select(Task).where(Task.id == req.task_id, Task.user_id == current_user.id))
    ).scalar_one_or_none()
    if task is None:
        raise HTTPException(status_code=404, detail="Task not found or access denied")
    if task.task_type != "interview":
        raise HTTPException(status_code=400, detail="Task is not an interview task")

    company = task.company or extract_company_from_content(task.title, task.details)
    role = task.role or extract_role_from_content(task.title, task.details)

    try:
        questions = await asyncio.to_thread(
            generate_interview_questions, company, role, req.interview_type or "mixed"
        )
    except QuestionGenerationError as e:
        raise HTTPException(status_code=503, detail=str(e))
    if not questions:
        questions = fallback_questions(role)

    prep = (
        await db.execute(select(InterviewPrep).where(InterviewPrep.task_id == task.id))
    ).scalar_one_or_none()
    if prep is None:
        prep = InterviewPrep(task_id=task.id, user_id=current_user.id)
        db.add(prep)
    prep.questions = questions
    prep.prep_scheduled = True
    await db.commit()
    await cache.delete(CacheKeys.user_interviews(current_user.id))

    logger.info(f"Interview prep for task {task.id}: {len(questions)} question(s)")
    return InterviewPrepResponse(data=InterviewPrepData(questions=[Question(**q) for q in questions]))


@router.get("/interviews", response_model=InterviewListResponse)
async def list_interviews(
    db: AsyncSession = Depends(get_db),
    cache: CacheService = Depends(get_cache_service),
    current_user: User = Depends(get_current_user_required),
):
    key = CacheKeys.user_interviews(current_user.id)
    cached = await cache.get_json(key)
    if isinstance(cached, list):
        try:
            interviews = [InterviewResponse.model_validate(item) for item in cached]
            return InterviewListResponse(interviews=interviews, count=len(interviews))
        except ValidationError:
            await cache.delete(key)

    rows = (
        await db.execute(
            select(InterviewPrep)
            .where(InterviewPrep.user_id == current_user.id)
            .order_by(InterviewPrep.updated_at.desc(), InterviewPrep.id.desc())
        )
    ).scalars().all()
    interviews = [InterviewResponse.model_validate(row) for row in rows]
    await cache.set_json(
        key,
        [i.model_dump(mode="json", by_alias=True) for i in interviews],
        settings.tasks_cache_ttl_s,
    )
    return InterviewListResponse(interviews=interviews, count=len(interviews))
