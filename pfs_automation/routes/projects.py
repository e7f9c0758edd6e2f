from datetime import date
from typing import List, Optional
from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession
from .. import crud
from ..db import get_db
from ..schemas import (
    MessageResponse, ProjectCreate, ProjectPlan, ProjectResponse, ProjectUserCreate,
    ProjectUserResponse, ReorderRequest, ReorderResponse, StageCreate, StageResponse,
    TaskCreate, TaskFilter, TaskResponse, TaskStats
)
from .setup import require_setup_complete

router = APIRouter(
    prefix="/projects",
    tags=["projects"],
    dependencies=[Depends(require_setup_complete)],
)


def _parse_day(value: Optional[str], name: str) -> Optional[date]:
    if not value:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid {name} format. Use YYYY-MM-DD")


@router.post("", response_model=ProjectResponse, status_code=status.HTTP_201_CREATED)
async def create_project(
    project: ProjectCreate,
    db: AsyncSession = Depends(get_db)
):
    """Create a new project"""
    db_project = await crud.create_project(db, project)
    return ProjectResponse.model_validate(db_project)


@router.get("", response_model=List[ProjectResponse])
async def get_projects(
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=1000),
    db: AsyncSession = Depends(get_db)
):
    """Get all projects with pagination"""
    projects = await crud.get_projects(db, skip=skip, limit=limit)
    return [ProjectResponse.model_validate(project) for project in projects]


@router.get("/{project_id}", response_model=ProjectResponse)
async def get_project(
    project_id: int,
    db: AsyncSession = Depends(get_db)
):
    project = await crud.get_project(db, project_id)
    return ProjectResponse.model_validate(project)


@router.get("/{project_id}/plan", response_model=ProjectPlan)
async def get_project_plan(
    project_id: int,
    db: AsyncSession = Depends(get_db)
):
    """Stages with nested task trees plus the tasks without a stage"""
    plan = await crud.get_project_plan(db, project_id)
    return ProjectPlan.model_validate(plan, from_attributes=True)


@router.get("/{project_id}/task-stats", response_model=List[TaskStats])
async def get_main_task_stats(
    project_id: int,
    db: AsyncSession = Depends(get_db)
):
    """Aggregated subtask statistics for every main task of the project"""
    await crud.get_project(db, project_id)
    forest = await crud.load_project_forest(db, project_id)
    return [TaskStats(**row) for row in forest.main_task_stats()]


# Assignments

@router.get("/{project_id}/users", response_model=List[ProjectUserResponse])
async def get_project_users(
    project_id: int,
    db: AsyncSession = Depends(get_db)
):
    assignments = await crud.get_project_users(db, project_id)
    return [ProjectUserResponse.model_validate(assignment) for assignment in assignments]


@router.post("/{project_id}/users", response_model=ProjectUserResponse, status_code=status.HTTP_201_CREATED)
async def assign_project_user(
    project_id: int,
    assignment: ProjectUserCreate,
    db: AsyncSession = Depends(get_db)
):
    """Assign a user to the project team"""
    db_assignment = await crud.assign_project_user(db, project_id, assignment)
    return ProjectUserResponse.model_validate(db_assignment)


@router.delete("/{project_id}/users/{user_id}", response_model=MessageResponse)
async def unassign_project_user(
    project_id: int,
    user_id: int,
    db: AsyncSession = Depends(get_db)
):
    await crud.unassign_project_user(db, project_id, user_id)
    return MessageResponse(message="User removed from project")


# Stages

@router.post("/{project_id}/stages", response_model=StageResponse, status_code=status.HTTP_201_CREATED)
async def create_stage(
    project_id: int,
    stage: StageCreate,
    db: AsyncSession = Depends(get_db)
):
    """Append a stage to the project"""
    db_stage = await crud.create_stage(db, project_id, stage)
    return StageResponse.model_validate(db_stage)


@router.get("/{project_id}/stages", response_model=List[StageResponse])
async def get_stages(
    project_id: int,
    db: AsyncSession = Depends(get_db)
):
    await crud.get_project(db, project_id)
    stages = await crud.get_stages(db, project_id)
    return [StageResponse.model_validate(stage) for stage in stages]


@router.put("/{project_id}/stages/reorder", response_model=ReorderResponse)
async def reorder_stages(
    project_id: int,
    request: ReorderRequest,
    db: AsyncSession = Depends(get_db)
):
    ids = await crud.reorder_stages(db, project_id, request.ids)
    return ReorderResponse(message="Stages reordered successfully", ids=ids)


# Tasks

@router.post("/{project_id}/tasks", response_model=TaskResponse, status_code=status.HTTP_201_CREATED)
async def create_task(
    project_id: int,
    task: TaskCreate,
    db: AsyncSession = Depends(get_db)
):
    """Create a new task; set parent_task_id to create a subtask"""
    db_task = await crud.create_task(db, project_id, task)
    return TaskResponse.model_validate(db_task)


@router.get("/{project_id}/tasks", response_model=List[TaskResponse])
async def get_project_tasks(
    project_id: int,
    task_status: Optional[str] = Query(None, alias="status", pattern="^(todo|in_progress|review|blocked|done)$"),
    priority: Optional[str] = Query(None, pattern="^(low|medium|high|urgent)$"),
    stage_id: Optional[int] = Query(None),
    main_only: bool = Query(False),
    due_before: Optional[str] = Query(None),
    due_after: Optional[str] = Query(None),
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=1000),
    db: AsyncSession = Depends(get_db)
):
    """Filter the tasks of a project by various criteria"""
    await crud.get_project(db, project_id)
    task_filter = TaskFilter(
        status=task_status,
        priority=priority,
        stage_id=stage_id,
        main_only=main_only,
        due_before=_parse_day(due_before, "due_before"),
        due_after=_parse_day(due_after, "due_after"),
    )
    tasks = await crud.get_tasks(db, project_id, task_filter, skip=skip, limit=limit)
    return [TaskResponse.model_validate(task) for task in tasks]


@router.put("/{project_id}/tasks/reorder", response_model=ReorderResponse)
async def reorder_unstaged_tasks(
    project_id: int,
    request: ReorderRequest,
    db: AsyncSession = Depends(get_db)
):
    """Reorder the main tasks of the project that have no stage"""
    ids = await crud.reorder_unstaged_tasks(db, project_id, request.ids)
    return ReorderResponse(message="Tasks reordered successfully", ids=ids)
