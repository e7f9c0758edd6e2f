from typing import List
from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession
from .. import crud
from ..db import get_db
from ..schemas import (
    AncestorResponse, HierarchyNodeResponse, ReorderRequest, ReorderResponse,
    SubtaskCreate, TaskDeleteResponse, TaskResponse, TaskStats, TaskTree, TaskUpdate
)
from .setup import require_setup_complete

router = APIRouter(
    prefix="/tasks",
    tags=["tasks"],
    dependencies=[Depends(require_setup_complete)],
)


@router.get("/{task_id}", response_model=TaskResponse)
async def get_task(
    task_id: int,
    db: AsyncSession = Depends(get_db)
):
    """Get a specific task by ID"""
    task = await crud.get_task(db, task_id)
    return TaskResponse.model_validate(task)


@router.put("/{task_id}", response_model=TaskResponse)
async def update_task(
    task_id: int,
    task_update: TaskUpdate,
    db: AsyncSession = Depends(get_db)
):
    """Update a specific task"""
    task = await crud.update_task(db, task_id, task_update)
    return TaskResponse.model_validate(task)


@router.delete("/{task_id}", response_model=TaskDeleteResponse)
async def delete_task(
    task_id: int,
    db: AsyncSession = Depends(get_db)
):
    """Delete a task and all of its subtasks"""
    deleted = await crud.delete_task(db, task_id)
    return TaskDeleteResponse(message="Task deleted successfully", deleted_ids=deleted)


@router.post("/{task_id}/subtasks", response_model=TaskResponse, status_code=status.HTTP_201_CREATED)
async def create_subtask(
    task_id: int,
    subtask: SubtaskCreate,
    db: AsyncSession = Depends(get_db)
):
    """Create a subtask under an existing task"""
    task = await crud.create_subtask(db, task_id, subtask)
    return TaskResponse.model_validate(task)


@router.put("/{task_id}/subtasks/reorder", response_model=ReorderResponse)
async def reorder_subtasks(
    task_id: int,
    request: ReorderRequest,
    db: AsyncSession = Depends(get_db)
):
    """Reorder the direct subtasks of a task"""
    ids = await crud.reorder_subtasks(db, task_id, request.ids)
    return ReorderResponse(message="Subtasks reordered successfully", ids=ids)


@router.get("/{task_id}/ancestors", response_model=List[AncestorResponse])
async def get_task_ancestors(
    task_id: int,
    db: AsyncSession = Depends(get_db)
):
    """Ancestors from the immediate parent up to the main task"""
    forest = await crud.load_task_forest(db, task_id)
    return [AncestorResponse(**row) for row in crud.ancestor_rows(forest, task_id)]


@router.get("/{task_id}/hierarchy", response_model=List[HierarchyNodeResponse])
async def get_task_hierarchy(
    task_id: int,
    db: AsyncSession = Depends(get_db)
):
    """The task and every descendant, ordered by level then id"""
    forest = await crud.load_task_forest(db, task_id)
    return [HierarchyNodeResponse.model_validate(node) for node in forest.hierarchy(task_id)]


@router.get("/{task_id}/tree", response_model=TaskTree)
async def get_task_tree(
    task_id: int,
    db: AsyncSession = Depends(get_db)
):
    forest = await crud.load_task_forest(db, task_id)
    return TaskTree.model_validate(forest.tree(task_id))


@router.get("/{task_id}/stats", response_model=TaskStats)
async def get_task_stats(
    task_id: int,
    db: AsyncSession = Depends(get_db)
):
    """Total sold days, completion and subtask counts for the task's subtree"""
    forest = await crud.load_task_forest(db, task_id)
    return TaskStats(**forest.stats(task_id))
