from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from .. import crud
from ..db import get_db
from ..schemas import MessageResponse, ReorderRequest, ReorderResponse, StageResponse, StageUpdate
from .setup import require_setup_complete

router = APIRouter(
    prefix="/stages",
    tags=["stages"],
    dependencies=[Depends(require_setup_complete)],
)


@router.get("/{stage_id}", response_model=StageResponse)
async def get_stage(
    stage_id: int,
    db: AsyncSession = Depends(get_db)
):
    stage = await crud.get_stage(db, stage_id)
    return StageResponse.model_validate(stage)


@router.put("/{stage_id}", response_model=StageResponse)
async def update_stage(
    stage_id: int,
    stage_update: StageUpdate,
    db: AsyncSession = Depends(get_db)
):
    """Rename, reschedule or complete a stage"""
    stage = await crud.update_stage(db, stage_id, stage_update)
    return StageResponse.model_validate(stage)


@router.delete("/{stage_id}", response_model=MessageResponse)
async def delete_stage(
    stage_id: int,
    db: AsyncSession = Depends(get_db)
):
    """Delete a stage that no longer holds tasks"""
    await crud.delete_stage(db, stage_id)
    return MessageResponse(message="Stage deleted successfully")


@router.put("/{stage_id}/tasks/reorder", response_model=ReorderResponse)
async def reorder_stage_tasks(
    stage_id: int,
    request: ReorderRequest,
    db: AsyncSession = Depends(get_db)
):
    """Reorder the main tasks of a stage"""
    ids = await crud.reorder_stage_tasks(db, stage_id, request.ids)
    return ReorderResponse(message="Tasks reordered successfully", ids=ids)
