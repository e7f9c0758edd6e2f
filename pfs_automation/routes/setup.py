from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession
from .. import crud
from ..db import get_db
from ..schemas import SetupRequest, SetupResponse, SetupStatusResponse, UserResponse

router = APIRouter(prefix="/setup", tags=["setup"])


async def require_setup_complete(db: AsyncSession = Depends(get_db)) -> None:
    """Block the rest of the API until the setup wizard has run"""
    if not await crud.is_setup_complete(db):
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "error": "Application setup required",
                "setupRequired": True,
                "message": "Please complete the initial setup at /setup",
            },
        )


@router.get("/status", response_model=SetupStatusResponse)
async def get_setup_status(db: AsyncSession = Depends(get_db)):
    """Check if setup is complete"""
    setup_status = await crud.get_setup_status(db)
    if not setup_status:
        setup_status = await crud.ensure_setup_status(db)
    return SetupStatusResponse(
        is_setup_complete=setup_status.is_setup_complete,
        setup_completed_at=setup_status.setup_completed_at,
    )


@router.post("/complete", response_model=SetupResponse, status_code=status.HTTP_201_CREATED)
async def complete_setup(
    request: SetupRequest,
    db: AsyncSession = Depends(get_db)
):
    """Complete initial setup by creating the administrator"""
    if not await crud.get_setup_status(db):
        await crud.ensure_setup_status(db)
    admin = await crud.complete_setup(db, request)
    return SetupResponse(
        message="Setup completed successfully",
        user=UserResponse.model_validate(admin),
    )
