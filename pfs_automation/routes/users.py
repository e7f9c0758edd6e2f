from typing import List, Optional
from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession
from .. import crud
from ..db import get_db
from ..schemas import USER_TYPE_PATTERN, MessageResponse, UserCreate, UserResponse, UserUpdate
from .setup import require_setup_complete

router = APIRouter(
    prefix="/users",
    tags=["users"],
    dependencies=[Depends(require_setup_complete)],
)


@router.get("", response_model=List[UserResponse])
async def get_users(
    user_type: Optional[str] = Query(None, pattern=USER_TYPE_PATTERN),
    active_only: bool = Query(False),
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=1000),
    db: AsyncSession = Depends(get_db)
):
    users = await crud.get_users(db, user_type=user_type, active_only=active_only, skip=skip, limit=limit)
    return [UserResponse.model_validate(user) for user in users]


@router.get("/project-managers", response_model=List[UserResponse])
async def get_project_managers(db: AsyncSession = Depends(get_db)):
    """Active users who can be put in charge of a project"""
    users = await crud.get_users(db, user_type="project_manager", active_only=True, limit=1000)
    return [UserResponse.model_validate(user) for user in users]


@router.get("/{user_id}", response_model=UserResponse)
async def get_user(
    user_id: int,
    db: AsyncSession = Depends(get_db)
):
    user = await crud.get_user(db, user_id)
    return UserResponse.model_validate(user)


@router.post("", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
async def create_user(
    user: UserCreate,
    db: AsyncSession = Depends(get_db)
):
    """Create a new user account"""
    db_user = await crud.create_user(db, user)
    return UserResponse.model_validate(db_user)


@router.put("/{user_id}", response_model=UserResponse)
async def update_user(
    user_id: int,
    user_update: UserUpdate,
    db: AsyncSession = Depends(get_db)
):
    """Update a user; send is_active to enable or disable the account"""
    db_user = await crud.update_user(db, user_id, user_update)
    return UserResponse.model_validate(db_user)


@router.delete("/{user_id}", response_model=MessageResponse)
async def delete_user(
    user_id: int,
    db: AsyncSession = Depends(get_db)
):
    await crud.delete_user(db, user_id)
    return MessageResponse(message="User deleted successfully")
