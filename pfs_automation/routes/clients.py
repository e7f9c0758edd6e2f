from typing import List
from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession
from .. import crud
from ..db import get_db
from ..schemas import ClientCreate, ClientResponse
from .setup import require_setup_complete

router = APIRouter(
    prefix="/clients",
    tags=["clients"],
    dependencies=[Depends(require_setup_complete)],
)


@router.post("", response_model=ClientResponse, status_code=status.HTTP_201_CREATED)
async def create_client(
    client: ClientCreate,
    db: AsyncSession = Depends(get_db)
):
    """Create a new client"""
    db_client = await crud.create_client(db, client)
    return ClientResponse.model_validate(db_client)


@router.get("", response_model=List[ClientResponse])
async def get_clients(
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=1000),
    db: AsyncSession = Depends(get_db)
):
    clients = await crud.get_clients(db, skip=skip, limit=limit)
    return [ClientResponse.model_validate(client) for client in clients]
