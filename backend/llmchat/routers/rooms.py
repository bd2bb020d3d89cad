from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List

from llmchat.core.errors import AppError, to_http_exception
from llmchat.database import get_db
from llmchat.dependencies.auth import get_current_user
from llmchat.schemas.room import (
  MemberResponse,
  RoomCreate,
  RoomRename,
  RoomResponse,
  RoomSettingsUpdate,
)
from llmchat.schemas.user import CurrentUser
from llmchat.services.roles import require_permission
from llmchat.services.room_service import RoomService


router = APIRouter(prefix="/rooms", tags=["rooms"])


@router.post("/", response_model=RoomResponse, status_code=status.HTTP_201_CREATED)
async def create_room(
  room_data: RoomCreate,
  current_user: CurrentUser = Depends(get_current_user),
  db: AsyncSession = Depends(get_db),
):
  """
  Создание комнаты, создатель становится owner
  """

  return await RoomService.create_room(
    title=room_data.title,
    created_by=current_user.id,
    db=db,
    system_prompt=room_data.system_prompt,
    model=room_data.model,
    temperature=room_data.temperature,
  )


@router.get("/", response_model=List[RoomResponse])
async def list_rooms(
  current_user: CurrentUser = Depends(get_current_user),
  db: AsyncSession = Depends(get_db),
):
  """Список всех комнат, новые сверху"""

  return await RoomService.list_rooms(db)


@router.get("/{room_id}", response_model=RoomResponse)
async def get_room(
  room_id: str,
  current_user: CurrentUser = Depends(get_current_user),
  db: AsyncSession = Depends(get_db),
):
  try:
    role = await RoomService.get_user_role(room_id, current_user.id, db)
    require_permission(role, "view-messages")
    return await RoomService.get_room(room_id, db)

  except AppError as e:
    raise to_http_exception(e)


@router.patch("/{room_id}/settings", response_model=RoomResponse)
async def update_room_settings(
  room_id: str,
  data: RoomSettingsUpdate,
  current_user: CurrentUser = Depends(get_current_user),
  db: AsyncSession = Depends(get_db),
):
  """
  Промпт, модель, температура (от admin)
  """

  try:
    return await RoomService.update_settings(room_id, current_user.id, data, db)
  except AppError as e:
    raise to_http_exception(e)


@router.patch("/{room_id}/title", response_model=RoomResponse)
async def rename_room(
  room_id: str,
  data: RoomRename,
  current_user: CurrentUser = Depends(get_current_user),
  db: AsyncSession = Depends(get_db),
):
  try:
    return await RoomService.rename_room(room_id, current_user.id, data.title, db)
  except AppError as e:
    raise to_http_exception(e)


@router.delete("/{room_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_room(
  room_id: str,
  current_user: CurrentUser = Depends(get_current_user),
  db: AsyncSession = Depends(get_db),
):
  """Удаление комнаты (только owner)"""

  try:
    await RoomService.delete_room(room_id, current_user.id, db)
  except AppError as e:
    raise to_http_exception(e)


@router.get("/{room_id}/members", response_model=List[MemberResponse])
async def list_members(
  room_id: str,
  current_user: CurrentUser = Depends(get_current_user),
  db: AsyncSession = Depends(get_db),
):
  try:
    role = await RoomService.get_user_role(room_id, current_user.id, db)
    require_permission(role, "view-messages")
    return await RoomService.list_members(room_id, db)

  except AppError as e:
    raise to_http_exception(e)
