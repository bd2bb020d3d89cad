from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List

from llmchat.core.errors import AppError, to_http_exception
from llmchat.database import get_db
from llmchat.dependencies.auth import get_current_user
from llmchat.schemas.message import (
  DeleteResult,
  MessageCreate,
  MessageResponse,
  MessagesDelete,
  SearchResult,
  SendMessageResponse,
)
from llmchat.schemas.user import CurrentUser
from llmchat.services.embedding_service import embedding_service
from llmchat.services.message_service import MessageService
from llmchat.services.roles import require_permission
from llmchat.services.room_service import RoomService


router = APIRouter(prefix="/rooms", tags=["messages"])


@router.get("/{room_id}/messages", response_model=List[MessageResponse])
async def get_messages(
  room_id: str,
  current_user: CurrentUser = Depends(get_current_user),
  db: AsyncSession = Depends(get_db),
):
  """
  Сообщения комнаты по времени (от viewer)
  """

  try:
    role = await RoomService.get_user_role(room_id, current_user.id, db)
    require_permission(role, "view-messages")
    return await MessageService.list_messages(room_id, db)

  except AppError as e:
    raise to_http_exception(e)


@router.post("/{room_id}/messages", response_model=SendMessageResponse, status_code=status.HTTP_201_CREATED)
async def send_message(
  room_id: str,
  message_data: MessageCreate,
  current_user: CurrentUser = Depends(get_current_user),
  db: AsyncSession = Depends(get_db),
):
  """
  Отправка сообщения и ответ модели
  Ошибка модели приходит как сообщение от "Система", не как HTTP ошибка
  """

  try:
    return await MessageService.send_message(room_id, current_user, message_data.text, db)

  except AppError as e:
    raise to_http_exception(e)


@router.post("/{room_id}/messages/delete", response_model=DeleteResult)
async def delete_messages(
  room_id: str,
  data: MessagesDelete,
  current_user: CurrentUser = Depends(get_current_user),
  db: AsyncSession = Depends(get_db),
):
  try:
    deleted = await MessageService.delete_messages(room_id, current_user.id, data.ids, db)
    return DeleteResult(deleted=deleted)

  except AppError as e:
    raise to_http_exception(e)


@router.get("/{room_id}/messages/search", response_model=List[SearchResult])
async def search_messages(
  room_id: str,
  q: str = Query(min_length=1),
  limit: int = Query(default=5, ge=1, le=50),
  current_user: CurrentUser = Depends(get_current_user),
  db: AsyncSession = Depends(get_db),
):
  """Семантический поиск по сообщениям комнаты"""

  try:
    role = await RoomService.get_user_role(room_id, current_user.id, db)
    require_permission(role, "view-messages")
    return await embedding_service.search_messages(room_id, q, db, limit=limit)

  except AppError as e:
    raise to_http_exception(e)


@router.post("/{room_id}/messages/embeddings/backfill")
async def backfill_embeddings(
  room_id: str,
  current_user: CurrentUser = Depends(get_current_user),
  db: AsyncSession = Depends(get_db),
):
  """Эмбеддинги для старых сообщений (до 100 за вызов, от writer)"""

  try:
    role = await RoomService.get_user_role(room_id, current_user.id, db)
    require_permission(role, "send-message")
    processed = await embedding_service.backfill_room(room_id, db)

  except AppError as e:
    raise to_http_exception(e)

  return {"processed": processed}
