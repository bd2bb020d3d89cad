from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from llmchat.core.errors import AppError, NotFoundError, to_http_exception
from llmchat.database import get_db
from llmchat.dependencies.auth import get_current_user
from llmchat.models.user import User
from llmchat.schemas.role import RoleAssign, RoomRoleResponse
from llmchat.schemas.user import CurrentUser
from llmchat.services.role_assignment import RoleAssignmentService
from llmchat.services.room_service import RoomService


router = APIRouter(prefix="/rooms", tags=["roles"])


@router.put("/{room_id}/roles/{user_id}", response_model=RoomRoleResponse)
async def assign_role(
  room_id: str,
  user_id: str,
  data: RoleAssign,
  current_user: CurrentUser = Depends(get_current_user),
  db: AsyncSession = Depends(get_db),
):
  """
  Назначение роли
  owner - любую, admin - любую кроме owner
  """

  try:
    # 1. Роль назначающего (заодно проверка, что комната есть)
    assigner_role = await RoomService.get_user_role(room_id, current_user.id, db)

    # 2. Назначать можно только пользователю, который уже входил в систему
    if await db.get(User, user_id) is None:
      raise NotFoundError(f"Пользователь {user_id} не найден")

    # 3. Upsert роли
    return await RoleAssignmentService.assign(
      room_id=room_id,
      user_id=user_id,
      new_role=data.role,
      assigner_role=assigner_role,
      acting_user_id=current_user.id,
      db=db,
    )

  except AppError as e:
    raise to_http_exception(e)


@router.delete("/{room_id}/roles/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_role(
  room_id: str,
  user_id: str,
  current_user: CurrentUser = Depends(get_current_user),
  db: AsyncSession = Depends(get_db),
):
  """Удаление роли (только owner)"""

  try:
    assigner_role = await RoomService.get_user_role(room_id, current_user.id, db)
    removed = await RoleAssignmentService.remove(room_id, user_id, assigner_role, db)
    if not removed:
      raise NotFoundError(f"У пользователя {user_id} нет роли в комнате {room_id}")

  except AppError as e:
    raise to_http_exception(e)
