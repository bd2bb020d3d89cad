import logging
from typing import Optional

from sqlalchemy import select, update, delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from llmchat.core.errors import ConflictError, ForbiddenError
from llmchat.models.base import utcnow
from llmchat.models.room import Room
from llmchat.models.room_role import RoomRole
from llmchat.realtime.feed import publish_change
from llmchat.services.roles import Role, can_assign_role, can_remove_role, parse_role, resolve_role
from llmchat.utils.json_encoder import row_to_dict

logger = logging.getLogger(__name__)


class RoleAssignmentService:
  """
  Назначение ролей в комнате

  CHECK_EXISTING -> есть строка -> UPDATE
                 -> нет строки -> INSERT -> конфликт уникальности -> UPDATE (один раз)
  """

  @staticmethod
  async def _find_existing(room_id: str, user_id: str, db: AsyncSession) -> Optional[RoomRole]:
    stmt = select(RoomRole).where(
      RoomRole.room_id == room_id,
      RoomRole.user_id == user_id,
    )
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


  @staticmethod
  async def _update_role(
    room_id: str,
    user_id: str,
    new_role: Role,
    acting_user_id: Optional[str],
    db: AsyncSession,
  ) -> RoomRole:
    await db.execute(
      update(RoomRole)
      .where(
        RoomRole.room_id == room_id,
        RoomRole.user_id == user_id,
      )
      .values(
        role=new_role.value,
        assigned_by=acting_user_id,
        updated_at=utcnow(),
      )
    )
    await db.commit()

    stmt = (
      select(RoomRole)
      .where(RoomRole.room_id == room_id, RoomRole.user_id == user_id)
      .execution_options(populate_existing=True)
    )
    result = await db.execute(stmt)
    row = result.scalar_one_or_none()

    if row is None:
      # Строку удалили между вставкой и обновлением
      raise ConflictError(f"Роль пользователя {user_id} в комнате {room_id} изменена параллельно")
    return row


  @staticmethod
  async def assign(
    room_id: str,
    user_id: str,
    new_role: Role,
    assigner_role: Optional[Role],
    acting_user_id: Optional[str],
    db: AsyncSession,
  ) -> RoomRole:
    """
    Назначить или изменить роль
    После успешного выхода в БД ровно одна строка (room_id, user_id) с new_role
    """

    new_role = Role(new_role)
    if not can_assign_role(assigner_role, new_role):
      raise ForbiddenError("assign-role", f"Роль {assigner_role.value if assigner_role else 'нет'} не может назначить {new_role.value}")

    # 1. Есть ли уже строка
    existing = await RoleAssignmentService._find_existing(room_id, user_id, db)

    # 2. Текущая роль цели (явная строка, иначе создатель = owner) тоже должна быть в зоне назначающего
    room = await db.get(Room, room_id)
    current_role = resolve_role(
      parse_role(existing.role) if existing else None,
      is_creator=room is not None and room.created_by == user_id,
    )
    if current_role is not None and not can_assign_role(assigner_role, current_role):
      raise ForbiddenError(
        "assign-role",
        f"Роль {assigner_role.value if assigner_role else 'нет'} не может менять роль {current_role.value}",
      )

    if existing is not None:
      # 3a. Обновляем существующую
      logger.info(f"[assign] Роль {user_id} в комнате {room_id}: {existing.role} -> {new_role.value}")
      row = await RoleAssignmentService._update_role(room_id, user_id, new_role, acting_user_id, db)
      event_type = "UPDATE"

    else:
      # 3b. Вставляем новую
      try:
        row = RoomRole(
          room_id=room_id,
          user_id=user_id,
          role=new_role.value,
          assigned_by=acting_user_id,
        )
        db.add(row)
        await db.commit()
        await db.refresh(row)
        event_type = "INSERT"
        logger.info(f"[assign] Новая роль {new_role.value} для {user_id} в комнате {room_id}")

      except IntegrityError:
        # Строку вставили между проверкой и вставкой - обновляем ее
        await db.rollback()
        logger.info(f"[assign] Гонка при назначении роли {user_id} в комнате {room_id}, обновляем")
        row = await RoleAssignmentService._update_role(room_id, user_id, new_role, acting_user_id, db)
        event_type = "UPDATE"

    await publish_change(room_id, "room_roles", event_type, new=row_to_dict(row))
    return row


  @staticmethod
  async def remove(
    room_id: str,
    user_id: str,
    assigner_role: Optional[Role],
    db: AsyncSession,
  ) -> bool:
    """Удаление роли (только owner)"""

    if not can_remove_role(assigner_role):
      raise ForbiddenError("remove-role", "Только владелец может удалять роли")

    result = await db.execute(
      delete(RoomRole).where(
        RoomRole.room_id == room_id,
        RoomRole.user_id == user_id,
      )
    )
    await db.commit()

    removed = result.rowcount > 0
    if removed:
      logger.info(f"[remove] Роль пользователя {user_id} в комнате {room_id} удалена")
      await publish_change(room_id, "room_roles", "DELETE", old={"room_id": room_id, "user_id": user_id})
    return removed
