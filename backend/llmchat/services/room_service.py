from typing import List, Optional
import logging

from sqlalchemy import select, delete
from sqlalchemy.ext.asyncio import AsyncSession

from llmchat.core.config import settings
from llmchat.core.errors import NotFoundError
from llmchat.models.base import utcnow
from llmchat.models.message import Message
from llmchat.models.room import Room
from llmchat.models.room_role import RoomRole
from llmchat.models.user import User
from llmchat.realtime.feed import publish_change
from llmchat.schemas.room import MemberResponse, RoomSettingsUpdate
from llmchat.services.model_capabilities import sanitize_temperature
from llmchat.services.roles import ROLE_RANK, Role, parse_role, require_permission, resolve_role
from llmchat.utils.json_encoder import row_to_dict

logger = logging.getLogger(__name__)


class RoomService:

  @staticmethod
  async def create_room(
    title: str,
    created_by: str,
    db: AsyncSession,
    system_prompt: str = "",
    model: Optional[str] = None,
    temperature: Optional[float] = None,
  ) -> Room:
    """
    Создание комнаты
    Создатель сразу получает роль owner
    """

    room = Room(
      title=title.strip(),
      system_prompt=system_prompt or "",
      model=model or settings.DEFAULT_MODEL,
      temperature=settings.DEFAULT_TEMPERATURE if temperature is None else sanitize_temperature(temperature),
      created_by=created_by,
    )
    db.add(room)
    await db.flush()        # Получаем ID

    db.add(RoomRole(
      room_id=room.id,
      user_id=created_by,
      role=Role.OWNER.value,
      assigned_by=created_by,
    ))

    await db.commit()
    await db.refresh(room)

    logger.info(f"[create_room] Комната {room.id} создана пользователем {created_by}")
    return room


  @staticmethod
  async def get_room(room_id: str, db: AsyncSession) -> Room:
    """Комната по ID, иначе NotFoundError"""

    room = await db.get(Room, room_id)
    if room is None:
      raise NotFoundError(f"Комната {room_id} не найдена")
    return room


  @staticmethod
  async def refetch_room(room_id: str, db: AsyncSession) -> Room:
    """
    Повторное чтение строки из БД мимо identity map сессии
    Нужны последние сохраненные настройки, а не закэшированный объект
    """

    stmt = (
      select(Room)
      .where(Room.id == room_id)
      .execution_options(populate_existing=True)
    )
    result = await db.execute(stmt)
    room = result.scalar_one_or_none()

    if room is None:
      raise NotFoundError(f"Комната {room_id} не найдена")
    return room


  @staticmethod
  async def list_rooms(db: AsyncSession) -> List[Room]:
    stmt = select(Room).order_by(Room.created_at.desc())
    result = await db.execute(stmt)
    return result.scalars().all()


  @staticmethod
  async def get_explicit_role(room_id: str, user_id: str, db: AsyncSession) -> Optional[RoomRole]:
    stmt = select(RoomRole).where(
      RoomRole.room_id == room_id,
      RoomRole.user_id == user_id,
    )
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


  @staticmethod
  async def get_user_role(room_id: str, user_id: Optional[str], db: AsyncSession) -> Optional[Role]:
    """
    Роль пользователя в комнате
    Явная строка room_roles, иначе создатель комнаты = owner
    """

    room = await RoomService.get_room(room_id, db)
    if user_id is None:
      return None

    explicit = await RoomService.get_explicit_role(room_id, user_id, db)
    return resolve_role(
      parse_role(explicit.role) if explicit else None,
      is_creator=room.created_by == user_id,
    )


  @staticmethod
  async def list_members(room_id: str, db: AsyncSession) -> List[MemberResponse]:
    """Участники комнаты с ролями (создатель без строки - owner)"""

    room = await RoomService.get_room(room_id, db)

    stmt = (
      select(RoomRole, User)
      .join(User, User.id == RoomRole.user_id, isouter=True)
      .where(RoomRole.room_id == room_id)
    )
    result = await db.execute(stmt)

    members = []
    seen = set()
    for role_row, user in result.all():
      seen.add(role_row.user_id)
      members.append(MemberResponse(
        user_id=role_row.user_id,
        name=user.name if user else None,
        email=user.email if user else None,
        role=parse_role(role_row.role),
        is_creator=role_row.user_id == room.created_by,
      ))

    if room.created_by and room.created_by not in seen:
      creator = await db.get(User, room.created_by)
      members.append(MemberResponse(
        user_id=room.created_by,
        name=creator.name if creator else None,
        email=creator.email if creator else None,
        role=Role.OWNER,
        is_creator=True,
      ))

    members.sort(key=lambda m: ROLE_RANK[m.role], reverse=True)
    return members


  @staticmethod
  async def update_settings(
    room_id: str,
    user_id: str,
    data: RoomSettingsUpdate,
    db: AsyncSession,
  ) -> Room:
    """Изменение промпта, модели и температуры (edit-prompt, от admin)"""

    role = await RoomService.get_user_role(room_id, user_id, db)
    require_permission(role, "edit-prompt")

    room = await RoomService.get_room(room_id, db)
    changes = data.model_dump(exclude_unset=True, exclude_none=True)

    if "system_prompt" in changes:
      room.system_prompt = changes["system_prompt"].strip()
    if "model" in changes:
      room.model = changes["model"].strip()
    if "temperature" in changes:
      room.temperature = sanitize_temperature(changes["temperature"])
    room.updated_at = utcnow()

    await db.commit()
    await db.refresh(room)

    logger.info(f"[update_settings] Настройки комнаты {room_id} изменены пользователем {user_id}: {sorted(changes)}")
    await publish_change(room_id, "rooms", "UPDATE", new=row_to_dict(room))
    return room


  @staticmethod
  async def rename_room(room_id: str, user_id: str, title: str, db: AsyncSession) -> Room:
    """Переименование (rename-room, от admin)"""

    role = await RoomService.get_user_role(room_id, user_id, db)
    require_permission(role, "rename-room")

    room = await RoomService.get_room(room_id, db)
    room.title = title.strip()
    room.updated_at = utcnow()

    await db.commit()
    await db.refresh(room)

    await publish_change(room_id, "rooms", "UPDATE", new=row_to_dict(room))
    return room


  @staticmethod
  async def delete_room(room_id: str, user_id: str, db: AsyncSession) -> None:
    """Удаление комнаты вместе с сообщениями и ролями (delete-room, только owner)"""

    role = await RoomService.get_user_role(room_id, user_id, db)
    require_permission(role, "delete-room")

    room = await RoomService.get_room(room_id, db)
    old = row_to_dict(room)

    await db.execute(delete(Message).where(Message.room_id == room_id))
    await db.execute(delete(RoomRole).where(RoomRole.room_id == room_id))
    await db.delete(room)
    await db.commit()

    logger.info(f"[delete_room] Комната {room_id} удалена пользователем {user_id}")
    await publish_change(room_id, "rooms", "DELETE", old=old)
