from typing import List, Optional
import logging

from sqlalchemy import select, delete
from sqlalchemy.ext.asyncio import AsyncSession

from llmchat.core.config import settings
from llmchat.core.errors import InvalidRequestError, UpstreamError
from llmchat.models.message import Message, LLM_SENDER_NAME, SYSTEM_SENDER_NAME
from llmchat.realtime.feed import publish_change
from llmchat.schemas.message import MessageResponse, SendMessageResponse
from llmchat.schemas.user import CurrentUser
from llmchat.services.completion_service import CompletionOrchestrator, completion_orchestrator
from llmchat.services.embedding_service import embedding_service
from llmchat.services.model_capabilities import HistoryEntry
from llmchat.services.room_service import RoomService
from llmchat.services.roles import require_permission
from llmchat.utils.json_encoder import row_to_dict

logger = logging.getLogger(__name__)


LLM_ERROR_PREFIX = "Ошибка получения ответа от LLM"


def message_payload(message: Message) -> dict:
  """Строка сообщения для ленты изменений (без вектора)"""

  return row_to_dict(message, exclude=("embedding",))


class MessageService:

  @staticmethod
  async def create_message(
    room_id: str,
    sender_id: Optional[str],
    sender_name: str,
    text: str,
    db: AsyncSession,
  ) -> Optional[Message]:
    """
    Создание и сохранение сообщения, публикация в ленту
    """

    try:
      message = Message(
        room_id=room_id,
        sender_id=sender_id,
        sender_name=sender_name,
        text=text,
      )

      db.add(message)
      await db.commit()
      await db.refresh(message)

    except Exception as e:
      await db.rollback()
      logger.error(f"[create_message] Ошибка создания сообщения от {sender_name} в комнате {room_id}: {e}")
      return None

    await publish_change(room_id, "messages", "INSERT", new=message_payload(message))
    return message


  @staticmethod
  async def list_messages(room_id: str, db: AsyncSession) -> List[Message]:
    """Все сообщения комнаты по логическому времени"""

    stmt = (
      select(Message)
      .where(Message.room_id == room_id)
      .order_by(Message.timestamp.asc(), Message.created_at.asc())
    )
    result = await db.execute(stmt)
    return result.scalars().all()


  @staticmethod
  async def get_recent_history(
    room_id: str,
    db: AsyncSession,
    limit: Optional[int] = None,
  ) -> List[HistoryEntry]:
    """
    Последние N сообщений для контекста модели
    Выбираем самые новые, возвращаем в хронологическом порядке
    """

    stmt = (
      select(Message.sender_name, Message.text)
      .where(Message.room_id == room_id)
      .order_by(Message.timestamp.desc(), Message.created_at.desc())
      .limit(limit or settings.HISTORY_WINDOW)
    )
    result = await db.execute(stmt)
    rows = result.all()

    return [HistoryEntry(sender_name=row.sender_name, text=row.text) for row in reversed(rows)]


  @staticmethod
  async def send_message(
    room_id: str,
    user: CurrentUser,
    text: str,
    db: AsyncSession,
    orchestrator: Optional[CompletionOrchestrator] = None,
  ) -> SendMessageResponse:
    """
    Отправка сообщения и получение ответа модели

    1. Проверка роли (writer+)
    2. Сохраняем сообщение пользователя
    3. Эмбеддинг - в фоне, ответ его не ждет
    4. Перечитываем настройки комнаты из БД
    5. Запрос к модели
    6. Сохраняем ответ или системное сообщение с ошибкой

    Ошибка модели не откатывает сообщение пользователя
    """

    orchestrator = orchestrator or completion_orchestrator

    text = (text or "").strip()
    if not text:
      raise InvalidRequestError("Пустое сообщение")

    # 1. Проверка прав
    role = await RoomService.get_user_role(room_id, user.id, db)
    require_permission(role, "send-message")

    # 2. Сообщение пользователя
    message = await MessageService.create_message(
      room_id=room_id,
      sender_id=user.id,
      sender_name=user.display_name,
      text=text,
      db=db,
    )

    if not message:
      raise ValueError("MESSAGE_CREATE_FAILED")

    # 3. Эмбеддинг (fire-and-forget)
    embedding_service.schedule(message.id, text)

    # 4. Актуальные настройки, а не закэшированные у клиента
    room = await RoomService.refetch_room(room_id, db)
    history = await MessageService.get_recent_history(room_id, db)

    # 5. Запрос к модели
    try:
      reply_text = await orchestrator.complete(
        system_prompt=room.system_prompt,
        model=room.model,
        temperature=room.temperature,
        history=history,
      )
      sender_name = LLM_SENDER_NAME

    except UpstreamError as e:
      logger.error(f"[send_message] Ошибка LLM в комнате {room_id}: {e.detail}")
      reply_text = f"{LLM_ERROR_PREFIX}: {e.detail}"
      sender_name = SYSTEM_SENDER_NAME

    except Exception as e:
      logger.error(f"[send_message] Неожиданная ошибка LLM в комнате {room_id}: {e!r}")
      reply_text = f"{LLM_ERROR_PREFIX}: {e}"
      sender_name = SYSTEM_SENDER_NAME

    # 6. Ответ модели или ошибка как сообщение системы
    reply = await MessageService.create_message(
      room_id=room_id,
      sender_id=None,
      sender_name=sender_name,
      text=reply_text,
      db=db,
    )

    if reply:
      embedding_service.schedule(reply.id, reply_text)
    else:
      logger.error(f"[send_message] Ответ не сохранен, сообщение пользователя {message.id} остается")

    return SendMessageResponse(
      message=MessageResponse.model_validate(message),
      reply=MessageResponse.model_validate(reply) if reply else None,
    )


  @staticmethod
  async def delete_messages(
    room_id: str,
    user_id: str,
    message_ids: List[str],
    db: AsyncSession,
  ) -> List[str]:
    """Массовое удаление по списку ID (delete-messages, от writer)"""

    role = await RoomService.get_user_role(room_id, user_id, db)
    require_permission(role, "delete-messages")

    stmt = select(Message.id).where(
      Message.room_id == room_id,
      Message.id.in_(message_ids),
    )
    result = await db.execute(stmt)
    existing = list(result.scalars().all())

    if not existing:
      return []

    await db.execute(delete(Message).where(Message.id.in_(existing)))
    await db.commit()

    logger.info(f"[delete_messages] Удалено {len(existing)} сообщений в комнате {room_id} пользователем {user_id}")

    for message_id in existing:
      await publish_change(room_id, "messages", "DELETE", old={"id": message_id, "room_id": room_id})

    return existing
