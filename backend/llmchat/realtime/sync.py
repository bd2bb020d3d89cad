"""
Локальное зеркало одной комнаты: настройки, сообщения, роль, участники

Источники изменений:
- собственные сообщения (оптимистично, merge_message)
- лента изменений (сообщения, обновления комнаты, роли)

Защиты:
- сообщения сливаются по id (одно и то же сообщение приходит и локально, и из ленты)
- обновление комнаты старше текущего updated_at отбрасывается
"""

import asyncio
import bisect
import inspect
import logging
from collections import defaultdict
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set

from sqlalchemy.ext.asyncio import AsyncSession

from llmchat.core.config import settings
from llmchat.core.errors import NotFoundError
from llmchat.database import AsyncSessionLocal
from llmchat.realtime.feed import (
  CHANNEL_ERROR,
  ChangeEvent,
  ChangeFeed,
  FeedTopic,
  Subscription,
  get_change_feed,
)
from llmchat.schemas.common import ensure_utc
from llmchat.schemas.message import MessageResponse
from llmchat.schemas.room import MemberResponse, RoomResponse
from llmchat.services.message_service import MessageService
from llmchat.services.roles import Role
from llmchat.services.room_service import RoomService

logger = logging.getLogger(__name__)


# Поля комнаты, которые можно менять событием ленты
ROOM_MUTABLE_FIELDS = ("title", "system_prompt", "model", "temperature")

# Типы событий RoomEvents
MESSAGE_ADDED = "message_added"
MESSAGES_REMOVED = "messages_removed"
ROOM_UPDATED = "room_updated"
ROOM_DELETED = "room_deleted"
ROLE_CHANGED = "role_changed"
MEMBERS_CHANGED = "members_changed"
FEED_ERROR = "feed_error"

EVENT_KINDS = frozenset({
  MESSAGE_ADDED,
  MESSAGES_REMOVED,
  ROOM_UPDATED,
  ROOM_DELETED,
  ROLE_CHANGED,
  MEMBERS_CHANGED,
  FEED_ERROR,
})


def parse_timestamp(value: Any) -> Optional[datetime]:
  """datetime / ISO-строка -> aware datetime, мусор -> None"""

  if value is None:
    return None
  if isinstance(value, datetime):
    return ensure_utc(value)
  if isinstance(value, str):
    try:
      return ensure_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    except ValueError:
      return None
  return None


class RoomEvents:
  """
  Канал уведомлений комнаты
  Подписчики регистрируются явно и получают только события своей комнаты
  """

  def __init__(self):
    self._listeners: Dict[str, List[Callable]] = defaultdict(list)


  def on(self, kind: str, callback: Callable) -> Callable[[], None]:
    """Регистрирует обработчик, возвращает функцию отписки"""

    if kind not in EVENT_KINDS:
      raise ValueError(f"Неизвестный тип события: {kind}")

    self._listeners[kind].append(callback)

    def off():
      if callback in self._listeners[kind]:
        self._listeners[kind].remove(callback)
    return off


  async def emit(self, kind: str, payload: Any = None):
    for callback in list(self._listeners[kind]):
      try:
        result = callback(payload)
        if inspect.isawaitable(result):
          await result
      except Exception as e:
        logger.error(f"[emit] Ошибка обработчика {kind}: {e}")


  def clear(self):
    self._listeners.clear()


class RoomSyncController:
  """
  Зеркало одной открытой комнаты для одного пользователя
  Все обработчики выполняются в одном event loop, блокировок нет
  """

  def __init__(
    self,
    user_id: Optional[str],
    feed: Optional[ChangeFeed] = None,
    session_factory: Callable[[], AsyncSession] = AsyncSessionLocal,
    refetch_delay: Optional[float] = None,
  ):
    self.user_id = user_id
    self.feed = feed or get_change_feed()
    self.session_factory = session_factory
    self.refetch_delay = settings.ROOM_REFETCH_DELAY if refetch_delay is None else refetch_delay

    self.events = RoomEvents()

    self.room_id: Optional[str] = None
    self.room: Optional[RoomResponse] = None
    self.messages: List[MessageResponse] = []
    self.role: Optional[Role] = None
    self.members: List[MemberResponse] = []
    self.degraded = False

    self._message_ids: Set[str] = set()
    self._subscriptions: List[Subscription] = []
    self._tasks: Set[asyncio.Task] = set()
    self._attached = False
    self._detached = False
    self._loading = False
    self._pending: List[ChangeEvent] = []


  @property
  def attached(self) -> bool:
    return self._attached and not self._detached


  # ============ ЖИЗНЕННЫЙ ЦИКЛ ============
  async def attach(self, room_id: str) -> None:
    """
    Подписка на ленту + загрузка текущего состояния
    Ошибка загрузки (NotFoundError и т.д.) уходит вызывающему, подписки освобождаются
    """

    if self._attached or self._detached:
      raise RuntimeError("Контроллер уже использовался, создайте новый")

    self.room_id = room_id
    self._loading = True

    try:
      # 1. Подписываемся до загрузки, чтобы не потерять события между ними
      await self._subscribe()

      # 2. Текущее состояние
      await self._load()

    except Exception:
      self._loading = False
      self._pending.clear()
      await self._close_subscriptions()
      raise

    self._loading = False
    self._attached = True

    if self._detached:
      await self._close_subscriptions()
      return

    # 3. События, пришедшие во время загрузки
    pending, self._pending = self._pending, []
    for event in pending:
      await self._dispatch(event)

    logger.info(f"[attach] Пользователь {self.user_id} подключен к комнате {room_id}, сообщений: {len(self.messages)}")


  async def detach(self) -> None:
    """Освобождает подписки; повторный вызов и вызов до attach безопасны"""

    if self._detached:
      return
    self._detached = True

    for task in list(self._tasks):
      task.cancel()
    self._tasks.clear()

    await self._close_subscriptions()
    self.events.clear()

    logger.info(f"[detach] Пользователь {self.user_id} отключен от комнаты {self.room_id}")


  async def resubscribe(self) -> None:
    """Повторная подписка после CHANNEL_ERROR (пропущенные события догружаются reload)"""

    if self._detached or self.room_id is None:
      return

    await self._close_subscriptions()
    await self._subscribe()
    self.degraded = False
    await self.reload()


  async def reload(self) -> None:
    """Полная перезагрузка состояния из БД"""

    if self._detached or self.room_id is None:
      return

    self._loading = True
    try:
      await self._load()
    finally:
      self._loading = False

    pending, self._pending = self._pending, []
    for event in pending:
      await self._dispatch(event)


  async def _subscribe(self):
    messages_topics = [
      FeedTopic("messages", self.room_id, frozenset({"INSERT", "DELETE"})),
    ]
    room_topics = [
      FeedTopic("rooms", self.room_id, frozenset({"UPDATE", "DELETE"})),
      FeedTopic("room_roles", self.room_id),
    ]

    self._subscriptions = [
      await self.feed.subscribe(messages_topics, self._handle_event, self._on_status),
      await self.feed.subscribe(room_topics, self._handle_event, self._on_status),
    ]


  async def _close_subscriptions(self):
    subscriptions, self._subscriptions = self._subscriptions, []
    for subscription in subscriptions:
      try:
        await subscription.close()
      except Exception as e:
        logger.warning(f"[detach] Ошибка закрытия подписки: {e}")


  async def _load(self):
    async with self.session_factory() as db:
      room = await RoomService.get_room(self.room_id, db)
      messages = await MessageService.list_messages(self.room_id, db)
      role = await RoomService.get_user_role(self.room_id, self.user_id, db)
      members = await RoomService.list_members(self.room_id, db)

    self.room = RoomResponse.model_validate(room)
    self.messages = []
    self._message_ids = set()
    for message in messages:
      self._insert_sorted(MessageResponse.model_validate(message))
    self.role = role
    self.members = members


  # ============ ЛЕНТА ============
  async def _handle_event(self, event: ChangeEvent):
    if self._detached:
      return

    if self._loading:
      self._pending.append(event)
      return

    await self._dispatch(event)


  async def _dispatch(self, event: ChangeEvent):
    if self._detached:
      return

    if event.table == "messages":
      if event.event_type == "INSERT":
        await self.on_message_inserted(event)
      elif event.event_type == "DELETE":
        await self.on_messages_deleted(event)

    elif event.table == "rooms":
      if event.event_type == "UPDATE":
        await self.on_room_updated(event)
      elif event.event_type == "DELETE":
        await self.events.emit(ROOM_DELETED, self.room_id)

    elif event.table == "room_roles":
      await self.on_role_changed(event)


  async def _on_status(self, status: str, error: Optional[BaseException] = None):
    if status != CHANNEL_ERROR or self._detached:
      return

    # Остаемся подключенными, но без live-обновлений
    self.degraded = True
    logger.error(f"[feed] Ошибка ленты для комнаты {self.room_id}: {error}")
    await self.events.emit(FEED_ERROR, str(error) if error else status)


  # ============ СООБЩЕНИЯ ============
  def _insert_sorted(self, message: MessageResponse):
    bisect.insort(self.messages, message, key=lambda m: m.timestamp)
    self._message_ids.add(message.id)


  async def merge_message(self, message) -> bool:
    """
    Идемпотентное слияние: сообщение с уже известным id игнорируется
    Возвращает True, если список изменился
    """

    if self._detached:
      return False

    if not isinstance(message, MessageResponse):
      message = MessageResponse.model_validate(message)

    if message.room_id != self.room_id or message.id in self._message_ids:
      return False

    self._insert_sorted(message)
    await self.events.emit(MESSAGE_ADDED, message)
    return True


  async def on_message_inserted(self, event: ChangeEvent) -> bool:
    if self._detached or not event.new:
      return False
    return await self.merge_message(event.new)


  async def on_messages_deleted(self, event: ChangeEvent) -> bool:
    if self._detached:
      return False

    message_id = (event.old or {}).get("id")
    if message_id is None or message_id not in self._message_ids:
      return False

    self.messages = [m for m in self.messages if m.id != message_id]
    self._message_ids.discard(message_id)
    await self.events.emit(MESSAGES_REMOVED, [message_id])
    return True


  def forget_messages(self, message_ids: List[str]) -> None:
    """Локальное удаление сразу после собственной команды delete-messages"""

    removed = set(message_ids) & self._message_ids
    if removed:
      self.messages = [m for m in self.messages if m.id not in removed]
      self._message_ids -= removed


  # ============ КОМНАТА ============
  def _is_stale(self, incoming: Optional[datetime]) -> bool:
    current = self.room.updated_at if self.room else None
    return incoming is not None and current is not None and incoming < current


  def _apply_room_fields(self, data: dict) -> bool:
    """Применяет поля строки комнаты с проверкой устаревания"""

    incoming = parse_timestamp(data.get("updated_at"))
    if self._is_stale(incoming):
      logger.debug(
        f"[room] Устаревшее обновление комнаты {self.room_id} отброшено: "
        f"{incoming} < {self.room.updated_at}"
      )
      return False

    changes = {}
    for field in ROOM_MUTABLE_FIELDS:
      if field not in data:
        continue
      value = data[field]
      if field == "temperature":
        if isinstance(value, bool) or not isinstance(value, (int, float)):
          continue
      elif value is None:
        continue
      changes[field] = value

    if incoming is not None:
      changes["updated_at"] = incoming

    self.room = self.room.model_copy(update=changes)
    return True


  async def on_room_updated(self, event: ChangeEvent) -> bool:
    """
    Принимает событие, если updated_at нет или он не старше текущего
    После принятия - повторная загрузка строки через небольшую задержку
    """

    if self._detached or not event.new:
      return False

    if self.room is None:
      self._schedule_refetch()
      return False

    if not self._apply_room_fields(event.new):
      return False

    await self.events.emit(ROOM_UPDATED, self.room)
    self._schedule_refetch()
    return True


  def _schedule_refetch(self):
    task = asyncio.create_task(self._refetch_room())
    self._tasks.add(task)
    task.add_done_callback(self._tasks.discard)


  async def _refetch_room(self):
    """Страховка от неполных событий: перечитываем строку целиком"""

    await asyncio.sleep(self.refetch_delay)
    if self._detached:
      return

    try:
      async with self.session_factory() as db:
        room = await RoomService.get_room(self.room_id, db)
        fresh = RoomResponse.model_validate(room)

    except NotFoundError:
      await self.events.emit(ROOM_DELETED, self.room_id)
      return

    except Exception as e:
      logger.warning(f"[refetch] Не удалось перечитать комнату {self.room_id}: {e}")
      return

    if self._detached:
      return

    if self.room is not None and self._is_stale(fresh.updated_at):
      return

    if fresh != self.room:
      self.room = fresh
      await self.events.emit(ROOM_UPDATED, self.room)


  # ============ РОЛИ ============
  async def on_role_changed(self, event: ChangeEvent) -> None:
    """Своя роль - перечитываем; список участников - всегда"""

    if self._detached:
      return

    subject = (event.new or {}).get("user_id") or (event.old or {}).get("user_id")

    try:
      async with self.session_factory() as db:
        if subject is not None and subject == self.user_id:
          self.role = await RoomService.get_user_role(self.room_id, self.user_id, db)
          await self.events.emit(ROLE_CHANGED, self.role)

        self.members = await RoomService.list_members(self.room_id, db)

    except Exception as e:
      logger.warning(f"[role] Не удалось обновить роли комнаты {self.room_id}: {e}")
      return

    await self.events.emit(MEMBERS_CHANGED, self.members)


  def snapshot(self) -> dict:
    return {
      "room": self.room.model_dump(mode="json") if self.room else None,
      "messages": [m.model_dump(mode="json") for m in self.messages],
      "role": self.role.value if self.role else None,
      "members": [m.model_dump(mode="json") for m in self.members],
      "degraded": self.degraded,
    }
