"""
Лента изменений строк (rooms, messages, room_roles)

Канал на пару (таблица, комната): "{table}:{room_id}"
Доставка at-least-once, порядок между разными строками не гарантируется
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Literal, Optional, Sequence, Set

from pydantic import BaseModel, ValidationError
from redis.asyncio import Redis

from llmchat.utils.json_encoder import json_dumps

logger = logging.getLogger(__name__)


EventType = Literal["INSERT", "UPDATE", "DELETE"]

# Статусы подписки
SUBSCRIBED = "SUBSCRIBED"
CHANNEL_ERROR = "CHANNEL_ERROR"
CLOSED = "CLOSED"


class ChangeEvent(BaseModel):
  """Событие изменения строки"""

  table: str
  event_type: EventType
  new: Optional[Dict[str, Any]] = None
  old: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class FeedTopic:
  """Фильтр подписки: таблица + комната + типы событий (None - все)"""

  table: str
  room_id: str
  event_types: Optional[frozenset] = None

  @property
  def channel(self) -> str:
    return channel_name(self.table, self.room_id)

  def accepts(self, event: ChangeEvent) -> bool:
    return self.event_types is None or event.event_type in self.event_types


EventHandler = Callable[[ChangeEvent], Awaitable[None]]
StatusHandler = Callable[[str, Optional[BaseException]], Any]


def channel_name(table: str, room_id: str) -> str:
  return f"{table}:{room_id}"


async def _call(callback, *args):
  result = callback(*args)
  if inspect.isawaitable(result):
    await result


class Subscription:
  """Активная подписка, close() можно вызывать сколько угодно раз"""

  def __init__(self, topics: Sequence[FeedTopic], handler: EventHandler, on_status: Optional[StatusHandler] = None):
    self.topics = list(topics)
    self.handler = handler
    self.on_status = on_status
    self.status: Optional[str] = None
    self.closed = False


  async def dispatch(self, event: ChangeEvent):
    """Передает событие обработчику, если оно подходит под фильтр"""

    if self.closed:
      return

    if not any(topic.table == event.table and topic.accepts(event) for topic in self.topics):
      return

    try:
      await self.handler(event)
    except Exception as e:
      # Ошибка обработчика не должна останавливать доставку
      logger.error(f"[dispatch] Ошибка обработчика события {event.table}/{event.event_type}: {e}")


  async def set_status(self, status: str, error: Optional[BaseException] = None):
    self.status = status
    if self.on_status is None:
      return
    try:
      await _call(self.on_status, status, error)
    except Exception as e:
      logger.error(f"[set_status] Ошибка обработчика статуса: {e}")


  async def close(self):
    if self.closed:
      return
    self.closed = True
    await self.set_status(CLOSED)


class ChangeFeed:
  """Интерфейс ленты изменений"""

  async def publish(self, room_id: str, event: ChangeEvent) -> None:
    raise NotImplementedError

  async def subscribe(
    self,
    topics: Sequence[FeedTopic],
    handler: EventHandler,
    on_status: Optional[StatusHandler] = None,
  ) -> Subscription:
    raise NotImplementedError


class LocalSubscription(Subscription):

  def __init__(self, feed: "LocalChangeFeed", *args, **kwargs):
    super().__init__(*args, **kwargs)
    self._feed = feed

  async def close(self):
    self._feed._subscriptions.discard(self)
    await super().close()


class LocalChangeFeed(ChangeFeed):
  """
  Лента в памяти процесса
  Используется, когда Redis недоступен (один экземпляр приложения)
  """

  def __init__(self):
    self._subscriptions: Set[LocalSubscription] = set()


  async def publish(self, room_id: str, event: ChangeEvent) -> None:
    channel = channel_name(event.table, room_id)

    # Копия - подписчики могут отписаться во время доставки
    for subscription in list(self._subscriptions):
      if any(topic.channel == channel for topic in subscription.topics):
        await subscription.dispatch(event)


  async def subscribe(self, topics, handler, on_status=None) -> Subscription:
    subscription = LocalSubscription(self, topics, handler, on_status)
    self._subscriptions.add(subscription)
    await subscription.set_status(SUBSCRIBED)
    return subscription


class RedisSubscription(Subscription):

  def __init__(self, pubsub, *args, **kwargs):
    super().__init__(*args, **kwargs)
    self.pubsub = pubsub
    self.task: Optional[asyncio.Task] = None


  async def pump(self):
    """Читает сообщения Redis, пока подписка жива"""

    try:
      async for raw in self.pubsub.listen():
        if self.closed:
          break
        if raw.get("type") != "message":
          continue

        try:
          event = ChangeEvent.model_validate_json(raw["data"])
        except ValidationError as e:
          logger.warning(f"[pump] Некорректное событие в канале {raw.get('channel')}: {e}")
          continue

        await self.dispatch(event)

    except asyncio.CancelledError:
      raise
    except Exception as e:
      # Транспорт упал: подписчик остается живым, но без live-обновлений
      logger.error(f"[pump] Ошибка подписки Redis: {e}")
      if not self.closed:
        await self.set_status(CHANNEL_ERROR, e)


  async def close(self):
    if self.closed:
      return
    self.closed = True

    if self.task and not self.task.done():
      self.task.cancel()
      # Закрытие из обработчика самой подписки - ждать себя нельзя
      if self.task is not asyncio.current_task():
        try:
          await self.task
        except asyncio.CancelledError:
          pass

    try:
      await self.pubsub.unsubscribe()
      await self.pubsub.aclose()
    except Exception as e:
      logger.warning(f"[close] Ошибка закрытия подписки Redis: {e}")

    await self.set_status(CLOSED)


class RedisChangeFeed(ChangeFeed):
  """Лента на Redis pub/sub - работает между несколькими экземплярами приложения"""

  def __init__(self, redis: Redis):
    self.redis = redis


  async def publish(self, room_id: str, event: ChangeEvent) -> None:
    channel = channel_name(event.table, room_id)
    await self.redis.publish(channel, json_dumps(event.model_dump()))
    logger.debug(f"[publish] {event.table}/{event.event_type} -> {channel}")


  async def subscribe(self, topics, handler, on_status=None) -> Subscription:
    pubsub = self.redis.pubsub()
    subscription = RedisSubscription(pubsub, topics, handler, on_status)

    channels = sorted({topic.channel for topic in subscription.topics})
    try:
      await pubsub.subscribe(*channels)
    except Exception as e:
      logger.error(f"[subscribe] Не удалось подписаться на {channels}: {e}")
      await subscription.set_status(CHANNEL_ERROR, e)
      return subscription

    subscription.task = asyncio.create_task(subscription.pump())
    await subscription.set_status(SUBSCRIBED)
    logger.info(f"[subscribe] Подписка на каналы: {channels}")
    return subscription


# Глобальная лента, по умолчанию в памяти
_change_feed: ChangeFeed = LocalChangeFeed()


def get_change_feed() -> ChangeFeed:
  return _change_feed


def set_change_feed(feed: ChangeFeed) -> None:
  global _change_feed
  _change_feed = feed


async def publish_change(
  room_id: str,
  table: str,
  event_type: EventType,
  new: Optional[dict] = None,
  old: Optional[dict] = None,
) -> None:
  """Публикация после коммита; ошибка ленты не ломает операцию"""

  event = ChangeEvent(table=table, event_type=event_type, new=new, old=old)
  try:
    await get_change_feed().publish(room_id, event)
  except Exception as e:
    logger.error(f"[publish_change] Ошибка публикации {table}/{event_type} для комнаты {room_id}: {e}")
