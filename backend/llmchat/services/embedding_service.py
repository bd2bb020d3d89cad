import asyncio
import logging
import math
from typing import Callable, List, Optional, Sequence, Set

import openai
from openai import AsyncOpenAI
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from llmchat.core.config import settings
from llmchat.core.errors import UpstreamError
from llmchat.database import AsyncSessionLocal
from llmchat.models.message import Message
from llmchat.schemas.message import SearchResult
from llmchat.services.llm_client import get_llm_client

logger = logging.getLogger(__name__)


BACKFILL_BATCH_SIZE = 100


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
  if not a or not b or len(a) != len(b):
    return 0.0

  dot = sum(x * y for x, y in zip(a, b))
  norm_a = math.sqrt(sum(x * x for x in a))
  norm_b = math.sqrt(sum(y * y for y in b))
  if norm_a == 0 or norm_b == 0:
    return 0.0
  return dot / (norm_a * norm_b)


class EmbeddingService:
  """
  Векторы сообщений для семантического поиска
  Best-effort: ошибки логируются и не доходят до отправки сообщений
  """

  def __init__(
    self,
    client: Optional[AsyncOpenAI] = None,
    session_factory: Callable[[], AsyncSession] = AsyncSessionLocal,
  ):
    self._client = client
    self.session_factory = session_factory
    self._tasks: Set[asyncio.Task] = set()     # Держим ссылки, чтобы задачи не собрал GC


  @property
  def client(self) -> AsyncOpenAI:
    if self._client is None:
      self._client = get_llm_client()
    return self._client


  async def generate_embedding(self, text: str) -> List[float]:
    vectors = await self.generate_embeddings_batch([text])
    return vectors[0]


  async def generate_embeddings_batch(self, texts: List[str]) -> List[List[float]]:
    """Батч-запрос; ответ сортируем по index, чтобы порядок совпал с входом"""

    try:
      response = await self.client.embeddings.create(
        model=settings.EMBEDDING_MODEL,
        input=texts,
      )
    except openai.APIStatusError as e:
      raise UpstreamError(f"OpenAI API error: {e.message}", upstream_status=e.status_code) from e
    except openai.APIError as e:
      raise UpstreamError(f"OpenAI API error: {e.message}") from e

    items = sorted(response.data, key=lambda item: item.index)
    return [item.embedding for item in items]


  async def generate_and_store_embedding(self, message_id: str, text: str) -> None:
    """Вектор для одного сообщения; короткие тексты пропускаем"""

    if not text or len(text.strip()) < settings.EMBEDDING_MIN_LENGTH:
      return

    try:
      embedding = await self.generate_embedding(text)

      async with self.session_factory() as db:
        await db.execute(
          update(Message)
          .where(Message.id == message_id)
          .values(embedding=embedding)
        )
        await db.commit()

      logger.debug(f"[generate_and_store_embedding] Эмбеддинг сохранен для сообщения {message_id}")

    except Exception as e:
      logger.warning(f"[generate_and_store_embedding] Не удалось создать эмбеддинг для {message_id} (не критично): {e}")


  def schedule(self, message_id: str, text: str) -> Optional[asyncio.Task]:
    """
    Фоновая задача без ожидания
    Результат никогда не влияет на отправку сообщения
    """

    try:
      task = asyncio.create_task(self.generate_and_store_embedding(message_id, text))
    except RuntimeError as e:
      logger.warning(f"[schedule] Нет event loop для эмбеддинга {message_id}: {e}")
      return None

    self._tasks.add(task)
    task.add_done_callback(self._on_task_done)
    return task


  def _on_task_done(self, task: asyncio.Task) -> None:
    self._tasks.discard(task)
    if task.cancelled():
      return
    error = task.exception()
    if error is not None:
      logger.warning(f"[schedule] Фоновая задача эмбеддинга завершилась с ошибкой: {error}")


  async def backfill_room(self, room_id: str, db: AsyncSession) -> int:
    """Векторы для старых сообщений без эмбеддинга (до 100 за раз)"""

    stmt = (
      select(Message)
      .where(Message.room_id == room_id, Message.embedding.is_(None))
      .order_by(Message.timestamp.asc())
      .limit(BACKFILL_BATCH_SIZE)
    )
    result = await db.execute(stmt)
    messages = result.scalars().all()

    if not messages:
      logger.info(f"[backfill_room] Нет сообщений без эмбеддингов в комнате {room_id}")
      return 0

    embeddings = await self.generate_embeddings_batch([m.text for m in messages])

    for message, embedding in zip(messages, embeddings):
      message.embedding = embedding
    await db.commit()

    logger.info(f"[backfill_room] Добавлены эмбеддинги для {len(messages)} сообщений в комнате {room_id}")
    return len(messages)


  async def search_messages(
    self,
    room_id: str,
    query: str,
    db: AsyncSession,
    limit: int = 5,
  ) -> List[SearchResult]:
    """Семантический поиск: косинусная близость вектора запроса и сообщений"""

    query_embedding = await self.generate_embedding(query)

    stmt = select(Message).where(
      Message.room_id == room_id,
      Message.embedding.is_not(None),
    )
    result = await db.execute(stmt)

    scored = []
    for message in result.scalars().all():
      similarity = cosine_similarity(query_embedding, message.embedding)
      scored.append((similarity, message))

    scored.sort(key=lambda pair: pair[0], reverse=True)

    return [
      SearchResult(
        id=message.id,
        room_id=message.room_id,
        sender_id=message.sender_id,
        sender_name=message.sender_name,
        text=message.text,
        timestamp=message.timestamp,
        created_at=message.created_at,
        similarity=similarity,
      )
      for similarity, message in scored[:limit]
    ]


embedding_service = EmbeddingService()
