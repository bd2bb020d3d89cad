import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock

import httpx
import openai
import pytest

from sqlalchemy import select

from llmchat.core.errors import UpstreamError
from llmchat.models.message import Message
from llmchat.services.embedding_service import EmbeddingService, cosine_similarity
from llmchat.services.message_service import MessageService


def _embedding_response(vectors, reverse=False):
  items = [SimpleNamespace(index=i, embedding=v) for i, v in enumerate(vectors)]
  if reverse:
    items.reverse()
  return SimpleNamespace(data=items)


@pytest.fixture
def embed_client(mocker):
  client = mocker.MagicMock()
  client.embeddings.create = AsyncMock()
  return client


@pytest.fixture
def service(embed_client, session_factory):
  return EmbeddingService(client=embed_client, session_factory=session_factory)


def test_cosine_similarity():
  assert cosine_similarity([1, 0], [1, 0]) == pytest.approx(1.0)
  assert cosine_similarity([1, 0], [0, 1]) == pytest.approx(0.0)
  assert cosine_similarity([1, 0], [1, 0, 0]) == 0.0
  assert cosine_similarity([0, 0], [1, 1]) == 0.0


async def test_batch_sorted_by_index(service, embed_client):
  embed_client.embeddings.create.return_value = _embedding_response(
    [[1.0, 0.0], [0.0, 1.0], [0.5, 0.5]],
    reverse=True,
  )

  vectors = await service.generate_embeddings_batch(["a", "b", "c"])

  assert vectors == [[1.0, 0.0], [0.0, 1.0], [0.5, 0.5]]


async def test_provider_error_becomes_upstream(service, embed_client):
  request = httpx.Request("POST", "https://api.openai.com/v1/embeddings")
  embed_client.embeddings.create.side_effect = openai.APIStatusError(
    "Invalid API key",
    response=httpx.Response(401, request=request),
    body=None,
  )

  with pytest.raises(UpstreamError) as exc:
    await service.generate_embedding("текст сообщения")

  assert exc.value.upstream_status == 401


async def test_store_embedding(service, embed_client, async_session, room, writer_user):
  message = await MessageService.create_message(room.id, writer_user.id, "Вера", "достаточно длинный текст", async_session)
  embed_client.embeddings.create.return_value = _embedding_response([[0.1, 0.2, 0.3]])

  await service.generate_and_store_embedding(message.id, message.text)

  result = await async_session.execute(
    select(Message.embedding).where(Message.id == message.id)
  )
  assert result.scalar_one() == [0.1, 0.2, 0.3]


async def test_short_text_skipped(service, embed_client):
  await service.generate_and_store_embedding("m1", "коротко")

  embed_client.embeddings.create.assert_not_awaited()


async def test_store_failure_is_swallowed(service, embed_client):
  embed_client.embeddings.create.side_effect = RuntimeError("network down")

  await service.generate_and_store_embedding("m1", "достаточно длинный текст")


async def test_schedule_runs_in_background(service, embed_client, mocker):
  started = asyncio.Event()
  release = asyncio.Event()

  async def slow_store(message_id, text):
    started.set()
    await release.wait()

  mocker.patch.object(service, "generate_and_store_embedding", side_effect=slow_store)

  task = service.schedule("m1", "достаточно длинный текст")
  assert task is not None
  assert not task.done()

  await started.wait()
  release.set()
  await task

  assert service._tasks == set()


async def test_backfill_room(service, embed_client, async_session, room, writer_user):
  for text in ["первое сообщение", "второе сообщение"]:
    await MessageService.create_message(room.id, writer_user.id, "Вера", text, async_session)

  embed_client.embeddings.create.return_value = _embedding_response([[1.0, 0.0], [0.0, 1.0]])

  assert await service.backfill_room(room.id, async_session) == 2

  embed_client.embeddings.create.return_value = _embedding_response([])
  assert await service.backfill_room(room.id, async_session) == 0
  assert embed_client.embeddings.create.await_count == 1


async def test_search_messages_orders_by_similarity(service, embed_client, async_session, room, writer_user):
  vectors = {
    "про кошек": [1.0, 0.0],
    "про собак": [0.0, 1.0],
    "про кошек и собак": [0.7, 0.7],
  }
  for text, vector in vectors.items():
    message = await MessageService.create_message(room.id, writer_user.id, "Вера", text, async_session)
    message.embedding = vector
  await async_session.commit()

  embed_client.embeddings.create.return_value = _embedding_response([[1.0, 0.1]])

  results = await service.search_messages(room.id, "кошки", async_session, limit=2)

  assert [r.text for r in results] == ["про кошек", "про кошек и собак"]
  assert results[0].similarity > results[1].similarity
