import os

os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./llmchat_test.db")
os.environ.setdefault("OPENAI_API_KEY", "test-openai-key")

import pytest
from datetime import datetime, timedelta, timezone
from jose import jwt
from unittest.mock import AsyncMock

from httpx import AsyncClient
from httpx import ASGITransport
from sqlalchemy.ext.asyncio import (
  AsyncSession,
  create_async_engine,
  async_sessionmaker
)
from sqlalchemy.pool import NullPool

from llmchat.main import app
from llmchat.core.config import settings
from llmchat.database import get_db, get_session_factory
from llmchat.models.base import Base
from llmchat.models.room_role import RoomRole
from llmchat.models.user import User
from llmchat.realtime.feed import LocalChangeFeed, get_change_feed, set_change_feed
from llmchat.schemas.user import CurrentUser
from llmchat.services.completion_service import completion_orchestrator
from llmchat.services.embedding_service import embedding_service
from llmchat.services.room_service import RoomService


@pytest.fixture
async def async_engine(tmp_path):
  # Файл, а не :memory: - несколько сессий видят одни и те же данные
  engine = create_async_engine(
    f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
    poolclass=NullPool,
    echo=False,
  )

  async with engine.begin() as conn:
    await conn.run_sync(Base.metadata.create_all)

  yield engine

  await engine.dispose()


@pytest.fixture
def session_factory(async_engine):
  return async_sessionmaker(
    bind=async_engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
  )


@pytest.fixture
async def async_session(session_factory):
  async with session_factory() as session:
    yield session
    await session.rollback()


@pytest.fixture(autouse=True)
def override_get_db(session_factory):
  async def _get_db_override():
    async with session_factory() as session:
      yield session

  app.dependency_overrides[get_db] = _get_db_override
  app.dependency_overrides[get_session_factory] = lambda: session_factory
  yield
  app.dependency_overrides.clear()


@pytest.fixture(autouse=True)
def change_feed():
  """Свежая лента в памяти на каждый тест"""

  previous = get_change_feed()
  feed = LocalChangeFeed()
  set_change_feed(feed)
  yield feed
  set_change_feed(previous)


@pytest.fixture(autouse=True)
def no_background_embeddings(mocker):
  """Эмбеддинги в фоне ходят в OpenAI - в тестах не запускаем"""

  return mocker.patch.object(embedding_service, "schedule", return_value=None)


@pytest.fixture
def llm_reply(mocker):
  return mocker.patch.object(
    completion_orchestrator,
    "complete",
    new_callable=AsyncMock,
    return_value="Ответ модели",
  )


@pytest.fixture
async def async_client():
  async with AsyncClient(
    transport=ASGITransport(app=app),
    base_url="http://test",
  ) as client:
    yield client


async def _create_user(session, user_id: str, name: str) -> User:
  user = User(id=user_id, email=f"{user_id}@mail.com", name=name)
  session.add(user)
  await session.commit()
  await session.refresh(user)
  return user


@pytest.fixture
async def owner_user(async_session):
  return await _create_user(async_session, "owner-1", "Олег")


@pytest.fixture
async def writer_user(async_session):
  return await _create_user(async_session, "writer-1", "Вера")


@pytest.fixture
async def viewer_user(async_session):
  return await _create_user(async_session, "viewer-1", "Виктор")


@pytest.fixture
async def outsider_user(async_session):
  return await _create_user(async_session, "outsider-1", "Ольга")


@pytest.fixture
async def room(async_session, owner_user, writer_user, viewer_user):
  """Комната: owner создатель, writer и viewer с явными ролями"""

  room = await RoomService.create_room(
    title="Тестовая комната",
    created_by=owner_user.id,
    db=async_session,
    system_prompt="Отвечай кратко",
    model="gpt-4o-mini",
    temperature=0.5,
  )

  async_session.add_all([
    RoomRole(room_id=room.id, user_id=writer_user.id, role="writer", assigned_by=owner_user.id),
    RoomRole(room_id=room.id, user_id=viewer_user.id, role="viewer", assigned_by=owner_user.id),
  ])
  await async_session.commit()

  return room


def as_current(user: User) -> CurrentUser:
  return CurrentUser.model_validate(user)


def sign_token(claims: dict, expires_delta: timedelta = timedelta(hours=1)) -> str:
  """Токен, как его выпустил бы провайдер идентификации"""

  return jwt.encode(
    {**claims, "exp": datetime.now(timezone.utc) + expires_delta},
    settings.SECRET_KEY,
    algorithm=settings.ALGORITHM,
  )


def token_for(user: User) -> str:
  return sign_token({"sub": user.id, "email": user.email, "name": user.name})


def headers_for(user: User) -> dict:
  return {"Authorization": f"Bearer {token_for(user)}"}


@pytest.fixture
def auth_headers():
  """auth_headers(user) -> заголовок Authorization"""

  return headers_for


@pytest.fixture
def current():
  """current(user) -> CurrentUser"""

  return as_current


@pytest.fixture
def auth_token():
  """auth_token(user) -> JWT провайдера идентификации"""

  return token_for


@pytest.fixture
def signed_token():
  """signed_token(claims, expires_delta) -> JWT с подписью из настроек"""

  return sign_token
