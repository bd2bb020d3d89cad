from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from llmchat.core.config import settings


# Создаем async engine
engine = create_async_engine(
  settings.DATABASE_URL,
  pool_pre_ping=True,
  echo=settings.DEBUG,      # Вывод SQL-запросов в консоль
)

# Session для async
AsyncSessionLocal = async_sessionmaker(
  bind=engine,
  class_=AsyncSession,
  expire_on_commit=False,
  autoflush=False,
)


# Контекстный менеджер для зависимостей
async def get_db() -> AsyncSession:
  async with AsyncSessionLocal() as session:
    try:
      yield session
    finally:
      await session.close()


def get_session_factory() -> async_sessionmaker:
  """Фабрика сессий для долгоживущих объектов (контроллер комнаты на WebSocket)"""

  return AsyncSessionLocal
