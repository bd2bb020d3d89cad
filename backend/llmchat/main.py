from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from datetime import datetime, timezone
import logging
import sys

from llmchat.routers import messages
from llmchat.routers import roles
from llmchat.routers import rooms
from llmchat.routers import users
from llmchat.routers import websocket
from llmchat.core.config import settings
from llmchat.models.base import Base
from llmchat.database import engine
from llmchat.realtime.feed import LocalChangeFeed, RedisChangeFeed, get_change_feed, set_change_feed
from llmchat.redis.manager import redis_manager


logger = logging.getLogger(__name__)


# ======== LIFESPAN ========
@asynccontextmanager
async def lifespan(app: FastAPI):
  """
  Управление жизненным циклом приложения
  """

  # Startup
  logger.info("Запуск приложения...")

  # 1. Создаем таблицы в БД
  try:
    async with engine.begin() as conn:
      await conn.run_sync(Base.metadata.create_all)
    logger.info("Таблицы БД созданы/проверены")

  except Exception as e:
    logger.error(f"Ошибка создания таблиц БД: {e}")
    raise

  # 2. Redis: кэш профилей + лента изменений между процессами
  try:
    if await redis_manager.connect():
      set_change_feed(RedisChangeFeed(redis_manager.redis))
      logger.info(f"[connect] Лента изменений через Redis pub/sub")
    else:
      logger.warning(f"[connect] Redis недоступен, лента изменений только внутри процесса")

  except Exception as e:
    logger.warning(f"[connect] Ошибка Redis (продолжаем с локальной лентой): {e}")

  logger.info(f"Приложение запущено")

  yield     # Работает приложение

  # Shutdown
  if isinstance(get_change_feed(), RedisChangeFeed):
    set_change_feed(LocalChangeFeed())
  await redis_manager.close()
  await engine.dispose()
  logger.info("Приложение остановлено")


# ======== APP INIT ========
app = FastAPI(
  title=settings.PROJECT_NAME,
  version="1.0.0",
  lifespan=lifespan,
)


# ======== CORS ========
app.add_middleware(
  CORSMiddleware,
  allow_origins=settings.ALLOWED_ORIGINS,   # Список разрешенных доменов для запросов
  allow_credentials=True,                   # Разрешает куки/авторизацию
  allow_methods=["*"],                      # Все HTTP-методы
  allow_headers=["*"],                      # Все заголовки
)


# ======== ROUTERS ========
app.include_router(users.router)
app.include_router(rooms.router)
app.include_router(messages.router)
app.include_router(roles.router)
app.include_router(websocket.router)


# ======== HEALTH CHECK ========
@app.get("/health")
async def health_check():
  """Проверка состояния сервиса"""

  return {
    "status": "healthy",
    "service": "llm-rooms",
    "change_feed": type(get_change_feed()).__name__,
    "timestamp": datetime.now(timezone.utc).isoformat(),
  }


@app.get("/")
async def root():
  return {
    "message": f"{settings.PROJECT_NAME} API",
    "docs": "/docs",
    "redoc": "/redoc",
  }


# ======== SETTINGS LOGGER ========
logging.basicConfig(
  level=logging.DEBUG if settings.DEBUG else logging.INFO,
  format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
  handlers=[
    logging.StreamHandler(sys.stdout),
    logging.FileHandler('llmchat.log'),
  ]
)
