from redis.asyncio import Redis
import json
import logging

from llmchat.core.config import settings


logger = logging.getLogger(__name__)


class RedisManager:
  """
  Менеджер для асинхронной работы с Redis
  Кэш профилей и транспорт ленты изменений
  """

  def __init__(self, host: str = "localhost", port: int = 6379, db: int = 0):
    """
    Инициализация подключения к Redis
    Подключаемся к базе данных в памяти
    """

    self.redis = Redis(
      host=host,
      port=port,
      db=db,
      decode_responses=True,      # Автоматически декодируем bytes -> str
      socket_keepalive=True,     #  Поддержание соединения
    )
    self.available = False      # Выставляется после успешного PING
    logger.info(f"RedisManager инициализирован: {host}:{port}")


  async def connect(self) -> bool:
    """
    Проверка подключения к Redis
    """

    try:
      # Отправляем PING и ждем PONG
      pong = await self.redis.ping()
      if pong:
        self.available = True
        logger.info(f"[connect] Redis подключен")
        return True

    except Exception as e:
      logger.error(f"[connect] Ошибка при подключении к Redis: {e}")
    return False


  async def close(self):
    self.available = False
    try:
      await self.redis.aclose()
    except Exception as e:
      logger.warning(f"[close] Ошибка закрытия Redis: {e}")


  # ============ ПРОФИЛЬ ПОЛЬЗОВАТЕЛЯ ============
  async def cache_user_profile(self, user_id: str, user_data: dict, ttl: int = 60):
    """
    Кэшируем профиль пользователя
    ttl = Time To Live (время жизни кэша в секундах)
    """

    if not self.available:
      return

    cache_key = f"user:profile:{user_id}"
    try:
      await self.redis.setex(
        cache_key,
        ttl,
        json.dumps(user_data)
      )
      logger.debug(f"[cache_user_profile] Профиль user: {user_id} закэширован на {ttl} секунд")

    except Exception as e:
      logger.error(f"[cache_user_profile] Ошибка кэширования профиля: {e}")


  async def get_cached_user_profile(self, user_id: str) -> dict | None:
    """Получить профиль пользователя из кэша"""

    if not self.available:
      return None

    cache_key = f"user:profile:{user_id}"
    try:
      cached = await self.redis.get(cache_key)
      if cached:
        return json.loads(cached)

    except Exception as e:
      logger.error(f"[get_cached_user_profile] Ошибка получения кэша профиля: {e}")
    return None


redis_manager = RedisManager(
  host=settings.REDIS_HOST,
  port=settings.REDIS_PORT,
  db=settings.REDIS_DB,
)
