from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from llmchat.core.security import InvalidTokenError, decode_access_token
from llmchat.database import get_db
from llmchat.redis.manager import redis_manager
from llmchat.schemas.user import CurrentUser
from llmchat.services.user_service import UserService

logger = logging.getLogger(__name__)


bearer_scheme = HTTPBearer(auto_error=False)
CACHE_TTL = 60    # Секунд


def _unauthorized() -> HTTPException:
  return HTTPException(
    status_code=status.HTTP_401_UNAUTHORIZED,
    detail="Невалидный токен",
    headers={"WWW-Authenticate": "Bearer"},
  )


async def authenticate_token(token: str, db: AsyncSession) -> CurrentUser:
  """
  Токен -> пользователь
  Общая часть для HTTP и WebSocket, ошибки - InvalidTokenError
  """

  # 1. Декодируем токен провайдера
  payload = decode_access_token(token)
  user_id = str(payload["sub"])

  # 2. Пытаемся взять профиль из Redis
  cached_user = await redis_manager.get_cached_user_profile(user_id)
  if cached_user:
    return CurrentUser(**cached_user)

  # 3. Если нет - синхронизируем локальную копию профиля
  user = await UserService.sync_from_claims(payload, db)
  current_user = CurrentUser.model_validate(user)

  # 4. Кладем в Redis с TTL
  await redis_manager.cache_user_profile(user_id, current_user.model_dump(), CACHE_TTL)

  return current_user


async def get_current_user(
  credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
  db: AsyncSession = Depends(get_db),
) -> CurrentUser:
  """
  Dependency: пользователь по Bearer-токену
  """

  if credentials is None:
    raise _unauthorized()

  try:
    return await authenticate_token(credentials.credentials, db)
  except InvalidTokenError as e:
    logger.info(f"[get_current_user] Токен отклонен: {e}")
    raise _unauthorized()
