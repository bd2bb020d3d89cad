import logging

from sqlalchemy.ext.asyncio import AsyncSession

from llmchat.models.user import User

logger = logging.getLogger(__name__)


class UserService:

  @staticmethod
  async def sync_from_claims(claims: dict, db: AsyncSession) -> User:
    """
    Локальная копия профиля из claims токена
    Нет строки - создаем, есть - обновляем изменившиеся поля
    """

    user_id = str(claims["sub"])
    profile = {
      "email": claims.get("email"),
      "name": claims.get("name"),
      "avatar_url": claims.get("avatar_url"),
    }

    user = await db.get(User, user_id)

    if user is None:
      user = User(id=user_id, **profile)
      db.add(user)
      await db.commit()
      await db.refresh(user)
      logger.info(f"[sync_from_claims] Создан профиль пользователя {user_id}")
      return user

    changed = False
    for field, value in profile.items():
      if value is not None and getattr(user, field) != value:
        setattr(user, field, value)
        changed = True

    if changed:
      await db.commit()
      await db.refresh(user)
      logger.debug(f"[sync_from_claims] Профиль пользователя {user_id} обновлен")

    return user
