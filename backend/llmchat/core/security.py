from jose import JWTError, jwt
from llmchat.core.config import settings


class InvalidTokenError(Exception):
  """Токен провайдера идентификации не прошел проверку"""


def decode_access_token(token: str) -> dict:
  """
  Проверка подписи и срока действия токена
  Возвращает claims: sub (ID пользователя), email, name, avatar_url
  """

  try:
    payload = jwt.decode(
      token,
      settings.SECRET_KEY,
      algorithms=[settings.ALGORITHM],
    )
  except JWTError as e:
    raise InvalidTokenError(str(e)) from e

  if not payload.get("sub"):
    raise InvalidTokenError("В токене отсутствует sub")

  return payload
