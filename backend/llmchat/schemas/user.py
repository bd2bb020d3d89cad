from pydantic import BaseModel, ConfigDict
from typing import Optional


class UserResponse(BaseModel):
  """Схема с информацией данных пользователя (GET /users/me)"""

  id: str
  email: Optional[str] = None
  name: Optional[str] = None
  avatar_url: Optional[str] = None

  # Позволяет создавать модели из объектов ORM
  model_config = ConfigDict(from_attributes=True)


class CurrentUser(UserResponse):
  """Пользователь текущего запроса"""

  @property
  def display_name(self) -> str:
    return self.name or self.email or "Пользователь"
