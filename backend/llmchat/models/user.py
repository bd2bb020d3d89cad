from sqlalchemy import Column, String, DateTime
from llmchat.models.base import Base, utcnow


class User(Base):
  """
  Профиль пользователя
  Источник правды - внешний провайдер идентификации, здесь копия claims из токена
  """

  __tablename__ = "users"

  id = Column(String(36), primary_key=True)           # sub из токена провайдера
  email = Column(String(255), nullable=True, index=True)
  name = Column(String(255), nullable=True)
  avatar_url = Column(String(1024), nullable=True)
  created_at = Column(DateTime(timezone=True), default=utcnow)

  @property
  def display_name(self) -> str:
    return self.name or self.email or "Пользователь"
