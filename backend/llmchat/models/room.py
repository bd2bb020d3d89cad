from sqlalchemy import Column, String, Text, Float, DateTime, ForeignKey
from llmchat.models.base import Base, new_uuid, utcnow


class Room(Base):
  """
  Модель комнаты
  У каждой комнаты свой системный промпт, модель и температура
  """

  __tablename__ = "rooms"

  id = Column(String(36), primary_key=True, default=new_uuid)
  title = Column(String(200), nullable=False)
  system_prompt = Column(Text, nullable=False, default="")
  model = Column(String(100), nullable=False, default="gpt-4o-mini")
  temperature = Column(Float, nullable=True, default=0.7)
  created_by = Column(String(36), ForeignKey("users.id"), nullable=True)     # Не меняется после создания
  created_at = Column(DateTime(timezone=True), default=utcnow)
  updated_at = Column(DateTime(timezone=True), default=utcnow)               # Для защиты от устаревших событий
