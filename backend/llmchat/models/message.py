from sqlalchemy import Column, String, Text, DateTime, ForeignKey, JSON
from llmchat.models.base import Base, new_uuid, utcnow


# Служебные отправители
LLM_SENDER_NAME = "LLM"
SYSTEM_SENDER_NAME = "Система"


class Message(Base):
  """
  Модель сообщений
  sender_id = None - сообщение модели или системы
  """

  __tablename__ = "messages"

  id = Column(String(36), primary_key=True, default=new_uuid)
  room_id = Column(String(36), ForeignKey("rooms.id", ondelete="CASCADE"), nullable=False, index=True)
  sender_id = Column(String(36), ForeignKey("users.id"), nullable=True)
  sender_name = Column(String(255), nullable=False)
  text = Column(Text, nullable=False)
  timestamp = Column(DateTime(timezone=True), default=utcnow, index=True)    # Логический порядок
  created_at = Column(DateTime(timezone=True), default=utcnow)
  embedding = Column(JSON(none_as_null=True), nullable=True)       # Заполняется асинхронно
