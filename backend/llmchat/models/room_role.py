from sqlalchemy import Column, String, DateTime, ForeignKey, UniqueConstraint
from llmchat.models.base import Base, new_uuid, utcnow


class RoomRole(Base):
  """
  Роль пользователя в комнате
  Не больше одной строки на пару (room_id, user_id)
  """

  __tablename__ = "room_roles"

  id = Column(String(36), primary_key=True, default=new_uuid)
  room_id = Column(String(36), ForeignKey("rooms.id", ondelete="CASCADE"), nullable=False, index=True)
  user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
  role = Column(String(20), nullable=False)
  assigned_by = Column(String(36), ForeignKey("users.id"), nullable=True)
  created_at = Column(DateTime(timezone=True), default=utcnow)
  updated_at = Column(DateTime(timezone=True), default=utcnow)

  __table_args__ = (
    UniqueConstraint("room_id", "user_id", name="uix_room_user"),
  )
