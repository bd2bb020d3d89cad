from pydantic import BaseModel, ConfigDict, Field
from typing import List, Optional

from llmchat.schemas.common import UTCDateTime


class MessageCreate(BaseModel):
  """Схема отправки сообщения"""

  text: str = Field(min_length=1, max_length=20000)


class MessagesDelete(BaseModel):
  """Схема массового удаления"""

  ids: List[str] = Field(min_length=1)


class MessageResponse(BaseModel):
  """Схема с информацией о сообщении"""

  id: str
  room_id: str
  sender_id: Optional[str] = None
  sender_name: str
  text: str
  timestamp: UTCDateTime
  created_at: Optional[UTCDateTime] = None

  model_config = ConfigDict(from_attributes=True)


class SendMessageResponse(BaseModel):
  """Сообщение пользователя и ответ модели (или системное сообщение об ошибке)"""

  message: MessageResponse
  reply: Optional[MessageResponse] = None


class SearchResult(MessageResponse):
  similarity: float


class DeleteResult(BaseModel):
  deleted: List[str]
