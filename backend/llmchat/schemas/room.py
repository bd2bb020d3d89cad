from pydantic import BaseModel, ConfigDict, Field
from typing import Optional

from llmchat.schemas.common import UTCDateTime
from llmchat.services.roles import Role


class RoomCreate(BaseModel):
  """Схема создания комнаты"""

  title: str = Field(min_length=1, max_length=200)
  system_prompt: str = ""
  model: Optional[str] = None           # None - модель по умолчанию
  temperature: Optional[float] = Field(default=None, ge=0, le=2)


class RoomSettingsUpdate(BaseModel):
  """Схема изменения настроек LLM (edit-prompt)"""

  system_prompt: Optional[str] = None
  model: Optional[str] = Field(default=None, min_length=1)
  temperature: Optional[float] = Field(default=None, ge=0, le=2)


class RoomRename(BaseModel):
  title: str = Field(min_length=1, max_length=200)


class RoomResponse(BaseModel):
  """Схема с информацией о комнате"""

  id: str
  title: str
  system_prompt: str = ""
  model: str
  temperature: Optional[float] = None
  created_by: Optional[str] = None
  created_at: Optional[UTCDateTime] = None
  updated_at: Optional[UTCDateTime] = None

  model_config = ConfigDict(from_attributes=True)


class MemberResponse(BaseModel):
  """Участник комнаты и его роль"""

  user_id: str
  name: Optional[str] = None
  email: Optional[str] = None
  role: Role
  is_creator: bool = False
