from pydantic import BaseModel, ConfigDict
from typing import Optional

from llmchat.schemas.common import UTCDateTime
from llmchat.services.roles import Role


class RoleAssign(BaseModel):
  """Схема назначения роли"""

  role: Role


class RoomRoleResponse(BaseModel):
  room_id: str
  user_id: str
  role: Role
  assigned_by: Optional[str] = None
  updated_at: Optional[UTCDateTime] = None

  model_config = ConfigDict(from_attributes=True)
