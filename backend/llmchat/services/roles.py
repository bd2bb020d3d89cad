"""
Иерархия ролей комнаты и проверки прав
viewer < writer < admin < owner, без обращений к БД
"""

import enum
from typing import Callable, Dict, Optional

from llmchat.core.errors import ForbiddenError


class Role(str, enum.Enum):
  VIEWER = "viewer"
  WRITER = "writer"
  ADMIN = "admin"
  OWNER = "owner"


ROLE_RANK: Dict[Role, int] = {
  Role.VIEWER: 1,
  Role.WRITER: 2,
  Role.ADMIN: 3,
  Role.OWNER: 4,
}


def parse_role(value) -> Optional[Role]:
  """Строка из БД/запроса -> Role, неизвестное значение -> None"""

  if value is None or isinstance(value, Role):
    return value
  try:
    return Role(value)
  except ValueError:
    return None


def compare(a: Role, b: Role) -> int:
  """Разница рангов: > 0 если a старше b"""

  return ROLE_RANK[Role(a)] - ROLE_RANK[Role(b)]


def at_least(role: Optional[Role], required: Role) -> bool:
  if role is None:
    return False
  return compare(role, required) >= 0


def can_view_messages(role: Optional[Role]) -> bool:
  return at_least(role, Role.VIEWER)


def can_send_messages(role: Optional[Role]) -> bool:
  return at_least(role, Role.WRITER)


def can_delete_messages(role: Optional[Role]) -> bool:
  return at_least(role, Role.WRITER)


def can_edit_prompt(role: Optional[Role]) -> bool:
  return at_least(role, Role.ADMIN)


def can_rename_room(role: Optional[Role]) -> bool:
  return at_least(role, Role.ADMIN)


def can_manage_roles(role: Optional[Role]) -> bool:
  return at_least(role, Role.ADMIN)


def can_delete_room(role: Optional[Role]) -> bool:
  return at_least(role, Role.OWNER)


def can_remove_role(role: Optional[Role]) -> bool:
  return role == Role.OWNER


def can_assign_role(assigner_role: Optional[Role], target_role: Role) -> bool:
  """
  Владелец назначает любую роль
  Админ - любую, кроме owner
  Остальные - никакую
  """

  if assigner_role == Role.OWNER:
    return True

  if assigner_role == Role.ADMIN:
    return Role(target_role) != Role.OWNER

  return False


def resolve_role(explicit_role: Optional[Role], is_creator: bool) -> Optional[Role]:
  """Явная роль важнее; без нее создатель комнаты считается владельцем"""

  if explicit_role is not None:
    return parse_role(explicit_role)
  if is_creator:
    return Role.OWNER
  return None


# Команда -> проверка прав
ACTION_PERMISSIONS: Dict[str, Callable[[Optional[Role]], bool]] = {
  "view-messages": can_view_messages,
  "send-message": can_send_messages,
  "delete-messages": can_delete_messages,
  "edit-prompt": can_edit_prompt,
  "rename-room": can_rename_room,
  "delete-room": can_delete_room,
  "assign-role": can_manage_roles,
  "remove-role": can_remove_role,
}


def require_permission(role: Optional[Role], action: str) -> None:
  """Отказ - всегда ForbiddenError с названием действия, не тихий no-op"""

  if not ACTION_PERMISSIONS[action](role):
    raise ForbiddenError(action)
