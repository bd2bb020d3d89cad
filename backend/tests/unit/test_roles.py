import pytest

from llmchat.core.errors import ForbiddenError
from llmchat.services.roles import (
  ACTION_PERMISSIONS,
  Role,
  at_least,
  can_assign_role,
  can_delete_messages,
  can_delete_room,
  can_edit_prompt,
  can_manage_roles,
  can_remove_role,
  can_rename_room,
  can_send_messages,
  can_view_messages,
  compare,
  parse_role,
  require_permission,
  resolve_role,
)


ALL_ROLES = [Role.VIEWER, Role.WRITER, Role.ADMIN, Role.OWNER, None]


def test_compare_follows_hierarchy():
  assert compare(Role.OWNER, Role.VIEWER) == 3
  assert compare(Role.WRITER, Role.ADMIN) == -1
  assert compare(Role.ADMIN, Role.ADMIN) == 0


@pytest.mark.parametrize("role", ALL_ROLES)
def test_predicates_match_hierarchy(role):
  assert can_view_messages(role) == at_least(role, Role.VIEWER)
  assert can_send_messages(role) == at_least(role, Role.WRITER)
  assert can_delete_messages(role) == at_least(role, Role.WRITER)
  assert can_edit_prompt(role) == at_least(role, Role.ADMIN)
  assert can_rename_room(role) == at_least(role, Role.ADMIN)
  assert can_manage_roles(role) == at_least(role, Role.ADMIN)
  assert can_delete_room(role) == (role == Role.OWNER)


def test_null_role_has_no_permissions():
  assert not at_least(None, Role.VIEWER)
  assert not any(check(None) for check in ACTION_PERMISSIONS.values())


def test_assign_role_rules():
  assert can_assign_role(Role.ADMIN, Role.OWNER) is False
  assert can_assign_role(Role.ADMIN, Role.ADMIN) is True
  assert can_assign_role(Role.OWNER, Role.OWNER) is True

  for target in [Role.VIEWER, Role.WRITER, Role.ADMIN, Role.OWNER]:
    assert can_assign_role(Role.VIEWER, target) is False
    assert can_assign_role(Role.WRITER, target) is False
    assert can_assign_role(None, target) is False


def test_only_owner_removes_roles():
  assert can_remove_role(Role.OWNER)
  assert not can_remove_role(Role.ADMIN)
  assert not can_remove_role(None)


def test_resolve_role_creator_fallback():
  assert resolve_role(None, is_creator=True) == Role.OWNER
  assert resolve_role(Role.WRITER, is_creator=True) == Role.WRITER
  assert resolve_role(None, is_creator=False) is None
  assert resolve_role("admin", is_creator=False) == Role.ADMIN


def test_parse_role_unknown_value():
  assert parse_role("writer") == Role.WRITER
  assert parse_role("superuser") is None
  assert parse_role(None) is None


def test_require_permission_raises_forbidden_with_action():
  with pytest.raises(ForbiddenError) as exc:
    require_permission(Role.VIEWER, "send-message")

  assert str(exc.value) == "FORBIDDEN"
  assert exc.value.action == "send-message"
  assert exc.value.status_code == 403


def test_require_permission_allows():
  require_permission(Role.WRITER, "send-message")
  require_permission(Role.OWNER, "delete-room")
