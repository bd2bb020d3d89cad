import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from sqlalchemy import update

from llmchat.core.errors import NotFoundError
from llmchat.models.room import Room
from llmchat.realtime.feed import CHANNEL_ERROR, ChangeEvent, publish_change
from llmchat.realtime.sync import RoomSyncController, parse_timestamp
from llmchat.schemas.room import RoomSettingsUpdate
from llmchat.services.message_service import MessageService
from llmchat.services.role_assignment import RoleAssignmentService
from llmchat.services.roles import Role
from llmchat.services.room_service import RoomService


BASE_TIME = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _message(room_id, message_id, seconds, text="текст"):
  return {
    "id": message_id,
    "room_id": room_id,
    "sender_id": "writer-1",
    "sender_name": "Вера",
    "text": text,
    "timestamp": BASE_TIME + timedelta(seconds=seconds),
    "created_at": BASE_TIME + timedelta(seconds=seconds),
  }


def _collect(controller, kind):
  received = []
  controller.events.on(kind, received.append)
  return received


@pytest.fixture
async def controller_factory(session_factory, change_feed):
  controllers = []

  def make(user_id, refetch_delay=30):
    controller = RoomSyncController(
      user_id,
      feed=change_feed,
      session_factory=session_factory,
      refetch_delay=refetch_delay,
    )
    controllers.append(controller)
    return controller

  yield make

  for controller in controllers:
    await controller.detach()


async def test_attach_loads_state(async_session, room, writer_user, controller_factory):
  await MessageService.create_message(room.id, writer_user.id, "Вера", "первое", async_session)
  await MessageService.create_message(room.id, writer_user.id, "Вера", "второе", async_session)

  controller = controller_factory(writer_user.id)
  await controller.attach(room.id)

  assert controller.attached
  assert controller.room.title == "Тестовая комната"
  assert controller.room.updated_at.tzinfo is not None
  assert [m.text for m in controller.messages] == ["первое", "второе"]
  assert controller.role == Role.WRITER
  assert [m.role for m in controller.members] == [Role.OWNER, Role.WRITER, Role.VIEWER]
  assert controller.snapshot()["role"] == "writer"


async def test_attach_missing_room_releases_subscriptions(writer_user, controller_factory, change_feed):
  controller = controller_factory(writer_user.id)

  with pytest.raises(NotFoundError):
    await controller.attach("missing-room")

  assert change_feed._subscriptions == set()
  assert not controller.attached


async def test_merge_is_idempotent(room, writer_user, controller_factory):
  controller = controller_factory(writer_user.id)
  await controller.attach(room.id)
  added = _collect(controller, "message_added")

  message = _message(room.id, "m1", 1)
  assert await controller.merge_message(message) is True
  snapshot = list(controller.messages)

  assert await controller.merge_message(message) is False
  assert controller.messages == snapshot
  assert len(added) == 1


async def test_feed_echo_of_local_message_not_duplicated(async_session, room, writer_user, controller_factory):
  controller = controller_factory(writer_user.id)
  await controller.attach(room.id)

  # Сообщение приходит из ленты сразу при сохранении, затем - оптимистично локально
  message = await MessageService.create_message(room.id, writer_user.id, "Вера", "hello", async_session)
  await controller.merge_message({
    "id": message.id,
    "room_id": room.id,
    "sender_id": writer_user.id,
    "sender_name": "Вера",
    "text": "hello",
    "timestamp": message.timestamp,
  })

  assert [m.id for m in controller.messages] == [message.id]


async def test_messages_ordered_by_timestamp_not_arrival(room, writer_user, controller_factory, change_feed):
  controller = controller_factory(writer_user.id)
  await controller.attach(room.id)

  for message_id, seconds in [("m3", 30), ("m1", 10), ("m2", 20)]:
    await change_feed.publish(room.id, ChangeEvent(
      table="messages",
      event_type="INSERT",
      new=_message(room.id, message_id, seconds),
    ))

  assert [m.id for m in controller.messages] == ["m1", "m2", "m3"]


async def test_message_for_other_room_ignored(room, writer_user, controller_factory):
  controller = controller_factory(writer_user.id)
  await controller.attach(room.id)

  assert await controller.merge_message(_message("other-room", "m1", 1)) is False
  assert controller.messages == []


async def test_deleted_messages_removed(room, writer_user, controller_factory, change_feed):
  controller = controller_factory(writer_user.id)
  await controller.attach(room.id)
  removed = _collect(controller, "messages_removed")

  await controller.merge_message(_message(room.id, "m1", 1))
  await controller.merge_message(_message(room.id, "m2", 2))

  await change_feed.publish(room.id, ChangeEvent(
    table="messages", event_type="DELETE", old={"id": "m1", "room_id": room.id},
  ))

  assert [m.id for m in controller.messages] == ["m2"]
  assert removed == [["m1"]]


async def test_stale_room_update_ignored(room, writer_user, controller_factory):
  controller = controller_factory(writer_user.id)
  await controller.attach(room.id)
  updates = _collect(controller, "room_updated")

  before = controller.room
  t2 = before.updated_at

  applied = await controller.on_room_updated(ChangeEvent(
    table="rooms",
    event_type="UPDATE",
    new={
      "id": room.id,
      "title": "Старое название",
      "system_prompt": "старый промпт",
      "model": "gpt-3.5-turbo",
      "temperature": 0.1,
      "updated_at": (t2 - timedelta(seconds=5)).isoformat(),
    },
  ))

  assert applied is False
  assert controller.room == before
  assert updates == []


async def test_newer_room_update_applied(room, writer_user, controller_factory):
  controller = controller_factory(writer_user.id)
  await controller.attach(room.id)
  updates = _collect(controller, "room_updated")

  t3 = controller.room.updated_at + timedelta(seconds=5)

  applied = await controller.on_room_updated(ChangeEvent(
    table="rooms",
    event_type="UPDATE",
    new={
      "id": room.id,
      "title": "Новое название",
      "system_prompt": "новый промпт",
      "model": "gpt-4.1",
      "temperature": 1.1,
      "updated_at": t3,
    },
  ))

  assert applied is True
  assert controller.room.title == "Новое название"
  assert controller.room.system_prompt == "новый промпт"
  assert controller.room.model == "gpt-4.1"
  assert controller.room.temperature == 1.1
  assert controller.room.updated_at == t3
  assert len(updates) == 1


async def test_room_update_without_timestamp_accepted(room, writer_user, controller_factory):
  controller = controller_factory(writer_user.id)
  await controller.attach(room.id)

  applied = await controller.on_room_updated(ChangeEvent(
    table="rooms", event_type="UPDATE", new={"id": room.id, "title": "Без времени", "temperature": "hot"},
  ))

  assert applied is True
  assert controller.room.title == "Без времени"
  assert controller.room.temperature == 0.5


async def test_peer_settings_change_reaches_controller(session_factory, room, owner_user, writer_user, controller_factory):
  controller = controller_factory(writer_user.id)
  await controller.attach(room.id)

  async with session_factory() as other:
    await RoomService.update_settings(
      room.id,
      owner_user.id,
      RoomSettingsUpdate(system_prompt="Ты пират", model="gpt-4.1"),
      other,
    )

  assert controller.room.system_prompt == "Ты пират"
  assert controller.room.model == "gpt-4.1"


async def test_refetch_after_update_event(session_factory, room, owner_user, writer_user, controller_factory):
  controller = controller_factory(writer_user.id, refetch_delay=0)
  await controller.attach(room.id)

  # Запись мимо ленты: событие приходит без полей
  async with session_factory() as other:
    await other.execute(update(Room).where(Room.id == room.id).values(title="Из базы"))
    await other.commit()

  assert controller.room.title == "Тестовая комната"

  await controller.on_room_updated(ChangeEvent(
    table="rooms", event_type="UPDATE", new={"id": room.id},
  ))

  for _ in range(50):
    if controller.room.title == "Из базы":
      break
    await asyncio.sleep(0.01)

  assert controller.room.title == "Из базы"


async def test_role_change_refreshes_own_role_and_members(
  async_session, room, owner_user, writer_user, controller_factory,
):
  controller = controller_factory(writer_user.id)
  await controller.attach(room.id)
  roles = _collect(controller, "role_changed")
  members = _collect(controller, "members_changed")

  await RoleAssignmentService.assign(
    room.id, writer_user.id, Role.ADMIN, Role.OWNER, owner_user.id, async_session,
  )

  assert controller.role == Role.ADMIN
  assert roles == [Role.ADMIN]
  assert len(members) == 1
  assert Role.ADMIN in [m.role for m in controller.members]


async def test_other_user_role_change_only_refreshes_members(
  async_session, room, owner_user, writer_user, outsider_user, controller_factory,
):
  controller = controller_factory(writer_user.id)
  await controller.attach(room.id)
  roles = _collect(controller, "role_changed")

  await RoleAssignmentService.assign(
    room.id, outsider_user.id, Role.VIEWER, Role.OWNER, owner_user.id, async_session,
  )

  assert controller.role == Role.WRITER
  assert roles == []
  assert outsider_user.id in [m.user_id for m in controller.members]


async def test_room_deleted_event(async_session, room, owner_user, writer_user, controller_factory):
  controller = controller_factory(writer_user.id)
  await controller.attach(room.id)
  deleted = _collect(controller, "room_deleted")

  await RoomService.delete_room(room.id, owner_user.id, async_session)

  assert deleted == [room.id]


async def test_events_during_load_are_replayed(room, writer_user, controller_factory, mocker):
  real_list_members = RoomService.list_members

  async def list_members_with_race(room_id, db):
    # Сообщение пришло, пока контроллер загружал состояние
    await publish_change(room_id, "messages", "INSERT", new=_message(room_id, "late", 5))
    return await real_list_members(room_id, db)

  mocker.patch.object(RoomService, "list_members", side_effect=list_members_with_race)

  controller = controller_factory(writer_user.id)
  await controller.attach(room.id)

  assert [m.id for m in controller.messages] == ["late"]


async def test_detach_makes_late_events_noops(room, writer_user, controller_factory, change_feed):
  controller = controller_factory(writer_user.id)
  await controller.attach(room.id)

  await controller.detach()
  await controller.detach()

  assert change_feed._subscriptions == set()
  assert await controller.merge_message(_message(room.id, "m1", 1)) is False
  assert await controller.on_room_updated(ChangeEvent(
    table="rooms", event_type="UPDATE", new={"id": room.id, "title": "Поздно"},
  )) is False
  await controller.on_role_changed(ChangeEvent(table="room_roles", event_type="DELETE", old={"user_id": writer_user.id}))

  assert controller.messages == []
  assert controller.room.title == "Тестовая комната"


async def test_detach_before_attach_is_safe(writer_user, controller_factory):
  controller = controller_factory(writer_user.id)
  await controller.detach()

  with pytest.raises(RuntimeError):
    await controller.attach("any")


async def test_channel_error_sets_degraded(room, writer_user, controller_factory):
  controller = controller_factory(writer_user.id)
  await controller.attach(room.id)
  errors = _collect(controller, "feed_error")

  await controller._subscriptions[0].set_status(CHANNEL_ERROR, ConnectionError("lost"))

  assert controller.degraded is True
  assert errors == ["lost"]

  await controller.resubscribe()
  assert controller.degraded is False
  assert len(controller._subscriptions) == 2


def test_parse_timestamp():
  assert parse_timestamp(None) is None
  assert parse_timestamp("not a date") is None
  assert parse_timestamp("2024-05-01T12:00:00Z") == BASE_TIME
  assert parse_timestamp(datetime(2024, 5, 1, 12, 0)) == BASE_TIME


async def test_forget_messages_removes_locally(room, writer_user, controller_factory):
  controller = controller_factory(writer_user.id)
  await controller.attach(room.id)

  await controller.merge_message(_message(room.id, "m1", 1))
  await controller.merge_message(_message(room.id, "m2", 2))

  controller.forget_messages(["m1", "unknown"])

  assert [m.id for m in controller.messages] == ["m2"]
  # После локального удаления то же сообщение можно слить снова
  assert await controller.merge_message(_message(room.id, "m1", 1)) is True


async def test_reload_picks_up_missed_rows(async_session, room, writer_user, controller_factory):
  controller = controller_factory(writer_user.id)
  await controller.attach(room.id)

  # Строка записана, пока подписки не было
  await controller._close_subscriptions()
  await MessageService.create_message(room.id, writer_user.id, "Вера", "пропущенное", async_session)
  assert controller.messages == []

  await controller.reload()

  assert [m.text for m in controller.messages] == ["пропущенное"]


async def test_reload_after_detach_is_noop(room, writer_user, controller_factory):
  controller = controller_factory(writer_user.id)
  await controller.attach(room.id)
  await controller.detach()

  await controller.reload()

  assert controller.messages == []
