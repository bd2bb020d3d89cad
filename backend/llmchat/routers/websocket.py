import json
import logging

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from llmchat.core.errors import AppError
from llmchat.core.security import InvalidTokenError
from llmchat.database import get_db, get_session_factory
from llmchat.dependencies.auth import authenticate_token
from llmchat.realtime.sync import EVENT_KINDS, RoomSyncController
from llmchat.services.message_service import MessageService
from llmchat.services.roles import require_permission
from llmchat.services.room_service import RoomService
from llmchat.websocket.manager import manager

logger = logging.getLogger(__name__)


router = APIRouter(prefix="/ws", tags=["websocket"])


def _forwarder(websocket: WebSocket, room_id: str, kind: str):
  """Событие контроллера -> кадр клиенту"""

  async def forward(payload):
    await manager.send(websocket, {
      "type": kind,
      "room_id": room_id,
      "data": payload,
    })
  return forward


@router.websocket("/rooms/{room_id}")
async def room_websocket(
  websocket: WebSocket,
  room_id: str,
  db: AsyncSession = Depends(get_db),
  session_factory: async_sessionmaker = Depends(get_session_factory),
):
  """
  WebSocket комнаты: снимок состояния + живые обновления из ленты
  """

  logger.info(f"Новое подключение WebSocket к комнате -> {room_id}")

  # 1. Токен из query-параметра
  token = websocket.query_params.get("token")
  if not token:
    logger.info(f"Нет токена в подключении к комнате -> {room_id}")
    await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
    return

  # 2. Аутентификация
  try:
    current_user = await authenticate_token(token, db)
  except InvalidTokenError as e:
    logger.info(f"Ошибка аутентификации WebSocket: {e}")
    await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
    return

  # 3. Право читать комнату
  try:
    role = await RoomService.get_user_role(room_id, current_user.id, db)
    require_permission(role, "view-messages")
  except AppError as e:
    logger.warning(f"Пользователь {current_user.id} не допущен в комнату {room_id}: {e.detail}")
    await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
    return

  # 4. Подключение и синхронизация комнаты
  await manager.connect(websocket, room_id, current_user.id)
  controller = RoomSyncController(current_user.id, session_factory=session_factory)

  for kind in EVENT_KINDS:
    controller.events.on(kind, _forwarder(websocket, room_id, kind))

  try:
    try:
      await controller.attach(room_id)
    except AppError as e:
      await manager.send(websocket, {"type": "error", "code": str(e), "message": e.detail})
      await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
      return

    # 5. Снимок состояния
    await manager.send(websocket, {
      "type": "snapshot",
      "room_id": room_id,
      "user_id": current_user.id,
      "data": controller.snapshot(),
    })

    # 6. Держим соединение открытым до отключения
    while True:
      raw_data = await websocket.receive_text()

      try:
        data = json.loads(raw_data)
      except json.JSONDecodeError:
        await manager.send(websocket, {
          "type": "error",
          "code": "INVALID_REQUEST",
          "message": "Неверный формат. Отправьте JSON",
        })
        continue

      frame_type = data.get("type") if isinstance(data, dict) else None

      if frame_type == "resubscribe":
        await controller.resubscribe()
        continue

      if frame_type == "reload":
        await controller.reload()
        await manager.send(websocket, {
          "type": "snapshot",
          "room_id": room_id,
          "user_id": current_user.id,
          "data": controller.snapshot(),
        })
        continue

      if frame_type == "delete":
        try:
          deleted = await MessageService.delete_messages(
            room_id,
            current_user.id,
            list(data.get("ids") or []),
            db,
          )
        except AppError as e:
          await manager.send(websocket, {"type": "error", "code": str(e), "message": e.detail})
          continue

        controller.forget_messages(deleted)
        continue

      if frame_type != "message":
        continue      # игнорируем неизвестные типы

      # 7. Отправка сообщения и ответ модели
      try:
        result = await MessageService.send_message(
          room_id,
          current_user,
          data.get("text", ""),
          db,
        )
      except AppError as e:
        await manager.send(websocket, {"type": "error", "code": str(e), "message": e.detail})
        continue

      # Оптимистично: не ждем эхо из ленты, дубли отсекаются по id
      await controller.merge_message(result.message)
      if result.reply:
        await controller.merge_message(result.reply)

  except WebSocketDisconnect:
    pass
  except Exception as e:
    logger.error(f"[room_websocket] Неожиданная ошибка в комнате {room_id}: {e}")
  finally:
    await controller.detach()
    manager.disconnect(websocket, room_id)
