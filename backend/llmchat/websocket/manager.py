from fastapi import WebSocket
from typing import Dict, Set
import logging
import uuid

from llmchat.utils.json_encoder import json_dumps


logger = logging.getLogger(__name__)


class ConnectionManager:
  """
  Менеджер WebSocket-соединений
  Хранит активные соединения по room_id; рассылку делает лента изменений
  """

  def __init__(self):
    # room_id -> set(websocket)
    self.active_connections: Dict[str, Set[WebSocket]] = {}
    self.websocket_ids: Dict[WebSocket, str] = {}


  async def connect(self, websocket: WebSocket, room_id: str, user_id: str) -> str:
    """
    Принимает WebSocket и регистрирует его в комнате
    """

    # 1. Короткий ID для логов
    ws_id = str(uuid.uuid4())[:8]
    self.websocket_ids[websocket] = ws_id

    # 2. Локальное хранилище
    await websocket.accept()
    self.active_connections.setdefault(room_id, set()).add(websocket)

    logger.info(f"[connect] Пользователь {user_id} присоединился к комнате {room_id}, ws_id {ws_id}")
    return ws_id


  def disconnect(self, websocket: WebSocket, room_id: str):
    """
    Убирает WebSocket из комнаты (повторный вызов безопасен)
    """

    ws_id = self.websocket_ids.pop(websocket, None)

    connections = self.active_connections.get(room_id)
    if connections is not None:
      connections.discard(websocket)
      if not connections:
        del self.active_connections[room_id]

    logger.info(f"[disconnect] Отключение от комнаты {room_id}, ws_id: {ws_id}")


  def connection_count(self, room_id: str) -> int:
    return len(self.active_connections.get(room_id, ()))


  async def send(self, websocket: WebSocket, data: dict) -> bool:
    """
    Отправка одному соединению
    False - соединение мертвое
    """

    try:
      await websocket.send_text(json_dumps(data))
      return True

    except Exception as e:
      logger.warning(f"[send] Ошибка отправки WebSocket {self.websocket_ids.get(websocket)}: {e}")
      return False


manager = ConnectionManager()
