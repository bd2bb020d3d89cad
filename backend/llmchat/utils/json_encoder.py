import json
from datetime import datetime, date
from uuid import UUID
from typing import Any, Iterable, Optional
import enum

from sqlalchemy import inspect as sa_inspect


class CustomJSONEncoder(json.JSONEncoder):
  """
  Кастомный JSON encoder для событий ленты и WebSocket
  Использование: json.dumps(data, cls=CustomJSONEncoder)
  """

  def default(self, obj: Any) -> Any:
    # 1. Дата и время
    if isinstance(obj, (datetime, date)):
      return obj.isoformat()

    # 2. UUID
    if isinstance(obj, UUID):
      return str(obj)

    # 3. Enum (роли, семейства моделей)
    if isinstance(obj, enum.Enum):
      return obj.value

    # 4. Pydantic модель
    if hasattr(obj, "model_dump"):
      return obj.model_dump()

    # 5. SQLAlchemy модели
    if hasattr(obj, "__table__"):
      return row_to_dict(obj)

    return super().default(obj)


def row_to_dict(row: Any, exclude: Optional[Iterable[str]] = None) -> dict:
  """Колонки ORM-объекта -> dict (полезная нагрузка события ленты)"""

  skip = set(exclude or ())
  mapper = sa_inspect(row).mapper
  return {
    column.key: getattr(row, column.key)
    for column in mapper.column_attrs
    if column.key not in skip
  }


# Упрощенная функция для удобства
def json_dumps(data: Any, **kwargs) -> str:
  """Сериализация с кастомный encoder"""

  kwargs.setdefault("ensure_ascii", False)    # Поддержка кириллицы
  kwargs.setdefault("separators", (",", ":"))
  return json.dumps(data, cls=CustomJSONEncoder, **kwargs)
