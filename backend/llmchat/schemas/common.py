from datetime import datetime, timezone
from typing import Annotated
from pydantic import AfterValidator


def ensure_utc(value: datetime) -> datetime:
  """SQLite отдает naive datetime - считаем его UTC, чтобы сравнения не падали"""

  if value.tzinfo is None:
    return value.replace(tzinfo=timezone.utc)
  return value.astimezone(timezone.utc)


UTCDateTime = Annotated[datetime, AfterValidator(ensure_utc)]
