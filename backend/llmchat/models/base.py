import uuid
from datetime import datetime, timezone
from sqlalchemy.orm import declarative_base


Base = declarative_base()


def new_uuid() -> str:
  return str(uuid.uuid4())


def utcnow() -> datetime:
  return datetime.now(timezone.utc)
