from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Dict, List


class Settings(BaseSettings):
  """
  Все настройки приложения
  """

  # Основные
  PROJECT_NAME: str = "LLM Rooms"
  DEBUG: bool = True

  # Токены провайдера идентификации (только проверка подписи)
  SECRET_KEY: str
  ALGORITHM: str = "HS256"

  # База данных
  DATABASE_URL: str

  # Redis - лента изменений
  REDIS_HOST: str = "localhost"
  REDIS_PORT: int = 6379
  REDIS_DB: int = 0

  # LLM провайдер
  OPENAI_API_KEY: str | None = None
  OPENAI_BASE_URL: str | None = None
  LLM_TIMEOUT: float = 60.0
  DEFAULT_MODEL: str = "gpt-4o-mini"
  DEFAULT_TEMPERATURE: float = 0.7
  MAX_TOKENS: int = 1000
  HISTORY_WINDOW: int = 10          # Сколько последних сообщений уходит в контекст

  # Эмбеддинги
  EMBEDDING_MODEL: str = "text-embedding-3-small"
  EMBEDDING_MIN_LENGTH: int = 10

  # Синхронизация комнаты
  ROOM_REFETCH_DELAY: float = 0.3   # Секунд до повторной загрузки комнаты после события

  # Ручная привязка модели к семейству: {"my-o1-finetune": "reasoning"}
  MODEL_FAMILY_OVERRIDES: Dict[str, str] = {}

  # CORS - какие фронтенды могут подключаться
  ALLOWED_ORIGINS: List[str] = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
    "http://localhost:5173",
  ]

  model_config = SettingsConfigDict(
    env_file=".env",          # Путь до .env
    env_file_encoding="utf-8",
    case_sensitive=False,
    extra="ignore",
  )


  @field_validator("MODEL_FAMILY_OVERRIDES")
  @classmethod
  def validate_family_overrides(cls, value: Dict[str, str]) -> Dict[str, str]:
    """Неизвестное семейство модели - ошибка конфигурации, а не сюрприз при запросе"""

    from llmchat.services.model_capabilities import ModelFamily

    allowed = {family.value for family in ModelFamily}
    for model, family in value.items():
      if family not in allowed:
        raise ValueError(f"Неизвестное семейство '{family}' для модели '{model}', допустимо: {sorted(allowed)}")
    return value


# Экземляр настроек
settings = Settings()
