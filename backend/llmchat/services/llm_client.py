import logging
from typing import Optional

from openai import AsyncOpenAI, OpenAIError

from llmchat.core.config import settings
from llmchat.core.errors import UpstreamError

logger = logging.getLogger(__name__)


_client: Optional[AsyncOpenAI] = None


def get_llm_client() -> AsyncOpenAI:
  """
  Ленивая инициализация клиента OpenAI
  Без ключа клиент не создается - это ошибка провайдера, а не падение приложения
  """

  global _client
  if _client is None:
    if not settings.OPENAI_API_KEY:
      raise UpstreamError("OpenAI API key is not configured")

    try:
      _client = AsyncOpenAI(
        api_key=settings.OPENAI_API_KEY,
        base_url=settings.OPENAI_BASE_URL,
        timeout=settings.LLM_TIMEOUT,
        max_retries=0,      # Повторы решает вызывающий код
      )
    except OpenAIError as e:
      raise UpstreamError(str(e)) from e

    logger.info(f"[get_llm_client] OpenAI клиент инициализирован")
  return _client
