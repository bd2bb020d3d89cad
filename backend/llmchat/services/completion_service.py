import logging
from typing import Iterable, List, Optional

import openai
from openai import AsyncOpenAI

from llmchat.core.config import settings
from llmchat.core.errors import UpstreamError
from llmchat.services.llm_client import get_llm_client
from llmchat.services.model_capabilities import (
  build_request_messages,
  capabilities_for,
  sanitize_temperature,
)

logger = logging.getLogger(__name__)


MODEL_UNAVAILABLE_MARKERS = ("does not exist", "not found")


def _provider_message(error: openai.APIError) -> str:
  """Текст ошибки из тела ответа {error: {message}}, иначе то, что дал клиент"""

  body = getattr(error, "body", None)
  if isinstance(body, dict):
    message = body.get("message")
    if message is None and isinstance(body.get("error"), dict):
      message = body["error"].get("message")
    if message:
      return message

  status_code = getattr(error, "status_code", None)
  if status_code is not None and not error.message:
    return f"OpenAI API error: {status_code}"
  return error.message


def classify_error(model: str, message: str, status_code: int | None = None) -> UpstreamError:
  """Недоступная модель -> понятное объяснение с исходным текстом, остальное как есть"""

  if any(marker in message for marker in MODEL_UNAVAILABLE_MARKERS):
    return UpstreamError(
      f"Модель \"{model}\" недоступна. Возможные причины:\n"
      f"1. Модель требует специального доступа через API ключ\n"
      f"2. Неправильное имя модели (проверьте документацию OpenAI)\n"
      f"3. Модель еще не опубликована для API\n\n"
      f"Оригинальная ошибка: {message}",
      upstream_status=status_code,
    )

  return UpstreamError(message, upstream_status=status_code)


class CompletionOrchestrator:
  """
  Запрос ответа модели для комнаты
  Одна попытка на вызов, без повторов
  """

  def __init__(self, client: Optional[AsyncOpenAI] = None):
    self._client = client


  @property
  def client(self) -> AsyncOpenAI:
    if self._client is None:
      self._client = get_llm_client()
    return self._client


  def build_request(
    self,
    system_prompt: Optional[str],
    model: str,
    temperature: Optional[float],
    history: Iterable,
  ) -> dict:
    """Форма запроса зависит от семейства модели"""

    profile = capabilities_for(model)

    request = {
      "model": model,
      "messages": build_request_messages(system_prompt, history, not profile.system_channel),
    }

    if profile.custom_temperature:
      request["temperature"] = sanitize_temperature(temperature)

    if profile.sends_token_limit:
      request[profile.token_limit_param] = settings.MAX_TOKENS

    return request


  async def complete(
    self,
    system_prompt: Optional[str],
    model: str,
    temperature: Optional[float],
    history: Iterable,
  ) -> str:
    """
    Возвращает текст ответа модели
    Любая ошибка провайдера -> UpstreamError
    """

    request = self.build_request(system_prompt, model, temperature, history)

    logger.info(
      f"[complete] Запрос к LLM: model={model}, сообщений={len(request['messages'])}, "
      f"temperature={request.get('temperature', 'default')}"
    )

    try:
      response = await self.client.chat.completions.create(**request)

    except openai.APIStatusError as e:
      message = _provider_message(e)
      logger.error(f"[complete] Ошибка OpenAI API ({e.status_code}): {message}")
      raise classify_error(model, message, e.status_code) from e

    except openai.APIError as e:
      logger.error(f"[complete] Ошибка соединения с OpenAI: {e}")
      raise classify_error(model, _provider_message(e)) from e

    if not response.choices:
      raise UpstreamError("No response from OpenAI")

    content = response.choices[0].message.content
    if content is None:
      raise UpstreamError("No response from OpenAI")

    return content.strip()


  async def list_models(self) -> List[str]:
    """Модели, доступные для текущего API ключа"""

    try:
      page = await self.client.models.list()
    except openai.APIStatusError as e:
      raise UpstreamError(_provider_message(e), upstream_status=e.status_code) from e
    except openai.APIError as e:
      raise UpstreamError(_provider_message(e)) from e

    return [model.id for model in page.data]


completion_orchestrator = CompletionOrchestrator()
