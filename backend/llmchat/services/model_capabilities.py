"""
Профили возможностей моделей

Семейства моделей принимают запросы разной формы:
- reasoning (o1, o3) - нет системного канала, нет temperature, лимит токенов задает провайдер
- frontier (gpt-5) - нет temperature, лимит через max_completion_tokens
- extended (gpt-4.1) - лимит через max_completion_tokens
- standard - все остальное, классический max_tokens
"""

import enum
import math
from dataclasses import dataclass
from typing import Dict, Iterable, List, NamedTuple, Optional, Tuple


DEFAULT_SYSTEM_PROMPT = "Вы - полезный ассистент."
DEFAULT_TEMPERATURE = 0.7
MIN_TEMPERATURE = 0.0
MAX_TEMPERATURE = 2.0

MAX_TOKENS_PARAM = "max_tokens"
MAX_COMPLETION_TOKENS_PARAM = "max_completion_tokens"


class ModelFamily(str, enum.Enum):
  REASONING = "reasoning"
  FRONTIER = "frontier"
  EXTENDED = "extended"
  STANDARD = "standard"


@dataclass(frozen=True)
class CapabilityProfile:
  family: ModelFamily
  system_channel: bool          # Принимает ли отдельное system-сообщение
  custom_temperature: bool
  token_limit_param: str
  sends_token_limit: bool       # False - длину ответа определяет провайдер


CAPABILITY_PROFILES: Dict[ModelFamily, CapabilityProfile] = {
  ModelFamily.REASONING: CapabilityProfile(
    family=ModelFamily.REASONING,
    system_channel=False,
    custom_temperature=False,
    token_limit_param=MAX_COMPLETION_TOKENS_PARAM,
    sends_token_limit=False,
  ),
  ModelFamily.FRONTIER: CapabilityProfile(
    family=ModelFamily.FRONTIER,
    system_channel=True,
    custom_temperature=False,
    token_limit_param=MAX_COMPLETION_TOKENS_PARAM,
    sends_token_limit=True,
  ),
  ModelFamily.EXTENDED: CapabilityProfile(
    family=ModelFamily.EXTENDED,
    system_channel=True,
    custom_temperature=True,
    token_limit_param=MAX_COMPLETION_TOKENS_PARAM,
    sends_token_limit=True,
  ),
  ModelFamily.STANDARD: CapabilityProfile(
    family=ModelFamily.STANDARD,
    system_channel=True,
    custom_temperature=True,
    token_limit_param=MAX_TOKENS_PARAM,
    sends_token_limit=True,
  ),
}

# Порядок важен: первый совпавший префикс определяет семейство
FAMILY_PREFIXES: Tuple[Tuple[str, ModelFamily], ...] = (
  ("o1", ModelFamily.REASONING),
  ("o3", ModelFamily.REASONING),
  ("gpt-5", ModelFamily.FRONTIER),
  ("gpt-4.1", ModelFamily.EXTENDED),
)


class HistoryEntry(NamedTuple):
  sender_name: str
  text: str


def _family_overrides() -> Dict[str, str]:
  from llmchat.core.config import settings
  return settings.MODEL_FAMILY_OVERRIDES


def resolve_family(model: str) -> ModelFamily:
  """Идентификатор модели -> семейство (сначала ручные привязки из настроек)"""

  override = _family_overrides().get(model)
  if override:
    return ModelFamily(override)

  for prefix, family in FAMILY_PREFIXES:
    if model.startswith(prefix):
      return family

  return ModelFamily.STANDARD


def capabilities_for(model: str) -> CapabilityProfile:
  return CAPABILITY_PROFILES[resolve_family(model)]


def is_reasoning_family(model: str) -> bool:
  return not capabilities_for(model).system_channel


def supports_custom_temperature(model: str) -> bool:
  return capabilities_for(model).custom_temperature


def token_limit_parameter_name(model: str) -> str:
  return capabilities_for(model).token_limit_param


def sanitize_temperature(value) -> float:
  """Нет значения / не число / NaN -> 0.7, иначе ограничиваем [0, 2]"""

  if isinstance(value, bool) or not isinstance(value, (int, float)):
    return DEFAULT_TEMPERATURE

  if not math.isfinite(value):
    return DEFAULT_TEMPERATURE

  return min(MAX_TEMPERATURE, max(MIN_TEMPERATURE, float(value)))


def _format_entry(entry) -> str:
  return f"{entry.sender_name}: {entry.text}"


def build_request_messages(
  system_prompt: Optional[str],
  history: Iterable,
  is_reasoning_family: bool,
) -> List[dict]:
  """
  Собирает сообщения для chat completions
  history - элементы с полями sender_name и text в хронологическом порядке
  """

  history = list(history)
  instruction = (system_prompt or "").strip() or DEFAULT_SYSTEM_PROMPT

  if not is_reasoning_family:
    content = system_prompt if (system_prompt or "").strip() else DEFAULT_SYSTEM_PROMPT
    messages = [{"role": "system", "content": content}]
    for entry in history:
      messages.append({"role": "user", "content": _format_entry(entry)})
    return messages

  # Системного канала нет - промпт встраивается в первое сообщение
  if not history:
    return [{"role": "user", "content": instruction}]

  messages = [{
    "role": "user",
    "content": f"{instruction}\n\n{_format_entry(history[0])}",
  }]
  for entry in history[1:]:
    messages.append({"role": "user", "content": _format_entry(entry)})

  return messages
