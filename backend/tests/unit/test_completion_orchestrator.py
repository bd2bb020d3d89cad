from types import SimpleNamespace
from unittest.mock import AsyncMock

import httpx
import openai
import pytest

from llmchat.core.errors import UpstreamError
from llmchat.services.completion_service import CompletionOrchestrator, classify_error
from llmchat.services.model_capabilities import HistoryEntry


HISTORY = [HistoryEntry(sender_name="Вера", text="Привет")]


def _response(content):
  return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


def _status_error(status_code: int, message: str) -> openai.APIStatusError:
  request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
  response = httpx.Response(status_code, request=request)
  return openai.APIStatusError(
    message,
    response=response,
    body={"message": message, "type": "invalid_request_error"},
  )


@pytest.fixture
def fake_client(mocker):
  client = mocker.MagicMock()
  client.chat.completions.create = AsyncMock(return_value=_response("  Ответ  "))
  return client


def test_build_request_standard_family():
  request = CompletionOrchestrator(client=object()).build_request("P", "gpt-4o-mini", 5, HISTORY)

  assert request["model"] == "gpt-4o-mini"
  assert request["temperature"] == 2.0
  assert request["max_tokens"] == 1000
  assert "max_completion_tokens" not in request
  assert request["messages"][0] == {"role": "system", "content": "P"}


def test_build_request_frontier_family_without_temperature():
  request = CompletionOrchestrator(client=object()).build_request("P", "gpt-5", 0.3, HISTORY)

  assert "temperature" not in request
  assert request["max_completion_tokens"] == 1000
  assert "max_tokens" not in request


def test_build_request_reasoning_family_omits_token_limit():
  request = CompletionOrchestrator(client=object()).build_request("P", "o1-mini", 0.3, HISTORY)

  assert "temperature" not in request
  assert "max_tokens" not in request
  assert "max_completion_tokens" not in request
  assert request["messages"] == [{"role": "user", "content": "P\n\nВера: Привет"}]


async def test_complete_returns_stripped_text(fake_client):
  orchestrator = CompletionOrchestrator(client=fake_client)

  reply = await orchestrator.complete("P", "gpt-4o-mini", 0.7, HISTORY)

  assert reply == "Ответ"
  fake_client.chat.completions.create.assert_awaited_once()
  kwargs = fake_client.chat.completions.create.call_args.kwargs
  assert kwargs["temperature"] == 0.7


async def test_complete_makes_single_attempt_on_error(fake_client):
  fake_client.chat.completions.create.side_effect = _status_error(500, "Internal error")
  orchestrator = CompletionOrchestrator(client=fake_client)

  with pytest.raises(UpstreamError) as exc:
    await orchestrator.complete("P", "gpt-4o-mini", 0.7, HISTORY)

  assert exc.value.detail == "Internal error"
  assert exc.value.upstream_status == 500
  assert fake_client.chat.completions.create.await_count == 1


async def test_complete_unknown_model_explained(fake_client):
  fake_client.chat.completions.create.side_effect = _status_error(
    404, "The model `gpt-9` does not exist or you do not have access to it."
  )
  orchestrator = CompletionOrchestrator(client=fake_client)

  with pytest.raises(UpstreamError) as exc:
    await orchestrator.complete("P", "gpt-9", 0.7, HISTORY)

  assert "Модель \"gpt-9\" недоступна" in exc.value.detail
  assert "does not exist" in exc.value.detail


async def test_complete_connection_error(fake_client):
  fake_client.chat.completions.create.side_effect = openai.APIConnectionError(
    request=httpx.Request("POST", "https://api.openai.com/v1/chat/completions"),
  )
  orchestrator = CompletionOrchestrator(client=fake_client)

  with pytest.raises(UpstreamError):
    await orchestrator.complete("P", "gpt-4o-mini", 0.7, HISTORY)


@pytest.mark.parametrize("response", [
  SimpleNamespace(choices=[]),
  _response(None),
])
async def test_complete_empty_response(fake_client, response):
  fake_client.chat.completions.create.return_value = response
  orchestrator = CompletionOrchestrator(client=fake_client)

  with pytest.raises(UpstreamError) as exc:
    await orchestrator.complete("P", "gpt-4o-mini", 0.7, HISTORY)

  assert exc.value.detail == "No response from OpenAI"


def test_classify_error_keeps_other_messages():
  error = classify_error("gpt-4o", "Rate limit reached", 429)

  assert error.detail == "Rate limit reached"
  assert error.upstream_status == 429
  assert str(error) == "UPSTREAM_ERROR"


async def test_list_models(fake_client):
  fake_client.models.list = AsyncMock(return_value=SimpleNamespace(
    data=[SimpleNamespace(id="gpt-4o-mini"), SimpleNamespace(id="o1-mini")],
  ))

  models = await CompletionOrchestrator(client=fake_client).list_models()

  assert models == ["gpt-4o-mini", "o1-mini"]
