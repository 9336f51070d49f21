import base64
from types import SimpleNamespace

import httpx
import openai
import pytest

from eventify.errors import TransientIOFailure
from eventify.llm import OpenAIVisionService, _extract_message_text

URL = "https://api.openai.com/v1/chat/completions"


def _request():
  return httpx.Request("POST", URL)


def _status_error(cls, status):
  response = httpx.Response(status, request=_request())
  return cls(f"status {status}", response=response, body=None)


def _completion(content):
  return SimpleNamespace(
      choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


class FakeCompletions:

  def __init__(self, outcomes):
    self.outcomes = list(outcomes)
    self.calls = []

  async def create(self, **kwargs):
    self.calls.append(kwargs)
    outcome = self.outcomes.pop(0)
    if isinstance(outcome, Exception):
      raise outcome
    return outcome


def _client(*outcomes):
  completions = FakeCompletions(outcomes)
  client = SimpleNamespace(chat=SimpleNamespace(completions=completions))
  return client, completions


@pytest.mark.asyncio
async def test_request_carries_image_data_url():
  client, completions = _client(_completion('{"title": "Bake Sale"}'))
  service = OpenAIVisionService(client=client, model="vision-a",
                                fallback_model=None)
  text = await service.infer(b"\x89PNG bytes", "extract it",
                             content_type="image/png")

  assert text == '{"title": "Bake Sale"}'
  call = completions.calls[0]
  assert call["model"] == "vision-a"
  image_part, text_part = call["messages"][0]["content"]
  url = image_part["image_url"]["url"]
  assert url.startswith("data:image/png;base64,")
  assert base64.b64decode(url.split(",", 1)[1]) == b"\x89PNG bytes"
  assert text_part == {"type": "text", "text": "extract it"}


@pytest.mark.asyncio
async def test_missing_content_type_defaults_to_jpeg():
  client, completions = _client(_completion("{}"))
  service = OpenAIVisionService(client=client, model="vision-a",
                                fallback_model=None)
  await service.infer(b"img", "prompt")
  url = completions.calls[0]["messages"][0]["content"][0]["image_url"]["url"]
  assert url.startswith("data:image/jpeg;base64,")


@pytest.mark.parametrize("error", [
    openai.APIConnectionError(request=_request()),
    _status_error(openai.RateLimitError, 429),
    _status_error(openai.InternalServerError, 500),
])
@pytest.mark.asyncio
async def test_transient_openai_errors_are_translated(error):
  client, _ = _client(error)
  service = OpenAIVisionService(client=client, model="vision-a",
                                fallback_model="vision-b")
  with pytest.raises(TransientIOFailure):
    await service.infer(b"img", "prompt")


@pytest.mark.parametrize("cls,status", [
    (openai.NotFoundError, 404),
    (openai.BadRequestError, 400),
])
@pytest.mark.asyncio
async def test_rejected_model_falls_back_once(cls, status):
  client, completions = _client(_status_error(cls, status), _completion("ok"))
  service = OpenAIVisionService(client=client, model="vision-a",
                                fallback_model="vision-b")
  assert await service.infer(b"img", "prompt") == "ok"
  assert [c["model"] for c in completions.calls] == ["vision-a", "vision-b"]


@pytest.mark.asyncio
async def test_rejected_fallback_is_raised():
  client, completions = _client(_status_error(openai.NotFoundError, 404),
                                _status_error(openai.NotFoundError, 404))
  service = OpenAIVisionService(client=client, model="vision-a",
                                fallback_model="vision-b")
  with pytest.raises(openai.NotFoundError):
    await service.infer(b"img", "prompt")
  assert len(completions.calls) == 2


@pytest.mark.asyncio
async def test_rejected_model_without_fallback_is_raised():
  client, completions = _client(_status_error(openai.BadRequestError, 400))
  service = OpenAIVisionService(client=client, model="vision-a",
                                fallback_model=None)
  with pytest.raises(openai.BadRequestError):
    await service.infer(b"img", "prompt")
  assert len(completions.calls) == 1


@pytest.mark.asyncio
async def test_list_content_is_flattened():
  content = [{"type": "text", "text": ' {"title": '}, '"Gala"}',
             {"type": "image_url"}]
  client, _ = _client(_completion(content))
  service = OpenAIVisionService(client=client, model="vision-a",
                                fallback_model=None)
  assert await service.infer(b"img", "prompt") == '{"title": "Gala"}'


def test_extract_message_text_shapes():
  assert _extract_message_text("  hi  ") == "hi"
  assert _extract_message_text([{"text": "a"}, " b ", {"text": "  "}, 3]) == "a b"
  assert _extract_message_text(None) == ""
