import json

import pytest

from eventify.pipeline.vision import (
    EXTRACTION_PROMPT,
    extract_event_from_image,
    parse_event_json,
    response_text,
)

PAYLOAD = {"title": "Bake Sale", "start_date": "2025-04-02", "start_time": "10am"}


@pytest.mark.parametrize("response", [
    {"response": json.dumps(PAYLOAD)},
    {"description": json.dumps(PAYLOAD)},
    {"output_text": json.dumps(PAYLOAD)},
    {"choices": [{"message": {"content": json.dumps(PAYLOAD)}}]},
    {"choices": [{"text": json.dumps(PAYLOAD)}]},
    json.dumps(PAYLOAD),
    json.dumps(PAYLOAD).encode("utf-8"),
])
def test_response_shapes(response):
  raw = parse_event_json(response)
  assert raw.title == "Bake Sale"
  assert raw.start_date == "2025-04-02"
  assert raw.start_time == "10am"


def test_mapping_with_event_fields_is_the_payload():
  raw = parse_event_json({"title": "Direct", "start_date": "2025-01-02",
                          "description": "not a wrapper"})
  assert raw.title == "Direct"
  assert raw.description == "not a wrapper"


def test_response_key_wins_over_description():
  text = response_text({"response": "first", "description": "second"})
  assert text == "first"


def test_fenced_json_with_chatter():
  text = "Here you go:\n```json\n" + json.dumps(PAYLOAD) + "\n```\nHope it helps!"
  raw = parse_event_json(text)
  assert raw.title == "Bake Sale"


def test_json_embedded_in_prose():
  raw = parse_event_json("Sure! " + json.dumps(PAYLOAD) + " Let me know.")
  assert raw.start_time == "10am"


def test_json_array_uses_first_object():
  raw = parse_event_json(json.dumps([PAYLOAD, {"title": "Second"}]))
  assert raw.title == "Bake Sale"


def test_blank_fields_become_none():
  raw = parse_event_json(json.dumps({"title": "  ", "location": "", "end_time": None}))
  assert raw.title is None
  assert raw.location is None
  assert raw.end_time is None


def test_unparseable_output_yields_unknown_event():
  text = "I could not read this flyer. " * 20
  raw = parse_event_json(text)
  assert raw.title == "Unknown Event"
  assert raw.description.startswith("Could not extract event details. Raw text: ")
  assert raw.description.endswith(text[:200])
  assert raw.raw_text == text


def test_raw_text_is_truncated():
  payload = dict(PAYLOAD, description="x" * 1000)
  raw = parse_event_json(json.dumps(payload))
  assert len(raw.raw_text) == 500


@pytest.mark.asyncio
async def test_extract_event_from_image_passes_prompt_and_type():
  seen = {}

  class Recorder:

    async def infer(self, image_bytes, prompt, content_type=None):
      seen.update(image=image_bytes, prompt=prompt, content_type=content_type)
      return {"choices": [{"message": {"content": json.dumps(PAYLOAD)}}]}

  raw = await extract_event_from_image(Recorder(), b"\x89PNG", "image/png")
  assert raw.title == "Bake Sale"
  assert seen == {"image": b"\x89PNG", "prompt": EXTRACTION_PROMPT,
                  "content_type": "image/png"}
