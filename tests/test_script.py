"""Storyboard parsing and the script generation step."""

import json

import httpx
import pytest

from comicgen import (
    ScriptFormatError, coerce_script, generate_comic_script, parse_script_reply,
    split_script_lines,
)
from conftest import STORYBOARD


class TestParseScriptReply:

    def test_panels_key_is_truncated_to_four(self):
        assert parse_script_reply('{"panels": ["a","b","c","d","e"]}') == ["a", "b", "c", "d"]

    def test_short_array_is_returned_as_is(self):
        assert parse_script_reply('["x","y"]') == ["x", "y"]

    def test_array_in_code_fence(self):
        reply = "```json\n" + json.dumps(STORYBOARD) + "\n```"
        assert parse_script_reply(reply) == STORYBOARD

    def test_non_string_items_are_serialized(self):
        result = parse_script_reply('[{"scene": "a"}, "b", "c", "d"]')
        assert result[0] == '{"scene": "a"}'

    def test_numbered_keys_follow_their_ordinals(self):
        reply = json.dumps({"panel_3": "c", "panel_1": "a", "Panel 4": "d", "2": "b"})
        assert parse_script_reply(reply) == ["a", "b", "c", "d"]

    def test_unnumbered_object_is_rejected(self):
        reply = json.dumps({"intro": "a", "middle": "b", "twist": "c", "end": "d"})
        with pytest.raises(ScriptFormatError):
            parse_script_reply(reply)

    def test_scalar_is_rejected(self):
        with pytest.raises(ScriptFormatError):
            coerce_script(42)

    def test_non_json_falls_back_to_lines(self):
        reply = "\n".join([
            "Here are the panels:",
            "[",
            "Panel 1: the cat sees the printer across the room",
            "short",
            "Panel 2: the printer jams and beeps angrily",
            "Panel 3: the cat swats at the blinking light",
            "Panel 4: paper everywhere, the cat asleep on top",
            "Panel 5: an extra line the model should not have written",
            "]",
        ])
        result = parse_script_reply(reply)
        assert result == [
            "Here are the panels:",
            "Panel 1: the cat sees the printer across the room",
            "Panel 2: the printer jams and beeps angrily",
            "Panel 3: the cat swats at the blinking light",
        ]


def test_split_script_lines_properties():
    text = "\n".join([
        "tiny",
        "[ not a description at all",
        "   A long enough description of panel one   ",
        "] closing bracket line that is long",
        "Another long enough line for panel two",
        "ok",
    ])
    result = split_script_lines(text)
    assert len(result) <= 4
    assert all(len(line) >= 11 for line in result)
    assert not any(line.startswith(("[", "]")) for line in result)
    assert result == ["A long enough description of panel one", "Another long enough line for panel two"]


def test_split_script_lines_never_raises_on_empty():
    assert split_script_lines("") == []


class TestGenerateComicScript:

    @pytest.mark.asyncio
    async def test_returns_four_prompts(self, client, relay):
        assert await generate_comic_script(client, "A cat and a printer") == STORYBOARD
        body = json.loads(relay.requests[0].content)
        assert body["response_format"] == {"type": "json_object"}
        assert "A cat and a printer" in body["messages"][0]["content"]

    @pytest.mark.asyncio
    async def test_transport_failure_yields_placeholders(self, make_client):
        client = make_client(lambda request: httpx.Response(503, text="upstream down"))
        result = await generate_comic_script(client, "story")
        assert len(result) == 4
        assert result[0].startswith("Failure:")
        assert "503" in result[0]
        assert result[1:] == ["Script error panel 2.", "Script error panel 3.", "Script error panel 4."]

    @pytest.mark.asyncio
    async def test_deeply_nested_reply_does_not_raise(self, client, relay):
        relay.storyboard = "[" * 200000
        # falls back to line splitting, which drops bracket lines
        assert await generate_comic_script(client, "story") == []

    @pytest.mark.asyncio
    async def test_unrecognized_shape_yields_placeholders(self, client, relay):
        relay.storyboard = json.dumps({"a": 1})
        result = await generate_comic_script(client, "story")
        assert len(result) == 4
        assert result[0].startswith("Failure:")
