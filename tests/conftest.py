"""
Pytest Configuration and Fixtures

Shared fixtures for all tests: settings, a tiny PNG, and a scriptable fake relay
plugged into httpx through MockTransport.
"""

import io
import json
import base64
from typing import Any, Callable, Dict, List, Optional

import httpx
import pytest
from PIL import Image

from comicgen import ComicClient, PromptLogger, Settings


STORYBOARD = [
    "Scene one: a ginger cat stares at the office printer.",
    "Scene two: the printer spits paper at the cat.",
    "Scene three: the cat pounces on the paper stack.",
    "Scene four: the cat sleeps in the paper tray, smug.",
]

COPY_REPLY = {
    "title": "Printer Cat 🐱",
    "content": "When the printer fights back 😹 Who wins?",
    "tags": ["#comic", "#cat", "#office", "#funny", "#AIart"],
}


def make_png(color=(200, 30, 60), size=(16, 16)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", size, color).save(buf, format="PNG")
    return buf.getvalue()


def chat_reply(content: str) -> Dict[str, Any]:
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


def image_reply(data: bytes, key: str = "inline_data") -> Dict[str, Any]:
    return {
        "candidates": [{
            "finishReason": "STOP",
            "content": {"parts": [{key: {"mime_type": "image/jpeg", "data": base64.b64encode(data).decode()}}]},
        }]
    }


class FakeRelay:
    """
    Answers chat and image requests like the relay would.

    storyboard/copy/story hold the chat reply text; image_for(prompt_text) returns
    either a JSON payload or an httpx.Response for each image request.
    """

    def __init__(self):
        self.storyboard: str = json.dumps(STORYBOARD)
        self.copy: str = json.dumps(COPY_REPLY)
        self.story: str = "  A cat fights a printer and wins a nap.  "
        self.panel_bytes = make_png()
        self.image_for: Callable[[str], Any] = lambda text: image_reply(self.panel_bytes)
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        payload = json.loads(request.content)
        if request.url.path.endswith(":generateContent"):
            text = payload["contents"][0]["parts"][-1]["text"]
            result = self.image_for(text)
            if isinstance(result, httpx.Response):
                return result
            return httpx.Response(200, json=result)

        content = payload["messages"][0]["content"]
        prompt = content if isinstance(content, str) else content[0]["text"]
        if "storyboard artist" in prompt:
            return httpx.Response(200, json=chat_reply(self.storyboard))
        if "Xiaohongshu" in prompt:
            return httpx.Response(200, json=chat_reply(self.copy))
        return httpx.Response(200, json=chat_reply(self.story))


@pytest.fixture
def settings() -> Settings:
    return Settings(api_key="test-key", base_url="https://relay.test/", print_prompts=False)


@pytest.fixture
def relay() -> FakeRelay:
    return FakeRelay()


@pytest.fixture
def make_client(settings) -> Callable[..., ComicClient]:
    def factory(handler: Optional[Callable] = None) -> ComicClient:
        transport = httpx.MockTransport(handler) if handler else None
        return ComicClient(settings, log=PromptLogger(echo=False), transport=transport)
    return factory


@pytest.fixture
def client(make_client, relay) -> ComicClient:
    return make_client(relay)


@pytest.fixture
def reference_png() -> bytes:
    return make_png((10, 120, 200), (24, 32))
