# comicgen.py
import os
import io
import re
import sys
import json
import base64
import random
import string
import asyncio
import binascii
import mimetypes
import threading
from pathlib import Path
from typing import List, Optional, Dict, Any, Callable, Literal, Tuple

import httpx
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field
from PIL import Image, ImageDraw, ImageFont

# ------------------ ENV & CONFIG ------------------
load_dotenv()

API_KEY_VAR = "COMICGEN_API_KEY"
BASE_URL_VAR = "COMICGEN_API_BASE_URL"

# Models (override via env if your relay exposes different names)
DEFAULT_TEXT_MODEL = "gemini-2.5-flash"
DEFAULT_IMAGE_MODEL = "gemini-2.5-flash-image"

CHAT_ENDPOINT = "/v1/chat/completions"
IMAGE_ENDPOINT_TEMPLATE = "/v1beta/models/{model}:generateContent"

PANEL_COUNT = 4
STYLE_HEADER = "Style constraint: Consistent high-quality Japanese webtoon comic style. Clean digital line art, vibrant cel-shading colors."

DEFAULT_COPY_TITLE = "AI Comic Share ✨"
DEFAULT_COPY_TAG = "#AIComic"


# ------------------ ERRORS ------------------------


class ComicGenError(Exception):
    """Base class for every failure the generator reports to its callers."""


class ConfigurationError(ComicGenError):
    pass


class InvalidInputError(ComicGenError):
    pass


class GenerationInProgressError(ComicGenError):
    pass


class TransportError(ComicGenError):
    """Non-2xx reply (or network failure, status None) from the relay."""

    def __init__(self, status: Optional[int], message: str):
        self.status = status
        self.message = message
        label = status if status is not None else "network"
        super().__init__(f"API request failed [{label}]: {message}")


class ParseFailure(ComicGenError):
    def __init__(self, message: str, snippet: str):
        self.snippet = snippet
        super().__init__(message)


class ScriptFormatError(ComicGenError):
    pass


class ContentPolicyError(ComicGenError):
    def __init__(self, message: str, finish_reason: Optional[str] = None,
                 safety_ratings: Optional[List[Dict[str, Any]]] = None):
        self.finish_reason = finish_reason
        self.safety_ratings = safety_ratings or []
        super().__init__(message)


class StructuralError(ComicGenError):
    pass


class Settings(BaseModel):
    """Relay configuration, resolved once and handed to ComicClient."""

    api_key: str
    base_url: str
    text_model: str = DEFAULT_TEXT_MODEL
    image_model: str = DEFAULT_IMAGE_MODEL
    request_timeout: float = 300.0
    panel_size: int = 1024
    print_prompts: bool = True

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        api_key = (env.get(API_KEY_VAR) or "").strip()
        base_url = (env.get(BASE_URL_VAR) or "").strip()
        if not api_key or not base_url:
            missing = [name for name, value in ((API_KEY_VAR, api_key), (BASE_URL_VAR, base_url)) if not value]
            raise ConfigurationError(
                f"Missing configuration: {', '.join(missing)}. "
                f"Check that .env defines both {API_KEY_VAR} and {BASE_URL_VAR}.")
        try:
            return cls(
                api_key=api_key,
                base_url=base_url,
                text_model=env.get("TEXT_MODEL") or DEFAULT_TEXT_MODEL,
                image_model=env.get("IMAGE_MODEL") or DEFAULT_IMAGE_MODEL,
                request_timeout=float(env.get("REQUEST_TIMEOUT") or 300),
                panel_size=int(env.get("PANEL_SIZE") or 1024),
                print_prompts=(env.get("PRINT_PROMPTS") or "1") == "1",
            )
        except ValueError as e:
            raise ConfigurationError(f"Invalid configuration value: {e}") from e


# ------------------ PROMPTS -----------------------
PROMPTS_DIR = Path(__file__).parent / "prompts"


def load_prompt(name: str) -> str:
    p = PROMPTS_DIR / f"{name}.txt"
    if not p.exists():
        raise FileNotFoundError(f"Prompt file not found: {p}")
    return p.read_text(encoding="utf-8")


STORYBOARD_PROMPT_TEMPLATE = load_prompt("storyboard")
COPY_PROMPT_TEMPLATE = load_prompt("copy")
RANDOM_STORY_PROMPT = load_prompt("random_story")
RANDOM_STORY_IMAGE_PROMPT = load_prompt("random_story_image")

# ------------------ DATA MODELS -------------------

PanelStatus = Literal["pending", "loading", "completed", "failed"]
GenerationStep = Literal["idle", "scripting", "drawing", "copywriting", "done"]


class Panel(BaseModel):
    id: int
    prompt: str = ""
    image_data: Optional[bytes] = None
    status: PanelStatus = "pending"
    error: Optional[str] = None

    def public_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "prompt": self.prompt,
            "status": self.status,
            "error": self.error,
            "has_image": self.image_data is not None,
        }


class GeneratedCopy(BaseModel):
    model_config = ConfigDict(frozen=True)

    title: str
    content: str
    tags: List[str] = Field(default_factory=list)

    def as_text(self) -> str:
        """Clipboard form: title, body and hashtags separated by blank lines."""
        tags = " ".join(t if t.startswith("#") else f"#{t}" for t in self.tags)
        return f"{self.title}\n\n{self.content}\n\n{tags}"


class GenerationState(BaseModel):
    is_generating: bool = False
    step: GenerationStep = "idle"
    error: Optional[str] = None


def failed_copy() -> GeneratedCopy:
    return GeneratedCopy(
        title="Copy generation hit a snag 🤯",
        content="Sorry, the AI got stuck while writing the copy. Try again later, or write your own! (Error: Failed to generate copy)",
        tags=["#NeedsHumanTouch"],
    )


# ------------------ UTILITIES ---------------------


def fill(template: str, **kv):
    """Replace only specific placeholders, leaving JSON braces alone."""
    out = template
    for k, v in kv.items():
        out = out.replace(f"{{{k}}}", v)
    return out


def ensure_dir(p: Path) -> None:
    p.mkdir(parents=True, exist_ok=True)


def slugify(text: str, fallback: str = "item") -> str:
    text = text.strip().lower()
    text = re.sub(r"[^a-z0-9]+", "-", text).strip("-")
    return text or fallback


FENCE_RE = re.compile(r"```json|```")


def strip_code_fences(text: str) -> str:
    return FENCE_RE.sub("", text).strip()


def _parse_raw(text: str) -> Any:
    return json.loads(text)


def _parse_unfenced(text: str) -> Any:
    return json.loads(strip_code_fences(text))


def _parse_brace_slice(text: str) -> Any:
    cleaned = strip_code_fences(text)
    start = cleaned.find("{")
    end = cleaned.rfind("}")
    if start == -1 or end <= start:
        raise ParseFailure("No JSON object structure ({...}) found in model reply", cleaned)
    chunk = cleaned[start:end + 1]
    try:
        return json.loads(chunk)
    except (ValueError, RecursionError) as e:
        print(f"[ERROR] JSON brace extraction failed: {chunk[:500]}")
        raise ParseFailure("Could not parse valid JSON from model reply", chunk) from e


def extract_json(text: str) -> Any:
    """
    Recover one JSON value from a free-form model reply.

    Attempts run from strictest to most permissive: the raw text, the text with
    markdown fences removed, then the span between the first '{' and the last '}'.
    Raises ParseFailure when every attempt fails.
    """
    # Pathologically nested replies overflow the decoder's recursion limit
    for attempt in (_parse_raw, _parse_unfenced):
        try:
            return attempt(text)
        except (ValueError, RecursionError):
            continue
    return _parse_brace_slice(text)


def image_bytes_to_pil(b: bytes) -> Image.Image:
    return Image.open(io.BytesIO(b)).convert("RGB")


def pil_to_png_bytes(img: Image.Image) -> bytes:
    """Converts a PIL Image object to PNG bytes."""
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def resize_to_fill(img: Image.Image, size: int) -> Image.Image:
    """Resize image to fill the entire square without padding/whitespace."""
    w, h = img.size
    scale = max(size / w, size / h)  # Scale to fill, not fit
    new_w, new_h = max(size, int(w * scale)), max(size, int(h * scale))
    img = img.resize((new_w, new_h), resample=Image.LANCZOS)

    # Crop to exact size if needed
    if new_w > size or new_h > size:
        left = (new_w - size) // 2
        top = (new_h - size) // 2
        img = img.crop((left, top, left + size, top + size))

    return img


def to_inline_image_part(b64_data: str, mime: str = "image/png") -> Dict[str, Any]:
    return {"inline_data": {"mime_type": mime, "data": b64_data}}


def encode_reference_image(data: bytes, filename: Optional[str] = None) -> Tuple[str, str]:
    """Validate an uploaded reference image and return (base64 payload, MIME type)."""
    if not data:
        raise InvalidInputError("Reference image is empty")
    try:
        with Image.open(io.BytesIO(data)) as img:
            img.verify()
            fmt = img.format
    except Exception as e:
        raise InvalidInputError(f"Reference image could not be read: {e}") from e

    mime = Image.MIME.get(fmt or "")
    if not mime and filename:
        mime = mimetypes.guess_type(filename)[0]
    if not mime or not mime.startswith("image/"):
        raise InvalidInputError(f"Unsupported reference image format: {fmt}")
    return base64.b64encode(data).decode("utf-8"), mime


def error_message_from_body(body: str) -> str:
    """Prefer the relay's machine-readable error.message, else the raw body."""
    try:
        payload = json.loads(body)
    except ValueError:
        return body
    if isinstance(payload, dict):
        err = payload.get("error")
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])
    return body


# ------------------ COMIC STRIP LAYOUT ------------


def _failed_panel_tile(panel_id: int, panel_size: int) -> Image.Image:
    tile = Image.new("RGB", (panel_size, panel_size), (235, 235, 235))
    draw = ImageDraw.Draw(tile)
    font = ImageFont.load_default()
    label = f"Panel {panel_id} unavailable"
    bbox = draw.textbbox((0, 0), label, font=font)
    x = (panel_size - (bbox[2] - bbox[0])) // 2
    y = (panel_size - (bbox[3] - bbox[1])) // 2
    draw.text((x, y), label, fill=(120, 120, 120), font=font)
    return tile


def create_comic_strip(panel_images: List[Optional[bytes]], panel_size: int = 1024) -> Image.Image:
    """Lay panels out in a bordered 2-column grid; missing images become labelled grey tiles."""
    cols = 2
    rows = (len(panel_images) + 1) // 2

    border_width = 8
    panel_spacing = 12
    margin = 20

    canvas_width = cols * panel_size + (cols - 1) * panel_spacing + 2 * margin
    canvas_height = rows * panel_size + (rows - 1) * panel_spacing + 2 * margin
    canvas = Image.new("RGB", (canvas_width, canvas_height), "white")
    draw = ImageDraw.Draw(canvas)

    for i, panel_bytes in enumerate(panel_images):
        row = i // cols
        col = i % cols

        x = margin + col * (panel_size + panel_spacing)
        y = margin + row * (panel_size + panel_spacing)

        if panel_bytes:
            try:
                panel_img = resize_to_fill(image_bytes_to_pil(panel_bytes), panel_size)
            except Exception as e:
                print(f"[WARN] Panel {i + 1} image unreadable, using placeholder: {e}")
                panel_img = _failed_panel_tile(i + 1, panel_size)
        else:
            panel_img = _failed_panel_tile(i + 1, panel_size)

        draw.rectangle([x - border_width//2, y - border_width//2,
                       x + panel_size + border_width//2, y + panel_size + border_width//2],
                       fill="black")
        canvas.paste(panel_img, (x, y))

    return canvas

# --- Simple prompt logger (stdout + file) ---


class PromptLogger:
    def __init__(self, out_file: Optional[Path] = None, echo: bool = True):
        self.out_file = out_file
        self.echo = echo
        self.lines: List[str] = []
        self._lock = threading.Lock()

    def log(self, title: str, content: str):
        block = f"\n===== {title} =====\n{(content or '').strip()}\n"
        with self._lock:
            self.lines.append(block)
        if self.echo:
            print(block)

    def flush(self):
        if self.out_file is None:
            return
        with self._lock:
            text = "".join(self.lines)
        self.out_file.write_text(text, encoding="utf-8")

# ------------------ RELAY CLIENT ------------------


class ComicClient:
    def __init__(self, settings: Settings, log: Optional[PromptLogger] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings
        self.log = log or PromptLogger(echo=settings.print_prompts)
        self._transport = transport

    @property
    def image_endpoint(self) -> str:
        return IMAGE_ENDPOINT_TEMPLATE.format(model=self.settings.image_model)

    def build_url(self, endpoint: str) -> str:
        return f"{self.settings.base_url.rstrip('/')}{endpoint}"

    async def post(self, payload: Dict[str, Any], endpoint: str = CHAT_ENDPOINT) -> Dict[str, Any]:
        url = self.build_url(endpoint)
        if endpoint.endswith(":generateContent"):
            print(f"[API Request] image request: {self.settings.image_model}")
        else:
            print(f"[API Request] text request: {payload.get('model')}")

        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.settings.api_key}",
        }
        try:
            async with httpx.AsyncClient(timeout=self.settings.request_timeout,
                                         transport=self._transport) as http:
                response = await http.post(url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            raise TransportError(None, str(e) or type(e).__name__) from e

        if not response.is_success:
            body = response.text
            print(f"[ERROR] API error details: {body}")
            raise TransportError(response.status_code, error_message_from_body(body))

        try:
            return response.json()
        except ValueError as e:
            raise StructuralError(f"Relay returned a non-JSON body: {response.text[:200]}") from e

    async def chat(self, messages: List[Dict[str, Any]], temperature: Optional[float] = None,
                   response_format: Optional[Dict[str, str]] = None) -> str:
        payload: Dict[str, Any] = {"model": self.settings.text_model, "messages": messages}
        if temperature is not None:
            payload["temperature"] = temperature
        if response_format:
            payload["response_format"] = response_format

        data = await self.post(payload, CHAT_ENDPOINT)
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise StructuralError(f"Chat reply has no choices[0].message.content: {str(data)[:200]}") from e
        if not isinstance(content, str):
            raise StructuralError("Chat reply content is not text")
        return content

# ------------------ GENERATION STEPS -------------


async def generate_random_story(client: ComicClient, image_b64: Optional[str] = None,
                                mime_type: Optional[str] = None) -> str:
    """Invent a short four-beat story, built around the reference image when one is given."""
    if image_b64 and mime_type:
        prompt = RANDOM_STORY_IMAGE_PROMPT
        messages = [{
            "role": "user",
            "content": [
                {"type": "text", "text": prompt},
                {"type": "image_url", "image_url": {"url": f"data:{mime_type};base64,{image_b64}"}},
            ],
        }]
    else:
        prompt = RANDOM_STORY_PROMPT
        messages = [{"role": "user", "content": prompt}]

    client.log.log("RANDOM_STORY_PROMPT", prompt)
    story = await client.chat(messages, temperature=0.95)
    client.log.log("RANDOM_STORY_RESPONSE", story)
    return story.strip()


ORDINAL_KEY_RE = re.compile(r"^\s*(?:panel[\s_-]*)?(\d+)\s*$", re.IGNORECASE)


def split_script_lines(text: str) -> List[str]:
    """Degraded storyboard: the first four substantial, non-bracket lines."""
    lines = [line.strip() for line in (text or "").split("\n")]
    kept = [line for line in lines
            if len(line) > 10 and not line.startswith("[") and not line.startswith("]")]
    return kept[:PANEL_COUNT]


def _as_panel_text(item: Any) -> str:
    return item if isinstance(item, str) else json.dumps(item, ensure_ascii=False)


def coerce_script(parsed: Any) -> List[str]:
    if isinstance(parsed, list):
        return [_as_panel_text(p) for p in parsed[:PANEL_COUNT]]
    if isinstance(parsed, dict):
        panels = parsed.get("panels")
        if isinstance(panels, list):
            return [_as_panel_text(p) for p in panels[:PANEL_COUNT]]
        # Only explicitly numbered keys ("1", "panel_2", "Panel 3"...) carry an order.
        numbered = []
        for key, value in parsed.items():
            m = ORDINAL_KEY_RE.match(str(key))
            if m and isinstance(value, str):
                numbered.append((int(m.group(1)), value))
        if len(numbered) >= PANEL_COUNT:
            numbered.sort(key=lambda kv: kv[0])
            return [value for _, value in numbered[:PANEL_COUNT]]
    raise ScriptFormatError("Could not read a 4-panel script array from the model reply")


def parse_script_reply(content: str) -> List[str]:
    try:
        parsed = extract_json(content)
    except ParseFailure as e:
        print(f"[WARN] Storyboard JSON parse failed, falling back to line split: {e}")
        return split_script_lines(content)
    return coerce_script(parsed)


def script_placeholders(message: str) -> List[str]:
    return [
        f"Failure: {message or 'Script generation error'}. Create a generic scene.",
        "Script error panel 2.",
        "Script error panel 3.",
        "Script error panel 4.",
    ]


async def generate_comic_script(client: ComicClient, story: str) -> List[str]:
    """
    Break the story into panel descriptions.

    Never raises for relay or format problems: those come back as four
    placeholder prompts so the drawing step still produces labelled panels.
    The line-split fallback may return fewer than four entries.
    """
    prompt = fill(STORYBOARD_PROMPT_TEMPLATE, story=story)
    client.log.log("STORYBOARD_PROMPT", prompt)
    try:
        content = await client.chat([{"role": "user", "content": prompt}],
                                    response_format={"type": "json_object"})
        client.log.log("STORYBOARD_RESPONSE", content)
        return parse_script_reply(content)
    except ConfigurationError:
        raise
    except ComicGenError as e:
        print(f"[ERROR] Script generation failed: {e}")
        return script_placeholders(str(e))


def build_panel_prompt(panel_prompt: str) -> str:
    return (f"{STYLE_HEADER} Based on the reference image's character and style, "
            f"create this scene: {panel_prompt}. Ensure character consistency. "
            f"Make it expressive and detailed.")


def build_image_payload(reference_b64: str, panel_prompt: str, mime_type: str) -> Dict[str, Any]:
    parts: List[Dict[str, Any]] = []
    # Reference image goes first so the model reads it before the instruction
    if reference_b64 and mime_type:
        parts.append(to_inline_image_part(reference_b64, mime_type))
    parts.append({"text": build_panel_prompt(panel_prompt)})
    return {
        "contents": [{"parts": parts}],
        "generationConfig": {"response_mime_type": "image/jpeg"},
    }


def interpret_image_response(data: Any) -> bytes:
    candidates = data.get("candidates") if isinstance(data, dict) else None
    if not candidates:
        raise ContentPolicyError("API returned an empty result; the request was likely blocked by the safety filter.")
    if not isinstance(candidates, list):
        raise StructuralError(f"Malformed response structure: candidates is not a list ({type(candidates).__name__}).")

    candidate = candidates[0] if isinstance(candidates[0], dict) else {}

    finish_reason = candidate.get("finishReason")
    if finish_reason and finish_reason != "STOP":
        ratings = candidate.get("safetyRatings")
        print(f"[WARN] Image generation blocked: {finish_reason} {ratings}")
        raise ContentPolicyError(
            f"Could not generate the image, the content triggered a safety review ({finish_reason}). "
            "Try a different image or prompt.",
            finish_reason=finish_reason, safety_ratings=ratings)

    content = candidate.get("content")
    parts = content.get("parts") if isinstance(content, dict) else None
    if not parts or not isinstance(parts[0], dict):
        raise StructuralError("Malformed response structure: no content parts found.")
    first = parts[0]

    # Relays disagree on snake_case vs camelCase for the blob field
    for key in ("inline_data", "inlineData"):
        blob = first.get(key)
        if isinstance(blob, dict) and blob.get("data"):
            try:
                return base64.b64decode(blob["data"])
            except (binascii.Error, ValueError) as e:
                raise StructuralError(f"Image data is not valid base64: {e}") from e

    if first.get("text"):
        print(f"[ERROR] Model returned text instead of an image: {first['text']}")
        raise ContentPolicyError("The model declined to draw the image and returned a text explanation.",
                                 finish_reason=finish_reason)

    print(f"[ERROR] Unparseable candidate: {str(candidate)[:500]}")
    raise StructuralError("Could not parse image data from the response.")


async def generate_panel_image(client: ComicClient, reference_b64: str, panel_prompt: str,
                               mime_type: str) -> bytes:
    payload = build_image_payload(reference_b64, panel_prompt, mime_type)
    client.log.log("PANEL_IMAGE_PROMPT", build_panel_prompt(panel_prompt))
    data = await client.post(payload, client.image_endpoint)
    return interpret_image_response(data)


def build_copy(parsed: Any, story: str) -> GeneratedCopy:
    fields = parsed if isinstance(parsed, dict) else {}
    title = fields.get("title")
    content = fields.get("content")
    tags = fields.get("tags")

    good_title = isinstance(title, str) and bool(title.strip())
    good_content = isinstance(content, str) and bool(content.strip())
    good_tags = isinstance(tags, list) and any(isinstance(t, str) and t.strip() for t in tags)
    if not (good_title and good_content and good_tags):
        print(f"[WARN] Copy JSON incomplete, filling defaults: {str(parsed)[:300]}")

    return GeneratedCopy(
        title=title if good_title else DEFAULT_COPY_TITLE,
        content=content if good_content else story,
        tags=[t for t in tags if isinstance(t, str) and t.strip()] if good_tags else [DEFAULT_COPY_TAG],
    )


async def generate_copy(client: ComicClient, story: str) -> GeneratedCopy:
    """Social-media copy for the story; degrades to defaults rather than raising."""
    prompt = fill(COPY_PROMPT_TEMPLATE, story=story)
    client.log.log("COPY_PROMPT", prompt)
    try:
        content = await client.chat([{"role": "user", "content": prompt}],
                                    response_format={"type": "json_object"})
        client.log.log("COPY_RESPONSE", content)
        parsed = extract_json(content)
    except ConfigurationError:
        raise
    except ComicGenError as e:
        print(f"[ERROR] Copy generation failed: {e}")
        return failed_copy()
    return build_copy(parsed, story)

# ------------------ SESSION STATE ----------------


class ComicSession:
    """
    The four panel slots, the copy slot and the run state for one user.

    Every render/copy request takes a fresh token for its slot; a result whose
    token is no longer current belongs to a superseded request and is dropped.
    Actions may run on different threads, so all mutation happens under _lock.
    """

    def __init__(self, on_event: Optional[Callable[[Dict[str, Any]], None]] = None):
        self._lock = threading.Lock()
        self.on_event = on_event
        self.panels: List[Panel] = [Panel(id=i) for i in range(1, PANEL_COUNT + 1)]
        self.copy: Optional[GeneratedCopy] = None
        self.copy_loading = False
        self.state = GenerationState()
        self.story = ""
        self.reference_b64: Optional[str] = None
        self.mime_type: Optional[str] = None
        self._panel_tokens: Dict[int, int] = {p.id: 0 for p in self.panels}
        self._copy_token = 0

    def _emit(self, event: Dict[str, Any]) -> None:
        if self.on_event:
            self.on_event(event)

    def _panel(self, panel_id: int) -> Panel:
        if panel_id not in self._panel_tokens:
            raise InvalidInputError(f"Unknown panel id: {panel_id}")
        return self.panels[panel_id - 1]

    # --- run state ---

    def begin_generation(self, story: str, reference_b64: str, mime_type: str) -> None:
        with self._lock:
            if self.state.is_generating:
                raise GenerationInProgressError("A comic is already being generated")
            self.state = GenerationState(is_generating=True, step="scripting")
            self.story = story
            self.reference_b64 = reference_b64
            self.mime_type = mime_type
            for p in self.panels:
                self._panel_tokens[p.id] += 1
                p.status, p.image_data, p.error = "pending", None, None
            self._copy_token += 1
            self.copy = None
            self.copy_loading = False
            state = self.state.model_dump()
        self._emit({"type": "reset"})
        self._emit({"type": "state", "state": state})

    def set_step(self, step: GenerationStep) -> None:
        with self._lock:
            self.state = GenerationState(is_generating=True, step=step)
            state = self.state.model_dump()
        self._emit({"type": "state", "state": state})

    def finish_generation(self, error: Optional[str] = None) -> None:
        with self._lock:
            if error:
                self.state = GenerationState(is_generating=False, step="idle", error=error)
            else:
                self.state = GenerationState(is_generating=False, step="done")
            state = self.state.model_dump()
        self._emit({"type": "state", "state": state})

    def reference(self) -> Tuple[Optional[str], Optional[str]]:
        with self._lock:
            return self.reference_b64, self.mime_type

    # --- panels ---

    def assign_prompts(self, prompts: List[str]) -> List[Tuple[int, str, int]]:
        """Set each panel's prompt, mark it loading, and return (id, prompt, token) jobs."""
        if len(prompts) != PANEL_COUNT:
            raise ScriptFormatError(f"Expected {PANEL_COUNT} panel prompts, got {len(prompts)}")
        # A blank storyboard entry still gets drawn, from a labelled stand-in
        prompts = [prompt if prompt.strip() else f"Script error panel {i}."
                   for i, prompt in enumerate(prompts, start=1)]
        with self._lock:
            for p, prompt in zip(self.panels, prompts):
                p.prompt = prompt
        return self.start_panels([p.id for p in self.panels])

    def start_panels(self, panel_ids: List[int]) -> List[Tuple[int, str, int]]:
        jobs = []
        with self._lock:
            for panel_id in panel_ids:
                p = self._panel(panel_id)
                if not p.prompt:
                    raise InvalidInputError(f"Panel {panel_id} has no prompt yet")
            for panel_id in panel_ids:
                p = self._panel(panel_id)
                self._panel_tokens[panel_id] += 1
                p.status, p.image_data, p.error = "loading", None, None
                jobs.append((panel_id, p.prompt, self._panel_tokens[panel_id]))
            updated = [self._panel(i).public_dict() for i in panel_ids]
        for panel in updated:
            self._emit({"type": "panel", "panel": panel})
        return jobs

    def _settle_panel(self, panel_id: int, token: int, image: Optional[bytes], error: Optional[str]) -> bool:
        with self._lock:
            p = self._panel(panel_id)
            if token != self._panel_tokens[panel_id]:
                stale = True
            else:
                stale = False
                if image is not None:
                    p.status, p.image_data, p.error = "completed", image, None
                else:
                    p.status, p.image_data, p.error = "failed", None, error
                public = p.public_dict()
        if stale:
            print(f"[DEBUG] Dropping stale result for panel {panel_id} (token {token})")
            return False
        self._emit({"type": "panel", "panel": public})
        return True

    def complete_panel(self, panel_id: int, token: int, image: bytes) -> bool:
        return self._settle_panel(panel_id, token, image, None)

    def fail_panel(self, panel_id: int, token: int, message: str) -> bool:
        return self._settle_panel(panel_id, token, None, message or "Panel generation failed")

    def panel_image(self, panel_id: int) -> Optional[bytes]:
        with self._lock:
            return self._panel(panel_id).image_data

    def panel_images(self) -> List[Optional[bytes]]:
        with self._lock:
            return [p.image_data for p in self.panels]

    # --- copy ---

    def start_copy(self) -> int:
        with self._lock:
            self._copy_token += 1
            self.copy = None
            self.copy_loading = True
            token = self._copy_token
        self._emit({"type": "copy", "copy": None, "loading": True})
        return token

    def set_copy(self, token: int, copy: GeneratedCopy) -> bool:
        with self._lock:
            if token != self._copy_token:
                stale = True
            else:
                stale = False
                self.copy = copy
                self.copy_loading = False
        if stale:
            print(f"[DEBUG] Dropping stale copy result (token {token})")
            return False
        self._emit({"type": "copy", "copy": copy.model_dump(), "loading": False})
        return True

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "panels": [p.public_dict() for p in self.panels],
                "copy": self.copy.model_dump() if self.copy else None,
                "copy_loading": self.copy_loading,
                "state": self.state.model_dump(),
                "story": self.story,
                "has_reference": self.reference_b64 is not None,
            }

# ------------------ ORCHESTRATION ----------------


async def render_panel(client: ComicClient, session: ComicSession, panel_id: int, prompt: str,
                       token: int, reference_b64: str, mime_type: str) -> None:
    try:
        image = await generate_panel_image(client, reference_b64, prompt, mime_type)
    except Exception as e:
        print(f"[ERROR] Failed to generate panel {panel_id}: {e}")
        session.fail_panel(panel_id, token, str(e))
        return
    session.complete_panel(panel_id, token, image)
    print(f"   ✓ Panel {panel_id} done")


async def write_copy(client: ComicClient, session: ComicSession, story: str, token: int) -> None:
    try:
        copy = await generate_copy(client, story)
    except Exception as e:
        print(f"[ERROR] Copy generation failed: {e}")
        copy = failed_copy()
    session.set_copy(token, copy)


async def execute_generation(client: ComicClient, session: ComicSession) -> GenerationState:
    """
    Drive a run already opened with session.begin_generation: storyboard first,
    then four panel renders and the copy request concurrently, joined before
    the run is marked done.
    """
    story = session.story
    reference_b64, mime_type = session.reference()
    try:
        print(">> Storyboarding...")
        scripts = await generate_comic_script(client, story)
        if len(scripts) != PANEL_COUNT:
            raise ScriptFormatError(f"Script generation failed to produce {PANEL_COUNT} panels.")
        jobs = session.assign_prompts(scripts)

        print(">> Drawing panels and writing copy...")
        session.set_step("drawing")
        copy_task = asyncio.ensure_future(write_copy(client, session, story, session.start_copy()))
        await asyncio.gather(*(render_panel(client, session, panel_id, prompt, token, reference_b64, mime_type)
                               for panel_id, prompt, token in jobs))
        if not copy_task.done():
            session.set_step("copywriting")
        await copy_task
    except Exception as e:
        print(f"[ERROR] Generation failed: {e}")
        session.finish_generation(error=str(e) or "Something went wrong. Please try again.")
        if not isinstance(e, ComicGenError):
            raise
        return session.state

    session.finish_generation()
    print(">> Done.")
    return session.state


async def run_generation(client: ComicClient, session: ComicSession, story: str,
                         reference_b64: str, mime_type: str) -> GenerationState:
    if not reference_b64 or not (story or "").strip():
        raise InvalidInputError("Please upload an image and enter a story first")
    session.begin_generation(story.strip(), reference_b64, mime_type)
    return await execute_generation(client, session)


async def regenerate_images(client: ComicClient, session: ComicSession) -> None:
    reference_b64, mime_type = session.reference()
    if not reference_b64:
        raise InvalidInputError("Upload a reference image first")
    jobs = session.start_panels([p.id for p in session.panels])
    await asyncio.gather(*(render_panel(client, session, panel_id, prompt, token, reference_b64, mime_type)
                           for panel_id, prompt, token in jobs))


async def regenerate_panel(client: ComicClient, session: ComicSession, panel_id: int) -> None:
    reference_b64, mime_type = session.reference()
    if not reference_b64:
        raise InvalidInputError("Upload a reference image first")
    [(panel_id, prompt, token)] = session.start_panels([panel_id])
    await render_panel(client, session, panel_id, prompt, token, reference_b64, mime_type)


async def regenerate_copy(client: ComicClient, session: ComicSession) -> None:
    story = session.story
    if not story:
        raise InvalidInputError("There is no story to write copy for yet")
    await write_copy(client, session, story, session.start_copy())

# ------------------ CLI -------------------------


def _print_event(evt: Dict[str, Any]) -> None:
    if evt.get("type") == "state":
        step = evt["state"]["step"]
        print(f"   [state] {step}")
    elif evt.get("type") == "panel":
        panel = evt["panel"]
        if panel["status"] == "failed":
            print(f"   ! Panel {panel['id']} failed: {panel['error']}")


async def run_cli(settings: Settings, reference_path: Path, story_text: str, out_root: Path,
                  transport: Optional[httpx.AsyncBaseTransport] = None) -> int:
    ensure_dir(out_root)
    logger = PromptLogger(out_root / "prompts_used.txt", echo=settings.print_prompts)
    client = ComicClient(settings, log=logger, transport=transport)
    reference_b64, mime_type = encode_reference_image(reference_path.read_bytes(), reference_path.name)

    if not story_text.strip():
        print(">> No story given; inventing one from the reference image...")
        story_text = await generate_random_story(client, reference_b64, mime_type)
        print(f"   Story: {story_text}")

    session = ComicSession(on_event=_print_event)
    state = await run_generation(client, session, story_text, reference_b64, mime_type)

    panels_dir = out_root / "panels"
    ensure_dir(panels_dir)
    manifest_panels = []
    for p in session.panels:
        entry = {"id": p.id, "prompt": p.prompt, "status": p.status, "error": p.error, "file": None}
        if p.image_data:
            fname = f"panel-{p.id}.jpg"
            (panels_dir / fname).write_bytes(p.image_data)
            entry["file"] = f"panels/{fname}"
        manifest_panels.append(entry)

    if session.copy:
        (out_root / "copy.txt").write_text(session.copy.as_text(), encoding="utf-8")

    manifest = {
        "story": session.story,
        "state": state.model_dump(),
        "panels": manifest_panels,
        "copy": session.copy.model_dump() if session.copy else None,
    }
    (out_root / "manifest.json").write_text(json.dumps(manifest, indent=2, ensure_ascii=False), encoding="utf-8")

    if any(session.panel_images()):
        strip = create_comic_strip(session.panel_images(), settings.panel_size)
        strip.save(out_root / "comic_final.png", "PNG")
        print(f"   ✓ Final comic saved: {out_root / 'comic_final.png'}")

    logger.flush()
    print(f">> Output at: {out_root}")
    if state.error:
        print(f"[ERROR] {state.error}")
        return 1
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = sys.argv[1:] if argv is None else argv
    if not args:
        print("usage: comicgen <reference-image> [story.txt]")
        return 2
    reference_path = Path(args[0])
    if not reference_path.exists():
        print(f"Reference image not found: {reference_path}")
        return 2
    story_text = ""
    if len(args) > 1:
        story_text = Path(args[1]).read_text(encoding="utf-8")

    try:
        settings = Settings.from_env()
    except ConfigurationError as e:
        print(f"[ERROR] {e}")
        return 2

    slug = slugify(Path(args[1]).stem if len(args) > 1 else reference_path.stem, fallback="comic")
    run_id = "".join(random.choices(string.ascii_lowercase + string.digits, k=6))
    out_dir = Path("output") / f"{slug}-{run_id}"
    try:
        return asyncio.run(run_cli(settings, reference_path, story_text, out_dir))
    except ComicGenError as e:
        print(f"[ERROR] {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
