import os
import io
import json
import queue
import asyncio
import threading
from pathlib import Path
from typing import Optional, Dict, Any, Generator, List, Callable, Awaitable

import httpx
from flask import Flask, request, Response, send_file, jsonify
from dotenv import load_dotenv

from comicgen import (
    ComicClient, ComicSession, Settings, ComicGenError, ConfigurationError,
    InvalidInputError, GenerationInProgressError, PANEL_COUNT, encode_reference_image,
    execute_generation, regenerate_images, regenerate_panel, regenerate_copy,
    generate_random_story, create_comic_strip, pil_to_png_bytes,
)

# Load environment variables
load_dotenv()


app = Flask(__name__, static_folder=None)


ROOT = Path(__file__).parent


class AppState:
    def __init__(self):
        self.settings: Optional[Settings] = None
        self.transport: Optional[httpx.AsyncBaseTransport] = None
        self.listeners: List["queue.Queue[Dict[str, Any]]"] = []
        self.listeners_lock = threading.Lock()
        self.session = ComicSession(on_event=self.broadcast)

    def broadcast(self, evt: Dict[str, Any]) -> None:
        with self.listeners_lock:
            listeners = list(self.listeners)
        for q in listeners:
            q.put(evt)

    def subscribe(self) -> "queue.Queue[Dict[str, Any]]":
        q: "queue.Queue[Dict[str, Any]]" = queue.Queue()
        with self.listeners_lock:
            self.listeners.append(q)
        return q

    def unsubscribe(self, q: "queue.Queue[Dict[str, Any]]") -> None:
        with self.listeners_lock:
            if q in self.listeners:
                self.listeners.remove(q)

    def client(self) -> ComicClient:
        # Settings are resolved on first use; a missing key fails that request loudly.
        if self.settings is None:
            self.settings = Settings.from_env()
        return ComicClient(self.settings, transport=self.transport)


state = AppState()


def run_in_background(name: str, action: Callable[[], Awaitable[Any]]) -> None:
    """Run one async action on its own event loop in a worker thread."""
    def worker():
        try:
            asyncio.run(action())
        except Exception as e:
            print(f"[ERROR] {name} failed: {e}")
            state.broadcast({"type": "error", "message": str(e)})

    threading.Thread(target=worker, name=name, daemon=True).start()


def error_response(e: ComicGenError):
    if isinstance(e, InvalidInputError):
        status = 400
    elif isinstance(e, GenerationInProgressError):
        status = 409
    elif isinstance(e, ConfigurationError):
        status = 500
    else:
        status = 502
    return jsonify({"error": str(e)}), status


@app.route("/")
def index() -> Response:
    html = (ROOT / "web" / "index.html").read_text(encoding="utf-8")
    return Response(html, mimetype="text/html")


@app.route("/api/state")
def api_state():
    return jsonify(state.session.snapshot())


@app.route("/api/generate", methods=["POST"])
def api_generate():
    story = (request.form.get("story") or "").strip()
    upload = request.files.get("image")
    if upload is None or upload.filename == "" or not story:
        return jsonify({"error": "Please upload an image and enter a story first"}), 400

    try:
        client = state.client()
        reference_b64, mime_type = encode_reference_image(upload.read(), upload.filename)
        state.session.begin_generation(story, reference_b64, mime_type)
    except ComicGenError as e:
        return error_response(e)

    run_in_background("generate", lambda: execute_generation(client, state.session))
    return jsonify({"started": True}), 202


@app.route("/api/regenerate", methods=["POST"])
def api_regenerate_images():
    try:
        client = state.client()
        if not state.session.reference()[0]:
            raise InvalidInputError("Upload a reference image first")
        if any(not p.prompt for p in state.session.panels):
            raise InvalidInputError("Generate a storyboard before redrawing panels")
    except ComicGenError as e:
        return error_response(e)

    run_in_background("regenerate-images", lambda: regenerate_images(client, state.session))
    return jsonify({"started": True}), 202


@app.route("/api/panels/<int:panel_id>/regenerate", methods=["POST"])
def api_regenerate_panel(panel_id: int):
    try:
        client = state.client()
        if not 1 <= panel_id <= PANEL_COUNT:
            raise InvalidInputError(f"Unknown panel id: {panel_id}")
        if not state.session.reference()[0]:
            raise InvalidInputError("Upload a reference image first")
        if not state.session.panels[panel_id - 1].prompt:
            raise InvalidInputError(f"Panel {panel_id} has no prompt yet")
    except ComicGenError as e:
        return error_response(e)

    run_in_background(f"regenerate-panel-{panel_id}", lambda: regenerate_panel(client, state.session, panel_id))
    return jsonify({"started": True}), 202


@app.route("/api/copy/regenerate", methods=["POST"])
def api_regenerate_copy():
    try:
        client = state.client()
        if not state.session.story:
            raise InvalidInputError("There is no story to write copy for yet")
    except ComicGenError as e:
        return error_response(e)

    run_in_background("regenerate-copy", lambda: regenerate_copy(client, state.session))
    return jsonify({"started": True}), 202


@app.route("/api/random_story", methods=["POST"])
def api_random_story():
    upload = request.files.get("image")
    try:
        client = state.client()
        image_b64, mime_type = None, None
        if upload is not None and upload.filename:
            image_b64, mime_type = encode_reference_image(upload.read(), upload.filename)
        story = asyncio.run(generate_random_story(client, image_b64, mime_type))
    except (InvalidInputError, ConfigurationError) as e:
        return error_response(e)
    except ComicGenError as e:
        print(f"[ERROR] Random story failed: {e}")
        return jsonify({"error": f"Could not generate a random story, please retry ({e})"}), 502
    return jsonify({"story": story})


@app.route("/api/stream")
def api_stream() -> Response:
    q = state.subscribe()

    def gen() -> Generator[str, None, None]:
        try:
            yield "event: ping\n" "data: {}\n\n"
            while True:
                try:
                    evt = q.get(timeout=30)
                except queue.Empty:
                    yield "event: ping\n" "data: {}\n\n"
                    continue
                yield f"data: {json.dumps(evt, ensure_ascii=False)}\n\n"
        finally:
            state.unsubscribe(q)
    return Response(gen(), mimetype="text/event-stream")


@app.route("/api/panels/<int:panel_id>.jpg")
def api_panel_image(panel_id: int):
    if not 1 <= panel_id <= PANEL_COUNT:
        return "Not found", 404
    data = state.session.panel_image(panel_id)
    if not data:
        return "Not found", 404
    return send_file(io.BytesIO(data), mimetype="image/jpeg",
                     download_name=f"comic-panel-{panel_id}.jpg")


@app.route("/api/comic.png")
def api_comic():
    images = state.session.panel_images()
    if not any(images):
        return "No panels yet", 404
    panel_size = state.settings.panel_size if state.settings else 1024
    png = pil_to_png_bytes(create_comic_strip(images, panel_size))
    return send_file(io.BytesIO(png), mimetype="image/png", download_name="comic.png")


def main() -> None:
    port = int(os.getenv("PORT", "5001"))
    app.run(host="127.0.0.1", port=port, debug=os.getenv("DEBUG", "0") == "1", threaded=True)


if __name__ == "__main__":
    main()
