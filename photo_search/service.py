"""HTTP service daemon for photo-search.

Owns the SearchEngine (indexes, store, embedding workers). MCP servers and
other callers connect as thin clients. Only one instance should run at a time.

    uv run python service.py

Startup order:
    1. Write PID, start uvicorn  -- HTTP is up immediately
    2. Background thread: open the store, load indexes, recover the queue
    Handlers return {"loading": true} until the engine is ready.
"""

import asyncio
import logging
import os
import signal
import sys
import threading

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from config import CACHE_DIR, SERVICE_HOST, SERVICE_PID_FILE, SERVICE_PORT
from engine import SearchEngine
from errors import ClusteringBusy
from store import Photo

logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

_engine: SearchEngine | None = None
_engine_lock = threading.Lock()
_engine_ready = threading.Event()


def set_engine(engine: SearchEngine | None) -> None:
    """Install (or clear) the engine the handlers serve."""
    global _engine
    with _engine_lock:
        _engine = engine
    if engine is None:
        _engine_ready.clear()
    else:
        _engine_ready.set()


def get_engine() -> SearchEngine:
    """Return the SearchEngine, blocking until it is loaded."""
    _engine_ready.wait()
    return _engine  # type: ignore[return-value]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


_LOADING = JSONResponse({"loading": True}, status_code=503)


def _require(data, key: str):
    try:
        return data[key]
    except KeyError:
        raise ValueError(f"Missing field: {key}") from None


async def _body(request: Request) -> dict:
    try:
        body = await request.json()
    except ValueError:
        raise ValueError("Request body must be JSON") from None
    if not isinstance(body, dict):
        raise ValueError("Request body must be a JSON object")
    return body


async def _run(fn, *args, **kwargs) -> JSONResponse:
    """Run ``fn`` off the event loop and map library errors onto HTTP statuses."""
    try:
        result = await asyncio.to_thread(fn, *args, **kwargs)
    except ClusteringBusy as e:
        return JSONResponse({"error": str(e)}, status_code=409)
    except KeyError as e:
        return JSONResponse({"error": f"Not found: {e.args[0] if e.args else ''}"}, status_code=404)
    except ValueError as e:
        return JSONResponse({"error": str(e)}, status_code=400)
    return JSONResponse(result)


def _handler(fn):
    """Wrap an async handler with the readiness check and 400s for bad input."""

    async def wrapped(request: Request) -> JSONResponse:
        if not _engine_ready.is_set():
            return _LOADING
        try:
            return await fn(request, get_engine())
        except ValueError as e:
            return JSONResponse({"error": str(e)}, status_code=400)

    wrapped.__name__ = fn.__name__
    return wrapped


def _int_param(request: Request, name: str) -> int | None:
    value = request.query_params.get(name)
    if value in (None, ""):
        return None
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"{name} must be an integer") from None


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------


async def health(request: Request) -> JSONResponse:
    return JSONResponse({"ok": True, "ready": _engine_ready.is_set()})


@_handler
async def status(request: Request, engine: SearchEngine) -> JSONResponse:
    return await _run(engine.stats)


@_handler
async def search(request: Request, engine: SearchEngine) -> JSONResponse:
    body = await _body(request)
    query = _require(body, "query")
    options = dict(body.get("options") or {})
    if "top_k" in body:
        options.setdefault("limit", body["top_k"])
    return await _run(lambda: engine.search(query, options).as_dict())


@_handler
async def find_similar(request: Request, engine: SearchEngine) -> JSONResponse:
    body = await _body(request)
    photo_id = _require(body, "photo_id")
    top_k = int(body.get("top_k", 20))
    return await _run(lambda: [r.as_dict() for r in engine.find_similar(photo_id, top_k)])


@_handler
async def parse_query(request: Request, engine: SearchEngine) -> JSONResponse:
    body = await _body(request)
    query = _require(body, "query")
    return await _run(lambda: engine.parse_query(query).as_dict())


@_handler
async def suggestions(request: Request, engine: SearchEngine) -> JSONResponse:
    prefix = request.query_params.get("prefix", "")
    limit = _int_param(request, "limit") or 5
    return await _run(engine.suggest, prefix, limit)


# -- library --


@_handler
async def add_photo(request: Request, engine: SearchEngine) -> JSONResponse:
    body = await _body(request)
    photo = Photo(
        photo_id=_require(body, "photo_id"),
        path=_require(body, "path"),
        filename=body.get("filename", ""),
        title=body.get("title"),
        description=body.get("description"),
        tags=list(body.get("tags") or []),
        taken_at=body.get("taken_at"),
        location=body.get("location"),
    )
    priority = int(body.get("priority", 0))

    def _add():
        engine.add_photo(photo, priority=priority)
        return {"photo_id": photo.photo_id, "queued": True}

    return await _run(_add)


@_handler
async def remove_photo(request: Request, engine: SearchEngine) -> JSONResponse:
    body = await _body(request)
    photo_id = _require(body, "photo_id")
    return await _run(lambda: {"removed": engine.remove_photo(photo_id)})


@_handler
async def rebuild_index(request: Request, engine: SearchEngine) -> JSONResponse:
    return await _run(engine.rebuild_index)


# -- vector generation queue --


@_handler
async def enqueue(request: Request, engine: SearchEngine) -> JSONResponse:
    body = await _body(request)
    return await _run(
        engine.enqueue_vector_generation,
        _require(body, "photo_id"),
        body.get("path"),
        int(body.get("priority", 0)),
        bool(body.get("force", False)),
    )


@_handler
async def queue_stats(request: Request, engine: SearchEngine) -> JSONResponse:
    return await _run(engine.get_queue_stats)


@_handler
async def queue_tasks(request: Request, engine: SearchEngine) -> JSONResponse:
    status_filter = request.query_params.get("status") or None
    return await _run(lambda: [t.as_dict() for t in engine.pipeline.list_tasks(status_filter)])


@_handler
async def queue_control(request: Request, engine: SearchEngine) -> JSONResponse:
    action = request.path_params["action"]
    pipeline = engine.pipeline
    actions = {
        "cancel": lambda: pipeline.cancel() or {"paused": True},
        "resume": lambda: pipeline.resume() or {"paused": False},
        "retry-failed": lambda: {"requeued": pipeline.retry_failed()},
        "clear": lambda: {"cleared": pipeline.clear_finished()},
        "recover": lambda: {"recovered": pipeline.recover()},
    }
    if action not in actions:
        return JSONResponse({"error": f"Unknown queue action: {action}"}, status_code=404)
    return await _run(actions[action])


# -- faces and people --


@_handler
async def auto_match(request: Request, engine: SearchEngine) -> JSONResponse:
    body = await _body(request)
    return await _run(engine.auto_match_faces, body.get("options") or body)


@_handler
async def cluster_faces(request: Request, engine: SearchEngine) -> JSONResponse:
    body = await _body(request)
    threshold = body.get("threshold")
    return await _run(lambda: [c.as_dict() for c in engine.faces.cluster(threshold=threshold)])


@_handler
async def assign_face(request: Request, engine: SearchEngine) -> JSONResponse:
    body = await _body(request)
    return await _run(
        engine.assign_face_to_person, _require(body, "face_id"), _require(body, "person_id")
    )


@_handler
async def unmatch_face(request: Request, engine: SearchEngine) -> JSONResponse:
    body = await _body(request)
    face_id = _require(body, "face_id")
    return await _run(lambda: {"unmatched": engine.faces.unmatch_face(face_id)})


@_handler
async def merge_persons(request: Request, engine: SearchEngine) -> JSONResponse:
    body = await _body(request)
    return await _run(
        engine.faces.merge_persons, _require(body, "source_id"), _require(body, "target_id")
    )


@_handler
async def create_person(request: Request, engine: SearchEngine) -> JSONResponse:
    body = await _body(request)
    name = _require(body, "name")
    display_name = body.get("display_name")

    def _create():
        p = engine.store.create_person(name, display_name)
        return {"person_id": p.person_id, "name": p.name, "display_name": p.display_name}

    return await _run(_create)


@_handler
async def search_persons(request: Request, engine: SearchEngine) -> JSONResponse:
    query = request.query_params.get("q", "")

    def _search():
        return [
            {
                "person_id": m.person.person_id,
                "name": m.person.name,
                "display_name": m.person.display_name,
                "face_count": m.person.face_count,
                "score": m.score,
            }
            for m in engine.people.search(query)
        ]

    return await _run(_search)


@_handler
async def person_photos(request: Request, engine: SearchEngine) -> JSONResponse:
    person_id = _require(request.query_params, "person_id")
    year = _int_param(request, "year")
    month = _int_param(request, "month")
    limit = _int_param(request, "limit") or 50
    offset = _int_param(request, "offset") or 0

    def _photos():
        result = engine.people.get_photos(person_id, year=year, month=month, limit=limit, offset=offset)
        return {
            "person_id": result.person.person_id,
            "name": result.person.label,
            "total": result.total,
            "years": result.years,
            "earliest": result.earliest,
            "latest": result.latest,
            "photos": [
                {"photo_id": p.photo_id, "path": p.path, "taken_at": p.taken_at}
                for p in result.photos
            ],
        }

    return await _run(_photos)


routes = [
    Route("/health", health, methods=["GET"]),
    Route("/status", status, methods=["GET"]),
    Route("/search", search, methods=["POST"]),
    Route("/find-similar", find_similar, methods=["POST"]),
    Route("/parse-query", parse_query, methods=["POST"]),
    Route("/suggestions", suggestions, methods=["GET"]),
    Route("/photos", add_photo, methods=["POST"]),
    Route("/remove-photo", remove_photo, methods=["POST"]),
    Route("/rebuild-index", rebuild_index, methods=["POST"]),
    Route("/enqueue", enqueue, methods=["POST"]),
    Route("/queue", queue_stats, methods=["GET"]),
    Route("/queue/tasks", queue_tasks, methods=["GET"]),
    Route("/queue/{action}", queue_control, methods=["POST"]),
    Route("/auto-match", auto_match, methods=["POST"]),
    Route("/cluster-faces", cluster_faces, methods=["POST"]),
    Route("/assign-face", assign_face, methods=["POST"]),
    Route("/unmatch-face", unmatch_face, methods=["POST"]),
    Route("/merge-persons", merge_persons, methods=["POST"]),
    Route("/persons", create_person, methods=["POST"]),
    Route("/persons/search", search_persons, methods=["GET"]),
    Route("/person-photos", person_photos, methods=["GET"]),
]

app = Starlette(routes=routes)


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


def _write_pid() -> None:
    SERVICE_PID_FILE.parent.mkdir(parents=True, exist_ok=True)
    SERVICE_PID_FILE.write_text(str(os.getpid()))
    logger.info("PID file: %s", SERVICE_PID_FILE)


def _cleanup_pid(*_args) -> None:
    SERVICE_PID_FILE.unlink(missing_ok=True)
    if _engine is not None:
        _engine.close()


def _background_startup() -> None:
    """Open and load the engine without blocking the event loop.

    Uvicorn is already listening. Handlers return 503 until _engine_ready is set.
    """
    def _load():
        try:
            engine = SearchEngine.open(CACHE_DIR)
            engine.load()
            set_engine(engine)
        except Exception:
            logger.warning("Background startup failed", exc_info=True)

    threading.Thread(target=_load, name="background-startup", daemon=True).start()


if __name__ == "__main__":
    import atexit

    import uvicorn

    _write_pid()
    atexit.register(_cleanup_pid)
    signal.signal(signal.SIGTERM, lambda *_: sys.exit(0))

    _background_startup()

    logger.info("Starting photo-search service on %s:%d", SERVICE_HOST, SERVICE_PORT)
    uvicorn.run(app, host=SERVICE_HOST, port=SERVICE_PORT, log_level="warning")
