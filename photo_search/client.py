"""HTTP client for the photo-search service daemon.

Auto-launches the service if it's not running.
"""

import json
import logging
import subprocess
import sys
import time
from pathlib import Path

import httpx

from config import (
    SERVICE_HOST,
    SERVICE_PORT,
    SERVICE_STARTUP_TIMEOUT,
)

logger = logging.getLogger(__name__)


class ServiceError(RuntimeError):
    """The service answered with an error status."""

    def __init__(self, status_code: int, message: str):
        super().__init__(f"{status_code}: {message}")
        self.status_code = status_code
        self.message = message


class ServiceClient:
    def __init__(self, base_url: str | None = None, http: httpx.Client | None = None):
        self._base_url = base_url or f"http://{SERVICE_HOST}:{SERVICE_PORT}"
        self._http = http or httpx.Client(base_url=self._base_url, timeout=600)

    def _is_alive(self) -> bool:
        try:
            resp = self._http.get("/health", timeout=2)
            return resp.status_code == 200
        except (httpx.ConnectError, httpx.TimeoutException):
            return False

    def _ensure_service(self) -> None:
        if self._is_alive():
            return

        logger.info("Service not running, launching...")
        service_script = Path(__file__).resolve().parent / "service.py"
        subprocess.Popen(
            [sys.executable, str(service_script)],
            cwd=str(service_script.parent),
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
        )

        deadline = time.time() + SERVICE_STARTUP_TIMEOUT
        while time.time() < deadline:
            time.sleep(0.5)
            if self._is_alive():
                logger.info("Service is ready")
                return

        raise RuntimeError(
            f"Service did not start within {SERVICE_STARTUP_TIMEOUT}s"
        )

    def _check(self, resp: httpx.Response):
        if resp.status_code == 503:
            raise ServiceError(503, "Service is still loading the library, try again shortly")
        if resp.status_code >= 400:
            try:
                message = resp.json().get("error", resp.text)
            except ValueError:
                message = resp.text
            raise ServiceError(resp.status_code, message)
        return resp.json()

    def _post(self, path: str, json: dict | None = None):
        self._ensure_service()
        return self._check(self._http.post(path, json=json or {}))

    def _get(self, path: str, params: dict | None = None):
        self._ensure_service()
        return self._check(self._http.get(path, params=params))

    # -- search --

    def search(self, query: str, top_k: int = 20, options: dict | None = None) -> dict:
        return self._post("/search", {"query": query, "top_k": top_k, "options": options or {}})

    def find_similar(self, photo_id: str, top_k: int = 20) -> str:
        results = self._post("/find-similar", {"photo_id": photo_id, "top_k": top_k})
        if not results:
            return "No similar photos found."
        return json.dumps(results, indent=2, ensure_ascii=False)

    def parse_query(self, query: str) -> dict:
        return self._post("/parse-query", {"query": query})

    def suggestions(self, prefix: str, limit: int = 5) -> dict:
        return self._get("/suggestions", {"prefix": prefix, "limit": str(limit)})

    # -- library --

    def add_photo(self, photo: dict) -> dict:
        return self._post("/photos", photo)

    def remove_photo(self, photo_id: str) -> bool:
        return self._post("/remove-photo", {"photo_id": photo_id})["removed"]

    def rebuild_index(self) -> dict:
        return self._post("/rebuild-index")

    def status(self) -> dict:
        return self._get("/status")

    def health(self) -> bool:
        return self._is_alive()

    # -- vector generation queue --

    def enqueue(self, photo_id: str, path: str | None = None, priority: int = 0, force: bool = False) -> dict:
        body: dict = {"photo_id": photo_id, "priority": priority, "force": force}
        if path:
            body["path"] = path
        return self._post("/enqueue", body)

    def queue_stats(self) -> dict:
        return self._get("/queue")

    def queue_tasks(self, status: str | None = None) -> list[dict]:
        return self._get("/queue/tasks", {"status": status} if status else None)

    def queue_action(self, action: str) -> dict:
        return self._post(f"/queue/{action}")

    # -- faces and people --

    def auto_match(self, options: dict | None = None) -> dict:
        return self._post("/auto-match", {"options": options or {}})

    def cluster_faces(self, threshold: float | None = None) -> list[dict]:
        return self._post("/cluster-faces", {"threshold": threshold})

    def assign_face(self, face_id: str, person_id: str) -> dict:
        return self._post("/assign-face", {"face_id": face_id, "person_id": person_id})

    def unmatch_face(self, face_id: str) -> bool:
        return self._post("/unmatch-face", {"face_id": face_id})["unmatched"]

    def merge_persons(self, source_id: str, target_id: str) -> dict:
        return self._post("/merge-persons", {"source_id": source_id, "target_id": target_id})

    def create_person(self, name: str, display_name: str | None = None) -> dict:
        return self._post("/persons", {"name": name, "display_name": display_name})

    def search_persons(self, query: str) -> list[dict]:
        return self._get("/persons/search", {"q": query})

    def person_photos(
        self, person_id: str, year: int | None = None, month: int | None = None, limit: int = 50
    ) -> dict:
        params = {"person_id": person_id, "limit": str(limit)}
        if year is not None:
            params["year"] = str(year)
        if month is not None:
            params["month"] = str(month)
        return self._get("/person-photos", params)
