"""Library store backed by SQLite: photos, embeddings, persons, faces.

This is the persistence boundary for the engine. Embeddings are stored as
float32 blobs keyed by (photo, model version); ``face_count`` on a person is
always derived from face rows.
"""

import json
import logging
import sqlite3
import threading
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path

import numpy as np

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS photo (
    photo_id TEXT PRIMARY KEY,
    path TEXT NOT NULL,
    filename TEXT NOT NULL DEFAULT '',
    title TEXT,
    description TEXT,
    tags TEXT NOT NULL DEFAULT '[]',
    taken_at TEXT,
    location TEXT,
    added_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_photo_taken ON photo(taken_at);

CREATE TABLE IF NOT EXISTS embedding (
    photo_id TEXT NOT NULL REFERENCES photo(photo_id) ON DELETE CASCADE,
    model_version TEXT NOT NULL,
    dimension INTEGER NOT NULL,
    vector BLOB NOT NULL,
    created_at REAL NOT NULL,
    PRIMARY KEY (photo_id, model_version)
);

CREATE TABLE IF NOT EXISTS person (
    person_id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    display_name TEXT,
    created_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_person_name ON person(name);

CREATE TABLE IF NOT EXISTS face (
    face_id TEXT PRIMARY KEY,
    photo_id TEXT NOT NULL REFERENCES photo(photo_id) ON DELETE CASCADE,
    person_id TEXT REFERENCES person(person_id) ON DELETE SET NULL,
    bbox TEXT NOT NULL DEFAULT '[0, 0, 0, 0]',
    confidence REAL NOT NULL DEFAULT 1.0,
    descriptor BLOB,
    manual INTEGER NOT NULL DEFAULT 0,
    processed INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_face_person ON face(person_id);
CREATE INDEX IF NOT EXISTS idx_face_photo ON face(photo_id);

CREATE TABLE IF NOT EXISTS face_suggestion (
    face_id TEXT NOT NULL REFERENCES face(face_id) ON DELETE CASCADE,
    person_id TEXT NOT NULL REFERENCES person(person_id) ON DELETE CASCADE,
    similarity REAL NOT NULL,
    PRIMARY KEY (face_id, person_id)
);

CREATE TABLE IF NOT EXISTS failed_task (
    photo_id TEXT NOT NULL,
    model_version TEXT NOT NULL,
    error TEXT NOT NULL,
    retry_count INTEGER NOT NULL,
    failed_at REAL NOT NULL,
    PRIMARY KEY (photo_id, model_version)
);
"""


# ---------------------------------------------------------------------------
# Rows
# ---------------------------------------------------------------------------


@dataclass
class Photo:
    photo_id: str
    path: str
    filename: str = ""
    title: str | None = None
    description: str | None = None
    tags: list[str] = field(default_factory=list)
    taken_at: str | None = None  # ISO-8601
    location: str | None = None

    def __post_init__(self):
        if not self.filename:
            self.filename = Path(self.path).name

    @property
    def year(self) -> int | None:
        if self.taken_at and self.taken_at[:4].isdigit():
            return int(self.taken_at[:4])
        return None

    @property
    def month(self) -> int | None:
        if self.taken_at and len(self.taken_at) >= 7 and self.taken_at[5:7].isdigit():
            return int(self.taken_at[5:7])
        return None

    def keyword_fields(self) -> dict:
        fields = {"filename": self.filename, "tags": self.tags}
        if self.title:
            fields["title"] = self.title
        desc = " ".join(p for p in (self.description, self.location) if p)
        if desc:
            fields["description"] = desc
        return fields


@dataclass(frozen=True)
class Embedding:
    photo_id: str
    vector: np.ndarray
    model_version: str
    dimension: int


@dataclass
class Person:
    person_id: str
    name: str
    display_name: str | None = None
    face_count: int = 0

    @property
    def label(self) -> str:
        return self.display_name or self.name


@dataclass
class FaceDescriptor:
    face_id: str
    photo_id: str
    bounding_box: tuple[float, float, float, float] = (0.0, 0.0, 0.0, 0.0)
    confidence: float = 1.0
    descriptor: np.ndarray | None = None
    person_id: str | None = None
    manual: bool = False
    processed: bool = False


@dataclass
class FaceSuggestion:
    face_id: str
    person_id: str
    similarity: float


@dataclass
class FailedTask:
    photo_id: str
    model_version: str
    error: str
    retry_count: int
    failed_at: float


def encode_vector(vector) -> bytes:
    return np.asarray(vector, dtype=np.float32).reshape(-1).tobytes()


def decode_vector(blob: bytes | None) -> np.ndarray | None:
    if blob is None:
        return None
    return np.frombuffer(blob, dtype=np.float32).copy()


# ---------------------------------------------------------------------------
# LibraryStore
# ---------------------------------------------------------------------------

_PHOTO_COLS = "photo_id, path, filename, title, description, tags, taken_at, location"
_FACE_COLS = "face_id, photo_id, bbox, confidence, descriptor, person_id, manual, processed"


def _photo_from_row(row) -> Photo:
    return Photo(
        photo_id=row[0],
        path=row[1],
        filename=row[2],
        title=row[3],
        description=row[4],
        tags=json.loads(row[5] or "[]"),
        taken_at=row[6],
        location=row[7],
    )


def _face_from_row(row) -> FaceDescriptor:
    return FaceDescriptor(
        face_id=row[0],
        photo_id=row[1],
        bounding_box=tuple(json.loads(row[2])),
        confidence=row[3],
        descriptor=decode_vector(row[4]),
        person_id=row[5],
        manual=bool(row[6]),
        processed=bool(row[7]),
    )


class LibraryStore:
    def __init__(self, db_path: Path | str = ":memory:"):
        self._db_path = db_path
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        # Shared by pipeline workers and search threads; every access holds _lock.
        self._conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self._lock = threading.RLock()
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._conn.executescript(_SCHEMA)
        self._conn.commit()

    def close(self):
        with self._lock:
            self._conn.close()

    def _query(self, sql: str, params: tuple = ()) -> list[tuple]:
        with self._lock:
            return self._conn.execute(sql, params).fetchall()

    def _write(self, sql: str, params: tuple = ()) -> int:
        with self._lock:
            cursor = self._conn.execute(sql, params)
            self._conn.commit()
            return cursor.rowcount

    # -- photos --

    def add_photo(self, photo: Photo) -> None:
        """Insert or update a photo row. Embeddings and faces are kept."""
        self._write(
            """INSERT INTO photo (photo_id, path, filename, title, description, tags,
                                  taken_at, location, added_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(photo_id) DO UPDATE SET
                   path = excluded.path, filename = excluded.filename,
                   title = excluded.title, description = excluded.description,
                   tags = excluded.tags, taken_at = excluded.taken_at,
                   location = excluded.location""",
            (
                photo.photo_id,
                photo.path,
                photo.filename,
                photo.title,
                photo.description,
                json.dumps(photo.tags, ensure_ascii=False),
                photo.taken_at,
                photo.location,
                time.time(),
            ),
        )

    def get_photo(self, photo_id: str) -> Photo | None:
        rows = self._query(f"SELECT {_PHOTO_COLS} FROM photo WHERE photo_id = ?", (photo_id,))
        return _photo_from_row(rows[0]) if rows else None

    get_photo_by_uuid = get_photo  # photo_id is the source library UUID

    def get_photos(self, photo_ids: list[str]) -> dict[str, Photo]:
        if not photo_ids:
            return {}
        placeholders = ",".join("?" * len(photo_ids))
        rows = self._query(
            f"SELECT {_PHOTO_COLS} FROM photo WHERE photo_id IN ({placeholders})",
            tuple(photo_ids),
        )
        return {r[0]: _photo_from_row(r) for r in rows}

    def list_photos(self) -> list[Photo]:
        return [_photo_from_row(r) for r in self._query(f"SELECT {_PHOTO_COLS} FROM photo ORDER BY photo_id")]

    def delete_photo(self, photo_id: str) -> bool:
        return self._write("DELETE FROM photo WHERE photo_id = ?", (photo_id,)) > 0

    def count_photos(self) -> int:
        return self._query("SELECT COUNT(*) FROM photo")[0][0]

    # -- embeddings --

    def save_embedding(self, embedding: Embedding) -> None:
        """Write or wholesale-replace the embedding for (photo, model version)."""
        self._write(
            """INSERT OR REPLACE INTO embedding
               (photo_id, model_version, dimension, vector, created_at)
               VALUES (?, ?, ?, ?, ?)""",
            (
                embedding.photo_id,
                embedding.model_version,
                embedding.dimension,
                encode_vector(embedding.vector),
                time.time(),
            ),
        )

    def get_embedding(self, photo_id: str, model_version: str) -> Embedding | None:
        rows = self._query(
            "SELECT dimension, vector FROM embedding WHERE photo_id = ? AND model_version = ?",
            (photo_id, model_version),
        )
        if not rows:
            return None
        dim, blob = rows[0]
        return Embedding(photo_id, decode_vector(blob), model_version, dim)

    def has_embedding(self, photo_id: str, model_version: str) -> bool:
        return bool(
            self._query(
                "SELECT 1 FROM embedding WHERE photo_id = ? AND model_version = ?",
                (photo_id, model_version),
            )
        )

    def get_all_embeddings(self, model_version: str) -> list[tuple[str, bytes]]:
        """Raw ``(photo_id, blob)`` rows; decoding is left to the caller."""
        return self._query(
            "SELECT photo_id, vector FROM embedding WHERE model_version = ? ORDER BY photo_id",
            (model_version,),
        )

    def count_embeddings(self, model_version: str) -> int:
        return self._query(
            "SELECT COUNT(*) FROM embedding WHERE model_version = ?", (model_version,)
        )[0][0]

    def get_unprocessed_photos(self, model_version: str, limit: int | None = None) -> list[Photo]:
        """Photos with no embedding for ``model_version`` and no recorded terminal failure."""
        sql = f"""SELECT {_PHOTO_COLS} FROM photo p
                  WHERE NOT EXISTS (SELECT 1 FROM embedding e
                                    WHERE e.photo_id = p.photo_id AND e.model_version = ?)
                    AND NOT EXISTS (SELECT 1 FROM failed_task f
                                    WHERE f.photo_id = p.photo_id AND f.model_version = ?)
                  ORDER BY p.added_at, p.photo_id"""
        params: tuple = (model_version, model_version)
        if limit:
            sql += " LIMIT ?"
            params += (limit,)
        return [_photo_from_row(r) for r in self._query(sql, params)]

    # -- failed tasks --

    def record_failure(self, photo_id: str, model_version: str, error: str, retry_count: int) -> None:
        self._write(
            """INSERT OR REPLACE INTO failed_task
               (photo_id, model_version, error, retry_count, failed_at)
               VALUES (?, ?, ?, ?, ?)""",
            (photo_id, model_version, error, retry_count, time.time()),
        )

    def clear_failure(self, photo_id: str, model_version: str) -> None:
        self._write(
            "DELETE FROM failed_task WHERE photo_id = ? AND model_version = ?",
            (photo_id, model_version),
        )

    def get_failures(self, model_version: str) -> list[FailedTask]:
        rows = self._query(
            """SELECT photo_id, model_version, error, retry_count, failed_at
               FROM failed_task WHERE model_version = ? ORDER BY photo_id""",
            (model_version,),
        )
        return [FailedTask(*r) for r in rows]

    # -- persons --

    def create_person(self, name: str, display_name: str | None = None) -> Person:
        name = name.strip()
        if not name:
            raise ValueError("Person name must not be empty")
        person_id = uuid.uuid4().hex
        self._write(
            "INSERT INTO person (person_id, name, display_name, created_at) VALUES (?, ?, ?, ?)",
            (person_id, name, display_name, time.time()),
        )
        return Person(person_id=person_id, name=name, display_name=display_name)

    _PERSON_SELECT = """SELECT p.person_id, p.name, p.display_name,
                               (SELECT COUNT(*) FROM face f WHERE f.person_id = p.person_id)
                        FROM person p"""

    def get_person(self, person_id: str) -> Person | None:
        rows = self._query(self._PERSON_SELECT + " WHERE p.person_id = ?", (person_id,))
        return Person(*rows[0]) if rows else None

    def list_persons(self) -> list[Person]:
        return [Person(*r) for r in self._query(self._PERSON_SELECT + " ORDER BY p.person_id")]

    def rename_person(self, person_id: str, name: str, display_name: str | None = None) -> None:
        if self._write(
            "UPDATE person SET name = ?, display_name = ? WHERE person_id = ?",
            (name, display_name, person_id),
        ) == 0:
            raise KeyError(person_id)

    def delete_person(self, person_id: str) -> bool:
        return self._write("DELETE FROM person WHERE person_id = ?", (person_id,)) > 0

    def get_person_photos(self, person_id: str) -> list[Photo]:
        """Distinct photos tagged with the person, newest capture date first."""
        cols = ", ".join(f"p.{c.strip()}" for c in _PHOTO_COLS.split(","))
        rows = self._query(
            f"""SELECT DISTINCT {cols} FROM photo p
                JOIN face f ON f.photo_id = p.photo_id
                WHERE f.person_id = ?
                ORDER BY p.taken_at IS NULL, p.taken_at DESC, p.photo_id""",
            (person_id,),
        )
        return [_photo_from_row(r) for r in rows]

    def tag_photo(self, photo_id: str, person_id: str) -> FaceDescriptor:
        """Manual tag without a detected face: a descriptor-less manual face row."""
        face = FaceDescriptor(
            face_id=uuid.uuid4().hex,
            photo_id=photo_id,
            person_id=person_id,
            manual=True,
            processed=True,
        )
        self.add_face(face)
        return face

    # -- faces --

    def add_face(self, face: FaceDescriptor) -> None:
        self._write(
            f"""INSERT OR REPLACE INTO face ({_FACE_COLS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                face.face_id,
                face.photo_id,
                json.dumps(list(face.bounding_box)),
                face.confidence,
                None if face.descriptor is None else encode_vector(face.descriptor),
                face.person_id,
                int(face.manual),
                int(face.processed),
            ),
        )

    def get_face(self, face_id: str) -> FaceDescriptor | None:
        rows = self._query(f"SELECT {_FACE_COLS} FROM face WHERE face_id = ?", (face_id,))
        return _face_from_row(rows[0]) if rows else None

    def get_faces(self, unmatched_only: bool = False) -> list[FaceDescriptor]:
        sql = f"SELECT {_FACE_COLS} FROM face"
        if unmatched_only:
            sql += " WHERE person_id IS NULL"
        sql += " ORDER BY face_id"
        return [_face_from_row(r) for r in self._query(sql)]

    def get_person_faces(self, person_id: str) -> list[FaceDescriptor]:
        rows = self._query(
            f"SELECT {_FACE_COLS} FROM face WHERE person_id = ? ORDER BY face_id", (person_id,)
        )
        return [_face_from_row(r) for r in rows]

    def set_face_person(
        self, face_id: str, person_id: str | None, manual: bool = False, processed: bool = True
    ) -> None:
        with self._lock:
            cursor = self._conn.execute(
                "UPDATE face SET person_id = ?, manual = ?, processed = ? WHERE face_id = ?",
                (person_id, int(manual), int(processed), face_id),
            )
            if cursor.rowcount == 0:
                self._conn.rollback()
                raise KeyError(face_id)
            self._conn.execute("DELETE FROM face_suggestion WHERE face_id = ?", (face_id,))
            self._conn.commit()

    def mark_processed(self, face_id: str) -> None:
        self._write("UPDATE face SET processed = 1 WHERE face_id = ?", (face_id,))

    def reassign_faces(self, source_id: str, target_id: str) -> int:
        """Move every face of ``source_id`` onto ``target_id``; returns the number moved."""
        with self._lock:
            moved = self._conn.execute(
                "UPDATE face SET person_id = ? WHERE person_id = ?", (target_id, source_id)
            ).rowcount
            self._conn.execute(
                "DELETE FROM face_suggestion WHERE person_id = ?", (source_id,)
            )
            self._conn.commit()
            return moved

    # -- suggestions --

    def add_suggestion(self, face_id: str, person_id: str, similarity: float) -> None:
        self._write(
            """INSERT OR REPLACE INTO face_suggestion (face_id, person_id, similarity)
               VALUES (?, ?, ?)""",
            (face_id, person_id, similarity),
        )

    def get_suggestions(self, face_id: str | None = None) -> list[FaceSuggestion]:
        sql = "SELECT face_id, person_id, similarity FROM face_suggestion"
        params: tuple = ()
        if face_id is not None:
            sql += " WHERE face_id = ?"
            params = (face_id,)
        sql += " ORDER BY similarity DESC, face_id"
        return [FaceSuggestion(*r) for r in self._query(sql, params)]
