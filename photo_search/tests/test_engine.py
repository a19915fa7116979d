import sys
import threading
import time
from pathlib import Path

import numpy as np
import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from config import EngineConfig
from engine import SearchEngine, SearchOptions
from errors import ModelUnavailable
from models import EmbeddingProvider, EmbeddingVector
from store import Embedding, FaceDescriptor, LibraryStore, Photo

DIM = 4
MODEL = "test-v1"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _vec(*values) -> np.ndarray:
    v = np.zeros(DIM, dtype=np.float32)
    v[: len(values)] = values
    return v


class FakeProvider(EmbeddingProvider):
    def __init__(self, text_vector=None, fail_text: bool = False):
        self.text_vector = _vec(1.0) if text_vector is None else text_vector
        self.fail_text = fail_text

    def text_to_embedding(self, text: str) -> EmbeddingVector:
        if self.fail_text:
            raise ModelUnavailable("model server down")
        return EmbeddingVector.of(self.text_vector)

    def image_to_embedding(self, path: str) -> EmbeddingVector:
        return EmbeddingVector.of(_vec(0.0, 0.0, 1.0))


@pytest.fixture()
def engine():
    store = LibraryStore()
    eng = SearchEngine(store, FakeProvider(), EngineConfig(model_version=MODEL))
    yield eng
    eng.close()


def _add(engine, pid, vector=None, **fields):
    photo = Photo(photo_id=pid, path=f"/photos/{pid}.jpg", **fields)
    engine.add_photo(photo, enqueue=False)
    if vector is not None:
        engine.store.save_embedding(Embedding(pid, vector, MODEL, DIM))
        engine.vector_index.add(pid, vector)
    return photo


def _slow(seconds: float):
    def strategy(query, intent, limit):
        time.sleep(seconds)
        raise AssertionError("should have been abandoned")

    return strategy


def _boom(query, intent, limit):
    raise RuntimeError("strategy exploded")


# ---------------------------------------------------------------------------
# Search
# ---------------------------------------------------------------------------


def test_search_fuses_keyword_and_semantic(engine):
    _add(engine, "a", _vec(1.0), tags=["beach"])
    _add(engine, "b", _vec(0.0, 1.0), tags=["beach"])
    _add(engine, "c", _vec(0.9, 0.1), tags=["mountain"])

    resp = engine.search("beach")
    ids = [r.photo_id for r in resp.results]
    assert ids == ["a", "b", "c"]
    assert len(ids) == len(set(ids))
    assert resp.results[0].matched_agents == ["keyword", "semantic"]
    assert resp.results[0].metadata["path"] == "/photos/a.jpg"
    assert resp.intent.type == "keyword"
    assert resp.confidence == pytest.approx(resp.intent.confidence)
    assert resp.diagnostics["strategies"]["semantic"]["success"] is True


def test_search_respects_limit_and_strategy_override(engine):
    for i in range(5):
        _add(engine, f"p{i}", _vec(1.0, i / 10), tags=["beach"])
    resp = engine.search("beach", {"limit": 2, "strategies": ["keyword"]})
    assert len(resp.results) == 2
    assert list(resp.diagnostics["strategies"]) == ["keyword"]


def test_date_filter_from_year_hint(engine):
    _add(engine, "old", tags=["海边"], taken_at="2022-08-01T10:00:00")
    _add(engine, "new", tags=["海边"], taken_at="2023-07-14T10:00:00")
    _add(engine, "undated", tags=["海边"])

    resp = engine.search("2023年 海边")
    assert [r.photo_id for r in resp.results] == ["new"]
    assert resp.diagnostics["date_filter"] == [2023, 2023]

    unfiltered = engine.search("2023年 海边", SearchOptions(apply_date_filter=False))
    assert {r.photo_id for r in unfiltered.results} == {"old", "new", "undated"}


def test_people_strategy_finds_tagged_photos(engine):
    mom = engine.store.create_person("妈妈")
    _add(engine, "trip", taken_at="2023-05-01")
    _add(engine, "older", taken_at="2021-05-01")
    engine.store.tag_photo("trip", mom.person_id)
    engine.store.tag_photo("older", mom.person_id)

    resp = engine.search("2023年和妈妈在日本旅游的照片")
    assert resp.intent.type == "mixed"
    assert "people" in resp.diagnostics["strategies"]
    assert [r.photo_id for r in resp.results] == ["trip"]
    assert resp.results[0].metadata["person_id"] == mom.person_id


def test_failed_semantic_strategy_does_not_fail_search():
    store = LibraryStore()
    eng = SearchEngine(store, FakeProvider(fail_text=True), EngineConfig(model_version=MODEL))
    _add(eng, "a", _vec(1.0), tags=["beach"])
    resp = eng.search("beach")
    assert [r.photo_id for r in resp.results] == ["a"]
    assert resp.diagnostics["strategies"]["semantic"]["success"] is False
    assert "ModelUnavailable" in resp.diagnostics["strategies"]["semantic"]["error"]
    assert resp.confidence == pytest.approx(resp.intent.confidence / 2)
    eng.close()


def test_timed_out_strategy_is_excluded(engine):
    _add(engine, "a", tags=["beach"])
    engine._strategies["semantic"] = _slow(1.0)
    t0 = time.monotonic()
    resp = engine.search("beach", {"timeout": 0.2})
    assert time.monotonic() - t0 < 0.9
    assert [r.photo_id for r in resp.results] == ["a"]
    status = resp.diagnostics["strategies"]["semantic"]
    assert status["success"] is False
    assert status["error"] == "timeout"


def test_all_strategies_failing_returns_empty_with_zero_confidence(engine):
    _add(engine, "a", _vec(1.0), tags=["beach"])
    for name in ("keyword", "semantic", "people"):
        engine._strategies[name] = _boom
    resp = engine.search("beach")
    assert resp.results == []
    assert resp.confidence == 0.0
    assert resp.diagnostics["error"] == "all strategies failed"
    assert all(not s["success"] for s in resp.diagnostics["strategies"].values())


def test_cancel_abandons_running_strategies(engine):
    for name in ("keyword", "semantic"):
        engine._strategies[name] = _slow(1.0)
    cancel = threading.Event()
    threading.Timer(0.1, cancel.set).start()
    t0 = time.monotonic()
    resp = engine.search("dog", cancel=cancel)
    assert time.monotonic() - t0 < 0.8
    assert resp.results == []
    assert {s["error"] for s in resp.diagnostics["strategies"].values()} == {"cancelled"}


def test_deleted_photos_are_dropped_from_results(engine):
    _add(engine, "a", tags=["beach"])
    _add(engine, "b", tags=["beach"])
    engine.store.delete_photo("b")  # still in the keyword index
    assert [r.photo_id for r in engine.search("beach").results] == ["a"]


def test_search_response_as_dict(engine):
    _add(engine, "a", tags=["beach"])
    d = engine.search("beach").as_dict()
    assert d["query"] == "beach"
    assert d["results"][0]["photo_id"] == "a"
    assert d["intent"]["type"] == "keyword"


def test_search_options_from_dict():
    opts = SearchOptions.from_dict({"topK": 7, "fusionPolicy": "rrf", "bogus": 1})
    assert opts.limit == 7
    assert opts.fusion_policy == "rrf"
    assert SearchOptions.from_dict(None).limit == 20


# ---------------------------------------------------------------------------
# Other operations
# ---------------------------------------------------------------------------


def test_find_similar_excludes_source(engine):
    _add(engine, "a", _vec(1.0))
    _add(engine, "b", _vec(0.9, 0.1))
    _add(engine, "c", _vec(0.0, 1.0))
    results = engine.find_similar("a", top_k=2)
    assert [r.photo_id for r in results] == ["b", "c"]
    assert results[0].final_score > results[1].final_score
    with pytest.raises(KeyError):
        engine.find_similar("missing")


def test_load_populates_indexes_and_recovers():
    store = LibraryStore()
    store.add_photo(Photo(photo_id="a", path="/photos/a.jpg", tags=["beach"]))
    store.add_photo(Photo(photo_id="b", path="/photos/b.jpg"))
    store.save_embedding(Embedding("a", _vec(1.0), MODEL, DIM))
    eng = SearchEngine(store, FakeProvider(), EngineConfig(model_version=MODEL))

    stats = eng.load()
    assert stats["photos"] == 2
    assert stats["vectors"] == 1
    assert stats["recovered"] == 1
    assert stats["index_mode"] == "exhaustive"
    assert "a" in eng.keyword_index
    assert eng.pipeline.wait_idle(timeout=10)
    assert store.has_embedding("b", MODEL)
    assert len(eng.vector_index) == 2
    eng.close()


def test_add_and_remove_photo(engine):
    engine.add_photo(Photo(photo_id="a", path="/photos/a.jpg", tags=["cat"]))
    assert engine.pipeline.wait_idle(timeout=10)
    assert "a" in engine.vector_index
    assert engine.remove_photo("a") is True
    assert "a" not in engine.vector_index
    assert engine.search("cat").results == []


def test_enqueue_vector_generation(engine):
    _add(engine, "a")
    task = engine.enqueue_vector_generation("a", priority=3)
    assert task["photo_id"] == "a"
    assert task["path"] == "/photos/a.jpg"
    assert engine.pipeline.wait_idle(timeout=10)
    assert engine.get_queue_stats()["completed"] == 1
    with pytest.raises(KeyError):
        engine.enqueue_vector_generation("missing")


def test_auto_match_and_assign(engine):
    _add(engine, "p1")
    _add(engine, "p2")
    mom = engine.store.create_person("Mom")
    engine.store.add_face(FaceDescriptor("ref", "p1", descriptor=_vec(1.0), person_id=mom.person_id))
    engine.store.add_face(FaceDescriptor("f1", "p2", descriptor=_vec(0.95, 0.05)))
    report = engine.auto_match_faces({"autoThreshold": 0.9})
    assert [m["face_id"] for m in report["matched"]] == ["f1"]

    engine.store.add_face(FaceDescriptor("f2", "p2", descriptor=_vec(0.0, 1.0)))
    assert engine.assign_face_to_person("f2", mom.person_id) == {"assigned": 1, "person_id": mom.person_id}


def test_suggest_and_stats(engine):
    _add(engine, "a", _vec(1.0), tags=["beach", "beachball"])
    engine.store.create_person("Bea")
    s = engine.suggest("bea")
    assert s["keywords"][:2] == ["beach", "beachball"]
    assert s["people"] == ["Bea"]

    stats = engine.stats()
    assert stats["photos"] == 1
    assert stats["vector_index"]["count"] == 1
    assert "parser_cache" in stats


def test_rebuild_index(engine):
    for i in range(10):
        _add(engine, f"p{i}", _vec(1.0, i / 10, (10 - i) / 10))
    stats = engine.rebuild_index()
    assert stats["num_clusters"] == 3
    assert stats["count"] == 10


def test_open_builds_on_disk_engine(tmp_path):
    from models import HttpEmbeddingProvider, OpenCLIPProvider

    eng = SearchEngine.open(tmp_path / "cache")
    assert (tmp_path / "cache" / "library.db").exists()
    assert isinstance(eng.provider, HttpEmbeddingProvider)
    eng.close()

    eng = SearchEngine.open(tmp_path / "cache", EngineConfig(embedding_provider="local"))
    assert isinstance(eng.provider, OpenCLIPProvider)
    assert eng.provider.loaded is False
    eng.close()


def test_malformed_llm_reply_does_not_break_search():
    from unittest.mock import MagicMock

    llm = MagicMock()
    llm.configured = True
    llm.complete.return_value = '{"intent": "mixed", "entities": 5}'
    eng = SearchEngine(LibraryStore(), FakeProvider(), EngineConfig(model_version=MODEL), llm=llm)
    _add(eng, "a", _vec(1.0), tags=["beach"])
    resp = eng.search("beach")
    assert [r.photo_id for r in resp.results] == ["a"]
    assert resp.intent.fallback_used is True
    eng.close()


def test_zero_limit_returns_nothing(engine):
    _add(engine, "a", _vec(1.0), tags=["beach"])
    resp = engine.search("beach", {"limit": 0})
    assert resp.results == []
    assert resp.diagnostics["strategies"]["keyword"]["success"] is True
