"""Search engine: one object owning every index, store and worker.

A query is parsed into a SearchIntent, the selected strategies (keyword,
semantic, people) run concurrently under a per-strategy deadline, and their
StrategyResults are fused into one ranked list. A strategy that fails or
times out contributes nothing; only when all of them fail does the search
come back empty, with zero confidence and the reasons in ``diagnostics``.
"""

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field, fields
from pathlib import Path

import fusion
from config import CACHE_DIR, DEFAULT_TOP_K, EngineConfig, to_snake
from errors import EmbeddingError, StrategyTimeout
from face import FaceClusterer
from fusion import CandidateResult, MergedResult, SourceScore, StrategyResult
from keyword_index import KeywordIndex
from llm import ChatCompletionClient
from models import EmbeddingProvider, HttpEmbeddingProvider, OpenCLIPProvider
from people import PersonLookup
from pipeline import VectorGenerationPipeline
from query_parser import QueryIntentParser, SearchIntent
from similarity import DimensionMismatch
from store import LibraryStore, Photo
from vector_index import VectorIndex

logger = logging.getLogger(__name__)

CANDIDATE_MULTIPLIER = 3  # each strategy over-fetches before fusion
CANCEL_POLL_SECONDS = 0.05


@dataclass
class SearchOptions:
    limit: int = DEFAULT_TOP_K
    strategies: list[str] | None = None
    weights: dict[str, float] | None = None
    dedup_strategy: str | None = None
    fusion_policy: str | None = None
    min_score: float | None = None
    timeout: float | None = None
    apply_date_filter: bool = True

    @classmethod
    def from_dict(cls, data: dict | None) -> "SearchOptions":
        if not data:
            return cls()
        known = {f.name for f in fields(cls)}
        kwargs = {}
        for key, value in data.items():
            name = to_snake(key)
            if name == "top_k":
                name = "limit"
            if name in known:
                kwargs[name] = value
        return cls(**kwargs)


@dataclass
class SearchResponse:
    query: str
    results: list[MergedResult]
    intent: SearchIntent
    confidence: float
    diagnostics: dict = field(default_factory=dict)

    def as_dict(self) -> dict:
        return {
            "query": self.query,
            "results": [r.as_dict() for r in self.results],
            "intent": self.intent.as_dict(),
            "confidence": self.confidence,
            "diagnostics": self.diagnostics,
        }


class SearchEngine:
    def __init__(
        self,
        store: LibraryStore,
        provider: EmbeddingProvider,
        config: EngineConfig | None = None,
        llm: ChatCompletionClient | None = None,
    ):
        self.config = config or EngineConfig()
        cfg = self.config
        self.store = store
        self.provider = provider
        self.llm = llm

        self.vector_index = VectorIndex(
            index_size_threshold=cfg.index_size_threshold,
            num_probes=cfg.num_probes,
            num_clusters=cfg.num_clusters,
        )
        self.keyword_index = KeywordIndex()
        self.people = PersonLookup(store)
        self.parser = QueryIntentParser(llm, llm_timeout=cfg.llm_timeout)
        self.faces = FaceClusterer(
            store,
            cluster_threshold=cfg.cluster_threshold,
            auto_threshold=cfg.auto_match_threshold,
            suggest_threshold=cfg.suggest_threshold,
            lock_timeout=cfg.cluster_lock_timeout,
        )
        self.pipeline = VectorGenerationPipeline(
            provider,
            store,
            self.vector_index,
            model_version=cfg.model_version,
            max_concurrent=cfg.max_concurrent,
            max_retries=cfg.max_retries,
        )
        self._executor = ThreadPoolExecutor(max_workers=12, thread_name_prefix="search")
        self._strategies = {
            "keyword": self._keyword_strategy,
            "semantic": self._semantic_strategy,
            "people": self._people_strategy,
        }

    @classmethod
    def open(cls, cache_dir: Path | None = None, config: EngineConfig | None = None) -> "SearchEngine":
        """Build an engine on disk under ``cache_dir`` with the configured embedding provider."""
        cache_dir = (cache_dir or CACHE_DIR).resolve()
        cache_dir.mkdir(parents=True, exist_ok=True)
        config = config or EngineConfig.load(cache_dir / "config.json")
        store = LibraryStore(cache_dir / "library.db")
        llm = ChatCompletionClient(timeout=max(config.llm_timeout, 1.0))
        if config.embedding_provider == "local":
            provider: EmbeddingProvider = OpenCLIPProvider(name=config.model_version)
        else:
            provider = HttpEmbeddingProvider()
        return cls(store, provider, config=config, llm=llm)

    # -- lifecycle --

    def load(self, recover: bool = True) -> dict:
        """Populate in-memory indexes from the store and requeue missing embeddings."""
        t0 = time.time()
        photos = self.store.list_photos()
        for photo in photos:
            self.keyword_index.add_to_index(photo.photo_id, photo.keyword_fields())

        loaded = self.vector_index.load(self.store.get_all_embeddings(self.config.model_version))
        if loaded >= self.config.index_size_threshold:
            self.vector_index.rebuild()

        recovered = self.pipeline.recover() if recover else 0
        stats = {
            "photos": len(photos),
            "vectors": loaded,
            "recovered": recovered,
            "index_mode": self.vector_index.mode,
            "elapsed": round(time.time() - t0, 3),
        }
        logger.info("Engine loaded: %s", stats)
        return stats

    def close(self) -> None:
        self.pipeline.shutdown(wait=False)
        self.parser.close()
        self._executor.shutdown(wait=False, cancel_futures=True)
        self.provider.close()
        if self.llm is not None:
            self.llm.close()
        self.store.close()

    # -- library maintenance --

    def add_photo(self, photo: Photo, priority: int = 0, enqueue: bool = True) -> None:
        self.store.add_photo(photo)
        self.keyword_index.add_to_index(photo.photo_id, photo.keyword_fields())
        if enqueue:
            self.pipeline.enqueue(photo.photo_id, photo.path, priority)

    def remove_photo(self, photo_id: str) -> bool:
        removed = self.store.delete_photo(photo_id)
        self.keyword_index.remove_from_index(photo_id)
        self.vector_index.remove(photo_id)
        return removed

    def rebuild_index(self) -> dict:
        self.vector_index.rebuild()
        return self.vector_index.stats()

    # -- search --

    def parse_query(self, text: str) -> SearchIntent:
        return self.parser.parse(text)

    def search(
        self,
        query: str,
        options: SearchOptions | dict | None = None,
        cancel: threading.Event | None = None,
    ) -> SearchResponse:
        """Parse, run strategies concurrently, fuse. Never raises for strategy failures."""
        if not isinstance(options, SearchOptions):
            options = SearchOptions.from_dict(options)
        cfg = self.config
        t0 = time.time()

        intent = self.parser.parse(query)
        names = [s for s in (options.strategies or intent.strategies) if s in self._strategies]
        fetch = max(options.limit, 1) * CANDIDATE_MULTIPLIER

        futures: dict[Future, str] = {
            self._executor.submit(self._run_strategy, name, query, intent, fetch): name
            for name in names
        }
        results, statuses = self._collect(futures, options.timeout or cfg.strategy_timeout, cancel)

        weights = options.weights or fusion.weights_for_intent(intent.type, cfg.fusion_weights)
        policy = options.fusion_policy or cfg.fusion_policy
        merged = fusion.merge(
            results,
            weights=weights,
            dedup_strategy=options.dedup_strategy or cfg.dedup_strategy,
            min_score=cfg.min_score if options.min_score is None else options.min_score,
            max_results=None,
            policy=policy,
        )

        photos = self.store.get_photos([m.photo_id for m in merged])
        year_range = intent.year_range() if options.apply_date_filter else None
        months = [int(m) for m in intent.hints_of("month") if m.isdigit()]
        final = []
        for m in merged:
            if len(final) >= options.limit:
                break
            photo = photos.get(m.photo_id)
            if photo is None:
                continue  # deleted since it was indexed
            if year_range and not _in_years(photo, year_range, months):
                continue
            m.metadata.update(
                {"path": photo.path, "filename": photo.filename, "taken_at": photo.taken_at}
            )
            final.append(m)

        succeeded = [r for r in results if r.success]
        if not succeeded:
            final = []
            confidence = 0.0
        else:
            confidence = round(intent.confidence * len(succeeded) / len(names), 4)

        diagnostics = {
            "strategies": statuses,
            "fallback_used": intent.fallback_used,
            "weights": weights,
            "policy": policy,
            "date_filter": list(year_range) if year_range else None,
            "elapsed_ms": round((time.time() - t0) * 1000, 1),
        }
        if not succeeded:
            diagnostics["error"] = "all strategies failed" if names else "no strategies ran"
            logger.warning("Search %r: %s", query, diagnostics["error"])
        return SearchResponse(query, final, intent, confidence, diagnostics)

    def _collect(
        self, futures: dict[Future, str], timeout: float, cancel: threading.Event | None
    ) -> tuple[list[StrategyResult], dict]:
        """Wait for strategy futures until done, deadline, or cancellation."""
        deadline = time.monotonic() + timeout
        pending = set(futures)
        cancelled = False
        while pending:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            if cancel is not None:
                if cancel.is_set():
                    cancelled = True
                    break
                remaining = min(remaining, CANCEL_POLL_SECONDS)
            _, pending = wait(pending, timeout=remaining, return_when=FIRST_COMPLETED)

        results: list[StrategyResult] = []
        statuses: dict[str, dict] = {}
        for future, name in futures.items():
            if future in pending:
                future.cancel()
                if cancelled:
                    statuses[name] = {"success": False, "error": "cancelled", "count": 0}
                    continue
                logger.warning("%s", StrategyTimeout(f"{name} strategy exceeded {timeout}s"))
                result = StrategyResult.failed(name, "timeout", elapsed_ms=timeout * 1000)
            else:
                result = future.result()
            results.append(result)
            statuses[name] = {
                "success": result.success,
                "count": len(result.results),
                "confidence": round(result.confidence, 4),
                "error": result.error,
                "elapsed_ms": round(result.elapsed_ms, 1),
            }
        return results, statuses

    def _run_strategy(self, name: str, query: str, intent: SearchIntent, limit: int) -> StrategyResult:
        t0 = time.time()
        try:
            result = self._strategies[name](query, intent, limit)
        except Exception as e:
            logger.warning("%s strategy failed for %r", name, query, exc_info=True)
            result = StrategyResult.failed(name, f"{type(e).__name__}: {e}")
        result.elapsed_ms = (time.time() - t0) * 1000
        return result

    def _keyword_strategy(self, query: str, intent: SearchIntent, limit: int) -> StrategyResult:
        terms = [intent.refined_query or query]
        for hint_type in ("place", "person", "keyword", "album"):
            terms.extend(intent.hints_of(hint_type))
        hits = self.keyword_index.search(" ".join(terms), mode="OR", limit=limit)
        return StrategyResult(
            source="keyword",
            success=True,
            results=[
                CandidateResult(
                    h.photo_id,
                    h.score,
                    "keyword",
                    {"matched_tokens": h.matched_tokens, "matched_fields": h.matched_fields},
                )
                for h in hits
            ],
            confidence=hits[0].score if hits else 0.0,
        )

    def _semantic_strategy(self, query: str, intent: SearchIntent, limit: int) -> StrategyResult:
        if len(self.vector_index) == 0:
            return StrategyResult(source="semantic", success=True, metadata={"empty_index": True})
        try:
            emb = self.provider.text_to_embedding(query)
            hits = self.vector_index.search(emb.vector, limit=limit)
        except (EmbeddingError, DimensionMismatch) as e:
            return StrategyResult.failed("semantic", f"{type(e).__name__}: {e}")
        hits = [(pid, s) for pid, s in hits if s > 0]
        return StrategyResult(
            source="semantic",
            success=True,
            results=[CandidateResult(pid, s, "semantic") for pid, s in hits],
            confidence=hits[0][1] if hits else 0.0,
            metadata={"index_mode": self.vector_index.mode},
        )

    def _people_strategy(self, query: str, intent: SearchIntent, limit: int) -> StrategyResult:
        names = intent.entities_of("person") or [intent.refined_query or query]
        best: dict[str, CandidateResult] = {}
        for name in names:
            for match in self.people.search(name):
                for photo in self.store.get_person_photos(match.person.person_id):
                    prev = best.get(photo.photo_id)
                    if prev is None or match.score > prev.score:
                        best[photo.photo_id] = CandidateResult(
                            photo.photo_id,
                            match.score,
                            "people",
                            {"person_id": match.person.person_id, "person_name": match.person.label},
                        )
        ranked = sorted(best.values(), key=lambda c: (-c.score, c.photo_id))[:limit]
        return StrategyResult(
            source="people",
            success=True,
            results=ranked,
            confidence=ranked[0].score if ranked else 0.0,
        )

    def find_similar(self, photo_id: str, top_k: int = DEFAULT_TOP_K) -> list[MergedResult]:
        """Photos whose embedding is closest to ``photo_id``'s, excluding itself."""
        vector = self.vector_index.get_vector(photo_id)
        if vector is None:
            emb = self.store.get_embedding(photo_id, self.config.model_version)
            if emb is None:
                raise KeyError(photo_id)
            vector = emb.vector

        hits = [(pid, s) for pid, s in self.vector_index.search(vector, limit=top_k + 1) if pid != photo_id]
        photos = self.store.get_photos([pid for pid, _ in hits])
        results = []
        for pid, score in hits[:top_k]:
            photo = photos.get(pid)
            results.append(
                MergedResult(
                    photo_id=pid,
                    final_score=score,
                    sources=[SourceScore("semantic", score, 1.0, score)],
                    matched_agents=["semantic"],
                    metadata={"path": photo.path, "taken_at": photo.taken_at} if photo else {},
                )
            )
        return results

    def suggest(self, prefix: str, limit: int = 5) -> dict:
        return {
            "keywords": self.keyword_index.get_suggestions(prefix, limit),
            "people": [p.label for p in self.people.get_suggestions(prefix, limit)],
        }

    # -- vector generation --

    def enqueue_vector_generation(
        self, photo_id: str, path: str | None = None, priority: int = 0, force: bool = False
    ) -> dict:
        if path is None:
            photo = self.store.get_photo(photo_id)
            if photo is None:
                raise KeyError(photo_id)
            path = photo.path
        return self.pipeline.enqueue(photo_id, path, priority, force=force).as_dict()

    def get_queue_stats(self) -> dict:
        return self.pipeline.get_stats()

    # -- faces --

    def auto_match_faces(self, options: dict | None = None) -> dict:
        opts = {to_snake(k): v for k, v in (options or {}).items()}
        report = self.faces.auto_match(
            auto_threshold=opts.get("auto_threshold", opts.get("auto_match_threshold")),
            suggest_threshold=opts.get("suggest_threshold"),
            cluster_threshold=opts.get("cluster_threshold"),
        )
        return report.as_dict()

    def assign_face_to_person(self, face_id: str, person_id: str) -> dict:
        return self.faces.assign_to_person([face_id], person_id)

    def stats(self) -> dict:
        return {
            "photos": self.store.count_photos(),
            "keyword_index": len(self.keyword_index),
            "vector_index": self.vector_index.stats(),
            "queue": self.pipeline.get_stats(),
            "faces": self.faces.stats(),
            "parser_cache": self.parser.cache_stats(),
        }


def _in_years(photo: Photo, year_range: tuple[int, int], months: list[int]) -> bool:
    if photo.year is None or not year_range[0] <= photo.year <= year_range[1]:
        return False
    if months and year_range[0] == year_range[1]:
        return photo.month in months
    return True
