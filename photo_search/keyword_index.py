"""Inverted token index over photo filenames, tags, titles and descriptions."""

import logging
import re
import threading
from collections import defaultdict
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

FIELDS = ("filename", "tags", "title", "description")

_CJK = "\u3040-\u30ff\u3400-\u4dbf\u4e00-\u9fff\uac00-\ud7af"
_TOKEN_RE = re.compile(rf"[{_CJK}]+|[^\W_{_CJK}]+")


def tokenize(text: str) -> list[str]:
    """Lowercase, strip punctuation, keep CJK runs whole, split on everything else."""
    if not text:
        return []
    return _TOKEN_RE.findall(text.lower())


@dataclass
class KeywordHit:
    photo_id: str
    score: float
    matched_tokens: list[str] = field(default_factory=list)
    matched_fields: list[str] = field(default_factory=list)


def _field_text(value) -> str:
    if value is None:
        return ""
    if isinstance(value, (list, tuple, set)):
        return " ".join(str(v) for v in value)
    return str(value)


class KeywordIndex:
    def __init__(self):
        self._lock = threading.RLock()
        # field -> token -> photo_ids
        self._postings: dict[str, dict[str, set[str]]] = {f: defaultdict(set) for f in FIELDS}
        # photo_id -> field -> tokens, kept so removal doesn't scan every posting
        self._docs: dict[str, dict[str, set[str]]] = {}

    def __len__(self) -> int:
        return len(self._docs)

    def __contains__(self, photo_id: str) -> bool:
        return photo_id in self._docs

    def add_to_index(self, photo_id: str, fields: dict) -> None:
        """Index ``fields`` (any of filename/tags/title/description). Re-adding replaces."""
        unknown = set(fields) - set(FIELDS)
        if unknown:
            raise ValueError(f"Unknown keyword fields: {sorted(unknown)}")
        with self._lock:
            self._remove_locked(photo_id)
            doc: dict[str, set[str]] = {}
            for name, value in fields.items():
                tokens = set(tokenize(_field_text(value)))
                if not tokens:
                    continue
                doc[name] = tokens
                postings = self._postings[name]
                for tok in tokens:
                    postings[tok].add(photo_id)
            self._docs[photo_id] = doc

    def remove_from_index(self, photo_id: str) -> bool:
        with self._lock:
            return self._remove_locked(photo_id)

    def _remove_locked(self, photo_id: str) -> bool:
        doc = self._docs.pop(photo_id, None)
        if doc is None:
            return False
        for name, tokens in doc.items():
            postings = self._postings[name]
            for tok in tokens:
                ids = postings.get(tok)
                if ids is None:
                    continue
                ids.discard(photo_id)
                if not ids:
                    del postings[tok]
        return True

    def search(
        self,
        query: str,
        fields: list[str] | None = None,
        mode: str = "OR",
        limit: int | None = 50,
    ) -> list[KeywordHit]:
        """Search the index.

        AND returns only photos containing every query token (score 1.0).
        OR returns the union, each scored by matched / total query tokens.
        Ranked by score descending, ties by photo_id.
        """
        mode = mode.upper()
        if mode not in ("AND", "OR"):
            raise ValueError(f"Unknown search mode: {mode}")
        fields = list(fields) if fields else list(FIELDS)
        unknown = set(fields) - set(FIELDS)
        if unknown:
            raise ValueError(f"Unknown keyword fields: {sorted(unknown)}")

        tokens = list(dict.fromkeys(tokenize(query)))
        if not tokens:
            return []

        matched: dict[str, set[str]] = defaultdict(set)
        hit_fields: dict[str, set[str]] = defaultdict(set)
        with self._lock:
            for tok in tokens:
                for name in fields:
                    for pid in self._postings[name].get(tok, ()):
                        matched[pid].add(tok)
                        hit_fields[pid].add(name)

        total = len(tokens)
        hits = []
        for pid, toks in matched.items():
            if mode == "AND" and len(toks) < total:
                continue
            hits.append(
                KeywordHit(
                    photo_id=pid,
                    score=len(toks) / total,
                    matched_tokens=[t for t in tokens if t in toks],
                    matched_fields=[f for f in fields if f in hit_fields[pid]],
                )
            )
        hits.sort(key=lambda h: (-h.score, h.photo_id))
        return hits[:limit] if limit else hits

    def get_suggestions(self, prefix: str, limit: int = 10) -> list[str]:
        """Indexed tokens starting with ``prefix``, most frequent first."""
        prefix = prefix.strip().lower()
        if not prefix:
            return []
        freq: dict[str, set[str]] = defaultdict(set)
        with self._lock:
            for postings in self._postings.values():
                for tok, ids in postings.items():
                    if tok.startswith(prefix):
                        freq[tok] |= ids
        ranked = sorted(freq.items(), key=lambda x: (-len(x[1]), x[0]))
        return [tok for tok, _ in ranked[:limit]]

    def count_by_keyword(self, keyword: str) -> int:
        """Number of photos whose index entries contain every token of ``keyword``."""
        return len(self.search(keyword, mode="AND", limit=None))
