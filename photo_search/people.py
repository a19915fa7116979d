"""Person-name lookup over the tagged-photo graph."""

import logging
import threading
from collections import deque
from dataclasses import dataclass, field

from store import LibraryStore, Person, Photo

logger = logging.getLogger(__name__)

EXACT_SCORE = 1.0
PREFIX_SCORE = 0.9
SUBSTRING_SCORE = 0.7
MAX_HISTORY = 50


@dataclass
class PersonMatch:
    person: Person
    score: float
    matched_term: str = ""


@dataclass
class PersonPhotos:
    person: Person
    photos: list[Photo]
    total: int
    years: list[int] = field(default_factory=list)
    earliest: str | None = None
    latest: str | None = None


def match_score(person: Person, terms: list[str]) -> tuple[float, str]:
    """Best tier across ``terms`` against name and display name (lowercased)."""
    names = [person.name.lower()]
    if person.display_name:
        names.append(person.display_name.lower())

    best, best_term = 0.0, ""
    for term in terms:
        for name in names:
            if name == term:
                return EXACT_SCORE, term
            if name.startswith(term) and best < PREFIX_SCORE:
                best, best_term = PREFIX_SCORE, term
            elif term in name and best < SUBSTRING_SCORE:
                best, best_term = SUBSTRING_SCORE, term
    return best, best_term


class PersonLookup:
    def __init__(self, store: LibraryStore):
        self._store = store
        self._history: deque[str] = deque(maxlen=MAX_HISTORY)
        self._history_lock = threading.Lock()

    def search(self, query: str, limit: int | None = None) -> list[PersonMatch]:
        """Tiered match: exact 1.0, prefix 0.9, substring 0.7 on any whitespace-split term.

        Ties break by face count descending, then person_id.
        """
        terms = [t for t in query.lower().split() if t]
        if not terms:
            return []
        self._remember(query.strip())

        matches = []
        for person in self._store.list_persons():
            score, term = match_score(person, terms)
            if score > 0:
                matches.append(PersonMatch(person=person, score=score, matched_term=term))
        matches.sort(key=lambda m: (-m.score, -m.person.face_count, m.person.person_id))
        return matches[:limit] if limit else matches

    def get_photos(
        self,
        person_id: str,
        year: int | None = None,
        month: int | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> PersonPhotos:
        """Photos tagged with a person, newest first, optionally filtered to a year/month.

        Raises:
            KeyError: unknown person.
            ValueError: month outside 1-12, or month given without a year.
        """
        person = self._store.get_person(person_id)
        if person is None:
            raise KeyError(person_id)
        if month is not None:
            if year is None:
                raise ValueError("month filter requires a year")
            if not 1 <= month <= 12:
                raise ValueError(f"month must be 1-12, got {month}")

        photos = self._store.get_person_photos(person_id)
        if year is not None:
            photos = [p for p in photos if p.year == year]
        if month is not None:
            photos = [p for p in photos if p.month == month]

        dated = [p.taken_at for p in photos if p.taken_at]
        return PersonPhotos(
            person=person,
            photos=photos[offset : offset + limit],
            total=len(photos),
            years=sorted({p.year for p in photos if p.year is not None}),
            earliest=min(dated) if dated else None,
            latest=max(dated) if dated else None,
        )

    def get_timeline(self, person_id: str) -> dict[int, list[int]]:
        """year -> sorted distinct months with at least one tagged photo."""
        if self._store.get_person(person_id) is None:
            raise KeyError(person_id)
        timeline: dict[int, set[int]] = {}
        for photo in self._store.get_person_photos(person_id):
            if photo.year is None or photo.month is None:
                continue
            timeline.setdefault(photo.year, set()).add(photo.month)
        return {y: sorted(m) for y, m in sorted(timeline.items(), reverse=True)}

    def get_suggestions(self, prefix: str, limit: int = 5) -> list[Person]:
        """Autocomplete: prefix matches first, then substring, each by face count."""
        prefix = prefix.strip().lower()
        if not prefix:
            return []
        scored = []
        for person in self._store.list_persons():
            score, _ = match_score(person, [prefix])
            if score > 0:
                scored.append((score, person))
        scored.sort(key=lambda x: (-x[0], -x[1].face_count, x[1].person_id))
        return [p for _, p in scored[:limit]]

    def get_popular(self, limit: int = 10) -> list[Person]:
        persons = [p for p in self._store.list_persons() if p.face_count > 0]
        persons.sort(key=lambda p: (-p.face_count, p.person_id))
        return persons[:limit]

    # -- search history --

    def _remember(self, query: str) -> None:
        with self._history_lock:
            if query in self._history:
                self._history.remove(query)
            self._history.appendleft(query)

    def get_search_history(self) -> list[str]:
        with self._history_lock:
            return list(self._history)

    def clear_search_history(self) -> None:
        with self._history_lock:
            self._history.clear()
