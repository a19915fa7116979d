import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from people import MAX_HISTORY, PersonLookup
from store import LibraryStore, Photo


@pytest.fixture()
def store():
    s = LibraryStore()
    yield s
    s.close()


@pytest.fixture()
def lookup(store):
    return PersonLookup(store)


def _tag(store, person, pid, taken_at=None, faces=1):
    if store.get_photo(pid) is None:
        store.add_photo(Photo(photo_id=pid, path=f"/photos/{pid}.jpg", taken_at=taken_at))
    for _ in range(faces):
        store.tag_photo(pid, person.person_id)


def test_tiered_scores(store, lookup):
    store.create_person("Ming")
    store.create_person("Mingyu")
    store.create_person("Xiaoming")
    results = {m.person.name: m.score for m in lookup.search("ming")}
    assert results == {"Ming": 1.0, "Mingyu": 0.9, "Xiaoming": 0.7}


def test_display_name_matches(store, lookup):
    store.create_person("张伟", display_name="Dad")
    [match] = lookup.search("dad")
    assert match.person.name == "张伟"
    assert match.score == 1.0


def test_ties_broken_by_face_count(store, lookup):
    few = store.create_person("Anna Lee")
    many = store.create_person("Anna Chen")
    _tag(store, few, "p1")
    _tag(store, many, "p2", faces=3)
    ranked = lookup.search("anna")
    assert [m.person.person_id for m in ranked] == [many.person_id, few.person_id]


def test_empty_query_returns_nothing(lookup):
    assert lookup.search("   ") == []


def test_get_photos_filters_by_year_and_month(store, lookup):
    p = store.create_person("Alice")
    _tag(store, p, "a", "2022-03-01T10:00:00")
    _tag(store, p, "b", "2023-03-05T10:00:00")
    _tag(store, p, "c", "2023-08-20T10:00:00")

    all_photos = lookup.get_photos(p.person_id)
    assert [x.photo_id for x in all_photos.photos] == ["c", "b", "a"]
    assert all_photos.total == 3
    assert all_photos.years == [2022, 2023]
    assert all_photos.earliest.startswith("2022")
    assert all_photos.latest.startswith("2023-08")

    assert [x.photo_id for x in lookup.get_photos(p.person_id, year=2023).photos] == ["c", "b"]
    assert [x.photo_id for x in lookup.get_photos(p.person_id, year=2023, month=3).photos] == ["b"]


def test_get_photos_pagination(store, lookup):
    p = store.create_person("Alice")
    for i in range(5):
        _tag(store, p, f"p{i}", f"2020-01-0{i + 1}")
    page = lookup.get_photos(p.person_id, limit=2, offset=2)
    assert [x.photo_id for x in page.photos] == ["p2", "p1"]
    assert page.total == 5


def test_get_photos_errors(store, lookup):
    p = store.create_person("Alice")
    with pytest.raises(KeyError):
        lookup.get_photos("missing")
    with pytest.raises(ValueError):
        lookup.get_photos(p.person_id, month=3)
    with pytest.raises(ValueError):
        lookup.get_photos(p.person_id, year=2023, month=13)


def test_timeline(store, lookup):
    p = store.create_person("Alice")
    _tag(store, p, "a", "2022-03-01")
    _tag(store, p, "b", "2022-11-01")
    _tag(store, p, "c", "2023-03-01")
    _tag(store, p, "d")
    assert lookup.get_timeline(p.person_id) == {2023: [3], 2022: [3, 11]}


def test_suggestions_and_popular(store, lookup):
    a = store.create_person("Alice")
    b = store.create_person("Alina")
    store.create_person("Bob")
    _tag(store, b, "p1", faces=2)
    assert [x.person_id for x in lookup.get_suggestions("ali")] == [b.person_id, a.person_id]
    assert [x.person_id for x in lookup.get_popular()] == [b.person_id]


def test_search_history_is_recent_first_and_bounded(lookup):
    lookup.search("alice")
    lookup.search("bob")
    lookup.search("alice")
    assert lookup.get_search_history() == ["alice", "bob"]
    for i in range(MAX_HISTORY + 10):
        lookup.search(f"q{i}")
    assert len(lookup.get_search_history()) == MAX_HISTORY
    lookup.clear_search_history()
    assert lookup.get_search_history() == []
