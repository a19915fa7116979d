"""Turn a free-text photo query into a structured SearchIntent.

The LLM path asks a chat-completion endpoint for JSON; anything that goes
wrong there (unconfigured, HTTP error, timeout, invalid JSON) drops to the
rule-based parser, which is deterministic and instant.
"""

import copy
import json
import logging
import re
import threading
import time
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import asdict, dataclass, field

from config import PARSE_CACHE_SIZE, PARSE_CACHE_TTL
from errors import ParseError
from keyword_index import tokenize
from llm import ChatCompletionClient

logger = logging.getLogger(__name__)

INTENT_TYPES = ("keyword", "semantic", "time", "location", "people", "mixed")
ENTITY_TYPES = ("person", "time", "location", "event", "object", "emotion")
HINT_TYPES = ("year", "month", "year_from", "year_to", "place", "person", "album", "keyword")
STRATEGIES = ("keyword", "semantic", "people")


@dataclass
class Entity:
    type: str
    value: str
    confidence: float = 0.7


@dataclass
class Hint:
    type: str
    value: str


@dataclass
class SearchIntent:
    type: str
    confidence: float
    entities: list[Entity] = field(default_factory=list)
    refined_query: str = ""
    search_hints: list[Hint] = field(default_factory=list)
    strategies: list[str] = field(default_factory=list)
    fallback_used: bool = False
    reasoning: str = ""

    def entities_of(self, entity_type: str) -> list[str]:
        return [e.value for e in self.entities if e.type == entity_type]

    def hints_of(self, hint_type: str) -> list[str]:
        return [h.value for h in self.search_hints if h.type == hint_type]

    def year_range(self) -> tuple[int, int] | None:
        """Inclusive year range implied by the hints, or None."""
        lo = self.hints_of("year_from")
        hi = self.hints_of("year_to")
        if lo and hi and lo[0].isdigit() and hi[0].isdigit():
            return int(lo[0]), int(hi[0])
        years = [int(y) for y in self.hints_of("year") if y.isdigit()]
        if years:
            return min(years), max(years)
        return None

    def as_dict(self) -> dict:
        return asdict(self)


def strategies_for(intent_type: str, entities: list[Entity]) -> list[str]:
    strategies = ["keyword", "semantic"]
    if intent_type == "people" or any(e.type == "person" for e in entities):
        strategies.append("people")
    return strategies


# ---------------------------------------------------------------------------
# Rule-based extraction
# ---------------------------------------------------------------------------

_DECADE_RE = re.compile(r"(?<!\d)((?:19|20)\d0)s\b")
_RANGE_RE = re.compile(r"(?<!\d)(19\d{2}|20\d{2})\s*(?:[-–~]|到|至)\s*(19\d{2}|20\d{2})年?(?!\d)")
_YEAR_RE = re.compile(r"(?<!\d)(19\d{2}|20\d{2})(?!\d)年?")
_MONTH_RE = re.compile(r"(?<!\d)(1[0-2]|0?[1-9])月")
_EN_MONTHS = {
    name: i + 1
    for i, name in enumerate(
        ["january", "february", "march", "april", "may", "june", "july",
         "august", "september", "october", "november", "december"]
    )
}
_EN_MONTH_RE = re.compile(r"\b(" + "|".join(_EN_MONTHS) + r")\b", re.IGNORECASE)

_ROLE_WORDS = ("妈妈", "爸爸", "朋友", "家人", "同事", "宝贝", "老婆", "老公", "孩子", "奶奶", "爷爷")
_PERSON_PATTERNS = [
    re.compile(r"(?:和|跟|与|带)\s*([^\s的在去]{1,10}?)(?=在|去|的|一起|合影|照片|图片|$)"),
    re.compile(r"((?:我的?)?(?:" + "|".join(_ROLE_WORDS) + r"))"),
    re.compile(r"\bwith\s+(?:my\s+)?([A-Za-z][\w'-]*)", re.IGNORECASE),
]

LOCATIONS = (
    "日本", "美国", "欧洲", "国内", "北京", "上海", "东京", "纽约", "巴黎",
    "海边", "山", "城市", "乡村",
    "japan", "usa", "america", "europe", "beijing", "shanghai", "tokyo",
    "new york", "paris", "beach", "mountain", "mountains", "city", "countryside",
)
EMOTION_WORDS = (
    "好看", "美丽", "漂亮", "温暖", "开心", "快乐", "幸福", "悲伤", "浪漫", "可爱",
    "beautiful", "pretty", "warm", "happy", "joyful", "sad", "romantic", "cute", "lovely",
)
STOPWORDS = (
    "的", "是", "在", "和", "与", "跟", "我", "你", "他", "她", "它", "这", "那",
    "照片", "图片", "影像", "拍摄", "拍",
    "the", "a", "an", "of", "in", "on", "at", "with", "my", "and", "from", "me",
    "photo", "photos", "picture", "pictures", "image", "images",
)
_STOP_SPLIT_RE = re.compile("|".join(sorted((w for w in STOPWORDS if not w.isascii()), key=len, reverse=True)))
_ASCII_STOPWORDS = {w for w in STOPWORDS if w.isascii()}


def _contains(text: str, word: str) -> bool:
    if word.isascii():
        return re.search(rf"\b{re.escape(word)}\b", text) is not None
    return word in text


def _extract_time(query: str, entities: list[Entity], hints: list[Hint]) -> list[tuple[int, int]]:
    """Append time entities/hints; returns the matched spans."""
    spans = []
    year = None
    m = _DECADE_RE.search(query)
    if m:
        base = int(m.group(1))
        entities.append(Entity("time", m.group(0), 0.9))
        hints += [Hint("year_from", str(base)), Hint("year_to", str(base + 9))]
        spans.append(m.span())
    else:
        m = _RANGE_RE.search(query)
        if m:
            y1, y2 = sorted((int(m.group(1)), int(m.group(2))))
            entities.append(Entity("time", f"{y1}-{y2}", 0.9))
            hints += [Hint("year_from", str(y1)), Hint("year_to", str(y2))]
            spans.append(m.span())
        else:
            m = _YEAR_RE.search(query)
            if m:
                year = m.group(1)
                entities.append(Entity("time", year, 0.9))
                hints.append(Hint("year", year))
                spans.append(m.span())

    m = _MONTH_RE.search(query)
    month = None
    if m:
        month = int(m.group(1))
        spans.append(m.span())
    else:
        m = _EN_MONTH_RE.search(query)
        if m:
            month = _EN_MONTHS[m.group(1).lower()]
            spans.append(m.span())
    if month is not None:
        value = f"{year}-{month:02d}" if year else f"month {month}"
        entities.append(Entity("time", value, 0.8))
        hints.append(Hint("month", str(month)))
    return spans


def _extract_person(query: str, entities: list[Entity], hints: list[Hint]) -> None:
    for pattern in _PERSON_PATTERNS:
        m = pattern.search(query)
        if not m:
            continue
        value = m.group(1).strip()
        if value.lower() in _ASCII_STOPWORDS or value in STOPWORDS:
            continue
        if 0 < len(value) < 20:
            entities.append(Entity("person", value, 0.7))
            hints.append(Hint("person", value))
            return


def _extract_locations(lowered: str, entities: list[Entity], hints: list[Hint]) -> None:
    found: list[str] = []
    for place in LOCATIONS:
        if not _contains(lowered, place):
            continue
        if any(place in other for other in found):
            continue
        found.append(place)
        entities.append(Entity("location", place, 0.7))
        hints.append(Hint("place", place))


def extract_keywords(text: str) -> list[str]:
    """Content words: tokens minus stopwords; CJK runs are split at stopwords."""
    words = []
    for tok in tokenize(text):
        if tok.isascii():
            if len(tok) > 1 and tok not in _ASCII_STOPWORDS:
                words.append(tok)
            continue
        for piece in _STOP_SPLIT_RE.split(tok):
            if len(piece) > 1:
                words.append(piece)
    return list(dict.fromkeys(words))


def parse_with_rules(query: str) -> SearchIntent:
    """Deterministic fallback parser."""
    lowered = query.lower()
    entities: list[Entity] = []
    hints: list[Hint] = []

    spans = _extract_time(query, entities, hints)
    _extract_person(query, entities, hints)
    _extract_locations(lowered, entities, hints)
    has_emotion = any(_contains(lowered, w) for w in EMOTION_WORDS)

    if entities:
        intent_type = "mixed"
    elif has_emotion:
        intent_type = "semantic"
    else:
        intent_type = "keyword"

    cleaned = query
    for start, end in sorted(spans, reverse=True):
        cleaned = cleaned[:start] + " " + cleaned[end:]

    return SearchIntent(
        type=intent_type,
        confidence=0.8 if entities else 0.5,
        entities=entities,
        refined_query=" ".join(extract_keywords(cleaned)),
        search_hints=hints,
        strategies=strategies_for(intent_type, entities),
        fallback_used=True,
    )


# ---------------------------------------------------------------------------
# LLM path
# ---------------------------------------------------------------------------

PROMPT_TEMPLATE = """Analyze this photo search query and extract structured information.

Query: "{query}"

Return JSON only, no other text:
{{
  "intent": "keyword|semantic|time|location|people|mixed",
  "confidence": 0.0-1.0,
  "entities": [
    {{"type": "person|time|location|event|object|emotion", "value": "...", "confidence": 0.0-1.0}}
  ],
  "strategy": ["keyword", "semantic", "people"],
  "refined_query": "query rewritten for search",
  "search_hints": [
    {{"type": "year|month|place|person|album|keyword", "value": "..."}}
  ],
  "reasoning": "one sentence"
}}"""

_JSON_RE = re.compile(r"\{[\s\S]*\}")


def _clamp01(value, default: float) -> float:
    try:
        return max(0.0, min(1.0, float(value)))
    except (TypeError, ValueError):
        return default


def parse_llm_response(query: str, text: str) -> SearchIntent:
    """Validate an LLM reply into a SearchIntent.

    Raises:
        ParseError: no JSON object, invalid JSON, an unknown intent type, or a
            field of the wrong shape.
    """
    m = _JSON_RE.search(text or "")
    if not m:
        raise ParseError("No JSON object in LLM response")
    try:
        data = json.loads(m.group(0))
    except json.JSONDecodeError as e:
        raise ParseError(f"Invalid JSON from LLM: {e}") from e
    if not isinstance(data, dict):
        raise ParseError("LLM JSON is not an object")

    intent_type = data.get("intent") or data.get("type") or "mixed"
    if not isinstance(intent_type, str) or intent_type not in INTENT_TYPES:
        raise ParseError(f"Unknown intent type: {intent_type!r}")

    raw_entities = data.get("entities") or []
    raw_hints = data.get("search_hints") or data.get("searchHints") or []
    strategy = data.get("strategy") or []
    if isinstance(strategy, str):
        strategy = [strategy]
    for name, value in (("entities", raw_entities), ("search_hints", raw_hints), ("strategy", strategy)):
        if not isinstance(value, list):
            raise ParseError(f"LLM field {name!r} must be a list, got {type(value).__name__}")

    entities = []
    for raw in raw_entities:
        if not isinstance(raw, dict):
            continue
        etype, value = raw.get("type"), str(raw.get("value") or "").strip()
        if etype in ENTITY_TYPES and value:
            entities.append(Entity(etype, value, _clamp01(raw.get("confidence"), 0.7)))

    hints = []
    for raw in raw_hints:
        if isinstance(raw, dict) and raw.get("type") in HINT_TYPES and raw.get("value"):
            hints.append(Hint(raw["type"], str(raw["value"])))
    # Time entities from the LLM become year hints so date filtering still applies.
    if not any(h.type in ("year", "year_from") for h in hints):
        for e in entities:
            if e.type == "time":
                for y in re.findall(r"(?<!\d)(?:19|20)\d{2}(?!\d)", e.value):
                    hints.append(Hint("year", y))

    strategies = [s for s in strategy if isinstance(s, str) and s in STRATEGIES]
    strategies = strategies or strategies_for(intent_type, entities)

    refined = data.get("refined_query") or data.get("refinedQuery") or query
    return SearchIntent(
        type=intent_type,
        confidence=_clamp01(data.get("confidence"), 0.5),
        entities=entities,
        refined_query=str(refined),
        search_hints=hints,
        strategies=strategies,
        fallback_used=False,
        reasoning=str(data.get("reasoning") or ""),
    )


# ---------------------------------------------------------------------------
# QueryIntentParser
# ---------------------------------------------------------------------------


class QueryIntentParser:
    def __init__(
        self,
        llm: ChatCompletionClient | None = None,
        llm_timeout: float = 1.0,
        cache_ttl: float = PARSE_CACHE_TTL,
        cache_size: int = PARSE_CACHE_SIZE,
        clock=time.monotonic,
    ):
        self._llm = llm
        self._llm_timeout = llm_timeout
        self._ttl = cache_ttl
        self._max_size = cache_size
        self._clock = clock
        self._cache: OrderedDict[str, tuple[float, SearchIntent]] = OrderedDict()
        self._cache_lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="llm-parse")

    def parse(self, query: str) -> SearchIntent:
        """Parse ``query``; never raises for LLM trouble."""
        key = query.strip()
        if not key:
            return SearchIntent(type="keyword", confidence=0.0, fallback_used=True,
                                strategies=["keyword"])

        cached = self._cache_get(key)
        if cached is not None:
            return cached

        intent = None
        if self._llm is not None and self._llm.configured:
            try:
                intent = self._parse_with_llm(key)
            except ParseError as e:
                logger.warning("LLM parse failed, using rules: %s", e)
        if intent is None:
            intent = parse_with_rules(key)

        self._cache_put(key, intent)
        return copy.deepcopy(intent)

    def _parse_with_llm(self, query: str) -> SearchIntent:
        future = self._executor.submit(self._llm.complete, PROMPT_TEMPLATE.format(query=query))
        try:
            text = future.result(timeout=self._llm_timeout)
        except FutureTimeout as e:
            future.cancel()
            raise ParseError(f"LLM did not answer within {self._llm_timeout}s") from e
        except ParseError:
            raise
        except Exception as e:
            raise ParseError(f"LLM call failed: {e}") from e
        try:
            return parse_llm_response(query, text)
        except ParseError:
            raise
        except Exception as e:
            raise ParseError(f"Unusable LLM response: {type(e).__name__}: {e}") from e

    # -- cache --

    def _cache_get(self, key: str) -> SearchIntent | None:
        with self._cache_lock:
            entry = self._cache.get(key)
            if entry is None:
                self._misses += 1
                return None
            stamp, intent = entry
            if self._clock() - stamp >= self._ttl:
                del self._cache[key]
                self._misses += 1
                return None
            self._cache.move_to_end(key)
            self._hits += 1
            return copy.deepcopy(intent)

    def _cache_put(self, key: str, intent: SearchIntent) -> None:
        with self._cache_lock:
            self._cache[key] = (self._clock(), copy.deepcopy(intent))
            self._cache.move_to_end(key)
            while len(self._cache) > self._max_size:
                self._cache.popitem(last=False)

    def clear_cache(self) -> None:
        with self._cache_lock:
            self._cache.clear()

    def cache_stats(self) -> dict:
        with self._cache_lock:
            return {
                "size": len(self._cache),
                "max_size": self._max_size,
                "hits": self._hits,
                "misses": self._misses,
            }

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
