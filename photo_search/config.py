import json
import logging
import os
import re
from dataclasses import dataclass, field, fields
from pathlib import Path

logger = logging.getLogger(__name__)

CACHE_DIR = Path(
    os.environ.get("PHOTO_SEARCH_CACHE_DIR", Path.home() / ".cache" / "photo-search")
).resolve()

CONFIG_FILE = CACHE_DIR / "config.json"
LIBRARY_DB = CACHE_DIR / "library.db"

DEFAULT_TOP_K = 20
DEFAULT_MODEL_VERSION = "clip-vit-b-16"

# -- embedding provider --

EMBED_URL = os.environ.get("PHOTO_SEARCH_EMBED_URL", "http://127.0.0.1:7821")
EMBED_TIMEOUT = 30.0

# -- query parsing --

LLM_BASE_URL = os.environ.get("PHOTO_SEARCH_LLM_BASE_URL", "")
LLM_API_KEY = os.environ.get("PHOTO_SEARCH_LLM_API_KEY", "")
LLM_MODEL = os.environ.get("PHOTO_SEARCH_LLM_MODEL", "deepseek-chat")
PARSE_CACHE_TTL = 5 * 60  # seconds
PARSE_CACHE_SIZE = 500

# -- fusion --

DEFAULT_FUSION_WEIGHTS = {"people": 1.0, "semantic": 0.8, "keyword": 0.6}

# -- service daemon --

SERVICE_PORT = int(os.environ.get("PHOTO_SEARCH_PORT", "7830"))
SERVICE_HOST = "127.0.0.1"
SERVICE_PID_FILE = Path("/tmp/mcp-tools/photo-search.pid")
SERVICE_STARTUP_TIMEOUT = 60  # seconds to wait for health check


# ---------------------------------------------------------------------------
# EngineConfig
# ---------------------------------------------------------------------------


@dataclass
class EngineConfig:
    max_concurrent: int = 2
    max_retries: int = 3
    auto_match_threshold: float = 0.85
    suggest_threshold: float = 0.6
    cluster_threshold: float = 0.7
    num_probes: int = 3
    index_size_threshold: int = 1000
    num_clusters: int | None = None
    fusion_weights: dict[str, float] = field(
        default_factory=lambda: dict(DEFAULT_FUSION_WEIGHTS)
    )
    dedup_strategy: str = "highest-score"
    fusion_policy: str = "weighted"
    min_score: float = 0.0
    strategy_timeout: float = 5.0
    llm_timeout: float = 1.0
    cluster_lock_timeout: float = 10.0
    model_version: str = DEFAULT_MODEL_VERSION
    embedding_provider: str = "http"  # or "local" for in-process open_clip

    def __post_init__(self):
        if self.max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if not 0.0 <= self.suggest_threshold <= self.auto_match_threshold <= 1.0:
            raise ValueError(
                "Thresholds must satisfy 0 <= suggest_threshold <= auto_match_threshold <= 1"
            )
        if self.dedup_strategy not in ("highest-score", "first-wins", "average"):
            raise ValueError(f"Unknown dedup_strategy: {self.dedup_strategy}")
        if self.fusion_policy not in ("weighted", "rrf"):
            raise ValueError(f"Unknown fusion_policy: {self.fusion_policy}")
        if self.embedding_provider not in ("http", "local"):
            raise ValueError(f"Unknown embedding_provider: {self.embedding_provider}")

    @classmethod
    def from_dict(cls, data: dict) -> "EngineConfig":
        """Build a config from snake_case or camelCase keys. Unknown keys are ignored."""
        known = {f.name for f in fields(cls)}
        kwargs = {}
        for key, value in data.items():
            name = to_snake(key)
            if name not in known:
                logger.warning("Ignoring unknown config key: %s", key)
                continue
            kwargs[name] = value
        if "fusion_weights" in kwargs:
            merged = dict(DEFAULT_FUSION_WEIGHTS)
            merged.update(kwargs["fusion_weights"])
            kwargs["fusion_weights"] = merged
        return cls(**kwargs)

    @classmethod
    def load(cls, path: Path | None = None) -> "EngineConfig":
        path = path or CONFIG_FILE
        if not path.exists():
            return cls()
        try:
            data = json.loads(path.read_text())
            if not isinstance(data, dict):
                raise ValueError("config root must be an object")
            return cls.from_dict(data)
        except (json.JSONDecodeError, ValueError, TypeError):
            logger.warning("Corrupt %s -- using defaults", path.name)
            return cls()


_CAMEL_RE = re.compile(r"(?<!^)(?=[A-Z])")


def to_snake(key: str) -> str:
    return _CAMEL_RE.sub("_", key).lower()
