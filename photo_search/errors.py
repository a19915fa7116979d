"""Error taxonomy for the search engine.

Per-item failures are absorbed by the engine and the pipeline; these types
exist so each layer can tell what kind of failure it is absorbing.
"""


class ParseError(Exception):
    """LLM call or JSON validation failed. Always recovered via rule fallback."""


class EmbeddingError(Exception):
    """The embedding provider could not produce a vector for one item."""


class ModelUnavailable(EmbeddingError):
    """Model server unreachable, not loaded, or returned a server error."""


class DecodeError(EmbeddingError):
    """The input (image file or text) could not be decoded by the model."""


class IndexCorruption(Exception):
    """A stored vector could not be decoded. Skipped, never fatal."""


class StrategyTimeout(Exception):
    """A search strategy exceeded its deadline."""


class QueueExhausted(Exception):
    """A queue task used up its retries and is now terminal."""

    def __init__(self, photo_id: str, retries: int, error: str):
        super().__init__(f"{photo_id}: gave up after {retries} retries ({error})")
        self.photo_id = photo_id
        self.retries = retries
        self.error = error


class ClusteringBusy(RuntimeError):
    """Another clustering pass holds the clusterer."""
