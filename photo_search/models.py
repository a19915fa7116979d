"""Embedding providers: turn text queries and image files into vectors.

The engine only sees ``EmbeddingProvider``. Two implementations ship:
``HttpEmbeddingProvider`` talks to a model server, ``OpenCLIPProvider`` runs
an open_clip model in-process (optional ``local`` extra).
"""

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path

import httpx
import numpy as np

from config import EMBED_TIMEOUT, EMBED_URL
from errors import DecodeError, ModelUnavailable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EmbeddingVector:
    vector: np.ndarray
    dimension: int

    @classmethod
    def of(cls, values) -> "EmbeddingVector":
        v = np.asarray(values, dtype=np.float32).reshape(-1)
        return cls(vector=v, dimension=int(v.shape[0]))


class EmbeddingProvider(ABC):
    """Base interface for embedding backends.

    Implementations raise ``ModelUnavailable`` when the model cannot serve
    and ``DecodeError`` when one input cannot be decoded.
    """

    name: str = "provider"

    @abstractmethod
    def text_to_embedding(self, text: str) -> EmbeddingVector:
        """Encode a text query."""

    @abstractmethod
    def image_to_embedding(self, path: str) -> EmbeddingVector:
        """Encode an image file."""

    def close(self) -> None:
        pass


# ---------------------------------------------------------------------------
# HTTP model server
# ---------------------------------------------------------------------------


class HttpEmbeddingProvider(EmbeddingProvider):
    """Client for a model server exposing ``POST /embed/text`` and ``POST /embed/image``.

    Both endpoints return ``{"embedding": [float, ...]}``.
    """

    name = "http"

    def __init__(self, base_url: str | None = None, timeout: float = EMBED_TIMEOUT):
        self._base_url = base_url or EMBED_URL
        self._http = httpx.Client(base_url=self._base_url, timeout=timeout)

    def _post(self, path: str, body: dict) -> EmbeddingVector:
        try:
            resp = self._http.post(path, json=body)
        except httpx.TransportError as e:
            raise ModelUnavailable(f"Model server unreachable at {self._base_url}: {e}") from e

        if 400 <= resp.status_code < 500:
            raise DecodeError(resp.text or f"HTTP {resp.status_code}")
        if not resp.is_success:
            raise ModelUnavailable(f"Model server error {resp.status_code}: {resp.text}")

        try:
            values = resp.json()["embedding"]
        except (ValueError, KeyError, TypeError) as e:
            raise ModelUnavailable(f"Malformed model server response: {e}") from e
        emb = EmbeddingVector.of(values)
        if emb.dimension == 0:
            raise DecodeError("Model server returned an empty embedding")
        return emb

    def text_to_embedding(self, text: str) -> EmbeddingVector:
        if not text.strip():
            raise DecodeError("Empty text")
        return self._post("/embed/text", {"text": text})

    def image_to_embedding(self, path: str) -> EmbeddingVector:
        if not Path(path).is_file():
            raise DecodeError(f"Image not found: {path}")
        return self._post("/embed/image", {"path": str(Path(path).resolve())})

    def close(self) -> None:
        self._http.close()


# ---------------------------------------------------------------------------
# In-process open_clip
# ---------------------------------------------------------------------------


def get_device():
    import torch

    if torch.cuda.is_available():
        return torch.device("cuda")
    if torch.backends.mps.is_available():
        return torch.device("mps")
    return torch.device("cpu")


class OpenCLIPProvider(EmbeddingProvider):
    """CLIP and SigLIP models via the open_clip library, loaded on first use."""

    def __init__(self, name: str = "clip-vit-b-16", model_name: str = "ViT-B-16", pretrained: str = "openai"):
        self.name = name
        self._model_name = model_name
        self._pretrained = pretrained
        self._model = None
        self._preprocess = None
        self._tokenizer = None
        self._device = None
        self._load_lock = threading.Lock()

    @property
    def loaded(self) -> bool:
        return self._model is not None

    def load(self) -> None:
        with self._load_lock:
            if self._model is not None:
                return
            try:
                import open_clip
            except ImportError as e:
                raise ModelUnavailable("open_clip is not installed (install the 'local' extra)") from e

            self._device = get_device()
            logger.info("Loading %s (%s) on %s", self.name, self._model_name, self._device)
            model, _, preprocess = open_clip.create_model_and_transforms(
                self._model_name, pretrained=self._pretrained or None
            )
            self._tokenizer = open_clip.get_tokenizer(self._model_name)
            self._preprocess = preprocess
            self._model = model.to(self._device)
            self._model.eval()
            logger.info("Loaded %s", self.name)

    def text_to_embedding(self, text: str) -> EmbeddingVector:
        self.load()
        import torch

        tokens = self._tokenizer([text]).to(self._device)
        with torch.no_grad():
            features = self._model.encode_text(tokens)
            features /= features.norm(dim=-1, keepdim=True)
        return EmbeddingVector.of(features[0].cpu().numpy())

    def image_to_embedding(self, path: str) -> EmbeddingVector:
        self.load()
        import torch
        from PIL import Image, UnidentifiedImageError

        try:
            with Image.open(path) as img:
                tensor = self._preprocess(img.convert("RGB")).unsqueeze(0).to(self._device)
        except (OSError, UnidentifiedImageError) as e:
            raise DecodeError(f"Cannot decode {path}: {e}") from e
        with torch.no_grad():
            features = self._model.encode_image(tensor)
            features /= features.norm(dim=-1, keepdim=True)
        return EmbeddingVector.of(features[0].cpu().numpy())
