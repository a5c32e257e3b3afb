"""Embedding providers: an Ollama-compatible HTTP API or a local sentence-transformers model."""

import json
import socket
import urllib.error
import urllib.request
from functools import lru_cache
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from sentence_transformers import SentenceTransformer

    from cc_logdb.config import Settings

DEFAULT_TIMEOUT = 60  # seconds per embed call
PING_TIMEOUT = 3


class EmbeddingError(RuntimeError):
    """The provider could not produce an embedding (network, status, body)."""


class DimensionMismatchError(ValueError):
    """The provider returned a vector of the wrong length."""


class Embedder(Protocol):
    dimension: int

    def embed(self, text: str) -> list[float]: ...

    def ping(self) -> bool: ...


def check_dimension(vector: list[float], dimension: int) -> list[float]:
    """Return the vector unchanged, or raise if its length is not `dimension`."""
    if len(vector) != dimension:
        raise DimensionMismatchError(
            f"embedding has {len(vector)} dimensions, expected {dimension}"
        )
    return vector


class OllamaEmbedder:
    """Client for an Ollama-style `/api/embed` endpoint."""

    def __init__(
        self,
        base_url: str,
        model: str,
        dimension: int,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.dimension = dimension
        self.timeout = timeout

    def embed(self, text: str) -> list[float]:
        """Embed one text.

        Raises EmbeddingError on any transport or response problem and
        DimensionMismatchError if the vector has the wrong length.
        """
        body = json.dumps({"model": self.model, "input": text}).encode("utf-8")
        request = urllib.request.Request(
            f"{self.base_url}/api/embed",
            data=body,
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self.timeout) as response:
                payload = response.read()
        except urllib.error.HTTPError as exc:
            raise EmbeddingError(f"embed request failed: HTTP {exc.code}") from exc
        except (urllib.error.URLError, socket.timeout, OSError) as exc:
            raise EmbeddingError(f"embed request failed: {exc}") from exc

        return check_dimension(_parse_embed_response(payload), self.dimension)

    def ping(self) -> bool:
        """True if anything answers HTTP at the base URL."""
        try:
            with urllib.request.urlopen(self.base_url, timeout=PING_TIMEOUT):
                return True
        except urllib.error.HTTPError:
            # The server answered, even if not with 200
            return True
        except (urllib.error.URLError, socket.timeout, OSError):
            return False


def _parse_embed_response(payload: bytes) -> list[float]:
    try:
        data: Any = json.loads(payload)
        vector = data["embeddings"][0]
    except (ValueError, KeyError, IndexError, TypeError) as exc:
        raise EmbeddingError("malformed embed response") from exc
    if not isinstance(vector, list) or not all(
        isinstance(v, (int, float)) and not isinstance(v, bool) for v in vector
    ):
        raise EmbeddingError("malformed embed response: embedding is not a list of numbers")
    return [float(v) for v in vector]


@lru_cache(maxsize=1)
def get_model(model_name: str) -> "SentenceTransformer":
    """Get the sentence transformer model (cached)."""
    # Lazy import to avoid loading torch unless the local provider is used
    from sentence_transformers import SentenceTransformer

    return SentenceTransformer(model_name)


class LocalEmbedder:
    """In-process embeddings with sentence-transformers."""

    def __init__(self, model: str, dimension: int) -> None:
        self.model = model
        self.dimension = dimension

    def embed(self, text: str) -> list[float]:
        try:
            embedding = get_model(self.model).encode(text, convert_to_numpy=True)
        except (OSError, RuntimeError) as exc:
            raise EmbeddingError(f"local embedding failed: {exc}") from exc
        return check_dimension(embedding.tolist(), self.dimension)

    def ping(self) -> bool:
        """True if the model can be loaded."""
        try:
            get_model(self.model)
        except (ImportError, OSError):
            return False
        return True


def create_embedder(settings: "Settings") -> Embedder:
    """Build the embedder selected by the configuration."""
    if settings.embed_provider == "local":
        return LocalEmbedder(settings.embed_model, settings.embed_dim)
    return OllamaEmbedder(
        settings.ollama_url,
        settings.embed_model,
        settings.embed_dim,
        timeout=settings.embed_timeout,
    )
