from __future__ import annotations

import json
import logging
from urllib import error, request

from minirecall.domain.errors import EmbeddingError
from minirecall.service.embedding import (
    EmbedMode,
    EmbeddingProviderProtocol,
    HashEmbeddingProvider,
    l2_normalize,
)

logger = logging.getLogger(__name__)


class OpenAIEmbeddingProvider:
    """Client for OpenAI-compatible ``/embeddings`` endpoints (OpenAI, Voyage)."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        model: str,
        *,
        dim: int = 1024,
        send_input_type: bool = True,
        timeout_sec: float = 45.0,
    ) -> None:
        self.base_url = base_url
        self.api_key = api_key
        self.model = model
        self.dim = int(dim)
        self.send_input_type = bool(send_input_type)
        self.timeout_sec = float(timeout_sec)

    def embed(self, text: str, mode: EmbedMode = "document") -> list[float]:
        base_url = self.base_url.strip()
        api_key = self.api_key.strip()
        model = self.model.strip()
        if not base_url:
            raise EmbeddingError("embedding base_url is required")
        if not api_key:
            raise EmbeddingError("embedding api_key is required")
        if not model:
            raise EmbeddingError("embedding model is required")
        payload = {
            "model": model,
            "input": text,
            "encoding_format": "float",
        }
        if self.send_input_type:
            payload["input_type"] = "query" if mode == "query" else "document"
        req = request.Request(
            url=self._build_embeddings_url(base_url),
            data=json.dumps(payload, ensure_ascii=False).encode("utf-8"),
            headers={
                "Content-Type": "application/json",
                "Authorization": f"Bearer {api_key}",
            },
            method="POST",
        )
        try:
            with request.urlopen(req, timeout=self.timeout_sec) as resp:
                raw = resp.read().decode("utf-8")
        except error.HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="ignore")
            raise EmbeddingError(f"embedding HTTP {exc.code}: {detail[:260]}") from exc
        except (error.URLError, OSError) as exc:
            raise EmbeddingError(f"embedding request failed: {exc}") from exc
        return self._parse_response(raw)

    def _parse_response(self, raw: str) -> list[float]:
        try:
            body = json.loads(raw)
            vec = body.get("data", [{}])[0].get("embedding")
        except (ValueError, AttributeError, IndexError, TypeError) as exc:
            raise EmbeddingError(f"invalid embedding response: {raw[:260]}") from exc
        if not isinstance(vec, list) or not vec:
            raise EmbeddingError("missing embedding in response")
        try:
            out = [float(item) for item in vec]
        except (TypeError, ValueError) as exc:
            raise EmbeddingError("non-numeric embedding in response") from exc
        if len(out) != self.dim:
            logger.warning(
                "embedding model %s returned dim %d, expected %d",
                self.model,
                len(out),
                self.dim,
            )
        return l2_normalize(out)

    def _build_embeddings_url(self, base_url: str) -> str:
        base = base_url.strip().rstrip("/")
        if base.endswith("/embeddings"):
            return base
        return f"{base}/embeddings"


def build_embedding_provider(settings) -> EmbeddingProviderProtocol:
    provider = str(settings.embedding_provider or "").strip().lower()
    if provider == "hash":
        return HashEmbeddingProvider(dim=settings.embedding_dim)
    if provider not in {"openai", "voyage"}:
        logger.warning("unknown embedding provider %r, using openai client", provider)
    return OpenAIEmbeddingProvider(
        base_url=settings.embedding_base_url,
        api_key=settings.embedding_api_key,
        model=settings.embedding_model,
        dim=settings.embedding_dim,
        send_input_type=settings.embedding_send_input_type,
    )
