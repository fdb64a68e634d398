from __future__ import annotations


class RetrievalError(Exception):
    """Base class for failures raised by the retrieval core."""

    kind = "retrieval_error"


class EmbeddingError(RetrievalError):
    kind = "embedding_error"


class StoreQueryError(RetrievalError):
    kind = "store_query_error"


class ValidationError(RetrievalError, ValueError):
    """Malformed caller input, rejected before any I/O."""

    kind = "validation_error"


def require_owner(owner_id: str | None) -> str:
    value = str(owner_id or "").strip()
    if not value:
        raise ValidationError("owner_id must not be empty")
    return value
