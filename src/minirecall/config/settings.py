from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from minirecall.domain import constants as C


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_float01(name: str, default: float) -> float:
    return max(0.0, min(1.0, float(os.getenv(name, str(default)))))


def _env_csv(name: str, default: frozenset[str]) -> frozenset[str]:
    raw = os.getenv(name)
    if raw is None:
        return default
    return frozenset(x.strip().lower() for x in raw.split(",") if x.strip())


def _default_data_dir() -> Path:
    if os.name == "nt":
        base = os.getenv("LOCALAPPDATA")
        if base:
            return Path(base) / "MiniRecall"
        return Path.home() / "AppData" / "Local" / "MiniRecall"
    xdg = os.getenv("XDG_DATA_HOME")
    if xdg:
        return Path(xdg) / "minirecall"
    return Path.home() / ".local" / "share" / "minirecall"


@dataclass(frozen=True)
class RecallSettings:
    app_name: str
    data_dir: Path
    db_path: Path
    lancedb_dir: Path
    log_level: str
    embedding_provider: str
    embedding_base_url: str
    embedding_api_key: str
    embedding_model: str
    embedding_dim: int
    embedding_send_input_type: bool
    vector_lancedb_enabled: bool
    vector_index_type: str
    vector_index_metric: str
    vector_index_min_rows: int
    document_top_k: int
    keyword_top_k: int
    rrf_k: int
    keyword_match_mode: str
    keyword_min_token_chars: int
    passage_dedup_threshold: float
    memory_dedup_threshold: float
    passage_max_age_days: int
    passage_min_chars: int
    allowed_file_types: frozenset[str]
    max_total_tokens: int
    max_items: int
    max_per_source: int
    max_item_tokens: int
    memory_min_confidence: float
    memory_candidate_pool: int
    chunk_max_tokens: int
    chunk_overlap_tokens: int
    chunk_max_chunks: int
    query_embed_cache_size: int
    query_embed_cache_ttl_sec: int
    search_trace_enabled: bool
    search_trace_slow_ms: int

    @classmethod
    def from_env(cls) -> "RecallSettings":
        data_dir_raw = os.getenv("RECALL_DATA_DIR")
        if not data_dir_raw:
            data_dir_raw = str(_default_data_dir())
        data_dir = Path(data_dir_raw).resolve()
        db_path = Path(os.getenv("RECALL_DB_PATH", str(data_dir / "recall.db"))).resolve()
        lancedb_dir = Path(
            os.getenv("RECALL_LANCEDB_DIR", str(data_dir / "lancedb"))
        ).resolve()
        match_mode = os.getenv("RECALL_KEYWORD_MATCH_MODE", "or").strip().lower()
        return cls(
            app_name=os.getenv("RECALL_APP_NAME", "MiniRecall"),
            data_dir=data_dir,
            db_path=db_path,
            lancedb_dir=lancedb_dir,
            log_level=os.getenv("RECALL_LOG_LEVEL", "INFO").strip().upper() or "INFO",
            embedding_provider=os.getenv("RECALL_EMBEDDING_PROVIDER", "openai")
            .strip()
            .lower(),
            embedding_base_url=os.getenv(
                "RECALL_EMBEDDING_BASE_URL", "https://api.voyageai.com/v1/embeddings"
            ),
            embedding_api_key=os.getenv("RECALL_EMBEDDING_API_KEY", ""),
            embedding_model=os.getenv("RECALL_EMBEDDING_MODEL", "voyage-3.5-lite"),
            embedding_dim=max(8, int(os.getenv("RECALL_EMBEDDING_DIM", "1024"))),
            embedding_send_input_type=_env_bool(
                "RECALL_EMBEDDING_SEND_INPUT_TYPE", True
            ),
            vector_lancedb_enabled=_env_bool("RECALL_VECTOR_LANCEDB_ENABLED", True),
            vector_index_type=str(
                os.getenv("RECALL_VECTOR_INDEX_TYPE", "IVF_HNSW_SQ")
            ).strip()
            or "IVF_HNSW_SQ",
            vector_index_metric=str(
                os.getenv("RECALL_VECTOR_INDEX_METRIC", "cosine")
            ).strip()
            or "cosine",
            vector_index_min_rows=max(
                16, int(os.getenv("RECALL_VECTOR_INDEX_MIN_ROWS", "256"))
            ),
            document_top_k=max(
                1, int(os.getenv("RECALL_DOCUMENT_TOP_K", str(C.SEARCH_TOP_K)))
            ),
            keyword_top_k=max(
                1, int(os.getenv("RECALL_KEYWORD_TOP_K", str(C.SEARCH_TOP_K)))
            ),
            rrf_k=max(1, int(os.getenv("RECALL_RRF_K", str(C.RRF_K)))),
            keyword_match_mode=match_mode if match_mode in {"or", "and"} else "or",
            keyword_min_token_chars=max(
                1,
                int(
                    os.getenv(
                        "RECALL_KEYWORD_MIN_TOKEN_CHARS", str(C.KEYWORD_MIN_TOKEN_CHARS)
                    )
                ),
            ),
            passage_dedup_threshold=_env_float01(
                "RECALL_PASSAGE_DEDUP_THRESHOLD", C.PASSAGE_DEDUP_THRESHOLD
            ),
            memory_dedup_threshold=_env_float01(
                "RECALL_MEMORY_DEDUP_THRESHOLD", C.MEMORY_DEDUP_THRESHOLD
            ),
            passage_max_age_days=max(
                1,
                int(
                    os.getenv("RECALL_PASSAGE_MAX_AGE_DAYS", str(C.PASSAGE_MAX_AGE_DAYS))
                ),
            ),
            passage_min_chars=max(
                0, int(os.getenv("RECALL_PASSAGE_MIN_CHARS", str(C.PASSAGE_MIN_CHARS)))
            ),
            allowed_file_types=_env_csv(
                "RECALL_ALLOWED_FILE_TYPES", C.ALLOWED_FILE_TYPES
            ),
            max_total_tokens=max(
                1,
                int(
                    os.getenv(
                        "RECALL_MAX_TOTAL_TOKENS", str(C.DEFAULT_MAX_TOTAL_TOKENS)
                    )
                ),
            ),
            max_items=max(1, int(os.getenv("RECALL_MAX_ITEMS", str(C.DEFAULT_MAX_ITEMS)))),
            max_per_source=max(
                1,
                int(os.getenv("RECALL_MAX_PER_SOURCE", str(C.DEFAULT_MAX_PER_SOURCE))),
            ),
            max_item_tokens=max(
                1,
                int(os.getenv("RECALL_MAX_ITEM_TOKENS", str(C.DEFAULT_MAX_ITEM_TOKENS))),
            ),
            memory_min_confidence=_env_float01(
                "RECALL_MEMORY_MIN_CONFIDENCE", C.MEMORY_MIN_CONFIDENCE
            ),
            memory_candidate_pool=max(
                1,
                int(
                    os.getenv(
                        "RECALL_MEMORY_CANDIDATE_POOL", str(C.MEMORY_CANDIDATE_POOL)
                    )
                ),
            ),
            chunk_max_tokens=max(
                50, int(os.getenv("RECALL_CHUNK_MAX_TOKENS", str(C.CHUNK_MAX_TOKENS)))
            ),
            chunk_overlap_tokens=max(
                0,
                int(
                    os.getenv("RECALL_CHUNK_OVERLAP_TOKENS", str(C.CHUNK_OVERLAP_TOKENS))
                ),
            ),
            chunk_max_chunks=max(
                1, int(os.getenv("RECALL_CHUNK_MAX_CHUNKS", str(C.CHUNK_MAX_CHUNKS)))
            ),
            query_embed_cache_size=max(
                32, int(os.getenv("RECALL_QUERY_EMBED_CACHE_SIZE", "256"))
            ),
            query_embed_cache_ttl_sec=max(
                30, int(os.getenv("RECALL_QUERY_EMBED_CACHE_TTL_SEC", "900"))
            ),
            search_trace_enabled=_env_bool("RECALL_SEARCH_TRACE_ENABLED", False),
            search_trace_slow_ms=max(
                0, int(os.getenv("RECALL_SEARCH_TRACE_SLOW_MS", "0"))
            ),
        )
