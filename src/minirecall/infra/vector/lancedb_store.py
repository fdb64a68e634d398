from __future__ import annotations

import heapq
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from threading import Lock
from typing import Any

import lancedb

from minirecall.domain.errors import StoreQueryError, require_owner
from minirecall.domain.models import TemporalRange
from minirecall.domain.retrieval.dedup import cosine_similarity
from minirecall.domain.retrieval.temporal import current_year, range_includes_year

logger = logging.getLogger(__name__)

# Null years are stored as -1 so LanceDB can infer an integer column.
_NULL_YEAR = -1


@dataclass(frozen=True)
class VectorFilter:
    owner_id: str
    kinds: tuple[str, ...] | None = None
    min_confidence: float | None = None
    query_year: int | None = None
    now_year: int | None = None
    document_id: str | None = None

    def matches(self, meta: dict[str, Any]) -> bool:
        if meta.get("owner_id") != self.owner_id:
            return False
        if self.document_id is not None and meta.get("document_id") != self.document_id:
            return False
        if self.kinds is not None and meta.get("kind") not in self.kinds:
            return False
        if self.min_confidence is not None:
            try:
                if float(meta.get("confidence", 0.0)) < self.min_confidence:
                    return False
            except (TypeError, ValueError):
                return False
        if self.query_year is not None:
            span = TemporalRange(
                start_year=_from_stored_year(meta.get("start_year")),
                end_year=_from_stored_year(meta.get("end_year")),
            )
            if not range_includes_year(span, self.query_year, now_year=self.now_year):
                return False
        return True

    def to_sql(self) -> str:
        clauses = [f"owner_id = '{_quote_sql(self.owner_id)}'"]
        if self.document_id is not None:
            clauses.append(f"document_id = '{_quote_sql(self.document_id)}'")
        if self.kinds is not None:
            if not self.kinds:
                clauses.append("kind = ''")
            else:
                values = ", ".join(f"'{_quote_sql(k)}'" for k in self.kinds)
                clauses.append(f"kind IN ({values})")
        if self.min_confidence is not None:
            clauses.append(f"confidence >= {float(self.min_confidence)}")
        if self.query_year is not None:
            year = int(self.query_year)
            now = int(self.now_year or current_year())
            clauses.append(
                f"start_year >= 0 AND start_year <= {year} AND "
                f"(end_year >= {year} OR (end_year < 0 AND {year} <= {now}))"
            )
        return " AND ".join(clauses)


class LanceVectorStore:
    COMPACT_MIN_OPS = 200
    INDEX_REBUILD_EVERY = 128
    SUPPORTED_INDEX_TYPES = {
        "IVF_FLAT",
        "IVF_SQ",
        "IVF_PQ",
        "IVF_HNSW_SQ",
        "IVF_HNSW_PQ",
    }

    def __init__(
        self,
        db_dir: Path,
        vector_dim: int,
        *,
        table_name: str = "passage_vectors",
        use_lancedb: bool = True,
        index_type: str = "IVF_HNSW_SQ",
        index_metric: str = "cosine",
        index_min_rows: int = 256,
    ) -> None:
        self.db_dir = Path(db_dir)
        self.db_dir.mkdir(parents=True, exist_ok=True)
        self.vector_dim = int(vector_dim)
        self.table_name = str(table_name)
        self.lance_enabled = False
        self._rows: dict[str, dict[str, Any]] = {}
        self._lock = Lock()
        self._snapshot_path = self.db_dir / f"{self.table_name}.snapshot.json"
        self._log_path = self.db_dir / f"{self.table_name}.log.jsonl"
        self._log_ops = 0
        self._use_lancedb = bool(use_lancedb)
        index_key = str(index_type or "IVF_HNSW_SQ").strip().upper()
        self._index_type = (
            index_key if index_key in self.SUPPORTED_INDEX_TYPES else "IVF_HNSW_SQ"
        )
        self._index_metric = str(index_metric or "cosine").strip().lower() or "cosine"
        self._index_min_rows = max(16, int(index_min_rows))
        self._index_rebuild_pending = 0
        self._lance_db = None
        self._lance_table = None
        self._init_lance()
        self._load_from_disk()
        self._promote_local_rows_to_lance()

    def upsert(self, row_id: str, vector: list[float], metadata: dict[str, Any]) -> None:
        self.upsert_many([(row_id, vector, metadata)])

    def upsert_many(
        self, items: list[tuple[str, list[float], dict[str, Any]]]
    ) -> None:
        rows = []
        for row_id, vector, metadata in items:
            row = self._normalize_row(
                {"id": row_id, "vector": list(vector), "metadata": dict(metadata)}
            )
            if row is None:
                raise StoreQueryError(
                    f"vector row {row_id!r} rejected: expected dim {self.vector_dim}"
                )
            require_owner(row["metadata"].get("owner_id"))
            rows.append(row)
        if not rows:
            return
        with self._lock:
            if self.lance_enabled:
                self._upsert_lancedb_locked(rows)
                return
            for row in rows:
                self._rows[row["id"]] = row
                self._append_log_locked({"op": "upsert", "row": row})
            if self._should_compact_locked():
                self._compact_locked()

    def delete(self, row_ids: list[str]) -> None:
        ids = [str(x) for x in row_ids if str(x).strip()]
        if not ids:
            return
        with self._lock:
            if self.lance_enabled and self._lance_table is not None:
                values = ", ".join(f"'{_quote_sql(x)}'" for x in ids)
                try:
                    self._lance_table.delete(f"id IN ({values})")
                except Exception as exc:
                    raise StoreQueryError(f"lancedb delete failed: {exc}") from exc
            for row_id in ids:
                if self._rows.pop(row_id, None) is not None:
                    self._append_log_locked({"op": "delete", "id": row_id})

    def delete_by_document(self, *, owner_id: str, document_id: str) -> None:
        where = VectorFilter(owner_id=require_owner(owner_id), document_id=document_id)
        with self._lock:
            if self.lance_enabled and self._lance_table is not None:
                try:
                    self._lance_table.delete(where.to_sql())
                except Exception as exc:
                    raise StoreQueryError(f"lancedb delete failed: {exc}") from exc
            for row_id, row in list(self._rows.items()):
                if where.matches(row["metadata"]):
                    self._rows.pop(row_id, None)
                    self._append_log_locked({"op": "delete", "id": row_id})

    def search(
        self, *, vector: list[float], top_k: int, where: VectorFilter
    ) -> list[dict[str, Any]]:
        """Nearest rows for one owner, ascending cosine distance."""
        require_owner(where.owner_id)
        with self._lock:
            rows = list(self._rows.values())
            lance_table = self._lance_table if self.lance_enabled else None
        if lance_table is not None:
            return self._search_lancedb(
                table=lance_table, vector=vector, top_k=top_k, where=where
            )
        if self.lance_enabled:
            return []
        return self._search_local(rows=rows, vector=vector, top_k=top_k, where=where)

    def _search_local(
        self,
        *,
        rows: list[dict[str, Any]],
        vector: list[float],
        top_k: int,
        where: VectorFilter,
    ) -> list[dict[str, Any]]:
        limit = max(1, int(top_k))
        heap: list[tuple[float, str, dict[str, Any]]] = []
        for row in rows:
            if not where.matches(row["metadata"]):
                continue
            sim = cosine_similarity(vector, row["vector"])
            item = {
                "id": row["id"],
                "distance": float(max(0.0, 1.0 - sim)),
                "score": float(sim),
                "source": "vector_local",
            }
            entry = (float(sim), row["id"], item)
            if len(heap) < limit:
                heapq.heappush(heap, entry)
            else:
                heapq.heappushpop(heap, entry)
        out = [entry[2] for entry in heap]
        out.sort(key=lambda x: (float(x["distance"]), str(x["id"])))
        return out

    def _search_lancedb(
        self, *, table: Any, vector: list[float], top_k: int, where: VectorFilter
    ) -> list[dict[str, Any]]:
        try:
            query = table.search(vector)
            if hasattr(query, "distance_type"):
                query = query.distance_type(self._index_metric)
            elif hasattr(query, "metric"):
                query = query.metric(self._index_metric)
            query = query.where(where.to_sql(), prefilter=True)
            rows = query.limit(max(1, int(top_k))).to_list()
        except Exception as exc:
            raise StoreQueryError(f"lancedb search failed: {exc}") from exc
        out: list[dict[str, Any]] = []
        for row in rows:
            if not isinstance(row, dict):
                continue
            row_id = str(row.get("id", "")).strip()
            if not row_id or row.get("owner_id") != where.owner_id:
                continue
            raw_distance = row.get("_distance")
            try:
                distance = float(raw_distance) if raw_distance is not None else 1.0
            except (TypeError, ValueError):
                distance = 1.0
            out.append(
                {
                    "id": row_id,
                    "distance": float(max(0.0, distance)),
                    "score": float(max(0.0, 1.0 - distance)),
                    "source": "vector_lancedb",
                }
            )
        out.sort(key=lambda x: (float(x["distance"]), str(x["id"])))
        return out

    def _init_lance(self) -> None:
        if not self._use_lancedb:
            self.lance_enabled = False
            return
        try:
            self._lance_db = lancedb.connect(str(self.db_dir))
            if hasattr(self._lance_db, "list_tables"):
                listed = self._lance_db.list_tables()
                table_names = getattr(listed, "tables", None)
                if isinstance(table_names, list):
                    names = {str(x) for x in table_names}
                elif isinstance(listed, dict):
                    names = {str(x) for x in listed.get("tables", [])}
                else:
                    names = {str(x) for x in listed}
            else:
                names = set(str(x) for x in self._lance_db.table_names())
            if self.table_name in names:
                self._lance_table = self._lance_db.open_table(self.table_name)
            else:
                self._lance_table = None
            self.lance_enabled = True
        except Exception as exc:
            logger.warning("lancedb unavailable at %s, using local rows: %s", self.db_dir, exc)
            self.lance_enabled = False
            self._lance_db = None
            self._lance_table = None

    def _upsert_lancedb_locked(self, rows: list[dict[str, Any]]) -> None:
        data = [self._to_lancedb_row(row) for row in rows]
        try:
            if self._lance_table is None:
                self._lance_table = self._lance_db.create_table(self.table_name, data=data)
            else:
                (
                    self._lance_table.merge_insert("id")
                    .when_matched_update_all()
                    .when_not_matched_insert_all()
                    .execute(data)
                )
        except Exception as exc:
            raise StoreQueryError(f"lancedb upsert failed: {exc}") from exc
        self._index_rebuild_pending += len(data)
        if self._index_rebuild_pending >= self.INDEX_REBUILD_EVERY:
            self._ensure_lance_index_locked()
            self._index_rebuild_pending = 0

    def _ensure_lance_index_locked(self) -> None:
        if self._lance_table is None:
            return
        try:
            if self._lance_table.count_rows() < self._index_min_rows:
                return
            self._lance_table.create_index(
                metric=self._index_metric,
                index_type=self._index_type,
                vector_column_name="vector",
                replace=True,
            )
        except Exception as exc:
            # Flat search still works without the ANN index.
            logger.warning("lancedb index build failed for %s: %s", self.table_name, exc)

    def _promote_local_rows_to_lance(self) -> None:
        if not self.lance_enabled:
            return
        with self._lock:
            if not self._rows:
                return
            rows = list(self._rows.values())
            try:
                self._upsert_lancedb_locked(rows)
            except StoreQueryError as exc:
                logger.warning("could not promote local vector rows: %s", exc)
                return
            self._rows = {}
            self._compact_locked()
            self._ensure_lance_index_locked()

    def _load_from_disk(self) -> None:
        try:
            if self._snapshot_path.exists():
                self._load_snapshot()
            if self._log_path.exists():
                self._replay_log()
        except (OSError, ValueError) as exc:
            logger.warning("discarding unreadable vector snapshot %s: %s", self._snapshot_path, exc)
            self._rows = {}
            self._log_ops = 0

    def _load_snapshot(self) -> None:
        raw = self._snapshot_path.read_text(encoding="utf-8")
        payload = json.loads(raw)
        if not isinstance(payload, dict):
            return
        items = payload.get("rows")
        if not isinstance(items, list):
            return
        restored: dict[str, dict[str, Any]] = {}
        for item in items:
            row = self._normalize_row(item)
            if not row:
                continue
            restored[str(row["id"])] = row
        self._rows = restored

    def _replay_log(self) -> None:
        ops = 0
        with self._log_path.open("r", encoding="utf-8") as fh:
            for line in fh:
                text = line.strip()
                if not text:
                    continue
                try:
                    evt = json.loads(text)
                except ValueError:
                    continue
                if not isinstance(evt, dict):
                    continue
                op = str(evt.get("op"))
                if op == "delete":
                    row_id = str(evt.get("id", "")).strip()
                    if row_id:
                        self._rows.pop(row_id, None)
                        ops += 1
                    continue
                if op != "upsert":
                    continue
                row = self._normalize_row(evt.get("row"))
                if not row:
                    continue
                self._rows[str(row["id"])] = row
                ops += 1
        self._log_ops = ops

    def _to_lancedb_row(self, row: dict[str, Any]) -> dict[str, Any]:
        meta = row["metadata"]
        try:
            confidence = float(meta.get("confidence", 1.0))
        except (TypeError, ValueError):
            confidence = 0.0
        return {
            "id": str(row["id"]),
            "vector": [float(x) for x in row["vector"]],
            "owner_id": str(meta.get("owner_id", "") or ""),
            "document_id": str(meta.get("document_id", "") or ""),
            "kind": str(meta.get("kind", "") or ""),
            "confidence": confidence,
            "start_year": _to_stored_year(meta.get("start_year")),
            "end_year": _to_stored_year(meta.get("end_year")),
        }

    def _normalize_row(self, value: Any) -> dict[str, Any] | None:
        if not isinstance(value, dict):
            return None
        row_id = str(value.get("id", "")).strip()
        if not row_id:
            return None
        raw_vector = value.get("vector")
        if not isinstance(raw_vector, list):
            return None
        vector = [float(x) for x in raw_vector if isinstance(x, (int, float))]
        if len(vector) != self.vector_dim:
            return None
        raw_meta = value.get("metadata")
        metadata = dict(raw_meta) if isinstance(raw_meta, dict) else {}
        return {"id": row_id, "vector": vector, "metadata": metadata}

    def _append_log_locked(self, event: dict[str, Any]) -> None:
        self._log_path.parent.mkdir(parents=True, exist_ok=True)
        with self._log_path.open("a", encoding="utf-8") as fh:
            fh.write(json.dumps(event, ensure_ascii=False))
            fh.write("\n")
        self._log_ops += 1

    def _should_compact_locked(self) -> bool:
        row_count = len(self._rows)
        if row_count <= 0:
            return False
        if self._log_ops < self.COMPACT_MIN_OPS:
            return False
        return self._log_ops >= row_count * 2

    def _compact_locked(self) -> None:
        tmp_snapshot = self._snapshot_path.with_suffix(".tmp")
        payload = {"rows": list(self._rows.values())}
        tmp_snapshot.write_text(
            json.dumps(payload, ensure_ascii=False, separators=(",", ":")),
            encoding="utf-8",
        )
        os.replace(tmp_snapshot, self._snapshot_path)
        tmp_log = self._log_path.with_suffix(".tmp")
        tmp_log.write_text("", encoding="utf-8")
        os.replace(tmp_log, self._log_path)
        self._log_ops = 0


def _quote_sql(value: str) -> str:
    return str(value).replace("'", "''")


def _to_stored_year(value: Any) -> int:
    if value is None:
        return _NULL_YEAR
    try:
        return int(value)
    except (TypeError, ValueError):
        return _NULL_YEAR


def _from_stored_year(value: Any) -> int | None:
    if value is None:
        return None
    try:
        year = int(value)
    except (TypeError, ValueError):
        return None
    return None if year < 0 else year
