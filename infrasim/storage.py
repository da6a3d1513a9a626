"""Persistent vector store for organization records."""

from __future__ import annotations

import asyncio
import json
import logging
import random
from copy import deepcopy
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np

from .errors import ComponentNotFoundError, IndexShapeError, InfrasimError, RecordNotFoundError
from .mutations import (
    build_component,
    connect_components,
    describe_components,
    detach_component,
    find_component,
    merge_component,
    resolve_component,
)
from .schemas import ComponentPatch, InfrastructureComponent, OrganizationRecord, validate_record

logger = logging.getLogger(__name__)


INDEX_FILENAME = "index.npy"
DOCSTORE_FILENAME = "docstore.json"
SENTINEL_ID = "init"
SENTINEL_CONTENT = "initial document"

Document = Dict[str, Any]


class FlatVectorIndex:
    """Exhaustive squared-L2 index over float32 rows, one row per document id."""

    def __init__(self, dimension: int) -> None:
        if dimension <= 0:
            raise ValueError("dimension must be positive")
        self.dimension = dimension
        self._vectors = np.zeros((0, dimension), dtype=np.float32)
        self._ids: List[str] = []

    @classmethod
    def from_matrix(cls, matrix: np.ndarray, ids: Sequence[str]) -> "FlatVectorIndex":
        if matrix.ndim != 2 or matrix.shape[0] != len(ids):
            raise ValueError(
                f"Index holds {matrix.shape[0] if matrix.ndim == 2 else '?'} rows for {len(ids)} ids"
            )
        index = cls(int(matrix.shape[1]))
        index._vectors = matrix.astype(np.float32, copy=True)
        index._ids = list(ids)
        return index

    @property
    def ids(self) -> List[str]:
        return list(self._ids)

    @property
    def matrix(self) -> np.ndarray:
        return self._vectors.copy()

    def __len__(self) -> int:
        return len(self._ids)

    def __contains__(self, doc_id: object) -> bool:
        return doc_id in self._ids

    def _as_row(self, vector: Sequence[float]) -> np.ndarray:
        row = np.asarray(vector, dtype=np.float32).reshape(-1)
        if row.shape[0] != self.dimension:
            raise IndexShapeError(self.dimension, int(row.shape[0]))
        return row

    def add(self, doc_id: str, vector: Sequence[float]) -> None:
        row = self._as_row(vector)
        self._vectors = np.vstack([self._vectors, row[np.newaxis, :]])
        self._ids.append(doc_id)

    def remove(self, doc_id: str) -> bool:
        try:
            position = self._ids.index(doc_id)
        except ValueError:
            return False
        self._vectors = np.delete(self._vectors, position, axis=0)
        del self._ids[position]
        return True

    def search(self, vector: Sequence[float], k: int) -> List[Tuple[str, float]]:
        """Return up to ``k`` ``(doc_id, distance)`` pairs, nearest first."""

        row = self._as_row(vector)
        if not self._ids or k <= 0:
            return []
        distances = np.sum((self._vectors - row) ** 2, axis=1)
        order = np.argsort(distances, kind="stable")[:k]
        return [(self._ids[i], float(distances[i])) for i in order]


@dataclass
class SearchResult:
    record: OrganizationRecord
    score: float

    @property
    def similarity(self) -> float:
        return 1.0 - self.score

    def to_payload(self) -> Dict[str, Any]:
        return {
            "record": self.record.to_payload(),
            "score": self.score,
            "similarity": self.similarity,
        }


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _document_for(record: OrganizationRecord) -> Document:
    metadata = record.to_payload()
    metadata["isInit"] = False
    return {"pageContent": record.search_document(), "metadata": metadata}


def _sentinel_document() -> Document:
    return {"pageContent": SENTINEL_CONTENT, "metadata": {"id": SENTINEL_ID, "isInit": True}}


def _locate(
    components: List[InfrastructureComponent], reference: str
) -> Tuple[InfrastructureComponent, bool]:
    """Return the referenced component and whether it matched by id."""

    try:
        return find_component(components, reference), True
    except ComponentNotFoundError:
        return resolve_component(components, reference), False


def _is_sentinel(document: Optional[Mapping[str, Any]]) -> bool:
    if not isinstance(document, Mapping):
        return False
    metadata = document.get("metadata")
    return isinstance(metadata, Mapping) and bool(metadata.get("isInit"))


class OrganizationStore:
    """Vector-indexed organization memory persisted under ``store_dir``.

    The index and its document mapping are loaded lazily on first use. When
    nothing usable is on disk a fresh index is seeded with a sentinel document
    and saved immediately. Both files are rewritten after every mutation.
    """

    def __init__(
        self,
        store_dir: Union[str, Path],
        embedding_client: Any,
        *,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.store_dir = Path(store_dir).expanduser()
        self.embedding_client = embedding_client
        self.rng = rng or random.Random()
        self._init_lock = asyncio.Lock()
        self._initialized = False
        self._index: Optional[FlatVectorIndex] = None
        self._documents: Dict[str, Document] = {}

    @property
    def index_path(self) -> Path:
        return self.store_dir / INDEX_FILENAME

    @property
    def docstore_path(self) -> Path:
        return self.store_dir / DOCSTORE_FILENAME

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def initialize(self) -> None:
        if self._initialized:
            return
        async with self._init_lock:
            if self._initialized:
                return
            loaded = await asyncio.to_thread(self._read_files)
            if loaded is None:
                await self._bootstrap()
            else:
                self._index, self._documents = loaded
                logger.info(
                    "Loaded organization index with %s document(s) from %s",
                    len(self._index),
                    self.store_dir,
                )
            self._initialized = True

    async def reset(self) -> None:
        """Delete the persisted files and start again from a sentinel-only index."""

        async with self._init_lock:
            await self._rebuild()
            self._initialized = True

    async def _bootstrap(self) -> None:
        vector = await self._embed(SENTINEL_CONTENT)
        index = FlatVectorIndex(int(vector.shape[0]))
        index.add(SENTINEL_ID, vector)
        self._index = index
        self._documents = {SENTINEL_ID: _sentinel_document()}
        await self._persist()
        logger.info("Bootstrapped new organization index (dimension %s) in %s", index.dimension, self.store_dir)

    async def _rebuild(self) -> None:
        await asyncio.to_thread(self._remove_files)
        self._index = None
        self._documents = {}
        await self._bootstrap()

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------
    async def add(self, record: OrganizationRecord) -> str:
        index = await self._ready()
        if record.id in self._documents:
            raise ValueError(f"Organization with ID {record.id} already exists")
        now = _utcnow()
        stored = record.model_copy(update={"created_at": now, "updated_at": now}, deep=True)
        vector = await self._indexable_vector(index, stored.search_document())
        index.add(stored.id, vector)
        self._documents[stored.id] = _document_for(stored)
        await self._persist()
        logger.info("Stored organization %s (%s)", stored.name, stored.id)
        return stored.id

    async def update(self, record: OrganizationRecord) -> OrganizationRecord:
        index = await self._ready()
        existing = self._documents.get(record.id)
        if existing is None or _is_sentinel(existing):
            raise RecordNotFoundError(record.id)
        created_at = OrganizationRecord.model_validate(existing["metadata"]).created_at
        stored = record.model_copy(
            update={"created_at": created_at, "updated_at": max(_utcnow(), created_at)}, deep=True
        )
        vector = await self._indexable_vector(index, stored.search_document())
        index.remove(stored.id)
        index.add(stored.id, vector)
        self._documents.pop(stored.id, None)
        self._documents[stored.id] = _document_for(stored)
        await self._persist()
        logger.debug("Updated organization %s", stored.id)
        return stored.model_copy(deep=True)

    async def get(self, record_id: str) -> OrganizationRecord:
        for record in await self.get_all():
            if record.id == record_id:
                return record
        raise RecordNotFoundError(record_id)

    async def get_all(self) -> List[OrganizationRecord]:
        await self.initialize()
        try:
            return self._list_indexed()
        except Exception as exc:
            logger.warning(
                "Listing organizations through the index failed (%s); reading %s directly",
                exc,
                self.docstore_path,
            )
            return await asyncio.to_thread(self._backup_records)

    async def search(self, query: str, limit: int = 5) -> List[SearchResult]:
        await self._ready()
        vector = await self._embed(query)
        hits = await self._query(vector, limit + 1)
        return self._to_results(hits, limit)

    async def find_similar(self, record_id: str, limit: int = 5) -> List[SearchResult]:
        await self._ready()
        document = self._documents.get(record_id)
        if document is None or _is_sentinel(document):
            raise RecordNotFoundError(record_id)
        vector = await self._embed(document["pageContent"])
        hits = await self._query(vector, limit + 2)
        return self._to_results(hits, limit, exclude=record_id)

    # ------------------------------------------------------------------
    # Components
    # ------------------------------------------------------------------
    async def get_components(self, record_id: str) -> List[InfrastructureComponent]:
        record = await self.get(record_id)
        return list(record.infrastructure or [])

    async def add_component(
        self,
        record_id: str,
        component: Union[InfrastructureComponent, ComponentPatch, Mapping[str, Any]],
        *,
        layout_instructions: Optional[str] = None,
    ) -> InfrastructureComponent:
        """Append a component to the record's graph.

        A fully built :class:`InfrastructureComponent` is stored as given. A
        partial description gets a fresh id and the same defaults as the
        ``add`` mutation: hostname from the name, a private address and a
        position derived from ``layout_instructions``.
        """

        record = await self.get(record_id)
        components = list(record.infrastructure or [])
        if isinstance(component, InfrastructureComponent):
            candidate = component.model_copy(deep=True)
            if any(existing.id == candidate.id for existing in components):
                raise ValueError(f"Component with ID {candidate.id} already exists")
            known = {existing.id for existing in components}
            for target in candidate.connections:
                if target not in known:
                    raise ComponentNotFoundError(target)
        else:
            patch = (
                component
                if isinstance(component, ComponentPatch)
                else ComponentPatch.model_validate(component)
            )
            candidate = build_component(patch, components, self.rng, layout_instructions)
        components.append(candidate)
        await self._save_components(record, components)
        logger.info("Added %s component %s to %s", candidate.kind.value, candidate.name, record_id)
        return candidate

    async def remove_component(self, record_id: str, reference: str) -> InfrastructureComponent:
        """Remove a component by id or name and prune edges pointing at it."""

        record = await self.get(record_id)
        components = list(record.infrastructure or [])
        removed, _ = _locate(components, reference)
        await self._save_components(record, detach_component(components, removed.id))
        return removed

    async def update_component(
        self,
        record_id: str,
        reference: str,
        patch: Union[ComponentPatch, Mapping[str, Any]],
    ) -> InfrastructureComponent:
        """Merge ``patch`` into the component found by id or name.

        A component found by name keeps its name.
        """

        record = await self.get(record_id)
        components = list(record.infrastructure or [])
        existing, by_id = _locate(components, reference)
        updates = patch if isinstance(patch, ComponentPatch) else ComponentPatch.model_validate(patch)
        merged, changes = merge_component(existing, updates, rename=by_id, known=components)
        if changes:
            await self._save_components(
                record, [merged if c.id == existing.id else c for c in components]
            )
        return merged

    async def link_components(
        self,
        record_id: str,
        source_id: str,
        target_id: str,
        *,
        bidirectional: bool = False,
    ) -> List[InfrastructureComponent]:
        record = await self.get(record_id)
        linked = connect_components(
            record.infrastructure or [], source_id, target_id, bidirectional=bidirectional
        )
        await self._save_components(record, linked)
        return linked

    async def describe_layout(self, record_id: str) -> str:
        record = await self.get(record_id)
        return describe_components(record.infrastructure or [], record.name)

    async def _save_components(
        self, record: OrganizationRecord, components: List[InfrastructureComponent]
    ) -> None:
        record.infrastructure = components
        await self.update(record)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    async def _ready(self) -> FlatVectorIndex:
        await self.initialize()
        if self._index is None:
            raise InfrasimError("Organization index is not available")
        return self._index

    async def _embed(self, text: str) -> np.ndarray:
        vectors = await self.embedding_client.embed([text])
        if not vectors:
            raise InfrasimError("Embedding client returned no vector")
        return np.asarray(vectors[0], dtype=np.float32)

    async def _indexable_vector(self, index: FlatVectorIndex, text: str) -> np.ndarray:
        """Embed ``text`` for insertion; a dimension change rebuilds the index and raises."""

        vector = await self._embed(text)
        if vector.shape[0] != index.dimension:
            exc = IndexShapeError(index.dimension, int(vector.shape[0]))
            await self._recover_from_shape_error(exc)
            raise exc
        return vector

    async def _recover_from_shape_error(self, exc: IndexShapeError) -> None:
        logger.warning("%s; rebuilding the organization index", exc)
        async with self._init_lock:
            await self._rebuild()

    async def _query(self, vector: np.ndarray, k: int) -> List[Tuple[str, float]]:
        index = await self._ready()
        try:
            return index.search(vector, k)
        except IndexShapeError as exc:
            await self._recover_from_shape_error(exc)
            return []

    def _to_results(
        self, hits: Sequence[Tuple[str, float]], limit: int, exclude: Optional[str] = None
    ) -> List[SearchResult]:
        results: List[SearchResult] = []
        for doc_id, score in hits:
            document = self._documents.get(doc_id)
            if document is None or _is_sentinel(document) or doc_id == exclude:
                continue
            record = OrganizationRecord.model_validate(document["metadata"])
            results.append(SearchResult(record=record, score=score))
        return results[:limit]

    def _list_indexed(self) -> List[OrganizationRecord]:
        if self._index is None:
            raise InfrasimError("Organization index is not available")
        records: List[OrganizationRecord] = []
        for doc_id in self._index.ids:
            document = self._documents[doc_id]
            if _is_sentinel(document):
                continue
            records.append(OrganizationRecord.model_validate(document["metadata"]))
        return records

    async def _persist(self) -> None:
        if self._index is None:
            return
        matrix = self._index.matrix
        ids = self._index.ids
        pairs = [[doc_id, deepcopy(self._documents[doc_id])] for doc_id in ids]
        mapping = {str(position): doc_id for position, doc_id in enumerate(ids)}
        await asyncio.to_thread(self._write_files, matrix, [pairs, mapping])

    def _write_files(self, matrix: np.ndarray, docstore: List[Any]) -> None:
        self.store_dir.mkdir(parents=True, exist_ok=True)
        with self.index_path.open("wb") as fh:
            np.save(fh, matrix, allow_pickle=False)
        with self.docstore_path.open("w", encoding="utf-8") as fh:
            json.dump(docstore, fh, ensure_ascii=False)

    def _remove_files(self) -> None:
        for path in (self.index_path, self.docstore_path):
            path.unlink(missing_ok=True)

    def _read_files(self) -> Optional[Tuple[FlatVectorIndex, Dict[str, Document]]]:
        if not self.index_path.exists() or not self.docstore_path.exists():
            return None
        try:
            matrix = np.load(self.index_path, allow_pickle=False)
            with self.docstore_path.open("r", encoding="utf-8") as fh:
                raw = json.load(fh)
            pairs, mapping = raw[0], raw[1]
            documents = {str(doc_id): dict(document) for doc_id, document in pairs}
            ids = [str(mapping[str(position)]) for position in range(len(mapping))]
            if any(doc_id not in documents for doc_id in ids):
                raise ValueError("docstore mapping references unknown documents")
            index = FlatVectorIndex.from_matrix(matrix, ids)
        except (OSError, ValueError, TypeError, KeyError, IndexError) as exc:
            logger.warning("Persisted organization index in %s is unreadable: %s", self.store_dir, exc)
            return None
        return index, {doc_id: documents[doc_id] for doc_id in ids}

    def _backup_records(self) -> List[OrganizationRecord]:
        try:
            with self.docstore_path.open("r", encoding="utf-8") as fh:
                raw = json.load(fh)
        except (OSError, ValueError) as exc:
            logger.warning("Backup read of %s failed: %s", self.docstore_path, exc)
            return []

        pairs = raw[0] if isinstance(raw, list) and raw and isinstance(raw[0], list) else None
        if pairs is None:
            logger.warning("Unexpected docstore layout in %s; no records recovered", self.docstore_path)
            return []

        records: List[OrganizationRecord] = []
        skipped = 0
        for entry in pairs:
            if not (isinstance(entry, list) and len(entry) == 2 and isinstance(entry[1], Mapping)):
                skipped += 1
                continue
            document = entry[1]
            if _is_sentinel(document):
                continue
            outcome = validate_record(document.get("metadata"))
            if outcome.ok and outcome.value is not None:
                records.append(outcome.value)
            else:
                skipped += 1
        if skipped:
            logger.warning(
                "Skipped %s unrecognized docstore entr%s in %s",
                skipped,
                "y" if skipped == 1 else "ies",
                self.docstore_path,
            )
        logger.info("Recovered %s organization(s) from %s", len(records), self.docstore_path)
        return records


__all__ = [
    "DOCSTORE_FILENAME",
    "FlatVectorIndex",
    "INDEX_FILENAME",
    "OrganizationStore",
    "SENTINEL_CONTENT",
    "SENTINEL_ID",
    "SearchResult",
]
