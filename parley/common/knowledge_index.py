"""
Knowledge Index

Per-tenant store of (text, vector) pairs with nearest-neighbour retrieval.

LocalKnowledgeIndex ranks by cosine distance with a numpy batch dot product
and mirrors its contents to a JSON file. KnowledgeIndexer handles the chunk
lifecycle: a re-synced source gets a new chunk first, older chunks of the
same source are retired only after the new one is written.
"""

import json
import logging
import threading
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

import numpy as np

from .embedding_service import EmbeddingService
from .schemas import KnowledgeChunk, ScoredChunk

logger = logging.getLogger("parley.common.knowledge_index")


class KnowledgeIndex(ABC):
    """Interface consumed by context assembly and knowledge sync"""

    @abstractmethod
    def add(self, chunk: KnowledgeChunk) -> None:
        pass

    @abstractmethod
    def nearest_neighbors(
        self,
        tenant_id: str,
        vector: List[float],
        k: int,
        filter: Optional[Dict[str, Any]] = None,
    ) -> List[ScoredChunk]:
        """Closest k chunks of the tenant, ascending distance"""
        pass

    @abstractmethod
    def delete_by_source(
        self,
        source_id: str,
        tenant_id: Optional[str] = None,
        keep_ids: Optional[Set[str]] = None,
    ) -> int:
        """Delete chunks linked to source_id, returns number removed"""
        pass

    @abstractmethod
    def find_by_source(self, tenant_id: str, source_id: str) -> List[KnowledgeChunk]:
        pass


class LocalKnowledgeIndex(KnowledgeIndex):
    """
    In-process index with cosine distance ranking.

    Vectors are L2-normalized on insert so the dot product equals cosine
    similarity; distance = 1 - similarity.
    """

    def __init__(self, path: Optional[Path] = None, dimensions: Optional[int] = None):
        """
        Initialize index.

        Args:
            path: JSON file to load from and write to (None keeps it in memory)
            dimensions: Enforced vector length (inferred from the first chunk if None)
        """
        self._path = Path(path).expanduser() if path else None
        self._dimensions = dimensions
        self._lock = threading.Lock()
        self._chunks: List[KnowledgeChunk] = []
        self._load()

    @property
    def dimensions(self) -> Optional[int]:
        return self._dimensions

    def _load(self) -> None:
        """Load chunks from disk"""
        if self._path is None or not self._path.exists():
            return

        try:
            with open(self._path) as f:
                data = json.load(f)
            self._chunks = [KnowledgeChunk.model_validate(item) for item in data]
        except (json.JSONDecodeError, IOError, ValueError) as e:
            logger.warning("Failed to load knowledge index from %s: %s", self._path, e)
            self._chunks = []
            return

        if self._chunks and self._dimensions is None:
            self._dimensions = len(self._chunks[0].embedding)
        logger.info("Loaded %d knowledge chunks", len(self._chunks))

    def _save(self) -> None:
        """Save chunks to disk (caller holds the lock)"""
        if self._path is None:
            return

        self._path.parent.mkdir(parents=True, exist_ok=True)
        data = [chunk.model_dump(mode="json") for chunk in self._chunks]

        tmp_path = self._path.with_suffix(".tmp")
        with open(tmp_path, "w") as f:
            json.dump(data, f)
        tmp_path.replace(self._path)

    def _check_dimensions(self, vector: List[float]) -> None:
        if self._dimensions is not None and len(vector) != self._dimensions:
            raise ValueError(
                f"Vector dimension mismatch: expected {self._dimensions}, got {len(vector)}"
            )

    @staticmethod
    def _normalize(vector: List[float]) -> np.ndarray:
        arr = np.asarray(vector, dtype=np.float32)
        norm = np.linalg.norm(arr)
        if norm == 0:
            return arr
        return arr / norm

    def add(self, chunk: KnowledgeChunk) -> None:
        if not chunk.embedding:
            raise ValueError("Cannot index a chunk without an embedding")

        with self._lock:
            self._check_dimensions(chunk.embedding)
            if self._dimensions is None:
                self._dimensions = len(chunk.embedding)
            self._chunks.append(chunk)
            self._save()

    def nearest_neighbors(
        self,
        tenant_id: str,
        vector: List[float],
        k: int,
        filter: Optional[Dict[str, Any]] = None,
    ) -> List[ScoredChunk]:
        if k <= 0:
            return []

        with self._lock:
            self._check_dimensions(vector)
            candidates = [
                chunk for chunk in self._chunks
                if chunk.tenant_id == tenant_id and chunk.matches(filter)
            ]

        if not candidates:
            return []

        # Batch similarity against all candidate vectors
        matrix = np.vstack([self._normalize(c.embedding) for c in candidates])
        similarities = matrix @ self._normalize(vector)
        distances = 1.0 - similarities

        # Get top-k indices
        if len(distances) <= k:
            top_indices = np.argsort(distances, kind="stable")
        else:
            top_indices = np.argpartition(distances, k - 1)[:k]
            top_indices = top_indices[np.argsort(distances[top_indices], kind="stable")]

        return [
            ScoredChunk(chunk=candidates[idx], distance=float(distances[idx]))
            for idx in top_indices
        ]

    def delete_by_source(
        self,
        source_id: str,
        tenant_id: Optional[str] = None,
        keep_ids: Optional[Set[str]] = None,
    ) -> int:
        keep_ids = keep_ids or set()
        with self._lock:
            before = len(self._chunks)
            self._chunks = [
                chunk for chunk in self._chunks
                if not (
                    chunk.source_id == source_id
                    and (tenant_id is None or chunk.tenant_id == tenant_id)
                    and chunk.id not in keep_ids
                )
            ]
            removed = before - len(self._chunks)
            if removed:
                self._save()
        return removed

    def find_by_source(self, tenant_id: str, source_id: str) -> List[KnowledgeChunk]:
        with self._lock:
            return [
                chunk for chunk in self._chunks
                if chunk.tenant_id == tenant_id and chunk.source_id == source_id
            ]

    def count(self, tenant_id: Optional[str] = None) -> int:
        with self._lock:
            if tenant_id is None:
                return len(self._chunks)
            return sum(1 for chunk in self._chunks if chunk.tenant_id == tenant_id)


class KnowledgeIndexer:
    """
    Writes knowledge into the index.

    Re-sync order matters: the new chunk is embedded and written first, then
    every older chunk of the same source is retired. A reader in between sees
    both versions, never neither.
    """

    def __init__(self, index: KnowledgeIndex, embedding_service: EmbeddingService):
        self._index = index
        self._embedding = embedding_service

    def sync_source(
        self,
        tenant_id: str,
        source_id: str,
        text: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> KnowledgeChunk:
        """
        Replace the knowledge for one source (e.g. a catalog item).

        Args:
            tenant_id: Owning tenant
            source_id: Logical source the chunk describes
            text: Grounding text
            metadata: Extra metadata merged under the lifecycle keys

        Returns:
            The newly written chunk
        """
        if not text or not text.strip():
            raise ValueError("Cannot sync empty knowledge text")

        existing = self._index.find_by_source(tenant_id, source_id)
        version = max((int(c.metadata.get("version", 0)) for c in existing), default=0) + 1

        chunk_metadata = dict(metadata or {})
        chunk_metadata.update({
            "doctype": chunk_metadata.get("doctype", "product"),
            "version": version,
            "is_active": True,
            "updated_at_epoch": int(time.time()),
        })

        chunk = KnowledgeChunk(
            tenant_id=tenant_id,
            text=text.strip(),
            embedding=self._embedding.embed_single(text),
            source_id=source_id,
            metadata=chunk_metadata,
        )
        self._index.add(chunk)

        retired = self._index.delete_by_source(source_id, tenant_id=tenant_id, keep_ids={chunk.id})
        logger.info(
            "Synced source %s for tenant %s (version %d, retired %d)",
            source_id, tenant_id, version, retired,
        )
        return chunk

    def retire_source(self, tenant_id: str, source_id: str) -> int:
        """Remove every chunk of a source"""
        removed = self._index.delete_by_source(source_id, tenant_id=tenant_id)
        logger.info("Retired %d chunks of source %s for tenant %s", removed, source_id, tenant_id)
        return removed
