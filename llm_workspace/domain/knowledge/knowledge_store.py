import asyncio
import json
import os
import time
import uuid
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import numpy as np
import structlog

from llm_workspace.domain.errors import ConfigError, EmbeddingError, NotFoundError
from llm_workspace.domain.models.document import Document, SearchResult
from llm_workspace.infrastructure.config.settings import RAGConfig
from llm_workspace.infrastructure.observability.logging import agent_logger, metrics
from llm_workspace.infrastructure.providers.base import Embedder
from .chunking import chunk_text, is_indexable

logger = structlog.get_logger(__name__)

CONTEXT_HEADER = "\n\nRelevant context from your knowledge base:\n"


class KnowledgeStore:
    """Chunked, embedded text with cosine-similarity search.

    All reads and writes of the document collection go through one asyncio
    lock. Embeddings are computed before the lock is taken, and a document
    and its vector are appended together, so a search never sees one
    without the other.
    """

    def __init__(self, embedder: Embedder, config: Optional[RAGConfig] = None):
        self.embedder = embedder
        self.config = config or RAGConfig()
        self._documents: List[Document] = []
        self._vectors: List[np.ndarray] = []
        self._matrix: Optional[np.ndarray] = None
        self._dimension: Optional[int] = None
        self._lock = asyncio.Lock()
        self._save_lock = asyncio.Lock()

    @property
    def dimension(self) -> Optional[int]:
        return self._dimension

    async def add_text(self, content: str, metadata: Optional[Dict[str, str]] = None) -> List[str]:
        """Chunk, embed and store text, returning the new document IDs.

        Chunks whose embedding fails are skipped; the others are still
        stored. If any chunk failed, ``EmbeddingError`` is raised after the
        batch, carrying the stored IDs and the failed chunk indices.
        """

        source = (metadata or {}).get("source", "user_input")
        stored_ids, failed, errors, total = await self._store_chunks(content, metadata)
        if stored_ids:
            agent_logger.log_knowledge_update("add_text", {"source": source, "chunks": len(stored_ids)})
            await self._persist()

        if failed:
            raise EmbeddingError(
                f"{len(failed)} of {total} chunks could not be embedded: {errors[0]}",
                document_ids=stored_ids,
                failed_chunks=failed,
            )

        return stored_ids

    async def _store_chunks(
        self,
        content: str,
        metadata: Optional[Dict[str, str]]
    ) -> Tuple[List[str], List[int], List[str], int]:
        """Embed and append every chunk of ``content`` without persisting"""

        base_metadata = {"source": "user_input", **(metadata or {})}
        chunks = chunk_text(content, self.config.chunk_size, self.config.chunk_overlap)

        stored_ids: List[str] = []
        failed: List[int] = []
        errors: List[str] = []

        for index, chunk in enumerate(chunks):
            try:
                embedding = await self._embed(chunk)
            except EmbeddingError as e:
                logger.warning(
                    "Skipping chunk, embedding failed",
                    source=base_metadata.get("source"),
                    chunk=index,
                    error=str(e)
                )
                failed.append(index)
                errors.append(str(e))
                continue

            document = Document(
                id=uuid.uuid4().hex,
                content=chunk,
                metadata={**base_metadata, "chunk": str(index)},
                embedding=embedding,
            )
            async with self._lock:
                if not self._accepts(embedding):
                    failed.append(index)
                    errors.append(
                        f"embedding dimension {len(embedding)} does not match store dimension {self._dimension}"
                    )
                    continue
                self._append(document)
            stored_ids.append(document.id)

        return stored_ids, failed, errors, len(chunks)

    async def index_directory(self, path: str) -> int:
        """Recursively index every allowed file under ``path``.

        Returns the number of files that contributed at least one document.
        Unreadable files and files whose chunks all fail to embed are skipped
        with a warning.

        Raises:
            NotFoundError: If ``path`` does not exist
        """

        root = Path(path).expanduser()
        if not root.exists():
            raise NotFoundError(f"directory does not exist: {path}")

        files = await asyncio.to_thread(self._collect_files, root)
        logger.info("Indexing directory", path=str(root), candidates=len(files))

        indexed = 0
        for file_path in files:
            try:
                content = await asyncio.to_thread(file_path.read_text, encoding="utf-8")
            except (OSError, UnicodeDecodeError) as e:
                logger.warning("Skipping unreadable file", path=str(file_path), error=str(e))
                continue

            if not content.strip():
                continue

            ids, failed, errors, _ = await self._store_chunks(content, {"source": str(file_path)})
            if failed:
                logger.warning(
                    "Partially indexed file", path=str(file_path), failed_chunks=failed, error=errors[0]
                )

            if ids:
                indexed += 1
                logger.debug("Indexed file", path=str(file_path), chunks=len(ids))

        if indexed:
            agent_logger.log_knowledge_update("index_directory", {"path": str(root), "files": indexed})
            await self._persist()

        logger.info("Directory indexed", path=str(root), files=indexed)
        return indexed

    async def search(self, query: str, top_k: Optional[int] = None) -> List[SearchResult]:
        """Return the ``top_k`` most similar documents with their scores"""

        if top_k is None:
            top_k = self.config.top_k
        if await self.count() == 0 or top_k <= 0:
            return []

        query_vector = np.asarray(await self._embed(query), dtype=np.float32)

        async with self._lock:
            documents = list(self._documents)
            matrix = self._stacked()

        if query_vector.shape[0] != matrix.shape[1]:
            raise EmbeddingError(
                f"query embedding dimension {query_vector.shape[0]} does not match store dimension {matrix.shape[1]}"
            )

        scores = cosine_similarity(matrix, query_vector)
        # Stable sort keeps insertion order among equal scores
        order = np.argsort(-scores, kind="stable")[:top_k]

        return [SearchResult(document=documents[i], score=float(scores[i])) for i in order]

    async def retrieve(self, query: str, top_k: Optional[int] = None) -> List[Document]:
        """Return the ``top_k`` most similar documents, best first"""

        results = await self.search(query, top_k)
        return [r.document for r in results]

    async def retrieve_context(self, query: str, top_k: Optional[int] = None) -> str:
        """Format retrieved documents as a suffix for the user message"""

        documents = await self.retrieve(query, top_k)
        if not documents:
            return ""

        lines = [CONTEXT_HEADER]
        for i, document in enumerate(documents, start=1):
            lines.append(f"\n[{i}] {document.content}\n")
        return "".join(lines)

    async def count(self) -> int:
        async with self._lock:
            return len(self._documents)

    async def sources(self) -> List[str]:
        """Distinct ``source`` metadata values in insertion order"""

        async with self._lock:
            seen: Dict[str, None] = {}
            for document in self._documents:
                source = document.metadata.get("source")
                if source is not None:
                    seen.setdefault(source, None)
            return list(seen)

    async def clear(self):
        """Remove every document"""

        async with self._lock:
            self._documents.clear()
            self._vectors.clear()
            self._matrix = None
            self._dimension = None
        agent_logger.log_knowledge_update("clear")
        await self._persist()

    async def load(self) -> int:
        """Load documents from the configured persist path, if any"""

        path = self.config.persist_path
        if not path or not Path(path).is_file():
            return 0

        raw = await asyncio.to_thread(Path(path).read_text, encoding="utf-8")
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ConfigError(f"knowledge store file {path} is not valid JSON: {e}") from e

        async with self._lock:
            self._documents.clear()
            self._vectors.clear()
            self._matrix = None
            self._dimension = None
            for item in data.get("documents", []):
                document = Document.model_validate(item)
                if not self._accepts(document.embedding):
                    logger.warning("Dropping persisted document with mismatched dimension", id=document.id)
                    continue
                self._append(document)
            loaded = len(self._documents)

        logger.info("Knowledge store loaded", path=path, documents=loaded)
        return loaded

    async def _embed(self, text: str) -> List[float]:
        start = time.perf_counter()
        try:
            embedding = await self.embedder.embed(text)
        except EmbeddingError:
            raise
        except Exception as e:
            raise EmbeddingError(f"embedding failed: {e}") from e
        finally:
            metrics.record_latency("embed", (time.perf_counter() - start) * 1000)

        if not embedding:
            raise EmbeddingError("embedding failed: empty vector")
        return list(embedding)

    def _accepts(self, embedding: List[float]) -> bool:
        return self._dimension is None or len(embedding) == self._dimension

    def _append(self, document: Document):
        if self._dimension is None:
            self._dimension = len(document.embedding)
        self._documents.append(document)
        self._vectors.append(np.asarray(document.embedding, dtype=np.float32))
        self._matrix = None

    def _stacked(self) -> np.ndarray:
        if self._matrix is None:
            self._matrix = np.vstack(self._vectors)
        return self._matrix

    def _collect_files(self, root: Path) -> List[Path]:
        if root.is_file():
            return [root] if is_indexable(root, self.config.extensions) else []

        excluded = set(self.config.exclude_dirs)
        files = []
        for dirpath, dirnames, filenames in os.walk(root):
            dirnames[:] = sorted(d for d in dirnames if d not in excluded)
            for name in sorted(filenames):
                candidate = Path(dirpath) / name
                if candidate.is_file() and is_indexable(candidate, self.config.extensions):
                    files.append(candidate)
        return files

    async def _persist(self):
        path = self.config.persist_path
        if not path:
            return

        async with self._save_lock:
            async with self._lock:
                payload = {
                    "dimension": self._dimension,
                    "documents": [d.model_dump() for d in self._documents],
                }
            await asyncio.to_thread(_write_atomic, Path(path), json.dumps(payload))


def cosine_similarity(matrix: np.ndarray, vector: np.ndarray) -> np.ndarray:
    """Cosine similarity of every row of ``matrix`` with ``vector``.

    Rows or queries with zero norm score 0.
    """
    norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(vector)
    dots = matrix @ vector
    with np.errstate(divide="ignore", invalid="ignore"):
        scores = np.where(norms > 0, dots / norms, 0.0)
    return scores.astype(np.float64)


def _write_atomic(path: Path, data: str):
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(path.name + ".tmp")
    tmp_path.write_text(data, encoding="utf-8")
    os.replace(tmp_path, path)
