"""
On-disk vector index of retrieval examples.

Two artifacts live side by side in one directory:

    index.faiss     faiss inner-product index, one vector per ordinal
    documents.json  the ExampleDocument list, same ordinals

They are coupled 1:1 by position. ``len(documents) == index.ntotal`` must
always hold; a pair that violates it is treated as corrupt and refused by
load(), so the caller rebuilds from scratch instead of repairing it.

Writes go to temporary files first and are swapped in with os.replace,
index before documents. A crash between the two swaps leaves a count
mismatch, which load() catches.
"""

import json
import logging
import os
from pathlib import Path

import faiss
import numpy as np

from inboxsync.agent.schemas import ExampleDocument

logger = logging.getLogger(__name__)

INDEX_FILE = "index.faiss"
DOCUMENTS_FILE = "documents.json"


class IndexLoadError(Exception):
    """The persisted index is missing, unreadable, or inconsistent."""
    pass


class VectorIndex:
    """A faiss index plus its parallel document list."""

    def __init__(self, directory: Path, index: faiss.Index, documents: list[ExampleDocument]):
        if index.ntotal != len(documents):
            raise IndexLoadError(
                f"Index has {index.ntotal} vectors but {len(documents)} documents"
            )
        self._directory = Path(directory)
        self._index = index
        self.documents = documents

    @property
    def count(self) -> int:
        return self._index.ntotal

    @property
    def dimension(self) -> int:
        return self._index.d

    # =========================================================================
    # CONSTRUCTION
    # =========================================================================

    @classmethod
    def build(
        cls,
        directory: Path,
        documents: list[ExampleDocument],
        vectors: np.ndarray,
    ) -> "VectorIndex":
        """Build a fresh cosine index (inner product over unit vectors)."""
        vectors = np.asarray(vectors, dtype="float32")
        if vectors.ndim != 2 or vectors.shape[0] != len(documents):
            raise ValueError(
                f"Expected {len(documents)} vectors, got array of shape {vectors.shape}"
            )
        index = faiss.IndexFlatIP(vectors.shape[1])
        index.add(vectors)
        return cls(directory, index, list(documents))

    @classmethod
    def load(cls, directory: Path) -> "VectorIndex":
        """Read both artifacts. Raises IndexLoadError if anything is off."""
        directory = Path(directory)
        index_path = directory / INDEX_FILE
        documents_path = directory / DOCUMENTS_FILE

        if not index_path.exists() or not documents_path.exists():
            raise IndexLoadError(f"No persisted index in {directory}")

        try:
            index = faiss.read_index(str(index_path))
            with open(documents_path, encoding="utf-8") as f:
                raw = json.load(f)
            documents = [ExampleDocument.model_validate(d) for d in raw]
        except (RuntimeError, OSError, ValueError) as e:
            raise IndexLoadError(f"Unreadable index in {directory}: {e}") from e

        return cls(directory, index, documents)

    # =========================================================================
    # MUTATION / QUERY
    # =========================================================================

    def add(self, document: ExampleDocument, vector: np.ndarray) -> int:
        """
        Append one document and its vector at the same ordinal and persist.
        Returns the ordinal.

        The append is staged on a copy and only swapped in once both files
        are on disk. If writing fails the exception propagates and the
        in-memory index is unchanged.
        """
        vector = np.asarray(vector, dtype="float32").reshape(1, -1)
        index = faiss.clone_index(self._index)
        index.add(vector)
        documents = self.documents + [document]

        self._write(index, documents)

        self._index, self.documents = index, documents
        return len(documents) - 1

    def search(self, vector: np.ndarray, k: int) -> list[tuple[ExampleDocument, float]]:
        """
        Return up to k (document, similarity) pairs, most similar first.

        Similarity is cosine similarity in [-1, 1].
        """
        if self.count == 0:
            return []
        query = np.asarray(vector, dtype="float32").reshape(1, -1)
        similarities, ordinals = self._index.search(query, min(k, self.count))
        results = []
        for ordinal, similarity in zip(ordinals[0], similarities[0]):
            if ordinal < 0:
                continue
            results.append((self.documents[int(ordinal)], float(similarity)))
        return results

    def persist(self) -> None:
        """Write both artifacts via temp files and atomic renames."""
        self._write(self._index, self.documents)

    def _write(self, index: faiss.Index, documents: list[ExampleDocument]) -> None:
        self._directory.mkdir(parents=True, exist_ok=True)
        index_path = self._directory / INDEX_FILE
        documents_path = self._directory / DOCUMENTS_FILE
        index_tmp = index_path.with_suffix(".faiss.tmp")
        documents_tmp = documents_path.with_suffix(".json.tmp")

        try:
            faiss.write_index(index, str(index_tmp))
            with open(documents_tmp, "w", encoding="utf-8") as f:
                json.dump([d.model_dump() for d in documents], f, indent=2)

            os.replace(index_tmp, index_path)
            try:
                os.replace(documents_tmp, documents_path)
            except OSError:
                # Put back the index that matches the documents still on disk
                if index is not self._index:
                    faiss.write_index(self._index, str(index_path))
                raise
        finally:
            index_tmp.unlink(missing_ok=True)
            documents_tmp.unlink(missing_ok=True)

        logger.info(
            "vector_index.persisted",
            extra={
                "action": "vector_index.persisted",
                "document_count": len(documents),
                "directory": str(self._directory),
            },
        )
