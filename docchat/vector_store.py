import json
import hashlib
import asyncio
import numpy as np
from typing import List, Dict, Any, Optional
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
import faiss
from pathlib import Path
from qdrant_client import AsyncQdrantClient
from qdrant_client.http import models as qmodels
from qdrant_client.http.exceptions import UnexpectedResponse
from loguru import logger
from .config import get_settings

settings = get_settings()

DOCUMENT_ID_KEY = "metadata.documentId"


@dataclass
class VectorPoint:
    id: str
    vector: List[float]
    payload: Dict[str, Any]


@dataclass
class SearchResult:
    point_id: str
    content: str
    score: float
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def document_id(self) -> Optional[str]:
        return self.metadata.get("documentId")


def _result_from_payload(point_id, score: float, payload: Optional[Dict[str, Any]]) -> SearchResult:
    payload = payload or {}
    return SearchResult(
        point_id=str(point_id),
        content=payload.get("content", ""),
        score=float(score),
        metadata=payload.get("metadata") or {}
    )


class BaseVectorStore(ABC):
    """Abstract base class for vector stores holding one collection per user"""

    @abstractmethod
    async def collection_exists(self, collection: str) -> bool:
        pass

    @abstractmethod
    async def ensure_collection(self, collection: str, dimension: int) -> None:
        pass

    @abstractmethod
    async def upsert(self, collection: str, points: List[VectorPoint]) -> List[str]:
        pass

    @abstractmethod
    async def search(self, collection: str, query_vector: List[float],
                     top_k: int = 4) -> List[SearchResult]:
        pass

    @abstractmethod
    async def delete_points(self, collection: str, point_ids: List[str]) -> None:
        pass

    @abstractmethod
    async def delete_document(self, collection: str, document_id: str) -> None:
        pass

    @abstractmethod
    async def get_stats(self) -> Dict[str, Any]:
        pass


class QdrantVectorStore(BaseVectorStore):
    """Qdrant-backed store, cosine distance"""

    def __init__(self, url: str = None, api_key: str = None, client: AsyncQdrantClient = None):
        self.url = url or settings.qdrant_endpoint
        self.client = client or AsyncQdrantClient(url=self.url, api_key=api_key or settings.qdrant_api_key)

    async def collection_exists(self, collection: str) -> bool:
        return await self.client.collection_exists(collection)

    async def ensure_collection(self, collection: str, dimension: int) -> None:
        if await self.client.collection_exists(collection):
            return

        try:
            await self.client.create_collection(
                collection_name=collection,
                vectors_config=qmodels.VectorParams(size=dimension, distance=qmodels.Distance.COSINE),
            )
        except UnexpectedResponse as e:
            # Another upload created it first
            if await self.client.collection_exists(collection):
                logger.info(f"Qdrant collection '{collection}' already created ({e.status_code})")
                return
            raise

        await self.client.create_payload_index(
            collection_name=collection,
            field_name=DOCUMENT_ID_KEY,
            field_schema=qmodels.PayloadSchemaType.KEYWORD,
        )
        logger.info(f"Created Qdrant collection '{collection}' (dimension: {dimension})")

    async def upsert(self, collection: str, points: List[VectorPoint]) -> List[str]:
        await self.client.upsert(
            collection_name=collection,
            points=[
                qmodels.PointStruct(id=point.id, vector=point.vector, payload=point.payload)
                for point in points
            ],
            wait=True,
        )
        logger.info(f"Upserted {len(points)} points into '{collection}'")
        return [point.id for point in points]

    async def search(self, collection: str, query_vector: List[float],
                     top_k: int = 4) -> List[SearchResult]:
        response = await self.client.query_points(
            collection_name=collection,
            query=query_vector,
            limit=top_k,
            with_payload=True,
        )
        return [_result_from_payload(p.id, p.score, p.payload) for p in response.points]

    async def delete_points(self, collection: str, point_ids: List[str]) -> None:
        if not point_ids:
            return
        await self.client.delete(
            collection_name=collection,
            points_selector=qmodels.PointIdsList(points=list(point_ids)),
            wait=True,
        )

    async def delete_document(self, collection: str, document_id: str) -> None:
        await self.client.delete(
            collection_name=collection,
            points_selector=qmodels.FilterSelector(
                filter=qmodels.Filter(must=[
                    qmodels.FieldCondition(key=DOCUMENT_ID_KEY, match=qmodels.MatchValue(value=document_id))
                ])
            ),
            wait=True,
        )

    async def get_stats(self) -> Dict[str, Any]:
        response = await self.client.get_collections()
        return {
            "store_type": "qdrant",
            "url": self.url,
            "total_collections": len(response.collections),
        }


class FAISSCollection:
    """One FAISS index plus its payloads, persisted in its own directory"""

    def __init__(self, path: Path, dimension: Optional[int] = None):
        self.path = path
        self.index_file = path / "faiss.index"
        self.metadata_file = path / "metadata.json"

        self.index = None
        self.dimension = dimension
        self.payloads: Dict[str, Dict[str, Any]] = {}   # point_id -> payload
        self.vectors: Dict[str, List[float]] = {}       # point_id -> raw vector
        self.idx_to_point: Dict[int, str] = {}          # faiss row -> point_id

        self._load()

    def _load(self):
        """Load existing index or start an empty one"""
        if self.metadata_file.exists():
            with open(self.metadata_file, 'r') as f:
                data = json.load(f)
            self.dimension = data["dimension"]
            self.payloads = data.get("payloads", {})
            self.vectors = data.get("vectors", {})

        if self.index_file.exists():
            self.index = faiss.read_index(str(self.index_file))
            self.idx_to_point = dict(enumerate(self.vectors.keys()))
            logger.debug(f"Loaded FAISS index {self.path.name} with {self.index.ntotal} vectors")
        elif self.dimension:
            self.index = faiss.IndexFlatIP(self.dimension)

    def save(self):
        """Save index and payloads to disk"""
        self.path.mkdir(parents=True, exist_ok=True)
        faiss.write_index(self.index, str(self.index_file))

        with open(self.metadata_file, 'w') as f:
            json.dump({
                "dimension": self.dimension,
                "payloads": self.payloads,
                "vectors": self.vectors
            }, f)

    @staticmethod
    def _normalized(vectors: List[List[float]]) -> np.ndarray:
        np_vectors = np.array(vectors, dtype=np.float32)
        faiss.normalize_L2(np_vectors)
        return np_vectors

    def add(self, points: List[VectorPoint]):
        for point in points:
            if len(point.vector) != self.dimension:
                raise ValueError(
                    f"Vector dimension {len(point.vector)} does not match collection dimension {self.dimension}"
                )

        replaced = [p.id for p in points if p.id in self.vectors]
        if replaced:
            self.remove(replaced)

        start_idx = self.index.ntotal
        self.index.add(self._normalized([p.vector for p in points]))

        for i, point in enumerate(points):
            self.idx_to_point[start_idx + i] = point.id
            self.payloads[point.id] = point.payload
            self.vectors[point.id] = list(point.vector)

        self.save()

    def search(self, query_vector: List[float], top_k: int) -> List[SearchResult]:
        if self.index is None or self.index.ntotal == 0:
            return []

        scores, indices = self.index.search(self._normalized([query_vector]), min(top_k, self.index.ntotal))

        results = []
        for score, idx in zip(scores[0], indices[0]):
            if idx == -1:  # FAISS returns -1 for invalid results
                continue
            point_id = self.idx_to_point.get(int(idx))
            if point_id is not None:
                results.append(_result_from_payload(point_id, score, self.payloads.get(point_id)))
        return results

    def remove(self, point_ids: List[str]) -> int:
        """Drop points and rebuild the index (FAISS doesn't support efficient deletion)"""
        removed = 0
        for point_id in point_ids:
            if self.vectors.pop(point_id, None) is not None:
                self.payloads.pop(point_id, None)
                removed += 1

        if removed:
            self.index = faiss.IndexFlatIP(self.dimension)
            self.idx_to_point = dict(enumerate(self.vectors.keys()))
            if self.vectors:
                self.index.add(self._normalized(list(self.vectors.values())))
            self.save()

        return removed


class FAISSVectorStore(BaseVectorStore):
    """FAISS-based local store, one directory per collection"""

    def __init__(self, store_path: str = None):
        self.store_path = Path(store_path or settings.vector_db_path)
        self.store_path.mkdir(parents=True, exist_ok=True)
        self._collections: Dict[str, FAISSCollection] = {}
        self._lock = asyncio.Lock()

    def _collection_path(self, collection: str) -> Path:
        # Collection names are e-mail addresses; hash them into safe directory names
        digest = hashlib.sha256(collection.encode("utf-8")).hexdigest()[:32]
        return self.store_path / digest

    def _get(self, collection: str) -> Optional[FAISSCollection]:
        if collection not in self._collections:
            path = self._collection_path(collection)
            if not path.exists():
                return None
            self._collections[collection] = FAISSCollection(path)
        return self._collections[collection]

    async def collection_exists(self, collection: str) -> bool:
        return self._get(collection) is not None

    async def ensure_collection(self, collection: str, dimension: int) -> None:
        async with self._lock:
            if self._get(collection) is not None:
                return
            faiss_collection = FAISSCollection(self._collection_path(collection), dimension)
            faiss_collection.save()
            self._collections[collection] = faiss_collection
            logger.info(f"Created FAISS collection '{collection}' (dimension: {dimension})")

    async def upsert(self, collection: str, points: List[VectorPoint]) -> List[str]:
        async with self._lock:
            faiss_collection = self._get(collection)
            if faiss_collection is None:
                raise ValueError(f"Collection not found: {collection}")
            faiss_collection.add(points)
        logger.info(f"Added {len(points)} vectors to FAISS collection '{collection}'")
        return [point.id for point in points]

    async def search(self, collection: str, query_vector: List[float],
                     top_k: int = 4) -> List[SearchResult]:
        faiss_collection = self._get(collection)
        if faiss_collection is None:
            return []
        return faiss_collection.search(query_vector, top_k)

    async def delete_points(self, collection: str, point_ids: List[str]) -> None:
        async with self._lock:
            faiss_collection = self._get(collection)
            if faiss_collection is None or not point_ids:
                return
            removed = faiss_collection.remove(list(point_ids))
        logger.info(f"Deleted {removed} vectors from FAISS collection '{collection}'")

    async def delete_document(self, collection: str, document_id: str) -> None:
        async with self._lock:
            faiss_collection = self._get(collection)
            if faiss_collection is None:
                return
            point_ids = [
                point_id for point_id, payload in faiss_collection.payloads.items()
                if (payload.get("metadata") or {}).get("documentId") == document_id
            ]
            faiss_collection.remove(point_ids)

    async def get_stats(self) -> Dict[str, Any]:
        collections = [p for p in self.store_path.iterdir() if p.is_dir()]
        return {
            "store_type": "faiss",
            "index_type": "FAISS IndexFlatIP",
            "total_collections": len(collections),
        }


class VectorStoreManager:
    """Entry point for vector store operations, keyed by user collection"""

    def __init__(self, vector_store: BaseVectorStore = None):
        self.store_type = settings.vector_db_type
        self._vector_store = vector_store

    @property
    def vector_store(self) -> BaseVectorStore:
        if self._vector_store is None:
            self._vector_store = self._create_vector_store()
        return self._vector_store

    def _create_vector_store(self) -> BaseVectorStore:
        """Create vector store based on configuration"""
        if self.store_type.lower() == "qdrant":
            return QdrantVectorStore()
        elif self.store_type.lower() == "faiss":
            return FAISSVectorStore(settings.vector_db_path)
        else:
            raise ValueError(f"Unsupported vector store type: {self.store_type}")

    @staticmethod
    def collection_for(email: str) -> str:
        """Every user gets one collection named after their e-mail address"""
        return email

    async def add_document_chunks(self, email: str, dimension: int,
                                  points: List[VectorPoint]) -> List[str]:
        collection = self.collection_for(email)
        await self.vector_store.ensure_collection(collection, dimension)
        return await self.vector_store.upsert(collection, points)

    async def has_collection(self, email: str) -> bool:
        return await self.vector_store.collection_exists(self.collection_for(email))

    async def search_similar(self, email: str, query_vector: List[float],
                             top_k: int = None) -> List[SearchResult]:
        collection = self.collection_for(email)
        if not await self.vector_store.collection_exists(collection):
            logger.info(f"No vector collection for {email}")
            return []
        return await self.vector_store.search(collection, query_vector, top_k or settings.retrieval_k)

    async def delete_points(self, email: str, point_ids: List[str]) -> None:
        await self.vector_store.delete_points(self.collection_for(email), point_ids)

    async def delete_document(self, email: str, document_id: str) -> None:
        await self.vector_store.delete_document(self.collection_for(email), document_id)

    async def get_stats(self) -> Dict[str, Any]:
        return await self.vector_store.get_stats()


# Global vector store instance
vector_store_manager = VectorStoreManager()
