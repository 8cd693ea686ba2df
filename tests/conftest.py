import os
import re
import math
import hashlib
import tempfile
from typing import Dict, List, Any, Tuple

# Settings are read once, so the environment has to be in place before docchat is imported
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["REDIS_URL"] = ""
os.environ["VECTOR_DB_TYPE"] = "faiss"
os.environ["VECTOR_DB_PATH"] = tempfile.mkdtemp(prefix="docchat-vectors-")
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["API_BASE_URL"] = "http://testserver"
os.environ["WEB_BASE_URL"] = "http://localhost:8501"
os.environ["GOOGLE_CLIENT_ID"] = "google-client-id"
os.environ["GOOGLE_CLIENT_SECRET"] = "google-client-secret"
os.environ["GITHUB_CLIENT_ID"] = "github-client-id"
os.environ["GITHUB_CLIENT_SECRET"] = "github-client-secret"
os.environ.pop("OPENAI_API_KEY", None)

import fitz
import httpx
import openai
import pytest
from fastapi.testclient import TestClient

from docchat.auth import create_session_token
from docchat.chat_service import BaseChatModel, ChatService
from docchat.database import engine, get_db_session
from docchat.document_service import DocumentService
from docchat.embedding_service import BaseEmbeddingProvider, EmbeddingResult, EmbeddingService
from docchat.main import app, get_chat_service, get_document_service, get_vector_store
from docchat.models import Base, User
from docchat.vector_store import BaseVectorStore, SearchResult, VectorPoint, VectorStoreManager

DIMENSION = 32


def embed_text(text: str) -> List[float]:
    """Hashed bag of words, enough for overlapping texts to score higher"""
    vector = [0.0] * DIMENSION
    for word in re.findall(r"\w+", text.lower()):
        vector[int(hashlib.md5(word.encode()).hexdigest(), 16) % DIMENSION] += 1.0
    return vector


def make_pdf(pages: List[str]) -> bytes:
    doc = fitz.open()
    for text in pages:
        page = doc.new_page()
        if text:
            page.insert_text((72, 72), text)
    data = doc.tobytes()
    doc.close()
    return data


def rate_limit_error() -> openai.RateLimitError:
    request = httpx.Request("POST", "https://api.openai.com/v1/embeddings")
    response = httpx.Response(429, request=request)
    return openai.RateLimitError("You exceeded your current quota", response=response, body=None)


class FakeEmbeddingProvider(BaseEmbeddingProvider):
    def __init__(self):
        self.calls: List[List[str]] = []
        self.error: Exception = None

    async def encode(self, texts: List[str]) -> EmbeddingResult:
        self.calls.append(list(texts))
        if self.error is not None:
            raise self.error
        return EmbeddingResult([embed_text(t) for t in texts], "fake-embeddings", DIMENSION, 0.0)

    def get_dimension(self) -> int:
        return DIMENSION

    def get_model_name(self) -> str:
        return "fake-embeddings"


class InMemoryVectorStore(BaseVectorStore):
    def __init__(self):
        self.collections: Dict[str, Dict[str, Tuple[List[float], Dict[str, Any]]]] = {}
        self.deleted_points: List[str] = []
        self.upsert_error: Exception = None
        self.delete_error: Exception = None
        self.delete_points_error: Exception = None
        self.stats_error: Exception = None

    async def collection_exists(self, collection: str) -> bool:
        return collection in self.collections

    async def ensure_collection(self, collection: str, dimension: int) -> None:
        self.collections.setdefault(collection, {})

    async def upsert(self, collection: str, points: List[VectorPoint]) -> List[str]:
        if self.upsert_error is not None:
            raise self.upsert_error
        for point in points:
            self.collections[collection][point.id] = (point.vector, point.payload)
        return [point.id for point in points]

    async def search(self, collection: str, query_vector: List[float], top_k: int = 4) -> List[SearchResult]:
        def cosine(a, b):
            norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
            return sum(x * y for x, y in zip(a, b)) / norm if norm else 0.0

        scored = [
            SearchResult(point_id, payload["content"], cosine(query_vector, vector), payload["metadata"])
            for point_id, (vector, payload) in self.collections.get(collection, {}).items()
        ]
        scored.sort(key=lambda r: r.score, reverse=True)
        return scored[:top_k]

    async def delete_points(self, collection: str, point_ids: List[str]) -> None:
        error = self.delete_points_error or self.delete_error
        if error is not None:
            raise error
        for point_id in point_ids:
            self.collections.get(collection, {}).pop(point_id, None)
            self.deleted_points.append(point_id)

    async def delete_document(self, collection: str, document_id: str) -> None:
        if self.delete_error is not None:
            raise self.delete_error
        points = self.collections.get(collection, {})
        for point_id in [p for p, (_, payload) in points.items()
                         if payload["metadata"]["documentId"] == document_id]:
            points.pop(point_id)

    async def get_stats(self) -> Dict[str, Any]:
        if self.stats_error is not None:
            raise self.stats_error
        return {"store_type": "memory", "total_collections": len(self.collections)}

    def points_for(self, collection: str) -> Dict[str, Tuple[List[float], Dict[str, Any]]]:
        return self.collections.get(collection, {})


class FakeChatModel(BaseChatModel):
    def __init__(self, answer: str = "Paris is the capital of France."):
        self.answer = answer
        self.prompts: List[str] = []
        self.error: Exception = None

    async def complete(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        return self.answer

    def get_model_name(self) -> str:
        return "fake-chat"


@pytest.fixture(autouse=True)
def reset_database():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def embedding_provider():
    return FakeEmbeddingProvider()


@pytest.fixture
def vector_store():
    return InMemoryVectorStore()


@pytest.fixture
def chat_model():
    return FakeChatModel()


@pytest.fixture
def client(embedding_provider, vector_store, chat_model):
    embeddings = EmbeddingService(provider=embedding_provider)
    vectors = VectorStoreManager(vector_store)

    app.dependency_overrides[get_document_service] = lambda: DocumentService(embeddings, vectors)
    app.dependency_overrides[get_chat_service] = lambda: ChatService(embeddings, vectors, chat_model)
    app.dependency_overrides[get_vector_store] = lambda: vectors

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


def create_user(email: str, name: str = "Test User") -> User:
    with get_db_session() as db:
        user = User(email=email, name=name)
        db.add(user)
        db.commit()
        db.refresh(user)
        db.expunge(user)
        return user


@pytest.fixture
def user():
    return create_user("alice@example.com", "Alice")


@pytest.fixture
def auth_headers(user):
    return {"Authorization": f"Bearer {create_session_token(user)}"}
