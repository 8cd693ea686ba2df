import uuid
from datetime import datetime, timezone
from typing import Optional, List
from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func
from pydantic import BaseModel
from pydantic.alias_generators import to_camel

Base = declarative_base()


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=_new_id)
    email = Column(String(320), unique=True, index=True, nullable=False)
    name = Column(String(255), nullable=True)
    image = Column(String(1024), nullable=True)
    email_verified = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=func.now())

    # Relationships
    accounts = relationship("Account", back_populates="user", cascade="all, delete-orphan")
    documents = relationship("Document", back_populates="user", cascade="all, delete-orphan")


class Account(Base):
    __tablename__ = "accounts"
    __table_args__ = (
        UniqueConstraint("provider", "provider_account_id", name="uq_account_provider"),
    )

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    provider = Column(String(50), nullable=False)
    provider_account_id = Column(String(255), nullable=False)
    access_token = Column(Text, nullable=True)
    refresh_token = Column(Text, nullable=True)
    expires_at = Column(Integer, nullable=True)
    token_type = Column(String(50), nullable=True)
    scope = Column(String(255), nullable=True)
    id_token = Column(Text, nullable=True)

    # Relationships
    user = relationship("User", back_populates="accounts")


class Document(Base):
    __tablename__ = "documents"

    id = Column(String(36), primary_key=True, default=_new_id)
    name = Column(String(255), nullable=False)
    content = Column(Text, nullable=False, default="")  # Text preview, not the full document
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    created_at = Column(DateTime, default=_utcnow, index=True)
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    # Relationships
    user = relationship("User", back_populates="documents")
    vectors = relationship("DocumentVector", back_populates="document", cascade="all, delete-orphan")


class DocumentVector(Base):
    __tablename__ = "document_vectors"
    __table_args__ = (
        UniqueConstraint("document_id", "point_id", name="uq_document_point"),
    )

    id = Column(Integer, primary_key=True, index=True)
    point_id = Column(String(64), nullable=False)  # Vector DB point ID
    document_id = Column(String(36), ForeignKey("documents.id", ondelete="CASCADE"), nullable=False, index=True)
    created_at = Column(DateTime, default=func.now())

    # Relationships
    document = relationship("Document", back_populates="vectors")


# Pydantic Models for API
class CamelModel(BaseModel):
    class Config:
        alias_generator = to_camel
        populate_by_name = True
        from_attributes = True


class DocumentResponse(CamelModel):
    id: str
    name: str
    created_at: datetime


class UploadResponse(CamelModel):
    success: bool = True
    document: DocumentResponse
    chunk_count: int


class DeleteResponse(BaseModel):
    success: bool = True


class ChatRequest(BaseModel):
    message: Optional[str] = None


class ChatSource(CamelModel):
    document_id: Optional[str] = None
    name: Optional[str] = None
    page_number: Optional[int] = None
    score: float


class ChatResponse(BaseModel):
    response: str
    sources: List[ChatSource] = []


class SessionUser(BaseModel):
    id: Optional[str] = None
    email: str
    name: Optional[str] = None
    image: Optional[str] = None


class SessionResponse(BaseModel):
    user: SessionUser
    expires: datetime


class ProviderInfo(CamelModel):
    id: str
    name: str
    signin_url: str
