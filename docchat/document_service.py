import uuid
from typing import List, Optional
from fastapi import UploadFile, HTTPException
from sqlalchemy.orm import Session
from loguru import logger
from .config import get_settings
from .models import Document, DocumentVector, DocumentResponse, UploadResponse, User
from .document_processor import DocumentProcessor, ProcessedDocument, TextChunk
from .embedding_service import EmbeddingService, embedding_service, is_quota_error
from .vector_store import VectorStoreManager, VectorPoint, vector_store_manager

settings = get_settings()

QUOTA_ERROR = {
    "error": "OpenAI API quota exceeded. Please check your billing details or try again later.",
    "details": "You've exceeded your current OpenAI API quota. Please check your plan and billing "
               "details at https://platform.openai.com/account/billing",
}


class DocumentService:
    """Keeps document rows, point ids and vectors in step for one user at a time"""

    def __init__(self, embeddings: EmbeddingService = None, vectors: VectorStoreManager = None,
                 processor: DocumentProcessor = None):
        self.embedding_service = embeddings or embedding_service
        self.vector_store = vectors or vector_store_manager
        self.processor = processor or DocumentProcessor()

    async def upload_document(self, db: Session, user: User, file: Optional[UploadFile]) -> UploadResponse:
        """Parse, embed and index an uploaded PDF"""
        if file is None or not file.filename:
            raise HTTPException(status_code=400, detail="No file provided")

        data = await file.read()
        is_valid, error_msg = self.processor.validate_file(data, file.filename, file.content_type)
        if not is_valid:
            raise HTTPException(status_code=400, detail=error_msg)

        try:
            processed = self.processor.process_bytes(data, file.filename)
        except ValueError as e:
            logger.warning(f"Could not read {file.filename}: {e}")
            raise HTTPException(status_code=400, detail="Could not read PDF")

        if not processed.chunks:
            raise HTTPException(status_code=400, detail="No extractable text found in PDF")

        document = self._create_document(db, user, processed)
        point_ids: List[str] = []

        try:
            point_ids = [str(uuid.uuid4()) for _ in processed.chunks]
            embeddings = await self.embedding_service.encode_documents(
                [chunk.content for chunk in processed.chunks]
            )
            if len(embeddings) != len(processed.chunks):
                raise RuntimeError("Embedding count does not match chunk count")

            points = [
                VectorPoint(id=point_id, vector=vector, payload=self._payload(document, user, chunk))
                for point_id, vector, chunk in zip(point_ids, embeddings, processed.chunks)
            ]
            await self.vector_store.add_document_chunks(
                user.email, self.embedding_service.get_dimension(), points
            )

            self._record_points(db, document.id, point_ids)

        except Exception as e:
            await self._discard_upload(db, user, document.id, point_ids)
            if is_quota_error(e):
                logger.error(f"Embedding quota exceeded while processing {file.filename}: {e}")
                raise HTTPException(status_code=429, detail=QUOTA_ERROR)
            raise

        logger.info(f"Document {document.id} indexed with {len(point_ids)} chunks for {user.email}")
        return UploadResponse(
            document=DocumentResponse.model_validate(document),
            chunk_count=len(point_ids)
        )

    def _create_document(self, db: Session, user: User, processed: ProcessedDocument) -> Document:
        document = Document(
            name=processed.filename,
            content=processed.preview,
            user_id=user.id
        )
        db.add(document)
        db.commit()
        db.refresh(document)
        logger.info(f"Created document {document.id} ({processed.filename}, "
                    f"{len(processed.pages)} pages via {processed.extraction_method})")
        return document

    @staticmethod
    def _payload(document: Document, user: User, chunk: TextChunk) -> dict:
        return {
            "content": chunk.content,
            "metadata": {
                "documentId": document.id,
                "name": document.name,
                "source": "pdf",
                "userId": user.id,
                "pageNumber": chunk.page_number,
                "chunkIndex": chunk.chunk_index,
            },
        }

    @staticmethod
    def _record_points(db: Session, document_id: str, point_ids: List[str]):
        """Store point IDs, skipping ones already recorded"""
        existing = {
            row.point_id for row in
            db.query(DocumentVector.point_id).filter(DocumentVector.document_id == document_id)
        }
        for point_id in dict.fromkeys(point_ids):
            if point_id not in existing:
                db.add(DocumentVector(point_id=point_id, document_id=document_id))
        db.commit()

    async def _discard_upload(self, db: Session, user: User, document_id: str, point_ids: List[str]):
        """Best-effort rollback of a failed upload; failures are only logged"""
        db.rollback()

        if point_ids:
            try:
                await self.vector_store.delete_points(user.email, point_ids)
            except Exception as e:
                logger.warning(f"Failed to remove vectors for failed upload {document_id}: {e}")

        try:
            document = db.query(Document).filter(Document.id == document_id).first()
            if document:
                db.delete(document)
                db.commit()
        except Exception as e:
            db.rollback()
            logger.warning(f"Failed to remove document record {document_id}: {e}")

    def list_documents(self, db: Session, user: User) -> List[DocumentResponse]:
        """User's documents, newest first"""
        documents = db.query(Document).filter(
            Document.user_id == user.id
        ).order_by(Document.created_at.desc()).all()

        logger.debug(f"Found {len(documents)} documents for {user.email}")
        return [DocumentResponse.model_validate(doc) for doc in documents]

    async def delete_document(self, db: Session, user: User, document_id: str) -> bool:
        """Delete the record, then best-effort delete its vectors"""
        document = db.query(Document).filter(
            Document.id == document_id,
            Document.user_id == user.id
        ).first()

        if not document:
            logger.info(f"Document {document_id} not found for user {user.id}")
            raise HTTPException(status_code=404, detail="Document not found")

        point_ids = [vector.point_id for vector in document.vectors]

        # Vector rows cascade with the document
        db.delete(document)
        db.commit()
        logger.info(f"Deleted document {document_id}")

        try:
            await self.vector_store.delete_points(user.email, point_ids)
        except Exception as e:
            logger.warning(f"Failed to delete recorded vectors for document {document_id}: {e}")

        # Catches points written without a recorded id
        try:
            await self.vector_store.delete_document(user.email, document_id)
        except Exception as e:
            logger.warning(f"Failed to delete vectors by filter for document {document_id}: {e}")

        return True


# Global document service instance
document_service = DocumentService()
