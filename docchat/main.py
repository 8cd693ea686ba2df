import sys
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import List, Optional
from urllib.parse import urlencode, urlsplit, urlunsplit, parse_qsl
import httpx
from fastapi import FastAPI, HTTPException, Depends, UploadFile, File
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from sqlalchemy.orm import Session
from loguru import logger

from .config import get_settings
from .database import create_tables, get_db, cache_manager
from .models import (
    User, UploadResponse, DocumentResponse, DeleteResponse, ChatRequest, ChatResponse,
    SessionUser, SessionResponse, ProviderInfo
)
from .auth import (
    STATE_KEY_PREFIX, get_providers, resolve_redirect, new_state, create_session_token,
    get_session_claims, get_session_user, get_current_user, upsert_oauth_user,
    auth_error_message, configured_provider_names
)
from .document_service import DocumentService, document_service, QUOTA_ERROR
from .embedding_service import is_quota_error
from .chat_service import ChatService, chat_service
from .vector_store import VectorStoreManager, vector_store_manager

settings = get_settings()


def configure_logging(level: str):
    logger.remove()
    logger.add(sys.stderr, level=level.upper())


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management"""
    configure_logging(settings.log_level)
    logger.info("Starting DocChat...")

    create_tables()
    logger.info("Database initialized")

    logger.info(f"Vector store: {settings.vector_db_type}, embeddings: {settings.embedding_provider}")
    logger.info("Application startup completed")

    yield

    logger.info("Application shutdown")


app = FastAPI(
    title="DocChat",
    description="Upload PDF documents and chat with them using retrieval-augmented generation",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.get_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Service dependencies, overridable in tests
def get_document_service() -> DocumentService:
    return document_service


def get_chat_service() -> ChatService:
    return chat_service


def get_vector_store() -> VectorStoreManager:
    return vector_store_manager


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request, exc: StarletteHTTPException):
    content = exc.detail if isinstance(exc.detail, dict) else {"error": exc.detail}
    return JSONResponse(status_code=exc.status_code, content=content, headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request, exc: RequestValidationError):
    logger.debug(f"Invalid request body: {exc.errors()}")
    return JSONResponse(status_code=400, content={"error": "Invalid request body"})


# Health check endpoint
@app.get("/health")
async def health_check(vectors: VectorStoreManager = Depends(get_vector_store)):
    """Health check endpoint"""
    try:
        stats = await vectors.get_stats()
        return {
            "status": "healthy",
            "timestamp": time.time(),
            "vector_store": stats,
            "embedding_provider": settings.embedding_provider,
            "embedding_model": (
                settings.openai_embedding_model if settings.embedding_provider == "openai"
                else settings.embedding_model
            )
        }
    except Exception as e:
        logger.error(f"Health check failed: {e}")
        raise HTTPException(status_code=503, detail="Service unhealthy")


# Authentication endpoints
def _with_query(url: str, **params) -> str:
    parts = urlsplit(url)
    query = parse_qsl(parts.query, keep_blank_values=True)
    query.extend((key, value) for key, value in params.items() if value is not None)
    return urlunsplit(parts._replace(query=urlencode(query)))


def _auth_error_redirect(error: str, description: Optional[str] = None) -> RedirectResponse:
    return RedirectResponse(
        _with_query(settings.web_base_url, error=error, error_description=description),
        status_code=302
    )


@app.get("/auth/providers", response_model=List[ProviderInfo])
async def list_providers():
    """Configured identity providers"""
    base_url = settings.api_base_url.rstrip("/")
    return [
        ProviderInfo(id=provider.id, name=provider.name, signin_url=f"{base_url}/auth/signin/{provider.id}")
        for provider in get_providers().values()
    ]


@app.get("/auth/signin/{provider_id}")
async def signin(provider_id: str, callbackUrl: Optional[str] = None):
    """Start the OAuth authorization code flow"""
    provider = get_providers().get(provider_id)
    if provider is None:
        logger.warning(f"Sign-in requested for unconfigured provider: {provider_id}")
        return _auth_error_redirect(provider_id, "Provider is not configured")

    state = new_state()
    await cache_manager.set(
        STATE_KEY_PREFIX + state,
        resolve_redirect(callbackUrl, settings.web_base_url),
        ttl=settings.oauth_state_ttl
    )
    return RedirectResponse(provider.authorization_url(state), status_code=302)


@app.get("/auth/callback/{provider_id}")
async def oauth_callback(
    provider_id: str,
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """Finish the OAuth flow, create the session and redirect back to the app"""
    provider = get_providers().get(provider_id)
    if provider is None:
        return _auth_error_redirect(provider_id, "Provider is not configured")

    if error:
        logger.warning(f"{provider.name} returned an error: {error}")
        return _auth_error_redirect(provider_id, error)

    callback_url = await cache_manager.pop(STATE_KEY_PREFIX + state) if state else None
    if not code or callback_url is None:
        logger.warning(f"Invalid OAuth callback for {provider.name}: missing code or unknown state")
        return _auth_error_redirect(provider_id, "Invalid or expired sign-in attempt")

    try:
        async with httpx.AsyncClient(timeout=30) as client:
            tokens = await provider.exchange_code(client, code)
            profile = await provider.fetch_profile(client, tokens)
        user = upsert_oauth_user(db, provider, profile, tokens)

    except Exception as e:
        db.rollback()
        logger.error(f"{provider.name} sign-in failed: {e}")
        return _auth_error_redirect(provider_id, str(e))

    token = create_session_token(user)
    logger.info("User signed in successfully")

    response = RedirectResponse(_with_query(callback_url, session_token=token), status_code=302)
    response.set_cookie(
        settings.session_cookie_name,
        token,
        max_age=settings.session_max_age_days * 24 * 60 * 60,
        httponly=True,
        samesite="lax"
    )
    return response


@app.get("/auth/session", response_model=SessionResponse)
async def get_session(claims: dict = Depends(get_session_claims)):
    """Current session"""
    return SessionResponse(
        user=SessionUser(
            id=claims.get("sub"),
            email=claims["email"],
            name=claims.get("name"),
            image=claims.get("picture")
        ),
        expires=datetime.fromtimestamp(claims["exp"], tz=timezone.utc)
    )


@app.post("/auth/signout")
async def signout():
    """Clear the session cookie"""
    response = JSONResponse({"success": True})
    response.delete_cookie(settings.session_cookie_name)
    logger.info("User signed out successfully")
    return response


@app.get("/auth/error")
async def auth_error(error: Optional[str] = None, error_description: Optional[str] = None):
    """Describe a failed sign-in"""
    body = {
        "error": error,
        "message": auth_error_message(error),
        "errorDescription": error_description
    }
    if settings.debug:
        body["debug"] = {
            "configuredProviders": configured_provider_names(),
            "apiBaseUrl": settings.api_base_url,
            "webBaseUrl": settings.web_base_url
        }
    return body


# Document management endpoints
@app.post("/api/upload", response_model=UploadResponse)
async def upload_document(
    file: Optional[UploadFile] = File(None),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    service: DocumentService = Depends(get_document_service)
):
    """Upload a PDF and index it into the user's collection"""
    try:
        logger.info(f"Uploading document for {user.email}: {file.filename if file else None}")
        return await service.upload_document(db, user, file)

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error processing PDF: {e}")
        raise HTTPException(
            status_code=500,
            detail={"error": "Failed to process PDF", "details": str(e) or "Unknown error occurred"}
        )


@app.get("/api/documents", response_model=List[DocumentResponse])
async def list_documents(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    service: DocumentService = Depends(get_document_service)
):
    """List the user's documents, newest first"""
    try:
        return service.list_documents(db, user)

    except Exception as e:
        logger.error(f"Error fetching documents: {e}")
        raise HTTPException(status_code=500, detail="Failed to fetch documents")


@app.delete("/api/documents/{document_id}", response_model=DeleteResponse)
async def delete_document(
    document_id: str,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    service: DocumentService = Depends(get_document_service)
):
    """Delete one of the user's documents"""
    try:
        logger.info(f"Attempting to delete document: {document_id}")
        await service.delete_document(db, user, document_id)
        return DeleteResponse()

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error deleting document: {e}")
        raise HTTPException(status_code=500, detail="Failed to delete document")


# Chat endpoint
@app.post("/api/chat", response_model=ChatResponse)
async def chat(
    request: ChatRequest,
    session_user: SessionUser = Depends(get_session_user),
    service: ChatService = Depends(get_chat_service)
):
    """Answer a question from the user's documents"""
    if not request.message or not request.message.strip():
        raise HTTPException(status_code=400, detail="No message provided")

    try:
        return await service.answer(session_user.email, request.message.strip())

    except Exception as e:
        if is_quota_error(e):
            logger.error(f"Chat quota exceeded: {e}")
            raise HTTPException(status_code=429, detail=QUOTA_ERROR)
        logger.error(f"Error in chat: {e}")
        raise HTTPException(status_code=500, detail="Failed to process chat message")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "docchat.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        log_level=settings.log_level.lower()
    )
