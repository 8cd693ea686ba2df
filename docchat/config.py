from typing import List, Optional
from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    web_port: int = 8501
    debug: bool = False
    log_level: str = "INFO"
    api_base_url: str = "http://localhost:8000"
    web_base_url: str = "http://localhost:8501"
    cors_origins: str = "http://localhost:8501"  # Comma-separated

    # Session Configuration
    secret_key: str = "dev-secret-key"
    session_cookie_name: str = "docchat_session"
    session_max_age_days: int = 30
    oauth_state_ttl: int = 600  # seconds

    # Identity Providers
    google_client_id: Optional[str] = None
    google_client_secret: Optional[str] = None
    github_client_id: Optional[str] = None
    github_client_secret: Optional[str] = None

    # OpenAI Configuration
    openai_api_key: Optional[str] = None
    openai_embedding_model: str = "text-embedding-3-small"
    openai_chat_model: str = "gpt-3.5-turbo"

    # Embedding Configuration
    embedding_provider: str = "openai"  # openai, huggingface
    embedding_model: str = "sentence-transformers/all-MiniLM-L6-v2"
    embedding_max_retries: int = 3
    embedding_max_concurrency: int = 5
    batch_size: int = 32

    # Database Configuration
    database_url: str = "sqlite:///./docchat.db"
    redis_url: Optional[str] = "redis://localhost:6379"

    # Vector Database Configuration
    vector_db_type: str = "qdrant"  # qdrant, faiss
    vector_db_path: str = "./vector_store"
    qdrant_endpoint: str = "http://localhost:6333"
    qdrant_api_key: Optional[str] = None
    index_dimension: int = 1536

    # File Processing Configuration
    max_file_size_mb: int = 50
    chunk_size: int = 1000
    chunk_overlap: int = 200
    content_preview_chars: int = 4000

    # Retrieval Configuration
    retrieval_k: int = 4

    def get_cors_origins(self) -> List[str]:
        """Get allowed CORS origins as a list"""
        return [origin.strip() for origin in self.cors_origins.split(',') if origin.strip()]

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache()
def get_settings() -> Settings:
    return Settings()
