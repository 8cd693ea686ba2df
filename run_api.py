#!/usr/bin/env python3
"""Startup script for the DocChat API server."""

import sys
from pathlib import Path

# Add the project root to Python path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

if __name__ == "__main__":
    import uvicorn
    from docchat.config import get_settings

    settings = get_settings()

    print(f"Starting DocChat API server...")
    print(f"Server will be available at: http://{settings.api_host}:{settings.api_port}")
    print(f"API Documentation: http://{settings.api_host}:{settings.api_port}/docs")
    print(f"Vector store: {settings.vector_db_type}, embeddings: {settings.embedding_provider}")

    uvicorn.run(
        "docchat.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
        access_log=True
    )
