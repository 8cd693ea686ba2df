import time
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool
from contextlib import contextmanager
import redis
from typing import Generator, Optional, Dict, Tuple
from .config import get_settings
from .models import Base
from loguru import logger

settings = get_settings()

# SQLAlchemy Database Setup
if settings.database_url.startswith("sqlite"):
    engine = create_engine(
        settings.database_url,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
        echo=settings.debug
    )

    @event.listens_for(engine, "connect")
    def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
        # SQLite ignores ON DELETE CASCADE unless foreign keys are switched on
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()
else:
    engine = create_engine(
        settings.database_url,
        echo=settings.debug
    )

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def _connect_redis(url: Optional[str]):
    if not url:
        logger.info("Redis disabled. Using memory cache.")
        return None
    try:
        client = redis.from_url(url, decode_responses=True)
        client.ping()
        logger.info("Redis connection established")
        return client
    except Exception as e:
        logger.warning(f"Redis connection failed: {e}. Using memory cache fallback.")
        return None


redis_client = _connect_redis(settings.redis_url)


def create_tables():
    """Create all database tables"""
    Base.metadata.create_all(bind=engine)
    logger.info("Database tables created successfully")


def get_db() -> Generator[Session, None, None]:
    """Dependency to get database session"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def get_db_session() -> Generator[Session, None, None]:
    """Context manager for database session"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


class CacheManager:
    """Cache management with Redis fallback to memory"""

    def __init__(self, client=None):
        self._memory_cache: Dict[str, Tuple[str, Optional[float]]] = {}
        self.redis_client = client

    def _memory_get(self, key: str) -> Optional[str]:
        entry = self._memory_cache.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= time.monotonic():
            self._memory_cache.pop(key, None)
            return None
        return value

    async def get(self, key: str) -> Optional[str]:
        """Get value from cache"""
        if self.redis_client:
            try:
                return self.redis_client.get(key)
            except Exception as e:
                logger.warning(f"Redis get failed: {e}")

        return self._memory_get(key)

    async def set(self, key: str, value: str, ttl: int = None) -> bool:
        """Set value in cache"""
        if self.redis_client:
            try:
                if ttl:
                    return bool(self.redis_client.setex(key, ttl, value))
                else:
                    return bool(self.redis_client.set(key, value))
            except Exception as e:
                logger.warning(f"Redis set failed: {e}")

        # Fallback to memory cache
        expires_at = time.monotonic() + ttl if ttl else None
        self._memory_cache[key] = (value, expires_at)
        return True

    async def pop(self, key: str) -> Optional[str]:
        """Get and delete a key in one step"""
        if self.redis_client:
            try:
                # GET and DEL in one MULTI/EXEC
                pipe = self.redis_client.pipeline()
                pipe.get(key)
                pipe.delete(key)
                value, _ = pipe.execute()
                return value
            except Exception as e:
                logger.warning(f"Redis pop failed: {e}")

        value = self._memory_get(key)
        self._memory_cache.pop(key, None)
        return value

    async def delete(self, key: str) -> bool:
        """Delete key from cache"""
        if self.redis_client:
            try:
                return bool(self.redis_client.delete(key))
            except Exception as e:
                logger.warning(f"Redis delete failed: {e}")

        return self._memory_cache.pop(key, None) is not None


# Global cache manager instance
cache_manager = CacheManager(redis_client)
