"""Content-addressed store for finished layouts.

The cache is a soft dependency: when the database is missing or failing,
reads behave as misses and writes are dropped with a warning.
"""

import hashlib
import logging
from datetime import datetime

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from cosmos.db import Base, build_engine, build_session_factory
from cosmos.models import CachedLayout
from cosmos.schemas import CacheEntry, CosmosLayout
from cosmos.services.utils import normalize_source_key
from cosmos.settings import Settings

logger = logging.getLogger(__name__)


def cache_key(source: str) -> str:
    digest = hashlib.sha256(normalize_source_key(source).encode("utf-8")).hexdigest()
    return f"cosmos_{digest[:40]}"


class ResultCache:
    def __init__(self, session_factory: sessionmaker | None):
        self._session_factory = session_factory
        self._schema_ready = False

    @classmethod
    def from_settings(cls, settings: Settings) -> "ResultCache":
        if not settings.cache_database_url:
            logger.warning("CACHE_DATABASE_URL is empty; layout caching disabled.")
            return cls(None)
        try:
            engine = build_engine(settings.cache_database_url)
        except SQLAlchemyError as exc:
            logger.warning("Could not configure the layout cache; caching disabled: %s", exc)
            return cls(None)
        return cls(build_session_factory(engine))

    @property
    def enabled(self) -> bool:
        return self._session_factory is not None

    def _ensure_schema(self, session: Session) -> None:
        if not self._schema_ready:
            Base.metadata.create_all(bind=session.get_bind(), tables=[CachedLayout.__table__])
            self._schema_ready = True

    def get(self, source: str) -> CosmosLayout | None:
        if self._session_factory is None:
            return None
        key = cache_key(source)
        try:
            with self._session_factory() as session:
                self._ensure_schema(session)
                row = session.get(CachedLayout, key)
                payload = row.serialized_layout if row is not None else None
        except SQLAlchemyError as exc:
            logger.warning("Cache read failed for %s: %s", source, exc)
            return None
        if payload is None:
            logger.info("Cache miss for %s", source)
            return None
        try:
            layout = CosmosLayout.model_validate_json(payload)
        except ValidationError as exc:
            logger.warning("Ignoring unreadable cache entry %s: %s", key, exc)
            return None
        logger.info("Cache hit for %s", source)
        return layout

    def set(self, source: str, layout: CosmosLayout) -> bool:
        if self._session_factory is None:
            return False
        entry = CachedLayout(
            key=cache_key(source),
            source=source,
            topic=layout.topic,
            serialized_layout=layout.model_dump_json(),
            post_count=len(layout.posts),
            processing_time_ms=layout.metadata.processing_time_ms,
            created_at=datetime.utcnow(),
        )
        try:
            with self._session_factory() as session:
                self._ensure_schema(session)
                session.merge(entry)
                session.commit()
        except SQLAlchemyError as exc:
            logger.warning("Cache write failed for %s: %s", source, exc)
            return False
        logger.info("Stored layout for %s (%d posts)", source, entry.post_count)
        return True

    def delete(self, source: str) -> bool:
        if self._session_factory is None:
            return False
        try:
            with self._session_factory() as session:
                self._ensure_schema(session)
                row = session.get(CachedLayout, cache_key(source))
                if row is None:
                    return False
                session.delete(row)
                session.commit()
        except SQLAlchemyError as exc:
            logger.warning("Cache delete failed for %s: %s", source, exc)
            return False
        return True

    def entries(self, limit: int = 50) -> list[CacheEntry]:
        if self._session_factory is None:
            return []
        try:
            with self._session_factory() as session:
                self._ensure_schema(session)
                rows = session.query(CachedLayout).order_by(CachedLayout.created_at.desc()).limit(limit).all()
                return [CacheEntry.model_validate(row) for row in rows]
        except SQLAlchemyError as exc:
            logger.warning("Cache listing failed: %s", exc)
            return []
