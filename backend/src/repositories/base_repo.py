"""
Base repository with store-error translation.

CRITICAL: Callers never see raw SQLAlchemy exceptions. Every failure is
rolled back, logged, and re-raised as StoreError so signal handlers can
report "store unavailable" upstream without retrying internally.
"""

import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import TypeVar, Generic, Optional, Iterator

from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError

from src.db_base import Base

logger = logging.getLogger(__name__)

# Type variable for repository models
T = TypeVar("T", bound=Base)


class StoreError(Exception):
    """Raised when the persistent store cannot complete an operation."""

    def __init__(self, operation: str, message: str):
        self.operation = operation
        super().__init__(f"Store operation '{operation}' failed: {message}")


class BaseRepository(Generic[T], ABC):
    """
    Base repository for single-table access.

    All mutations are single-row writes by primary key followed by a commit,
    so no cross-row transaction is ever required.
    """

    def __init__(self, db_session: Session):
        """
        Initialize repository.

        Args:
            db_session: SQLAlchemy database session
        """
        self.db = db_session
        self._model_class = self._get_model_class()

    @abstractmethod
    def _get_model_class(self) -> type[T]:
        """Return the SQLAlchemy model class for this repository."""
        pass

    @contextmanager
    def _store_operation(self, operation: str, **context) -> Iterator[None]:
        """
        Translate SQLAlchemy failures into StoreError.

        Rolls back the session so it stays usable for the caller.
        """
        try:
            yield
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(
                "Store operation failed",
                extra={
                    "operation": operation,
                    "entity_type": self._model_class.__name__,
                    "error": str(e),
                    **context,
                }
            )
            raise StoreError(operation, str(e)) from e

    def get_by_id(self, entity_id: str) -> Optional[T]:
        """
        Get entity by primary key.

        Returns:
            Entity if found, None otherwise

        Raises:
            StoreError: If the store is unavailable
        """
        with self._store_operation("get_by_id", entity_id=entity_id):
            return self.db.get(self._model_class, entity_id)

    def add(self, entity: T) -> T:
        """
        Insert a new entity and commit.

        Raises:
            StoreError: If the store is unavailable
        """
        with self._store_operation("add", entity_id=getattr(entity, "id", None)):
            self.db.add(entity)
            self.db.commit()
            self.db.refresh(entity)

        logger.debug(
            "Entity created",
            extra={
                "entity_id": getattr(entity, "id", None),
                "entity_type": self._model_class.__name__
            }
        )
        return entity

    def commit(self) -> None:
        """Commit current transaction."""
        with self._store_operation("commit"):
            self.db.commit()
