"""Base repository with shared lookup patterns.

Subclasses set ``model_class`` and ``not_found_error``; the base provides
get-by-id (raising or optional), row locking for read-modify-write, and
insertion. Override ``_base_query()`` to apply default filters such as
soft-delete exclusion.
"""

from typing import TypeVar, Generic, Optional, Type
from sqlalchemy.orm import Session, Query

from ..database import Base
from ..exceptions import RepoLensException

ModelT = TypeVar("ModelT", bound=Base)


class BaseRepository(Generic[ModelT]):
    """Shared repository logic for SQLAlchemy models.

    Class variables to set in subclasses:
        model_class:     The SQLAlchemy model (e.g., AnalysisJob)
        id_column:       Name of the primary-key column (default "id")
        not_found_error: Exception class raised by get_by_id
    """

    model_class: Type[ModelT]
    id_column: str = "id"
    not_found_error: Type[RepoLensException]

    def __init__(self, db: Session):
        self.db = db

    def _base_query(self) -> Query:
        return self.db.query(self.model_class)

    def _by_id(self, entity_id: str, for_update: bool = False) -> Query:
        col = getattr(self.model_class, self.id_column)
        query = self._base_query().filter(col == entity_id)
        if for_update:
            # Row lock on PostgreSQL; SQLite ignores it and relies on the
            # caller's in-process lock.
            query = query.with_for_update()
        return query

    def get_by_id(self, entity_id: str, for_update: bool = False) -> ModelT:
        """Get entity by primary key. Raises not_found_error if missing."""
        entity = self._by_id(entity_id, for_update).first()
        if not entity:
            raise self.not_found_error(entity_id)
        return entity

    def get_by_id_optional(self, entity_id: str) -> Optional[ModelT]:
        """Get entity by primary key, or None if not found."""
        return self._by_id(entity_id).first()

    def add(self, entity: ModelT) -> ModelT:
        self.db.add(entity)
        self.db.flush()
        return entity
