"""
Optimistic Locking Infrastructure
Version-based concurrency control (compare-and-swap per row) for read-then-write operations
"""

import logging
from typing import Any, Optional, Dict, Type
from sqlalchemy import Integer, update
from sqlalchemy.orm import Mapped, Session, declared_attr, mapped_column
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)


class OptimisticLockingError(Exception):
    """Raised when optimistic locking fails due to version conflict"""
    pass


class VersionMixin:
    """
    Mixin class to add version tracking to database models

    The column is registered as the mapper's version counter, so every ORM flush
    of a modified row becomes ``UPDATE ... WHERE id = :id AND version = :seen`` and a
    concurrent writer surfaces as ``StaleDataError`` at flush time.
    """

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")

    @declared_attr.directive
    def __mapper_args__(cls) -> Dict[str, Any]:
        return {"version_id_col": cls.__table__.c.version}


class OptimisticLockManager:
    """
    Manager for explicit optimistic locking operations
    Handles version-based updates and conflict detection for bulk-style writes
    """

    def __init__(self, session: Session):
        self.session = session

    def versioned_update(
        self,
        model_class: Type[Any],
        entity_id: Any,
        updates: Dict[str, Any],
        current_version: Optional[int] = None
    ) -> int:
        """
        Perform version-controlled update

        Args:
            model_class: SQLAlchemy model class using VersionMixin
            entity_id: Primary key value
            updates: Dictionary of field updates
            current_version: Expected current version (fetched if not provided)

        Returns:
            int: the new version

        Raises:
            OptimisticLockingError: If version conflict detected
        """
        try:
            if current_version is None:
                current_obj = self.session.get(model_class, entity_id)
                if not current_obj:
                    raise ValueError(f"Entity {model_class.__name__} with id {entity_id} not found")
                current_version = current_obj.version

            update_values = {**updates, 'version': current_version + 1}

            stmt = (
                update(model_class)
                .where(model_class.id == entity_id, model_class.version == current_version)
                .values(update_values)
                .execution_options(synchronize_session="fetch")
            )

            result = self.session.execute(stmt)

            if result.rowcount == 0:
                logger.warning(
                    f"🔒 Optimistic lock conflict: {model_class.__name__} id={entity_id} "
                    f"expected_version={current_version}"
                )
                raise OptimisticLockingError(
                    f"Version conflict for {model_class.__name__} id={entity_id}. "
                    f"Expected version {current_version} but entity was modified by another process."
                )

            logger.debug(
                f"✅ Versioned update successful: {model_class.__name__} id={entity_id} "
                f"v{current_version} → v{current_version + 1}"
            )
            return current_version + 1

        except SQLAlchemyError as e:
            logger.error(f"❌ Database error during versioned update: {e}")
            raise
