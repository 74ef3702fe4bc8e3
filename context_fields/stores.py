# context_fields/stores.py
"""
SQLAlchemy-backed stores for project contexts and task field overrides.

Both stores are synchronous; the resolvers call them through asyncio.to_thread.
A missing row is reported as None / empty (never as an error); database failures
are wrapped in StorageError carrying the (project_id, task_id, field_name) scope.
"""

import logging
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from context_fields.entities import ProjectContextRecord, TaskFieldOverrideRecord
from context_fields.errors import NotFoundError, StorageError

logger = logging.getLogger("context_fields.stores")


@contextmanager
def _session_scope(session_factory: Callable[[], Session], action: str, **scope) -> Iterator[Session]:
    session = session_factory()
    try:
        yield session
        session.commit()
    except SQLAlchemyError as e:
        session.rollback()
        logger.error("%s failed for %s: %s", action, scope, e)
        raise StorageError(f"{action} failed: {e}", original_error=e, **scope) from e
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


class ContextStore:
    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self.SessionFactory = session_factory

    def _get_row(self, session: Session, project_id: str) -> Optional[ProjectContextRecord]:
        return session.execute(
            select(ProjectContextRecord).where(ProjectContextRecord.project_id == str(project_id))
        ).scalar_one_or_none()

    def get_by_project_id(self, project_id: str) -> Optional[Dict[str, Any]]:
        """Returns the canonical value map, or None when the project has no context yet."""
        with _session_scope(self.SessionFactory, "load project context", project_id=project_id) as session:
            row = self._get_row(session, project_id)
            if row is None:
                logger.debug("Context not found (expected) for project %s", project_id)
                return None
            return dict(row.fields or {})

    def exists(self, project_id: str) -> bool:
        return self.get_by_project_id(project_id) is not None

    def create(self, project_id: str, user_id: Optional[str] = None,
               fields: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
        values = {k: v for k, v in (fields or {}).items() if v is not None}
        with _session_scope(self.SessionFactory, "create project context", project_id=project_id) as session:
            session.add(ProjectContextRecord(project_id=str(project_id), user_id=user_id, fields=values))
        logger.info("Context created for project %s", project_id)
        return dict(values)

    def update(self, project_id: str, partial: Mapping[str, Any]) -> Dict[str, Any]:
        """
        Merges partial into the stored map (None removes a key) and returns the
        updated map. Raises NotFoundError when the project has no context row.
        """
        with _session_scope(self.SessionFactory, "update project context", project_id=project_id) as session:
            row = self._get_row(session, project_id)
            if row is None:
                raise NotFoundError("ProjectContext", f"project_id:{project_id}")

            merged = dict(row.fields or {})
            for field_name, value in partial.items():
                if value is None:
                    merged.pop(field_name, None)
                else:
                    merged[field_name] = value
            # reassign so the JSON column is flagged dirty
            row.fields = merged

        logger.info("Context updated for project %s: %s", project_id, sorted(partial))
        return dict(merged)

    def upsert(self, project_id: str, user_id: Optional[str], partial: Mapping[str, Any]) -> Dict[str, Any]:
        if self.exists(project_id):
            return self.update(project_id, partial)
        return self.create(project_id, user_id, partial)

    def delete(self, project_id: str) -> bool:
        with _session_scope(self.SessionFactory, "delete project context", project_id=project_id) as session:
            result = session.execute(
                delete(ProjectContextRecord).where(ProjectContextRecord.project_id == str(project_id))
            )
        return bool(result.rowcount)


class OverrideStore:
    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self.SessionFactory = session_factory

    def _query(self, project_id: str, task_id: str):
        return select(TaskFieldOverrideRecord).where(
            TaskFieldOverrideRecord.project_id == str(project_id),
            TaskFieldOverrideRecord.task_id == str(task_id),
        )

    def get_all(self, project_id: str, task_id: str) -> Dict[str, Any]:
        with _session_scope(self.SessionFactory, "load overrides", project_id=project_id, task_id=task_id) as session:
            rows = session.execute(self._query(project_id, task_id)).scalars().all()
            return {r.field_name: (r.value or {}).get("v") for r in rows}

    def get(self, project_id: str, task_id: str, field_name: str) -> Any:
        with _session_scope(self.SessionFactory, "load override",
                            project_id=project_id, task_id=task_id, field_name=field_name) as session:
            row = session.execute(
                self._query(project_id, task_id).where(TaskFieldOverrideRecord.field_name == field_name)
            ).scalar_one_or_none()
            return (row.value or {}).get("v") if row is not None else None

    def _upsert(self, session: Session, project_id: str, task_id: str, user_id: Optional[str],
                field_name: str, value: Any, source_tag: Optional[str]) -> None:
        row = session.execute(
            self._query(project_id, task_id).where(TaskFieldOverrideRecord.field_name == field_name)
        ).scalar_one_or_none()

        if value is None:
            # a None override is no override
            if row is not None:
                session.delete(row)
            return

        if row is None:
            session.add(TaskFieldOverrideRecord(
                project_id=str(project_id),
                task_id=str(task_id),
                field_name=field_name,
                value={"v": value},
                source=source_tag,
                user_id=user_id,
            ))
        else:
            row.value = {"v": value}
            row.source = source_tag
            row.user_id = user_id

    def set(self, project_id: str, task_id: str, user_id: Optional[str], field_name: str,
            value: Any, source_tag: Optional[str] = None) -> None:
        with _session_scope(self.SessionFactory, "save override",
                            project_id=project_id, task_id=task_id, field_name=field_name) as session:
            self._upsert(session, project_id, task_id, user_id, field_name, value, source_tag)

    def set_batch(self, project_id: str, task_id: str, user_id: Optional[str],
                  values: Mapping[str, Any], source_tag: Optional[str] = None) -> None:
        if not values:
            return
        with _session_scope(self.SessionFactory, "save overrides", project_id=project_id, task_id=task_id) as session:
            for field_name, value in values.items():
                self._upsert(session, project_id, task_id, user_id, field_name, value, source_tag)
        logger.debug("Saved %d overrides for %s/%s", len(values), project_id, task_id)

    def clear(self, project_id: str, task_id: str, field_name: str) -> bool:
        with _session_scope(self.SessionFactory, "clear override",
                            project_id=project_id, task_id=task_id, field_name=field_name) as session:
            result = session.execute(
                delete(TaskFieldOverrideRecord).where(
                    TaskFieldOverrideRecord.project_id == str(project_id),
                    TaskFieldOverrideRecord.task_id == str(task_id),
                    TaskFieldOverrideRecord.field_name == field_name,
                )
            )
        return bool(result.rowcount)

    def clear_all(self, project_id: str, task_id: str) -> int:
        with _session_scope(self.SessionFactory, "clear overrides", project_id=project_id, task_id=task_id) as session:
            result = session.execute(
                delete(TaskFieldOverrideRecord).where(
                    TaskFieldOverrideRecord.project_id == str(project_id),
                    TaskFieldOverrideRecord.task_id == str(task_id),
                )
            )
        logger.info("Cleared %d overrides for %s/%s", result.rowcount, project_id, task_id)
        return int(result.rowcount or 0)

    def task_ids_with_overrides(self, project_id: str) -> List[str]:
        """Task ids that hold at least one override for the project (SELECT DISTINCT task_id)."""
        with _session_scope(self.SessionFactory, "list override tasks", project_id=project_id) as session:
            rows = session.execute(
                select(TaskFieldOverrideRecord.task_id)
                .where(TaskFieldOverrideRecord.project_id == str(project_id))
                .distinct()
                .order_by(TaskFieldOverrideRecord.task_id)
            ).scalars().all()
            return list(rows)
