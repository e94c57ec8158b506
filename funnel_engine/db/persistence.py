from __future__ import annotations

from uuid import uuid4

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from funnel_engine.clients.persistence import PersistenceServiceError
from funnel_engine.db.base import SessionLocal
from funnel_engine.db.models import FunnelAssignmentRecord, ResourceRecord
from funnel_engine.schemas import Resource, ResourceDraft, ResourcePatch
from funnel_engine.services.validator import normalize_resource_name


def _to_resource(record: ResourceRecord) -> Resource:
    return Resource(
        id=record.id,
        name=record.name,
        link=record.link,
        origin_kind=record.origin_kind,
        value_category=record.value_category,
        promo_code=record.promo_code,
        description=record.description,
    )


class SqlPersistenceService:
    """Persistence service backed by the engine's own database.

    Offers the same coroutine interface as ``HttpPersistenceClient`` and
    reports every failure as ``PersistenceServiceError``.
    """

    def __init__(self, session_factory: sessionmaker = SessionLocal) -> None:
        self._session_factory = session_factory

    def _commit(self, session: Session, *, conflict_message: str) -> None:
        try:
            session.commit()
        except IntegrityError as exc:
            session.rollback()
            raise PersistenceServiceError(message=conflict_message, status_code=409) from exc
        except SQLAlchemyError as exc:
            session.rollback()
            raise PersistenceServiceError(message=f"Database write failed: {exc}") from exc

    @staticmethod
    def _get_record(session: Session, resource_id: str) -> ResourceRecord:
        record = session.get(ResourceRecord, resource_id)
        if record is None:
            raise PersistenceServiceError(message=f"Resource {resource_id} not found", status_code=404)
        return record

    async def list_resources(self) -> list[Resource]:
        with self._session_factory() as session:
            records = session.scalars(select(ResourceRecord).order_by(ResourceRecord.created_at.asc())).all()
            return [_to_resource(record) for record in records]

    async def create_resource(self, draft: ResourceDraft) -> Resource:
        with self._session_factory() as session:
            record = ResourceRecord(
                id=uuid4().hex,
                name=draft.name,
                normalized_name=normalize_resource_name(draft.name),
                link=draft.link,
                origin_kind=draft.origin_kind.value,
                value_category=draft.value_category.value,
                promo_code=draft.promo_code,
                description=draft.description,
            )
            session.add(record)
            self._commit(session, conflict_message=f'A resource named "{draft.name}" already exists')
            session.refresh(record)
            return _to_resource(record)

    async def update_resource(self, resource_id: str, patch: ResourcePatch) -> Resource:
        with self._session_factory() as session:
            record = self._get_record(session, resource_id)
            updated = patch.apply_to(_to_resource(record))
            record.name = updated.name
            record.normalized_name = normalize_resource_name(updated.name)
            record.link = updated.link
            record.origin_kind = updated.origin_kind.value
            record.value_category = updated.value_category.value
            record.promo_code = updated.promo_code
            record.description = updated.description
            self._commit(session, conflict_message=f'A resource named "{updated.name}" already exists')
            session.refresh(record)
            return _to_resource(record)

    async def delete_resource(self, resource_id: str) -> None:
        with self._session_factory() as session:
            record = self._get_record(session, resource_id)
            assigned = session.execute(
                select(FunnelAssignmentRecord.id).where(FunnelAssignmentRecord.resource_id == resource_id)
            ).first()
            if assigned:
                raise PersistenceServiceError(
                    message="Cannot delete resource: it is still assigned to a funnel",
                    status_code=409,
                )
            session.delete(record)
            self._commit(session, conflict_message="Cannot delete resource: it is still referenced")

    async def set_funnel_assignments(self, funnel_id: str, resource_ids: list[str]) -> list[str]:
        ordered = list(dict.fromkeys(resource_ids))
        with self._session_factory() as session:
            if ordered:
                existing = set(
                    session.scalars(select(ResourceRecord.id).where(ResourceRecord.id.in_(ordered))).all()
                )
                missing = [resource_id for resource_id in ordered if resource_id not in existing]
                if missing:
                    raise PersistenceServiceError(
                        message=f"Some resources do not exist: {', '.join(missing)}",
                        status_code=404,
                    )
            session.execute(delete(FunnelAssignmentRecord).where(FunnelAssignmentRecord.funnel_id == funnel_id))
            for resource_id in ordered:
                session.add(FunnelAssignmentRecord(funnel_id=funnel_id, resource_id=resource_id))
            self._commit(session, conflict_message="Funnel assignments conflict")
            return list(
                session.scalars(
                    select(FunnelAssignmentRecord.resource_id)
                    .where(FunnelAssignmentRecord.funnel_id == funnel_id)
                    .order_by(FunnelAssignmentRecord.id.asc())
                ).all()
            )

    async def list_funnel_assignments(self, funnel_id: str) -> list[str]:
        with self._session_factory() as session:
            return list(
                session.scalars(
                    select(FunnelAssignmentRecord.resource_id)
                    .where(FunnelAssignmentRecord.funnel_id == funnel_id)
                    .order_by(FunnelAssignmentRecord.id.asc())
                ).all()
            )
