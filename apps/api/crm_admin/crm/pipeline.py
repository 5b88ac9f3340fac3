"""Shared create/update/delete flow for CRM resources.

Every mutation runs the same steps: resolve the identifier, load the live
record, decode the payload, merge it, commit, append an audit row and reload
the record with its relations. Entity-specific rules live in the
``EntityStrategy`` subclasses in ``crm_admin.crm.service``.
"""

from __future__ import annotations

import logging
from typing import Any, ClassVar, Generic, TypeVar

from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import inspect
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from crm_admin.core.context import ActorUser
from crm_admin.core.errors import ConflictError, InvalidIdentifier, StorageError, ValidationFailed
from crm_admin.crm.query import parse_int
from crm_admin.crm.stores import ResourceStore
from crm_admin.metrics import observe_mutation
from crm_admin.otel import get_tracer, mutation_span
from crm_admin.services.audit import AuditRecorder


ModelT = TypeVar("ModelT")
SchemaT = TypeVar("SchemaT", bound=BaseModel)

REPLACE = "replace"
PATCH = "patch"


def parse_identifier(raw: Any, resource_label: str) -> int:
    value = parse_int(raw)
    if value is None or value < 1:
        raise InvalidIdentifier(f"Invalid {resource_label} ID")
    return value


def decode_payload(payload: Any, schema: type[SchemaT]) -> SchemaT:
    if not isinstance(payload, dict):
        raise ValidationFailed("Request body must be a JSON object")
    try:
        return schema.model_validate(payload)
    except PydanticValidationError as exc:
        first = exc.errors()[0]
        location = ".".join(str(part) for part in first.get("loc", ()))
        message = first.get("msg", "Invalid value")
        raise ValidationFailed(f"{location}: {message}" if location else message) from exc


def snapshot(record: Any) -> dict[str, Any]:
    mapper = inspect(record).mapper
    return jsonable_encoder({attr.key: getattr(record, attr.key) for attr in mapper.column_attrs})


class EntityStrategy(Generic[ModelT]):
    resource_type: ClassVar[str]
    resource_label: ClassVar[str]
    store: ResourceStore
    create_schema: ClassVar[type[BaseModel]]
    mode_schemas: ClassVar[dict[str, type[BaseModel]]] = {}

    def schema_for(self, mode: str) -> type[BaseModel]:
        try:
            return self.mode_schemas[mode]
        except KeyError:
            raise ValueError(f"{self.resource_type} does not support {mode} updates") from None

    def build(self, session: Session, dto: Any) -> ModelT:
        raise NotImplementedError

    def apply(self, session: Session, record: ModelT, dto: Any, mode: str) -> None:
        raise NotImplementedError

    def before_delete(self, session: Session, record: ModelT) -> None:
        return None

    def conflict_for(self, exc: IntegrityError) -> ConflictError | None:
        return None

    def reload(self, session: Session, record_id: int) -> ModelT:
        return self.store.require(session, record_id)


class MutationPipeline:
    def __init__(self, audit: AuditRecorder, logger: logging.Logger | None = None) -> None:
        self.audit = audit
        self.logger = logger or logging.getLogger("crm_admin.crm.pipeline")
        self.tracer = get_tracer("crm_admin.crm.pipeline")

    def create(self, session: Session, actor: ActorUser, strategy: EntityStrategy[ModelT], payload: Any) -> ModelT:
        with mutation_span(self.tracer, strategy.resource_type, "create") as span:
            dto = decode_payload(payload, strategy.create_schema)
            record = strategy.build(session, dto)
            session.add(record)
            after = self._commit(session, strategy, record, "create")
            record_id = record.id
            span.set_attribute("crm.resource_id", record_id)
            self._finish(session, actor, strategy, record_id, "create", None, after)
            return strategy.reload(session, record_id)

    def update(
        self,
        session: Session,
        actor: ActorUser,
        strategy: EntityStrategy[ModelT],
        raw_id: Any,
        payload: Any,
        *,
        mode: str = REPLACE,
    ) -> ModelT:
        record_id = parse_identifier(raw_id, strategy.resource_label)
        with mutation_span(self.tracer, strategy.resource_type, "update", record_id):
            record = strategy.store.require(session, record_id)
            dto = decode_payload(payload, strategy.schema_for(mode))
            before = snapshot(record)
            strategy.apply(session, record, dto, mode)
            after = self._commit(session, strategy, record, "update")
            self._finish(session, actor, strategy, record_id, "update", before, after)
            return strategy.reload(session, record_id)

    def delete(self, session: Session, actor: ActorUser, strategy: EntityStrategy[ModelT], raw_id: Any) -> int:
        record_id = parse_identifier(raw_id, strategy.resource_label)
        with mutation_span(self.tracer, strategy.resource_type, "delete", record_id):
            record = strategy.store.require(session, record_id)
            before = snapshot(record)
            strategy.before_delete(session, record)
            strategy.store.soft_delete(session, record)
            self._commit(session, strategy, record, "delete")
            self._finish(session, actor, strategy, record_id, "delete", before, None)
            return record_id

    def commit_change(
        self,
        session: Session,
        actor: ActorUser,
        strategy: EntityStrategy[Any],
        record_id: int,
        *,
        before: dict[str, Any] | None,
        after: dict[str, Any] | None,
    ) -> None:
        """Commit pending relation changes on a record and audit them as an update."""
        with mutation_span(self.tracer, strategy.resource_type, "update", record_id):
            self._commit(session, strategy, None, "update")
            self._finish(session, actor, strategy, record_id, "update", before, after)

    def _commit(
        self,
        session: Session,
        strategy: EntityStrategy[Any],
        record: Any | None,
        action: str,
    ) -> dict[str, Any] | None:
        try:
            session.flush()
            after = snapshot(record) if record is not None else None
            session.commit()
        except IntegrityError as exc:
            session.rollback()
            conflict = strategy.conflict_for(exc)
            if conflict is not None:
                raise conflict from exc
            self._log_storage_failure(strategy, action, exc)
            raise StorageError() from exc
        except SQLAlchemyError as exc:
            session.rollback()
            self._log_storage_failure(strategy, action, exc)
            raise StorageError() from exc
        return after

    def _finish(
        self,
        session: Session,
        actor: ActorUser,
        strategy: EntityStrategy[Any],
        record_id: int,
        action: str,
        before: dict[str, Any] | None,
        after: dict[str, Any] | None,
    ) -> None:
        observe_mutation(strategy.resource_type, action)
        self.logger.info(
            "crm.mutation",
            extra={
                "resource": strategy.resource_type,
                "resource_id": record_id,
                "action": action,
                "actor_id": actor.user_id,
            },
        )
        self.audit.record(
            session,
            actor,
            resource_type=strategy.resource_type,
            resource_id=record_id,
            action=action,
            before=before,
            after=after,
        )

    def _log_storage_failure(self, strategy: EntityStrategy[Any], action: str, exc: Exception) -> None:
        self.logger.error(
            "crm.mutation_failed",
            exc_info=exc,
            extra={"resource": strategy.resource_type, "action": action, "error": str(exc)},
        )
