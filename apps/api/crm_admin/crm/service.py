from __future__ import annotations

import logging
import re
from decimal import Decimal
from enum import StrEnum
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from crm_admin.core.context import ActorUser
from crm_admin.core.errors import (
    ConflictError,
    DuplicateEmail,
    DuplicateName,
    InvalidStage,
    MissingLink,
    NoFieldsProvided,
    ValidationFailed,
)
from crm_admin.crm.models import (
    CLOSED_STAGES,
    PRIMARY_CONTACT_INDEX,
    Activity,
    ActivityStatus,
    ActivityType,
    Contact,
    Customer,
    CustomerStatus,
    Deal,
    DealStage,
    PipelineStage,
    Tag,
    customer_tags,
    utcnow,
)
from crm_admin.crm.pipeline import PATCH, REPLACE, EntityStrategy, MutationPipeline, parse_identifier
from crm_admin.crm.query import Page, paginate, parse_csv
from crm_admin.crm.schemas import (
    ActivityCreate,
    ActivityDetailRead,
    ActivityListRead,
    ActivityRead,
    ActivityStatusPatch,
    ActivityUpdate,
    ContactCreate,
    ContactRead,
    ContactUpdate,
    CustomerCreate,
    CustomerDetailRead,
    CustomerPatch,
    CustomerRead,
    CustomerUpdate,
    DealCreate,
    DealDetailRead,
    DealRead,
    DealStagePatch,
    DealUpdate,
    PipelineStageRead,
    TagCreate,
    TagRead,
    TagUpdate,
)
from crm_admin.crm.stores import (
    ACTIVITY_DETAIL_OPTIONS,
    ACTIVITY_LIST_OPTIONS,
    CUSTOMER_LIST_OPTIONS,
    DEAL_DETAIL_OPTIONS,
    DEAL_LIST_OPTIONS,
    ListQuery,
    activity_store,
    contact_store,
    customer_store,
    deal_store,
    tag_store,
)


EMAIL_RE = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")
DEFAULT_MY_ACTIVITY_STATUSES = (ActivityStatus.SCHEDULED, ActivityStatus.OVERDUE)

DEFAULT_PIPELINE_STAGES = (
    ("prospecting", "Prospecting", 1, "#6366f1"),
    ("qualification", "Qualification", 2, "#8b5cf6"),
    ("proposal", "Proposal", 3, "#a855f7"),
    ("negotiation", "Negotiation", 4, "#f59e0b"),
    ("closed_won", "Closed Won", 5, "#22c55e"),
    ("closed_lost", "Closed Lost", 6, "#ef4444"),
)


def clamp_probability(value: int) -> int:
    return max(0, min(100, value))


def _enum_value(raw: str, enum_cls: type[StrEnum], label: str, *, code: str) -> str:
    try:
        return enum_cls(raw).value
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ValidationFailed(f"Invalid {label} '{raw}'. Must be one of: {allowed}", code=code) from None


def _stage_value(raw: str) -> str:
    try:
        return DealStage(raw).value
    except ValueError:
        allowed = ", ".join(stage.value for stage in DealStage)
        raise InvalidStage(f"Invalid stage '{raw}'. Must be one of: {allowed}") from None


def _changes(dto: Any, *, required: tuple[str, ...] = ()) -> dict[str, Any]:
    """Fields present in the payload; explicit nulls clear nullable columns only."""
    changes = dto.model_dump(exclude_unset=True)
    for name in required:
        if name in changes and changes[name] is None:
            raise ValidationFailed(f"{name} cannot be null")
    return changes


def _required_text(value: str, label: str) -> str:
    text = value.strip()
    if not text:
        raise ValidationFailed(f"{label} cannot be empty")
    return text


def _checked_email(value: str) -> str:
    email = value.strip()
    if not EMAIL_RE.match(email):
        raise ValidationFailed("Invalid email format", code="INVALID_EMAIL")
    return email


class CustomerStrategy(EntityStrategy[Customer]):
    resource_type = "customer"
    resource_label = "customer"
    store = customer_store
    create_schema = CustomerCreate
    mode_schemas = {REPLACE: CustomerUpdate, PATCH: CustomerPatch}

    def _unique_email(self, session: Session, value: str, *, exclude_id: int | None = None) -> str:
        email = _checked_email(value)
        if self.store.email_taken(session, email, exclude_id=exclude_id):
            raise DuplicateEmail()
        return email

    def build(self, session: Session, dto: CustomerCreate) -> Customer:
        name = _required_text(dto.name, "name")
        email = self._unique_email(session, dto.email)
        status = CustomerStatus.LEAD.value
        if dto.status:
            status = _enum_value(dto.status, CustomerStatus, "status", code="INVALID_STATUS")
        return Customer(
            name=name,
            email=email,
            phone=dto.phone,
            company=dto.company,
            role=dto.role,
            status=status,
            assigned_to=dto.assigned_to,
            contacted=dto.contacted,
            next_follow_up_at=dto.next_follow_up_at,
            notes=dto.notes,
        )

    def apply(self, session: Session, record: Customer, dto: Any, mode: str) -> None:
        if mode == PATCH:
            changes = {key: value for key, value in dto.model_dump(exclude_unset=True).items() if value is not None}
            if not changes:
                raise NoFieldsProvided()
        else:
            changes = _changes(dto, required=("name", "email", "status", "contacted"))
            if "name" in changes:
                changes["name"] = _required_text(changes["name"], "name")
            if "email" in changes:
                changes["email"] = self._unique_email(session, changes["email"], exclude_id=record.id)

        if "status" in changes:
            changes["status"] = _enum_value(changes["status"], CustomerStatus, "status", code="INVALID_STATUS")
        for key, value in changes.items():
            setattr(record, key, value)

    def conflict_for(self, exc: IntegrityError) -> ConflictError | None:
        if "email" in str(exc.orig).lower():
            return DuplicateEmail()
        return None

    def reload(self, session: Session, record_id: int) -> Customer:
        return self.store.require(session, record_id, options=CUSTOMER_LIST_OPTIONS)


class ContactStrategy(EntityStrategy[Contact]):
    resource_type = "contact"
    resource_label = "contact"
    store = contact_store
    create_schema = ContactCreate
    mode_schemas = {REPLACE: ContactUpdate}

    def __init__(self, customer_id: int | None = None) -> None:
        self.customer_id = customer_id

    def build(self, session: Session, dto: ContactCreate) -> Contact:
        if self.customer_id is None:
            raise ValueError("contact creation needs the parent customer id")
        customer_id = self.customer_id
        customer_store.require(session, customer_id)
        first_name = _required_text(dto.first_name, "first_name")
        email = _checked_email(dto.email) if dto.email else None
        if dto.is_primary:
            self.store.clear_primary(session, customer_id)
        return Contact(
            customer_id=customer_id,
            first_name=first_name,
            last_name=dto.last_name,
            email=email,
            phone=dto.phone,
            position=dto.position,
            is_primary=dto.is_primary,
            notes=dto.notes,
        )

    def apply(self, session: Session, record: Contact, dto: ContactUpdate, mode: str) -> None:
        customer_store.require(session, record.customer_id)
        changes = _changes(dto, required=("first_name", "is_primary"))
        if "first_name" in changes:
            changes["first_name"] = _required_text(changes["first_name"], "first_name")
        if changes.get("email"):
            changes["email"] = _checked_email(changes["email"])
        if changes.get("is_primary"):
            self.store.clear_primary(session, record.customer_id, keep_id=record.id)
        for key, value in changes.items():
            setattr(record, key, value)

    def before_delete(self, session: Session, record: Contact) -> None:
        record.is_primary = False

    def conflict_for(self, exc: IntegrityError) -> ConflictError | None:
        message = str(exc.orig)
        # postgres names the partial index; sqlite reports the indexed column
        if PRIMARY_CONTACT_INDEX in message or "UNIQUE constraint failed: contacts.customer_id" in message:
            return ConflictError("Primary contact conflict for customer", code="PRIMARY_CONTACT_CONFLICT")
        return None


class DealStrategy(EntityStrategy[Deal]):
    resource_type = "deal"
    resource_label = "deal"
    store = deal_store
    create_schema = DealCreate
    mode_schemas = {REPLACE: DealUpdate, PATCH: DealStagePatch}

    def _check_contact(self, session: Session, contact_id: int, customer_id: int) -> None:
        contact = contact_store.require(session, contact_id)
        if contact.customer_id != customer_id:
            raise ValidationFailed("Contact does not belong to the deal's customer", code="CONTACT_CUSTOMER_MISMATCH")

    def build(self, session: Session, dto: DealCreate) -> Deal:
        customer_store.require(session, dto.customer_id)
        if dto.contact_id is not None:
            self._check_contact(session, dto.contact_id, dto.customer_id)
        stage = _stage_value(dto.stage) if dto.stage else DealStage.PROSPECTING.value
        deal = Deal(
            title=_required_text(dto.title, "title"),
            description=dto.description,
            customer_id=dto.customer_id,
            contact_id=dto.contact_id,
            stage=stage,
            amount=dto.amount if dto.amount is not None else Decimal("0"),
            currency=(dto.currency or "USD").upper(),
            probability=clamp_probability(dto.probability or 0),
            expected_close_date=dto.expected_close_date,
            owner_id=dto.owner_id,
            lost_reason=dto.lost_reason,
        )
        if stage in CLOSED_STAGES:
            deal.actual_close_date = utcnow()
        return deal

    def apply(self, session: Session, record: Deal, dto: Any, mode: str) -> None:
        if mode == PATCH:
            self.transition(record, _stage_value(dto.stage), dto.lost_reason)
            return

        changes = _changes(dto, required=("title", "stage", "amount", "currency", "probability"))
        stage = _stage_value(changes.pop("stage")) if "stage" in changes else None
        if "title" in changes:
            changes["title"] = _required_text(changes["title"], "title")
        if changes.get("contact_id") is not None:
            self._check_contact(session, changes["contact_id"], record.customer_id)
        if "probability" in changes:
            changes["probability"] = clamp_probability(changes["probability"])
        if "currency" in changes:
            changes["currency"] = changes["currency"].upper()
        for key, value in changes.items():
            setattr(record, key, value)

        if stage is not None and stage != record.stage:
            record.stage = stage
            if stage in CLOSED_STAGES and "actual_close_date" not in changes:
                record.actual_close_date = utcnow()

    def transition(self, record: Deal, stage: str, lost_reason: str | None) -> None:
        record.stage = stage
        if stage in CLOSED_STAGES:
            record.actual_close_date = utcnow()
        if stage == DealStage.CLOSED_LOST and lost_reason:
            record.lost_reason = lost_reason

    def reload(self, session: Session, record_id: int) -> Deal:
        return self.store.require(session, record_id, options=DEAL_DETAIL_OPTIONS)


class ActivityStrategy(EntityStrategy[Activity]):
    resource_type = "activity"
    resource_label = "activity"
    store = activity_store
    create_schema = ActivityCreate
    mode_schemas = {REPLACE: ActivityUpdate, PATCH: ActivityStatusPatch}

    def _check_links(self, session: Session, values: dict[str, Any]) -> None:
        if values.get("customer_id") is not None:
            customer_store.require(session, values["customer_id"])
        if values.get("deal_id") is not None:
            deal_store.require(session, values["deal_id"])
        if values.get("contact_id") is not None:
            contact_store.require(session, values["contact_id"])

    def build(self, session: Session, dto: ActivityCreate) -> Activity:
        if dto.customer_id is None and dto.deal_id is None:
            raise MissingLink()
        activity_type = _enum_value(dto.type, ActivityType, "type", code="INVALID_TYPE")
        status = ActivityStatus.SCHEDULED.value
        if dto.status:
            status = _enum_value(dto.status, ActivityStatus, "status", code="INVALID_STATUS")
        self._check_links(session, dto.model_dump())
        activity = Activity(
            type=activity_type,
            title=_required_text(dto.title, "title"),
            description=dto.description,
            status=status,
            customer_id=dto.customer_id,
            deal_id=dto.deal_id,
            contact_id=dto.contact_id,
            assigned_to=dto.assigned_to,
            due_date=dto.due_date,
            duration=dto.duration,
            outcome=dto.outcome,
            priority=dto.priority or "normal",
        )
        if status == ActivityStatus.COMPLETED:
            activity.completed_at = utcnow()
        return activity

    def apply(self, session: Session, record: Activity, dto: Any, mode: str) -> None:
        if mode == PATCH:
            self.transition(record, _enum_value(dto.status, ActivityStatus, "status", code="INVALID_STATUS"), dto.outcome)
            return

        changes = _changes(dto, required=("type", "title", "status", "priority"))
        customer_id = changes.get("customer_id", record.customer_id)
        deal_id = changes.get("deal_id", record.deal_id)
        if customer_id is None and deal_id is None:
            raise MissingLink()
        if "type" in changes:
            changes["type"] = _enum_value(changes["type"], ActivityType, "type", code="INVALID_TYPE")
        if "title" in changes:
            changes["title"] = _required_text(changes["title"], "title")
        status = changes.pop("status", None)
        if status is not None:
            status = _enum_value(status, ActivityStatus, "status", code="INVALID_STATUS")
        self._check_links(session, changes)
        for key, value in changes.items():
            setattr(record, key, value)

        if status is not None and status != record.status:
            self.transition(record, status, None)

    def transition(self, record: Activity, status: str, outcome: str | None) -> None:
        # completed activities may move back to scheduled; completed_at is restamped on each completion
        record.status = status
        if outcome is not None:
            record.outcome = outcome
        if status == ActivityStatus.COMPLETED:
            record.completed_at = utcnow()

    def reload(self, session: Session, record_id: int) -> Activity:
        return self.store.require(session, record_id, options=ACTIVITY_DETAIL_OPTIONS)


class TagStrategy(EntityStrategy[Tag]):
    resource_type = "tag"
    resource_label = "tag"
    store = tag_store
    create_schema = TagCreate
    mode_schemas = {REPLACE: TagUpdate}

    def _unique_name(self, session: Session, value: str, *, exclude_id: int | None = None) -> str:
        name = _required_text(value, "name")
        if self.store.name_taken(session, name, exclude_id=exclude_id):
            raise DuplicateName()
        return name

    def build(self, session: Session, dto: TagCreate) -> Tag:
        return Tag(name=self._unique_name(session, dto.name), color=dto.color)

    def apply(self, session: Session, record: Tag, dto: TagUpdate, mode: str) -> None:
        changes = _changes(dto, required=("name",))
        if "name" in changes:
            changes["name"] = self._unique_name(session, changes["name"], exclude_id=record.id)
        for key, value in changes.items():
            setattr(record, key, value)

    def before_delete(self, session: Session, record: Tag) -> None:
        self.store.clear_associations(session, record.id)

    def conflict_for(self, exc: IntegrityError) -> ConflictError | None:
        if "name" in str(exc.orig).lower():
            return DuplicateName()
        return None


def _page_payload(page: Page[Any], read_model: type) -> dict[str, Any]:
    return page.map(read_model.model_validate)


class CustomerService:
    entity_type = "customer"

    def __init__(self, pipeline: MutationPipeline, logger: logging.Logger | None = None) -> None:
        self.pipeline = pipeline
        self.strategy = CustomerStrategy()
        self.logger = logger or logging.getLogger("crm_admin.crm.customers")

    def list_customers(self, session: Session, list_query: ListQuery) -> dict[str, Any]:
        page = customer_store.list_page(session, list_query, options=CUSTOMER_LIST_OPTIONS)
        return _page_payload(page, CustomerRead)

    def get_customer(self, session: Session, raw_id: Any, *, include_deleted: bool = False) -> CustomerDetailRead:
        customer_id = parse_identifier(raw_id, "customer")
        customer = customer_store.require(
            session,
            customer_id,
            include_deleted=include_deleted,
            options=CUSTOMER_LIST_OPTIONS,
        )
        base = CustomerRead.model_validate(customer).model_dump()
        return CustomerDetailRead(
            **base,
            **customer_store.detail_counts(session, customer_id),
            recent_activities=[
                ActivityRead.model_validate(activity)
                for activity in customer_store.recent_activities(session, customer_id)
            ],
        )

    def create_customer(self, session: Session, actor_user: ActorUser, payload: Any) -> CustomerRead:
        customer = self.pipeline.create(session, actor_user, self.strategy, payload)
        return CustomerRead.model_validate(customer)

    def update_customer(self, session: Session, actor_user: ActorUser, raw_id: Any, payload: Any) -> CustomerRead:
        customer = self.pipeline.update(session, actor_user, self.strategy, raw_id, payload, mode=REPLACE)
        return CustomerRead.model_validate(customer)

    def patch_customer(self, session: Session, actor_user: ActorUser, raw_id: Any, payload: Any) -> CustomerRead:
        customer = self.pipeline.update(session, actor_user, self.strategy, raw_id, payload, mode=PATCH)
        return CustomerRead.model_validate(customer)

    def delete_customer(self, session: Session, actor_user: ActorUser, raw_id: Any) -> int:
        return self.pipeline.delete(session, actor_user, self.strategy, raw_id)


class ContactService:
    entity_type = "contact"

    def __init__(self, pipeline: MutationPipeline, logger: logging.Logger | None = None) -> None:
        self.pipeline = pipeline
        self.strategy = ContactStrategy()
        self.logger = logger or logging.getLogger("crm_admin.crm.contacts")

    def list_contacts(self, session: Session, raw_customer_id: Any, list_query: ListQuery) -> dict[str, Any]:
        customer_id = parse_identifier(raw_customer_id, "customer")
        customer_store.require(session, customer_id)
        page = contact_store.list_for_customer(session, customer_id, list_query)
        return _page_payload(page, ContactRead)

    def get_contact(self, session: Session, raw_id: Any) -> ContactRead:
        contact_id = parse_identifier(raw_id, "contact")
        return ContactRead.model_validate(contact_store.require(session, contact_id))

    def create_contact(
        self,
        session: Session,
        actor_user: ActorUser,
        raw_customer_id: Any,
        payload: Any,
    ) -> ContactRead:
        customer_id = parse_identifier(raw_customer_id, "customer")
        strategy = ContactStrategy(customer_id)
        contact = self.pipeline.create(session, actor_user, strategy, payload)
        return ContactRead.model_validate(contact)

    def update_contact(self, session: Session, actor_user: ActorUser, raw_id: Any, payload: Any) -> ContactRead:
        contact = self.pipeline.update(session, actor_user, self.strategy, raw_id, payload, mode=REPLACE)
        return ContactRead.model_validate(contact)

    def delete_contact(self, session: Session, actor_user: ActorUser, raw_id: Any) -> int:
        return self.pipeline.delete(session, actor_user, self.strategy, raw_id)


class DealService:
    entity_type = "deal"

    def __init__(self, pipeline: MutationPipeline, logger: logging.Logger | None = None) -> None:
        self.pipeline = pipeline
        self.strategy = DealStrategy()
        self.logger = logger or logging.getLogger("crm_admin.crm.deals")

    def list_deals(self, session: Session, list_query: ListQuery) -> dict[str, Any]:
        page = deal_store.list_page(session, list_query, options=DEAL_LIST_OPTIONS)
        return _page_payload(page, DealRead)

    def get_deal(self, session: Session, raw_id: Any) -> DealDetailRead:
        deal_id = parse_identifier(raw_id, "deal")
        return DealDetailRead.model_validate(deal_store.require(session, deal_id, options=DEAL_DETAIL_OPTIONS))

    def create_deal(self, session: Session, actor_user: ActorUser, payload: Any) -> DealDetailRead:
        deal = self.pipeline.create(session, actor_user, self.strategy, payload)
        return DealDetailRead.model_validate(deal)

    def update_deal(self, session: Session, actor_user: ActorUser, raw_id: Any, payload: Any) -> DealDetailRead:
        deal = self.pipeline.update(session, actor_user, self.strategy, raw_id, payload, mode=REPLACE)
        return DealDetailRead.model_validate(deal)

    def change_stage(self, session: Session, actor_user: ActorUser, raw_id: Any, payload: Any) -> DealDetailRead:
        deal = self.pipeline.update(session, actor_user, self.strategy, raw_id, payload, mode=PATCH)
        return DealDetailRead.model_validate(deal)

    def delete_deal(self, session: Session, actor_user: ActorUser, raw_id: Any) -> int:
        return self.pipeline.delete(session, actor_user, self.strategy, raw_id)


class ActivityService:
    entity_type = "activity"

    def __init__(self, pipeline: MutationPipeline, logger: logging.Logger | None = None) -> None:
        self.pipeline = pipeline
        self.strategy = ActivityStrategy()
        self.logger = logger or logging.getLogger("crm_admin.crm.activities")

    def list_activities(self, session: Session, list_query: ListQuery) -> dict[str, Any]:
        page = activity_store.list_page(session, list_query, options=ACTIVITY_LIST_OPTIONS)
        return _page_payload(page, ActivityListRead)

    def list_my_activities(self, session: Session, actor_user: ActorUser, list_query: ListQuery) -> dict[str, Any]:
        assignee_id = actor_user.identity.numeric_id
        if assignee_id is None:
            self.logger.info("crm.my_activities_without_numeric_id", extra={"actor_id": actor_user.user_id})
            page_request = list_query.page_request()
            empty: Page[Activity] = Page(items=[], total=0, page=page_request.page, page_size=page_request.page_size)
            return _page_payload(empty, ActivityListRead)
        statuses = parse_csv(list_query.filters.get("status")) or [status.value for status in DEFAULT_MY_ACTIVITY_STATUSES]
        stmt = activity_store.assigned_to(assignee_id, statuses)
        page = paginate(session, stmt, list_query.page_request(), options=ACTIVITY_LIST_OPTIONS)
        return _page_payload(page, ActivityListRead)

    def get_activity(self, session: Session, raw_id: Any) -> ActivityDetailRead:
        activity_id = parse_identifier(raw_id, "activity")
        activity = activity_store.require(session, activity_id, options=ACTIVITY_DETAIL_OPTIONS)
        return ActivityDetailRead.model_validate(activity)

    def create_activity(self, session: Session, actor_user: ActorUser, payload: Any) -> ActivityDetailRead:
        activity = self.pipeline.create(session, actor_user, self.strategy, payload)
        return ActivityDetailRead.model_validate(activity)

    def update_activity(
        self,
        session: Session,
        actor_user: ActorUser,
        raw_id: Any,
        payload: Any,
    ) -> ActivityDetailRead:
        activity = self.pipeline.update(session, actor_user, self.strategy, raw_id, payload, mode=REPLACE)
        return ActivityDetailRead.model_validate(activity)

    def change_status(self, session: Session, actor_user: ActorUser, raw_id: Any, payload: Any) -> ActivityDetailRead:
        activity = self.pipeline.update(session, actor_user, self.strategy, raw_id, payload, mode=PATCH)
        return ActivityDetailRead.model_validate(activity)

    def delete_activity(self, session: Session, actor_user: ActorUser, raw_id: Any) -> int:
        return self.pipeline.delete(session, actor_user, self.strategy, raw_id)


class TagService:
    entity_type = "tag"

    def __init__(self, pipeline: MutationPipeline, logger: logging.Logger | None = None) -> None:
        self.pipeline = pipeline
        self.strategy = TagStrategy()
        self.customer_strategy = CustomerStrategy()
        self.logger = logger or logging.getLogger("crm_admin.crm.tags")

    def list_tags(self, session: Session, list_query: ListQuery) -> dict[str, Any]:
        return _page_payload(tag_store.list_page(session, list_query), TagRead)

    def get_tag(self, session: Session, raw_id: Any) -> TagRead:
        tag_id = parse_identifier(raw_id, "tag")
        return TagRead.model_validate(tag_store.require(session, tag_id))

    def create_tag(self, session: Session, actor_user: ActorUser, payload: Any) -> TagRead:
        return TagRead.model_validate(self.pipeline.create(session, actor_user, self.strategy, payload))

    def update_tag(self, session: Session, actor_user: ActorUser, raw_id: Any, payload: Any) -> TagRead:
        tag = self.pipeline.update(session, actor_user, self.strategy, raw_id, payload, mode=REPLACE)
        return TagRead.model_validate(tag)

    def delete_tag(self, session: Session, actor_user: ActorUser, raw_id: Any) -> int:
        return self.pipeline.delete(session, actor_user, self.strategy, raw_id)

    def assign_tag(self, session: Session, actor_user: ActorUser, raw_customer_id: Any, raw_tag_id: Any) -> CustomerRead:
        return self._change_assignment(session, actor_user, raw_customer_id, raw_tag_id, assign=True)

    def unassign_tag(self, session: Session, actor_user: ActorUser, raw_customer_id: Any, raw_tag_id: Any) -> CustomerRead:
        return self._change_assignment(session, actor_user, raw_customer_id, raw_tag_id, assign=False)

    def _change_assignment(
        self,
        session: Session,
        actor_user: ActorUser,
        raw_customer_id: Any,
        raw_tag_id: Any,
        *,
        assign: bool,
    ) -> CustomerRead:
        customer_id = parse_identifier(raw_customer_id, "customer")
        tag_id = parse_identifier(raw_tag_id, "tag")
        customer_store.require(session, customer_id)
        tag_store.require(session, tag_id)

        before = {"tag_ids": self._tag_ids(session, customer_id)}
        if assign:
            changed = customer_store.attach_tag(session, customer_id, tag_id)
        else:
            changed = customer_store.detach_tag(session, customer_id, tag_id)
        if changed:
            self.pipeline.commit_change(
                session,
                actor_user,
                self.customer_strategy,
                customer_id,
                before=before,
                after={"tag_ids": self._tag_ids(session, customer_id)},
            )
        return CustomerRead.model_validate(self.customer_strategy.reload(session, customer_id))

    def _tag_ids(self, session: Session, customer_id: int) -> list[int]:
        stmt = (
            select(customer_tags.c.tag_id)
            .where(customer_tags.c.customer_id == customer_id)
            .order_by(customer_tags.c.tag_id)
        )
        return list(session.scalars(stmt).all())


class PipelineStageService:
    def __init__(self, logger: logging.Logger | None = None) -> None:
        self.logger = logger or logging.getLogger("crm_admin.crm.pipeline_stages")

    def list_stages(self, session: Session) -> list[PipelineStageRead]:
        stmt = select(PipelineStage).order_by(PipelineStage.order.asc(), PipelineStage.id.asc())
        return [PipelineStageRead.model_validate(stage) for stage in session.scalars(stmt).all()]

    def ensure_default_stages(self, session: Session) -> int:
        existing = set(session.scalars(select(PipelineStage.name)).all())
        created = 0
        for name, display_name, order, color in DEFAULT_PIPELINE_STAGES:
            if name in existing:
                continue
            session.add(PipelineStage(name=name, display_name=display_name, order=order, color=color, is_active=True))
            created += 1
        if created:
            session.commit()
            self.logger.info("crm.pipeline_stages_seeded", extra={"resource": "pipeline_stage", "action": "create"})
        return created

