from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any, ClassVar, Generic, TypeVar

from sqlalchemy import Select, delete, exists, func, insert, select, update
from sqlalchemy.orm import Session, selectinload

from crm_admin.core.errors import (
    ActivityNotFound,
    ContactNotFound,
    CustomerNotFound,
    DealNotFound,
    NotFoundError,
    TagNotFound,
)
from crm_admin.crm.models import (
    Activity,
    CLOSED_STAGES,
    ActivityStatus,
    Contact,
    Customer,
    Deal,
    Tag,
    customer_tags,
    utcnow,
)
from crm_admin.crm.query import (
    Page,
    PageRequest,
    SortSpec,
    ilike_any,
    paginate,
    parse_csv,
    parse_decimal,
    parse_id_list,
    parse_int,
    parse_timestamp,
)


ModelT = TypeVar("ModelT")


@dataclass
class ListQuery:
    """Raw list parameters as received on the query string."""

    page: Any = None
    page_size: Any = None
    sort_by: str | None = None
    sort_order: str | None = None
    filters: dict[str, str | None] = field(default_factory=dict)

    def page_request(self) -> PageRequest:
        return PageRequest.from_raw(self.page, self.page_size)


class ResourceStore(Generic[ModelT]):
    """Persistence for one entity type, with the tombstone predicate applied by default."""

    model: ClassVar[type]
    not_found: ClassVar[type[NotFoundError]] = NotFoundError
    sort_fields: ClassVar[tuple[str, ...]] = ("created_at", "updated_at")
    default_sort: ClassVar[str] = "created_at"
    default_order: ClassVar[str] = "desc"

    def query(self, *, include_deleted: bool = False) -> Select:
        stmt = select(self.model)
        if not include_deleted:
            stmt = stmt.where(self.model.deleted_at.is_(None))
        return stmt

    def get(
        self,
        session: Session,
        record_id: int,
        *,
        include_deleted: bool = False,
        options: Sequence[Any] = (),
    ) -> ModelT | None:
        stmt = self.query(include_deleted=include_deleted).where(self.model.id == record_id)
        if options:
            stmt = stmt.options(*options)
        return session.scalar(stmt)

    def require(
        self,
        session: Session,
        record_id: int,
        *,
        include_deleted: bool = False,
        options: Sequence[Any] = (),
    ) -> ModelT:
        record = self.get(session, record_id, include_deleted=include_deleted, options=options)
        if record is None:
            raise self.not_found()
        return record

    def exists(self, session: Session, record_id: int) -> bool:
        stmt = select(exists().where(self.model.id == record_id, self.model.deleted_at.is_(None)))
        return bool(session.scalar(stmt))

    def add(self, session: Session, record: ModelT) -> ModelT:
        session.add(record)
        session.flush()
        return record

    def soft_delete(self, session: Session, record: ModelT) -> ModelT:
        record.deleted_at = utcnow()
        session.flush()
        return record

    def count(self, session: Session, stmt: Select | None = None) -> int:
        source = stmt if stmt is not None else self.query()
        return int(session.scalar(select(func.count()).select_from(source.order_by(None).subquery())) or 0)

    def sort_columns(self) -> dict[str, Any]:
        return {name: getattr(self.model, name) for name in self.sort_fields}

    def filtered(self, filters: dict[str, str | None]) -> Select:
        return self.query()

    def list_page(
        self,
        session: Session,
        list_query: ListQuery,
        *,
        options: Sequence[Any] = (),
    ) -> Page[ModelT]:
        sort = SortSpec.resolve(
            list_query.sort_by,
            list_query.sort_order,
            allowed=self.sort_fields,
            default_field=self.default_sort,
            default_order=self.default_order,
        )
        stmt = sort.apply(self.filtered(list_query.filters), self.sort_columns(), tie_breaker=self.model.id)
        return paginate(session, stmt, list_query.page_request(), options=options)


class CustomerStore(ResourceStore[Customer]):
    model = Customer
    not_found = CustomerNotFound
    sort_fields = ("created_at", "updated_at", "name", "email", "status")

    def email_taken(self, session: Session, email: str, *, exclude_id: int | None = None) -> bool:
        conditions = [Customer.email == email, Customer.deleted_at.is_(None)]
        if exclude_id is not None:
            conditions.append(Customer.id != exclude_id)
        return bool(session.scalar(select(exists().where(*conditions))))

    def filtered(self, filters: dict[str, str | None]) -> Select:
        stmt = self.query()
        if filters.get("status"):
            stmt = stmt.where(Customer.status == filters["status"])
        assigned_to = parse_int(filters.get("assigned_to"))
        if assigned_to is not None:
            stmt = stmt.where(Customer.assigned_to == assigned_to)
        search = ilike_any((Customer.name, Customer.email, Customer.company), filters.get("search"))
        if search is not None:
            stmt = stmt.where(search)
        created_from = parse_timestamp(filters.get("created_from"))
        if created_from is not None:
            stmt = stmt.where(Customer.created_at >= created_from)
        created_to = parse_timestamp(filters.get("created_to"))
        if created_to is not None:
            stmt = stmt.where(Customer.created_at <= created_to)
        tag_ids = parse_id_list(filters.get("tags"))
        if tag_ids:
            stmt = stmt.where(
                exists().where(customer_tags.c.customer_id == Customer.id, customer_tags.c.tag_id.in_(tag_ids))
            )
        return stmt

    def detail_counts(self, session: Session, customer_id: int) -> dict[str, int]:
        contacts_count = session.scalar(
            select(func.count(Contact.id)).where(Contact.customer_id == customer_id, Contact.deleted_at.is_(None))
        )
        open_deals_count = session.scalar(
            select(func.count(Deal.id)).where(
                Deal.customer_id == customer_id,
                Deal.deleted_at.is_(None),
                Deal.stage.notin_(list(CLOSED_STAGES)),
            )
        )
        upcoming_activities_count = session.scalar(
            select(func.count(Activity.id)).where(
                Activity.customer_id == customer_id,
                Activity.deleted_at.is_(None),
                Activity.status == ActivityStatus.SCHEDULED,
                Activity.due_date > utcnow(),
            )
        )
        return {
            "contacts_count": int(contacts_count or 0),
            "open_deals_count": int(open_deals_count or 0),
            "upcoming_activities_count": int(upcoming_activities_count or 0),
        }

    def recent_activities(self, session: Session, customer_id: int, limit: int = 5) -> list[Activity]:
        stmt = (
            select(Activity)
            .where(Activity.customer_id == customer_id, Activity.deleted_at.is_(None))
            .order_by(Activity.created_at.desc(), Activity.id.desc())
            .limit(limit)
        )
        return list(session.scalars(stmt).all())

    def has_tag(self, session: Session, customer_id: int, tag_id: int) -> bool:
        stmt = select(
            exists().where(customer_tags.c.customer_id == customer_id, customer_tags.c.tag_id == tag_id)
        )
        return bool(session.scalar(stmt))

    def attach_tag(self, session: Session, customer_id: int, tag_id: int) -> bool:
        if self.has_tag(session, customer_id, tag_id):
            return False
        session.execute(insert(customer_tags).values(customer_id=customer_id, tag_id=tag_id))
        return True

    def detach_tag(self, session: Session, customer_id: int, tag_id: int) -> bool:
        result = session.execute(
            delete(customer_tags).where(customer_tags.c.customer_id == customer_id, customer_tags.c.tag_id == tag_id)
        )
        return bool(result.rowcount)


class ContactStore(ResourceStore[Contact]):
    model = Contact
    not_found = ContactNotFound

    def for_customer(self, customer_id: int) -> Select:
        return (
            self.query()
            .where(Contact.customer_id == customer_id)
            .order_by(Contact.is_primary.desc(), Contact.created_at.asc(), Contact.id.asc())
        )

    def list_for_customer(self, session: Session, customer_id: int, list_query: ListQuery) -> Page[Contact]:
        return paginate(session, self.for_customer(customer_id), list_query.page_request())

    def clear_primary(self, session: Session, customer_id: int, *, keep_id: int | None = None) -> None:
        stmt = update(Contact).where(
            Contact.customer_id == customer_id,
            Contact.deleted_at.is_(None),
            Contact.is_primary.is_(True),
        )
        if keep_id is not None:
            stmt = stmt.where(Contact.id != keep_id)
        session.execute(stmt.values(is_primary=False, updated_at=utcnow()))

    def primary_count(self, session: Session, customer_id: int) -> int:
        stmt = select(func.count(Contact.id)).where(
            Contact.customer_id == customer_id,
            Contact.deleted_at.is_(None),
            Contact.is_primary.is_(True),
        )
        return int(session.scalar(stmt) or 0)


class DealStore(ResourceStore[Deal]):
    model = Deal
    not_found = DealNotFound
    sort_fields = ("created_at", "updated_at", "title", "amount", "expected_close_date", "stage")

    def filtered(self, filters: dict[str, str | None]) -> Select:
        stmt = self.query()
        if filters.get("stage"):
            stmt = stmt.where(Deal.stage == filters["stage"])
        owner_id = parse_int(filters.get("owner_id"))
        if owner_id is not None:
            stmt = stmt.where(Deal.owner_id == owner_id)
        customer_id = parse_int(filters.get("customer_id"))
        if customer_id is not None:
            stmt = stmt.where(Deal.customer_id == customer_id)
        search = ilike_any((Deal.title,), filters.get("search"))
        if search is not None:
            stmt = stmt.where(search)
        amount_min = parse_decimal(filters.get("amount_min"))
        if amount_min is not None:
            stmt = stmt.where(Deal.amount >= amount_min)
        amount_max = parse_decimal(filters.get("amount_max"))
        if amount_max is not None:
            stmt = stmt.where(Deal.amount <= amount_max)
        close_from = parse_timestamp(filters.get("expected_close_from"))
        if close_from is not None:
            stmt = stmt.where(Deal.expected_close_date >= close_from)
        close_to = parse_timestamp(filters.get("expected_close_to"))
        if close_to is not None:
            stmt = stmt.where(Deal.expected_close_date <= close_to)
        return stmt


class ActivityStore(ResourceStore[Activity]):
    model = Activity
    not_found = ActivityNotFound
    sort_fields = ("created_at", "updated_at", "title", "due_date", "status", "type", "priority")
    default_sort = "due_date"
    default_order = "asc"

    def filtered(self, filters: dict[str, str | None]) -> Select:
        stmt = self.query()
        if filters.get("type"):
            stmt = stmt.where(Activity.type == filters["type"])
        statuses = parse_csv(filters.get("status"))
        if statuses:
            stmt = stmt.where(Activity.status.in_(statuses))
        for name in ("assigned_to", "customer_id", "deal_id"):
            value = parse_int(filters.get(name))
            if value is not None:
                stmt = stmt.where(getattr(Activity, name) == value)
        search = ilike_any((Activity.title,), filters.get("search"))
        if search is not None:
            stmt = stmt.where(search)
        due_from = parse_timestamp(filters.get("due_date_from"))
        if due_from is not None:
            stmt = stmt.where(Activity.due_date >= due_from)
        due_to = parse_timestamp(filters.get("due_date_to"))
        if due_to is not None:
            stmt = stmt.where(Activity.due_date <= due_to)
        if filters.get("priority"):
            stmt = stmt.where(Activity.priority == filters["priority"])
        return stmt

    def assigned_to(self, assignee_id: int, statuses: Sequence[str]) -> Select:
        return (
            self.query()
            .where(Activity.assigned_to == assignee_id, Activity.status.in_(list(statuses)))
            .order_by(Activity.due_date.is_(None), Activity.due_date.asc(), Activity.id.asc())
        )


class TagStore(ResourceStore[Tag]):
    model = Tag
    not_found = TagNotFound
    sort_fields = ("name", "created_at")
    default_sort = "name"
    default_order = "asc"

    def name_taken(self, session: Session, name: str, *, exclude_id: int | None = None) -> bool:
        conditions = [Tag.name == name, Tag.deleted_at.is_(None)]
        if exclude_id is not None:
            conditions.append(Tag.id != exclude_id)
        return bool(session.scalar(select(exists().where(*conditions))))

    def filtered(self, filters: dict[str, str | None]) -> Select:
        stmt = self.query()
        search = ilike_any((Tag.name,), filters.get("search"))
        if search is not None:
            stmt = stmt.where(search)
        return stmt

    def clear_associations(self, session: Session, tag_id: int) -> int:
        result = session.execute(delete(customer_tags).where(customer_tags.c.tag_id == tag_id))
        return int(result.rowcount or 0)


CUSTOMER_LIST_OPTIONS = (selectinload(Customer.tags),)
DEAL_LIST_OPTIONS = (selectinload(Deal.customer),)
DEAL_DETAIL_OPTIONS = (
    selectinload(Deal.customer),
    selectinload(Deal.contact),
    selectinload(Deal.activities),
    selectinload(Deal.notes),
)
ACTIVITY_LIST_OPTIONS = (selectinload(Activity.customer), selectinload(Activity.deal))
ACTIVITY_DETAIL_OPTIONS = ACTIVITY_LIST_OPTIONS + (selectinload(Activity.contact),)

customer_store = CustomerStore()
contact_store = ContactStore()
deal_store = DealStore()
activity_store = ActivityStore()
tag_store = TagStore()
