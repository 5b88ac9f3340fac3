from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Annotated, Generic, TypeVar

from pydantic import AfterValidator, BaseModel, ConfigDict, Field

from crm_admin.crm.query import MAX_INT


ItemT = TypeVar("ItemT")


def _to_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


UtcDatetime = Annotated[datetime, AfterValidator(_to_utc)]
CurrencyCode = Annotated[str, Field(pattern=r"^[A-Za-z]{3}$")]
HexColor = Annotated[str, Field(pattern=r"^#[0-9A-Fa-f]{6}$")]
RecordRef = Annotated[int, Field(le=MAX_INT)]


class PageRead(BaseModel, Generic[ItemT]):
    items: list[ItemT]
    total: int
    page: int
    page_size: int
    total_pages: int


class MessageRead(BaseModel):
    message: str


class TagCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    color: HexColor | None = None


class TagUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=100)
    color: HexColor | None = None


class TagRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    color: str | None
    created_at: datetime
    updated_at: datetime


class CustomerCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    email: str = Field(min_length=1, max_length=255)
    phone: str | None = Field(default=None, max_length=50)
    company: str | None = Field(default=None, max_length=255)
    role: str | None = Field(default=None, max_length=100)
    status: str | None = None
    assigned_to: RecordRef | None = None
    contacted: bool = False
    next_follow_up_at: UtcDatetime | None = None
    notes: str | None = None


class CustomerUpdate(BaseModel):
    name: str | None = Field(default=None, max_length=255)
    email: str | None = Field(default=None, max_length=255)
    phone: str | None = Field(default=None, max_length=50)
    company: str | None = Field(default=None, max_length=255)
    role: str | None = Field(default=None, max_length=100)
    status: str | None = None
    assigned_to: RecordRef | None = None
    contacted: bool | None = None
    next_follow_up_at: UtcDatetime | None = None
    notes: str | None = None


class CustomerPatch(BaseModel):
    status: str | None = None
    assigned_to: RecordRef | None = None
    contacted: bool | None = None
    next_follow_up_at: UtcDatetime | None = None


class CustomerSummaryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    email: str
    company: str | None
    status: str


class CustomerRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    email: str
    phone: str | None
    company: str | None
    role: str | None
    status: str
    assigned_to: int | None
    contacted: bool
    next_follow_up_at: datetime | None
    notes: str | None
    tags: list[TagRead] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime
    deleted_at: datetime | None = None


class ContactCreate(BaseModel):
    first_name: str = Field(min_length=1, max_length=100)
    last_name: str | None = Field(default=None, max_length=100)
    email: str | None = Field(default=None, max_length=255)
    phone: str | None = Field(default=None, max_length=50)
    position: str | None = Field(default=None, max_length=100)
    is_primary: bool = False
    notes: str | None = None


class ContactUpdate(BaseModel):
    first_name: str | None = Field(default=None, max_length=100)
    last_name: str | None = Field(default=None, max_length=100)
    email: str | None = Field(default=None, max_length=255)
    phone: str | None = Field(default=None, max_length=50)
    position: str | None = Field(default=None, max_length=100)
    is_primary: bool | None = None
    notes: str | None = None


class ContactRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    customer_id: int
    first_name: str
    last_name: str | None
    email: str | None
    phone: str | None
    position: str | None
    is_primary: bool
    notes: str | None
    created_at: datetime
    updated_at: datetime


class DealSummaryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    title: str
    stage: str
    amount: float
    currency: str


class ActivityCreate(BaseModel):
    type: str = Field(min_length=1)
    title: str = Field(min_length=1, max_length=255)
    description: str | None = None
    status: str | None = None
    customer_id: RecordRef | None = None
    deal_id: RecordRef | None = None
    contact_id: RecordRef | None = None
    assigned_to: RecordRef | None = None
    due_date: UtcDatetime | None = None
    duration: int | None = Field(default=None, ge=0, le=MAX_INT)
    outcome: str | None = None
    priority: str | None = Field(default=None, max_length=20)


class ActivityUpdate(BaseModel):
    type: str | None = None
    title: str | None = Field(default=None, max_length=255)
    description: str | None = None
    status: str | None = None
    customer_id: RecordRef | None = None
    deal_id: RecordRef | None = None
    contact_id: RecordRef | None = None
    assigned_to: RecordRef | None = None
    due_date: UtcDatetime | None = None
    duration: int | None = Field(default=None, ge=0, le=MAX_INT)
    outcome: str | None = None
    priority: str | None = Field(default=None, max_length=20)


class ActivityStatusPatch(BaseModel):
    status: str = Field(min_length=1)
    outcome: str | None = None


class ActivityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    type: str
    title: str
    description: str | None
    status: str
    customer_id: int | None
    deal_id: int | None
    contact_id: int | None
    assigned_to: int | None
    due_date: datetime | None
    completed_at: datetime | None
    duration: int | None
    outcome: str | None
    priority: str
    created_at: datetime
    updated_at: datetime


class ActivityListRead(ActivityRead):
    customer: CustomerSummaryRead | None = None
    deal: DealSummaryRead | None = None


class ActivityDetailRead(ActivityListRead):
    contact: ContactRead | None = None


class CustomerDetailRead(CustomerRead):
    contacts_count: int
    open_deals_count: int
    upcoming_activities_count: int
    recent_activities: list[ActivityRead]


class NoteRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    content: str
    customer_id: int | None
    deal_id: int | None
    activity_id: int | None
    author_id: int
    author_name: str | None
    created_at: datetime


class DealCreate(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    description: str | None = None
    customer_id: RecordRef
    contact_id: RecordRef | None = None
    stage: str | None = None
    amount: Decimal | None = Field(default=None, ge=0, max_digits=15, decimal_places=2)
    currency: CurrencyCode | None = None
    probability: int | None = None
    expected_close_date: UtcDatetime | None = None
    owner_id: RecordRef | None = None
    lost_reason: str | None = None


class DealUpdate(BaseModel):
    title: str | None = Field(default=None, max_length=255)
    description: str | None = None
    contact_id: RecordRef | None = None
    stage: str | None = None
    amount: Decimal | None = Field(default=None, ge=0, max_digits=15, decimal_places=2)
    currency: CurrencyCode | None = None
    probability: int | None = None
    expected_close_date: UtcDatetime | None = None
    actual_close_date: UtcDatetime | None = None
    owner_id: RecordRef | None = None
    lost_reason: str | None = None


class DealStagePatch(BaseModel):
    stage: str = Field(min_length=1)
    lost_reason: str | None = None


class DealRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    title: str
    description: str | None
    customer_id: int
    contact_id: int | None
    stage: str
    amount: float
    currency: str
    probability: int
    expected_close_date: datetime | None
    actual_close_date: datetime | None
    owner_id: int | None
    lost_reason: str | None
    created_at: datetime
    updated_at: datetime
    customer: CustomerSummaryRead | None = None


class DealDetailRead(DealRead):
    contact: ContactRead | None = None
    activities: list[ActivityRead] = Field(default_factory=list)
    notes: list[NoteRead] = Field(default_factory=list)


class PipelineStageRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    display_name: str
    order: int
    color: str | None
    is_active: bool


class AuditLogRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    resource_type: str
    resource_id: str
    action: str
    user_id: str
    user_name: str | None
    user_role: str | None
    old_values: dict | None
    new_values: dict | None
    ip_address: str | None
    user_agent: str | None
    correlation_id: str | None
    created_at: datetime


class UserRead(BaseModel):
    id: int | None
    subject: str | None
    email: str | None
    name: str | None
    role: str
    is_active: bool = True


class MeRead(BaseModel):
    user: UserRead
    permissions: list[str]


class CustomerStats(BaseModel):
    total: int
    by_status: dict[str, int]


class DealStats(BaseModel):
    total: int
    total_value: float
    won_value: float
    won_count: int
    lost_count: int
    open_count: int
    average_deal_size: float
    by_stage: dict[str, int]


class ActivityStats(BaseModel):
    total: int
    scheduled: int
    completed: int
    cancelled: int
    overdue: int
    by_type: dict[str, int]


class TopCustomerRead(BaseModel):
    id: int
    name: str
    email: str
    company: str | None
    deals_count: int
    deals_value: float


class ReportOverviewRead(BaseModel):
    customers: CustomerStats
    deals: DealStats
    activities: ActivityStats
    recent_deals: list[DealRead]
    top_customers: list[TopCustomerRead]
