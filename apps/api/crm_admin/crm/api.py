from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any

from fastapi import APIRouter, Body, Depends, Query, Request, status
from sqlalchemy.orm import Session

from crm_admin.core.auth import Identity, get_current_identity
from crm_admin.core.context import ActorUser
from crm_admin.core.database import get_db
from crm_admin.core.rbac import (
    Permission,
    Role,
    authorize_permission,
    permissions_for,
    require_permission,
    require_roles,
)
from crm_admin.crm.pipeline import MutationPipeline
from crm_admin.crm.query import PageRequest, parse_int
from crm_admin.crm.reports import ReportService
from crm_admin.crm.schemas import (
    ActivityDetailRead,
    ActivityListRead,
    AuditLogRead,
    ContactRead,
    CustomerDetailRead,
    CustomerRead,
    DealDetailRead,
    DealRead,
    MeRead,
    MessageRead,
    PageRead,
    PipelineStageRead,
    ReportOverviewRead,
    TagRead,
    UserRead,
)
from crm_admin.crm.service import (
    ActivityService,
    ContactService,
    CustomerService,
    DealService,
    PipelineStageService,
    TagService,
)
from crm_admin.crm.stores import ListQuery
from crm_admin.services.audit import AuditRecorder


router = APIRouter(prefix="/admin", tags=["crm.customers"])
contacts_router = APIRouter(prefix="/admin", tags=["crm.contacts"])
deals_router = APIRouter(prefix="/admin", tags=["crm.deals"])
activities_router = APIRouter(prefix="/admin", tags=["crm.activities"])
tags_router = APIRouter(prefix="/admin", tags=["crm.tags"])
pipeline_stages_router = APIRouter(prefix="/admin", tags=["crm.pipeline_stages"])
audit_router = APIRouter(prefix="/admin", tags=["crm.audit"])
reports_router = APIRouter(prefix="/admin", tags=["crm.reports"])
me_router = APIRouter(prefix="/admin", tags=["auth"])

audit_recorder = AuditRecorder(logging.getLogger("crm_admin.crm.audit"))
mutation_pipeline = MutationPipeline(audit_recorder, logging.getLogger("crm_admin.crm.pipeline"))
service = CustomerService(mutation_pipeline, logging.getLogger("crm_admin.crm.customers"))
contact_service = ContactService(mutation_pipeline, logging.getLogger("crm_admin.crm.contacts"))
deal_service = DealService(mutation_pipeline, logging.getLogger("crm_admin.crm.deals"))
activity_service = ActivityService(mutation_pipeline, logging.getLogger("crm_admin.crm.activities"))
tag_service = TagService(mutation_pipeline, logging.getLogger("crm_admin.crm.tags"))
pipeline_stage_service = PipelineStageService(logging.getLogger("crm_admin.crm.pipeline_stages"))
report_service = ReportService(logging.getLogger("crm_admin.crm.reports"))

can_read = require_permission(Permission.READ)
can_write = require_permission(Permission.WRITE)
can_delete = require_permission(Permission.DELETE)
admin_only = require_roles(Role.ADMIN)


def list_params(
    page: str | None = Query(default=None),
    page_size: str | None = Query(default=None),
    sort_by: str | None = Query(default=None),
    sort_order: str | None = Query(default=None),
) -> ListQuery:
    return ListQuery(page=page, page_size=page_size, sort_by=sort_by, sort_order=sort_order)


def actor_for(request: Request, identity: Identity) -> ActorUser:
    return ActorUser.from_request(request, identity)


# customers


@router.get("/customers", response_model=PageRead[CustomerRead])
def list_customers(
    paging: ListQuery = Depends(list_params),
    status_filter: str | None = Query(default=None, alias="status"),
    assigned_to: str | None = Query(default=None),
    search: str | None = Query(default=None),
    created_from: str | None = Query(default=None),
    created_to: str | None = Query(default=None),
    tags: str | None = Query(default=None),
    db: Session = Depends(get_db),
    identity: Identity = Depends(can_read),
) -> dict[str, Any]:
    list_query = replace(
        paging,
        filters={
            "status": status_filter,
            "assigned_to": assigned_to,
            "search": search,
            "created_from": created_from,
            "created_to": created_to,
            "tags": tags,
        },
    )
    return service.list_customers(db, list_query)


@router.get("/customers/{customer_id}", response_model=CustomerDetailRead)
def get_customer(
    customer_id: str,
    include_deleted: bool = Query(default=False),
    db: Session = Depends(get_db),
    identity: Identity = Depends(can_read),
) -> CustomerDetailRead:
    if include_deleted:
        authorize_permission(identity, Permission.MANAGE_ALL)
    return service.get_customer(db, customer_id, include_deleted=include_deleted)


@router.post("/customers", response_model=CustomerRead, status_code=status.HTTP_201_CREATED)
def create_customer(
    request: Request,
    payload: Any = Body(default=None),
    db: Session = Depends(get_db),
    identity: Identity = Depends(can_write),
) -> CustomerRead:
    return service.create_customer(db, actor_for(request, identity), payload)


@router.put("/customers/{customer_id}", response_model=CustomerRead)
def update_customer(
    request: Request,
    customer_id: str,
    payload: Any = Body(default=None),
    db: Session = Depends(get_db),
    identity: Identity = Depends(can_write),
) -> CustomerRead:
    return service.update_customer(db, actor_for(request, identity), customer_id, payload)


@router.patch("/customers/{customer_id}", response_model=CustomerRead)
def patch_customer(
    request: Request,
    customer_id: str,
    payload: Any = Body(default=None),
    db: Session = Depends(get_db),
    identity: Identity = Depends(can_write),
) -> CustomerRead:
    return service.patch_customer(db, actor_for(request, identity), customer_id, payload)


@router.delete("/customers/{customer_id}", response_model=MessageRead)
def delete_customer(
    request: Request,
    customer_id: str,
    db: Session = Depends(get_db),
    identity: Identity = Depends(can_delete),
) -> MessageRead:
    service.delete_customer(db, actor_for(request, identity), customer_id)
    return MessageRead(message="Customer deleted successfully")


# contacts


@contacts_router.get("/customers/{customer_id}/contacts", response_model=PageRead[ContactRead])
def list_contacts(
    customer_id: str,
    paging: ListQuery = Depends(list_params),
    db: Session = Depends(get_db),
    identity: Identity = Depends(can_read),
) -> dict[str, Any]:
    return contact_service.list_contacts(db, customer_id, paging)


@contacts_router.post(
    "/customers/{customer_id}/contacts",
    response_model=ContactRead,
    status_code=status.HTTP_201_CREATED,
)
def create_contact(
    request: Request,
    customer_id: str,
    payload: Any = Body(default=None),
    db: Session = Depends(get_db),
    identity: Identity = Depends(can_write),
) -> ContactRead:
    return contact_service.create_contact(db, actor_for(request, identity), customer_id, payload)


@contacts_router.get("/contacts/{contact_id}", response_model=ContactRead)
def get_contact(
    contact_id: str,
    db: Session = Depends(get_db),
    identity: Identity = Depends(can_read),
) -> ContactRead:
    return contact_service.get_contact(db, contact_id)


@contacts_router.put("/contacts/{contact_id}", response_model=ContactRead)
def update_contact(
    request: Request,
    contact_id: str,
    payload: Any = Body(default=None),
    db: Session = Depends(get_db),
    identity: Identity = Depends(can_write),
) -> ContactRead:
    return contact_service.update_contact(db, actor_for(request, identity), contact_id, payload)


@contacts_router.delete("/contacts/{contact_id}", response_model=MessageRead)
def delete_contact(
    request: Request,
    contact_id: str,
    db: Session = Depends(get_db),
    identity: Identity = Depends(can_delete),
) -> MessageRead:
    contact_service.delete_contact(db, actor_for(request, identity), contact_id)
    return MessageRead(message="Contact deleted successfully")


# deals


@deals_router.get("/deals", response_model=PageRead[DealRead])
def list_deals(
    paging: ListQuery = Depends(list_params),
    stage: str | None = Query(default=None),
    owner_id: str | None = Query(default=None),
    customer_id: str | None = Query(default=None),
    search: str | None = Query(default=None),
    amount_min: str | None = Query(default=None),
    amount_max: str | None = Query(default=None),
    expected_close_from: str | None = Query(default=None),
    expected_close_to: str | None = Query(default=None),
    db: Session = Depends(get_db),
    identity: Identity = Depends(can_read),
) -> dict[str, Any]:
    list_query = replace(
        paging,
        filters={
            "stage": stage,
            "owner_id": owner_id,
            "customer_id": customer_id,
            "search": search,
            "amount_min": amount_min,
            "amount_max": amount_max,
            "expected_close_from": expected_close_from,
            "expected_close_to": expected_close_to,
        },
    )
    return deal_service.list_deals(db, list_query)


@deals_router.get("/deals/{deal_id}", response_model=DealDetailRead)
def get_deal(
    deal_id: str,
    db: Session = Depends(get_db),
    identity: Identity = Depends(can_read),
) -> DealDetailRead:
    return deal_service.get_deal(db, deal_id)


@deals_router.post("/deals", response_model=DealDetailRead, status_code=status.HTTP_201_CREATED)
def create_deal(
    request: Request,
    payload: Any = Body(default=None),
    db: Session = Depends(get_db),
    identity: Identity = Depends(can_write),
) -> DealDetailRead:
    return deal_service.create_deal(db, actor_for(request, identity), payload)


@deals_router.put("/deals/{deal_id}", response_model=DealDetailRead)
def update_deal(
    request: Request,
    deal_id: str,
    payload: Any = Body(default=None),
    db: Session = Depends(get_db),
    identity: Identity = Depends(can_write),
) -> DealDetailRead:
    return deal_service.update_deal(db, actor_for(request, identity), deal_id, payload)


@deals_router.patch("/deals/{deal_id}", response_model=DealDetailRead)
def change_deal_stage(
    request: Request,
    deal_id: str,
    payload: Any = Body(default=None),
    db: Session = Depends(get_db),
    identity: Identity = Depends(can_write),
) -> DealDetailRead:
    return deal_service.change_stage(db, actor_for(request, identity), deal_id, payload)


@deals_router.delete("/deals/{deal_id}", response_model=MessageRead)
def delete_deal(
    request: Request,
    deal_id: str,
    db: Session = Depends(get_db),
    identity: Identity = Depends(can_delete),
) -> MessageRead:
    deal_service.delete_deal(db, actor_for(request, identity), deal_id)
    return MessageRead(message="Deal deleted successfully")


# activities


@activities_router.get("/activities", response_model=PageRead[ActivityListRead])
def list_activities(
    paging: ListQuery = Depends(list_params),
    activity_type: str | None = Query(default=None, alias="type"),
    status_filter: str | None = Query(default=None, alias="status"),
    assigned_to: str | None = Query(default=None),
    customer_id: str | None = Query(default=None),
    deal_id: str | None = Query(default=None),
    search: str | None = Query(default=None),
    due_date_from: str | None = Query(default=None),
    due_date_to: str | None = Query(default=None),
    priority: str | None = Query(default=None),
    db: Session = Depends(get_db),
    identity: Identity = Depends(can_read),
) -> dict[str, Any]:
    list_query = replace(
        paging,
        filters={
            "type": activity_type,
            "status": status_filter,
            "assigned_to": assigned_to,
            "customer_id": customer_id,
            "deal_id": deal_id,
            "search": search,
            "due_date_from": due_date_from,
            "due_date_to": due_date_to,
            "priority": priority,
        },
    )
    return activity_service.list_activities(db, list_query)


@activities_router.get("/me/activities", response_model=PageRead[ActivityListRead])
def list_my_activities(
    request: Request,
    paging: ListQuery = Depends(list_params),
    status_filter: str | None = Query(default=None, alias="status"),
    db: Session = Depends(get_db),
    identity: Identity = Depends(can_read),
) -> dict[str, Any]:
    list_query = replace(paging, filters={"status": status_filter})
    return activity_service.list_my_activities(db, actor_for(request, identity), list_query)


@activities_router.get("/activities/{activity_id}", response_model=ActivityDetailRead)
def get_activity(
    activity_id: str,
    db: Session = Depends(get_db),
    identity: Identity = Depends(can_read),
) -> ActivityDetailRead:
    return activity_service.get_activity(db, activity_id)


@activities_router.post("/activities", response_model=ActivityDetailRead, status_code=status.HTTP_201_CREATED)
def create_activity(
    request: Request,
    payload: Any = Body(default=None),
    db: Session = Depends(get_db),
    identity: Identity = Depends(can_write),
) -> ActivityDetailRead:
    return activity_service.create_activity(db, actor_for(request, identity), payload)


@activities_router.put("/activities/{activity_id}", response_model=ActivityDetailRead)
def update_activity(
    request: Request,
    activity_id: str,
    payload: Any = Body(default=None),
    db: Session = Depends(get_db),
    identity: Identity = Depends(can_write),
) -> ActivityDetailRead:
    return activity_service.update_activity(db, actor_for(request, identity), activity_id, payload)


@activities_router.patch("/activities/{activity_id}", response_model=ActivityDetailRead)
def change_activity_status(
    request: Request,
    activity_id: str,
    payload: Any = Body(default=None),
    db: Session = Depends(get_db),
    identity: Identity = Depends(can_write),
) -> ActivityDetailRead:
    return activity_service.change_status(db, actor_for(request, identity), activity_id, payload)


@activities_router.delete("/activities/{activity_id}", response_model=MessageRead)
def delete_activity(
    request: Request,
    activity_id: str,
    db: Session = Depends(get_db),
    identity: Identity = Depends(can_delete),
) -> MessageRead:
    activity_service.delete_activity(db, actor_for(request, identity), activity_id)
    return MessageRead(message="Activity deleted successfully")


# tags


@tags_router.get("/tags", response_model=PageRead[TagRead])
def list_tags(
    paging: ListQuery = Depends(list_params),
    search: str | None = Query(default=None),
    db: Session = Depends(get_db),
    identity: Identity = Depends(can_read),
) -> dict[str, Any]:
    return tag_service.list_tags(db, replace(paging, filters={"search": search}))


@tags_router.get("/tags/{tag_id}", response_model=TagRead)
def get_tag(
    tag_id: str,
    db: Session = Depends(get_db),
    identity: Identity = Depends(can_read),
) -> TagRead:
    return tag_service.get_tag(db, tag_id)


@tags_router.post("/tags", response_model=TagRead, status_code=status.HTTP_201_CREATED)
def create_tag(
    request: Request,
    payload: Any = Body(default=None),
    db: Session = Depends(get_db),
    identity: Identity = Depends(admin_only),
) -> TagRead:
    return tag_service.create_tag(db, actor_for(request, identity), payload)


@tags_router.put("/tags/{tag_id}", response_model=TagRead)
def update_tag(
    request: Request,
    tag_id: str,
    payload: Any = Body(default=None),
    db: Session = Depends(get_db),
    identity: Identity = Depends(admin_only),
) -> TagRead:
    return tag_service.update_tag(db, actor_for(request, identity), tag_id, payload)


@tags_router.delete("/tags/{tag_id}", response_model=MessageRead)
def delete_tag(
    request: Request,
    tag_id: str,
    db: Session = Depends(get_db),
    identity: Identity = Depends(admin_only),
) -> MessageRead:
    tag_service.delete_tag(db, actor_for(request, identity), tag_id)
    return MessageRead(message="Tag deleted successfully")


@tags_router.post("/customers/{customer_id}/tags/{tag_id}", response_model=CustomerRead)
def assign_tag(
    request: Request,
    customer_id: str,
    tag_id: str,
    db: Session = Depends(get_db),
    identity: Identity = Depends(can_write),
) -> CustomerRead:
    return tag_service.assign_tag(db, actor_for(request, identity), customer_id, tag_id)


@tags_router.delete("/customers/{customer_id}/tags/{tag_id}", response_model=CustomerRead)
def unassign_tag(
    request: Request,
    customer_id: str,
    tag_id: str,
    db: Session = Depends(get_db),
    identity: Identity = Depends(can_write),
) -> CustomerRead:
    return tag_service.unassign_tag(db, actor_for(request, identity), customer_id, tag_id)


# pipeline stages, audit, reports, identity


@pipeline_stages_router.get("/pipeline-stages", response_model=list[PipelineStageRead])
def list_pipeline_stages(
    db: Session = Depends(get_db),
    identity: Identity = Depends(can_read),
) -> list[PipelineStageRead]:
    return pipeline_stage_service.list_stages(db)


@audit_router.get("/audit-logs", response_model=PageRead[AuditLogRead])
def list_audit_logs(
    page: str | None = Query(default=None),
    page_size: str | None = Query(default=None),
    resource_type: str | None = Query(default=None),
    resource_id: str | None = Query(default=None),
    user_id: str | None = Query(default=None),
    action: str | None = Query(default=None),
    db: Session = Depends(get_db),
    identity: Identity = Depends(admin_only),
) -> dict[str, Any]:
    entries = audit_recorder.list_entries(
        db,
        {"resource_type": resource_type, "resource_id": resource_id, "user_id": user_id, "action": action},
        PageRequest.from_raw(page, page_size),
    )
    return entries.map(AuditLogRead.model_validate)


@reports_router.get("/reports/overview", response_model=ReportOverviewRead)
def reports_overview(
    top_n: str | None = Query(default=None),
    db: Session = Depends(get_db),
    identity: Identity = Depends(can_read),
) -> ReportOverviewRead:
    limit = parse_int(top_n)
    limit = 5 if limit is None else max(1, min(50, limit))
    return report_service.overview(db, top_n=limit)


@me_router.get("/me", response_model=MeRead)
async def me(identity: Identity = Depends(get_current_identity)) -> MeRead:
    return MeRead(
        user=UserRead(
            id=identity.numeric_id,
            subject=identity.subject,
            email=identity.email,
            name=identity.name,
            role=identity.role,
        ),
        permissions=permissions_for(identity.role),
    )
