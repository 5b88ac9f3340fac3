from crm_admin.models.audit import AuditLog
from crm_admin.crm.models import (
	Activity,
	Contact,
	Customer,
	Deal,
	Note,
	PipelineStage,
	Tag,
	customer_tags,
)

__all__ = [
	"AuditLog",
	"Activity",
	"Contact",
	"Customer",
	"Deal",
	"Note",
	"PipelineStage",
	"Tag",
	"customer_tags",
]
