from .inventory import InventoryRecord
from .job import SyncJob, JobAuditEntry

__all__ = ["InventoryRecord", "SyncJob", "JobAuditEntry"]
