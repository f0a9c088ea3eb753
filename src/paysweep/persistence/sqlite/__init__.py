from paysweep.persistence.sqlite.audit_repo import SqliteAuditRepo
from paysweep.persistence.sqlite.intents_repo import SqliteIntentsRepo

__all__ = ["SqliteAuditRepo", "SqliteIntentsRepo"]
