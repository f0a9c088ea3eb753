from paysweep.persistence.interfaces.intents_repo import (
    AuditRepoProtocol,
    IntentEvent,
    IntentsRepoProtocol,
    UnmatchedTransferRecord,
)

__all__ = [
    "AuditRepoProtocol",
    "IntentEvent",
    "IntentsRepoProtocol",
    "UnmatchedTransferRecord",
]
