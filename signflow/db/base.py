# noqa: F401 to ensure models are imported for metadata
from signflow.models.audit import AuditLog
from signflow.models.document import Document, DocumentField
from signflow.models.notification import NotificationEvent
from signflow.models.signing import Signer, SignerBinding, SigningRequest

__all__ = [
    "AuditLog",
    "Document",
    "DocumentField",
    "NotificationEvent",
    "Signer",
    "SignerBinding",
    "SigningRequest",
]
