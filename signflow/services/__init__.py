from signflow.services.completion import CompletionOrchestrator
from signflow.services.notification import NotificationService
from signflow.services.outbox import NotificationDispatcher, NotificationOutbox
from signflow.services.recovery import ErrorRecoveryService, RecoveryAction
from signflow.services.renderer import DocumentRenderer
from signflow.services.scheduler import NotificationScheduler
from signflow.services.signing import SigningService
from signflow.services.state_machine import SigningPolicy, SigningStateMachine

__all__ = [
    "CompletionOrchestrator",
    "DocumentRenderer",
    "ErrorRecoveryService",
    "NotificationDispatcher",
    "NotificationOutbox",
    "NotificationScheduler",
    "NotificationService",
    "RecoveryAction",
    "SigningPolicy",
    "SigningService",
    "SigningStateMachine",
]
