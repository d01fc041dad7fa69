from signflow.schemas import common, scheduler, signing

__all__ = [
    "common",
    "scheduler",
    "signing",
]
