from . import health, jobs, signing_requests

__all__ = [
    "health",
    "jobs",
    "signing_requests",
]
