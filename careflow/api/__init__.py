"""API module initialization."""

from careflow.api.routes import notes_router, patients_router, reports_router, events_router

__all__ = [
    "notes_router",
    "patients_router",
    "reports_router",
    "events_router"
]
