from typing import Optional

from fastapi import Header, HTTPException, Request

from whatsdesk.config import settings
from whatsdesk.services.event_service import EventBus
from whatsdesk.services.task_service import TaskTracker


def require_admin_token(x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token")) -> None:
    if not settings.admin_token:
        raise HTTPException(status_code=500, detail="ADMIN_TOKEN not configured")
    if not x_admin_token or x_admin_token != settings.admin_token:
        raise HTTPException(status_code=401, detail="Invalid admin token")


def get_supervisor(request: Request):
    return getattr(request.app.state, "supervisor", None)


def get_event_bus(request: Request) -> Optional[EventBus]:
    return getattr(request.app.state, "event_bus", None)


def get_tasks(request: Request) -> Optional[TaskTracker]:
    return getattr(request.app.state, "tasks", None)
