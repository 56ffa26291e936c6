import logging

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from api.deps import get_db, get_notifier, require_scheduler_key
from core.base_classes import utcnow
from services.notifications import NotificationSender
from services.scheduler import run_scheduled_tasks

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/scheduler", tags=["Scheduler"])


@router.post("/run", dependencies=[Depends(require_scheduler_key)])
def run(db: Session = Depends(get_db), notifier: NotificationSender = Depends(get_notifier)):
    now = utcnow()
    reports = run_scheduled_tasks(db, notifier, now=now)
    logger.info("Scheduled tasks finished: %s", ", ".join(f"{r.task}={r.processed}" for r in reports))
    return {
        "success": all(r.failed == 0 for r in reports),
        "message": "Scheduled tasks completed",
        "tasks": [r.as_dict() for r in reports],
        "timestamp": now.isoformat(),
    }


@router.get("/run")
def status():
    return {
        "message": "Subscription scheduler endpoint",
        "tasks": ["expiration", "reminders"],
        "usage": "POST with the X-API-Key header to run the sweeps",
        "timestamp": utcnow().isoformat(),
    }
