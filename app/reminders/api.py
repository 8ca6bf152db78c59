from typing import List, Optional
from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from app.db.session import get_db
from app.api.deps import verify_api_key_dependency
from .schemas import ReminderCreate, ReminderRead, DeliveryStatusRead, ScanResult
from .repository import create_reminder, get_reminder, list_reminders
from .dispatcher import ReminderDispatcher
from .status import DeliveryStatus, DeliveryStatusBoard
from .metrics import reminders_created_total


router = APIRouter(dependencies=[Depends(verify_api_key_dependency)])


def get_dispatcher(request: Request) -> ReminderDispatcher:
    return request.app.state.reminder_dispatcher


def get_status_board(request: Request) -> DeliveryStatusBoard:
    return request.app.state.reminder_dispatcher.status


def _status_read(status: DeliveryStatus) -> DeliveryStatusRead:
    return DeliveryStatusRead(
        reminder_id=status.reminder_id,
        state=status.state,
        detail=status.detail,
        updated_at=status.updated_at,
    )


@router.post("/", response_model=ReminderRead, status_code=201)
def create_reminder_endpoint(payload: ReminderCreate, db: Session = Depends(get_db)):
    reminder = create_reminder(db, payload)
    reminders_created_total.inc()
    return ReminderRead.model_validate(reminder)


@router.get("/", response_model=List[ReminderRead])
def list_reminders_endpoint(
    notified: Optional[bool] = None,
    limit: int = 100,
    db: Session = Depends(get_db),
):
    return [ReminderRead.model_validate(r) for r in list_reminders(db, notified=notified, limit=limit)]


@router.get("/delivery-status", response_model=List[DeliveryStatusRead])
def list_delivery_status_endpoint(board: DeliveryStatusBoard = Depends(get_status_board)):
    return [_status_read(s) for s in board.all()]


@router.get("/delivery-status/{reminder_id}", response_model=DeliveryStatusRead)
def get_delivery_status_endpoint(reminder_id: str, board: DeliveryStatusBoard = Depends(get_status_board)):
    status = board.get(reminder_id)
    if status is None:
        raise HTTPException(status_code=404, detail="No delivery status for reminder")
    return _status_read(status)


@router.post("/scan", response_model=ScanResult)
async def scan_now_endpoint(dispatcher: ReminderDispatcher = Depends(get_dispatcher)):
    """Run one dispatch cycle immediately and wait for its deliveries."""
    summary = await dispatcher.run_cycle_and_wait()
    return ScanResult(dispatched=summary.dispatched, succeeded=summary.succeeded, failed=summary.failed)


@router.get("/{reminder_id}", response_model=ReminderRead)
def get_reminder_endpoint(reminder_id: str, db: Session = Depends(get_db)):
    reminder = get_reminder(db, reminder_id)
    if not reminder:
        raise HTTPException(status_code=404, detail="Reminder not found")
    return ReminderRead.model_validate(reminder)
