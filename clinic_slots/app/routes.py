from datetime import date as Date, datetime
from typing import List, Optional

from fastapi import APIRouter, Body, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from .auth import Actor, get_current_user, role_required
from .closures import ClosureRequest
from .dependencies import get_db, get_services, UserRole
from .services import Services
from .slot_store import SlotCriteria
from .utils import serialize_slot
import logging

router = APIRouter()

CLOSURE_ROLES = [UserRole.ADMIN.value, UserRole.MANAGER.value]
QUEUE_ROLES = [UserRole.DENTIST.value, UserRole.NURSE.value, UserRole.RECEPTIONIST.value]
BOOKING_ROLES = [UserRole.MANAGER.value, UserRole.RECEPTIONIST.value]
PRIVATE_INFO_ROLES = {UserRole.ADMIN.value, UserRole.MANAGER.value, UserRole.RECEPTIONIST.value}


class ClosureCriteria(BaseModel):
    date: Optional[Date] = None
    start_date: Optional[Date] = None
    end_date: Optional[Date] = None
    shift_name: Optional[str] = None
    room_id: Optional[str] = None
    sub_room_id: Optional[str] = None
    dentist_id: Optional[str] = None
    nurse_id: Optional[str] = None


class ClosureOperationRequest(BaseModel):
    operation_type: str
    action: Optional[str] = None
    criteria: ClosureCriteria = Field(default_factory=ClosureCriteria)
    slot_ids: Optional[List[int]] = None
    reason: Optional[str] = None
    closure_type: Optional[str] = None


class CreateSlotRequest(BaseModel):
    room_id: str
    sub_room_id: Optional[str] = None
    date: Date
    start_time: datetime
    end_time: datetime
    shift_name: Optional[str] = None
    dentist_ids: List[str] = Field(default_factory=list)
    nurse_ids: List[str] = Field(default_factory=list)


class BookSlotRequest(BaseModel):
    appointment_id: str


class CompleteRecordRequest(BaseModel):
    service_ids: List[str] = Field(default_factory=list)
    total_amount: float = Field(0, ge=0)
    deposit_amount: float = Field(0, ge=0)


# Closures

@router.post('/closures')
@role_required(CLOSURE_ROLES)
def run_closure_operation(
        request: ClosureOperationRequest,
        db: Session = Depends(get_db),
        services: Services = Depends(get_services),
        current_user: Actor = Depends(get_current_user)
):
    logging.info(f"Closure operation {request.operation_type} requested by {current_user.user_id}")
    closure_request = ClosureRequest(
        operation_type=request.operation_type,
        action=request.action,
        criteria=SlotCriteria(**request.criteria.model_dump()),
        slot_ids=request.slot_ids,
        reason=request.reason,
        closure_type=request.closure_type,
    )
    return services.orchestrator(db).run(closure_request, current_user)


@router.get('/closures')
@role_required(CLOSURE_ROLES)
def list_closures(
        start_date: Date = Query(None),
        end_date: Date = Query(None),
        status: str = Query(None),
        room_id: str = Query(None),
        page: int = Query(1, ge=1),
        limit: int = Query(None, ge=1, le=100),
        db: Session = Depends(get_db),
        services: Services = Depends(get_services),
        current_user: Actor = Depends(get_current_user)
):
    return services.audit(db).list_closures(
        start_date=start_date, end_date=end_date, status=status, room_id=room_id,
        page=page, limit=limit or services.settings.default_page_limit,
    )


@router.get('/closures/stats')
@role_required(CLOSURE_ROLES)
def get_closure_stats(
        start_date: Date = Query(None),
        end_date: Date = Query(None),
        db: Session = Depends(get_db),
        services: Services = Depends(get_services),
        current_user: Actor = Depends(get_current_user)
):
    return services.audit(db).get_closure_stats(start_date=start_date, end_date=end_date)


@router.get('/closures/patients/all')
@role_required(CLOSURE_ROLES)
def get_all_cancelled_patients(
        start_date: Date = Query(None),
        end_date: Date = Query(None),
        room_id: str = Query(None),
        dentist_id: str = Query(None),
        patient_name: str = Query(None),
        page: int = Query(1, ge=1),
        limit: int = Query(50, ge=1, le=200),
        db: Session = Depends(get_db),
        services: Services = Depends(get_services),
        current_user: Actor = Depends(get_current_user)
):
    return services.audit(db).get_all_cancelled_patients(
        start_date=start_date, end_date=end_date, room_id=room_id, dentist_id=dentist_id,
        patient_name=patient_name, page=page, limit=limit,
    )


@router.get('/closures/{closure_id}')
@role_required(CLOSURE_ROLES)
def get_closure(
        closure_id: int,
        db: Session = Depends(get_db),
        services: Services = Depends(get_services),
        current_user: Actor = Depends(get_current_user)
):
    return services.audit(db).get_closure(closure_id)


@router.get('/closures/{closure_id}/patients')
@role_required(CLOSURE_ROLES)
def get_cancelled_patients(
        closure_id: int,
        db: Session = Depends(get_db),
        services: Services = Depends(get_services),
        current_user: Actor = Depends(get_current_user)
):
    return services.audit(db).get_cancelled_patients(closure_id)


# Queue and records

@router.get('/queue/next-number')
@role_required(QUEUE_ROLES)
def get_next_queue_number(
        date: Date = Query(...),
        room_id: str = Query(...),
        sub_room_id: str = Query(None),
        db: Session = Depends(get_db),
        services: Services = Depends(get_services),
        current_user: Actor = Depends(get_current_user)
):
    number = services.allocator(db).peek_queue_number(date, room_id, sub_room_id)
    return {"date": date.isoformat(), "room_id": room_id, "sub_room_id": sub_room_id, "next_queue_number": number}


@router.get('/queue/status')
@role_required(QUEUE_ROLES)
def get_queue_status(
        date: Date = Query(...),
        room_id: str = Query(...),
        sub_room_id: str = Query(None),
        db: Session = Depends(get_db),
        services: Services = Depends(get_services),
        current_user: Actor = Depends(get_current_user)
):
    return services.queue(db).queue_status(date, room_id, sub_room_id)


@router.post('/records/{slot_id}/call')
@role_required(QUEUE_ROLES)
def call_record(
        slot_id: int,
        db: Session = Depends(get_db),
        services: Services = Depends(get_services),
        current_user: Actor = Depends(get_current_user)
):
    slot = services.queue(db).call(slot_id, current_user)
    return serialize_slot(slot, include_private_info=True)


@router.post('/records/{slot_id}/complete')
@role_required(QUEUE_ROLES)
def complete_record(
        slot_id: int,
        request: CompleteRecordRequest = Body(None),
        db: Session = Depends(get_db),
        services: Services = Depends(get_services),
        current_user: Actor = Depends(get_current_user)
):
    request = request or CompleteRecordRequest()
    return services.queue(db).complete(
        slot_id, current_user, service_ids=request.service_ids,
        total_amount=request.total_amount, deposit_amount=request.deposit_amount,
    )


# Slots

@router.post('/slots', status_code=201)
@role_required(CLOSURE_ROLES)
def create_slot(
        request: CreateSlotRequest,
        db: Session = Depends(get_db),
        services: Services = Depends(get_services),
        current_user: Actor = Depends(get_current_user)
):
    slot = services.slot_store(db).create_slot(
        room_id=request.room_id,
        slot_date=request.date,
        start_time=request.start_time,
        end_time=request.end_time,
        sub_room_id=request.sub_room_id,
        shift_name=request.shift_name,
        dentist_ids=request.dentist_ids,
        nurse_ids=request.nurse_ids,
    )
    logging.info(f"Slot {slot.id} created by {current_user.user_id}")
    return serialize_slot(slot, include_private_info=True)


@router.get('/slots')
def list_slots(
        date: Date = Query(None),
        start_date: Date = Query(None),
        end_date: Date = Query(None),
        room_id: str = Query(None),
        sub_room_id: str = Query(None),
        shift_name: str = Query(None),
        dentist_id: str = Query(None),
        nurse_id: str = Query(None),
        status: str = Query(None),
        db: Session = Depends(get_db),
        services: Services = Depends(get_services),
        current_user: Actor = Depends(get_current_user)
):
    criteria = SlotCriteria(
        date=date, start_date=start_date, end_date=end_date, room_id=room_id, sub_room_id=sub_room_id,
        shift_name=shift_name, dentist_id=dentist_id, nurse_id=nurse_id, status=status,
    )
    private = current_user.role in PRIVATE_INFO_ROLES
    return [serialize_slot(slot, include_private_info=private)
            for slot in services.slot_store(db).find_slots(criteria)]


@router.get('/slots/{slot_id}')
def get_slot(
        slot_id: int,
        db: Session = Depends(get_db),
        services: Services = Depends(get_services),
        current_user: Actor = Depends(get_current_user)
):
    slot = services.slot_store(db).get_slot(slot_id)
    return serialize_slot(slot, include_private_info=current_user.role in PRIVATE_INFO_ROLES)


@router.post('/slots/{slot_id}/book')
@role_required(BOOKING_ROLES)
def book_slot(
        slot_id: int,
        request: BookSlotRequest,
        db: Session = Depends(get_db),
        services: Services = Depends(get_services),
        current_user: Actor = Depends(get_current_user)
):
    slot = services.slot_store(db).book(slot_id, request.appointment_id, actor_id=current_user.user_id)
    return serialize_slot(slot, include_private_info=True)


@router.post('/slots/{slot_id}/release')
@role_required(BOOKING_ROLES)
def release_slot(
        slot_id: int,
        db: Session = Depends(get_db),
        services: Services = Depends(get_services),
        current_user: Actor = Depends(get_current_user)
):
    slot = services.slot_store(db).release(slot_id, actor_id=current_user.user_id)
    return serialize_slot(slot, include_private_info=True)


@router.delete('/slots/{slot_id}')
@role_required(CLOSURE_ROLES)
def delete_slot(
        slot_id: int,
        db: Session = Depends(get_db),
        services: Services = Depends(get_services),
        current_user: Actor = Depends(get_current_user)
):
    services.slot_store(db).delete_slot(slot_id)
    logging.info(f"Slot {slot_id} deleted by {current_user.user_id}")
    return {"message": "Slot deleted successfully", "id": slot_id}
