# crowdpass/routers/passes.py
"""
Pass lifecycle endpoints.
POST /passes                      — issue a pass (returns its QR token)
POST /passes/scan                 — checkpoint scan (entry or exit)
POST /passes/{pass_id}/extend     — paid extension of the exit deadline
POST /passes/{pass_id}/penalty/pay — settle an overstay penalty

Routes are plain `def` so FastAPI runs them in its threadpool; a scan only
ever blocks on its own pass lock.
"""

from fastapi import APIRouter, Depends, status
from typing import Optional, Union
from crowdpass.schemas.credential import (
    CancelRequest, EntryResult, ExitResult, ExtendRequest, ExtensionResult,
    PassIssue, PassOut, Penalty, ScanRequest,
)
from crowdpass.services.runtime import Services, get_services

router = APIRouter()


@router.post("/passes", response_model=PassOut, status_code=status.HTTP_201_CREATED,
             summary="Issue a group pass")
def issue_pass(body: PassIssue, services: Services = Depends(get_services)):
    return services.registry.issue(
        body.holder_identifier,
        body.group_members,
        slot_start=body.slot_start,
        duration_hours=body.duration_hours,
        surge_multiplier=body.surge_multiplier,
    )


@router.get("/passes", response_model=list[PassOut])
def list_passes(status: Optional[str] = None, services: Services = Depends(get_services)):
    return services.registry.list_passes(status)


@router.get("/passes/{pass_id}", response_model=PassOut)
def get_pass(pass_id: str, services: Services = Depends(get_services)):
    return services.registry.get(pass_id)


@router.post("/passes/scan", response_model=Union[EntryResult, ExitResult], summary="Checkpoint scan")
def scan_pass(body: ScanRequest, services: Services = Depends(get_services)):
    if body.scan_type == "entry":
        return services.registry.scan_entry(body.token, body.checkpoint_id, body.zone_id)
    return services.registry.scan_exit(body.token, body.checkpoint_id, body.zone_id)


@router.get("/passes/{pass_id}/extension-quote", summary="Price an extension without charging")
def quote_extension(pass_id: str, hours: int, tent: bool = False,
                    services: Services = Depends(get_services)):
    pass_ = services.registry.get(pass_id)
    return {
        "pass_id": pass_id,
        "additional_hours": hours,
        "tent_booking": tent,
        "amount": services.registry.quote_extension(hours, tent),
        "status": pass_.status,
    }


@router.post("/passes/{pass_id}/extend", response_model=ExtensionResult)
def extend_pass(pass_id: str, body: ExtendRequest, services: Services = Depends(get_services)):
    return services.registry.extend_with_payment(pass_id, body.additional_hours,
                                                 body.tent_booking, services.payments)


@router.post("/passes/{pass_id}/cancel", response_model=PassOut)
def cancel_pass(pass_id: str, body: CancelRequest, services: Services = Depends(get_services)):
    return services.registry.cancel(pass_id, body.reason)


@router.post("/passes/{pass_id}/penalty/pay", response_model=Penalty, summary="Pay an overstay penalty")
def pay_penalty(pass_id: str, services: Services = Depends(get_services)):
    return services.registry.pay_penalty(pass_id, services.payments)


@router.get("/penalties", response_model=list[Penalty])
def list_penalties(unpaid_only: bool = False, services: Services = Depends(get_services)):
    return services.registry.penalties(unpaid_only)
