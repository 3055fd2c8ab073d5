import logging

from fastapi import APIRouter, Depends

from phoneguard_shared import mask_phone

from ..auth import require_admin
from ..auth_service import PhoneAuthService
from ..schemas import UnblockIn
from .auth import get_auth_service

logger = logging.getLogger("phoneguard.admin")

router = APIRouter(prefix="/admin/phone", tags=["admin"], dependencies=[Depends(require_admin)])


@router.post("/unblock")
def unblock_phone(payload: UnblockIn, service: PhoneAuthService = Depends(get_auth_service)):
    unblocked = service.unblock(payload.phone_number)
    logger.info("Admin unblock for %s: %s", mask_phone(payload.phone_number), unblocked)
    return {
        "success": True,
        "message": "Phone number unblocked" if unblocked else "Phone number was not blocked",
        "data": {"unblocked": unblocked},
    }


@router.get("/blocked")
def list_blocked(service: PhoneAuthService = Depends(get_auth_service)):
    now = service.clock.now()
    records = [r.to_dict(now) for r in service.list_blocked()]
    return {"success": True, "message": f"{len(records)} blocked phone numbers", "data": records}
