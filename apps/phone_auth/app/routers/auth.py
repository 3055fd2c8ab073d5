from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from ..auth_service import PhoneAuthService
from ..config import settings
from ..fraud import DeviceInfo
from ..rate_limit import client_ip
from ..schemas import PhoneAuthIn, VerifyOtpIn


router = APIRouter(prefix="/api/auth", tags=["auth"])


def get_auth_service(request: Request) -> PhoneAuthService:
    return request.app.state.auth_service


@router.post("/phone/initiate")
def initiate_phone_auth(
    payload: PhoneAuthIn,
    request: Request,
    service: PhoneAuthService = Depends(get_auth_service),
):
    device = DeviceInfo(
        user_agent=request.headers.get("user-agent") or "unknown",
        ip=client_ip(request, settings.TRUST_PROXY_HEADERS),
    )
    result = service.initiate_phone_auth(payload.phone_number, device)
    return JSONResponse(status_code=result.status_code, content=result.to_body())


@router.post("/phone/verify")
def verify_otp(payload: VerifyOtpIn, service: PhoneAuthService = Depends(get_auth_service)):
    result = service.verify_otp(
        payload.phone_number,
        payload.otp_code,
        verification_id=payload.verification_id,
        name=payload.name,
    )
    return JSONResponse(status_code=result.status_code, content=result.to_body())
