import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from accounts.core.deps import get_db
from accounts.core.verification import VerificationCodeStore
from accounts.schemas.verification import CheckCodeRequest, MessageResponse, SendCodeRequest
from accounts.services.verification import send_code

logger = logging.getLogger(__name__)

router = APIRouter()


def client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


@router.post("/send-code", response_model=MessageResponse)
def send_verification_code(body: SendCodeRequest, request: Request, db: Session = Depends(get_db)):
    """Public: email a registration or password reset code. 409 while a previous code is still valid."""
    send_code(
        db,
        body.type,
        body.email,
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return MessageResponse(message="Verification code sent to your email")


@router.post("/check-code", response_model=MessageResponse)
def check_verification_code(body: CheckCodeRequest, request: Request, db: Session = Depends(get_db)):
    """
    Public: check a code without consuming it, so the client can move to the next screen.
    Counts as an attempt; registration / password reset consume the code later.
    """
    store = VerificationCodeStore(db, body.type)
    store.verify(body.email, body.code.strip(), ip_address=client_ip(request), consume=False)
    return MessageResponse(message="Verification successful")
