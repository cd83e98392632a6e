"""Send-code flow: store a code, email it, record the dispatch."""

import logging
from typing import Optional

from sqlalchemy.orm import Session

from accounts.core.errors import EmailDeliveryError
from accounts.core.verification import IssuedCode, VerificationCodeStore
from accounts.models.verification_code import CodePurpose
from accounts.services.email import send_verification_code_email

logger = logging.getLogger(__name__)


def send_code(
    db: Session,
    purpose: CodePurpose,
    email: str,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
    store: Optional[VerificationCodeStore] = None,
) -> IssuedCode:
    """
    Create a code for purpose and email it.
    If the email cannot be sent the code is discarded so the user can ask again right away.
    """
    store = store or VerificationCodeStore(db, purpose)
    issued = store.create_code(email, ip_address, user_agent)
    try:
        send_verification_code_email(email, issued.code, store.purpose)
    except EmailDeliveryError:
        logger.warning("Discarding %s code id=%s: email not delivered", store.purpose.value, issued.id)
        store.discard(issued.id)
        raise
    store.mark_sent(issued.id)
    logger.info("Sent %s code id=%s to %s", store.purpose.value, issued.id, email)
    return issued
