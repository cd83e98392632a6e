"""One-time email codes for registration and password reset.

Both purposes share one state machine, parametrized by CodePurpose:

    pending --(correct code, unexpired, attempts <= max)--> used
    pending --(expires_at passed, found by the lazy sweep)--> expired
    pending --(email dispatch failed, discard())--> expired

A pending record that has used up its attempts stays pending but every
further verify() is rejected with CodeExhausted until the sweep expires it.
"""

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from accounts.core.config import settings
from accounts.core.errors import (
    CodeAlreadyActive,
    CodeExhausted,
    CodeMismatch,
    CodeNotFound,
    StoreFailure,
)
from accounts.models.verification_code import CODE_MODELS, CodePurpose, CodeStatus

logger = logging.getLogger(__name__)

CODE_TZ = timezone(timedelta(hours=settings.VERIFY_CODE_UTC_OFFSET_HOURS))


def now_in_code_tz() -> datetime:
    return datetime.now(CODE_TZ)


@dataclass
class GeneratedCode:
    email: str
    code: str
    expires_at: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass
class IssuedCode:
    """A freshly stored code. The only place the plain code leaves the store."""

    id: int
    purpose: CodePurpose
    email: str
    code: str
    status: CodeStatus
    expires_at: datetime
    created_at: datetime
    attempts: int = 0
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


def generate_code(
    email: str,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
    now: Optional[datetime] = None,
) -> GeneratedCode:
    """Random zero-padded numeric code valid for VERIFY_CODE_EXPIRE_MINUTES."""
    length = settings.VERIFY_CODE_LENGTH
    code = f"{secrets.randbelow(10 ** length):0{length}d}"
    issued_at = now or now_in_code_tz()
    return GeneratedCode(
        email=email,
        code=code,
        expires_at=issued_at + timedelta(minutes=settings.VERIFY_CODE_EXPIRE_MINUTES),
        ip_address=ip_address,
        user_agent=user_agent,
    )


class VerificationCodeStore:
    """Lifecycle of the codes of one purpose, backed by that purpose's table."""

    def __init__(
        self,
        db: Session,
        purpose: CodePurpose,
        clock: Optional[Callable[[], datetime]] = None,
        max_attempts: Optional[int] = None,
    ):
        self.db = db
        self.purpose = CodePurpose(purpose)
        self.model = CODE_MODELS[self.purpose]
        self._clock = clock or now_in_code_tz
        self.max_attempts = max_attempts if max_attempts is not None else settings.VERIFY_CODE_MAX_ATTEMPTS

    def _pending(self, email: str):
        return self.db.query(self.model).filter(
            self.model.email == email,
            self.model.status == CodeStatus.pending.value,
        )

    def _find_active(self, email: str, now: datetime):
        return self._pending(email).filter(self.model.expires_at > now).first()

    def _expire_stale(self, now: datetime) -> int:
        return (
            self.db.query(self.model)
            .filter(
                self.model.status == CodeStatus.pending.value,
                self.model.expires_at <= now,
            )
            .update({self.model.status: CodeStatus.expired.value}, synchronize_session=False)
        )

    def _store_failure(self, action: str, exc: SQLAlchemyError) -> StoreFailure:
        self.db.rollback()
        logger.exception("%s %s failed: %s", self.purpose.value, action, exc)
        return StoreFailure()

    def expire_stale(self) -> int:
        """Move pending codes past their expiry to expired. Returns rows changed."""
        try:
            count = self._expire_stale(self._clock())
            self.db.commit()
        except SQLAlchemyError as e:
            raise self._store_failure("expiry sweep", e) from e
        return count

    def has_active_code(self, email: str) -> bool:
        now = self._clock()
        try:
            found = self._find_active(email, now)
        except SQLAlchemyError as e:
            raise self._store_failure("active code lookup", e) from e
        return found is not None

    def create_code(
        self,
        email: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> IssuedCode:
        """
        Store a new pending code for email.
        Raises CodeAlreadyActive while an earlier code for this email is still pending and unexpired.
        """
        now = self._clock()
        try:
            self._expire_stale(now)
            if self._find_active(email, now) is not None:
                self.db.commit()
                logger.info("%s code for %s already active", self.purpose.value, email)
                raise CodeAlreadyActive()

            generated = generate_code(email, ip_address, user_agent, now=now)
            record = self.model(
                email=email,
                code=generated.code,
                status=CodeStatus.pending.value,
                expires_at=generated.expires_at,
                attempts=0,
                ip_address=ip_address,
                user_agent=user_agent,
                created_at=now,
            )
            self.db.add(record)
            self.db.flush()
            code_id = record.id
            self.db.commit()
        except IntegrityError:
            # A concurrent request inserted the pending row first
            self.db.rollback()
            raise CodeAlreadyActive()
        except SQLAlchemyError as e:
            raise self._store_failure("code creation", e) from e

        logger.info("Created %s code id=%s for %s", self.purpose.value, code_id, email)
        return IssuedCode(
            id=code_id,
            purpose=self.purpose,
            email=email,
            code=generated.code,
            status=CodeStatus.pending,
            expires_at=generated.expires_at,
            created_at=now,
            ip_address=ip_address,
            user_agent=user_agent,
        )

    def mark_sent(self, code_id: int) -> bool:
        """Record the dispatch time once; later calls change nothing."""
        try:
            count = (
                self.db.query(self.model)
                .filter(self.model.id == code_id, self.model.sent_at.is_(None))
                .update({self.model.sent_at: self._clock()}, synchronize_session=False)
            )
            self.db.commit()
        except SQLAlchemyError as e:
            raise self._store_failure("mark sent", e) from e
        return count > 0

    def discard(self, code_id: int) -> bool:
        """Expire a pending code that could not be delivered."""
        try:
            count = (
                self.db.query(self.model)
                .filter(self.model.id == code_id, self.model.status == CodeStatus.pending.value)
                .update({self.model.status: CodeStatus.expired.value}, synchronize_session=False)
            )
            self.db.commit()
        except SQLAlchemyError as e:
            raise self._store_failure("discard", e) from e
        return count > 0

    def verify(
        self,
        email: str,
        code: str,
        ip_address: Optional[str] = None,
        consume: bool = True,
    ) -> None:
        """
        Check code against the most recent pending code for email.

        Every call against a pending record counts as an attempt, and the attempt
        is committed before any rejection is raised. With consume=False a match
        leaves the record pending for a later mark_used().

        Raises CodeNotFound, CodeExhausted or CodeMismatch.
        """
        now = self._clock()
        rejection = None
        try:
            self._expire_stale(now)
            record = (
                self._pending(email)
                .order_by(self.model.created_at.desc(), self.model.id.desc())
                .with_for_update()
                .first()
            )
            if record is None:
                self.db.commit()
                rejection = CodeNotFound()
            else:
                record.attempts = (record.attempts or 0) + 1
                record.last_attempt_at = now
                if ip_address:
                    record.ip_address = ip_address

                if record.attempts > self.max_attempts:
                    rejection = CodeExhausted()
                elif not secrets.compare_digest(record.code.encode(), (code or "").encode("utf-8")):
                    rejection = CodeMismatch()
                elif consume:
                    record.status = CodeStatus.used.value
                    record.used_at = now
                attempts = record.attempts
                record_id = record.id
                self.db.commit()
        except SQLAlchemyError as e:
            raise self._store_failure("verification", e) from e

        if rejection is not None:
            if isinstance(rejection, CodeNotFound):
                logger.info("No pending %s code for %s", self.purpose.value, email)
            else:
                logger.warning(
                    "Rejected %s code id=%s for %s (%s, attempt %s)",
                    self.purpose.value, record_id, email, rejection.code, attempts,
                )
            raise rejection
        logger.info(
            "Verified %s code id=%s for %s (consumed=%s)",
            self.purpose.value, record_id, email, consume,
        )

    def mark_used(self, email: str, code: str, commit: bool = True) -> bool:
        """
        Consume a pending code. No-op (returns False) when it is already used or expired.

        With commit=False the update joins the caller's transaction, so the caller can
        commit it together with the change the code authorizes, or roll both back.
        """
        try:
            count = (
                self.db.query(self.model)
                .filter(
                    self.model.email == email,
                    self.model.code == code,
                    self.model.status == CodeStatus.pending.value,
                )
                .update(
                    {self.model.status: CodeStatus.used.value, self.model.used_at: self._clock()},
                    synchronize_session=False,
                )
            )
            if commit:
                self.db.commit()
        except SQLAlchemyError as e:
            raise self._store_failure("mark used", e) from e
        return count > 0
