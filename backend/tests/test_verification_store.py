"""Tests for the verification code generator and store."""

from datetime import timedelta
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from accounts.core.database import SessionLocal
from accounts.core.errors import (
    CodeAlreadyActive,
    CodeExhausted,
    CodeMismatch,
    CodeNotFound,
    StoreFailure,
)
from accounts.core.verification import CODE_TZ, VerificationCodeStore, generate_code
from accounts.models.verification_code import (
    CodePurpose,
    CodeStatus,
    PasswordResetCode,
    RegisterVerificationCode,
)

EMAIL = "u@x.com"
IP = "203.0.113.7"
UA = "pytest-agent"


def wrong_code(code: str) -> str:
    return "000000" if code != "000000" else "111111"


@pytest.fixture
def store(db, clock):
    return VerificationCodeStore(db, CodePurpose.register, clock=clock)


@pytest.fixture
def reset_store(db, clock):
    return VerificationCodeStore(db, CodePurpose.reset_password, clock=clock)


def load(db, model, code_id):
    return db.query(model).filter(model.id == code_id).one()


class TestGenerateCode:
    """Tests for generate_code()."""

    def test_code_is_six_digits(self):
        generated = generate_code(EMAIL, IP, UA)
        assert len(generated.code) == 6
        assert generated.code.isdigit()

    def test_leading_zeros_preserved(self):
        with patch("accounts.core.verification.secrets.randbelow", return_value=42):
            generated = generate_code(EMAIL)
        assert generated.code == "000042"

    def test_expires_ten_minutes_after_now(self, clock):
        generated = generate_code(EMAIL, IP, UA, now=clock())
        assert generated.expires_at == clock() + timedelta(minutes=10)

    def test_default_now_is_utc_plus_8(self):
        generated = generate_code(EMAIL)
        assert generated.expires_at.utcoffset() == timedelta(hours=8)
        assert CODE_TZ.utcoffset(None) == timedelta(hours=8)


class TestCreateCode:
    """Tests for VerificationCodeStore.create_code()."""

    def test_creates_pending_record(self, store, db, clock):
        issued = store.create_code(EMAIL, IP, UA)

        assert issued.status == CodeStatus.pending
        assert len(issued.code) == 6 and issued.code.isdigit()
        assert issued.expires_at == clock() + timedelta(minutes=10)

        row = load(db, RegisterVerificationCode, issued.id)
        assert row.status == "pending"
        assert row.code == issued.code
        assert row.attempts == 0
        assert row.ip_address == IP
        assert row.user_agent == UA
        assert row.sent_at is None

    def test_second_create_while_active_fails(self, store):
        store.create_code(EMAIL, IP, UA)
        with pytest.raises(CodeAlreadyActive):
            store.create_code(EMAIL, IP, UA)

    def test_create_after_expiry_succeeds(self, store, db, clock):
        first = store.create_code(EMAIL, IP, UA)
        clock.advance(minutes=10, seconds=1)

        second = store.create_code(EMAIL, IP, UA)

        assert second.id != first.id
        assert load(db, RegisterVerificationCode, first.id).status == "expired"
        assert load(db, RegisterVerificationCode, second.id).status == "pending"

    def test_purposes_do_not_share_codes(self, store, reset_store, db):
        register = store.create_code(EMAIL, IP, UA)
        reset = reset_store.create_code(EMAIL, IP, UA)

        assert db.query(RegisterVerificationCode).count() == 1
        assert db.query(PasswordResetCode).count() == 1
        assert load(db, PasswordResetCode, reset.id).email == EMAIL
        assert register.purpose == CodePurpose.register
        assert reset.purpose == CodePurpose.reset_password

    def test_different_emails_are_independent(self, store):
        store.create_code("a@x.com", IP, UA)
        store.create_code("b@x.com", IP, UA)
        assert store.has_active_code("a@x.com")
        assert store.has_active_code("b@x.com")

    def test_has_active_code_false_after_expiry(self, store, clock):
        store.create_code(EMAIL, IP, UA)
        assert store.has_active_code(EMAIL)
        clock.advance(minutes=11)
        assert not store.has_active_code(EMAIL)


class TestVerify:
    """Tests for VerificationCodeStore.verify()."""

    def test_create_verify_verify_scenario(self, store, db, clock):
        issued = store.create_code(EMAIL, IP, UA)
        clock.advance(minutes=5)

        store.verify(EMAIL, issued.code)

        row = load(db, RegisterVerificationCode, issued.id)
        assert row.status == "used"
        assert row.used_at is not None
        assert row.attempts == 1

        with pytest.raises(CodeNotFound):
            store.verify(EMAIL, issued.code)

    def test_no_code_for_email(self, store):
        with pytest.raises(CodeNotFound):
            store.verify("nobody@x.com", "123456")

    def test_expired_code_never_matches(self, store, db, clock):
        issued = store.create_code(EMAIL, IP, UA)
        clock.advance(minutes=10, seconds=1)

        with pytest.raises(CodeNotFound):
            store.verify(EMAIL, issued.code)
        assert load(db, RegisterVerificationCode, issued.id).status == "expired"

    def test_expiry_boundary_counts_as_expired(self, store, clock):
        issued = store.create_code(EMAIL, IP, UA)
        clock.advance(minutes=10)

        with pytest.raises(CodeNotFound):
            store.verify(EMAIL, issued.code)

    def test_mismatch_counts_attempt(self, store, db, clock):
        issued = store.create_code(EMAIL, IP, UA)

        with pytest.raises(CodeMismatch):
            store.verify(EMAIL, wrong_code(issued.code), ip_address="198.51.100.1")

        row = load(db, RegisterVerificationCode, issued.id)
        assert row.status == "pending"
        assert row.attempts == 1
        assert row.last_attempt_at is not None
        assert row.ip_address == "198.51.100.1"

    def test_correct_code_on_third_attempt(self, store, db):
        issued = store.create_code(EMAIL, IP, UA)
        for _ in range(2):
            with pytest.raises(CodeMismatch):
                store.verify(EMAIL, wrong_code(issued.code))

        store.verify(EMAIL, issued.code)

        row = load(db, RegisterVerificationCode, issued.id)
        assert row.status == "used"
        assert row.attempts == 3

    def test_lockout_after_three_failures(self, store, db):
        issued = store.create_code(EMAIL, IP, UA)
        for _ in range(3):
            with pytest.raises(CodeMismatch):
                store.verify(EMAIL, wrong_code(issued.code))

        with pytest.raises(CodeExhausted):
            store.verify(EMAIL, issued.code)
        with pytest.raises(CodeExhausted):
            store.verify(EMAIL, issued.code)

        row = load(db, RegisterVerificationCode, issued.id)
        assert row.status == "pending"
        assert row.attempts == 5

    def test_exhausted_code_blocks_new_code_until_expiry(self, store, clock):
        issued = store.create_code(EMAIL, IP, UA)
        for _ in range(3):
            with pytest.raises(CodeMismatch):
                store.verify(EMAIL, wrong_code(issued.code))

        with pytest.raises(CodeAlreadyActive):
            store.create_code(EMAIL, IP, UA)

        clock.advance(minutes=11)
        fresh = store.create_code(EMAIL, IP, UA)
        store.verify(EMAIL, fresh.code)

    def test_non_ascii_input_is_a_mismatch(self, store):
        store.create_code(EMAIL, IP, UA)
        with pytest.raises(CodeMismatch):
            store.verify(EMAIL, "１２３４５６")

    def test_verify_without_consuming(self, store, db):
        issued = store.create_code(EMAIL, IP, UA)

        store.verify(EMAIL, issued.code, consume=False)

        row = load(db, RegisterVerificationCode, issued.id)
        assert row.status == "pending"
        assert row.attempts == 1

    def test_stores_are_isolated_by_purpose(self, store, reset_store):
        issued = store.create_code(EMAIL, IP, UA)
        with pytest.raises(CodeNotFound):
            reset_store.verify(EMAIL, issued.code)


class TestMarkUsedSentDiscard:
    """Tests for mark_used(), mark_sent(), discard() and expire_stale()."""

    def test_mark_used_is_idempotent(self, reset_store, db):
        issued = reset_store.create_code(EMAIL, IP, UA)
        reset_store.verify(EMAIL, issued.code, consume=False)

        assert reset_store.mark_used(EMAIL, issued.code) is True
        assert reset_store.mark_used(EMAIL, issued.code) is False

        row = load(db, PasswordResetCode, issued.id)
        assert row.status == "used"
        assert row.used_at is not None

    def test_mark_used_requires_matching_code(self, reset_store):
        issued = reset_store.create_code(EMAIL, IP, UA)
        assert reset_store.mark_used(EMAIL, wrong_code(issued.code)) is False

    def test_mark_used_ignores_expired(self, reset_store, clock):
        issued = reset_store.create_code(EMAIL, IP, UA)
        clock.advance(minutes=11)
        reset_store.expire_stale()
        assert reset_store.mark_used(EMAIL, issued.code) is False

    def test_mark_sent_records_timestamp_once(self, store, db, clock):
        issued = store.create_code(EMAIL, IP, UA)

        assert store.mark_sent(issued.id) is True
        first_sent_at = load(db, RegisterVerificationCode, issued.id).sent_at
        assert first_sent_at is not None

        clock.advance(seconds=30)
        assert store.mark_sent(issued.id) is False
        assert load(db, RegisterVerificationCode, issued.id).sent_at == first_sent_at

    def test_discard_allows_a_new_code(self, store, db):
        issued = store.create_code(EMAIL, IP, UA)

        assert store.discard(issued.id) is True
        assert load(db, RegisterVerificationCode, issued.id).status == "expired"
        store.create_code(EMAIL, IP, UA)

    def test_used_code_is_never_discarded(self, store, db):
        issued = store.create_code(EMAIL, IP, UA)
        store.verify(EMAIL, issued.code)
        assert store.discard(issued.id) is False
        assert load(db, RegisterVerificationCode, issued.id).status == "used"

    def test_expire_stale_counts_rows(self, store, clock):
        store.create_code("a@x.com", IP, UA)
        store.create_code("b@x.com", IP, UA)
        clock.advance(minutes=11)
        assert store.expire_stale() == 2
        assert store.expire_stale() == 0


class TestStoreErrors:
    """Tests for insert races and persistence failures."""

    def test_concurrent_insert_maps_to_already_active(self, store, db, clock):
        other_session = SessionLocal()
        try:
            VerificationCodeStore(other_session, CodePurpose.register, clock=clock).create_code(EMAIL, IP, UA)
        finally:
            other_session.close()

        # The active-code check misses the other session's row, so the partial unique index decides
        with patch.object(store, "_find_active", return_value=None):
            with pytest.raises(CodeAlreadyActive):
                store.create_code(EMAIL, IP, UA)

        assert db.query(RegisterVerificationCode).filter_by(email=EMAIL).count() == 1
        assert store.has_active_code(EMAIL)

    def test_commit_failure_is_store_failure(self, store, db):
        with patch.object(db, "commit", side_effect=OperationalError("COMMIT", {}, Exception("disk I/O error"))):
            with pytest.raises(StoreFailure):
                store.create_code(EMAIL, IP, UA)

        assert db.query(RegisterVerificationCode).count() == 0
        store.create_code(EMAIL, IP, UA)

    def test_verify_failure_is_store_failure(self, store, db):
        issued = store.create_code(EMAIL, IP, UA)

        with patch.object(db, "commit", side_effect=OperationalError("COMMIT", {}, Exception("disk I/O error"))):
            with pytest.raises(StoreFailure):
                store.verify(EMAIL, issued.code)

        row = load(db, RegisterVerificationCode, issued.id)
        assert row.status == "pending"
        assert row.attempts == 0

    def test_mark_used_without_commit_rolls_back_with_caller(self, reset_store, db):
        issued = reset_store.create_code(EMAIL, IP, UA)

        assert reset_store.mark_used(EMAIL, issued.code, commit=False) is True
        db.rollback()

        assert load(db, PasswordResetCode, issued.id).status == "pending"
        assert reset_store.mark_used(EMAIL, issued.code) is True
