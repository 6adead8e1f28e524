"""
Idempotency guard: at-most-once execution per caller-supplied key.

DESIGN PRINCIPLES:
- Claiming a key is an atomic insert-if-absent on the unique key column.
  Exactly one concurrent caller inserts; the others see the existing row.
- Every later transition (complete, fail, reclaim) is a compare-and-set on
  the claim token, so a stale attempt can never overwrite a newer one.
- complete() does not commit by default: the caller commits it in the same
  transaction as the side effects it describes, so a result is visible iff
  its side effects are.
- A FAILED or expired record is reclaimable; failure never locks a key out.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import timedelta

from flask import current_app, has_app_context
from sqlalchemy.exc import IntegrityError

from ..errors import ConcurrencyConflict, PosError, ValidationError, error_from_dict
from ..models import IdempotencyRecord, IdempotencyStatus, new_id
from ..time_utils import utcnow
from .concurrency import begin_immediate, run_with_retry

MAX_KEY_LENGTH = 128


class _ClaimRace(Exception):
    """Another caller changed the record between our read and our write."""


class ClaimState:
    FRESH = "FRESH"
    REPLAY = "REPLAY"
    IN_PROGRESS = "IN_PROGRESS"


@dataclass(frozen=True)
class Claim:
    key: str
    state: str
    token: str | None = None
    payload: dict | None = field(default=None, compare=False)
    error: PosError | None = field(default=None, compare=False)

    @property
    def is_fresh(self) -> bool:
        return self.state == ClaimState.FRESH


class IdempotencyGuard:
    def __init__(
        self,
        store,
        *,
        ttl: timedelta = timedelta(hours=24),
        pending_ttl: timedelta = timedelta(minutes=5),
        retry_attempts: int = 3,
        backoff_base: float = 0.1,
    ):
        self.store = store
        self.session = store.session
        self.ttl = ttl
        self.pending_ttl = pending_ttl
        self.retry_attempts = retry_attempts
        self.backoff_base = backoff_base

    def begin(self, key: str, *, operation: str, request_hash: str | None = None) -> Claim:
        """
        Claim ``key`` or report why it cannot be claimed.

        Returns FRESH (caller must later complete() or fail()), REPLAY with
        the stored payload or cached error, or IN_PROGRESS while another
        attempt holds an unexpired claim.

        Raises:
            ValidationError: malformed key, or key reused for a different request
        """
        if not key or not isinstance(key, str) or len(key) > MAX_KEY_LENGTH:
            raise ValidationError(
                f"Idempotency key must be a non-empty string of at most {MAX_KEY_LENGTH} characters"
            )

        def _op():
            begin_immediate(self.session)
            return self._claim(key, operation, request_hash)

        for _ in range(self.retry_attempts):
            try:
                return self._retrying(_op)
            except _ClaimRace:
                continue
        raise ConcurrencyConflict(
            "Idempotency key kept changing hands while claiming",
            details={"idempotency_key": key},
        )

    def _claim(self, key: str, operation: str, request_hash: str | None) -> Claim:
        now = utcnow()
        record = self.store.get(key)

        if record is None:
            token = new_id()
            try:
                self.store.add(IdempotencyRecord(
                    key=key,
                    operation=operation,
                    request_hash=request_hash,
                    status=IdempotencyStatus.PENDING,
                    claim_token=token,
                    expires_at=now + self.pending_ttl,
                ))
                self.session.commit()
            except IntegrityError as exc:
                # Lost the insert race; the winner's row is visible on the next pass.
                self.session.rollback()
                raise _ClaimRace(key) from exc
            return Claim(key=key, state=ClaimState.FRESH, token=token)

        # A failed or expired claim may be retried with a corrected request.
        reclaimable = record.status == IdempotencyStatus.FAILED or record.is_expired(now)
        if not reclaimable and record.request_hash and request_hash and record.request_hash != request_hash:
            self.session.rollback()
            raise ValidationError(
                "Idempotency key was already used for a different request",
                details={"idempotency_key": key, "operation": record.operation},
            )

        if reclaimable:
            token = new_id()
            swapped = self.store.compare_and_set(
                key,
                expected_token=record.claim_token,
                expected_status=record.status,
                status=IdempotencyStatus.PENDING,
                claim_token=token,
                operation=operation,
                request_hash=request_hash,
                response_json=None,
                error_code=None,
                expires_at=now + self.pending_ttl,
                updated_at=now,
            )
            if not swapped:
                self.session.rollback()
                raise _ClaimRace(key)
            self.session.commit()
            return Claim(key=key, state=ClaimState.FRESH, token=token)

        self.session.rollback()
        if record.status == IdempotencyStatus.COMPLETED:
            payload = json.loads(record.response_json) if record.response_json else None
            if record.error_code:
                return Claim(key=key, state=ClaimState.REPLAY, error=error_from_dict(payload or {}))
            return Claim(key=key, state=ClaimState.REPLAY, payload=payload)

        return Claim(key=key, state=ClaimState.IN_PROGRESS)

    def complete(self, claim: Claim, payload: dict, *, ttl: timedelta | None = None, commit: bool = False) -> None:
        """
        Store the result and mark the key COMPLETED.

        Raises ConcurrencyConflict if the claim was lost (e.g. it expired and
        another attempt reclaimed it); the caller's transaction must then be
        rolled back so its side effects never become visible.
        """
        self._finish(
            claim,
            status=IdempotencyStatus.COMPLETED,
            response=payload,
            error_code=None,
            ttl=ttl,
        )
        if commit:
            self.session.commit()

    def complete_with_error(self, claim: Claim, error: PosError, *, ttl: timedelta | None = None) -> None:
        """Cache a terminal failure; replays return the same error."""
        def _op():
            self._finish(
                claim,
                status=IdempotencyStatus.COMPLETED,
                response=error.to_dict(),
                error_code=error.code,
                ttl=ttl,
            )
            self.session.commit()

        self._retrying(_op)

    def fail(self, claim: Claim, error: Exception) -> None:
        """Mark the attempt FAILED; the next begin() may reclaim the key."""
        if isinstance(error, PosError):
            response, code = error.to_dict(), error.code
        else:
            response, code = {"code": "UNEXPECTED", "message": str(error)}, "UNEXPECTED"

        def _op():
            self._finish(
                claim,
                status=IdempotencyStatus.FAILED,
                response=response,
                error_code=code,
                ttl=None,
            )
            self.session.commit()

        try:
            self._retrying(_op)
        except ConcurrencyConflict:
            # Someone else already owns the key; their state stands.
            if has_app_context():
                current_app.logger.warning("Idempotency claim for %r was lost before fail()", claim.key)

    def purge_expired(self) -> int:
        """Delete records past their expiry. Advisory cleanup only."""
        def _op():
            deleted = self.store.delete_expired(utcnow())
            self.session.commit()
            return deleted

        return self._retrying(_op)

    def _retrying(self, func):
        return run_with_retry(
            func,
            session=self.session,
            attempts=self.retry_attempts,
            backoff_base=self.backoff_base,
        )

    def _finish(self, claim: Claim, *, status: str, response: dict, error_code: str | None, ttl) -> None:
        if not claim.is_fresh:
            raise ValueError("Only a FRESH claim can be completed or failed")
        now = utcnow()
        swapped = self.store.compare_and_set(
            claim.key,
            expected_token=claim.token,
            expected_status=IdempotencyStatus.PENDING,
            status=status,
            response_json=json.dumps(response, sort_keys=True),
            error_code=error_code,
            expires_at=now + (ttl or self.ttl),
            updated_at=now,
        )
        if not swapped:
            raise ConcurrencyConflict(
                "Idempotency claim was lost before completion",
                details={"idempotency_key": claim.key},
            )
