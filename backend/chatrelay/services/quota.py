# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

import datetime
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import case, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..config import settings
from ..errors import QuotaExceeded
from ..metrics import quota_settlements_total, token_usage_total
from ..models import TokenUsage, User
from ..telemetry import log_json

SUBJECT_USER = "user"
SUBJECT_ADMIN = "admin"


@dataclass(frozen=True)
class Subject:
    """Who pays for a turn: a user's balance, or an admin's test ledger (no balance)."""

    kind: str
    id: int

    @classmethod
    def user(cls, user_id: int) -> "Subject":
        return cls(SUBJECT_USER, user_id)

    @classmethod
    def admin(cls, user_id: int) -> "Subject":
        return cls(SUBJECT_ADMIN, user_id)

    @property
    def has_balance(self) -> bool:
        return self.kind == SUBJECT_USER


@dataclass(frozen=True)
class Settlement:
    applied: bool
    tokens_input: int
    tokens_output: int
    balance: Optional[int]

    @property
    def tokens_used(self) -> int:
        return self.tokens_input + self.tokens_output


class QuotaGuard:
    def __init__(self, minimum_threshold: int | None = None) -> None:
        self.minimum_threshold = settings.MIN_TOKENS_TO_CHAT if minimum_threshold is None else minimum_threshold

    def balance(self, db: Session, subject: Subject) -> Optional[int]:
        if not subject.has_balance:
            return None
        return db.query(User.tokens_balance).filter(User.id == subject.id).scalar()

    def check_sufficient(self, db: Session, subject: Subject, threshold: int | None = None) -> bool:
        """Advisory pre-flight read; a stale value is fine because settle() is authoritative."""
        if not subject.has_balance:
            return True
        needed = self.minimum_threshold if threshold is None else threshold
        balance = self.balance(db, subject)
        return balance is not None and balance >= needed

    def require_sufficient(self, db: Session, subject: Subject, threshold: int | None = None) -> None:
        if not self.check_sufficient(db, subject, threshold):
            balance = self.balance(db, subject)
            log_json(20, "quota_preflight_rejected", subject_id=subject.id, balance=balance)
            raise QuotaExceeded(balance=balance, threshold=self.minimum_threshold if threshold is None else threshold)

    def settle(
        self,
        db: Session,
        subject: Subject,
        *,
        turn_id: str,
        provider: str,
        model: str | None,
        input_tokens: int,
        output_tokens: int,
    ) -> Settlement:
        """
        Append the ledger row and apply the deduction in one transaction.

        The ledger's unique turn_id makes a repeated settle for the same turn a
        no-op. The balance update is a single statement floored at zero, so
        concurrent turns of one subject cannot lose updates.
        """
        tokens_in = max(0, int(input_tokens or 0))
        tokens_out = max(0, int(output_tokens or 0))
        total = tokens_in + tokens_out
        try:
            db.add(
                TokenUsage(
                    turn_id=turn_id,
                    subject_type=subject.kind,
                    subject_id=subject.id,
                    provider=provider,
                    model=model,
                    date=datetime.datetime.now(datetime.timezone.utc).date(),
                    tokens_input=tokens_in,
                    tokens_output=tokens_out,
                )
            )
            db.flush()
        except IntegrityError:
            db.rollback()
            quota_settlements_total.labels(subject_type=subject.kind, result="duplicate").inc()
            log_json(30, "settle_duplicate_ignored", turn_id=turn_id, subject_id=subject.id)
            return Settlement(False, tokens_in, tokens_out, self.balance(db, subject))

        if subject.has_balance and total:
            remaining = User.tokens_balance - total
            db.execute(
                update(User)
                .where(User.id == subject.id)
                .values(
                    tokens_balance=case((remaining < 0, 0), else_=remaining),
                    tokens_used_month=User.tokens_used_month + total,
                )
            )
        db.commit()

        if model:
            if tokens_in:
                token_usage_total.labels(model=model, type="prompt").inc(tokens_in)
            if tokens_out:
                token_usage_total.labels(model=model, type="completion").inc(tokens_out)
        quota_settlements_total.labels(subject_type=subject.kind, result="applied").inc()
        balance = self.balance(db, subject)
        log_json(
            20,
            "quota_settled",
            turn_id=turn_id,
            subject_type=subject.kind,
            subject_id=subject.id,
            provider=provider,
            tokens_input=tokens_in,
            tokens_output=tokens_out,
            balance=balance,
        )
        return Settlement(True, tokens_in, tokens_out, balance)


quota_guard = QuotaGuard()
