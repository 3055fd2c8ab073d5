from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional
from zoneinfo import ZoneInfo

from sqlalchemy import delete, or_, update

from phoneguard_shared import mask_phone

from .clock import Clock, SystemClock, format_remaining, local_day_start, seconds_until
from .database import SessionFactory, SessionLocal, dialect_insert, session_scope
from .errors import AppError, BlockedPermanent, BlockedTemporary
from .metrics import BLOCK_TRANSITIONS
from .models import BlockRecord

logger = logging.getLogger("phoneguard.blocking")

ADMIN_BLOCKED = "admin_blocked"
TEMPORARY_BLOCKED = "temporary_blocked"


@dataclass(frozen=True)
class BlockCheck:
    allowed: bool
    reason: Optional[str] = None
    blocked_until: Optional[datetime] = None
    remaining_seconds: int = 0
    remaining_time: Optional[str] = None

    def to_error(self) -> AppError:
        if self.reason == ADMIN_BLOCKED:
            return BlockedPermanent(isAdminBlocked=True)
        return BlockedTemporary(
            blockedUntil=self.blocked_until.isoformat() if self.blocked_until else None,
            remainingSeconds=self.remaining_seconds,
            remainingTime=self.remaining_time,
        )


@dataclass(frozen=True)
class BlockRecordView:
    phone: str
    daily_attempts: int
    is_permanently_blocked: bool
    temporary_block_until: Optional[datetime]
    last_updated: datetime
    created_at: datetime

    @classmethod
    def from_row(cls, row: BlockRecord) -> "BlockRecordView":
        return cls(
            phone=row.phone,
            daily_attempts=row.daily_attempts,
            is_permanently_blocked=row.is_permanently_blocked,
            temporary_block_until=row.temporary_block_until,
            last_updated=row.last_updated,
            created_at=row.created_at,
        )

    def state(self, now: datetime) -> str:
        if self.is_permanently_blocked:
            return "permanent"
        if self.temporary_block_until is not None and self.temporary_block_until > now:
            return "temporary"
        return "clear"

    def to_dict(self, now: datetime) -> dict:
        return {
            "phoneNumber": self.phone,
            "attempts": self.daily_attempts,
            "isAdminBlocked": self.is_permanently_blocked,
            "blockedUntil": self.temporary_block_until.isoformat() if self.temporary_block_until else None,
            "state": self.state(now),
            "updatedAt": self.last_updated.isoformat(),
            "createdAt": self.created_at.isoformat(),
        }


class BlockService:
    """Escalating per-phone block state machine.

    Clear -> TemporaryBlock when the daily count reaches the ceiling,
    -> PermanentBlock once it goes past it. The daily count resets lazily on
    the first touch after the local calendar date changes. Only
    :meth:`unblock` leaves PermanentBlock.
    """

    def __init__(
        self,
        session_factory: SessionFactory = SessionLocal,
        clock: Optional[Clock] = None,
        max_daily_attempts: int = 7,
        block_duration_secs: int = 24 * 60 * 60,
        day_tz: str = "UTC",
    ):
        self.session_factory = session_factory
        self.clock = clock or SystemClock()
        self.max_daily_attempts = max_daily_attempts
        self.block_duration = timedelta(seconds=block_duration_secs)
        self.tz = ZoneInfo(day_tz)

    def check_blocked(self, phone: str) -> BlockCheck:
        now = self.clock.now()
        with session_scope(self.session_factory) as db:
            rec = db.query(BlockRecord).filter(BlockRecord.phone == phone).one_or_none()
            if rec is None:
                return BlockCheck(allowed=True)
            if rec.is_permanently_blocked:
                return BlockCheck(allowed=False, reason=ADMIN_BLOCKED)
            if rec.temporary_block_until is not None and rec.temporary_block_until > now:
                return BlockCheck(
                    allowed=False,
                    reason=TEMPORARY_BLOCKED,
                    blocked_until=rec.temporary_block_until,
                    remaining_seconds=seconds_until(rec.temporary_block_until, now),
                    remaining_time=format_remaining(rec.temporary_block_until - now),
                )
            day_start = local_day_start(now, self.tz)
            if rec.last_updated < day_start:
                # Conditional so a concurrent record_attempt for today is never undone.
                db.execute(
                    update(BlockRecord)
                    .where(BlockRecord.phone == phone, BlockRecord.last_updated < day_start)
                    .values(daily_attempts=0, temporary_block_until=None, last_updated=now)
                )
        return BlockCheck(allowed=True)

    def record_attempt(self, phone: str) -> BlockRecordView:
        now = self.clock.now()
        with session_scope(self.session_factory) as db:
            db.execute(
                dialect_insert(db, BlockRecord.__table__)
                .values(
                    phone=phone,
                    daily_attempts=0,
                    is_permanently_blocked=False,
                    last_updated=now,
                    created_at=now,
                )
                .on_conflict_do_nothing(index_elements=["phone"])
            )
            rec = (
                db.query(BlockRecord)
                .filter(BlockRecord.phone == phone)
                .with_for_update()
                .one()
            )
            if rec.last_updated < local_day_start(now, self.tz):
                rec.daily_attempts = 0
                rec.temporary_block_until = None
            rec.daily_attempts += 1
            if rec.daily_attempts > self.max_daily_attempts:
                if not rec.is_permanently_blocked:
                    logger.warning("Phone %s has been admin blocked due to excessive attempts", mask_phone(phone))
                    BLOCK_TRANSITIONS.labels("permanent").inc()
                rec.is_permanently_blocked = True
            elif rec.daily_attempts == self.max_daily_attempts:
                rec.temporary_block_until = now + self.block_duration
                logger.warning("Phone %s has been temporarily blocked until %s", mask_phone(phone), rec.temporary_block_until)
                BLOCK_TRANSITIONS.labels("temporary").inc()
            rec.last_updated = now
            db.flush()
            return BlockRecordView.from_row(rec)

    def unblock(self, phone: str) -> bool:
        with session_scope(self.session_factory) as db:
            result = db.execute(delete(BlockRecord).where(BlockRecord.phone == phone))
            removed = (result.rowcount or 0) > 0
        if removed:
            logger.info("Phone %s unblocked by admin", mask_phone(phone))
            BLOCK_TRANSITIONS.labels("clear").inc()
        return removed

    def list_blocked(self) -> List[BlockRecordView]:
        now = self.clock.now()
        with session_scope(self.session_factory) as db:
            rows = (
                db.query(BlockRecord)
                .filter(
                    or_(
                        BlockRecord.is_permanently_blocked.is_(True),
                        BlockRecord.temporary_block_until > now,
                    )
                )
                .order_by(BlockRecord.last_updated.desc(), BlockRecord.id.desc())
                .all()
            )
            return [BlockRecordView.from_row(r) for r in rows]

    def get(self, phone: str) -> Optional[BlockRecordView]:
        with session_scope(self.session_factory) as db:
            rec = db.query(BlockRecord).filter(BlockRecord.phone == phone).one_or_none()
            return BlockRecordView.from_row(rec) if rec is not None else None
