"""
Quota tracking for EduChain.

Tracks per-institution consumption (certificates, artifact storage, API
calls) over a recurring usage period and checks it against the limits of
the institution's subscription plan. A limit of -1 means unlimited.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Optional

from .config import UNLIMITED, USAGE_PERIOD_DAYS, load_plan_catalogue
from .db import Database
from .errors import ValidationError
from .models import SubscriptionPlan, UsagePeriod
from .util import utc_now

METRICS = ("certificates_issued", "storage_bytes_used", "api_calls")


@dataclass
class QuotaDecision:
    """Result of a limit check."""
    allowed: bool
    reason: Optional[str] = None


def is_unlimited(limit: int) -> bool:
    return limit == UNLIMITED


def load_plans(path: Optional[str] = None) -> Dict[str, SubscriptionPlan]:
    """The subscription plan catalogue keyed by plan id."""
    return {
        pid: SubscriptionPlan(id=pid, **fields)
        for pid, fields in load_plan_catalogue(path).items()
    }


class QuotaTracker:
    """
    Usage counters backed by the ``usage_periods`` table.

    Every read and increment first rolls the period over when it has ended,
    so counters are always those of the current period.
    """

    def __init__(self, db: Database, period_days: int = USAGE_PERIOD_DAYS):
        self._db = db
        self._period = timedelta(days=period_days)

    def _roll_over(self, conn, institution_id: str, now: datetime) -> None:
        row = conn.execute(
            "SELECT period_end FROM usage_periods WHERE institution_id = ?",
            (institution_id,)
        ).fetchone()
        start = now.isoformat()
        end = (now + self._period).isoformat()
        if row is None:
            conn.execute(
                "INSERT INTO usage_periods(institution_id, period_start, period_end) VALUES(?,?,?)",
                (institution_id, start, end)
            )
        elif datetime.fromisoformat(row["period_end"]) < now:
            conn.execute(
                "UPDATE usage_periods SET period_start = ?, period_end = ?, "
                "certificates_issued = 0, storage_bytes_used = 0, api_calls = 0 "
                "WHERE institution_id = ?",
                (start, end, institution_id)
            )

    def current_usage(self, institution_id: str, now: Optional[datetime] = None) -> UsagePeriod:
        """Usage for the current period, opening or resetting it as needed."""
        now = now or utc_now()
        with self._db.transaction() as conn:
            self._roll_over(conn, institution_id, now)
            row = conn.execute(
                "SELECT * FROM usage_periods WHERE institution_id = ?", (institution_id,)
            ).fetchone()
        return UsagePeriod(**dict(row))

    def increment(
        self,
        institution_id: str,
        metric: str,
        amount: int = 1,
        now: Optional[datetime] = None
    ) -> int:
        """
        Atomically add ``amount`` to a counter and return the new total.

        Runs inside the caller's transaction when there is one, so issuance
        can commit the certificate and its usage together.
        """
        if metric not in METRICS:
            raise ValidationError("metric", f"unknown usage metric {metric!r}")
        now = now or utc_now()
        with self._db.transaction() as conn:
            self._roll_over(conn, institution_id, now)
            conn.execute(
                f"UPDATE usage_periods SET {metric} = {metric} + ? WHERE institution_id = ?",
                (int(amount), institution_id)
            )
            row = conn.execute(
                f"SELECT {metric} FROM usage_periods WHERE institution_id = ?",
                (institution_id,)
            ).fetchone()
        return row[metric]

    def check_limit(
        self,
        institution_id: str,
        plan: SubscriptionPlan,
        usage: UsagePeriod
    ) -> QuotaDecision:
        """
        Decide whether one more certificate may be issued.

        Denied iff a limited counter has already reached its plan limit.
        """
        if not is_unlimited(plan.certificate_limit) and usage.certificates_issued >= plan.certificate_limit:
            return QuotaDecision(False, "Monthly certificate limit reached")
        if not is_unlimited(plan.storage_limit_bytes) and usage.storage_bytes_used >= plan.storage_limit_bytes:
            return QuotaDecision(False, "Storage limit reached")
        return QuotaDecision(True)
