"""
Monthly token budget accounting.

Every check-and-increment on an account is one ``store.mutate`` call, so it
runs under the account's row lock (``SELECT ... FOR UPDATE`` on SQL, a keyed
asyncio lock in memory). The monthly reset is applied inside the same step,
before the check, which keeps ``monthly_token_used <= monthly_token_limit``
true after every committed operation.
"""

import calendar
from collections.abc import Callable
from datetime import date, datetime

from ..core.config import Settings, get_settings_instance
from ..core.exceptions import QuotaExceededError, ValidationError
from ..core.logging import get_logger
from ..core.store_backend import StoreBackend, get_store_backend
from ..models.enums import ServiceType
from ..models.records import CredentialRecord, UserRecord, utcnow
from ..schemas.quota import QuotaStatus

logger = get_logger(__name__)


def add_months(start: date, months: int) -> date:
    """Shift a date by whole months, clamping the day to the target month's length."""
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def roll_reset_date(reset_date: date | None, today: date) -> tuple[date, bool]:
    """Return (next reset date, whether a period boundary was crossed).

    An unset reset date starts a period ending one month from today. A due
    date advances in whole months from its own anchor until it lies after
    today, so a 31st stays the 31st in months that have one.
    """
    if reset_date is None:
        return add_months(today, 1), False
    if today < reset_date:
        return reset_date, False
    months = 1
    while add_months(reset_date, months) <= today:
        months += 1
    return add_months(reset_date, months), True


def apply_monthly_reset(user: UserRecord, today: date) -> bool:
    """Reset a user's period counters in place when the reset date has passed."""
    next_reset, crossed = roll_reset_date(user.quota_reset_date, today)
    user.quota_reset_date = next_reset
    if crossed:
        user.monthly_token_used = 0
        user.quota_exceeded = False
    return crossed


def apply_credential_reset(credential: CredentialRecord, today: date) -> bool:
    """Same rolling rule for a credential's free-quota counter."""
    next_reset, crossed = roll_reset_date(credential.quota_reset_date, today)
    credential.quota_reset_date = next_reset
    if crossed:
        credential.monthly_free_quota_used = 0
    return crossed


class QuotaLedger:
    """Per-user monthly token budgets and per-credential usage accounting."""

    def __init__(
        self,
        store: StoreBackend | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store or get_store_backend()
        self.settings = settings or get_settings_instance()
        self._clock = clock

    def _today(self) -> date:
        return self._clock().date()

    def build_status(self, user: UserRecord) -> QuotaStatus:
        limit = user.monthly_token_limit
        used = user.monthly_token_used
        exceeded = user.quota_exceeded or used >= limit
        ratio = used / limit if limit > 0 else 1.0
        return QuotaStatus(
            user_id=user.id,
            monthly_token_limit=limit,
            monthly_token_used=used,
            remaining=max(0, limit - used),
            quota_reset_date=user.quota_reset_date,
            usage_ratio=ratio,
            warning=not exceeded and ratio >= self.settings.quota_warning_threshold,
            exceeded=exceeded,
        )

    async def open_account(self, username: str | None = None, monthly_token_limit: int | None = None) -> UserRecord:
        """Create a user whose first quota period starts today."""
        limit = self.settings.default_monthly_token_limit if monthly_token_limit is None else monthly_token_limit
        if limit < 0:
            raise ValidationError("Monthly token limit cannot be negative", {"limit": limit})
        user = UserRecord(
            username=username,
            monthly_token_limit=limit,
            quota_reset_date=add_months(self._today(), 1),
        )
        created = await self.store.add_user(user)
        logger.info("Account opened", extra={"user_id": created.id, "limit": limit})
        return created

    async def try_consume(self, user_id: str, tokens: int) -> QuotaStatus:
        """Atomically charge ``tokens`` against the user's monthly budget.

        Raises:
            ValidationError: If ``tokens`` is not a positive integer.
            QuotaExceededError: If the charge does not fit; nothing is consumed.
            UserNotFoundError: If the user does not exist.
        """
        if isinstance(tokens, bool) or not isinstance(tokens, int) or tokens <= 0:
            raise ValidationError("Token amount must be a positive integer", {"tokens": tokens})

        today = self._today()

        def consume(user: UserRecord) -> QuotaStatus:
            apply_monthly_reset(user, today)
            if user.monthly_token_used + tokens > user.monthly_token_limit:
                raise QuotaExceededError(user.id, tokens, user.monthly_token_used, user.monthly_token_limit)
            user.monthly_token_used += tokens
            return self.build_status(user)

        try:
            status = await self.store.mutate(UserRecord, user_id, consume)
        except QuotaExceededError as e:
            logger.warning(
                "Quota consumption rejected",
                extra={"user_id": user_id, "requested": tokens, "used": e.details["used"], "limit": e.details["limit"]},
            )
            raise

        logger.debug(
            "Quota consumed",
            extra={"user_id": user_id, "tokens": tokens, "used": status.monthly_token_used},
        )
        if status.warning:
            logger.info(
                "Quota warning threshold reached",
                extra={"user_id": user_id, "usage_ratio": round(status.usage_ratio, 4)},
            )
        return status

    async def get_status(self, user_id: str) -> QuotaStatus:
        """Current budget, persisting a due monthly reset first."""
        today = self._today()

        def read(user: UserRecord) -> QuotaStatus:
            apply_monthly_reset(user, today)
            return self.build_status(user)

        return await self.store.mutate(UserRecord, user_id, read)

    async def check_can_send(self, user_id: str) -> QuotaStatus:
        """Pre-flight hard stop for a new turn.

        Raises:
            QuotaExceededError: When the account is flagged over quota or
                has no tokens left in the current period.
        """
        status = await self.get_status(user_id)
        if status.exceeded:
            raise QuotaExceededError(
                user_id,
                0,
                status.monthly_token_used,
                status.monthly_token_limit,
                reason="Monthly token quota exhausted; new messages are blocked until the quota resets",
            )
        return status

    async def flag_over_quota(self, user_id: str) -> None:
        """Block further sends after a turn whose cost could not be charged."""

        def flag(user: UserRecord) -> None:
            user.quota_exceeded = True

        await self.store.mutate(UserRecord, user_id, flag)
        logger.warning("User flagged over quota", extra={"user_id": user_id})

    async def set_monthly_limit(self, user_id: str, limit: int) -> QuotaStatus:
        """Administrative limit change.

        A limit below what is already used this period is rejected. Raising the
        limit above current usage clears the over-quota flag.
        """
        if limit < 0:
            raise ValidationError("Monthly token limit cannot be negative", {"limit": limit})

        today = self._today()

        def update(user: UserRecord) -> QuotaStatus:
            apply_monthly_reset(user, today)
            if limit < user.monthly_token_used:
                raise ValidationError(
                    "Monthly token limit cannot be lower than tokens already used this period",
                    {"limit": limit, "used": user.monthly_token_used},
                )
            user.monthly_token_limit = limit
            if limit > user.monthly_token_used:
                user.quota_exceeded = False
            return self.build_status(user)

        status = await self.store.mutate(UserRecord, user_id, update)
        logger.info("Monthly token limit updated", extra={"user_id": user_id, "limit": limit})
        return status

    async def record_credential_usage(
        self, credential_id: str, tokens: int, free_quota: int | None = None
    ) -> CredentialRecord:
        """Update a credential's usage statistics after a successful call.

        For OFFICIAL_FREE credentials the tokens also count against the
        provider's monthly free allowance; the counter saturates at
        ``free_quota`` so an overrunning final call cannot push it past the
        allowance.
        """
        if tokens < 0:
            raise ValidationError("Token amount cannot be negative", {"tokens": tokens})

        now = self._clock()

        def record(credential: CredentialRecord) -> CredentialRecord:
            credential.total_requests += 1
            credential.total_tokens += tokens
            credential.last_used_at = now
            if credential.key_type == ServiceType.OFFICIAL_FREE:
                apply_credential_reset(credential, now.date())
                used = credential.monthly_free_quota_used + tokens
                if free_quota is not None:
                    used = min(used, max(0, free_quota))
                credential.monthly_free_quota_used = used
            return credential

        return await self.store.mutate(CredentialRecord, credential_id, record)


_quota_ledger: QuotaLedger | None = None


def get_quota_ledger() -> QuotaLedger:
    global _quota_ledger  # noqa: PLW0603
    if _quota_ledger is None:
        _quota_ledger = QuotaLedger()
    return _quota_ledger
