"""
Credential selection.

``select_credential`` is a pure function over a snapshot of credential
states: given the same snapshot it always returns the same credential.
``CredentialSelector`` loads that snapshot from the store and never writes;
free-quota consumption is recorded by the orchestrator after a successful
provider call.
"""

from collections.abc import Callable, Iterable
from datetime import date, datetime

from ..core.exceptions import CredentialNotFoundError, NoAvailableCredentialError, ProviderNotFoundError
from ..core.logging import get_logger
from ..core.store_backend import StoreBackend, get_store_backend
from ..models.enums import AUTO_TIER_ORDER, CredentialPreference, CredentialStatus, ProviderStatus, ServiceType
from ..models.records import CredentialRecord, ProviderRecord, utcnow
from .quota_ledger import roll_reset_date

logger = get_logger(__name__)


def free_quota_used(credential: CredentialRecord, today: date) -> int:
    """Free-quota usage as of ``today``, treating a due reset as already applied."""
    _, crossed = roll_reset_date(credential.quota_reset_date, today)
    return 0 if crossed else credential.monthly_free_quota_used


def is_eligible(credential: CredentialRecord, provider: ProviderRecord, today: date) -> bool:
    """Whether an ACTIVE credential can serve a request right now."""
    if credential.key_type != ServiceType.OFFICIAL_FREE:
        return True
    return free_quota_used(credential, today) < provider.free_quota_per_user_monthly


def _selection_key(credential: CredentialRecord) -> tuple:
    # lowest priority value first, then most recently created, then id
    return (credential.priority, -credential.created_at.timestamp(), credential.id)


def select_credential(
    credentials: Iterable[CredentialRecord],
    provider: ProviderRecord,
    preference: CredentialPreference,
    today: date,
    user_id: str = "",
) -> CredentialRecord:
    """Pick the credential that serves a request.

    Args:
        credentials: Snapshot of the user's credentials; other providers'
            credentials are ignored.
        provider: The provider the session targets.
        preference: An explicit key type, or AUTO to try OFFICIAL_FREE,
            USER_PROVIDED and OFFICIAL_PAID in that order.
        today: Date used for the free-quota monthly reset rule.
        user_id: Only used in error details.

    Raises:
        NoAvailableCredentialError: If no credential qualifies.
    """
    preference = CredentialPreference(preference)
    if provider.status != ProviderStatus.ACTIVE:
        raise NoAvailableCredentialError(
            user_id, provider.id, preference.value, f"provider is {provider.status.value}"
        )

    active = [c for c in credentials if c.provider_id == provider.id and c.status == CredentialStatus.ACTIVE]
    if not active:
        raise NoAvailableCredentialError(user_id, provider.id, preference.value, "no active credentials")

    if preference == CredentialPreference.AUTO:
        tiers = AUTO_TIER_ORDER
    else:
        tiers = (ServiceType(preference.value),)

    skipped_exhausted = False
    for tier in tiers:
        candidates = sorted((c for c in active if c.key_type == tier), key=_selection_key)
        for candidate in candidates:
            if is_eligible(candidate, provider, today):
                return candidate
            skipped_exhausted = True

    if skipped_exhausted:
        reason = "free quota exhausted"
    else:
        reason = f"no active {preference.value} credential"
    raise NoAvailableCredentialError(user_id, provider.id, preference.value, reason)


class CredentialSelector:
    """Store-backed, read-only credential selection."""

    def __init__(self, store: StoreBackend | None = None, clock: Callable[[], datetime] = utcnow) -> None:
        self.store = store or get_store_backend()
        self._clock = clock

    async def select(
        self,
        user_id: str,
        provider_id: str,
        preference: CredentialPreference = CredentialPreference.AUTO,
        credential_id: str | None = None,
    ) -> CredentialRecord:
        """Select a credential for (user, provider).

        When ``credential_id`` is given (a session pinned to one credential)
        only that credential is considered, under the same eligibility rules.

        Raises:
            ProviderNotFoundError: If the provider does not exist.
            NoAvailableCredentialError: If no credential qualifies.
        """
        provider = await self.store.get_provider(provider_id)
        if provider is None:
            raise ProviderNotFoundError(provider_id)

        if credential_id is not None:
            pinned = await self.store.get_credential(credential_id)
            if pinned is None or pinned.user_id != user_id:
                raise CredentialNotFoundError(credential_id)
            credentials = [pinned]
        else:
            credentials = await self.store.list_credentials(user_id, provider_id)

        try:
            selected = select_credential(credentials, provider, preference, self._clock().date(), user_id=user_id)
        except NoAvailableCredentialError as e:
            logger.warning(
                "No available credential",
                extra={"user_id": user_id, "provider_id": provider_id, "reason": e.details["reason"]},
            )
            raise

        logger.debug(
            "Credential selected",
            extra={"user_id": user_id, "credential_id": selected.id, "key_type": selected.key_type.value},
        )
        return selected
