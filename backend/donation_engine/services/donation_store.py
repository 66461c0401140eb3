"""DonationStore: the single source of truth for donation status.

Status only ever changes through ``transition``, a single-row UPDATE
conditioned on the current status. Two writers racing on the same donation
(the synchronous payment path and a webhook) cannot lose each other's update:
whichever commits second sees a rowcount of 0 and treats the move as a no-op.
"""

from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from donation_engine.db.models.donation import Donation
from donation_engine.domain.donation_lifecycle import DonationStatus, can_transition

logger = structlog.get_logger(__name__)


def _values(statuses: Iterable[DonationStatus | str]) -> list[str]:
    return [DonationStatus(s).value for s in statuses]


class DonationStore:
    """Persistence operations for Donation rows, bound to one session."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, **fields: Any) -> Donation:
        donation = Donation(status=DonationStatus.PENDING.value, payment_retry_count=0, **fields)
        self.session.add(donation)
        await self.session.flush()
        return donation

    async def get(self, donation_id: str) -> Donation | None:
        return await self.session.get(Donation, donation_id, populate_existing=True)

    async def get_by_transaction_id(self, transaction_id: str) -> Donation | None:
        result = await self.session.execute(
            select(Donation).where(Donation.transaction_id == transaction_id)
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    async def get_by_subscription_id(self, subscription_id: str) -> Donation | None:
        result = await self.session.execute(
            select(Donation).where(Donation.subscription_id == subscription_id)
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    async def list_subscriptions_for_user(self, user_id: str) -> list[Donation]:
        result = await self.session.execute(
            select(Donation)
            .where(Donation.user_id == user_id, Donation.subscription_id.is_not(None))
            .order_by(Donation.created_at.desc())
        )
        return list(result.scalars().all())

    async def transition(
        self,
        donation_id: str,
        from_statuses: Iterable[DonationStatus | str],
        to_status: DonationStatus | str,
        now: datetime | None = None,
        **fields: Any,
    ) -> bool:
        """Move a donation to ``to_status`` if it is currently in one of ``from_statuses``.

        Returns False (and changes nothing) if the stored status did not match.
        """
        sources = _values(from_statuses)
        target = DonationStatus(to_status)
        invalid = [s for s in sources if not can_transition(s, target)]
        if invalid:
            raise ValueError(f"Invalid transition {invalid} -> {target.value}")

        result = await self.session.execute(
            update(Donation)
            .where(Donation.id == donation_id, Donation.status.in_(sources))
            .values(status=target.value, updated_at=now or datetime.now(UTC), **fields)
            .execution_options(synchronize_session=False)
        )
        applied = result.rowcount == 1
        if not applied:
            logger.info(
                "donation_transition_skipped",
                donation_id=donation_id,
                from_statuses=sources,
                to_status=target.value,
            )
        return applied

    async def update_fields(
        self,
        donation_id: str,
        expected_status: DonationStatus | str,
        now: datetime | None = None,
        **fields: Any,
    ) -> bool:
        """Guarded update of non-status columns."""
        result = await self.session.execute(
            update(Donation)
            .where(Donation.id == donation_id, Donation.status == DonationStatus(expected_status).value)
            .values(updated_at=now or datetime.now(UTC), **fields)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def record_payment_failure(
        self,
        donation_id: str,
        reason: str,
        now: datetime | None = None,
    ) -> int | None:
        """Atomically count a recurring-charge failure.

        Only applies to active, subscription-backed donations. Returns the new
        retry count, or None if the donation was not eligible.
        """
        now = now or datetime.now(UTC)
        result = await self.session.execute(
            update(Donation)
            .where(
                Donation.id == donation_id,
                Donation.status == DonationStatus.ACTIVE.value,
                Donation.subscription_id.is_not(None),
            )
            .values(
                payment_retry_count=Donation.payment_retry_count + 1,
                last_payment_failure_reason=reason[:500],
                last_payment_attempt=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return None
        count = await self.session.scalar(
            select(Donation.payment_retry_count).where(Donation.id == donation_id)
        )
        return int(count)

    async def reset_retry_count(
        self,
        donation_id: str,
        now: datetime | None = None,
        transaction_id: str | None = None,
        next_billing_date: str | None = None,
    ) -> bool:
        """Record a successful billing cycle on an active subscription."""
        now = now or datetime.now(UTC)
        fields: dict[str, Any] = {
            "payment_retry_count": 0,
            "last_payment_attempt": now,
            "last_payment_failure_reason": None,
        }
        if transaction_id:
            fields["transaction_id"] = transaction_id
        if next_billing_date:
            fields["next_billing_date"] = next_billing_date
        return await self.transition(
            donation_id, [DonationStatus.ACTIVE], DonationStatus.ACTIVE, now=now, **fields
        )
