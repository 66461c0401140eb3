"""Recurring-charge failure policy.

The gateway's own billing cycle re-attempts failed charges and reports each
attempt by webhook. This policy only counts the failures we have seen and
decides when to give up on the subscription. It never schedules anything.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class PaymentRetryPolicy:
    max_retries: int = 3

    def can_retry_payment(self, donation) -> bool:
        """True only for subscription-backed donations with retries left.

        Called with the donation as stored *after* the latest failure was
        counted: False means the subscription has run out of attempts.
        """
        if not donation.subscription_id:
            return False
        return (donation.payment_retry_count or 0) < self.max_retries
