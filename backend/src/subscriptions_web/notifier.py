from __future__ import annotations

import html
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from .date_math import coerce_utc
from .mailer import EmailMessageRequest, EmailSender, mask_email
from .subscriptions import Subscription

logger = logging.getLogger(__name__)


class DeliveryFailure(RuntimeError):
    """Base class for reminder delivery failures reported by the email collaborator."""

    retryable = False

    def __init__(self, error_code: str, message: str) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message


class TransientDeliveryFailure(DeliveryFailure):
    """Network errors, rate limits and other failures worth retrying."""

    retryable = True


class PermanentDeliveryFailure(DeliveryFailure):
    """Invalid recipients and other failures that retrying will not fix."""


@dataclass(frozen=True)
class RenewalReminder:
    subscription_id: str
    email: str
    username: str
    subscription_name: str
    renewal_date: datetime
    price: float
    currency: str
    days_until_renewal: int
    checkpoint: int

    @classmethod
    def for_subscription(
        cls,
        subscription: Subscription,
        *,
        days_until_renewal: int,
        checkpoint: int,
    ) -> RenewalReminder:
        return cls(
            subscription_id=subscription.subscription_id,
            email=subscription.owner_email,
            username=subscription.owner_username,
            subscription_name=subscription.name,
            renewal_date=subscription.renewal_date,
            price=subscription.price,
            currency=subscription.currency,
            days_until_renewal=days_until_renewal,
            checkpoint=checkpoint,
        )

    @classmethod
    def sample(cls, email: str, *, now: datetime) -> RenewalReminder:
        """Placeholder subscription used to check email delivery end to end."""
        return cls(
            subscription_id="sample",
            email=email,
            username="Test User",
            subscription_name="Netflix Premium",
            renewal_date=coerce_utc(now) + timedelta(days=3),
            price=15.99,
            currency="USD",
            days_until_renewal=3,
            checkpoint=3,
        )


def format_renewal_date(value: datetime) -> str:
    normalized = coerce_utc(value)
    return f"{normalized:%A}, {normalized:%B} {normalized.day}, {normalized.year}"


def render_reminder(reminder: RenewalReminder) -> EmailMessageRequest:
    days = reminder.days_until_renewal
    plural = "s" if days != 1 else ""
    formatted_date = format_renewal_date(reminder.renewal_date)
    greeting_name = reminder.username or "there"
    amount = f"{reminder.price:.2f} {reminder.currency}"

    subject = f"Reminder: Your {reminder.subscription_name} subscription renews in {days} day{plural}"
    text_body = (
        f"Hi {greeting_name},\n\n"
        f"This is a friendly reminder that your {reminder.subscription_name} subscription "
        f"will renew on {formatted_date}.\n\n"
        "Subscription Details:\n"
        f"- Name: {reminder.subscription_name}\n"
        f"- Renewal Date: {formatted_date}\n"
        f"- Amount: {amount}\n"
        f"- Days Until Renewal: {days}\n\n"
        "If you wish to cancel or modify your subscription, please log in to your SubDub account.\n\n"
        "Best regards,\n"
        "The SubDub Team\n"
    )

    safe_name = html.escape(reminder.subscription_name)
    safe_greeting = html.escape(greeting_name)
    html_body = f"""<!DOCTYPE html>
<html>
<head>
  <style>
    body {{ font-family: Arial, sans-serif; line-height: 1.6; color: #333; }}
    .container {{ max-width: 600px; margin: 0 auto; padding: 20px; }}
    .header {{ background: #667eea; color: white; padding: 30px; text-align: center; border-radius: 10px 10px 0 0; }}
    .content {{ background: #f9f9f9; padding: 30px; border-radius: 0 0 10px 10px; }}
    .details {{ background: white; padding: 20px; border-radius: 8px; margin: 20px 0; }}
    .details-row {{ display: flex; justify-content: space-between; padding: 10px 0; border-bottom: 1px solid #eee; }}
    .label {{ color: #666; }}
    .value {{ font-weight: bold; }}
  </style>
</head>
<body>
  <div class="container">
    <div class="header">
      <h1>Subscription Renewal Reminder</h1>
      <p>Renews in {days} day{plural}</p>
    </div>
    <div class="content">
      <p>Hi {safe_greeting},</p>
      <p>Your <strong>{safe_name}</strong> subscription will renew on <strong>{formatted_date}</strong>.</p>
      <div class="details">
        <div class="details-row"><span class="label">Subscription</span><span class="value">{safe_name}</span></div>
        <div class="details-row"><span class="label">Renewal Date</span><span class="value">{formatted_date}</span></div>
        <div class="details-row"><span class="label">Amount</span><span class="value">{amount}</span></div>
        <div class="details-row"><span class="label">Days Until Renewal</span><span class="value">{days}</span></div>
      </div>
      <p>If you wish to cancel or modify your subscription, please log in to your SubDub account.</p>
      <p>Best regards,<br>The SubDub Team</p>
    </div>
  </div>
</body>
</html>
"""
    return EmailMessageRequest(
        to=reminder.email,
        subject=subject,
        text_body=text_body,
        html_body=html_body,
    )


class ReminderNotifier:
    def __init__(self, sender: EmailSender) -> None:
        self._sender = sender

    def send_renewal_reminder(self, reminder: RenewalReminder) -> dict[str, object]:
        if not reminder.email.strip():
            raise PermanentDeliveryFailure(
                "recipient_missing",
                f"Recipient missing for subscription {reminder.subscription_id}",
            )

        message = render_reminder(reminder)
        result = self._sender.send(message)
        if result.status != "sent":
            error_code = result.error_code or "delivery_failed"
            error_message = result.error_message or "email delivery failed"
            if result.retryable:
                raise TransientDeliveryFailure(error_code, error_message)
            raise PermanentDeliveryFailure(error_code, error_message)

        logger.info(
            "renewal reminder sent for subscription %s (checkpoint %s, %s days left) to %s",
            reminder.subscription_id,
            reminder.checkpoint,
            reminder.days_until_renewal,
            mask_email(reminder.email),
        )
        return {
            "checkpoint": reminder.checkpoint,
            "days_until_renewal": reminder.days_until_renewal,
            "message_id": result.message_id,
            "sent_at": result.attempted_at.isoformat(),
            "recipient": mask_email(reminder.email),
        }
