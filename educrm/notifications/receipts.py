"""Payment receipt notifications. Delivery failures are logged and never reach the caller."""

import logging
from dataclasses import dataclass
from decimal import Decimal
from functools import lru_cache
from typing import Optional

from educrm.api.v1.payments.schemas import PaymentResponse
from educrm.core.config import settings
from educrm.notifications.mailer import EmailSender
from educrm.notifications.sms import SmsClient

logger = logging.getLogger(__name__)


@dataclass
class ReceiptContact:
    full_name: str
    email: Optional[str] = None
    phone: Optional[str] = None


def _format_amount(value: Decimal) -> str:
    return f"{value:,.0f}" if value == value.to_integral_value() else f"{value:,.2f}"


def render_receipt_email(contact: ReceiptContact, payment: PaymentResponse) -> str:
    first_name = contact.full_name.split()[0] if contact.full_name.strip() else contact.full_name
    return f"""
    <!DOCTYPE html>
    <html>
    <body style="font-family: Arial, sans-serif;">
      <div style="max-width: 600px; margin: 0 auto; padding: 20px;">
        <h1 style="color: #4CAF50;">Payment Receipt</h1>
        <p>Dear {first_name},</p>
        <div style="background: #f5f5f5; padding: 15px; margin: 20px 0;">
          <p><strong>Receipt Number:</strong> {payment.receipt_number}</p>
          <p><strong>Date:</strong> {payment.payment_date:%d.%m.%Y}</p>
          <p><strong>Amount:</strong> {_format_amount(payment.net_amount)} {payment.currency}</p>
          <p><strong>Payment Method:</strong> {payment.payment_method.value}</p>
          <p><strong>Status:</strong> {payment.status.value}</p>
        </div>
        <p>Thank you for your payment!</p>
      </div>
    </body>
    </html>
    """


def render_receipt_sms(payment: PaymentResponse) -> str:
    return (
        f"To'lovingiz qabul qilindi! Summa: {_format_amount(payment.net_amount)} {payment.currency}. "
        f"Chek raqami: {payment.receipt_number}. Rahmat!"
    )


class ReceiptNotifier:
    def __init__(self, sms: SmsClient, email: EmailSender) -> None:
        self._sms = sms
        self._email = email

    async def send_payment_receipt(self, contact: ReceiptContact, payment: PaymentResponse) -> None:
        """Send the receipt by e-mail and SMS. Meant to run after the payment is committed."""
        try:
            await self._email.send(
                contact.email,
                f"Payment Receipt - {payment.receipt_number}",
                render_receipt_email(contact, payment),
            )
        except Exception:
            logger.exception("Error sending payment receipt email for %s", payment.receipt_number)
        try:
            await self._sms.send(contact.phone, render_receipt_sms(payment))
        except Exception:
            logger.exception("Error sending payment receipt SMS for %s", payment.receipt_number)


@lru_cache
def get_receipt_notifier() -> ReceiptNotifier:
    """Process-wide notifier; shares one SMS token cache across requests."""
    return ReceiptNotifier(SmsClient(settings), EmailSender(settings))
