from __future__ import annotations

import logging
import smtplib
from dataclasses import dataclass

from django.core.mail import send_mail

from practice.exceptions import DeliveryError
from practice.models import CommunicationLog, Notification
from practice.notifications import whatsapp

logger = logging.getLogger(__name__)

Channel = CommunicationLog.Type


@dataclass(frozen=True)
class Ack:
    channel: str
    recipient: str
    reference: str = ''


class Notifier:
    """Dispatches a message over one channel.

    ``recipient`` is a ``User`` for in-app messages, an email address for
    email and a phone number for WhatsApp. Failures raise ``DeliveryError``;
    transports are bounded by ``EMAIL_TIMEOUT`` / ``NOTIFIER_TIMEOUT``.
    """

    def send(self, channel: str, recipient, subject: str, message: str) -> Ack:
        handler = getattr(self, f'_send_{channel}', None)
        if handler is None:
            raise DeliveryError(f"Unsupported channel {channel!r}.")
        if not recipient:
            raise DeliveryError(f"No {channel} recipient.")
        return handler(recipient, subject, message)

    def _send_in_app(self, user, subject: str, message: str) -> Ack:
        notification = Notification.objects.create(
            user=user,
            message=f"{subject}: {message}"[:500],
            category='task_due',
        )
        return Ack(Channel.IN_APP, str(user.pk), str(notification.pk))

    def _send_email(self, address: str, subject: str, message: str) -> Ack:
        try:
            sent = send_mail(
                subject=subject,
                message=message,
                from_email=None,
                recipient_list=[address],
                fail_silently=False,
            )
        except (smtplib.SMTPException, OSError) as exc:
            raise DeliveryError(f"Email to {address} failed: {exc}") from exc
        if not sent:
            raise DeliveryError(f"Email to {address} was not accepted.")
        return Ack(Channel.EMAIL, address)

    def _send_whatsapp(self, phone: str, subject: str, message: str) -> Ack:
        reference = whatsapp.send_message(phone, f"{subject}\n{message}")
        return Ack(Channel.WHATSAPP, phone, reference)
