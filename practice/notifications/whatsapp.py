import logging
import os
import re
from typing import Optional

import requests
from django.apps import apps
from django.conf import settings as django_settings

from practice.exceptions import DeliveryError

logger = logging.getLogger(__name__)


def _normalize_phone(phone: str) -> Optional[str]:
    """Return a digits/plus only phone or None."""
    if not phone:
        return None
    cleaned = re.sub(r'[^0-9+]', '', phone)
    return cleaned if cleaned else None


def _get_settings():
    """
    Prefer environment variables; fall back to enabled DB config.
    Returns dict with token, phone_number_id, language or None if unavailable.
    """
    env_enabled = os.environ.get('WHATSAPP_ENABLED', '0') == '1'
    env_token = os.environ.get('WHATSAPP_TOKEN')
    env_number_id = os.environ.get('WHATSAPP_PHONE_NUMBER_ID')
    env_lang = os.environ.get('WHATSAPP_LANGUAGE', 'en')
    if env_enabled and env_token and env_number_id:
        return {
            'token': env_token,
            'phone_number_id': env_number_id,
            'language': env_lang,
        }

    WhatsAppConfig = apps.get_model('practice', 'WhatsAppConfig')
    cfg = WhatsAppConfig.objects.filter(enabled=True).exclude(api_token='').order_by('-updated_at').first()
    if cfg and cfg.api_token and cfg.phone_number_id:
        return {
            'token': cfg.api_token.strip(),
            'phone_number_id': cfg.phone_number_id.strip(),
            'language': (cfg.default_language or 'en').strip() or 'en',
        }
    return None


def is_configured() -> bool:
    return _get_settings() is not None


def send_message(to_phone: str, body: str, *, timeout: Optional[float] = None) -> str:
    """
    Send a WhatsApp text message via WhatsApp Cloud API.
    Returns the provider message id; raises DeliveryError on any failure.
    """
    config = _get_settings()
    if not config:
        raise DeliveryError('WhatsApp is not configured.')
    to = _normalize_phone(to_phone)
    if not to:
        raise DeliveryError(f"Invalid phone number {to_phone!r}.")

    url = f"https://graph.facebook.com/v19.0/{config['phone_number_id']}/messages"
    headers = {
        "Authorization": f"Bearer {config['token']}",
        "Content-Type": "application/json",
    }
    payload = {
        "messaging_product": "whatsapp",
        "to": to,
        "type": "text",
        "text": {"body": body[:1024]},
    }
    if timeout is None:
        timeout = getattr(django_settings, 'NOTIFIER_TIMEOUT', 10)
    try:
        resp = requests.post(url, headers=headers, json=payload, timeout=timeout)
    except requests.RequestException as exc:
        raise DeliveryError(f"WhatsApp request failed: {exc}") from exc
    if resp.status_code >= 400:
        raise DeliveryError(f"WhatsApp send failed {resp.status_code}: {resp.text[:200]}")
    try:
        messages = resp.json().get('messages') or [{}]
    except ValueError:
        messages = [{}]
    return messages[0].get('id', '')


def send_text(to_phone: str, body: str) -> bool:
    """Best-effort variant of send_message. Safe no-op if not configured."""
    if not is_configured():
        return False
    try:
        send_message(to_phone, body)
    except DeliveryError as exc:
        logger.warning("WhatsApp send skipped for %s: %s", to_phone, exc)
        return False
    return True
