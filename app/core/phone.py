"""Phone number and channel address normalization."""

import logging
import re

logger = logging.getLogger(__name__)

# Channels whose sender address is a phone number
PHONE_CHANNELS = frozenset({"whatsapp", "sms"})

# Prefixes keep handle spaces of different channels from colliding
CHANNEL_ADDRESS_PREFIXES = {
    "instagram": "ig",
    "facebook": "fb",
    "email": "email",
    "webchat": "webchat",
}


def normalize_phone_e164(phone: str | None) -> str | None:
    """Normalize phone number to E.164 format (+1XXXXXXXXXX for US numbers).

    Handles various input formats:
        (281)788-2316 → +12817882316
        281-788-2316  → +12817882316
        +1 281 788 2316 → +12817882316
        whatsapp:+447700900123 → +447700900123

    Returns:
        Phone in E.164 format, the stripped input if it cannot be
        normalized, or None for empty input
    """
    if not phone:
        return None

    phone = phone.strip()
    if phone.lower().startswith("whatsapp:"):
        phone = phone.split(":", 1)[1]

    digits = re.sub(r'\D', '', phone)

    if len(digits) == 10:
        return f"+1{digits}"
    elif len(digits) == 11 and digits.startswith('1'):
        return f"+{digits}"
    elif len(digits) > 10:
        # WhatsApp wa_ids arrive as bare international digits
        return f"+{digits}"

    logger.warning(f"Could not normalize phone number: {phone}")
    return phone


def normalize_channel(channel: str) -> str:
    """Canonical lowercase channel tag."""
    return channel.strip().lower()


def normalize_address(channel: str, address: str) -> str:
    """Normalize a sender address into the contact address space.

    Phone channels share the E.164 space so the same person texting on
    SMS and WhatsApp resolves to one contact. Other channels get a
    channel prefix.

    Args:
        channel: Channel tag
        address: Raw sender address from the provider

    Returns:
        Normalized contact address
    """
    channel = normalize_channel(channel)
    address = address.strip()
    if channel in PHONE_CHANNELS:
        return normalize_phone_e164(address) or address
    if channel == "email":
        address = address.lower()
    prefix = CHANNEL_ADDRESS_PREFIXES.get(channel, channel)
    if address.startswith(f"{prefix}:"):
        return address
    return f"{prefix}:{address}"


def strip_address_prefix(channel: str, address: str) -> str:
    """Return the provider-facing part of a normalized address."""
    channel = normalize_channel(channel)
    if channel in PHONE_CHANNELS:
        return address
    prefix = CHANNEL_ADDRESS_PREFIXES.get(channel, channel)
    if address.startswith(f"{prefix}:"):
        return address[len(prefix) + 1:]
    return address
