"""Phone number normalization used for sender authorization and delivery."""

import re

_NON_DIGITS = re.compile(r"\D")


def normalize_phone(phone: str | None, country_code: str = "254") -> str | None:
    """Return digits-only international form, or None when nothing usable remains.

    Local numbers (`07...`) and bare 9-digit subscriber numbers get the
    country code prefixed so that `+254 712 345 678`, `0712345678` and
    `whatsapp:+254712345678` all compare equal.
    """

    if not phone:
        return None
    cleaned = _NON_DIGITS.sub("", phone)
    if not cleaned:
        return None
    if cleaned.startswith(country_code):
        return cleaned
    if cleaned.startswith("0"):
        return country_code + cleaned[1:]
    if len(cleaned) == 9:
        return country_code + cleaned
    return cleaned
