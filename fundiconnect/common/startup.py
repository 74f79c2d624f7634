"""Startup-time helpers for safe config logging."""

from fundiconnect.common.config import CommonSettings
from fundiconnect.common.logging import logger


SECRET_MARKERS = ("key", "secret", "password", "token", "passkey", "dsn")


def _safe_value(name: str, value) -> str:
    """Redact values whose field name looks secret-like."""

    if value is None or value == "":
        return "<unset>"
    if any(marker in name for marker in SECRET_MARKERS):
        return "<redacted>"
    return str(value)


def enabled_backends(config: CommonSettings) -> dict[str, bool]:
    """Report which provider backends have a complete credential set."""

    return {
        "whatsapp_meta": bool(config.whatsapp_access_token and config.whatsapp_phone_number_id),
        "whatsapp_twilio": bool(
            config.twilio_account_sid and config.twilio_auth_token and config.twilio_whatsapp_number
        ),
        "paystack": bool(config.paystack_secret_key),
        "mpesa": bool(
            config.mpesa_consumer_key
            and config.mpesa_consumer_secret
            and config.mpesa_shortcode
            and config.mpesa_passkey
        ),
    }


def log_startup_config(config: CommonSettings, keys: list[str]) -> None:
    """Log selected config fields and backend availability for troubleshooting."""

    values = config.model_dump()
    snapshot = {"service": config.service_name}
    for key in keys:
        snapshot[key] = _safe_value(key, values.get(key))
    snapshot["backends"] = enabled_backends(config)
    logger.info("startup_config=%s", snapshot)
