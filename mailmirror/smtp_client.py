"""Send transport: hands an outbox message to the SMTP relay."""

import logging

import aiosmtplib

from .config import ServerConfig
from .errors import ConnectError, TransportError
from .models import OutgoingMessage

logger = logging.getLogger("mailmirror.smtp")

SEND_TIMEOUT = 60


def _smtp_code(exc: Exception) -> int | None:
    if isinstance(exc, aiosmtplib.SMTPRecipientsRefused) and exc.recipients:
        # Retry only if some refusal is temporary
        codes = [r.code for r in exc.recipients]
        return min(codes) if any(400 <= c < 500 for c in codes) else max(codes)
    return getattr(exc, "code", None)


def classify(exc: Exception) -> TransportError:
    """Map a send failure to a TransportError; 5xx replies are permanent."""
    code = _smtp_code(exc)
    if isinstance(exc, aiosmtplib.SMTPException) and code is not None and 500 <= code < 600:
        return TransportError(f"SMTP rejected message ({code}): {exc}", permanent=True)
    return TransportError(f"SMTP send failed: {exc}")


async def send(smtp: ServerConfig, message: OutgoingMessage, *, timeout: float = SEND_TIMEOUT) -> None:
    """Send one outbox message.

    Raises:
        ConnectError: If the relay refuses our credentials
        TransportError: On network failure or an SMTP error reply;
            ``permanent`` is set for 5xx replies
    """
    try:
        await aiosmtplib.send(
            message.raw,
            sender=message.sender,
            recipients=message.recipients,
            hostname=smtp.host,
            port=smtp.port,
            username=smtp.username or None,
            password=smtp.password or None,
            use_tls=smtp.use_ssl and smtp.port == 465,
            start_tls=None if smtp.port == 465 else smtp.use_ssl or None,
            timeout=timeout,
        )
    except aiosmtplib.SMTPAuthenticationError as e:
        raise ConnectError(f"SMTP authentication failed for {smtp.username}@{smtp.host}: {e}") from e
    except (aiosmtplib.SMTPException, OSError, TimeoutError) as e:
        error = classify(e)
        logger.warning(f"[{message.account_id}] Outgoing message {message.id}: {error}")
        raise error from e
    logger.info(
        f"[{message.account_id}] Sent message {message.id} to {len(message.recipients)} recipients"
    )
