"""
Signature verification and payload decryption for inbound webhooks.

The partner signs ``guid + webhookType + webhookData`` with HMAC-SHA256 and
sends the digest in a header, hex or Base64 encoded. Only a verified payload
is decrypted. Callers get ``(None, False)`` for every kind of failure; the
cause is logged at debug level and never returned.
"""
import base64
import binascii
import hashlib
import hmac

from partner_sync.core.crypto import DecryptionError, decrypt_string, encrypt_string
from partner_sync.core.logging import get_logger
from partner_sync.domain.payloads import WebhookEnvelope

logger = get_logger(__name__)

_DIGEST_SIZE = hashlib.sha256().digest_size


def compute_signature(envelope: WebhookEnvelope, hmac_key: str) -> str:
    """Hex HMAC-SHA256 of the envelope, as the partner computes it"""
    return hmac.new(
        hmac_key.encode("utf-8"),
        envelope.signed_message(),
        hashlib.sha256,
    ).hexdigest()


def _decode_signature(signature_header: str) -> bytes | None:
    value = signature_header.strip()
    if value.lower().startswith("sha256="):
        value = value[7:]

    if len(value) == _DIGEST_SIZE * 2:
        try:
            return bytes.fromhex(value)
        except ValueError:
            pass

    try:
        raw = base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError):
        return None
    return raw if len(raw) == _DIGEST_SIZE else None


def verify_signature(envelope: WebhookEnvelope, signature_header: str, hmac_key: str) -> bool:
    if not signature_header or not hmac_key:
        return False
    provided = _decode_signature(signature_header)
    if provided is None:
        return False
    expected = hmac.new(
        hmac_key.encode("utf-8"),
        envelope.signed_message(),
        hashlib.sha256,
    ).digest()
    return hmac.compare_digest(provided, expected)


def verify_and_decrypt(
    envelope: WebhookEnvelope,
    signature_header: str,
    hmac_key: str,
    enc_key: str,
) -> tuple[str | None, bool]:
    """
    Verify the envelope signature, then decrypt ``webhook_data``.

    Returns:
        (plaintext, True) on success, (None, False) otherwise.
    """
    if not verify_signature(envelope, signature_header, hmac_key):
        logger.debug(
            "Webhook rejected: signature mismatch",
            extra_data={"guid": envelope.guid, "cause": "signature"},
        )
        return None, False

    try:
        plaintext = decrypt_string(envelope.webhook_data, enc_key)
    except DecryptionError as e:
        logger.debug(
            "Webhook rejected: payload could not be decrypted",
            extra_data={"guid": envelope.guid, "cause": "decryption", "detail": str(e)},
        )
        return None, False

    return plaintext, True


def encrypt_envelope(
    plaintext: str,
    *,
    guid: str,
    webhook_type: str,
    hmac_key: str,
    enc_key: str,
) -> tuple[WebhookEnvelope, str]:
    """Build a signed envelope the way the partner does; returns (envelope, hex signature)"""
    envelope = WebhookEnvelope(
        guid=guid,
        webhook_type=webhook_type,
        webhook_data=encrypt_string(plaintext, enc_key),
    )
    return envelope, compute_signature(envelope, hmac_key)
