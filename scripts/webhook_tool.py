#!/usr/bin/env python3
"""
Posts a signed test webhook to a running instance.

Usage (from the project root):
    python scripts/webhook_tool.py --payload '{"productData": {"sku": "X1"}}' --type ProductChanged

The delivery is built exactly as the partner builds it (encrypted payload and
HMAC signature header) with the keys from the environment, and is posted
after checking /health. BASE_URL or PORT select the target.
"""

from __future__ import annotations

import argparse
import json
import os
import sys
import uuid
from pathlib import Path

import httpx

# Allow running from any directory
REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from partner_sync.core.config import settings  # noqa: E402
from partner_sync.core.logging import get_logger, setup_logging  # noqa: E402
from partner_sync.domain.services.crypto_verifier import encrypt_envelope  # noqa: E402
from partner_sync.domain.services.ingestion import webhook_keys  # noqa: E402


logger = get_logger(__name__)


def _base_url() -> str:
    port = os.environ.get("PORT", "8000")
    return os.environ.get("BASE_URL", f"http://127.0.0.1:{port}").rstrip("/")


def _timeout_seconds() -> float:
    return float(os.environ.get("WEBHOOK_TOOL_TIMEOUT_SECONDS", "10"))


def _check_status(resp: httpx.Response, expected_family: int = 2) -> None:
    family = resp.status_code // 100
    if family != expected_family:
        raise RuntimeError(
            f"Unexpected status {resp.status_code} for {resp.request.method} {resp.request.url}. "
            f"Body: {(resp.text or '')[:500]}"
        )


def build_delivery(
    payload: str,
    *,
    webhook_type: str,
    guid: str | None = None,
    hmac_key: str,
    enc_key: str,
) -> tuple[dict, dict[str, str]]:
    """(json body, headers) of a signed delivery"""
    envelope, signature = encrypt_envelope(
        payload,
        guid=guid or str(uuid.uuid4()),
        webhook_type=webhook_type,
        hmac_key=hmac_key,
        enc_key=enc_key,
    )
    return envelope.model_dump(by_alias=True), {settings.WEBHOOK_SIGNATURE_HEADER: signature}


def send(payload: str, webhook_type: str, guid: str | None = None) -> dict:
    hmac_key, enc_key = webhook_keys()
    if not hmac_key or not enc_key:
        raise RuntimeError("WEBHOOK_HMAC_KEY and WEBHOOK_ENCRYPTION_KEY must be set")

    base_url = _base_url()
    body, headers = build_delivery(
        payload, webhook_type=webhook_type, guid=guid, hmac_key=hmac_key, enc_key=enc_key
    )

    with httpx.Client(timeout=_timeout_seconds()) as client:
        health_url = f"{base_url}/health"
        logger.info("Checking health endpoint", extra_data={"url": health_url})
        _check_status(client.get(health_url))

        webhook_url = f"{base_url}/api/webhook"
        logger.info(
            "Posting signed webhook",
            extra_data={"url": webhook_url, "guid": body["guid"], "webhook_type": webhook_type},
        )
        resp = client.post(webhook_url, json=body, headers=headers)
        _check_status(resp)

    return resp.json()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[1])
    parser.add_argument("--payload", default='{"productData": {"sku": "TEST-1"}}')
    parser.add_argument("--type", dest="webhook_type", default="ProductChanged")
    parser.add_argument("--guid")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(level="INFO", json_format=False, app_name="partner-sync-webhook-tool")

    try:
        json.loads(args.payload)
    except ValueError as e:
        logger.error("Payload is not valid JSON", extra_data={"error": str(e)})
        return 2

    result = send(args.payload, args.webhook_type, args.guid)
    logger.info("Webhook accepted", extra_data=result)
    return 0


if __name__ == "__main__":
    sys.exit(main())
