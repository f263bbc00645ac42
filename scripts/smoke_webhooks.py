"""
Smoke checks against a running outreach instance.

- GET /health
- POST /api/webhooks/gateway with a status callback, a presence event and a
  malformed body; every one must be acknowledged with 2xx
- GET /api/messaging/health when SMOKE_ADMIN_API_KEY is set

Status callbacks use an external id no job carries, so nothing in the queue
changes.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

import httpx

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from outreach.core.logging import get_logger, setup_logging  # noqa: E402


logger = get_logger(__name__)

WEBHOOK_PATH = "/api/webhooks/gateway"


def _base_url() -> str:
    port = os.environ.get("PORT", "8000")
    return os.environ.get("BASE_URL", f"http://127.0.0.1:{port}").rstrip("/")


def _timeout_seconds() -> float:
    return float(os.environ.get("SMOKE_TIMEOUT_SECONDS", "10"))


def _status_payload() -> dict:
    return {
        "type": "MessageStatusCallback",
        "status": "DELIVERED",
        "ids": ["smoke-check-unmatched"],
        "momment": 1700000000000,
    }


def _presence_payload() -> dict:
    return {"type": "PresenceChatCallback", "phone": "5511900000000", "status": "AVAILABLE"}


def _check_status(resp: httpx.Response, expected_family: int = 2) -> None:
    family = resp.status_code // 100
    if family != expected_family:
        raise RuntimeError(
            f"Unexpected status {resp.status_code} for {resp.request.method} {resp.request.url}. "
            f"Body: {(resp.text or '')[:500]}"
        )


def main() -> None:
    setup_logging(level="INFO", json_format=False, app_name="outreach-smoke")

    base_url = _base_url()
    timeout = _timeout_seconds()
    admin_key = os.environ.get("SMOKE_ADMIN_API_KEY")

    logger.info("Starting smoke checks", extra_data={"base_url": base_url, "timeout_seconds": timeout})

    with httpx.Client(timeout=timeout) as client:
        resp = client.get(f"{base_url}/health")
        _check_status(resp)

        webhook_url = f"{base_url}{WEBHOOK_PATH}"
        for name, payload in (("status", _status_payload()), ("presence", _presence_payload())):
            logger.info("Posting webhook payload", extra_data={"url": webhook_url, "kind": name})
            _check_status(client.post(webhook_url, json=payload))

        logger.info("Posting malformed webhook body", extra_data={"url": webhook_url})
        _check_status(
            client.post(webhook_url, content=b"not json", headers={"Content-Type": "application/json"})
        )

        if admin_key:
            resp = client.get(
                f"{base_url}/api/messaging/health",
                headers={"X-Admin-API-Key": admin_key},
            )
            _check_status(resp)
            logger.info("Pipeline health", extra_data={"status": resp.json().get("status")})
        else:
            logger.info("SMOKE_ADMIN_API_KEY not set, skipping admin checks")

    logger.info("Smoke checks completed successfully")


if __name__ == "__main__":
    main()
