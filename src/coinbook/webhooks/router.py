"""Webhook intake: verify, enqueue, acknowledge.

No processing happens on the request path; workers drain the queue.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
from typing import Any

import structlog
from fastapi import APIRouter, Depends, Request

from coinbook.auth.dependencies import get_services
from coinbook.container import Services
from coinbook.errors import InvalidInput, NotAuthenticated, NotFound
from coinbook.webhooks.handlers import TOPICS_BY_TYPE

logger = structlog.get_logger()

router = APIRouter(prefix="/api/webhooks", tags=["Webhooks"])

HMAC_HEADER = "X-Shopify-Hmac-Sha256"
TOPIC_HEADER = "X-Shopify-Topic"
DEFAULT_TOPICS = {"products": "products/update", "customers": "customers/update", "orders": "orders/updated"}


def compute_signature(body: bytes, secret: str) -> str:
    digest = hmac.new(secret.encode(), body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode()


def verify_signature(body: bytes, secret: str, signature: str | None) -> bool:
    if not signature:
        return False
    return hmac.compare_digest(compute_signature(body, secret), signature)


@router.post("/{webhook_type}")
async def receive_webhook(
    webhook_type: str,
    request: Request,
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    """Queue a webhook for the workers and answer immediately."""
    topics = TOPICS_BY_TYPE.get(webhook_type)
    if topics is None:
        msg = f"Unknown webhook type: {webhook_type}"
        raise NotFound(msg)

    body = await request.body()
    secret = services.settings.shopify_webhook_secret
    if secret and not verify_signature(body, secret, request.headers.get(HMAC_HEADER)):
        logger.warning("webhook_signature_rejected", webhook_type=webhook_type)
        msg = "Invalid webhook signature"
        raise NotAuthenticated(msg)

    topic = request.headers.get(TOPIC_HEADER) or DEFAULT_TOPICS[webhook_type]
    if topic not in topics:
        msg = f"Unsupported topic {topic!r} for {webhook_type} webhooks"
        raise InvalidInput(msg, details={"valid_topics": list(topics)})

    try:
        payload = json.loads(body or b"{}")
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        msg = "Webhook body is not valid JSON"
        raise InvalidInput(msg) from exc
    if not isinstance(payload, dict):
        msg = "Webhook body must be a JSON object"
        raise InvalidInput(msg)

    job = await services.webhook_queue.enqueue(webhook_type, topic, payload)
    logger.info("webhook_enqueued", job_id=job.id, topic=topic, priority=job.priority)
    return {"status": "queued", "job_id": job.id}
