from fastapi import APIRouter, HTTPException, Request
from starlette.requests import ClientDisconnect

from deskrelay.logging_config import get_logger
from deskrelay.runtime import get_runtime
from deskrelay.schemas.webhook import WebhookAck
from deskrelay.services.ingestion_service import accept_inbound, normalize_webhook_payload

logger = get_logger("webhook")

router = APIRouter()


@router.post("/webhook", response_model=WebhookAck)
async def handle_webhook(request: Request):
    """Acknowledge a delivery at once; batching and routing continue in the background."""
    try:
        payload = await request.json()
    except ClientDisconnect:
        logger.warning("Client disconnected before the webhook body was read")
        return WebhookAck(accepted=0)
    except ValueError:
        raise HTTPException(status_code=400, detail="Body must be JSON")

    runtime = get_runtime()
    messages = normalize_webhook_payload(payload)
    accepted = 0
    ignored = 0
    for message in messages:
        if await accept_inbound(message, runtime):
            accepted += 1
        else:
            ignored += 1

    logger.info(
        "Webhook received",
        extra={"context": {"messages": len(messages), "accepted": accepted}},
    )
    return WebhookAck(accepted=accepted, ignored=ignored)


@router.get("/webhook/stats")
async def webhook_stats():
    runtime = get_runtime()
    return {
        "dedup": runtime.deduplicator.stats(),
        "batch_queue": runtime.batch_queue.stats(),
        "background_tasks": len(runtime.background_tasks),
    }
