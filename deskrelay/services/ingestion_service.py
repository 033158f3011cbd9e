"""Inbound pipeline: webhook payload -> dedup -> batch queue -> routing.

`accept_inbound` runs on the webhook path and only decides whether a
delivery is new and where it goes. `process_batch` runs when a user's batch
flushes and does the storage and routing work for the combined text.
"""

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, List, Optional, Tuple
from uuid import UUID

from pydantic import ValidationError as PydanticValidationError

from deskrelay.logging_config import get_logger
from deskrelay.models import Conversation, Customer
from deskrelay.schemas.webhook import InboundMessage
from deskrelay.services import lifecycle_service, priority_service
from deskrelay.services.batch_queue import FlushedBatch
from deskrelay.services.conversation_service import (
    get_or_create_conversation,
    get_or_create_customer,
    is_ai_routed,
    save_message,
)
from deskrelay.services.dedup_service import build_message_key
from deskrelay.services.lifecycle_service import TransitionOutcome
from deskrelay.services.result import Result
from deskrelay.services.side_effects import CONFIRM_RESOLVED_PREFIX, NOT_RESOLVED_PREFIX, run_side_effects
from deskrelay.services.state_machine import ConversationStatus
from deskrelay.services.thread_manager import TurnContext

if TYPE_CHECKING:
    from deskrelay.runtime import Runtime

logger = get_logger("ingestion")


@dataclass
class BatchOutcome:
    conversation_id: Optional[UUID]
    route: str  # ai, agent, handoff, dropped
    reply: Optional[str] = None


def _parse_timestamp(value: Any) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _from_cloud_message(raw: dict, names: dict) -> dict:
    message_type = raw.get("type") or "text"
    body = raw.get("body")
    button_id = raw.get("button_id")

    if message_type == "text" and isinstance(raw.get("text"), dict):
        body = raw["text"].get("body")
    elif message_type == "interactive":
        interactive = raw.get("interactive") or {}
        reply = interactive.get("button_reply") or interactive.get("list_reply") or {}
        button_id = reply.get("id")
        body = reply.get("title")
    elif message_type == "button":
        button = raw.get("button") or {}
        button_id = button.get("payload")
        body = button.get("text")

    sender = raw.get("from") or raw.get("sender")
    return {
        "id": raw.get("id"),
        "from": sender,
        "type": message_type,
        "body": body,
        "timestamp": _parse_timestamp(raw.get("timestamp")),
        "name": raw.get("name") or names.get(sender),
        "button_id": button_id,
    }


def _raw_messages(payload: Any) -> List[Tuple[dict, dict]]:
    if isinstance(payload, list):
        items = []
        for item in payload:
            items.extend(_raw_messages(item))
        return items
    if not isinstance(payload, dict):
        return []

    if "entry" in payload:
        items = []
        for entry in payload.get("entry") or []:
            for change in entry.get("changes") or []:
                value = change.get("value") or {}
                names = {
                    contact.get("wa_id"): (contact.get("profile") or {}).get("name")
                    for contact in value.get("contacts") or []
                }
                for raw in value.get("messages") or []:
                    items.append((raw, names))
        return items

    return [(payload, {})]


def normalize_webhook_payload(payload: Any) -> List[InboundMessage]:
    """Accept one message, a list of them, or a Cloud API envelope."""
    messages = []
    for raw, names in _raw_messages(payload):
        try:
            messages.append(InboundMessage.model_validate(_from_cloud_message(raw, names)))
        except PydanticValidationError as e:
            logger.warning(
                "Skipping malformed inbound message",
                extra={"context": {"error": str(e), "message_id": raw.get("id")}},
            )
    return messages


def parse_confirmation(button_id: Optional[str]) -> Optional[Tuple[UUID, bool]]:
    """(conversation_id, confirmed) for a resolution-confirmation button, else None."""
    if not button_id:
        return None
    for prefix, confirmed in ((CONFIRM_RESOLVED_PREFIX, True), (NOT_RESOLVED_PREFIX, False)):
        if button_id.startswith(prefix):
            try:
                return UUID(button_id[len(prefix):]), confirmed
            except ValueError:
                logger.warning(f"Malformed confirmation button id: {button_id}")
                return None
    return None


async def accept_inbound(message: InboundMessage, runtime: "Runtime") -> bool:
    """Claim the delivery and hand it on. False for duplicates and empty deliveries."""
    key = build_message_key(message.id, message.from_, message.timestamp)
    if key is not None:
        try:
            fresh = await runtime.deduplicator.claim(key)
        except Exception as e:
            logger.warning(f"Dedup check failed, accepting {key}: {e}")
            fresh = True
        if not fresh:
            logger.info(
                "Duplicate delivery ignored",
                extra={"context": {"message_id": key, "user_id": message.from_}},
            )
            return False

    confirmation = parse_confirmation(message.button_id)
    if confirmation is not None:
        conversation_id, confirmed = confirmation
        # The state change, notices and any reassignment run after the ack.
        runtime.spawn(
            handle_confirmation_reply(message, conversation_id, confirmed, runtime),
            name=f"confirmation-{conversation_id}",
        )
        return True

    text = (message.body or "").strip()
    if not text:
        logger.info(f"Ignoring {message.type} message without text from {message.from_}")
        return False

    await runtime.batch_queue.enqueue(
        message.from_,
        text,
        message_id=message.id,
        metadata={"name": message.name, "timestamp": message.timestamp, "type": message.type},
    )
    return True


async def handle_confirmation_reply(
    message: InboundMessage,
    conversation_id: UUID,
    confirmed: bool,
    runtime: "Runtime",
) -> Result[TransitionOutcome]:
    db = runtime.session_factory()
    try:
        conversation = db.get(Conversation, conversation_id)
        customer = db.get(Customer, conversation.customer_id) if conversation else None
        if customer is None or customer.phone_number != message.from_:
            logger.warning(
                "Confirmation reply does not match the conversation's customer",
                extra={"context": {"conversation_id": str(conversation_id), "user_id": message.from_}},
            )
            return Result.failure("Conversation not found for this customer", "not_found")

        save_message(
            db,
            conversation,
            "customer",
            message.body or ("confirmed" if confirmed else "not resolved"),
            external_id=message.id,
            metadata={"button_id": message.button_id},
        )
        result = lifecycle_service.handle_resolution_confirmation(db, conversation_id, confirmed)
        if not result.ok:
            db.rollback()
            logger.info(
                f"Confirmation reply not applied: {result.error}",
                extra={"context": {"conversation_id": str(conversation_id), "error_code": result.error_code}},
            )
            return result
        db.commit()
    finally:
        db.close()

    await run_side_effects(result.value, runtime)
    return result


async def process_batch(batch: FlushedBatch, runtime: "Runtime") -> BatchOutcome:
    """Store a flushed batch and route it to the assistant or the assigned agent."""
    phone = batch.user_id
    text = batch.text
    outcomes: List[TransitionOutcome] = []

    db = runtime.session_factory()
    try:
        name = next((part.metadata.get("name") for part in batch.parts if part.metadata.get("name")), None)
        customer = get_or_create_customer(db, phone, name)
        conversation = get_or_create_conversation(db, customer.id)
        for part in batch.parts:
            save_message(db, conversation, "customer", part.text, external_id=part.message_id, metadata=part.metadata)
        db.commit()
        conversation_id = conversation.id

        if conversation.status == ConversationStatus.WAITING.value:
            result = lifecycle_service.resume_from_waiting(db, conversation_id)
            if result.ok:
                db.commit()
                outcomes.append(result.value)
            else:
                db.rollback()
                logger.warning(f"Could not resume waiting conversation {conversation_id}: {result.error}")

        priority_service.check_message_for_escalation(db, conversation, text, runtime.publisher)
        db.commit()

        handoff = None
        if conversation.status == ConversationStatus.OPEN.value and priority_service.detect_human_request(text):
            handoff = await _hand_off(db, conversation, phone, runtime, outcomes)

        if handoff is not None:
            route = handoff
        elif is_ai_routed(conversation):
            route = "ai"
        else:
            route = "agent"
            runtime.publisher.publish(
                "customer_message",
                {
                    "conversation_id": str(conversation_id),
                    "agent_id": str(conversation.assigned_agent_id) if conversation.assigned_agent_id else None,
                    "customer_phone": phone,
                    "content": text,
                    "message_ids": batch.message_ids,
                },
            )
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()

    for outcome in outcomes:
        await run_side_effects(outcome, runtime)

    if route != "ai":
        return BatchOutcome(conversation_id=conversation_id, route=route)

    reply = await runtime.thread_manager.respond(
        phone,
        text,
        TurnContext(conversation_id=str(conversation_id), customer_phone=phone),
    )
    return await _deliver_ai_reply(conversation_id, phone, text, reply, runtime)


async def _hand_off(db, conversation: Conversation, phone: str, runtime: "Runtime", outcomes: list) -> Optional[str]:
    settings = runtime.settings
    await runtime.channel.send_text(phone, settings.handoff_notice)
    save_message(db, conversation, "system", settings.handoff_notice)
    db.commit()

    result = priority_service.auto_assign(db, conversation.id)
    if result.ok:
        db.commit()
        outcomes.append(result.value)
        return "handoff"

    db.rollback()
    if result.error_code == "no_agents_available":
        await runtime.channel.send_text(phone, settings.no_agents_notice)
        save_message(db, conversation, "system", settings.no_agents_notice)
        db.commit()
        runtime.publisher.publish(
            "takeover_suggested",
            {"conversation_id": str(conversation.id), "triggers": ["escalation_keyword"], "score": 50},
        )
        return "handoff"

    logger.warning(f"Auto-assign failed for {conversation.id}: {result.error}")
    return None


async def _deliver_ai_reply(
    conversation_id: UUID, phone: str, text: str, reply: str, runtime: "Runtime"
) -> BatchOutcome:
    db = runtime.session_factory()
    try:
        conversation = db.get(Conversation, conversation_id)
        if conversation is None or not is_ai_routed(conversation):
            logger.info(
                "Conversation left AI routing during the turn, reply dropped",
                extra={"context": {"conversation_id": str(conversation_id)}},
            )
            return BatchOutcome(conversation_id=conversation_id, route="dropped", reply=reply)

        sent = await runtime.channel.send_text(phone, reply)
        message = save_message(
            db,
            conversation,
            "ai",
            reply,
            external_id=sent.get("message_id"),
            metadata={"delivered": bool(sent.get("ok")), "error": sent.get("error")},
        )
        db.commit()

        runtime.publisher.publish(
            "new_message",
            {
                "conversation_id": str(conversation_id),
                "message_id": str(message.id),
                "sender": "ai",
                "content": reply,
            },
        )
        priority_service.suggest_takeover(db, conversation, text, reply, runtime.publisher)
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()

    return BatchOutcome(conversation_id=conversation_id, route="ai", reply=reply)
