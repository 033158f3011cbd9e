"""Handoff summaries and post-assignment quality analysis.

Both go through the provider's JSON completion and fall back to a fixed
default when the provider is missing or fails, so an assignment never waits
on a broken analysis.
"""

from datetime import datetime, timezone
from typing import Callable, List, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from deskrelay.logging_config import get_logger
from deskrelay.models import AssignmentRecord, Conversation, Message
from deskrelay.services.assistant.base import AssistantProvider
from deskrelay.services.conversation_service import ensure_timezone, recent_messages

logger = get_logger("analysis_service")

SUMMARY_SYSTEM_PROMPT = "You summarize customer conversations for support agents. Answer with a JSON object only."

ANALYSIS_SYSTEM_PROMPT = (
    "You are an expert customer service quality analyst. "
    "Provide objective analysis as a valid JSON object."
)

SUMMARY_PROMPT = """Summarize this customer conversation for an agent who is taking over. Be concise but informative.

CONVERSATION:
{transcript}

Provide a JSON response:
{{
    "brief_summary": "2-3 sentence overview",
    "customer_intent": "What the customer wants",
    "current_status": "Where the conversation stands now",
    "key_points": ["3-5 points the agent should know"],
    "suggested_approach": "How the agent should handle this",
    "urgency": "low|medium|high|urgent",
    "sentiment": "frustrated|concerned|neutral|satisfied"
}}"""

ANALYSIS_PROMPT = """Evaluate this support interaction handled by a human agent.

RELEASE REASON: {reason}
DURATION: {duration}
PRIORITY: {priority}

TRANSCRIPT:
{transcript}

Provide a JSON response:
{{
    "issue_resolution": {{"was_resolved": true, "quality": "excellent|good|partial|poor|unresolved", "explanation": ""}},
    "agent_performance": {{"overall_score": 1, "strengths": [], "areas_for_improvement": []}},
    "customer_sentiment": {{"initial": "", "final": "", "change": "improved|worsened|unchanged"}},
    "action_items": {{"follow_up_required": false, "follow_up_tasks": []}},
    "summary": {{"brief": "", "key_points": []}},
    "risk_level": "none|low|medium|high|critical"
}}"""


def default_summary(error: Optional[str] = None) -> dict:
    summary = {
        "brief_summary": "Unable to generate summary",
        "customer_intent": "Unknown",
        "current_status": "Needs agent review",
        "key_points": ["Review conversation history"],
        "suggested_approach": "Greet the customer and assess the situation",
        "urgency": "medium",
        "sentiment": "neutral",
    }
    if error:
        summary["error"] = error
    return summary


def default_analysis(error: str) -> dict:
    return {
        "issue_resolution": {"was_resolved": None, "quality": "unknown", "explanation": "Analysis unavailable"},
        "agent_performance": {"overall_score": None, "strengths": [], "areas_for_improvement": []},
        "customer_sentiment": {"initial": "neutral", "final": "neutral", "change": "unchanged"},
        "action_items": {"follow_up_required": False, "follow_up_tasks": []},
        "summary": {"brief": "Analysis incomplete", "key_points": ["Manual review recommended"]},
        "risk_level": "none",
        "tags": ["analysis-failed"],
        "error": error,
    }


def format_transcript(messages: List[Message]) -> str:
    if not messages:
        return "No messages exchanged"
    return "\n".join(f"[{message.sender.upper()}] {message.content}" for message in messages)


class ConversationAnalyzer:
    def __init__(self, provider: Optional[AssistantProvider], session_factory: Callable[[], Session]):
        self.provider = provider
        self.session_factory = session_factory

    async def summarize(self, conversation_id: UUID) -> dict:
        """Context summary for the agent receiving a conversation."""
        db = self.session_factory()
        try:
            conversation = db.get(Conversation, conversation_id)
            if conversation is None:
                return default_summary("conversation not found")
            messages = recent_messages(db, conversation_id, limit=20)
            metadata = {
                "total_messages": len(messages),
                "customer_messages": sum(1 for m in messages if m.sender == "customer"),
                "ai_messages": sum(1 for m in messages if m.sender == "ai"),
                "conversation_age_minutes": _minutes_since(conversation.created_at),
            }
            transcript = format_transcript(messages)
        finally:
            db.close()

        if self.provider is None:
            return {**default_summary("no provider configured"), "metadata": metadata}
        try:
            summary = await self.provider.complete_json(
                SUMMARY_SYSTEM_PROMPT, SUMMARY_PROMPT.format(transcript=transcript)
            )
        except Exception as e:
            logger.warning(f"Summary generation failed for {conversation_id}: {e}")
            return {**default_summary(str(e)), "metadata": metadata}
        return {**summary, "metadata": metadata}

    async def analyze_assignment(self, record_id: UUID) -> Optional[dict]:
        """Quality analysis of a closed assignment, stored on the record."""
        db = self.session_factory()
        try:
            record = db.get(AssignmentRecord, record_id)
            if record is None:
                logger.warning(f"Assignment record {record_id} not found for analysis")
                return None
            conversation = db.get(Conversation, record.conversation_id)
            messages = (
                db.query(Message)
                .filter(
                    Message.conversation_id == record.conversation_id,
                    Message.created_at >= record.assigned_at,
                )
                .order_by(Message.created_at.asc())
                .limit(100)
                .all()
            )
            prompt = ANALYSIS_PROMPT.format(
                reason=record.release_reason or "unknown",
                duration=f"{(record.duration_seconds or 0) // 60} minutes",
                priority=conversation.priority if conversation else "medium",
                transcript=format_transcript(messages),
            )

            error = None
            if self.provider is None:
                error = "no provider configured"
            else:
                try:
                    analysis = await self.provider.complete_json(ANALYSIS_SYSTEM_PROMPT, prompt)
                except Exception as e:
                    logger.warning(f"Assignment analysis failed for {record_id}: {e}")
                    error = str(e)

            if error:
                analysis = default_analysis(error)
                record.analysis_error = error
            analysis["analyzed_at"] = datetime.now(timezone.utc).isoformat()
            record.analysis_result = analysis
            db.commit()
            logger.info(f"Analysis stored for assignment {record_id}")
            return analysis
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()


def _minutes_since(dt: Optional[datetime]) -> int:
    if dt is None:
        return 0
    return int((datetime.now(timezone.utc) - ensure_timezone(dt)).total_seconds() // 60)
