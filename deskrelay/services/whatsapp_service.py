from typing import Optional

import httpx

from deskrelay.logging_config import get_logger

logger = get_logger("whatsapp_service")


class WhatsAppService:
    """Outbound messages through the WhatsApp Cloud API. Best effort, never raises."""

    BASE_URL = "https://graph.facebook.com/{version}/{phone_number_id}/messages"

    def __init__(
        self,
        api_token: Optional[str],
        phone_number_id: Optional[str],
        api_version: str = "v21.0",
        timeout_seconds: float = 15.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_token = api_token
        self.phone_number_id = phone_number_id
        self.url = self.BASE_URL.format(version=api_version, phone_number_id=phone_number_id)
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)

    @property
    def configured(self) -> bool:
        return bool(self.api_token and self.phone_number_id)

    async def send(self, recipient: str, payload: dict) -> dict:
        """Send a raw message payload (`type` plus its body) to a recipient."""
        if not self.configured:
            logger.warning(f"WhatsApp not configured, message to {recipient} dropped")
            return {"ok": False, "error": "not_configured"}

        body = {"messaging_product": "whatsapp", "to": recipient, **payload}
        try:
            response = await self._client.post(
                self.url,
                headers={"Authorization": f"Bearer {self.api_token}"},
                json=body,
            )
        except Exception as e:
            logger.error(f"WhatsApp API error: {e}")
            return {"ok": False, "error": str(e)}

        if response.status_code >= 400:
            logger.error(f"WhatsApp send failed: {response.status_code} - {response.text}")
            return {"ok": False, "error": f"http_{response.status_code}"}

        # Accepted; a body we cannot read only costs us the message id.
        try:
            data = response.json()
        except ValueError:
            logger.warning(f"WhatsApp send accepted with unreadable body: {response.text[:200]}")
            data = None
        message_id = None
        if isinstance(data, dict) and data.get("messages"):
            message_id = data["messages"][0].get("id")
        return {"ok": True, "message_id": message_id}

    async def send_text(self, recipient: str, text: str) -> dict:
        return await self.send(recipient, {"type": "text", "text": {"body": text}})

    async def send_buttons(self, recipient: str, text: str, buttons: list) -> dict:
        """Interactive reply buttons; `buttons` is a list of (id, title) pairs."""
        return await self.send(
            recipient,
            {
                "type": "interactive",
                "interactive": {
                    "type": "button",
                    "body": {"text": text},
                    "action": {
                        "buttons": [
                            {"type": "reply", "reply": {"id": button_id, "title": title}}
                            for button_id, title in buttons
                        ]
                    },
                },
            },
        )

    async def close(self) -> None:
        await self._client.aclose()
