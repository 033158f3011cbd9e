import asyncio
import json

import httpx

from deskrelay.services.whatsapp_service import WhatsAppService


def _service(handler, token="token", phone_number_id="1234"):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return WhatsAppService(token, phone_number_id, client=client)


class TestSend:
    def test_text_message(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"messages": [{"id": "wamid.out"}]})

        result = asyncio.run(_service(handler).send_text("15550001", "Hello"))

        assert result == {"ok": True, "message_id": "wamid.out"}
        assert seen["url"] == "https://graph.facebook.com/v21.0/1234/messages"
        assert seen["auth"] == "Bearer token"
        assert seen["body"] == {
            "messaging_product": "whatsapp",
            "to": "15550001",
            "type": "text",
            "text": {"body": "Hello"},
        }

    def test_buttons(self):
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"messages": [{"id": "wamid.b"}]})

        asyncio.run(_service(handler).send_buttons("15550001", "Solved?", [("yes", "Yes"), ("no", "No")]))

        buttons = seen["body"]["interactive"]["action"]["buttons"]
        assert [button["reply"]["id"] for button in buttons] == ["yes", "no"]

    def test_accepted_send_with_unreadable_body(self):
        result = asyncio.run(_service(lambda request: httpx.Response(200, text="OK")).send_text("15550001", "hi"))

        assert result == {"ok": True, "message_id": None}

    def test_http_error_is_reported(self):
        result = asyncio.run(_service(lambda request: httpx.Response(500, text="boom")).send_text("15550001", "hi"))

        assert result == {"ok": False, "error": "http_500"}

    def test_transport_error_is_reported(self):
        def handler(request):
            raise httpx.ConnectError("unreachable")

        result = asyncio.run(_service(handler).send_text("15550001", "hi"))

        assert result["ok"] is False
        assert "unreachable" in result["error"]

    def test_unconfigured_channel_drops_message(self):
        service = _service(lambda request: httpx.Response(200, json={}), token=None)

        assert asyncio.run(service.send_text("15550001", "hi")) == {"ok": False, "error": "not_configured"}
