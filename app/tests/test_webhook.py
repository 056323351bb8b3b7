"""
Tests for inbound webhook ingestion.
"""
import pytest

from api.schemas import WebhookEvent
from core.exceptions import InvalidPayloadError
from db.models import Chat, Contact, Message, MessageDirection, MessageStatus
from db.repository import Repository
from services.chat_service import ChatService, extract_inbound_message


def upsert(sender: str = "5511988887777", body: str = "Olá", **extra) -> dict:
    data = {"from": sender, "body": body}
    data.update(extra)
    return {"event": "messages.upsert", "instance": "test", "data": data}


class TestWebhookEndpoint:
    """Tests for POST /api/whatsapp/webhook."""

    def test_first_contact_creates_contact_chat_and_message(self, test_client, test_db):
        """An unseen sender gets a contact, an open chat and an INBOUND message."""
        response = test_client.post("/api/whatsapp/webhook", json=upsert(sender="+15551234567", body="hello"))

        assert response.status_code == 200
        assert response.json()["success"] is True

        contact = test_db.query(Contact).one()
        assert contact.phone_number == "+15551234567"
        assert contact.name == "+15551234567"

        chat = test_db.query(Chat).one()
        assert chat.contact_id == contact.id
        assert chat.is_archived is False

        message = test_db.query(Message).one()
        assert message.chat_id == chat.id
        assert message.contact_id == contact.id
        assert message.content == "hello"
        assert message.direction == MessageDirection.INBOUND
        assert message.status == MessageStatus.DELIVERED
        assert chat.last_message_id == message.id

    def test_webhook_needs_no_bearer(self, test_client):
        response = test_client.post("/api/whatsapp/webhook", json={"event": "connection.update"})

        assert response.status_code == 200

    @pytest.mark.parametrize("event", ["connection.update", "qrcode.updated", "messages.update", None])
    def test_other_events_are_noops(self, test_client, test_db, event):
        """Every event kind other than messages.upsert succeeds without writes."""
        payload = upsert()
        payload["event"] = event

        response = test_client.post("/api/whatsapp/webhook", json=payload)

        assert response.status_code == 200
        assert test_db.query(Contact).count() == 0
        assert test_db.query(Chat).count() == 0
        assert test_db.query(Message).count() == 0

    def test_repeat_sender_reuses_contact_and_chat(self, test_client, test_db):
        """Two messages from one address yield one contact, one chat, two messages."""
        test_client.post("/api/whatsapp/webhook", json=upsert(body="first"))
        test_client.post("/api/whatsapp/webhook", json=upsert(body="second"))

        assert test_db.query(Contact).count() == 1
        assert test_db.query(Chat).count() == 1
        contents = [message.content for message in test_db.query(Message).order_by(Message.created_at)]
        assert contents == ["first", "second"]

    def test_archived_chat_is_not_reused(self, test_client, test_db):
        test_client.post("/api/whatsapp/webhook", json=upsert(body="first"))
        chat = test_db.query(Chat).one()
        Repository(test_db).set_chat_archived(chat.id, True)

        test_client.post("/api/whatsapp/webhook", json=upsert(body="again"))

        assert test_db.query(Chat).count() == 2
        assert test_db.query(Chat).filter(Chat.is_archived.is_(False)).count() == 1

    def test_missing_sender_is_400(self, test_client, test_db):
        response = test_client.post(
            "/api/whatsapp/webhook",
            json={"event": "messages.upsert", "data": {"body": "who am I"}}
        )

        assert response.status_code == 400
        assert test_db.query(Message).count() == 0

    def test_media_message(self, test_client, test_db):
        response = test_client.post(
            "/api/whatsapp/webhook",
            json=upsert(body=None, mediaUrl="https://cdn.example.com/voice.ogg", mediaType="audio")
        )

        assert response.status_code == 200
        message = test_db.query(Message).one()
        assert message.content is None
        assert message.media_url == "https://cdn.example.com/voice.ogg"
        assert message.media_type.value == "AUDIO"

    def test_broadcast_to_joined_client(self, test_client, test_db, auth_token, contact_and_chat):
        """A client in the chat room receives new_message for an inbound message."""
        contact, chat = contact_and_chat

        with test_client.websocket_connect(f"/ws?token={auth_token}") as ws:
            ws.receive_json()
            ws.send_json({"event": "join_chat", "data": {"chatId": chat.id}})
            ws.send_json({"event": "ping", "data": {}})
            assert ws.receive_json()["event"] == "pong"

            response = test_client.post("/api/whatsapp/webhook", json=upsert(sender=contact.phone_number))
            assert response.status_code == 200

            frame = ws.receive_json()
            assert frame["event"] == "new_message"
            assert frame["data"]["chatId"] == chat.id
            assert frame["data"]["direction"] == "INBOUND"

        assert test_db.query(Message).filter(Message.id == frame["data"]["id"]).count() == 1


class TestChatServiceWebhook:
    """Unit tests for ChatService.process_webhook."""

    @pytest.mark.asyncio
    async def test_persist_before_broadcast(self, test_db, session_factory):
        """When new_message is emitted, the message is already readable from another session."""
        seen = []

        class CheckingBroadcaster:
            async def emit_to_chat(self, chat_id, event, data, exclude_session_id=None):
                db = session_factory()
                try:
                    seen.append(db.query(Message).filter(Message.id == data["id"]).first() is not None)
                finally:
                    db.close()
                return 1

        service = ChatService(test_db, CheckingBroadcaster())
        message = await service.process_webhook(WebhookEvent(**upsert()))

        assert message is not None
        assert seen == [True]

    @pytest.mark.asyncio
    async def test_existing_contact_by_phone_is_reused(self, test_db, broadcaster):
        """A contact that already exists under the sender's number is reused."""
        existing = Repository(test_db).create_contact(phone_number="5511988887777", name="Known Lead")

        service = ChatService(test_db, broadcaster)
        message = await service.process_webhook(WebhookEvent(**upsert()))

        assert message.contact_id == existing.id
        assert test_db.query(Contact).count() == 1
        assert test_db.query(Contact).one().name == "Known Lead"
        assert [event[2] for event in broadcaster.events] == ["new_message"]

    @pytest.mark.asyncio
    async def test_non_upsert_emits_nothing(self, test_db, broadcaster):
        service = ChatService(test_db, broadcaster)

        assert await service.process_webhook(WebhookEvent(event="connection.update", data={"state": "open"})) is None
        assert broadcaster.events == []


class TestExtractInboundMessage:
    """Tests for webhook payload normalization."""

    def test_flat_payload(self):
        inbound = extract_inbound_message({"from": "551100", "body": "hi"})

        assert inbound.sender == "551100"
        assert inbound.body == "hi"

    def test_baileys_payload(self):
        inbound = extract_inbound_message({
            "key": {"remoteJid": "5511977776666@s.whatsapp.net", "fromMe": False},
            "message": {"extendedTextMessage": {"text": "quoted reply"}}
        })

        assert inbound.sender == "5511977776666"
        assert inbound.body == "quoted reply"

    def test_own_echo_ignored(self):
        inbound = extract_inbound_message({
            "key": {"remoteJid": "5511977776666@s.whatsapp.net", "fromMe": True},
            "message": {"conversation": "sent by us"}
        })

        assert inbound is None

    def test_no_content_rejected(self):
        with pytest.raises(InvalidPayloadError):
            extract_inbound_message({"from": "551100"})
