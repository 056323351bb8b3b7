"""
Tests for the client reconciliation layer (optimistic sends and retries).
"""
import json

import pytest

from client.chat_client import ChatClient, LocalMessage, RestApi, SocketChannel


class FakeSocket:
    def __init__(self, connected: bool = True, fail: bool = False):
        self.is_connected = connected
        self.fail = fail
        self.emitted = []

    async def emit(self, event, data):
        if self.fail:
            raise ConnectionError("socket dropped")
        self.emitted.append((event, data))


class FakeApi:
    """Records REST calls; fails gateway sends while fail_sends is set."""

    def __init__(self, fail_sends: bool = False, fail_persist: bool = False):
        self.fail_sends = fail_sends
        self.fail_persist = fail_persist
        self.calls = []

    def send_text(self, to, message):
        self.calls.append(("send_text", to, message))
        if self.fail_sends:
            raise ConnectionError("gateway unreachable")
        return {"success": True}

    def send_media(self, to, url, media_type, caption=None):
        self.calls.append(("send_media", to, url, media_type, caption))
        if self.fail_sends:
            raise ConnectionError("gateway unreachable")
        return {"success": True}

    def create_message(self, message):
        self.calls.append(("create_message", message.chat_id, message.content))
        if self.fail_persist:
            raise ConnectionError("api unreachable")
        return {"id": "server-id"}

    def update_message_status(self, message_id, status):
        self.calls.append(("update_message_status", message_id, status))
        return {"id": message_id, "status": status}

    def names(self):
        return [call[0] for call in self.calls]


class FakeConnection:
    """Stand-in for a websockets connection that yields the given frames, then drops."""

    def __init__(self, frames=()):
        self.frames = list(frames)
        self.sent = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for frame in self.frames:
            yield json.dumps(frame)

    async def send(self, raw):
        self.sent.append(raw)

    async def close(self):
        pass


async def send(client: ChatClient, content="Hello", **kwargs) -> LocalMessage:
    return await client.send_message("c1", "k1", "5511999990000", content, **kwargs)


class TestSendMessage:
    """Tests for the optimistic send path."""

    @pytest.mark.asyncio
    async def test_connected_socket_emits_only(self):
        """With the socket up, the send goes over the socket and REST is untouched."""
        socket, api = FakeSocket(connected=True), FakeApi()
        shown = []
        client = ChatClient(socket, api, on_message=shown.append)

        message = await send(client)

        assert socket.emitted == [("send_message", {"chatId": "c1", "message": "Hello"})]
        assert api.calls == []
        assert shown == [message]
        assert message.is_provisional
        assert message.status == "SENT"
        assert len(client.retry_queue) == 0

    @pytest.mark.asyncio
    async def test_message_shown_before_network_call(self):
        """The provisional message is in the local view even when the socket raises."""
        socket = FakeSocket(connected=True, fail=True)
        client = ChatClient(socket, FakeApi())

        message = await send(client)

        assert client.messages == [message]
        assert message.status == "FAILED"
        assert list(client.retry_queue) == [message]

    @pytest.mark.asyncio
    async def test_disconnected_falls_back_to_rest(self):
        """Without a socket, the gateway is called and the message is persisted over REST."""
        socket, api = FakeSocket(connected=False), FakeApi()
        client = ChatClient(socket, api)

        message = await send(client, "test")

        assert api.calls == [
            ("send_text", "5511999990000", "test"),
            ("create_message", "c1", "test"),
        ]
        assert socket.emitted == []
        assert message.persisted is True
        assert message.status == "SENT"

    @pytest.mark.asyncio
    async def test_media_uses_send_media(self):
        api = FakeApi()
        client = ChatClient(FakeSocket(connected=False), api)

        await send(client, "Invoice", media_url="https://cdn.example.com/a.pdf", media_type="DOCUMENT")

        assert api.calls[0] == ("send_media", "5511999990000", "https://cdn.example.com/a.pdf", "DOCUMENT", "Invoice")

    @pytest.mark.asyncio
    async def test_rest_failure_marks_failed_and_queues(self):
        api = FakeApi(fail_sends=True)
        client = ChatClient(FakeSocket(connected=False), api)

        message = await send(client)

        assert message.status == "FAILED"
        assert message.persisted is False
        assert list(client.retry_queue) == [message]
        assert api.names() == ["send_text"]


class TestRetryPending:
    """Tests for the retry queue."""

    @pytest.mark.asyncio
    async def test_skipped_when_empty_or_disconnected(self):
        socket = FakeSocket(connected=False)
        api = FakeApi(fail_sends=True)
        client = ChatClient(socket, api)

        assert await client.retry_pending() is None

        await send(client)
        api.calls.clear()
        assert await client.retry_pending() is None
        assert api.calls == []

    @pytest.mark.asyncio
    async def test_skipped_while_retry_in_flight(self):
        client = ChatClient(FakeSocket(connected=True, fail=True), FakeApi())
        await send(client)
        client._retry_in_flight = True

        assert await client.retry_pending() is None

    @pytest.mark.asyncio
    async def test_only_head_is_retried(self):
        """One pass resends the oldest failed message and persists it once."""
        socket = FakeSocket(connected=False)
        api = FakeApi(fail_sends=True)
        client = ChatClient(socket, api)
        first = await send(client, "first")
        second = await send(client, "second")

        api.fail_sends = False
        api.calls.clear()
        socket.is_connected = True

        assert await client.retry_pending() is True

        assert api.calls == [
            ("send_text", "5511999990000", "first"),
            ("create_message", "c1", "first"),
        ]
        assert first.status == "SENT"
        assert first.persisted is True
        assert list(client.retry_queue) == [second]

    @pytest.mark.asyncio
    async def test_persisted_message_not_recreated(self):
        """A message the server already stored is resent without a second persist call."""
        socket = FakeSocket(connected=True)
        api = FakeApi(fail_sends=True)
        client = ChatClient(socket, api)
        message = await send(client)
        await client.handle_server_event("message_status", {"messageId": message.id, "status": "FAILED"})

        api.fail_sends = False
        assert await client.retry_pending() is True

        assert api.names() == ["send_text"]

    @pytest.mark.asyncio
    async def test_resent_server_message_marked_sent_on_server(self):
        """A server message the queue marked FAILED is set back to SENT after a successful resend."""
        api = FakeApi()
        client = ChatClient(FakeSocket(connected=True), api)
        await client.handle_server_event("new_message", {
            "id": "srv-1", "chatId": "c1", "contactId": "k1", "phoneNumber": "5511999990000", "content": "x"
        })
        await client.handle_server_event("message_status", {"messageId": "srv-1", "status": "FAILED"})

        assert await client.retry_pending() is True

        assert api.calls == [
            ("send_text", "5511999990000", "x"),
            ("update_message_status", "srv-1", "SENT"),
        ]
        assert client.messages[0].status == "SENT"
        assert list(client.retry_queue) == []

    @pytest.mark.asyncio
    async def test_failure_keeps_message_queued(self):
        socket = FakeSocket(connected=False)
        api = FakeApi(fail_sends=True)
        client = ChatClient(socket, api)
        message = await send(client)
        socket.is_connected = True

        assert await client.retry_pending() is False
        assert await client.retry_pending() is False

        assert list(client.retry_queue) == [message]
        assert message.retry_attempts == 2

    @pytest.mark.asyncio
    async def test_max_retry_attempts_drops_message(self):
        socket = FakeSocket(connected=False)
        client = ChatClient(socket, FakeApi(fail_sends=True), max_retry_attempts=2)
        message = await send(client)
        socket.is_connected = True

        await client.retry_pending()
        assert list(client.retry_queue) == [message]
        await client.retry_pending()

        assert list(client.retry_queue) == []
        assert message.status == "FAILED"

    @pytest.mark.asyncio
    async def test_backoff_grows_and_resets(self):
        socket = FakeSocket(connected=False)
        api = FakeApi(fail_sends=True)
        client = ChatClient(socket, api, retry_interval_seconds=30, retry_backoff=2.0)
        await send(client)
        socket.is_connected = True

        assert client.next_retry_delay() == 30
        await client.retry_pending()
        await client.retry_pending()
        assert client.next_retry_delay() == 120

        api.fail_sends = False
        await client.retry_pending()
        assert client.next_retry_delay() == 30

    def test_fixed_interval_by_default(self):
        client = ChatClient(FakeSocket(), FakeApi())
        client._consecutive_retry_failures = 5

        assert client.next_retry_delay() == 30


class TestSocketReconnect:
    """Tests for the socket channel's reconnect loop."""

    @staticmethod
    def connector(connections):
        def connect(uri):
            if connections:
                return connections.pop(0)
            raise OSError("connection refused")
        return connect

    @pytest.mark.asyncio
    async def test_dropped_socket_reconnects_and_retries_resume(self):
        """After a drop the socket comes back and the retry queue drains on the new connection."""
        delays = []

        async def sleep(delay):
            delays.append(delay)

        connections = [FakeConnection(), FakeConnection([{"event": "connected", "data": {"userId": "u1"}}])]
        socket = SocketChannel("ws://api.test", "tok", connect=self.connector(connections), sleep=sleep)
        api = FakeApi(fail_sends=True)
        client = ChatClient(socket, api)
        message = await send(client)
        api.fail_sends = False
        api.calls.clear()

        retries = []

        async def on_event(event, data):
            if event == "connected":
                retries.append(await client.retry_pending())

        socket.on_event = on_event

        await socket.run()

        assert retries == [True]
        assert message.status == "SENT"
        assert api.calls == [
            ("send_text", "5511999990000", "Hello"),
            ("create_message", "c1", "Hello"),
        ]
        # Each drop restarts the schedule; five failed attempts end the loop
        assert delays == [1, 1, 2, 4, 8, 16]
        assert not socket.is_connected

    @pytest.mark.asyncio
    async def test_delay_capped(self):
        delays = []

        async def sleep(delay):
            delays.append(delay)

        socket = SocketChannel("ws://api.test", "tok", reconnect_attempts=8, connect=self.connector([]), sleep=sleep)

        await socket.run()

        assert delays == [1, 2, 4, 8, 16, 30, 30, 30]

    @pytest.mark.asyncio
    async def test_close_stops_reconnecting(self):
        delays = []

        async def sleep(delay):
            delays.append(delay)

        connections = [FakeConnection([{"event": "connected", "data": {}}])]
        socket = SocketChannel("ws://api.test", "tok", connect=self.connector(connections), sleep=sleep)

        async def on_event(event, data):
            await socket.close()

        socket.on_event = on_event

        await socket.run()

        assert delays == []


class TestServerEvents:
    """Tests for applying server events to the local view."""

    @pytest.mark.asyncio
    async def test_new_message_added_once(self):
        client = ChatClient(FakeSocket(), FakeApi())
        data = {"id": "m1", "chatId": "c1", "contactId": "k1", "content": "Oi", "direction": "INBOUND"}

        await client.handle_server_event("new_message", data)
        await client.handle_server_event("new_message", data)

        assert [message.id for message in client.messages] == ["m1"]
        assert client.messages[0].direction == "INBOUND"
        assert client.messages[0].persisted is True

    @pytest.mark.asyncio
    async def test_failed_status_queues_retry_once(self):
        client = ChatClient(FakeSocket(), FakeApi())
        await client.handle_server_event("new_message", {"id": "m1", "chatId": "c1", "contactId": "k1"})

        await client.handle_server_event("message_status", {"messageId": "m1", "status": "FAILED"})
        await client.handle_server_event("message_status", {"messageId": "m1", "status": "FAILED"})

        assert [message.id for message in client.retry_queue] == ["m1"]

    @pytest.mark.asyncio
    async def test_other_status_updates_message(self):
        client = ChatClient(FakeSocket(), FakeApi())
        await client.handle_server_event("new_message", {"id": "m1", "chatId": "c1", "contactId": "k1"})

        await client.handle_server_event("message_status", {"messageId": "m1", "status": "READ"})

        assert client.messages[0].status == "READ"
        assert len(client.retry_queue) == 0


class TestRestApi:
    """Tests for the REST wrapper's request shapes."""

    def test_create_message_payload(self, monkeypatch):
        api = RestApi("http://api.test/", "tok")
        captured = {}

        def fake_post(path, payload):
            captured["path"] = path
            captured["payload"] = payload
            return {}

        monkeypatch.setattr(api, "_post", fake_post)
        api.create_message(LocalMessage(id="temp-1", chat_id="c1", contact_id="k1", phone_number="1", content="hi"))

        assert api.session.headers["Authorization"] == "Bearer tok"
        assert captured["path"] == "/api/chat/messages"
        assert captured["payload"]["chatId"] == "c1"
        assert captured["payload"]["contactId"] == "k1"
        assert captured["payload"]["direction"] == "OUTBOUND"

    def test_update_message_status_request(self, monkeypatch):
        api = RestApi("http://api.test", "tok")
        captured = {}

        class FakeResponse:
            def raise_for_status(self):
                pass

            def json(self):
                return {"id": "m1", "status": "SENT"}

        def fake_patch(url, json, timeout):
            captured["url"] = url
            captured["json"] = json
            return FakeResponse()

        monkeypatch.setattr(api.session, "patch", fake_patch)

        assert api.update_message_status("m1", "SENT") == {"id": "m1", "status": "SENT"}
        assert captured["url"] == "http://api.test/api/chat/messages/m1/status"
        assert captured["json"] == {"status": "SENT"}
