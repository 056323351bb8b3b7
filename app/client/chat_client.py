#!/usr/bin/env python3
"""
CRM Chat command line client.

Operator-side chat client with optimistic sends: a message shows up locally
before any network call, goes out over the WebSocket when it is connected and
falls back to the REST gateway endpoints otherwise. Sends that fail are
marked FAILED and retried from a queue on a fixed interval.

Usage:
    python chat_client.py --token <jwt> [--url http://localhost:8000]

Example:
    # Terminal 1 - API
    python main.py

    # Terminal 2 - operator
    python client/chat_client.py --token eyJhbGciOi...
"""

import argparse
import asyncio
import json
import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional

import requests
import websockets
import websockets.exceptions
from colorama import init, Fore, Style

logger = logging.getLogger(__name__)

OUTBOUND = "OUTBOUND"
STATUS_SENT = "SENT"
STATUS_FAILED = "FAILED"


@dataclass
class LocalMessage:
    """A message as held in the client's local view."""
    id: str
    chat_id: str
    contact_id: str
    phone_number: str
    content: Optional[str] = None
    media_url: Optional[str] = None
    media_type: Optional[str] = None
    direction: str = OUTBOUND
    status: str = STATUS_SENT
    created_at: str = field(default_factory=lambda: datetime.utcnow().isoformat() + "Z")
    persisted: bool = False
    retry_attempts: int = 0

    @property
    def is_provisional(self) -> bool:
        return self.id.startswith("temp-")


class SocketChannel:
    """
    WebSocket connection to the chat API.

    Frames are JSON objects {"event": name, "data": payload}. Received frames
    are handed to ``on_event(event, data)``. A dropped connection is
    re-established with exponential backoff until close() is called or the
    reconnect attempts run out.
    """

    def __init__(
        self,
        ws_url: str,
        token: str,
        on_event: Optional[Callable[[str, Dict[str, Any]], Any]] = None,
        reconnect_attempts: int = 5,
        reconnect_delay: float = 1.0,
        reconnect_delay_max: float = 30.0,
        connect: Optional[Callable[[str], Any]] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None
    ):
        self.uri = f"{ws_url.rstrip('/')}/ws?token={token}"
        self.on_event = on_event
        self.reconnect_attempts = reconnect_attempts
        self.reconnect_delay = reconnect_delay
        self.reconnect_delay_max = reconnect_delay_max
        self._connect = connect or websockets.connect
        self._sleep = sleep or asyncio.sleep
        self.websocket = None
        self._connected = False
        self._closing = False

    @property
    def is_connected(self) -> bool:
        return self._connected and self.websocket is not None

    async def emit(self, event: str, data: Dict[str, Any]) -> None:
        """
        Send one event frame.

        Raises:
            ConnectionError: If the socket is not connected
        """
        if not self.is_connected:
            raise ConnectionError("WebSocket is not connected")
        await self.websocket.send(json.dumps({"event": event, "data": data}))

    async def run(self) -> None:
        """
        Keep the connection up, dispatching frames, until close() is called.

        The attempt counter restarts after every successful connection; the
        loop gives up after reconnect_attempts consecutive failures.
        """
        attempt = 0
        while True:
            connected = False
            try:
                connected = await self._run_once()
            except (OSError, websockets.exceptions.WebSocketException) as e:
                logger.warning(f"WebSocket connection failed: {e}")

            if self._closing:
                return

            attempt = 1 if connected else attempt + 1
            if attempt > self.reconnect_attempts:
                logger.error(f"Giving up on WebSocket after {self.reconnect_attempts} reconnect attempts")
                return

            delay = min(self.reconnect_delay * (2 ** (attempt - 1)), self.reconnect_delay_max)
            logger.info(f"Reconnecting in {delay:.0f}s (attempt {attempt}/{self.reconnect_attempts})")
            await self._sleep(delay)

    async def _run_once(self) -> bool:
        """Connect once and dispatch frames until the connection closes."""
        async with self._connect(self.uri) as websocket:
            self.websocket = websocket
            self._connected = True
            try:
                async for raw in websocket:
                    try:
                        frame = json.loads(raw)
                    except json.JSONDecodeError:
                        logger.warning(f"Ignoring non-JSON frame: {raw!r}")
                        continue
                    if self.on_event is not None:
                        result = self.on_event(frame.get("event"), frame.get("data") or {})
                        if asyncio.iscoroutine(result):
                            await result
            except websockets.exceptions.ConnectionClosed as e:
                logger.info(f"WebSocket closed: {e}")
            finally:
                self._connected = False
                self.websocket = None
        return True

    async def close(self) -> None:
        """Stop reconnecting and close the current connection."""
        self._closing = True
        if self.websocket is not None:
            await self.websocket.close()


class RestApi:
    """Blocking REST calls to the chat API (run through asyncio.to_thread)."""

    def __init__(self, base_url: str, token: str, session: Optional[requests.Session] = None, timeout: float = 10):
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.session.headers.update({
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json"
        })
        self.timeout = timeout

    def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        response = self.session.post(f"{self.base_url}{path}", json=payload, timeout=self.timeout)
        response.raise_for_status()
        return response.json()

    def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        response = self.session.get(f"{self.base_url}{path}", params=params, timeout=self.timeout)
        response.raise_for_status()
        return response.json()

    def send_text(self, to: str, message: str) -> Dict[str, Any]:
        return self._post("/api/whatsapp/send-text", {"to": to, "message": message})

    def send_media(self, to: str, url: str, media_type: str, caption: Optional[str] = None) -> Dict[str, Any]:
        return self._post(
            "/api/whatsapp/send-media",
            {"to": to, "url": url, "mediaType": media_type, "caption": caption or ""}
        )

    def create_message(self, message: LocalMessage) -> Dict[str, Any]:
        """Persist a message that was delivered through the gateway directly."""
        return self._post("/api/chat/messages", {
            "chatId": message.chat_id,
            "contactId": message.contact_id,
            "content": message.content,
            "mediaUrl": message.media_url,
            "mediaType": message.media_type,
            "direction": OUTBOUND
        })

    def update_message_status(self, message_id: str, status: str) -> Dict[str, Any]:
        response = self.session.patch(
            f"{self.base_url}/api/chat/messages/{message_id}/status",
            json={"status": status},
            timeout=self.timeout
        )
        response.raise_for_status()
        return response.json()

    def list_chats(self) -> List[Dict[str, Any]]:
        return self._get("/api/chat/chats")

    def get_chat(self, chat_id: str) -> Dict[str, Any]:
        return self._get(f"/api/chat/chats/{chat_id}")

    def get_messages(self, chat_id: str) -> List[Dict[str, Any]]:
        return self._get(f"/api/chat/chats/{chat_id}/messages")


class ChatClient:
    """
    Client Reconciliation Layer.

    Attributes:
        messages: Local view, in the order messages were added
        retry_queue: Messages waiting to be resent, oldest first
    """

    def __init__(
        self,
        socket: SocketChannel,
        api: RestApi,
        on_message: Optional[Callable[[LocalMessage], None]] = None,
        retry_interval_seconds: float = 30.0,
        max_retry_attempts: Optional[int] = None,
        retry_backoff: float = 1.0
    ):
        """
        Args:
            socket: Socket channel (anything with is_connected and async emit)
            api: REST client (send_text, send_media, create_message and
                update_message_status)
            on_message: Called with every message added to the local view
            retry_interval_seconds: Delay between retry passes
            max_retry_attempts: Retries before a message is dropped from the
                queue (None retries forever)
            retry_backoff: Multiplier applied to the interval after each
                failed retry pass (1.0 keeps the interval fixed)
        """
        self.socket = socket
        self.api = api
        self.on_message = on_message
        self.retry_interval_seconds = retry_interval_seconds
        self.max_retry_attempts = max_retry_attempts
        self.retry_backoff = retry_backoff

        self.messages: List[LocalMessage] = []
        self.retry_queue: Deque[LocalMessage] = deque()
        self._retry_in_flight = False
        self._consecutive_retry_failures = 0

    def _add_local(self, message: LocalMessage) -> None:
        self.messages.append(message)
        if self.on_message is not None:
            self.on_message(message)

    def _enqueue_retry(self, message: LocalMessage) -> None:
        if all(queued.id != message.id for queued in self.retry_queue):
            self.retry_queue.append(message)

    async def send_message(
        self,
        chat_id: str,
        contact_id: str,
        phone_number: str,
        content: Optional[str],
        media_url: Optional[str] = None,
        media_type: Optional[str] = None
    ) -> LocalMessage:
        """
        Send a message optimistically.

        The provisional message is shown before any network call. The socket
        is used when connected; otherwise the gateway is called over REST and
        the message is persisted with a second REST call.

        Returns:
            The local message (status FAILED and queued for retry on error)
        """
        message = LocalMessage(
            id=f"temp-{uuid.uuid4().hex}",
            chat_id=chat_id,
            contact_id=contact_id,
            phone_number=phone_number,
            content=content,
            media_url=media_url,
            media_type=media_type
        )
        self._add_local(message)

        try:
            if self.socket.is_connected:
                data = {"chatId": chat_id, "message": content}
                if media_url:
                    data["mediaUrl"] = media_url
                if media_type:
                    data["mediaType"] = media_type
                await self.socket.emit("send_message", data)
                # The server persists socket sends
                message.persisted = True
                return message

            await self._send_via_gateway(message)
            await asyncio.to_thread(self.api.create_message, message)
            message.persisted = True

        except Exception as e:
            logger.error(f"Error sending message to chat {chat_id}: {e}")
            message.status = STATUS_FAILED
            self._enqueue_retry(message)

        return message

    async def _send_via_gateway(self, message: LocalMessage) -> Dict[str, Any]:
        if message.media_url and message.media_type:
            return await asyncio.to_thread(
                self.api.send_media,
                message.phone_number,
                message.media_url,
                message.media_type,
                message.content
            )
        return await asyncio.to_thread(self.api.send_text, message.phone_number, message.content)

    async def retry_pending(self) -> Optional[bool]:
        """
        Retry the head of the retry queue once.

        Skipped when the queue is empty, another retry is running or the
        socket is disconnected. Only the head item is attempted per pass.

        Returns:
            None if skipped, True if the head message was resent, False if
            the attempt failed
        """
        if not self.retry_queue or self._retry_in_flight or not self.socket.is_connected:
            return None

        self._retry_in_flight = True
        message = self.retry_queue[0]
        try:
            message.retry_attempts += 1
            await self._send_via_gateway(message)
            if not message.persisted:
                await asyncio.to_thread(self.api.create_message, message)
                message.persisted = True

            self.retry_queue.popleft()
            message.status = STATUS_SENT
            self._consecutive_retry_failures = 0
            logger.info(f"Message {message.id} resent")

            if not message.is_provisional:
                try:
                    await asyncio.to_thread(self.api.update_message_status, message.id, STATUS_SENT)
                except Exception as e:
                    logger.warning(f"Could not mark message {message.id} as sent on the server: {e}")
            return True

        except Exception as e:
            logger.warning(f"Retry of message {message.id} failed: {e}")
            self._consecutive_retry_failures += 1
            if self.max_retry_attempts is not None and message.retry_attempts >= self.max_retry_attempts:
                self.retry_queue.popleft()
                logger.error(f"Giving up on message {message.id} after {message.retry_attempts} retries")
            return False

        finally:
            self._retry_in_flight = False

    def next_retry_delay(self) -> float:
        return self.retry_interval_seconds * (self.retry_backoff ** self._consecutive_retry_failures)

    async def run_retry_loop(self) -> None:
        """Run retry_pending on the retry interval until cancelled."""
        while True:
            await asyncio.sleep(self.next_retry_delay())
            await self.retry_pending()

    async def handle_server_event(self, event: str, data: Dict[str, Any]) -> None:
        """
        Apply a server event to the local view.

        new_message adds messages not already known; message_status updates
        the matching message and queues it for retry when it became FAILED.
        """
        if event == "new_message":
            if any(existing.id == data.get("id") for existing in self.messages):
                return
            self._add_local(LocalMessage(
                id=data.get("id"),
                chat_id=data.get("chatId"),
                contact_id=data.get("contactId"),
                phone_number=data.get("phoneNumber", ""),
                content=data.get("content"),
                media_url=data.get("mediaUrl"),
                media_type=data.get("mediaType"),
                direction=data.get("direction", OUTBOUND),
                status=data.get("status", STATUS_SENT),
                created_at=data.get("createdAt") or datetime.utcnow().isoformat() + "Z",
                persisted=True
            ))

        elif event == "message_status":
            for message in self.messages:
                if message.id == data.get("messageId"):
                    message.status = data.get("status", message.status)
                    if message.status == STATUS_FAILED:
                        self._enqueue_retry(message)
                    break


# Command line interface
def print_success(message: str):
    print(f"{Fore.GREEN}✓ {message}{Style.RESET_ALL}")


def print_error(message: str):
    print(f"{Fore.RED}✗ {message}{Style.RESET_ALL}")


def print_info(message: str):
    print(f"{Fore.YELLOW}ℹ {message}{Style.RESET_ALL}")


def print_message(message: LocalMessage):
    time_str = message.created_at[11:19]
    status = f" {Fore.RED}[{message.status}]{Style.RESET_ALL}" if message.status == STATUS_FAILED else ""
    if message.direction == OUTBOUND:
        print(f"{Fore.BLUE}[{time_str}] {Fore.CYAN}You: {Style.RESET_ALL}{message.content or message.media_url}{status}")
    else:
        print(f"{Fore.BLUE}[{time_str}] {Fore.MAGENTA}Contact: {Style.RESET_ALL}{message.content or message.media_url}")


def print_help():
    print(f"\n{Fore.CYAN}Commands:{Style.RESET_ALL}")
    print(f"  {Fore.YELLOW}/chats{Style.RESET_ALL}            - List open chats")
    print(f"  {Fore.YELLOW}/open <chat_id>{Style.RESET_ALL}   - Open a chat and show its history")
    print(f"  {Fore.YELLOW}/retry{Style.RESET_ALL}            - Retry the oldest failed message now")
    print(f"  {Fore.YELLOW}/help{Style.RESET_ALL}             - Show this help")
    print(f"  {Fore.YELLOW}/quit{Style.RESET_ALL}             - Exit")
    print(f"\n  {Fore.WHITE}Any other text is sent to the open chat{Style.RESET_ALL}\n")


async def run_cli(base_url: str, token: str) -> None:
    """Interactive operator session."""
    api = RestApi(base_url, token)
    ws_url = base_url.replace("http://", "ws://").replace("https://", "wss://")
    client: Optional[ChatClient] = None

    async def on_event(event: str, data: Dict[str, Any]):
        if event == "connected":
            print_success(f"Connected as {data.get('userId')}")
        elif event == "error":
            print_error(f"Server error: {data.get('message')}")
        elif event == "whatsapp_status" and not data.get("connected"):
            print_info(f"WhatsApp link is {data.get('state')}")
        await client.handle_server_event(event, data)

    socket = SocketChannel(ws_url, token, on_event=on_event)
    client = ChatClient(socket, api, on_message=print_message)

    socket_task = asyncio.create_task(socket.run())
    retry_task = asyncio.create_task(client.run_retry_loop())
    current_chat: Optional[Dict[str, Any]] = None

    print_help()
    try:
        while True:
            line = (await asyncio.to_thread(input, f"{Fore.GREEN}>>> {Style.RESET_ALL}")).strip()
            if not line:
                continue

            if line == "/quit":
                break
            if line == "/help":
                print_help()
            elif line == "/chats":
                for chat in await asyncio.to_thread(api.list_chats):
                    contact = chat.get("contact") or {}
                    print(f"  {Fore.YELLOW}[{chat['id']}]{Style.RESET_ALL} {contact.get('name')} ({contact.get('phoneNumber')})")
            elif line.startswith("/open "):
                chat_id = line.split(maxsplit=1)[1]
                try:
                    current_chat = await asyncio.to_thread(api.get_chat, chat_id)
                except requests.RequestException as e:
                    print_error(f"Could not open chat: {e}")
                    continue
                if socket.is_connected:
                    await socket.emit("join_chat", {"chatId": chat_id})
                for data in await asyncio.to_thread(api.get_messages, chat_id):
                    await client.handle_server_event("new_message", data)
            elif line == "/retry":
                result = await client.retry_pending()
                print_info("Nothing to retry" if result is None else ("Resent" if result else "Retry failed"))
            elif current_chat is None:
                print_info("Open a chat first with /open <chat_id>")
            else:
                await client.send_message(
                    current_chat["id"],
                    current_chat["contactId"],
                    current_chat["contact"]["phoneNumber"],
                    line
                )
    except (EOFError, KeyboardInterrupt):
        pass
    finally:
        retry_task.cancel()
        await socket.close()
        socket_task.cancel()
        await asyncio.gather(socket_task, retry_task, return_exceptions=True)
        print_info("Client closed.")


def main():
    """Main entry point."""
    init(autoreset=True)

    parser = argparse.ArgumentParser(description="CRM Chat - operator command line client")
    parser.add_argument("-t", "--token", required=True, help="JWT access token")
    parser.add_argument(
        "--url",
        default="http://localhost:8000",
        help="API base URL (default: http://localhost:8000)"
    )
    args = parser.parse_args()

    try:
        asyncio.run(run_cli(args.url, args.token))
    except KeyboardInterrupt:
        print(f"\n{Fore.YELLOW}Exiting...{Style.RESET_ALL}")


if __name__ == "__main__":
    main()
