"""Connection to the messaging platform.

The dispatcher only depends on the Transport protocol. BridgeTransport
implements it against a local bridge process that owns pairing,
encryption and the socket, exposing a small HTTP API plus a WebSocket
event stream:

    GET  /v1/session           -> {"id": bot JID, "connected": bool}
    POST /v1/messages          -> sent message ({"key": {...}, ...})
    POST /v1/messages/read     -> mark keys as read
    GET  /v1/groups/{jid}      -> {"id", "subject", "participants": [...]}
    WS   /v1/events            -> frames {"event": name, "data": payload}

Key classes:
    Transport: Protocol consumed by the dispatch core.
    BridgeTransport: aiohttp client for the bridge.
"""

import asyncio
import inspect
import json
from typing import Any, Callable, Dict, List, Optional, Protocol, runtime_checkable
from urllib.parse import quote, urlparse

import aiohttp
import structlog
from pydantic import ValidationError

from .exceptions import MetadataFetchFailed, TransportUnavailable
from .logging_config import mask_id
from .models import GroupMetadata

logger = structlog.get_logger("yumi.transport")

EVENT_MESSAGES_UPSERT = "messages.upsert"
EVENT_GROUP_PARTICIPANTS = "group-participants.update"
EVENT_CALL = "call"
EVENT_CONTACTS_UPDATE = "contacts.update"
EVENT_GROUPS_INVITE = "groups.invite"
EVENT_CONNECTION_UPDATE = "connection.update"

INITIAL_RECONNECT_DELAY = 5
MAX_RECONNECT_DELAY = 300


@runtime_checkable
class Transport(Protocol):
    """What the dispatch core needs from the connection layer."""

    bot_id: Optional[str]

    @property
    def is_connected(self) -> bool:
        ...

    async def send_message(
        self, chat_id: str, content: Dict[str, Any], options: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        ...

    async def group_metadata(self, chat_id: str) -> GroupMetadata:
        ...

    async def read_messages(self, keys: List[Dict[str, Any]]) -> None:
        ...

    def on(self, event: str, callback: Callable[[Any], Any]) -> None:
        ...

    async def start(self) -> None:
        ...

    async def poll_events(self) -> None:
        ...

    async def close(self) -> None:
        ...


class BridgeTransport:
    """HTTP + WebSocket client for the bridge process.

    Args:
        base_url: Bridge root URL, e.g. "http://127.0.0.1:3000".
        token: Optional bearer token sent on every request.
        timeout: Per-request timeout in seconds.
    """

    def __init__(self, base_url: str, token: Optional[str] = None, timeout: int = 30):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.session: Optional[aiohttp.ClientSession] = None
        self.bot_id: Optional[str] = None
        self.running = False
        self._connected = False
        self._listeners: Dict[str, List[Callable[[Any], Any]]] = {}

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def _headers(self) -> Dict[str, str]:
        if self.token:
            return {"Authorization": f"Bearer {self.token}"}
        return {}

    # --- Lifecycle ---

    async def start(self) -> None:
        """Open the HTTP session and fetch the bot's identity."""
        self.session = aiohttp.ClientSession(headers=self._headers)
        self.running = True

        parsed = urlparse(self.base_url)
        if parsed.hostname not in ("127.0.0.1", "localhost", "::1") and parsed.scheme != "https":
            logger.warning(
                "insecure_bridge_url", url=self.base_url,
                msg="Non-localhost bridge should use HTTPS",
            )

        await self._get_session()

    async def close(self) -> None:
        self.running = False
        self._connected = False
        if self.session:
            await self.session.close()
            self.session = None

    async def _get_session(self) -> None:
        """Ask the bridge who we are, retrying while it boots."""
        max_attempts = 12
        base_delay = 5
        max_delay = 15

        for attempt in range(1, max_attempts + 1):
            try:
                data = await self._request("GET", "/v1/session")
                self.bot_id = data.get("id")
                self._connected = bool(data.get("connected", self.bot_id))
                logger.info(
                    "bridge_session_found",
                    bot=mask_id(self.bot_id) if self.bot_id else None,
                    connected=self._connected,
                )
                return
            except TransportUnavailable as e:
                delay = min(base_delay * attempt, max_delay)
                logger.warning(
                    "bridge_session_error", error=str(e),
                    attempt=attempt, retry_delay=delay,
                )
                if attempt < max_attempts:
                    await asyncio.sleep(delay)

        logger.error("bridge_session_failed_all_attempts", attempts=max_attempts)

    # --- Event subscription ---

    def on(self, event: str, callback: Callable[[Any], Any]) -> None:
        """Subscribe to a bridge event ("messages.upsert", "call", ...)."""
        self._listeners.setdefault(event, []).append(callback)

    async def _emit(self, event: str, payload: Any) -> None:
        for callback in self._listeners.get(event, []):
            try:
                result = callback(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(
                    "event_callback_failed", bridge_event=event,
                    error=str(e), error_type=type(e).__name__,
                )

    async def _handle_frame(self, raw: str) -> None:
        try:
            frame = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("invalid_json", data=raw[:100])
            return
        if not isinstance(frame, dict) or not frame.get("event"):
            logger.debug("frame_ignored", data=raw[:100])
            return

        event, payload = frame["event"], frame.get("data")
        if event == EVENT_CONNECTION_UPDATE and isinstance(payload, dict):
            state = payload.get("connection")
            if state in ("open", "close"):
                self._connected = state == "open"
            logger.info("connection_update", state=state)
        await self._emit(event, payload)

    async def poll_events(self) -> None:
        """Consume the WebSocket event stream, reconnecting with backoff."""
        ws_base = self.base_url.replace("http://", "ws://").replace("https://", "wss://")
        ws_url = f"{ws_base}/v1/events"

        reconnect_delay = INITIAL_RECONNECT_DELAY

        while self.running:
            try:
                logger.info("websocket_connecting", url=ws_url)
                async with self.session.ws_connect(ws_url, heartbeat=30) as ws:
                    logger.info("websocket_connected")
                    reconnect_delay = INITIAL_RECONNECT_DELAY
                    async for msg in ws:
                        if msg.type == aiohttp.WSMsgType.TEXT:
                            await self._handle_frame(msg.data)
                        elif msg.type == aiohttp.WSMsgType.ERROR:
                            logger.error("websocket_error", error=str(ws.exception()))
                            break
                        elif msg.type == aiohttp.WSMsgType.CLOSED:
                            logger.info("websocket_closed")
                            break
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("websocket_exception", error=str(e))
                await asyncio.sleep(reconnect_delay)
                reconnect_delay = min(reconnect_delay * 2, MAX_RECONNECT_DELAY)

    # --- HTTP API ---

    async def _request(self, method: str, path: str, payload: Optional[dict] = None) -> Any:
        if self.session is None:
            raise TransportUnavailable("bridge session not started", path=path)
        url = f"{self.base_url}{path}"
        try:
            async with self.session.request(method, url, json=payload, timeout=self.timeout) as resp:
                if resp.status >= 400:
                    body = await resp.text()
                    raise TransportUnavailable(
                        f"bridge returned {resp.status}", path=path, body=body[:200],
                    )
                if resp.content_type == "application/json":
                    return await resp.json()
                return {}
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransportUnavailable(
                f"bridge request failed: {e}", path=path, error_type=type(e).__name__,
            ) from e

    async def send_message(
        self, chat_id: str, content: Dict[str, Any], options: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Send (or edit/delete/react, depending on ``content``) a message.

        Returns:
            The sent message as reported by the bridge, including its key.

        Raises:
            TransportUnavailable: The bridge refused or is unreachable.
        """
        payload = {"jid": chat_id, "content": content}
        if options:
            payload["options"] = options
        result = await self._request("POST", "/v1/messages", payload)
        return result if isinstance(result, dict) else {}

    async def group_metadata(self, chat_id: str) -> GroupMetadata:
        """Fetch subject and participants of a group.

        Raises:
            MetadataFetchFailed: Request failed or the payload is malformed.
        """
        try:
            data = await self._request("GET", f"/v1/groups/{quote(chat_id, safe='')}")
            return GroupMetadata.model_validate(data)
        except (TransportUnavailable, ValidationError) as e:
            raise MetadataFetchFailed(str(e), chat_id=chat_id) from e

    async def read_messages(self, keys: List[Dict[str, Any]]) -> None:
        await self._request("POST", "/v1/messages/read", {"keys": keys})
