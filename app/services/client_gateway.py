from __future__ import annotations

import asyncio
import json
import logging
import uuid

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from app.errors import ErrorCodes, InvalidClientCommandError, UnknownClientError
from app.schemas.command import ClientCommand
from app.schemas.market import ErrorEvent, encode_event
from app.services.subscription_registry import SubscriptionRegistry

logger = logging.getLogger(__name__)

_COMMAND_TYPES = {"subscribe", "unsubscribe"}
# RFC 6455 "try again later"
_CLOSE_TRY_AGAIN_LATER = 1013


def parse_client_command(raw: str | bytes | dict) -> ClientCommand:
    if isinstance(raw, (str, bytes, bytearray)):
        try:
            data = json.loads(raw)
        except ValueError as exc:
            raise InvalidClientCommandError() from exc
    else:
        data = raw

    if not isinstance(data, dict) or not data.get("type") or not data.get("symbol"):
        raise InvalidClientCommandError()
    if data["type"] not in _COMMAND_TYPES:
        raise InvalidClientCommandError("Unknown message type")

    try:
        return ClientCommand.model_validate(data)
    except ValidationError as exc:
        raise InvalidClientCommandError() from exc


class ClientSession:
    """One downstream connection with a bounded outbound buffer.

    ``send`` may be called from any thread and never blocks; a client whose
    buffer is full is closed instead of slowing down the relay.
    """

    def __init__(
        self,
        websocket: WebSocket,
        client_id: str,
        *,
        loop: asyncio.AbstractEventLoop,
        queue_size: int = 256,
        send_timeout_sec: float = 5.0,
    ) -> None:
        self.websocket = websocket
        self.client_id = client_id
        self.send_timeout_sec = send_timeout_sec
        self.closed = False
        self._loop = loop
        self._queue: asyncio.Queue[str] = asyncio.Queue(maxsize=queue_size)

    def send(self, payload: str) -> None:
        if self.closed:
            raise ConnectionError("client session closed")
        self._loop.call_soon_threadsafe(self._enqueue, payload)

    def _enqueue(self, payload: str) -> None:
        if self.closed:
            return
        try:
            self._queue.put_nowait(payload)
        except asyncio.QueueFull:
            logger.warning("[GW][client_slow] client=%s queue_size=%s", self.client_id, self._queue.maxsize)
            self._loop.create_task(self.close(code=_CLOSE_TRY_AGAIN_LATER, reason=ErrorCodes.SLOW_CLIENT))

    async def writer(self) -> None:
        while not self.closed:
            payload = await self._queue.get()
            try:
                await asyncio.wait_for(self.websocket.send_text(payload), timeout=self.send_timeout_sec)
            except asyncio.TimeoutError:
                logger.warning("[GW][client_send_timeout] client=%s timeout=%s", self.client_id, self.send_timeout_sec)
                await self.close(code=_CLOSE_TRY_AGAIN_LATER, reason=ErrorCodes.SLOW_CLIENT)
                return
            except (WebSocketDisconnect, RuntimeError, OSError) as exc:
                logger.info("[GW][client_send_failed] client=%s error=%s", self.client_id, exc)
                self.closed = True
                return

    async def close(self, code: int = 1000, reason: str | None = None) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            await self.websocket.close(code=code, reason=reason)
        except RuntimeError as exc:
            # already closed by the peer
            logger.debug("[GW][client_close_skip] client=%s error=%s", self.client_id, exc)


class ClientGateway:
    def __init__(
        self,
        registry: SubscriptionRegistry,
        *,
        queue_size: int = 256,
        send_timeout_sec: float = 5.0,
    ) -> None:
        self.registry = registry
        self.queue_size = queue_size
        self.send_timeout_sec = send_timeout_sec
        self.connections = 0
        self.active_connections = 0
        self.commands = 0
        self.rejected_commands = 0

    def handle_command(self, session: ClientSession, raw: str | bytes) -> ClientCommand | None:
        self.commands += 1
        try:
            command = parse_client_command(raw)
        except InvalidClientCommandError as exc:
            self.rejected_commands += 1
            logger.info("[GW][command_reject] client=%s reason=%s", session.client_id, exc.message)
            if not session.closed:
                session.send(encode_event(ErrorEvent(code=exc.code, message=exc.message)))
            return None

        if command.type == "subscribe":
            self.registry.add_interest(session.client_id, command.symbol)
        else:
            self.registry.remove_interest(session.client_id, command.symbol)
        return command

    async def apply_command(self, session: ClientSession, raw: str | bytes) -> ClientCommand | None:
        """Run ``handle_command`` off the event loop; a subscribe may write upstream."""
        return await asyncio.to_thread(self.handle_command, session, raw)

    async def serve(self, websocket: WebSocket) -> None:
        await websocket.accept()
        client_id = uuid.uuid4().hex
        session = ClientSession(
            websocket,
            client_id,
            loop=asyncio.get_running_loop(),
            queue_size=self.queue_size,
            send_timeout_sec=self.send_timeout_sec,
        )
        self.registry.register_client(client_id, session)
        writer = asyncio.create_task(session.writer())
        self.connections += 1
        self.active_connections += 1
        logger.info("[GW][client_connect] client=%s", client_id)

        try:
            while not session.closed:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                raw = message.get("text")
                if raw is None:
                    raw = message.get("bytes") or b""
                await self.apply_command(session, raw)
        except (WebSocketDisconnect, RuntimeError, UnknownClientError) as exc:
            logger.info("[GW][client_transport_closed] client=%s error=%s", client_id, exc)
        finally:
            session.closed = True
            self.registry.remove_client(client_id)
            writer.cancel()
            (writer_result,) = await asyncio.gather(writer, return_exceptions=True)
            if isinstance(writer_result, Exception):
                logger.warning("[GW][client_writer_failed] client=%s error=%r", client_id, writer_result)
            self.active_connections -= 1
            logger.info("[GW][client_disconnect] client=%s", client_id)

    def metrics(self) -> dict:
        return {
            "connections_total": self.connections,
            "connections_active": self.active_connections,
            "commands": self.commands,
            "rejected_commands": self.rejected_commands,
        }
