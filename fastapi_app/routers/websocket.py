"""
WebSocket Router - BabelPod control plane
Clients receive device lists and state changes and send commands over /ws
"""

import asyncio
import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from fastapi.websockets import WebSocketState
from pydantic import ValidationError

from babel_core.daemon import COMMAND_TYPES, GENERIC_ERROR_NOTICE
from babel_core.errors import InvalidCommand, PermissionDenied
from babel_core.events import ControlEvent, EventEmitter
from fastapi_app.schemas.control import ControlMessage, ServerMessage

logger = logging.getLogger(__name__)

router = APIRouter()


def build_message(message_type: str, data: Any = None) -> Dict[str, Any]:
    """Build a server-to-client message"""
    return ServerMessage(
        type=message_type,
        data=data,
        timestamp=datetime.now(timezone.utc),
    ).model_dump(mode="json")


class ConnectionManager:
    """Manages WebSocket connections and delivers core events to them"""

    def __init__(self):
        self.active_connections: Dict[str, WebSocket] = {}
        self._queue: Optional[asyncio.Queue] = None
        self._pump_task: Optional[asyncio.Task] = None
        self._events: Optional[EventEmitter] = None

    def start(self, events: EventEmitter):
        """Subscribe to core events and start delivering them in order"""
        self._queue = asyncio.Queue()
        self._events = events
        events.subscribe(self._enqueue)
        self._pump_task = asyncio.get_running_loop().create_task(self._pump(), name="ws-event-pump")

    async def stop(self):
        if self._events is not None:
            self._events.unsubscribe(self._enqueue)
            self._events = None
        if self._pump_task:
            self._pump_task.cancel()
            try:
                await self._pump_task
            except asyncio.CancelledError:
                pass
            self._pump_task = None
        self.active_connections.clear()

    async def connect(self, websocket: WebSocket) -> str:
        """Accept and register a new WebSocket connection"""
        await websocket.accept()
        connection_id = str(uuid.uuid4())
        self.active_connections[connection_id] = websocket
        logger.info(f"WebSocket client connected. Total connections: {len(self.active_connections)}")
        return connection_id

    def disconnect(self, connection_id: str):
        """Remove a WebSocket connection"""
        self.active_connections.pop(connection_id, None)
        logger.info(f"WebSocket client disconnected. Total connections: {len(self.active_connections)}")

    async def send_personal(self, message: dict, websocket: WebSocket):
        """Send message to a specific client"""
        try:
            if websocket.client_state == WebSocketState.CONNECTED:
                await websocket.send_json(message)
        except Exception as e:
            logger.error(f"Error sending personal message: {e}")

    async def send_to(self, connection_id: str, message: dict):
        websocket = self.active_connections.get(connection_id)
        if websocket is not None:
            await self.send_personal(message, websocket)

    async def broadcast(self, message: dict):
        """Broadcast message to all connected clients"""
        disconnected = []
        for connection_id, connection in list(self.active_connections.items()):
            try:
                if connection.client_state == WebSocketState.CONNECTED:
                    await connection.send_json(message)
            except Exception as e:
                logger.error(f"Error broadcasting to client: {e}")
                disconnected.append(connection_id)

        # Clean up disconnected clients
        for connection_id in disconnected:
            self.disconnect(connection_id)

    def _enqueue(self, event: ControlEvent):
        if self._queue is not None:
            self._queue.put_nowait(event)

    async def _pump(self):
        while True:
            event = await self._queue.get()
            try:
                await self.deliver(event)
            except Exception as e:
                logger.error(f"Error delivering event {event.type}: {e}")

    async def deliver(self, event: ControlEvent):
        """Send an event to its target connection, or to everyone"""
        message = event.to_dict()
        if event.target is not None:
            await self.send_to(event.target, message)
        else:
            await self.broadcast(message)


# Global connection manager
manager = ConnectionManager()


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """
    WebSocket endpoint for the control plane.

    On connect the client receives ``connected`` (with its connection id) and
    the current state: inputListChanged, outputListChanged, inputChanged,
    outputsChanged, volumeChanged and ownerChanged.

    Commands are JSON objects ``{"type": ..., "data": ...}``:
    - switchInput: input id (``"void"`` for none)
    - syncOutputs: list of output uiIds (a single id is accepted)
    - setVolume: 0-100
    - takeoverControl: claim the session
    - ping: answered with pong

    Example client code (JavaScript):
    ```javascript
    const ws = new WebSocket('ws://localhost:3000/ws');
    ws.onopen = () => ws.send(JSON.stringify({type: 'switchInput', data: 'plughw:1,0'}));
    ws.onmessage = (event) => console.log(JSON.parse(event.data));
    ```
    """
    daemon = websocket.app.state.daemon
    connection_id = await manager.connect(websocket)

    try:
        await manager.send_personal(
            build_message("connected", {"connectionId": connection_id}), websocket
        )
        for message_type, data in daemon.initial_messages():
            await manager.send_personal(build_message(message_type, data), websocket)

        daemon.connect(connection_id)

        while True:
            try:
                data = await websocket.receive_text()
                message = ControlMessage.model_validate(json.loads(data))
            except WebSocketDisconnect:
                break
            except json.JSONDecodeError:
                await manager.send_personal(build_message("error", {"message": "Invalid JSON"}), websocket)
                continue
            except ValidationError:
                await manager.send_personal(
                    build_message("error", {"message": "Invalid message format"}), websocket
                )
                continue

            if message.type == "ping":
                await manager.send_personal(build_message("pong"), websocket)

            elif message.type in COMMAND_TYPES:
                try:
                    await daemon.handle_command(connection_id, message.type, message.data)
                except PermissionDenied as e:
                    # Stale UI actions from non-owners are dropped without a reply
                    logger.info(f"Ignored {message.type}: {e}")
                except InvalidCommand as e:
                    await manager.send_personal(build_message("error", {"message": str(e)}), websocket)
                except Exception as e:
                    logger.error(f"Error handling {message.type}: {e}", exc_info=True)
                    daemon.events.error(GENERIC_ERROR_NOTICE)

            else:
                logger.debug(f"Received unknown message: {message.type}")
                await manager.send_personal(
                    build_message("error", {"message": f"Unknown message type: {message.type}"}),
                    websocket,
                )

    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.error(f"WebSocket error: {e}")
    finally:
        manager.disconnect(connection_id)
        daemon.disconnect(connection_id)


__all__ = ["router", "manager", "ConnectionManager", "build_message"]
