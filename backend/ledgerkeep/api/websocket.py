"""WebSocket endpoint relaying ledger and backup events"""
from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from typing import Any, Callable, Dict, List, Optional, Set
from datetime import datetime, timezone
import asyncio
import structlog

from ledgerkeep.services.feed import CHANNELS, EventFeed
from ledgerkeep.services.runtime import RuntimeNotReady, get_runtime

logger = structlog.get_logger()

router = APIRouter()


class ConnectionManager:
    """Manages WebSocket connections and broadcasts"""

    def __init__(self):
        self.active_connections: List[WebSocket] = []
        self.subscriptions: Dict[WebSocket, Set[str]] = {}
        self._message_queue: Optional[asyncio.Queue] = None
        self._broadcast_task: Optional[asyncio.Task] = None
        self._detach: Optional[Callable[[], None]] = None

    async def start(self, feed: Optional[EventFeed] = None):
        """Start the broadcast worker, relaying events published on the feed"""
        if self._broadcast_task is None:
            self._message_queue = asyncio.Queue()
            self._broadcast_task = asyncio.create_task(self._broadcast_worker())
            logger.info("WebSocket broadcast worker started")
        if feed is not None and self._detach is None:
            self._detach = feed.subscribe(broadcast_event)

    async def stop(self):
        """Stop the broadcast worker"""
        if self._detach:
            self._detach()
            self._detach = None
        if self._broadcast_task:
            self._broadcast_task.cancel()
            try:
                await self._broadcast_task
            except asyncio.CancelledError:
                pass
            self._broadcast_task = None
            self._message_queue = None

    async def _broadcast_worker(self):
        """Background worker to process queued broadcasts"""
        while True:
            try:
                message, channel = await self._message_queue.get()
                await self._do_broadcast(message, channel)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Broadcast worker error", error=str(e))

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self.active_connections.append(websocket)
        self.subscriptions[websocket] = set()
        logger.info("WebSocket connected", total_connections=len(self.active_connections))

    def disconnect(self, websocket: WebSocket):
        if websocket in self.active_connections:
            self.active_connections.remove(websocket)
        if websocket in self.subscriptions:
            del self.subscriptions[websocket]
        logger.info("WebSocket disconnected", total_connections=len(self.active_connections))

    def subscribe(self, websocket: WebSocket, channels: List[str]) -> List[str]:
        """Subscribe to event channels; unknown channels are ignored"""
        valid_channels = [channel for channel in channels if channel in CHANNELS]
        self.subscriptions[websocket].update(valid_channels)
        logger.info("WebSocket subscribed", channels=valid_channels)
        return valid_channels

    def unsubscribe(self, websocket: WebSocket, channels: List[str]):
        for channel in channels:
            self.subscriptions[websocket].discard(channel)
        logger.info("WebSocket unsubscribed", channels=channels)

    async def broadcast(self, message: dict, channel: str):
        """Queue a message for broadcast; dropped when the worker is not running"""
        if self._message_queue is None:
            return
        await self._message_queue.put((message, channel))

    async def _do_broadcast(self, message: dict, channel: str):
        """Send a message to connections subscribed to its channel"""
        disconnected = []
        for websocket in self.active_connections:
            if channel in self.subscriptions.get(websocket, set()):
                try:
                    await websocket.send_json(message)
                except Exception as e:
                    logger.warning("Failed to send to websocket", error=str(e))
                    disconnected.append(websocket)

        for ws in disconnected:
            self.disconnect(ws)

    async def send_personal(self, websocket: WebSocket, message: dict):
        """Send message to a specific connection"""
        try:
            await websocket.send_json(message)
        except Exception as e:
            logger.error("Personal send failed", error=str(e))
            self.disconnect(websocket)

    def get_stats(self) -> dict:
        return {
            "active_connections": len(self.active_connections),
            "queue_size": self._message_queue.qsize() if self._message_queue else 0,
        }


# Global connection manager
manager = ConnectionManager()


async def broadcast_event(channel: str, event_type: str, data: Dict[str, Any]):
    """Feed subscriber: wrap an event and queue it for WebSocket clients"""
    message = {
        "type": "event",
        "event_type": event_type,
        "channel": channel,
        "data": data,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    await manager.broadcast(message, channel)


async def _status_snapshot() -> Dict[str, Any]:
    """Current backup state and restore progress, for clients that connect mid-operation"""
    try:
        runtime = await get_runtime()
    except RuntimeNotReady:
        return {"type": "status", "wallet_registered": False}

    backups = runtime.backups
    progress = backups.restore_progress
    return {
        "type": "status",
        "wallet_registered": True,
        "backup": backups.state.model_dump(mode="json"),
        "backup_step": backups.step.value,
        "restore": progress.model_dump() if progress else None,
    }


async def handle_client_message(websocket: WebSocket, data: Dict[str, Any]) -> Dict[str, Any]:
    """Apply one client message and build the reply"""
    msg_type = data.get("type")
    channels = data.get("channels", [])

    if msg_type == "subscribe":
        return {"type": "subscribed", "channels": manager.subscribe(websocket, channels)}
    if msg_type == "unsubscribe":
        manager.unsubscribe(websocket, channels)
        return {"type": "unsubscribed", "channels": channels}
    if msg_type == "list_channels":
        return {"type": "channels", "channels": CHANNELS}
    if msg_type == "status":
        return await _status_snapshot()
    if msg_type == "ping":
        return {"type": "pong"}
    return {"type": "error", "message": f"Unknown message type: {msg_type}"}


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """
    Relay of ledger, backup and restore events.

    Client messages:
    - {"type": "subscribe", "channels": ["transactions", "restore"]}
    - {"type": "unsubscribe", "channels": ["restore"]}
    - {"type": "status"}: current backup state and restore progress
    - {"type": "list_channels"}
    - {"type": "ping"}
    """
    await manager.connect(websocket)
    await manager.send_personal(websocket, {
        "type": "connected",
        "available_channels": list(CHANNELS),
    })

    try:
        while True:
            reply = await handle_client_message(websocket, await websocket.receive_json())
            await manager.send_personal(websocket, reply)
    except WebSocketDisconnect:
        manager.disconnect(websocket)
    except Exception as e:
        logger.error("WebSocket error", error=str(e))
        manager.disconnect(websocket)


@router.get("/ws/stats")
async def websocket_stats():
    return manager.get_stats()


websocket_router = router
