"""
ViewerManager: real-time delivery to connected dashboards.

Features:
- Track connected viewers by viewer_id
- Targeted send to one viewer, broadcast to all
- Slow viewers miss the event but stay connected
- A viewer whose socket fails is dropped; delivery never raises
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Dict, Optional

from fastapi import WebSocket

logger = logging.getLogger(__name__)


@dataclass
class ViewerInfo:
    viewer_id: str
    websocket: WebSocket
    label: str = "Unknown Device"
    connected_at: float = 0.0


class ViewerManager:
    """
    Registry of connected viewers. Owned by the event loop; every method
    runs on the loop thread.
    """

    def __init__(self, send_timeout: float = 1.0):
        self._viewers: Dict[str, ViewerInfo] = {}  # viewer_id -> ViewerInfo
        self.send_timeout = send_timeout
        self.events_sent = 0
        self.events_dropped = 0

    def register_viewer(self, viewer_id: str, websocket: WebSocket, label: str = "Unknown Device"):
        self._viewers[viewer_id] = ViewerInfo(
            viewer_id=viewer_id,
            websocket=websocket,
            label=label,
            connected_at=time.time(),
        )
        logger.info(f"[ViewerManager] Viewer connected: {viewer_id[:8]}... Total: {len(self._viewers)}")

    def unregister_viewer(self, viewer_id: str, websocket: Optional[WebSocket] = None):
        """
        Remove viewer on disconnect.

        With `websocket` given, only that socket's registration is removed;
        a newer connection that reused the same viewer_id stays.
        """
        info = self._viewers.get(viewer_id)
        if info is None or (websocket is not None and info.websocket is not websocket):
            return
        del self._viewers[viewer_id]
        logger.info(f"[ViewerManager] Viewer disconnected: {viewer_id[:8]}... Total: {len(self._viewers)}")

    def is_connected(self, viewer_id: str) -> bool:
        return viewer_id in self._viewers

    def get_connected_viewers(self) -> list:
        return [
            {
                "viewer_id": v.viewer_id,
                "label": v.label,
                "connected_at": v.connected_at,
            }
            for v in self._viewers.values()
        ]

    def get_viewer_count(self) -> int:
        return len(self._viewers)

    async def _deliver(self, info: ViewerInfo, message: dict) -> bool:
        try:
            await asyncio.wait_for(info.websocket.send_json(message), timeout=self.send_timeout)
            self.events_sent += 1
            return True
        except asyncio.TimeoutError:
            # Client too slow - drop this event for them, don't disconnect
            self.events_dropped += 1
            return False
        except Exception as e:
            logger.debug(f"[ViewerManager] Send to {info.viewer_id[:8]}... failed: {e}")
            self.events_dropped += 1
            self.unregister_viewer(info.viewer_id, info.websocket)
            return False

    async def send(self, viewer_id: str, message: dict) -> bool:
        """Targeted delivery. Returns False if the viewer is gone or the send failed."""
        info = self._viewers.get(viewer_id)
        if info is None:
            return False
        return await self._deliver(info, message)

    async def broadcast(self, message: dict) -> int:
        """Deliver to every connected viewer. Returns the number of successful sends."""
        viewers = list(self._viewers.values())
        if not viewers:
            return 0
        results = await asyncio.gather(*(self._deliver(v, message) for v in viewers))
        return sum(results)
