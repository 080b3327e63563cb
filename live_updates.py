"""
Real-time Push
==============
Registry of live websocket connections, keyed by account.

Events are delivered at most once to the connections open at publish time.
Nothing is queued: a client that is offline reads the current status from
the order history instead.
"""

import asyncio
import logging
from collections import defaultdict
from typing import Dict, Any, Set

from fastapi import WebSocket

from notifications import EventPublisher


logger = logging.getLogger(__name__)


class ConnectionRegistry(EventPublisher):
    """
    Websocket connections per account.

    Implements the ``publish(account_id, event)`` interface used by the
    notifier; an account only ever receives its own events.
    """

    def __init__(self, send_timeout: float = 5.0):
        self._connections: Dict[str, Set[WebSocket]] = defaultdict(set)
        self.send_timeout = send_timeout
        self.published_count = 0

    def register(self, account_id: str, websocket: WebSocket):
        self._connections[account_id].add(websocket)
        logger.info(f"Listener connected for account {account_id}")

    def unregister(self, account_id: str, websocket: WebSocket):
        sockets = self._connections.get(account_id)
        if not sockets:
            return

        sockets.discard(websocket)
        if not sockets:
            del self._connections[account_id]

        logger.info(f"Listener disconnected for account {account_id}")

    def connection_count(self, account_id: str = None) -> int:
        if account_id is not None:
            return len(self._connections.get(account_id, ()))
        return sum(len(s) for s in self._connections.values())

    async def publish(self, account_id: str, event: Dict[str, Any]) -> int:
        """
        Send an event to every open connection of one account.

        Connections that fail to receive are dropped.

        Returns:
            Number of connections that received the event
        """
        delivered = 0

        for websocket in list(self._connections.get(account_id, ())):
            try:
                await asyncio.wait_for(
                    websocket.send_json(event),
                    timeout=self.send_timeout
                )
                delivered += 1
            except Exception as e:
                logger.warning(f"Dropping dead listener for account {account_id}: {str(e)}")
                self.unregister(account_id, websocket)

        self.published_count += 1
        return delivered

    async def close_all(self):
        """Close every connection (server shutdown)."""
        for account_id, sockets in list(self._connections.items()):
            for websocket in list(sockets):
                try:
                    await websocket.close()
                except Exception as e:
                    logger.debug(f"Error closing listener: {str(e)}")
        self._connections.clear()
