"""Transport layer — the HTTP face of a node.

Each node runs a small aiohttp server on its scan port. That is the port
other nodes' bootstrap probes connect to, and it serves:

  GET  /health    liveness + our peer id
  GET  /stats     live peer count for display layers
  POST /announce  a peer telling us it is alive

Outgoing announcements use a shared aiohttp client session.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Callable, Coroutine

from aiohttp import ClientSession, ClientTimeout, web
from pydantic import ValidationError

from hypermind_node.config import MAX_MESSAGE_SIZE
from hypermind_node.network.messages import Announcement

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = ClientTimeout(total=5)

AnnouncementCallback = Callable[[Announcement, str], Coroutine[Any, Any, None]]


class Transport:
    """aiohttp server for incoming announcements plus a client for outgoing ones."""

    def __init__(
        self,
        peer_id: str,
        host: str = "0.0.0.0",
        port: int = 3000,
    ) -> None:
        self.peer_id = peer_id
        self.host = host
        self.port = port
        self._app = web.Application(client_max_size=MAX_MESSAGE_SIZE)
        self._runner: web.AppRunner | None = None
        self._session: ClientSession | None = None
        self._announce_callback: AnnouncementCallback | None = None
        self._stats_provider: Callable[[], dict[str, Any]] = dict

        self._app.router.add_get("/health", self._handle_health)
        self._app.router.add_get("/stats", self._handle_stats)
        self._app.router.add_post("/announce", self._handle_announce)

    @property
    def app(self) -> web.Application:
        return self._app

    def on_announcement(self, callback: AnnouncementCallback) -> None:
        """Set the callback for incoming announcements.

        Args:
            callback: Async callable receiving (Announcement, remote_ip).
        """
        self._announce_callback = callback

    def set_stats_provider(self, provider: Callable[[], dict[str, Any]]) -> None:
        self._stats_provider = provider

    async def start(self) -> None:
        """Start the HTTP server and client session."""
        self._session = ClientSession(timeout=DEFAULT_TIMEOUT)
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        logger.info("Transport listening on %s:%d", self.host, self.port)

    async def stop(self) -> None:
        """Gracefully shut down transport."""
        if self._session:
            await self._session.close()
            self._session = None
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
        logger.info("Transport stopped")

    async def send_announcement(self, endpoint: str, announcement: Announcement) -> bool:
        """POST our announcement to a peer.

        Returns:
            True if the peer accepted it, False otherwise.
        """
        if not self._session:
            logger.error("Transport not started")
            return False

        url = f"http://{endpoint}/announce"
        try:
            async with self._session.post(
                url, json=json.loads(announcement.model_dump_json()),
            ) as resp:
                return resp.status == 200
        except Exception:
            logger.debug("Failed to announce to %s", endpoint, exc_info=True)
            return False

    async def _handle_announce(self, request: web.Request) -> web.Response:
        if request.content_length is not None and request.content_length > MAX_MESSAGE_SIZE:
            return web.json_response(
                {"status": "error", "detail": "message too large"}, status=413,
            )
        try:
            announcement = Announcement.model_validate(await request.json())
        except (ValueError, ValidationError):
            return web.json_response(
                {"status": "error", "detail": "invalid announcement"}, status=400,
            )

        if self._announce_callback:
            try:
                await self._announce_callback(announcement, request.remote or "")
            except Exception:
                logger.exception("Error handling announcement from %s", request.remote)
                return web.json_response({"status": "error"}, status=500)
        return web.json_response({"status": "ok"})

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response(
            {"status": "healthy", "peer_id": self.peer_id, "port": self.port}
        )

    async def _handle_stats(self, request: web.Request) -> web.Response:
        return web.json_response(self._stats_provider())
