import asyncio
import logging
import time

import websockets

from canvas_protocol import *

logger = logging.getLogger(__name__)

# Bridge states
DISCONNECTED = "DISCONNECTED"
CONNECTING = "CONNECTING"
CONNECTED = "CONNECTED"


class RelayBridge:
    """Outbound link to a remote canvas peer that mirrors chat both ways.

    Chat sent upstream is tagged with LOOP_MARKER so that our own echo can
    be recognised and dropped when the peer broadcasts it back. Any close
    or error returns the bridge to DISCONNECTED and a new attempt starts
    after a fixed delay.
    """

    def __init__(self, registry, token, url=REMOTE_URL, origin=REMOTE_ORIGIN,
                 reconnect_delay=RECONNECT_DELAY_SEC, window=None, connector=None):
        self.registry = registry
        self.token = token
        self.url = url
        self.origin = origin
        self.reconnect_delay = reconnect_delay
        self.window = dict(window or RELAY_WINDOW)
        self.connector = connector or websockets.connect

        self.state = DISCONNECTED
        self.ws = None
        self.connect_attempts = 0
        self.running = False
        self._pending = set()

    def _set_state(self, state):
        if state != self.state:
            logger.info("[Bot] %s -> %s", self.state, state)
            self.state = state

    def _connect(self):
        return self.connector(
            self.url,
            origin=self.origin,
            additional_headers={"Cookie": f"uvias={self.token}"},
            user_agent_header=REMOTE_USER_AGENT,
        )

    async def run(self):
        self.running = True
        while self.running:
            self._set_state(CONNECTING)
            self.connect_attempts += 1
            logger.info("[Bot] Authenticating with remote server...")
            try:
                async with self._connect() as ws:
                    self.ws = ws
                    self._set_state(CONNECTED)
                    await ws.send(encode_frame(MSG_BOUNDARY, **self.window))
                    async for message in ws:
                        await self.handle_remote(ws, message)
            except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as e:
                logger.error("[Bot] Error: %s", e)
            except Exception:
                logger.exception("[Bot] Unexpected error on relay link")
            finally:
                self.ws = None
                self._set_state(DISCONNECTED)

            if not self.running:
                break
            logger.info("[Bot] Reconnecting in %ss...", self.reconnect_delay)
            await asyncio.sleep(self.reconnect_delay)

    def stop(self):
        self.running = False

    async def handle_remote(self, ws, raw):
        data = parse_frame(raw)
        if data is None:
            return
        if data["kind"] == MSG_CHAT:
            self.relay_to_local(data)
        elif data["kind"] == MSG_PING:
            await ws.send(encode_frame(MSG_PING, id=data.get("id")))

    def relay_to_local(self, data):
        """Broadcast a remote chat locally under the relay identity.
        Returns False for our own echoed messages."""
        nickname = data.get("nickname")
        if not isinstance(nickname, str) or not nickname:
            nickname = "Anon"
        if nickname.startswith(LOOP_MARKER):
            return False
        self.registry.broadcast({
            "kind": MSG_CHAT,
            "nickname": nickname,
            "message": data.get("message"),
            "realUsername": RELAY_USERNAME,
            "registered": True,
            "op": True,
            "id": RELAY_ID,
            "color": data.get("color") or RELAY_COLOR,
            "location": "page",
            "date": int(time.time() * 1000),
        })
        return True

    def forward_chat(self, nickname, message):
        """Queue a local chat line for the peer. False if not connected."""
        ws = self.ws
        if self.state != CONNECTED or ws is None:
            return False
        raw = encode_frame(
            MSG_CHAT,
            nickname=f"{LOOP_MARKER} {nickname or 'Anon'}",
            message=message,
            location="page",
        )
        task = asyncio.create_task(self._safe_send(ws, raw))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return True

    async def _safe_send(self, ws, raw):
        try:
            await ws.send(raw)
        except (OSError, websockets.exceptions.WebSocketException) as e:
            logger.warning("[Bot] Could not forward chat: %s", e)
