import asyncio
import itertools
import json
import logging
import queue
import threading
from collections import deque

import websockets

from canvas_protocol import *

logger = logging.getLogger(__name__)


class CanvasClient:
    """Protocol client running its own asyncio loop on a background thread.

    Frames are queued from the caller's thread and sent by the network
    thread; received frames are folded into a local view of the canvas
    guarded by ``state_lock``.
    """

    def __init__(self, chat_history=200):
        self.ws = None
        self.thread = None
        self.running = False

        self.state_lock = threading.Lock()

        self.my_id = None
        self.user_count = 0
        self.tiles = {}  # coord key -> tile snapshot
        self.cursors = {}  # identity -> position
        self.chat = deque(maxlen=chat_history)
        self.acks = {}  # request token -> write/fetch response
        self.errors = []

        self.msg_queue = queue.Queue()  # For sending out from Main Thread
        self._tokens = itertools.count(1)

    def connect_and_start(self, uri):
        self.running = True
        self.thread = threading.Thread(target=self._run_loop, args=(uri,), daemon=True)
        self.thread.start()

    def _run_loop(self, uri):
        asyncio.run(self._async_connect(uri))

    async def _async_connect(self, uri):
        try:
            async with websockets.connect(uri) as ws:
                self.ws = ws
                send_task = asyncio.create_task(self._sender(ws))
                try:
                    async for message in ws:
                        self.handle_message(message)
                except websockets.exceptions.ConnectionClosed:
                    logger.info("Connection closed")
                finally:
                    send_task.cancel()
        except (OSError, websockets.exceptions.WebSocketException) as e:
            logger.error("Connection error: %s", e)
        finally:
            self.running = False

    async def _sender(self, ws):
        while True:
            while not self.msg_queue.empty():
                msg = self.msg_queue.get()
                if msg is None:
                    await ws.close()
                    return
                await ws.send(json.dumps(msg))
            await asyncio.sleep(0.01)

    def handle_message(self, message):
        data = parse_frame(message)
        if data is None:
            return
        kind = data["kind"]

        with self.state_lock:
            if kind == MSG_CHANNEL:
                self.my_id = data.get("sender")
                self.user_count = data.get("initial_user_count", 0)

            elif kind == MSG_FETCH:
                if "error" in data:
                    self.errors.append(data["error"])
                else:
                    self.tiles.update(data.get("tiles") or {})
                self.acks[data.get("request")] = data

            elif kind == MSG_TILE_UPDATE:
                self.tiles.update(data.get("tiles") or {})

            elif kind == MSG_WRITE:
                self.acks[data.get("request")] = data

            elif kind == MSG_CHAT:
                self.chat.append((data.get("nickname"), data.get("message"), data.get("id")))

            elif kind == MSG_CURSOR:
                channel = data.get("channel")
                if data.get("hidden"):
                    self.cursors.pop(channel, None)
                else:
                    self.cursors[channel] = data.get("position")

    def next_token(self):
        return next(self._tokens)

    def fetch(self, rectangles, rect_field="fetchRectangles"):
        token = self.next_token()
        self.msg_queue.put({"kind": MSG_FETCH, rect_field: rectangles, "request": token})
        return token

    def write(self, edits):
        token = self.next_token()
        self.msg_queue.put({"kind": MSG_WRITE, "edits": edits, "request": token})
        return token

    def send_chat(self, nickname, message, color=0):
        self.msg_queue.put({
            "kind": MSG_CHAT,
            "nickname": nickname,
            "message": message,
            "color": color,
            "location": "page",
        })

    def send_cursor(self, position, hidden=False):
        self.msg_queue.put({"kind": MSG_CURSOR, "position": position, "hidden": hidden})

    def stop(self):
        self.msg_queue.put(None)
        self.running = False

    def get_char(self, key, row, col):
        with self.state_lock:
            tile = self.tiles.get(key)
            if tile is None:
                return None
            return tile["content"][row * TILE_COLS + col]

    def get_render_state(self):
        with self.state_lock:
            return {
                "my_id": self.my_id,
                "tiles": dict(self.tiles),
                "cursors": dict(self.cursors),
                "chat": list(self.chat),
            }
