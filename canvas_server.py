import argparse
import asyncio
import hmac
import json
import logging
import os
import random
import time
from urllib.parse import parse_qs, urlsplit

import websockets

from canvas_protocol import *
from canvas_grid import GEOMETRY_2D, GEOMETRY_3D, DEFAULT_ZONES_2D, GridStore
from canvas_ops import CanvasError, FetchResolver, WriteProcessor, apply_link
from canvas_relay import RelayBridge

logger = logging.getLogger(__name__)

# --- Sessions ---

class Session:
    def __init__(self, identity, websocket, privileged=False):
        self.identity = identity
        self.websocket = websocket
        self.privileged = privileged
        self.connected = True


class SessionRegistry:
    """Connected sessions of one namespace plus best-effort fan-out.

    Sends are scheduled as tasks in call order, so every session sees
    frames in the order they were produced and callers never wait on a
    slow socket.
    """

    def __init__(self, identity_range=IDENTITY_RANGE_2D):
        self.identity_range = identity_range
        self.sessions = {}  # websocket -> Session
        self._pending = set()

    def __len__(self):
        return len(self.sessions)

    def identities(self):
        return {s.identity for s in self.sessions.values()}

    def _allocate_identity(self):
        lo, hi = self.identity_range
        taken = self.identities()
        for _ in range(32):
            identity = random.randint(lo, hi)
            if identity not in taken:
                return identity
        # Range crowded: take the lowest free value
        for identity in range(lo, hi + 1):
            if identity not in taken:
                return identity
        return max(taken) + 1

    async def connect(self, websocket, privileged=False):
        session = Session(self._allocate_identity(), websocket, privileged)
        self.sessions[websocket] = session
        try:
            await websocket.send(encode_frame(
                MSG_CHANNEL,
                sender=session.identity,
                initial_user_count=len(self.sessions),
            ))
        except websockets.exceptions.ConnectionClosed:
            del self.sessions[websocket]
            session.connected = False
            raise
        return session

    def disconnect(self, session):
        if self.sessions.pop(session.websocket, None) is None:
            return
        session.connected = False
        self.broadcast({"kind": MSG_CURSOR, "channel": session.identity, "hidden": True})

    async def _safe_send(self, session, raw):
        try:
            await session.websocket.send(raw)
        except Exception as e:
            logger.debug("Dropped frame for %s: %s", session.identity, e)

    def _schedule(self, session, raw):
        task = asyncio.create_task(self._safe_send(session, raw))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def send(self, session, message):
        self._schedule(session, json.dumps(message))

    def broadcast(self, message, exclude=None):
        raw = json.dumps(message)
        for session in list(self.sessions.values()):
            if session is exclude or not session.connected:
                continue
            self._schedule(session, raw)

    async def drain(self):
        """Wait until every scheduled send has finished."""
        while self._pending:
            await asyncio.gather(*list(self._pending))

# --- Namespaces ---

class NamespaceConfig:
    def __init__(self, name, geometry, zones=None, identity_range=IDENTITY_RANGE_2D,
                 fetch_cap=DEFAULT_FETCH_CAP, echo_chat=True, banner=()):
        self.name = name
        self.geometry = geometry
        self.zones = zones
        self.identity_range = identity_range
        self.fetch_cap = fetch_cap
        self.echo_chat = echo_chat
        self.banner = banner  # (tile_x, tile_y, char_x, char_y, text)


def namespace_2d(fetch_cap=DEFAULT_FETCH_CAP):
    return NamespaceConfig(
        "2d", GEOMETRY_2D,
        zones=DEFAULT_ZONES_2D,
        identity_range=IDENTITY_RANGE_2D,
        fetch_cap=fetch_cap,
        echo_chat=True,
        banner=(
            (-1, -2, 6, 4, "Welcome to TinyOWOT!"),
            (-1, -1, 7, 4, "Square of Publicity"),
        ),
    )


def namespace_3d(fetch_cap=DEFAULT_FETCH_CAP):
    return NamespaceConfig(
        "3d", GEOMETRY_3D,
        identity_range=IDENTITY_RANGE_3D,
        fetch_cap=fetch_cap,
        echo_chat=False,
    )


class CanvasNamespace:
    """One independent grid: store, sessions and the message handler.

    Every handler below runs to completion without awaiting, so a mutation
    and the frames it produces are never interleaved with another event.
    """

    def __init__(self, config, admin_key=None):
        self.config = config
        self.admin_key = admin_key
        self.store = GridStore(config.geometry, config.zones)
        self.registry = SessionRegistry(config.identity_range)
        self.fetcher = FetchResolver(self.store, config.fetch_cap)
        self.writer = WriteProcessor(self.store)
        self.bridge = None
        self.handlers = {
            MSG_FETCH: self.on_fetch,
            MSG_WRITE: self.on_write,
            MSG_CHAT: self.on_chat,
            MSG_CURSOR: self.on_cursor,
            MSG_LINK: self.on_link,
        }
        for banner in config.banner:
            self.store.write_text(*banner)

    def is_privileged(self, websocket):
        if not self.admin_key:
            return False
        request = getattr(websocket, "request", None)
        if request is None:
            return False
        key = parse_qs(urlsplit(request.path).query).get("key", [""])[0]
        return hmac.compare_digest(key.encode(), self.admin_key.encode())

    async def handler(self, websocket):
        try:
            session = await self.registry.connect(websocket, privileged=self.is_privileged(websocket))
        except websockets.exceptions.ConnectionClosed:
            return
        remote = websocket.remote_address[0] if getattr(websocket, "remote_address", None) else "unknown"
        logger.info("[%s] New connection: %s(%s)", self.config.name, remote, session.identity)

        try:
            async for message in websocket:
                data = parse_frame(message)
                if data is None:
                    logger.debug("[%s] Dropped malformed frame from %s", self.config.name, session.identity)
                    continue
                self.handle_message(session, data)
        except websockets.exceptions.ConnectionClosed:
            pass
        finally:
            self.registry.disconnect(session)
            logger.info("[%s] Connection closed: %s", self.config.name, session.identity)

    def handle_message(self, session, data):
        handler = self.handlers.get(data["kind"])
        if handler is not None:
            handler(session, data)

    def on_fetch(self, session, data):
        token = data.get("request")
        try:
            tiles = self.fetcher.resolve(data.get(self.config.geometry.rect_field))
        except CanvasError as e:
            logger.warning("[%s] Rejected fetch from %s: %s", self.config.name, session.identity, e)
            self.registry.send(session, {"kind": MSG_FETCH, "error": e.code, "request": token})
            return
        self.registry.send(session, {"kind": MSG_FETCH, "tiles": tiles, "request": token})

    def on_write(self, session, data):
        result = self.writer.process(data.get("edits"), privileged=session.privileged)
        self.registry.send(session, {
            "kind": MSG_WRITE,
            "accepted": result.accepted,
            "rejected": result.rejected,
            "request": data.get("request"),
        })
        if result.touched:
            self.registry.broadcast({
                "kind": MSG_TILE_UPDATE,
                "source": "write",
                "channel": session.identity,
                "tiles": result.tile_updates(),
            }, exclude=session)

    def on_chat(self, session, data):
        message = data.get("message")
        if not isinstance(message, str) or not message:
            return
        nickname = data.get("nickname") if isinstance(data.get("nickname"), str) else ""
        self.registry.broadcast({
            "kind": MSG_CHAT,
            "nickname": nickname,
            "message": message,
            "id": session.identity,
            "color": data.get("color"),
            "location": data.get("location"),
            "date": int(time.time() * 1000),
        }, exclude=None if self.config.echo_chat else session)

        if self.bridge is not None:
            self.bridge.forward_chat(nickname, message)

    def on_cursor(self, session, data):
        self.registry.broadcast({
            "kind": MSG_CURSOR,
            "channel": session.identity,
            "position": data.get("position"),
            "hidden": bool(data.get("hidden")),
        }, exclude=session)

    def on_link(self, session, data):
        tile = apply_link(self.store, data, privileged=session.privileged)
        if tile is None:
            return
        # No direct reply for links, so the sender hears about it too
        self.registry.broadcast({
            "kind": MSG_TILE_UPDATE,
            "source": "link",
            "channel": session.identity,
            "tiles": {self.store.key(tile.coord): tile.to_dict()},
        })

# --- Main Server ---

class ServerConfig:
    def __init__(self, host=DEFAULT_HOST, port_2d=DEFAULT_PORT_2D, port_3d=DEFAULT_PORT_3D,
                 token=None, admin_key=None, fetch_cap=DEFAULT_FETCH_CAP, remote_url=REMOTE_URL):
        self.host = host
        self.port_2d = port_2d
        self.port_3d = port_3d
        self.token = token
        self.admin_key = admin_key
        self.fetch_cap = fetch_cap
        self.remote_url = remote_url


def build_arg_parser():
    env = os.environ
    parser = argparse.ArgumentParser(description="Shared text canvas server")
    parser.add_argument("--host", type=str, default=env.get("HOST", DEFAULT_HOST))
    parser.add_argument("--port", type=int, default=int(env.get("PORT", DEFAULT_PORT_2D)), help="2D canvas port")
    parser.add_argument("--port-3d", type=int, default=int(env.get("PORT3D", DEFAULT_PORT_3D)), help="3D canvas port")
    parser.add_argument("--fetch-cap", type=int, default=int(env.get("CANVAS_FETCH_CAP", DEFAULT_FETCH_CAP)),
                        help="Max tiles per fetch request")
    parser.add_argument("--remote-url", type=str, default=REMOTE_URL, help="Relay peer URL")
    parser.add_argument("--log-level", type=str, default="INFO")
    return parser


def load_config(argv=None):
    args = build_arg_parser().parse_args(argv)
    config = ServerConfig(
        host=args.host,
        port_2d=args.port,
        port_3d=args.port_3d,
        token=os.environ.get("UVIAS_TOKEN") or None,
        admin_key=os.environ.get("CANVAS_ADMIN_KEY") or None,
        fetch_cap=args.fetch_cap,
        remote_url=args.remote_url,
    )
    return config, args


class CanvasServer:
    def __init__(self, config):
        self.config = config
        self.plane = CanvasNamespace(namespace_2d(config.fetch_cap), admin_key=config.admin_key)
        self.volume = CanvasNamespace(namespace_3d(config.fetch_cap), admin_key=config.admin_key)

        self.bridge_task = None
        self.bridge = None
        if config.token:
            self.bridge = RelayBridge(self.plane.registry, config.token, url=config.remote_url)
            self.plane.bridge = self.bridge
        else:
            logger.warning("UVIAS_TOKEN is not set; relay bridge disabled")

    async def start(self):
        # Increase ping_timeout to avoid 1011 errors on laggy networks
        async with websockets.serve(self.plane.handler, self.config.host, self.config.port_2d,
                                    ping_interval=20, ping_timeout=60), \
                websockets.serve(self.volume.handler, self.config.host, self.config.port_3d,
                                 ping_interval=20, ping_timeout=60):
            logger.info("2D canvas started on ws://%s:%s", self.config.host, self.config.port_2d)
            logger.info("3D canvas started on ws://%s:%s", self.config.host, self.config.port_3d)
            if self.bridge is not None:
                self.bridge_task = asyncio.create_task(self.bridge.run())
                self.bridge_task.add_done_callback(self._bridge_done)
            await asyncio.Future()

    def _bridge_done(self, task):
        if not task.cancelled() and task.exception() is not None:
            logger.error("Relay bridge stopped: %s", task.exception())


def main(argv=None):
    config, args = load_config(argv)
    logging.basicConfig(
        level=args.log_level.upper(),
        format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    server = CanvasServer(config)
    try:
        asyncio.run(server.start())
    except KeyboardInterrupt:
        logger.info("Server stopped.")


if __name__ == "__main__":
    main()
