import argparse
import asyncio
import json
import random
import string
import time

import websockets

from canvas_protocol import *

SERVER_IP = "127.0.0.1"


async def stress_client(client_id, server_uri, window, write_hz, chat_every):
    write_interval = 1.0 / max(1.0, write_hz)
    while True:
        try:
            # close_timeout=0.2 helps to speed up retry loops if server is unresponsive
            async with websockets.connect(server_uri, close_timeout=0.2) as websocket:
                try:
                    hello = json.loads(await asyncio.wait_for(websocket.recv(), timeout=3.0))
                except (asyncio.TimeoutError, json.JSONDecodeError):
                    print(f"[Client {client_id}] Handshake timeout/error")
                    await asyncio.sleep(0.5)
                    continue
                my_id = hello.get("sender")
                print(f"[Client {client_id}] Connected as {my_id} ({hello.get('initial_user_count')} online)")

                await websocket.send(json.dumps({
                    "kind": MSG_FETCH,
                    "fetchRectangles": [{"minX": -window, "minY": -window, "maxX": window, "maxY": window}],
                    "request": 0,
                }))

                # Split writer and reader so pings keep flowing
                async def reader():
                    counts = {}
                    latencies = []
                    try:
                        async for message in websocket:
                            data = json.loads(message)
                            kind = data.get("kind")
                            counts[kind] = counts.get(kind, 0) + 1
                            if kind == MSG_WRITE and isinstance(data.get("request"), float):
                                latencies.append(time.time() - data["request"])
                    except websockets.exceptions.ConnectionClosed:
                        pass
                    finally:
                        if latencies:
                            avg_ms = sum(latencies) / len(latencies) * 1000.0
                            print(f"[Client {client_id}] Closed. Avg write ack: {avg_ms:.2f} ms, frames {counts}")
                        else:
                            print(f"[Client {client_id}] Closed. Frames {counts}")

                async def writer():
                    sent = 0
                    try:
                        while True:
                            tx = random.randint(-window, window)
                            ty = random.randint(-window, window)
                            edit = [ty, tx, random.randrange(TILE_ROWS), random.randrange(TILE_COLS),
                                    int(time.time() * 1000), random.choice(string.ascii_letters),
                                    sent, random.randint(0, 0xFFFFFF)]
                            await websocket.send(json.dumps({
                                "kind": MSG_WRITE, "edits": [edit], "request": time.time(),
                            }))
                            sent += 1
                            if chat_every and sent % chat_every == 0:
                                await websocket.send(json.dumps({
                                    "kind": MSG_CHAT, "nickname": f"Bot_{client_id}",
                                    "message": f"edit #{sent}", "location": "page",
                                }))
                            await asyncio.sleep(write_interval)
                    except websockets.exceptions.ConnectionClosed:
                        pass

                # Run both until one fails (likely connection closed)
                done, pending = await asyncio.wait(
                    [asyncio.create_task(reader()), asyncio.create_task(writer())],
                    return_when=asyncio.FIRST_COMPLETED
                )

                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)

        except asyncio.CancelledError:
            return
        except (OSError, websockets.exceptions.WebSocketException):
            await asyncio.sleep(0.5)


async def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--count", type=int, default=10, help="Number of clients")
    parser.add_argument("--uri", type=str, default=f"ws://{SERVER_IP}:{DEFAULT_PORT_2D}", help="Server URI")
    parser.add_argument("--window", type=int, default=4, help="Half-width of the tile window to edit")
    parser.add_argument("--write-hz", type=float, default=10.0, help="Write rate per client")
    parser.add_argument("--chat-every", type=int, default=50, help="Send a chat line every N writes (0 = never)")
    args = parser.parse_args()

    print(f"Starting {args.count} stress clients on {args.uri}...")

    tasks = []
    for i in range(args.count):
        tasks.append(asyncio.create_task(
            stress_client(i, args.uri, args.window, args.write_hz, args.chat_every)))

    await asyncio.gather(*tasks, return_exceptions=True)

if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nStopping stress test...")
