import json

from canvas_protocol import *
from canvas_client import CanvasClient
from canvas_grid import Tile


def blank_tile():
    return Tile((0, 0), WRITABILITY_PUBLIC).to_dict()


def test_handshake_sets_identity():
    client = CanvasClient()
    client.handle_message(json.dumps({"kind": MSG_CHANNEL, "sender": 77, "initial_user_count": 3}))
    assert client.my_id == 77
    assert client.user_count == 3


def test_fetch_and_tile_updates_fill_cache():
    client = CanvasClient()
    client.handle_message(json.dumps({"kind": MSG_FETCH, "tiles": {"0,0": blank_tile()}, "request": 1}))
    updated = blank_tile()
    updated["content"] = "A" + updated["content"][1:]
    client.handle_message(json.dumps({"kind": MSG_TILE_UPDATE, "tiles": {"0,0": updated}}))
    assert client.get_char("0,0", 0, 0) == "A"
    assert client.get_char("9,9", 0, 0) is None
    assert client.acks[1]["kind"] == MSG_FETCH


def test_fetch_error_recorded():
    client = CanvasClient()
    client.handle_message(json.dumps({"kind": MSG_FETCH, "error": ERR_BOUNDS_EXCEEDED, "request": 2}))
    assert client.errors == [ERR_BOUNDS_EXCEEDED]
    assert client.tiles == {}


def test_cursor_and_chat_tracking():
    client = CanvasClient(chat_history=2)
    client.handle_message(json.dumps({"kind": MSG_CURSOR, "channel": 5, "position": [1, 2], "hidden": False}))
    assert client.cursors == {5: [1, 2]}
    client.handle_message(json.dumps({"kind": MSG_CURSOR, "channel": 5, "hidden": True}))
    assert client.cursors == {}

    for n in range(3):
        client.handle_message(json.dumps({"kind": MSG_CHAT, "nickname": "a", "message": str(n), "id": 1}))
    assert [m for _, m, _ in client.get_render_state()["chat"]] == ["1", "2"]


def test_requests_are_queued_with_tokens():
    client = CanvasClient()
    first = client.write([[0, 0, 0, 0, 0, "a", 1]])
    second = client.fetch([{"minX": 0, "minY": 0, "maxX": 0, "maxY": 0}])
    assert second == first + 1
    queued = [client.msg_queue.get(), client.msg_queue.get()]
    assert queued[0] == {"kind": MSG_WRITE, "edits": [[0, 0, 0, 0, 0, "a", 1]], "request": first}
    assert queued[1]["fetchRectangles"][0]["maxX"] == 0


def test_garbage_ignored():
    client = CanvasClient()
    client.handle_message("nope")
    assert client.my_id is None
