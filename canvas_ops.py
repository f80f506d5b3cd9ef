import itertools

from canvas_protocol import *
from canvas_grid import Link, cell_index

MAX_COLOR = 0xFFFFFF
MAX_URL_LENGTH = 2048


class CanvasError(Exception):
    code = "ERROR"


class InvalidRectangleError(CanvasError):
    code = ERR_INVALID_RECTANGLE


class FetchBoundsError(CanvasError):
    code = ERR_BOUNDS_EXCEEDED

    def __init__(self, volume, cap):
        super().__init__(f"fetch of {volume} tiles exceeds cap of {cap}")
        self.volume = volume
        self.cap = cap


def _is_int(value):
    return isinstance(value, int) and not isinstance(value, bool)

# --- Fetch ---

class FetchResolver:
    def __init__(self, store, cap=DEFAULT_FETCH_CAP):
        self.store = store
        self.cap = cap

    def parse_rectangles(self, rects):
        """Return a list of {axis: (lo, hi)} or raise InvalidRectangleError."""
        if not isinstance(rects, list):
            raise InvalidRectangleError("rectangles must be a list")
        parsed = []
        for rect in rects:
            if not isinstance(rect, dict):
                raise InvalidRectangleError("rectangle must be an object")
            bounds = {}
            for axis, (lo_key, hi_key) in self.store.geometry.rect_keys.items():
                lo, hi = rect.get(lo_key), rect.get(hi_key)
                if not (_is_int(lo) and _is_int(hi)):
                    raise InvalidRectangleError(f"{lo_key}/{hi_key} must be integers")
                bounds[axis] = (lo, hi)
            parsed.append(bounds)
        return parsed

    @staticmethod
    def volume(bounds):
        total = 1
        for lo, hi in bounds.values():
            total *= max(0, hi - lo + 1)
        return total

    def resolve(self, rects):
        """Materialize every tile covered by ``rects``; key -> tile snapshot.

        The whole request is checked against the cap before any tile is
        created.
        """
        parsed = self.parse_rectangles(rects)
        requested = sum(self.volume(b) for b in parsed)
        if requested > self.cap:
            raise FetchBoundsError(requested, self.cap)

        geometry = self.store.geometry
        tiles = {}
        for bounds in parsed:
            ranges = [range(bounds[a][0], bounds[a][1] + 1) for a in geometry.axes]
            for coord in itertools.product(*ranges):
                key = geometry.key(coord)
                if key in tiles:
                    continue
                tiles[key] = self.store.get_or_create(coord).to_dict()
        return tiles

# --- Write ---

class WriteResult:
    def __init__(self):
        self.accepted = []
        self.rejected = {}  # edit id -> reason code
        self.touched = {}  # key -> Tile

    def tile_updates(self):
        return {key: tile.to_dict() for key, tile in self.touched.items()}


class WriteProcessor:
    """Apply a batch of edit tuples in submission order.

    Layout: tile coordinates (in ``geometry.edit_axes`` order), cell row,
    cell column, client timestamp, character, edit id, then optional
    color, bgcolor and, for directional grids, direction.
    """

    def __init__(self, store):
        self.store = store
        self.n_axes = len(store.geometry.edit_axes)

    def _edit_id(self, raw):
        if not isinstance(raw, list) or len(raw) < self.n_axes + 5:
            return None
        edit_id = raw[self.n_axes + 4]
        if isinstance(edit_id, str) or _is_int(edit_id):
            return edit_id
        return None

    def _field(self, raw, offset):
        index = self.n_axes + offset
        return raw[index] if index < len(raw) else None

    def process(self, edits, privileged=False):
        result = WriteResult()
        if not isinstance(edits, list):
            return result
        seen = set()
        for raw in edits:
            edit_id = self._edit_id(raw)
            # Unacknowledgeable or repeated ids are skipped outright; 1 and "1"
            # share one JSON key, so they count as the same id
            if edit_id is None or str(edit_id) in seen:
                continue
            seen.add(str(edit_id))
            reason = self._apply(raw, privileged, result)
            if reason is None:
                result.accepted.append(edit_id)
            else:
                result.rejected[edit_id] = reason
        return result

    def _apply(self, raw, privileged, result):
        geometry = self.store.geometry
        tile_fields = raw[:self.n_axes]
        if not all(_is_int(v) for v in tile_fields):
            return INVALID_EDIT
        coord = geometry.coord(**dict(zip(geometry.edit_axes, tile_fields)))
        tile = self.store.get_or_create(coord)

        if tile.restricted and not privileged:
            return NO_PERMISSION

        row, col = raw[self.n_axes], raw[self.n_axes + 1]
        if not (_is_int(row) and _is_int(col) and 0 <= row < TILE_ROWS and 0 <= col < TILE_COLS):
            return INVALID_CELL

        char = raw[self.n_axes + 3]
        if char is None or char == "":
            char = BLANK_CHAR
        if not isinstance(char, str) or len(char) != 1:
            return INVALID_EDIT

        color = self._field(raw, 5)
        bgcolor = self._field(raw, 6)
        direction = self._field(raw, 7) if geometry.directional else None
        if color is not None and not (_is_int(color) and 0 <= color <= MAX_COLOR):
            return INVALID_EDIT
        if bgcolor is not None and not (_is_int(bgcolor) and NO_BGCOLOR <= bgcolor <= MAX_COLOR):
            return INVALID_EDIT
        if direction is not None and direction not in DIRECTIONS:
            return INVALID_EDIT

        tile.set_cell(cell_index(row, col), char, color=color, bgcolor=bgcolor, direction=direction)
        result.touched[self.store.key(coord)] = tile
        return None

# --- Links ---

def apply_link(store, frame, privileged=False):
    """Attach a link annotation to one cell. Returns the tile, or None if
    the request is malformed or not permitted."""
    data = frame.get("data")
    link_type = frame.get("type")
    if not isinstance(data, dict) or link_type not in ("url", "coord"):
        return None

    geometry = store.geometry
    named = {a: data.get(f"tile{a.upper()}") for a in geometry.axes}
    row, col = data.get("charY"), data.get("charX")
    if not all(_is_int(v) for v in named.values()):
        return None
    if not (_is_int(row) and _is_int(col) and 0 <= row < TILE_ROWS and 0 <= col < TILE_COLS):
        return None

    if link_type == "url":
        url = data.get("url")
        if not isinstance(url, str) or not url or len(url) > MAX_URL_LENGTH:
            return None
        link = Link("url", url=url)
    else:
        # Coordinate links only address the plane axes
        target = {a: data.get(f"link_tile{a.upper()}") for a in ("x", "y")}
        if not all(_is_int(v) for v in target.values()):
            return None
        link = Link("coord", target=target)

    tile = store.get_or_create(geometry.coord(**named))
    if tile.restricted and not privileged:
        return None
    tile.set_link(row, col, link)
    return tile
