import numpy as np

from canvas_protocol import *

# --- Addressing ---

class Geometry:
    """Axis layout of one grid namespace.

    ``axes`` is the canonical key order, ``edit_axes`` the order tile
    coordinates appear in an edit tuple, and ``rect_keys`` the (min, max)
    field names a fetch rectangle uses for each axis.
    """

    def __init__(self, name, axes, edit_axes, rect_field, rect_keys, directional=False):
        self.name = name
        self.axes = axes
        self.edit_axes = edit_axes
        self.rect_field = rect_field
        self.rect_keys = rect_keys
        self.directional = directional

    def coord(self, **named):
        return tuple(named[a] for a in self.axes)

    def named(self, coord):
        return dict(zip(self.axes, coord))

    def key(self, coord):
        return ",".join(str(c) for c in coord)

    def parse_key(self, key):
        return tuple(int(part) for part in key.split(","))


GEOMETRY_2D = Geometry(
    "2d",
    axes=("y", "x"),
    edit_axes=("y", "x"),
    rect_field="fetchRectangles",
    rect_keys={"y": ("minY", "maxY"), "x": ("minX", "maxX")},
)

GEOMETRY_3D = Geometry(
    "3d",
    axes=("x", "y", "z"),
    edit_axes=("z", "y", "x"),
    rect_field="regions",
    rect_keys={"x": ("xMin", "xMax"), "y": ("yMin", "yMax"), "z": ("zMin", "zMax")},
    directional=True,
)


class ZoneBounds:
    """Restricted ring: inside ``outer`` and outside ``hollow``.

    Both are dicts of axis -> (lo, hi), inclusive. Axes not listed are
    unconstrained.
    """

    def __init__(self, outer, hollow=None):
        self.outer = outer
        self.hollow = hollow

    @staticmethod
    def _inside(bounds, named):
        return all(lo <= named[axis] <= hi for axis, (lo, hi) in bounds.items())

    def classify(self, named):
        if not self._inside(self.outer, named):
            return WRITABILITY_PUBLIC
        if self.hollow is not None and self._inside(self.hollow, named):
            return WRITABILITY_PUBLIC
        return WRITABILITY_RESTRICTED


# Square of publicity around the origin
DEFAULT_ZONES_2D = ZoneBounds(
    outer={"x": (-2, 1), "y": (-2, 1)},
    hollow={"x": (-1, 0), "y": (-1, 0)},
)

# --- Tiles ---

class Link:
    def __init__(self, link_type, url=None, target=None):
        self.link_type = link_type  # "url" or "coord"
        self.url = url
        self.target = target  # axis -> int, for "coord" links

    def to_dict(self):
        if self.link_type == "url":
            return {"type": "url", "url": self.url}
        data = {"type": "coord"}
        for axis, value in self.target.items():
            data[f"link_tile{axis.upper()}"] = value
        return data

    @classmethod
    def from_dict(cls, data):
        if data.get("type") == "url":
            return cls("url", url=data["url"])
        target = {}
        for field, value in data.items():
            if field.startswith("link_tile"):
                target[field[len("link_tile"):].lower()] = value
        return cls("coord", target=target)

    def __eq__(self, other):
        return isinstance(other, Link) and self.to_dict() == other.to_dict()


class Tile:
    def __init__(self, coord, writability, directional=False):
        self.coord = coord
        self._writability = writability
        self.content = [BLANK_CHAR] * TILE_CELLS
        self.color = np.full(TILE_CELLS, DEFAULT_COLOR, dtype=np.int64)
        self.bgcolor = np.full(TILE_CELLS, NO_BGCOLOR, dtype=np.int64)
        self.directions = [DEFAULT_DIRECTION] * TILE_CELLS if directional else None
        self.links = {}  # (row, col) -> Link

    @property
    def writability(self):
        return self._writability

    @property
    def restricted(self):
        return self._writability == WRITABILITY_RESTRICTED

    def set_cell(self, index, char, color=None, bgcolor=None, direction=None):
        self.content[index] = char
        if color is not None:
            self.color[index] = color
        if bgcolor is not None:
            self.bgcolor[index] = bgcolor
        if direction is not None and self.directions is not None:
            self.directions[index] = direction

    def set_link(self, row, col, link):
        self.links[(row, col)] = link

    def get_link(self, row, col):
        return self.links.get((row, col))

    def to_dict(self):
        cell_props = {}
        for row, col in sorted(self.links):
            cell_props.setdefault(str(row), {})[str(col)] = {"link": self.links[(row, col)].to_dict()}
        data = {
            "content": "".join(self.content),
            "properties": {
                "writability": self._writability,
                "color": self.color.tolist(),
                "bgcolor": self.bgcolor.tolist(),
                "cell_props": cell_props,
            },
        }
        if self.directions is not None:
            data["directions"] = list(self.directions)
        return data

    @classmethod
    def from_dict(cls, coord, data):
        props = data["properties"]
        content = list(data["content"])
        if len(content) != TILE_CELLS:
            raise ValueError(f"tile content must hold {TILE_CELLS} cells, got {len(content)}")
        tile = cls(coord, props["writability"], directional="directions" in data)
        tile.content = content
        tile.color = np.array(props["color"], dtype=np.int64)
        tile.bgcolor = np.array(props["bgcolor"], dtype=np.int64)
        if tile.directions is not None:
            tile.directions = list(data["directions"])
        for row, cols in props.get("cell_props", {}).items():
            for col, cell in cols.items():
                if "link" in cell:
                    tile.links[(int(row), int(col))] = Link.from_dict(cell["link"])
        return tile


def cell_index(row, col):
    return row * TILE_COLS + col

# --- Store ---

class GridStore:
    """Tile map for one namespace. Tiles are created lazily and never removed."""

    def __init__(self, geometry, zones=None):
        self.geometry = geometry
        self.zones = zones
        self.tiles = {}  # canonical key -> Tile

    def classify_zone(self, coord):
        if self.zones is None:
            return WRITABILITY_PUBLIC
        return self.zones.classify(self.geometry.named(coord))

    def key(self, coord):
        return self.geometry.key(coord)

    def get(self, coord):
        return self.tiles.get(self.key(coord))

    def get_or_create(self, coord):
        key = self.key(coord)
        tile = self.tiles.get(key)
        if tile is None:
            tile = Tile(coord, self.classify_zone(coord), directional=self.geometry.directional)
            self.tiles[key] = tile
        return tile

    def __len__(self):
        return len(self.tiles)

    def __contains__(self, coord):
        return self.key(coord) in self.tiles

    def write_text(self, tile_x, tile_y, char_x, char_y, text, **fixed):
        """Write a run of characters left to right, flowing into neighbouring
        tiles along the row. Zones are not consulted.

        ``fixed`` supplies the remaining axes (e.g. ``z=0``) for 3D grids.
        """
        gy = tile_y * TILE_ROWS + char_y
        for i, char in enumerate(text):
            gx = tile_x * TILE_COLS + char_x + i
            tx, cx = divmod(gx, TILE_COLS)
            ty, cy = divmod(gy, TILE_ROWS)
            tile = self.get_or_create(self.geometry.coord(x=tx, y=ty, **fixed))
            tile.set_cell(cell_index(cy, cx), char)
