# Shared Configuration
import json

DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT_2D = 8080
DEFAULT_PORT_3D = 8081

# Tile Geometry
TILE_ROWS = 8
TILE_COLS = 16
TILE_CELLS = TILE_ROWS * TILE_COLS  # 128
BLANK_CHAR = " "
DEFAULT_COLOR = 0
NO_BGCOLOR = -1
DEFAULT_DIRECTION = "x+"
DIRECTIONS = ("x+", "x-", "y+", "y-", "z+", "z-")

# Writability (wire values)
WRITABILITY_PUBLIC = 0
WRITABILITY_RESTRICTED = 2

# Fetch limits
DEFAULT_FETCH_CAP = 4096

# Session identities
IDENTITY_RANGE_2D = (0, 9999)
IDENTITY_RANGE_3D = (10000, 99999)

# Protocol Kinds
MSG_CHANNEL = "channel"
MSG_FETCH = "fetch"
MSG_WRITE = "write"
MSG_TILE_UPDATE = "tileUpdate"
MSG_CURSOR = "cursor"
MSG_CHAT = "chat"
MSG_LINK = "link"
MSG_PING = "ping"
MSG_BOUNDARY = "boundary"

# Edit rejection codes
NO_PERMISSION = 1
INVALID_CELL = 2
INVALID_EDIT = 3

# Fetch error codes
ERR_BOUNDS_EXCEEDED = "BOUNDS_EXCEEDED"
ERR_INVALID_RECTANGLE = "INVALID_RECTANGLE"

# Relay Bridge
REMOTE_URL = "wss://www.ourworldoftext.com/ws/?hide=1"
REMOTE_ORIGIN = "https://www.ourworldoftext.com"
REMOTE_USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64)"
RECONNECT_DELAY_SEC = 10
LOOP_MARKER = "[L]"
RELAY_USERNAME = "GlobalRelay"
RELAY_ID = 8888
RELAY_COLOR = "#00ffff"
RELAY_WINDOW = {"centerX": 0, "centerY": 0, "minX": -10, "minY": -10, "maxX": 10, "maxY": 10}


def encode_frame(kind, **fields):
    """Serialize one outbound frame."""
    return json.dumps({"kind": kind, **fields})


def parse_frame(raw):
    """Parse an inbound frame; None if it is not a JSON object with a kind."""
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, TypeError, ValueError, RecursionError):
        return None
    if not isinstance(data, dict) or not isinstance(data.get("kind"), str):
        return None
    return data
