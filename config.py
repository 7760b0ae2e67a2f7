# config.py
M: int = 32                # identifier bits; ring size is 2^M
SUCCESSOR_LIST_SIZE: int = 3
RPC_TIMEOUT: float = 2.0
STABILIZE_INTERVAL: float = 1.0
FIX_FINGERS_INTERVAL: float = 1.0
CHECK_PREDECESSOR_INTERVAL: float = 1.0
MAX_LOOKUP_HOPS: int = 256
MAX_MESSAGE_SIZE: int = 1 << 20   # stream limit for one JSON line

LOG_LEVEL: str = "INFO"
LOG_FORMAT: str = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
