# probe_ring.py
import asyncio
import sys
from typing import List

from channel import MessageChannel, Success
from network import NodeInfo

DEFAULT_MAX_NODES = 64


async def walk(entry: NodeInfo, max_nodes: int = DEFAULT_MAX_NODES) -> List[str]:
    """
    Follow successor pointers from entry until the walk returns to its
    start; one line per node.
    """
    channel = MessageChannel()
    lines: List[str] = []
    result = await channel.info(entry)
    if not isinstance(result, Success):
        return [f"{entry.addr}: UNREACHABLE ({result.reason})"]
    start = node = result.value

    for _ in range(max_nodes):
        pred = await channel.get_pred(node)
        succ = await channel.get_succ(node)
        pred_s = str(pred.value) if isinstance(pred, Success) else f"? ({pred})"
        succ_s = str(succ.value) if isinstance(succ, Success) else f"? ({succ})"
        lines.append(f"Node {node} succ={succ_s} pred={pred_s}")
        if not isinstance(succ, Success) or succ.value == start:
            break
        node = succ.value
    return lines


if __name__ == "__main__":
    # entry point as host:port, default 127.0.0.1:6000
    host, _, port = (sys.argv[1] if len(sys.argv) > 1 else "127.0.0.1:6000").rpartition(":")
    for line in asyncio.run(walk(NodeInfo(0, host, int(port)))):
        print(line)
