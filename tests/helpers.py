import itertools
import socket
from typing import Iterable, List, Optional

from channel import Failed
from network import LoopbackTransport
from node import Node
from utils import hash_key


def get_free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def key_with_hash(target: int, m: int, prefix: str = "key") -> str:
    """First key of the form prefix-N whose identifier is target."""
    for i in itertools.count():
        key = f"{prefix}-{i}"
        if hash_key(key, m) == target:
            return key


def owner_of(id_: int, node_ids: Iterable[int]) -> int:
    ids = sorted(node_ids)
    for node_id in ids:
        if node_id >= id_:
            return node_id
    return ids[0]


async def converge(nodes: List[Node], rounds: Optional[int] = None) -> None:
    """Drive maintenance by hand until pointers and fingers settle."""
    rounds = rounds if rounds is not None else 2 * len(nodes) + 1
    for _ in range(rounds):
        for node in nodes:
            await node.check_predecessor()
            await node.stabilize()
    for node in nodes:
        for i in range(node.m):
            await node.fix_fingers(i)


async def join(node_id: int, bootstrap: Optional[Node], transport: LoopbackTransport, m: int = 3, **kwargs) -> Node:
    node = Node("127.0.0.1", 7000 + node_id, bootstrap.info if bootstrap else None,
                node_id=node_id, m=m, transport=transport, **kwargs)
    await node.start(maintain=False)
    return node


async def make_ring(ids: Iterable[int], m: int = 3, transport: Optional[LoopbackTransport] = None) -> List[Node]:
    """Join nodes in order through the first one, settling after each join."""
    transport = transport or LoopbackTransport()
    nodes: List[Node] = []
    for node_id in ids:
        nodes.append(await join(node_id, nodes[0] if nodes else None, transport, m))
        await converge(nodes)
    return nodes


async def add_with_retry(node: Node, key: str, val: str, ring: List[Node], attempts: int = 5) -> None:
    """Retry an add that hit a node mid-handoff after one more stabilization round."""
    for _ in range(attempts - 1):
        try:
            await node.add(key, val)
            return
        except Failed:
            await converge(ring, rounds=1)
    await node.add(key, val)
