# network.py
import asyncio
import json
from dataclasses import dataclass, field
from typing import Callable, Awaitable, Dict, Any, List, Optional, Tuple

import config

# JSON-lines RPC for the ring.
# Requests:  {"type": "...", "payload": {...}, "ts": <clock>}
# Responses: {"status": <http code>, "result": {...} | "error": "...", "ts": <clock>}

Handler = Callable[[Dict[str, Any], Tuple[str, int]], Awaitable[Dict[str, Any]]]


@dataclass(frozen=True)
class NodeInfo:
    id: int
    host: str = field(compare=False)
    port: int = field(compare=False)

    @property
    def addr(self) -> str:
        return f"{self.host}:{self.port}"

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "host": self.host, "port": self.port}

    @staticmethod
    def from_dict(d: Optional[Dict[str, Any]]) -> Optional['NodeInfo']:
        if not d:
            return None
        return NodeInfo(int(d["id"]), d["host"], int(d["port"]))

    def __str__(self) -> str:
        return f"{self.id}@{self.addr}"


@dataclass
class TableRow:
    key: str
    vals: List[str]

    def to_dict(self) -> Dict[str, Any]:
        return {"key": self.key, "vals": list(self.vals)}

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> 'TableRow':
        return TableRow(str(d["key"]), [str(v) for v in d.get("vals", [])])


@dataclass
class TableRep:
    """A batch of bindings exchanged on notify; owner is the sending node."""
    owner: NodeInfo
    entries: List[TableRow] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"owner": self.owner.to_dict(), "entries": [row.to_dict() for row in self.entries]}

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> 'TableRep':
        owner = NodeInfo.from_dict(d.get("owner"))
        if owner is None:
            raise ValueError("table without owner")
        return TableRep(owner, [TableRow.from_dict(e) for e in d.get("entries", [])])


# RPC Server ---------------------------------------------------------
class RPCServer:
    def __init__(self, host: str, port: int, handler: Handler):
        self.host = host
        self.port = port
        self._handler = handler
        self._server: asyncio.AbstractServer | None = None

    async def start(self) -> None:
        self._server = await asyncio.start_server(
            self._client_connected, self.host, self.port, limit=config.MAX_MESSAGE_SIZE
        )

    async def _client_connected(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        peer = writer.get_extra_info("peername")
        try:
            data = await reader.readline()
            if not data:
                return
            try:
                msg = json.loads(data.decode())
            except ValueError as e:
                out = {"status": 400, "error": f"bad-json: {e}"}
            else:
                out = await self._handler(msg, peer)
            writer.write(json.dumps(out).encode() + b"\n")
            await writer.drain()
        except (ConnectionError, ValueError, asyncio.IncompleteReadError):
            # peer went away or sent a line over MAX_MESSAGE_SIZE
            pass
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except ConnectionError:
                pass

    async def stop(self) -> None:
        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None


# RPC Client ---------------------------------------------------------
class RPCClient:
    async def call(self, node: NodeInfo, message: Dict[str, Any], timeout: float = config.RPC_TIMEOUT) -> Dict[str, Any]:
        """
        One-shot JSON RPC call. Returns parsed dict. Raises on failure.
        """
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(node.host, node.port, limit=config.MAX_MESSAGE_SIZE), timeout=timeout
            )
        except (OSError, asyncio.TimeoutError) as e:
            raise ConnectionError(f"connect-failed {node.addr}: {e}")

        try:
            writer.write(json.dumps(message).encode() + b"\n")
            await writer.drain()
            data = await asyncio.wait_for(reader.readline(), timeout=timeout)
            if not data:
                raise ConnectionError("no response")
            return json.loads(data.decode())
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except (OSError, asyncio.TimeoutError):
                pass


# Transports ---------------------------------------------------------
class TcpTransport:
    """Calls peers with RPCClient and serves with RPCServer."""

    def __init__(self):
        self._client = RPCClient()

    async def call(self, node: NodeInfo, message: Dict[str, Any], timeout: float = config.RPC_TIMEOUT) -> Dict[str, Any]:
        return await self._client.call(node, message, timeout=timeout)

    def listen(self, host: str, port: int, handler: Handler) -> RPCServer:
        return RPCServer(host, port, handler)


class _LoopbackListener:
    def __init__(self, transport: 'LoopbackTransport', host: str, port: int, handler: Handler):
        self._transport = transport
        self._addr = (host, port)
        self._handler = handler

    async def start(self) -> None:
        self._transport.register(self._addr, self._handler)

    async def stop(self) -> None:
        self._transport.unregister(self._addr)


class LoopbackTransport:
    """
    In-process transport: every node of a ring shares one instance and calls
    reach the peer's handler directly. Messages still go through a JSON round
    trip so anything that works here also serializes over TCP.
    """

    def __init__(self):
        self._handlers: Dict[Tuple[str, int], Handler] = {}

    def register(self, addr: Tuple[str, int], handler: Handler) -> None:
        self._handlers[addr] = handler

    def unregister(self, addr: Tuple[str, int]) -> None:
        self._handlers.pop(addr, None)

    def listen(self, host: str, port: int, handler: Handler) -> _LoopbackListener:
        return _LoopbackListener(self, host, port, handler)

    async def call(self, node: NodeInfo, message: Dict[str, Any], timeout: float = config.RPC_TIMEOUT) -> Dict[str, Any]:
        handler = self._handlers.get((node.host, node.port))
        if handler is None:
            raise ConnectionError(f"connect-failed {node.addr}: no listener")
        request = json.loads(json.dumps(message))
        response = await asyncio.wait_for(handler(request, ("loopback", 0)), timeout=timeout)
        return json.loads(json.dumps(response))
