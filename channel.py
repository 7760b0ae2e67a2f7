# channel.py
"""
Peer operations the ring engine calls against other nodes.

Every operation returns an explicit result instead of raising across the RPC
boundary:

    Success(value)     the peer answered; value is already decoded
    NotModified()      notify only: the peer kept its current predecessor
    Unreachable(why)   connect failure, timeout or garbled reply
    Rejected(why)      the peer answered with an error status

Callers that need to surface a failure wrap it in Failed(operation).
"""
import abc
import asyncio
import logging
from dataclasses import dataclass
from http import HTTPStatus
from typing import Any, Callable, Dict, List, Optional, Union

import config
from clock import LogicalClock, process_clock
from network import NodeInfo, TableRep, TcpTransport

logger = logging.getLogger("chord.channel")


class Failed(Exception):
    """A remote operation failed; operation names which one."""

    def __init__(self, operation: str, reason: str = ""):
        super().__init__(f"{operation}: {reason}" if reason else operation)
        self.operation = operation
        self.reason = reason


class Misdirected(Failed):
    """The serving node does not own the key it was asked about."""


@dataclass(frozen=True)
class Success:
    value: Any = None
    ok = True


@dataclass(frozen=True)
class NotModified:
    ok = True


@dataclass(frozen=True)
class Unreachable:
    reason: str = ""
    ok = False


@dataclass(frozen=True)
class Rejected:
    reason: str = ""
    ok = False


RemoteResult = Union[Success, NotModified, Unreachable, Rejected]


def unwrap(result: RemoteResult, operation: str) -> Any:
    """Return the success value or raise Failed(operation)."""
    if isinstance(result, Success):
        return result.value
    if isinstance(result, NotModified):
        return None
    raise Failed(operation, result.reason)


class RpcChannel(abc.ABC):
    @abc.abstractmethod
    async def info(self, node: NodeInfo) -> RemoteResult: ...

    @abc.abstractmethod
    async def get_pred(self, node: NodeInfo) -> RemoteResult: ...

    @abc.abstractmethod
    async def get_succ(self, node: NodeInfo) -> RemoteResult: ...

    @abc.abstractmethod
    async def closest_preceding_finger(self, node: NodeInfo, id_: int) -> RemoteResult: ...

    @abc.abstractmethod
    async def find_successor(self, node: NodeInfo, id_: int) -> RemoteResult: ...

    @abc.abstractmethod
    async def notify(self, node: NodeInfo, rep: TableRep) -> RemoteResult: ...

    @abc.abstractmethod
    async def get(self, node: NodeInfo, key: str) -> RemoteResult: ...

    @abc.abstractmethod
    async def add(self, node: NodeInfo, key: str, val: str) -> RemoteResult: ...

    @abc.abstractmethod
    async def delete(self, node: NodeInfo, key: str, val: str) -> RemoteResult: ...

    @abc.abstractmethod
    async def stabilize(self, node: NodeInfo) -> RemoteResult: ...

    async def is_alive(self, node: NodeInfo) -> bool:
        return isinstance(await self.info(node), Success)


def _node(result: Dict[str, Any]) -> Optional[NodeInfo]:
    return NodeInfo.from_dict(result.get("node"))


class MessageChannel(RpcChannel):
    """
    RpcChannel over any transport exposing
    ``async call(node, message, timeout) -> dict`` (TcpTransport,
    LoopbackTransport). Stamps every request with the logical clock and
    folds the peer's timestamp back in on reply.
    """

    def __init__(self, transport=None, clock: Optional[LogicalClock] = None, timeout: Optional[float] = None):
        self.transport = transport or TcpTransport()
        self.clock = clock or process_clock
        self.timeout = timeout

    async def _call(self, node: NodeInfo, type_: str, payload: Dict[str, Any],
                    decode: Callable[[Dict[str, Any]], Any] = lambda r: None) -> RemoteResult:
        message = {"type": type_, "payload": payload, "ts": self.clock.advance()}
        timeout = self.timeout if self.timeout is not None else config.RPC_TIMEOUT
        try:
            resp = await self.transport.call(node, message, timeout=timeout)
        except (ConnectionError, OSError, asyncio.TimeoutError, ValueError) as e:
            logger.debug("%s -> %s unreachable: %s", type_, node.addr, e)
            return Unreachable(f"{type_} {node.addr}: {e}")

        if not isinstance(resp, dict):
            return Unreachable(f"{type_} {node.addr}: malformed reply {resp!r}")
        try:
            self.clock.advance(resp.get("ts"))
        except (TypeError, ValueError):
            return Unreachable(f"{type_} {node.addr}: bad timestamp {resp.get('ts')!r}")
        status = resp.get("status", HTTPStatus.INTERNAL_SERVER_ERROR)
        if isinstance(status, bool) or not isinstance(status, int):
            return Unreachable(f"{type_} {node.addr}: bad status {status!r}")
        if status == HTTPStatus.NOT_MODIFIED and type_ == "NOTIFY":
            return NotModified()
        if status >= HTTPStatus.MULTIPLE_CHOICES:
            return Rejected(f"{type_} {node.addr}: {status} {resp.get('error', '')}".rstrip())
        try:
            return Success(decode(resp.get("result") or {}))
        except (KeyError, TypeError, ValueError) as e:
            return Unreachable(f"{type_} {node.addr}: undecodable reply: {e}")

    async def info(self, node: NodeInfo) -> RemoteResult:
        return await self._call(node, "INFO", {}, _node)

    async def get_pred(self, node: NodeInfo) -> RemoteResult:
        return await self._call(node, "PRED", {}, _node)

    async def get_succ(self, node: NodeInfo) -> RemoteResult:
        return await self._call(node, "SUCC", {}, _node)

    async def closest_preceding_finger(self, node: NodeInfo, id_: int) -> RemoteResult:
        return await self._call(node, "FINGER", {"id": id_}, _node)

    async def find_successor(self, node: NodeInfo, id_: int) -> RemoteResult:
        return await self._call(node, "FIND", {"id": id_}, _node)

    async def notify(self, node: NodeInfo, rep: TableRep) -> RemoteResult:
        return await self._call(node, "NOTIFY", {"table": rep.to_dict()},
                                lambda r: TableRep.from_dict(r["table"]))

    async def get(self, node: NodeInfo, key: str) -> RemoteResult:
        def decode(r: Dict[str, Any]) -> List[str]:
            return [str(v) for v in r.get("vals", [])]
        return await self._call(node, "GET", {"key": key}, decode)

    async def add(self, node: NodeInfo, key: str, val: str) -> RemoteResult:
        return await self._call(node, "ADD", {"key": key, "val": val})

    async def delete(self, node: NodeInfo, key: str, val: str) -> RemoteResult:
        return await self._call(node, "DELETE", {"key": key, "val": val})

    async def stabilize(self, node: NodeInfo) -> RemoteResult:
        return await self._call(node, "STABILIZE", {})
