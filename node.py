# node.py
import asyncio
import logging
from http import HTTPStatus
from typing import Optional, List, Dict, Any, Callable, Awaitable

import config
from channel import Failed, Misdirected, MessageChannel, NotModified, Success, unwrap
from clock import LogicalClock, process_clock
from network import NodeInfo, TableRep, TableRow, TcpTransport
from storage import KeyValueStore
from utils import between, distance, hash_bytes_to_int, hash_key, ring_size

logger = logging.getLogger("chord")


def _reply(status: HTTPStatus = HTTPStatus.OK, result: Optional[Dict[str, Any]] = None,
           error: Optional[str] = None) -> Dict[str, Any]:
    out: Dict[str, Any] = {"status": int(status)}
    if result is not None:
        out["result"] = result
    if error is not None:
        out["error"] = error
    return out


def _node_dict(node: Optional[NodeInfo]) -> Optional[Dict[str, Any]]:
    return node.to_dict() if node is not None else None


# ---- Routing table (fingers) ----
class RoutingTable:
    def __init__(self, self_id: int, m: int = config.M):
        self.self_id = self_id
        self.m = m
        # fingers[i] converges to successor(self_id + 2^i)
        self.fingers: List[Optional[NodeInfo]] = [None] * m

    def start(self, i: int) -> int:
        return (self.self_id + (1 << i)) % ring_size(self.m)

    def set_finger(self, i: int, node: NodeInfo) -> None:
        if 0 <= i < self.m:
            self.fingers[i] = node

    def get_finger(self, i: int) -> Optional[NodeInfo]:
        if 0 <= i < self.m:
            return self.fingers[i]
        return None

    def forget(self, node: NodeInfo) -> None:
        self.fingers = [None if f == node else f for f in self.fingers]

    def closest_preceding_finger(self, target_id: int) -> Optional[NodeInfo]:
        # search fingers high->low
        for node in reversed(self.fingers):
            if node is None:
                continue
            if between(self.self_id, node.id, target_id, m=self.m):
                return node
        return None

    def nearest_first(self) -> List[NodeInfo]:
        out: List[NodeInfo] = []
        for node in self.fingers:
            if node is not None and node.id != self.self_id and node not in out:
                out.append(node)
        return out


# ---- Successor list ----
class SuccessorList:
    def __init__(self, capacity: int = config.SUCCESSOR_LIST_SIZE):
        self.capacity = capacity
        self._list: List[NodeInfo] = []

    def update_with(self, node: NodeInfo) -> None:
        self._list = [n for n in self._list if n != node]
        self._list.insert(0, node)
        self._list = self._list[:self.capacity]

    def forget(self, node: NodeInfo) -> None:
        self._list = [n for n in self._list if n != node]

    def primary(self) -> Optional[NodeInfo]:
        return self._list[0] if self._list else None

    def all(self) -> List[NodeInfo]:
        return list(self._list)

    def replace(self, nodes: List[NodeInfo]) -> None:
        dedup: List[NodeInfo] = []
        for node in nodes:
            if node is None or node in dedup:
                continue
            dedup.append(node)
        self._list = dedup[:self.capacity]


# ---- Node class ----
class Node:
    """
    One ring participant: pointers, finger table, local store, the RPC
    handlers peers call, and the periodic stabilization tasks.

    Pointers and store are guarded by two asyncio locks. Neither is ever held
    across a remote call; updates that depend on a remote answer re-check the
    pointer they started from before writing.
    """

    def __init__(self, host: str, port: int, bootstrap: Optional[NodeInfo] = None, *,
                 node_id: Optional[int] = None, m: int = config.M,
                 transport=None, clock: Optional[LogicalClock] = None):
        self.host = host
        self.port = port
        self.m = m
        if node_id is None:
            self.id = hash_bytes_to_int(f"{host}:{port}".encode(), m)
        else:
            self.id = node_id % ring_size(m)
        self.info = NodeInfo(self.id, host, port)

        # pointers
        self.successor: NodeInfo = self.info
        self.predecessor: Optional[NodeInfo] = None

        self.routing = RoutingTable(self.id, m)
        self.succ_list = SuccessorList(config.SUCCESSOR_LIST_SIZE)
        self.storage = KeyValueStore(m)

        # network
        self.clock = clock or process_clock
        self.transport = transport or TcpTransport()
        self.channel = MessageChannel(self.transport, self.clock)
        self._listener = None

        self._ring_lock = asyncio.Lock()
        self._store_lock = asyncio.Lock()

        # maintenance
        self._tasks: List[asyncio.Task] = []
        self._stop = False
        self._next_finger = 0

        self.bootstrap = bootstrap

    # ---------------- network handler ----------------
    async def _rpc_handler(self, msg: Dict[str, Any], sender: tuple) -> Dict[str, Any]:
        self.clock.advance(msg.get("ts"))
        resp = await self._dispatch(msg.get("type"), msg.get("payload") or {})
        resp["ts"] = self.clock.advance()
        return resp

    async def _dispatch(self, t: Optional[str], p: Dict[str, Any]) -> Dict[str, Any]:
        try:
            if t == "INFO":
                return _reply(result={"node": self.info.to_dict()})
            if t == "PRED":
                return _reply(result={"node": _node_dict(self.predecessor)})
            if t == "SUCC":
                return _reply(result={"node": self.successor.to_dict()})
            if t == "FINGER":
                node = self.closest_preceding_finger(int(p["id"]))
                return _reply(result={"node": node.to_dict()})
            if t == "FIND":
                node = await self.find_successor(int(p["id"]))
                return _reply(result={"node": node.to_dict()})
            if t == "NOTIFY":
                handoff = await self.notify(TableRep.from_dict(p["table"]))
                if handoff is None:
                    return _reply(HTTPStatus.NOT_MODIFIED)
                return _reply(result={"table": handoff.to_dict()})
            if t == "GET":
                vals = await self.serve_get(str(p["key"]))
                return _reply(result={"vals": vals})
            if t == "ADD":
                await self.serve_add(str(p["key"]), str(p["val"]))
                return _reply(result={})
            if t == "DELETE":
                await self.serve_delete(str(p["key"]), str(p["val"]))
                return _reply(result={})
            if t == "STABILIZE":
                await self.check_predecessor()
                await self.stabilize()
                return _reply(result={})
            return _reply(HTTPStatus.NOT_FOUND, error=f"unknown-type {t}")
        except Misdirected as e:
            return _reply(HTTPStatus.MISDIRECTED_REQUEST, error=str(e))
        except Failed as e:
            return _reply(HTTPStatus.BAD_GATEWAY, error=str(e))
        except (KeyError, ValueError, TypeError) as e:
            return _reply(HTTPStatus.BAD_REQUEST, error=f"bad-payload {e}")
        except Exception as e:
            logger.exception("%s: handler for %s crashed", self.info, t)
            return _reply(HTTPStatus.INTERNAL_SERVER_ERROR, error=f"exception {e}")

    # ---------------- startup / shutdown ----------------
    async def start(self, maintain: bool = True) -> None:
        self._listener = self.transport.listen(self.host, self.port, self._rpc_handler)
        await self._listener.start()
        if self.bootstrap is not None:
            try:
                await self.join(self.bootstrap)
            except Failed:
                await self._listener.stop()
                self._listener = None
                raise

        if maintain:
            self._stop = False
            loop = asyncio.get_running_loop()
            self._tasks.append(loop.create_task(self._stabilize_loop()))
            self._tasks.append(loop.create_task(self._fix_fingers_loop()))
            self._tasks.append(loop.create_task(self._check_predecessor_loop()))

    async def _cancel_maintenance(self) -> None:
        self._stop = True
        tasks, self._tasks = self._tasks, []
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def stop(self, graceful: bool = True) -> None:
        if graceful:
            try:
                await self.leave()
            except Failed as e:
                logger.warning("%s: leave incomplete: %s", self.info, e)
        await self._cancel_maintenance()
        if self._listener:
            await self._listener.stop()
            self._listener = None

    # ---------------- join/leave ----------------
    async def join(self, bootstrap: NodeInfo) -> None:
        """
        Ask the bootstrap node for our successor, then notify it at once so
        its handoff batch arrives without waiting for the first stabilize.
        """
        succ = unwrap(await self.channel.find_successor(bootstrap, self.id), "find")
        if succ is None:
            raise Failed("find", f"{bootstrap.addr} returned no successor")
        if succ == self.info and (succ.host, succ.port) != (self.host, self.port):
            raise Failed("join", f"identifier {self.id} already taken by {succ.addr}")

        async with self._ring_lock:
            self.predecessor = None
            self.successor = succ
            self.succ_list.update_with(succ)
        logger.info("%s: joined via %s, successor %s", self.info, bootstrap.addr, succ)

        try:
            await self._notify_successor()
        except Failed as e:
            logger.warning("%s: initial notify failed, stabilization will retry: %s", self.info, e)

    async def leave(self) -> None:
        """
        Stop serving, hand every stored binding to the successor and push
        both neighbours through a stabilization cycle so they route around us.
        A binding the successor refuses is re-resolved through its lookup and
        added at the owner it names.
        """
        await self._cancel_maintenance()
        # a node may have joined between us and the successor since the last cycle
        await self._run_cycle("stabilize", self.stabilize)
        succ, pred = self.successor, self.predecessor
        if self._listener:
            await self._listener.stop()
            self._listener = None
        if succ == self.info:
            return

        # the successor must drop us as predecessor before it accepts our keys
        result = await self.channel.stabilize(succ)
        if not result.ok:
            logger.warning("%s: forced stabilize on successor failed: %s", self.info, result.reason)

        async with self._store_lock:
            rows = self.storage.pop_all()
        undelivered: List[TableRow] = []
        for row in rows:
            for val in row.vals:
                result = await self.channel.add(succ, row.key, val)
                if not result.ok:
                    owner = await self._owner_via(succ, row.key)
                    if owner is not None and owner not in (succ, self.info):
                        result = await self.channel.add(owner, row.key, val)
                if not result.ok:
                    undelivered.append(TableRow(row.key, [val]))
        if undelivered:
            async with self._store_lock:
                self.storage.ingest(undelivered)
            raise Failed("add", f"{len(undelivered)} bindings not handed to {succ.addr}")

        if pred is not None and pred != succ:
            result = await self.channel.stabilize(pred)
            if not result.ok:
                logger.warning("%s: forced stabilize on predecessor failed: %s", self.info, result.reason)
        logger.info("%s: left the ring, %d keys handed to %s", self.info, len(rows), succ)

    async def _owner_via(self, entry: NodeInfo, key: str) -> Optional[NodeInfo]:
        result = await self.channel.find_successor(entry, hash_key(key, self.m))
        if isinstance(result, Success):
            return result.value
        logger.debug("%s: owner lookup for %r at %s failed: %s", self.info, key, entry, result)
        return None

    # ---------------- lookup ----------------
    def closest_preceding_finger(self, id_: int) -> NodeInfo:
        node = self.routing.closest_preceding_finger(id_)
        if node is not None:
            return node
        succ = self.successor
        if between(self.id, succ.id, id_, m=self.m):
            return succ
        return self.info

    async def _closest_preceding_finger_at(self, node: NodeInfo, id_: int) -> Optional[NodeInfo]:
        if node == self.info:
            return self.closest_preceding_finger(id_)
        result = await self.channel.closest_preceding_finger(node, id_)
        if isinstance(result, Success):
            return result.value
        logger.debug("%s: finger query at %s failed: %s", self.info, node, result)
        return None

    async def _successor_of(self, node: NodeInfo) -> Optional[NodeInfo]:
        if node == self.info:
            return self.successor
        result = await self.channel.get_succ(node)
        if isinstance(result, Success):
            return result.value
        logger.debug("%s: successor query at %s failed: %s", self.info, node, result)
        return None

    async def find_successor(self, id_: int) -> NodeInfo:
        """
        Iterative lookup. Every hop moves strictly closer (clockwise) to id_;
        a hop that fails or makes no progress is replaced by the current
        node's successor.
        """
        id_ %= ring_size(self.m)
        node, succ = self.info, self.successor
        for _ in range(config.MAX_LOOKUP_HOPS):
            if between(node.id, id_, succ.id, m=self.m, inclusive_end=True):
                return succ
            # id_ == node.id is a full lap away, not zero
            remaining = distance(node.id, id_, self.m) or ring_size(self.m)
            nxt = await self._closest_preceding_finger_at(node, id_)
            if nxt is None or distance(nxt.id, id_, self.m) >= remaining:
                nxt = succ
            nxt_succ = await self._successor_of(nxt)
            if nxt_succ is None and nxt != succ:
                nxt = succ
                nxt_succ = await self._successor_of(nxt)
            if nxt_succ is None:
                raise Failed("succ", f"no reachable next hop towards {id_}")
            node, succ = nxt, nxt_succ
        raise Failed("find", f"no owner for {id_} within {config.MAX_LOOKUP_HOPS} hops")

    # ---------------- maintenance loops ----------------
    async def _run_cycle(self, name: str, step: Callable[[], Awaitable[None]]) -> None:
        try:
            await step()
        except Failed as e:
            logger.warning("%s: %s cycle failed: %s", self.info, name, e)
        except Exception:
            logger.exception("%s: %s cycle crashed", self.info, name)

    async def _stabilize_loop(self):
        while not self._stop:
            await self._run_cycle("stabilize", self.stabilize)
            await asyncio.sleep(config.STABILIZE_INTERVAL)

    async def _fix_fingers_loop(self):
        while not self._stop:
            await self._run_cycle("fix_fingers", self.fix_next_finger)
            await asyncio.sleep(config.FIX_FINGERS_INTERVAL)

    async def _check_predecessor_loop(self):
        while not self._stop:
            await self._run_cycle("check_predecessor", self.check_predecessor)
            await asyncio.sleep(config.CHECK_PREDECESSOR_INTERVAL)

    def _successor_candidates(self) -> List[NodeInfo]:
        candidates: List[NodeInfo] = []
        for node in self.succ_list.all() + self.routing.nearest_first():
            if node == self.info or node in candidates:
                continue
            candidates.append(node)
        return candidates

    async def check_successor(self) -> None:
        """
        Probe the successor; if it is gone, take the first live entry from the
        successor list, then the fingers, and fall back to ourselves.
        """
        succ = self.successor
        if succ == self.info or await self.channel.is_alive(succ):
            return
        logger.warning("%s: successor %s unreachable", self.info, succ)

        dead = [succ]
        replacement = self.info
        for candidate in self._successor_candidates():
            if candidate == succ:
                continue
            if await self.channel.is_alive(candidate):
                replacement = candidate
                break
            dead.append(candidate)

        async with self._ring_lock:
            for node in dead:
                self.routing.forget(node)
                self.succ_list.forget(node)
            if self.successor == succ:
                self.successor = replacement
                if replacement != self.info:
                    self.succ_list.update_with(replacement)
        logger.info("%s: successor %s -> %s", self.info, succ, replacement)

    async def stabilize(self):
        """
        Ask successor for its predecessor x. If x is live and between self and
        successor, set successor=x.
        Then notify successor and refresh the successor list.
        """
        await self.check_successor()
        succ = self.successor
        if succ == self.info:
            x = self.predecessor
        else:
            x = unwrap(await self.channel.get_pred(succ), "pred")

        if (x is not None and x != self.info and between(self.id, x.id, succ.id, m=self.m)
                and await self.channel.is_alive(x)):
            async with self._ring_lock:
                if self.successor == succ:
                    self.successor = x
                    self.succ_list.update_with(x)
                    logger.info("%s: successor %s -> %s", self.info, succ, x)

        await self._notify_successor()
        await self._refresh_successor_list()

    async def _notify_successor(self) -> None:
        """
        The successor drops the handed-off rows before the reply reaches us.
        Until it is ingested, a routed get for one of those keys that lands
        here reads an empty list.
        """
        succ = self.successor
        if succ == self.info:
            return
        result = await self.channel.notify(succ, TableRep(self.info))
        if isinstance(result, NotModified):
            return
        batch = unwrap(result, "notify")
        if batch.entries:
            async with self._store_lock:
                self.storage.ingest(batch.entries)
            logger.info("%s: took over %d keys from %s", self.info, len(batch.entries), succ)

    async def _refresh_successor_list(self) -> None:
        start = self.successor
        chain: List[NodeInfo] = []
        node = start
        while node != self.info and node not in chain:
            chain.append(node)
            if len(chain) >= self.succ_list.capacity:
                break
            result = await self.channel.get_succ(node)
            if not isinstance(result, Success) or result.value is None:
                break
            node = result.value
        async with self._ring_lock:
            if self.successor == start:
                self.succ_list.replace(chain)

    async def notify(self, rep: TableRep) -> Optional[TableRep]:
        """
        Called by a node saying "I might be your predecessor".
        Accept when there is no predecessor or the candidate sits between it
        and us; the rows in (old predecessor, candidate] move to the candidate.
        Returns None when the candidate is not accepted.
        """
        cand = rep.owner
        if cand == self.info:
            return None
        async with self._ring_lock:
            pred = self.predecessor
            if pred is not None and not between(pred.id, cand.id, self.id, m=self.m):
                return None
            start = pred.id if pred is not None else self.id
            async with self._store_lock:
                rows = self.storage.take_range(start, cand.id)
                self.predecessor = cand
        logger.info("%s: predecessor %s -> %s, handing off %d keys", self.info, pred, cand, len(rows))
        return TableRep(self.info, rows)

    async def fix_fingers(self, i: int) -> None:
        """
        Recompute finger i: successor(self + 2^i)
        """
        node = await self.find_successor(self.routing.start(i))
        async with self._ring_lock:
            self.routing.set_finger(i, node)

    async def fix_next_finger(self) -> None:
        i = self._next_finger
        self._next_finger = (i + 1) % self.m
        await self.fix_fingers(i)

    async def check_predecessor(self) -> None:
        pred = self.predecessor
        if pred is None or await self.channel.is_alive(pred):
            return
        async with self._ring_lock:
            if self.predecessor == pred:
                self.predecessor = None
        logger.warning("%s: predecessor %s unreachable, cleared", self.info, pred)

    # ---------------- local key/value service ----------------
    def _owns(self, key: str) -> bool:
        pred = self.predecessor
        if pred is None:
            return True
        return between(pred.id, hash_key(key, self.m), self.id, m=self.m, inclusive_end=True)

    def _misdirected(self, operation: str, key: str) -> Misdirected:
        return Misdirected(operation, f"{key!r} ({hash_key(key, self.m)}) is outside "
                                      f"({self.predecessor.id if self.predecessor else None}, {self.id}]")

    async def serve_get(self, key: str) -> List[str]:
        async with self._store_lock:
            if not self._owns(key):
                raise self._misdirected("get", key)
            return self.storage.get(key)

    async def serve_add(self, key: str, val: str) -> None:
        async with self._store_lock:
            if not self._owns(key):
                raise self._misdirected("add", key)
            self.storage.add(key, val)

    async def serve_delete(self, key: str, val: str) -> None:
        async with self._store_lock:
            if not self._owns(key):
                raise self._misdirected("delete", key)
            self.storage.delete(key, val)

    # ---------------- DHT ops ----------------
    async def get(self, key: str) -> List[str]:
        """
        Find the owner of key and read its bindings; empty list when absent.
        """
        target = await self.find_successor(hash_key(key, self.m))
        if target == self.info:
            return await self.serve_get(key)
        return unwrap(await self.channel.get(target, key), "get")

    async def add(self, key: str, val: str) -> None:
        target = await self.find_successor(hash_key(key, self.m))
        if target == self.info:
            await self.serve_add(key, val)
            return
        unwrap(await self.channel.add(target, key, val), "add")

    async def delete(self, key: str, val: str) -> None:
        target = await self.find_successor(hash_key(key, self.m))
        if target == self.info:
            await self.serve_delete(key, val)
            return
        unwrap(await self.channel.delete(target, key, val), "delete")

    # ---------------- debug / helpers ----------------
    def info_str(self) -> str:
        pred = str(self.predecessor) if self.predecessor else "None"
        return (f"Node {self.info} succ={self.successor} pred={pred} "
                f"keys={len(self.storage)} clock={self.clock.value}")
