# cli.py
import argparse
import asyncio
import logging
import sys
from typing import Optional

import config
from channel import Failed, MessageChannel, unwrap
from network import NodeInfo
from node import Node
from utils import hash_key


def parse_endpoint(value: str) -> NodeInfo:
    """Parse host:port into an address-only NodeInfo (id placeholder 0)."""
    host, sep, port = value.rpartition(":")
    if not sep or not host:
        raise argparse.ArgumentTypeError(f"expected host:port, got {value!r}")
    try:
        return NodeInfo(0, host, int(port))
    except ValueError:
        raise argparse.ArgumentTypeError(f"bad port in {value!r}")


async def start_node(host: str, port: int, bootstrap: Optional[NodeInfo]):
    node = Node(host, port, bootstrap)
    try:
        await node.start()
    except Failed as e:
        print(f"[-] Could not join via {bootstrap.addr}: {e}", file=sys.stderr)
        return
    print(f"Node started: {node.info_str()}")
    try:
        while True:
            await asyncio.sleep(5)
            print(node.info_str())
    finally:
        print("Shutting down node...")
        await node.stop()


async def _owner(channel: MessageChannel, entry: NodeInfo, key: str) -> NodeInfo:
    return unwrap(await channel.find_successor(entry, hash_key(key, config.M)), "find")


async def find_owner(entry: NodeInfo, id_: int) -> int:
    channel = MessageChannel()
    try:
        owner = unwrap(await channel.find_successor(entry, id_), "find")
    except Failed as e:
        print(f"[-] Lookup via {entry.addr} failed: {e}", file=sys.stderr)
        return 1
    print(f"[+] successor({id_}) = {owner}")
    return 0


async def get_key(entry: NodeInfo, key: str) -> int:
    channel = MessageChannel()
    try:
        owner = await _owner(channel, entry, key)
        vals = unwrap(await channel.get(owner, key), "get")
    except Failed as e:
        print(f"[-] get {key!r} failed: {e}", file=sys.stderr)
        return 1
    if not vals:
        print(f"[-] {key!r} has no bindings (owner {owner})")
        return 0
    print(f"[+] {key!r} at {owner}:")
    for val in vals:
        print(f"  {val}")
    return 0


async def change_key(entry: NodeInfo, key: str, val: str, remove: bool) -> int:
    channel = MessageChannel()
    op = "delete" if remove else "add"
    try:
        owner = await _owner(channel, entry, key)
        if remove:
            unwrap(await channel.delete(owner, key, val), op)
        else:
            unwrap(await channel.add(owner, key, val), op)
    except Failed as e:
        print(f"[-] {op} {key!r} failed: {e}", file=sys.stderr)
        return 1
    print(f"[+] {op} {key!r}={val!r} at {owner}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Chord DHT CLI")
    parser.add_argument("--log-level", default=config.LOG_LEVEL)
    sub = parser.add_subparsers(dest="cmd")

    p1 = sub.add_parser("start", help="Start a node")
    p1.add_argument("--host", required=True)
    p1.add_argument("--port", type=int, required=True)
    p1.add_argument("--bootstrap", type=parse_endpoint, help="Bootstrap node host:port")

    p2 = sub.add_parser("find", help="Find the node owning an identifier")
    p2.add_argument("--node", type=parse_endpoint, required=True, help="Entry node host:port")
    p2.add_argument("--id", type=int, required=True)

    p3 = sub.add_parser("get", help="Read the values bound to a key")
    p3.add_argument("--node", type=parse_endpoint, required=True, help="Entry node host:port")
    p3.add_argument("--key", required=True)

    for name, help_ in (("add", "Bind a value to a key"), ("delete", "Remove a value from a key")):
        p = sub.add_parser(name, help=help_)
        p.add_argument("--node", type=parse_endpoint, required=True, help="Entry node host:port")
        p.add_argument("--key", required=True)
        p.add_argument("--value", required=True)
    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(level=args.log_level.upper(), format=config.LOG_FORMAT)

    if args.cmd == "start":
        try:
            asyncio.run(start_node(args.host, args.port, args.bootstrap))
        except KeyboardInterrupt:
            pass
        return 0
    if args.cmd == "find":
        return asyncio.run(find_owner(args.node, args.id))
    if args.cmd == "get":
        return asyncio.run(get_key(args.node, args.key))
    if args.cmd in ("add", "delete"):
        return asyncio.run(change_key(args.node, args.key, args.value, remove=args.cmd == "delete"))
    parser.print_help()
    return 2


if __name__ == "__main__":
    sys.exit(main())
