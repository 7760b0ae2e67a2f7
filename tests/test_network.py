import asyncio

import pytest

from network import LoopbackTransport, NodeInfo, RPCClient, RPCServer, TableRep, TableRow

from .helpers import get_free_port


def test_rpc_server_client_roundtrip():
    async def scenario():
        responses = []

        async def handler(message, peer):
            responses.append((message, peer))
            payload = message.get("payload", {})
            return {"status": 200, "result": {"echo": payload.get("value")}}

        port = get_free_port()
        server = RPCServer("127.0.0.1", port, handler)
        await server.start()
        try:
            client = RPCClient()
            target = NodeInfo(0, "127.0.0.1", port)
            resp = await client.call(target, {"type": "ECHO", "payload": {"value": 123}})
            assert resp["status"] == 200
            assert resp["result"]["echo"] == 123
            assert responses
            assert responses[0][0]["type"] == "ECHO"
        finally:
            await server.stop()

    asyncio.run(scenario())


def test_rpc_server_answers_bad_json_with_error_status():
    async def scenario():
        async def handler(message, peer):
            raise AssertionError("handler must not run")

        port = get_free_port()
        server = RPCServer("127.0.0.1", port, handler)
        await server.start()
        try:
            reader, writer = await asyncio.open_connection("127.0.0.1", port)
            writer.write(b"{not json\n")
            await writer.drain()
            line = await reader.readline()
            writer.close()
            await writer.wait_closed()
            assert b'"status": 400' in line
        finally:
            await server.stop()

    asyncio.run(scenario())


def test_rpc_client_connect_failure_raises_connection_error():
    async def scenario():
        target = NodeInfo(0, "127.0.0.1", get_free_port())
        with pytest.raises(ConnectionError):
            await RPCClient().call(target, {"type": "INFO", "payload": {}}, timeout=0.5)

    asyncio.run(scenario())


def test_loopback_transport_routes_to_registered_handler():
    async def scenario():
        transport = LoopbackTransport()

        async def handler(message, peer):
            return {"status": 200, "result": {"type": message["type"]}}

        listener = transport.listen("a", 1, handler)
        await listener.start()
        resp = await transport.call(NodeInfo(9, "a", 1), {"type": "INFO", "payload": {}})
        assert resp == {"status": 200, "result": {"type": "INFO"}}

        await listener.stop()
        with pytest.raises(ConnectionError):
            await transport.call(NodeInfo(9, "a", 1), {"type": "INFO", "payload": {}})

    asyncio.run(scenario())


def test_node_info_equality_uses_id_only():
    a = NodeInfo(5, "10.0.0.1", 7000)
    b = NodeInfo(5, "10.0.0.2", 7001)
    assert a == b
    assert hash(a) == hash(b)
    assert a != NodeInfo(6, "10.0.0.1", 7000)
    assert a.addr == "10.0.0.1:7000"
    assert NodeInfo.from_dict(None) is None


def test_table_rep_survives_dict_encoding():
    rep = TableRep(NodeInfo(3, "h", 1), [TableRow("k", ["a", "b"])])
    decoded = TableRep.from_dict(rep.to_dict())
    assert decoded.owner == rep.owner
    assert decoded.owner.addr == "h:1"
    assert decoded.entries == rep.entries
