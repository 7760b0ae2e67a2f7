import argparse

import pytest

from cli import build_parser, parse_endpoint


def test_parse_endpoint():
    node = parse_endpoint("127.0.0.1:9000")
    assert node.host == "127.0.0.1"
    assert node.port == 9000
    assert node.id == 0


@pytest.mark.parametrize("raw", ["localhost", ":9000", "host:port"])
def test_parse_endpoint_rejects_malformed(raw):
    with pytest.raises(argparse.ArgumentTypeError):
        parse_endpoint(raw)


def test_parser_reads_client_commands():
    args = build_parser().parse_args(["add", "--node", "10.0.0.1:6000", "--key", "k", "--value", "v"])
    assert args.cmd == "add"
    assert args.node.addr == "10.0.0.1:6000"
    assert (args.key, args.value) == ("k", "v")

    args = build_parser().parse_args(["start", "--host", "127.0.0.1", "--port", "6001",
                                      "--bootstrap", "127.0.0.1:6000"])
    assert args.bootstrap.port == 6000
