"""
流式适配层测试

测试内容:
1. Socks5Duplex 的拉取式读取
2. read_message 消息分帧
3. handle_client 端到端中继、半关闭和日志上下文
"""

import asyncio
import logging
from functools import partial

import pytest

from config import EngineConfig
from conftest import connect_request, greeting
from errors import ProtocolVersionError
from protocol import AuthenticateMethod, CommandResponse, ConnectionState
from relay.stream import Socks5Duplex, handle_client, read_message
from server_connection import Socks5ServerConnection

NONE = AuthenticateMethod.NONE


@pytest.fixture
async def socks_server():
    servers = []

    async def start(config=None):
        server = await asyncio.start_server(partial(handle_client, config=config), '127.0.0.1', 0)
        servers.append(server)
        return server.sockets[0].getsockname()[1]

    yield start

    for server in servers:
        server.close()
        try:
            await asyncio.wait_for(server.wait_closed(), timeout=1.0)
        except asyncio.TimeoutError:
            pass


async def negotiate(port: int):
    reader, writer = await asyncio.open_connection('127.0.0.1', port)
    writer.write(greeting(NONE))
    assert await asyncio.wait_for(reader.readexactly(2), timeout=5.0) == b'\x05\x00'
    return reader, writer


def stream_of(data: bytes) -> asyncio.StreamReader:
    reader = asyncio.StreamReader()
    reader.feed_data(data)
    reader.feed_eof()
    return reader


# ============================================================================
# Socks5Duplex
# ============================================================================

async def test_duplex_splits_reply():
    duplex = Socks5Duplex(Socks5ServerConnection())

    await duplex.write(greeting(NONE))

    assert await duplex.read(1) == b'\x05'
    assert await duplex.read(1) == b'\x00'


async def test_duplex_read_waits_for_write():
    duplex = Socks5Duplex(Socks5ServerConnection())
    task = asyncio.create_task(duplex.read(16))
    await asyncio.sleep(0)
    assert not task.done()

    await duplex.write(greeting(NONE))

    assert await asyncio.wait_for(task, timeout=5.0) == b'\x05\x00'


async def test_duplex_wrong_version_reads_eof():
    duplex = Socks5Duplex(Socks5ServerConnection())

    await duplex.write(b'\x04\x00')

    assert await duplex.read(16) == b''
    assert duplex.eof
    assert isinstance(duplex.error, ProtocolVersionError)


async def test_duplex_read_size_must_be_positive():
    duplex = Socks5Duplex(Socks5ServerConnection())
    with pytest.raises(ValueError):
        await duplex.read(0)


async def test_duplex_relay_reads_are_bounded(echo_server):
    duplex = Socks5Duplex(Socks5ServerConnection())
    await duplex.write(greeting(NONE))
    assert await duplex.read(16) == b'\x05\x00'
    await duplex.write(connect_request('127.0.0.1', echo_server))

    reply = await asyncio.wait_for(duplex.read(4096), timeout=5.0)
    assert len(reply) == 10
    assert reply[1] == CommandResponse.SUCCESS

    payload = bytes(range(256)) * 8
    await duplex.write(payload)

    received = bytearray()
    while len(received) < len(payload):
        chunk = await asyncio.wait_for(duplex.read(64), timeout=5.0)
        assert 0 < len(chunk) <= 64
        received.extend(chunk)

    assert bytes(received) == payload
    await duplex.close()
    assert await duplex.read(64) == b''


# ============================================================================
# read_message
# ============================================================================

async def test_read_message_greeting():
    reader = stream_of(greeting(NONE, 0x02) + b'extra')
    assert await read_message(reader, ConnectionState.HANDSHAKE) == b'\x05\x02\x00\x02'


@pytest.mark.parametrize('address', ['10.0.0.1', '::1', 'example.com'])
async def test_read_message_request(address):
    request = connect_request(address, 443)
    reader = stream_of(request + b'payload')

    assert await read_message(reader, ConnectionState.WAIT_COMMAND) == request
    assert await reader.read() == b'payload'


async def test_read_message_unknown_address_type():
    reader = stream_of(bytes([5, 1, 0, 0x05, 1, 2, 3, 4]))
    assert await read_message(reader, ConnectionState.WAIT_COMMAND) == bytes([5, 1, 0, 0x05])


async def test_read_message_wrong_version():
    reader = stream_of(b'\x04\x01\x00')
    assert await read_message(reader, ConnectionState.HANDSHAKE) == b'\x04\x01'


async def test_read_message_truncated():
    reader = stream_of(b'\x05\x03\x00')
    with pytest.raises(asyncio.IncompleteReadError):
        await read_message(reader, ConnectionState.HANDSHAKE)


# ============================================================================
# handle_client
# ============================================================================

async def test_end_to_end_relay(socks_server, echo_server):
    port = await socks_server()
    reader, writer = await asyncio.open_connection('127.0.0.1', port)

    # 问候分两次到达
    writer.write(b'\x05')
    await writer.drain()
    await asyncio.sleep(0.01)
    writer.write(b'\x01\x00')
    assert await asyncio.wait_for(reader.readexactly(2), timeout=5.0) == b'\x05\x00'

    writer.write(connect_request('127.0.0.1', echo_server))
    reply = await asyncio.wait_for(reader.readexactly(10), timeout=5.0)
    assert reply[1] == CommandResponse.SUCCESS

    writer.write(b'ping')
    assert await asyncio.wait_for(reader.readexactly(4), timeout=5.0) == b'ping'

    writer.close()
    await writer.wait_closed()


async def test_end_to_end_small_high_water_mark(socks_server, echo_server):
    port = await socks_server(EngineConfig(high_water_mark=1))
    reader, writer = await negotiate(port)
    writer.write(connect_request('127.0.0.1', echo_server))
    await asyncio.wait_for(reader.readexactly(10), timeout=5.0)

    payload = b'0123456789' * 200
    writer.write(payload)
    assert await asyncio.wait_for(reader.readexactly(len(payload)), timeout=10.0) == payload

    writer.close()
    await writer.wait_closed()


async def test_end_to_end_wrong_version(socks_server):
    port = await socks_server()
    reader, writer = await asyncio.open_connection('127.0.0.1', port)

    writer.write(b'\x04\x00')

    assert await asyncio.wait_for(reader.read(), timeout=5.0) == b''
    writer.close()


async def test_end_to_end_connect_failure(socks_server, refused_port):
    port = await socks_server()
    reader, writer = await negotiate(port)

    writer.write(connect_request('127.0.0.1', refused_port))

    reply = await asyncio.wait_for(reader.read(), timeout=5.0)
    assert reply == bytes([5, CommandResponse.SUCCESS, 0, 1, 0, 0, 0, 0, 0, 0])
    writer.close()


async def test_end_to_end_unsupported_command_then_connect(socks_server, echo_server):
    port = await socks_server()
    reader, writer = await negotiate(port)

    writer.write(connect_request('127.0.0.1', echo_server, command=0x02))
    reply = await asyncio.wait_for(reader.readexactly(10), timeout=5.0)
    assert reply[1] == CommandResponse.COMMAND_NOT_SUPPORTED

    writer.write(connect_request('127.0.0.1', echo_server))
    reply = await asyncio.wait_for(reader.readexactly(10), timeout=5.0)
    assert reply[1] == CommandResponse.SUCCESS

    writer.close()
    await writer.wait_closed()


async def test_upstream_close_closes_client(socks_server, closing_server):
    port = await socks_server()
    reader, writer = await negotiate(port)

    writer.write(connect_request('127.0.0.1', closing_server))
    reply = await asyncio.wait_for(reader.readexactly(10), timeout=5.0)
    assert reply[1] == CommandResponse.SUCCESS

    assert await asyncio.wait_for(reader.read(), timeout=5.0) == b''
    writer.close()


async def test_client_half_close_keeps_upstream_reply(socks_server, reply_after_eof_server):
    port = await socks_server()
    reader, writer = await negotiate(port)
    writer.write(connect_request('127.0.0.1', reply_after_eof_server))
    reply = await asyncio.wait_for(reader.readexactly(10), timeout=5.0)
    assert reply[1] == CommandResponse.SUCCESS

    writer.write(b'GET')
    writer.write_eof()

    # 上游在收到 EOF 之后才回复，回复必须完整到达客户端
    assert await asyncio.wait_for(reader.read(), timeout=5.0) == b'response:GET'
    writer.close()


async def test_duplex_end_keeps_reverse_direction(reply_after_eof_server):
    duplex = Socks5Duplex(Socks5ServerConnection())
    await duplex.write(greeting(NONE))
    await duplex.read(16)
    await duplex.write(connect_request('127.0.0.1', reply_after_eof_server))
    await asyncio.wait_for(duplex.read(4096), timeout=5.0)

    await duplex.write(b'GET')
    await duplex.end()

    received = bytearray()
    while True:
        chunk = await asyncio.wait_for(duplex.read(4096), timeout=5.0)
        if not chunk:
            break
        received.extend(chunk)

    assert bytes(received) == b'response:GET'
    assert duplex.error is None
    assert duplex.connection.handler.closed


async def test_end_to_end_unknown_address_type_closes(socks_server):
    port = await socks_server()
    reader, writer = await negotiate(port)

    writer.write(bytes([5, 1, 0, 0x05]))

    reply = await asyncio.wait_for(reader.read(), timeout=5.0)
    assert reply == bytes([5, CommandResponse.ADDRESS_TYPE_NOT_SUPPORTED, 0, 1, 0, 0, 0, 0, 0, 0])
    writer.close()


async def test_connection_logs_carry_peer_and_target(socks_server, echo_server, caplog):
    caplog.set_level(logging.INFO)
    port = await socks_server()
    reader, writer = await negotiate(port)
    host, client_port = writer.get_extra_info('sockname')[:2]
    peer = f"{host}:{client_port}"

    writer.write(connect_request('127.0.0.1', echo_server))
    await asyncio.wait_for(reader.readexactly(10), timeout=5.0)
    writer.close()
    await writer.wait_closed()

    for _ in range(100):
        if any(record.getMessage() == '连接结束' for record in caplog.records):
            break
        await asyncio.sleep(0.02)

    records = [record for record in caplog.records if getattr(record, 'peer', None) == peer]
    assert any(record.name == 'socks5-stream' for record in records)

    connect_records = [record for record in records if record.name == 'socks5-connect']
    assert connect_records
    assert all(record.target == f'127.0.0.1:{echo_server}' for record in connect_records)
