"""
测试公共设施

- echo_server: 回显上游服务器，返回端口
- closing_server: 接受连接后立即关闭的上游服务器，返回端口
- reply_after_eof_server: 读到 EOF 后才回复 b'response:' + 请求的上游服务器，返回端口
- refused_port: 没有监听者的本地端口
- greeting / connect_request: 构造客户端消息
"""

import asyncio
import socket
import struct

import pytest

from protocol import SOCKS5_VERSION, Command, Socks5Address


def greeting(*methods: int) -> bytes:
    """构造问候消息 [VER, NMETHODS, METHODS...]"""
    return bytes([SOCKS5_VERSION, len(methods), *methods])


def connect_request(address: str, port: int, command: int = Command.CONNECT) -> bytes:
    """构造命令请求 [VER, CMD, RSV, ATYP, DST.ADDR, DST.PORT]"""
    encoded = Socks5Address(address)
    return (
        struct.pack('>BBBB', SOCKS5_VERSION, command, 0, encoded.type)
        + encoded.buffer
        + struct.pack('>H', port)
    )


async def _echo(reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
    try:
        while True:
            data = await reader.read(65536)
            if not data:
                break
            writer.write(data)
            await writer.drain()
    except (ConnectionError, OSError):
        pass
    finally:
        writer.close()


async def _reply_after_eof(reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
    try:
        request = await reader.read()
        await asyncio.sleep(0.05)
        writer.write(b'response:' + request)
        await writer.drain()
    except (ConnectionError, OSError):
        pass
    finally:
        writer.close()


async def _close_immediately(reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
    writer.close()


async def _serve(handler):
    server = await asyncio.start_server(handler, '127.0.0.1', 0)
    return server, server.sockets[0].getsockname()[1]


async def _shutdown(server):
    server.close()
    try:
        await asyncio.wait_for(server.wait_closed(), timeout=1.0)
    except asyncio.TimeoutError:
        pass


@pytest.fixture
async def echo_server():
    server, port = await _serve(_echo)
    yield port
    await _shutdown(server)


@pytest.fixture
async def closing_server():
    server, port = await _serve(_close_immediately)
    yield port
    await _shutdown(server)


@pytest.fixture
async def reply_after_eof_server():
    server, port = await _serve(_reply_after_eof)
    yield port
    await _shutdown(server)


@pytest.fixture
def refused_port():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(('127.0.0.1', 0))
        return sock.getsockname()[1]
