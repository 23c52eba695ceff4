"""
资源泄漏测试

使用 psutil 检查上游 socket 在连接关闭后被释放。
"""

import asyncio

import psutil

from conftest import connect_request, greeting
from protocol import AuthenticateMethod
from server_connection import Socks5ServerConnection


def open_sockets(local_address):
    """返回本进程中本地地址为 local_address 的 TCP 连接"""
    connections = psutil.Process().net_connections(kind='tcp')
    return [
        conn for conn in connections
        if conn.laddr and (conn.laddr.ip, conn.laddr.port) == local_address
        and conn.status != psutil.CONN_TIME_WAIT
    ]


async def relay_once(port: int) -> Socks5ServerConnection:
    connection = Socks5ServerConnection()
    await connection.process(greeting(AuthenticateMethod.NONE))
    await connection.process(connect_request('127.0.0.1', port))
    await asyncio.wait_for(connection.read(4096), timeout=5.0)
    await connection.process(b'ping')
    await asyncio.wait_for(connection.read(4096), timeout=5.0)
    return connection


async def test_upstream_socket_released_after_close(echo_server):
    connection = await relay_once(echo_server)
    bound_address = connection.handler.bound_address
    assert open_sockets(bound_address)

    await connection.close()

    assert not open_sockets(bound_address)


async def test_no_leak_over_many_connections(echo_server):
    process = psutil.Process()
    before = process.num_fds()

    for _ in range(20):
        connection = await relay_once(echo_server)
        await connection.close()

    # 回显服务器一侧的 socket 异步关闭，留出少量余量
    await asyncio.sleep(0.1)
    assert process.num_fds() - before < 5
