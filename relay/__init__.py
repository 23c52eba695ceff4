"""
SOCKS5 中继模块

本模块提供了 CONNECT 命令处理器和流式适配层。

主要功能包括：
- 上游 TCP 连接管理
- 双向数据中继与流量控制
- asyncio 流适配

使用示例：
    # 作为 asyncio.start_server 的回调
    from relay import handle_client
    server = await asyncio.start_server(handle_client, '127.0.0.1', 1080)

    # 拉取式双工接口
    from relay import Socks5Duplex
    duplex = Socks5Duplex(Socks5ServerConnection())
    await duplex.write(greeting)
    reply = await duplex.read(2)
"""

from .base import CloseEvent, ConnectionEvent, DataEvent, Events

# 延迟导入，避免与 server_connection 循环导入
def __getattr__(name):
    if name in ('ConnectCommandHandler', 'open_upstream', 'failure_reply_code'):
        from . import connect
        return getattr(connect, name)
    elif name in ('Socks5Duplex', 'handle_client', 'read_message'):
        from . import stream
        return getattr(stream, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")

__all__ = [
    'CloseEvent',
    'ConnectionEvent',
    'DataEvent',
    'Events',
    'ConnectCommandHandler',
    'open_upstream',
    'failure_reply_code',
    'Socks5Duplex',
    'handle_client',
    'read_message',
]
