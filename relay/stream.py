"""
流式适配层

本模块在连接状态机之上提供带背压的适配：

- Socks5Duplex: 拉取式双工接口。调用方用 write() 送入客户端字节，用 read(n)
  取出最多 n 字节发给客户端。只有在没有待发送数据时才会向上游拉取，
  因此引擎不会超前于下游消费者读取上游数据。
- handle_client: 把 asyncio 的 StreamReader/StreamWriter 接到状态机上，
  可直接作为 asyncio.start_server 的回调（监听 socket 由调用方管理）。

handle_client 在协商阶段用 readexactly 按消息边界读取，保证状态机
"每次一条完整消息" 的调用约定在原始 TCP 字节流上也成立。
客户端半关闭时只半关闭上游，上游剩余的回复照常转发给客户端。
"""

import asyncio
import logging
from collections import deque
from typing import Deque, Optional

from config import EngineConfig
from errors import DecodeError
from protocol import SOCKS5_VERSION, AddressType, ConnectionState
from server_connection import Socks5ServerConnection

from .base import DataEvent, Events
from .connect import Connector

logger = logging.getLogger('socks5-stream')

_KNOWN_ADDRESS_TYPES = frozenset(AddressType)


class Socks5Duplex:
    """
    拉取式双工适配器

    Attributes:
        connection: 连接状态机
        error: 导致连接关闭的异常（如果有）
    """

    def __init__(self, connection):
        self.connection = connection
        self.error: Optional[Exception] = None
        self._pending: Deque[bytes] = deque()
        self._eof = False
        self._readable = asyncio.Event()

    @property
    def eof(self) -> bool:
        return self._eof

    def _absorb(self, events: Events):
        for event in events:
            if isinstance(event, DataEvent):
                if event.data:
                    self._pending.append(event.data)
            else:
                self._eof = True
                if event.error is not None and self.error is None:
                    self.error = event.error
        self._readable.set()

    async def write(self, data: bytes):
        """
        送入客户端字节

        协商阶段 data 必须是一条完整消息；返回时协议回复已进入待读队列，
        中继阶段返回时数据已被上游接受。

        Raises:
            DecodeError: 协商消息格式错误
        """
        try:
            events = await self.connection.process(data)
        finally:
            # 唤醒等待中的 read()，状态可能已经变化
            self._readable.set()
        self._absorb(events)

    async def read(self, n: int) -> bytes:
        """
        读取最多 n 字节发往客户端的数据

        Args:
            n: 调用方当前可以接收的字节数

        Returns:
            bytes: 数据，连接关闭后返回 b''
        """
        if n < 1:
            raise ValueError(f"读取大小必须为正数: {n}")

        while True:
            self._readable.clear()
            if self._pending:
                return self._pop(n)
            if self._eof:
                return b''
            if self.connection.state == ConnectionState.RELAY:
                self._absorb(await self.connection.read(n))
                continue
            await self._readable.wait()

    def take_pending(self) -> bytes:
        """取出所有尚未读取的数据"""
        data = b''.join(self._pending)
        self._pending.clear()
        return data

    def _pop(self, n: int) -> bytes:
        chunk = self._pending.popleft()
        if len(chunk) > n:
            self._pending.appendleft(chunk[n:])
            chunk = chunk[:n]
        return chunk

    async def end(self):
        """客户端写方向结束，半关闭上游；read() 继续返回上游剩余数据"""
        await self.connection.end()

    async def close(self):
        """关闭双工连接和上游连接"""
        self._eof = True
        self._readable.set()
        await self.connection.close()


# ============================================================================
# asyncio 流适配
# ============================================================================

async def read_message(reader: asyncio.StreamReader, state: ConnectionState) -> bytes:
    """
    按消息边界从客户端读取一条协商消息

    版本错误或地址类型未知时只返回已读取的部分，由状态机给出相应处理。

    Args:
        reader: 客户端流读取器
        state: 当前连接状态（HANDSHAKE 或 WAIT_COMMAND）

    Returns:
        bytes: 一条完整的问候或请求消息

    Raises:
        asyncio.IncompleteReadError: 客户端在消息中途断开
    """
    if state == ConnectionState.HANDSHAKE:
        head = await reader.readexactly(2)
        if head[0] != SOCKS5_VERSION:
            return head
        return head + await reader.readexactly(head[1])

    head = await reader.readexactly(4)
    if head[0] != SOCKS5_VERSION:
        return head
    atyp = head[3]
    if atyp == AddressType.IPV4:
        return head + await reader.readexactly(4 + 2)
    if atyp == AddressType.IPV6:
        return head + await reader.readexactly(16 + 2)
    if atyp == AddressType.DOMAIN_NAME:
        length = await reader.readexactly(1)
        return head + length + await reader.readexactly(length[0] + 2)
    return head


def _unframed_remainder(data: bytes, state: ConnectionState) -> bool:
    """命令请求的地址类型未知，请求剩余部分的长度无法确定"""
    return (
        state == ConnectionState.WAIT_COMMAND
        and len(data) == 4
        and data[0] == SOCKS5_VERSION
        and data[3] not in _KNOWN_ADDRESS_TYPES
    )


async def _feed_from_client(
    duplex: Socks5Duplex,
    reader: asyncio.StreamReader,
    config: EngineConfig,
    log: logging.LoggerAdapter
) -> bool:
    """
    把客户端数据送入状态机

    Returns:
        bool: 客户端在中继阶段正常结束写方向（半关闭）时为 True
    """
    connection = duplex.connection
    try:
        while not duplex.eof:
            if connection.state == ConnectionState.RELAY:
                data = await reader.read(config.read_chunk_size)
                if not data:
                    log.debug("客户端结束发送，半关闭上游")
                    await duplex.end()
                    return True
                await duplex.write(data)
                continue

            state = connection.state
            data = await read_message(reader, state)
            await duplex.write(data)
            if _unframed_remainder(data, state):
                log.info("未知地址类型，请求剩余部分无法跳过，关闭连接")
                break
    except asyncio.IncompleteReadError:
        log.debug("客户端在协商阶段断开")
    except DecodeError as e:
        log.warning(f"消息解码错误: {e}")
    except (ConnectionError, OSError) as e:
        log.debug(f"读取客户端失败: {e}")
    return False


async def _pump_to_client(
    duplex: Socks5Duplex,
    writer: asyncio.StreamWriter,
    config: EngineConfig,
    log: logging.LoggerAdapter
):
    try:
        while True:
            # drain 返回后缓冲区低于高水位，剩余容量至少为 1
            await writer.drain()
            capacity = config.high_water_mark - writer.transport.get_write_buffer_size()
            data = await duplex.read(max(capacity, 1))
            if not data:
                break
            writer.write(data)
        await writer.drain()
    except (ConnectionError, OSError) as e:
        log.debug(f"写入客户端失败: {e}")


def _format_peer(peer) -> str:
    if isinstance(peer, tuple) and len(peer) >= 2:
        return f"{peer[0]}:{peer[1]}"
    return str(peer)


async def handle_client(
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
    config: Optional[EngineConfig] = None,
    connector: Optional[Connector] = None
):
    """
    处理一条 SOCKS5 客户端连接

    客户端在中继阶段半关闭时，向上游发送 EOF 并继续转发上游数据，
    直到上游关闭。其他情况下任一方向结束即拆除两端连接。

    命令请求的地址类型未知时，回复 ADDRESS_TYPE_NOT_SUPPORTED 后关闭连接：
    地址长度无法确定，请求剩余部分没法从字节流中跳过，客户端无法在同一连接上重试。

    每条连接的日志记录带有 peer 字段，CONNECT 之后还带有 target 字段。

    Args:
        reader: 客户端流读取器
        writer: 客户端流写入器
        config: 引擎配置（可选）
        connector: 上游连接器（可选）

    Example:
        >>> server = await asyncio.start_server(handle_client, '127.0.0.1', 1080)
    """
    config = config or EngineConfig()
    log_context = {'peer': _format_peer(writer.get_extra_info('peername'))}
    log = logging.LoggerAdapter(logger, log_context)
    duplex = Socks5Duplex(Socks5ServerConnection(config, connector, log_context=log_context))
    log.info("新连接")

    # 缓冲超过 high_water_mark - 1 时暂停写入，即达到高水位时 drain() 挂起
    writer.transport.set_write_buffer_limits(high=config.high_water_mark - 1)

    feed = asyncio.create_task(_feed_from_client(duplex, reader, config, log))
    pump = asyncio.create_task(_pump_to_client(duplex, writer, config, log))
    try:
        done, _ = await asyncio.wait({feed, pump}, return_when=asyncio.FIRST_COMPLETED)
        if feed in done and feed.exception() is None and feed.result():
            # 客户端半关闭：等上游发完剩余数据并关闭
            await pump
    finally:
        for task in (feed, pump):
            if not task.done():
                task.cancel()
        await asyncio.gather(feed, pump, return_exceptions=True)
        await duplex.close()

        # 连接失败或请求被拒绝时的回复可能还留在队列中
        leftover = duplex.take_pending()
        if leftover and not writer.is_closing():
            writer.write(leftover)
        writer.close()
        try:
            await writer.wait_closed()
        except (ConnectionError, OSError):
            pass

        if duplex.error is not None:
            log.info(f"连接异常结束，原因: {duplex.error}")
        else:
            log.info("连接结束")
