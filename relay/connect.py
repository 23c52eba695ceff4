"""
CONNECT 命令处理器

本模块定义了 ConnectCommandHandler，负责持有到目标主机的上游 TCP 连接，
把连接生命周期和字节流转换为连接状态机可以输出的事件，并进行显式的流量控制。

工作流程:
1. start() 在后台发起到目标主机的连接
2. 连接结果确定后，read() 首先返回 CONNECT 回复
3. process() 把客户端数据写入上游，写入被接受后才返回
4. read() 按调用方给出的剩余容量从上游读取数据
5. end() 在客户端不再发送数据时半关闭上游，反向数据继续流动
6. close() 关闭上游连接并等待关闭完成
"""

import asyncio
import errno
import logging
import socket
from typing import Awaitable, Callable, Dict, Optional, Tuple

from errors import Socks5Error, UpstreamConnectFailure, UpstreamUnexpectedClose, UpstreamWriteFailure
from protocol import CommandResponse, Socks5Address, make_empty_reply, make_reply

from .base import CloseEvent, DataEvent, Events

logger = logging.getLogger('socks5-connect')

Connector = Callable[[str, int], Awaitable[Tuple[asyncio.StreamReader, asyncio.StreamWriter]]]


async def open_upstream(host: str, port: int) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    """
    建立到目标主机的 TCP 连接（默认连接器）

    Args:
        host: 目标主机名或 IP 地址
        port: 目标端口号

    Returns:
        tuple: (reader, writer)

    Raises:
        OSError: 连接失败
    """
    return await asyncio.open_connection(host, port)


def failure_reply_code(error: BaseException) -> CommandResponse:
    """
    根据连接异常选择回复码

    Args:
        error: 连接上游时抛出的异常

    Returns:
        CommandResponse: 对应的失败回复码
    """
    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return CommandResponse.TTL_EXPIRED
    if isinstance(error, ConnectionRefusedError):
        return CommandResponse.CONNECTION_REFUSED
    if isinstance(error, socket.gaierror):
        return CommandResponse.HOST_UNREACHABLE
    if isinstance(error, OSError):
        if error.errno == errno.ENETUNREACH:
            return CommandResponse.NETWORK_UNREACHABLE
        if error.errno == errno.EHOSTUNREACH:
            return CommandResponse.HOST_UNREACHABLE
    return CommandResponse.GENERAL_ERROR


class ConnectCommandHandler:
    """
    CONNECT 命令处理器 - 持有一个上游 TCP 连接

    上游连接只由本处理器读写，其他代码不得直接访问。向上游的写入通过
    写入锁串行化，任一时刻最多只有一个未完成的写入。

    Attributes:
        address: 目标地址
        port: 目标端口
        bound_address: 上游 socket 的本地绑定地址 (host, port)，连接成功后设置
    """

    def __init__(
        self,
        address: str,
        port: int,
        connector: Optional[Connector] = None,
        connect_timeout: Optional[float] = 10.0,
        strict_failure_replies: bool = False,
        log_context: Optional[Dict[str, str]] = None
    ):
        """
        初始化 CONNECT 命令处理器

        Args:
            address: 目标主机名或 IP 地址
            port: 目标端口号
            connector: 上游连接器，默认为 open_upstream
            connect_timeout: 连接超时（秒），None 表示不限时
            strict_failure_replies: 连接失败时是否回复具体的失败码
            log_context: 附加到本处理器日志记录上的上下文字段（peer、target）
        """
        self.address = address
        self.port = port
        self.bound_address: Optional[Tuple[str, int]] = None

        self._connector = connector or open_upstream
        self._connect_timeout = connect_timeout
        self._strict_failure_replies = strict_failure_replies
        self._logger = logging.LoggerAdapter(logger, log_context if log_context is not None else {})

        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._connect_task: Optional[asyncio.Task] = None

        # 尚未交给调用方的 CONNECT 回复，以及连接失败的原因
        self._reply: Optional[bytes] = None
        self._error: Optional[UpstreamConnectFailure] = None

        self._resolved = asyncio.Event()
        self._closed = asyncio.Event()
        self._closing = False
        self._eof_sent = False
        self._write_lock = asyncio.Lock()

    @property
    def connected(self) -> bool:
        return self._writer is not None and not self._closing

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def start(self):
        """在后台发起上游连接"""
        if self._connect_task is None:
            self._connect_task = asyncio.create_task(self._connect())

    async def _connect(self):
        self._logger.info(f"连接 {self.address}:{self.port}")
        try:
            if self._connect_timeout is None:
                reader, writer = await self._connector(self.address, self.port)
            else:
                reader, writer = await asyncio.wait_for(
                    self._connector(self.address, self.port),
                    timeout=self._connect_timeout
                )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._logger.warning(f"连接失败: {self.address}:{self.port}, 错误: {e!r}")
            self._error = UpstreamConnectFailure(self.address, self.port, e)
            if self._strict_failure_replies:
                self._reply = make_empty_reply(failure_reply_code(e))
            else:
                self._reply = make_empty_reply(CommandResponse.SUCCESS)
        else:
            self._reader = reader
            self._writer = writer
            self._reply = self._success_reply(writer)
            self._logger.info(f"已连接 {self.address}:{self.port} (本地地址: {self.bound_address})")
        finally:
            self._resolved.set()

    def _success_reply(self, writer: asyncio.StreamWriter) -> bytes:
        sockname = writer.get_extra_info('sockname')
        if not sockname:
            return make_empty_reply(CommandResponse.SUCCESS)
        self.bound_address = (sockname[0], sockname[1])
        return make_reply(CommandResponse.SUCCESS, Socks5Address.from_bound(sockname[0]), sockname[1])

    def _take_pending(self) -> Events:
        events: Events = []
        if self._reply is not None:
            events.append(DataEvent(self._reply))
            self._reply = None
        if self._error is not None:
            events.append(CloseEvent(self._error))
        return events

    async def process(self, data: bytes) -> Events:
        """
        把客户端数据写入上游

        等待连接结果确定后写入，写入被接受（drain 完成）或失败后才返回。

        Args:
            data: 客户端发来的任意长度字节

        Returns:
            Events: 正常时为空列表；连接失败或写入失败时包含 CloseEvent

        Raises:
            Socks5Error: 已调用 end() 之后继续写入
        """
        await self._resolved.wait()

        if self._error is not None:
            self._logger.debug(f"上游连接失败，丢弃 {len(data)} 字节: {self.address}:{self.port}")
            events = self._take_pending()
            await self.close()
            return events

        async with self._write_lock:
            if self._writer is None or self._closing:
                return [CloseEvent()]
            if self._eof_sent:
                raise Socks5Error("上游写方向已关闭，不能继续写入")
            try:
                self._writer.write(data)
                await self._writer.drain()
            except (ConnectionError, OSError) as e:
                self._logger.debug(f"写入上游失败: {self.address}:{self.port}, 错误: {e}")
                error = UpstreamWriteFailure(self.address, self.port, e)
                await self.close()
                return [CloseEvent(error)]

        return []

    async def end(self):
        """
        半关闭上游连接：发送 EOF，读方向保持打开

        等待已排队的写入完成后发送 EOF。之后 read() 继续返回上游数据，
        直到上游关闭连接产生 CloseEvent。传输不支持半关闭时什么也不做。
        """
        await self._resolved.wait()

        async with self._write_lock:
            if self._writer is None or self._closing or self._eof_sent:
                return
            if not self._writer.can_write_eof():
                return
            self._eof_sent = True
            self._logger.debug(f"向上游发送 EOF: {self.address}:{self.port}")
            try:
                self._writer.write_eof()
            except (ConnectionError, OSError) as e:
                self._logger.debug(f"发送 EOF 失败: {self.address}:{self.port}, 错误: {e}")

    async def read(self, size: int) -> Events:
        """
        从上游拉取数据

        首次调用返回 CONNECT 回复。之后每次最多读取 size 字节，上游暂无数据时挂起。

        Args:
            size: 客户端方向输出缓冲区的剩余容量（字节，必须为正数）

        Returns:
            Events: DataEvent 或 CloseEvent
        """
        if size < 1:
            raise ValueError(f"读取大小必须为正数: {size}")

        await self._resolved.wait()

        events = self._take_pending()
        if events:
            if self._error is not None:
                await self.close()
            return events

        if self._reader is None or self._closing:
            return [CloseEvent()]

        try:
            data = await self._reader.read(size)
        except (ConnectionError, OSError) as e:
            self._logger.debug(f"读取上游失败: {self.address}:{self.port}, 错误: {e}")
            await self.close()
            return [CloseEvent(UpstreamUnexpectedClose(self.address, self.port, e))]

        if not data:
            self._logger.debug(f"上游关闭连接: {self.address}:{self.port}")
            await self.close()
            return [CloseEvent()]

        return [DataEvent(data)]

    async def close(self):
        """
        关闭上游连接并等待关闭完成

        可重复调用；并发调用者等待第一次关闭完成，上游 socket 只关闭一次。
        """
        if self._closing:
            await self._closed.wait()
            return
        self._closing = True

        try:
            if self._connect_task is not None and not self._connect_task.done():
                self._connect_task.cancel()
                try:
                    await self._connect_task
                except asyncio.CancelledError:
                    pass

            if self._writer is not None:
                self._logger.debug(f"关闭上游连接: {self.address}:{self.port}")
                self._writer.close()
                try:
                    await self._writer.wait_closed()
                except (ConnectionError, OSError) as e:
                    self._logger.debug(f"等待上游关闭时出错: {e}")
        finally:
            self._resolved.set()
            self._closed.set()
