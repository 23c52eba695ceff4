"""
连接状态机模块 - SOCKS5 服务端连接的协议处理

此模块定义了 Socks5ServerConnection，负责一条客户端连接从握手、命令分派到
数据中继的完整状态转换。状态机不依赖具体的传输层：调用方每次传入一条完整的
协议消息，状态机返回需要发给客户端的事件。

状态转换:
    HANDSHAKE --(选中 NONE 方法)--> WAIT_COMMAND --(CONNECT)--> RELAY
    HANDSHAKE --(无可接受方法)--> HANDSHAKE
    WAIT_COMMAND --(不支持的地址类型/命令)--> WAIT_COMMAND
    任意握手/命令阶段 --(版本错误)--> 关闭

调用约定:
    HANDSHAKE 和 WAIT_COMMAND 阶段每次调用 process() 必须恰好传入一条完整消息，
    状态机不会拼接分片的消息，分片会导致 DecodeError。RELAY 阶段可以任意分块。
"""

import logging
from dataclasses import dataclass
from typing import Dict, Optional, Union

from config import EngineConfig
from errors import ProtocolVersionError, Socks5Error, UnsupportedAddressType, UnsupportedCommand
from protocol import (
    SOCKS5_VERSION,
    NO_ACCEPTABLE_METHODS,
    AuthenticateMethod,
    BufferReader,
    Command,
    CommandResponse,
    ConnectionState,
    Socks5Address,
    make_empty_reply,
    make_method_reply,
)
from relay.base import CloseEvent, DataEvent, Events
from relay.connect import ConnectCommandHandler, Connector

logger = logging.getLogger('socks5-connection')


# ============================================================================
# 命令请求
# ============================================================================

@dataclass
class ConnectRequest:
    """CONNECT 请求"""
    address: str
    port: int


@dataclass
class UnsupportedRequest:
    """
    没有处理器的命令请求（BIND、UDP ASSOCIATE 或未知命令）

    Attributes:
        command: 收到的 CMD 值
        address: 目标地址
        port: 目标端口
    """
    command: int
    address: str
    port: int


CommandRequest = Union[ConnectRequest, UnsupportedRequest]


def parse_command_request(reader: BufferReader) -> CommandRequest:
    """
    解析命令请求的剩余部分（VER 之后）

    Args:
        reader: 游标位于 CMD 处的读取器

    Returns:
        CommandRequest: ConnectRequest 或 UnsupportedRequest

    Raises:
        UnsupportedAddressType: 未知的地址类型
        DecodeError: 消息不完整
    """
    command = reader.read_uint8()
    reader.read_uint8()  # RSV
    address_type = reader.read_uint8()
    address = Socks5Address.decode(address_type, reader)
    port = reader.read_uint16_be()

    if command == Command.CONNECT:
        return ConnectRequest(address, port)
    return UnsupportedRequest(command, address, port)


# ============================================================================
# 连接状态机
# ============================================================================

class Socks5ServerConnection:
    """
    SOCKS5 服务端连接状态机

    @see https://tools.ietf.org/html/rfc1928

    Attributes:
        config: 引擎配置
        state: 当前连接状态
        handler: 当前命令处理器，只在 CONNECT 解析成功后创建
        closed: 连接是否已终止
        log_context: 日志上下文字段，通过 LoggerAdapter 附加到本连接的每条日志记录
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        connector: Optional[Connector] = None,
        log_context: Optional[Dict[str, str]] = None
    ):
        """
        初始化连接状态机

        Args:
            config: 引擎配置（可选，默认使用 EngineConfig()）
            connector: 上游连接器（可选，默认使用 asyncio.open_connection）
            log_context: 本连接的日志上下文（可选），CONNECT 后补充 target 字段
        """
        self.config = config or EngineConfig()
        self._connector = connector
        self.log_context = log_context if log_context is not None else {}
        self._logger = logging.LoggerAdapter(logger, self.log_context)
        self._state = ConnectionState.HANDSHAKE
        self._handler: Optional[ConnectCommandHandler] = None
        self._closed = False

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def handler(self) -> Optional[ConnectCommandHandler]:
        return self._handler

    @property
    def closed(self) -> bool:
        return self._closed

    def check_version(self, reader: BufferReader) -> Events:
        """
        检查消息的 VER 字段

        Returns:
            Events: 版本正确时为空列表，否则为关闭事件（连接随之终止）
        """
        version = reader.read_uint8()
        if version != SOCKS5_VERSION:
            self._logger.warning(f"版本错误，关闭连接: {version}")
            self._closed = True
            return [CloseEvent(ProtocolVersionError(version))]
        return []

    async def process(self, data: bytes) -> Events:
        """
        处理下一条消息

        Args:
            data: 握手和命令阶段为一条完整的 SOCKS5 消息，中继阶段为任意字节

        Returns:
            Events: 需要发给客户端的数据和/或关闭事件

        Raises:
            DecodeError: 握手或命令消息格式错误
        """
        if self._closed:
            return [CloseEvent()]

        if self._state == ConnectionState.RELAY:
            return self._track(await self._handler.process(data))

        reader = BufferReader(data)
        if self._state == ConnectionState.HANDSHAKE:
            return self._process_handshake(reader)
        return self._process_command(reader)

    def _process_handshake(self, reader: BufferReader) -> Events:
        events = self.check_version(reader)
        if events:
            return events

        count = reader.read_uint8()
        for _ in range(count):
            method = reader.read_uint8()
            if method == AuthenticateMethod.NONE:
                self._state = ConnectionState.WAIT_COMMAND
                self._logger.debug("握手完成，选择 NONE 认证")
                return [DataEvent(make_method_reply(AuthenticateMethod.NONE))]

        # 没有可接受的方法时保持在 HANDSHAKE 状态
        self._logger.info("没有可接受的认证方法")
        return [DataEvent(make_method_reply(NO_ACCEPTABLE_METHODS))]

    def _process_command(self, reader: BufferReader) -> Events:
        events = self.check_version(reader)
        if events:
            return events

        try:
            request = parse_command_request(reader)
        except UnsupportedAddressType as e:
            self._logger.info(f"拒绝请求: {e}")
            return [DataEvent(make_empty_reply(CommandResponse.ADDRESS_TYPE_NOT_SUPPORTED))]

        if isinstance(request, ConnectRequest):
            self.log_context["target"] = f"{request.address}:{request.port}"
            self._logger.info(f"CONNECT {request.address}:{request.port}")
            self._handler = ConnectCommandHandler(
                request.address,
                request.port,
                connector=self._connector,
                connect_timeout=self.config.connect_timeout,
                strict_failure_replies=self.config.strict_failure_replies,
                log_context=self.log_context
            )
            self._handler.start()
            self._state = ConnectionState.RELAY
            return []

        self._logger.info(f"拒绝请求: {UnsupportedCommand(request.command)} ({request.address}:{request.port})")
        return [DataEvent(make_empty_reply(CommandResponse.COMMAND_NOT_SUPPORTED))]

    def _track(self, events: Events) -> Events:
        if any(isinstance(event, CloseEvent) for event in events):
            self._closed = True
        return events

    async def read(self, size: int) -> Events:
        """
        从命令处理器拉取发往客户端的数据

        调用方在客户端方向有剩余输出容量时调用，size 为剩余容量。

        Args:
            size: 最多读取的字节数

        Returns:
            Events: CONNECT 回复、上游数据或关闭事件

        Raises:
            Socks5Error: 还没有活动的命令处理器
        """
        if self._handler is None:
            raise Socks5Error("没有活动的命令处理器")
        return self._track(await self._handler.read(size))

    async def end(self):
        """
        客户端不再发送数据：半关闭上游连接

        上游剩余的数据仍可通过 read() 取得。还没有命令处理器时什么也不做。
        """
        if self._handler is not None:
            await self._handler.end()

    async def close(self):
        """
        关闭连接并清理资源
        """
        self._closed = True
        if self._handler is not None:
            await self._handler.close()
