"""
SOCKS5 引擎 - 错误类型

本模块定义了协议引擎使用的异常层次结构。

错误分类:
- ProtocolVersionError: 任何阶段收到错误的 VER，立即关闭连接，不回复
- DecodeError: 握手/命令消息格式错误或长度不足，作为致命错误抛给调用方
- UnsupportedAddressType: 未知 ATYP，回复 AddressTypeNotSupported，连接保持
- UnsupportedCommand: CONNECT 以外的 CMD，回复 CommandNotSupported，连接保持
- UpstreamConnectFailure: 上游连接未能建立，发送回复后关闭连接
- UpstreamWriteFailure: 中继阶段写入上游失败，关闭连接
- UpstreamUnexpectedClose: 中继阶段读取上游出错，关闭连接

只有 UnsupportedAddressType 和 UnsupportedCommand 在本地恢复（协议允许
客户端重试），其余错误都会终止连接。引擎自身从不重试。
"""

from typing import Optional


class Socks5Error(Exception):
    """SOCKS5 引擎所有错误的基类"""


class ProtocolVersionError(Socks5Error):
    """
    协议版本不匹配

    Attributes:
        version: 客户端发送的版本号
    """

    def __init__(self, version: int):
        super().__init__(f"不支持的 SOCKS 版本: {version}")
        self.version = version


class DecodeError(Socks5Error):
    """消息格式错误或读取越界"""


class UnsupportedAddressType(Socks5Error):
    """
    不支持的地址类型

    Attributes:
        address_type: 收到的 ATYP 值
    """

    def __init__(self, address_type: int):
        super().__init__(f"不支持的地址类型: {address_type:#04x}")
        self.address_type = address_type


class UnsupportedCommand(Socks5Error):
    """
    不支持的命令

    Attributes:
        command: 收到的 CMD 值
    """

    def __init__(self, command: int):
        super().__init__(f"不支持的命令: {command:#04x}")
        self.command = command


class UpstreamError(Socks5Error):
    """
    上游连接错误的基类

    Attributes:
        host: 目标主机
        port: 目标端口
        cause: 底层异常（可选）
    """

    def __init__(self, host: str, port: int, cause: Optional[BaseException] = None):
        message = f"{host}:{port}"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)
        self.host = host
        self.port = port
        self.cause = cause


class UpstreamConnectFailure(UpstreamError):
    """连接目标主机失败"""


class UpstreamWriteFailure(UpstreamError):
    """向上游写入数据失败"""


class UpstreamUnexpectedClose(UpstreamError):
    """中继过程中上游连接异常断开"""
