"""
SOCKS5 - 核心协议模块
定义 SOCKS5 协议的常量、枚举、二进制读取器和回复构造函数。

功能概述:
本模块提供了 RFC1928 协议引擎的底层组件，被连接状态机和命令处理器共享。

主要功能:
1. 协议常量定义 - 版本号、方法、命令、回复码、地址类型
2. 二进制读取器 - 基于游标的顺序解码
3. 回复构造 - 方法选择回复和命令回复

消息格式:
┌─────┬──────────┬──────────┐        ┌─────┬────────┐
│ VER │ NMETHODS │ METHODS  │        │ VER │ METHOD │
│  1  │    1     │ 1 到 255 │        │  1  │   1    │
└─────┴──────────┴──────────┘        └─────┴────────┘
┌─────┬─────┬─────┬──────┬──────────┬──────────┐
│ VER │ CMD │ RSV │ ATYP │ DST.ADDR │ DST.PORT │
│  1  │  1  │ 00  │  1   │  可变    │    2     │
└─────┴─────┴─────┴──────┴──────────┴──────────┘
┌─────┬─────┬─────┬──────┬──────────┬──────────┐
│ VER │ REP │ RSV │ ATYP │ BND.ADDR │ BND.PORT │
│  1  │  1  │ 00  │  1   │  可变    │    2     │
└─────┴─────┴─────┴──────┴──────────┴──────────┘

所有多字节字段使用大端序（网络字节序）。
"""

import struct
from enum import IntEnum
from typing import TYPE_CHECKING, Optional

from errors import DecodeError

if TYPE_CHECKING:
    from .address import Socks5Address


# ============================================================================
# 协议常量
# ============================================================================

SOCKS5_VERSION = 0x05
RESERVED = 0x00
NO_ACCEPTABLE_METHODS = 0xFF
MAX_DOMAIN_LENGTH = 255


# ============================================================================
# 协议枚举
# ============================================================================

class ConnectionState(IntEnum):
    """
    连接状态

    AUTHENTICATION 保留用于与线路枚举保持一致，目前不会进入该状态。
    """
    HANDSHAKE = 0
    AUTHENTICATION = 1
    WAIT_COMMAND = 2
    RELAY = 3


class AuthenticateMethod(IntEnum):
    NONE = 0x00
    GSSAPI = 0x01
    USERNAME_PASSWORD = 0x02


class Command(IntEnum):
    CONNECT = 0x01
    BIND = 0x02
    UDP_ASSOCIATE = 0x03


class CommandResponse(IntEnum):
    """回复字段 REP 的取值"""
    SUCCESS = 0x00
    GENERAL_ERROR = 0x01
    FORBIDDEN = 0x02
    NETWORK_UNREACHABLE = 0x03
    HOST_UNREACHABLE = 0x04
    CONNECTION_REFUSED = 0x05
    TTL_EXPIRED = 0x06
    COMMAND_NOT_SUPPORTED = 0x07
    ADDRESS_TYPE_NOT_SUPPORTED = 0x08


class AddressType(IntEnum):
    IPV4 = 0x01
    DOMAIN_NAME = 0x03
    IPV6 = 0x04


# ============================================================================
# 二进制读取器
# ============================================================================

class BufferReader:
    """
    顺序二进制读取器

    每次读取都会按消耗的长度推进内部游标。读取超出缓冲区末尾时抛出
    DecodeError，不做任何越界恢复。每条消息使用一个新的实例。

    Attributes:
        offset: 当前游标位置
    """

    def __init__(self, buffer: bytes):
        self._buffer = bytes(buffer)
        self.offset = 0

    @property
    def remaining(self) -> int:
        """未读取的字节数"""
        return len(self._buffer) - self.offset

    def _take(self, length: int) -> bytes:
        if length < 0:
            raise DecodeError(f"无效的读取长度: {length}")
        end = self.offset + length
        if end > len(self._buffer):
            raise DecodeError(
                f"读取越界: 偏移 {self.offset}, 需要 {length} 字节, 缓冲区 {len(self._buffer)} 字节"
            )
        result = self._buffer[self.offset:end]
        self.offset = end
        return result

    def read_uint8(self) -> int:
        return self._take(1)[0]

    def read_uint16_be(self) -> int:
        return struct.unpack('>H', self._take(2))[0]

    def read_string(self, length: int) -> str:
        return self._take(length).decode('utf-8', errors='replace')

    def read_bytes(self, length: int) -> bytes:
        return self._take(length)


# ============================================================================
# 回复构造函数
# ============================================================================

def make_method_reply(method: int) -> bytes:
    """
    创建方法选择回复

    Args:
        method: 选中的认证方法，NO_ACCEPTABLE_METHODS (0xFF) 表示没有可接受的方法

    Returns:
        bytes: [VER, METHOD]
    """
    return struct.pack('>BB', SOCKS5_VERSION, method)


def make_reply(rep: int, address: Optional['Socks5Address'] = None, port: int = 0) -> bytes:
    """
    创建命令回复

    未提供地址时使用全零 IPv4 地址，得到 10 字节的回复。

    Args:
        rep: 回复码（CommandResponse）
        address: 绑定地址（可选）
        port: 绑定端口

    Returns:
        bytes: [VER, REP, RSV, ATYP, BND.ADDR, BND.PORT]

    Example:
        >>> make_reply(CommandResponse.COMMAND_NOT_SUPPORTED)
        b'\\x05\\x07\\x00\\x01\\x00\\x00\\x00\\x00\\x00\\x00'
    """
    if address is None:
        atyp, payload = AddressType.IPV4, bytes(4)
    else:
        atyp, payload = address.type, address.buffer
    return (
        struct.pack('>BBBB', SOCKS5_VERSION, rep, RESERVED, atyp)
        + payload
        + struct.pack('>H', port)
    )


def make_empty_reply(rep: int) -> bytes:
    """创建地址和端口全零的 10 字节回复"""
    return make_reply(rep)
