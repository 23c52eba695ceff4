"""
SOCKS5 协议包

本包提供了 SOCKS5 (RFC1928) 协议引擎的线路层定义，包括：
- 核心协议常量和枚举
- 二进制读取器
- 地址编解码
- 回复构造函数

使用示例：
    from protocol import BufferReader, Socks5Address, make_reply, CommandResponse

    # 编码地址
    address = Socks5Address('127.0.0.1')

    # 构造回复
    reply = make_reply(CommandResponse.SUCCESS, address, 1080)

    # 解码地址
    reader = BufferReader(address.buffer)
    text = Socks5Address.decode(address.type, reader)
"""

from .core import (
    # 协议常量
    SOCKS5_VERSION,
    RESERVED,
    NO_ACCEPTABLE_METHODS,
    MAX_DOMAIN_LENGTH,

    # 协议枚举
    ConnectionState,
    AuthenticateMethod,
    Command,
    CommandResponse,
    AddressType,

    # 二进制读取器
    BufferReader,

    # 回复构造函数
    make_method_reply,
    make_reply,
    make_empty_reply,
)
from .address import Socks5Address

__all__ = [
    'SOCKS5_VERSION',
    'RESERVED',
    'NO_ACCEPTABLE_METHODS',
    'MAX_DOMAIN_LENGTH',
    'ConnectionState',
    'AuthenticateMethod',
    'Command',
    'CommandResponse',
    'AddressType',
    'BufferReader',
    'make_method_reply',
    'make_reply',
    'make_empty_reply',
    'Socks5Address',
]
