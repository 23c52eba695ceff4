"""
SOCKS5 地址编解码

本模块在文本地址（点分 IPv4、IPv6 或主机名）和 SOCKS5 地址字段的线路
编码 {ATYP, 负载} 之间转换。

负载格式:
- IPv4: 4 字节
- IPv6: 16 字节
- 域名: 长度(1 字节) + UTF-8 字节（长度 <= 255）
"""

import ipaddress

from errors import UnsupportedAddressType

from .core import AddressType, BufferReader, MAX_DOMAIN_LENGTH


class Socks5Address:
    """
    SOCKS5 线路地址

    编码时先尝试按数字 IP 解析，成功则根据地址族标记为 IPv4 或 IPv6；
    解析失败则视为主机名。

    Attributes:
        type: 地址类型（AddressType）
        buffer: 地址负载字节（域名包含长度前缀）

    Example:
        >>> Socks5Address('127.0.0.1').buffer
        b'\\x7f\\x00\\x00\\x01'
        >>> Socks5Address('example.com').buffer
        b'\\x0bexample.com'
    """

    __slots__ = ('type', 'buffer')

    def __init__(self, address: str):
        try:
            parsed = ipaddress.ip_address(address)
        except ValueError:
            content = address.encode('utf-8')
            if len(content) > MAX_DOMAIN_LENGTH:
                raise ValueError(f"主机名过长: {len(content)} 字节 (最大 {MAX_DOMAIN_LENGTH})")
            self.type = AddressType.DOMAIN_NAME
            self.buffer = bytes([len(content)]) + content
        else:
            self.type = AddressType.IPV4 if parsed.version == 4 else AddressType.IPV6
            self.buffer = parsed.packed

    @classmethod
    def encode(cls, address: str) -> 'Socks5Address':
        return cls(address)

    @classmethod
    def from_bound(cls, host: str) -> 'Socks5Address':
        """
        编码本地绑定地址，用于成功回复的 BND.ADDR

        IPv4 映射的 IPv6 地址还原为 IPv4，并去掉 IPv6 的 zone id。

        Args:
            host: socket.getsockname() 返回的主机部分

        Returns:
            Socks5Address: IPv4 或 IPv6 地址
        """
        parsed = ipaddress.ip_address(host.split('%', 1)[0])
        if parsed.version == 6 and parsed.ipv4_mapped is not None:
            parsed = parsed.ipv4_mapped
        return cls(str(parsed))

    @staticmethod
    def decode(address_type: int, reader: BufferReader) -> str:
        """
        从读取器中解码地址

        Args:
            address_type: 线路上读到的 ATYP
            reader: 游标位于 DST.ADDR 起始处的读取器

        Returns:
            str: 文本地址

        Raises:
            UnsupportedAddressType: 未知的地址类型
            DecodeError: 数据不足
        """
        if address_type == AddressType.IPV4:
            return str(ipaddress.IPv4Address(reader.read_bytes(4)))
        if address_type == AddressType.DOMAIN_NAME:
            length = reader.read_uint8()
            return reader.read_string(length)
        if address_type == AddressType.IPV6:
            return str(ipaddress.IPv6Address(reader.read_bytes(16)))
        raise UnsupportedAddressType(address_type)

    def to_bytes(self) -> bytes:
        """返回 ATYP + 负载"""
        return bytes([self.type]) + self.buffer

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Socks5Address):
            return NotImplemented
        return self.type == other.type and self.buffer == other.buffer

    def __repr__(self) -> str:
        return f"Socks5Address(type={self.type.name}, buffer={self.buffer!r})"
