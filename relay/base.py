"""
中继事件

本模块定义了连接状态机和命令处理器向调用方输出的事件。事件作为返回值
交给调用方，调用方负责把数据写给客户端、在收到关闭事件时拆除连接。

- DataEvent: 需要发送给客户端的字节（协议回复或上游数据）
- CloseEvent: 连接已终止，可能携带导致终止的异常
"""

from dataclasses import dataclass
from typing import List, Optional, Union


@dataclass
class DataEvent:
    """
    发往客户端的数据

    Attributes:
        data: 原样写给客户端的字节
    """
    data: bytes


@dataclass
class CloseEvent:
    """
    连接关闭信号

    Attributes:
        error: 导致关闭的异常，正常关闭时为 None
    """
    error: Optional[Exception] = None


ConnectionEvent = Union[DataEvent, CloseEvent]
Events = List[ConnectionEvent]
