"""
SOCKS5 引擎 - 配置管理模块
加载和保存配置文件，管理引擎参数。

功能概述:
本模块提供了配置管理功能，包括：
1. 引擎配置数据类定义
2. YAML 格式配置文件的加载和保存
3. 环境变量覆盖

配置文件格式:
    engine:
      high_water_mark: 16384
      read_chunk_size: 32768
      connect_timeout: 10.0
      strict_failure_replies: false
    logging:
      level: INFO

环境变量（优先于配置文件）:
    SOCKS5_HIGH_WATER_MARK, SOCKS5_READ_CHUNK_SIZE,
    SOCKS5_CONNECT_TIMEOUT（"none" 表示不限时）, SOCKS5_STRICT_FAILURE_REPLIES
"""

import logging
import os
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger(__name__)


# ============================================================================
# 配置数据类
# ============================================================================

@dataclass
class EngineConfig:
    """
    引擎配置数据类

    Attributes:
        high_water_mark: 客户端方向输出缓冲区的高水位（字节，默认: 16384），
            反向中继读取上游时不会使缓冲超过该值
        read_chunk_size: 中继阶段每次从客户端读取的最大字节数（默认: 32768）
        connect_timeout: 连接上游的超时时间（秒，默认: 10.0），None 表示不限时
        strict_failure_replies: 连接失败时是否回复具体的失败码（默认: False，即
            回复 SUCCESS 和全零地址）
    """
    high_water_mark: int = 16384
    read_chunk_size: int = 32768
    connect_timeout: Optional[float] = 10.0
    strict_failure_replies: bool = False

    def __post_init__(self):
        if self.high_water_mark < 1:
            raise ValueError(f"high_water_mark 必须为正数: {self.high_water_mark}")
        if self.read_chunk_size < 1:
            raise ValueError(f"read_chunk_size 必须为正数: {self.read_chunk_size}")
        if self.connect_timeout is not None and self.connect_timeout <= 0:
            raise ValueError(f"connect_timeout 必须为正数或 None: {self.connect_timeout}")


# ============================================================================
# 配置文件管理函数
# ============================================================================

def load_config(config_file: str) -> Dict[str, Any]:
    """
    加载配置文件

    从 YAML 格式的配置文件中加载配置数据

    Args:
        config_file: 配置文件路径

    Returns:
        Dict[str, Any]: 配置数据字典，如果文件不存在或格式错误则返回空字典
    """
    try:
        with open(config_file, 'r', encoding='utf-8') as f:
            return yaml.safe_load(f) or {}
    except FileNotFoundError:
        return {}
    except yaml.YAMLError as e:
        logger.warning(f"配置文件格式错误: {e}")
        return {}


def save_config(config_file: str, config_data: Dict[str, Any]) -> bool:
    """
    保存配置文件

    Args:
        config_file: 配置文件路径
        config_data: 要保存的配置数据字典

    Returns:
        bool: 保存成功返回 True，失败返回 False
    """
    try:
        with open(config_file, 'w', encoding='utf-8') as f:
            yaml.dump(config_data, f, default_flow_style=False, allow_unicode=True)
        return True
    except OSError as e:
        logger.error(f"保存配置文件失败: {e}")
        return False


def _parse_timeout(value: Any) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, str) and value.strip().lower() in ('', 'none', 'null', 'off'):
        return None
    return float(value)


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ('1', 'true', 'yes', 'on')


def load_engine_config(config_file: Optional[str] = None) -> EngineConfig:
    """
    加载引擎配置

    读取配置文件的 engine 部分，再用 SOCKS5_* 环境变量覆盖。

    Args:
        config_file: 配置文件路径（可选）

    Returns:
        EngineConfig: 引擎配置对象

    Raises:
        ValueError: 配置值无效
    """
    data = load_config(config_file) if config_file else {}
    section = data.get('engine') or {}
    defaults = EngineConfig()

    high_water_mark = os.getenv('SOCKS5_HIGH_WATER_MARK', section.get('high_water_mark', defaults.high_water_mark))
    read_chunk_size = os.getenv('SOCKS5_READ_CHUNK_SIZE', section.get('read_chunk_size', defaults.read_chunk_size))
    connect_timeout = os.getenv('SOCKS5_CONNECT_TIMEOUT', section.get('connect_timeout', defaults.connect_timeout))
    strict = os.getenv('SOCKS5_STRICT_FAILURE_REPLIES',
                       section.get('strict_failure_replies', defaults.strict_failure_replies))

    config = EngineConfig(
        high_water_mark=int(high_water_mark),
        read_chunk_size=int(read_chunk_size),
        connect_timeout=_parse_timeout(connect_timeout),
        strict_failure_replies=_parse_bool(strict),
    )
    logger.debug(f"引擎配置: {config}")
    return config


def save_engine_config(config_file: str, config: EngineConfig) -> bool:
    """
    保存引擎配置到 engine 部分，保留文件中的其他部分

    Args:
        config_file: 配置文件路径
        config: 引擎配置对象

    Returns:
        bool: 保存成功返回 True，失败返回 False
    """
    data = load_config(config_file)
    data['engine'] = asdict(config)
    return save_config(config_file, data)
