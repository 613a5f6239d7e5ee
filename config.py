"""
VLESS WebSocket 中继 - 配置管理模块
加载和保存配置文件，构造服务器配置和中继配置。

功能概述:
本模块提供了配置管理功能，包括：
1. 服务器配置（监听地址、WebSocket 路径、TLS、伪装响应头）
2. 中继配置（认证 UUID、超时、缓冲限制、出站拨号函数）
3. YAML 配置文件的加载和保存
4. 环境变量覆盖

配置文件格式（config.yaml）:
    server:
      host: 0.0.0.0
      port: 80
      path: /vless/
    relay:
      uuid: 8cd43dab-a5ae-4634-b9b1-726a262f25f6
      timeout_ms: 300000
    logging:
      level: INFO
    monitor:
      interval: 60
"""

import asyncio
import logging
import os
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Tuple

import yaml

logger = logging.getLogger(__name__)

Dialer = Callable[[str, int], Awaitable[Tuple[asyncio.StreamReader, asyncio.StreamWriter]]]


class ConfigError(ValueError):
    """配置值非法"""


def normalize_token(value: Any) -> str:
    """
    将 UUID 规范化为带连字符的小写形式

    接受 uuid.UUID 支持的所有写法（大写、无连字符、花括号、urn:uuid: 前缀）。

    Args:
        value: 配置中的 UUID

    Returns:
        str: 规范化的 UUID 字符串

    Raises:
        ConfigError: 值不是合法的 UUID
    """
    if value is None:
        raise ConfigError("未配置 UUID")
    try:
        return str(uuid.UUID(str(value).strip()))
    except ValueError:
        raise ConfigError(f"UUID 格式错误: {value!r}") from None


def generate_token() -> str:
    """生成新的随机 UUID"""
    return str(uuid.uuid4())


# ============================================================================
# 配置数据类
# ============================================================================

@dataclass
class ServerConfig:
    """
    服务器配置数据类

    Attributes:
        host: 监听地址（默认: "0.0.0.0"）
        port: 监听端口（默认: 80）
        path: WebSocket 升级路径（默认: "/vless/"）
        hostname: 对外域名，仅用于日志和证书生成
        cert_file: TLS 证书文件路径，与 key_file 同时设置时启用 TLS
        key_file: TLS 私钥文件路径
        server_header: HTTP 响应中的 Server 头（默认: "nginx/1.18.0"）
        log_connections: 是否记录连接日志（默认: True）
        max_message_size: 单条 WebSocket 消息的最大字节数
        shutdown_timeout: 优雅关闭的最长等待时间（秒），超时后强制关闭
        monitor_interval: 资源监控间隔（秒），0 表示关闭
    """
    host: str = "0.0.0.0"
    port: int = 80
    path: str = "/vless/"
    hostname: str = "localhost"
    cert_file: Optional[str] = None
    key_file: Optional[str] = None
    server_header: str = "nginx/1.18.0"
    log_connections: bool = True
    max_message_size: int = 1024 * 1024
    shutdown_timeout: float = 10.0
    monitor_interval: float = 0

    @property
    def tls_enabled(self) -> bool:
        return bool(self.cert_file and self.key_file)


@dataclass
class RelayConfig:
    """
    中继配置数据类，每个会话共享同一份只读配置

    Attributes:
        auth_token: 认证 UUID（构造时规范化）
        idle_timeout_ms: 出站连接的空闲超时（毫秒），连接建立时启动，不随数据刷新；0 表示关闭
        connect_timeout: 出站连接建立超时（秒）
        handshake_timeout: 等待握手消息的超时（秒），0 表示不限
        read_chunk_size: 每次从出站连接读取的最大字节数
        max_pending_messages: 出站连接就绪前可暂存的入站消息数
        dialer: 出站拨号函数 (host, port) -> (reader, writer)
    """
    auth_token: str
    idle_timeout_ms: int = 300000
    connect_timeout: float = 10.0
    handshake_timeout: float = 60.0
    read_chunk_size: int = 65536
    max_pending_messages: int = 64
    dialer: Dialer = field(default=asyncio.open_connection, repr=False)

    def __post_init__(self):
        self.auth_token = normalize_token(self.auth_token)
        if self.idle_timeout_ms < 0:
            raise ConfigError(f"timeout_ms 不能为负数: {self.idle_timeout_ms}")
        if self.max_pending_messages < 1:
            raise ConfigError(f"max_pending_messages 至少为 1: {self.max_pending_messages}")

    @property
    def idle_timeout(self) -> float:
        """空闲超时（秒）"""
        return self.idle_timeout_ms / 1000.0


# ============================================================================
# 配置文件管理函数
# ============================================================================

def load_config(config_file: str) -> Dict[str, Any]:
    """
    加载配置文件

    Args:
        config_file: 配置文件路径

    Returns:
        Dict[str, Any]: 配置数据字典，文件不存在或格式错误时返回空字典
    """
    try:
        with open(config_file, 'r', encoding='utf-8') as f:
            return yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.warning(f"未找到配置文件: {config_file}，使用默认配置")
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


def build_configs(
    config_data: Optional[Dict[str, Any]],
    env: Optional[Mapping[str, str]] = None
) -> Tuple[ServerConfig, RelayConfig]:
    """
    从配置字典和环境变量构造服务器配置和中继配置

    环境变量优先于配置文件：
    RELAY_UUID、RELAY_HOST、RELAY_PORT、RELAY_PATH、RELAY_TIMEOUT_MS

    Args:
        config_data: load_config 返回的字典
        env: 环境变量映射（默认 os.environ）

    Returns:
        Tuple[ServerConfig, RelayConfig]

    Raises:
        ConfigError: UUID 缺失或非法、数值字段非法
    """
    if env is None:
        env = os.environ
    config_data = config_data or {}
    server_conf = config_data.get('server') or {}
    relay_conf = config_data.get('relay') or {}
    monitor_conf = config_data.get('monitor') or {}

    try:
        server = ServerConfig(
            host=env.get('RELAY_HOST', server_conf.get('host', '0.0.0.0')),
            port=int(env.get('RELAY_PORT', server_conf.get('port', 80))),
            path=env.get('RELAY_PATH', server_conf.get('path', '/vless/')),
            hostname=server_conf.get('hostname', 'localhost'),
            cert_file=server_conf.get('cert_file'),
            key_file=server_conf.get('key_file'),
            server_header=server_conf.get('server_header', 'nginx/1.18.0'),
            log_connections=bool(server_conf.get('log_connections', True)),
            max_message_size=int(server_conf.get('max_message_size', 1024 * 1024)),
            shutdown_timeout=float(server_conf.get('shutdown_timeout', 10.0)),
            monitor_interval=float(monitor_conf.get('interval', 0)),
        )
        relay = RelayConfig(
            auth_token=env.get('RELAY_UUID', relay_conf.get('uuid')),
            idle_timeout_ms=int(env.get('RELAY_TIMEOUT_MS', relay_conf.get('timeout_ms', 300000))),
            connect_timeout=float(relay_conf.get('connect_timeout', 10.0)),
            handshake_timeout=float(relay_conf.get('handshake_timeout', 60.0)),
            read_chunk_size=int(relay_conf.get('read_chunk_size', 65536)),
            max_pending_messages=int(relay_conf.get('max_pending_messages', 64)),
        )
    except ConfigError:
        raise
    except (TypeError, ValueError) as e:
        raise ConfigError(f"配置值非法: {e}") from e

    if not server.path.startswith('/'):
        raise ConfigError(f"WebSocket 路径必须以 / 开头: {server.path}")

    return server, relay
