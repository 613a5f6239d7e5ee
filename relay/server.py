"""
中继服务器模块 - 服务器生命周期管理

此模块包含 RelayServer 类，负责 WebSocket 服务器的启动、请求分流和关闭：
- 非 WebSocket 请求返回伪装的 nginx 欢迎页
- 路径不匹配的升级请求返回 404
- 升级成功的连接交给 create_session 处理

使用示例:
    >>> server_config, relay_config = build_configs(load_config('config.yaml'))
    >>> server = RelayServer(server_config, relay_config)
    >>> asyncio.run(server.start())
"""

import asyncio
import logging
import ssl
from http import HTTPStatus
from typing import Optional, Set, Tuple
from urllib.parse import urlsplit

from websockets.asyncio.server import serve

from config import RelayConfig, ServerConfig
from fake_page import decoy_response
from resource_monitor import ResourceMonitor

from .session import RelaySession, create_session

logger = logging.getLogger('vless-relay-server')


class RelayServer:
    """
    中继服务器类 - 管理服务器生命周期和客户端连接

    Attributes:
        config: ServerConfig，服务器配置
        relay_config: RelayConfig，传给每个会话的中继配置
        sessions: 活动会话集合（仅用于运行状态观测）
        ssl_context: 启用 TLS 时的 SSL 上下文
        address: 实际监听的地址 (host, port)，启动后设置
        started: 服务器开始监听时设置的事件
    """

    def __init__(self, config: ServerConfig, relay_config: RelayConfig):
        self.config = config
        self.relay_config = relay_config
        self.sessions: Set[RelaySession] = set()
        self.ssl_context = self._create_ssl_context() if config.tls_enabled else None
        self.address: Optional[Tuple[str, int]] = None
        self.started = asyncio.Event()

    def _create_ssl_context(self) -> ssl.SSLContext:
        """
        创建 SSL/TLS 上下文

        最低版本 TLS 1.2，证书和私钥从配置的路径加载。
        """
        ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        ctx.minimum_version = ssl.TLSVersion.TLSv1_2
        ctx.load_cert_chain(self.config.cert_file, self.config.key_file)
        return ctx

    def process_request(self, connection, request):
        """
        升级前的请求分流

        Returns:
            None 表示继续 WebSocket 握手，否则返回直接发送的 HTTP 响应
        """
        upgrade = request.headers.get('Upgrade', '')
        if upgrade.lower() != 'websocket':
            if self.config.log_connections:
                logger.info(f"[HTTP] 来自 {connection.remote_address[0]} 的请求: {request.path}")
            return decoy_response(connection)

        path = urlsplit(request.path).path
        if path != self.config.path:
            if self.config.log_connections:
                logger.info(f"[Upgrade] 拒绝无效路径的升级请求: {path}")
            return connection.respond(HTTPStatus.NOT_FOUND, "Not Found\n")

        return None

    async def handle_connection(self, connection):
        """升级完成的连接入口，由 websockets 为每个连接调用"""
        await create_session(connection, self.relay_config, registry=self.sessions)

    async def start(self, stop: Optional[asyncio.Event] = None):
        """
        启动服务器，直到 stop 事件被设置

        关闭时先停止接受新连接并以 1001 关闭现有连接，
        超过 shutdown_timeout 仍未结束则强制退出。

        Args:
            stop: 停止事件，None 表示一直运行
        """
        if stop is None:
            stop = asyncio.Event()

        server = await serve(
            self.handle_connection,
            self.config.host,
            self.config.port,
            process_request=self.process_request,
            server_header=self.config.server_header,
            max_size=self.config.max_message_size,
            ssl=self.ssl_context,
        )
        self.address = server.sockets[0].getsockname()[:2]
        scheme = 'wss' if self.ssl_context else 'ws'
        logger.info(f"VLESS WebSocket 中继运行于 {self.address[0]}:{self.address[1]}")
        logger.info(f"域名: {self.config.hostname}")
        logger.info(f"WebSocket 路径: {scheme}://{self.config.hostname}{self.config.path}")

        monitor_task = None
        if self.config.monitor_interval > 0:
            monitor = ResourceMonitor(lambda: len(self.sessions), self.config.monitor_interval)
            monitor_task = asyncio.ensure_future(monitor.run())

        self.started.set()
        try:
            await stop.wait()
        finally:
            logger.info(f"正在关闭服务器，活动会话数: {len(self.sessions)}")
            if monitor_task is not None:
                monitor_task.cancel()
            server.close()
            try:
                await asyncio.wait_for(server.wait_closed(), timeout=self.config.shutdown_timeout)
                logger.info("服务器已关闭")
            except asyncio.TimeoutError:
                logger.error(f"关闭超时（{self.config.shutdown_timeout}秒），强制关闭")
