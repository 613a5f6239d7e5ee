"""
VLESS WebSocket 中继模块

本模块整合了中继会话和服务器，主要功能包括：
- 握手头解析后建立出站 TCP 连接
- WebSocket 与 TCP 之间的双向字节转发
- 两端连接的联动关闭
- 非 WebSocket 请求的伪装响应

使用示例：
    # 单个连接
    from relay import create_session
    await create_session(connection, relay_config)

    # 服务器
    from relay import RelayServer
    server = RelayServer(server_config, relay_config)
    await server.start()
"""

from .connection import CloseStatus, RemoteConnection, close_transport
from .server import RelayServer
from .session import RelaySession, SessionPhase, create_session

__all__ = [
    'CloseStatus',
    'RemoteConnection',
    'close_transport',
    'RelaySession',
    'SessionPhase',
    'create_session',
    'RelayServer',
]
