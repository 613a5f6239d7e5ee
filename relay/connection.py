"""
连接管理模块 - 出站 TCP 连接与 WebSocket 关闭辅助函数

此模块定义了出站连接数据类和两端连接的幂等关闭函数，
供中继会话在任何退出路径上安全地释放连接。
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import IntEnum
from typing import Optional

from websockets.exceptions import ConnectionClosed
from websockets.protocol import State

from vless import format_target

logger = logging.getLogger('vless-relay-connection')


class CloseStatus(IntEnum):
    """
    WebSocket 关闭状态码

    同一部署内保持稳定，便于观测。关闭原因只使用固定的通用文本，
    不包含内部错误信息。
    """
    NORMAL = 1000
    GOING_AWAY = 1001
    PROTOCOL_ERROR = 1002
    POLICY_VIOLATION = 1008
    INTERNAL_ERROR = 1011
    UPSTREAM_UNREACHABLE = 1014


CLOSE_REASONS = {
    CloseStatus.NORMAL: '',
    CloseStatus.GOING_AWAY: 'Going away',
    CloseStatus.PROTOCOL_ERROR: 'Protocol error',
    CloseStatus.POLICY_VIOLATION: 'Policy violation',
    CloseStatus.INTERNAL_ERROR: 'Internal error',
    CloseStatus.UPSTREAM_UNREACHABLE: 'Upstream unreachable',
}


@dataclass
class RemoteConnection:
    """
    出站连接数据类 - 表示中继会话打开的一条 TCP 连接

    每个会话独占一条出站连接，会话结束时关闭。close() 是幂等的，
    重复调用不会抛出异常。

    Attributes:
        host: 目标主机名或 IP 地址
        port: 目标端口号
        reader: asyncio.StreamReader，用于从目标主机读取数据
        writer: asyncio.StreamWriter，用于向目标主机写入数据
        connected: 连接状态标志
    """
    host: str
    port: int
    reader: Optional[asyncio.StreamReader] = None
    writer: Optional[asyncio.StreamWriter] = None
    connected: bool = True

    @property
    def target(self) -> str:
        return format_target(self.host, self.port)

    async def close(self):
        """关闭出站连接（幂等）"""
        if not self.connected:
            return
        self.connected = False

        if self.writer is None:
            return
        try:
            self.writer.close()
            await self.writer.wait_closed()
        except (ConnectionError, OSError) as e:
            logger.debug(f"关闭出站连接时出错: target={self.target}, error={e}")


def transport_is_open(transport) -> bool:
    """WebSocket 连接是否仍可收发"""
    return transport.state in (State.CONNECTING, State.OPEN)


async def close_transport(transport, code: int = CloseStatus.NORMAL, reason: Optional[str] = None) -> bool:
    """
    关闭 WebSocket 连接（幂等）

    已经处于 CLOSING/CLOSED 状态的连接直接跳过。

    Args:
        transport: WebSocket 连接
        code: 关闭状态码
        reason: 关闭原因，None 表示使用状态码对应的通用文本

    Returns:
        bool: 本次调用发起了关闭返回 True，连接已关闭返回 False
    """
    if not transport_is_open(transport):
        return False
    if reason is None:
        reason = CLOSE_REASONS.get(code, '')
    try:
        await transport.close(int(code), reason)
    except (ConnectionClosed, ConnectionError, OSError) as e:
        logger.debug(f"关闭 WebSocket 连接时出错: code={int(code)}, error={e}")
    return True
