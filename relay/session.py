"""
中继会话模块

本模块定义了 RelaySession 类，负责单条 WebSocket 连接从握手到关闭的完整生命周期：
解析第一条消息中的握手头、建立到目标主机的 TCP 连接、转发握手头之后的负载，
然后在两个方向上并发转发字节，直到任一端关闭、出错或空闲超时。

状态机:
    AWAITING_HANDSHAKE → CONNECTING → RELAYING → CLOSED
    CLOSED 是终止状态，可以从任何状态进入。

所有终止事件都通过 _terminate() 记录第一个原因并设置关闭信号，
run() 等待该信号后统一执行清理。两端连接各关闭一次。
"""

import asyncio
import logging
import time
import uuid
from enum import Enum
from typing import List, NamedTuple, Optional, Set

from websockets.exceptions import ConnectionClosed

from config import RelayConfig
from logger import add_context, reset_context
from vless import AuthenticationFailed, DecodeError, HandshakeHeader, decode_header, format_target

from .connection import CloseStatus, RemoteConnection, close_transport, transport_is_open

logger = logging.getLogger('vless-relay-session')


# ============================================================================
# 会话错误
# ============================================================================

class RelayError(Exception):
    """中继会话错误的基类"""


class UpstreamError(RelayError):
    """出站连接错误"""


class UpstreamConnectError(UpstreamError):
    """出站连接建立失败（DNS 解析失败、连接被拒绝等）"""


class UpstreamTimeoutError(UpstreamError):
    """出站连接建立超时"""


class IdleTimeoutError(UpstreamTimeoutError):
    """出站连接空闲超时"""


class UpstreamResetError(UpstreamError):
    """出站连接在转发过程中出错"""


class TransportClosedError(RelayError):
    """WebSocket 连接被客户端关闭或出错"""


class InternalWriteError(RelayError):
    """向已关闭的连接写入"""


class HandshakeTimeoutError(RelayError):
    """等待握手消息超时"""


# ============================================================================
# 会话状态
# ============================================================================

class SessionPhase(Enum):
    AWAITING_HANDSHAKE = 'awaiting_handshake'
    CONNECTING = 'connecting'
    RELAYING = 'relaying'
    CLOSED = 'closed'


class Destination(NamedTuple):
    address: str
    port: int

    def __str__(self):
        return format_target(self.address, self.port)


def _as_bytes(message) -> bytes:
    # 文本帧按其 UTF-8 字节原样转发
    if isinstance(message, str):
        return message.encode('utf-8')
    return bytes(message)


class RelaySession:
    """
    中继会话类 - 处理单条 WebSocket 连接的转发

    会话借用 WebSocket 连接直到会话结束，并在每条退出路径上关闭它；
    出站 TCP 连接由会话创建并独占，任何终止事件都会关闭它。

    Attributes:
        transport: WebSocket 连接
        config: RelayConfig，中继配置
        session_id: 会话标识，用于日志
        phase: SessionPhase，当前状态
        destination: Destination，握手头中的目标地址（仅用于日志）
        remote: RemoteConnection，出站连接
        error: 第一个终止原因（DecodeError 或 RelayError），正常结束时为 None
        close_code: 关闭 WebSocket 时使用的状态码
        bytes_up: 写入出站连接的字节数
        bytes_down: 发送给客户端的字节数
    """

    def __init__(self, transport, config: RelayConfig, session_id: Optional[str] = None):
        self.transport = transport
        self.config = config
        self.session_id = session_id or uuid.uuid4().hex[:8]

        self.phase = SessionPhase.AWAITING_HANDSHAKE
        self.destination: Optional[Destination] = None
        self.remote: Optional[RemoteConnection] = None
        self.error: Optional[Exception] = None
        self.close_code = CloseStatus.NORMAL

        self.bytes_up = 0
        self.bytes_down = 0
        self.started_at = time.monotonic()

        self._initial_payload = b''
        self._pending: asyncio.Queue = asyncio.Queue(maxsize=config.max_pending_messages)
        self._closing = asyncio.Event()
        self._tasks: List[asyncio.Task] = []
        self._idle_handle: Optional[asyncio.TimerHandle] = None

        peer = getattr(transport, 'remote_address', None)
        self.peer_str = f"{peer[0]}:{peer[1]}" if peer else "unknown"

    @property
    def closed(self) -> bool:
        return self.phase is SessionPhase.CLOSED

    def _terminate(self, code: CloseStatus, error: Optional[Exception] = None):
        """
        记录终止原因并发出关闭信号

        只有第一次调用生效，之后的终止事件都是第一个事件的连带结果。
        """
        if self._closing.is_set():
            return
        self.close_code = code
        self.error = error
        self._closing.set()

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.append(task)
        return task

    async def run(self):
        """
        主会话处理器 - 处理完整的连接生命周期

        除取消外不抛出异常，所有结果通过关闭状态码和日志体现；
        取消时以 1001 关闭连接后继续向上抛出 CancelledError。
        """
        token = add_context(session=self.session_id, peer=self.peer_str)
        logger.info(f"新的 WebSocket 连接: {self.peer_str}")

        try:
            header = await self._await_handshake()
            if header is None:
                return

            self._spawn(self._receive_loop())
            self._spawn(self._watch_transport())

            if not await self._connect():
                return

            await self._relay()

        except asyncio.CancelledError:
            logger.debug(f"会话被取消: {self.peer_str}")
            self._terminate(CloseStatus.GOING_AWAY)
            raise
        except Exception as e:
            logger.error(f"会话错误: {e}", exc_info=True)
            self._terminate(CloseStatus.INTERNAL_ERROR, e)
        finally:
            await self.close()
            reset_context(token)

    # ------------------------------------------------------------------
    # AWAITING_HANDSHAKE
    # ------------------------------------------------------------------

    async def _await_handshake(self) -> Optional[HandshakeHeader]:
        """
        等待第一条消息并解码握手头

        Returns:
            Optional[HandshakeHeader]: 成功返回握手头，失败返回 None（已发出关闭信号）
        """
        timeout = self.config.handshake_timeout or None
        try:
            message = await asyncio.wait_for(self.transport.recv(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"等待握手消息超时（{self.config.handshake_timeout}秒）: {self.peer_str}")
            self._terminate(CloseStatus.PROTOCOL_ERROR, HandshakeTimeoutError("握手超时"))
            return None
        except ConnectionClosed as e:
            logger.info(f"握手前连接已关闭: {self.peer_str}")
            self._terminate(CloseStatus.NORMAL, TransportClosedError(str(e)))
            return None

        buffer = _as_bytes(message)

        try:
            header = decode_header(buffer, self.config.auth_token)
        except AuthenticationFailed as e:
            logger.warning(f"认证失败: peer={self.peer_str}, field={e.field}")
            self._terminate(CloseStatus.POLICY_VIOLATION, e)
            return None
        except DecodeError as e:
            logger.warning(f"握手头解析失败: peer={self.peer_str}, field={e.field}, {e}")
            self._terminate(CloseStatus.PROTOCOL_ERROR, e)
            return None

        self.destination = Destination(header.address, header.port)
        self._initial_payload = header.payload(buffer)
        self.phase = SessionPhase.CONNECTING
        add_context(target=str(self.destination))
        logger.info(f"握手成功，连接目标: {self.destination}")
        return header

    # ------------------------------------------------------------------
    # CONNECTING
    # ------------------------------------------------------------------

    async def _dial(self, host: str, port: int):
        return await asyncio.wait_for(
            self.config.dialer(host, port),
            timeout=self.config.connect_timeout or None
        )

    async def _connect(self) -> bool:
        """
        建立出站连接，同时监视关闭信号

        如果 WebSocket 在连接建立期间关闭，取消拨号；拨号恰好已完成时，
        立即关闭新建立的连接，不写入任何负载。

        Returns:
            bool: 连接成功且会话仍然有效返回 True
        """
        host, port = self.destination
        dial = asyncio.ensure_future(self._dial(host, port))
        closing = asyncio.ensure_future(self._closing.wait())
        try:
            await asyncio.wait({dial, closing}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            await self._abandon_dial(dial)
            raise
        finally:
            closing.cancel()

        if self._closing.is_set():
            logger.info(f"连接建立期间会话已终止，放弃出站连接: {self.destination}")
            await self._abandon_dial(dial)
            return False

        try:
            reader, writer = dial.result()
        except asyncio.TimeoutError:
            logger.warning(f"连接目标超时（{self.config.connect_timeout}秒）: {self.destination}")
            self._terminate(CloseStatus.UPSTREAM_UNREACHABLE, UpstreamTimeoutError(str(self.destination)))
            return False
        except (OSError, UnicodeError) as e:
            logger.warning(f"连接目标失败: {self.destination}, error={e}")
            self._terminate(CloseStatus.UPSTREAM_UNREACHABLE, UpstreamConnectError(str(e)))
            return False

        self.remote = RemoteConnection(host, port, reader, writer)
        logger.info(f"已连接到目标: {self.destination}")
        return True

    async def _abandon_dial(self, dial: asyncio.Future):
        """取消拨号；拨号恰好已完成时立即关闭新连接"""
        dial.cancel()
        result, = await asyncio.gather(dial, return_exceptions=True)
        if isinstance(result, tuple):
            host, port = self.destination
            await RemoteConnection(host, port, *result).close()

    # ------------------------------------------------------------------
    # RELAYING
    # ------------------------------------------------------------------

    async def _relay(self):
        """写入初始负载，启动两个转发方向并等待关闭信号"""
        self.phase = SessionPhase.RELAYING
        self._arm_idle_timer()

        if self._initial_payload:
            if not await self._write_remote(self._initial_payload):
                return
            logger.debug(f"已转发初始负载: {len(self._initial_payload)} 字节")
        self._initial_payload = b''

        self._spawn(self._transport_to_remote())
        self._spawn(self._remote_to_transport())

        await self._closing.wait()

    def _arm_idle_timer(self):
        # 只在连接建立时启动一次，不随数据刷新
        if self.config.idle_timeout <= 0:
            return
        loop = asyncio.get_running_loop()
        self._idle_handle = loop.call_later(self.config.idle_timeout, self._on_idle_timeout)

    def _on_idle_timeout(self):
        self._idle_handle = None
        logger.info(f"出站连接超时（{self.config.idle_timeout_ms}毫秒）: {self.destination}")
        self._terminate(CloseStatus.NORMAL, IdleTimeoutError(str(self.destination)))

    async def _receive_loop(self):
        """
        从 WebSocket 读取消息放入暂存队列

        在 CONNECTING 阶段到达的消息也进入队列，只在初始负载之后写出。
        队列满时停止读取，由 WebSocket 的流控向客户端施加背压。
        """
        try:
            while True:
                message = await self.transport.recv()
                if self._closing.is_set():
                    break
                await self._pending.put(_as_bytes(message))
        except ConnectionClosed as e:
            logger.info(f"WebSocket 连接已关闭: code={e.rcvd.code if e.rcvd else None}")
            self._terminate(CloseStatus.NORMAL, TransportClosedError(str(e)))
        except (ConnectionError, OSError) as e:
            logger.warning(f"WebSocket 读取错误: {e}")
            self._terminate(CloseStatus.INTERNAL_ERROR, TransportClosedError(str(e)))

    async def _watch_transport(self):
        """
        不经过暂存队列监视 WebSocket 关闭

        队列满时 _receive_loop 停在 put 上读不到关闭，由这里发出关闭信号。
        """
        await self.transport.wait_closed()
        logger.info("WebSocket 连接已断开")
        self._terminate(CloseStatus.NORMAL, TransportClosedError("WebSocket 连接已断开"))

    async def _write_remote(self, data: bytes) -> bool:
        if self._closing.is_set() or self.remote is None or not self.remote.connected:
            return False
        if not transport_is_open(self.transport):
            self._terminate(CloseStatus.NORMAL, TransportClosedError("WebSocket 连接已断开"))
            return False
        try:
            self.remote.writer.write(data)
            await self.remote.writer.drain()
        except (ConnectionError, OSError, RuntimeError) as e:
            logger.warning(f"写入出站连接失败: {self.destination}, error={e}")
            self._terminate(CloseStatus.INTERNAL_ERROR, InternalWriteError(str(e)))
            return False
        self.bytes_up += len(data)
        logger.debug(f"客户端 -> 目标: {len(data)} 字节")
        return True

    async def _transport_to_remote(self):
        """入站方向：按到达顺序把暂存的消息原样写入出站连接"""
        while True:
            data = await self._pending.get()
            if not await self._write_remote(data):
                return

    async def _remote_to_transport(self):
        """出站方向：每次读到的数据块作为一条二进制消息发给客户端"""
        try:
            while True:
                data = await self.remote.reader.read(self.config.read_chunk_size)
                if not data:
                    logger.info(f"目标连接已关闭: {self.destination}")
                    self._terminate(CloseStatus.NORMAL)
                    return
                await self.transport.send(data)
                self.bytes_down += len(data)
                logger.debug(f"目标 -> 客户端: {len(data)} 字节")
        except ConnectionClosed as e:
            logger.info("发送时 WebSocket 连接已关闭")
            self._terminate(CloseStatus.NORMAL, TransportClosedError(str(e)))
        except (ConnectionError, OSError) as e:
            logger.warning(f"读取目标连接出错: {self.destination}, error={e}")
            self._terminate(CloseStatus.INTERNAL_ERROR, UpstreamResetError(str(e)))

    # ------------------------------------------------------------------
    # CLOSED
    # ------------------------------------------------------------------

    async def close(self):
        """
        关闭会话（幂等）

        取消空闲定时器和所有转发任务，关闭出站连接和 WebSocket 连接。
        之后到达的入站消息全部丢弃。
        """
        if self.closed:
            return
        self.phase = SessionPhase.CLOSED
        self._closing.set()

        if self._idle_handle is not None:
            self._idle_handle.cancel()
            self._idle_handle = None

        current = asyncio.current_task()
        tasks = [task for task in self._tasks if task is not current]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        if self.remote is not None:
            await self.remote.close()
        await close_transport(self.transport, self.close_code)

        duration = time.monotonic() - self.started_at
        error_name = type(self.error).__name__ if self.error else '-'
        logger.info(
            f"会话结束: target={self.destination or '-'}, code={int(self.close_code)}, "
            f"cause={error_name}, 上行={self.bytes_up} 字节, 下行={self.bytes_down} 字节, "
            f"时长={duration:.1f}秒"
        )


async def create_session(transport, config: RelayConfig, registry: Optional[Set[RelaySession]] = None):
    """
    为一条已完成升级的 WebSocket 连接创建并运行中继会话

    这是进程级的兜底：会话中逃逸的任何异常都被记录为该会话的终止错误，
    不会影响其他会话或进程。

    Args:
        transport: WebSocket 连接，会话结束前由会话负责关闭
        config: RelayConfig，中继配置
        registry: 可选的活动会话集合，用于运行状态观测
    """
    session = RelaySession(transport, config)
    if registry is not None:
        registry.add(session)
    try:
        await session.run()
    except Exception as e:
        logger.error(f"会话 {session.session_id} 异常退出: {e}", exc_info=True)
        await close_transport(transport, CloseStatus.INTERNAL_ERROR)
    finally:
        if registry is not None:
            registry.discard(session)
