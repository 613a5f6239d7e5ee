#!/usr/bin/env python3
"""
中继服务器端到端测试

在本地回环地址上启动 RelayServer，使用 websockets 客户端连接。

测试内容:
1. 经过 WebSocket 的完整转发
2. 非 WebSocket 请求返回伪装页面
3. 路径不匹配的升级请求返回 404
4. 认证失败以 1008 关闭
5. 停止事件触发优雅关闭
"""

import asyncio
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosed, InvalidStatus

from config import RelayConfig, ServerConfig
from relay import RelayServer
from vless import encode_header

TOKEN = '8cd43dab-a5ae-4634-b9b1-726a262f25f6'
OTHER_TOKEN = 'd342d11e-d424-4583-b36e-524ab1f0afa4'
WAIT = 5


async def start_relay(**relay_overrides):
    """启动中继服务器，返回 (server, stop, task)"""
    server_config = ServerConfig(host='127.0.0.1', port=0, path='/vless/', log_connections=False)
    relay_config = RelayConfig(auth_token=TOKEN, **relay_overrides)
    relay = RelayServer(server_config, relay_config)
    stop = asyncio.Event()
    task = asyncio.ensure_future(relay.start(stop))
    await asyncio.wait_for(relay.started.wait(), WAIT)
    return relay, stop, task


async def stop_relay(stop, task):
    stop.set()
    await asyncio.wait_for(task, WAIT * 2)


async def start_echo():
    async def handler(reader, writer):
        while True:
            data = await reader.read(4096)
            if not data:
                break
            writer.write(data)
            await writer.drain()
        writer.close()

    server = await asyncio.start_server(handler, '127.0.0.1', 0)
    return server, server.sockets[0].getsockname()[1]


def url(relay, path='/vless/'):
    host, port = relay.address
    return f"ws://{host}:{port}{path}"


async def recv_exactly(ws, size):
    data = b''
    while len(data) < size:
        data += await asyncio.wait_for(ws.recv(), WAIT)
    return data


def test_end_to_end_echo():
    """握手负载和后续消息都经过目标回显"""
    async def scenario():
        echo, echo_port = await start_echo()
        relay, stop, task = await start_relay()
        try:
            async with connect(url(relay)) as ws:
                await ws.send(encode_header(TOKEN, '127.0.0.1', echo_port, payload=b'hello'))
                assert await recv_exactly(ws, 5) == b'hello'

                await ws.send(b' world')
                assert await recv_exactly(ws, 6) == b' world'
                assert len(relay.sessions) == 1
        finally:
            await stop_relay(stop, task)
            echo.close()
            await echo.wait_closed()

        assert relay.sessions == set()

    asyncio.run(scenario())
    print("✓ 端到端转发正确")


def test_domain_target_resolved_by_dialer():
    """域名目标交给拨号函数解析"""
    async def scenario():
        echo, echo_port = await start_echo()
        relay, stop, task = await start_relay()
        try:
            async with connect(url(relay)) as ws:
                await ws.send(encode_header(TOKEN, 'localhost', echo_port, payload=b'ping'))
                assert await recv_exactly(ws, 4) == b'ping'
        finally:
            await stop_relay(stop, task)
            echo.close()
            await echo.wait_closed()

    asyncio.run(scenario())


def test_plain_http_gets_decoy_page():
    async def scenario():
        relay, stop, task = await start_relay()
        try:
            host, port = relay.address
            reader, writer = await asyncio.open_connection(host, port)
            writer.write(f"GET / HTTP/1.1\r\nHost: {host}\r\n\r\n".encode('ascii'))
            await writer.drain()

            response = b''
            while b'</html>' not in response:
                chunk = await asyncio.wait_for(reader.read(4096), WAIT)
                if not chunk:
                    break
                response += chunk
            writer.close()

            status_line = response.split(b'\r\n', 1)[0]
            assert b'200' in status_line
            assert b'Server: nginx/1.18.0' in response
            assert b'text/html' in response
            assert b'Welcome to nginx!' in response
            assert relay.sessions == set()
        finally:
            await stop_relay(stop, task)

    asyncio.run(scenario())
    print("✓ 非 WebSocket 请求返回伪装页面")


def test_wrong_path_rejected():
    async def scenario():
        relay, stop, task = await start_relay()
        try:
            try:
                async with connect(url(relay, '/other/')):
                    pass
            except InvalidStatus as e:
                assert e.response.status_code == 404
            else:
                raise AssertionError("路径错误的升级请求应该被拒绝")
        finally:
            await stop_relay(stop, task)

    asyncio.run(scenario())


def test_query_string_ignored_in_path_match():
    async def scenario():
        echo, echo_port = await start_echo()
        relay, stop, task = await start_relay()
        try:
            async with connect(url(relay, '/vless/?ed=2048')) as ws:
                await ws.send(encode_header(TOKEN, '127.0.0.1', echo_port, payload=b'q'))
                assert await recv_exactly(ws, 1) == b'q'
        finally:
            await stop_relay(stop, task)
            echo.close()
            await echo.wait_closed()

    asyncio.run(scenario())


def test_wrong_uuid_closes_with_policy_violation():
    async def scenario():
        relay, stop, task = await start_relay()
        try:
            async with connect(url(relay)) as ws:
                await ws.send(encode_header(OTHER_TOKEN, '127.0.0.1', 9, payload=b'data'))
                try:
                    await asyncio.wait_for(ws.recv(), WAIT)
                except ConnectionClosed as e:
                    assert e.rcvd is not None
                    assert e.rcvd.code == 1008
                else:
                    raise AssertionError("认证失败应该关闭连接")
        finally:
            await stop_relay(stop, task)

    asyncio.run(scenario())
    print("✓ 认证失败以 1008 关闭")


def test_unreachable_target_closes_with_1014():
    async def scenario():
        async def refuse(host, port):
            raise ConnectionRefusedError(111, 'Connection refused')

        relay, stop, task = await start_relay(dialer=refuse)
        try:
            async with connect(url(relay)) as ws:
                await ws.send(encode_header(TOKEN, '127.0.0.1', 9))
                try:
                    await asyncio.wait_for(ws.recv(), WAIT)
                except ConnectionClosed as e:
                    assert e.rcvd.code == 1014
                else:
                    raise AssertionError("目标不可达应该关闭连接")
        finally:
            await stop_relay(stop, task)

    asyncio.run(scenario())


def test_shutdown_closes_live_sessions():
    """停止事件触发后现有连接被关闭，会话集合清空"""
    async def scenario():
        echo, echo_port = await start_echo()
        relay, stop, task = await start_relay()
        try:
            async with connect(url(relay)) as ws:
                await ws.send(encode_header(TOKEN, '127.0.0.1', echo_port, payload=b'x'))
                assert await recv_exactly(ws, 1) == b'x'

                stop.set()
                await asyncio.wait_for(task, WAIT * 2)
                try:
                    await asyncio.wait_for(ws.recv(), WAIT)
                except ConnectionClosed:
                    pass
                else:
                    raise AssertionError("关闭服务器后连接应该被关闭")
            assert relay.sessions == set()
        finally:
            if not task.done():
                await stop_relay(stop, task)
            echo.close()
            await echo.wait_closed()

    asyncio.run(scenario())


def main():
    """运行所有测试"""
    print("=" * 60)
    print("中继服务器端到端测试")
    print("=" * 60)

    tests = [(name, func) for name, func in sorted(globals().items())
             if name.startswith('test_') and callable(func)]

    passed = 0
    failed = 0
    for name, test_func in tests:
        try:
            test_func()
            passed += 1
        except AssertionError as e:
            print(f"✗ 测试失败: {name} - {e}")
            failed += 1

    print("\n" + "=" * 60)
    print(f"测试结果: 通过={passed}, 失败={failed}")
    print("=" * 60)
    return failed == 0


if __name__ == '__main__':
    exit(0 if main() else 1)
