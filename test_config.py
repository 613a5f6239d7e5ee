#!/usr/bin/env python3
"""
配置与日志测试

测试内容:
1. UUID 规范化
2. 配置字典与环境变量合成服务器配置和中继配置
3. 配置文件的加载和保存
4. 日志上下文在并发协程之间相互隔离
"""

import asyncio
import logging
import os
import sys
import tempfile

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from config import (
    ConfigError,
    RelayConfig,
    ServerConfig,
    build_configs,
    generate_token,
    load_config,
    normalize_token,
    save_config,
)
from logger import ContextFilter, LogConfig, LoggerManager, add_context, clear_context, get_context, reset_context

TOKEN = '8cd43dab-a5ae-4634-b9b1-726a262f25f6'


def expect_config_error(func, *args, **kwargs):
    try:
        func(*args, **kwargs)
    except ConfigError as e:
        return e
    raise AssertionError("应该抛出 ConfigError")


def test_normalize_token():
    assert normalize_token(TOKEN) == TOKEN
    assert normalize_token(TOKEN.upper()) == TOKEN
    assert normalize_token(TOKEN.replace('-', '')) == TOKEN
    assert normalize_token('{' + TOKEN + '}') == TOKEN
    assert normalize_token(f'  {TOKEN}\n') == TOKEN

    expect_config_error(normalize_token, None)
    expect_config_error(normalize_token, 'not-a-uuid')
    expect_config_error(normalize_token, TOKEN[:-1])
    print("✓ UUID 规范化正确")


def test_generate_token():
    token = generate_token()
    assert normalize_token(token) == token
    assert token != generate_token()


def test_build_configs_defaults():
    server, relay = build_configs({'relay': {'uuid': TOKEN}}, env={})

    assert isinstance(server, ServerConfig)
    assert server.host == '0.0.0.0'
    assert server.port == 80
    assert server.path == '/vless/'
    assert server.server_header == 'nginx/1.18.0'
    assert server.tls_enabled is False
    assert server.monitor_interval == 0

    assert isinstance(relay, RelayConfig)
    assert relay.auth_token == TOKEN
    assert relay.idle_timeout_ms == 300000
    assert relay.idle_timeout == 300.0
    assert relay.dialer is asyncio.open_connection
    print("✓ 默认配置正确")


def test_build_configs_from_file_sections():
    config_data = {
        'server': {
            'host': '127.0.0.1',
            'port': 8443,
            'path': '/ws',
            'cert_file': 'server.crt',
            'key_file': 'server.key',
            'log_connections': False,
        },
        'relay': {
            'uuid': TOKEN.upper(),
            'timeout_ms': 1500,
            'connect_timeout': 3,
            'max_pending_messages': 8,
        },
        'monitor': {'interval': 30},
    }
    server, relay = build_configs(config_data, env={})

    assert server.host == '127.0.0.1'
    assert server.port == 8443
    assert server.path == '/ws'
    assert server.tls_enabled is True
    assert server.log_connections is False
    assert server.monitor_interval == 30.0
    assert relay.auth_token == TOKEN
    assert relay.idle_timeout == 1.5
    assert relay.connect_timeout == 3.0
    assert relay.max_pending_messages == 8


def test_environment_overrides_file():
    env = {
        'RELAY_UUID': TOKEN,
        'RELAY_HOST': '::',
        'RELAY_PORT': '2053',
        'RELAY_PATH': '/env/',
        'RELAY_TIMEOUT_MS': '60000',
    }
    config_data = {
        'server': {'host': '127.0.0.1', 'port': 80, 'path': '/file/'},
        'relay': {'uuid': 'd342d11e-d424-4583-b36e-524ab1f0afa4', 'timeout_ms': 1000},
    }
    server, relay = build_configs(config_data, env=env)

    assert server.host == '::'
    assert server.port == 2053
    assert server.path == '/env/'
    assert relay.auth_token == TOKEN
    assert relay.idle_timeout_ms == 60000
    print("✓ 环境变量覆盖配置文件")


def test_invalid_configs_rejected():
    expect_config_error(build_configs, {}, env={})
    expect_config_error(build_configs, None, env={})
    expect_config_error(build_configs, {'relay': {'uuid': 'bad'}}, env={})
    expect_config_error(build_configs, {'relay': {'uuid': TOKEN, 'timeout_ms': -1}}, env={})
    expect_config_error(build_configs, {'relay': {'uuid': TOKEN}}, env={'RELAY_PORT': 'http'})
    expect_config_error(build_configs, {'relay': {'uuid': TOKEN}, 'server': {'path': 'vless'}}, env={})
    expect_config_error(RelayConfig, auth_token=TOKEN, max_pending_messages=0)


def test_load_and_save_config():
    with tempfile.TemporaryDirectory() as tmp:
        path = os.path.join(tmp, 'config.yaml')
        data = {'server': {'port': 8080}, 'relay': {'uuid': TOKEN}}
        assert save_config(path, data) is True
        assert load_config(path) == data

        assert load_config(os.path.join(tmp, 'missing.yaml')) == {}

        broken = os.path.join(tmp, 'broken.yaml')
        with open(broken, 'w', encoding='utf-8') as f:
            f.write('server: [unclosed\n')
        assert load_config(broken) == {}

        empty = os.path.join(tmp, 'empty.yaml')
        open(empty, 'w').close()
        assert load_config(empty) == {}


def test_bundled_config_file():
    path = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'config.yaml')
    server, relay = build_configs(load_config(path), env={})
    assert server.path.startswith('/')
    assert relay.idle_timeout_ms == 300000


# ============================================================================
# 日志
# ============================================================================

class RecordingHandler(logging.Handler):
    def __init__(self):
        super().__init__()
        self.records = []

    def emit(self, record):
        self.records.append(record)


def test_log_context_isolated_between_tasks():
    """并发会话各自的上下文字段不会互相覆盖"""
    handler = RecordingHandler()
    handler.addFilter(ContextFilter(['session', 'peer']))
    test_logger = logging.getLogger('test-log-context')
    test_logger.addHandler(handler)
    test_logger.setLevel(logging.INFO)
    test_logger.propagate = False

    async def worker(session_id):
        token = add_context(session=session_id, peer=f'peer-{session_id}')
        try:
            for _ in range(3):
                test_logger.info(f"message from {session_id}")
                await asyncio.sleep(0)
        finally:
            reset_context(token)

    async def scenario():
        await asyncio.gather(worker('a'), worker('b'))

    try:
        asyncio.run(scenario())
    finally:
        test_logger.removeHandler(handler)

    assert len(handler.records) == 6
    for record in handler.records:
        session_id = record.getMessage().rsplit(' ', 1)[1]
        assert record.context == f"session={session_id} | peer=peer-{session_id}"
    print("✓ 日志上下文相互隔离")


def test_context_helpers():
    clear_context()
    token = add_context(session='s1')
    add_context(target='example.com:443')
    assert get_context() == {'session': 's1', 'target': 'example.com:443'}
    reset_context(token)
    assert get_context() == {}

    record = logging.LogRecord('x', logging.INFO, __file__, 1, 'msg', None, None)
    ContextFilter(['session', 'target']).filter(record)
    assert record.context == 'session=- | target=-'


def test_logger_manager_from_dict():
    manager = LoggerManager()
    assert manager is LoggerManager()

    config = manager.config_from_dict({'level': 'WARNING', 'enable_file': False})
    assert isinstance(config, LogConfig)
    assert config.level == os.getenv('LOG_LEVEL', 'WARNING')
    assert config.context_fields == ['session', 'peer', 'target']

    with tempfile.TemporaryDirectory() as tmp:
        root = logging.getLogger()
        saved_handlers = list(root.handlers)
        saved_level = root.level
        try:
            manager.initialize(LogConfig(level='DEBUG', log_dir=tmp, enable_console=False,
                                         enable_file=True, rotation_type='none'))
            logging.getLogger('test-log-file').debug("written to file")
            manager.set_level('ERROR')
            assert all(h.level == logging.ERROR for h in root.handlers)
            for h in root.handlers:
                h.flush()
            with open(os.path.join(tmp, 'vless-relay.log'), encoding='utf-8') as f:
                assert 'written to file' in f.read()
        finally:
            for h in root.handlers:
                h.close()
            root.handlers[:] = saved_handlers
            root.setLevel(saved_level)


def main():
    """运行所有测试"""
    print("=" * 60)
    print("配置与日志测试")
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
