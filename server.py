#!/usr/bin/env python3
"""
VLESS WebSocket 中继服务端

协议:
1. 客户端向配置的路径发起 WebSocket 升级
2. 第一条二进制消息以 VLESS 握手头开始（版本、UUID、目标地址）
3. 服务端连接目标主机后，双向原样转发字节

功能:
- 非 WebSocket 请求返回伪装的 nginx 页面
- 可选 TLS（wss）
- 可选资源监控
- SIGINT/SIGTERM 优雅关闭，超时后强制退出
"""

import argparse
import asyncio
import logging
import signal

from config import ConfigError, build_configs, generate_token, load_config
from logger import LoggerManager
from relay import RelayServer

logger = logging.getLogger('vless-relay')


async def serve(server: RelayServer):
    """运行服务器，收到 SIGINT/SIGTERM 时设置停止事件"""
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows 事件循环不支持信号处理器，依赖 KeyboardInterrupt
            pass
    await server.start(stop)


def main():
    """主函数"""
    parser = argparse.ArgumentParser(description='VLESS WebSocket 中继服务端')
    parser.add_argument('--config', '-c', default='config.yaml', help='配置文件路径')
    parser.add_argument('--debug', '-d', action='store_true', help='启用调试模式')
    parser.add_argument('--new-uuid', action='store_true', help='生成新的 UUID 并退出')
    args = parser.parse_args()

    if args.new_uuid:
        print(generate_token())
        return 0

    config_data = load_config(args.config)

    manager = LoggerManager()
    manager.initialize(log_config=config_data.get('logging'))
    if args.debug:
        manager.set_level('DEBUG')

    try:
        server_config, relay_config = build_configs(config_data)
    except ConfigError as e:
        logger.error(f"配置错误: {e}")
        logger.error("使用 --new-uuid 生成 UUID，并写入配置文件的 relay.uuid 或环境变量 RELAY_UUID")
        return 1

    logger.info("=" * 55)
    logger.info("  VLESS WebSocket 中继服务端")
    logger.info("=" * 55)
    logger.info(f"  监听: {server_config.host}:{server_config.port}")
    logger.info(f"  路径: {server_config.path}")
    logger.info(f"  TLS: {'启用' if server_config.tls_enabled else '关闭'}")
    logger.info(f"  空闲超时: {relay_config.idle_timeout_ms} 毫秒")
    logger.info(f"  连接日志: {'启用' if server_config.log_connections else '关闭'}")
    logger.info("=" * 55)

    try:
        server = RelayServer(server_config, relay_config)
    except (OSError, ValueError) as e:
        logger.error(f"加载 TLS 证书失败: {e}")
        return 1

    try:
        asyncio.run(serve(server))
    except KeyboardInterrupt:
        logger.info("服务端已停止")
    except OSError as e:
        logger.error(f"服务端启动失败: {e}")
        return 1

    return 0


if __name__ == '__main__':
    exit(main())
