"""
资源监控 - 定期记录中继进程的资源使用情况

功能:
1. 监控进程的内存、CPU、线程和文件描述符数量
2. 记录活动会话数
3. 超过阈值时输出告警
"""

import asyncio
import logging
import os
from collections import deque
from datetime import datetime
from typing import Callable, Dict, List, Optional

import psutil

logger = logging.getLogger('vless-relay-monitor')

DEFAULT_THRESHOLDS = {
    'memory_mb': 500,        # 内存阈值: 500MB
    'cpu_percent': 80,       # CPU 阈值: 80%
    'num_fds': 1000,         # 文件描述符阈值
    'sessions': 1000,        # 活动会话阈值
}


class ResourceMonitor:
    """资源监控器"""

    def __init__(
        self,
        session_count: Callable[[], int],
        check_interval: float = 60,
        thresholds: Optional[Dict[str, float]] = None,
        history_size: int = 60
    ):
        """
        初始化资源监控器

        参数:
            session_count: 返回当前活动会话数的函数
            check_interval: 检查间隔 (秒)
            thresholds: 告警阈值，覆盖默认值
            history_size: 保留的历史记录条数
        """
        self.session_count = session_count
        self.check_interval = check_interval
        self.thresholds = dict(DEFAULT_THRESHOLDS)
        if thresholds:
            self.thresholds.update(thresholds)
        self.history = deque(maxlen=history_size)
        self.process = psutil.Process(os.getpid())

    def get_process_stats(self) -> Optional[Dict]:
        """
        获取当前进程统计信息

        返回:
            Dict: 统计信息，进程信息不可读时返回 None
        """
        try:
            memory_info = self.process.memory_info()
            return {
                'pid': self.process.pid,
                'memory_mb': memory_info.rss / 1024 / 1024,
                # interval=None 不阻塞，返回自上次调用以来的占用率
                'cpu_percent': self.process.cpu_percent(interval=None),
                'num_threads': self.process.num_threads(),
                'num_fds': self.process.num_fds() if hasattr(self.process, 'num_fds') else 0,
            }
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return None

    def check_thresholds(self, stats: Dict) -> List[str]:
        """
        检查是否超过阈值

        参数:
            stats: 统计信息（包含 sessions 字段）

        返回:
            List[str]: 告警信息列表
        """
        warnings = []

        if stats.get('memory_mb', 0) > self.thresholds['memory_mb']:
            warnings.append(f"内存使用过高: {stats['memory_mb']:.2f} MB > {self.thresholds['memory_mb']} MB")

        if stats.get('cpu_percent', 0) > self.thresholds['cpu_percent']:
            warnings.append(f"CPU 使用过高: {stats['cpu_percent']:.2f}% > {self.thresholds['cpu_percent']}%")

        if stats.get('num_fds', 0) > self.thresholds['num_fds']:
            warnings.append(f"文件描述符过多: {stats['num_fds']} > {self.thresholds['num_fds']}")

        if stats.get('sessions', 0) > self.thresholds['sessions']:
            warnings.append(f"活动会话过多: {stats['sessions']} > {self.thresholds['sessions']}")

        return warnings

    def monitor_once(self) -> Dict:
        """
        执行一次监控检查

        返回:
            Dict: 监控结果
        """
        stats = self.get_process_stats() or {}
        stats['sessions'] = self.session_count()
        result = {
            'timestamp': datetime.now(),
            'stats': stats,
            'warnings': self.check_thresholds(stats),
        }
        self.history.append(result)
        return result

    async def run(self):
        """按固定间隔循环检查，直到被取消"""
        logger.info(f"资源监控已启动（间隔 {self.check_interval} 秒）")
        while True:
            result = self.monitor_once()
            stats = result['stats']
            logger.info(
                f"资源状态: 会话={stats['sessions']}, "
                f"内存={stats.get('memory_mb', 0):.1f}MB, "
                f"CPU={stats.get('cpu_percent', 0):.1f}%, "
                f"文件描述符={stats.get('num_fds', 0)}"
            )
            for warning in result['warnings']:
                logger.warning(warning)
            await asyncio.sleep(self.check_interval)
