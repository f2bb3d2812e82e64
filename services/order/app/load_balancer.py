"""
Order Service — ロードバランサー (ラウンドロビン)

サービス名ごとにインスタンス一覧を持ち、呼び出しのたびに
単調増加カウンタ % 現在のインスタンス数 で 1 つを選ぶ。
一覧はディスカバリからバックグラウンドで定期的に取り直す。
"""

import asyncio
import itertools
import logging
import threading

from services.shared.discovery import ServiceDiscovery

from .errors import NoInstanceAvailable

logger = logging.getLogger(__name__)


class RoundRobinLoadBalancer:
    def __init__(self, service_name: str, instances: list[str] | None = None):
        self.service_name = service_name
        self._instances: list[str] = list(instances or [])
        self._counter = itertools.count()
        self._lock = threading.Lock()

    @property
    def instances(self) -> list[str]:
        return list(self._instances)

    def update_instances(self, instances: list[str]) -> None:
        if instances != self._instances:
            logger.info("Instances of %s: %s", self.service_name, instances)
        # 参照の差し替えだけなので choose() は常に一貫した一覧を見る
        self._instances = list(instances)

    def choose(self) -> str:
        instances = self._instances
        if not instances:
            raise NoInstanceAvailable(self.service_name)
        with self._lock:
            position = next(self._counter)
        return instances[position % len(instances)]


class LoadBalancerClient:
    """LOAD_BALANCERS_FOR に挙げたサービスのバランサーをまとめて管理する。"""

    def __init__(self, discovery: ServiceDiscovery, service_names: list[str]):
        self.discovery = discovery
        self._balancers = {name: RoundRobinLoadBalancer(name) for name in service_names}

    def choose(self, service_name: str) -> str:
        balancer = self._balancers.get(service_name)
        if balancer is None:
            raise NoInstanceAvailable(service_name)
        return balancer.choose()

    def balancer(self, service_name: str) -> RoundRobinLoadBalancer:
        return self._balancers[service_name]

    async def refresh(self) -> None:
        for name, balancer in self._balancers.items():
            balancer.update_instances(await self.discovery.list_instances(name))

    async def run_refresher(self, interval: float, shutdown_event: asyncio.Event) -> None:
        """
        shutdown_event がセットされるまで interval 秒ごとに一覧を更新する。
        ディスカバリの一時的な失敗では直前の一覧を使い続ける。
        """
        while not shutdown_event.is_set():
            try:
                await self.refresh()
            except Exception:
                logger.exception("Failed to refresh service instances")
            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
