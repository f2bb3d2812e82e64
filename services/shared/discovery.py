"""
Shared — サービスディスカバリ

各サービスのインスタンス (ベース URL) を名前で引けるようにする。
ロードバランサーはここから一覧を取得してラウンドロビンで振り分ける。

  ┌─────────────────────┐  register / mark_down   ┌─────────┐
  │ product-management  │ ──────────────────────▶ │  Redis  │
  └─────────────────────┘                          │ discovery:<service>
  ┌─────────────────────┐  list_instances          │  (hash) │
  │ order-management    │ ◀────────────────────── │         │
  └─────────────────────┘                          └─────────┘

インスタンスの登録解除はフレームワークのイベントに頼らず、
ServiceRegistration.shutdown() を lifespan から明示的に呼ぶ。
"""

import json
import logging
import re
from abc import ABC, abstractmethod
from collections.abc import Mapping

import redis.asyncio as aioredis

logger = logging.getLogger(__name__)

STATUS_UP = "UP"
STATUS_DOWN = "DOWN"


def _env_key(service_name: str) -> str:
    return re.sub(r"[^A-Za-z0-9]", "_", service_name).upper() + "_INSTANCES"


class ServiceDiscovery(ABC):
    """サービス名 → インスタンス一覧を返すコラボレータ"""

    @abstractmethod
    async def list_instances(self, service_name: str) -> list[str]:
        ...


class StaticServiceRegistry(ServiceDiscovery):
    """設定で固定されたインスタンス一覧 (ローカル開発・テスト用)"""

    def __init__(self, instances: Mapping[str, list[str]]):
        self._instances = {name: list(urls) for name, urls in instances.items()}

    @classmethod
    def from_env(cls, service_names: list[str], environ: Mapping[str, str]):
        """
        <SERVICE>_INSTANCES (カンマ区切り) を読む。
        どのサービスにも設定がなければ None を返す。
        """
        found = {}
        for name in service_names:
            raw = environ.get(_env_key(name), "")
            urls = [u.strip().rstrip("/") for u in raw.split(",") if u.strip()]
            if urls:
                found[name] = urls
        return cls(found) if found else None

    async def list_instances(self, service_name: str) -> list[str]:
        return list(self._instances.get(service_name, []))


class RedisServiceRegistry(ServiceDiscovery):
    """
    Redis ハッシュを使ったレジストリ。

    キー discovery:<service> に instance_id → {"url", "status"} を保持する。
    status が UP のものだけを instance_id 順に返す。
    """

    def __init__(self, redis: aioredis.Redis, prefix: str = "discovery"):
        self.redis = redis
        self.prefix = prefix

    def _key(self, service_name: str) -> str:
        return f"{self.prefix}:{service_name}"

    async def register(self, service_name: str, instance_id: str, url: str) -> None:
        await self.redis.hset(
            self._key(service_name),
            instance_id,
            json.dumps({"url": url.rstrip("/"), "status": STATUS_UP}),
        )
        logger.info("Registered %s instance %s at %s", service_name, instance_id, url)

    async def mark_down(self, service_name: str, instance_id: str) -> None:
        key = self._key(service_name)
        raw = await self.redis.hget(key, instance_id)
        if raw is None:
            return
        entry = json.loads(raw)
        entry["status"] = STATUS_DOWN
        await self.redis.hset(key, instance_id, json.dumps(entry))
        logger.info("Marked %s instance %s DOWN", service_name, instance_id)

    async def list_instances(self, service_name: str) -> list[str]:
        entries = await self.redis.hgetall(self._key(service_name))
        urls = []
        for instance_id in sorted(entries):
            try:
                entry = json.loads(entries[instance_id])
            except (TypeError, ValueError):
                logger.warning("Ignoring malformed discovery entry %s/%s", service_name, instance_id)
                continue
            if entry.get("status") == STATUS_UP and entry.get("url"):
                urls.append(entry["url"])
        return urls


class ServiceRegistration:
    """1 インスタンス分の登録ライフサイクル (start → shutdown)"""

    def __init__(
        self,
        registry: RedisServiceRegistry,
        service_name: str,
        instance_id: str,
        url: str,
    ):
        self.registry = registry
        self.service_name = service_name
        self.instance_id = instance_id
        self.url = url

    async def start(self) -> None:
        await self.registry.register(self.service_name, self.instance_id, self.url)

    async def shutdown(self) -> None:
        """インスタンスを DOWN にして振り分け対象から外す。"""
        await self.registry.mark_down(self.service_name, self.instance_id)
