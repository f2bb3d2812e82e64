"""Tests for round-robin instance selection and discovery refresh."""

import asyncio

import pytest

from services.order.app.errors import NoInstanceAvailable
from services.order.app.load_balancer import LoadBalancerClient, RoundRobinLoadBalancer
from services.shared.discovery import ServiceDiscovery, StaticServiceRegistry


class FlakyDiscovery(ServiceDiscovery):
    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = 0

    async def list_instances(self, service_name):
        self.calls += 1
        response = self.responses.pop(0) if self.responses else ConnectionError("redis down")
        if isinstance(response, BaseException):
            raise response
        return response


class TestRoundRobinLoadBalancer:
    @pytest.mark.parametrize("k", [1, 2, 3, 5])
    def test_k_consecutive_choices_are_distinct(self, k):
        instances = [f"http://product-{i}:8080" for i in range(k)]
        balancer = RoundRobinLoadBalancer("product-management", instances)

        chosen = [balancer.choose() for _ in range(k)]

        assert sorted(chosen) == sorted(instances)

    def test_cycles_in_order(self):
        balancer = RoundRobinLoadBalancer("product-management", ["a", "b"])
        assert [balancer.choose() for _ in range(5)] == ["a", "b", "a", "b", "a"]

    def test_empty_pool_raises(self):
        balancer = RoundRobinLoadBalancer("product-management")
        with pytest.raises(NoInstanceAvailable) as exc_info:
            balancer.choose()
        assert exc_info.value.status_code == 503

    def test_update_replaces_pool(self):
        balancer = RoundRobinLoadBalancer("product-management", ["a"])
        balancer.update_instances(["b", "c"])
        assert balancer.instances == ["b", "c"]
        assert {balancer.choose(), balancer.choose()} == {"b", "c"}


class TestLoadBalancerClient:
    async def test_refresh_loads_instances_from_discovery(self):
        discovery = StaticServiceRegistry({"product-management": ["http://p1", "http://p2"]})
        client = LoadBalancerClient(discovery, ["product-management"])

        await client.refresh()

        assert client.balancer("product-management").instances == ["http://p1", "http://p2"]
        assert client.choose("product-management") == "http://p1"

    def test_unknown_service_raises(self):
        client = LoadBalancerClient(StaticServiceRegistry({}), ["product-management"])
        with pytest.raises(NoInstanceAvailable):
            client.choose("billing")

    async def test_refresher_keeps_last_list_on_failure_and_stops(self):
        discovery = FlakyDiscovery([["http://p1"]])
        client = LoadBalancerClient(discovery, ["product-management"])
        shutdown = asyncio.Event()

        task = asyncio.create_task(client.run_refresher(0.01, shutdown))
        while discovery.calls < 2:
            await asyncio.sleep(0.005)
        assert client.balancer("product-management").instances == ["http://p1"]

        shutdown.set()
        await asyncio.wait_for(task, timeout=1)
