"""
Order Service — サーキットブレーカー

リモート呼び出しの失敗を記録し、失敗率がしきい値を超えたら
呼び出し自体を遮断してフォールバックに切り替える。

状態遷移:
    CLOSED    → OPEN       (ウィンドウが埋まり、失敗率 >= しきい値)
    OPEN      → HALF_OPEN  (wait_duration_in_open_state 経過後の最初の呼び出し)
    HALF_OPEN → CLOSED     (試行 N 回の失敗率 < しきい値)
    HALF_OPEN → OPEN       (試行 N 回の失敗率 >= しきい値)

状態は名前ごとに共有され、threading.Lock で直列化する。
ロックの内側では await しない。
"""

import asyncio
import inspect
import logging
import threading
import time
from collections import deque
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any, TypeVar

from .errors import CallNotPermitted, ConfigurationError, DownstreamUnavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class SlidingWindowType(str, Enum):
    COUNT_BASED = "COUNT_BASED"
    TIME_BASED = "TIME_BASED"


@dataclass(frozen=True)
class CircuitBreakerConfig:
    """
    ブレーカー 1 つ分の設定。

    TIME_BASED の場合 sliding_window_size は秒数。
    minimum_number_of_calls を省略するとウィンドウサイズと同じになる。
    ignored_exceptions は失敗として数えず、フォールバックもせずにそのまま送出する。
    """

    sliding_window_size: int = 10
    sliding_window_type: SlidingWindowType = SlidingWindowType.COUNT_BASED
    failure_rate_threshold: float = 50.0
    wait_duration_in_open_state: float = 60.0
    permitted_number_of_calls_in_half_open_state: int = 3
    minimum_number_of_calls: int | None = None
    ignored_exceptions: tuple[type[BaseException], ...] = ()

    def __post_init__(self) -> None:
        if self.sliding_window_size < 1:
            raise ConfigurationError("sliding_window_size must be at least 1")
        if not 0 < self.failure_rate_threshold <= 100:
            raise ConfigurationError("failure_rate_threshold must be in (0, 100]")
        if self.wait_duration_in_open_state < 0:
            raise ConfigurationError("wait_duration_in_open_state must not be negative")
        if self.permitted_number_of_calls_in_half_open_state < 1:
            raise ConfigurationError(
                "permitted_number_of_calls_in_half_open_state must be at least 1"
            )
        if self.minimum_number_of_calls is not None and self.minimum_number_of_calls < 1:
            raise ConfigurationError("minimum_number_of_calls must be at least 1")

    @property
    def minimum_calls(self) -> int:
        minimum = self.minimum_number_of_calls or self.sliding_window_size
        if self.sliding_window_type is SlidingWindowType.COUNT_BASED:
            # 件数ウィンドウはサイズ以上の結果を保持できない
            return min(minimum, self.sliding_window_size)
        return minimum


def _failure_rate(outcomes: list[bool]) -> float:
    return 100.0 * sum(outcomes) / len(outcomes)


class CircuitBreaker:
    """名前付きのブレーカー。run() で保護対象の呼び出しを包む。"""

    def __init__(
        self,
        name: str,
        config: CircuitBreakerConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        # 遷移ごとに増える。古い世代で受け付けた呼び出しの結果は捨てる。
        self._generation = 0
        self._window: deque = deque()
        self._opened_at = 0.0
        self._trials_in_flight = 0
        self._trial_outcomes: list[bool] = []
        self._counters = {
            "successful_calls": 0,
            "failed_calls": 0,
            "ignored_calls": 0,
            "not_permitted_calls": 0,
            "fallback_calls": 0,
        }

    # ── 状態 ──────────────────────────────────────

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._maybe_half_open()
            return self._state

    def metrics(self) -> dict[str, Any]:
        """診断用のスナップショット"""
        with self._lock:
            self._maybe_half_open()
            outcomes = self._outcomes()
            return {
                "name": self.name,
                "state": self._state.value,
                "failure_rate": _failure_rate(outcomes) if outcomes else 0.0,
                "buffered_calls": len(outcomes),
                **self._counters,
            }

    def _maybe_half_open(self) -> None:
        if (
            self._state is CircuitState.OPEN
            and self._clock() - self._opened_at >= self.config.wait_duration_in_open_state
        ):
            self._transition(CircuitState.HALF_OPEN)

    def _transition(self, new_state: CircuitState) -> None:
        old_state = self._state
        self._state = new_state
        self._generation += 1
        self._window.clear()
        self._trials_in_flight = 0
        self._trial_outcomes = []
        if new_state is CircuitState.OPEN:
            self._opened_at = self._clock()
        logger.warning(
            "Circuit breaker %s: %s -> %s", self.name, old_state.value, new_state.value
        )

    def _outcomes(self) -> list[bool]:
        if self.config.sliding_window_type is SlidingWindowType.TIME_BASED:
            horizon = self._clock() - self.config.sliding_window_size
            while self._window and self._window[0][0] <= horizon:
                self._window.popleft()
            return [failed for _, failed in self._window]
        return list(self._window)

    # ── 呼び出しの受付と記録 ──────────────────────

    def _acquire(self) -> int | None:
        """呼び出しを受け付けるなら世代番号、遮断するなら None を返す。"""
        with self._lock:
            self._maybe_half_open()
            if self._state is CircuitState.CLOSED:
                return self._generation
            if self._state is CircuitState.HALF_OPEN:
                permitted = self.config.permitted_number_of_calls_in_half_open_state
                if self._trials_in_flight + len(self._trial_outcomes) < permitted:
                    self._trials_in_flight += 1
                    return self._generation
            self._counters["not_permitted_calls"] += 1
            return None

    def _record(self, generation: int, failed: bool) -> None:
        with self._lock:
            self._counters["failed_calls" if failed else "successful_calls"] += 1
            if generation != self._generation:
                return
            if self._state is CircuitState.CLOSED:
                self._record_closed(failed)
            elif self._state is CircuitState.HALF_OPEN:
                self._trials_in_flight -= 1
                self._trial_outcomes.append(failed)
                if len(self._trial_outcomes) >= self.config.permitted_number_of_calls_in_half_open_state:
                    rate = _failure_rate(self._trial_outcomes)
                    if rate >= self.config.failure_rate_threshold:
                        self._transition(CircuitState.OPEN)
                    else:
                        self._transition(CircuitState.CLOSED)

    def _record_closed(self, failed: bool) -> None:
        if self.config.sliding_window_type is SlidingWindowType.TIME_BASED:
            self._window.append((self._clock(), failed))
        else:
            self._window.append(failed)
            if len(self._window) > self.config.sliding_window_size:
                self._window.popleft()
        outcomes = self._outcomes()
        if len(outcomes) < self.config.minimum_calls:
            return
        # しきい値を超えたその呼び出しで即座に OPEN にする
        if _failure_rate(outcomes) >= self.config.failure_rate_threshold:
            self._transition(CircuitState.OPEN)

    def _release(self, generation: int, ignored: bool = False) -> None:
        """記録せずに受付枠だけ返す (キャンセル / 無視対象の例外)"""
        with self._lock:
            if ignored:
                self._counters["ignored_calls"] += 1
            if generation == self._generation and self._state is CircuitState.HALF_OPEN:
                self._trials_in_flight -= 1

    # ── 公開 API ──────────────────────────────────

    async def run(
        self,
        protected: Callable[[], Awaitable[T]],
        fallback: Callable[[BaseException], T | Awaitable[T]] | None = None,
        timeout: float | None = None,
    ) -> T:
        """
        protected() を実行する。

        protected の例外 (timeout 含む) と OPEN による遮断のどちらでも
        fallback(error) の結果を返す。fallback が無ければ例外を送出する。
        """
        generation = self._acquire()
        if generation is None:
            error = CallNotPermitted(self.name, self.state.value)
            return await self._fall_back(fallback, error)

        try:
            if timeout is None:
                result = await protected()
            else:
                result = await asyncio.wait_for(protected(), timeout)
        except asyncio.CancelledError:
            self._release(generation)
            raise
        except Exception as exc:
            if isinstance(exc, self.config.ignored_exceptions):
                self._release(generation, ignored=True)
                raise
            self._record(generation, failed=True)
            return await self._fall_back(fallback, exc)

        self._record(generation, failed=False)
        return result

    async def _fall_back(
        self,
        fallback: Callable[[BaseException], T | Awaitable[T]] | None,
        error: BaseException,
    ) -> T:
        if fallback is None:
            raise error
        with self._lock:
            self._counters["fallback_calls"] += 1
        try:
            result = fallback(error)
            if inspect.isawaitable(result):
                result = await result
        except Exception as exc:
            raise DownstreamUnavailable(
                f"Fallback of circuit breaker {self.name!r} failed: {exc}"
            ) from exc
        return result


class CircuitBreakerRegistry:
    """名前 → ブレーカー。同じ名前の呼び出し元は同じ状態を共有する。"""

    def __init__(
        self,
        configs: Mapping[str, CircuitBreakerConfig] | None = None,
        default_config: CircuitBreakerConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._configs = dict(configs or {})
        self._default_config = default_config or CircuitBreakerConfig()
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    def get(self, name: str) -> CircuitBreaker:
        with self._lock:
            breaker = self._breakers.get(name)
            if breaker is None:
                config = self._configs.get(name, self._default_config)
                breaker = CircuitBreaker(name, config, clock=self._clock)
                self._breakers[name] = breaker
            return breaker

    def all(self) -> list[CircuitBreaker]:
        with self._lock:
            return list(self._breakers.values())
