import asyncio


class HealthGauge:
    """
    Error-burst based readiness signal.

    Unexpected failures push the score up. Typed login failures do not count,
    they are normal traffic. The background tick lowers the score by
    ``decay`` per interval, and the readiness probe fails while the score is
    above ``health_threshold``.
    """

    def __init__(
        self, value: int = 0, health_threshold: int = 100, decay: int = 1
    ) -> None:
        self._value = value
        self._health_threshold = health_threshold
        self._decay = decay
        self._lock = asyncio.Lock()

    @property
    def value(self) -> int:
        return self._value

    async def record_error(self, weight: int = 1) -> int:
        async with self._lock:
            self._value += int(weight)
            return self._value

    async def tick(self) -> int:
        async with self._lock:
            self._value = max(0, self._value - self._decay)
            return self._value

    async def is_healthy(self) -> bool:
        async with self._lock:
            return self._value <= self._health_threshold
