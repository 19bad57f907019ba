"""Manually advanced clock for cache and fallback staleness tests."""


class FakeClock:
    def __init__(self, start: float = 1_735_689_600.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def ms(self) -> int:
        return int(self.now * 1000)
