"""Helpers shared by the test modules."""

from tablecall.engine.clock import Clock

T0 = 1_700_000_000.0


class FakeClock(Clock):
    """Clock the test moves by hand."""

    def __init__(self, start: float = T0):
        super().__init__()
        self.current = start

    def now(self) -> float:
        return self.current

    def advance(self, seconds: float) -> float:
        self.current += seconds
        return self.current
