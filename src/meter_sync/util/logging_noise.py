import logging
import time


class RateLimitFilter(logging.Filter):
    """
    Rate limit filter to prevent log spam.
    Only allows the same log message once per period.
    """

    def __init__(self, period_sec: float = 2.0):
        super().__init__()
        self.period = period_sec
        self._last: dict[tuple, float] = {}

    def filter(self, record: logging.LogRecord) -> bool:
        key = (record.name, record.levelno, record.getMessage())
        now = time.monotonic()
        last = self._last.get(key, 0.0)
        if now - last < self.period:
            return False
        self._last[key] = now
        return True


def quiet_library_logs(level=logging.WARNING, rate_limit_sec: float = 2.0):
    """Meters that drop off the bus make pymodbus and httpx very chatty."""
    pymodbus_log = logging.getLogger("pymodbus.logging")
    pymodbus_log.setLevel(level)
    pymodbus_log.addFilter(RateLimitFilter(rate_limit_sec))

    logging.getLogger("httpx").setLevel(level)
    logging.getLogger("httpcore").setLevel(level)
    logging.getLogger("asyncio").setLevel(logging.ERROR)
