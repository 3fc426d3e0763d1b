"""
Utility functions for retries, deadlines, URL handling and common operations
"""
import re
import time
import random
import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Awaitable, Any, Optional, Tuple, Type
from urllib.parse import urlparse

logger = logging.getLogger(__name__)


@dataclass
class RetryPolicy:
    """
    Retry schedule shared by every call site that retries

    Args:
        max_attempts: Total number of attempts, including the first one
        base_delay: Delay unit in seconds
        jitter: (low, high) random seconds added to every delay
        backoff: "linear" (base * attempt), "exponential" (base * 2 ** (attempt - 1))
            or "fixed" (base only)
    """
    max_attempts: int = 3
    base_delay: float = 1.0
    jitter: Tuple[float, float] = (0.0, 0.0)
    backoff: str = "linear"

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after the given (1-based) failed attempt"""
        if self.backoff == "exponential":
            delay = self.base_delay * (2 ** (attempt - 1))
        elif self.backoff == "fixed":
            delay = self.base_delay
        else:
            delay = self.base_delay * attempt
        low, high = self.jitter
        if high > 0:
            delay += random.uniform(low, high)
        return delay

    async def run(self, func: Callable[..., Awaitable[Any]], *args,
                  retry_on: Tuple[Type[BaseException], ...] = (Exception,),
                  give_up_on: Tuple[Type[BaseException], ...] = (),
                  label: str = None, **kwargs) -> Any:
        """Await func until it succeeds or attempts run out; the last error propagates"""
        name = label or getattr(func, "__name__", "operation")
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await func(*args, **kwargs)
            except give_up_on:
                raise
            except retry_on as e:
                if attempt >= self.max_attempts:
                    logger.error(f"{name} failed after {self.max_attempts} attempts: {e}")
                    raise
                delay = self.delay_for(attempt)
                logger.warning(f"Attempt {attempt} failed for {name}: {e}. Retrying in {delay:.2f}s")
                await asyncio.sleep(delay)


class Deadline:
    """Wall-clock budget checked cooperatively between phases"""

    def __init__(self, budget_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.budget_seconds = budget_seconds
        self.clock = clock
        self.started_at = clock()

    def elapsed(self) -> float:
        return self.clock() - self.started_at

    def remaining(self) -> float:
        return max(0.0, self.budget_seconds - self.elapsed())

    def expired(self) -> bool:
        return self.elapsed() >= self.budget_seconds

    def bound(self, timeout: float) -> float:
        """Clamp a per-call timeout so it never outlives the budget"""
        return max(0.0, min(timeout, self.remaining()))


async def random_delay(bounds: Tuple[float, float], reason: str = "") -> float:
    """Sleep for a random duration inside bounds and return it"""
    low, high = bounds
    delay = random.uniform(low, high) if high > 0 else 0.0
    if delay > 0:
        logger.debug(f"Waiting {delay:.2f}s {reason}".rstrip())
        await asyncio.sleep(delay)
    return delay


def normalize_url(url: str) -> str:
    """Reduce a URL to scheme, host and path so it can be compared"""
    try:
        parsed = urlparse(url)
        if not parsed.scheme or not parsed.hostname:
            return url
        path = parsed.path or "/"
        return f"{parsed.scheme}://{parsed.hostname}{path}"
    except ValueError:
        return url


def validate_url(url: str) -> bool:
    """Validate if a URL is properly formatted"""
    try:
        result = urlparse(url)
        return all([result.scheme in ("http", "https"), result.netloc])
    except ValueError:
        return False


def normalize_domain(url: str) -> str:
    """Extract and normalize domain from URL"""
    try:
        parsed = urlparse(url if "://" in url else f"https://{url}")
        domain = (parsed.hostname or "").lower()
        # Remove www prefix
        if domain.startswith('www.'):
            domain = domain[4:]
        return domain
    except ValueError:
        return ""


def safe_extract_text(element, default: str = "") -> str:
    """Safely extract text from BeautifulSoup element"""
    if element is None:
        return default
    text = element.get_text(" ", strip=True)
    return text or default


def clean_text(text: str) -> str:
    """Collapse whitespace in extracted text"""
    if not text:
        return ""
    return re.sub(r"\s+", " ", text).strip()


class PerformanceMonitor:
    """Monitor and log performance metrics"""

    def __init__(self, logger_name: str = "performance"):
        self.metrics = {}
        self._starts = {}
        self._logger = logging.getLogger(logger_name)

    def start_timer(self, operation: str):
        """Start timing an operation"""
        self._starts[operation] = time.monotonic()

    def end_timer(self, operation: str) -> float:
        """End timing and log results"""
        started = self._starts.pop(operation, None)
        if started is None:
            return 0.0
        duration = time.monotonic() - started
        self.metrics[operation] = duration
        self._logger.info(f"Operation '{operation}' completed in {duration:.2f} seconds")
        return duration

    def get_metrics(self) -> dict:
        """Get all recorded metrics"""
        return self.metrics.copy()
