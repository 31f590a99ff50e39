"""Alert sinks: log-only, webhook, and per-title throttling, plus the sampling hook."""

from __future__ import annotations

import logging
import random
import time
from typing import Any, Callable, Protocol, runtime_checkable

import httpx

from pricefeed.marketdata.retry import is_retryable_error, with_retry

logger = logging.getLogger(__name__)

Sampler = Callable[[float], bool]


def random_sampler(probability: float) -> bool:
    """Fire with the given probability; used to keep per-failure alerts from spamming."""
    return random.random() < probability


def always_sample(probability: float) -> bool:
    return True


def never_sample(probability: float) -> bool:
    return False


@runtime_checkable
class AlertSink(Protocol):
    async def notify(self, title: str, error: BaseException | str, context: dict[str, Any]) -> None: ...


def _error_text(error: BaseException | str) -> str:
    return error if isinstance(error, str) else (str(error) or type(error).__name__)


class LoggingAlertSink:
    """Writes alerts to the log. Used when no webhook is configured."""

    async def notify(self, title: str, error: BaseException | str, context: dict[str, Any]) -> None:
        logger.warning("ALERT %s: %s | %s", title, _error_text(error), context)


class WebhookAlertSink:
    """POSTs alerts as JSON to a chat/incident webhook."""

    def __init__(
        self,
        url: str,
        *,
        service_name: str = "pricefeed",
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._url = url
        self._service = service_name
        self._timeout = timeout
        self._transport = transport

    async def notify(self, title: str, error: BaseException | str, context: dict[str, Any]) -> None:
        payload = {
            "service": self._service,
            "title": f"[{self._service}] {title}"[:100],
            "message": _error_text(error),
            "context": context,
        }

        async def _post() -> None:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                resp = await client.post(self._url, json=payload)
                resp.raise_for_status()

        await with_retry(_post, max_retries=2, base_delay=0.1, should_retry=is_retryable_error)
        logger.info("Alert sent: %s", title)


class ThrottledAlertSink:
    """Drops repeats of the same title inside ``interval_minutes``."""

    def __init__(self, inner: AlertSink, interval_minutes: float = 30.0) -> None:
        self._inner = inner
        self._interval_s = interval_minutes * 60.0
        self._last_sent: dict[str, float] = {}

    async def notify(self, title: str, error: BaseException | str, context: dict[str, Any]) -> None:
        now = time.monotonic()
        last = self._last_sent.get(title)
        if last is not None and now - last < self._interval_s:
            logger.info("Alert throttled: %s", title)
            return
        self._last_sent[title] = now
        await self._inner.notify(title, error, context)


async def safe_notify(
    sink: AlertSink | None,
    title: str,
    error: BaseException | str,
    context: dict[str, Any] | None = None,
) -> bool:
    """Fire-and-forget: a failing alert channel never fails the caller."""
    if sink is None:
        return False
    try:
        await sink.notify(title, error, context or {})
    except Exception:
        logger.warning("failed to deliver alert %r", title, exc_info=True)
        return False
    return True
