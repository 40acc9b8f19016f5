from __future__ import annotations

import asyncio
import os
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Literal, Optional

import aiohttp
import structlog

from subtrack.alerts.formatting import format_toast
from subtrack.utils.backoff import retry_delays
from subtrack.utils.types import Toast

log = structlog.get_logger("telegram")

# --------- sliding-window send limiter ----------

class SendWindow:
    """At most max_sends deliveries in any window_s span."""
    def __init__(self, max_sends: int, window_s: float,
                 clock: Callable[[], float] = time.monotonic):
        self.max_sends = max_sends
        self.window_s = window_s
        self._clock = clock
        self._sent: deque[float] = deque()
        self._lock = asyncio.Lock()

    def _prune(self, now: float) -> None:
        while self._sent and now - self._sent[0] >= self.window_s:
            self._sent.popleft()

    async def wait_turn(self) -> None:
        async with self._lock:
            self._prune(self._clock())
            if len(self._sent) >= self.max_sends:
                wait = self.window_s - (self._clock() - self._sent[0])
                log.debug("telegram_rate_wait", wait_s=round(wait, 3))
                await asyncio.sleep(max(0.0, wait))
                self._prune(self._clock())
            self._sent.append(self._clock())

# --------- config ----------

@dataclass(slots=True)
class TelegramConfig:
    bot_token: str
    chat_id: str
    parse_mode: Optional[str] = None      # "HTML" / "MarkdownV2"
    api_base: str = "https://api.telegram.org"
    timeout_s: float = 8.0
    max_per_minute: int = 20
    attempts: int = 5
    backoff_initial_s: float = 0.5
    backoff_cap_s: float = 8.0

    @property
    def send_url(self) -> str:
        return f"{self.api_base}/bot{self.bot_token}/sendMessage"

def config_from_env() -> TelegramConfig:
    """Raises ValueError when TELEGRAM_BOT_TOKEN / TELEGRAM_CHAT_ID are missing."""
    token = os.getenv("TELEGRAM_BOT_TOKEN", "").strip()
    chat_id = os.getenv("TELEGRAM_CHAT_ID", "").strip()
    if not token or not chat_id:
        raise ValueError("TELEGRAM_BOT_TOKEN and TELEGRAM_CHAT_ID must be set")
    return TelegramConfig(
        bot_token=token,
        chat_id=chat_id,
        parse_mode=os.getenv("TELEGRAM_PARSE_MODE") or None,
        max_per_minute=int(os.getenv("TELEGRAM_MAX_PER_MINUTE", "20")),
    )

# --------- sink ----------

Verdict = Literal["sent", "retry", "reject"]

class TelegramNotifier:
    """
    Toast sink posting to one Telegram chat. Rate limited per chat;
    429/5xx/network errors are retried with backoff, other 4xx are dropped.
    """
    def __init__(self, cfg: TelegramConfig, format_fn: Callable[[Toast], str] = format_toast):
        self.cfg = cfg
        self._format_fn = format_fn
        self._session: Optional[aiohttp.ClientSession] = None
        self._window = SendWindow(cfg.max_per_minute, 60.0)

    async def start(self) -> None:
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.cfg.timeout_s)
            )

    async def stop(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def send(self, toast: Toast) -> bool:
        await self._window.wait_turn()
        return await self.deliver(self._format_fn(toast))

    async def deliver(self, text: str) -> bool:
        """Post text, retrying transient failures. True once Telegram accepts it."""
        await self.start()
        payload = {"chat_id": self.cfg.chat_id, "text": text}
        if self.cfg.parse_mode:
            payload["parse_mode"] = self.cfg.parse_mode

        delays = retry_delays(self.cfg.attempts, self.cfg.backoff_initial_s,
                              self.cfg.backoff_cap_s, jitter_ratio=0.2)
        attempt = 0
        while True:
            attempt += 1
            verdict, hint = await self._attempt(payload, attempt)
            if verdict == "sent":
                return True
            if verdict == "reject":
                return False
            delay = next(delays, None)
            if delay is None:
                log.error("telegram_give_up", attempts=attempt)
                return False
            await asyncio.sleep(hint if hint is not None else delay)

    async def _attempt(self, payload: dict, attempt: int) -> tuple[Verdict, Optional[float]]:
        assert self._session is not None
        try:
            async with self._session.post(self.cfg.send_url, data=payload) as resp:
                if resp.status == 200:
                    return "sent", None
                detail = await _body_text(resp)
                log.warning("telegram_send_failed", status=resp.status, body=detail, attempt=attempt)
                if resp.status == 429:
                    return "retry", await _retry_after(resp)
                if 500 <= resp.status < 600:
                    return "retry", None
                return "reject", None
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            log.warning("telegram_network_error", err=str(e), attempt=attempt)
            return "retry", None

async def _retry_after(resp: aiohttp.ClientResponse) -> Optional[float]:
    # 429 bodies carry parameters.retry_after in seconds
    try:
        data = await resp.json()
    except (aiohttp.ContentTypeError, ValueError):
        return None
    ra = (data.get("parameters") or {}).get("retry_after")
    return float(ra) if ra else None

async def _body_text(resp: aiohttp.ClientResponse) -> str:
    try:
        return await resp.text()
    except (aiohttp.ClientError, UnicodeDecodeError):
        return "<no body>"
