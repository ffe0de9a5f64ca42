"""Telegram Bot API delivery."""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field
from typing import Any

import httpx

from rankwatch.errors import TelegramError
from rankwatch.utils.retry import retry_async

logger = logging.getLogger(__name__)

TELEGRAM_API = "https://api.telegram.org"
CAPTION_LIMIT = 1024
TIMEOUT_SECONDS = float(os.environ.get("TELEGRAM_TIMEOUT_SECONDS", 30))


@dataclass(slots=True)
class TargetResult:
    target: str
    ok: bool
    error: str = ""


@dataclass(slots=True)
class DeliveryReport:
    results: list[TargetResult] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def ok_count(self) -> int:
        return sum(1 for item in self.results if item.ok)

    @property
    def fail_count(self) -> int:
        return self.total - self.ok_count

    @property
    def ok(self) -> bool:
        return self.total > 0 and self.fail_count == 0

    def as_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "total": self.total,
            "ok_count": self.ok_count,
            "fail_count": self.fail_count,
            "results": [
                {"target": item.target, "ok": item.ok, "error": item.error} for item in self.results
            ],
        }


class TelegramChannel:
    def __init__(
        self,
        token: str,
        *,
        session: httpx.AsyncClient | None = None,
        timeout: float = TIMEOUT_SECONDS,
    ) -> None:
        self.token = token
        self.session = session or httpx.AsyncClient(timeout=timeout)

    async def close(self) -> None:
        await self.session.aclose()

    def _url(self, method: str) -> str:
        return f"{TELEGRAM_API}/bot{self.token}/{method}"

    async def _call(self, method: str, target: str, **kwargs: Any) -> dict[str, Any]:
        try:
            response = await retry_async(self.session.post)(self._url(method), **kwargs)
        except httpx.HTTPError as exc:
            raise TelegramError(f"Telegram {method} failed: {exc.__class__.__name__}", target=target) from exc
        try:
            data = response.json()
        except ValueError:
            data = {}
        if response.status_code >= 400 or data.get("ok") is False:
            message = data.get("description") or f"Telegram {method} failed"
            raise TelegramError(message, target=target)
        return data

    async def send_text(self, target: str, text: str) -> None:
        await self._call(
            "sendMessage",
            target,
            json={"chat_id": target, "text": text, "disable_web_page_preview": True},
        )

    async def send_document(
        self, target: str, filename: str, content: str | bytes, caption: str = ""
    ) -> None:
        payload = content.encode("utf-8") if isinstance(content, str) else content
        await self._call(
            "sendDocument",
            target,
            data={"chat_id": target, "caption": (caption or "")[:CAPTION_LIMIT]},
            files={"document": (filename, payload, "application/json")},
        )

    async def test_targets(self, targets: list[str], text: str) -> DeliveryReport:
        outcomes = await asyncio.gather(
            *(self.send_text(target, text) for target in targets), return_exceptions=True
        )
        report = DeliveryReport()
        for target, outcome in zip(targets, outcomes):
            if isinstance(outcome, Exception):
                report.results.append(TargetResult(target=target, ok=False, error=str(outcome) or "Unknown error"))
            else:
                report.results.append(TargetResult(target=target, ok=True))
        return report
