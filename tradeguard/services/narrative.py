"""Advisory narrative text for opportunities.

The narrative service is an external HTTP collaborator. Its output is shown
to the operator and never feeds a position decision, so every failure
degrades to a templated string instead of raising.
"""

import asyncio
import functools
import logging
from dataclasses import dataclass
from typing import Any

import requests

from tradeguard.config import settings
from tradeguard.utils.retry import RetryPolicy, retry_async

logger = logging.getLogger(__name__)


@dataclass
class Narrative:
    summary: str
    risks: str
    fallback: bool = False


class NarrativeUnavailable(Exception):
    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)

    @property
    def retryable(self) -> bool:
        return self.status_code is None or self.status_code == 429 or self.status_code >= 500


def fallback_narrative(symbol: str, side: str, snapshot: dict[str, Any] | None = None) -> Narrative:
    snapshot = snapshot or {}
    levels = ", ".join(f"{k}={v}" for k, v in sorted(snapshot.items()))
    summary = f"{symbol} {side}: automated summary unavailable."
    if levels:
        summary += f" Plan: {levels}."
    return Narrative(
        summary=summary,
        risks="Review stop distance and position size manually before approving.",
        fallback=True,
    )


class NarrativeClient:
    def __init__(
        self,
        url: str | None = None,
        timeout: float | None = None,
        retry_policy: RetryPolicy | None = None,
        http: requests.Session | None = None,
    ):
        self.url = url if url is not None else settings.narrative_url
        self.timeout = timeout if timeout is not None else settings.narrative_timeout_seconds
        self.retry_policy = retry_policy or RetryPolicy(max_attempts=3, base_delay=0.5)
        self._http = http or requests.Session()

    def _post(self, body: dict[str, Any]) -> dict[str, Any]:
        try:
            resp = self._http.post(self.url, json=body, timeout=self.timeout)
        except requests.RequestException as e:
            raise NarrativeUnavailable(str(e)) from e
        if resp.status_code >= 400:
            raise NarrativeUnavailable(
                f"narrative service returned {resp.status_code}", status_code=resp.status_code
            )
        return resp.json()

    async def explain(self, symbol: str, side: str, snapshot: dict[str, Any] | None = None) -> Narrative:
        """Summary and risk text for a symbol; templated text on any failure."""
        if not self.url:
            return fallback_narrative(symbol, side, snapshot)

        body = {"symbol": symbol, "side": side, "snapshot": snapshot or {}}

        async def once():
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(None, functools.partial(self._post, body))

        try:
            data = await retry_async(
                once,
                self.retry_policy,
                is_retryable=lambda e: isinstance(e, NarrativeUnavailable) and e.retryable,
                name="narrative.explain",
            )
        except (NarrativeUnavailable, ValueError) as e:
            logger.warning(f"Narrative for {symbol} unavailable, using fallback: {e}")
            return fallback_narrative(symbol, side, snapshot)

        summary = data.get("summary")
        if not summary:
            return fallback_narrative(symbol, side, snapshot)
        return Narrative(summary=summary, risks=data.get("risks") or "")
