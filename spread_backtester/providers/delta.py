from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

import aiohttp

from ..errors import DataSourceError, FatalDataSourceError
from ..models import Candle, finite_or
from ..timeutil import parse_interval

log = logging.getLogger("delta")

DEFAULT_BASE_URL = "https://api.delta.exchange"
MAX_CANDLES_PER_REQUEST = 2000

_RESOLUTIONS = {1: "1m", 3: "3m", 5: "5m", 15: "15m", 30: "30m", 60: "1h", 120: "2h", 240: "4h", 360: "6h", 1440: "1d", 10080: "1w"}


def resolution_for(timeframe: str) -> str:
    """M5 -> 5m, H1 -> 1h, D1 -> 1d."""
    iv = parse_interval(timeframe)
    res = _RESOLUTIONS.get(iv.minutes)
    if res is None:
        raise ValueError(f"Timeframe {timeframe} has no Delta resolution")
    return res


def parse_candle_rows(rows: List[Dict[str, Any]]) -> List[Candle]:
    """`time` is epoch seconds. Sorted ascending, duplicate timestamps keep the last row."""
    by_ts: Dict[int, Candle] = {}
    nan = float("nan")
    for row in rows or []:
        t = row.get("time")
        if t is None:
            continue
        try:
            ts_ms = int(t) * 1000
        except (TypeError, ValueError):
            continue
        by_ts[ts_ms] = Candle(
            ts_ms=ts_ms,
            open=finite_or(row.get("open"), nan),
            high=finite_or(row.get("high"), nan),
            low=finite_or(row.get("low"), nan),
            close=finite_or(row.get("close"), nan),
            volume=finite_or(row.get("volume"), 0.0),
        )
    return [by_ts[ts] for ts in sorted(by_ts)]


class DeltaCandleProvider:
    """CandleSource over Delta Exchange `GET /v2/history/candles`."""

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        *,
        rest_timeout_s: int = 20,
        rest_max_retries: int = 4,
        rest_backoff_s: float = 0.8,
        rest_conn_limit: int = 20,
        rest_conn_limit_per_host: int = 10,
    ):
        self.base_url = base_url.rstrip("/")
        self.rest_timeout_s = rest_timeout_s

        # REST robustness
        self.rest_max_retries = rest_max_retries
        self.rest_backoff_s = rest_backoff_s
        self.rest_conn_limit = rest_conn_limit
        self.rest_conn_limit_per_host = rest_conn_limit_per_host

        self._session: Optional[aiohttp.ClientSession] = None

    async def close(self) -> None:
        """Close the shared aiohttp session (best-effort)."""
        if self._session is not None and not self._session.closed:
            await self._session.close()

    def _timeout(self) -> aiohttp.ClientTimeout:
        return aiohttp.ClientTimeout(
            total=self.rest_timeout_s,
            connect=min(10, self.rest_timeout_s),
            sock_connect=min(10, self.rest_timeout_s),
            sock_read=max(10, int(self.rest_timeout_s * 0.75)),
        )

    def _connector(self) -> aiohttp.TCPConnector:
        return aiohttp.TCPConnector(
            limit=self.rest_conn_limit,
            limit_per_host=self.rest_conn_limit_per_host,
            ttl_dns_cache=300,
            enable_cleanup_closed=True,
        )

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout(), connector=self._connector())
        return self._session

    async def _get_json(self, path: str, params: Dict[str, Any]) -> Any:
        url = self.base_url + path
        sess = await self._get_session()

        backoff = float(self.rest_backoff_s)
        last_err: Optional[BaseException] = None
        data: Any = None
        for attempt in range(1, int(self.rest_max_retries) + 1):
            try:
                async with sess.get(url, params=params) as resp:
                    if resp.status == 429:
                        txt = await resp.text()
                        retry_after = resp.headers.get("Retry-After")
                        sleep_s = float(retry_after) if (retry_after and retry_after.isdigit()) else backoff
                        log.warning(
                            "rest_rate_limited status=%s path=%s sleep=%.1fs body=%s",
                            resp.status,
                            path,
                            sleep_s,
                            txt[:200],
                        )
                        last_err = DataSourceError(f"rate limited: {resp.status}")
                        await asyncio.sleep(sleep_s)
                        backoff = min(backoff * 2.0, 20.0)
                        continue

                    if resp.status != 200:
                        txt = await resp.text()
                        raise DataSourceError(f"Delta {path} failed: {resp.status} {txt[:500]}")

                    # Some proxies return a wrong content-type; be tolerant.
                    data = await resp.json(content_type=None)

                last_err = None
                break

            except (asyncio.TimeoutError, aiohttp.ClientError) as e:
                last_err = e
                if attempt >= int(self.rest_max_retries):
                    break
                log.warning(
                    "rest_timeout_or_client_err attempt=%d/%d path=%s backoff=%.1fs err=%s",
                    attempt,
                    self.rest_max_retries,
                    path,
                    backoff,
                    e,
                )
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2.0, 20.0)

        if last_err is not None:
            raise FatalDataSourceError(f"Delta {path} retries exhausted: {last_err!r}") from last_err
        return data

    async def fetch_candles(self, symbol: str, timeframe: str, from_ms: int, to_ms: int) -> List[Candle]:
        resolution = resolution_for(timeframe)
        step_s = parse_interval(timeframe).minutes * 60
        start_s = int(from_ms // 1000)
        end_s = int(to_ms // 1000)

        rows: List[Dict[str, Any]] = []
        cursor = start_s
        while cursor <= end_s:
            chunk_end = min(end_s, cursor + step_s * (MAX_CANDLES_PER_REQUEST - 1))
            data = await self._get_json(
                "/v2/history/candles",
                {"resolution": resolution, "symbol": symbol.upper(), "start": cursor, "end": chunk_end},
            )
            if not isinstance(data, dict) or data.get("success") is False:
                raise DataSourceError(f"Delta candles bad payload symbol={symbol}: {str(data)[:300]}")
            rows.extend(data.get("result") or [])
            cursor = chunk_end + step_s

        out = [c for c in parse_candle_rows(rows) if from_ms <= c.ts_ms <= to_ms]
        log.info("delta_candles symbol=%s tf=%s rows=%d", symbol, timeframe, len(out))
        return out
