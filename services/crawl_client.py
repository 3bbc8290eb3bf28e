# services/crawl_client.py
"""
Upstream client used while executing crawl jobs.

Every attempt, the OAuth token request included, takes a permit from the
shared RateLimiter first. 429/5xx answers and transport errors are retried
with tenacity: a Retry-After delay is honored in full before the next
permit, otherwise the client backs off linearly with a little jitter.
Throttling that outlasts the attempts surfaces as UpstreamThrottled so the
worker can schedule a retry.
"""
from __future__ import annotations

import asyncio
import base64
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_incrementing,
    wait_random,
)

from jobs.errors import UpstreamThrottled
from services.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

# refresh tokens slightly before the upstream expires them
TOKEN_EXPIRY_MARGIN_SECONDS = 60


def parse_retry_after(value: str | None, now: datetime | None = None) -> float | None:
    """Retry-After as seconds; accepts delta-seconds or an HTTP date."""
    if not value:
        return None
    value = value.strip()
    if value.isdigit():
        return float(value)
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    delta = (when - (now or datetime.now(timezone.utc))).total_seconds()
    return delta if delta > 0 else None


@dataclass
class SubjectSnapshot:
    name: str
    title: str | None
    subscribers: int | None
    post_ids: list[str]


class CrawlClient:
    def __init__(
        self,
        limiter: RateLimiter,
        base_url: str,
        public_url: str | None = None,
        auth_url: str | None = None,
        client_id: str | None = None,
        client_secret: str | None = None,
        user_agent: str = "crawl-scheduler/0.1",
        timeout: float = 15.0,
        max_attempts: int = 3,
        retry_base: float = 1.0,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.limiter = limiter
        self.base_url = base_url.rstrip("/")
        self.public_url = (public_url or base_url).rstrip("/")
        self.auth_url = auth_url
        self.client_id = client_id
        self.client_secret = client_secret
        self.max_attempts = max(1, max_attempts)
        self.retry_base = retry_base
        # linear backoff with a little jitter when the upstream names no delay
        self._backoff = wait_incrementing(start=retry_base, increment=retry_base) + wait_random(0, 0.2)
        self._sleep = sleep
        self._http = httpx.AsyncClient(
            timeout=timeout,
            headers={"User-Agent": user_agent},
            transport=transport,
        )
        self._token: str | None = None
        self._token_expires_at = 0.0
        self._token_lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings, limiter: RateLimiter) -> CrawlClient:
        return cls(
            limiter,
            base_url=settings.upstream_base_url,
            public_url=settings.upstream_public_url,
            auth_url=settings.upstream_auth_url,
            client_id=settings.upstream_client_id,
            client_secret=settings.upstream_client_secret,
            user_agent=settings.user_agent,
            timeout=settings.http_timeout_seconds,
            max_attempts=settings.http_max_attempts,
            retry_base=settings.http_retry_base_seconds,
        )

    @property
    def has_credentials(self) -> bool:
        return bool(self.client_id and self.client_secret and self.auth_url)

    async def aclose(self) -> None:
        await self._http.aclose()

    async def __aenter__(self) -> CrawlClient:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    # ─────────────────────────────────────────────
    # transport
    # ─────────────────────────────────────────────

    def _wait(self, retry_state: RetryCallState) -> float:
        exc = retry_state.outcome.exception()
        if isinstance(exc, UpstreamThrottled) and exc.retry_after is not None:
            return exc.retry_after
        return self._backoff(retry_state)

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(self.max_attempts),
            wait=self._wait,
            retry=retry_if_exception_type((UpstreamThrottled, httpx.TransportError)),
            before_sleep=before_sleep_log(logger, logging.INFO),
            sleep=self._sleep,
        )

    async def _send(self, build: Callable[[], httpx.Request]) -> httpx.Response:
        try:
            async for attempt in self._retrying():
                with attempt:
                    await self.limiter.acquire()
                    request = build()
                    response = await self._http.send(request)
                    if response.status_code == 429 or response.status_code >= 500:
                        retry_after = parse_retry_after(response.headers.get("Retry-After"))
                        await response.aclose()
                        logger.info(
                            "HTTP %s %s status=%d retry_after=%s attempt=%d",
                            request.method,
                            request.url,
                            response.status_code,
                            retry_after,
                            attempt.retry_state.attempt_number,
                        )
                        raise UpstreamThrottled(retry_after=retry_after, status_code=response.status_code)
        except (UpstreamThrottled, httpx.TransportError) as exc:
            logger.warning("HTTP request giving up after %d attempts: %s", self.max_attempts, exc)
            raise
        return response

    # ─────────────────────────────────────────────
    # auth
    # ─────────────────────────────────────────────

    async def access_token(self) -> str:
        async with self._token_lock:
            if self._token and time.monotonic() < self._token_expires_at:
                return self._token

            credentials = base64.b64encode(f"{self.client_id}:{self.client_secret}".encode()).decode("ascii")

            def build() -> httpx.Request:
                return self._http.build_request(
                    "POST",
                    self.auth_url,
                    data={"grant_type": "client_credentials"},
                    headers={"Authorization": f"Basic {credentials}"},
                )

            response = await self._send(build)
            response.raise_for_status()
            payload = response.json()
            token = payload.get("access_token")
            if not token:
                raise ValueError("token response without access_token")

            expires_in = float(payload.get("expires_in", 3600))
            self._token = token
            self._token_expires_at = time.monotonic() + max(0.0, expires_in - TOKEN_EXPIRY_MARGIN_SECONDS)
            logger.info("Acquired upstream access token (expires_in=%.0fs)", expires_in)
            return token

    def invalidate_token(self) -> None:
        self._token = None
        self._token_expires_at = 0.0

    async def get_json(self, path: str, params: dict | None = None) -> dict:
        """
        GET a JSON document, authenticated when credentials are configured.
        Falls back to the public endpoint when the token cannot be obtained
        or is rejected.
        """
        if self.has_credentials:
            try:
                token = await self.access_token()
            except (httpx.HTTPError, ValueError) as exc:
                logger.warning("Token acquisition failed, using public endpoint: %s", exc)
            else:
                response = await self._send(
                    lambda: self._http.build_request(
                        "GET",
                        f"{self.base_url}{path}",
                        params=params,
                        headers={"Authorization": f"Bearer {token}"},
                    )
                )
                if response.status_code not in (401, 403):
                    response.raise_for_status()
                    return response.json()
                logger.warning("Upstream rejected token (status=%d), using public endpoint", response.status_code)
                self.invalidate_token()

        response = await self._send(
            lambda: self._http.build_request("GET", f"{self.public_url}{path}", params=params)
        )
        response.raise_for_status()
        return response.json()

    # ─────────────────────────────────────────────
    # subjects
    # ─────────────────────────────────────────────

    async def fetch_subject(self, name: str, limit: int = 50) -> SubjectSnapshot:
        about = await self.get_json(f"/r/{name}/about.json")
        listing = await self.get_json(f"/r/{name}/hot.json", params={"limit": limit})

        info = about.get("data")
        children = (listing.get("data") or {}).get("children")
        if not isinstance(info, dict) or not isinstance(children, list):
            raise ValueError(f"Unexpected upstream payload for {name}")

        post_ids = [
            child["data"]["id"]
            for child in children[:limit]
            if isinstance(child, dict) and isinstance(child.get("data"), dict) and child["data"].get("id")
        ]
        return SubjectSnapshot(
            name=info.get("display_name") or name,
            title=info.get("title"),
            subscribers=info.get("subscribers"),
            post_ids=post_ids,
        )
