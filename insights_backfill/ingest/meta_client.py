"""Meta Graph API client for asynchronous insights report jobs."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

import httpx

from insights_backfill.ingest.errors import ErrorKind, MetaApiError
from insights_backfill.utils.dates import format_date, today_in_tz
from insights_backfill.utils.retry import retry_async

logger = logging.getLogger(__name__)

DEFAULT_API_VERSION = "v18.0"
RETRIABLE_STATUS = frozenset({408, 409, 425, 429, 500, 502, 503, 504})
HTTP_ATTEMPTS = 6
HTTP_BASE_DELAY = 0.5
JOB_COMPLETED = "Job Completed"


@dataclass(slots=True)
class InsightsJob:
    job_id: str
    result_url: str


@dataclass(slots=True)
class PollResult:
    job_id: str
    files: list[str]
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ResultPage:
    data: list[Any]
    next: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)


def ensure_act_prefix(account_id: str) -> str:
    return account_id if account_id.startswith("act_") else f"act_{account_id}"


def encode_params(params: dict[str, Any]) -> dict[str, str]:
    encoded: dict[str, str] = {}
    for key, value in params.items():
        if value is None:
            continue
        if isinstance(value, bool):
            encoded[key] = "true" if value else "false"
        elif isinstance(value, (str, int, float)):
            encoded[key] = str(value)
        else:
            encoded[key] = json.dumps(value, separators=(",", ":"))
    return encoded


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, httpx.TransportError):
        return True
    return isinstance(exc, MetaApiError) and exc.status in RETRIABLE_STATUS


def _error_from_response(response: httpx.Response) -> MetaApiError:
    body = response.text
    message: str | None = None
    transient = False
    try:
        parsed = json.loads(body) if body else {}
    except ValueError:
        message = body or None
    else:
        if isinstance(parsed, dict) and isinstance(parsed.get("error"), dict):
            error = parsed["error"]
            if isinstance(error.get("message"), str):
                message = error["message"]
            transient = bool(error.get("is_transient"))
        elif isinstance(parsed, str):
            message = parsed
    return MetaApiError(
        message or f"Meta Graph request failed with status {response.status_code}",
        status=response.status_code,
        payload=body,
        kind=ErrorKind.TRANSIENT if transient else None,
    )


class MetaInsightsClient:
    def __init__(
        self,
        token: str,
        *,
        session: httpx.AsyncClient | None = None,
        api_version: str | None = None,
        poll_interval: float = 2.0,
        poll_timeout: float = 15 * 60.0,
        sleep: Callable[[float], Awaitable] | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.token = token
        self.session = session or httpx.AsyncClient(timeout=60.0)
        version = api_version or os.environ.get("META_API_VERSION", DEFAULT_API_VERSION)
        self.base_url = f"https://graph.facebook.com/{version}"
        self.poll_interval = poll_interval
        self.poll_timeout = poll_timeout
        self._sleep = sleep or asyncio.sleep
        self._clock = clock or time.monotonic

    async def close(self) -> None:
        await self.session.aclose()

    async def start_insights_job(self, account_id: str, params: dict[str, Any]) -> InsightsJob:
        act_id = ensure_act_prefix(account_id)
        query = {"async": "1", **encode_params(params)}
        payload = await self._request_json("POST", f"{self.base_url}/{act_id}/insights", params=query)
        job_id = payload.get("report_run_id") or payload.get("id")
        if not isinstance(job_id, str) or not job_id:
            raise MetaApiError(f"Meta async job response missing report_run_id/id: {payload}")
        result_url = payload.get("result_url")
        if not isinstance(result_url, str):
            result_url = f"{self.base_url}/{job_id}/insights"
        logger.info("Meta async insights job started account=%s job=%s", act_id, job_id)
        return InsightsJob(job_id=job_id, result_url=result_url)

    async def health(self, account_id: str) -> bool:
        """Submit a tiny account-level job to confirm the token can read ``account_id``."""
        until = today_in_tz()
        params = {
            "fields": "account_id,date_start,impressions,spend",
            "level": "account",
            "time_range": {"since": format_date(until - timedelta(days=2)), "until": format_date(until)},
            "time_increment": 1,
            "limit": 10,
        }
        try:
            await self.start_insights_job(account_id, params)
        except (MetaApiError, httpx.HTTPError) as exc:
            logger.error("Meta insights health check failed account=%s: %s", ensure_act_prefix(account_id), exc)
            return False
        return True

    async def poll_job(self, job_id: str) -> PollResult:
        started = self._clock()
        while True:
            if self._clock() - started > self.poll_timeout:
                raise MetaApiError(
                    f"Meta async job timed out: {job_id} after {self.poll_timeout:.0f}s",
                    kind=ErrorKind.TRANSIENT,
                )
            payload = await self._request_json("GET", f"{self.base_url}/{job_id}")
            status = payload.get("async_status")
            logger.info(
                "Meta async job status job=%s status=%s percent=%s",
                job_id,
                status,
                payload.get("async_percent_completion"),
            )
            if status == JOB_COMPLETED:
                return PollResult(job_id=job_id, files=self._result_files(job_id, payload), raw=payload)
            if isinstance(status, str) and "failed" in status.lower():
                raise MetaApiError(f"Meta async job {job_id} failed with status {status}", kind=ErrorKind.FATAL)
            await self._sleep(self.poll_interval)

    async def fetch_result_page(self, url: str) -> ResultPage:
        payload = await self._request_json("GET", url)
        data = payload.get("data")
        paging = payload.get("paging")
        next_url = paging.get("next") if isinstance(paging, dict) else None
        return ResultPage(
            data=data if isinstance(data, list) else [],
            next=next_url if isinstance(next_url, str) else None,
            raw=payload,
        )

    def _result_files(self, job_id: str, payload: dict[str, Any]) -> list[str]:
        files: list[str] = []
        urls = payload.get("result_urls")
        if isinstance(urls, list):
            files.extend(url for url in urls if isinstance(url, str))
        if isinstance(payload.get("result_url"), str):
            files.append(payload["result_url"])
        if not files:
            files.append(f"{self.base_url}/{job_id}/insights")
        return list(dict.fromkeys(files))

    async def _request_json(self, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        send = retry_async(
            self._send,
            attempts=HTTP_ATTEMPTS,
            base_delay=HTTP_BASE_DELAY,
            jitter=0.0,
            should_retry=_is_retryable,
            sleep=self._sleep,
        )
        response = await send(method, url, **kwargs)
        if not response.content:
            return {}
        try:
            payload = response.json()
        except ValueError as exc:
            raise MetaApiError(f"Failed to parse Meta response from {url}: {response.text[:200]}") from exc
        if not isinstance(payload, dict):
            raise MetaApiError(f"Unexpected Meta response from {url}: {response.text[:200]}")
        return payload

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        headers = {"Authorization": f"Bearer {self.token}"}
        response = await self.session.request(method, url, headers=headers, **kwargs)
        logger.debug(
            "Meta Graph request method=%s url=%s status=%s trace=%s usage=%s",
            method,
            url,
            response.status_code,
            response.headers.get("x-fb-trace-id"),
            response.headers.get("x-ad-account-usage"),
        )
        if response.is_error:
            raise _error_from_response(response)
        return response
