"""
HTTP request layer for the POS API.

``RequestClient.execute`` turns a ``RequestSpec`` into a classified
``RequestOutcome``. It never raises: transport exceptions, timeouts and
error statuses all resolve to an outcome variant.

Classification:
    connection failure / timeout / 5xx -> NETWORK_ERROR (retried)
    401 / 403                           -> AUTH_ERROR
    404                                 -> NOT_FOUND
    400 / 422                           -> VALIDATION_ERROR
    other non-2xx                       -> SERVER_ERROR

Retry: only NETWORK_ERROR, at most ``max_attempts`` attempts in total,
with a delay of base, 2 x base, 4 x base... between them. The bearer
token is read from the session store before every attempt, so a token
refreshed during a backoff is used by the next attempt.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from .outcomes import RequestOutcome

logger = logging.getLogger("pos_client.request")

RetryCallback = Callable[["RequestSpec", RequestOutcome, int], None]


@dataclass(frozen=True)
class RequestSpec:
    method: str = "GET"
    path: str = "/"
    params: Optional[Dict[str, Any]] = None
    json: Any = None
    timeout: Optional[float] = None
    authenticated: bool = True


def _read_body(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text


def _extract_error(body: Any):
    """Return (code, message, details) from either error body shape."""
    if isinstance(body, dict):
        err = body.get("error")
        if isinstance(err, dict):
            return err.get("code"), err.get("message") or "An error occurred", err.get("details")
        if isinstance(err, str):
            return None, err, body.get("details")
        return body.get("code"), body.get("message") or "An error occurred", body.get("details")
    if isinstance(body, str) and body:
        return None, body, None
    return None, "An error occurred", None


def classify_response(status_code: int, body: Any) -> RequestOutcome:
    if 200 <= status_code < 300:
        if status_code == 204:
            return RequestOutcome.success(None, status=204)
        if isinstance(body, dict) and "data" in body:
            return RequestOutcome.success(body["data"], status=status_code)
        return RequestOutcome.success(body, status=status_code)

    code, message, details = _extract_error(body)

    if status_code >= 500:
        return RequestOutcome.network_error(message=f"HTTP {status_code}: {message}", status=status_code)
    if status_code in (401, 403):
        return RequestOutcome.auth_error(status=status_code, message=message, code=code)
    if status_code == 404:
        return RequestOutcome.not_found(message=message, code=code)
    if status_code in (400, 422):
        return RequestOutcome.validation_error(
            details=details if details is not None else body, status=status_code, message=message
        )
    return RequestOutcome.server_error(status_code, message=message, code=code)


class RequestClient:
    """
    Classified, retried calls against the POS API.

    Usage:
        client = RequestClient("http://localhost:5000", session_store)
        outcome = await client.execute(RequestSpec("GET", "/pos-terminals/abc"))
        if outcome.ok:
            terminal = outcome.payload
    """

    def __init__(
        self,
        base_url: str,
        session_store=None,
        timeout: float = 15.0,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 10.0,
        http_client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        on_retry: Optional[RetryCallback] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.session_store = session_store
        self.timeout = timeout
        self.max_attempts = max(1, max_attempts)
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.on_retry = on_retry
        self._http = http_client
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings, session_store=None, **kwargs) -> "RequestClient":
        return cls(
            settings.api_base_url,
            session_store,
            timeout=settings.request_timeout,
            max_attempts=settings.max_attempts,
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
            **kwargs,
        )

    def _get_headers(self, spec: RequestSpec) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if spec.authenticated and self.session_store is not None:
            token = self.session_store.access_token
            if token:
                headers["Authorization"] = f"Bearer {token}"
        return headers

    def backoff_delay(self, attempt: int) -> float:
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)

    async def execute(self, spec: RequestSpec) -> RequestOutcome:
        attempt = 0
        while True:
            attempt += 1
            outcome = await self._attempt(spec)
            if not outcome.is_retryable or attempt >= self.max_attempts:
                if not outcome.ok:
                    logger.info(
                        "request_done method=%s path=%s kind=%s status=%s attempts=%s",
                        spec.method, spec.path, outcome.kind.value, outcome.status, attempt,
                    )
                return outcome.with_attempts(attempt)

            delay = self.backoff_delay(attempt)
            logger.warning(
                "request_retry method=%s path=%s attempt=%s/%s delay=%.2fs error=%s",
                spec.method, spec.path, attempt, self.max_attempts, delay, outcome.message,
            )
            if self.on_retry is not None:
                try:
                    self.on_retry(spec, outcome.with_attempts(attempt), attempt)
                except Exception as e:
                    logger.error("request_retry_callback_error error=%s", repr(e))
            await self._sleep(delay)

    async def _attempt(self, spec: RequestSpec) -> RequestOutcome:
        url = f"{self.base_url}{spec.path}"
        timeout = spec.timeout if spec.timeout is not None else self.timeout
        headers = self._get_headers(spec)
        params = {k: v for k, v in (spec.params or {}).items() if v is not None} or None

        try:
            if self._http is not None:
                response = await self._http.request(
                    spec.method, url, params=params, json=spec.json, headers=headers, timeout=timeout
                )
            else:
                async with httpx.AsyncClient(timeout=timeout) as client:
                    response = await client.request(spec.method, url, params=params, json=spec.json, headers=headers)
        except httpx.TimeoutException:
            logger.error("request_timeout method=%s path=%s timeout=%ss", spec.method, spec.path, timeout)
            return RequestOutcome.network_error("Request timed out")
        except httpx.HTTPError as e:
            logger.error("request_connection_error method=%s path=%s error=%s", spec.method, spec.path, repr(e))
            return RequestOutcome.network_error(f"Network error: {e}")
        except Exception as e:
            logger.error("request_unexpected_error method=%s path=%s error=%s", spec.method, spec.path, repr(e))
            return RequestOutcome.network_error(f"Network error: {e}")

        return classify_response(response.status_code, _read_body(response))
