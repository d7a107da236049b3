"""Uniform call / retry / parse wrapper around the three reasoning models.

Every role (screening, research, synthesis) is reached through an
OpenAI-compatible ``/chat/completions`` endpoint with **httpx**.  The
gateway never raises past ``call()``: it returns a ``ModelResult`` whose
``error`` is one of the ``ModelError`` variants, and whose ``usage`` is
always populated (zero when nothing was billed) so the cost ledger can
account for billed-but-unusable responses.

Retry policy: timeouts, network errors and 5xx are retried up to
``max_retries`` times with exponential backoff (base × factor^n, ±jitter);
429 honours ``Retry-After`` when present; other 4xx surface immediately.

JSON policy: strip code fences and parse; on failure extract the largest
balanced ``{...}`` substring and parse once more; otherwise ``ParseError``.
"""

from __future__ import annotations

import json
import logging
import random
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Mapping

import httpx
from dateutil import parser as dtparser

from .common_types import ZERO_USAGE, ModelRole, Usage
from .errors import (
    ModelClientError,
    ModelError,
    ModelRateLimited,
    ModelServerError,
    ModelTimeout,
    ParseError,
    SchemaError,
)

logger = logging.getLogger(__name__)

_RAW_TEXT_LIMIT = 500
_FENCE_RE = re.compile(r"^\s*```(?:json)?\s*|\s*```\s*$", re.IGNORECASE)
_SECRET_RE = re.compile(r"(apikey|api_key|token|key|Bearer)[=\s]+[^&\s]+", re.IGNORECASE)


def _sanitize_exc(exc: BaseException) -> str:
    """Strip API keys/tokens from exception text for safe logging."""
    return _SECRET_RE.sub(r"\1=***", str(exc))


def _token_count(usage: Mapping[str, Any], *keys: str) -> int:
    """First usable non-negative token count under *keys*, else 0."""
    for key in keys:
        value = usage.get(key)
        if value is None or isinstance(value, bool):
            continue
        try:
            return max(0, int(value))
        except (TypeError, ValueError):
            continue
    return 0


# ── JSON extraction ─────────────────────────────────────────────

def _strip_fences(text: str) -> str:
    return _FENCE_RE.sub("", text).strip()


def extract_largest_json_object(text: str) -> str | None:
    """Return the longest balanced ``{...}`` span in *text*, or None.

    Braces inside JSON string literals (including escaped quotes) are
    ignored when tracking depth.
    """
    best: tuple[int, int] | None = None
    depth = 0
    start = -1
    in_string = False
    escaped = False
    for i, ch in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            if depth > 0:
                in_string = True
        elif ch == "{":
            if depth == 0:
                start = i
            depth += 1
        elif ch == "}" and depth > 0:
            depth -= 1
            if depth == 0 and (best is None or i + 1 - start > best[1] - best[0]):
                best = (start, i + 1)
    if best is None:
        return None
    return text[best[0]:best[1]]


def parse_json_object(text: str) -> dict[str, Any]:
    """Parse model *text* as a JSON object with one recovery pass.

    Raises ``ParseError`` (raw text truncated) when both passes fail or
    the payload is not an object.
    """
    cleaned = _strip_fences(text or "")
    try:
        data = json.loads(cleaned)
    except (json.JSONDecodeError, ValueError):
        candidate = extract_largest_json_object(cleaned)
        if candidate is None:
            raise ParseError(
                "model output contains no JSON object",
                raw_text=(text or "")[:_RAW_TEXT_LIMIT],
            ) from None
        try:
            data = json.loads(candidate)
        except (json.JSONDecodeError, ValueError) as exc:
            raise ParseError(
                f"model output is not valid JSON: {exc.msg}",
                raw_text=(text or "")[:_RAW_TEXT_LIMIT],
            ) from None
        logger.debug("Recovered JSON object from %d chars of model output.", len(text))
    if not isinstance(data, dict):
        raise ParseError(
            f"expected JSON object, got {type(data).__name__}",
            raw_text=(text or "")[:_RAW_TEXT_LIMIT],
        )
    return data


def parse_retry_after(value: str | None, *, now: datetime | None = None) -> float | None:
    """Parse a ``Retry-After`` header (delta-seconds or HTTP-date)."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = dtparser.parse(value)
    except (ValueError, OverflowError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max(0.0, (when - now).total_seconds())


# ── Result / endpoint types ─────────────────────────────────────

@dataclass(frozen=True)
class Endpoint:
    base_url: str
    api_key: str = field(repr=False)
    model: str
    temperature: float = 0.1

    @property
    def url(self) -> str:
        return self.base_url.rstrip("/") + "/chat/completions"


@dataclass
class ModelResult:
    """Outcome of one gateway call.  ``data`` is set only when ``ok``."""

    role: ModelRole
    text: str = ""
    data: Any = None
    usage: Usage = ZERO_USAGE
    error: ModelError | None = None
    attempts: int = 0
    latency_ms: float = 0.0
    citations: tuple[str, ...] = ()

    @property
    def ok(self) -> bool:
        return self.error is None


class ModelGateway:
    """Synchronous reasoning-model client shared by all pipeline workers.

    ``httpx.Client`` is thread-safe, so one gateway instance serves the
    whole worker pool.  ``sleep`` and ``rng`` are injectable for tests.
    """

    def __init__(
        self,
        endpoints: Mapping[ModelRole, Endpoint],
        *,
        timeout_s: float = 30.0,
        max_retries: int = 2,
        backoff_base_s: float = 0.5,
        backoff_factor: float = 2.0,
        backoff_jitter: float = 0.2,
        retry_after_cap_s: float = 60.0,
        client: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self._endpoints = dict(endpoints)
        self.timeout_s = timeout_s
        self.max_retries = max(0, int(max_retries))
        self.backoff_base_s = backoff_base_s
        self.backoff_factor = backoff_factor
        self.backoff_jitter = backoff_jitter
        self.retry_after_cap_s = retry_after_cap_s
        self._client = client or httpx.Client(
            timeout=timeout_s,
            headers={"User-Agent": "newsstack-ai/1.0 (gateway)"},
        )
        self._sleep = sleep
        self._rng = rng

    @classmethod
    def from_config(cls, cfg, **kwargs: Any) -> ModelGateway:
        endpoints = {}
        for role in ModelRole:
            base_url, api_key, model = cfg.endpoint(role)
            endpoints[role] = Endpoint(base_url=base_url, api_key=api_key, model=model)
        return cls(
            endpoints,
            timeout_s=cfg.model_timeout_s,
            max_retries=cfg.model_max_retries,
            backoff_base_s=cfg.model_backoff_base_s,
            backoff_factor=cfg.model_backoff_factor,
            backoff_jitter=cfg.model_backoff_jitter,
            retry_after_cap_s=cfg.model_retry_after_cap_s,
            **kwargs,
        )

    # ── Public API ──────────────────────────────────────────────

    def call(
        self,
        role: ModelRole,
        system_prompt: str,
        user_prompt: str,
        max_output_tokens: int,
        *,
        expect_json: bool = True,
        coerce: Callable[[dict[str, Any]], Any] | None = None,
    ) -> ModelResult:
        """Call *role*'s model and return a ``ModelResult`` (never raises).

        With ``expect_json`` the text is parsed as a JSON object and, if
        *coerce* is given, converted into a typed value; schema failures
        become ``ParseError``.  Without it ``data`` is the raw text.
        """
        t0 = time.monotonic()
        result = ModelResult(role=role)
        endpoint = self._endpoints.get(role)
        if endpoint is None:
            result.error = ModelClientError(f"no endpoint configured for role {role.value}", role=role)
            return result

        payload = {
            "model": endpoint.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "max_tokens": int(max_output_tokens),
            "temperature": endpoint.temperature,
        }

        attempts = 1 + self.max_retries
        for attempt in range(1, attempts + 1):
            result.attempts = attempt
            try:
                text, usage, citations = self._post_once(role, endpoint, payload)
            except ModelError as err:
                result.error = err
                if not err.retryable or attempt >= attempts:
                    break
                delay = self._retry_delay(err, attempt)
                logger.warning(
                    "%s model %s (attempt %d/%d) – retrying in %.2fs",
                    role.value, type(err).__name__, attempt, attempts, delay,
                )
                self._sleep(delay)
                continue

            result.error = None
            result.text = text
            result.usage = usage
            result.citations = citations
            break

        result.latency_ms = (time.monotonic() - t0) * 1000
        if result.error is not None:
            logger.warning(
                "%s model call failed after %d attempt(s): %s",
                role.value, result.attempts, _sanitize_exc(result.error),
            )
            return result

        if not expect_json:
            result.data = result.text
            return result

        try:
            parsed = parse_json_object(result.text)
            result.data = coerce(parsed) if coerce is not None else parsed
        except ParseError as err:
            err.role = role
            err.usage = result.usage
            result.error = err
        except SchemaError as err:
            result.error = ParseError(
                f"model output violates schema: {err}",
                raw_text=result.text[:_RAW_TEXT_LIMIT],
                role=role,
                usage=result.usage,
            )
        if result.error is not None:
            logger.warning("%s model output unusable: %s", role.value, result.error)
        return result

    def close(self) -> None:
        self._client.close()

    # ── Internals ───────────────────────────────────────────────

    def _backoff_delay(self, attempt: int) -> float:
        """Exponential backoff delay with ±jitter (anti-thundering-herd)."""
        delay = self.backoff_base_s * (self.backoff_factor ** max(attempt - 1, 0))
        jitter = delay * self.backoff_jitter * (2 * self._rng() - 1)
        return max(0.0, delay + jitter)

    def _retry_delay(self, err: ModelError, attempt: int) -> float:
        if isinstance(err, ModelRateLimited) and err.retry_after_s is not None:
            return min(err.retry_after_s, self.retry_after_cap_s)
        return self._backoff_delay(attempt)

    def _post_once(
        self,
        role: ModelRole,
        endpoint: Endpoint,
        payload: dict[str, Any],
    ) -> tuple[str, Usage, tuple[str, ...]]:
        """One HTTP round-trip.  Raises a ``ModelError`` variant on failure."""
        headers = {
            "Authorization": f"Bearer {endpoint.api_key}",
            "Content-Type": "application/json",
        }
        try:
            r = self._client.post(endpoint.url, headers=headers, json=payload, timeout=self.timeout_s)
        except httpx.TimeoutException as exc:
            raise ModelTimeout(f"{role.value} request timed out: {_sanitize_exc(exc)}", role=role) from None
        except httpx.TransportError as exc:
            raise ModelServerError(
                f"{role.value} network error: {type(exc).__name__}: {_sanitize_exc(exc)}", role=role,
            ) from None

        status = r.status_code
        if status == 429:
            raise ModelRateLimited(
                f"{role.value} rate limited (HTTP 429)",
                retry_after_s=parse_retry_after(r.headers.get("retry-after")),
                role=role,
                status_code=status,
            )
        if status >= 500:
            raise ModelServerError(f"{role.value} HTTP {status}", role=role, status_code=status)
        if status >= 400:
            raise ModelClientError(
                f"{role.value} HTTP {status}: {r.text[:200]}", role=role, status_code=status,
            )

        try:
            body = r.json()
            text = body["choices"][0]["message"]["content"] or ""
        except (json.JSONDecodeError, ValueError, KeyError, IndexError, TypeError):
            raise ModelServerError(
                f"{role.value} returned a malformed completion envelope", role=role, status_code=status,
            ) from None

        raw_usage = body.get("usage")
        if not isinstance(raw_usage, dict):
            raw_usage = {}
        usage = Usage(
            input_tokens=_token_count(raw_usage, "prompt_tokens", "input_tokens"),
            output_tokens=_token_count(raw_usage, "completion_tokens", "output_tokens"),
        )
        raw_citations = body.get("citations")
        citations = tuple(str(c) for c in raw_citations if c) if isinstance(raw_citations, list) else ()
        return str(text), usage, citations
