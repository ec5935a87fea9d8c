"""
LLM Refinement Client — one bounded request to a text-completion provider.

The compaction engine sends category-grouped entries and receives proposed
merges, drops and summaries as JSON. The exchange is optional: a missing
credential, a transport failure, a timeout, a cancellation or a malformed
answer all resolve to a non-success outcome, never to an exception.

Outcomes:
    Refined(payload)     - well-formed suggestion payload
    Unavailable(reason)  - no credential, network/HTTP failure, timeout, cancel
    Invalid(reason)      - the provider answered with something unusable

The default provider talks to the OpenAI Responses API with httpx.
"""

from __future__ import annotations

import json
import logging
import os
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, TypeVar, Union

import httpx

from agentmem.config import CompactionConfig
from agentmem.types import AgentMemError, MemoryEntry

logger = logging.getLogger(__name__)

T = TypeVar("T")

_POLL_INTERVAL_S = 0.05

SYSTEM_PROMPT = (
    "You maintain a compact list of durable memories for a coding assistant. "
    "Entries are grouped by category. Entries marked pinned are read-only: "
    "never merge, drop or rewrite them. Propose only changes that remove "
    "redundancy without losing information. Answer with one JSON object and "
    "nothing else, shaped as "
    '{"merges": [{"ids": ["<id>", "<id>"], "content": "<merged text>"}], '
    '"drops": ["<id>"], '
    '"summaries": [{"id": "<id>", "content": "<shorter text>"}]}. '
    "Use empty lists when nothing should change."
)


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------


class CompactionProviderError(AgentMemError):
    """Provider exchange failed; kind is 'unavailable' or 'invalid'."""

    def __init__(self, message: str, kind: str = "unavailable"):
        self.kind = kind
        super().__init__(message)


@dataclass(frozen=True)
class Refined:
    payload: Dict[str, Any]


@dataclass(frozen=True)
class Unavailable:
    reason: str


@dataclass(frozen=True)
class Invalid:
    reason: str


RefinementOutcome = Union[Refined, Unavailable, Invalid]


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------


class RefinementProvider:
    """Interface: one blocking completion call returning raw text.

    Implementations raise CompactionProviderError on failure.
    """

    name = "provider"

    def complete(self, system: str, user: str, timeout: float) -> str:
        raise NotImplementedError


def extract_output_text(data: Any) -> str:
    """Text of a Responses API body: ``output_text`` or ``output[].content[].text``."""
    if not isinstance(data, dict):
        return ""
    text = data.get("output_text")
    if isinstance(text, str) and text.strip():
        return text
    chunks: List[str] = []
    for item in data.get("output") or []:
        if not isinstance(item, dict):
            continue
        for block in item.get("content") or []:
            if isinstance(block, dict) and isinstance(block.get("text"), str):
                chunks.append(block["text"])
    return "\n".join(chunks)


class OpenAIResponsesProvider(RefinementProvider):
    """POST to the OpenAI Responses API with a bearer token from the environment."""

    name = "openai-responses"

    def __init__(
        self,
        model: str = "gpt-5-mini",
        endpoint: str = "https://api.openai.com/v1/responses",
        api_key_env: str = "OPENAI_API_KEY",
        api_key: Optional[str] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.model = model
        self.endpoint = endpoint
        self.api_key_env = api_key_env
        self._api_key = api_key
        self._transport = transport

    @classmethod
    def from_config(cls, config: CompactionConfig, **kwargs) -> OpenAIResponsesProvider:
        """Build a provider from the compaction config section."""
        return cls(
            model=config.model,
            endpoint=config.endpoint,
            api_key_env=config.api_key_env,
            **kwargs,
        )

    def _key(self) -> Optional[str]:
        key = self._api_key or os.environ.get(self.api_key_env, "")
        return key.strip() or None

    def complete(self, system: str, user: str, timeout: float) -> str:
        key = self._key()
        if key is None:
            raise CompactionProviderError(f"{self.api_key_env} is not set")
        payload = {
            "model": self.model,
            "input": [
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
        }
        headers = {"Authorization": f"Bearer {key}"}
        try:
            with httpx.Client(timeout=timeout, transport=self._transport) as client:
                response = client.post(self.endpoint, json=payload, headers=headers)
                response.raise_for_status()
        except httpx.TimeoutException as e:
            raise CompactionProviderError(f"provider timed out: {e}") from e
        except httpx.HTTPStatusError as e:
            raise CompactionProviderError(
                f"provider returned HTTP {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            raise CompactionProviderError(f"provider request failed: {e}") from e

        try:
            data = response.json()
        except ValueError as e:
            raise CompactionProviderError("provider body is not JSON", kind="invalid") from e
        text = extract_output_text(data)
        if not text.strip():
            raise CompactionProviderError("provider returned no text", kind="invalid")
        return text


# ---------------------------------------------------------------------------
# Deadline and cancellation
# ---------------------------------------------------------------------------


def run_with_deadline(
    fn: Callable[[], T],
    timeout: float,
    cancel: Optional[threading.Event] = None,
) -> T:
    """Run a blocking call on a worker thread, bounded by timeout and cancel.

    The worker is a daemon thread; on timeout or cancel its eventual result
    is discarded.

    Raises:
        CompactionProviderError: on timeout or cancellation, or wrapping any
            exception raised by fn.
    """
    box: Dict[str, Any] = {}
    done = threading.Event()

    def worker() -> None:
        try:
            box["value"] = fn()
        except BaseException as e:
            box["error"] = e
        finally:
            done.set()

    thread = threading.Thread(target=worker, name="agentmem-refine", daemon=True)
    thread.start()
    deadline = time.monotonic() + timeout
    while not done.is_set():
        if cancel is not None and cancel.is_set():
            raise CompactionProviderError("refinement cancelled")
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise CompactionProviderError(f"refinement exceeded {timeout:.1f}s deadline")
        done.wait(min(_POLL_INTERVAL_S, remaining))

    if "error" in box:
        err = box["error"]
        if isinstance(err, CompactionProviderError):
            raise err
        raise CompactionProviderError(f"provider raised {type(err).__name__}: {err}") from err
    return box["value"]


# ---------------------------------------------------------------------------
# Request / response
# ---------------------------------------------------------------------------


def build_request(entries: List[MemoryEntry]) -> str:
    """User message: entries grouped by category, as JSON."""
    grouped: Dict[str, List[Dict[str, Any]]] = {}
    for entry in sorted(entries, key=lambda e: (e.category, e.id)):
        grouped.setdefault(entry.category, []).append({
            "id": entry.id,
            "content": entry.content,
            "pinned": entry.pinned,
        })
    return json.dumps({"categories": grouped}, ensure_ascii=False, indent=1)


def _first_json_object(text: str) -> Any:
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        raise ValueError("no JSON object in response")
    return json.loads(text[start:end + 1])


def _check_shape(payload: Any) -> Dict[str, Any]:
    """Validate the suggestion payload's structure (not its ids)."""
    if not isinstance(payload, dict):
        raise ValueError("response is not a JSON object")
    merges = payload.get("merges", [])
    drops = payload.get("drops", [])
    summaries = payload.get("summaries", [])
    if not isinstance(merges, list) or not isinstance(drops, list) \
            or not isinstance(summaries, list):
        raise ValueError("merges, drops and summaries must be lists")
    for m in merges:
        if not isinstance(m, dict) or not isinstance(m.get("content"), str):
            raise ValueError("each merge needs ids and content")
        ids = m.get("ids")
        if not isinstance(ids, list) or len(ids) < 2 \
                or not all(isinstance(i, str) for i in ids):
            raise ValueError("each merge needs at least two string ids")
    if not all(isinstance(d, str) for d in drops):
        raise ValueError("drops must be ids")
    for s in summaries:
        if not isinstance(s, dict) or not isinstance(s.get("id"), str) \
                or not isinstance(s.get("content"), str):
            raise ValueError("each summary needs id and content")
    return {"merges": merges, "drops": drops, "summaries": summaries}


def refine(
    entries: List[MemoryEntry],
    provider: RefinementProvider,
    *,
    timeout: float,
    max_output_chars: int,
    cancel: Optional[threading.Event] = None,
) -> RefinementOutcome:
    """Run exactly one refinement exchange and classify the outcome."""
    user = build_request(entries)
    try:
        text = run_with_deadline(
            lambda: provider.complete(SYSTEM_PROMPT, user, timeout),
            timeout,
            cancel,
        )
    except CompactionProviderError as e:
        if e.kind == "invalid":
            return Invalid(str(e))
        return Unavailable(str(e))

    if len(text) > max_output_chars:
        return Invalid(f"response is {len(text)} chars, limit is {max_output_chars}")
    try:
        payload = _check_shape(_first_json_object(text))
    except ValueError as e:
        return Invalid(str(e))
    return Refined(payload)
