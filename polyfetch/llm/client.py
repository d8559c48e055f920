"""
LLM client for OpenAI-compatible APIs.

Talks to the backend through the runtime's fetch capability, so it works
for any scheme the registry knows. Against the default local Ollama
deployment (api_key "ollama") the first call checks that the service is
running and that the model is installed, pulling it when policy allows.

Readiness:
    UNINITIALIZED -> CHECKING -> READY
                              -> NEEDS_PULL -> PULLING -> READY
                              -> UNAVAILABLE
    DISABLED when llm.enabled is false
"""

import json
import logging
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Mapping, Optional

from polyfetch.config import LLMConfig
from polyfetch.core.errors import (
    AutoPullDisabledError,
    LLMDisabledError,
    RequestFailedError,
    ServiceUnreachableError,
)
from polyfetch.core.response import FetchResponse
from polyfetch.core.single_flight import SingleFlight
from polyfetch.core.urls import resolve_url
from polyfetch.llm.frame_decoder import FrameDecoder, iter_frames

logger = logging.getLogger(__name__)

Fetcher = Callable[[str, Mapping[str, Any]], Awaitable[FetchResponse]]
PullPolicy = Callable[[str], Awaitable[bool]]

LOCAL_API_KEY = "ollama"
JSON_CONTENT_TYPE = "application/json; charset=utf8"


class ReadinessState(Enum):
    """Where the client is in its one-time setup."""

    UNINITIALIZED = "uninitialized"
    CHECKING = "checking"
    NEEDS_PULL = "needs_pull"
    PULLING = "pulling"
    READY = "ready"
    UNAVAILABLE = "unavailable"
    DISABLED = "disabled"


class LLMClient:
    """
    Chat and completion calls, plain or streamed.

    Args:
        config: LLM settings (read at call time, so changes apply)
        fetch: Runtime fetch capability
        pull_policy: Async callable deciding whether a missing model may be
            downloaded; defaults to the llm.autopull flag
    """

    def __init__(
        self,
        config: LLMConfig,
        fetch: Fetcher,
        pull_policy: Optional[PullPolicy] = None,
    ):
        self.config = config
        self._fetch = fetch
        self._pull_policy = pull_policy
        self.state = ReadinessState.UNINITIALIZED
        self._init = SingleFlight(self._initialize, name="llm init")

    @property
    def is_local(self) -> bool:
        return self.config.api_key == LOCAL_API_KEY

    @property
    def ready(self) -> bool:
        return self.state == ReadinessState.READY

    # ===== READINESS =====

    async def is_supported(self) -> bool:
        """Whether the backend is usable (or can be made usable by pulling)."""
        if not self.config.enabled:
            return False
        if await self.has_model():
            return True
        return self.is_local

    async def init(self) -> None:
        """Run the service/model checks once per session."""
        if not self.config.enabled:
            self.state = ReadinessState.DISABLED
            raise LLMDisabledError()
        await self._init()

    async def _initialize(self) -> None:
        self.state = ReadinessState.CHECKING

        if self.is_local:
            try:
                models = await self.list_models()
            except Exception as e:
                self.state = ReadinessState.UNAVAILABLE
                raise ServiceUnreachableError(
                    f"LLM API needs system service install (is ollama running at {self.config.base_url}?): {e}"
                )

            if not any(model.get("id") == self.config.model for model in models):
                self.state = ReadinessState.NEEDS_PULL
                try:
                    await self.confirm_pull()
                except AutoPullDisabledError:
                    self.state = ReadinessState.UNAVAILABLE
                    raise

                self.state = ReadinessState.PULLING
                try:
                    await self.pull_model()
                except Exception:
                    self.state = ReadinessState.UNAVAILABLE
                    raise

        self.state = ReadinessState.READY
        logger.info(f"LLM ready (model: {self.config.model})")

    async def confirm_pull(self) -> None:
        """Policy check before the mutating pull; raises AutoPullDisabledError if denied."""
        if self._pull_policy is not None:
            allowed = await self._pull_policy(self.config.model)
        else:
            allowed = self.config.autopull
        if not allowed:
            raise AutoPullDisabledError(self.config.model)

    async def pull_model(self) -> None:
        """Ask the Ollama service to download the configured model."""
        logger.info(f"Pulling model {self.config.model}")
        text = await self._post(
            "/api/pull",
            {"name": self.config.model},
            f"Unable to pull model {self.config.model}",
            parse=False,
        )

        # progress is reported as newline-delimited JSON
        decoder = FrameDecoder()
        for status in decoder.feed(text.encode("utf-8")) + decoder.flush():
            if isinstance(status, dict) and status.get("error"):
                raise RequestFailedError(f"Unable to pull model {self.config.model}", body=status["error"])
            logger.debug(f"Pull {self.config.model}: {status}")

    async def list_models(self) -> List[Dict[str, Any]]:
        data = await self._get("./models", "Unable to list models")
        return data.get("data", [])

    async def has_model(self) -> bool:
        """Check for the configured model; a failed probe counts as absent."""
        try:
            models = await self.list_models()
        except Exception as e:
            logger.error(f"Unable to check for model {self.config.model}: {e}")
            return False
        return any(model.get("id") == self.config.model for model in models)

    # ===== CALLS =====

    async def chat(
        self,
        messages: Optional[List[Dict[str, Any]]] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        stop: Any = None,
    ) -> Dict[str, Any]:
        """Return the assistant message of the first choice."""
        await self.init()
        data = await self._post(
            "./chat/completions",
            self._body(messages=messages or [], temperature=temperature, max_tokens=max_tokens, stop=stop),
            "Unable to generate completion",
        )
        return data["choices"][0]["message"]

    async def complete(
        self,
        prompt: str,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        stop: Any = None,
    ) -> str:
        """Return the text of the first choice."""
        await self.init()
        data = await self._post(
            "./completions",
            self._body(prompt=prompt, temperature=temperature, max_tokens=max_tokens, stop=stop),
            "Unable to generate completion",
        )
        return data["choices"][0]["text"]

    async def chat_stream(
        self,
        messages: Optional[List[Dict[str, Any]]] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        stop: Any = None,
    ) -> AsyncIterator[Dict[str, Any]]:
        """Yield the delta of the first choice of every streamed frame."""
        await self.init()
        body = self._body(messages=messages or [], temperature=temperature, max_tokens=max_tokens, stop=stop)
        async for frame in self._stream("./chat/completions", body, "Unable to generate completion"):
            yield frame["choices"][0].get("delta")

    async def complete_stream(
        self,
        prompt: str,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        stop: Any = None,
    ) -> AsyncIterator[str]:
        """Yield the text of the first choice of every streamed frame."""
        await self.init()
        body = self._body(prompt=prompt, temperature=temperature, max_tokens=max_tokens, stop=stop)
        async for frame in self._stream("./completions", body, "Unable to generate completion"):
            yield frame["choices"][0].get("text")

    # ===== WIRE =====

    def _body(self, temperature: Optional[float] = None, **fields: Any) -> Dict[str, Any]:
        body = {
            "model": self.config.model,
            "temperature": self.config.temperature if temperature is None else temperature,
            **fields,
        }
        return {key: value for key, value in body.items() if value is not None}

    def _url(self, path: str) -> str:
        return resolve_url(path, self.config.base_url)

    def _headers(self, json_body: bool = False) -> Dict[str, str]:
        headers = {"Authorization": f"Bearer {self.config.api_key}"}
        if json_body:
            headers["Content-Type"] = JSON_CONTENT_TYPE
        return headers

    async def _check(self, response: FetchResponse, error_message: str) -> None:
        if not response.ok:
            raise RequestFailedError(error_message, response.status, await response.text())

    async def _get(self, path: str, error_message: str) -> Any:
        response = await self._fetch(self._url(path), {"method": "GET", "headers": self._headers()})
        await self._check(response, error_message)
        return await response.json()

    async def _post(self, path: str, data: Dict[str, Any], error_message: str, parse: bool = True) -> Any:
        response = await self._fetch(
            self._url(path),
            {"method": "POST", "headers": self._headers(json_body=True), "body": json.dumps(data)},
        )
        await self._check(response, error_message)
        if parse:
            return await response.json()
        return await response.text()

    async def _stream(self, path: str, data: Dict[str, Any], error_message: str) -> AsyncIterator[Any]:
        data = {**data, "stream": True}
        response = await self._fetch(
            self._url(path),
            {"method": "POST", "headers": self._headers(json_body=True), "body": json.dumps(data)},
        )
        await self._check(response, error_message)
        async for frame in iter_frames(response.body):
            yield frame
