import asyncio
import json
from dataclasses import dataclass
from typing import Any, Dict, List

from openai import AsyncOpenAI, RateLimitError

from deepsea.config import get_model_settings, load_agent_config
from deepsea.usage import TokenTracker


@dataclass
class Completion:
    text: str
    usage: Any
    model: str


class LLM:
    """Chat-completions client bound to one model role (agent, evaluator, ...)."""

    def __init__(
        self,
        role: str,
        config: Dict[str, Any] | None = None,
        token_tracker: TokenTracker | None = None,
        client: AsyncOpenAI | None = None,
    ) -> None:
        settings = get_model_settings(config or load_agent_config(), role)
        self.role = role
        self.model = settings["model"]
        self.temperature = settings["temperature"]
        self.max_tokens = settings["max_tokens"]
        self.max_retries = 3
        self.token_tracker = token_tracker
        self._client = client

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI()
        return self._client

    async def json(
        self,
        system_prompt: str,
        user_prompt: str,
        metadata: Dict[str, Any] | None = None,
    ) -> Dict[str, Any]:
        rsp = await self._chat_completion(
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            response_format={"type": "json_object"},
            metadata=metadata,
        )
        data = json.loads(rsp.text or "{}")
        if not isinstance(data, dict):
            raise ValueError(f"{self.role} returned non-object JSON.")
        return data

    async def text(
        self,
        system_prompt: str,
        user_prompt: str,
        metadata: Dict[str, Any] | None = None,
    ) -> str:
        rsp = await self._chat_completion(
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            metadata=metadata,
        )
        return rsp.text

    async def structured(
        self,
        schema: Dict[str, Any],
        system: str | None,
        messages: List[Dict[str, str]],
        schema_name: str = "step_action",
    ) -> Completion:
        """Raw text of a schema-guided completion; validation is the caller's job."""
        full: List[Dict[str, str]] = []
        if system:
            full.append({"role": "system", "content": system})
        full.extend(messages)
        return await self._chat_completion(
            messages=full,
            response_format={
                "type": "json_schema",
                "json_schema": {"name": schema_name, "schema": schema},
            },
            metadata={"schema": schema_name},
        )

    async def _chat_completion(
        self,
        messages: List[Dict[str, str]],
        metadata: Dict[str, Any] | None,
        **kwargs: Any,
    ) -> Completion:
        last_exc: Exception | None = None
        for attempt in range(self.max_retries):
            try:
                rsp = await self.client.chat.completions.create(
                    model=self.model,
                    messages=messages,
                    temperature=self.temperature,
                    max_tokens=self.max_tokens,
                    **kwargs,
                )
                usage = getattr(rsp, "usage", None)
                if self.token_tracker:
                    self.token_tracker.record(
                        stage=self.role,
                        provider="chat.completions",
                        model=self.model,
                        usage=usage,
                        attempt=attempt + 1,
                        metadata=metadata,
                    )
                return Completion(
                    text=rsp.choices[0].message.content or "",
                    usage=usage,
                    model=self.model,
                )
            except RateLimitError as exc:
                last_exc = exc
                # Exponential backoff for transient rate-limit pressure.
                if attempt < self.max_retries - 1:
                    await asyncio.sleep(1.2 * (2**attempt))
                    continue
                raise
        if last_exc:
            raise last_exc
        raise RuntimeError("Unexpected failure in chat completion.")
