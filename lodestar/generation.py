"""Answer generation and document metadata extraction via a chat model."""

import json
import os
import re
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Awaitable, Callable, List, Optional, TypeVar

import openai
from loguru import logger
from openai import AsyncOpenAI

from .errors import CapacityError, ProviderError, classify_openai_error
from .models import DocumentInsights, Source
from .retry import RetryPolicy, call_with_retry

T = TypeVar("T")

NO_ANSWER = "No relevant information was found in the knowledge base."


def build_context(sources: List[Source]) -> str:
    """Number sources [1]..[n] in the order given; answers cite these markers."""
    return "\n\n".join(
        f"[{i}] (Source: {source.document_title})\n{source.content}"
        for i, source in enumerate(sources, 1)
    )


def clean_json_string(raw: str) -> str:
    """Strip Markdown code fences that chat models wrap around JSON."""
    return re.sub(r"```(?:json)?\n?|```", "", raw).strip()


def _string_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [str(v).strip() for v in value if str(v).strip()]


def parse_insights(raw: str) -> DocumentInsights:
    """
    Parse the metadata-extraction JSON.

    Raises:
        ValueError: If the payload is not a JSON object with a summary
    """
    data = json.loads(clean_json_string(raw))
    if not isinstance(data, dict) or not str(data.get("summary", "")).strip():
        raise ValueError("Metadata response has no summary")
    return DocumentInsights(
        summary=str(data["summary"]).strip(),
        entities=_string_list(data.get("entities")),
        rules=_string_list(data.get("rules")),
        suggested_questions=_string_list(data.get("suggested_questions")),
    )


class AnswerGenerator(ABC):
    """Contract for the generative collaborator."""

    @abstractmethod
    def stream_answer(self, query: str, sources: List[Source]) -> AsyncIterator[str]:
        """
        Stream an answer grounded in ``sources``.

        The answer cites sources with bracketed 1-based markers ([1], [2], ...)
        that index into ``sources`` in the order given.
        """

    @abstractmethod
    async def extract_insights(self, title: str, text: str) -> DocumentInsights:
        """Summarize a document and pull out entities, rules and suggested questions."""

    async def close(self) -> None:
        """Release network resources."""


class OpenAIGenerator(AnswerGenerator):
    """Chat-completions generator for any OpenAI-compatible endpoint."""

    DEFAULT_MODEL = "gpt-4o-mini"

    ANSWER_SYSTEM_PROMPT = (
        "You are a question-answering assistant for an internal company knowledge base. "
        "Answer only from the numbered reference material you are given. "
        "Cite every statement with the bracketed number of the reference it comes from, "
        "for example [1] or [2][3]. Never invent reference numbers. "
        f'If the references do not contain the answer, reply exactly: "{NO_ANSWER}"'
    )

    ANSWER_PROMPT = """Question: {query}

Reference material:
{context}"""

    INSIGHTS_SYSTEM_PROMPT = "You are a JSON generator. Respond with one JSON object and nothing else."

    INSIGHTS_PROMPT = """Extract structured metadata from the document below.

Title: {title}
Content excerpt:
{excerpt}

Return JSON with these keys:
- "summary": a concise summary (at most 3 sentences)
- "entities": key entities such as departments, expense types and business terms
- "rules": concrete rules or limits the document states
- "suggested_questions": 3 questions a reader could ask about this document"""

    def __init__(
        self,
        model: str = DEFAULT_MODEL,
        fallback_model: Optional[str] = None,
        openai_api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        temperature: float = 0.1,
        summary_input_chars: int = 2000,
        retry_policy: Optional[RetryPolicy] = None,
        timeout: float = 60.0,
    ):
        self.model = model
        self.fallback_model = fallback_model
        self.temperature = temperature
        self.summary_input_chars = summary_input_chars
        self.retry_policy = retry_policy or RetryPolicy()
        self.client = AsyncOpenAI(
            api_key=openai_api_key or os.environ.get("OPENAI_API_KEY"),
            base_url=base_url,
            timeout=timeout,
            max_retries=0,
        )

    async def _with_capacity_fallback(self, call: Callable[[str], Awaitable[T]], description: str) -> T:
        """Run ``call(model)`` with retries; on a capacity error try the fallback model once."""
        try:
            return await call_with_retry(lambda: call(self.model), self.retry_policy, description=description)
        except CapacityError as e:
            if not self.fallback_model or self.fallback_model == self.model:
                raise CapacityError(
                    f"Input is too large for {self.model}. Split it into smaller documents and retry.",
                    provider="openai",
                ) from e
            logger.warning(f"{self.model} rejected the payload as too large; trying {self.fallback_model}")

        try:
            return await call_with_retry(
                lambda: call(self.fallback_model), self.retry_policy, description=description
            )
        except CapacityError as e:
            raise CapacityError(
                f"Input is too large even for {self.fallback_model}. "
                "Split it into smaller documents and retry.",
                provider="openai",
            ) from e

    async def _open_stream(self, model: str, messages: List[dict]):
        try:
            return await self.client.chat.completions.create(
                model=model,
                messages=messages,
                temperature=self.temperature,
                stream=True,
            )
        except openai.OpenAIError as e:
            raise classify_openai_error(e) from e

    async def stream_answer(self, query: str, sources: List[Source]) -> AsyncIterator[str]:
        messages = [
            {"role": "system", "content": self.ANSWER_SYSTEM_PROMPT},
            {"role": "user", "content": self.ANSWER_PROMPT.format(query=query, context=build_context(sources))},
        ]
        stream = await self._with_capacity_fallback(
            lambda model: self._open_stream(model, messages), description="answer generation"
        )
        try:
            async for event in stream:
                if not event.choices:
                    continue
                delta = event.choices[0].delta.content
                if delta:
                    yield delta
        except openai.OpenAIError as e:
            raise classify_openai_error(e) from e

    async def _complete_json(self, model: str, messages: List[dict]) -> str:
        try:
            response = await self.client.chat.completions.create(
                model=model,
                messages=messages,
                temperature=0.0,
                response_format={"type": "json_object"},
            )
        except openai.OpenAIError as e:
            raise classify_openai_error(e) from e
        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise ProviderError("Empty metadata response", provider="openai")
        return content

    async def extract_insights(self, title: str, text: str) -> DocumentInsights:
        excerpt = text[:self.summary_input_chars]
        if len(text) > self.summary_input_chars:
            excerpt += "..."
        messages = [
            {"role": "system", "content": self.INSIGHTS_SYSTEM_PROMPT},
            {"role": "user", "content": self.INSIGHTS_PROMPT.format(title=title, excerpt=excerpt)},
        ]
        raw = await self._with_capacity_fallback(
            lambda model: self._complete_json(model, messages), description="metadata extraction"
        )
        return parse_insights(raw)

    async def close(self) -> None:
        await self.client.close()
