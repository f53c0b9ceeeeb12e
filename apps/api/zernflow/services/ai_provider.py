"""AI provider abstraction layer.

OpenAI-compatible chat completions (OpenAI, DeepSeek), Anthropic Messages
and Google Gemini behind one interface. Used by the aiResponse node and the
intent tier of trigger matching.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

import httpx

from zernflow.core.config import settings

logger = logging.getLogger(__name__)

DEEPSEEK_BASE_URL = "https://api.deepseek.com/v1"
DEEPSEEK_DEFAULT_MODEL = "deepseek-chat"

ANTHROPIC_BASE_URL = "https://api.anthropic.com/v1"
ANTHROPIC_API_VERSION = "2023-06-01"
ANTHROPIC_DEFAULT_MODEL = "claude-haiku-4-5-20251001"

GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
GEMINI_DEFAULT_MODEL = "gemini-2.0-flash"

INTENT_SYSTEM_PROMPT = (
    "You are a message intent classifier. Given a user message and a list of intents "
    "(each with associated keywords), return ONLY the intent index number that best "
    "matches the message. If no intent matches, return -1. Return ONLY the number, "
    "nothing else."
)


@dataclass
class ChatMessage:
    """A single message in a conversation."""

    role: str  # 'system', 'user', 'assistant'
    content: str


@dataclass
class ChatResponse:
    """Response from an AI provider."""

    content: str
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    model: str


class AIProvider(ABC):
    """Abstract base class for AI providers."""

    # Flow editors store models as "<vendor>/<model>"
    prefix = ""
    default_model = ""

    def resolve_model(self, model: str | None) -> str:
        if not model:
            return self.default_model
        vendor, _, name = model.partition("/")
        if name and vendor == self.prefix:
            return name
        return model

    @abstractmethod
    async def chat(
        self,
        messages: list[ChatMessage],
        model: str | None = None,
        temperature: float = 0.7,
        max_tokens: int = 500,
        timeout: float | None = None,
    ) -> ChatResponse:
        """Send a chat completion request."""


class OpenAIProvider(AIProvider):
    """OpenAI-compatible chat completions API."""

    prefix = "openai"

    def __init__(
        self,
        api_key: str,
        default_model: str | None = None,
        base_url: str | None = None,
    ):
        self.api_key = api_key
        self.default_model = default_model or settings.AI_DEFAULT_MODEL
        self.base_url = (base_url or settings.AI_API_BASE_URL).rstrip("/")

    async def chat(
        self,
        messages: list[ChatMessage],
        model: str | None = None,
        temperature: float = 0.7,
        max_tokens: int = 500,
        timeout: float | None = None,
    ) -> ChatResponse:
        model = self.resolve_model(model)

        async with httpx.AsyncClient(timeout=timeout or settings.AI_TIMEOUT_SECONDS) as client:
            response = await client.post(
                f"{self.base_url}/chat/completions",
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                json={
                    "model": model,
                    "messages": [{"role": m.role, "content": m.content} for m in messages],
                    "temperature": temperature,
                    "max_tokens": max_tokens,
                },
            )
            response.raise_for_status()
            data = response.json()

        usage = data.get("usage", {})
        return ChatResponse(
            content=data["choices"][0]["message"]["content"] or "",
            prompt_tokens=usage.get("prompt_tokens", 0),
            completion_tokens=usage.get("completion_tokens", 0),
            total_tokens=usage.get("total_tokens", 0),
            model=model,
        )


class AnthropicProvider(AIProvider):
    """Anthropic Messages API."""

    prefix = "anthropic"

    def __init__(self, api_key: str, default_model: str = ANTHROPIC_DEFAULT_MODEL):
        self.api_key = api_key
        self.default_model = default_model
        self.base_url = ANTHROPIC_BASE_URL

    async def chat(
        self,
        messages: list[ChatMessage],
        model: str | None = None,
        temperature: float = 0.7,
        max_tokens: int = 500,
        timeout: float | None = None,
    ) -> ChatResponse:
        model = self.resolve_model(model)

        # System prompt is a top-level field, not a message
        system = "\n\n".join(m.content for m in messages if m.role == "system")
        request_body: dict[str, Any] = {
            "model": model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": [
                {"role": m.role, "content": m.content} for m in messages if m.role != "system"
            ],
        }
        if system:
            request_body["system"] = system

        async with httpx.AsyncClient(timeout=timeout or settings.AI_TIMEOUT_SECONDS) as client:
            response = await client.post(
                f"{self.base_url}/messages",
                headers={
                    "x-api-key": self.api_key,
                    "anthropic-version": ANTHROPIC_API_VERSION,
                    "Content-Type": "application/json",
                },
                json=request_body,
            )
            response.raise_for_status()
            data = response.json()

        usage = data.get("usage", {})
        prompt_tokens = usage.get("input_tokens", 0)
        completion_tokens = usage.get("output_tokens", 0)
        return ChatResponse(
            content="".join(
                block.get("text", "") for block in data["content"] if block.get("type") == "text"
            ),
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
            model=model,
        )


class GeminiProvider(AIProvider):
    """Google Gemini API provider."""

    prefix = "google"

    def __init__(self, api_key: str, default_model: str = GEMINI_DEFAULT_MODEL):
        self.api_key = api_key
        self.default_model = default_model
        self.base_url = GEMINI_BASE_URL

    async def chat(
        self,
        messages: list[ChatMessage],
        model: str | None = None,
        temperature: float = 0.7,
        max_tokens: int = 500,
        timeout: float | None = None,
    ) -> ChatResponse:
        model = self.resolve_model(model)

        # Gemini uses 'user' and 'model' roles, system goes in systemInstruction
        system_instruction = None
        contents = []
        for msg in messages:
            if msg.role == "system":
                system_instruction = msg.content
            else:
                role = "model" if msg.role == "assistant" else "user"
                contents.append({"role": role, "parts": [{"text": msg.content}]})

        request_body: dict[str, Any] = {
            "contents": contents,
            "generationConfig": {
                "temperature": temperature,
                "maxOutputTokens": max_tokens,
            },
        }
        if system_instruction:
            request_body["systemInstruction"] = {"parts": [{"text": system_instruction}]}

        async with httpx.AsyncClient(timeout=timeout or settings.AI_TIMEOUT_SECONDS) as client:
            response = await client.post(
                f"{self.base_url}/models/{model}:generateContent",
                params={"key": self.api_key},
                headers={"Content-Type": "application/json"},
                json=request_body,
            )
            response.raise_for_status()
            data = response.json()

        usage = data.get("usageMetadata", {})
        prompt_tokens = usage.get("promptTokenCount", 0)
        completion_tokens = usage.get("candidatesTokenCount", 0)
        return ChatResponse(
            content=data["candidates"][0]["content"]["parts"][0]["text"],
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
            model=model,
        )


def get_provider(workspace) -> AIProvider | None:
    """Provider configured on a workspace, or None when AI is not set up."""
    api_key = getattr(workspace, "ai_api_key_encrypted", None) if workspace else None
    if not api_key:
        return None
    provider_name = (workspace.ai_provider or "openai").lower()
    if provider_name == "openai":
        return OpenAIProvider(api_key)
    if provider_name == "deepseek":
        return OpenAIProvider(api_key, default_model=DEEPSEEK_DEFAULT_MODEL, base_url=DEEPSEEK_BASE_URL)
    if provider_name == "anthropic":
        return AnthropicProvider(api_key)
    if provider_name in ("google", "gemini"):
        return GeminiProvider(api_key)
    logger.warning("Unsupported AI provider %s", provider_name)
    return None


async def classify_intent(
    provider: AIProvider, message_text: str, intents: list[list[str]]
) -> int | None:
    """
    Ask the model which intent (by index into ``intents``) fits the message.

    Returns None for "no match", an invalid answer, or any provider error;
    intent matching is best effort and never blocks message handling.
    """
    if not intents:
        return None
    intent_list = "\n".join(
        f"{index}: keywords=[{', '.join(keywords)}]" for index, keywords in enumerate(intents)
    )
    prompt = f'Message: "{message_text}"\n\nIntents:\n{intent_list}'
    try:
        response = await provider.chat(
            [ChatMessage("system", INTENT_SYSTEM_PROMPT), ChatMessage("user", prompt)],
            temperature=0,
            max_tokens=10,
            timeout=settings.AI_INTENT_TIMEOUT_SECONDS,
        )
    except (httpx.HTTPError, KeyError, IndexError, ValueError) as exc:
        logger.warning("AI intent classification failed: %s", type(exc).__name__)
        return None

    try:
        index = int(response.content.strip())
    except ValueError:
        return None
    if index < 0 or index >= len(intents):
        return None
    return index
