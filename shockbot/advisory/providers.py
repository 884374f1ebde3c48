from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from shockbot.errors import AdvisoryFailure


@dataclass(slots=True)
class ProviderRequest:
    url: str
    headers: dict[str, str]
    payload: dict[str, Any]


def _object(data: Any, provider: str) -> dict[str, Any]:
    if not isinstance(data, dict):
        raise AdvisoryFailure(f"{provider} response must be a JSON object, got {type(data).__name__}")
    return data


class ChatCompletionsAdapter:
    """OpenAI-compatible chat completions (OpenAI, xAI Grok, DeepSeek)."""

    def __init__(self, name: str, base_url: str, default_model: str, api_key_env: str, json_mode: bool = True):
        self.name = name
        self.base_url = base_url
        self.default_model = default_model
        self.api_key_env = api_key_env
        self.json_mode = json_mode

    def build_request(
        self,
        *,
        system_prompt: str,
        user_content: str,
        model: str,
        api_key: str,
        temperature: float,
        base_url: str | None = None,
    ) -> ProviderRequest:
        payload: dict[str, Any] = {
            "model": model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_content},
            ],
            "temperature": temperature,
        }
        if self.json_mode:
            payload["response_format"] = {"type": "json_object"}
        return ProviderRequest(
            url=f"{(base_url or self.base_url).rstrip('/')}/chat/completions",
            headers={"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"},
            payload=payload,
        )

    def extract_text(self, data: Any) -> str:
        choices = _object(data, self.name).get("choices")
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            raise AdvisoryFailure(f"{self.name} response has no choices")
        message = choices[0].get("message")
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, str):
            raise AdvisoryFailure(f"{self.name} response has no text content")
        return content


class ClaudeAdapter:
    def __init__(self) -> None:
        self.name = "claude"
        self.base_url = "https://api.anthropic.com/v1"
        self.default_model = "claude-3-5-sonnet-20241022"
        self.api_key_env = "ANTHROPIC_API_KEY"

    def build_request(
        self,
        *,
        system_prompt: str,
        user_content: str,
        model: str,
        api_key: str,
        temperature: float,
        base_url: str | None = None,
    ) -> ProviderRequest:
        return ProviderRequest(
            url=f"{(base_url or self.base_url).rstrip('/')}/messages",
            headers={
                "x-api-key": api_key,
                "anthropic-version": "2023-06-01",
                "Content-Type": "application/json",
            },
            payload={
                "model": model,
                "max_tokens": 1024,
                "temperature": temperature,
                "system": system_prompt,
                "messages": [{"role": "user", "content": user_content}],
            },
        )

    def extract_text(self, data: Any) -> str:
        blocks = _object(data, self.name).get("content")
        for block in blocks if isinstance(blocks, list) else []:
            if isinstance(block, dict) and block.get("type", "text") == "text":
                return str(block.get("text", ""))
        raise AdvisoryFailure("claude response has no text block")


class GeminiAdapter:
    def __init__(self) -> None:
        self.name = "gemini"
        self.base_url = "https://generativelanguage.googleapis.com/v1beta"
        self.default_model = "gemini-1.5-pro"
        self.api_key_env = "GEMINI_API_KEY"

    def build_request(
        self,
        *,
        system_prompt: str,
        user_content: str,
        model: str,
        api_key: str,
        temperature: float,
        base_url: str | None = None,
    ) -> ProviderRequest:
        return ProviderRequest(
            url=f"{(base_url or self.base_url).rstrip('/')}/models/{model}:generateContent",
            headers={"x-goog-api-key": api_key, "Content-Type": "application/json"},
            payload={
                "contents": [{"parts": [{"text": f"{system_prompt}\n\nInput:\n{user_content}"}]}],
                "generationConfig": {"temperature": temperature, "responseMimeType": "application/json"},
            },
        )

    def extract_text(self, data: Any) -> str:
        try:
            return str(data["candidates"][0]["content"]["parts"][0]["text"])
        except (KeyError, IndexError, TypeError) as exc:
            raise AdvisoryFailure("gemini response has no candidate text") from exc


ProviderAdapter = ChatCompletionsAdapter | ClaudeAdapter | GeminiAdapter

PROVIDERS: dict[str, ProviderAdapter] = {
    "openai": ChatCompletionsAdapter("openai", "https://api.openai.com/v1", "gpt-4-turbo-preview", "OPENAI_API_KEY"),
    "claude": ClaudeAdapter(),
    "gemini": GeminiAdapter(),
    "grok": ChatCompletionsAdapter("grok", "https://api.x.ai/v1", "grok-beta", "XAI_API_KEY", json_mode=False),
    "deepseek": ChatCompletionsAdapter(
        "deepseek",
        "https://api.deepseek.com/v1",
        "deepseek-chat",
        "DEEPSEEK_API_KEY",
        json_mode=False,
    ),
}


def get_adapter(provider: str) -> ProviderAdapter:
    adapter = PROVIDERS.get(provider.strip().lower())
    if adapter is None:
        raise AdvisoryFailure(f"Unsupported advisory provider: {provider}")
    return adapter
