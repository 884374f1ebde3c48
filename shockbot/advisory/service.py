from __future__ import annotations

import json
import logging
import math
import os
import time
from dataclasses import dataclass
from typing import Any, Protocol

import requests

from shockbot.advisory.providers import get_adapter
from shockbot.config import AdvisoryConfig
from shockbot.errors import AdvisoryFailure, InvalidAdvisoryResponse
from shockbot.strategy.contracts import Decision, FeatureVector, ScoreResult, SetupState

LOGGER = logging.getLogger(__name__)

FALLBACK_REASON = "advisory unavailable"

SYSTEM_PROMPT = (
    "You review single-stock option setups that follow a high-volume shock candle. "
    "The setup has passed digestion and shows an acceptance candle. "
    "Weigh the features and the quantitative score, then answer with strict JSON: "
    '{"decision": "BUY_CALL" | "BUY_PUT" | "WAIT", "confidence": number between 0 and 1, "reason": string}. '
    "Prefer WAIT when the evidence is mixed."
)


@dataclass(slots=True)
class AdvisoryResponse:
    decision: Decision
    confidence: float
    reason: str
    provider: str
    model: str
    latency_ms: float = 0.0
    fallback: bool = False


class AdvisoryService(Protocol):
    def consult(
        self,
        prompt: str,
        *,
        symbol: str,
        state: SetupState,
        features: FeatureVector,
        provider: str | None = None,
    ) -> AdvisoryResponse:
        ...

    def is_healthy(self) -> bool:
        ...


def build_prompt(symbol: str, score: ScoreResult) -> str:
    return (
        f"{SYSTEM_PROMPT}\n"
        f"Symbol: {symbol}. Quantitative score {score.score:.3f} against threshold {score.threshold:.2f} "
        "is inside the ambiguity band."
    )


def normalize_response(raw: Any, *, provider: str, model: str, latency_ms: float = 0.0) -> AdvisoryResponse:
    if not isinstance(raw, dict):
        raise InvalidAdvisoryResponse(f"Advisory payload must be an object, got {type(raw).__name__}")
    decision_raw = str(raw.get("decision", "")).strip().upper()
    try:
        decision = Decision(decision_raw)
    except ValueError as exc:
        raise InvalidAdvisoryResponse(f"Invalid decision type: {raw.get('decision')!r}") from exc
    confidence_raw = raw.get("confidence")
    if isinstance(confidence_raw, bool):
        raise InvalidAdvisoryResponse(f"Invalid confidence value: {confidence_raw!r}")
    try:
        confidence = float(confidence_raw)
    except (TypeError, ValueError) as exc:
        raise InvalidAdvisoryResponse(f"Invalid confidence value: {confidence_raw!r}") from exc
    if math.isnan(confidence) or confidence < 0.0 or confidence > 1.0:
        raise InvalidAdvisoryResponse(f"Invalid confidence value: {confidence}")
    reason = str(raw.get("reason") or "No reason provided")
    return AdvisoryResponse(
        decision=decision,
        confidence=confidence,
        reason=reason,
        provider=provider,
        model=model,
        latency_ms=latency_ms,
    )


def fallback_response(provider: str, latency_ms: float = 0.0) -> AdvisoryResponse:
    return AdvisoryResponse(
        decision=Decision.WAIT,
        confidence=0.0,
        reason=FALLBACK_REASON,
        provider=provider,
        model="fallback",
        latency_ms=latency_ms,
        fallback=True,
    )


class HttpAdvisoryClient:
    """One client for every provider; request shapes differ, validation is shared."""

    def __init__(self, config: AdvisoryConfig, provider: str | None = None):
        self.config = config
        self.provider = (provider or config.provider).strip().lower()
        self._healthy = True

    def is_healthy(self) -> bool:
        return self._healthy

    def _api_key(self, provider: str, env_name: str) -> str:
        provider_cfg = self.config.providers.get(provider)
        if provider_cfg is not None and provider_cfg.api_key_env:
            env_name = provider_cfg.api_key_env
        api_key = os.getenv(env_name, "").strip()
        if not api_key:
            raise AdvisoryFailure(f"{provider} API key is not configured ({env_name})")
        return api_key

    def _request(self, provider: str, prompt: str, user_content: str) -> AdvisoryResponse:
        adapter = get_adapter(provider)
        provider_cfg = self.config.providers.get(provider)
        model = (provider_cfg.model if provider_cfg is not None else None) or adapter.default_model
        base_url = provider_cfg.base_url if provider_cfg is not None else None
        request = adapter.build_request(
            system_prompt=prompt,
            user_content=user_content,
            model=model,
            api_key=self._api_key(provider, adapter.api_key_env),
            temperature=self.config.temperature,
            base_url=base_url,
        )
        start = time.perf_counter()
        response = requests.post(
            request.url,
            headers=request.headers,
            json=request.payload,
            timeout=self.config.timeout_seconds,
        )
        response.raise_for_status()
        text = adapter.extract_text(response.json())
        try:
            raw = json.loads(text)
        except json.JSONDecodeError as exc:
            raise InvalidAdvisoryResponse(f"Advisory reply is not JSON: {text[:120]!r}") from exc
        latency_ms = (time.perf_counter() - start) * 1000.0
        return normalize_response(raw, provider=provider, model=model, latency_ms=latency_ms)

    def consult(
        self,
        prompt: str,
        *,
        symbol: str,
        state: SetupState,
        features: FeatureVector,
        provider: str | None = None,
    ) -> AdvisoryResponse:
        """`provider` overrides the configured default for this call, e.g. from system_config."""
        provider = (provider or self.provider).strip().lower()
        user_content = json.dumps(
            {"current_state": state.value, "stock_symbol": symbol, "features": features.to_dict()},
            sort_keys=True,
        )
        start = time.perf_counter()
        try:
            result = self._request(provider, prompt, user_content)
        except (AdvisoryFailure, requests.RequestException, ValueError) as exc:
            latency_ms = (time.perf_counter() - start) * 1000.0
            LOGGER.warning("Advisory %s failed for %s, defaulting to WAIT: %s", provider, symbol, exc)
            self._healthy = False
            return fallback_response(provider, latency_ms)
        self._healthy = True
        LOGGER.info(
            "Advisory %s for %s: %s (%.2f) in %.0fms",
            provider,
            symbol,
            result.decision.value,
            result.confidence,
            result.latency_ms,
        )
        return result
