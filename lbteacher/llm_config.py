#!/usr/bin/env python3
"""
Oracle model settings - pricing and credential resolution.

Pricing is expressed per 1K tokens. Unknown models fall back to the
default Sonnet-class rates so spend is never under-reported.

Usage:
    settings = OracleSettings(model="claude-sonnet-4-20250514")
    settings = OracleSettings(api_token="env:MY_ANTHROPIC_KEY")
    cost = settings.pricing.cost(input_tokens=1200, output_tokens=300)
"""

import os
from dataclasses import dataclass
from typing import Any, Dict, Optional

ANTHROPIC_ENV_VAR = "ANTHROPIC_API_KEY"
ANTHROPIC_BASE_URL = "https://api.anthropic.com"
ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_MODEL = "claude-sonnet-4-20250514"


@dataclass(frozen=True)
class ModelPricing:
    """USD per 1K input/output tokens"""
    input: float
    output: float

    def cost(self, input_tokens: int, output_tokens: int) -> float:
        return (input_tokens / 1000) * self.input + (output_tokens / 1000) * self.output


DEFAULT_PRICING = ModelPricing(input=0.003, output=0.015)

MODEL_PRICING: Dict[str, ModelPricing] = {
    "claude-sonnet-4-20250514": ModelPricing(input=0.003, output=0.015),
    "claude-3-5-sonnet-20241022": ModelPricing(input=0.003, output=0.015),
    "claude-3-5-haiku-20241022": ModelPricing(input=0.0008, output=0.004),
    "claude-3-haiku-20240307": ModelPricing(input=0.00025, output=0.00125),
    "claude-opus-4-20250514": ModelPricing(input=0.015, output=0.075),
}


def get_pricing(model: str) -> ModelPricing:
    return MODEL_PRICING.get(model, DEFAULT_PRICING)


@dataclass
class OracleSettings:
    """
    Connection settings for the remote oracle.

    Parameters:
        model: Anthropic model id
        api_token: Optional. If not provided, reads ANTHROPIC_API_KEY.
                   Can also use "env:VAR_NAME" format to specify custom env var.
        base_url: Optional. Custom API endpoint.
        timeout: Request timeout in seconds
    """
    model: str = DEFAULT_MODEL
    api_token: Optional[str] = None
    base_url: str = ANTHROPIC_BASE_URL
    timeout: int = 120

    def __post_init__(self):
        self._resolved_token = self._resolve_api_token()

    def _resolve_api_token(self) -> Optional[str]:
        if self.api_token is None:
            return os.getenv(ANTHROPIC_ENV_VAR)
        if self.api_token.startswith("env:"):
            return os.getenv(self.api_token[4:].strip())
        return self.api_token

    @property
    def resolved_api_token(self) -> Optional[str]:
        return self._resolved_token

    @property
    def messages_url(self) -> str:
        return f"{self.base_url.rstrip('/')}/v1/messages"

    @property
    def pricing(self) -> ModelPricing:
        return get_pricing(self.model)

    def validate(self) -> bool:
        if not self._resolved_token:
            raise ValueError(
                f"API token required for the oracle. "
                f"Set api_token or {ANTHROPIC_ENV_VAR} environment variable."
            )
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "model": self.model,
            "base_url": self.base_url,
            "timeout": self.timeout,
            "has_api_token": self._resolved_token is not None,
        }
