"""
Oracle Client - the only component that talks to the remote model.

Each call is gated by the Budget Ledger, clamped to the per-call token
ceiling, retried with linear backoff on rate limiting / server errors, and
recorded in the ledger on success. Failures come back as an
``OracleResponse`` with ``success=False`` and an ``ErrorKind``.

The network transport is injected so tests can substitute a scripted fake:

    client = OracleClient(config, ledger)                       # Anthropic over aiohttp
    client = OracleClient(config, ledger, transport=FakeTransport([...]))

    response = await client.call(
        system_prompt=TRAINING_CONTEXT,
        user_message=context_json,
        domain="example.com",
        image=screenshot_bytes,
    )
"""

import base64
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Union

import aiohttp

from .budget import BudgetLedger
from .config import TeacherConfig
from .errors import (
    ErrorKind,
    OracleError,
    OracleServerError,
    OracleUnavailableError,
    RetryExhaustedError,
    classify_error,
    oracle_error_for_status,
)
from .llm_config import ANTHROPIC_VERSION, OracleSettings, get_pricing
from .retry import execute_with_retry

logger = logging.getLogger(__name__)


@dataclass
class OracleRequest:
    system_prompt: str
    user_message: str
    model: str
    max_tokens: int
    image_base64: Optional[str] = None


@dataclass
class OracleReply:
    text: str
    input_tokens: int = 0
    output_tokens: int = 0
    stop_reason: Optional[str] = None


@dataclass
class OracleUsage:
    input_tokens: int
    output_tokens: int
    cost: float


@dataclass
class OracleResponse:
    success: bool
    content: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    usage: Optional[OracleUsage] = None
    stop_reason: Optional[str] = None


class OracleTransport(Protocol):
    async def create_message(self, request: OracleRequest) -> OracleReply:
        ...


class AnthropicTransport:
    """Anthropic Messages API over aiohttp"""

    def __init__(self, settings: OracleSettings):
        self.settings = settings

    def build_payload(self, request: OracleRequest) -> Dict[str, Any]:
        content: List[Dict[str, Any]] = []
        if request.image_base64:
            content.append({
                "type": "image",
                "source": {
                    "type": "base64",
                    "media_type": "image/png",
                    "data": request.image_base64,
                },
            })
        content.append({"type": "text", "text": request.user_message})
        return {
            "model": request.model,
            "max_tokens": request.max_tokens,
            "system": request.system_prompt,
            "messages": [{"role": "user", "content": content}],
        }

    async def create_message(self, request: OracleRequest) -> OracleReply:
        api_token = self.settings.resolved_api_token
        if not api_token:
            raise OracleUnavailableError("Oracle unavailable: ANTHROPIC_API_KEY not set")
        headers = {
            "x-api-key": api_token,
            "anthropic-version": ANTHROPIC_VERSION,
            "Content-Type": "application/json",
        }
        timeout_obj = aiohttp.ClientTimeout(total=self.settings.timeout)
        async with aiohttp.ClientSession(timeout=timeout_obj) as session:
            async with session.post(
                self.settings.messages_url,
                headers=headers,
                json=self.build_payload(request),
            ) as resp:
                if resp.status != 200:
                    error_text = await resp.text()
                    raise oracle_error_for_status(resp.status, f"Anthropic API error {resp.status}: {error_text}")
                try:
                    data = await resp.json(content_type=None)
                except ValueError as e:
                    raise OracleServerError(f"Malformed Anthropic response body: {e}", status=resp.status) from e

        if not isinstance(data, dict):
            raise OracleServerError(f"Unexpected Anthropic response type: {type(data).__name__}", status=200)
        text = "".join(
            block.get("text", "") for block in data.get("content") or []
            if isinstance(block, dict) and block.get("type") == "text"
        )
        usage = data.get("usage") or {}
        return OracleReply(
            text=text,
            input_tokens=int(usage.get("input_tokens", 0)),
            output_tokens=int(usage.get("output_tokens", 0)),
            stop_reason=data.get("stop_reason"),
        )


def encode_image(image: Union[bytes, str, None]) -> Optional[str]:
    if image is None:
        return None
    if isinstance(image, bytes):
        return base64.b64encode(image).decode("ascii")
    return image


class OracleClient:
    """Budget-gated, retrying oracle client."""

    def __init__(
        self,
        config: TeacherConfig,
        ledger: BudgetLedger,
        transport: Optional[OracleTransport] = None,
        sleep=None,
    ):
        self.config = config
        self.ledger = ledger
        self._transport = transport
        self._sleep = sleep

    def is_available(self) -> bool:
        return self._transport is not None or self.config.is_available()

    def _get_transport(self) -> OracleTransport:
        if self._transport is None:
            settings = OracleSettings(
                model=self.config.model,
                api_token=self.config.api_key,
                timeout=self.config.request_timeout,
            )
            self._transport = AnthropicTransport(settings)
        return self._transport

    async def call(
        self,
        system_prompt: str,
        user_message: str,
        domain: str,
        image: Union[bytes, str, None] = None,
        max_tokens: Optional[int] = None,
        model: Optional[str] = None,
    ) -> OracleResponse:
        if not isinstance(system_prompt, str) or not system_prompt.strip():
            return OracleResponse(success=False, error="system_prompt is required", error_kind=ErrorKind.INVALID_REQUEST)
        if not isinstance(user_message, str) or not user_message.strip():
            return OracleResponse(success=False, error="user_message is required", error_kind=ErrorKind.INVALID_REQUEST)

        budget = self.ledger.check_budget(domain)
        if not budget.allowed:
            return OracleResponse(success=False, error=budget.reason, error_kind=ErrorKind.BUDGET)

        if not self.is_available():
            return OracleResponse(
                success=False,
                error="Oracle unavailable: ANTHROPIC_API_KEY not set",
                error_kind=ErrorKind.UNAVAILABLE,
            )

        model = model or self.config.model
        requested = max_tokens or self.config.default_max_tokens
        request = OracleRequest(
            system_prompt=system_prompt,
            user_message=user_message,
            model=model,
            max_tokens=min(requested, self.config.max_tokens_per_call),
            image_base64=encode_image(image),
        )

        logger.info(f"Calling oracle for {domain} (model={model}, max_tokens={request.max_tokens})")
        try:
            reply = await execute_with_retry(
                self._get_transport().create_message,
                request,
                max_attempts=self.config.max_retries,
                base_delay=self.config.retry_delay,
                sleep=self._sleep,
            )
        except RetryExhaustedError as e:
            return OracleResponse(success=False, error=str(e), error_kind=ErrorKind.TRANSPORT)
        except (OracleError, OracleUnavailableError, aiohttp.ClientError) as e:
            logger.error(f"Oracle call for {domain} failed: {e}")
            return OracleResponse(success=False, error=str(e), error_kind=classify_error(e))
        except (ValueError, TypeError, AttributeError) as e:
            logger.error(f"Oracle call for {domain} returned an unusable reply: {e}")
            return OracleResponse(success=False, error=str(e), error_kind=ErrorKind.TRANSPORT_FATAL)

        usage = self.ledger.track_usage(domain, reply.input_tokens, reply.output_tokens, get_pricing(model))
        return OracleResponse(
            success=True,
            content=reply.text,
            usage=OracleUsage(
                input_tokens=reply.input_tokens,
                output_tokens=reply.output_tokens,
                cost=usage.cost,
            ),
            stop_reason=reply.stop_reason,
        )
