"""LiteLLM-backed provider used by the routing classifier."""

from typing import Any

import litellm
from loguru import logger

from agent_router.errors import (
    ClassifierAPIError,
    ClassifierAuthError,
    ClassifierRateLimitError,
    ClassifierTimeoutError,
)
from agent_router.models import LLMProvider, LLMResponse


class LiteLLMProvider(LLMProvider):
    """Calls any LiteLLM-supported model and raises typed classifier errors.

    Provider exceptions are translated here so the fallback policy can tell a
    timeout from a rate limit from bad credentials.
    """

    def __init__(
        self,
        api_key: str | None = None,
        api_base: str | None = None,
        default_model: str = "gpt-4o-mini",
        request_timeout: float = 10.0,
    ):
        super().__init__(api_key=api_key, api_base=api_base)
        self.default_model = default_model
        self.request_timeout = request_timeout

    def get_default_model(self) -> str:
        return self.default_model

    async def chat(
        self,
        messages: list[dict[str, Any]],
        model: str | None = None,
        max_tokens: int = 256,
        temperature: float = 0.0,
    ) -> LLMResponse:
        model = model or self.default_model
        try:
            response = await litellm.acompletion(
                model=model,
                messages=messages,
                max_tokens=max_tokens,
                temperature=temperature,
                api_key=self.api_key,
                api_base=self.api_base,
                timeout=self.request_timeout,
                response_format={"type": "json_object"},
            )
        except litellm.Timeout as e:
            raise ClassifierTimeoutError(f"{model} timed out: {e}") from e
        except litellm.RateLimitError as e:
            raise ClassifierRateLimitError(f"{model} rate limited: {e}") from e
        except litellm.AuthenticationError as e:
            raise ClassifierAuthError(f"{model} rejected credentials: {e}") from e
        except (
            litellm.ServiceUnavailableError,
            litellm.InternalServerError,
            litellm.BadRequestError,
            litellm.NotFoundError,
            litellm.APIConnectionError,
            litellm.APIError,
        ) as e:
            raise ClassifierAPIError(f"{model} call failed: {e}") from e

        choice = response.choices[0]
        usage = getattr(response, "usage", None)
        usage_dict = {
            "prompt_tokens": getattr(usage, "prompt_tokens", 0) or 0,
            "completion_tokens": getattr(usage, "completion_tokens", 0) or 0,
            "total_tokens": getattr(usage, "total_tokens", 0) or 0,
        }
        logger.debug(f"LiteLLM {model}: finish={choice.finish_reason} usage={usage_dict}")
        return LLMResponse(
            content=choice.message.content,
            finish_reason=choice.finish_reason or "stop",
            usage=usage_dict,
            model_used=model,
        )
