"""LLM-backed routing classifier."""

import json
from typing import Any

from loguru import logger

from agent_router.errors import ClassifierAPIError, ClassifierParseError
from agent_router.models import LLMProvider, RoutingDecision, RoutingRequest, TokenUsage
from agent_router.registry import AgentRegistry

_SYSTEM_PROMPT = (
    "You are the supervisor of a multi-agent system. Pick exactly one agent "
    "to handle the user's query.\n\n"
    "## Agents\n{agents}\n\n"
    "Reply with a single JSON object and nothing else:\n"
    '{{"agent_id": "<one of: {ids}>", "confidence": <0.0-1.0>, '
    '"reasoning": "<one sentence>"}}'
)


def build_messages(request: RoutingRequest) -> list[dict[str, Any]]:
    """Build the chat messages sent to the classifier."""
    blocks = []
    for agent in request.available_agents:
        blocks.append(
            f"### {agent.id}: {agent.name}\n{agent.description}\n"
            f"Use when: {'; '.join(agent.when_to_use)}\n"
            f"Do not use when: {'; '.join(agent.when_not_to_use)}"
        )
    system = _SYSTEM_PROMPT.format(
        agents="\n\n".join(blocks),
        ids=", ".join(a.id for a in request.available_agents),
    )

    user = request.query
    if request.conversation_context:
        history = "\n".join(f"- {turn}" for turn in request.conversation_context[-5:])
        user = f"Recent conversation:\n{history}\n\nQuery: {request.query}"

    return [
        {"role": "system", "content": system},
        {"role": "user", "content": user},
    ]


def _extract_json(raw: str) -> dict[str, Any]:
    """Pull the JSON object out of a reply, tolerating markdown fences."""
    text = raw.strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[-1]
    if text.endswith("```"):
        text = text.rsplit("```", 1)[0]

    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        raise ClassifierParseError(f"No JSON object in classifier reply: {raw[:120]!r}")
    try:
        data = json.loads(text[start:end + 1])
    except json.JSONDecodeError as e:
        raise ClassifierParseError(f"Invalid JSON from classifier: {e}") from e
    if not isinstance(data, dict):
        raise ClassifierParseError("Classifier reply is not a JSON object")
    return data


class LLMClassifier:
    """Asks an LLM which agent should handle a request."""

    def __init__(
        self,
        provider: LLMProvider,
        registry: AgentRegistry,
        *,
        model: str | None = None,
        max_tokens: int = 256,
    ):
        self._provider = provider
        self._registry = registry
        self._model = model
        self._max_tokens = max_tokens

    @property
    def model(self) -> str | None:
        return self._model

    async def classify(self, request: RoutingRequest) -> RoutingDecision:
        """Return a non-fallback decision, or raise a ``ClassifierError``."""
        response = await self._provider.chat(
            messages=build_messages(request),
            model=self._model,
            max_tokens=self._max_tokens,
            temperature=0.0,
        )

        # Providers may report failures in-band instead of raising.
        if response.finish_reason == "error":
            raise ClassifierAPIError(response.content or "Classifier returned an error")
        if not response.content:
            raise ClassifierParseError("Empty classifier reply")

        data = _extract_json(response.content)
        agent = self._registry.resolve(str(data.get("agent_id", "")))
        if agent is None or agent not in request.available_agents:
            raise ClassifierParseError(f"Unknown agent_id from classifier: {data.get('agent_id')!r}")

        try:
            confidence = float(data["confidence"])
        except (KeyError, TypeError, ValueError) as e:
            raise ClassifierParseError(f"Missing or invalid confidence: {data.get('confidence')!r}") from e
        if confidence != confidence:  # NaN
            raise ClassifierParseError("Confidence is NaN")
        confidence = min(1.0, max(0.0, confidence))

        usage = TokenUsage.from_provider(response.usage)
        logger.debug(
            f"Classifier: {agent.id} (confidence={confidence:.2f}, tokens={usage.total_tokens})"
        )
        return RoutingDecision(
            agent_id=agent.id,
            confidence=confidence,
            reasoning=str(data.get("reasoning") or f"Classifier selected {agent.name}."),
            fallback=False,
            usage=usage,
        )
