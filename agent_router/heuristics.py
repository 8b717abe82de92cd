"""Keyword heuristic classification.

Deterministic and free: used whenever the LLM classifier is unavailable,
fails, or is not confident enough. Never raises.
"""

from agent_router.models import Agent, RoutingDecision

NO_MATCH_CONFIDENCE = 0.5
CONTEXT_BONUS = 0.5
CONTEXT_WINDOW = 3  # most recent conversation turns considered


def score_agent(agent: Agent, query: str, conversation_context: list[str]) -> float:
    """Trigger phrases found in the query, plus a bonus for those also in recent context."""
    text = query.lower()
    recent = " ".join(conversation_context[-CONTEXT_WINDOW:]).lower()
    score = 0.0
    for phrase in agent.keywords:
        p = phrase.lower()
        if p not in text:
            continue
        score += 1
        if recent and p in recent:
            score += CONTEXT_BONUS
    return score


def classify(
    query: str,
    agents: tuple[Agent, ...],
    conversation_context: list[str] | None = None,
) -> RoutingDecision:
    """Pick the agent with the most trigger-phrase hits.

    Ties go to the default agent, then to registry order. With no hits at all
    the default agent is chosen at ``NO_MATCH_CONFIDENCE``.
    """
    context = conversation_context or []
    default = next((a for a in agents if a.is_default), agents[0])

    best: Agent | None = None
    best_score = 0.0
    for agent in agents:
        s = score_agent(agent, query, context)
        if s > best_score or (s == best_score and s > 0 and agent.is_default):
            best, best_score = agent, s

    if best is None:
        return RoutingDecision(
            agent_id=default.id,
            confidence=NO_MATCH_CONFIDENCE,
            reasoning=f"No keyword matches. Routing to default agent {default.name}.",
            fallback=True,
        )

    confidence = min(0.9, 0.6 + 0.1 * (best_score - 1))
    return RoutingDecision(
        agent_id=best.id,
        confidence=round(confidence, 2),
        reasoning=f"Keyword match for {best.name} (score={best_score:g}).",
        fallback=True,
    )
