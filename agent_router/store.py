"""SQLite persistence for routing decisions and their cost."""

import uuid
from typing import Any

import aiosqlite
from loguru import logger

from agent_router.models import CostBreakdown, RoutingDecision

_SCHEMA = """
CREATE TABLE IF NOT EXISTS routing_decisions (
    id TEXT PRIMARY KEY,
    session_id TEXT NOT NULL,
    trace_id TEXT,
    query TEXT NOT NULL,
    agent_selected TEXT NOT NULL,
    confidence REAL NOT NULL,
    reasoning TEXT,
    fallback INTEGER NOT NULL DEFAULT 0,
    fallback_reason TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);
CREATE TABLE IF NOT EXISTS routing_costs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    routing_decision_id TEXT NOT NULL REFERENCES routing_decisions(id),
    session_id TEXT NOT NULL,
    tokens_used INTEGER NOT NULL,
    input_tokens INTEGER NOT NULL DEFAULT 0,
    output_tokens INTEGER NOT NULL DEFAULT 0,
    cost_usd REAL NOT NULL,
    model TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);
CREATE INDEX IF NOT EXISTS idx_routing_decisions_session ON routing_decisions(session_id);
CREATE INDEX IF NOT EXISTS idx_routing_costs_session ON routing_costs(session_id);
"""


class RoutingStore:
    """Routing history. Opens a connection per call; safe to share between tasks."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._initialized = False

    async def init(self) -> None:
        if self._initialized:
            return
        async with aiosqlite.connect(self.db_path) as db:
            await db.executescript(_SCHEMA)
            await db.commit()
        self._initialized = True
        logger.info(f"Routing store ready at {self.db_path}")

    async def log_route(
        self,
        *,
        session_id: str,
        query: str,
        decision: RoutingDecision,
        cost: CostBreakdown,
        trace_id: str | None = None,
        model: str | None = None,
    ) -> str:
        """Insert a decision and its cost. Returns the decision id."""
        await self.init()
        decision_id = uuid.uuid4().hex
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """INSERT INTO routing_decisions
                   (id, session_id, trace_id, query, agent_selected, confidence,
                    reasoning, fallback, fallback_reason)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    decision_id, session_id, trace_id, query, decision.agent_id,
                    decision.confidence, decision.reasoning, int(decision.fallback),
                    decision.fallback_reason.value if decision.fallback_reason else None,
                ),
            )
            await db.execute(
                """INSERT INTO routing_costs
                   (routing_decision_id, session_id, tokens_used, input_tokens,
                    output_tokens, cost_usd, model)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (
                    decision_id, session_id, cost.tokens_used, cost.input_tokens,
                    cost.output_tokens, cost.cost_usd, model,
                ),
            )
            await db.commit()
        return decision_id

    async def session_costs(self, session_id: str) -> dict[str, Any]:
        await self.init()
        async with aiosqlite.connect(self.db_path) as db:
            cur = await db.execute(
                """SELECT COALESCE(SUM(tokens_used), 0), COALESCE(SUM(cost_usd), 0), COUNT(*)
                   FROM routing_costs WHERE session_id = ?""",
                (session_id,),
            )
            total_tokens, total_cost, count = await cur.fetchone()
        return {
            "session_id": session_id,
            "total_tokens": int(total_tokens),
            "total_cost_usd": float(total_cost),
            "routing_count": int(count),
        }

    async def history(self, session_id: str, limit: int = 50) -> list[dict[str, Any]]:
        """Most recent decisions first."""
        await self.init()
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cur = await db.execute(
                """SELECT rd.id, rd.trace_id, rd.query, rd.agent_selected, rd.confidence,
                          rd.fallback, rd.fallback_reason, rc.tokens_used, rc.cost_usd,
                          rc.model, rd.created_at
                   FROM routing_decisions rd
                   JOIN routing_costs rc ON rc.routing_decision_id = rd.id
                   WHERE rd.session_id = ?
                   ORDER BY rd.created_at DESC, rc.id DESC
                   LIMIT ?""",
                (session_id, limit),
            )
            rows = await cur.fetchall()
        return [
            {**dict(row), "fallback": bool(row["fallback"])}
            for row in rows
        ]
