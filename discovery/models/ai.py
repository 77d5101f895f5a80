"""
Workshop Discovery
AI domain models.

Models:
    - AIUsageLog: token/cost tracking per LLM call made through the gateway.
"""

from datetime import datetime, timezone

from discovery.models import db


AI_PROVIDERS = {"anthropic", "openai", "gemini", "local"}

# Token costs per 1M tokens (input/output)
TOKEN_COSTS = {
    "claude-sonnet-4-20250514":    {"input": 3.00, "output": 15.00},
    "claude-3-5-haiku-20241022":   {"input": 1.00, "output": 5.00},
    "gpt-4o-mini":                 {"input": 0.15, "output": 0.60},
    "gpt-4o":                      {"input": 2.50, "output": 10.00},
    "gemini-2.5-flash":            {"input": 0.00, "output": 0.00},
    "gemini-2.5-pro":              {"input": 0.00, "output": 0.00},
}


def calculate_cost(model: str, prompt_tokens: int, completion_tokens: int) -> float:
    """Calculate USD cost for a given model + token counts."""
    costs = TOKEN_COSTS.get(model, {"input": 0.0, "output": 0.0})
    return (prompt_tokens * costs["input"] + completion_tokens * costs["output"]) / 1_000_000


class AIUsageLog(db.Model):
    """
    Tracks token usage and cost for every LLM API call.
    """

    __tablename__ = "ai_usage_logs"

    id = db.Column(db.Integer, primary_key=True)
    provider = db.Column(db.String(30), nullable=False, comment="anthropic / openai / gemini / local")
    model = db.Column(db.String(80), nullable=False)
    prompt_tokens = db.Column(db.Integer, default=0)
    completion_tokens = db.Column(db.Integer, default=0)
    total_tokens = db.Column(db.Integer, default=0)
    cost_usd = db.Column(db.Float, default=0.0)
    latency_ms = db.Column(db.Integer, default=0, comment="End-to-end latency in milliseconds")

    # Context
    user = db.Column(db.String(150), default="system")
    purpose = db.Column(db.String(100), default="", comment="e.g. evidence_interpreter, checklist_generator")
    session_id = db.Column(
        db.Integer, db.ForeignKey("discovery_sessions.id", ondelete="SET NULL"), nullable=True,
    )

    success = db.Column(db.Boolean, default=True)
    error_message = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "provider": self.provider,
            "model": self.model,
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
            "cost_usd": round(self.cost_usd or 0.0, 6),
            "latency_ms": self.latency_ms,
            "user": self.user,
            "purpose": self.purpose,
            "session_id": self.session_id,
            "success": self.success,
            "error_message": self.error_message,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
