"""Pydantic schema for quota status reporting."""

from datetime import date

from pydantic import BaseModel, Field


class QuotaStatus(BaseModel):
    """Monthly token budget of one account after applying any due reset."""

    user_id: str
    monthly_token_limit: int
    monthly_token_used: int
    remaining: int
    quota_reset_date: date | None = None
    usage_ratio: float = Field(ge=0.0)
    warning: bool = Field(description="Usage at or above the warning threshold but not blocked")
    exceeded: bool = Field(description="Hard stop: new sends are refused until reset or top-up")
