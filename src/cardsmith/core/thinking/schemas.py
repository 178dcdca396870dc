"""
Thinking Module Schemas

Typed shapes of the three thinking decisions. Required fields have no
defaults so an incomplete model answer fails validation.
"""

from typing import Literal

from pydantic import BaseModel, Field, field_validator

NextAction = Literal["continue", "improve", "complete"]


class Evaluation(BaseModel):
    is_satisfied: bool
    quality_score: float = Field(ge=0, le=100)
    reasoning: str
    improvement_needed: list[str] = Field(default_factory=list)
    next_action: NextAction

    @field_validator("next_action", mode="before")
    @classmethod
    def _normalize_action(cls, value):
        return value.strip().lower() if isinstance(value, str) else value


class ImprovementInstruction(BaseModel):
    focus_areas: list[str]
    specific_requests: list[str]
    quality_target: float = Field(default=80, ge=0, le=100)
    max_attempts: int = Field(default=3, ge=1)


class RoutingDecision(BaseModel):
    selected_sub_tool: str
    reasoning: str = ""
    confidence: float = 80

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, value):
        try:
            return max(0.0, min(100.0, float(value)))
        except (TypeError, ValueError):
            return 80.0
