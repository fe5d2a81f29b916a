"""
Effect schema and prompt for effect executions.

The generation backend receives the prompt below and must return an object
matching EffectPayload.
"""

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from .execution_record import ExecutionRecord


class EffectPayload(BaseModel):
    """Structured effects produced when a project's effects come due"""
    economic_effects: Dict[str, float] = Field(
        ..., description="Economic indicator -> change (e.g., {'gdp': 1.5e6, 'unemployment_rate': -0.4})"
    )
    social_effects: Dict[str, float] = Field(
        ..., description="Social indicator -> change (e.g., {'approval_rating': 2.0})"
    )

    model_config = {
        "json_schema_extra": {
            "example": {
                "economic_effects": {"gdp": 1500000.0, "unemployment_rate": -0.3},
                "social_effects": {"approval_rating": 2.5, "quality_of_life": 1.0},
            }
        }
    }


EFFECT_PROMPT_TEMPLATE = """You are the economic and social simulator of a government management game.

A public project has just reached the end of its execution period. Estimate
the effects it produces on the state.

PROJECT
- Project id: {project_id}
- Name: {name}
- Description: {description}
- Total cost: {total_cost}
- Expected economic return: {economic_projection}
- Expected social impact: {social_projection}

RULES
- Use numeric deltas only (positive = increase, negative = decrease).
- economic_effects keys: gdp, budget, unemployment_rate, inflation_rate (include only affected ones).
- social_effects keys: approval_rating, quality_of_life, public_trust (include only affected ones).
- approval_rating changes are percentage points between -10 and 10.
"""


def build_effect_prompt(record: ExecutionRecord, project: Optional[Dict[str, Any]] = None) -> str:
    """
    Build the effect-generation prompt for an effect record.

    Args:
        record: The effect ExecutionRecord being processed
        project: Optional project snapshot (refined_project / analysis_data keys)

    Returns:
        Prompt text
    """
    project = project or {}
    refined = project.get("refined_project") or {}
    analysis = project.get("analysis_data") or {}

    return EFFECT_PROMPT_TEMPLATE.format(
        project_id=record.project_id,
        name=refined.get("name", "unknown"),
        description=refined.get("description", "not provided"),
        total_cost=analysis.get("total_cost", "not provided"),
        economic_projection=analysis.get("economic_return_projection", "not provided"),
        social_projection=analysis.get("social_impact_projection", "not provided"),
    )
