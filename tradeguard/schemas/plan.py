"""Typed records for stop state and entry plans.

Positions and opportunities persist these as plain columns; these models are
the validation boundary between the columns and the engine.
"""

import math

from pydantic import BaseModel, Field, model_validator

from tradeguard.utils.constants import Side, TRAIL_STEP


class StopState(BaseModel):
    stop: float = Field(gt=0)
    initial: float = Field(gt=0)
    trail_level: float = Field(default=0.0, ge=0)

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def _validate_level_step(self):
        steps = self.trail_level / TRAIL_STEP
        if not math.isclose(steps, round(steps), abs_tol=1e-9):
            raise ValueError(f"trail_level must be a multiple of {TRAIL_STEP}")
        return self


class EntryPlan(BaseModel):
    side: Side
    entry: float = Field(gt=0)
    stop: float = Field(gt=0)
    target: float | None = Field(default=None, gt=0)

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def _validate_sides(self):
        if self.side is Side.LONG:
            if self.stop >= self.entry:
                raise ValueError("LONG stop must be below entry")
            if self.target is not None and self.target <= self.entry:
                raise ValueError("LONG target must be above entry")
        else:
            if self.stop <= self.entry:
                raise ValueError("SHORT stop must be above entry")
            if self.target is not None and self.target >= self.entry:
                raise ValueError("SHORT target must be below entry")
        return self

    @property
    def per_unit_risk(self) -> float:
        return abs(self.entry - self.stop)
