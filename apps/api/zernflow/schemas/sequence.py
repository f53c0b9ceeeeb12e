"""Pydantic schemas for drip sequences."""

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class SequenceStep(BaseModel):
    """A ``message`` step sends ``content``; a ``delay`` step waits ``delayMinutes``."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    type: Literal["message", "delay"]
    content: str | None = None
    delay_minutes: float = Field(default=0, alias="delayMinutes")


def parse_steps(raw_steps: list | None) -> list[SequenceStep]:
    return [SequenceStep.model_validate(step) for step in raw_steps or []]
