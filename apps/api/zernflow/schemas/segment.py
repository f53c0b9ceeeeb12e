"""Pydantic schemas for broadcast audience filters."""

from pydantic import BaseModel, ConfigDict, Field

from zernflow.db.enums import SegmentCombinator, SegmentField


class SegmentRule(BaseModel):
    """
    One audience predicate.

    ``value`` semantics by field:
    - has_tag / missing_tag: tag name
    - platform: platform name (operator equals | not_equals)
    - is_subscribed: "true" | "false"
    - last_interaction: ISO date (operator before | after)
    - custom_field: "slug:value" (operator equals | not_equals | contains | gt | lt)
    """

    model_config = ConfigDict(extra="ignore")

    field: SegmentField
    operator: str = "equals"
    value: str = ""


class SegmentGroup(BaseModel):
    model_config = ConfigDict(extra="ignore")

    combinator: SegmentCombinator = SegmentCombinator.AND
    rules: list[SegmentRule] = Field(default_factory=list)


class SegmentFilter(BaseModel):
    model_config = ConfigDict(extra="ignore", use_enum_values=False)

    combinator: SegmentCombinator = SegmentCombinator.AND
    groups: list[SegmentGroup] = Field(default_factory=list)

    @classmethod
    def from_stored(cls, raw: dict | None) -> "SegmentFilter | None":
        """Accept lower or upper case combinators as stored by the dashboard."""
        if not raw:
            return None
        return cls.model_validate(_lower_combinators(raw))


def _lower_combinators(raw: dict) -> dict:
    data = dict(raw)
    if isinstance(data.get("combinator"), str):
        data["combinator"] = data["combinator"].lower()
    groups = []
    for group in data.get("groups") or []:
        group = dict(group)
        if isinstance(group.get("combinator"), str):
            group["combinator"] = group["combinator"].lower()
        groups.append(group)
    data["groups"] = groups
    return data

