"""
Template Structure - typed phase-definition tree.

A template's structure_json is parsed into a TemplateStructure whose phases are
a tagged union on "type" (RoundRobin, Pools, Bracket, Award, Draw). The
resolver pattern-matches on these classes instead of string comparisons.

Accepted payload:
    {
      "phases": [{"type": "Pools", "name": "Pool Play", "poolCount": 3, "advancePerPool": 2}, ...],
      "advancementRules": [{"fromPhase": 1, "fromPool": "A", "fromRank": 1, "toPhase": 2, "toSlot": 1}, ...],
      "seedingStrategy": "Snake"
    }

Flexible payloads ({"isFlexible": true, "generateBracket": {...}} or
{"isFlexible": true, "generateFormat": {...}}) are normalized to the same tree.
"""

import json
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from pydantic.alias_generators import to_camel

from app.services.errors import InvalidStructure

SeedingStrategy = Literal["Snake", "Sequential"]
Elimination = Literal["Single", "Double"]


class _StructureModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class RoundRobinPhase(_StructureModel):
    type: Literal["RoundRobin"] = "RoundRobin"
    name: str = "Round Robin"
    incoming_slots: Optional[int] = Field(default=None, ge=2)
    advance_count: Optional[int] = Field(default=None, ge=1)


class PoolsPhase(_StructureModel):
    type: Literal["Pools"] = "Pools"
    name: str = "Pool Play"
    pool_count: Optional[int] = Field(default=None, ge=1)
    pool_size: Optional[int] = Field(default=None, ge=2)
    advance_per_pool: int = Field(default=1, ge=1)
    incoming_slots: Optional[int] = Field(default=None, ge=2)

    @model_validator(mode="after")
    def _require_pool_sizing(self):
        if self.pool_count is None and self.pool_size is None:
            raise ValueError("Pools phase needs poolCount or poolSize")
        return self


class BracketPhase(_StructureModel):
    type: Literal["Bracket"] = "Bracket"
    name: str = "Bracket"
    elimination: Elimination = "Single"
    split_rounds: bool = False
    include_consolation: bool = False
    incoming_slots: Optional[int] = Field(default=None, ge=2)


class AwardPhase(_StructureModel):
    type: Literal["Award"] = "Award"
    name: str = "Awards"


class DrawPhase(_StructureModel):
    type: Literal["Draw"] = "Draw"
    name: str = "Draw"
    incoming_slots: Optional[int] = Field(default=None, ge=1)


PhaseDefinition = Annotated[
    Union[RoundRobinPhase, PoolsPhase, BracketPhase, AwardPhase, DrawPhase],
    Field(discriminator="type"),
]


class AdvancementRuleDefinition(_StructureModel):
    """fromPhase/toPhase are 1-based indexes into TemplateStructure.phases.

    With fromPool, fromRank is the finish position inside that pool; otherwise it
    is the overall exit position of the source phase.
    """

    from_phase: int = Field(ge=1)
    from_rank: int = Field(ge=1)
    from_pool: Optional[str] = None
    to_phase: int = Field(ge=1)
    to_slot: int = Field(ge=1)


class TemplateStructure(_StructureModel):
    phases: List[PhaseDefinition] = Field(min_length=1)
    advancement_rules: List[AdvancementRuleDefinition] = Field(default_factory=list)
    seeding_strategy: SeedingStrategy = "Snake"

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)


def _normalize_flexible(raw: Dict[str, Any]) -> Dict[str, Any]:
    if "generateBracket" in raw:
        config = raw["generateBracket"] or {}
        bracket_type = config.get("type", "SingleElimination")
        if bracket_type not in ("SingleElimination", "DoubleElimination"):
            raise InvalidStructure(f"Unsupported generateBracket type '{bracket_type}'")
        single = bracket_type == "SingleElimination"
        return {
            "phases": [
                {
                    "type": "Bracket",
                    "name": "Bracket",
                    "elimination": "Single" if single else "Double",
                    "splitRounds": single,
                    "includeConsolation": bool(config.get("consolation", False)),
                }
            ]
        }

    if "generateFormat" in raw:
        config = raw["generateFormat"] or {}
        if "poolSize" not in config:
            raise InvalidStructure("generateFormat requires poolSize")
        return {
            "phases": [
                {
                    "type": "Pools",
                    "name": "Pool Play",
                    "poolSize": config["poolSize"],
                    "advancePerPool": config.get("advancePerPool", 1),
                },
                {"type": "Bracket", "name": "Playoffs", "elimination": "Single", "splitRounds": True},
            ]
        }

    raise InvalidStructure("Flexible structure needs generateBracket or generateFormat")


def parse_structure(raw: Union[str, Dict[str, Any], TemplateStructure]) -> TemplateStructure:
    """Parse structure_json (string or already-decoded dict) into a TemplateStructure.

    Raises:
        InvalidStructure: malformed JSON or a payload that does not match the tree
    """
    if isinstance(raw, TemplateStructure):
        return raw

    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as e:
            raise InvalidStructure(f"structure_json is not valid JSON: {e}")

    if not isinstance(raw, dict):
        raise InvalidStructure("structure_json must be a JSON object")

    if raw.get("isFlexible"):
        raw = _normalize_flexible(raw)

    try:
        return TemplateStructure.model_validate(raw)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise InvalidStructure(problems)
