"""
Canonical report model shared by the normalizer, the assembler and the API.

Every physical quantity is a CanonicalMetric. A value of None means the
quantity was not available; it is never replaced by zero.
"""
from typing import Optional, Literal, Union

from pydantic import BaseModel, Field


StageName = Literal["inputs", "basic", "stage3", "stage4", "stage6", "stage7", "stage8"]

LIFE_STAGES = ("juvenile", "fingerling", "growout")


class CanonicalMetric(BaseModel):
    value: Optional[float] = None
    unit: str = ""

    model_config = {"frozen": True}


class MassBalanceGroup(BaseModel):
    saturation: CanonicalMetric = Field(default_factory=lambda: CanonicalMetric(unit="mg/L"))
    effluent: CanonicalMetric = Field(default_factory=lambda: CanonicalMetric(unit="mg/L"))
    production_mg_day: CanonicalMetric = Field(default_factory=lambda: CanonicalMetric(unit="mg/day"))
    production_kg_day: CanonicalMetric = Field(default_factory=lambda: CanonicalMetric(unit="kg/day"))
    threshold: CanonicalMetric = Field(default_factory=lambda: CanonicalMetric(unit="mg/L"))


class MassBalance(BaseModel):
    oxygen: MassBalanceGroup = Field(default_factory=MassBalanceGroup)
    tss: MassBalanceGroup = Field(default_factory=MassBalanceGroup)
    co2: MassBalanceGroup = Field(default_factory=MassBalanceGroup)
    tan: MassBalanceGroup = Field(default_factory=MassBalanceGroup)


class InputParameters(BaseModel):
    """Project input parameters keyed by canonical field name."""
    fields: dict[str, CanonicalMetric] = Field(default_factory=dict)
    species: Optional[str] = None


class FlowPair(BaseModel):
    l_per_min: CanonicalMetric = Field(default_factory=lambda: CanonicalMetric(unit="L/min"))
    m3_per_hr: CanonicalMetric = Field(default_factory=lambda: CanonicalMetric(unit="m³/hr"))


class LifeStageFlows(BaseModel):
    oxygen: FlowPair = Field(default_factory=FlowPair)
    co2: FlowPair = Field(default_factory=FlowPair)
    tss: FlowPair = Field(default_factory=FlowPair)
    tan: FlowPair = Field(default_factory=FlowPair)


class LimitingFactor(BaseModel):
    factor: Optional[str] = None
    flow_l_per_min: CanonicalMetric = Field(default_factory=lambda: CanonicalMetric(unit="L/min"))
    flow_m3_per_hr: CanonicalMetric = Field(default_factory=lambda: CanonicalMetric(unit="m³/hr"))


class Stage6Result(BaseModel):
    flows: dict[str, LifeStageFlows] = Field(default_factory=dict)
    limiting_factors: dict[str, LimitingFactor] = Field(default_factory=dict)


class Stage7Result(BaseModel):
    biofilter: dict[str, CanonicalMetric] = Field(default_factory=dict)
    shape: Optional[str] = None
    project_id: Optional[str] = None
    status: Optional[str] = None
    biofilter_parameter_count: int = 0
    life_stages: dict[str, dict[str, CanonicalMetric]] = Field(default_factory=dict)


class Stage8Result(BaseModel):
    life_stages: dict[str, dict[str, CanonicalMetric]] = Field(default_factory=dict)


class GenericStageResult(BaseModel):
    """Stage 3 / stage 4 output: numeric fields grouped by life stage."""
    life_stages: dict[str, dict[str, CanonicalMetric]] = Field(default_factory=dict)


StageResult = Union[Stage6Result, Stage7Result, Stage8Result, GenericStageResult]


class NormalizedSubReport(BaseModel):
    stage: StageName
    malformed: bool = False
    mass_balance: Optional[MassBalance] = None
    inputs: Optional[InputParameters] = None
    result: Optional[StageResult] = None


class Diagnostic(BaseModel):
    code: str
    stage: Optional[str] = None
    message: str
    severity: Literal["info", "warning", "error"] = "warning"


class NormalizedReport(BaseModel):
    project_id: Optional[str] = None
    project_type: Literal["basic", "advanced"] = "advanced"
    inputs: Optional[InputParameters] = None
    mass_balance: Optional[MassBalance] = None
    stage_results: dict[str, StageResult] = Field(default_factory=dict)
    diagnostics: list[Diagnostic] = Field(default_factory=list)
