import math
import logging
from typing import Any, Mapping, NamedTuple, Optional

from models.report import (
    LIFE_STAGES,
    CanonicalMetric,
    FlowPair,
    GenericStageResult,
    InputParameters,
    LifeStageFlows,
    LimitingFactor,
    MassBalance,
    MassBalanceGroup,
    NormalizedSubReport,
    Stage6Result,
    Stage7Result,
    Stage8Result,
)

logger = logging.getLogger(__name__)

MG_PER_KG = 1_000_000
MINUTES_PER_HOUR = 60


class Alias(NamedTuple):
    path: tuple
    scale: float = 1.0


class FieldSpec(NamedTuple):
    unit: str
    aliases: tuple
    default: Optional[float] = None


def _a(*path: str, scale: float = 1.0) -> Alias:
    return Alias(tuple(path), scale)


# ---------------------------------------------------------------------------
# Alias tables
#
# Aliases are tried in order; the first numeric hit wins. A string alias is a
# single top-level key (stage 7 keys legitimately contain dots), a multi-part
# alias walks nested objects. Any hit that is itself a {"value": ...} object
# is unwrapped.
# ---------------------------------------------------------------------------

MASS_BALANCE_ALIASES: dict[str, dict[str, FieldSpec]] = {
    "oxygen": {
        "saturation": FieldSpec("mg/L", (
            _a("o2_saturation_adjusted_mg_l"),
            _a("o2_saturation_adjusted"),
            _a("oxygen", "saturationAdjustedMgL"),
        )),
        "threshold": FieldSpec("mg/L", (
            _a("min_do_use_mg_l"),
            _a("min_do_mg_l"),
            _a("oxygen", "MINDO_use"),
        )),
        "effluent": FieldSpec("mg/L", (
            _a("oxygen_effluent_concentration_mg_l"),
            _a("oxygen_effluent_concentration"),
            _a("oxygen", "effluentMgL"),
            _a("oxygen", "effluentConc"),
        )),
        "production_mg_day": FieldSpec("mg/day", (
            _a("oxygen_consumption_production_mg_per_day"),
            _a("oxygen_consumption_production"),
            _a("oxygen", "consMgPerDay"),
            _a("oxygen", "prodMgPerDay"),
        )),
    },
    "tss": {
        "threshold": FieldSpec("mg/L", (
            _a("max_tss_use_mg_l"),
            _a("tss", "MAXTSS_use"),
        )),
        "effluent": FieldSpec("mg/L", (
            _a("tss_effluent_concentration_mg_l"),
            _a("tss_effluent_concentration"),
            _a("tss", "effluentMgL"),
            _a("tss", "effluentConc"),
        )),
        "production_mg_day": FieldSpec("mg/day", (
            _a("tss_production_mg"),
            _a("tss_production_mg_per_day"),
            _a("tss_production"),
            _a("tss", "prodMgPerDay"),
        )),
    },
    "co2": {
        "threshold": FieldSpec("mg/L", (
            _a("max_co2_use_mg_l"),
            _a("co2", "MAXCO2_use"),
        )),
        "effluent": FieldSpec("mg/L", (
            _a("co2_effluent_concentration_mg_l"),
            _a("co2_effluent_concentration"),
            _a("co2", "effluentMgL"),
            _a("co2", "effluentConc"),
        )),
        "production_mg_day": FieldSpec("mg/day", (
            _a("co2_production_mg_per_day"),
            _a("co2_production"),
            _a("co2", "prodMgPerDay"),
        )),
    },
    "tan": {
        "threshold": FieldSpec("mg/L", (
            _a("max_tan_use_mg_l"),
            _a("tan", "MAXTAN_use"),
        )),
        "effluent": FieldSpec("mg/L", (
            _a("tan_effluent_concentration_mg_l"),
            _a("tan_effluent_concentration"),
            _a("tan", "effluentMgL"),
            _a("tan", "effluentConc"),
        )),
        "production_mg_day": FieldSpec("mg/day", (
            _a("tan_production_mg_per_day"),
            _a("tan_production"),
            _a("tan", "prodMgPerDay"),
        )),
    },
}


def _param(*keys: str) -> tuple:
    """Input parameters arrive either wrapped in "parameters" or flat."""
    return tuple(_a("parameters", k) for k in keys) + tuple(_a(k) for k in keys)


INPUT_FIELDS: dict[str, FieldSpec] = {
    "water_temperature": FieldSpec("°C", _param("temperature", "water_temp", "waterTemp"), 25.0),
    "salinity": FieldSpec("ppt", _param("salinity"), 0.0),
    "site_elevation": FieldSpec("m", _param("elevation_m", "siteElevation"), 0.0),
    "ph": FieldSpec("", _param("ph", "pH"), 7.0),
    "min_do": FieldSpec("mg/L", _param("dissolved_O2_min", "minDO"), 6.0),
    "max_co2": FieldSpec("mg/L", _param("dissolved_CO2_max", "maxCO2"), 10.0),
    "max_tan": FieldSpec("mg/L", _param("TAN_max", "maxTAN"), 1.0),
    "max_tss": FieldSpec("mg/L", _param("TSS_max", "minTSS"), 20.0),
    "tank_volume": FieldSpec("m³", _param("tanks_volume_each", "tankVolume"), 100.0),
    "number_of_tanks": FieldSpec("", _param("number_of_tanks", "numTanks"), 1.0),
    "target_fish_weight": FieldSpec("g", _param("target_market_fish_size", "targetFishWeight"), 500.0),
    "target_fish_count": FieldSpec("", _param("target_max_stocking_density", "targetNumFish"), 1000.0),
    "feed_rate": FieldSpec("%", _param("target_feed_rate", "feedRate"), 2.0),
    "feed_protein": FieldSpec("%", _param("feed_protein_percent", "feedProtein"), 40.0),
    "feed_conversion_ratio": FieldSpec("", _param("feed_conversion_ratio", "feedConversionRatio")),
    "o2_absorption": FieldSpec("%", _param("oxygen_injection_efficiency", "o2Absorption"), 80.0),
    "co2_removal": FieldSpec("%", _param("co2_removal_efficiency", "co2Removal"), 70.0),
    "tss_removal": FieldSpec("%", _param("tss_removal_efficiency", "tssRemoval"), 80.0),
    "tan_removal": FieldSpec("%", _param("tan_removal_efficiency", "tanRemoval"), 60.0),
}
for _n in (1, 2, 3):
    INPUT_FIELDS[f"fcr_stage{_n}"] = FieldSpec("", _param(f"fcr_stage{_n}", f"FCR_Stage{_n}"))
    INPUT_FIELDS[f"feed_protein_stage{_n}"] = FieldSpec(
        "%", _param(f"feed_protein_stage{_n}", f"FeedProtein_Stage{_n}"))
    INPUT_FIELDS[f"mortality_stage{_n}"] = FieldSpec(
        "%", _param(f"estimated_mortality_stage{_n}", f"Estimated_mortality_Stage{_n}"))

FLOW_PARAMETERS = ("oxygen", "co2", "tss", "tan")

# Stage 6 keys its life stages by prefix: bare for juvenile, stageN_ otherwise.
STAGE6_PREFIXES: dict[str, tuple[str, ...]] = {
    "juvenile": ("", "stage1_"),
    "fingerling": ("stage2_",),
    "growout": ("stage3_",),
}

STAGE7_BIOFILTER_FIELDS: dict[str, FieldSpec] = {
    "vtr_used": FieldSpec("g/m³/day", (
        _a("bioVTR_use"), _a("bio.VTR_use"), _a("bio_VTR_use"),
        _a("biofilter_parameters", "VTR_use"),
    )),
    "vtr_compensation": FieldSpec("", (
        _a("bio.VTR_compensation"), _a("bio_VTR_compensation"), _a("bioVTR_compensation"),
        _a("biofilter_parameters", "VTR_compensation"),
    )),
    "temperature_used": FieldSpec("°C", (
        _a("temperature_used"), _a("temp_used"),
        _a("biofilter_parameters", "temperature_used"),
    ), 25.0),
    "temp_compensation_factor": FieldSpec("", (
        _a("temp_compensation_factor"),
        _a("biofilter_parameters", "temp_compensation_factor"),
    )),
}

# (canonical field, raw key template, unit)
STAGE7_LIFE_STAGE_FIELDS = (
    ("daily_tan", "DailyTAN_gday_Stage{n}", "g/day"),
    ("daily_tan_passive", "DailyTANpassive_gday_Stage{n}", "g/day"),
    ("design_vtr", "design.VTR_Stage{n}", "g/m³/day"),
    ("media_volume", "biomedia.Required_Stage{n}", "m³"),
    ("mbbr_volume", "MBBR.vol_Stage{n}", "m³"),
    ("round_diameter", "MBBR.dia_Stage{n}", "m"),
    ("round_height", "MBBR.high_Stage{n}", "m"),
    ("rect_height", "MBBR.highRect_Stage{n}", "m"),
    ("rect_width", "MBBR.wid_Stage{n}", "m"),
    ("rect_length", "MBBR.len_Stage{n}", "m"),
    ("air_mixing", "MBBR.air_Stage{n}", "m³"),
    ("air_spare", "MBBR.air_Stage{n}_spare", "m³"),
    ("sump_3min", "sump.Size_3min_Stage{n}", "m³"),
    ("sump_5min", "sump.Size_5min_Stage{n}", "m³"),
    ("sump_total", "sump.totvol_Stage{n}", "m³"),
    ("system_total", "vol.TotalSyst_Stage{n}", "m³"),
)

STAGE8_LIFE_STAGE_FIELDS = (
    ("limiting_flow_rate", "limitingFlowRateStage{n}", "L/min"),
    ("flow_l_per_s", "Q_l_s_Stage{n}", "L/s"),
    ("pump_head", "pump_Head_Stage{n}", "m"),
    ("pump_efficiency", "n_Pump_Stage{n}", ""),
    ("motor_efficiency", "n_Motor_Stage{n}", ""),
    ("hydraulic_power", "pump_HydPower_Stage{n}", "kW"),
    ("shaft_power", "pump_PowerkW_Stage{n}", "kW"),
)


def _stage7_spec(template: str, n: int, unit: str) -> FieldSpec:
    key = template.format(n=n)
    short = key.replace(f"_Stage{n}", "")
    return FieldSpec(unit, (
        _a(key),
        _a(key.replace(".", "_")),
        _a(f"stage{n}", short),
    ))


def _stage8_spec(template: str, n: int, unit: str) -> FieldSpec:
    key = template.format(n=n)
    return FieldSpec(unit, (
        _a(f"stage{n}", key),
        _a("data", f"stage{n}", key),
        _a(key),
    ))


# ---------------------------------------------------------------------------
# Lookup helpers
# ---------------------------------------------------------------------------


def _dig(payload: Mapping, path: tuple) -> Any:
    node: Any = payload
    for key in path:
        if not isinstance(node, Mapping) or key not in node:
            return None
        node = node[key]
    if isinstance(node, Mapping):
        node = node.get("value")
    return node


def _to_number(raw: Any) -> Optional[float]:
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        num = float(raw)
    elif isinstance(raw, str):
        try:
            num = float(raw.replace(",", "").strip())
        except ValueError:
            return None
    else:
        return None
    if math.isnan(num) or math.isinf(num):
        return None
    return num


def _to_text(raw: Any) -> Optional[str]:
    if raw is None or isinstance(raw, (Mapping, list)):
        return None
    text = str(raw).strip()
    return text or None


def resolve_field(payload: Mapping, spec: FieldSpec, apply_defaults: bool = True) -> CanonicalMetric:
    for alias in spec.aliases:
        num = _to_number(_dig(payload, alias.path))
        if num is not None:
            return CanonicalMetric(value=num * alias.scale, unit=spec.unit)
    default = spec.default if apply_defaults else None
    return CanonicalMetric(value=default, unit=spec.unit)


def _first_text(payload: Mapping, *paths: tuple) -> Optional[str]:
    for path in paths:
        node: Any = payload
        for key in path:
            if not isinstance(node, Mapping) or key not in node:
                node = None
                break
            node = node[key]
        text = _to_text(node)
        if text is not None:
            return text
    return None


def per_kilogram(mg_per_day: CanonicalMetric) -> CanonicalMetric:
    if mg_per_day.value is None:
        return CanonicalMetric(value=None, unit="kg/day")
    return CanonicalMetric(value=mg_per_day.value / MG_PER_KG, unit="kg/day")


# ---------------------------------------------------------------------------
# Per-stage normalizers
# ---------------------------------------------------------------------------


def _normalize_basic(payload: Mapping, apply_defaults: bool = True) -> NormalizedSubReport:
    groups = {}
    for name, specs in MASS_BALANCE_ALIASES.items():
        values = {field: resolve_field(payload, spec, apply_defaults) for field, spec in specs.items()}
        group = MassBalanceGroup(**values)
        groups[name] = group.model_copy(update={"production_kg_day": per_kilogram(group.production_mg_day)})
    return NormalizedSubReport(stage="basic", mass_balance=MassBalance(**groups))


def _normalize_inputs(payload: Mapping, apply_defaults: bool = True) -> NormalizedSubReport:
    fields = {name: resolve_field(payload, spec, apply_defaults) for name, spec in INPUT_FIELDS.items()}
    species = _first_text(
        payload,
        ("parameters", "species"), ("species",), ("targetSpecies",), ("species_names",),
    )
    return NormalizedSubReport(stage="inputs", inputs=InputParameters(fields=fields, species=species))


def _stage6_flow_spec(prefix: str, parameter: str, column: str, unit: str) -> FieldSpec:
    key = f"{prefix}{parameter}"
    aliases = [_a("step_6", key, column), _a(key, column)]
    if column == "m3_per_hr":
        aliases += [
            _a("step_6", key, "m3_per_min", scale=MINUTES_PER_HOUR),
            _a(key, "m3_per_min", scale=MINUTES_PER_HOUR),
        ]
    return FieldSpec(unit, tuple(aliases))


def _has_life_stage(payload: Mapping, prefixes: tuple) -> bool:
    roots = [payload]
    if isinstance(payload.get("step_6"), Mapping):
        roots.insert(0, payload["step_6"])
    return any(
        isinstance(root.get(f"{prefix}{p}"), Mapping)
        for root in roots for prefix in prefixes for p in FLOW_PARAMETERS
    )


def _resolve_flow_pair(payload: Mapping, prefixes: tuple, parameter: str, apply_defaults: bool) -> FlowPair:
    pair = {}
    for column, unit in (("l_per_min", "L/min"), ("m3_per_hr", "m³/hr")):
        aliases: tuple = ()
        for prefix in prefixes:
            aliases += _stage6_flow_spec(prefix, parameter, column, unit).aliases
        pair[column] = resolve_field(payload, FieldSpec(unit, aliases), apply_defaults)
    return FlowPair(**pair)


def _normalize_stage6(payload: Mapping, apply_defaults: bool = True) -> NormalizedSubReport:
    flows: dict[str, LifeStageFlows] = {}
    for life_stage, prefixes in STAGE6_PREFIXES.items():
        if life_stage != "juvenile" and not _has_life_stage(payload, prefixes):
            continue
        if life_stage == "juvenile" and not payload:
            continue
        flows[life_stage] = LifeStageFlows(**{
            p: _resolve_flow_pair(payload, prefixes, p, apply_defaults) for p in FLOW_PARAMETERS
        })

    limiting: dict[str, LimitingFactor] = {}
    lf_payload = payload.get("limiting_factor")
    if isinstance(lf_payload, Mapping):
        for n, life_stage in enumerate(LIFE_STAGES, start=1):
            entry = lf_payload.get(f"stage{n}")
            if not isinstance(entry, Mapping):
                continue
            limiting[life_stage] = LimitingFactor(
                factor=_first_text(entry, ("factor",), ("limiting_factor",)),
                flow_l_per_min=resolve_field(entry, FieldSpec("L/min", (
                    _a("flow_l_per_min"), _a("l_per_min"),
                )), apply_defaults),
                flow_m3_per_hr=resolve_field(entry, FieldSpec("m³/hr", (
                    _a("flow_m3_per_hr"), _a("m3_per_hr"),
                )), apply_defaults),
            )
    return NormalizedSubReport(stage="stage6", result=Stage6Result(flows=flows, limiting_factors=limiting))


def _normalize_stage7(payload: Mapping, apply_defaults: bool = True) -> NormalizedSubReport:
    biofilter = {
        name: resolve_field(payload, spec, apply_defaults)
        for name, spec in STAGE7_BIOFILTER_FIELDS.items()
    }
    life_stages = {}
    for n, life_stage in enumerate(LIFE_STAGES, start=1):
        life_stages[life_stage] = {
            field: resolve_field(payload, _stage7_spec(template, n, unit), apply_defaults)
            for field, template, unit in STAGE7_LIFE_STAGE_FIELDS
        }
    params = payload.get("biofilter_parameters")
    result = Stage7Result(
        biofilter=biofilter,
        shape=_first_text(payload, ("bio.shape",), ("bio_shape",), ("biofilter_parameters", "shape")),
        project_id=_first_text(payload, ("project_id",)),
        status=_first_text(payload, ("status",)),
        biofilter_parameter_count=len(params) if isinstance(params, Mapping) else 0,
        life_stages=life_stages,
    )
    return NormalizedSubReport(stage="stage7", result=result)


def _normalize_stage8(payload: Mapping, apply_defaults: bool = True) -> NormalizedSubReport:
    life_stages = {}
    for n, life_stage in enumerate(LIFE_STAGES, start=1):
        specs = {field: _stage8_spec(template, n, unit) for field, template, unit in STAGE8_LIFE_STAGE_FIELDS}
        values = {field: resolve_field(payload, spec, apply_defaults) for field, spec in specs.items()}
        nested = isinstance(payload.get(f"stage{n}"), Mapping)
        if nested or any(m.value is not None for m in values.values()):
            life_stages[life_stage] = values
    return NormalizedSubReport(stage="stage8", result=Stage8Result(life_stages=life_stages))


def _normalize_generic(stage: str):
    def handler(payload: Mapping, apply_defaults: bool = True) -> NormalizedSubReport:
        source = payload.get("data") if isinstance(payload.get("data"), Mapping) else payload
        life_stages = {}
        for n, life_stage in enumerate(LIFE_STAGES, start=1):
            entry = source.get(f"stage{n}")
            if not isinstance(entry, Mapping):
                continue
            fields = {}
            for key in entry:
                num = _to_number(_dig(entry, (key,)))
                if num is not None:
                    fields[key] = CanonicalMetric(value=num, unit="")
            life_stages[life_stage] = fields
        return NormalizedSubReport(stage=stage, result=GenericStageResult(life_stages=life_stages))
    return handler


_NORMALIZERS = {
    "inputs": _normalize_inputs,
    "basic": _normalize_basic,
    "stage3": _normalize_generic("stage3"),
    "stage4": _normalize_generic("stage4"),
    "stage6": _normalize_stage6,
    "stage7": _normalize_stage7,
    "stage8": _normalize_stage8,
}

STAGE_NAMES = tuple(_NORMALIZERS)


def normalize(stage_name: str, raw_payload: Any) -> NormalizedSubReport:
    """Map one stage's raw payload onto the canonical field set.

    A payload that is not a JSON object yields an all-null sub-report flagged
    as malformed; deciding whether that is fatal is up to the caller.
    """
    handler = _NORMALIZERS.get(stage_name)
    if handler is None:
        raise ValueError(f"Unknown stage: {stage_name!r}")
    if not isinstance(raw_payload, Mapping):
        logger.warning(
            "Malformed %s payload of type %s; normalizing to an all-null sub-report",
            stage_name, type(raw_payload).__name__,
        )
        return handler({}, apply_defaults=False).model_copy(update={"malformed": True})
    return handler(raw_payload)
