"""
Report assembly: merges normalized stage outputs for one project into a
NormalizedReport and lays the report out as an ordered list of sections.
"""
import logging
from typing import Iterable, Mapping, Optional, Union

from models.document import Section, Subsection, Table
from models.report import (
    LIFE_STAGES,
    CanonicalMetric,
    Diagnostic,
    GenericStageResult,
    LifeStageFlows,
    LimitingFactor,
    MassBalance,
    NormalizedReport,
    NormalizedSubReport,
    Stage6Result,
    Stage7Result,
    Stage8Result,
)

logger = logging.getLogger(__name__)

REQUIRED_STAGES = ("basic", "stage6")
RESULT_STAGES = ("stage3", "stage4", "stage6", "stage7", "stage8")

LIFE_STAGE_NUMBERS = {name: n for n, name in enumerate(LIFE_STAGES, start=1)}
LIFE_STAGE_TITLES = {
    "juvenile": "Stage 1 (Juvenile) Results",
    "fingerling": "Stage 2 (Fingerling) Results",
    "growout": "Stage 3 (Growout) Results",
}

# Units written directly after the number, without a space.
_TIGHT_UNITS = ("°C", "%")


def _fmt_num(val, decimals=2) -> str:
    if val is None:
        return "-"
    try:
        v = float(val)
        return f"{v:,.{decimals}f}"
    except (ValueError, TypeError):
        return str(val)


def _fmt_plain(val) -> str:
    """Input parameters print the way they were entered: 25, 7.5, 1,000."""
    if val is None:
        return "-"
    v = float(val)
    if v.is_integer():
        return f"{int(v):,}"
    return f"{v:,.4f}".rstrip("0").rstrip(".")


def _with_unit(text: str, unit: str) -> str:
    if text == "-" or not unit:
        return text
    if unit in _TIGHT_UNITS:
        return f"{text}{unit}"
    return f"{text} {unit}"


def format_metric(metric: Optional[CanonicalMetric], decimals: int = 2) -> str:
    if metric is None:
        return "-"
    return _with_unit(_fmt_num(metric.value, decimals), metric.unit)


def _format_input(metric: Optional[CanonicalMetric]) -> str:
    if metric is None:
        return "-"
    return _with_unit(_fmt_plain(metric.value), metric.unit)


# ---------------------------------------------------------------------------
# assemble
# ---------------------------------------------------------------------------


def _diagnostic(code: str, stage: Optional[str], message: str, severity: str = "warning") -> Diagnostic:
    return Diagnostic(code=code, stage=stage, message=message, severity=severity)


def assemble(
    normalized_stages: Union[Mapping[str, NormalizedSubReport], Iterable[NormalizedSubReport]],
    project_id: Optional[str] = None,
    project_type: str = "advanced",
) -> NormalizedReport:
    """
    Merge sub-reports by stage name into one report.

    A malformed sub-report never replaces a well-formed one for the same
    stage. Malformed optional stages are dropped; malformed required stages
    are kept so their sections still render with placeholders. stage8 is
    dropped when stage7 is not present.
    """
    if isinstance(normalized_stages, Mapping):
        normalized_stages = normalized_stages.values()

    merged: dict[str, NormalizedSubReport] = {}
    for sub in normalized_stages:
        if sub is None:
            continue
        existing = merged.get(sub.stage)
        if existing is not None and not existing.malformed and sub.malformed:
            logger.info("Keeping earlier %s result over a malformed duplicate", sub.stage)
            continue
        merged[sub.stage] = sub

    diagnostics: list[Diagnostic] = []
    for stage, sub in list(merged.items()):
        if not sub.malformed:
            continue
        if stage in REQUIRED_STAGES:
            diagnostics.append(_diagnostic(
                "malformed_payload", stage,
                f"{stage} payload was malformed; values are shown as unavailable",
            ))
        else:
            diagnostics.append(_diagnostic(
                "malformed_payload", stage,
                f"{stage} payload was malformed; section omitted",
            ))
            del merged[stage]

    if "stage8" in merged and "stage7" not in merged:
        logger.warning("stage8 result present without stage7; dropping stage8")
        diagnostics.append(_diagnostic(
            "dependency_violation", "stage8",
            "Pump sizing requires the bio filter stage; stage8 omitted",
        ))
        del merged["stage8"]

    basic = merged.get("basic")
    inputs = merged.get("inputs")
    stage_results = {
        stage: merged[stage].result
        for stage in RESULT_STAGES
        if stage in merged and merged[stage].result is not None
    }
    return NormalizedReport(
        project_id=project_id,
        project_type="advanced" if project_type == "advanced" else "basic",
        inputs=inputs.inputs if inputs is not None else None,
        mass_balance=basic.mass_balance if basic is not None else None,
        stage_results=stage_results,
        diagnostics=diagnostics,
    )


# ---------------------------------------------------------------------------
# build_sections
# ---------------------------------------------------------------------------


def _table(rows) -> Table:
    return Table(rows=list(rows))


def _input_sections(report: NormalizedReport) -> list[Section]:
    fields = report.inputs.fields
    f = fields.get

    water_quality = [
        ("Water Temperature", _format_input(f("water_temperature"))),
        ("pH", _format_input(f("ph"))),
        ("Minimum DO", _format_input(f("min_do"))),
        ("Maximum CO2", _format_input(f("max_co2"))),
        ("Maximum TAN", _format_input(f("max_tan"))),
        ("Maximum TSS", _format_input(f("max_tss"))),
        ("Salinity", _format_input(f("salinity"))),
        ("Site Elevation", _format_input(f("site_elevation"))),
    ]
    production = []
    if report.inputs.species:
        production.append(("Species", report.inputs.species))
    production += [
        ("Tank Volume", _format_input(f("tank_volume"))),
        ("Number of Tanks", _format_input(f("number_of_tanks"))),
        ("Target Fish Weight", _format_input(f("target_fish_weight"))),
        ("Number of Fish", _format_input(f("target_fish_count"))),
        ("Feed Rate", _format_input(f("feed_rate"))),
        ("Feed Protein", _format_input(f("feed_protein"))),
        ("Feed Conversion Ratio", _format_input(f("feed_conversion_ratio"))),
    ]
    stage_wise = [(f"FCR Stage {n}", _format_input(f(f"fcr_stage{n}"))) for n in (1, 2, 3)]
    stage_wise += [(f"Feed Protein Stage {n}", _format_input(f(f"feed_protein_stage{n}"))) for n in (1, 2, 3)]
    stage_wise += [(f"Estimated Mortality Stage {n}", _format_input(f(f"mortality_stage{n}"))) for n in (1, 2, 3)]
    efficiency = [
        ("O2 Absorption", _format_input(f("o2_absorption"))),
        ("CO2 Removal", _format_input(f("co2_removal"))),
        ("TAN Removal", _format_input(f("tan_removal"))),
        ("TSS Removal", _format_input(f("tss_removal"))),
    ]
    return [Section(title="Project Input Parameters", subsections=[
        Subsection(title="Water Quality Parameters", table=_table(water_quality)),
        Subsection(title="Production Parameters", table=_table(production)),
        Subsection(title="Stage-wise Parameters", table=_table(stage_wise)),
        Subsection(title="System Efficiency Parameters", table=_table(efficiency)),
    ])]


def mass_balance_rows(mb: MassBalance) -> list[tuple[str, str]]:
    oxy, tss, co2, tan = mb.oxygen, mb.tss, mb.co2, mb.tan
    return [
        ("Oxygen - O₂ Saturation Adjusted", format_metric(oxy.saturation)),
        ("Oxygen - Min DO (use)", format_metric(oxy.threshold)),
        ("Oxygen - Effluent Conc.", format_metric(oxy.effluent)),
        ("Oxygen - Consumption (mg/day)", format_metric(oxy.production_mg_day, 0)),
        ("Oxygen - Consumption (kg/day)", format_metric(oxy.production_kg_day)),
        ("TSS - Max TSS (use)", format_metric(tss.threshold)),
        ("TSS - Effluent Conc.", format_metric(tss.effluent)),
        ("TSS - Production (mg/day)", format_metric(tss.production_mg_day, 0)),
        ("TSS - Production (kg/day)", format_metric(tss.production_kg_day)),
        ("CO2 - Max CO2 (use)", format_metric(co2.threshold)),
        ("CO2 - Effluent Conc.", format_metric(co2.effluent)),
        ("CO2 - Production (mg/day)", format_metric(co2.production_mg_day, 0)),
        ("CO2 - Production (kg/day)", format_metric(co2.production_kg_day)),
        ("TAN - Max TAN (use)", format_metric(tan.threshold)),
        ("TAN - Effluent Conc.", format_metric(tan.effluent)),
        ("TAN - Production (mg/day)", format_metric(tan.production_mg_day, 0)),
        ("TAN - Production (kg/day)", format_metric(tan.production_kg_day)),
    ]


def _flow_rows(flows: LifeStageFlows) -> list[tuple[str, str]]:
    rows = []
    for label, pair in (("Oxygen", flows.oxygen), ("CO2", flows.co2), ("TSS", flows.tss), ("TAN", flows.tan)):
        rows.append((f"{label} - L/min", format_metric(pair.l_per_min)))
        rows.append((f"{label} - m3/hr", format_metric(pair.m3_per_hr)))
    return rows


def _limiting_rows(lf: LimitingFactor) -> list[tuple[str, str]]:
    return [
        ("Factor", lf.factor or "-"),
        ("Flow (L/min)", format_metric(lf.flow_l_per_min)),
        ("Flow (m3/hr)", format_metric(lf.flow_m3_per_hr)),
    ]


def _stage6_sections(result: Stage6Result, project_type: str) -> list[Section]:
    if project_type == "basic":
        juvenile = result.flows.get("juvenile", LifeStageFlows())
        sections = [Section(title="Controlling Flow Rate: Juvenile", tables=[_table(_flow_rows(juvenile))])]
        lf = result.limiting_factors.get("juvenile")
        if lf is not None:
            sections.append(Section(title="Limiting Factor (Juvenile)", tables=[_table(_limiting_rows(lf))]))
        return sections

    flows = dict(result.flows) or {"juvenile": LifeStageFlows()}
    subsections = [
        Subsection(title=f"Stage {LIFE_STAGE_NUMBERS[name]} Results", table=_table(_flow_rows(flows[name])))
        for name in LIFE_STAGES if name in flows
    ]
    sections = [Section(title="Stage 6: Advanced Calculation Results", subsections=subsections)]
    if result.limiting_factors:
        sections.append(Section(title="Limiting Factor Analysis", subsections=[
            Subsection(title=f"Stage {LIFE_STAGE_NUMBERS[name]}",
                       table=_table(_limiting_rows(result.limiting_factors[name])))
            for name in LIFE_STAGES if name in result.limiting_factors
        ]))
    return sections


STAGE7_ROW_LABELS = (
    ("daily_tan", "Daily TAN production rate (g/day)"),
    ("daily_tan_passive", "Daily TAN after passive nitrification (g/day)"),
    ("design_vtr", "Design VTR"),
    ("media_volume", "Media volume required (m³)"),
    ("mbbr_volume", "MBBR volume (m³)"),
    ("round_diameter", "Round vessel - vessel diameter (m)"),
    ("round_height", "Round vessel - vessel height (m)"),
    ("rect_height", "Rectangular vessel - vessel height (m)"),
    ("rect_width", "Rectangular vessel - vessel width (m)"),
    ("rect_length", "Rectangular vessel - vessel length (m)"),
    ("air_mixing", "Aeration - volume air required for mixing (x5 vol) (m³)"),
    ("air_spare", "Aeration - volume air required (with 50% spare capacity) (m³)"),
    ("sump_3min", "Sump sizing - 3 min full flow (m³)"),
    ("sump_5min", "Sump sizing - 5 min full flow (m³)"),
    ("sump_total", "Sump sizing - sump total volume (m³)"),
    ("system_total", "Sump sizing - total system volume (m³)"),
)

STAGE8_ROW_LABELS = (
    ("limiting_flow_rate", "Limiting Flow Rate"),
    ("flow_l_per_s", "Q_l.s_Stage{n}"),
    ("pump_head", "Total Dynamic Head Pressure"),
    ("pump_efficiency", "Pump Efficiency"),
    ("motor_efficiency", "Motor Efficiency"),
    ("hydraulic_power", "Hydraulic Power"),
    ("shaft_power", "Required Shaft Power"),
)


def _stage7_sections(result: Stage7Result) -> list[Section]:
    bio = result.biofilter
    biofilter_rows = [
        ("VTR Used", format_metric(bio.get("vtr_used"))),
        ("VTR Compensation", format_metric(bio.get("vtr_compensation"))),
        ("Shape", result.shape or "N/A"),
        ("Temperature Used", format_metric(bio.get("temperature_used"))),
        ("Temp Compensation Factor", format_metric(bio.get("temp_compensation_factor"))),
    ]
    overview_rows = [
        ("Project ID", result.project_id or "N/A"),
        ("Status", result.status or "N/A"),
        ("Biofilter Parameters Count", f"{result.biofilter_parameter_count} items"),
    ]
    subsections = [
        Subsection(title="Bio Filter Parameters", table=_table(biofilter_rows)),
        Subsection(title="System Overview", table=_table(overview_rows)),
    ]
    for name in LIFE_STAGES:
        values = result.life_stages.get(name, {})
        rows = [(label, format_metric(values.get(field))) for field, label in STAGE7_ROW_LABELS]
        subsections.append(Subsection(title=LIFE_STAGE_TITLES[name], table=_table(rows)))
    return [Section(title="Stage 7: Bio Filter & Sump Size", subsections=subsections)]


def _stage8_sections(result: Stage8Result) -> list[Section]:
    present = [name for name in LIFE_STAGES if name in result.life_stages] or list(LIFE_STAGES)
    subsections = []
    for name in present:
        values = result.life_stages.get(name, {})
        n = LIFE_STAGE_NUMBERS[name]
        rows = [(label.format(n=n), format_metric(values.get(field))) for field, label in STAGE8_ROW_LABELS]
        subsections.append(Subsection(title=LIFE_STAGE_TITLES[name], table=_table(rows)))
    return [Section(title="Stage 8: Basic Pump Size", subsections=subsections)]


def build_sections(report: NormalizedReport) -> list[Section]:
    """Sections in report order; a section whose stage is absent is omitted."""
    sections: list[Section] = []
    if report.inputs is not None:
        sections += _input_sections(report)
    if report.mass_balance is not None:
        sections.append(Section(title="Mass Balance Report", tables=[_table(mass_balance_rows(report.mass_balance))]))

    results = report.stage_results
    stage6 = results.get("stage6")
    if isinstance(stage6, Stage6Result):
        sections += _stage6_sections(stage6, report.project_type)
    stage7 = results.get("stage7")
    if isinstance(stage7, Stage7Result):
        sections += _stage7_sections(stage7)
        stage8 = results.get("stage8")
        if isinstance(stage8, Stage8Result):
            sections += _stage8_sections(stage8)
    return sections


def generic_stage_rows(result: GenericStageResult) -> dict[str, list[tuple[str, str]]]:
    """Stage 3 / 4 fields per life stage, for the spreadsheet export."""
    return {
        name: [(key, format_metric(metric)) for key, metric in result.life_stages[name].items()]
        for name in LIFE_STAGES if name in result.life_stages
    }


def report_title(report: NormalizedReport) -> str:
    if report.project_type == "basic":
        return "Basic Design System Report"
    included = []
    if report.mass_balance is not None:
        included.append("Mass Balance Report")
    for stage, title in (("stage6", "Stage 6 Report"), ("stage7", "Stage 7 Report"), ("stage8", "Stage 8 Report")):
        if stage in report.stage_results:
            included.append(title)
    if len(included) == 1:
        return included[0]
    if len(included) > 1:
        return "Complete Advanced Design System Report"
    return "Advanced Design System Report"
