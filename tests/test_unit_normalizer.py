"""
Tests for services.unit_normalizer.

Covers alias resolution per stage, {value} unwrapping, defaults, the
mg/day to kg/day derivation, and malformed payload handling.
"""

import pytest

from models.report import LIFE_STAGES, CanonicalMetric
from services.unit_normalizer import (
    FLOW_PARAMETERS,
    MASS_BALANCE_ALIASES,
    STAGE6_PREFIXES,
    STAGE7_BIOFILTER_FIELDS,
    STAGE7_LIFE_STAGE_FIELDS,
    STAGE8_LIFE_STAGE_FIELDS,
    STAGE_NAMES,
    _stage6_flow_spec,
    _stage7_spec,
    _stage8_spec,
    normalize,
)


# ===========================================================================
# Basic mass balance
# ===========================================================================

class TestMassBalance:

    def test_flat_keys_resolve_with_units(self):
        sub = normalize("basic", {"o2_saturation_adjusted_mg_l": 8.5, "tss_production_mg": 250000})
        mb = sub.mass_balance
        assert mb.oxygen.saturation.value == 8.5
        assert mb.oxygen.saturation.unit == "mg/L"
        assert mb.tss.production_mg_day.value == 250000
        assert mb.tss.production_mg_day.unit == "mg/day"
        assert mb.tss.production_kg_day.value == pytest.approx(0.25)
        assert mb.tss.production_kg_day.unit == "kg/day"

    @pytest.mark.parametrize("payload", [
        {"oxygen_effluent_concentration_mg_l": 7.0},
        {"oxygen_effluent_concentration": {"value": 7.0}},
        {"oxygen": {"effluentMgL": 7.0}},
        {"oxygen": {"effluentConc": 7.0}},
    ])
    def test_oxygen_effluent_aliases_agree(self, payload):
        assert normalize("basic", payload).mass_balance.oxygen.effluent.value == 7.0

    @pytest.mark.parametrize("payload", [
        {"tss_production_mg": 1000},
        {"tss_production": {"value": 1000}},
        {"tss": {"prodMgPerDay": 1000}},
    ])
    def test_tss_production_aliases_agree(self, payload):
        tss = normalize("basic", payload).mass_balance.tss
        assert tss.production_mg_day.value == 1000
        assert tss.production_kg_day.value == pytest.approx(0.001)

    @pytest.mark.parametrize("payload", [
        {"min_do_use_mg_l": 6},
        {"min_do_mg_l": 6},
        {"oxygen": {"MINDO_use": 6}},
    ])
    def test_oxygen_threshold_aliases_agree(self, payload):
        assert normalize("basic", payload).mass_balance.oxygen.threshold.value == 6

    def test_missing_thresholds_stay_none(self):
        mb = normalize("basic", {"o2_saturation_adjusted_mg_l": 8.5}).mass_balance
        for group in (mb.oxygen, mb.tss, mb.co2, mb.tan):
            assert group.threshold.value is None

    def test_kg_per_day_is_derived_for_every_group(self, basic_payload):
        mb = normalize("basic", basic_payload).mass_balance
        for group in (mb.oxygen, mb.tss, mb.co2, mb.tan):
            assert group.production_kg_day.value == pytest.approx(group.production_mg_day.value / 1_000_000)

    def test_missing_production_gives_missing_kg(self):
        mb = normalize("basic", {}).mass_balance
        assert mb.co2.production_mg_day.value is None
        assert mb.co2.production_kg_day.value is None

    def test_first_alias_wins(self):
        payload = {"oxygen_effluent_concentration_mg_l": 7.0, "oxygen": {"effluentMgL": 9.0}}
        assert normalize("basic", payload).mass_balance.oxygen.effluent.value == 7.0

    def test_numeric_string_accepted(self, basic_payload):
        assert normalize("basic", basic_payload).mass_balance.co2.effluent.value == 4.5

    def test_booleans_and_nan_are_skipped(self):
        payload = {
            "min_do_use_mg_l": True,
            "oxygen_effluent_concentration_mg_l": float("nan"),
            "oxygen": {"effluentMgL": 6.5},
        }
        oxy = normalize("basic", payload).mass_balance.oxygen
        assert oxy.threshold.value is None
        assert oxy.effluent.value == 6.5

    def test_non_numeric_string_is_skipped(self):
        oxy = normalize("basic", {"o2_saturation_adjusted_mg_l": "n/a"}).mass_balance.oxygen
        assert oxy.saturation.value is None

    def test_saturation_only_exists_for_oxygen(self, basic_payload):
        mb = normalize("basic", basic_payload).mass_balance
        assert mb.tss.saturation.value is None


# ===========================================================================
# Malformed and unknown input
# ===========================================================================

class TestMalformed:

    @pytest.mark.parametrize("raw", [None, [1, 2], "oops", 42])
    def test_non_mapping_yields_all_null_sub_report(self, raw):
        sub = normalize("basic", raw)
        assert sub.malformed is True
        assert sub.mass_balance.oxygen.saturation.value is None
        assert sub.mass_balance.tan.production_kg_day.value is None

    def test_malformed_inputs_do_not_apply_defaults(self):
        sub = normalize("inputs", "garbage")
        assert sub.malformed is True
        assert sub.inputs.fields["water_temperature"].value is None

    def test_unknown_stage_raises(self):
        with pytest.raises(ValueError):
            normalize("stage5", {})

    def test_every_stage_accepts_empty_mapping(self):
        for stage in STAGE_NAMES:
            sub = normalize(stage, {})
            assert sub.stage == stage
            assert sub.malformed is False


# ===========================================================================
# Input parameters
# ===========================================================================

class TestInputs:

    def test_defaults_when_missing(self):
        fields = normalize("inputs", {}).inputs.fields
        assert fields["water_temperature"].value == 25
        assert fields["water_temperature"].unit == "°C"
        assert fields["min_do"].value == 6
        assert fields["ph"].value == 7
        assert fields["o2_absorption"].value == 80
        assert fields["feed_conversion_ratio"].value is None

    def test_wrapped_parameters(self, inputs_payload):
        inputs = normalize("inputs", inputs_payload).inputs
        assert inputs.fields["water_temperature"].value == 27
        assert inputs.fields["ph"].value == 7.2
        assert inputs.fields["tank_volume"].value == 120
        assert inputs.fields["fcr_stage1"].value == 1.1
        assert inputs.species == "Tilapia"

    def test_flat_parameters(self):
        fields = normalize("inputs", {"waterTemp": 18, "tssRemoval": 90}).inputs.fields
        assert fields["water_temperature"].value == 18
        assert fields["tss_removal"].value == 90


# ===========================================================================
# Stage 6
# ===========================================================================

class TestStage6:

    def test_flows_for_each_life_stage(self, stage6_payload):
        result = normalize("stage6", stage6_payload).result
        assert result.flows["juvenile"].oxygen.l_per_min.value == 100
        assert result.flows["fingerling"].co2.l_per_min.value == 200
        assert result.flows["growout"].tan.m3_per_hr.value == 18
        assert result.flows["growout"].tan.m3_per_hr.unit == "m³/hr"

    def test_later_life_stages_only_when_present(self):
        result = normalize("stage6", {"step_6": {"oxygen": {"l_per_min": 5}}}).result
        assert set(result.flows) == {"juvenile"}

    def test_m3_per_min_is_scaled_to_hours(self):
        payload = {"step_6": {"oxygen": {"l_per_min": 10, "m3_per_min": 0.01}}}
        pair = normalize("stage6", payload).result.flows["juvenile"].oxygen
        assert pair.m3_per_hr.value == pytest.approx(0.6)

    def test_unwrapped_step_payload(self):
        pair = normalize("stage6", {"co2": {"l_per_min": 3}}).result.flows["juvenile"].co2
        assert pair.l_per_min.value == 3

    def test_limiting_factor(self, stage6_payload):
        limiting = normalize("stage6", stage6_payload).result.limiting_factors
        assert limiting["juvenile"].factor == "oxygen"
        assert limiting["fingerling"].flow_m3_per_hr.value == 12
        assert "growout" not in limiting


# ===========================================================================
# Stage 7 / Stage 8 / generic stages
# ===========================================================================

class TestStage7:

    def test_biofilter_and_defaults(self, stage7_payload):
        result = normalize("stage7", stage7_payload).result
        assert result.biofilter["vtr_used"].value == 300
        assert result.biofilter["vtr_compensation"].value == 0.9
        assert result.biofilter["temperature_used"].value == 25
        assert result.shape == "round"
        assert result.status == "completed"
        assert result.biofilter_parameter_count == 2

    def test_life_stage_geometry(self, stage7_payload):
        stages = normalize("stage7", stage7_payload).result.life_stages
        assert stages["juvenile"]["daily_tan"].value == 100
        assert stages["fingerling"]["mbbr_volume"].value == 5.0
        assert stages["growout"]["air_spare"].value == 4.5
        assert stages["growout"]["sump_total"].value is None

    @pytest.mark.parametrize("payload", [
        {"MBBR.vol_Stage1": 3},
        {"MBBR_vol_Stage1": 3},
        {"stage1": {"MBBR.vol": 3}},
    ])
    def test_vessel_volume_aliases_agree(self, payload):
        stages = normalize("stage7", payload).result.life_stages
        assert stages["juvenile"]["mbbr_volume"].value == 3


class TestStage8:

    def test_nested_life_stages(self, stage8_payload):
        stages = normalize("stage8", stage8_payload).result.life_stages
        assert set(stages) == {"juvenile", "fingerling", "growout"}
        assert stages["juvenile"]["shaft_power"].value == pytest.approx(0.21)
        assert stages["growout"]["limiting_flow_rate"].value == 300
        assert stages["growout"]["limiting_flow_rate"].unit == "L/min"

    def test_flat_keys_only_mark_present_stages(self):
        stages = normalize("stage8", {"pump_PowerkW_Stage2": 1.0}).result.life_stages
        assert set(stages) == {"fingerling"}
        assert stages["fingerling"]["shaft_power"].value == 1.0


class TestGenericStages:

    def test_numeric_fields_grouped_by_life_stage(self):
        payload = {"status": "ok", "data": {"stage1": {"biomass_kg": 120.5, "label": "x"}}}
        stages = normalize("stage3", payload).result.life_stages
        assert set(stages) == {"juvenile"}
        assert set(stages["juvenile"]) == {"biomass_kg"}
        assert stages["juvenile"]["biomass_kg"].value == 120.5

    def test_value_objects_unwrapped(self):
        payload = {"data": {"stage2": {"feed_kg_day": {"value": 3.2}}}}
        stages = normalize("stage4", payload).result.life_stages
        assert stages["fingerling"]["feed_kg_day"].value == 3.2


# ===========================================================================
# Every documented alias resolves to the same canonical metric
# ===========================================================================

RAW = 12.5


def _nest(path, leaf):
    node = leaf
    for key in reversed(path):
        node = {key: node}
    return node


def _alias_id(alias):
    return ".".join(alias.path) + (f"*{alias.scale:g}" if alias.scale != 1 else "")


MASS_BALANCE_CASES = [
    (group, field, spec, alias)
    for group, fields in MASS_BALANCE_ALIASES.items()
    for field, spec in fields.items()
    for alias in spec.aliases
]

BIOFILTER_CASES = [
    (name, spec, alias)
    for name, spec in STAGE7_BIOFILTER_FIELDS.items()
    for alias in spec.aliases
]

STAGE6_CASES = [
    (life_stage, parameter, column, alias)
    for life_stage, prefixes in STAGE6_PREFIXES.items()
    for parameter in FLOW_PARAMETERS
    for column, unit in (("l_per_min", "L/min"), ("m3_per_hr", "m³/hr"))
    for prefix in prefixes
    for alias in _stage6_flow_spec(prefix, parameter, column, unit).aliases
]

STAGE7_CASES = [
    (n, field, spec.unit, alias)
    for n in (1, 2, 3)
    for field, template, unit in STAGE7_LIFE_STAGE_FIELDS
    for spec in [_stage7_spec(template, n, unit)]
    for alias in spec.aliases
]

STAGE8_CASES = [
    (n, field, spec.unit, alias)
    for n in (1, 2, 3)
    for field, template, unit in STAGE8_LIFE_STAGE_FIELDS
    for spec in [_stage8_spec(template, n, unit)]
    for alias in spec.aliases
]

WRAPPERS = pytest.mark.parametrize("leaf", [RAW, {"value": RAW}], ids=["bare", "value-object"])


class TestAliasInvariance:

    @WRAPPERS
    @pytest.mark.parametrize("group, field, spec, alias", MASS_BALANCE_CASES,
                             ids=[f"{g}.{f}:{_alias_id(a)}" for g, f, _, a in MASS_BALANCE_CASES])
    def test_mass_balance(self, group, field, spec, alias, leaf):
        metrics = getattr(normalize("basic", _nest(alias.path, leaf)).mass_balance, group)
        assert getattr(metrics, field) == CanonicalMetric(value=RAW * alias.scale, unit=spec.unit)
        if field == "production_mg_day":
            assert metrics.production_kg_day.value == pytest.approx(RAW * alias.scale / 1_000_000)
            assert metrics.production_kg_day.unit == "kg/day"
        else:
            assert metrics.production_kg_day.value is None

    @WRAPPERS
    @pytest.mark.parametrize("name, spec, alias", BIOFILTER_CASES,
                             ids=[f"{n}:{_alias_id(a)}" for n, _, a in BIOFILTER_CASES])
    def test_stage7_biofilter(self, name, spec, alias, leaf):
        biofilter = normalize("stage7", _nest(alias.path, leaf)).result.biofilter
        assert biofilter[name] == CanonicalMetric(value=RAW * alias.scale, unit=spec.unit)

    @WRAPPERS
    @pytest.mark.parametrize("life_stage, parameter, column, alias", STAGE6_CASES,
                             ids=[f"{ls}.{p}.{c}:{_alias_id(a)}" for ls, p, c, a in STAGE6_CASES])
    def test_stage6_flows(self, life_stage, parameter, column, alias, leaf):
        flows = normalize("stage6", _nest(alias.path, leaf)).result.flows
        metric = getattr(getattr(flows[life_stage], parameter), column)
        assert metric.value == pytest.approx(RAW * alias.scale)
        assert metric.unit == ("L/min" if column == "l_per_min" else "m³/hr")

    @WRAPPERS
    @pytest.mark.parametrize("n, field, unit, alias", STAGE7_CASES,
                             ids=[f"{f}:{_alias_id(a)}" for _, f, _, a in STAGE7_CASES])
    def test_stage7_life_stages(self, n, field, unit, alias, leaf):
        stages = normalize("stage7", _nest(alias.path, leaf)).result.life_stages
        assert stages[LIFE_STAGES[n - 1]][field] == CanonicalMetric(value=RAW, unit=unit)

    @WRAPPERS
    @pytest.mark.parametrize("n, field, unit, alias", STAGE8_CASES,
                             ids=[f"{f}:{_alias_id(a)}" for _, f, _, a in STAGE8_CASES])
    def test_stage8_life_stages(self, n, field, unit, alias, leaf):
        stages = normalize("stage8", _nest(alias.path, leaf)).result.life_stages
        assert stages[LIFE_STAGES[n - 1]][field] == CanonicalMetric(value=RAW, unit=unit)
