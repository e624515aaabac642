"""
Shared pytest fixtures for the report service test suite.

The ``blueprint_app/`` directory is inserted into sys.path so that the
``services.*``, ``models.*`` and ``api.*`` imports resolve the same way they
do when the app is served from that directory.
"""

import os
import sys

import pytest

_APP_DIR = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "blueprint_app")
if _APP_DIR not in sys.path:
    sys.path.insert(0, _APP_DIR)


# ---------------------------------------------------------------------------
# Raw stage payloads, shaped the way the formulas backend returns them
# ---------------------------------------------------------------------------

@pytest.fixture
def basic_payload():
    return {
        "o2_saturation_adjusted_mg_l": 8.5,
        "min_do_use_mg_l": 6,
        "oxygen_effluent_concentration_mg_l": {"value": 7.25},
        "oxygen_consumption_production_mg_per_day": 1_500_000,
        "tss_effluent_concentration_mg_l": 12.0,
        "tss_production_mg": 250_000,
        "max_tss_use_mg_l": 20,
        "co2_effluent_concentration": {"value": "4.5"},
        "co2_production_mg_per_day": 2_000_000,
        "tan_effluent_concentration_mg_l": 0.4,
        "tan_production_mg_per_day": 90_000,
    }


@pytest.fixture
def inputs_payload():
    return {
        "parameters": {
            "temperature": 27,
            "pH": 7.2,
            "dissolved_O2_min": 5,
            "tanks_volume_each": 120,
            "number_of_tanks": 4,
            "feed_protein_percent": 42,
            "fcr_stage1": 1.1,
            "species": "Tilapia",
        }
    }


@pytest.fixture
def stage6_payload():
    def flows(scale):
        return {p: {"l_per_min": 100.0 * scale, "m3_per_hr": 6.0 * scale} for p in ("oxygen", "co2", "tss", "tan")}

    step = dict(flows(1))
    for prefix, scale in (("stage2_", 2), ("stage3_", 3)):
        step.update({f"{prefix}{k}": v for k, v in flows(scale).items()})
    return {
        "step_6": step,
        "limiting_factor": {
            "stage1": {"factor": "oxygen", "flow_l_per_min": 100.0, "flow_m3_per_hr": 6.0},
            "stage2": {"factor": "tan", "flow_l_per_min": 200.0, "flow_m3_per_hr": 12.0},
        },
    }


@pytest.fixture
def stage7_payload():
    payload = {
        "bioVTR_use": 300,
        "bio.VTR_compensation": 0.9,
        "bio.shape": "round",
        "temp_compensation_factor": 1.05,
        "project_id": "p-1",
        "status": "completed",
        "biofilter_parameters": {"a": 1, "b": 2},
    }
    for n in (1, 2, 3):
        payload[f"DailyTAN_gday_Stage{n}"] = 100.0 * n
        payload[f"MBBR.vol_Stage{n}"] = 2.5 * n
        payload[f"MBBR.air_Stage{n}_spare"] = 1.5 * n
    return payload


@pytest.fixture
def stage8_payload():
    return {
        f"stage{n}": {
            f"limitingFlowRateStage{n}": 100.0 * n,
            f"Q_l_s_Stage{n}": 1.67 * n,
            f"pump_Head_Stage{n}": 8.0,
            f"n_Pump_Stage{n}": 0.7,
            f"n_Motor_Stage{n}": 0.9,
            f"pump_HydPower_Stage{n}": 0.13 * n,
            f"pump_PowerkW_Stage{n}": 0.21 * n,
        }
        for n in (1, 2, 3)
    }


@pytest.fixture
def all_payloads(inputs_payload, basic_payload, stage6_payload, stage7_payload, stage8_payload):
    return {
        "inputs": inputs_payload,
        "basic": basic_payload,
        "stage3": {"status": "ok", "data": {"stage1": {"biomass_kg": 120.5}}},
        "stage4": {"status": "ok", "data": {"stage1": {"feed_kg_day": {"value": 3.2}}}},
        "stage6": stage6_payload,
        "stage7": stage7_payload,
        "stage8": stage8_payload,
    }
