"""
Tests for services.report_pipeline: building a report from fetched payloads
and laying it out for the configured page size.
"""

from datetime import datetime, timezone

import pytest

from services.report_pipeline import build_report, layout_report, page_dimensions
from services.stage_client import MissingRequiredStage


class TestBuildReport:

    def test_all_payloads(self, all_payloads):
        report = build_report(all_payloads, project_id="42")
        assert report.project_id == "42"
        assert report.mass_balance.oxygen.saturation.value == 8.5
        assert set(report.stage_results) == {"stage3", "stage4", "stage6", "stage7", "stage8"}

    @pytest.mark.parametrize("missing", ["basic", "stage6"])
    def test_absent_required_stage_raises(self, all_payloads, missing):
        payloads = {k: v for k, v in all_payloads.items() if k != missing}
        with pytest.raises(MissingRequiredStage) as exc_info:
            build_report(payloads, project_id="42")
        assert exc_info.value.stages == [missing]

    def test_null_required_stages_reported_together(self, all_payloads):
        payloads = {**all_payloads, "basic": None, "stage6": None}
        with pytest.raises(MissingRequiredStage) as exc_info:
            build_report(payloads, project_id="42")
        assert set(exc_info.value.stages) == {"basic", "stage6"}

    def test_null_optional_stage_is_omitted(self, basic_payload, stage6_payload):
        report = build_report({"basic": basic_payload, "stage6": stage6_payload, "stage7": None})
        assert "stage7" not in report.stage_results
        assert report.diagnostics == []


class TestLayoutReport:

    def test_page_sizes(self):
        assert page_dimensions("letter") == (612, 792)
        assert page_dimensions("A4") == (595.28, 841.89)
        assert page_dimensions("tabloid") == (612, 792)

    def test_layout_uses_report_title(self, all_payloads):
        when = datetime(2024, 3, 1, tzinfo=timezone.utc)
        doc = layout_report(build_report(all_payloads), generated_at=when, page_size="a4", margin=40)
        assert doc.title == "Complete Advanced Design System Report"
        assert doc.page_height == 841.89
        assert doc.generated_at == when
