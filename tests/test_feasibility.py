"""Tests for concept distribution and feasibility reports."""

import logging
import numbers

import pytest

from covariates import get_patient_gender, get_patient_race
from errors import InvalidArgument
from feasibility import (
    analyze_concept_distribution,
    collect_feasibility,
    generate_domain_breakdown,
    generate_feasibility_report,
    generate_summary,
)

SUMMARY_METRICS = [
    "Total Patients",
    "Eligible Patients",
    "Total Target Records",
    "Records per Patient",
    "Population Coverage (%)",
    "Domains Analyzed",
]


class TestAnalyzeConceptDistribution:
    def test_single_condition(self, db, opts):
        result = analyze_concept_distribution(db, [201826], **opts)
        assert list(result.columns) == ["concept_id", "concept_name", "domain", "count"]
        assert len(result) == 1
        row = result.iloc[0]
        assert row["concept_id"] == 201826
        assert row["concept_name"] == "Type 2 diabetes mellitus"
        assert row["domain"] == "Condition"
        assert row["count"] == 3

    def test_multi_domain_sorted_by_count(self, db, opts):
        result = analyze_concept_distribution(db, [201826, 320128, 1503297], **opts)
        assert result["concept_id"].tolist() == [1503297, 201826, 320128]
        assert result["count"].tolist() == [4, 3, 2]
        assert result["domain"].tolist() == ["Drug", "Condition", "Condition"]
        assert (result["count"] >= 0).all()

    def test_with_covariates(self, db, opts):
        result = analyze_concept_distribution(db, [201826], covariate_funcs=[get_patient_gender], **opts)
        assert list(result.columns) == ["concept_id", "concept_name", "domain", "gender_concept_id", "count"]
        assert result["gender_concept_id"].tolist() == [8507, 8532]
        assert result["count"].tolist() == [2, 1]

    def test_with_two_covariates(self, db, opts):
        result = analyze_concept_distribution(
            db, [201826], covariate_funcs=[get_patient_gender, get_patient_race], **opts)
        assert list(result.columns) == [
            "concept_id", "concept_name", "domain", "race_concept_id", "gender_concept_id", "count"]
        assert result["count"].sum() == 3

    def test_empty_concept_set(self, db, opts):
        with pytest.raises(InvalidArgument, match="concept_set cannot be empty"):
            analyze_concept_distribution(db, [], **opts)

    def test_invalid_concepts(self, db, opts):
        result = analyze_concept_distribution(db, [999999999, 888888888], **opts)
        assert result.empty
        assert list(result.columns) == ["concept_id", "concept_name", "domain", "count"]

    def test_missing_domain_table_is_skipped(self, db, opts, caplog):
        with caplog.at_level(logging.WARNING, logger="feasibility"):
            result = analyze_concept_distribution(db, [201826, 4275495], **opts)
        assert result["domain"].tolist() == ["Condition"]
        assert "Observation" in caplog.text

    def test_race_concepts_match_on_gender_column(self, db, opts):
        """Race routes to person.gender_concept_id, so a race concept never matches."""
        assert analyze_concept_distribution(db, [8527], **opts).empty
        gender = analyze_concept_distribution(db, [8507], **opts)
        assert gender["count"].tolist() == [5]

    def test_idempotent(self, db, opts):
        first = analyze_concept_distribution(db, [201826, 1503297], **opts)
        second = analyze_concept_distribution(db, [201826, 1503297], **opts)
        assert first.equals(second)


class TestCollectFeasibility:
    def test_union_vs_sum(self, db, opts):
        snap = collect_feasibility(db, [201826, 1503297], **opts)
        assert snap.total_patients == 10
        assert snap.total_records == 7
        assert snap.eligible_patients == {1, 2, 4}
        assert sum(m.patient_count for m in snap.domains) == 4
        assert snap.records_per_patient == 2.333
        assert snap.population_coverage == 30.0

    def test_no_valid_concepts(self, db, opts):
        assert collect_feasibility(db, [999999999], **opts) is None


class TestGenerateSummary:
    def test_formatted(self, db, opts):
        result = generate_summary(db, [201826, 1503297], **opts)
        assert list(result.columns) == ["metric", "value", "interpretation", "domain"]
        assert result["metric"].tolist() == SUMMARY_METRICS
        assert (result["domain"] == "Summary").all()
        assert result["value"].tolist() == ["10", "3", "7", "2.333", "30.0%", "2"]

    def test_raw_values(self, db, opts):
        result = generate_summary(db, [201826, 1503297], raw_values=True, **opts)
        values = dict(zip(result["metric"], result["value"]))
        assert isinstance(values["Total Patients"], numbers.Number)
        assert values["Total Patients"] == 10
        assert values["Eligible Patients"] == 3
        assert values["Population Coverage (%)"] == 30.0

    def test_always_six_rows(self, db, opts):
        assert len(generate_summary(db, [201826], **opts)) == 6
        assert len(generate_summary(db, [201826, 320128, 1503297, 4336464, 3004410], **opts)) == 6

    def test_empty_concept_set(self, db, opts):
        with pytest.raises(InvalidArgument):
            generate_summary(db, [], **opts)

    def test_invalid_concepts(self, db, opts):
        result = generate_summary(db, [999999999, 888888888], **opts)
        assert result["metric"].tolist() == ["No Valid Concepts"]
        assert result["domain"].tolist() == ["N/A"]

    def test_skipped_domain_still_counted_as_analyzed(self, db, opts):
        result = generate_summary(db, [201826, 4275495], raw_values=True, **opts)
        values = dict(zip(result["metric"], result["value"]))
        assert values["Domains Analyzed"] == 2
        assert values["Eligible Patients"] == 2


class TestGenerateDomainBreakdown:
    def test_formatted(self, db, opts):
        result = generate_domain_breakdown(db, [201826, 1503297], **opts)
        assert "Summary" not in result["domain"].tolist()
        assert result["metric"].tolist() == [
            "Condition - Concepts", "Condition - Patients", "Condition - Records", "Condition - Coverage (%)",
            "Drug - Concepts", "Drug - Patients", "Drug - Records", "Drug - Coverage (%)",
        ]
        assert result["value"].tolist() == ["1", "2", "3", "20.0%", "1", "2", "4", "20.0%"]

    def test_raw_values(self, db, opts):
        result = generate_domain_breakdown(db, [201826, 320128], raw_values=True, **opts)
        values = dict(zip(result["metric"], result["value"]))
        assert values["Condition - Concepts"] == 2
        assert values["Condition - Patients"] == 3
        assert values["Condition - Records"] == 5
        assert values["Condition - Coverage (%)"] == 30.0

    def test_empty_concept_set(self, db, opts):
        with pytest.raises(InvalidArgument):
            generate_domain_breakdown(db, [], **opts)

    def test_invalid_concepts(self, db, opts):
        result = generate_domain_breakdown(db, [999999999, 888888888], **opts)
        assert result["metric"].tolist() == ["No Valid Concepts"]


class TestGenerateFeasibilityReport:
    def test_summary_and_breakdown(self, db, opts):
        result = generate_feasibility_report(db, [201826, 1503297], **opts)
        assert len(result) == 6 + 8
        assert result["domain"].tolist()[:6] == ["Summary"] * 6

    def test_covariate_block(self, db, opts):
        result = generate_feasibility_report(
            db, [201826, 1503297], covariate_funcs=[get_patient_gender], **opts)
        block = result[result["domain"] == "Covariate"]
        assert block["metric"].tolist() == ["gender - MALE", "gender - FEMALE"]
        assert block["value"].tolist() == ["1", "2"]

    def test_empty_concept_set(self, db, opts):
        with pytest.raises(InvalidArgument):
            generate_feasibility_report(db, [], **opts)

    def test_invalid_concepts(self, db, opts):
        result = generate_feasibility_report(db, [999999999], **opts)
        assert result["metric"].tolist() == ["No Valid Concepts"]
