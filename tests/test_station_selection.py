"""Tests for sample-type restriction and station selection rules."""

import pytest

from biomonitoring_analysis import AnalysisConfig, StationSelector


@pytest.fixture
def selector(config, logger):
    return StationSelector(config, logger)


class TestRestrict:
    def test_drops_other_sample_types(self, selector, samples):
        restricted = selector.restrict(samples)
        assert (restricted["SampleType"] == "Macroinvertebrate").all()

    def test_drops_indeterminate(self, selector, samples):
        restricted = selector.restrict(samples)
        assert not restricted["IsIndeterminate"].any()
        assert restricted["Class"].notna().all()

    def test_sample_type_case_insensitive(self, logger, samples):
        selector = StationSelector(AnalysisConfig(sample_type="MACROINVERTEBRATE"), logger)
        assert len(selector.restrict(samples)) == len(samples) - 2


class TestSummarize:
    def test_station_aggregate(self, selector, samples):
        summary = selector.summarize(selector.restrict(samples)).set_index("Station")
        s01 = summary.loc["S01"]
        assert s01["n_samples"] == 20
        assert s01["first_year"] == 2000
        assert s01["last_year"] == 2019
        assert s01["year_span"] == 19
        assert s01["n_classes"] == 4
        assert s01["classes"] == "NA,C,B,A"

    def test_constant_station_has_one_class(self, selector, samples):
        summary = selector.summarize(selector.restrict(samples)).set_index("Station")
        assert summary.loc["S02", "n_classes"] == 1
        assert summary.loc["S02", "classes"] == "B"

    def test_empty_input(self, selector, samples):
        summary = selector.summarize(samples.iloc[0:0])
        assert len(summary) == 0
        assert "year_span" in summary.columns


class TestSelect:
    def test_default_thresholds(self, selector, samples):
        selected, summary = selector.select(samples)
        assert set(selected["Station"]) == {"S01", "S05"}
        assert set(summary.loc[summary["selected"], "Station"]) == {"S01", "S05"}

    def test_rule_flags(self, selector, samples):
        _, summary = selector.select(samples)
        flags = summary.set_index("Station")
        assert not flags.loc["S02", "varies"]
        assert not flags.loc["S03", "meets_count"]
        assert not flags.loc["S04", "meets_span"]

    @pytest.mark.parametrize("min_samples,min_span", [(1, 0), (3, 0), (5, 5), (6, 12), (20, 19), (21, 0)])
    def test_selected_stations_meet_thresholds(self, logger, samples, min_samples, min_span):
        selector = StationSelector(AnalysisConfig(min_samples=min_samples, min_year_span=min_span), logger)
        selected, summary = selector.select(samples)
        chosen = summary[summary["selected"]]
        assert (chosen["n_samples"] >= min_samples).all()
        assert (chosen["year_span"] >= min_span).all()
        assert (chosen["n_classes"] >= 2).all()
        assert set(selected["Station"]) == set(chosen["Station"])

    def test_relaxed_thresholds_never_admit_constant_station(self, logger, samples):
        selector = StationSelector(AnalysisConfig(min_samples=1, min_year_span=0), logger)
        selected, _ = selector.select(samples)
        assert set(selected["Station"]) == {"S01", "S03", "S04", "S05"}

    def test_selected_records_are_determinate(self, selector, samples):
        selected, _ = selector.select(samples)
        assert not selected["IsIndeterminate"].any()
        assert len(selected[selected["Station"] == "S01"]) == 20

    def test_deterministic(self, selector, samples):
        first, _ = selector.select(samples)
        second, _ = selector.select(samples.sample(frac=1.0, random_state=0))
        assert sorted(first.index) == sorted(second.index)
