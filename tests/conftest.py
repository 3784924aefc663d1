"""Shared fixtures for the biomonitoring trend analysis test suite."""

import sys
import os
import logging

import matplotlib
import pandas as pd
import pytest

matplotlib.use("Agg")

# Ensure project root is importable
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from biomonitoring_analysis import AnalysisConfig, BiomonitoringDataLoader


# Upward trend with overlapping classes: not separable by year
TREND_CLASSES = {
    2000: "NA", 2001: "C", 2002: "NA", 2003: "C", 2004: "C",
    2005: "B", 2006: "C", 2007: "NA", 2008: "B", 2009: "C",
    2010: "B", 2011: "A", 2012: "C", 2013: "B", 2014: "B",
    2015: "A", 2016: "B", 2017: "A", 2018: "B", 2019: "A",
}


def _sample(station, year, label, sample_type="Macroinvertebrate", month=8):
    attains = "Yes" if label in ("A", "B") else "No"
    return {
        "Station": station,
        "Sample Date": f"{year}-{month:02d}-15",
        "Sample Type": sample_type,
        "Final Class": label,
        "Attains Class": attains,
    }


def make_raw_samples():
    """Sample records as they arrive from CSV (all strings, raw column names)."""
    rows = [_sample("S01", year, label) for year, label in TREND_CLASSES.items()]
    rows.append(_sample("S01", 2021, "I"))
    rows.append(_sample("S01", 2005, "A", sample_type="Algae", month=6))

    # Long record but the class never changes
    rows += [_sample("S02", year, "B") for year in (2000, 2003, 2006, 2009, 2012)]

    # Too few samples
    rows += [_sample("S03", year, label) for year, label in ((2000, "C"), (2010, "B"), (2015, "A"))]

    # Enough samples but too short a span
    rows += [_sample("S04", year, label)
             for year, label in zip(range(2015, 2021), ("C", "B", "C", "B", "A", "B"))]

    # Classes perfectly separated by year
    rows += [_sample("S05", year, "C") for year in range(2000, 2006)]
    rows += [_sample("S05", year, "B") for year in range(2008, 2014)]

    return pd.DataFrame(rows)


def make_quasi_separated_samples():
    """C up to 2005 and B from 2005 on: the classes only overlap in the tie year."""
    rows = [_sample("S06", year, "C", month=6) for year in range(2000, 2006)]
    rows += [_sample("S06", year, "B", month=9) for year in range(2005, 2011)]
    return pd.DataFrame(rows)


def make_raw_stations():
    return pd.DataFrame({
        "Station": ["S01", "S02", "S03", "S04", "S05"],
        "Waterbody": ["Mill Brook", "Cold Stream", "Town Branch", "Mall Brook", "Long Creek"],
        "Town": ["Alder", "Birch", "Cedar", "Dogwood", "Elm"],
        "Latitude": ["44.1", "44.2", "44.3", "44.4", "44.5"],
        "Longitude": ["-69.1", "-69.2", "-69.3", "-69.4", "-69.5"],
        "Statutory Class": ["B", "A", "AA", "C", "B"],
        "Impervious Cover (%)": ["1.5", "3.0", "12.0", "30.0", "7.0"],
    })


@pytest.fixture
def config(tmp_path):
    """Default configuration writing into a temporary directory."""
    return AnalysisConfig(
        sample_file=tmp_path / "samples.csv",
        station_file=tmp_path / "stations.csv",
        output_dir=tmp_path / "output",
    )


@pytest.fixture
def logger():
    return logging.getLogger("tests.biomonitoring")


@pytest.fixture
def loader(config, logger):
    return BiomonitoringDataLoader(config, logger)


@pytest.fixture
def raw_samples():
    return make_raw_samples()


@pytest.fixture
def raw_stations():
    return make_raw_stations()


@pytest.fixture
def samples(loader, config, raw_samples):
    """Cleaned sample records."""
    return loader.clean_samples(raw_samples.rename(columns=config.sample_columns))


@pytest.fixture
def quasi_separated(loader, config):
    """Cleaned records for a station whose classes are split by year except for one tie."""
    raw = make_quasi_separated_samples()
    return loader.clean_samples(raw.rename(columns=config.sample_columns))


@pytest.fixture
def stations(loader, config, raw_stations):
    """Cleaned station metadata."""
    return loader.clean_stations(raw_stations.rename(columns=config.station_columns))


@pytest.fixture
def csv_inputs(config, raw_samples, raw_stations):
    """Raw inputs written to the configured CSV paths."""
    raw_samples.to_csv(config.sample_file, index=False)
    raw_stations.to_csv(config.station_file, index=False)
    return config
