#!/usr/bin/env python3
"""
Stream Biomonitoring Class Trend Analysis
=========================================
Per-station trend analysis of stream macroinvertebrate classification grades.

Loads biomonitoring sample records and station metadata, keeps stations with
a long enough and varied enough record, fits a proportional-odds ordinal
logistic regression of the biological class (NA < C < B < A) on a centered
year covariate for each station, and projects class probabilities over a
future year grid.

Outputs:
- Station summary, model coefficient and prediction tables (CSV)
- Most recent record per station joined with station metadata (CSV)
- Imperviousness vs biological condition summary
- Plots and a plain-text report

License: MIT
"""

from __future__ import annotations

import argparse
import logging
import warnings
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Optional, Sequence

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns
from scipy import special, stats
from statsmodels.miscmodels.ordinal_model import OrderedModel

# =============================================================================
# CONFIGURATION
# =============================================================================

# Convergence codes reported for each fitted model
CONVERGED = 0
NOT_CONVERGED = 1
COVARIANCE_FAILED = 2


@dataclass
class AnalysisConfig:
    """Configuration settings for the biomonitoring trend analysis."""

    # File paths
    sample_file: Path = Path("biomonitoring_samples.csv")
    station_file: Path = Path("biomonitoring_stations.csv")
    output_dir: Path = Path("biomonitoring_output")

    # Raw column name -> canonical column name
    sample_columns: dict = field(default_factory=lambda: {
        'Station': 'Station',
        'Sample Date': 'Date',
        'Sample Type': 'SampleType',
        'Final Class': 'Class',
        'Attains Class': 'Attains',
    })
    station_columns: dict = field(default_factory=lambda: {
        'Station': 'Station',
        'Waterbody': 'Waterbody',
        'Town': 'Town',
        'Latitude': 'Latitude',
        'Longitude': 'Longitude',
        'Statutory Class': 'StatutoryClass',
        'Impervious Cover (%)': 'Imperviousness',
    })

    # "NA" is a class label (non-attainment), never a missing value
    missing_values: list = field(default_factory=lambda: ['', 'NULL', 'null', 'N/A', 'n/a', 'None'])

    # Biological classes, lowest to highest
    class_order: tuple = ("NA", "C", "B", "A")
    class_aliases: dict = field(default_factory=lambda: {
        'CLASS A': 'A',
        'CLASS B': 'B',
        'CLASS C': 'C',
        'NON-ATTAINMENT': 'NA',
        'NON ATTAINMENT': 'NA',
        'NONATTAINMENT': 'NA',
        'AA': 'A',  # AA shares the Class A biological criteria
    })
    indeterminate_labels: list = field(default_factory=lambda: ['I', 'IND', 'INDETERMINATE'])

    # Passed to pd.to_datetime; "mixed" infers the format of each date separately
    date_format: Optional[str] = "mixed"

    # Station selection
    sample_type: str = "Macroinvertebrate"
    min_samples: int = 5
    min_year_span: int = 10

    # Ordinal model settings
    reference_year: int = 2000
    prediction_years: tuple = (2025, 2030, 2035, 2040, 2045, 2050)
    target_class: str = "C"
    fit_method: str = "bfgs"
    max_iterations: int = 1000
    separation_probability: float = 0.99
    max_standard_error: float = 100.0
    significance_level: float = 0.05

    # Imperviousness summary (percent impervious cover)
    imperviousness_bins: tuple = (0, 2, 5, 10, 25, 100)

    # Plotting settings
    make_plots: bool = True
    figure_dpi: int = 150
    color_palette: str = "viridis"
    max_station_panels: int = 24

    def __post_init__(self) -> None:
        self.sample_file = Path(self.sample_file)
        self.station_file = Path(self.station_file)
        self.output_dir = Path(self.output_dir)
        self.class_order = tuple(self.class_order)
        self.prediction_years = tuple(self.prediction_years)

        if len(self.class_order) < 2:
            raise ValueError("class_order needs at least two classes")
        if self.target_class not in self.class_order:
            raise ValueError(f"target_class {self.target_class!r} is not one of {self.class_order}")
        if self.min_samples < 1:
            raise ValueError(f"min_samples must be >= 1, got {self.min_samples}")
        if self.min_year_span < 0:
            raise ValueError(f"min_year_span must be >= 0, got {self.min_year_span}")
        if not 0.5 < self.separation_probability < 1:
            raise ValueError("separation_probability must lie in (0.5, 1)")
        if self.max_standard_error <= 0:
            raise ValueError(f"max_standard_error must be positive, got {self.max_standard_error}")
        if list(self.imperviousness_bins) != sorted(set(self.imperviousness_bins)):
            raise ValueError("imperviousness_bins must be strictly increasing")


# =============================================================================
# LOGGING SETUP
# =============================================================================

def setup_logging(output_dir: Path) -> logging.Logger:
    """Configure logging to both file and console."""
    output_dir.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger("biomonitoring_analysis")
    logger.setLevel(logging.DEBUG)
    logger.handlers.clear()

    # File handler - detailed logging
    fh = logging.FileHandler(output_dir / "analysis.log", mode='w')
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(logging.Formatter(
        '%(asctime)s | %(levelname)-8s | %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    ))

    # Console handler - info and above
    ch = logging.StreamHandler()
    ch.setLevel(logging.INFO)
    ch.setFormatter(logging.Formatter('%(levelname)-8s | %(message)s'))

    logger.addHandler(fh)
    logger.addHandler(ch)

    return logger


# =============================================================================
# LOGIT HELPERS
# =============================================================================

def logit(p: Any) -> np.ndarray:
    """Log-odds of a probability."""
    return special.logit(np.asarray(p, dtype=float))


def inv_logit(x: Any) -> np.ndarray:
    """Logistic sigmoid, the inverse of :func:`logit`."""
    return special.expit(np.asarray(x, dtype=float))


# =============================================================================
# DATA LOADING AND CLEANING
# =============================================================================

class BiomonitoringDataLoader:
    """Handles loading and initial cleaning of sample and station tables."""

    REQUIRED_SAMPLE_COLUMNS = ('Station', 'Date', 'Class', 'SampleType')
    REQUIRED_STATION_COLUMNS = ('Station',)

    TRUE_VALUES = {'YES', 'Y', 'TRUE', 'T', '1'}
    FALSE_VALUES = {'NO', 'N', 'FALSE', 'F', '0'}

    def __init__(self, config: AnalysisConfig, logger: logging.Logger):
        self.config = config
        self.logger = logger

    def load_samples(self) -> pd.DataFrame:
        """Load the sample records CSV and apply the column rename map."""
        df = self._read_csv(self.config.sample_file, self.config.sample_columns)
        self._require_columns(df, self.REQUIRED_SAMPLE_COLUMNS, self.config.sample_file)
        return df

    def load_stations(self) -> pd.DataFrame:
        """Load the station metadata CSV and apply the column rename map."""
        df = self._read_csv(self.config.station_file, self.config.station_columns)
        self._require_columns(df, self.REQUIRED_STATION_COLUMNS, self.config.station_file)
        return df

    def _read_csv(self, path: Path, columns: dict) -> pd.DataFrame:
        self.logger.info(f"Loading data from {path}")

        df = pd.read_csv(
            path,
            dtype=str,
            keep_default_na=False,
            na_values=self.config.missing_values,
        )
        df.columns = df.columns.str.strip()
        df = df.rename(columns=columns)

        self.logger.info(f"Loaded {len(df):,} records with {len(df.columns)} columns")
        return df

    @staticmethod
    def _require_columns(df: pd.DataFrame, required: Sequence[str], source: Any) -> None:
        missing = [col for col in required if col not in df.columns]
        if missing:
            raise ValueError(f"{source}: missing required columns {missing}")

    def clean_samples(self, df: pd.DataFrame) -> pd.DataFrame:
        """Clean and preprocess sample records."""
        self.logger.info("Cleaning sample records...")
        self._require_columns(df, self.REQUIRED_SAMPLE_COLUMNS, "samples")
        initial_rows = len(df)

        df = df.copy()
        df['Station'] = df['Station'].astype('string').str.strip()
        df['SampleType'] = df['SampleType'].astype('string').str.strip()
        df = df[df['Station'].notna() & (df['Station'] != '')]

        df = self._parse_dates(df)
        df = self._normalize_classes(df)
        df = self._parse_attainment(df)
        df = df.drop_duplicates(subset=['Station', 'Date', 'SampleType', 'Class'])
        df = df.sort_values(['Station', 'Date']).reset_index(drop=True)

        final_rows = len(df)
        self.logger.info(f"Cleaning complete: {initial_rows:,} → {final_rows:,} records")

        return df

    def _parse_dates(self, df: pd.DataFrame) -> pd.DataFrame:
        """Parse the sample date and derive Year."""
        self.logger.debug("Parsing sample dates")

        df['Date'] = pd.to_datetime(df['Date'], format=self.config.date_format, errors='coerce')
        bad_dates = df['Date'].isna()
        if bad_dates.any():
            self.logger.warning(f"Dropping {bad_dates.sum():,} records with missing/unparseable dates")
            df = df[~bad_dates].copy()

        df['Year'] = df['Date'].dt.year.astype(int)
        return df

    def _normalize_classes(self, df: pd.DataFrame) -> pd.DataFrame:
        """Map raw class labels onto the ordered class scale."""
        labels = (
            df['Class'].astype('string')
            .str.strip()
            .str.upper()
            .str.replace(r'\s+', ' ', regex=True)
            .replace(self.config.class_aliases)
        )

        valid = labels.isin(self.config.class_order).fillna(False).astype(bool)
        indeterminate = labels.isin(self.config.indeterminate_labels).fillna(False).astype(bool)
        unknown = labels.notna() & ~valid & ~indeterminate

        if unknown.any():
            self.logger.warning(
                f"Treating {unknown.sum():,} records with unrecognised class labels as indeterminate: "
                f"{sorted(labels[unknown].unique())}"
            )

        df['Class'] = pd.Categorical(
            np.where(valid.to_numpy(), labels.to_numpy(dtype=object), None),
            categories=list(self.config.class_order),
            ordered=True,
        )
        df['IsIndeterminate'] = ~valid.to_numpy()

        self.logger.info(f"  Determinate samples: {int(valid.sum()):,}")
        self.logger.info(f"  Indeterminate/missing class: {int((~valid).sum()):,}")
        return df

    def _parse_attainment(self, df: pd.DataFrame) -> pd.DataFrame:
        """Parse attainment flags into a nullable boolean column."""
        if 'Attains' not in df.columns:
            self.logger.debug("No attainment column; filling with missing values")
            df['Attains'] = pd.array([pd.NA] * len(df), dtype='boolean')
            return df

        flags = df['Attains'].astype('string').str.strip().str.upper().astype(object)
        mapping = {value: True for value in self.TRUE_VALUES}
        mapping.update({value: False for value in self.FALSE_VALUES})
        df['Attains'] = flags.map(mapping).astype('boolean')

        unparsed = flags.notna() & df['Attains'].isna()
        if unparsed.any():
            self.logger.warning(f"{unparsed.sum():,} attainment flags could not be parsed")
        return df

    def clean_stations(self, df: pd.DataFrame) -> pd.DataFrame:
        """Clean station metadata."""
        self.logger.info("Cleaning station metadata...")
        self._require_columns(df, self.REQUIRED_STATION_COLUMNS, "stations")

        df = df.copy()
        df['Station'] = df['Station'].astype('string').str.strip()
        df = df[df['Station'].notna() & (df['Station'] != '')]

        for col in ['Imperviousness', 'Latitude', 'Longitude']:
            if col in df.columns:
                df[col] = pd.to_numeric(df[col], errors='coerce')

        if 'Imperviousness' in df.columns:
            out_of_range = (df['Imperviousness'] < 0) | (df['Imperviousness'] > 100)
            if out_of_range.any():
                self.logger.warning(
                    f"Found {out_of_range.sum():,} stations with imperviousness outside 0-100%; set to missing"
                )
                df.loc[out_of_range, 'Imperviousness'] = np.nan

        if 'StatutoryClass' in df.columns:
            df['StatutoryClass'] = (
                df['StatutoryClass'].astype('string').str.strip().str.upper()
                .replace(self.config.class_aliases)
            )

        duplicated = df['Station'].duplicated()
        if duplicated.any():
            self.logger.warning(f"Dropping {duplicated.sum():,} duplicate station metadata rows")
            df = df[~duplicated]

        return df.reset_index(drop=True)


# =============================================================================
# STATION SELECTION
# =============================================================================

class StationSelector:
    """Restricts records to stations with long, varied enough class histories."""

    def __init__(self, config: AnalysisConfig, logger: logging.Logger):
        self.config = config
        self.logger = logger

    def restrict(self, df: pd.DataFrame) -> pd.DataFrame:
        """Keep the configured sample type and drop indeterminate records."""
        sample_type = df['SampleType'].astype('string').str.casefold()
        keep = (sample_type == self.config.sample_type.casefold()).fillna(False).astype(bool)
        keep &= ~df['IsIndeterminate'].astype(bool) & df['Class'].notna()
        return df[keep].copy()

    def summarize(self, df: pd.DataFrame) -> pd.DataFrame:
        """Per-station sample count, year range and distinct classes."""
        columns = ['Station', 'n_samples', 'first_year', 'last_year', 'year_span', 'n_classes', 'classes']
        if len(df) == 0:
            return pd.DataFrame(columns=columns)

        order = list(self.config.class_order)

        def observed_classes(values: pd.Series) -> str:
            present = set(values.dropna().astype(str))
            return ','.join(c for c in order if c in present)

        summary = df.groupby('Station', observed=True).agg(
            n_samples=('Year', 'size'),
            first_year=('Year', 'min'),
            last_year=('Year', 'max'),
            n_classes=('Class', lambda s: s.dropna().nunique()),
            classes=('Class', observed_classes),
        ).reset_index()
        summary['year_span'] = summary['last_year'] - summary['first_year']

        return summary[columns]

    def select(self, df: pd.DataFrame) -> tuple[pd.DataFrame, pd.DataFrame]:
        """
        Apply the station selection rules.

        Returns the restricted records of the selected stations and the
        station summary annotated with which rule each station met.
        """
        self.logger.info("=" * 60)
        self.logger.info("STATION SELECTION")
        self.logger.info("=" * 60)

        restricted = self.restrict(df)
        self.logger.info(
            f"{len(restricted):,} determinate '{self.config.sample_type}' samples "
            f"at {restricted['Station'].nunique():,} stations"
        )

        summary = self.summarize(restricted)
        summary['meets_count'] = summary['n_samples'] >= self.config.min_samples
        summary['meets_span'] = summary['year_span'] >= self.config.min_year_span
        summary['varies'] = summary['n_classes'] >= 2
        summary['selected'] = summary['meets_count'] & summary['meets_span'] & summary['varies']

        n_long = int((summary['meets_count'] & summary['meets_span']).sum())
        n_selected = int(summary['selected'].sum())
        self.logger.info(
            f"  Stations with >= {self.config.min_samples} samples over >= {self.config.min_year_span} years: {n_long}"
        )
        self.logger.info(f"  ... of which class varies over time: {n_selected}")

        selected_ids = set(summary.loc[summary['selected'], 'Station'])
        selected = restricted[restricted['Station'].isin(selected_ids)].copy()

        return selected, summary.sort_values('Station').reset_index(drop=True)


# =============================================================================
# ORDINAL TREND MODEL
# =============================================================================

@dataclass
class OrdinalFit:
    """
    A fitted proportional-odds model for one station.

    ``P(class <= levels[j]) = inv_logit(cutpoints[j] - slope * (year - reference_year))``

    ``covariance`` is the covariance of ``[slope, *cutpoints]``.
    """

    station: str
    levels: tuple
    cutpoints: np.ndarray
    slope: float
    reference_year: float
    class_order: tuple
    covariance: Optional[np.ndarray] = None
    n_obs: int = 0
    first_year: Optional[int] = None
    last_year: Optional[int] = None
    log_likelihood: float = np.nan
    convergence: int = CONVERGED
    separated: bool = False
    fit_warnings: list = field(default_factory=list)

    def __post_init__(self) -> None:
        self.levels = tuple(self.levels)
        self.class_order = tuple(self.class_order)
        self.cutpoints = np.asarray(self.cutpoints, dtype=float)
        if self.cutpoints.shape != (len(self.levels) - 1,):
            raise ValueError(
                f"{self.station}: {len(self.levels)} levels need {len(self.levels) - 1} cutpoints, "
                f"got {self.cutpoints.size}"
            )
        if np.any(np.diff(self.cutpoints) < 0):
            raise ValueError(f"{self.station}: cutpoints must be non-decreasing")
        unknown = set(self.levels) - set(self.class_order)
        if unknown:
            raise ValueError(f"{self.station}: levels {sorted(unknown)} not in class order")

    # -- estimates ---------------------------------------------------------

    @property
    def standard_errors(self) -> np.ndarray:
        """Standard errors of ``[slope, *cutpoints]`` (NaN when unavailable)."""
        if self.covariance is None:
            return np.full(len(self.levels), np.nan)
        diag = np.diag(self.covariance).astype(float)
        with np.errstate(invalid='ignore'):
            return np.where(diag >= 0, np.sqrt(np.abs(diag)), np.nan)

    @property
    def slope_se(self) -> float:
        return float(self.standard_errors[0])

    @property
    def slope_p_value(self) -> float:
        """Two-sided Wald test of zero slope."""
        se = self.slope_se
        if not np.isfinite(se) or se <= 0:
            return np.nan
        return float(2 * (1 - stats.norm.cdf(abs(self.slope / se))))

    @property
    def degenerate(self) -> bool:
        """True when estimates should not be trusted at face value."""
        return self.convergence != CONVERGED or self.separated

    @property
    def trend(self) -> str:
        if self.slope > 0:
            return 'improving'
        if self.slope < 0:
            return 'declining'
        return 'stable'

    @property
    def cutpoint_labels(self) -> list[str]:
        return [f"{lo}|{hi}" for lo, hi in zip(self.levels[:-1], self.levels[1:])]

    def recentered(self, reference_year: float) -> "OrdinalFit":
        """Re-express the model around another reference year."""
        shift = reference_year - self.reference_year
        cutpoints = self.cutpoints - self.slope * shift

        covariance = None
        if self.covariance is not None:
            transform = np.eye(len(self.levels))
            transform[1:, 0] = -shift
            covariance = transform @ self.covariance @ transform.T

        return replace(self, cutpoints=cutpoints, reference_year=reference_year, covariance=covariance)

    # -- prediction --------------------------------------------------------

    def cumulative_probabilities(self, years: Any) -> np.ndarray:
        """``P(class <= level)`` for each year (rows) and cutpoint (columns)."""
        centered = np.atleast_1d(np.asarray(years, dtype=float)) - self.reference_year
        return inv_logit(self.cutpoints[None, :] - self.slope * centered[:, None])

    def level_probabilities(self, years: Any) -> np.ndarray:
        """Probability of each observed level for each year."""
        cumulative = self.cumulative_probabilities(years)
        n = cumulative.shape[0]
        bounded = np.hstack([np.zeros((n, 1)), cumulative, np.ones((n, 1))])
        return np.clip(np.diff(bounded, axis=1), 0.0, 1.0)

    def predict_proba(self, years: Any) -> pd.DataFrame:
        """Probability of every class in ``class_order`` for each year."""
        years = np.atleast_1d(np.asarray(years))
        proba = pd.DataFrame(0.0, index=pd.Index(years, name='Year'), columns=list(self.class_order))
        proba[list(self.levels)] = self.level_probabilities(years)
        return proba

    def predict(self, years: Any) -> pd.Series:
        """Most probable class for each year."""
        proba = self.predict_proba(years)
        return proba.idxmax(axis=1).rename('predicted_class')

    def probability_at_least(self, years: Any, target_class: str) -> np.ndarray:
        """``P(class >= target_class)`` for each year."""
        position = self.class_order.index(target_class)
        proba = self.predict_proba(years)
        return proba[list(self.class_order[position:])].sum(axis=1).to_numpy()

    def observed_class_probability(self, years: Any, classes: Sequence[str]) -> np.ndarray:
        """Fitted probability of the class actually observed at each sample."""
        proba = self.level_probabilities(years)
        index = [self.levels.index(c) for c in classes]
        return proba[np.arange(len(index)), index]

    def to_record(self) -> dict[str, Any]:
        """Flat row for the coefficient table."""
        se = self.standard_errors
        record = {
            'Station': self.station,
            'n_obs': self.n_obs,
            'first_year': self.first_year,
            'last_year': self.last_year,
            'levels': ','.join(self.levels),
            'reference_year': self.reference_year,
            'slope': self.slope,
            'slope_se': se[0],
            'slope_p_value': self.slope_p_value,
            'trend': self.trend,
        }
        for label, cut, cut_se in zip(self.cutpoint_labels, self.cutpoints, se[1:]):
            record[f'cut_{label}'] = cut
            record[f'se_{label}'] = cut_se
        record.update({
            'log_likelihood': self.log_likelihood,
            'convergence': self.convergence,
            'separated': self.separated,
            'degenerate': self.degenerate,
            'warnings': '; '.join(self.fit_warnings),
        })
        return record


class OrdinalTrendModeler:
    """Fits one proportional-odds model of class on centered year per station."""

    def __init__(self, config: AnalysisConfig, logger: logging.Logger):
        self.config = config
        self.logger = logger

    def fit_station(self, station: str, records: pd.DataFrame,
                    reference_year: Optional[float] = None) -> OrdinalFit:
        """Fit the ordinal model to one station's determinate records."""
        if reference_year is None:
            reference_year = self.config.reference_year

        records = records.dropna(subset=['Class']).sort_values('Date')
        classes = pd.Series(
            pd.Categorical(records['Class'], categories=list(self.config.class_order), ordered=True),
            index=records.index,
            name='Class',
        ).cat.remove_unused_categories()
        levels = tuple(classes.cat.categories)
        if len(levels) < 2:
            raise ValueError(f"{station}: need at least two observed classes, got {list(levels)}")

        years = records['Year'].to_numpy(dtype=float)
        exog = pd.DataFrame({'YearCentered': years - reference_year}, index=records.index)

        model = OrderedModel(classes, exog, distr='logit')
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter('always')
            result = model.fit(method=self.config.fit_method, maxiter=self.config.max_iterations, disp=False)

        raw = np.asarray(result.params, dtype=float)
        thresholds = model.transform_threshold_params(raw)
        covariance = self._natural_covariance(result, raw)

        converged = bool(result.mle_retvals.get('converged', False))
        if not converged:
            convergence = NOT_CONVERGED
        elif not np.all(np.isfinite(np.diag(covariance))):
            convergence = COVARIANCE_FAILED
        else:
            convergence = CONVERGED

        fit = OrdinalFit(
            station=station,
            levels=levels,
            cutpoints=thresholds[1:-1],
            slope=float(raw[0]),
            reference_year=reference_year,
            class_order=self.config.class_order,
            covariance=covariance,
            n_obs=len(records),
            first_year=int(years.min()),
            last_year=int(years.max()),
            log_likelihood=float(result.llf),
            convergence=convergence,
            fit_warnings=sorted({f"{w.category.__name__}: {w.message}" for w in caught}),
        )

        own = fit.observed_class_probability(years, classes.astype(str).tolist())
        fit.separated = bool(
            own.min() >= self.config.separation_probability
            or self.years_separate_classes(years, classes.cat.codes.to_numpy())
            or np.nanmax(fit.standard_errors, initial=0.0) > self.config.max_standard_error
        )

        return fit

    @staticmethod
    def years_separate_classes(years: np.ndarray, codes: np.ndarray) -> bool:
        """
        True when year orders the classes with at most ties on each boundary.

        Checks every cutpoint in one direction: no lower-class sample later than
        a higher-class sample (improving), or none earlier (declining). The
        likelihood then has no finite maximum.
        """
        years = np.asarray(years, dtype=float)
        codes = np.asarray(codes)
        boundaries = np.unique(codes)[:-1]
        if boundaries.size == 0:
            return False

        improving = all(years[codes <= j].max() <= years[codes > j].min() for j in boundaries)
        declining = all(years[codes <= j].min() >= years[codes > j].max() for j in boundaries)
        return improving or declining

    @staticmethod
    def _natural_covariance(result: Any, raw: np.ndarray) -> np.ndarray:
        """
        Covariance of [slope, cutpoints] from the optimizer's parameterisation.

        OrderedModel estimates the first threshold directly and the rest as
        log increments, so the delta method maps them back to cutpoints.
        """
        k = raw.size
        try:
            cov_raw = np.asarray(result.cov_params(), dtype=float)
        except (ValueError, np.linalg.LinAlgError):
            return np.full((k, k), np.nan)

        jacobian = np.zeros((k, k))
        jacobian[0, 0] = 1.0
        for i in range(1, k):
            jacobian[i, 1] = 1.0
            for j in range(2, i + 1):
                jacobian[i, j] = np.exp(raw[j])
        return jacobian @ cov_raw @ jacobian.T

    def fit_all(self, df: pd.DataFrame) -> tuple[dict[str, OrdinalFit], pd.DataFrame]:
        """Fit every station in ``df``; a failing station does not stop the others."""
        self.logger.info("=" * 60)
        self.logger.info("ORDINAL TREND MODELS")
        self.logger.info("=" * 60)

        fits: dict[str, OrdinalFit] = {}
        failures = []

        for station, records in df.groupby('Station', sort=True, observed=True):
            try:
                fit = self.fit_station(str(station), records)
            except (ValueError, ArithmeticError, IndexError, np.linalg.LinAlgError) as e:
                self.logger.warning(f"  {station}: fit failed ({e})")
                failures.append({'Station': str(station), 'n_obs': len(records), 'error': str(e)})
                continue

            fits[fit.station] = fit
            self.logger.debug(
                f"  {fit.station}: slope={fit.slope:+.3f} cutpoints={np.round(fit.cutpoints, 2).tolist()} "
                f"convergence={fit.convergence}"
            )
            if fit.convergence != CONVERGED:
                self.logger.warning(
                    f"  {fit.station}: convergence code {fit.convergence} - estimates unreliable"
                )
            if fit.separated:
                self.logger.warning(
                    f"  {fit.station}: classes separated by year - cutpoints/SE inflated"
                )

        n_degenerate = sum(fit.degenerate for fit in fits.values())
        self.logger.info(f"  Fitted: {len(fits)}, degenerate: {n_degenerate}, failed: {len(failures)}")

        return fits, pd.DataFrame(failures, columns=['Station', 'n_obs', 'error'])

    @staticmethod
    def coefficient_table(fits: dict[str, OrdinalFit]) -> pd.DataFrame:
        """One row per fitted station."""
        return pd.DataFrame([fit.to_record() for fit in fits.values()])


# =============================================================================
# PREDICTION
# =============================================================================

def predict_table(fits: dict[str, OrdinalFit], years: Sequence[int],
                  target_class: str,
                  station_targets: Optional[dict[str, str]] = None) -> pd.DataFrame:
    """
    Predicted class probabilities for every fitted station and year.

    ``station_targets`` overrides ``target_class`` per station (e.g. the
    station's statutory class) for the ``p_meets_target`` column.
    """
    station_targets = station_targets or {}
    frames = []

    for station, fit in fits.items():
        target = station_targets.get(station, target_class)
        if target not in fit.class_order:
            target = target_class

        proba = fit.predict_proba(years)
        table = proba.add_prefix('p_').reset_index()
        table.insert(0, 'Station', station)
        table['predicted_class'] = proba.idxmax(axis=1).to_numpy()
        table['target_class'] = target
        table['p_meets_target'] = fit.probability_at_least(years, target)
        table['convergence'] = fit.convergence
        table['degenerate'] = fit.degenerate
        frames.append(table)

    if not frames:
        return pd.DataFrame()
    return pd.concat(frames, ignore_index=True)


# =============================================================================
# MOST RECENT RECORDS AND IMPERVIOUSNESS
# =============================================================================

def most_recent_records(samples: pd.DataFrame, stations: pd.DataFrame) -> pd.DataFrame:
    """Most recent sample per station, joined with station metadata."""
    latest = (
        samples.sort_values(['Station', 'Date'])
        .groupby('Station', observed=True)
        .tail(1)
    )
    counts = samples.groupby('Station', observed=True).size().rename('n_samples').reset_index()

    latest = latest.merge(counts, on='Station', how='left')
    latest = latest.merge(stations, on='Station', how='left')
    return latest.sort_values('Station').reset_index(drop=True)


class ImperviousnessAnalysis:
    """Relates biological condition to percent impervious cover."""

    def __init__(self, config: AnalysisConfig, logger: logging.Logger):
        self.config = config
        self.logger = logger

    def analyze(self, latest: pd.DataFrame) -> dict[str, Any]:
        """Summarise most recent station records by imperviousness bin."""
        self.logger.info("=" * 60)
        self.logger.info("IMPERVIOUSNESS ANALYSIS")
        self.logger.info("=" * 60)

        if 'Imperviousness' not in latest.columns:
            self.logger.info("  No imperviousness data available")
            return {'by_bin': pd.DataFrame(), 'spearman_r': np.nan, 'spearman_p': np.nan, 'n_stations': 0}

        df = latest.dropna(subset=['Imperviousness', 'Class']).copy()
        bins = list(self.config.imperviousness_bins)
        labels = [f"{lo}-{hi}%" for lo, hi in zip(bins[:-1], bins[1:])]
        df['ImperviousBin'] = pd.cut(df['Imperviousness'], bins=bins, labels=labels, include_lowest=True)

        by_bin = df.groupby('ImperviousBin', observed=False).agg(
            n_stations=('Station', 'size'),
            n_assessed=('Attains', lambda s: int(s.notna().sum())),
            n_attaining=('Attains', lambda s: int(s.fillna(False).astype(bool).sum())),
            median_imperviousness=('Imperviousness', 'median'),
        )
        by_bin['attainment_rate'] = np.where(
            by_bin['n_assessed'] > 0,
            by_bin['n_attaining'] / by_bin['n_assessed'].where(by_bin['n_assessed'] > 0, 1),
            np.nan,
        )
        class_counts = (
            df.groupby(['ImperviousBin', 'Class'], observed=False)
            .size()
            .unstack('Class', fill_value=0)
        )
        class_counts.columns = [f'n_class_{c}' for c in class_counts.columns]
        by_bin = by_bin.join(class_counts).reset_index()

        spearman_r, spearman_p = np.nan, np.nan
        if len(df) >= 3:
            rank = df['Class'].cat.codes
            if rank.nunique() > 1 and df['Imperviousness'].nunique() > 1:
                spearman_r, spearman_p = stats.spearmanr(df['Imperviousness'], rank)

        self.logger.info(f"  Stations with imperviousness and class: {len(df)}")
        if np.isfinite(spearman_r):
            self.logger.info(f"  Spearman r (imperviousness vs class): {spearman_r:.3f} (p={spearman_p:.4f})")

        return {
            'by_bin': by_bin,
            'spearman_r': float(spearman_r),
            'spearman_p': float(spearman_p),
            'n_stations': len(df),
        }


# =============================================================================
# VISUALIZATION
# =============================================================================

class BiomonitoringVisualizer:
    """Creates visualizations for the biomonitoring trend analysis."""

    def __init__(self, config: AnalysisConfig, logger: logging.Logger):
        self.config = config
        self.logger = logger
        plt.style.use('seaborn-v0_8-whitegrid')
        sns.set_palette(config.color_palette)

    def create_all_visualizations(self, selected: pd.DataFrame, fits: dict[str, OrdinalFit],
                                  latest: pd.DataFrame, impervious_results: dict) -> list[Path]:
        """Generate all visualization plots."""
        self.logger.info("=" * 60)
        self.logger.info("GENERATING VISUALIZATIONS")
        self.logger.info("=" * 60)

        output_dir = self.config.output_dir / "plots"
        output_dir.mkdir(parents=True, exist_ok=True)

        written = [
            self._plot_class_histories(selected, output_dir),
            self._plot_predicted_probabilities(fits, output_dir),
            self._plot_class_vs_imperviousness(latest, output_dir),
            self._plot_attainment_by_imperviousness(impervious_results.get('by_bin', pd.DataFrame()), output_dir),
        ]
        written = [path for path in written if path is not None]

        self.logger.info(f"Visualizations saved to {output_dir}")
        return written

    def _panel_grid(self, n_panels: int, ncols: int = 3):
        nrows = int(np.ceil(n_panels / ncols))
        fig, axes = plt.subplots(nrows, ncols, figsize=(5 * ncols, 3.5 * nrows), squeeze=False)
        for ax in axes.ravel()[n_panels:]:
            ax.set_visible(False)
        return fig, axes.ravel()

    def _save(self, fig, path: Path) -> Path:
        fig.tight_layout()
        fig.savefig(path, dpi=self.config.figure_dpi, bbox_inches='tight')
        plt.close(fig)
        return path

    def _plot_class_histories(self, selected: pd.DataFrame, output_dir: Path) -> Optional[Path]:
        """Observed class by year for each selected station."""
        if len(selected) == 0:
            return None

        self.logger.info("  Creating class history plot...")

        stations = sorted(selected['Station'].unique())[:self.config.max_station_panels]
        order = list(self.config.class_order)
        fig, axes = self._panel_grid(len(stations))

        for ax, station in zip(axes, stations):
            data = selected[selected['Station'] == station]
            ax.plot(data['Year'], data['Class'].cat.codes, 'o-', color='steelblue', alpha=0.8)
            ax.set_yticks(range(len(order)))
            ax.set_yticklabels(order)
            ax.set_ylim(-0.5, len(order) - 0.5)
            ax.set_title(station, fontsize=10)
            ax.set_xlabel('Year')

        fig.suptitle('Observed Biological Class by Station', fontsize=14)
        return self._save(fig, output_dir / 'class_histories.png')

    def _plot_predicted_probabilities(self, fits: dict[str, OrdinalFit], output_dir: Path) -> Optional[Path]:
        """Stacked predicted class probabilities from first sample year through the prediction grid."""
        if not fits:
            return None

        self.logger.info("  Creating predicted probability plot...")

        order = list(self.config.class_order)
        colors = sns.color_palette('RdYlGn', len(order))
        shown = list(fits.values())[:self.config.max_station_panels]
        fig, axes = self._panel_grid(len(shown))
        last_year = max(self.config.prediction_years)

        for ax, fit in zip(axes, shown):
            start = fit.first_year if fit.first_year is not None else fit.reference_year
            years = np.arange(start, last_year + 1)
            proba = fit.predict_proba(years)
            ax.stackplot(years, proba[order].T.to_numpy(), labels=order, colors=colors, alpha=0.85)
            if fit.last_year is not None:
                ax.axvline(fit.last_year, color='black', linestyle='--', linewidth=1)
            title = fit.station + (' (unreliable)' if fit.degenerate else '')
            ax.set_title(title, fontsize=10, color='darkred' if fit.degenerate else 'black')
            ax.set_ylim(0, 1)
            ax.set_xlabel('Year')
            ax.set_ylabel('Probability')

        handles, labels = axes[0].get_legend_handles_labels() if shown else ([], [])
        fig.legend(handles[::-1], labels[::-1], loc='upper right', title='Class')
        fig.suptitle('Predicted Class Probabilities (dashed = last sample year)', fontsize=14)
        return self._save(fig, output_dir / 'predicted_probabilities.png')

    def _plot_class_vs_imperviousness(self, latest: pd.DataFrame, output_dir: Path) -> Optional[Path]:
        """Most recent class against percent impervious cover."""
        if 'Imperviousness' not in latest.columns:
            return None
        data = latest.dropna(subset=['Imperviousness', 'Class'])
        if len(data) == 0:
            return None

        self.logger.info("  Creating class vs imperviousness plot...")

        fig, ax = plt.subplots(figsize=(10, 6))
        sns.stripplot(data=data.assign(Class=data['Class'].astype(str)), x='Class', y='Imperviousness',
                      order=list(self.config.class_order), jitter=0.2, size=6, ax=ax)
        ax.axhline(10, color='red', linestyle='--', linewidth=2, label='10% Impervious Cover')
        ax.set_xlabel('Most Recent Biological Class', fontsize=12)
        ax.set_ylabel('Impervious Cover (%)', fontsize=12)
        ax.set_title('Biological Class vs Watershed Imperviousness', fontsize=14)
        ax.legend()

        return self._save(fig, output_dir / 'class_vs_imperviousness.png')

    def _plot_attainment_by_imperviousness(self, by_bin: pd.DataFrame, output_dir: Path) -> Optional[Path]:
        """Attainment rate by imperviousness bin."""
        if len(by_bin) == 0 or by_bin['n_assessed'].sum() == 0:
            return None

        self.logger.info("  Creating attainment by imperviousness plot...")

        fig, ax = plt.subplots(figsize=(10, 6))
        rates = 100 * by_bin['attainment_rate'].fillna(0)
        bars = ax.bar(by_bin['ImperviousBin'].astype(str), rates, color='steelblue', edgecolor='navy', alpha=0.8)

        for bar, n in zip(bars, by_bin['n_assessed']):
            ax.text(bar.get_x() + bar.get_width() / 2, bar.get_height() + 1,
                    f'n={n}', ha='center', fontsize=9)

        ax.set_xlabel('Impervious Cover', fontsize=12)
        ax.set_ylabel('Stations Attaining Class (%)', fontsize=12)
        ax.set_ylim(0, 110)
        ax.set_title('Attainment Rate by Impervious Cover', fontsize=14)

        return self._save(fig, output_dir / 'attainment_by_imperviousness.png')


# =============================================================================
# REPORT GENERATION
# =============================================================================

class ReportGenerator:
    """Generates analysis reports and exports results."""

    def __init__(self, config: AnalysisConfig, logger: logging.Logger):
        self.config = config
        self.logger = logger

    def generate_reports(self, station_summary: pd.DataFrame, fits: dict[str, OrdinalFit],
                         failures: pd.DataFrame, predictions: pd.DataFrame,
                         latest: pd.DataFrame, impervious_results: dict) -> None:
        """Generate all reports and export data."""
        self.logger.info("=" * 60)
        self.logger.info("GENERATING REPORTS")
        self.logger.info("=" * 60)

        output_dir = self.config.output_dir
        output_dir.mkdir(parents=True, exist_ok=True)

        self._export(station_summary, output_dir / 'station_summary.csv')
        self._export(OrdinalTrendModeler.coefficient_table(fits), output_dir / 'ordinal_coefficients.csv')
        self._export(predictions, output_dir / 'predicted_class_probabilities.csv')
        self._export(latest, output_dir / 'most_recent_station_records.csv')
        if len(failures) > 0:
            self._export(failures, output_dir / 'fit_failures.csv')
        by_bin = impervious_results.get('by_bin', pd.DataFrame())
        if len(by_bin) > 0:
            self._export(by_bin, output_dir / 'imperviousness_summary.csv')

        self._generate_text_report(station_summary, fits, failures, predictions, impervious_results, output_dir)

    def _export(self, df: pd.DataFrame, path: Path) -> None:
        df.to_csv(path, index=False)
        self.logger.info(f"  Saved: {path.name}")

    def _generate_text_report(self, station_summary: pd.DataFrame, fits: dict[str, OrdinalFit],
                              failures: pd.DataFrame, predictions: pd.DataFrame,
                              impervious_results: dict, output_dir: Path) -> None:
        """Generate plain-text summary report."""
        n_selected = int(station_summary['selected'].sum()) if 'selected' in station_summary else 0
        lines = [
            "=" * 80,
            "STREAM BIOMONITORING CLASS TREND REPORT",
            f"Generated: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
            f"Sample type: {self.config.sample_type}",
            "=" * 80,
            "",
            "STATION SELECTION",
            "-" * 50,
            f"Stations with determinate samples: {len(station_summary)}",
            f"Selection rule: >= {self.config.min_samples} samples, "
            f">= {self.config.min_year_span} year span, class varies",
            f"Stations selected for modelling: {n_selected}",
            "",
        ]

        if fits:
            lines.extend([
                f"ORDINAL TRENDS (year centered on {self.config.reference_year})",
                "-" * 50,
            ])
            for fit in fits.values():
                flag = " [UNRELIABLE]" if fit.degenerate else ""
                p = fit.slope_p_value
                p_text = f"p={p:.4f}" if np.isfinite(p) else "p=n/a"
                significant = np.isfinite(p) and p < self.config.significance_level
                lines.append(
                    f"{fit.station}: {fit.trend}{' (significant)' if significant else ''} "
                    f"slope={fit.slope:+.3f}/yr, {p_text}, n={fit.n_obs}, "
                    f"{fit.first_year}-{fit.last_year}{flag}"
                )
            lines.append("")

        unreliable = [fit for fit in fits.values() if fit.degenerate]
        if unreliable or len(failures) > 0:
            lines.extend([
                "FITS REQUIRING REVIEW",
                "-" * 50,
            ])
            for fit in unreliable:
                reasons = []
                if fit.convergence != CONVERGED:
                    reasons.append(f"convergence code {fit.convergence}")
                if fit.separated:
                    reasons.append("classes separated by year")
                lines.append(f"{fit.station}: {', '.join(reasons)}")
            for _, row in failures.iterrows():
                lines.append(f"{row['Station']}: fit failed ({row['error']})")
            lines.append("")

        if len(predictions) > 0:
            final_year = max(self.config.prediction_years)
            final = predictions[predictions['Year'] == final_year]
            lines.extend([
                f"PROJECTED CLASS IN {final_year}",
                "-" * 50,
            ])
            for _, row in final.iterrows():
                lines.append(
                    f"{row['Station']}: {row['predicted_class']} "
                    f"(P(>= {row['target_class']}) = {row['p_meets_target']:.2f})"
                )
            lines.append("")

        r = impervious_results.get('spearman_r', np.nan)
        if impervious_results.get('n_stations', 0) > 0:
            lines.extend([
                "IMPERVIOUSNESS",
                "-" * 50,
                f"Stations with imperviousness data: {impervious_results['n_stations']}",
                f"Spearman r (imperviousness vs class): "
                + (f"{r:.3f} (p={impervious_results['spearman_p']:.4f})" if np.isfinite(r) else "n/a"),
                "",
            ])

        lines.extend([
            "=" * 80,
            "END OF REPORT",
            "=" * 80,
        ])

        with open(output_dir / 'analysis_report.txt', 'w') as f:
            f.write('\n'.join(lines))

        self.logger.info("  Saved: analysis_report.txt")


# =============================================================================
# MAIN EXECUTION
# =============================================================================

def run_analysis(config: AnalysisConfig, logger: logging.Logger) -> dict[str, Any]:
    """Run the full pipeline and return its intermediate results."""
    loader = BiomonitoringDataLoader(config, logger)
    samples = loader.clean_samples(loader.load_samples())
    stations = loader.clean_stations(loader.load_stations())

    selector = StationSelector(config, logger)
    selected, station_summary = selector.select(samples)

    modeler = OrdinalTrendModeler(config, logger)
    fits, failures = modeler.fit_all(selected)

    station_targets = {}
    if 'StatutoryClass' in stations.columns:
        station_targets = stations.dropna(subset=['StatutoryClass']).set_index('Station')['StatutoryClass'].to_dict()
    predictions = predict_table(fits, config.prediction_years, config.target_class, station_targets)

    latest = most_recent_records(selector.restrict(samples), stations)
    impervious_results = ImperviousnessAnalysis(config, logger).analyze(latest)

    if config.make_plots:
        visualizer = BiomonitoringVisualizer(config, logger)
        visualizer.create_all_visualizations(selected, fits, latest, impervious_results)

    reporter = ReportGenerator(config, logger)
    reporter.generate_reports(station_summary, fits, failures, predictions, latest, impervious_results)

    return {
        'samples': samples,
        'stations': stations,
        'selected': selected,
        'station_summary': station_summary,
        'fits': fits,
        'failures': failures,
        'predictions': predictions,
        'latest': latest,
        'imperviousness': impervious_results,
    }


def build_parser() -> argparse.ArgumentParser:
    defaults = AnalysisConfig()
    parser = argparse.ArgumentParser(description="Per-station ordinal trend analysis of biomonitoring classes")
    parser.add_argument("--samples", type=Path, default=defaults.sample_file, help="Sample records CSV")
    parser.add_argument("--stations", type=Path, default=defaults.station_file, help="Station metadata CSV")
    parser.add_argument("--output-dir", type=Path, default=defaults.output_dir, help="Output directory")
    parser.add_argument("--sample-type", default=defaults.sample_type, help="Sample type to analyse")
    parser.add_argument("--min-samples", type=int, default=defaults.min_samples,
                        help="Minimum determinate samples per station")
    parser.add_argument("--min-span", type=int, default=defaults.min_year_span,
                        help="Minimum years between first and last sample")
    parser.add_argument("--reference-year", type=int, default=defaults.reference_year,
                        help="Year the covariate is centered on")
    parser.add_argument("--prediction-years", type=int, nargs="+", default=list(defaults.prediction_years),
                        help="Years to project class probabilities for")
    parser.add_argument("--no-plots", action="store_true", help="Skip figure generation")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> None:
    """Main execution function."""
    args = build_parser().parse_args(argv)
    config = AnalysisConfig(
        sample_file=args.samples,
        station_file=args.stations,
        output_dir=args.output_dir,
        sample_type=args.sample_type,
        min_samples=args.min_samples,
        min_year_span=args.min_span,
        reference_year=args.reference_year,
        prediction_years=tuple(args.prediction_years),
        make_plots=not args.no_plots,
    )
    logger = setup_logging(config.output_dir)

    logger.info("=" * 60)
    logger.info("STREAM BIOMONITORING CLASS TREND ANALYSIS")
    logger.info("=" * 60)

    warnings.filterwarnings('ignore', category=FutureWarning)

    try:
        run_analysis(config, logger)

        logger.info("=" * 60)
        logger.info("ANALYSIS COMPLETE")
        logger.info(f"Results saved to: {config.output_dir.absolute()}")
        logger.info("=" * 60)

    except FileNotFoundError as e:
        logger.error(f"Input file not found: {e}")
        raise
    except Exception as e:
        logger.exception(f"Analysis failed: {e}")
        raise


if __name__ == "__main__":
    main()
