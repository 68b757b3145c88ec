"""
base_model.py
=============
Base Class for Movie Audience-Score Models

Shared plumbing for every model in the report:
- MovieRecord loading (CSV or pickle cache) with derived variables
  (IMDB rating rescaled to 0-100, parsed release date, consolidated oscar flag)
- Term-aware design matrix construction
- Metrics, K-fold cross-validation
- LaTeX command generation, JSON/CSV artifacts, residual diagnostic plots
"""

import numpy as np
import pandas as pd
from typing import List, Tuple, Dict, Any, Optional
from dataclasses import dataclass, field, asdict
from pathlib import Path
from datetime import date, datetime
import pickle
import json
import logging
from sklearn.model_selection import KFold
from sklearn.metrics import r2_score, mean_squared_error, mean_absolute_error
import matplotlib.pyplot as plt
from scipy import stats
from abc import ABC, abstractmethod

logger = logging.getLogger(__name__)

RESPONSE = 'audience_score'

REQUIRED_COLUMNS = [
    'title', 'title_type', 'genre', 'runtime', 'mpaa_rating',
    'thtr_rel_year', 'thtr_rel_month', 'thtr_rel_day',
    'imdb_rating', 'imdb_num_votes', 'critics_score', 'audience_score',
    'best_pic_nom', 'best_pic_win', 'best_actor_win', 'best_actress_win',
    'best_dir_win', 'top200_box'
]

# Columns carried by the dataset that the analysis never uses
UNUSED_COLUMNS = [
    'studio', 'dvd_rel_year', 'dvd_rel_month', 'dvd_rel_day',
    'director', 'actor1', 'actor2', 'actor3', 'actor4', 'actor5',
    'imdb_url', 'rt_url', 'critics_rating', 'audience_rating'
]

OSCAR_WIN_FLAGS = ['best_pic_win', 'best_actor_win', 'best_actress_win', 'best_dir_win']

# Numeric fields that must be present for a row to enter the analysis
NUMERIC_FIELDS = ['runtime', 'imdb_rating', 'imdb_num_votes', 'critics_score', 'audience_score']

ANALYSIS_COLUMNS = [
    'title', 'title_type', 'genre', 'mpaa_rating', 'runtime',
    'imdb_rating', 'imdb_num_votes', 'critics_score', 'audience_score',
    'best_pic_nom', 'oscar', 'top200_box', 'release_date', 'release_year'
]


@dataclass
class MovieRecord:
    """One movie after derivation"""
    title: str
    title_type: str
    genre: str
    mpaa_rating: str
    runtime: float
    imdb_rating: float          # rescaled to 0-100
    imdb_num_votes: float
    critics_score: float
    audience_score: float
    release_date: date

    best_pic_nom: str = "no"
    best_pic_win: str = "no"
    best_actor_win: str = "no"
    best_actress_win: str = "no"
    best_dir_win: str = "no"
    top200_box: str = "no"

    # Derived
    oscar: str = "no"
    release_year: int = field(init=False, default=0)

    def __post_init__(self):
        """Coerce numerics to float and flags to lowercase yes/no"""
        for name in NUMERIC_FIELDS:
            value = getattr(self, name)
            setattr(self, name, float(value) if value is not None else np.nan)
        for name in ['best_pic_nom', 'top200_box', 'oscar'] + OSCAR_WIN_FLAGS:
            setattr(self, name, _normalize_flag(getattr(self, name)))
        self.release_year = self.release_date.year


def _normalize_flag(value: Any) -> str:
    if isinstance(value, bool):
        return "yes" if value else "no"
    text = str(value).strip().lower() if value is not None else "no"
    if text in ("yes", "y", "true", "1"):
        return "yes"
    if text in ("no", "n", "false", "0", "", "nan", "none"):
        return "no"
    raise ValueError(f"Unrecognised yes/no flag value: {value!r}")


def _is_missing(value: Any) -> bool:
    if value is None:
        return True
    try:
        return bool(pd.isna(value))
    except (TypeError, ValueError):
        return False


def parse_release_date(row: Dict[str, Any]) -> date:
    """Build the theatrical release date; malformed values raise ValueError"""
    try:
        return date(int(row['thtr_rel_year']), int(row['thtr_rel_month']), int(row['thtr_rel_day']))
    except (TypeError, ValueError) as e:
        raise ValueError(
            f"Malformed release date for '{row.get('title', '?')}': "
            f"{row.get('thtr_rel_year')}-{row.get('thtr_rel_month')}-{row.get('thtr_rel_day')}"
        ) from e


def derive_record(row: Dict[str, Any]) -> MovieRecord:
    """
    Turn one raw dataset row into a MovieRecord

    - imdb_rating rescaled from 0-10 to 0-100
    - release_date parsed from thtr_rel_year/month/day
    - oscar = "yes" when any of the four win flags is "yes"
    """
    imdb = float(row['imdb_rating'])
    if not 0.0 <= imdb <= 10.0:
        raise ValueError(f"imdb_rating out of range [0, 10] for '{row.get('title', '?')}': {imdb}")

    wins = [_normalize_flag(row.get(flag, "no")) for flag in OSCAR_WIN_FLAGS]

    return MovieRecord(
        title=str(row['title']),
        title_type=str(row['title_type']),
        genre=str(row['genre']),
        mpaa_rating=str(row['mpaa_rating']),
        runtime=row['runtime'],
        imdb_rating=imdb * 10.0,
        imdb_num_votes=row['imdb_num_votes'],
        critics_score=row['critics_score'],
        audience_score=row.get('audience_score'),
        release_date=parse_release_date(row),
        best_pic_nom=row.get('best_pic_nom', "no"),
        best_pic_win=wins[0],
        best_actor_win=wins[1],
        best_actress_win=wins[2],
        best_dir_win=wins[3],
        top200_box=row.get('top200_box', "no"),
        oscar="yes" if "yes" in wins else "no",
    )


def latex_escape(text: str) -> str:
    repl = {
        "&": r"\&", "%": r"\%", "$": r"\$", "#": r"\#",
        "_": r"\_", "{": r"\{", "}": r"\}", "~": r"\textasciitilde{}",
        "^": r"\textasciicircum{}", "\\": r"\textbackslash{}",
    }
    return "".join(repl.get(c, c) for c in text)


def records_to_frame(records: List[MovieRecord]) -> pd.DataFrame:
    """Analysis frame with unused columns dropped"""
    frame = pd.DataFrame([asdict(r) for r in records])
    return frame[[c for c in ANALYSIS_COLUMNS if c in frame.columns]]


class BaseMovieModel(ABC):
    """
    Base class for audience-score models

    Handles all common functionality:
    - Data loading and derivation
    - Design matrix construction (term-aware)
    - Cross-validation
    - Metrics calculation
    - LaTeX generation
    - Diagnostic plots

    Child classes implement:
    - prepare_features(records) -> (X, feature_names)
    - _fit_core(X, y) -> fit model
    - _predict_core(X) -> predictions
    - _cv_fit(X, y) / _cv_predict(fold_model, X) -> per-fold refit for CV
    """

    def __init__(self, model_id: int, model_name: str,
                 significance_level: float = 0.05,
                 random_seed: int = 42,
                 output_root: Optional[Path] = None,
                 log_suffix: Optional[str] = None):
        """
        Initialize base model

        Args:
            model_id: Model number
            model_name: Descriptive name
            significance_level: Alpha for term significance
            random_seed: Random seed for reproducibility
            output_root: Report root (defaults to ../../report next to this file)
            log_suffix: Optional suffix for the log file name
        """
        self.model_id = model_id
        self.model_name = model_name
        self.significance_level = significance_level

        self.random_seed = random_seed
        np.random.seed(random_seed)

        # Data storage
        self.all_records: List[MovieRecord] = []
        self.records_skipped: Dict[str, int] = {}

        # Features and targets
        self.feature_config: Optional[Dict[str, Any]] = None
        self.X: Optional[np.ndarray] = None
        self.y: Optional[np.ndarray] = None
        self.feature_names: List[str] = []
        self.feature_terms: Dict[str, List[str]] = {}
        self.term_kinds: Dict[str, str] = {}
        self.resolved_categories: Dict[str, List[str]] = {}
        self.resolved_references: Dict[str, Optional[str]] = {}

        # Predictions
        self.fitted_values: Optional[np.ndarray] = None
        self.residuals: Optional[np.ndarray] = None

        self.model = None
        self.metrics: Dict[str, Any] = {}
        self.cv_results: Dict[str, Any] = {}

        # Output directory
        if output_root is None:
            output_root = Path(__file__).parent / "../../report"
        self.output_root = Path(output_root).resolve()
        self.output_dir_relative = Path("models") / f"model_{model_id}"
        self.output_dir = self.output_root / self.output_dir_relative
        self.output_dir.mkdir(parents=True, exist_ok=True)

        self.log_suffix = log_suffix
        self._setup_logging()

        self.log_section(f"INITIALIZING MODEL {self.model_id}: {self.model_name.upper()}", "=")
        self.logger.info(f"Output directory: {self.output_dir_relative}")
        self.logger.info(f"Configuration:")
        self.logger.info(f"  - Significance level: {significance_level}")
        self.logger.info(f"  - Random seed: {random_seed}")

    def _setup_logging(self):
        """Set up model-specific logging"""
        log_dir = self.output_root / "logs"
        log_dir.mkdir(parents=True, exist_ok=True)
        if self.log_suffix:
            log_filename = log_dir / f"model_{self.model_id}_log_{self.log_suffix}.txt"
        else:
            log_filename = log_dir / f"model_{self.model_id}_log.txt"

        self.logger = logging.getLogger(f"MODEL_{self.model_id}")
        self.logger.setLevel(logging.INFO)
        for handler in list(self.logger.handlers):
            handler.close()
        self.logger.handlers.clear()

        # Prevent duplicate output from the Orchestrator root handlers
        self.logger.propagate = False

        fh = logging.FileHandler(log_filename, mode='w', encoding='utf-8')
        fh.setLevel(logging.INFO)

        ch = logging.StreamHandler()
        ch.setLevel(logging.INFO)

        formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s',
                                      datefmt='%Y-%m-%d %H:%M:%S')
        fh.setFormatter(formatter)
        ch.setFormatter(formatter)

        self.logger.addHandler(fh)
        self.logger.addHandler(ch)

    def log_section(self, title: str, char: str = "-"):
        """Log section header"""
        self.logger.info("")
        self.logger.info(char * 60)
        self.logger.info(title.upper())
        self.logger.info(char * 60)

    def log_metrics_summary(self):
        """Log formatted metrics summary"""
        self.logger.info("")
        self.logger.info("-" * 60)
        self.logger.info("PERFORMANCE METRICS SUMMARY")
        self.logger.info("-" * 60)

        if self.metrics:
            self.logger.info(f"R^2: {self.metrics.get('r2', 0):.4f}")
            self.logger.info(f"Adjusted R^2: {self.metrics.get('adj_r2', 0):.4f}")
            self.logger.info(f"RMSE: {self.metrics.get('rmse', 0):.3f}")
            self.logger.info(f"MAE: {self.metrics.get('mae', 0):.3f}")
            self.logger.info(f"Residual SE: {self.metrics.get('sigma', 0):.3f}")
            self.logger.info(f"AIC: {self.metrics.get('aic', 0):,.1f}  BIC: {self.metrics.get('bic', 0):,.1f}")

            if 'cv_r2_mean' in self.metrics:
                self.logger.info(f"CV R^2 (mean +- std): {self.metrics['cv_r2_mean']:.4f} +- "
                                 f"{self.metrics.get('cv_r2_std', 0):.4f}")

        self.logger.info("-" * 60)

    def log_all_features(self, features_data: List[Dict[str, Any]],
                         title: str = "Coefficients (sorted by p-value)"):
        """Log coefficient rows, significant ones first.

        Args:
            features_data: list of dicts with 'name', 'coefficient', 'std_error', 'p_value'
            title: Section title for the listing
        """
        self.logger.info("")
        self.logger.info("=" * 80)
        self.logger.info(title)
        self.logger.info("=" * 80)

        alpha = self.significance_level
        rows = sorted(features_data, key=lambda x: x.get('p_value', 1.0))
        sig = [f for f in rows if f.get('p_value', 1.0) < alpha]
        non_sig = [f for f in rows if f.get('p_value', 1.0) >= alpha]

        if sig:
            self.logger.info(f"Significant (p < {alpha}): {len(sig)} columns")
            self.logger.info("-" * 60)
            for idx, feat in enumerate(sig, 1):
                self._log_single_feature(idx, feat)
        if non_sig:
            self.logger.info("")
            self.logger.info(f"Non-significant (p >= {alpha}): {len(non_sig)} columns")
            self.logger.info("-" * 60)
            for idx, feat in enumerate(non_sig, 1):
                self._log_single_feature(idx, feat)

        self.logger.info("=" * 80)

    def _log_single_feature(self, idx, feature):
        name = feature.get('name', 'unknown')
        parts = [f"  {idx:3d}. {name:34s}"]
        if 'coefficient' in feature:
            parts.append(f"Beta={feature['coefficient']:10.4f}")
        if 'std_error' in feature:
            parts.append(f"SE={feature['std_error']:8.4f}")
        if 'p_value' in feature:
            if feature['p_value'] < 0.0001:
                parts.append("p<0.0001")
            else:
                parts.append(f"p={feature['p_value']:7.4f}")
        self.logger.info(" ".join(parts))

    def log_final_summary(self, summary_dict):
        """Log the final model summary consistently."""
        self.log_section(f"MODEL {self.model_id} FINAL SUMMARY", "=")

        for key, value in summary_dict.items():
            if isinstance(value, dict):
                self.logger.info(f"{key}:")
                for sub_key, sub_value in value.items():
                    self.logger.info(f"     {sub_key}: {sub_value}")
            elif isinstance(value, list):
                self.logger.info(f"{key}:")
                for item in value:
                    self.logger.info(f"     {item}")
            else:
                self.logger.info(f"{key}: {value}")

        self.logger.info("")
        self.logger.info("=" * 80)
        self.logger.info(f"Model {self.model_id} pipeline complete!")
        self.logger.info(f"Results saved to: {self.output_dir_relative}")
        self.logger.info("=" * 80)

    # ========================================================================
    # DATA LOADING
    # ========================================================================

    def _read_rows(self, data_path: Path) -> pd.DataFrame:
        """Read the raw table from CSV or a pickle cache"""
        if data_path.suffix.lower() in ('.pkl', '.pickle'):
            with open(data_path, 'rb') as f:
                obj = pickle.load(f)
            if isinstance(obj, pd.DataFrame):
                return obj
            if isinstance(obj, dict) and 'data' in obj:
                obj = obj['data']
            if isinstance(obj, list):
                return pd.DataFrame(obj)
            raise ValueError(f"Unexpected cache structure in {data_path}: {type(obj).__name__}")
        return pd.read_csv(data_path)

    def load_data(self, data_path) -> List[MovieRecord]:
        """
        Load and derive movie records

        Rows with a missing response or numeric predictor are skipped and
        counted. Missing columns and malformed dates abort the load.
        """
        data_path = Path(data_path)
        self.log_section(f"LOADING DATA: {data_path.name}")

        if not data_path.exists():
            raise FileNotFoundError(f"Data file not found: {data_path}")

        frame = self._read_rows(data_path)
        self.logger.info(f"Read {len(frame):,} rows, {len(frame.columns)} columns")

        missing = [c for c in REQUIRED_COLUMNS if c not in frame.columns]
        if missing:
            raise ValueError(f"Dataset is missing required columns: {missing}")

        dropped = [c for c in UNUSED_COLUMNS if c in frame.columns]
        if dropped:
            self.logger.info(f"Dropping {len(dropped)} unused columns: {', '.join(dropped)}")

        records: List[MovieRecord] = []
        skipped_missing = 0

        for i, row in enumerate(frame.to_dict(orient='records')):
            absent = [name for name in NUMERIC_FIELDS if _is_missing(row.get(name))]
            if absent:
                skipped_missing += 1
                if skipped_missing <= 3:
                    self.logger.warning(f"Row {i} ('{row.get('title', '?')}') skipped: missing {absent}")
                continue
            records.append(derive_record(row))

        self.records_skipped = {'missing_values': skipped_missing}

        self.logger.info(f"Load summary:")
        self.logger.info(f"  - Processed: {len(records):,}")
        self.logger.info(f"  - Skipped (missing values): {skipped_missing:,}")
        n_oscar = sum(1 for r in records if r.oscar == "yes")
        self.logger.info(f"  - Derived oscar='yes': {n_oscar:,}")
        self.logger.info(f"  - IMDB rating rescaled to 0-100")

        if not records:
            raise ValueError(f"No usable records in {data_path}")

        self.all_records = records
        return records

    # ========================================================================
    # ABSTRACT METHODS - Child classes must implement
    # ========================================================================

    @abstractmethod
    def prepare_features(self, records: List[MovieRecord]) -> Tuple[np.ndarray, List[str]]:
        """Prepare features from movie records"""
        pass

    @abstractmethod
    def _fit_core(self, X: np.ndarray, y: np.ndarray) -> None:
        """Core model fitting logic (child implements)"""
        pass

    @abstractmethod
    def _predict_core(self, X: np.ndarray) -> np.ndarray:
        """Core prediction logic (child implements)"""
        pass

    # ========================================================================
    # DYNAMIC FEATURE PREPARATION
    # ========================================================================

    def _resolve_categories(self, records: List[MovieRecord], field_name: str,
                            config: Dict[str, Any]) -> Tuple[List[str], Optional[str]]:
        """Non-reference levels and reference level of a factor, fixed on first use"""
        if field_name in self.resolved_categories:
            return self.resolved_categories[field_name], self.resolved_references[field_name]

        seen = sorted({str(getattr(r, field_name)) for r in records})
        reference = config.get('reference') or (seen[0] if seen else None)
        if 'categories' in config:
            levels = [lvl for lvl in config['categories'] if lvl != reference]
        else:
            levels = [lvl for lvl in seen if lvl != reference]

        self.resolved_categories[field_name] = levels
        self.resolved_references[field_name] = reference
        self.logger.info(f"  {field_name}: {len(levels)} levels [{', '.join(levels)}] "
                         f"(reference: {reference})")
        return levels, reference

    def prepare_features_from_spec(self,
                                   records: List[MovieRecord],
                                   feature_config: Dict[str, Any]) -> Tuple[np.ndarray, List[str]]:
        """
        Design matrix from a configuration dictionary

        Sections (all optional):
            'numeric':     list of record attributes
            'categorical': {field: {'reference': level, 'categories': [...]}}
            'binary':      {name: predicate(record) -> bool}
            'polynomial':  {attribute: {'center': c, 'degree': d}}

        Populates self.feature_terms (term -> column names) and self.term_kinds.
        Categorical levels are fixed on the first (training) call; a later
        record with an unseen level raises ValueError.
        """
        feature_names: List[str] = []
        feature_terms: Dict[str, List[str]] = {}
        term_kinds: Dict[str, str] = {}
        columns: List[np.ndarray] = []

        for name in feature_config.get('numeric', []):
            columns.append(np.array([float(getattr(r, name)) for r in records]))
            feature_names.append(name)
            feature_terms[name] = [name]
            term_kinds[name] = 'numeric'

        for field_name, config in feature_config.get('categorical', {}).items():
            levels, reference = self._resolve_categories(records, field_name, config)
            values = [str(getattr(r, field_name)) for r in records]
            unseen = sorted({v for v in values if v not in levels and v != reference})
            if unseen:
                raise ValueError(f"Unseen {field_name} level(s): {unseen}")
            cols = []
            for level in levels:
                col_name = f"{field_name}[{level}]"
                columns.append(np.array([1.0 if v == level else 0.0 for v in values]))
                feature_names.append(col_name)
                cols.append(col_name)
            feature_terms[field_name] = cols
            term_kinds[field_name] = 'categorical'

        for name, predicate in feature_config.get('binary', {}).items():
            columns.append(np.array([1.0 if predicate(r) else 0.0 for r in records]))
            feature_names.append(name)
            feature_terms[name] = [name]
            term_kinds[name] = 'binary'

        # Centred powers 2..degree of a numeric attribute, one term per predictor
        for name, poly in feature_config.get('polynomial', {}).items():
            base = np.array([float(getattr(r, name)) for r in records]) - poly['center']
            cols = []
            for d in range(2, poly['degree'] + 1):
                col_name = f"{name}^{d}"
                columns.append(base ** d)
                feature_names.append(col_name)
                cols.append(col_name)
            feature_terms[f"poly({name})"] = cols
            term_kinds[f"poly({name})"] = 'polynomial'

        if columns:
            X = np.column_stack(columns)
        else:
            X = np.zeros((len(records), 0))

        self.feature_terms = feature_terms
        self.term_kinds = term_kinds

        if np.isnan(X).any():
            raise ValueError("Design matrix contains missing values")

        return X, feature_names

    # ========================================================================
    # TEMPLATE METHODS
    # ========================================================================

    def fit(self, X: np.ndarray, y: np.ndarray) -> None:
        """Fit model (template method)"""
        self._fit_core(X, y)

    def predict(self, X: np.ndarray) -> np.ndarray:
        """Predictions on the audience-score scale"""
        if self.model is None:
            raise ValueError("Model not fitted yet")
        return self._predict_core(X)

    # ========================================================================
    # CROSS-VALIDATION
    # ========================================================================

    def perform_cross_validation(self, n_splits: int = 10) -> Dict[str, Any]:
        """K-fold CV of the current set of terms (selection is not re-run per fold)"""
        self.log_section(f"{n_splits}-FOLD CROSS-VALIDATION")

        if self.X is None or self.y is None:
            raise ValueError("Features must be prepared before cross-validation")

        kf = KFold(n_splits=n_splits, shuffle=True, random_state=self.random_seed)
        r2_scores, rmse_scores = [], []

        for fold, (train_idx, val_idx) in enumerate(kf.split(self.X), 1):
            fold_model = self._cv_fit(self.X[train_idx], self.y[train_idx])
            y_pred = self._cv_predict(fold_model, self.X[val_idx])
            r2 = r2_score(self.y[val_idx], y_pred)
            rmse = np.sqrt(mean_squared_error(self.y[val_idx], y_pred))
            r2_scores.append(r2)
            rmse_scores.append(rmse)
            self.logger.info(f"  Fold {fold:2d}: R^2 = {r2:.4f}, RMSE = {rmse:.3f}")

        results = {
            'cv_r2_mean': float(np.mean(r2_scores)),
            'cv_r2_std': float(np.std(r2_scores)),
            'cv_rmse_mean': float(np.mean(rmse_scores)),
            'cv_rmse_std': float(np.std(rmse_scores)),
            'cv_scores': [float(s) for s in r2_scores],
            'n_splits': n_splits
        }
        self.logger.info(f"CV R^2: {results['cv_r2_mean']:.4f} +- {results['cv_r2_std']:.4f}")
        self.logger.info(f"CV RMSE: {results['cv_rmse_mean']:.3f} +- {results['cv_rmse_std']:.3f}")
        return results

    @abstractmethod
    def _cv_fit(self, X: np.ndarray, y: np.ndarray):
        """Fit a throwaway model for one fold (child implements)"""
        pass

    @abstractmethod
    def _cv_predict(self, fold_model, X: np.ndarray) -> np.ndarray:
        """Predict with a fold model (child implements)"""
        pass

    # ========================================================================
    # METRICS
    # ========================================================================

    def calculate_metrics(self) -> Dict[str, Any]:
        """In-sample fit statistics"""
        self.log_section("CALCULATING METRICS")

        if self.fitted_values is None or self.y is None:
            raise ValueError("Must run fit() before calculating metrics")

        n = len(self.y)
        k = self.X.shape[1] if self.X is not None else 0
        residuals = self.y - self.fitted_values
        r2 = r2_score(self.y, self.fitted_values)

        metrics = {
            'n': n,
            'num_parameters': k + 1,
            'r2': float(r2),
            'adj_r2': float(1 - (1 - r2) * (n - 1) / (n - k - 1)) if n - k - 1 > 0 else float('nan'),
            'rmse': float(np.sqrt(mean_squared_error(self.y, self.fitted_values))),
            'mae': float(mean_absolute_error(self.y, self.fitted_values)),
            'sigma': float(np.sqrt(np.sum(residuals ** 2) / (n - k - 1))) if n - k - 1 > 0 else float('nan'),
            'residual_mean': float(np.mean(residuals)),
            'residual_skew': float(stats.skew(residuals)),
        }

        # UPDATE existing metrics instead of replacing
        self.metrics.update(metrics)
        self.log_metrics_summary()
        return self.metrics

    # ========================================================================
    # PIPELINE
    # ========================================================================

    def run_complete_pipeline(self,
                              records: Optional[List[MovieRecord]] = None,
                              data_path: Optional[Path] = None,
                              perform_cv: bool = True,
                              n_cv_folds: int = 10,
                              generate_outputs: bool = True,
                              generate_plots: bool = True) -> Dict[str, Any]:
        """Run complete modeling pipeline"""
        self.log_section(f"STARTING PIPELINE: {self.model_name}", "=")

        if records is not None:
            self.all_records = list(records)
        elif data_path is not None:
            self.load_data(data_path)
        if not self.all_records:
            raise ValueError("No records available: pass records or data_path")

        self.log_section("FEATURE PREPARATION")
        self.X, self.feature_names = self.prepare_features(self.all_records)
        self.y = np.array([r.audience_score for r in self.all_records])
        self.logger.info(f"Design matrix: {self.X.shape[0]} rows x {self.X.shape[1]} columns "
                         f"({len(self.feature_terms)} terms)")
        self.logger.info(f"  Response range: {self.y.min():.0f} - {self.y.max():.0f}")
        self.logger.info(f"  Response mean: {self.y.mean():.2f}, median: {np.median(self.y):.1f}")

        self.log_section("MODEL TRAINING")
        self.fit(self.X, self.y)
        self.logger.info("Model training complete")

        # CV refits the selected terms, so after fit()
        if perform_cv:
            self.cv_results = self.perform_cross_validation(n_splits=n_cv_folds)
            self.metrics['cv_r2_mean'] = self.cv_results['cv_r2_mean']
            self.metrics['cv_r2_std'] = self.cv_results['cv_r2_std']
            self.metrics['cv_rmse_mean'] = self.cv_results['cv_rmse_mean']

        self.fitted_values = self.predict(self.X)
        self.residuals = self.y - self.fitted_values

        self.calculate_metrics()

        if generate_outputs:
            self.log_section("GENERATING OUTPUTS")
            self.generate_latex_commands()
            self.save_results()
            if generate_plots:
                self.plot_diagnostics()

        self.log_final_summary({
            'Model': self.model_name,
            'Records': len(self.y),
            'Terms': list(self.feature_terms),
            'Adjusted R^2': f"{self.metrics.get('adj_r2', float('nan')):.4f}",
        })
        return {'metrics': self.metrics, 'cv_results': self.cv_results}

    # ========================================================================
    # OUTPUT GENERATION
    # ========================================================================

    def _number_to_word(self, num: int) -> str:
        """Convert number to word for LaTeX commands"""
        words = {
            0: 'Zero', 1: 'One', 2: 'Two', 3: 'Three', 4: 'Four', 5: 'Five',
            6: 'Six', 7: 'Seven', 8: 'Eight', 9: 'Nine', 10: 'Ten'
        }
        return words.get(num, str(num))

    def _clean_latex_command_name(self, name: str) -> str:
        """Clean name for LaTeX command (letters only)"""
        for num in range(10, -1, -1):
            name = name.replace(str(num), self._number_to_word(num))
        parts = [p for p in ''.join(c if c.isalpha() else '_' for c in name).split('_') if p]
        return ''.join(word[0].upper() + word[1:] for word in parts)

    def _latex_metric_values(self) -> Dict[str, str]:
        """Formatted metric values keyed by command suffix"""
        m = self.metrics
        return {
            'RSquared': f"{m.get('r2', 0):.4f}",
            'AdjRSquared': f"{m.get('adj_r2', 0):.4f}",
            'RMSE': f"{m.get('rmse', 0):.2f}",
            'MAE': f"{m.get('mae', 0):.2f}",
            'Sigma': f"{m.get('sigma', 0):.2f}",
            'AIC': f"{m.get('aic', 0):,.1f}",
            'BIC': f"{m.get('bic', 0):,.1f}",
            'CVMean': f"{m.get('cv_r2_mean', 0):.4f}",
            'CVStd': f"{m.get('cv_r2_std', 0):.4f}",
            'Observations': f"{m.get('n', 0):,}",
            'NumTerms': f"{len(self.feature_terms)}",
            'NumFeatures': f"{len(self.feature_names)}",
        }

    def generate_latex_commands(self) -> None:
        """Generate standard LaTeX commands for all models"""
        self.log_section("LATEX GENERATION")

        model_word = self._number_to_word(self.model_id)
        newcommands_file = self.output_dir / f"model_{self.model_id}_newcommands.tex"
        renewcommands_file = self.output_dir / f"model_{self.model_id}_renewcommands.tex"
        values = self._latex_metric_values()

        with open(newcommands_file, 'w') as f:
            f.write(f"% Model {self.model_id} LaTeX Commands (Placeholders)\n")
            f.write(f"% Generated: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}\n\n")
            for metric in values:
                f.write(f"\\newcommand{{\\Model{model_word}{metric}}}{{\\WarningRunPipeline}}\n")

        with open(renewcommands_file, 'w') as f:
            f.write(f"% Model {self.model_id} Actual Values\n")
            f.write(f"% Generated: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}\n\n")
            for metric, value in values.items():
                f.write(f"\\renewcommand{{\\Model{model_word}{metric}}}{{{value}}}\n")

        self.logger.info("LaTeX commands generated:")
        self.logger.info(f"  - {self.output_dir_relative / newcommands_file.name} ({len(values)} placeholders)")
        self.logger.info(f"  - {self.output_dir_relative / renewcommands_file.name}")

    def save_results(self) -> None:
        """Save metrics and fitted values"""
        with open(self.output_dir / "metrics.json", 'w') as f:
            json.dump(self.metrics, f, indent=2, default=str)

        if self.fitted_values is not None:
            fitted_df = pd.DataFrame({
                'title': [r.title for r in self.all_records],
                'actual': self.y,
                'fitted': self.fitted_values,
                'residual': self.residuals,
            })
            fitted_df.to_csv(self.output_dir / "fitted_values.csv", index=False)

        self.logger.info("Results saved:")
        self.logger.info(f"  - Metrics JSON: {self.output_dir_relative / 'metrics.json'}")
        if self.fitted_values is not None:
            self.logger.info(f"  - Fitted values CSV: {self.output_dir_relative / 'fitted_values.csv'}")

    def plot_diagnostics(self) -> None:
        """Residual diagnostic plots (2x3 grid)"""
        if self.fitted_values is None or self.residuals is None:
            return

        fig, axes = plt.subplots(2, 3, figsize=(18, 11))
        resid = self.residuals

        # 1. Actual vs fitted
        ax = axes[0, 0]
        ax.scatter(self.y, self.fitted_values, alpha=0.5, s=20)
        lo = min(self.y.min(), self.fitted_values.min())
        hi = max(self.y.max(), self.fitted_values.max())
        ax.plot([lo, hi], [lo, hi], 'r--', linewidth=2)
        ax.set_xlabel('Actual audience score')
        ax.set_ylabel('Fitted audience score')
        ax.set_title(f'Actual vs Fitted\nR^2 = {self.metrics.get("r2", 0):.4f}')
        ax.grid(True, alpha=0.3)

        # 2. Residuals vs fitted
        ax = axes[0, 1]
        ax.scatter(self.fitted_values, resid, alpha=0.5, s=20)
        ax.axhline(y=0, color='r', linestyle='--')
        ax.set_xlabel('Fitted values')
        ax.set_ylabel('Residuals')
        ax.set_title('Residuals vs Fitted')
        ax.grid(True, alpha=0.3)

        # 3. Normal QQ
        ax = axes[0, 2]
        stats.probplot(resid, dist="norm", plot=ax)
        ax.set_title('Normal Q-Q Plot')
        ax.grid(True, alpha=0.3)

        # 4. Residual histogram
        ax = axes[1, 0]
        ax.hist(resid, bins=30, edgecolor='black', alpha=0.7)
        ax.axvline(x=0, color='r', linestyle='--')
        ax.set_xlabel('Residual')
        ax.set_ylabel('Frequency')
        ax.set_title('Residual Distribution')
        ax.grid(True, alpha=0.3)

        # 5. Residuals in dataset order (independence)
        ax = axes[1, 1]
        ax.plot(np.arange(len(resid)), resid, 'o', alpha=0.4, markersize=3)
        ax.axhline(y=0, color='r', linestyle='--')
        ax.set_xlabel('Observation order')
        ax.set_ylabel('Residual')
        ax.set_title('Residuals vs Order')
        ax.grid(True, alpha=0.3)

        # 6. Scale-location
        ax = axes[1, 2]
        sd = np.std(resid) if np.std(resid) > 0 else 1.0
        ax.scatter(self.fitted_values, np.sqrt(np.abs(resid / sd)), alpha=0.5, s=20)
        ax.set_xlabel('Fitted values')
        ax.set_ylabel('sqrt(|standardized residual|)')
        ax.set_title('Scale-Location')
        ax.grid(True, alpha=0.3)

        plt.suptitle(f'Model {self.model_id}: {self.model_name}', fontsize=14, fontweight='bold')
        plt.tight_layout()

        output_file = self.output_dir / 'diagnostic_plots.png'
        plt.savefig(output_file, dpi=150, bbox_inches='tight')
        plt.close()

        self.logger.info(f"Diagnostic plots saved to {self.output_dir_relative / 'diagnostic_plots.png'}")
