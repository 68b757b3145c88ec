"""
model_1_full.py
===============
Model 1: Full OLS on every candidate predictor

Ordinary least squares of audience_score on all candidate terms left after
correlation pruning. The statsmodels results object backs everything the
later models need:
- term-level p-values (a factor is one term; its p-value is the smallest
  level p-value, so a factor is significant when any level is)
- coefficient table with 95% confidence intervals
- residual diagnostics (Shapiro-Wilk, Breusch-Pagan, Durbin-Watson, VIF,
  per-predictor curvature check)
- point prediction with prediction and confidence intervals for a new movie
"""

import numpy as np
import pandas as pd
from typing import Dict, List, Tuple, Any, Optional
from pathlib import Path
import json
import logging
import statsmodels.api as sm
from statsmodels.stats.diagnostic import het_breuschpagan
from statsmodels.stats.stattools import durbin_watson
from statsmodels.stats.outliers_influence import variance_inflation_factor
import matplotlib.pyplot as plt
import seaborn as sns
from scipy import stats
import warnings

from base_model import BaseMovieModel, MovieRecord, latex_escape

logger = logging.getLogger(__name__)

RANDOM_SEED = 42

# Reference levels default to the first level in sorted order
DEFAULT_FEATURE_CONFIG = {
    'numeric': ['runtime', 'imdb_rating', 'imdb_num_votes', 'critics_score', 'release_year'],
    'categorical': {
        'title_type': {},
        'genre': {},
        'mpaa_rating': {},
    },
    'binary': {
        'best_pic_nom': lambda r: r.best_pic_nom == 'yes',
        'oscar': lambda r: r.oscar == 'yes',
        'top200_box': lambda r: r.top200_box == 'yes',
    }
}


def aggregate_term_pvalues(column_pvalues: Dict[str, float],
                           feature_terms: Dict[str, List[str]]) -> Dict[str, float]:
    """
    Term p-value = smallest p-value among the term's columns

    Missing or non-finite column p-values count as 1.0.
    """
    term_pvalues = {}
    for term, columns in feature_terms.items():
        values = []
        for col in columns:
            p = column_pvalues.get(col, np.nan)
            values.append(float(p) if np.isfinite(p) else 1.0)
        term_pvalues[term] = min(values) if values else 1.0
    return term_pvalues


def restrict_feature_config(feature_config: Dict[str, Any], terms: List[str]) -> Dict[str, Any]:
    """Copy of a feature config keeping only the entries whose terms are in `terms`"""
    keep = set(terms)
    restricted: Dict[str, Any] = {}
    if 'numeric' in feature_config:
        restricted['numeric'] = [n for n in feature_config['numeric'] if n in keep]
    for section in ('categorical', 'binary'):
        if section in feature_config:
            restricted[section] = {k: v for k, v in feature_config[section].items() if k in keep}
    if 'polynomial' in feature_config:
        restricted['polynomial'] = {k: v for k, v in feature_config['polynomial'].items()
                                     if f"poly({k})" in keep}
    return restricted


def with_intercept(X: np.ndarray) -> np.ndarray:
    """Prepend a column of ones (always, even for single rows)"""
    X = np.asarray(X, dtype=float)
    if X.ndim == 1:
        X = X.reshape(-1, 1)
    return np.column_stack([np.ones(X.shape[0]), X])


class Model1FullOLS(BaseMovieModel):
    """
    Model 1: OLS with all candidate terms

    Later models reuse the fitting, p-value, diagnostics and prediction
    helpers defined here.
    """

    def __init__(self,
                 feature_config: Optional[Dict[str, Any]] = None,
                 significance_level: float = 0.05,
                 random_seed: int = RANDOM_SEED,
                 output_root: Optional[Path] = None,
                 log_suffix: Optional[str] = None,
                 model_id: int = 1,
                 model_name: str = "Full OLS (All Candidates)"):
        super().__init__(
            model_id=model_id,
            model_name=model_name,
            significance_level=significance_level,
            random_seed=random_seed,
            output_root=output_root,
            log_suffix=log_suffix
        )

        self.feature_config = feature_config
        self.ols_model = None

        # None means every term produced by the feature config
        self.selected_terms: Optional[List[str]] = None

        self.diagnostics: Dict[str, Any] = {}

    # ------------------------------------------------------------------
    # Features
    # ------------------------------------------------------------------

    def _active_config(self) -> Dict[str, Any]:
        """Feature config limited to the selected terms (all terms before selection)"""
        config = self.feature_config if self.feature_config is not None else DEFAULT_FEATURE_CONFIG
        if self.selected_terms is None:
            return config
        return restrict_feature_config(config, self.selected_terms)

    def prepare_features(self, records: List[MovieRecord]) -> Tuple[np.ndarray, List[str]]:
        # Eliminated terms are never built, so new records are not checked against them
        X, names = self.prepare_features_from_spec(records, self._active_config())
        if self.selected_terms is not None:
            X, names = self._restrict_to_terms(X, names, self.selected_terms)
        return X, names

    def _restrict_to_terms(self, X: np.ndarray, names: List[str],
                           terms: List[str]) -> Tuple[np.ndarray, List[str]]:
        """Keep only the columns belonging to `terms`, in term order"""
        keep = [col for term in terms for col in self.feature_terms[term]]
        idx = [names.index(col) for col in keep]
        self.feature_terms = {t: self.feature_terms[t] for t in terms}
        self.term_kinds = {t: self.term_kinds[t] for t in terms}
        return X[:, idx], keep

    # ------------------------------------------------------------------
    # Fitting
    # ------------------------------------------------------------------

    def _fit_ols(self, X: np.ndarray, y: np.ndarray):
        return sm.OLS(np.asarray(y, dtype=float), with_intercept(X)).fit()

    def _fit_core(self, X: np.ndarray, y: np.ndarray) -> None:
        self.log_section(f"MODEL {self.model_id} FITTING: OLS")
        self.logger.info(f"Observations: {len(y):,}")
        self.logger.info(f"Terms: {len(self.feature_terms)} ({X.shape[1]} columns)")

        self.ols_model = self._fit_ols(X, y)
        self.model = self.ols_model

        self.logger.info(f"R-squared: {self.ols_model.rsquared:.4f}")
        self.logger.info(f"Adjusted R-squared: {self.ols_model.rsquared_adj:.4f}")
        self.log_all_features(self._coefficient_rows())
        self._log_term_pvalues()

    def _predict_core(self, X: np.ndarray) -> np.ndarray:
        if self.ols_model is None:
            raise ValueError("Model not fitted yet")
        return np.asarray(self.ols_model.predict(with_intercept(X)))

    def _cv_fit(self, X: np.ndarray, y: np.ndarray):
        return self._fit_ols(X, y)

    def _cv_predict(self, fold_model, X: np.ndarray) -> np.ndarray:
        return np.asarray(fold_model.predict(with_intercept(X)))

    # ------------------------------------------------------------------
    # Significance
    # ------------------------------------------------------------------

    def column_pvalues(self) -> Dict[str, float]:
        if self.ols_model is None:
            raise ValueError("Model not fitted yet")
        pvalues = np.asarray(self.ols_model.pvalues)[1:]
        return dict(zip(self.feature_names, (float(p) for p in pvalues)))

    def term_pvalues(self) -> Dict[str, float]:
        return aggregate_term_pvalues(self.column_pvalues(), self.feature_terms)

    def _log_term_pvalues(self):
        term_p = self.term_pvalues()
        if not term_p:
            self.logger.info("Intercept-only model: no terms to test")
            return
        self.logger.info("Term significance (min level p-value for factors):")
        for term, p in sorted(term_p.items(), key=lambda kv: kv[1]):
            flag = "significant" if p < self.significance_level else "not significant"
            self.logger.info(f"  {term:20s} p={p:.4g} ({flag})")

    def _coefficient_rows(self) -> List[Dict[str, Any]]:
        params = np.asarray(self.ols_model.params)
        bse = np.asarray(self.ols_model.bse)
        pvalues = np.asarray(self.ols_model.pvalues)
        rows = []
        for i, name in enumerate(self.feature_names, start=1):
            rows.append({'name': name, 'coefficient': float(params[i]),
                         'std_error': float(bse[i]), 'p_value': float(pvalues[i])})
        return rows

    def coefficient_table(self, confidence: float = 0.95) -> pd.DataFrame:
        """Estimate, SE, t, p and confidence interval for every column"""
        if not 0 < confidence < 1:
            raise ValueError(f"confidence must be in (0, 1), got {confidence}")
        if self.ols_model is None:
            raise ValueError("Model not fitted yet")

        column_term = {col: term for term, cols in self.feature_terms.items() for col in cols}
        ci = np.asarray(self.ols_model.conf_int(alpha=1 - confidence))
        names = ['(Intercept)'] + list(self.feature_names)

        return pd.DataFrame({
            'term': ['(Intercept)'] + [column_term.get(n, n) for n in self.feature_names],
            'column': names,
            'estimate': np.asarray(self.ols_model.params),
            'std_error': np.asarray(self.ols_model.bse),
            't_value': np.asarray(self.ols_model.tvalues),
            'p_value': np.asarray(self.ols_model.pvalues),
            'ci_lower': ci[:, 0],
            'ci_upper': ci[:, 1],
        })

    # ------------------------------------------------------------------
    # Residual diagnostics
    # ------------------------------------------------------------------

    def nonlinearity_pvalues(self) -> Dict[str, float]:
        """
        Curvature check per numeric term

        Residuals are regressed on the standardized predictor and its square;
        the square's p-value is reported. Small values mean the residuals
        still bend with that predictor.
        """
        if self.ols_model is None:
            raise ValueError("Model not fitted yet")

        resid = np.asarray(self.ols_model.resid)
        out = {}
        for term, kind in self.term_kinds.items():
            if kind != 'numeric':
                continue
            x = self.X[:, self.feature_names.index(term)]
            sd = np.std(x)
            if sd == 0:
                continue
            z = (x - x.mean()) / sd
            aux = sm.OLS(resid, with_intercept(np.column_stack([z, z ** 2]))).fit()
            out[term] = float(np.asarray(aux.pvalues)[2])
        return out

    def variance_inflation(self) -> Dict[str, float]:
        exog = self.ols_model.model.exog
        if exog.shape[1] < 3:
            return {}
        vifs = {}
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", RuntimeWarning)
            for i, name in enumerate(self.feature_names, start=1):
                vifs[name] = float(variance_inflation_factor(exog, i))
        return vifs

    def residual_diagnostics(self) -> Dict[str, Any]:
        """Normality, constant variance, independence, collinearity, curvature"""
        self.log_section("RESIDUAL DIAGNOSTICS")

        if self.ols_model is None:
            raise ValueError("Model not fitted yet")

        alpha = self.significance_level
        resid = np.asarray(self.ols_model.resid)
        exog = self.ols_model.model.exog

        sw_stat, sw_p = stats.shapiro(resid)
        self.logger.info(f"Shapiro-Wilk: W={sw_stat:.4f}, p={sw_p:.4g}")
        if sw_p < alpha:
            self.logger.warning("  -> Residuals depart from normality; interval coverage is approximate")

        if exog.shape[1] > 1:
            _, bp_p, _, _ = het_breuschpagan(resid, exog)
            self.logger.info(f"Breusch-Pagan p-value: {bp_p:.4g}")
            if bp_p < alpha:
                self.logger.warning("  -> Residual variance is not constant (heteroscedasticity)")
        else:
            bp_p = float('nan')

        dw = durbin_watson(resid)
        self.logger.info(f"Durbin-Watson: {dw:.3f}")

        vifs = self.variance_inflation()
        high_vif = {k: v for k, v in vifs.items() if v > 5}
        if high_vif:
            self.logger.warning(f"High VIF (>5): {', '.join(f'{k}={v:.1f}' for k, v in high_vif.items())}")

        curvature = self.nonlinearity_pvalues()
        for term, p in sorted(curvature.items(), key=lambda kv: kv[1]):
            note = "  <- curvature" if p < alpha else ""
            self.logger.info(f"  Nonlinearity {term:16s} p={p:.4g}{note}")

        self.diagnostics = {
            'shapiro_w': float(sw_stat),
            'shapiro_p': float(sw_p),
            'breusch_pagan_p': float(bp_p),
            'durbin_watson': float(dw),
            'normality_ok': bool(sw_p >= alpha),
            'homoscedasticity_ok': bool(not np.isfinite(bp_p) or bp_p >= alpha),
            'vif': vifs,
            'nonlinearity_p': curvature,
        }
        return self.diagnostics

    # ------------------------------------------------------------------
    # Prediction
    # ------------------------------------------------------------------

    def predict_interval(self, record: MovieRecord, confidence: float = 0.95) -> Dict[str, Any]:
        """
        Point estimate with prediction interval and mean confidence interval

        The prediction interval covers a single new movie's score: it
        includes both coefficient uncertainty and residual error, assuming
        normal, constant-variance residuals.
        """
        if self.ols_model is None:
            raise ValueError("Model not fitted yet")
        if not 0 < confidence < 1:
            raise ValueError(f"confidence must be in (0, 1), got {confidence}")

        X_new, _ = self.prepare_features([record])
        frame = self.ols_model.get_prediction(with_intercept(X_new)).summary_frame(alpha=1 - confidence)
        row = frame.iloc[0]

        result = {
            'title': record.title,
            'confidence': confidence,
            'fit': float(row['mean']),
            'pi_lower': float(row['obs_ci_lower']),
            'pi_upper': float(row['obs_ci_upper']),
            'ci_lower': float(row['mean_ci_lower']),
            'ci_upper': float(row['mean_ci_upper']),
        }
        if np.isfinite(record.audience_score):
            result['actual'] = float(record.audience_score)
            result['actual_in_interval'] = bool(result['pi_lower'] <= record.audience_score <= result['pi_upper'])

        self.logger.info(f"Prediction for '{record.title}': {result['fit']:.1f} "
                         f"({confidence:.0%} PI {result['pi_lower']:.1f} to {result['pi_upper']:.1f}; "
                         f"CI {result['ci_lower']:.1f} to {result['ci_upper']:.1f})")
        return result

    # ------------------------------------------------------------------
    # Metrics and outputs
    # ------------------------------------------------------------------

    def calculate_metrics(self) -> Dict[str, Any]:
        if self.ols_model is not None:
            self.metrics.update({
                'aic': float(self.ols_model.aic),
                'bic': float(self.ols_model.bic),
                'log_likelihood': float(self.ols_model.llf),
                'f_statistic': float(self.ols_model.fvalue) if np.isfinite(self.ols_model.fvalue) else None,
                'f_pvalue': float(self.ols_model.f_pvalue) if np.isfinite(self.ols_model.f_pvalue) else None,
                'df_resid': float(self.ols_model.df_resid),
                'num_terms': len(self.feature_terms),
                'terms': list(self.feature_terms),
            })
        metrics = super().calculate_metrics()

        if self.ols_model is not None and self.X is not None:
            diag = self.residual_diagnostics()
            self.metrics['shapiro_p'] = diag['shapiro_p']
            self.metrics['breusch_pagan_p'] = diag['breusch_pagan_p']
            self.metrics['durbin_watson'] = diag['durbin_watson']
        return metrics

    def generate_coefficient_table_tex(self) -> Path:
        table = self.coefficient_table()
        path = self.output_dir / f"model_{self.model_id}_coefficients.tex"
        with open(path, 'w', encoding='utf-8') as f:
            f.write(f"% Model {self.model_id} coefficient table\n")
            f.write("% Automatically generated - do not edit manually\n")
            f.write("\\begin{table}[htbp]\n\\centering\n")
            f.write(f"\\caption{{{latex_escape(self.model_name)}: OLS estimates "
                    f"(response: audience score)}}\n")
            f.write(f"\\label{{tab:model-{self.model_id}-coefficients}}\n\\small\n")
            f.write("\\begin{tabular}{lrrrr}\n\\hline\n")
            f.write("\\textbf{Term} & \\textbf{Estimate} & \\textbf{SE} & \\textbf{t} & \\textbf{p} \\\\\n")
            f.write("\\hline\n")
            for _, row in table.iterrows():
                p_text = "$<$0.0001" if row['p_value'] < 0.0001 else f"{row['p_value']:.4f}"
                f.write(f"{latex_escape(row['column'])} & {row['estimate']:.4f} & "
                        f"{row['std_error']:.4f} & {row['t_value']:.2f} & {p_text} \\\\\n")
            f.write("\\hline\n\\end{tabular}\n\\end{table}\n")
        self.logger.info(f"Coefficient table saved to {self.output_dir_relative / path.name}")
        return path

    def generate_latex_commands(self) -> None:
        """Standard commands first, then coefficient commands appended"""
        super().generate_latex_commands()

        model_word = self._number_to_word(self.model_id)
        newcommands_file = self.output_dir / f"model_{self.model_id}_newcommands.tex"
        renewcommands_file = self.output_dir / f"model_{self.model_id}_renewcommands.tex"

        if self.ols_model is None:
            return
        table = self.coefficient_table()

        with open(newcommands_file, 'a') as f:
            f.write(f"\n% Model {self.model_id} Coefficients\n")
            for name in table['column']:
                cmd = self._clean_latex_command_name(name)
                f.write(f"\\newcommand{{\\Model{model_word}Coef{cmd}}}{{\\WarningRunPipeline}}\n")

        with open(renewcommands_file, 'a') as f:
            f.write(f"\n% Model {self.model_id} Coefficient Values\n")
            for _, row in table.iterrows():
                cmd = self._clean_latex_command_name(row['column'])
                f.write(f"\\renewcommand{{\\Model{model_word}Coef{cmd}}}{{{row['estimate']:.4f}}}\n")

    def save_results(self) -> None:
        super().save_results()

        if self.ols_model is None:
            return
        self.coefficient_table().to_csv(self.output_dir / "coefficients.csv", index=False)
        self.generate_coefficient_table_tex()

        if self.diagnostics:
            with open(self.output_dir / "residual_diagnostics.json", 'w') as f:
                json.dump(self.diagnostics, f, indent=2, default=str)

        with open(self.output_dir / "ols_summary.txt", 'w', encoding='utf-8') as f:
            f.write(str(self.ols_model.summary(xname=['const'] + list(self.feature_names))))

        self.logger.info(f"  - Coefficients CSV: {self.output_dir_relative / 'coefficients.csv'}")

    def plot_diagnostics(self) -> None:
        """Base residual grid plus residuals against each numeric predictor"""
        super().plot_diagnostics()

        numeric_terms = [t for t, k in self.term_kinds.items() if k == 'numeric']
        if not numeric_terms or self.residuals is None:
            return

        n = len(numeric_terms)
        n_cols = min(3, n)
        n_rows = int(np.ceil(n / n_cols))
        fig, axes = plt.subplots(n_rows, n_cols, figsize=(6 * n_cols, 4.5 * n_rows), squeeze=False)

        for ax, term in zip(axes.flat, numeric_terms):
            x = self.X[:, self.feature_names.index(term)]
            sns.regplot(x=x, y=self.residuals, lowess=True, ax=ax,
                        scatter_kws={'alpha': 0.4, 's': 12}, line_kws={'color': 'red'})
            ax.axhline(y=0, color='black', linestyle='--', alpha=0.4)
            ax.set_xlabel(term)
            ax.set_ylabel('Residual')
            p = self.diagnostics.get('nonlinearity_p', {}).get(term)
            title = f'Residuals vs {term}'
            if p is not None:
                title += f'\ncurvature p = {p:.3g}'
            ax.set_title(title)
            ax.grid(True, alpha=0.3)

        for ax in list(axes.flat)[n:]:
            ax.axis('off')

        plt.suptitle(f'Model {self.model_id}: Residuals vs Numeric Predictors', fontsize=14, fontweight='bold')
        plt.tight_layout()
        output_file = self.output_dir / 'residuals_vs_predictors.png'
        plt.savefig(output_file, dpi=150, bbox_inches='tight')
        plt.close()
        self.logger.info(f"Predictor residual plots saved to {self.output_dir_relative / output_file.name}")
