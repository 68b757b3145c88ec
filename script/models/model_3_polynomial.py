"""
model_3_polynomial.py
=====================
Model 3: Backward-eliminated OLS with polynomial terms for one predictor

After elimination, the residuals are checked for curvature against every
surviving numeric term. The predictor to expand is either configured or
the one with the smallest curvature p-value below alpha. Centred powers
(x - mean)^2, (x - mean)^3, ... are added one at a time and kept only
while the newest power is significant.
"""

import numpy as np
from typing import Dict, List, Tuple, Any, Optional
from pathlib import Path
import logging
import matplotlib.pyplot as plt

from base_model import MovieRecord
from model_1_full import with_intercept
from model_2_backward import Model2BackwardElimination

logger = logging.getLogger(__name__)


class Model3Polynomial(Model2BackwardElimination):
    """
    Model 3: polynomial refinement of Model 2

    self.polynomial holds the expansion: predictor, degree, centre and the
    p-value of every power tried. Degree 1 means no power was kept and the
    fit equals Model 2.
    """

    def __init__(self,
                 feature_config: Optional[Dict[str, Any]] = None,
                 significance_level: float = 0.05,
                 criterion: str = 'p_value',
                 predictor: Optional[str] = None,
                 max_degree: int = 3,
                 random_seed: int = 42,
                 output_root: Optional[Path] = None,
                 log_suffix: Optional[str] = None,
                 model_id: int = 3,
                 model_name: str = "Polynomial OLS"):
        if max_degree < 2:
            raise ValueError(f"max_degree must be at least 2, got {max_degree}")
        super().__init__(
            feature_config=feature_config,
            significance_level=significance_level,
            criterion=criterion,
            random_seed=random_seed,
            output_root=output_root,
            log_suffix=log_suffix,
            model_id=model_id,
            model_name=model_name
        )
        self.requested_predictor = predictor
        self.max_degree = max_degree
        self.polynomial: Dict[str, Any] = {}

        self.logger.info(f"  - Polynomial predictor: {predictor or 'auto (residual curvature)'}")
        self.logger.info(f"  - Maximum degree: {max_degree}")

    # ------------------------------------------------------------------
    # Features
    # ------------------------------------------------------------------

    def prepare_features(self, records: List[MovieRecord]) -> Tuple[np.ndarray, List[str]]:
        if self.polynomial.get('degree', 1) < 2:
            return super().prepare_features(records)

        config = dict(self._active_config())
        config['polynomial'] = {
            self.polynomial['predictor']: {
                'center': self.polynomial['center'],
                'degree': self.polynomial['degree'],
            }
        }
        X, names = self.prepare_features_from_spec(records, config)
        poly_term = f"poly({self.polynomial['predictor']})"
        return self._restrict_to_terms(X, names, list(self.selected_terms) + [poly_term])

    # ------------------------------------------------------------------
    # Fitting
    # ------------------------------------------------------------------

    def choose_predictor(self) -> Tuple[Optional[str], Optional[float]]:
        """Configured predictor, else the surviving numeric term with most curvature"""
        curvature = self.nonlinearity_pvalues()
        for term, p in sorted(curvature.items(), key=lambda kv: kv[1]):
            self.logger.info(f"  Curvature {term:16s} p={p:.4g}")

        if self.requested_predictor is not None:
            if self.requested_predictor not in curvature:
                self.logger.warning(f"Configured predictor '{self.requested_predictor}' is not a "
                                    f"surviving numeric term; no polynomial terms added")
                return None, None
            return self.requested_predictor, curvature[self.requested_predictor]

        candidates = {t: p for t, p in curvature.items() if p < self.significance_level}
        if not candidates:
            self.logger.info("No numeric term shows significant residual curvature")
            return None, None
        best = min(candidates, key=lambda t: candidates[t])
        return best, candidates[best]

    def _fit_core(self, X: np.ndarray, y: np.ndarray) -> None:
        self.polynomial = {}
        super()._fit_core(X, y)

        self.log_section(f"MODEL {self.model_id} POLYNOMIAL REFINEMENT")
        predictor, curvature_p = self.choose_predictor()
        if predictor is None:
            self.polynomial = {'predictor': None, 'degree': 1, 'center': None,
                               'curvature_p': None, 'power_pvalues': {}}
            return

        x = self.X[:, self.feature_names.index(predictor)]
        center = float(np.mean(x))
        self.logger.info(f"Expanding '{predictor}' (curvature p={curvature_p:.4g}, centre={center:.3f})")

        kept: List[np.ndarray] = []
        power_pvalues: Dict[int, float] = {}
        results = self.ols_model
        degree = 1

        for d in range(2, self.max_degree + 1):
            power = (x - center) ** d
            trial = self._fit_ols(np.column_stack([self.X] + kept + [power]), y)
            p_new = float(np.asarray(trial.pvalues)[-1])
            power_pvalues[d] = p_new
            if not np.isfinite(p_new) or p_new >= self.significance_level:
                self.logger.info(f"  Degree {d}: p={p_new:.4g} not significant, stopping")
                break
            self.logger.info(f"  Degree {d}: p={p_new:.4g} kept (adj R^2 {trial.rsquared_adj:.4f})")
            kept.append(power)
            results = trial
            degree = d

        self.polynomial = {
            'predictor': predictor,
            'degree': degree,
            'center': center,
            'curvature_p': curvature_p,
            'power_pvalues': power_pvalues,
        }

        if degree < 2:
            self.logger.info("No power kept; model equals the eliminated model")
            return

        poly_term = f"poly({predictor})"
        poly_names = [f"{predictor}^{d}" for d in range(2, degree + 1)]
        self.X = np.column_stack([self.X] + kept)
        self.feature_names = list(self.feature_names) + poly_names
        self.feature_terms[poly_term] = poly_names
        self.term_kinds[poly_term] = 'polynomial'
        self.ols_model = results
        self.model = results

        self.logger.info(f"Final polynomial degree: {degree}")
        self.logger.info(f"Adjusted R-squared: {results.rsquared_adj:.4f}")
        self.log_all_features(self._coefficient_rows(), title="Coefficients with polynomial terms")

    # ------------------------------------------------------------------
    # Outputs
    # ------------------------------------------------------------------

    def calculate_metrics(self) -> Dict[str, Any]:
        self.metrics['polynomial_predictor'] = self.polynomial.get('predictor')
        self.metrics['polynomial_degree'] = self.polynomial.get('degree', 1)
        self.metrics['polynomial_center'] = self.polynomial.get('center')
        return super().calculate_metrics()

    def _latex_metric_values(self) -> Dict[str, str]:
        values = super()._latex_metric_values()
        values['PolyDegree'] = f"{self.polynomial.get('degree', 1)}"
        center = self.polynomial.get('center')
        values['PolyCenter'] = f"{center:.2f}" if center is not None else "--"
        values['PolyPredictor'] = (self.polynomial.get('predictor') or "none").replace('_', ' ')
        return values

    def plot_diagnostics(self) -> None:
        super().plot_diagnostics()
        if self.polynomial.get('degree', 1) < 2:
            return

        predictor = self.polynomial['predictor']
        idx = self.feature_names.index(predictor)
        x = self.X[:, idx]

        # Partial effect of the predictor with other columns held at their means
        grid = np.linspace(x.min(), x.max(), 200)
        design = np.tile(self.X.mean(axis=0), (len(grid), 1))
        design[:, idx] = grid
        for d in range(2, self.polynomial['degree'] + 1):
            design[:, self.feature_names.index(f"{predictor}^{d}")] = (grid - self.polynomial['center']) ** d
        curve = self.ols_model.predict(with_intercept(design))

        fig, ax = plt.subplots(figsize=(10, 6))
        ax.scatter(x, self.y, alpha=0.4, s=15, label='Observed')
        ax.plot(grid, curve, 'r-', linewidth=2,
                label=f"Degree {self.polynomial['degree']} fit (others at mean)")
        ax.set_xlabel(predictor)
        ax.set_ylabel('Audience score')
        ax.set_title(f'Model {self.model_id}: Polynomial Effect of {predictor}')
        ax.legend()
        ax.grid(True, alpha=0.3)
        plt.tight_layout()
        output_file = self.output_dir / 'polynomial_fit.png'
        plt.savefig(output_file, dpi=150, bbox_inches='tight')
        plt.close()
        self.logger.info(f"Polynomial fit plot saved to {self.output_dir_relative / output_file.name}")
