"""
model_2_backward.py
===================
Model 2: Backward elimination from the full OLS model

Starting from every candidate term, the least significant term is dropped
and the model refit until all remaining terms are significant at alpha.
A multi-level factor is one term whose p-value is its smallest level
p-value, so it is only removed once none of its levels is significant.

Ties on the largest p-value go to the term listed first. If every term is
removed the intercept-only model remains (logged as a warning).
"""

import numpy as np
import pandas as pd
from typing import Dict, List, Tuple, Any, Optional
from pathlib import Path
import logging
import matplotlib.pyplot as plt

from base_model import latex_escape
from model_1_full import Model1FullOLS, aggregate_term_pvalues

logger = logging.getLogger(__name__)

CRITERIA = ('p_value', 'adj_r2')


def select_term_to_remove(term_pvalues: Dict[str, float], alpha: float) -> Optional[str]:
    """
    Term with the largest p-value when that p-value is >= alpha, else None

    Iteration order breaks ties: the first term with the maximum wins.
    """
    worst, worst_p = None, -1.0
    for term, p in term_pvalues.items():
        if p > worst_p:
            worst, worst_p = term, p
    if worst is None or worst_p < alpha:
        return None
    return worst


class Model2BackwardElimination(Model1FullOLS):
    """
    Model 2: OLS after backward elimination

    criterion='p_value' follows the significance loop above.
    criterion='adj_r2' removes, at each step, the term whose removal raises
    adjusted R^2 the most, and stops when no removal raises it.
    """

    def __init__(self,
                 feature_config: Optional[Dict[str, Any]] = None,
                 significance_level: float = 0.05,
                 criterion: str = 'p_value',
                 random_seed: int = 42,
                 output_root: Optional[Path] = None,
                 log_suffix: Optional[str] = None,
                 model_id: int = 2,
                 model_name: str = "Backward Elimination OLS"):
        if criterion not in CRITERIA:
            raise ValueError(f"Unknown elimination criterion '{criterion}' (expected one of {CRITERIA})")
        super().__init__(
            feature_config=feature_config,
            significance_level=significance_level,
            random_seed=random_seed,
            output_root=output_root,
            log_suffix=log_suffix,
            model_id=model_id,
            model_name=model_name
        )
        self.criterion = criterion
        self.logger.info(f"  - Elimination criterion: {criterion}")

        self.candidate_terms: List[str] = []
        self.elimination_steps: List[Dict[str, Any]] = []

    # ------------------------------------------------------------------
    # Elimination
    # ------------------------------------------------------------------

    def _columns_for(self, terms: List[str], all_terms: Dict[str, List[str]],
                     names: List[str]) -> List[int]:
        return [names.index(col) for term in terms for col in all_terms[term]]

    def _fit_terms(self, X: np.ndarray, y: np.ndarray, terms: List[str],
                   all_terms: Dict[str, List[str]], names: List[str]):
        cols = self._columns_for(terms, all_terms, names)
        results = self._fit_ols(X[:, cols], y)
        column_p = dict(zip([names[i] for i in cols], np.asarray(results.pvalues)[1:]))
        term_p = aggregate_term_pvalues(column_p, {t: all_terms[t] for t in terms})
        return results, term_p

    def _best_adj_r2_removal(self, X, y, terms, all_terms, names, current_adj) -> Optional[Tuple[str, float]]:
        best = None
        best_adj = current_adj
        for term in terms:
            reduced = [t for t in terms if t != term]
            results, _ = self._fit_terms(X, y, reduced, all_terms, names)
            if results.rsquared_adj > best_adj:
                best, best_adj = term, results.rsquared_adj
        return (best, best_adj) if best is not None else None

    def _fit_core(self, X: np.ndarray, y: np.ndarray) -> None:
        self.log_section(f"MODEL {self.model_id} BACKWARD ELIMINATION ({self.criterion})")

        all_terms = dict(self.feature_terms)
        all_kinds = dict(self.term_kinds)
        names = list(self.feature_names)
        terms = list(all_terms)

        self.candidate_terms = list(terms)
        self.elimination_steps = []
        self.logger.info(f"Candidate terms ({len(terms)}): {', '.join(terms)}")
        self.logger.info(f"Significance level: {self.significance_level}")

        alpha = self.significance_level
        results, term_p = self._fit_terms(X, y, terms, all_terms, names)

        while terms:
            if self.criterion == 'p_value':
                worst = select_term_to_remove(term_p, alpha)
                if worst is None:
                    break
                removed_p = term_p[worst]
            else:
                choice = self._best_adj_r2_removal(X, y, terms, all_terms, names, results.rsquared_adj)
                if choice is None:
                    break
                worst = choice[0]
                removed_p = term_p[worst]

            adj_before = float(results.rsquared_adj)
            terms.remove(worst)
            results, term_p = self._fit_terms(X, y, terms, all_terms, names)

            step = {
                'step': len(self.elimination_steps) + 1,
                'removed_term': worst,
                'p_value': float(removed_p),
                'adj_r2_before': adj_before,
                'adj_r2_after': float(results.rsquared_adj),
                'terms_remaining': len(terms),
            }
            self.elimination_steps.append(step)
            self.logger.info(f"  Step {step['step']:2d}: removed {worst:20s} p={removed_p:.4f}  "
                             f"adj R^2 {adj_before:.4f} -> {step['adj_r2_after']:.4f}")

        if not terms:
            self.logger.warning("Every candidate term was eliminated; intercept-only model remains")

        # Surviving terms become the model's design
        cols = self._columns_for(terms, all_terms, names)
        self.selected_terms = list(terms)
        self.X = X[:, cols]
        self.feature_names = [names[i] for i in cols]
        self.feature_terms = {t: all_terms[t] for t in terms}
        self.term_kinds = {t: all_kinds[t] for t in terms}
        self.ols_model = results
        self.model = results

        removed = [s['removed_term'] for s in self.elimination_steps]
        self.logger.info(f"Removed {len(removed)} term(s): {', '.join(removed) if removed else 'none'}")
        self.logger.info(f"Final terms ({len(terms)}): {', '.join(terms) if terms else '(intercept only)'}")
        self.logger.info(f"Final adjusted R-squared: {results.rsquared_adj:.4f}")

        self.log_all_features(self._coefficient_rows(), title="Final coefficients (sorted by p-value)")
        self._log_term_pvalues()

    def fit(self, X: np.ndarray, y: np.ndarray) -> None:
        # Elimination always starts from the full candidate set
        self.selected_terms = None
        super().fit(X, y)

    # ------------------------------------------------------------------
    # Outputs
    # ------------------------------------------------------------------

    def elimination_table(self) -> pd.DataFrame:
        return pd.DataFrame(self.elimination_steps,
                            columns=['step', 'removed_term', 'p_value', 'adj_r2_before',
                                     'adj_r2_after', 'terms_remaining'])

    def generate_elimination_table_tex(self) -> Path:
        path = self.output_dir / f"model_{self.model_id}_elimination.tex"
        table = self.elimination_table()
        with open(path, 'w', encoding='utf-8') as f:
            f.write(f"% Model {self.model_id} backward elimination steps\n")
            f.write("% Automatically generated - do not edit manually\n")
            f.write("\\begin{table}[htbp]\n\\centering\n")
            f.write(f"\\caption{{Backward elimination at $\\alpha = {self.significance_level}$}}\n")
            f.write(f"\\label{{tab:model-{self.model_id}-elimination}}\n\\small\n")
            f.write("\\begin{tabular}{rlrrr}\n\\hline\n")
            f.write("\\textbf{Step} & \\textbf{Removed term} & \\textbf{p-value} & "
                    "\\textbf{Adj. $R^2$ before} & \\textbf{Adj. $R^2$ after} \\\\\n\\hline\n")
            if table.empty:
                f.write("\\multicolumn{5}{c}{No terms removed} \\\\\n")
            for _, row in table.iterrows():
                f.write(f"{int(row['step'])} & {latex_escape(row['removed_term'])} & "
                        f"{row['p_value']:.4f} & {row['adj_r2_before']:.4f} & {row['adj_r2_after']:.4f} \\\\\n")
            f.write("\\hline\n\\end{tabular}\n\\end{table}\n")
        return path

    def _latex_metric_values(self) -> Dict[str, str]:
        values = super()._latex_metric_values()
        values['NumCandidateTerms'] = f"{len(self.candidate_terms)}"
        values['NumRemovedTerms'] = f"{len(self.elimination_steps)}"
        return values

    def save_results(self) -> None:
        super().save_results()
        self.elimination_table().to_csv(self.output_dir / "elimination_steps.csv", index=False)
        self.generate_elimination_table_tex()
        self.logger.info(f"  - Elimination steps: {self.output_dir_relative / 'elimination_steps.csv'}")

    def plot_diagnostics(self) -> None:
        super().plot_diagnostics()
        if not self.elimination_steps:
            return

        table = self.elimination_table()
        fig, ax = plt.subplots(figsize=(10, 5))
        steps = [0] + table['step'].tolist()
        adj = [table['adj_r2_before'].iloc[0]] + table['adj_r2_after'].tolist()
        ax.plot(steps, adj, 'o-', linewidth=2)
        for step, term, value in zip(table['step'], table['removed_term'], table['adj_r2_after']):
            ax.annotate(term, (step, value), textcoords="offset points", xytext=(0, 8),
                        ha='center', fontsize=8, rotation=30)
        ax.set_xlabel('Elimination step')
        ax.set_ylabel('Adjusted R^2')
        ax.set_title(f'Model {self.model_id}: Adjusted R^2 Through Backward Elimination')
        ax.grid(True, alpha=0.3)
        plt.tight_layout()
        output_file = self.output_dir / 'elimination_path.png'
        plt.savefig(output_file, dpi=150, bbox_inches='tight')
        plt.close()
