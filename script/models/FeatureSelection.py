"""
Correlation Analysis and Redundancy Pruning - Movie Audience Scores

Association screen run before model fitting:
- Pearson r and Spearman rho (numeric <-> numeric, numeric -> response)
- Bias-corrected Cramer's V with chi-square validity screening (categorical <-> categorical)
- Bias-adjusted correlation ratio eta (epsilon-squared) for categorical -> numeric
- Redundancy filter: in every predictor pair whose association exceeds the
  threshold, the member less associated with audience_score is dropped
- Heatmaps, CSV summary and LaTeX commands

Outputs
-------
report/logs/CorrelationSummary.csv
report/logs/CorrelationCommands.tex
report/figures/correlation_*.png
"""

import math
import logging
from pathlib import Path
from datetime import datetime
from typing import Dict, List, Tuple, Any, Optional

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
import seaborn as sns
from scipy.stats import spearmanr, chi2_contingency

from base_model import RESPONSE, MovieRecord, records_to_frame, latex_escape

_module_logger = logging.getLogger(__name__)


# ------------------------- Defaults / Tunables -------------------------

NUMERIC_CANDIDATES: List[str] = [
    "runtime", "imdb_rating", "imdb_num_votes", "critics_score", "release_year",
]

CATEGORICAL_CANDIDATES: List[str] = [
    "title_type", "genre", "mpaa_rating", "best_pic_nom", "oscar", "top200_box",
]

DEFAULT_THRESHOLD = 0.8
RARE_LEVEL_MIN_FREQ = 5

# Chi-square validity rules
CHI2_MIN_EXPECTED = 1.0
CHI2_MIN_PROP_GE5 = 0.80


# ------------------------- Utilities -------------------------

def _command_name(name: str) -> str:
    parts = [p for p in "".join(c if c.isalpha() else "_" for c in name).split("_") if p]
    return "".join(p[0].upper() + p[1:] for p in parts)


# ------------------------- Association Metrics -------------------------

def _collapse_rare(levels: np.ndarray, min_freq: int = RARE_LEVEL_MIN_FREQ) -> np.ndarray:
    """Cast to string labels and pool levels seen fewer than min_freq times"""
    levels = np.asarray(levels, dtype=object).astype(str)
    uniq, counts = np.unique(levels, return_counts=True)
    rare = set(uniq[counts < min_freq])
    if rare:
        levels = levels.copy()
        levels[np.isin(levels, list(rare))] = "__OTHER__"
    return levels


def _contingency(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    a = np.asarray(a, dtype=object).astype(str)
    b = np.asarray(b, dtype=object).astype(str)
    ua, ia = np.unique(a, return_inverse=True)
    ub, ib = np.unique(b, return_inverse=True)
    tbl = np.zeros((ua.size, ub.size), dtype=int)
    np.add.at(tbl, (ia, ib), 1)
    return tbl


def _chi2_expected_ok(tbl: np.ndarray) -> bool:
    if tbl.sum() == 0 or min(tbl.shape) < 2:
        return False
    _, _, _, expected = chi2_contingency(tbl, correction=False)
    if np.any(expected < CHI2_MIN_EXPECTED):
        return False
    return np.mean(expected >= 5) >= CHI2_MIN_PROP_GE5


def cramers_v_corrected(a: np.ndarray, b: np.ndarray) -> float:
    """Bias-corrected Cramer's V; 0.0 when the chi-square table is not valid"""
    tbl = _contingency(_collapse_rare(a), _collapse_rare(b))
    n = tbl.sum()
    if n <= 1:
        return 0.0
    try:
        if not _chi2_expected_ok(tbl):
            return 0.0
        chi2, _, _, _ = chi2_contingency(tbl, correction=False)
    except (ValueError, ZeroDivisionError):
        return 0.0
    r, k = tbl.shape
    phi2 = max(0.0, (chi2 / n) - ((r - 1) * (k - 1)) / (n - 1))
    r_corr = r - ((r - 1) ** 2) / (n - 1)
    k_corr = k - ((k - 1) ** 2) / (n - 1)
    denom = min(r_corr - 1.0, k_corr - 1.0)
    if not np.isfinite(phi2) or not np.isfinite(denom) or denom <= 0.0:
        return 0.0
    val = math.sqrt(phi2 / denom)
    return float(val) if np.isfinite(val) else 0.0


def pearson_corr(x: np.ndarray, y: np.ndarray) -> float:
    x = np.asarray(x, dtype=float)
    y = np.asarray(y, dtype=float)
    if x.size < 3 or np.std(x) == 0 or np.std(y) == 0:
        return 0.0
    r = np.corrcoef(x, y)[0, 1]
    return float(r) if np.isfinite(r) else 0.0


def spearman_corr(x: np.ndarray, y: np.ndarray) -> float:
    if len(x) < 3 or len(y) < 3:
        return 0.0
    rho, _ = spearmanr(x, y)
    return float(rho) if np.isfinite(rho) else 0.0


def correlation_ratio_eta(cat: np.ndarray, cont: np.ndarray) -> float:
    """
    Returns eta = sqrt(eps^2), where epsilon-squared carries a df correction:
        eps^2 = (SS_between - (k-1)*MS_within) / SS_total
    Requires n > k and n >= 3.
    """
    cat = np.asarray(cat, dtype=object)
    cont = np.asarray(cont, dtype=float)
    mask = np.isfinite(cont)
    cat, cont = cat[mask], cont[mask]
    n = cont.size
    if n < 3:
        return 0.0

    cat = _collapse_rare(cat)
    levels = np.unique(cat)
    k = levels.size
    if k < 2 or n <= k:
        return 0.0

    gm = cont.mean()
    ss_total = float(((cont - gm) ** 2).sum())
    if ss_total == 0.0:
        return 0.0

    ss_between = 0.0
    ss_within = 0.0
    for lev in levels:
        grp = cont[cat == lev]
        m = grp.mean()
        ss_between += grp.size * (m - gm) ** 2
        ss_within += float(((grp - m) ** 2).sum())

    ms_within = ss_within / (n - k)
    eps2 = max(0.0, (ss_between - (k - 1) * ms_within) / ss_total)
    val = math.sqrt(eps2)
    return float(val) if np.isfinite(val) else 0.0


# ------------------------- Matrices -------------------------

def numeric_corr_matrix(frame: pd.DataFrame, names: List[str], method: str = "pearson") -> pd.DataFrame:
    """Correlation matrix of numeric predictors plus the response"""
    cols = [n for n in names if n in frame.columns]
    if RESPONSE in frame.columns and RESPONSE not in cols:
        cols.append(RESPONSE)
    return frame[cols].astype(float).corr(method=method)


def categorical_cramers_matrix(frame: pd.DataFrame, names: List[str]) -> pd.DataFrame:
    k = len(names)
    M = np.eye(k, dtype=float)
    for i in range(k):
        for j in range(i + 1, k):
            M[i, j] = M[j, i] = cramers_v_corrected(frame[names[i]].values, frame[names[j]].values)
    return pd.DataFrame(M, index=names, columns=names)


def mixed_eta_matrix(frame: pd.DataFrame, cat_names: List[str], cont_names: List[str]) -> pd.DataFrame:
    """eta of each categorical predictor against each numeric column (response included)"""
    cols = list(cont_names)
    if RESPONSE in frame.columns and RESPONSE not in cols:
        cols.append(RESPONSE)
    M = np.zeros((len(cat_names), len(cols)), dtype=float)
    for i, cat in enumerate(cat_names):
        for j, cont in enumerate(cols):
            M[i, j] = correlation_ratio_eta(frame[cat].values, frame[cont].values)
    return pd.DataFrame(M, index=cat_names, columns=cols)


def response_association(frame: pd.DataFrame,
                         numeric: List[str],
                         categorical: List[str]) -> Dict[str, float]:
    """|Pearson r| for numeric predictors, eta for categorical ones"""
    y = frame[RESPONSE].values.astype(float)
    out = {}
    for name in numeric:
        out[name] = abs(pearson_corr(frame[name].values, y))
    for name in categorical:
        out[name] = correlation_ratio_eta(frame[name].values, y)
    return out


def pairwise_associations(frame: pd.DataFrame,
                          numeric: List[str],
                          categorical: List[str]) -> List[Tuple[str, str, float, str]]:
    """(a, b, association, kind) for every predictor pair, strongest first"""
    names = list(numeric) + list(categorical)
    is_cat = {n: n in categorical for n in names}
    rows = []
    for i, a in enumerate(names):
        for b in names[i + 1:]:
            if is_cat[a] and is_cat[b]:
                assoc, kind = cramers_v_corrected(frame[a].values, frame[b].values), "cramers_v"
            elif not is_cat[a] and not is_cat[b]:
                assoc, kind = abs(pearson_corr(frame[a].values, frame[b].values)), "pearson"
            else:
                cat, cont = (a, b) if is_cat[a] else (b, a)
                assoc, kind = correlation_ratio_eta(frame[cat].values, frame[cont].values), "eta"
            rows.append((a, b, float(assoc) if np.isfinite(assoc) else 0.0, kind))
    rows.sort(key=lambda t: t[2], reverse=True)
    return rows


# ------------------------- Redundancy filter -------------------------

def redundancy_filter(frame: pd.DataFrame,
                      numeric: List[str],
                      categorical: List[str],
                      threshold: float = DEFAULT_THRESHOLD,
                      logger: Optional[logging.Logger] = None) -> List[str]:
    """
    Drop one member of every predictor pair whose association exceeds threshold

    The member with the weaker association to the response goes (on a tie,
    the later one in candidate order). Pairs are visited strongest first and
    a pair is skipped once either member has been dropped.

    Returns:
        Dropped predictor names in candidate order
    """
    logger = logger or _module_logger
    to_resp = response_association(frame, numeric, categorical)
    to_drop = set()

    for a, b, assoc, kind in pairwise_associations(frame, numeric, categorical):
        if assoc <= threshold:
            break
        if a in to_drop or b in to_drop:
            continue
        weaker = a if to_resp[a] < to_resp[b] else b
        to_drop.add(weaker)
        logger.info(f"  {a} ~ {b}: {kind}={assoc:.3f} > {threshold} -> drop {weaker} "
                    f"(response association {to_resp[weaker]:.3f})")

    return [n for n in list(numeric) + list(categorical) if n in to_drop]


# ------------------------- Plots -------------------------

def _plot_matrix(matrix: pd.DataFrame, title: str, kind: str, fig_dir: Path, fname: str, logger):
    if matrix is None or matrix.empty:
        return
    n_vars = max(matrix.shape)
    fig_size = (12, 10) if n_vars > 8 else (9, 7)
    if kind in ("cramers_v", "eta"):
        vmin, vmax, cmap, cbar_label = 0, 1, "YlOrRd", ("Cramer's V" if kind == "cramers_v" else "Correlation ratio eta")
    else:
        vmin, vmax, cmap, cbar_label = -1, 1, "coolwarm", f"{kind.capitalize()} correlation"

    mask = None
    if matrix.shape[0] == matrix.shape[1]:
        mask = np.triu(np.ones(matrix.shape, dtype=bool), k=1)

    fig, ax = plt.subplots(figsize=fig_size)
    sns.heatmap(matrix, mask=mask, annot=True, fmt=".2f", cmap=cmap, vmin=vmin, vmax=vmax,
                center=0 if vmin < 0 else None, ax=ax, cbar_kws={"label": cbar_label})
    ax.set_title(title, fontsize=14, fontweight="bold")
    plt.xticks(rotation=45, ha="right", fontsize=9)
    plt.yticks(fontsize=9)
    plt.tight_layout()
    fig_dir.mkdir(parents=True, exist_ok=True)
    path = fig_dir / fname
    plt.savefig(path, dpi=300, bbox_inches="tight")
    plt.close()
    logger.info(f"Saved plot: {path.name}")


# ------------------------- Reporting -------------------------

def _summary_frame(frame: pd.DataFrame, numeric: List[str], categorical: List[str],
                   dropped: List[str]) -> pd.DataFrame:
    y = frame[RESPONSE].values.astype(float)
    rows = []
    for name in numeric:
        r = pearson_corr(frame[name].values, y)
        rows.append({
            "Predictor": name, "Type": "Numeric",
            "Pearson_r": round(r, 6),
            "Spearman_rho": round(spearman_corr(frame[name].values, y), 6),
            "Eta": np.nan,
            "Association": round(abs(r), 6),
            "Dropped": name in dropped,
        })
    for name in categorical:
        eta = correlation_ratio_eta(frame[name].values, y)
        rows.append({
            "Predictor": name, "Type": "Categorical",
            "Pearson_r": np.nan, "Spearman_rho": np.nan,
            "Eta": round(eta, 6),
            "Association": round(eta, 6),
            "Dropped": name in dropped,
        })
    return pd.DataFrame(rows).sort_values("Association", ascending=False).reset_index(drop=True)


def _write_commands_tex(summary: pd.DataFrame, threshold: float, dropped: List[str],
                        n_records: int, path: Path, logger):
    top = summary.iloc[0] if not summary.empty else None
    with open(path, "w", encoding="utf-8") as f:
        f.write("% Correlation Analysis LaTeX Commands - Movie Audience Scores\n")
        f.write(f"% Generated: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}\n")
        f.write("% Include with: \\input{report/logs/CorrelationCommands.tex}\n\n")
        f.write(f"\\newcommand{{\\CorrNumRecords}}{{{n_records:,}}}\n")
        f.write(f"\\newcommand{{\\CorrNumCandidates}}{{{len(summary)}}}\n")
        f.write(f"\\newcommand{{\\CorrThreshold}}{{{threshold}}}\n")
        f.write(f"\\newcommand{{\\CorrNumDropped}}{{{len(dropped)}}}\n")
        dropped_text = ", ".join(latex_escape(d) for d in dropped) if dropped else "none"
        f.write(f"\\newcommand{{\\CorrDropped}}{{{dropped_text}}}\n\n")
        if top is not None:
            f.write(f"\\newcommand{{\\CorrTopPredictor}}{{{latex_escape(top['Predictor'])}}}\n")
            f.write(f"\\newcommand{{\\CorrTopAssociation}}{{{top['Association']:.3f}}}\n\n")
        f.write("% Association with audience score\n")
        for _, row in summary.iterrows():
            cmd = _command_name(row["Predictor"])
            if row["Type"] == "Numeric":
                f.write(f"\\newcommand{{\\CorrPearson{cmd}}}{{{row['Pearson_r']:.3f}}}\n")
                f.write(f"\\newcommand{{\\CorrSpearman{cmd}}}{{{row['Spearman_rho']:.3f}}}\n")
            else:
                f.write(f"\\newcommand{{\\CorrEta{cmd}}}{{{row['Eta']:.3f}}}\n")
    logger.info(f"LaTeX commands saved to: {path.name}")


# ------------------------- Orchestration -------------------------

def run_correlation_analysis(records: List[MovieRecord],
                             output_root: Path,
                             threshold: float = DEFAULT_THRESHOLD,
                             numeric: Optional[List[str]] = None,
                             categorical: Optional[List[str]] = None,
                             generate_plots: bool = True,
                             logger: Optional[logging.Logger] = None) -> Dict[str, Any]:
    """
    Association screen and redundancy pruning over the candidate predictors

    Returns a dict with 'dropped', 'kept', 'summary' (DataFrame) and the
    Pearson, Spearman, Cramer's V and eta matrices.
    """
    logger = logger or _module_logger
    numeric = list(numeric or NUMERIC_CANDIDATES)
    categorical = list(categorical or CATEGORICAL_CANDIDATES)

    output_root = Path(output_root)
    log_dir = output_root / "logs"
    fig_dir = output_root / "figures"
    log_dir.mkdir(parents=True, exist_ok=True)

    logger.info("=" * 80)
    logger.info("CORRELATION ANALYSIS")
    logger.info("=" * 80)

    frame = records_to_frame(records)
    logger.info(f"Records: {len(frame):,}")
    logger.info(f"Numeric candidates: {', '.join(numeric)}")
    logger.info(f"Categorical candidates: {', '.join(categorical)}")

    logger.info("")
    logger.info("1. NUMERIC CORRELATIONS (PEARSON / SPEARMAN)")
    logger.info("-" * 40)
    pearson = numeric_corr_matrix(frame, numeric, "pearson")
    spearman = numeric_corr_matrix(frame, numeric, "spearman")
    for name in numeric:
        logger.info(f"{name:20s}: r={pearson.loc[name, RESPONSE]: .3f}  rho={spearman.loc[name, RESPONSE]: .3f}")

    logger.info("")
    logger.info("2. CATEGORICAL ASSOCIATIONS (BIAS-CORRECTED CRAMER'S V)")
    logger.info("-" * 40)
    cramers = categorical_cramers_matrix(frame, categorical)
    for i, a in enumerate(categorical):
        for b in categorical[i + 1:]:
            if cramers.loc[a, b] > 0.3:
                logger.info(f"{a} ~ {b}: V={cramers.loc[a, b]:.3f}")

    logger.info("")
    logger.info("3. MIXED-TYPE ASSOCIATIONS (CORRELATION RATIO ETA)")
    logger.info("-" * 40)
    eta = mixed_eta_matrix(frame, categorical, numeric)
    for name in categorical:
        logger.info(f"{name:20s}: eta vs {RESPONSE} = {eta.loc[name, RESPONSE]:.3f}")

    logger.info("")
    logger.info(f"4. REDUNDANCY FILTER (threshold {threshold})")
    logger.info("-" * 40)
    dropped = redundancy_filter(frame, numeric, categorical, threshold=threshold, logger=logger)
    kept = [n for n in numeric + categorical if n not in dropped]
    if dropped:
        logger.info(f"Redundancy filter dropped {len(dropped)} predictor(s): {', '.join(dropped)}")
    else:
        logger.info("Redundancy filter dropped no predictors")

    summary = _summary_frame(frame, numeric, categorical, dropped)
    csv_path = log_dir / "CorrelationSummary.csv"
    summary.to_csv(csv_path, index=False)
    logger.info(f"Summary saved to: {csv_path.name}")
    _write_commands_tex(summary, threshold, dropped, len(frame), log_dir / "CorrelationCommands.tex", logger)

    if generate_plots:
        _plot_matrix(pearson, "Numeric Predictors and Audience Score (Pearson)", "pearson",
                     fig_dir, "correlation_pearson.png", logger)
        _plot_matrix(spearman, "Numeric Predictors and Audience Score (Spearman)", "spearman",
                     fig_dir, "correlation_spearman.png", logger)
        _plot_matrix(cramers, "Categorical Predictors (Cramer's V)", "cramers_v",
                     fig_dir, "correlation_cramers_v.png", logger)
        _plot_matrix(eta, "Categorical vs Numeric (Correlation Ratio)", "eta",
                     fig_dir, "correlation_eta.png", logger)

    return {
        "dropped": dropped,
        "kept": kept,
        "summary": summary,
        "pearson": pearson,
        "spearman": spearman,
        "cramers_v": cramers,
        "eta": eta,
    }
