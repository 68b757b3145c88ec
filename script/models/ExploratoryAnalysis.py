"""
Exploratory Analysis of the Movie Dataset
Summary statistics and descriptive plots of audience_score against the
candidate predictors, written under report/logs and report/figures.
"""

import logging
from pathlib import Path
from datetime import datetime
from typing import Dict, List, Any, Optional

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
import seaborn as sns

from base_model import RESPONSE, MovieRecord, records_to_frame, latex_escape

# Set style for plots
plt.style.use('seaborn-v0_8-darkgrid')
sns.set_palette("husl")

NUMERIC_COLUMNS = ['runtime', 'imdb_rating', 'imdb_num_votes', 'critics_score', 'release_year', RESPONSE]
CATEGORICAL_COLUMNS = ['title_type', 'genre', 'mpaa_rating', 'best_pic_nom', 'oscar', 'top200_box']


def summary_statistics(frame: pd.DataFrame) -> Dict[str, Any]:
    """describe() of the numeric columns and level counts of the categorical ones"""
    numeric = [c for c in NUMERIC_COLUMNS if c in frame.columns]
    categorical = [c for c in CATEGORICAL_COLUMNS if c in frame.columns]

    described = frame[numeric].astype(float).describe().T
    described['skew'] = frame[numeric].astype(float).skew()

    counts = {col: frame[col].astype(str).value_counts().sort_index() for col in categorical}
    return {'numeric': described, 'categorical': counts, 'n': len(frame)}


class ExploratoryAnalysis:
    def __init__(self, records: List[MovieRecord], output_root: Path,
                 logger: Optional[logging.Logger] = None):
        """
        Parameters:
        -----------
        records : list of MovieRecord
            Derived records (imdb_rating already on the 0-100 scale)
        output_root : Path
            Report root; writes into logs/ and figures/ below it
        """
        self.frame = records_to_frame(records)
        self.logger = logger or logging.getLogger(__name__)
        self.log_dir = Path(output_root) / 'logs'
        self.figures_dir = Path(output_root) / 'figures'
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self.figures_dir.mkdir(parents=True, exist_ok=True)
        self.results: Dict[str, Any] = {}

    def summary_statistics(self) -> Dict[str, Any]:
        stats = summary_statistics(self.frame)
        self.results['summary'] = stats

        self.logger.info(f"Summary statistics ({stats['n']:,} movies):")
        for name, row in stats['numeric'].iterrows():
            self.logger.info(f"  {name:16s} mean={row['mean']:12,.2f}  sd={row['std']:12,.2f}  "
                             f"min={row['min']:10,.1f}  max={row['max']:12,.1f}  skew={row['skew']:.2f}")
        for col, counts in stats['categorical'].items():
            levels = ", ".join(f"{k}={v}" for k, v in counts.items())
            self.logger.info(f"  {col}: {levels}")

        stats['numeric'].to_csv(self.log_dir / 'SummaryStatistics.csv')
        self.write_summary_tex(stats)
        return stats

    def write_summary_tex(self, stats: Dict[str, Any]) -> Path:
        path = self.log_dir / 'SummaryStatistics.tex'
        with open(path, 'w', encoding='utf-8') as f:
            f.write("% Summary statistics of the numeric variables\n")
            f.write(f"% Generated: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}\n")
            f.write("\\begin{table}[htbp]\n\\centering\n")
            f.write(f"\\caption{{Summary statistics ({stats['n']:,} movies; IMDB rating rescaled to 0--100)}}\n")
            f.write("\\label{tab:summary-statistics}\n\\small\n")
            f.write("\\begin{tabular}{lrrrrrr}\n\\hline\n")
            f.write("\\textbf{Variable} & \\textbf{Mean} & \\textbf{SD} & \\textbf{Min} & "
                    "\\textbf{Median} & \\textbf{Max} & \\textbf{Skew} \\\\\n\\hline\n")
            for name, row in stats['numeric'].iterrows():
                f.write(f"{latex_escape(name)} & {row['mean']:,.2f} & {row['std']:,.2f} & {row['min']:,.1f} & "
                        f"{row['50%']:,.1f} & {row['max']:,.1f} & {row['skew']:.2f} \\\\\n")
            f.write("\\hline\n\\end{tabular}\n\\end{table}\n\n")

            f.write(f"\\newcommand{{\\EDANumMovies}}{{{stats['n']:,}}}\n")
            if RESPONSE in stats['numeric'].index:
                resp = stats['numeric'].loc[RESPONSE]
                f.write(f"\\newcommand{{\\EDAAudienceMean}}{{{resp['mean']:.1f}}}\n")
                f.write(f"\\newcommand{{\\EDAAudienceMedian}}{{{resp['50%']:.1f}}}\n")
                f.write(f"\\newcommand{{\\EDAAudienceSkew}}{{{resp['skew']:.2f}}}\n")
        self.logger.info(f"Summary table saved to: {path.name}")
        return path

    def plot_response_distribution(self):
        """Histogram with KDE and boxplot of the response"""
        fig, axes = plt.subplots(1, 2, figsize=(14, 5), gridspec_kw={'width_ratios': [3, 1]})

        ax = axes[0]
        sns.histplot(self.frame[RESPONSE], bins=30, kde=True, ax=ax)
        ax.axvline(self.frame[RESPONSE].mean(), color='red', linestyle='--',
                   label=f"Mean {self.frame[RESPONSE].mean():.1f}")
        ax.axvline(self.frame[RESPONSE].median(), color='black', linestyle=':',
                   label=f"Median {self.frame[RESPONSE].median():.1f}")
        ax.set_xlabel('Audience score')
        ax.set_ylabel('Movies')
        ax.set_title('Distribution of Audience Score')
        ax.legend()

        ax = axes[1]
        sns.boxplot(y=self.frame[RESPONSE], ax=ax)
        ax.set_ylabel('Audience score')
        ax.set_title('Boxplot')

        plt.tight_layout()
        plt.savefig(self.figures_dir / 'eda_audience_score.png', dpi=300, bbox_inches='tight')
        plt.close()

    def plot_categorical_boxplots(self):
        """Response by each categorical/binary predictor"""
        cols = [c for c in CATEGORICAL_COLUMNS if c in self.frame.columns]
        n_cols = 3
        n_rows = int(np.ceil(len(cols) / n_cols))
        fig, axes = plt.subplots(n_rows, n_cols, figsize=(18, 5.5 * n_rows), squeeze=False)

        for ax, col in zip(axes.flat, cols):
            order = self.frame.groupby(col)[RESPONSE].median().sort_values().index.tolist()
            sns.boxplot(data=self.frame, x=col, y=RESPONSE, order=order, ax=ax)
            ax.set_title(f'Audience Score by {col}')
            ax.set_xlabel('')
            ax.set_ylabel('Audience score')
            ax.tick_params(axis='x', rotation=45)
            for label in ax.get_xticklabels():
                label.set_horizontalalignment('right')

        for ax in list(axes.flat)[len(cols):]:
            ax.axis('off')

        plt.suptitle('Audience Score by Categorical Predictors', fontsize=14, y=1.01)
        plt.tight_layout()
        plt.savefig(self.figures_dir / 'eda_categorical_boxplots.png', dpi=300, bbox_inches='tight')
        plt.close()

    def plot_numeric_scatterplots(self):
        """Response against each numeric predictor with a linear fit line"""
        cols = [c for c in NUMERIC_COLUMNS if c != RESPONSE and c in self.frame.columns]
        n_cols = 3
        n_rows = int(np.ceil(len(cols) / n_cols))
        fig, axes = plt.subplots(n_rows, n_cols, figsize=(18, 5 * n_rows), squeeze=False)

        for ax, col in zip(axes.flat, cols):
            x = self.frame[col].astype(float)
            sns.regplot(x=x, y=self.frame[RESPONSE].astype(float), ax=ax,
                        scatter_kws={'alpha': 0.4, 's': 15}, line_kws={'color': 'red'})
            r = np.corrcoef(x, self.frame[RESPONSE].astype(float))[0, 1]
            ax.set_title(f'Audience Score vs {col} (r = {r:.2f})')
            ax.set_xlabel(col)
            ax.set_ylabel('Audience score')
            ax.grid(True, alpha=0.3)

        for ax in list(axes.flat)[len(cols):]:
            ax.axis('off')

        plt.suptitle('Audience Score vs Numeric Predictors', fontsize=14, y=1.01)
        plt.tight_layout()
        plt.savefig(self.figures_dir / 'eda_numeric_scatter.png', dpi=300, bbox_inches='tight')
        plt.close()

    def run_all(self, generate_plots: bool = True) -> Dict[str, Any]:
        self.logger.info("=" * 80)
        self.logger.info("EXPLORATORY ANALYSIS")
        self.logger.info("=" * 80)

        self.summary_statistics()
        if generate_plots:
            self.plot_response_distribution()
            self.plot_categorical_boxplots()
            self.plot_numeric_scatterplots()
            self.logger.info(f"EDA figures saved to: {self.figures_dir}")
        return self.results
