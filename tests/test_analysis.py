import numpy as np
import pandas as pd
import pytest

from base_model import records_to_frame
from ExploratoryAnalysis import ExploratoryAnalysis, summary_statistics
from FeatureSelection import (
    correlation_ratio_eta,
    cramers_v_corrected,
    redundancy_filter,
    run_correlation_analysis,
)


@pytest.fixture
def redundant_frame():
    rng = np.random.default_rng(3)
    n = 400
    x = rng.normal(0, 1, n)
    return pd.DataFrame({
        "x": x,
        "x_copy": x + rng.normal(0, 0.05, n),
        "z": rng.normal(0, 1, n),
        "group": rng.choice(["a", "b", "c"], n),
        "audience_score": 60 + 10 * x + rng.normal(0, 3, n),
    })


class TestAssociationMeasures:
    def test_cramers_v_identical_and_independent(self):
        rng = np.random.default_rng(0)
        a = rng.choice(["p", "q", "r"], 600)
        b = rng.choice(["u", "v"], 600)
        assert cramers_v_corrected(a, a) == pytest.approx(1.0, abs=0.01)
        assert cramers_v_corrected(a, b) < 0.1

    def test_eta_determined_and_unrelated(self):
        rng = np.random.default_rng(1)
        cat = rng.choice(["p", "q", "r"], 500)
        determined = np.select([cat == "p", cat == "q"], [10.0, 20.0], 30.0) + rng.normal(0, 0.1, 500)
        assert correlation_ratio_eta(cat, determined) > 0.99
        assert correlation_ratio_eta(cat, rng.normal(0, 1, 500)) < 0.15


class TestRedundancyFilter:
    def test_drops_one_of_duplicate_pair(self, redundant_frame):
        dropped = redundancy_filter(redundant_frame, ["x", "x_copy", "z"], ["group"], threshold=0.8)
        assert len(dropped) == 1
        assert dropped[0] in {"x", "x_copy"}

    def test_threshold_above_all_pairs(self, redundant_frame):
        assert redundancy_filter(redundant_frame, ["x", "x_copy", "z"], ["group"], threshold=0.9999) == []

    def test_weaker_member_dropped(self, redundant_frame):
        frame = redundant_frame.copy()
        # y depends on x only through w, so w is the stronger member of the pair
        frame["w"] = frame["x"] + np.random.default_rng(5).normal(0, 0.3, len(frame))
        frame["audience_score"] = 60 + 10 * frame["w"]
        assert redundancy_filter(frame, ["x", "w"], [], threshold=0.8) == ["x"]

    def test_tie_drops_later_candidate(self, redundant_frame):
        frame = redundant_frame.copy()
        frame["x_twin"] = frame["x"]
        assert redundancy_filter(frame, ["x", "x_twin"], [], threshold=0.8) == ["x_twin"]
        assert redundancy_filter(frame, ["x_twin", "x"], [], threshold=0.8) == ["x"]

    def test_run_writes_outputs(self, tmp_path, movie_records):
        result = run_correlation_analysis(movie_records, tmp_path, threshold=0.8)
        assert set(result["dropped"]).isdisjoint(result["kept"])
        assert "imdb_rating" in result["kept"]
        assert "audience_score" in result["pearson"].columns
        summary = pd.read_csv(tmp_path / "logs" / "CorrelationSummary.csv")
        assert len(summary) == 11
        assert summary.iloc[0]["Predictor"] == "imdb_rating"
        assert "\\CorrThreshold" in (tmp_path / "logs" / "CorrelationCommands.tex").read_text()
        assert (tmp_path / "figures" / "correlation_pearson.png").exists()


class TestExploratoryAnalysis:
    def test_summary_statistics(self, movie_records):
        stats = summary_statistics(records_to_frame(movie_records))
        assert stats["n"] == len(movie_records)
        assert "audience_score" in stats["numeric"].index
        assert stats["numeric"].loc["imdb_rating", "max"] <= 100
        assert set(stats["categorical"]["oscar"].index) <= {"yes", "no"}

    def test_run_all(self, tmp_path, movie_records):
        eda = ExploratoryAnalysis(movie_records, tmp_path)
        eda.run_all(generate_plots=True)
        assert (tmp_path / "logs" / "SummaryStatistics.tex").exists()
        for name in ("eda_audience_score.png", "eda_categorical_boxplots.png", "eda_numeric_scatter.png"):
            assert (tmp_path / "figures" / name).exists(), name
