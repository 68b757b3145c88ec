import json
from pathlib import Path

import pandas as pd
import pytest

import Orchestrator
from Orchestrator import DEFAULT_CONFIG_PATH, ModelOrchestrator, build_feature_config, main


def test_feature_config_follows_pruning():
    config = build_feature_config(["imdb_rating", "genre", "oscar"])
    assert config["numeric"] == ["imdb_rating"]
    assert list(config["categorical"]) == ["genre"]
    assert list(config["binary"]) == ["oscar"]


def test_end_to_end(tmp_path, orchestrator_config):
    orchestrator = ModelOrchestrator(config_path=str(orchestrator_config))
    assert orchestrator.run() == 0

    out = tmp_path / "report" / "models" / "comparison"
    comparison = pd.read_csv(out / "model_comparison.csv")
    assert comparison["Model_ID"].tolist() == [1, 2, 3]
    assert comparison.loc[comparison["Model_ID"] == 3, "Adj_R2"].iloc[0] > \
        comparison.loc[comparison["Model_ID"] == 2, "Adj_R2"].iloc[0]

    prediction = json.loads((out / "prediction.json").read_text())
    assert prediction["title"] == "Zootopia"
    assert prediction["model_id"] == 3
    assert prediction["pi_lower"] < prediction["fit"] < prediction["pi_upper"]
    assert "actual_in_interval" in prediction
    assert "\\PredFit" in (out / "PredictionCommands.tex").read_text()

    for model_id in (1, 2, 3):
        assert (tmp_path / "report" / "models" / f"model_{model_id}" / "metrics.json").exists()
    assert (tmp_path / "report" / "logs" / "CorrelationSummary.csv").exists()
    assert (tmp_path / "report" / "logs" / "SummaryStatistics.tex").exists()


def test_stage_failure_returns_one(tmp_path, orchestrator_config):
    config = json.loads(orchestrator_config.read_text())
    config["data_settings"]["data_file"] = str(tmp_path / "missing.csv")
    orchestrator_config.write_text(json.dumps(config))
    assert ModelOrchestrator(config_path=str(orchestrator_config)).run() == 1


def test_missing_section_rejected(tmp_path, orchestrator_config):
    config = json.loads(orchestrator_config.read_text())
    del config["prediction_settings"]
    orchestrator_config.write_text(json.dumps(config))
    with pytest.raises(ValueError, match="prediction_settings"):
        ModelOrchestrator(config_path=str(orchestrator_config))


def test_main_missing_config_exits_one(tmp_path):
    with pytest.raises(SystemExit) as exc:
        main(["--config", str(tmp_path / "nope.json")])
    assert exc.value.code == 1


def test_default_config_found_from_any_directory(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    seen = {}

    class Recorder:
        def __init__(self, config_path):
            seen["config_path"] = config_path

        def run(self):
            return 0

    monkeypatch.setattr(Orchestrator, "ModelOrchestrator", Recorder)
    with pytest.raises(SystemExit) as exc:
        main([])
    assert exc.value.code == 0
    assert Path(seen["config_path"]) == DEFAULT_CONFIG_PATH
    assert DEFAULT_CONFIG_PATH.name == "Orchestrator.json"
    assert DEFAULT_CONFIG_PATH.exists()
