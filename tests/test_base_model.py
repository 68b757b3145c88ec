from dataclasses import replace
from datetime import date

import numpy as np
import pandas as pd
import pytest

from base_model import BaseMovieModel, derive_record, parse_release_date, records_to_frame, UNUSED_COLUMNS
from model_1_full import Model1FullOLS


def _row(**overrides):
    row = {
        "title": "Filly Brown",
        "title_type": "Feature Film",
        "genre": "Drama",
        "runtime": 80,
        "mpaa_rating": "R",
        "thtr_rel_year": 2013,
        "thtr_rel_month": 4,
        "thtr_rel_day": 19,
        "imdb_rating": 5.5,
        "imdb_num_votes": 899,
        "critics_score": 45,
        "audience_score": 73,
        "best_pic_nom": "no",
        "best_pic_win": "no",
        "best_actor_win": "no",
        "best_actress_win": "no",
        "best_dir_win": "no",
        "top200_box": "no",
    }
    row.update(overrides)
    return row


class TestDerivation:
    def test_imdb_rescaled_to_percent(self):
        record = derive_record(_row(imdb_rating=5.5))
        assert record.imdb_rating == pytest.approx(55.0)

    def test_release_date_parsed(self):
        record = derive_record(_row())
        assert record.release_date == date(2013, 4, 19)
        assert record.release_year == 2013

    def test_oscar_from_any_win(self):
        assert derive_record(_row()).oscar == "no"
        assert derive_record(_row(best_dir_win="yes")).oscar == "yes"
        assert derive_record(_row(best_actress_win="Yes")).oscar == "yes"

    def test_flags_normalised(self):
        record = derive_record(_row(best_pic_nom="YES", top200_box=" no "))
        assert record.best_pic_nom == "yes"
        assert record.top200_box == "no"

    def test_unknown_flag_rejected(self):
        with pytest.raises(ValueError):
            derive_record(_row(top200_box="maybe"))

    def test_numerics_are_float(self):
        record = derive_record(_row())
        assert isinstance(record.runtime, float)
        assert isinstance(record.imdb_num_votes, float)

    def test_missing_response_becomes_nan(self):
        record = derive_record(_row(audience_score=None))
        assert np.isnan(record.audience_score)

    def test_malformed_date(self):
        with pytest.raises(ValueError, match="Malformed release date"):
            derive_record(_row(thtr_rel_month=13))
        with pytest.raises(ValueError):
            parse_release_date(_row(thtr_rel_day="x"))

    def test_imdb_out_of_range(self):
        with pytest.raises(ValueError, match="imdb_rating"):
            derive_record(_row(imdb_rating=55))

    def test_frame_drops_unused_columns(self, movie_records):
        frame = records_to_frame(movie_records)
        assert len(frame) == len(movie_records)
        assert not set(UNUSED_COLUMNS) & set(frame.columns)
        assert {"oscar", "release_year", "audience_score"} <= set(frame.columns)


class TestLoading:
    def test_load_csv(self, tmp_path, movie_csv, movie_frame):
        model = Model1FullOLS(output_root=tmp_path / "report")
        records = model.load_data(movie_csv)
        assert len(records) == len(movie_frame)
        assert max(r.imdb_rating for r in records) <= 100.0
        assert model.records_skipped["missing_values"] == 0

    def test_load_pickle(self, tmp_path, movie_frame):
        path = tmp_path / "movies.pkl"
        pd.to_pickle({"data": movie_frame.to_dict(orient="records")}, path)
        model = Model1FullOLS(output_root=tmp_path / "report")
        assert len(model.load_data(path)) == len(movie_frame)

    def test_missing_runtime_skipped(self, tmp_path, movie_frame):
        movie_frame.loc[3, "runtime"] = np.nan
        path = tmp_path / "movies.csv"
        movie_frame.to_csv(path, index=False)
        model = Model1FullOLS(output_root=tmp_path / "report")
        records = model.load_data(path)
        assert len(records) == len(movie_frame) - 1
        assert model.records_skipped["missing_values"] == 1
        assert "Movie 3" not in {r.title for r in records}

    def test_missing_column_aborts(self, tmp_path, movie_frame):
        path = tmp_path / "movies.csv"
        movie_frame.drop(columns=["genre"]).to_csv(path, index=False)
        model = Model1FullOLS(output_root=tmp_path / "report")
        with pytest.raises(ValueError, match="genre"):
            model.load_data(path)

    def test_malformed_date_aborts(self, tmp_path, movie_frame):
        movie_frame.loc[0, "thtr_rel_month"] = 13
        path = tmp_path / "movies.csv"
        movie_frame.to_csv(path, index=False)
        model = Model1FullOLS(output_root=tmp_path / "report")
        with pytest.raises(ValueError):
            model.load_data(path)

    def test_missing_file(self, tmp_path):
        model = Model1FullOLS(output_root=tmp_path / "report")
        with pytest.raises(FileNotFoundError):
            model.load_data(tmp_path / "nope.csv")


class TestFeaturePreparation:
    def test_factor_is_one_term(self, tmp_path, movie_records):
        model = Model1FullOLS(output_root=tmp_path / "report")
        X, names = model.prepare_features(movie_records)
        assert X.shape == (len(movie_records), len(names))
        # five genres -> four dummy columns against the alphabetical reference
        assert len(model.feature_terms["genre"]) == 4
        assert model.resolved_references["genre"] == "Action & Adventure"
        assert "genre[Drama]" in names
        assert model.term_kinds["oscar"] == "binary"

    def test_unseen_level_rejected(self, tmp_path, movie_records):
        model = Model1FullOLS(output_root=tmp_path / "report")
        model.prepare_features(movie_records)
        odd = replace(movie_records[0], genre="Western")
        with pytest.raises(ValueError, match="Unseen genre"):
            model.prepare_features([odd])


def test_child_models_must_supply_cv_hooks():
    assert {"_fit_core", "_predict_core", "_cv_fit", "_cv_predict"} <= BaseMovieModel.__abstractmethods__
    assert not Model1FullOLS.__abstractmethods__
