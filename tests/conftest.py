import json

import matplotlib
matplotlib.use("Agg")

import numpy as np
import pandas as pd
import pytest

from base_model import derive_record

GENRES = ["Action & Adventure", "Animation", "Comedy", "Documentary", "Drama"]
TITLE_TYPES = ["Documentary", "Feature Film", "TV Movie"]
MPAA = ["G", "PG", "PG-13", "R", "Unrated"]


def make_movies(n: int = 300, seed: int = 7) -> pd.DataFrame:
    """
    Raw movie table shaped like the Rotten Tomatoes / IMDB dataset

    audience_score depends on the rescaled IMDB rating (linear plus a
    quadratic bend) and on genre == Drama; the other predictors are noise.
    """
    rng = np.random.default_rng(seed)
    imdb = rng.uniform(3.0, 9.0, n)
    r = imdb * 10
    genre = rng.choice(GENRES, n)
    audience = 45 + 0.8 * (r - 60) + 0.02 * (r - 60) ** 2 + 8 * (genre == "Drama") + rng.normal(0, 4, n)

    def flag(p):
        return np.where(rng.uniform(size=n) < p, "yes", "no")

    return pd.DataFrame({
        "title": [f"Movie {i}" for i in range(n)],
        "title_type": rng.choice(TITLE_TYPES, n, p=[0.1, 0.8, 0.1]),
        "genre": genre,
        "runtime": np.round(rng.normal(105, 18, n)),
        "mpaa_rating": rng.choice(MPAA, n, p=[0.1, 0.2, 0.25, 0.35, 0.1]),
        "studio": "Studio",
        "thtr_rel_year": rng.integers(1975, 2015, n),
        "thtr_rel_month": rng.integers(1, 13, n),
        "thtr_rel_day": rng.integers(1, 29, n),
        "dvd_rel_year": 2015,
        "imdb_rating": np.round(imdb, 1),
        "imdb_num_votes": rng.integers(200, 500000, n),
        "critics_rating": "Fresh",
        "critics_score": np.clip(np.round(r + rng.normal(0, 15, n)), 0, 100),
        "audience_rating": "Upright",
        "audience_score": np.round(audience),
        "best_pic_nom": flag(0.06),
        "best_pic_win": flag(0.03),
        "best_actor_win": flag(0.05),
        "best_actress_win": flag(0.05),
        "best_dir_win": flag(0.04),
        "top200_box": flag(0.05),
        "director": "Someone",
        "imdb_url": "http://www.imdb.com/title/tt0000000/",
    })


@pytest.fixture
def movie_frame():
    return make_movies()


@pytest.fixture
def movie_records(movie_frame):
    return [derive_record(row) for row in movie_frame.to_dict(orient="records")]


@pytest.fixture
def movie_csv(tmp_path, movie_frame):
    path = tmp_path / "movies.csv"
    movie_frame.to_csv(path, index=False)
    return path


@pytest.fixture
def new_movie_row():
    return {
        "title": "Zootopia",
        "title_type": "Feature Film",
        "genre": "Animation",
        "runtime": 108,
        "mpaa_rating": "PG",
        "thtr_rel_year": 2016,
        "thtr_rel_month": 3,
        "thtr_rel_day": 4,
        "imdb_rating": 8.0,
        "imdb_num_votes": 302000,
        "critics_score": 98,
        "audience_score": 92,
        "best_pic_nom": "no",
        "best_pic_win": "no",
        "best_actor_win": "no",
        "best_actress_win": "no",
        "best_dir_win": "no",
        "top200_box": "yes",
    }


@pytest.fixture
def orchestrator_config(tmp_path, movie_csv, new_movie_row):
    config = {
        "scenario_name": "test",
        "random_seed": 42,
        "data_settings": {"data_file": str(movie_csv)},
        "selection_settings": {
            "significance_level": 0.05,
            "correlation_threshold": 0.9,
            "criterion": "p_value",
        },
        "polynomial_settings": {"predictor": None, "max_degree": 3},
        "models_to_run": [1, 2, 3],
        "prediction_settings": {"confidence_level": 0.95, "new_movie": new_movie_row},
        "output_settings": {"output_root": str(tmp_path / "report")},
        "pipeline_settings": {"perform_cv": True, "cv_folds": 5, "generate_plots": True},
    }
    path = tmp_path / "Orchestrator.json"
    path.write_text(json.dumps(config))
    return path
