from dataclasses import replace

import numpy as np
import pytest

from base_model import derive_record
from model_1_full import DEFAULT_FEATURE_CONFIG, Model1FullOLS, aggregate_term_pvalues, restrict_feature_config
from model_2_backward import Model2BackwardElimination, select_term_to_remove
from model_3_polynomial import Model3Polynomial


def _run(model, records, **kwargs):
    kwargs.setdefault("perform_cv", False)
    kwargs.setdefault("generate_plots", False)
    model.run_complete_pipeline(records=records, **kwargs)
    return model


class TestTermPvalues:
    def test_factor_takes_smallest_level(self):
        column_p = {"genre[Comedy]": 0.30, "genre[Drama]": 0.01, "runtime": 0.60}
        terms = {"genre": ["genre[Comedy]", "genre[Drama]"], "runtime": ["runtime"]}
        assert aggregate_term_pvalues(column_p, terms) == {"genre": 0.01, "runtime": 0.60}

    def test_non_finite_counts_as_one(self):
        assert aggregate_term_pvalues({"x": np.nan}, {"x": ["x"]}) == {"x": 1.0}

    def test_config_restricted_to_terms(self):
        config = restrict_feature_config(DEFAULT_FEATURE_CONFIG, ["imdb_rating", "genre", "oscar"])
        assert config["numeric"] == ["imdb_rating"]
        assert list(config["categorical"]) == ["genre"]
        assert list(config["binary"]) == ["oscar"]


class TestRemovalRule:
    def test_largest_pvalue_removed(self):
        assert select_term_to_remove({"a": 0.20, "b": 0.70, "c": 0.01}, 0.05) == "b"

    def test_tie_goes_to_first(self):
        assert select_term_to_remove({"a": 0.40, "b": 0.40}, 0.05) == "a"

    def test_all_significant_stops(self):
        assert select_term_to_remove({"a": 0.049, "b": 0.001}, 0.05) is None

    def test_boundary_is_not_significant(self):
        assert select_term_to_remove({"a": 0.05}, 0.05) == "a"

    def test_empty(self):
        assert select_term_to_remove({}, 0.05) is None


class TestFullModel:
    def test_fit_and_metrics(self, tmp_path, movie_records):
        model = _run(Model1FullOLS(output_root=tmp_path), movie_records)
        assert model.metrics["n"] == len(movie_records)
        assert model.metrics["r2"] == pytest.approx(model.ols_model.rsquared)
        assert model.metrics["adj_r2"] == pytest.approx(model.ols_model.rsquared_adj)
        assert model.metrics["r2"] > 0.7
        assert set(model.term_pvalues()) == set(model.feature_terms)

    def test_coefficient_table(self, tmp_path, movie_records):
        model = _run(Model1FullOLS(output_root=tmp_path), movie_records)
        table = model.coefficient_table()
        assert len(table) == len(model.feature_names) + 1
        assert table.iloc[0]["column"] == "(Intercept)"
        assert (table["ci_lower"] < table["estimate"]).all()
        assert (table["estimate"] < table["ci_upper"]).all()

    def test_residual_diagnostics(self, tmp_path, movie_records):
        model = _run(Model1FullOLS(output_root=tmp_path), movie_records)
        diag = model.residual_diagnostics()
        assert 0 <= diag["shapiro_p"] <= 1
        assert 0 <= diag["breusch_pagan_p"] <= 1
        assert 0 < diag["durbin_watson"] < 4
        assert "imdb_rating" in diag["nonlinearity_p"]
        # the quadratic bend in the synthetic data shows up in the residuals
        assert diag["nonlinearity_p"]["imdb_rating"] < 0.05

    def test_prediction_interval_contains_confidence_interval(self, tmp_path, movie_records, new_movie_row):
        model = _run(Model1FullOLS(output_root=tmp_path), movie_records)
        result = model.predict_interval(derive_record(new_movie_row), confidence=0.95)
        assert result["pi_lower"] < result["ci_lower"] < result["fit"] < result["ci_upper"] < result["pi_upper"]
        assert result["actual"] == 92
        assert isinstance(result["actual_in_interval"], bool)

    def test_prediction_without_actual_score(self, tmp_path, movie_records, new_movie_row):
        model = _run(Model1FullOLS(output_root=tmp_path), movie_records)
        row = dict(new_movie_row)
        del row["audience_score"]
        result = model.predict_interval(derive_record(row))
        assert result["pi_lower"] < result["fit"] < result["pi_upper"]
        assert "actual" not in result
        assert "actual_in_interval" not in result

    def test_coefficient_interval_level(self, tmp_path, movie_records):
        # the table stays at 95% whatever alpha drives selection
        strict = _run(Model1FullOLS(significance_level=0.01, output_root=tmp_path), movie_records)
        default = strict.coefficient_table()
        explicit = strict.coefficient_table(confidence=0.95)
        assert np.allclose(default["ci_lower"], explicit["ci_lower"])
        ci = np.asarray(strict.ols_model.conf_int(alpha=0.05))
        assert np.allclose(default["ci_upper"], ci[:, 1])
        wider = strict.coefficient_table(confidence=0.99)
        assert (wider["ci_upper"] - wider["ci_lower"] > default["ci_upper"] - default["ci_lower"]).all()

    def test_wider_confidence_gives_wider_interval(self, tmp_path, movie_records, new_movie_row):
        model = _run(Model1FullOLS(output_root=tmp_path), movie_records)
        record = derive_record(new_movie_row)
        narrow = model.predict_interval(record, confidence=0.80)
        wide = model.predict_interval(record, confidence=0.99)
        assert wide["pi_upper"] - wide["pi_lower"] > narrow["pi_upper"] - narrow["pi_lower"]
        assert wide["fit"] == pytest.approx(narrow["fit"])

    def test_predict_before_fit(self, tmp_path, new_movie_row):
        model = Model1FullOLS(output_root=tmp_path)
        with pytest.raises(ValueError, match="not fitted"):
            model.predict_interval(derive_record(new_movie_row))

    def test_cross_validation(self, tmp_path, movie_records):
        model = _run(Model1FullOLS(output_root=tmp_path), movie_records, perform_cv=True, n_cv_folds=5)
        assert model.cv_results["n_splits"] == 5
        assert len(model.cv_results["cv_scores"]) == 5
        assert model.metrics["cv_r2_mean"] > 0.6

    def test_outputs_written(self, tmp_path, movie_records):
        model = _run(Model1FullOLS(output_root=tmp_path), movie_records, generate_plots=True)
        out = tmp_path / "models" / "model_1"
        for name in ("metrics.json", "fitted_values.csv", "coefficients.csv",
                     "model_1_coefficients.tex", "model_1_newcommands.tex",
                     "model_1_renewcommands.tex", "residual_diagnostics.json",
                     "diagnostic_plots.png", "residuals_vs_predictors.png"):
            assert (out / name).exists(), name
        renew = (out / "model_1_renewcommands.tex").read_text()
        assert "\\renewcommand{\\ModelOneRSquared}" in renew
        assert "\\renewcommand{\\ModelOneCoefImdbRating}" in renew
        assert (tmp_path / "logs" / "model_1_log.txt").exists()


class TestBackwardElimination:
    def test_survivors_are_significant(self, tmp_path, movie_records):
        model = _run(Model2BackwardElimination(output_root=tmp_path), movie_records)
        term_p = model.term_pvalues()
        assert term_p
        assert all(p < 0.05 for p in term_p.values())
        assert "imdb_rating" in model.feature_terms
        assert "genre" in model.feature_terms

    def test_steps_recorded(self, tmp_path, movie_records):
        model = _run(Model2BackwardElimination(output_root=tmp_path), movie_records)
        removed = [s["removed_term"] for s in model.elimination_steps]
        assert set(removed).isdisjoint(model.feature_terms)
        assert set(removed) | set(model.feature_terms) == set(model.candidate_terms)
        assert all(s["p_value"] >= 0.05 for s in model.elimination_steps)

    def test_factor_kept_whole(self, tmp_path, movie_records):
        model = _run(Model2BackwardElimination(output_root=tmp_path), movie_records)
        # genre survives with every level, including the non-significant ones
        assert len(model.feature_terms["genre"]) == 4

    def test_prediction_uses_reduced_design(self, tmp_path, movie_records, new_movie_row):
        model = _run(Model2BackwardElimination(output_root=tmp_path), movie_records)
        X_new, names = model.prepare_features([derive_record(new_movie_row)])
        assert names == model.feature_names
        result = model.predict_interval(derive_record(new_movie_row))
        assert result["pi_lower"] < result["fit"] < result["pi_upper"]

    def test_eliminated_terms_not_required_for_prediction(self, tmp_path, movie_records, new_movie_row):
        model = _run(Model2BackwardElimination(output_root=tmp_path), movie_records)
        assert "mpaa_rating" not in model.feature_terms
        assert "runtime" not in model.feature_terms
        # unseen rating level and missing runtime only touch eliminated terms
        record = replace(derive_record(new_movie_row), mpaa_rating="NC-17", runtime=float("nan"))
        result = model.predict_interval(record)
        assert result["pi_lower"] < result["fit"] < result["pi_upper"]
        baseline = model.predict_interval(derive_record(new_movie_row))
        assert result["fit"] == pytest.approx(baseline["fit"])
        assert list(model.feature_terms) == model.selected_terms

    def test_intercept_only_fallback(self, tmp_path, movie_records):
        # runtime alternates in pairs, the response alternates singly: zero correlation
        records = []
        for i, record in enumerate(movie_records[:40]):
            records.append(replace(record, runtime=90.0 + 10 * ((i // 2) % 2),
                                   audience_score=50.0 + 10 * (i % 2)))
        model = Model2BackwardElimination(feature_config={"numeric": ["runtime"]}, output_root=tmp_path)
        _run(model, records)
        assert model.feature_terms == {}
        assert model.X.shape == (40, 0)
        assert model.elimination_steps[0]["removed_term"] == "runtime"
        assert np.allclose(model.fitted_values, 55.0)

    def test_adj_r2_criterion(self, tmp_path, movie_records):
        full = _run(Model1FullOLS(output_root=tmp_path), movie_records)
        model = _run(Model2BackwardElimination(criterion="adj_r2", output_root=tmp_path), movie_records)
        assert model.metrics["adj_r2"] >= full.metrics["adj_r2"] - 1e-12

    def test_unknown_criterion(self, tmp_path):
        with pytest.raises(ValueError, match="criterion"):
            Model2BackwardElimination(criterion="aic", output_root=tmp_path)

    def test_elimination_outputs(self, tmp_path, movie_records):
        _run(Model2BackwardElimination(output_root=tmp_path), movie_records)
        out = tmp_path / "models" / "model_2"
        assert (out / "elimination_steps.csv").exists()
        assert "Backward elimination" in (out / "model_2_elimination.tex").read_text()


class TestPolynomial:
    def test_curvature_detected(self, tmp_path, movie_records):
        model = _run(Model3Polynomial(output_root=tmp_path), movie_records)
        assert model.polynomial["predictor"] == "imdb_rating"
        assert model.polynomial["degree"] >= 2
        assert "imdb_rating^2" in model.feature_names
        assert model.term_kinds["poly(imdb_rating)"] == "polynomial"
        centre = np.mean([r.imdb_rating for r in movie_records])
        assert model.polynomial["center"] == pytest.approx(centre)

    def test_expansion_stops_at_first_non_significant_power(self, tmp_path, movie_records):
        model = _run(Model3Polynomial(max_degree=4, output_root=tmp_path), movie_records)
        degree = model.polynomial["degree"]
        power_p = model.polynomial["power_pvalues"]
        assert all(power_p[d] < 0.05 for d in range(2, degree + 1))
        if degree < model.max_degree:
            assert power_p[degree + 1] >= 0.05
            assert max(power_p) == degree + 1
        assert model.feature_terms["poly(imdb_rating)"] == [f"imdb_rating^{d}" for d in range(2, degree + 1)]

    def test_polynomial_improves_fit(self, tmp_path, movie_records):
        eliminated = _run(Model2BackwardElimination(output_root=tmp_path), movie_records)
        poly = _run(Model3Polynomial(output_root=tmp_path), movie_records)
        assert poly.metrics["adj_r2"] > eliminated.metrics["adj_r2"]

    def test_transformation_reapplied_for_new_records(self, tmp_path, movie_records, new_movie_row):
        model = _run(Model3Polynomial(output_root=tmp_path), movie_records)
        X_again, names = model.prepare_features(movie_records)
        assert names == model.feature_names
        assert np.allclose(model.predict(X_again), model.fitted_values)

        result = model.predict_interval(derive_record(new_movie_row))
        assert result["pi_lower"] < result["ci_lower"] < result["fit"] < result["ci_upper"] < result["pi_upper"]

    def test_configured_predictor_not_surviving(self, tmp_path, movie_records):
        model = _run(Model3Polynomial(predictor="not_a_term", output_root=tmp_path), movie_records)
        assert model.polynomial["degree"] == 1
        assert not any(kind == "polynomial" for kind in model.term_kinds.values())

    def test_max_degree_validated(self, tmp_path):
        with pytest.raises(ValueError, match="max_degree"):
            Model3Polynomial(max_degree=1, output_root=tmp_path)
