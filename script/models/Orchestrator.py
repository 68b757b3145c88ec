"""
orchestrator.py
===============
Master orchestrator for the movie audience-score report.

Reads the run settings from a JSON file, profiles the data, prunes redundant
candidates, then fits the full, backward-eliminated and polynomial OLS models
on the same records. Afterwards it writes the comparison table and the interval
prediction for the configured new movie. The first failing stage ends the run
with exit status 1.

Usage:
    python Orchestrator.py                              # Uses Orchestrator.json
    python Orchestrator.py --config MyConfig.json       # Uses custom config
"""

import sys
import json
import argparse
import traceback
from pathlib import Path
from typing import Dict, List, Any, Optional
from datetime import datetime
import pandas as pd
import logging

from base_model import MovieRecord, derive_record, latex_escape
from ExploratoryAnalysis import ExploratoryAnalysis
from FeatureSelection import run_correlation_analysis
from model_1_full import Model1FullOLS
from model_2_backward import Model2BackwardElimination
from model_3_polynomial import Model3Polynomial

# ============================================================================
# FEATURE CONFIGURATION (candidates before correlation pruning)
# ============================================================================
# Binary terms use lambda functions and cannot be in JSON

FEATURE_CONFIG_CANDIDATES = {
    'numeric': [
        'runtime',          # Minutes
        'imdb_rating',      # Rescaled to 0-100
        'imdb_num_votes',
        'critics_score',    # Rotten Tomatoes critics score
        'release_year'      # From the theatrical release date
    ],
    'categorical': {
        'title_type': {'reference': None},
        'genre': {'reference': None},
        'mpaa_rating': {'reference': None}
    },
    'binary': {
        'best_pic_nom': lambda r: r.best_pic_nom == 'yes',
        # Any of best picture / actor / actress / director won
        'oscar': lambda r: r.oscar == 'yes',
        'top200_box': lambda r: r.top200_box == 'yes'
    }
}

# Model class registry
MODEL_CLASSES = {
    1: Model1FullOLS,
    2: Model2BackwardElimination,
    3: Model3Polynomial
}

REQUIRED_SECTIONS = ['scenario_name', 'data_settings', 'selection_settings', 'prediction_settings']

# Default configuration ships next to this module
DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent / "Orchestrator.json"


def build_feature_config(kept: List[str]) -> Dict[str, Any]:
    """Candidate configuration restricted to the predictors that survived pruning"""
    return {
        'numeric': [n for n in FEATURE_CONFIG_CANDIDATES['numeric'] if n in kept],
        'categorical': {k: v for k, v in FEATURE_CONFIG_CANDIDATES['categorical'].items() if k in kept},
        'binary': {k: v for k, v in FEATURE_CONFIG_CANDIDATES['binary'].items() if k in kept},
    }


# ============================================================================
# ORCHESTRATOR CLASS
# ============================================================================

class ModelOrchestrator:
    """
    Master orchestrator for the audience-score report
    """

    def __init__(self, config_path: str = str(DEFAULT_CONFIG_PATH)):
        """
        Initialize orchestrator

        Args:
            config_path: Path to JSON configuration file
        """
        self.config_path = Path(config_path)
        self.config = self.load_configuration()
        self.results: Dict[int, Dict[str, Any]] = {}
        self.models: Dict[int, Any] = {}
        self.records: List[MovieRecord] = []
        self.feature_config: Dict[str, Any] = FEATURE_CONFIG_CANDIDATES
        self.dropped_predictors: List[str] = []
        self.prediction: Dict[str, Any] = {}

        output_settings = self.config.get('output_settings', {})
        self.output_root = self._resolve(output_settings.get('output_root', '../../report'))

        # Setup logging
        self.setup_logging()

        # Create output directories
        self.setup_output_dirs()

    def _resolve(self, path: str) -> Path:
        """Relative paths in the config are relative to the config file"""
        p = Path(path)
        if not p.is_absolute():
            p = self.config_path.resolve().parent / p
        return p.resolve()

    def load_configuration(self) -> Dict:
        """Load and validate JSON configuration"""
        if not self.config_path.exists():
            raise FileNotFoundError(
                f"Configuration file not found: {self.config_path}\n"
                f"Please create Orchestrator.json or specify --config"
            )

        with open(self.config_path, 'r') as f:
            config = json.load(f)

        # Validate required fields
        for section in REQUIRED_SECTIONS:
            if section not in config:
                raise ValueError(f"Missing required field in config: {section}")
        if 'data_file' not in config['data_settings']:
            raise ValueError("Missing required field in config: data_settings.data_file")
        if 'new_movie' not in config['prediction_settings']:
            raise ValueError("Missing required field in config: prediction_settings.new_movie")

        return config

    def setup_logging(self):
        """Setup logging system"""
        log_dir = self.output_root / 'logs'
        log_dir.mkdir(parents=True, exist_ok=True)

        # Build log filename with optional suffix from config
        log_suffix = self.config.get('log_suffix', None)
        if log_suffix:
            log_file = log_dir / f'Orchestrator_log_{log_suffix}.txt'
        else:
            log_file = log_dir / 'Orchestrator_log.txt'

        # Configure logging
        logging.basicConfig(
            level=logging.INFO,
            format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S',
            handlers=[
                logging.FileHandler(log_file),
                logging.StreamHandler(sys.stdout)
            ]
        )

        self.logger = logging.getLogger('Orchestrator')

        self.logger.info("=" * 80)
        self.logger.info("MOVIE AUDIENCE-SCORE ORCHESTRATOR")
        self.logger.info("=" * 80)
        self.logger.info(f"Configuration: {self.config_path}")
        self.logger.info(f"Scenario: {self.config['scenario_name']}")
        self.logger.info(f"Log file: {log_file}")

    def setup_output_dirs(self):
        """Create output directory structure"""
        self.output_dir = self.output_root / 'models' / 'comparison'
        self.output_dir.mkdir(parents=True, exist_ok=True)
        self.logger.info(f"Output directory: {self.output_dir}")

    def _run_stage(self, name: str, func, *args, **kwargs):
        """Run one stage; any failure is logged and re-raised to stop the run"""
        self.logger.info("")
        self.logger.info("=" * 80)
        self.logger.info(f"STAGE: {name.upper()}")
        self.logger.info("=" * 80)
        try:
            return func(*args, **kwargs)
        except Exception as e:
            self.logger.error(f"FATAL ERROR in stage '{name}': {str(e)}")
            self.logger.error(traceback.format_exc())
            raise RuntimeError(
                f"Stage '{name}' failed. Stopping orchestrator.\n"
                f"Error: {str(e)}\n"
                f"See log file for details."
            ) from e

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _model_params(self, model_id: int) -> Dict[str, Any]:
        selection = self.config['selection_settings']
        params = {
            'significance_level': selection.get('significance_level', 0.05),
            'random_seed': self.config.get('random_seed', 42),
            'output_root': self.output_root,
            'log_suffix': self.config.get('log_suffix', None),
        }
        if model_id >= 2:
            params['criterion'] = selection.get('criterion', 'p_value')
        if model_id >= 3:
            poly = self.config.get('polynomial_settings', {})
            params['predictor'] = poly.get('predictor', None)
            params['max_degree'] = poly.get('max_degree', 3)
        return params

    def load_records(self) -> List[MovieRecord]:
        data_file = self._resolve(self.config['data_settings']['data_file'])
        self.logger.info(f"Data file: {data_file}")

        # Model 1 owns the loader; its log records the load summary
        loader = MODEL_CLASSES[1](**self._model_params(1))
        self.models[1] = loader
        self.records = loader.load_data(data_file)
        self.logger.info(f"Loaded {len(self.records):,} movies "
                         f"(skipped {loader.records_skipped.get('missing_values', 0)} with missing values)")
        return self.records

    def run_exploratory_analysis(self):
        generate_plots = self.config.get('pipeline_settings', {}).get('generate_plots', True)
        eda = ExploratoryAnalysis(self.records, self.output_root, logger=self.logger)
        return eda.run_all(generate_plots=generate_plots)

    def run_correlation_pruning(self):
        selection = self.config['selection_settings']
        generate_plots = self.config.get('pipeline_settings', {}).get('generate_plots', True)
        result = run_correlation_analysis(
            self.records,
            self.output_root,
            threshold=selection.get('correlation_threshold', 0.8),
            generate_plots=generate_plots,
            logger=self.logger
        )
        self.dropped_predictors = result['dropped']
        self.feature_config = build_feature_config(result['kept'])
        self.logger.info(f"Candidate terms for modelling: "
                         f"{len(self.feature_config['numeric']) + len(self.feature_config['categorical']) + len(self.feature_config['binary'])}")
        return result

    def run_single_model(self, model_id: int) -> Dict[str, Any]:
        """
        Run a single model on the shared records

        Args:
            model_id: Model number (1-3)

        Returns:
            Dictionary with model results
        """
        ModelClass = MODEL_CLASSES[model_id]
        model = self.models.get(model_id)
        if model is None:
            self.logger.info(f"Initializing {ModelClass.__name__}...")
            model = ModelClass(**self._model_params(model_id))
            self.models[model_id] = model

        model.feature_config = self.feature_config
        pipeline_settings = self.config.get('pipeline_settings', {})

        model.run_complete_pipeline(
            records=self.records,
            perform_cv=pipeline_settings.get('perform_cv', True),
            n_cv_folds=pipeline_settings.get('cv_folds', 10),
            generate_plots=pipeline_settings.get('generate_plots', True)
        )

        # Extract key metrics
        model_results = {
            'model_id': model_id,
            'model_name': model.model_name,
            'n': model.metrics.get('n'),
            'n_terms': len(model.feature_terms),
            'n_columns': len(model.feature_names),
            'terms': list(model.feature_terms),
            'r2': model.metrics.get('r2'),
            'adj_r2': model.metrics.get('adj_r2'),
            'rmse': model.metrics.get('rmse'),
            'sigma': model.metrics.get('sigma'),
            'aic': model.metrics.get('aic'),
            'bic': model.metrics.get('bic'),
            'cv_r2_mean': model.metrics.get('cv_r2_mean'),
            'cv_r2_std': model.metrics.get('cv_r2_std'),
        }

        self.logger.info(f"+ Model {model_id} completed successfully")
        self.logger.info(f"  Adjusted R^2: {model_results['adj_r2']:.4f}")
        self.logger.info(f"  Terms: {model_results['n_terms']} ({model_results['n_columns']} columns)")
        return model_results

    def run_all_models(self):
        """Run all models sequentially"""
        models_to_run = self.config.get('models_to_run', sorted(MODEL_CLASSES))
        self.logger.info(f"Models: {models_to_run}")

        for i, model_id in enumerate(models_to_run, 1):
            if model_id not in MODEL_CLASSES:
                raise ValueError(f"Unknown model id {model_id}; available: {sorted(MODEL_CLASSES)}")
            self.logger.info(f"[{i}/{len(models_to_run)}] Starting Model {model_id}...")
            self.results[model_id] = self._run_stage(f"model {model_id}", self.run_single_model, model_id)

    def generate_comparison_report(self):
        """Generate comparison CSV and summary JSON"""
        comparison_data = []
        for model_id in sorted(self.results):
            result = self.results[model_id]
            comparison_data.append({
                'Model_ID': result['model_id'],
                'Model_Name': result['model_name'],
                'N_Terms': result['n_terms'],
                'N_Columns': result['n_columns'],
                'R2': result['r2'],
                'Adj_R2': result['adj_r2'],
                'RMSE': result['rmse'],
                'Sigma': result['sigma'],
                'AIC': result['aic'],
                'BIC': result['bic'],
                'CV_R2_Mean': result['cv_r2_mean'],
                'CV_R2_Std': result['cv_r2_std'],
            })

        df = pd.DataFrame(comparison_data)
        comparison_file = self.output_dir / 'model_comparison.csv'
        df.to_csv(comparison_file, index=False)
        self.logger.info(f"+ Saved comparison table: {comparison_file}")

        best = df.sort_values('Adj_R2', ascending=False).iloc[0]
        summary = {
            'timestamp': datetime.now().isoformat(),
            'scenario': self.config['scenario_name'],
            'description': self.config.get('description', ''),
            'configuration': self.config_path.name,
            'n_records': len(self.records),
            'dropped_by_correlation': self.dropped_predictors,
            'best_model': {
                'id': int(best['Model_ID']),
                'name': best['Model_Name'],
                'adj_r2': float(best['Adj_R2']),
            },
            'all_results': {int(k): v for k, v in self.results.items()}
        }
        with open(self.output_dir / 'comparison_summary.json', 'w') as f:
            json.dump(summary, f, indent=2, default=str)

        pd.set_option('display.max_columns', None)
        pd.set_option('display.width', None)
        pd.set_option('display.float_format', '{:.4f}'.format)

        self.logger.info("")
        self.logger.info("=" * 80)
        self.logger.info("MODEL COMPARISON")
        self.logger.info("=" * 80)
        self.logger.info(df.to_string(index=False))
        return df

    def predict_new_movie(self) -> Dict[str, Any]:
        settings = self.config['prediction_settings']
        model_id = settings.get('model_id', max(self.models))
        if model_id not in self.models or self.models[model_id].ols_model is None:
            raise ValueError(f"Model {model_id} has not been fitted; cannot predict")
        model = self.models[model_id]

        record = derive_record(settings['new_movie'])
        confidence = settings.get('confidence_level', 0.95)
        result = model.predict_interval(record, confidence=confidence)
        result['model_id'] = model_id
        result['model_name'] = model.model_name

        self.logger.info(f"Prediction for '{record.title}' with Model {model_id}:")
        self.logger.info(f"  Point estimate: {result['fit']:.1f}")
        self.logger.info(f"  {confidence:.0%} prediction interval: {result['pi_lower']:.1f} to {result['pi_upper']:.1f}")
        self.logger.info(f"  {confidence:.0%} confidence interval (mean): {result['ci_lower']:.1f} to {result['ci_upper']:.1f}")
        if 'actual' in result:
            verdict = "inside" if result['actual_in_interval'] else "outside"
            self.logger.info(f"  Actual audience score {result['actual']:.0f} falls {verdict} the prediction interval")

        with open(self.output_dir / 'prediction.json', 'w') as f:
            json.dump(result, f, indent=2, default=str)
        self._write_prediction_commands(result)

        self.prediction = result
        return result

    def _write_prediction_commands(self, result: Dict[str, Any]):
        path = self.output_dir / 'PredictionCommands.tex'
        with open(path, 'w', encoding='utf-8') as f:
            f.write("% New-movie prediction LaTeX Commands\n")
            f.write(f"% Generated: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}\n\n")
            f.write(f"\\newcommand{{\\PredTitle}}{{{latex_escape(result['title'])}}}\n")
            f.write(f"\\newcommand{{\\PredModel}}{{{result['model_id']}}}\n")
            f.write(f"\\newcommand{{\\PredConfidence}}{{{result['confidence'] * 100:.0f}\\%}}\n")
            f.write(f"\\newcommand{{\\PredFit}}{{{result['fit']:.1f}}}\n")
            f.write(f"\\newcommand{{\\PredLower}}{{{result['pi_lower']:.1f}}}\n")
            f.write(f"\\newcommand{{\\PredUpper}}{{{result['pi_upper']:.1f}}}\n")
            f.write(f"\\newcommand{{\\PredCILower}}{{{result['ci_lower']:.1f}}}\n")
            f.write(f"\\newcommand{{\\PredCIUpper}}{{{result['ci_upper']:.1f}}}\n")
            if 'actual' in result:
                f.write(f"\\newcommand{{\\PredActual}}{{{result['actual']:.0f}}}\n")
                f.write(f"\\newcommand{{\\PredInInterval}}{{{'yes' if result['actual_in_interval'] else 'no'}}}\n")
        self.logger.info(f"+ Saved prediction commands: {path}")

    def run(self):
        """Run complete orchestration pipeline"""
        try:
            start_time = datetime.now()

            self._run_stage("load data", self.load_records)
            self._run_stage("exploratory analysis", self.run_exploratory_analysis)
            self._run_stage("correlation pruning", self.run_correlation_pruning)
            self.run_all_models()
            self._run_stage("comparison report", self.generate_comparison_report)
            self._run_stage("prediction", self.predict_new_movie)

            duration = datetime.now() - start_time
            self.logger.info("")
            self.logger.info("=" * 80)
            self.logger.info("ORCHESTRATION COMPLETE")
            self.logger.info("=" * 80)
            self.logger.info(f"Total time: {duration}")
            self.logger.info(f"Models run: {len(self.results)}")
            self.logger.info(f"Output directory: {self.output_dir}")
            self.logger.info("=" * 80)

            return 0  # Success

        except Exception as e:
            self.logger.error("")
            self.logger.error("=" * 80)
            self.logger.error("ORCHESTRATION FAILED")
            self.logger.error("=" * 80)
            self.logger.error(str(e))
            self.logger.error("=" * 80)

            return 1  # Failure

# ============================================================================
# MAIN EXECUTION
# ============================================================================

def main(argv: Optional[List[str]] = None):
    """Main entry point"""
    parser = argparse.ArgumentParser(
        description='Movie Audience-Score Orchestrator',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
    Examples:
    python Orchestrator.py                              # Use Orchestrator.json
    python Orchestrator.py --config MyConfig.json       # Use custom configuration
            """
    )

    parser.add_argument(
        '--config',
        type=str,
        default=str(DEFAULT_CONFIG_PATH),
        help='Path to JSON configuration file (default: Orchestrator.json next to this script)'
    )

    args = parser.parse_args(argv)

    print("=" * 80)
    print("MOVIE AUDIENCE-SCORE ORCHESTRATOR")
    print("=" * 80)
    print()

    try:
        orchestrator = ModelOrchestrator(config_path=args.config)
        exit_code = orchestrator.run()

        sys.exit(exit_code)

    except FileNotFoundError as e:
        print(f"ERROR: {e}")
        print()
        print("Please create a configuration file or specify --config")
        sys.exit(1)

    except ValueError as e:
        print(f"CONFIGURATION ERROR: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
