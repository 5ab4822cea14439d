"""
Unit tests for metrics logging and pruning plots
"""

import pytest
import torch
import torch.nn as nn
from pathlib import Path
import tempfile
import shutil
import json

import matplotlib
matplotlib.use("Agg")

# Import our modules
import sys
sys.path.append(str(Path(__file__).parent.parent / "src"))

from adaptive_pruning.config import LayerPruneConfig, PruneConfig
from adaptive_pruning.engine import PruningEngine
from adaptive_pruning.telemetry import ExperimentLogger, MetricsTracker, format_unit_table
from adaptive_pruning.visualization import PruningVisualizer


class TestMetricsTracker:
    """Test cases for MetricsTracker"""

    def setup_method(self):
        """Setup for each test method"""
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        """Cleanup after each test method"""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_metrics_are_appended_as_json_lines(self):
        """Test every metric and event becomes one JSON line"""
        tracker = MetricsTracker("run", self.temp_dir)
        tracker.log_metric("loss", 0.5, step=3)
        tracker.log_metric("loss", 0.4, step=4)
        tracker.log_metric("accuracy", 91.0, step=4)
        tracker.close()

        with open(Path(self.temp_dir) / "run.jsonl") as f:
            entries = [json.loads(line) for line in f]

        assert entries[0]["event_type"] == "experiment_started"
        assert entries[-1]["event_type"] == "experiment_ended"
        assert [e["value"] for e in entries if e.get("metric_name") == "loss"] == [0.5, 0.4]
        assert tracker.metrics["loss"] == [0.5, 0.4]
        assert [e["step"] for e in entries if "metric_name" in e] == [3, 4, 4]

    def test_log_layer_progress(self):
        """Test a summary is logged once per layer plus the overall sparsity"""
        tracker = MetricsTracker("progress", self.temp_dir)
        summary = {
            "method": "FP", "unit": "Row", "step": 7, "sparsity": 0.25,
            "layers": [{"name": "fc1", "pruned_ratio": 0.5}, {"name": "fc2", "pruned_ratio": 0.0}],
        }
        tracker.log_layer_progress(summary)

        assert [layer["name"] for layer in tracker.metrics["layer_progress"]] == ["fc1", "fc2"]
        assert tracker.metrics["sparsity"] == [0.25]
        assert tracker.metadata["pruning_method"] == "FP"

    def test_layer_finished_event_written_once(self):
        """Test a layer finishing is reported once even though every snapshot repeats it"""
        tracker = MetricsTracker("finish", self.temp_dir)
        running = {"step": 2, "layers": [{"name": "fc1", "pruned_ratio": 0.25, "iter_prune_finished": None}]}
        done = {"step": 4, "layers": [{"name": "fc1", "pruned_ratio": 0.5, "iter_prune_finished": 4}]}
        for summary in (running, done, done):
            tracker.log_layer_progress(summary)
        tracker.close()

        with open(Path(self.temp_dir) / "finish.jsonl") as f:
            events = [json.loads(line) for line in f if "event_type" in line]
        finished = [e["data"] for e in events if e["event_type"] == "layer_finished"]

        assert finished == [{"layer": "fc1", "step": 4, "pruned_ratio": 0.5}]
        assert tracker.finished_layers == {"fc1": 4}

    def test_export_metrics(self):
        """Test metrics export to a JSON file"""
        tracker = MetricsTracker("export", self.temp_dir)
        tracker.log_evaluation(97.5, loss=0.1, step=10)
        tracker.log_experiment_result({"final_accuracy": 97.5})

        path = tracker.export_metrics()
        with open(path) as f:
            exported = json.load(f)

        assert exported["experiment_name"] == "export"
        assert exported["metrics"]["test_evaluation"][0]["accuracy"] == 97.5
        assert exported["metadata"]["final_results"]["final_accuracy"] == 97.5


class TestExperimentLogger:
    """Test cases for ExperimentLogger"""

    def setup_method(self):
        """Setup for each test method"""
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        """Cleanup after each test method"""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_experiment_context(self):
        """Test the tracker is active inside the context and summarized afterwards"""
        experiment_logger = ExperimentLogger(self.temp_dir)
        with experiment_logger.experiment("ctx") as tracker:
            assert "ctx" in experiment_logger.active_trackers
            tracker.log_event("layer_finished", {"layer": "fc1", "step": 4})
            tracker.log_metric("sparsity", 0.1)

        assert experiment_logger.active_trackers == {}
        summary = experiment_logger.get_experiment_summary("ctx")
        assert summary["metrics"]["sparsity"] == [0.1]
        assert [e["event_type"] for e in summary["events"]] == [
            "experiment_started", "layer_finished", "experiment_ended"]

    def test_missing_experiment(self):
        """Test an unknown experiment has an empty summary"""
        assert ExperimentLogger(self.temp_dir).get_experiment_summary("nope") == {}


class TestFormatUnitTable:
    """Test cases for the per-unit diagnostics table"""

    def test_table(self):
        """Test rows are rendered as aligned columns"""
        text = format_unit_table([
            {"unit": "c1", "value": 0.5, "mask": 1, "history_prob": 1.0},
            {"unit": "c2", "value": 0.125, "mask": 0, "history_prob": 0.0},
        ])
        lines = text.splitlines()
        assert len(lines) == 3
        assert lines[0].split() == ["unit", "value", "mask", "history_prob"]
        assert lines[2].split()[0] == "c2"

    def test_empty(self):
        """Test an empty table"""
        assert format_unit_table([]) == "(no units)"

    def test_describe_units_feed_the_table(self):
        """Test controller diagnostics render without error"""
        engine = PruningEngine(nn.Sequential(nn.Linear(6, 4)), PruneConfig(method="PP", unit="Col", aa=0.1))
        rows = engine.controllers[0].describe_units("f", show_num=3)
        assert [row["unit"] for row in rows] == ["c1", "c2", "c3"]
        assert "history_prob" in format_unit_table(rows)


class TestPruningVisualizer:
    """Test cases for PruningVisualizer"""

    def setup_method(self):
        """Setup for each test method"""
        self.temp_dir = tempfile.mkdtemp()
        torch.manual_seed(0)
        self.model = nn.Sequential(nn.Linear(8, 8), nn.ReLU(), nn.Linear(8, 4))
        config = PruneConfig(method="FP", unit="Row", prune_interval=1,
                             layers={"0": LayerPruneConfig(prune_ratio=0.25)})
        self.engine = PruningEngine(self.model, config)
        for _ in range(3):
            self.engine.begin_step()
            self.engine.before_forward()
            self.engine.after_backward()
            self.engine.after_update()
        self.visualizer = PruningVisualizer(self.temp_dir)

    def teardown_method(self):
        """Cleanup after each test method"""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_plot_pruned_ratio_history(self):
        """Test the ratio history plot is saved"""
        path = Path(self.temp_dir) / "ratios.png"
        self.visualizer.plot_pruned_ratio_history(self.engine.state, save_path=str(path))
        assert path.exists()

    def test_plot_mask_and_units(self):
        """Test mask and per-unit plots are saved"""
        record = self.engine.controllers[0].record
        mask_path = Path(self.temp_dir) / "mask.png"
        units_path = Path(self.temp_dir) / "units.png"

        self.visualizer.plot_mask(record, save_path=str(mask_path))
        self.visualizer.plot_unit_history(record, method="Reg-rank", save_path=str(units_path))

        assert mask_path.exists()
        assert units_path.exists()

    def test_plot_layer_summary(self):
        """Test the summary plot returns its table"""
        path = Path(self.temp_dir) / "summary.png"
        df = self.visualizer.plot_layer_summary(self.engine.summary(), save_path=str(path))

        assert path.exists()
        assert list(df["name"]) == ["0", "2"]
        assert df.loc[0, "num_pruned_row"] == 2

    def test_empty_summary(self):
        """Test nothing is plotted without layers"""
        assert self.visualizer.plot_layer_summary({"layers": []}) is None

    def test_generate_report(self):
        """Test the report writes every plot for the run"""
        paths = self.visualizer.generate_report(self.engine.state, self.engine.summary())

        names = sorted(path.name for path in paths)
        assert names == ["layer_summary.png", "mask_0.png", "mask_2.png", "pruned_ratio_history.png"]
        for path in paths:
            assert path.exists()
