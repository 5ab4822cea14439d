"""
Logging and metrics tracking for pruning runs

Metrics and events are appended as JSON lines to ``<log_dir>/<experiment>.jsonl``;
layer progress snapshots come from ``PruningEngine.summary()``.
"""

import logging
import json
from pathlib import Path
from typing import Dict, List, Any, Optional, Union
from datetime import datetime
import threading
from contextlib import contextmanager

import pandas as pd

logger = logging.getLogger(__name__)


class MetricsTracker:
    """Metrics tracking backed by a JSONL file"""

    def __init__(self, experiment_name: str, log_dir: str = "logs"):
        self.experiment_name = experiment_name
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)

        self.metrics: Dict[str, List[Any]] = {}
        self.timestamps: List[str] = []
        self.metadata: Dict[str, Any] = {}
        self.finished_layers: Dict[str, int] = {}

        # Only guards the file appends
        self._lock = threading.Lock()

        self.experiment_log_file = self.log_dir / f"{experiment_name}.jsonl"
        self.log_event("experiment_started", {"timestamp": datetime.now().isoformat()})

    def _append(self, entry: Dict[str, Any]) -> None:
        with open(self.experiment_log_file, 'a') as f:
            f.write(json.dumps(entry) + '\n')

    def log_metric(self, metric_name: str, value: Union[float, int, str, Dict],
                   step: Optional[int] = None, metadata: Optional[Dict] = None) -> None:
        """Log a metric value"""
        with self._lock:
            if metric_name not in self.metrics:
                self.metrics[metric_name] = []
            self.metrics[metric_name].append(value)

            if step is None:
                step = len(self.metrics[metric_name]) - 1

            timestamp = datetime.now().isoformat()
            self.timestamps.append(timestamp)

            self._append({
                "timestamp": timestamp,
                "step": step,
                "metric_name": metric_name,
                "value": value,
                "metadata": metadata or {}
            })

    def log_training_step(self, epoch: int, step: int, loss: float,
                          accuracy: Optional[float] = None) -> None:
        self.log_metric("training_step", {
            "epoch": epoch,
            "step": step,
            "loss": loss,
            "accuracy": accuracy
        }, step=step)

    def log_evaluation(self, accuracy: float, loss: Optional[float] = None,
                       dataset: str = "test", step: Optional[int] = None) -> None:
        self.log_metric(f"{dataset}_evaluation", {
            "dataset": dataset,
            "accuracy": accuracy,
            "loss": loss
        }, step=step)

    def log_layer_progress(self, summary: Dict[str, Any]) -> None:
        """Log one ``PruningEngine.summary()`` snapshot, one entry per layer.

        A ``layer_finished`` event is written the first time a layer shows up
        with ``iter_prune_finished`` set.
        """
        step = summary.get("step")
        for layer in summary.get("layers", []):
            self.log_metric("layer_progress", layer, step=step)
            finished_at = layer.get("iter_prune_finished")
            if finished_at is not None and layer["name"] not in self.finished_layers:
                self.finished_layers[layer["name"]] = finished_at
                self.log_event("layer_finished", {
                    "layer": layer["name"],
                    "step": finished_at,
                    "pruned_ratio": layer.get("pruned_ratio"),
                })
        self.log_metric("sparsity", summary.get("sparsity", 0.0), step=step)
        self.metadata["pruning_method"] = summary.get("method")
        self.metadata["pruning_unit"] = summary.get("unit")

    def log_experiment_result(self, results: Dict[str, Any]) -> None:
        """Log final experiment results"""
        self.log_metric("experiment_results", results)
        self.metadata["final_results"] = results

    def log_event(self, event_type: str, data: Dict[str, Any]) -> None:
        """Log an event such as a layer finishing or a snapshot being written"""
        with self._lock:
            self._append({
                "timestamp": datetime.now().isoformat(),
                "event_type": event_type,
                "data": data
            })

    def export_metrics(self, output_path: Optional[str] = None) -> str:
        """Export all metrics to JSON file"""
        if output_path is None:
            output_path = self.log_dir / f"{self.experiment_name}_metrics.json"

        export_data = {
            "experiment_name": self.experiment_name,
            "export_timestamp": datetime.now().isoformat(),
            "metrics": self.metrics,
            "timestamps": self.timestamps,
            "metadata": self.metadata,
            "finished_layers": self.finished_layers
        }

        with open(output_path, 'w') as f:
            json.dump(export_data, f, indent=2)

        logger.info(f"Metrics exported to {output_path}")
        return str(output_path)

    def close(self) -> None:
        """Close the metrics tracker and log experiment end"""
        self.log_event("experiment_ended", {"timestamp": datetime.now().isoformat()})
        logger.info(f"Experiment '{self.experiment_name}' completed")


class ExperimentLogger:
    """High-level experiment logging interface"""

    def __init__(self, log_dir: str = "logs"):
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self.active_trackers: Dict[str, MetricsTracker] = {}

    @contextmanager
    def experiment(self, experiment_name: str):
        """Context manager for experiment tracking"""
        tracker = MetricsTracker(experiment_name, str(self.log_dir))
        self.active_trackers[experiment_name] = tracker

        try:
            yield tracker
        finally:
            tracker.close()
            if experiment_name in self.active_trackers:
                del self.active_trackers[experiment_name]

    def get_experiment_summary(self, experiment_name: str) -> Dict[str, Any]:
        """Metrics and events read back from an experiment's JSONL file"""
        log_file = self.log_dir / f"{experiment_name}.jsonl"

        if not log_file.exists():
            return {}

        metrics = {}
        events = []

        with open(log_file, 'r') as f:
            for line in f:
                entry = json.loads(line.strip())

                if "metric_name" in entry:
                    metrics.setdefault(entry["metric_name"], []).append(entry["value"])
                elif "event_type" in entry:
                    events.append(entry)

        return {
            "experiment_name": experiment_name,
            "metrics": metrics,
            "events": events,
            "log_file": str(log_file)
        }

class LoggingConfig:
    """Configuration for logging system"""

    def __init__(self,
                 log_level: str = "INFO",
                 log_to_file: bool = True,
                 log_to_console: bool = True,
                 log_dir: str = "logs"):

        self.log_level = getattr(logging, log_level.upper())
        self.log_to_file = log_to_file
        self.log_to_console = log_to_console
        self.log_dir = log_dir

    def setup_logging(self) -> None:
        """Setup logging configuration"""
        root_logger = logging.getLogger()
        root_logger.handlers.clear()

        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )

        if self.log_to_console:
            console_handler = logging.StreamHandler()
            console_handler.setFormatter(formatter)
            root_logger.addHandler(console_handler)

        if self.log_to_file:
            log_dir = Path(self.log_dir)
            log_dir.mkdir(parents=True, exist_ok=True)

            file_handler = logging.FileHandler(log_dir / "adaptive_pruning.log")
            file_handler.setFormatter(formatter)
            root_logger.addHandler(file_handler)

        root_logger.setLevel(self.log_level)

        logger.info("Logging system initialized")


def setup_logging(config: Optional[LoggingConfig] = None) -> None:
    """Setup logging system"""
    if config is None:
        config = LoggingConfig()

    config.setup_logging()


def format_unit_table(rows: List[Dict[str, Any]]) -> str:
    """Render ``LayerPruningController.describe_units()`` output as a text table"""
    if not rows:
        return "(no units)"
    return pd.DataFrame(rows).to_string(index=False, float_format=lambda v: f"{v:.6g}")
