"""
Training loop with dynamic pruning

``PruningTrainer`` trains a reference model with ``PruningSGD`` while a
``PruningEngine`` prunes it, logging progress to a JSONL ``MetricsTracker``.
"""

import argparse
import json
from dataclasses import asdict
from pathlib import Path
from typing import Dict, Tuple, Optional, Any
import logging

import torch
import torch.nn as nn
from torch.utils.data import DataLoader, TensorDataset
from torchvision import datasets, transforms

from .config import ConfigManager, ExperimentConfig
from .engine import PruningEngine
from .models import build_model
from .telemetry import ExperimentLogger, LoggingConfig, MetricsTracker, setup_logging
from .visualization import PruningVisualizer

logger = logging.getLogger(__name__)


class PruningTrainer:
    """Trains one model under one pruning configuration"""

    def __init__(self, config: ExperimentConfig):
        self.config = config
        self.device = self._get_device()
        torch.manual_seed(config.seed)

        self.model: Optional[nn.Module] = None
        self.engine: Optional[PruningEngine] = None
        self.optimizer: Optional[torch.optim.Optimizer] = None
        self.tracker: Optional[MetricsTracker] = None

    def _get_device(self) -> torch.device:
        """Determine the best available device"""
        if self.config.device == "auto":
            if torch.cuda.is_available():
                return torch.device("cuda")
            elif hasattr(torch.backends, 'mps') and torch.backends.mps.is_available():
                return torch.device("mps")
            else:
                return torch.device("cpu")
        else:
            return torch.device(self.config.device)

    def load_data(self) -> Tuple[DataLoader, DataLoader]:
        """MNIST through torchvision, or random tensors with a learnable labelling"""
        data_cfg = self.config.data
        train_cfg = self.config.training

        if data_cfg.dataset == "mnist":
            steps = [transforms.ToTensor()]
            if data_cfg.normalize:
                steps.append(transforms.Normalize((0.1307,), (0.3081,)))  # MNIST normalization
            transform = transforms.Compose(steps)

            train_data = datasets.MNIST(data_cfg.data_dir, train=True, download=True, transform=transform)
            test_data = datasets.MNIST(data_cfg.data_dir, train=False, download=True, transform=transform)
            num_workers = data_cfg.num_workers
        elif data_cfg.dataset == "synthetic":
            generator = torch.Generator().manual_seed(self.config.seed)
            num_classes = self.config.model.output_size
            projection = torch.randn(28 * 28, num_classes, generator=generator)

            def make(n: int) -> TensorDataset:
                images = torch.randn(n, 1, 28, 28, generator=generator)
                labels = (images.view(n, -1) @ projection).argmax(dim=1)
                return TensorDataset(images, labels)

            train_data = make(data_cfg.synthetic_samples)
            test_data = make(max(data_cfg.synthetic_samples // 4, 1))
            num_workers = 0
        else:
            raise ValueError(f"Unknown dataset: {data_cfg.dataset}")

        train_loader = DataLoader(
            train_data, batch_size=train_cfg.batch_size, shuffle=True, num_workers=num_workers
        )
        test_loader = DataLoader(
            test_data, batch_size=train_cfg.test_batch_size, shuffle=False, num_workers=num_workers
        )

        logger.info(f"Loaded {data_cfg.dataset} dataset: {len(train_data)} train, {len(test_data)} test samples")
        return train_loader, test_loader

    def build(self) -> None:
        """Model, pruning engine and optimizer; the model is on its device before registration"""
        self.model = build_model(self.config.model).to(self.device)
        prune_cfg = self.config.pruning
        generator = torch.Generator()
        generator.manual_seed(prune_cfg.seed if prune_cfg.seed is not None else self.config.seed)
        self.engine = PruningEngine(self.model, prune_cfg, generator=generator)
        self.optimizer = self.engine.build_optimizer(self.config.solver)

        if prune_cfg.snapshot_dir and prune_cfg.is_active:
            self.engine.restore_masks(prune_cfg.snapshot_dir)

    def _reached_max_steps(self) -> bool:
        max_steps = self.config.training.max_steps
        return max_steps is not None and self.engine.state.step >= max_steps

    def train_epoch(self, train_loader: DataLoader, criterion: nn.Module, epoch: int = 0) -> Tuple[float, float]:
        """Train for one epoch; ``iter_size`` batches are accumulated into every step"""
        model, engine, optimizer = self.model, self.engine, self.optimizer
        iter_size = self.config.pruning.iter_size
        log_interval = self.config.training.log_interval
        model.train()
        total_loss = 0.0
        correct = 0
        total = 0
        batches = 0

        for batch_idx, (data, target) in enumerate(train_loader):
            data, target = data.to(self.device), target.to(self.device)

            if batch_idx % iter_size == 0:
                if self._reached_max_steps():
                    break
                engine.begin_step()
                optimizer.zero_grad()

            engine.before_forward()
            output = model(data)
            loss = criterion(output, target)
            loss.backward()
            engine.after_backward()

            total_loss += loss.item()
            pred = output.argmax(dim=1, keepdim=True)
            correct += pred.eq(target.view_as(pred)).sum().item()
            total += target.size(0)
            batches += 1

            if (batch_idx + 1) % iter_size == 0:
                optimizer.step()
                engine.after_update()

                step = engine.state.step
                if log_interval and step % log_interval == 0:
                    logger.info(f"Epoch {epoch + 1} step {step} - loss {loss.item():.4f}, "
                                f"sparsity {engine.summary()['sparsity']:.2%}")
                    if self.tracker is not None:
                        self.tracker.log_training_step(epoch, step, loss.item())
                        self.tracker.log_layer_progress(engine.summary())

        avg_loss = total_loss / max(batches, 1)
        accuracy = 100. * correct / max(total, 1)
        return avg_loss, accuracy

    def evaluate(self, test_loader: DataLoader, criterion: Optional[nn.Module] = None) -> Tuple[float, float]:
        """Accuracy (%) and mean loss on a held-out set"""
        model = self.model
        criterion = criterion or nn.CrossEntropyLoss()
        model.eval()
        correct = 0
        total = 0
        total_loss = 0.0
        batches = 0

        with torch.no_grad():
            for data, target in test_loader:
                data, target = data.to(self.device), target.to(self.device)
                output = model(data)
                total_loss += criterion(output, target).item()
                pred = output.argmax(dim=1, keepdim=True)
                correct += pred.eq(target.view_as(pred)).sum().item()
                total += target.size(0)
                batches += 1

        accuracy = 100. * correct / max(total, 1)
        return accuracy, total_loss / max(batches, 1)

    def run(self, tracker: Optional[MetricsTracker] = None, visualize: bool = False) -> Dict[str, Any]:
        """Train for ``epochs`` epochs (or ``max_steps`` steps) while pruning"""
        self.tracker = tracker
        train_loader, test_loader = self.load_data()
        self.build()
        criterion = nn.CrossEntropyLoss()

        initial_size = self.model.get_model_size()
        logger.info(f"Training on {self.device} with method={self.config.pruning.method} "
                    f"unit={self.config.pruning.unit}, {initial_size['total_parameters']:,} parameters")
        if tracker is not None:
            tracker.log_metric("experiment_config", asdict(self.config))

        history = {'train_loss': [], 'train_accuracy': [], 'test_accuracy': [], 'sparsity': []}
        for epoch in range(self.config.training.epochs):
            if self._reached_max_steps():
                break
            train_loss, train_acc = self.train_epoch(train_loader, criterion, epoch)
            test_acc, test_loss = self.evaluate(test_loader, criterion)
            summary = self.engine.summary()

            history['train_loss'].append(train_loss)
            history['train_accuracy'].append(train_acc)
            history['test_accuracy'].append(test_acc)
            history['sparsity'].append(summary['sparsity'])
            if tracker is not None:
                tracker.log_evaluation(test_acc, test_loss, step=self.engine.state.step)
                tracker.log_layer_progress(summary)

            logger.info(f"Epoch {epoch + 1}/{self.config.training.epochs} - "
                        f"Train Loss: {train_loss:.4f}, Train Acc: {train_acc:.2f}%, "
                        f"Test Acc: {test_acc:.2f}%, Sparsity: {summary['sparsity']:.2%}")

        summary = self.engine.summary()
        results = {
            'final_accuracy': history['test_accuracy'][-1] if history['test_accuracy'] else None,
            'steps': self.engine.state.step,
            'all_layers_finished': self.engine.state.all_layers_finished,
            'initial_model_size': initial_size,
            'pruned_model_size': self.model.get_model_size(),
            'pruning': summary,
            'history': history,
            'config': asdict(self.config),
        }

        prune_cfg = self.config.pruning
        if prune_cfg.snapshot_dir and prune_cfg.is_probabilistic:
            results['prob_snapshots'] = self.engine.snapshot_probs(prune_cfg.snapshot_dir)
            if tracker is not None:
                tracker.log_event("prob_snapshot", {"files": results['prob_snapshots']})

        if visualize:
            visualizer = PruningVisualizer(str(Path(self.config.save_dir) / "visualizations"))
            results['plots'] = [str(p) for p in visualizer.generate_report(self.engine.state, summary)]

        if tracker is not None:
            tracker.log_experiment_result({k: results[k] for k in ('final_accuracy', 'steps', 'all_layers_finished')})

        logger.info(f"Run completed: {summary['sparsity']:.2%} of prunable weights are zero, "
                    f"all layers finished = {summary['all_layers_finished']}")
        self.engine.detach()
        return results


def main(argv=None):
    """Run one pruning experiment from a YAML config (defaults when none is given)"""
    parser = argparse.ArgumentParser(description="Train a model while pruning it")
    parser.add_argument("config", nargs="?", default=None,
                        help="YAML experiment config")
    parser.add_argument("--experiment", type=str, default=None,
                        help="Name of a built-in experiment instead of a config file")
    parser.add_argument("--visualize", action="store_true",
                        help="Write plots next to the results")
    args = parser.parse_args(argv)

    if args.config:
        config = ConfigManager.load_yaml(args.config)
    elif args.experiment:
        config = ConfigManager.create_pruning_experiments()[args.experiment]
    else:
        config = ConfigManager.create_default_config()

    save_dir = Path(config.save_dir)
    setup_logging(LoggingConfig(log_level=config.log_level, log_dir=str(save_dir / "logs")))

    name = args.experiment or (Path(args.config).stem if args.config else "default")
    experiment_logger = ExperimentLogger(str(save_dir / "logs"))
    with experiment_logger.experiment(name) as tracker:
        trainer = PruningTrainer(config)
        results = trainer.run(tracker=tracker, visualize=args.visualize)
        tracker.export_metrics()

    save_dir.mkdir(parents=True, exist_ok=True)
    results_path = save_dir / f"{name}_results.json"
    with open(results_path, 'w') as f:
        json.dump(results, f, indent=2, default=str)

    logger.info(f"Results saved to {results_path}")
    return results


if __name__ == "__main__":
    main()
