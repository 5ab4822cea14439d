"""
Configuration management for adaptive pruning experiments

Pruning method, unit and schedule knobs live in ``PruneConfig``; per-layer
targets in ``LayerPruneConfig``; optimizer and regularization settings in
``SolverConfig``. Everything round-trips through YAML or JSON via
``ConfigManager``.
"""

import yaml
import json
from pathlib import Path
from typing import Dict, Optional, List
from dataclasses import dataclass, asdict
import logging

from .errors import ConfigurationError

logger = logging.getLogger(__name__)


PRUNE_METHODS = ("None", "FP", "TP", "PP", "PP-exp", "PP-linear", "Reg-rank", "Reg-L1")
PRUNE_UNITS = ("Weight", "Row", "Col")
REGULARIZATION_TYPES = ("L2", "L1", "SSL", "SSL_discriminative", "SelectiveReg", "OptimalReg")
RANK_SCHEMES = ("continuous", "discontinuous")
DWD_MODES = ("None", "linearly", "step_linearly", "adaptive")

PROBABILISTIC_METHODS = ("PP", "PP-exp", "PP-linear")
REGULARIZATION_METHODS = ("Reg-rank", "Reg-L1")
PRUNING_REGULARIZERS = ("SSL", "SSL_discriminative", "SelectiveReg", "OptimalReg")


@dataclass
class LayerPruneConfig:
    """Per-layer pruning target"""
    prune_ratio: float = 0.0
    priority: int = 0
    delta: float = 0.0  # extra fraction targeted by probabilistic column pruning
    update_row_col: bool = True


@dataclass
class PruneConfig:
    """Pruning method, granularity and schedule shape"""
    method: str = "None"  # None, FP, TP, PP, PP-exp, PP-linear, Reg-rank, Reg-L1
    unit: str = "Col"  # Weight, Row, Col
    num_once_prune: int = 1
    prune_interval: int = 1
    prune_begin_iter: int = 0
    iter_size: int = 1
    score_decay: float = 0.0
    aa: float = 0.0
    kk: float = 0.25
    kk2: float = 0.1
    rgamma: float = 0.0
    rpower: float = 1.0
    cgamma: float = 0.0
    cpower: float = 1.0
    rank_scheme: str = "continuous"  # continuous, discontinuous
    target_reg: float = 1.0
    num_iter_reg: int = 10000
    prune_threshold: float = 1e-6
    reg_cushion_iter: int = 2000
    hrank_momentum: float = 0.999
    update_row_col: bool = True
    snapshot_dir: Optional[str] = None
    show_interval: int = 0
    show_num: int = 20
    seed: Optional[int] = None
    default_layer: LayerPruneConfig = None
    layers: Dict[str, LayerPruneConfig] = None

    def __post_init__(self):
        # "Reg-rank_Col" style names carry the unit as a suffix
        if "_" in self.method:
            self.method, self.unit = self.method.split("_", 1)
        if self.default_layer is None:
            self.default_layer = LayerPruneConfig()
        elif isinstance(self.default_layer, dict):
            self.default_layer = LayerPruneConfig(**self.default_layer)
        if self.layers is None:
            self.layers = {}
        self.layers = {
            name: LayerPruneConfig(**cfg) if isinstance(cfg, dict) else cfg
            for name, cfg in self.layers.items()
        }

    @property
    def is_probabilistic(self) -> bool:
        return self.method in PROBABILISTIC_METHODS

    @property
    def is_regularization(self) -> bool:
        return self.method in REGULARIZATION_METHODS

    @property
    def is_active(self) -> bool:
        return self.method != "None"

    def layer_config(self, name: str) -> LayerPruneConfig:
        """Per-layer settings, falling back to ``default_layer``"""
        return self.layers.get(name, self.default_layer)


@dataclass
class SolverConfig:
    """Optimizer and regularization settings"""
    learning_rate: float = 0.01
    momentum: float = 0.9
    weight_decay: float = 5e-4
    regularization_type: str = "L2"
    clip_gradients: float = -1.0
    dwd_mode: str = "None"  # None, linearly, step_linearly, adaptive
    dwd_begin_iter: int = 0
    dwd_end_iter: int = 0
    dwd_step: int = 1
    wd_end: float = 0.0
    max_num_column_to_prune: int = 0


@dataclass
class ModelConfig:
    """Model architecture configuration"""
    architecture: str = "mlp"  # mlp, conv
    input_size: int = 784
    hidden_sizes: list = None
    output_size: int = 10
    dropout_rate: float = 0.2
    conv_channels: list = None

    def __post_init__(self):
        if self.hidden_sizes is None:
            self.hidden_sizes = [300, 100]
        if self.conv_channels is None:
            self.conv_channels = [16, 32]


@dataclass
class TrainingConfig:
    """Training loop configuration"""
    batch_size: int = 64
    test_batch_size: int = 1000
    epochs: int = 10
    max_steps: Optional[int] = None
    log_interval: int = 100


@dataclass
class DataConfig:
    """Data configuration"""
    dataset: str = "mnist"  # mnist, synthetic
    data_dir: str = "./data"
    normalize: bool = True
    num_workers: int = 2
    synthetic_samples: int = 512


@dataclass
class ExperimentConfig:
    """Complete experiment configuration"""
    model: ModelConfig
    training: TrainingConfig
    pruning: PruneConfig
    solver: SolverConfig
    data: DataConfig
    device: str = "auto"  # auto, cpu, cuda, mps
    seed: int = 42
    save_dir: str = "./results"
    log_level: str = "INFO"

    def __post_init__(self):
        if isinstance(self.model, dict):
            self.model = ModelConfig(**self.model)
        if isinstance(self.training, dict):
            self.training = TrainingConfig(**self.training)
        if isinstance(self.pruning, dict):
            self.pruning = PruneConfig(**self.pruning)
        if isinstance(self.solver, dict):
            self.solver = SolverConfig(**self.solver)
        if isinstance(self.data, dict):
            self.data = DataConfig(**self.data)
        validate_combination(self.pruning, self.solver)


def validate_combination(prune: PruneConfig, solver: Optional[SolverConfig] = None) -> None:
    """Reject unknown names and method/unit/regularization combinations that cannot run"""
    errors: List[str] = []

    if prune.method not in PRUNE_METHODS:
        errors.append(f"unknown prune method '{prune.method}', expected one of {PRUNE_METHODS}")
    if prune.unit not in PRUNE_UNITS:
        errors.append(f"unknown prune unit '{prune.unit}', expected one of {PRUNE_UNITS}")
    if prune.rank_scheme not in RANK_SCHEMES:
        errors.append(f"unknown rank scheme '{prune.rank_scheme}', expected one of {RANK_SCHEMES}")

    if prune.method in ("FP", "TP") and prune.unit != "Row":
        errors.append(f"{prune.method} prunes whole rows and needs unit 'Row'")
    if prune.is_probabilistic and prune.unit != "Col":
        errors.append(f"{prune.method} prunes columns and needs unit 'Col'")
    if (prune.is_probabilistic or prune.is_regularization) and prune.aa <= 0:
        errors.append(f"{prune.method} needs a positive aa")
    if prune.method in ("PP-exp", "Reg-rank") and not 0 < prune.kk < 1:
        errors.append("kk must be in (0, 1)")
    if prune.method == "Reg-rank" and prune.rank_scheme == "discontinuous" and not 0 < prune.kk2 < 1:
        errors.append("kk2 must be in (0, 1)")

    if prune.num_once_prune < 1:
        errors.append("num_once_prune must be at least 1")
    if prune.prune_interval < 1:
        errors.append("prune_interval must be at least 1")
    if prune.iter_size < 1:
        errors.append("iter_size must be at least 1")
    if prune.target_reg <= 0:
        errors.append("target_reg must be positive")

    for name, layer in [("default", prune.default_layer)] + list(prune.layers.items()):
        if not 0.0 <= layer.prune_ratio < 1.0:
            errors.append(f"prune_ratio of layer '{name}' must be in [0, 1)")
        if layer.delta < 0:
            errors.append(f"delta of layer '{name}' must be non-negative")

    if solver is not None:
        reg = solver.regularization_type
        if reg not in REGULARIZATION_TYPES:
            errors.append(f"unknown regularization type '{reg}', expected one of {REGULARIZATION_TYPES}")
        if reg in ("SelectiveReg", "OptimalReg") and not prune.is_regularization:
            errors.append(f"{reg} needs a Reg-rank or Reg-L1 prune method")
        if reg == "SelectiveReg" and prune.method == "Reg-L1" and prune.unit == "Weight":
            errors.append("Reg-L1 works on rows or columns, not single weights")
        if reg == "OptimalReg" and prune.unit != "Col":
            errors.append("OptimalReg distributes regularization over columns and needs unit 'Col'")
        if reg in ("SSL", "SSL_discriminative") and prune.unit not in ("Row", "Col"):
            errors.append(f"{reg} needs unit 'Row' or 'Col'")

        if solver.dwd_mode not in DWD_MODES:
            errors.append(f"unknown dwd_mode '{solver.dwd_mode}', expected one of {DWD_MODES}")
        if solver.dwd_mode != "None" and solver.wd_end < 0:
            errors.append("wd_end must be non-negative")
        if solver.dwd_mode in ("linearly", "step_linearly") and solver.dwd_end_iter <= solver.dwd_begin_iter:
            errors.append("dwd_end_iter must be larger than dwd_begin_iter")
        if solver.dwd_mode == "step_linearly" and solver.dwd_step < 1:
            errors.append("dwd_step must be at least 1")
        if solver.dwd_mode == "adaptive" and solver.max_num_column_to_prune < 1:
            errors.append("adaptive weight decay needs max_num_column_to_prune")

        if prune.is_regularization and reg not in PRUNING_REGULARIZERS:
            logger.warning(f"{prune.method} with {reg} regularization only prunes by threshold")

    if errors:
        raise ConfigurationError(
            "Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors),
            check="validate_combination",
        )


class ConfigManager:
    """Configuration manager for loading and saving configurations"""

    @staticmethod
    def load_yaml(config_path: str) -> ExperimentConfig:
        """Load configuration from YAML file"""
        config_path = Path(config_path)
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        with open(config_path, 'r') as f:
            config_dict = yaml.safe_load(f)

        return ExperimentConfig(**config_dict)

    @staticmethod
    def load_json(config_path: str) -> ExperimentConfig:
        """Load configuration from JSON file"""
        config_path = Path(config_path)
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        with open(config_path, 'r') as f:
            config_dict = json.load(f)

        return ExperimentConfig(**config_dict)

    @staticmethod
    def save_yaml(config: ExperimentConfig, save_path: str) -> None:
        """Save configuration to YAML file"""
        save_path = Path(save_path)
        save_path.parent.mkdir(parents=True, exist_ok=True)

        config_dict = asdict(config)
        with open(save_path, 'w') as f:
            yaml.dump(config_dict, f, default_flow_style=False, indent=2)

        logger.info(f"Configuration saved to {save_path}")

    @staticmethod
    def save_json(config: ExperimentConfig, save_path: str) -> None:
        """Save configuration to JSON file"""
        save_path = Path(save_path)
        save_path.parent.mkdir(parents=True, exist_ok=True)

        config_dict = asdict(config)
        with open(save_path, 'w') as f:
            json.dump(config_dict, f, indent=2)

        logger.info(f"Configuration saved to {save_path}")

    @staticmethod
    def create_default_config() -> ExperimentConfig:
        """Create default configuration"""
        return ExperimentConfig(
            model=ModelConfig(),
            training=TrainingConfig(),
            pruning=PruneConfig(),
            solver=SolverConfig(),
            data=DataConfig()
        )

    @staticmethod
    def create_pruning_experiments() -> Dict[str, ExperimentConfig]:
        """Create configurations for the main pruning schedules.

        Only hidden layers get a target; the output layer keeps every unit.
        """
        experiments = {}

        # Hard top-k filter pruning on a conv net
        experiments["filter_prune"] = ExperimentConfig(
            model=ModelConfig(architecture="conv"),
            training=TrainingConfig(epochs=5),
            pruning=PruneConfig(
                method="FP",
                unit="Row",
                prune_interval=50,
                layers={
                    "convs.0": LayerPruneConfig(prune_ratio=0.25),
                    "convs.1": LayerPruneConfig(prune_ratio=0.25),
                },
            ),
            solver=SolverConfig(),
            data=DataConfig()
        )

        # Probabilistic column pruning
        experiments["probabilistic_col"] = ExperimentConfig(
            model=ModelConfig(architecture="conv"),
            training=TrainingConfig(epochs=5),
            pruning=PruneConfig(
                method="PP-exp",
                unit="Col",
                prune_interval=10,
                aa=0.05,
                kk=0.25,
                layers={
                    "convs.0": LayerPruneConfig(prune_ratio=0.5),
                    "convs.1": LayerPruneConfig(prune_ratio=0.5),
                },
            ),
            solver=SolverConfig(),
            data=DataConfig()
        )

        # Rank-scheduled regularization on columns
        experiments["selective_reg_col"] = ExperimentConfig(
            model=ModelConfig(),
            training=TrainingConfig(epochs=5),
            pruning=PruneConfig(
                method="Reg-rank",
                unit="Col",
                aa=2.5e-4,
                target_reg=2.5,
                layers={
                    "network.0": LayerPruneConfig(prune_ratio=0.5),
                    "network.3": LayerPruneConfig(prune_ratio=0.5),
                },
            ),
            solver=SolverConfig(regularization_type="SelectiveReg"),
            data=DataConfig()
        )

        # L1-distance regularization on rows
        experiments["selective_reg_l1_row"] = ExperimentConfig(
            model=ModelConfig(),
            training=TrainingConfig(epochs=5),
            pruning=PruneConfig(
                method="Reg-L1",
                unit="Row",
                aa=2.5e-4,
                target_reg=2.5,
                layers={
                    "network.0": LayerPruneConfig(prune_ratio=0.3),
                    "network.3": LayerPruneConfig(prune_ratio=0.3),
                },
            ),
            solver=SolverConfig(regularization_type="SelectiveReg"),
            data=DataConfig()
        )

        return experiments


if __name__ == "__main__":
    config_manager = ConfigManager()

    default_config = config_manager.create_default_config()
    config_manager.save_yaml(default_config, "configs/default.yaml")
    config_manager.save_json(default_config, "configs/default.json")

    experiments = config_manager.create_pruning_experiments()
    for name, config in experiments.items():
        config_manager.save_yaml(config, f"configs/{name}.yaml")
        config_manager.save_json(config, f"configs/{name}.json")

    print("Configuration files created successfully!")
