"""
Dynamic structured and unstructured pruning during training
"""

from .config import (
    ConfigManager, DataConfig, ExperimentConfig, LayerPruneConfig, ModelConfig,
    PruneConfig, SolverConfig, TrainingConfig, validate_combination,
)
from .controller import LayerPruningController
from .engine import PruningEngine
from .errors import ConfigurationError, PruningError, PruningInvariantError
from .optimizer import PruningSGD, WeightDecaySchedule
from .regularization import RegularizationScheduler, build_regularization_policy
from .state import LayerRecord, PrunedRowQueue, PruningState

__version__ = "1.0.0"
