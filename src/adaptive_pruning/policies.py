"""
Pruning policies

A ``PruningPolicy`` decides when a layer is pruned and which controller
operation does it. Exactly one policy is selected per run from
``PruneConfig.method``. The engine runs each policy in its ``phase``:

- ``prune``: before the forward pass
- ``backward``: after the backward pass
- ``update``: after the optimizer step
"""

from abc import ABC, abstractmethod
from typing import Optional
import logging

import torch

from .config import PruneConfig
from .controller import LayerPruningController
from .errors import ConfigurationError
from .scoring import col_l1, row_l1, unit_mean_magnitude
from .state import PrunedRowQueue, PruningState

logger = logging.getLogger(__name__)


class PruningPolicy(ABC):
    """Base class for the pruning schedules"""

    phase = "prune"

    def __init__(self, config: PruneConfig):
        self.config = config

    def attach(self, controller: LayerPruningController) -> None:
        """Install whatever the policy needs on a freshly registered controller"""

    @abstractmethod
    def is_due(self, state: PruningState) -> bool:
        """Whether the policy acts at the current step and inner iteration"""

    @abstractmethod
    def score(self, controller: LayerPruningController) -> Optional[torch.Tensor]:
        """Per-unit importance the policy ranks by (lower is pruned first)"""

    @abstractmethod
    def prune(self, controller: LayerPruningController,
              queue: Optional[PrunedRowQueue] = None) -> int:
        """Commit this pass's decisions, returning how many units were pruned"""

    def finish(self, controller: LayerPruningController) -> None:
        """Called once when a layer reaches its target ratio"""

    def get_name(self) -> str:
        return self.config.method


class NoPrunePolicy(PruningPolicy):
    """Plain training, nothing is ever pruned"""

    def is_due(self, state: PruningState) -> bool:
        return False

    def score(self, controller: LayerPruningController) -> Optional[torch.Tensor]:
        return None

    def prune(self, controller, queue=None) -> int:
        return 0


class FilterPrunePolicy(PruningPolicy):
    """Hard top-k row pruning by L1 magnitude every ``prune_interval`` steps"""

    def is_due(self, state: PruningState) -> bool:
        return state.inner_iter == 0 and state.step % self.config.prune_interval == 0

    def score(self, controller):
        return row_l1(controller._matrix())

    def prune(self, controller, queue=None) -> int:
        return len(controller.filter_prune(queue, scores=self.score(controller)))


class TaylorPrunePolicy(PruningPolicy):
    """Hard top-k row pruning by the Taylor score of the output channels"""

    phase = "backward"

    def attach(self, controller: LayerPruningController) -> None:
        if controller.kind == "conv":
            controller.attach_taylor_hooks()

    def is_due(self, state: PruningState) -> bool:
        return state.inner_iter == 0 and state.step % self.config.prune_interval == 0

    def score(self, controller):
        if controller.kind != "conv":
            return None
        return controller.taylor_scores()

    def prune(self, controller, queue=None) -> int:
        if controller.kind != "conv":
            return 0
        return len(controller.taylor_prune(queue=queue, scores=self.score(controller)))


class ThresholdPrunePolicy(PruningPolicy):
    """Commit units that fell below the magnitude threshold or reached the target regularization"""

    phase = "update"

    def is_due(self, state: PruningState) -> bool:
        return True

    def score(self, controller):
        return unit_mean_magnitude(controller._matrix(), self.config.unit)

    def prune(self, controller, queue=None) -> int:
        return controller.prune_minimals(queue, scores=self.score(controller))


class ProbabilisticPrunePolicy(PruningPolicy):
    """Continuous survival-probability pruning of columns"""

    def is_due(self, state: PruningState) -> bool:
        return True

    def score(self, controller):
        return col_l1(controller._matrix())

    def prune(self, controller, queue=None) -> int:
        before = controller.record.num_pruned_col
        controller.prob_prune_col(scores=self.score(controller))
        return int(controller.record.num_pruned_col - before)

    def finish(self, controller: LayerPruningController) -> None:
        controller.clean_work_for_pp()


class IntervalProbabilisticPrunePolicy(ProbabilisticPrunePolicy):
    """Survival-probability pruning updated once every ``prune_interval`` steps"""

    def __init__(self, config: PruneConfig, linear: bool = False):
        super().__init__(config)
        self.linear = linear

    def prune(self, controller, queue=None) -> int:
        before = controller.record.num_pruned_col
        controller.prob_prune_col_interval(self.config.prune_interval, linear=self.linear,
                                            scores=self.score(controller))
        return int(controller.record.num_pruned_col - before)


def build_pruning_policy(config: PruneConfig) -> PruningPolicy:
    """Select the policy for ``config.method``"""
    method = config.method
    if method == "None":
        return NoPrunePolicy(config)
    if method == "FP":
        return FilterPrunePolicy(config)
    if method == "TP":
        return TaylorPrunePolicy(config)
    if method == "PP":
        return ProbabilisticPrunePolicy(config)
    if method == "PP-exp":
        return IntervalProbabilisticPrunePolicy(config, linear=False)
    if method == "PP-linear":
        return IntervalProbabilisticPrunePolicy(config, linear=True)
    if method in ("Reg-rank", "Reg-L1"):
        return ThresholdPrunePolicy(config)
    raise ConfigurationError(f"unknown prune method '{method}'", check="build_pruning_policy")
