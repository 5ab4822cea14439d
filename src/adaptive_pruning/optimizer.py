"""
Momentum SGD with pruning hooks

``PruningSGD`` runs the per-parameter update in a fixed order:

1. clip the global gradient norm
2. clear momentum of masked-out weights
3. normalize by the gradient accumulation size
4. add weight decay, then the pruning-aware regularization
5. ``v = momentum * v + lr * grad`` and ``w -= v``
"""

from typing import Callable, Optional
import logging

import torch
from torch.optim.optimizer import Optimizer

from .config import SolverConfig
from .errors import ConfigurationError
from .regularization import RegularizationScheduler
from .state import PruningState

logger = logging.getLogger(__name__)


class WeightDecaySchedule:
    """Decreasing weight decay (dwd) between ``dwd_begin_iter`` and ``dwd_end_iter``"""

    def __init__(self, mode: str = "None", begin: int = 0, end: int = 0, step: int = 1,
                 wd_end: float = 0.0, max_num_column_to_prune: int = 0):
        if mode not in ("None", "linearly", "step_linearly", "adaptive"):
            raise ConfigurationError(f"unknown dwd_mode '{mode}'", check="WeightDecaySchedule")
        if mode != "None" and wd_end < 0:
            raise ConfigurationError("wd_end must be non-negative", check="WeightDecaySchedule")
        if mode in ("linearly", "step_linearly") and end <= begin:
            raise ConfigurationError("dwd_end_iter must be larger than dwd_begin_iter", check="WeightDecaySchedule")
        if mode == "adaptive" and max_num_column_to_prune < 1:
            raise ConfigurationError("adaptive weight decay needs max_num_column_to_prune",
                                     check="WeightDecaySchedule")
        self.mode = mode
        self.begin = begin
        self.end = end
        self.step = max(step, 1)
        self.wd_end = wd_end
        self.max_num_column_to_prune = max_num_column_to_prune

    @classmethod
    def from_config(cls, solver: SolverConfig) -> "WeightDecaySchedule":
        return cls(solver.dwd_mode, solver.dwd_begin_iter, solver.dwd_end_iter,
                   solver.dwd_step, solver.wd_end, solver.max_num_column_to_prune)

    def current(self, weight_decay: float, iteration: int, state: Optional[PruningState] = None) -> float:
        if self.mode == "None" or iteration < self.begin:
            return weight_decay
        if self.mode == "linearly":
            progress = min(iteration, self.end) - self.begin
            return weight_decay * (1 - (1 - self.wd_end) / (self.end - self.begin) * progress)
        if self.mode == "step_linearly":
            progress = (min(iteration, self.end) - self.begin) // self.step * self.step
            return weight_decay * (1 - (1 - self.wd_end) / (self.end - self.begin) * progress)
        # adaptive (legacy): follows the most-pruned layer
        num_pruned = 0
        if state is not None and state.layers:
            num_pruned = int(max(record.num_pruned_col for record in state.layers))
        return weight_decay * (1 - (1 - self.wd_end) / self.max_num_column_to_prune * num_pruned)


class PruningSGD(Optimizer):
    """
    Momentum SGD that cooperates with a ``PruningState``.

    Args:
        params: Iterable of parameters to optimize
        lr: Learning rate
        momentum: Momentum factor
        weight_decay: Base weight decay
        regularization_type: L2 or L1 decay; pruning-aware types decay with L2
        clip_gradients: Global gradient norm limit, negative to disable
        iter_size: Number of accumulated forward/backward passes per step
        state: Shared pruning state, None for a plain momentum SGD
        scheduler: Pruning-aware regularization, applied after weight decay
        layer_of: Maps a parameter to its registered layer name, or None
        weight_decay_schedule: Decreasing weight decay schedule
    """

    def __init__(
        self,
        params,
        lr=0.01,
        momentum=0.9,
        weight_decay=0.0,
        regularization_type="L2",
        clip_gradients=-1.0,
        iter_size=1,
        state: Optional[PruningState] = None,
        scheduler: Optional[RegularizationScheduler] = None,
        layer_of: Optional[Callable[[torch.Tensor], Optional[str]]] = None,
        weight_decay_schedule: Optional[WeightDecaySchedule] = None,
    ):
        if not 0.0 <= lr:
            raise ValueError(f"Invalid learning rate: {lr}")
        if not 0.0 <= momentum:
            raise ValueError(f"Invalid momentum: {momentum}")
        if not 0.0 <= weight_decay:
            raise ValueError(f"Invalid weight_decay: {weight_decay}")
        if not 1 <= iter_size:
            raise ValueError(f"Invalid iter_size: {iter_size}")

        defaults = dict(lr=lr, momentum=momentum, weight_decay=weight_decay)
        super().__init__(params, defaults)
        self.regularization_type = regularization_type
        self.clip_gradients = clip_gradients
        self.iter_size = iter_size
        self.pruning_state = state
        self.scheduler = scheduler
        self.layer_of = layer_of or (lambda param: None)
        self.weight_decay_schedule = weight_decay_schedule or WeightDecaySchedule()

    def _iteration(self) -> int:
        if self.pruning_state is None:
            return 0
        return max(self.pruning_state.step - 1, 0)

    def _clip(self) -> None:
        if self.clip_gradients < 0:
            return
        params = [p for group in self.param_groups for p in group["params"] if p.grad is not None]
        if not params:
            return
        norm = torch.nn.utils.clip_grad_norm_(params, self.clip_gradients)
        if norm > self.clip_gradients:
            logger.info(f"Gradient clipping: scaling down gradients (L2 norm {norm:.4f} > {self.clip_gradients})")

    def _clear_history(self, p: torch.Tensor, layer_name: Optional[str]) -> None:
        if self.pruning_state is None or layer_name is None or p.dim() == 1:
            return
        buf = self.state[p].get("momentum_buffer")
        record = self.pruning_state.get(layer_name)
        if buf is None or record is None:
            return
        buf.view(record.num_row, record.num_col).mul_(record.mask)

    def _regularize(self, p: torch.Tensor, grad: torch.Tensor, decay: float, layer_name: Optional[str]) -> None:
        if decay:
            if self.regularization_type == "L1":
                grad.add_(torch.sign(p), alpha=decay)
            else:
                grad.add_(p, alpha=decay)
        if self.scheduler is not None:
            self.scheduler.regularize(p, layer_name)

    @torch.no_grad()
    def step(self, closure=None):
        """Perform a single optimization step."""
        loss = None
        if closure is not None:
            with torch.enable_grad():
                loss = closure()

        self._clip()
        iteration = self._iteration()

        for group in self.param_groups:
            lr = group["lr"]
            momentum = group["momentum"]
            decay = self.weight_decay_schedule.current(group["weight_decay"], iteration, self.pruning_state)

            for p in group["params"]:
                if p.grad is None:
                    continue
                layer_name = self.layer_of(p)

                self._clear_history(p, layer_name)

                grad = p.grad
                if self.iter_size > 1:
                    grad.div_(self.iter_size)

                self._regularize(p, grad, decay, layer_name)

                buf = self.state[p].get("momentum_buffer")
                if buf is None:
                    buf = torch.zeros_like(p)
                    self.state[p]["momentum_buffer"] = buf
                buf.mul_(momentum).add_(grad, alpha=lr)
                p.sub_(buf)

        return loss
