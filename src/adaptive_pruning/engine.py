"""
Pruning engine

``PruningEngine`` walks a model once, registers every ``nn.Conv2d`` and
``nn.Linear`` in ``named_modules()`` order and sequences the layer
controllers around each training step:

    engine.begin_step()
    for each accumulated batch:
        engine.before_forward()
        loss = criterion(model(x), y); loss.backward()
        engine.after_backward()
    optimizer.step()
    engine.after_update()
"""

from typing import Dict, List, Optional, Any
import logging

import torch
import torch.nn as nn

from .config import PruneConfig, SolverConfig, validate_combination
from .controller import LayerPruningController
from .optimizer import PruningSGD, WeightDecaySchedule
from .policies import build_pruning_policy
from .regularization import RegularizationScheduler, build_regularization_policy
from .state import PrunedRowQueue, PruningState
from .telemetry import format_unit_table

logger = logging.getLogger(__name__)


class PruningEngine:
    """Owns the pruning state, the layer controllers and the cross-layer queues"""

    def __init__(self, model: nn.Module, config: PruneConfig,
                 generator: Optional[torch.Generator] = None, training: bool = True):
        self.model = model
        self.config = config
        self.state = PruningState(config)
        if generator is None:
            generator = torch.Generator()
            if config.seed is not None:
                generator.manual_seed(config.seed)
        self.generator = generator
        self.policy = build_pruning_policy(config)

        self.controllers: List[LayerPruningController] = []
        self._param_layers: Dict[int, str] = {}
        for name, module in model.named_modules():
            if not isinstance(module, (nn.Conv2d, nn.Linear)):
                continue
            controller = LayerPruningController(module, name, self.state, generator)
            if controller.setup(training) is None:
                continue
            self.controllers.append(controller)
            self._param_layers[id(module.weight)] = name
            self.policy.attach(controller)

        self.outgoing: List[Optional[PrunedRowQueue]] = [None] * len(self.controllers)
        self.incoming: List[Optional[PrunedRowQueue]] = [None] * len(self.controllers)
        for i in range(len(self.controllers) - 1):
            producer, consumer = self.controllers[i], self.controllers[i + 1]
            if not (producer.record.update_row_col and consumer.record.update_row_col):
                continue
            if not consumer.accepts_rows_from(producer.record.num_row):
                logger.debug(f"No row propagation from {producer.name} to {consumer.name}: shapes do not line up")
                continue
            queue = PrunedRowQueue(producer.name, consumer.name)
            self.outgoing[i] = queue
            self.incoming[i + 1] = queue

        logger.info(f"Pruning engine ready: method={config.method} unit={config.unit}, "
                    f"{self.state.conv_layer_count} conv and {self.state.fc_layer_count} fc layers")

    # ------------------------------------------------------------------
    # Lookups

    def layer_name_for(self, param: torch.Tensor) -> Optional[str]:
        """Registered layer owning ``param`` as its weight, None for biases and others"""
        return self._param_layers.get(id(param))

    def controller(self, name: str) -> LayerPruningController:
        index = self.state.layer_index[name]
        return self.controllers[index]

    def should_prune(self, controller: LayerPruningController) -> bool:
        """Gate every policy pass goes through"""
        rec = controller.record
        cfg = self.config
        if not cfg.is_active or rec.prune_ratio <= 0 or rec.finished:
            return False
        if rec.pruned_ratio <= 0 and self.state.step < cfg.prune_begin_iter + 1:
            return False
        return controller.if_hppf()

    # ------------------------------------------------------------------
    # Step hooks

    def begin_step(self) -> int:
        self.state.step += 1
        self.state.inner_iter = 0
        return self.state.step

    def before_forward(self) -> None:
        self._run_phase("prune")
        cfg = self.config
        if cfg.show_interval > 0 and self.state.inner_iter == 0 and self.state.step % cfg.show_interval == 0:
            self.log_units("f")

    def after_backward(self) -> None:
        self._run_phase("backward")
        if self.config.is_active:
            for controller in self.controllers:
                controller.mask_gradient()
                controller.restore_weights()
        cfg = self.config
        if cfg.show_interval > 0 and self.state.inner_iter == 0 and self.state.step % cfg.show_interval == 0:
            self.log_units("b")
        self.state.inner_iter += 1

    def after_update(self) -> None:
        self._run_phase("update")

    def _run_phase(self, phase: str) -> None:
        acting = self.policy.phase == phase and self.policy.is_due(self.state)
        for i, controller in enumerate(self.controllers):
            if acting and self.should_prune(controller):
                self.policy.prune(controller, self.outgoing[i])
            self._propagate(i)
            self._bookkeep(controller)
        self.state.update_all_finished()

    def _propagate(self, i: int) -> None:
        controller = self.controllers[i]
        queue = self.incoming[i]
        if queue is not None and len(queue):
            producer_rows = self.controllers[i - 1].record.num_row
            controller.update_num_pruned_col(queue.drain(), producer_rows)
        if self.outgoing[i] is not None:
            controller.update_num_pruned_row(self.controllers[i + 1])

    def _bookkeep(self, controller: LayerPruningController) -> None:
        rec = controller.record
        step = self.state.step
        ratio = controller.update_pruned_ratio()
        # One entry per change of the ratio
        if rec.ratio_history and rec.ratio_history[-1][0] == step:
            rec.ratio_history[-1] = (step, ratio)
        elif not rec.ratio_history or rec.ratio_history[-1][1] != ratio:
            rec.ratio_history.append((step, ratio))

        if rec.finished or not self.config.is_active or rec.prune_ratio <= 0:
            return
        if rec.achieved_ratio(self.config.method, self.config.unit) >= rec.prune_ratio:
            rec.iter_prune_finished = step
            self.policy.finish(controller)
            logger.info(f"{rec.index}: {controller.name} prune finished at step {step}, "
                        f"pruned_ratio = {rec.pruned_ratio:.4f} (row {rec.pruned_ratio_row:.4f}, "
                        f"col {rec.pruned_ratio_col:.4f})")

    # ------------------------------------------------------------------
    # Optimizer, snapshots and reporting

    def build_optimizer(self, solver: SolverConfig, params=None) -> PruningSGD:
        """Momentum SGD wired to this engine's state and regularization"""
        validate_combination(self.config, solver)
        policy = build_regularization_policy(self.state, solver.regularization_type)
        scheduler = RegularizationScheduler(self.state, policy)
        return PruningSGD(
            self.model.parameters() if params is None else params,
            lr=solver.learning_rate,
            momentum=solver.momentum,
            weight_decay=solver.weight_decay,
            regularization_type=solver.regularization_type,
            clip_gradients=solver.clip_gradients,
            iter_size=self.config.iter_size,
            state=self.state,
            scheduler=scheduler,
            layer_of=self.layer_name_for,
            weight_decay_schedule=WeightDecaySchedule.from_config(solver),
        )

    def restore_masks(self, snapshot_dir: Optional[str] = None) -> None:
        """Rebuild masks and counters from the current weights, e.g. after loading a checkpoint"""
        for controller in self.controllers:
            controller.compute_blob_mask(snapshot_dir)
            self._bookkeep(controller)
        self.state.update_all_finished()

    def snapshot_probs(self, snapshot_dir: Optional[str] = None) -> List[str]:
        if not self.config.is_probabilistic:
            return []
        return [str(controller.snapshot_prune_prob(snapshot_dir)) for controller in self.controllers]

    def log_units(self, mode: str = "f") -> None:
        if not logger.isEnabledFor(logging.DEBUG):
            return
        for controller in self.controllers:
            rows = controller.describe_units(mode)
            logger.debug(f"step {self.state.step} {controller.name} ({mode}):\n{format_unit_table(rows)}")

    def summary(self) -> Dict[str, Any]:
        """Per-layer pruning progress plus the overall weight sparsity"""
        layers = []
        total = 0
        zeros = 0
        for controller in self.controllers:
            rec = controller.record
            weight = controller.module.weight.data
            total += weight.numel()
            zeros += int((weight == 0).sum().item())
            layers.append({
                "name": rec.name,
                "index": rec.index,
                "kind": rec.kind,
                "shape": [rec.num_row, rec.num_col],
                "prune_ratio": rec.prune_ratio,
                "pruned_ratio": rec.pruned_ratio,
                "pruned_ratio_row": rec.pruned_ratio_row,
                "pruned_ratio_col": rec.pruned_ratio_col,
                "num_pruned_row": rec.num_pruned_row,
                "num_pruned_col": rec.num_pruned_col,
                "num_pruned_weight": rec.num_pruned_weight,
                "iter_prune_finished": rec.iter_prune_finished,
            })
        return {
            "method": self.config.method,
            "unit": self.config.unit,
            "step": self.state.step,
            "all_layers_finished": self.state.all_layers_finished,
            "sparsity": zeros / total if total else 0.0,
            "layers": layers,
        }

    def detach(self) -> None:
        """Remove any hooks installed on the model"""
        for controller in self.controllers:
            controller.detach_taylor_hooks()
