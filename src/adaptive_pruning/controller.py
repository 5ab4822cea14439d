"""
Per-layer pruning controller

One ``LayerPruningController`` wraps each prunable ``nn.Conv2d`` or
``nn.Linear``. It registers the layer in the shared ``PruningState``,
scores its rows and columns, commits pruning decisions to the weight
tensor, keeps the masks in sync, and reconciles its rows with the columns
of the next layer.
"""

import math
from pathlib import Path
from typing import Dict, List, Optional, Any
import logging

import numpy as np
import torch
import torch.nn as nn

from .errors import ConfigurationError, PruningInvariantError
from .scoring import (
    ascending_order, col_l1, decayed_score, row_l1, taylor_channel_scores, unit_mean_magnitude,
    weight_matrix,
)
from .state import LayerRecord, PrunedRowQueue, PruningState

logger = logging.getLogger(__name__)

# Offset applied to the step when stamping the rank of a unit pruned by threshold
PRUNED_RANK_OFFSET = 1000000


class LayerPruningController:
    """Pruning operations on the weight of a single Conv2d or Linear layer"""

    def __init__(self, module: nn.Module, name: str, state: PruningState,
                 generator: Optional[torch.Generator] = None):
        if isinstance(module, nn.Conv2d):
            self.kind = "conv"
            self.group = module.groups
        elif isinstance(module, nn.Linear):
            self.kind = "fc"
            self.group = 1
        else:
            raise ConfigurationError(
                f"cannot prune a {type(module).__name__}", layer=name, check="layer type"
            )
        self.module = module
        self.name = name
        self.state = state
        self.generator = generator
        self.record: Optional[LayerRecord] = None

        # Scratch buffers, sized once in setup()
        self._weight_backup: Optional[torch.Tensor] = None
        self._col_rands: Optional[torch.Tensor] = None
        self._restore_pending = False

        self._activation: Optional[torch.Tensor] = None
        self._activation_grad: Optional[torch.Tensor] = None
        self._hook_handle = None

    # ------------------------------------------------------------------
    # Setup and accessors

    def setup(self, training: bool = True) -> Optional[LayerRecord]:
        """Register the layer and allocate its scratch buffers"""
        record = self.state.register(
            self.name, self.module.weight, self.kind, group=self.group, training=training
        )
        if record is None:
            return None
        self.record = record
        self._weight_backup = torch.empty_like(self.module.weight.data)
        self._col_rands = torch.empty(record.num_col)
        logger.debug(f"Prune setup: {self.name} has layer index {record.index}")
        return record

    @property
    def config(self):
        return self.state.config

    @property
    def is_registered(self) -> bool:
        return self.record is not None

    def _matrix(self) -> torch.Tensor:
        return self.module.weight.data.view(self.record.num_row, self.record.num_col)

    def _grad_matrix(self) -> Optional[torch.Tensor]:
        grad = self.module.weight.grad
        if grad is None:
            return None
        return grad.view(self.record.num_row, self.record.num_col)

    def _uniform(self) -> float:
        return torch.rand(1, generator=self.generator).item()

    def if_hppf(self) -> bool:
        """Whether every higher-priority layer has finished pruning"""
        return self.state.higher_priority_finished(self.record.index)

    # ------------------------------------------------------------------
    # Commits

    def _commit_row(self, row: int, queue: Optional[PrunedRowQueue] = None) -> None:
        rec = self.record
        self._matrix()[row].zero_()
        rec.mask[row] = False
        rec.row_pruned[row] = True
        rec.num_pruned_row += 1
        if queue is not None:
            queue.push(row)

    def _commit_col(self, col: int) -> None:
        rec = self.record
        self._matrix()[:, col].zero_()
        rec.mask[:, col] = False
        rec.col_pruned[col] = True
        rec.num_pruned_col += 1

    def _stamp_rank(self, unit_index: int) -> None:
        rec = self.record
        overshoot = rec.history_reg[unit_index].item() - self.config.target_reg
        rec.history_rank[unit_index] = self.state.step - PRUNED_RANK_OFFSET - overshoot

    # ------------------------------------------------------------------
    # Hard top-k row pruning

    def filter_prune(self, queue: Optional[PrunedRowQueue] = None,
                     scores: Optional[torch.Tensor] = None) -> List[int]:
        """Prune the ``num_once_prune`` rows with the lowest score (row L1 magnitude by default)"""
        rec = self.record
        if scores is None:
            scores = row_l1(self._matrix())
        order = ascending_order(scores, rec.row_pruned)
        pruned = []
        for row in order[:self.config.num_once_prune].tolist():
            if rec.row_pruned[row]:
                continue
            self._commit_row(row, queue)
            pruned.append(row)
        if pruned:
            logger.debug(f"{self.name}: filter prune removed rows {pruned}")
        return pruned

    def attach_taylor_hooks(self) -> None:
        """Capture the layer output and its gradient for Taylor scoring"""
        if self._hook_handle is None:
            self._hook_handle = self.module.register_forward_hook(self._capture_activation)

    def detach_taylor_hooks(self) -> None:
        if self._hook_handle is not None:
            self._hook_handle.remove()
            self._hook_handle = None

    def _capture_activation(self, module, inputs, output) -> None:
        if not module.training or not output.requires_grad:
            return
        self._activation = output.detach()
        output.register_hook(self._capture_grad)

    def _capture_grad(self, grad: torch.Tensor) -> None:
        self._activation_grad = grad.detach()

    def taylor_scores(self, activation: Optional[torch.Tensor] = None,
                      activation_grad: Optional[torch.Tensor] = None) -> Optional[torch.Tensor]:
        """Taylor score per output channel, or None until a forward/backward pair was captured"""
        activation = self._activation if activation is None else activation
        activation_grad = self._activation_grad if activation_grad is None else activation_grad
        if activation is None or activation_grad is None:
            return None
        return taylor_channel_scores(activation, activation_grad)

    def taylor_prune(self, activation: Optional[torch.Tensor] = None,
                     activation_grad: Optional[torch.Tensor] = None,
                     queue: Optional[PrunedRowQueue] = None,
                     scores: Optional[torch.Tensor] = None) -> List[int]:
        """Prune the output channels with the lowest ``sum |a * da|``"""
        if self.kind != "conv":
            raise ConfigurationError("Taylor pruning is only defined for convolutions",
                                     layer=self.name, check="taylor_prune")
        if scores is None:
            scores = self.taylor_scores(activation, activation_grad)
        if scores is None:
            return []

        rec = self.record
        scores = scores.to(rec.row_pruned.device)
        order = ascending_order(scores, rec.row_pruned)
        pruned = []
        for row in order[:max(1, self.config.num_once_prune)].tolist():
            if rec.row_pruned[row]:
                continue
            self._commit_row(row, queue)
            pruned.append(row)
        self._activation = None
        self._activation_grad = None
        if pruned:
            logger.debug(f"{self.name}: taylor prune removed rows {pruned}")
        return pruned

    # ------------------------------------------------------------------
    # Threshold pruning

    def prune_minimals(self, queue: Optional[PrunedRowQueue] = None,
                       scores: Optional[torch.Tensor] = None) -> int:
        """Prune units whose mean magnitude is below threshold or whose regularization hit the target"""
        rec = self.record
        cfg = self.config
        matrix = self._matrix()
        if scores is None:
            scores = unit_mean_magnitude(matrix, cfg.unit)
        threshold = cfg.prune_threshold
        target = cfg.target_reg
        num_pruned = 0

        if cfg.unit == "Weight":
            reg = rec.history_reg.view(rec.num_row, rec.num_col)
            hit = ((scores.view_as(matrix) < threshold) | (reg >= target)) & ~rec.weight_pruned
            flat = hit.reshape(-1).nonzero().flatten()
            if flat.numel():
                matrix[hit] = 0
                rec.mask[hit] = False
                rec.weight_pruned[hit] = True
                rec.num_pruned_weight += flat.numel()
                overshoot = rec.history_reg[flat] - target
                rec.history_rank[flat] = self.state.step - PRUNED_RANK_OFFSET - overshoot
                num_pruned = flat.numel()

        elif cfg.unit == "Col":
            hit = ((scores < threshold) | (rec.history_reg >= target)) & ~rec.col_pruned[:, 0]
            for col in hit.nonzero().flatten().tolist():
                self._commit_col(col)
                self._stamp_rank(col)
                num_pruned += 1

        elif cfg.unit == "Row":
            hit = ((scores < threshold) | (rec.history_reg >= target)) & ~rec.row_pruned
            for row in hit.nonzero().flatten().tolist():
                self._commit_row(row, queue)
                self._stamp_rank(row)
                num_pruned += 1

        if num_pruned:
            logger.debug(f"{self.name}: pruned {num_pruned} {cfg.unit.lower()} unit(s) at step {self.state.step}")
        return num_pruned

    # ------------------------------------------------------------------
    # Probabilistic column pruning

    def _num_col_to_prune(self) -> int:
        rec = self.record
        return math.ceil((rec.prune_ratio + rec.delta) * rec.num_col)

    def _col_order(self, scores: Optional[torch.Tensor] = None) -> torch.Tensor:
        rec = self.record
        if scores is None:
            scores = col_l1(self._matrix())
        decayed_score(rec.history_score, scores.to(rec.history_score.device), self.config.score_decay)
        return ascending_order(rec.history_score, rec.col_pruned[:, 0])

    def _check_remaining(self, remaining: int, check: str) -> None:
        if remaining <= 0:
            raise PruningInvariantError(
                f"no columns left to prune ({remaining})", layer=self.name, check=check
            )

    def _commit_prob_col(self, col: int) -> None:
        # The mask of a committed column is cleared by the next sampling pass
        rec = self.record
        rec.num_pruned_col += 1
        rec.col_pruned[col] = True
        self._matrix()[:, col].zero_()

    def prob_prune_col(self, scores: Optional[torch.Tensor] = None) -> None:
        """Continuous probabilistic column pruning, then a fresh transient mask.

        Probabilities of the best columns may recover to 1 and those of the
        worst columns decay along an exponential ramp. Both moves are gated by
        a step-dependent threshold compared against one uniform draw.
        """
        rec = self.record
        cfg = self.config
        step = self.state.step
        to_prune = self._num_col_to_prune()
        order = self._col_order(scores).tolist()

        p_recover = self._uniform()
        if cfg.rgamma > 0 and math.pow(cfg.rgamma + 0.00027 * step, cfg.rpower) > p_recover * cfg.iter_size:
            begin = max(to_prune - int(rec.num_pruned_col) - 1, 0)
            end = rec.num_col - int(rec.num_pruned_col)
            for j in range(begin, end):
                rec.history_prob[order[j]] = 1
            logger.debug(f"{self.name}: recover prob at step {step}")

        p_prune = self._uniform()
        if math.pow(cfg.cgamma + 0.0008 * step, cfg.cpower) > p_prune * cfg.iter_size:
            remaining = to_prune - int(rec.num_pruned_col)
            self._check_remaining(remaining, "prob_prune_col")
            aa = cfg.aa
            alpha = -math.log(0.1) / (remaining - 1) if remaining > 1 else 0.0
            j = 0
            while j < to_prune - int(rec.num_pruned_col):
                col = order[j]
                new_prob = max(rec.history_prob[col].item() - aa * math.exp(-j * alpha), 0.0)
                rec.history_prob[col] = new_prob
                if new_prob == 0:
                    self._commit_prob_col(col)
                j += 1
            logger.debug(f"{self.name}: update prob at step {step}")

        self.apply_transient_mask()

    def prob_prune_col_interval(self, prune_interval: int, linear: bool = False,
                                scores: Optional[torch.Tensor] = None) -> None:
        """Interval-batched probabilistic column pruning, then a fresh transient mask.

        Probabilities move only on the first inner iteration of every
        ``prune_interval`` steps, along a two-sided exponential or a linear
        curve. Columns past the crossover rank get their probability back.
        """
        rec = self.record
        cfg = self.config
        step = self.state.step
        order = self._col_order(scores).tolist()

        if (step - 1) % prune_interval == 0 and self.state.inner_iter == 0:
            to_prune = self._num_col_to_prune()
            remaining = to_prune - int(rec.num_pruned_col)
            self._check_remaining(remaining, "prob_prune_col_interval")
            aa = cfg.aa
            kk = cfg.kk
            alpha = math.log(2 / kk) / remaining
            n1 = -math.log(kk) / alpha
            slope = aa / remaining

            j = 0
            while j < rec.num_col - int(rec.num_pruned_col):
                col = order[j]
                if linear:
                    delta = aa - slope * j
                elif j < n1:
                    delta = aa * math.exp(-alpha * j)
                else:
                    delta = -aa * math.exp(-alpha * (2 * n1 - j)) + 2 * kk * aa
                old_prob = rec.history_prob[col].item()
                new_prob = min(max(old_prob - delta, 0.0), 1.0)
                rec.history_prob[col] = new_prob
                if new_prob == 0:
                    self._commit_prob_col(col)
                elif new_prob > old_prob:
                    logger.debug(f"{self.name}: recover prob of column {col} {old_prob:.4f} -> {new_prob:.4f}")
                j += 1

        self.apply_transient_mask()

    def apply_transient_mask(self) -> None:
        """Sample ``mask = (u_col < prob_col) & ~row_pruned`` and mask the weights.

        The unmasked weights are backed up; ``restore_weights`` puts them back
        once the gradient has been computed.
        """
        rec = self.record
        torch.rand(rec.num_col, generator=self.generator, out=self._col_rands)
        rands = self._col_rands.to(rec.history_prob.device)
        keep = (rands < rec.history_prob).unsqueeze(0) & ~rec.row_pruned.unsqueeze(1)
        rec.mask.copy_(keep)
        matrix = self._matrix()
        self._weight_backup.copy_(self.module.weight.data)
        matrix.mul_(rec.mask)
        self._restore_pending = True

    def restore_weights(self) -> bool:
        """Undo the transient masking applied before the forward pass"""
        if not self._restore_pending:
            return False
        self.module.weight.data.copy_(self._weight_backup)
        self._restore_pending = False
        # Units committed since the backup was taken stay zero
        self._zero_committed()
        return True

    def _zero_committed(self) -> None:
        rec = self.record
        matrix = self._matrix()
        matrix[rec.row_pruned] = 0
        rows_per_group = rec.num_row // rec.group
        for g in range(rec.group):
            cols = rec.col_pruned[:, g]
            if bool(cols.any()):
                matrix[g * rows_per_group:(g + 1) * rows_per_group, cols] = 0
        matrix[rec.weight_pruned] = 0

    def clean_work_for_pp(self) -> None:
        """Fold surviving column probabilities into the weights and freeze the mask"""
        rec = self.record
        self.restore_weights()
        matrix = self._matrix()
        live = rec.history_prob > 0
        scale = torch.where(live, rec.history_prob, torch.ones_like(rec.history_prob))
        matrix.mul_(scale.unsqueeze(0))
        rec.history_prob[live] = 1
        rec.mask[:, live] = ~rec.row_pruned.unsqueeze(1).expand(-1, int(live.sum().item()))
        logger.info(f"{self.name}: probabilistic pruning finished, masks frozen")

    # ------------------------------------------------------------------
    # Cross-layer propagation

    def channel_span(self, producer_rows: int) -> int:
        """Number of consecutive columns fed by one producer row"""
        if self.kind == "conv":
            return self.record.filter_area
        return self.record.num_col // producer_rows

    def channels_per_group(self, producer_rows: int) -> int:
        if self.kind == "conv":
            return self.record.in_channels
        return producer_rows

    def accepts_rows_from(self, producer_rows: int) -> bool:
        """Whether this layer's columns can be mapped onto a producer's rows"""
        rec = self.record
        if self.kind == "conv":
            return rec.in_channels * rec.group == producer_rows
        return producer_rows > 0 and rec.num_col % producer_rows == 0

    def update_num_pruned_row(self, next_controller: "LayerPruningController") -> List[int]:
        """Prune rows whose every consuming column in the next layer is already pruned"""
        rec = self.record
        nxt = next_controller.record
        span = next_controller.channel_span(rec.num_row)
        rows_per_group = rec.num_row // nxt.group
        pruned = []
        for row in (~rec.row_pruned).nonzero().flatten().tolist():
            channel = row % rows_per_group
            g = row // rows_per_group
            if bool(nxt.col_pruned[channel * span:(channel + 1) * span, g].all()):
                self._commit_row(row)
                pruned.append(row)
        if pruned:
            logger.debug(f"{self.name}: rows {pruned} pruned, nothing downstream reads them")
        return pruned

    def update_num_pruned_col(self, rows: List[int], producer_rows: int) -> int:
        """Prune the column blocks fed by rows the previous layer just pruned"""
        rec = self.record
        if not rows:
            return 0
        span = self.channel_span(producer_rows)
        per_group = self.channels_per_group(producer_rows)
        rows_per_group = rec.num_row // rec.group
        matrix = self._matrix()
        num_blocks = 0
        for producer_row in rows:
            channel = producer_row % per_group
            g = producer_row // per_group
            cols = slice(channel * span, (channel + 1) * span)
            if bool(rec.col_pruned[cols, g].all()):
                continue
            group_rows = slice(g * rows_per_group, (g + 1) * rows_per_group)
            matrix[group_rows, cols] = 0
            rec.mask[group_rows, cols] = False
            rec.col_pruned[cols, g] = True
            rec.num_pruned_col += span / rec.group
            num_blocks += 1
        if num_blocks:
            logger.debug(f"{self.name}: pruned {num_blocks} input channel block(s) from upstream rows")
        return num_blocks

    # ------------------------------------------------------------------
    # Ratios and restoration

    def update_pruned_ratio(self) -> float:
        rec = self.record
        if self.config.unit == "Weight":
            whole_rows = rec.weight_pruned.all(dim=1) & ~rec.row_pruned
            rec.row_pruned |= whole_rows
            rec.num_pruned_row += int(whole_rows.sum().item())
            whole_cols = rec.weight_pruned.all(dim=0) & ~rec.col_pruned[:, 0]
            rec.col_pruned[whole_cols] = True
            rec.num_pruned_col += int(whole_cols.sum().item())

        rec.pruned_ratio_col = rec.num_pruned_col / rec.num_col
        rec.pruned_ratio_row = rec.num_pruned_row / rec.num_row
        if self.config.unit == "Weight":
            rec.pruned_ratio = rec.num_pruned_weight / rec.count
        else:
            rec.pruned_ratio = (rec.pruned_ratio_col + rec.pruned_ratio_row
                                - rec.pruned_ratio_col * rec.pruned_ratio_row)
        return rec.pruned_ratio

    def compute_blob_mask(self, snapshot_dir: Optional[str] = None) -> None:
        """Rebuild pruned flags, counters and masks from the zeros in the weight"""
        rec = self.record
        cfg = self.config
        matrix = self._matrix()

        if cfg.unit == "Weight":
            zero = matrix == 0
            rec.weight_pruned |= zero
            rec.mask &= ~zero
            rec.num_pruned_weight = int(rec.weight_pruned.sum().item())
        else:
            rows_per_group = rec.num_row // rec.group
            for g in range(rec.group):
                group_rows = slice(g * rows_per_group, (g + 1) * rows_per_group)
                empty_cols = matrix[group_rows].abs().sum(dim=0) == 0
                rec.col_pruned[:, g] |= empty_cols
                rec.mask[group_rows] &= ~empty_cols.unsqueeze(0)
            if cfg.is_probabilistic and cfg.unit == "Col":
                rec.history_prob[rec.col_pruned[:, 0]] = 0

            empty_rows = row_l1(matrix) == 0
            rec.row_pruned |= empty_rows
            rec.mask &= ~empty_rows.unsqueeze(1)

            rec.num_pruned_col = rec.col_pruned.sum().item() / rec.group
            rec.num_pruned_row = int(rec.row_pruned.sum().item())

        self.update_pruned_ratio()
        achieved = rec.achieved_ratio(cfg.method, cfg.unit)
        if achieved >= rec.prune_ratio:
            logger.info(f"{rec.index}: {self.name} prune finished")
        elif cfg.is_probabilistic:
            self.restore_prune_prob(achieved, snapshot_dir)

        logger.info(f"Masks restored for {self.name}, num_pruned_col = {rec.num_pruned_col} "
                    f"num_pruned_row = {rec.num_pruned_row} pruned_ratio = {rec.pruned_ratio:.4f} "
                    f"prune_ratio = {rec.prune_ratio}")

    def _prob_snapshot_path(self, snapshot_dir: Optional[str]) -> Optional[Path]:
        snapshot_dir = snapshot_dir or self.config.snapshot_dir
        if snapshot_dir is None:
            return None
        return Path(snapshot_dir) / "prob_snapshot" / f"prob_{self.name}.txt"

    def restore_prune_prob(self, achieved_ratio: float, snapshot_dir: Optional[str] = None) -> bool:
        """Load per-column probabilities saved by ``snapshot_prune_prob``"""
        rec = self.record
        path = self._prob_snapshot_path(snapshot_dir)
        if path is None or not path.exists():
            if achieved_ratio > 0:
                logger.warning(f"Failed to restore prune prob of {self.name}: cannot open {path}")
            else:
                logger.debug(f"No prune prob snapshot for {self.name}")
            return False

        with open(path, 'r') as f:
            f.readline()  # iteration
            values = np.array(f.read().split(), dtype=np.float32)

        if values.size != rec.history_prob.numel():
            raise ConfigurationError(
                f"prob snapshot {path} holds {values.size} values, layer has {rec.history_prob.numel()} units",
                layer=self.name, check="restore_prune_prob",
            )
        rec.history_prob.copy_(torch.from_numpy(values))
        logger.info(f"Prune prob of {self.name} restored from {path}")
        return True

    def snapshot_prune_prob(self, snapshot_dir: Optional[str] = None, iteration: Optional[int] = None) -> Path:
        """Write per-unit probabilities in the format ``restore_prune_prob`` reads"""
        path = self._prob_snapshot_path(snapshot_dir)
        if path is None:
            raise ConfigurationError("no snapshot directory configured", layer=self.name,
                                     check="snapshot_prune_prob")
        path.parent.mkdir(parents=True, exist_ok=True)
        iteration = self.state.step if iteration is None else iteration
        values = self.record.history_prob.detach().cpu().numpy()
        np.savetxt(path, values[None, :], fmt="%.8g", delimiter=" ", header=str(iteration), comments="")
        logger.info(f"Prune prob of {self.name} saved to {path}")
        return path

    # ------------------------------------------------------------------
    # Gradient handling and diagnostics

    def mask_gradient(self) -> None:
        grad = self._grad_matrix()
        if grad is not None:
            grad.mul_(self.record.mask)

    def describe_units(self, mode: str = "f", show_num: Optional[int] = None) -> List[Dict[str, Any]]:
        """Per-unit diagnostics: mean |weight| ('f') or |grad| ('b'), mask and history"""
        if mode not in ("f", "b"):
            raise ValueError(f"mode must be 'f' or 'b', got {mode!r}")
        rec = self.record
        cfg = self.config
        show_num = cfg.show_num if show_num is None else show_num
        source = weight_matrix(self.module.weight) if mode == "f" else self._grad_matrix()
        if source is None:
            source = torch.zeros(rec.num_row, rec.num_col)

        if cfg.is_regularization:
            info_name, info = "history_reg", rec.history_reg
        elif cfg.is_probabilistic:
            info_name, info = "history_prob", rec.history_prob
        else:
            info_name, info = None, None

        rows = []
        if cfg.unit == "Row":
            values = source.abs().mean(dim=1)
            masks = rec.mask[:, 0]
            label = "r"
        elif cfg.unit == "Col":
            values = source.abs().mean(dim=0)
            masks = rec.mask[0]
            label = "c"
        else:
            values = source.abs().reshape(-1)
            masks = rec.mask.reshape(-1)
            label = "w"

        for i in range(min(show_num, values.numel())):
            entry = {
                "unit": f"{label}{i + 1}",
                "value": float(values[i]),
                "mask": int(masks[i]),
            }
            if info_name is not None:
                entry[info_name] = float(info[i])
            rows.append(entry)
        return rows
