"""
Pruning-aware regularization

``RegularizationScheduler`` is called by the optimizer for every weight
tensor, after ordinary weight decay has been added to the gradient. For
layers under active pruning it asks the selected ``RegularizationPolicy``
for a per-element penalty multiplier and adds ``penalty * weight`` to the
gradient.

Policies that ramp a per-unit penalty keep it in ``history_reg``, clamped
to ``[0, target_reg]``. ``ThresholdPrunePolicy`` commits a unit once its
penalty reaches the target.
"""

from abc import ABC, abstractmethod
import math
from typing import Dict, Optional
import logging

import torch

from .config import PruneConfig
from .errors import ConfigurationError, PruningInvariantError
from .scoring import (
    PRUNED_SENTINEL, ascending_order, momentum_rank_update, running_rank_update, unit_l1, weight_matrix,
)
from .state import LayerRecord, PruningState

logger = logging.getLogger(__name__)


def _pruned_first(keys: torch.Tensor, pruned: torch.Tensor) -> torch.Tensor:
    """Shift pruned units below every live unit while keeping their relative order"""
    return torch.where(pruned, keys - PRUNED_SENTINEL, keys)


def _broadcast(values: torch.Tensor, unit: str, num_row: int, num_col: int) -> torch.Tensor:
    """Expand one value per unit to one value per weight element"""
    if unit == "Col":
        return values.unsqueeze(0).expand(num_row, num_col)
    if unit == "Row":
        return values.unsqueeze(1).expand(num_row, num_col)
    return values.view(num_row, num_col)


class RegularizationPolicy(ABC):
    """Computes the penalty multiplier added to the gradient of one layer"""

    def __init__(self, state: PruningState, unit: str):
        self.state = state
        self.unit = unit
        self._multipliers: Dict[int, torch.Tensor] = {}

    @property
    def config(self) -> PruneConfig:
        return self.state.config

    def _multiplier(self, record: LayerRecord, like: torch.Tensor, fill: float = 0.0) -> torch.Tensor:
        """Per-layer scratch buffer, allocated on first use"""
        buffer = self._multipliers.get(record.index)
        if buffer is None or buffer.shape != like.shape or buffer.device != like.device:
            buffer = torch.empty_like(like)
            self._multipliers[record.index] = buffer
        return buffer.fill_(fill)

    def _units_to_prune(self, record: LayerRecord, pruned: int, check: str) -> int:
        total = record.num_units(self.unit)
        to_prune = math.ceil(total * record.prune_ratio) - pruned
        if to_prune <= 0:
            raise PruningInvariantError(
                f"nothing left to prune ({to_prune}) while the layer is still active",
                layer=record.name, check=check,
            )
        return to_prune

    def _ramp(self, record: LayerRecord, units: torch.Tensor, delta: torch.Tensor) -> torch.Tensor:
        """Add ``delta`` to the accumulated penalty of ``units``, clamped to [0, target_reg]"""
        updated = (record.history_reg[units] + delta).clamp(0, self.config.target_reg)
        record.history_reg[units] = updated
        return updated

    @abstractmethod
    def penalties(self, record: LayerRecord, weight: torch.Tensor) -> Optional[torch.Tensor]:
        """Per-element multiplier for ``weight`` or None to skip this step"""

    def apply(self, record: LayerRecord, weight: torch.Tensor, grad: torch.Tensor) -> bool:
        matrix = weight_matrix(weight)
        multiplier = self.penalties(record, matrix)
        if multiplier is None:
            return False
        grad.view(record.num_row, record.num_col).add_(multiplier * matrix)
        return True


class SSLRegularization(RegularizationPolicy):
    """Group-lasso penalty ``aa * w / ||unit||_2``.

    The discriminative flavour leaves the best ``num - to_prune`` units
    unpenalized.
    """

    def __init__(self, state: PruningState, unit: str, discriminative: bool = False):
        if unit not in ("Row", "Col"):
            raise ConfigurationError(f"SSL needs unit Row or Col, got {unit}", check="SSLRegularization")
        super().__init__(state, unit)
        self.discriminative = discriminative
        self._energy: Dict[int, torch.Tensor] = {}

    def penalties(self, record, weight):
        dim = 0 if self.unit == "Col" else 1
        energy = self._energy.get(record.index)
        if energy is None:
            energy = torch.empty(record.num_units(self.unit), device=weight.device, dtype=weight.dtype)
            self._energy[record.index] = energy
        torch.sqrt((weight * weight).sum(dim=dim), out=energy)
        energy[energy == 0] = 1

        per_unit = torch.full_like(energy, self.config.aa)
        if self.discriminative:
            pruned = record.unit_pruned(self.unit)
            num_pruned = int(pruned.sum().item())
            order = ascending_order(unit_l1(weight, self.unit), pruned)
            total = record.num_units(self.unit)
            to_prune = math.ceil(total * record.prune_ratio) - num_pruned
            per_unit[order[max(to_prune, 0):total - num_pruned]] = 0

        multiplier = self._multiplier(record, weight)
        multiplier.copy_(_broadcast(per_unit / energy, self.unit, record.num_row, record.num_col))
        return multiplier


class RankScheduleRegularization(RegularizationPolicy):
    """Penalty driven by the running-average rank of each row or column.

    The continuous scheme is a two-piece exponential symmetric around the
    crossover rank ``N1``; the discontinuous scheme uses independent decay
    rates on each side of the prune boundary. The column flavour only
    changes penalties every ``prune_interval`` iterations while the rank
    average keeps updating every step.
    """

    def __init__(self, state: PruningState, unit: str, continuous: bool = True):
        if unit not in ("Row", "Col"):
            raise ConfigurationError(f"rank schedule needs unit Row or Col, got {unit}",
                                     check="RankScheduleRegularization")
        super().__init__(state, unit)
        self.continuous = continuous

    def _delta(self, j: torch.Tensor, to_prune: int, num_live: int) -> torch.Tensor:
        aa = self.config.aa
        if self.continuous:
            kk = self.config.kk
            alpha = math.log(2 / kk) / (to_prune + 1)
            n1 = -math.log(kk) / alpha
            return torch.where(
                j < n1,
                aa * torch.exp(-alpha * j),
                -aa * torch.exp(-alpha * (2 * n1 - j)) + 2 * kk * aa,
            )
        kk2 = self.config.kk2
        alpha1 = 0.0 if to_prune == 1 else math.log(1 / kk2) / (to_prune - 1)
        alpha2 = 0.0 if to_prune == num_live - 1 else math.log(1 / kk2) / (num_live - 1 - to_prune)
        return torch.where(
            j < to_prune,
            aa * torch.exp(-alpha1 * j),
            -aa * torch.exp(-alpha2 * (num_live - 1 - j)),
        )

    def penalties(self, record, weight):
        step = self.state.step
        pruned = record.unit_pruned(self.unit)
        num_pruned = int(pruned.sum().item())
        total = record.num_units(self.unit)
        num_live = total - num_pruned
        to_prune = self._units_to_prune(record, num_pruned, "RankScheduleRegularization")

        scores = _pruned_first(unit_l1(weight, self.unit), pruned)
        running_rank_update(record.history_rank, ascending_order(scores), step, frozen=pruned)

        if self.unit == "Col" and (step - 1) % self.config.prune_interval != 0:
            return None

        order = ascending_order(_pruned_first(record.history_rank, pruned))
        units = order[num_pruned:]
        j = torch.arange(num_live, device=weight.device, dtype=weight.dtype)
        reg = self._ramp(record, units, self._delta(j, to_prune, num_live))

        per_unit = torch.zeros(total, device=weight.device, dtype=weight.dtype)
        per_unit[units] = reg
        multiplier = self._multiplier(record, weight)
        multiplier.copy_(_broadcast(per_unit, self.unit, record.num_row, record.num_col))
        return multiplier


class L1DistanceRegularization(RegularizationPolicy):
    """Penalty decreasing linearly with the L1 distance from the weakest live unit"""

    def __init__(self, state: PruningState, unit: str):
        if unit not in ("Row", "Col"):
            raise ConfigurationError(f"L1 distance schedule needs unit Row or Col, got {unit}",
                                     check="L1DistanceRegularization")
        super().__init__(state, unit)

    def penalties(self, record, weight):
        aa = self.config.aa
        pruned = record.unit_pruned(self.unit)
        num_pruned = int(pruned.sum().item())
        total = record.num_units(self.unit)
        num_live = total - num_pruned
        to_prune = self._units_to_prune(record, num_pruned, "L1DistanceRegularization")

        scores = unit_l1(weight, self.unit)
        scores = torch.where(pruned, torch.full_like(scores, PRUNED_SENTINEL), scores)
        order = ascending_order(scores)
        sorted_scores = scores[order]
        best = sorted_scores[0]
        spread = (sorted_scores[min(to_prune, total - 1)] - best).item()
        k = 0.0 if spread == 0 else aa / spread

        units = order[:num_live]
        reg = self._ramp(record, units, aa - k * (sorted_scores[:num_live] - best))

        per_unit = torch.zeros(total, device=weight.device, dtype=weight.dtype)
        per_unit[units] = reg
        multiplier = self._multiplier(record, weight)
        multiplier.copy_(_broadcast(per_unit, self.unit, record.num_row, record.num_col))
        return multiplier


class QuotaRegularization(RegularizationPolicy):
    """Legacy reg-quota schedule over columns.

    Spreads the remaining penalty budget ``reg_to_distribute`` over the
    columns still to prune so they reach ``target_reg`` by ``num_iter_reg``.
    Penalties of the columns ranked as keepers shrink in proportion to how
    far their rank is from the prune boundary.
    """

    def __init__(self, state: PruningState, unit: str = "Col"):
        if unit != "Col":
            raise ConfigurationError(f"reg quota needs unit Col, got {unit}", check="QuotaRegularization")
        super().__init__(state, unit)

    def penalties(self, record, weight):
        cfg = self.config
        step = self.state.step
        num_col = record.num_col
        pruned = record.col_pruned[:, 0]
        num_pruned = int(pruned.sum().item())
        to_prune = math.ceil(num_col * record.prune_ratio)
        if num_pruned >= to_prune:
            return None

        scores = torch.where(pruned, torch.ones(num_col, device=weight.device, dtype=weight.dtype),
                             -weight.abs().sum(dim=0))
        running_rank_update(record.history_rank, ascending_order(scores), step)
        order = ascending_order(record.history_rank, pruned)
        hrank = record.history_rank[order]

        iters_left = cfg.num_iter_reg - (step - 1)
        if iters_left <= 1:
            raise PruningInvariantError(
                f"regularization ramp exhausted ({iters_left} iterations left)",
                layer=record.name, check="QuotaRegularization",
            )
        left_to_prune = to_prune - num_pruned
        quota_end = record.reg_to_distribute * 2 / iters_left / (left_to_prune + 1)
        d = (left_to_prune - 1) * quota_end / (iters_left - 1)
        quota_now = (left_to_prune - 1) * d + quota_end

        bad = slice(num_col - to_prune, num_col - num_pruned)
        hrank_sum = hrank[bad].sum().item()
        k = 0.0 if hrank_sum == 0 else quota_now / hrank_sum

        per_unit = torch.full((num_col,), cfg.target_reg, device=weight.device, dtype=weight.dtype)
        bad_units = order[bad]
        bad_reg = self._ramp(record, bad_units, k * hrank[bad])
        per_unit[bad_units] = bad_reg
        record.reg_to_distribute = to_prune * cfg.target_reg - bad_reg.sum().item()

        num_good = num_col - to_prune
        if num_good > 0:
            good_units = order[:num_good]
            boundary = hrank[num_good - 1]
            per_unit[good_units] = self._ramp(record, good_units, k * (hrank[:num_good] - boundary))

        multiplier = self._multiplier(record, weight)
        multiplier.copy_(_broadcast(per_unit, "Col", record.num_row, num_col))
        return multiplier


class WeightRankRegularization(RegularizationPolicy):
    """Rank-scheduled penalty on single weights.

    Ranks are smoothed with momentum ``hrank_momentum`` and ``aa`` ramps up
    linearly over the first ``reg_cushion_iter`` iterations.
    """

    def __init__(self, state: PruningState, unit: str = "Weight"):
        super().__init__(state, "Weight")

    def penalties(self, record, weight):
        cfg = self.config
        iteration = self.state.step - 1
        pruned = record.weight_pruned.reshape(-1)
        num_pruned = record.num_pruned_weight
        total = record.count
        to_prune = self._units_to_prune(record, num_pruned, "WeightRankRegularization")

        record.history_score.copy_(weight.abs().reshape(-1))
        momentum_rank_update(record.history_rank, ascending_order(record.history_score),
                             cfg.hrank_momentum, frozen=pruned)
        order = ascending_order(_pruned_first(record.history_rank, pruned))

        aa = cfg.aa
        if iteration < cfg.reg_cushion_iter:
            aa = (iteration + 1) / cfg.reg_cushion_iter * aa
        kk = cfg.kk
        alpha = math.log(2 / kk) / (to_prune + 1)
        n1 = -math.log(kk) / alpha

        units = order[num_pruned:]
        j = torch.arange(total - num_pruned, device=weight.device, dtype=weight.dtype)
        delta = torch.where(
            j < n1,
            aa * torch.exp(-alpha * j),
            -aa * torch.exp(-alpha * (2 * n1 - j)) + 2 * kk * aa,
        )
        reg = self._ramp(record, units, delta)

        multiplier = self._multiplier(record, weight)
        flat = multiplier.view(-1)
        flat.zero_()
        flat[units] = reg
        return multiplier


def build_regularization_policy(state: PruningState, regularization_type: str) -> Optional[RegularizationPolicy]:
    """Policy for a pruning-aware regularization type, None for plain L1/L2"""
    config = state.config
    unit = config.unit
    if regularization_type in ("L2", "L1"):
        return None
    if regularization_type == "SSL":
        return SSLRegularization(state, unit)
    if regularization_type == "SSL_discriminative":
        return SSLRegularization(state, unit, discriminative=True)
    if regularization_type == "SelectiveReg":
        if config.method == "Reg-rank":
            if unit == "Weight":
                return WeightRankRegularization(state)
            return RankScheduleRegularization(state, unit, continuous=config.rank_scheme == "continuous")
        if config.method == "Reg-L1":
            return L1DistanceRegularization(state, unit)
        raise ConfigurationError(f"SelectiveReg needs a Reg-rank or Reg-L1 method, got {config.method}",
                                 check="build_regularization_policy")
    if regularization_type == "OptimalReg":
        return QuotaRegularization(state, unit)
    raise ConfigurationError(f"unknown regularization type '{regularization_type}'",
                             check="build_regularization_policy")


class RegularizationScheduler:
    """Gatekeeper between the optimizer and the regularization policy"""

    def __init__(self, state: PruningState, policy: Optional[RegularizationPolicy]):
        self.state = state
        self.policy = policy

    def active_record(self, layer_name: Optional[str], param: torch.Tensor) -> Optional[LayerRecord]:
        """Record of a layer under active pruning, None when the parameter is left alone"""
        if layer_name is None or param.dim() == 1:
            return None
        record = self.state.get(layer_name)
        if record is None:
            return None
        cfg = self.state.config
        wants_prune = cfg.is_active and record.prune_ratio > 0
        begun = record.pruned_ratio > 0 or self.state.step >= cfg.prune_begin_iter + 1
        if not (wants_prune and begun) or record.finished:
            return None
        return record

    def regularize(self, param: torch.Tensor, layer_name: Optional[str]) -> bool:
        """Add the pruning penalty to ``param.grad``; returns whether anything was added"""
        if self.policy is None or param.grad is None:
            return False
        record = self.active_record(layer_name, param)
        if record is None:
            return False
        return self.policy.apply(record, param.data, param.grad)
