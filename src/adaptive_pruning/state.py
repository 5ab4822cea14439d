"""
Shared pruning state for one training run

``PruningState`` is the registry every controller, policy and regularizer
reads and writes. Each registered layer owns a ``LayerRecord`` holding its
masks, pruned flags, counters and per-unit history accumulators. Weight
tensors are addressed as ``(num_row, num_col)`` views, row-major, so the
flat element index is ``row * num_col + col``.
"""

from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, Iterable, List, Optional
import logging

import torch

from .config import LayerPruneConfig, PruneConfig
from .errors import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass
class LayerRecord:
    """Pruning bookkeeping for a single Conv2d or Linear weight"""
    name: str
    index: int
    kind: str  # conv, fc
    num_row: int
    num_col: int
    group: int
    filter_area: int
    in_channels: int
    prune_ratio: float
    priority: int
    delta: float
    update_row_col: bool
    mask: torch.Tensor
    weight_pruned: torch.Tensor
    row_pruned: torch.Tensor
    col_pruned: torch.Tensor
    history_prob: torch.Tensor
    history_reg: torch.Tensor
    history_score: torch.Tensor
    history_rank: torch.Tensor
    num_pruned_weight: int = 0
    num_pruned_row: int = 0
    num_pruned_col: float = 0.0
    pruned_ratio: float = 0.0
    pruned_ratio_row: float = 0.0
    pruned_ratio_col: float = 0.0
    iter_prune_finished: Optional[int] = None
    reg_to_distribute: float = 0.0
    # (step, pruned_ratio) at the first step of each new ratio
    ratio_history: List = field(default_factory=list)

    @property
    def count(self) -> int:
        return self.num_row * self.num_col

    @property
    def finished(self) -> bool:
        return self.iter_prune_finished is not None

    def unit_pruned(self, unit: str) -> torch.Tensor:
        """Committed pruned flag per structural unit, flattened"""
        if unit == "Col":
            return self.col_pruned[:, 0]
        if unit == "Row":
            return self.row_pruned
        return self.weight_pruned.reshape(-1)

    def num_pruned_units(self, unit: str) -> int:
        if unit == "Col":
            return int(self.num_pruned_col)
        if unit == "Row":
            return self.num_pruned_row
        return self.num_pruned_weight

    def num_units(self, unit: str) -> int:
        if unit == "Col":
            return self.num_col
        if unit == "Row":
            return self.num_row
        return self.count

    def achieved_ratio(self, method: str, unit: str) -> float:
        """Ratio compared against ``prune_ratio`` to decide whether the layer is done"""
        if method in ("FP", "TP") or unit == "Row":
            return self.pruned_ratio_row
        if unit == "Col":
            return self.pruned_ratio_col
        return self.pruned_ratio


class PrunedRowQueue:
    """Rows pruned in one layer, waiting to be removed from the next layer's columns"""

    def __init__(self, producer: str, consumer: str):
        self.producer = producer
        self.consumer = consumer
        self._rows: Deque[int] = deque()

    def push(self, row: int) -> None:
        self._rows.append(int(row))

    def extend(self, rows: Iterable[int]) -> None:
        for row in rows:
            self.push(row)

    def drain(self) -> List[int]:
        rows = list(self._rows)
        self._rows.clear()
        return rows

    def __len__(self) -> int:
        return len(self._rows)


class PruningState:
    """Registry of prunable layers plus the global step counters"""

    def __init__(self, config: PruneConfig):
        self.config = config
        self.layer_index: Dict[str, int] = {}
        self.layers: List[LayerRecord] = []
        self.conv_layer_count = 0
        self.fc_layer_count = 0
        self.step = 0
        self.inner_iter = 0
        self.all_layers_finished = False

    @property
    def layer_count(self) -> int:
        return len(self.layers)

    def register(self, name: str, weight: torch.Tensor, kind: str,
                 layer_config: Optional[LayerPruneConfig] = None,
                 group: int = 1, training: bool = True) -> Optional[LayerRecord]:
        """Register a layer once and allocate its record.

        Registering an existing name returns the existing record. Nothing is
        registered outside training mode.
        """
        if not training:
            return None
        if name in self.layer_index:
            return self.layers[self.layer_index[name]]
        if kind not in ("conv", "fc"):
            raise ConfigurationError(f"unknown layer kind '{kind}'", layer=name, check="register")
        if weight.dim() < 2:
            raise ConfigurationError("weight must have at least two dimensions", layer=name, check="register")
        if weight.shape[0] % group != 0:
            raise ConfigurationError(
                f"{weight.shape[0]} rows cannot be split into {group} groups", layer=name, check="register"
            )

        layer_config = layer_config or self.config.layer_config(name)
        num_row = weight.shape[0]
        num_col = weight.numel() // num_row
        filter_area = weight.shape[2] * weight.shape[3] if kind == "conv" and weight.dim() == 4 else 1
        device = weight.device

        num_units = {"Weight": num_row * num_col, "Row": num_row, "Col": num_col}[self.config.unit]
        record = LayerRecord(
            name=name,
            index=len(self.layers),
            kind=kind,
            num_row=num_row,
            num_col=num_col,
            group=group,
            filter_area=filter_area,
            in_channels=weight.shape[1],
            prune_ratio=layer_config.prune_ratio,
            priority=layer_config.priority,
            delta=layer_config.delta,
            update_row_col=layer_config.update_row_col and self.config.update_row_col,
            mask=torch.ones(num_row, num_col, dtype=torch.bool, device=device),
            weight_pruned=torch.zeros(num_row, num_col, dtype=torch.bool, device=device),
            row_pruned=torch.zeros(num_row, dtype=torch.bool, device=device),
            col_pruned=torch.zeros(num_col, group, dtype=torch.bool, device=device),
            history_prob=torch.ones(num_units, device=device),
            history_reg=torch.zeros(num_units, device=device),
            history_score=torch.zeros(num_units, device=device),
            history_rank=torch.zeros(num_units, device=device),
        )

        self.layer_index[name] = record.index
        self.layers.append(record)
        if kind == "conv":
            self.conv_layer_count += 1
        else:
            self.fc_layer_count += 1

        logger.info(f"Registered layer {name} as index {record.index} "
                    f"({num_row}x{num_col}, group={group}), total layers: {self.layer_count}")
        return record

    def get(self, name: str) -> Optional[LayerRecord]:
        index = self.layer_index.get(name)
        return None if index is None else self.layers[index]

    def higher_priority_finished(self, index: int) -> bool:
        """True when every layer with a strictly lower priority value has finished.

        Layers without a pruning target never finish and never block.
        """
        priority = self.layers[index].priority
        return all(
            record.finished for record in self.layers
            if record.priority < priority and record.prune_ratio > 0
        )

    def update_all_finished(self) -> bool:
        self.all_layers_finished = all(
            record.finished for record in self.layers if record.prune_ratio > 0
        )
        return self.all_layers_finished
