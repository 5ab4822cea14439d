"""
Importance scores and rankings for structural units

All helpers work on the ``(num_row, num_col)`` view of a weight tensor.
Orders are ascending (least important first) and stable, so ties keep
index order.
"""

from typing import Optional

import torch

# Score given to already-pruned units so they sort after every live unit
PRUNED_SENTINEL = float(2 ** 31 - 1)


def weight_matrix(weight: torch.Tensor) -> torch.Tensor:
    """``(num_row, num_col)`` view of a weight tensor, detached from autograd"""
    return weight.detach().reshape(weight.shape[0], -1)


def row_l1(matrix: torch.Tensor) -> torch.Tensor:
    return matrix.abs().sum(dim=1)


def col_l1(matrix: torch.Tensor) -> torch.Tensor:
    return matrix.abs().sum(dim=0)


def unit_l1(matrix: torch.Tensor, unit: str) -> torch.Tensor:
    """L1 magnitude of every row, column or single weight"""
    if unit == "Row":
        return row_l1(matrix)
    if unit == "Col":
        return col_l1(matrix)
    return matrix.abs().reshape(-1)


def unit_mean_magnitude(matrix: torch.Tensor, unit: str) -> torch.Tensor:
    """Mean absolute weight of every row or column, or each weight's own magnitude"""
    if unit == "Row":
        return row_l1(matrix) / matrix.shape[1]
    if unit == "Col":
        return col_l1(matrix) / matrix.shape[0]
    return matrix.abs()


def decayed_score(history: torch.Tensor, score: torch.Tensor, decay: float) -> torch.Tensor:
    """``history = decay * history + score``, in place"""
    history.mul_(decay).add_(score)
    return history


def taylor_channel_scores(activation: torch.Tensor, activation_grad: torch.Tensor) -> torch.Tensor:
    """Sum of ``|a * da|`` over batch and spatial extent, one value per output channel"""
    product = (activation.detach() * activation_grad.detach()).abs()
    dims = [d for d in range(product.dim()) if d != 1]
    return product.sum(dim=dims)


def ascending_order(scores: torch.Tensor, excluded: Optional[torch.Tensor] = None,
                    sentinel: float = PRUNED_SENTINEL) -> torch.Tensor:
    """Unit indexes sorted by score, excluded units pushed to the end"""
    if excluded is not None:
        scores = torch.where(excluded, torch.full_like(scores, sentinel), scores)
    return torch.sort(scores, stable=True).indices


def ranks_from_order(order: torch.Tensor) -> torch.Tensor:
    """Invert an order: ``ranks[unit]`` is the position of ``unit`` in ``order``"""
    ranks = torch.empty_like(order)
    ranks[order] = torch.arange(order.numel(), device=order.device)
    return ranks


def running_rank_update(history_rank: torch.Tensor, order: torch.Tensor, n: int,
                        frozen: Optional[torch.Tensor] = None) -> torch.Tensor:
    """Running average of rank: ``h = ((n - 1) * h + rank) / n``, skipping frozen units"""
    ranks = ranks_from_order(order).to(history_rank.dtype)
    updated = ((n - 1) * history_rank + ranks) / n
    if frozen is not None:
        updated = torch.where(frozen, history_rank, updated)
    history_rank.copy_(updated)
    return history_rank


def momentum_rank_update(history_rank: torch.Tensor, order: torch.Tensor, momentum: float,
                         frozen: Optional[torch.Tensor] = None) -> torch.Tensor:
    """``h = m * h + (1 - m) * rank``; a unit whose history is still zero takes its rank directly"""
    ranks = ranks_from_order(order).to(history_rank.dtype)
    blended = momentum * history_rank + (1 - momentum) * ranks
    updated = torch.where(history_rank != 0, blended, ranks)
    if frozen is not None:
        updated = torch.where(frozen, history_rank, updated)
    history_rank.copy_(updated)
    return history_rank
