"""
Visualization tools for pruning progress

Plots read the bookkeeping kept in ``PruningState``: pruned ratio per step,
per-unit survival probability or regularization, and the weight masks.
"""

import matplotlib.pyplot as plt
import seaborn as sns
import numpy as np
import pandas as pd
from typing import Dict, List, Any, Optional
from pathlib import Path
import logging

from .state import LayerRecord, PruningState

logger = logging.getLogger(__name__)

# Set style
plt.style.use('seaborn-v0_8')
sns.set_palette("husl")


class PruningVisualizer:
    """Plots of pruning progress for one run"""

    def __init__(self, save_dir: str = "visualizations"):
        self.save_dir = Path(save_dir)
        self.save_dir.mkdir(parents=True, exist_ok=True)

    def _finish(self, fig, save_path: Optional[str], what: str) -> None:
        plt.tight_layout()
        if save_path:
            fig.savefig(save_path, dpi=300, bbox_inches='tight')
            logger.info(f"{what} plot saved to {save_path}")
            plt.close(fig)
        else:
            plt.show()

    def plot_pruned_ratio_history(self, state: PruningState,
                                  title: str = "Pruned Ratio per Layer",
                                  save_path: Optional[str] = None) -> None:
        """Pruned ratio against training step, one line per layer, target as a dashed line"""
        records = [record for record in state.layers if record.ratio_history]
        if not records:
            logger.warning("No pruning history recorded yet")
            return

        fig, ax = plt.subplots(figsize=(12, 6))
        fig.suptitle(title, fontsize=16, fontweight='bold')

        for record in records:
            steps, ratios = map(list, zip(*record.ratio_history))
            if steps[-1] < state.step:
                steps.append(state.step)
                ratios.append(ratios[-1])
            line, = ax.plot(steps, ratios, linewidth=2, drawstyle='steps-post', label=record.name)
            if record.prune_ratio > 0:
                ax.axhline(record.prune_ratio, color=line.get_color(), linestyle='--', alpha=0.5)
            if record.finished:
                ax.axvline(record.iter_prune_finished, color=line.get_color(), linestyle=':', alpha=0.5)

        ax.set_xlabel('Step')
        ax.set_ylabel('Pruned Ratio')
        ax.set_ylim(0, 1)
        ax.grid(True, alpha=0.3)
        ax.legend()

        self._finish(fig, save_path, "Pruned ratio history")

    def plot_unit_history(self, record: LayerRecord, method: str = "PP",
                          title: Optional[str] = None,
                          save_path: Optional[str] = None) -> None:
        """Survival probability (probabilistic methods) or accumulated regularization per unit"""
        if method in ("PP", "PP-exp", "PP-linear"):
            values, label = record.history_prob, "Survival Probability"
        else:
            values, label = record.history_reg, "Accumulated Regularization"
        values = values.detach().cpu().numpy()
        order = np.argsort(values, kind="stable")

        fig, axes = plt.subplots(1, 2, figsize=(15, 5))
        fig.suptitle(title or f"{record.name}: {label}", fontsize=16, fontweight='bold')

        axes[0].bar(np.arange(values.size), values, color='lightblue', alpha=0.8)
        axes[0].set_title('By Unit Index')
        axes[0].set_xlabel('Unit')
        axes[0].set_ylabel(label)

        axes[1].plot(values[order], 'r-', linewidth=2, marker='o', markersize=3)
        axes[1].set_title('Sorted')
        axes[1].set_xlabel('Rank')
        axes[1].set_ylabel(label)
        axes[1].grid(True, alpha=0.3)

        self._finish(fig, save_path, "Unit history")

    def plot_mask(self, record: LayerRecord, title: Optional[str] = None,
                  save_path: Optional[str] = None) -> None:
        """Heatmap of the (num_row, num_col) mask, kept weights light"""
        mask = record.mask.detach().cpu().numpy().astype(np.float32)

        fig, ax = plt.subplots(figsize=(min(2 + mask.shape[1] * 0.15, 20), min(2 + mask.shape[0] * 0.15, 12)))
        fig.suptitle(title or f"{record.name}: Mask", fontsize=16, fontweight='bold')
        sns.heatmap(mask, ax=ax, cmap="rocket", vmin=0, vmax=1, cbar=False,
                    xticklabels=False, yticklabels=False)
        ax.set_xlabel(f'Column ({record.num_col})')
        ax.set_ylabel(f'Row ({record.num_row})')

        self._finish(fig, save_path, "Mask")

    def plot_layer_summary(self, summary: Dict[str, Any],
                           title: str = "Layer-wise Pruning Summary",
                           save_path: Optional[str] = None) -> Optional[pd.DataFrame]:
        """Bar charts of achieved vs target ratio per layer from ``PruningEngine.summary()``"""
        if not summary.get("layers"):
            logger.warning("No layers to summarize")
            return None

        df = pd.DataFrame(summary["layers"])
        melted = df.melt(id_vars=["name"], value_vars=["prune_ratio", "pruned_ratio",
                                                       "pruned_ratio_row", "pruned_ratio_col"],
                         var_name="ratio", value_name="value")

        fig, axes = plt.subplots(1, 2, figsize=(15, 5))
        fig.suptitle(title, fontsize=16, fontweight='bold')

        sns.barplot(data=melted, x="name", y="value", hue="ratio", ax=axes[0])
        axes[0].set_title('Target vs Achieved')
        axes[0].set_ylabel('Ratio')
        axes[0].tick_params(axis='x', rotation=45)

        axes[1].bar(df["name"], df["num_pruned_row"], label='Rows', alpha=0.8)
        axes[1].bar(df["name"], df["num_pruned_col"], bottom=df["num_pruned_row"], label='Columns', alpha=0.8)
        axes[1].set_title('Pruned Units')
        axes[1].set_ylabel('Count')
        axes[1].tick_params(axis='x', rotation=45)
        axes[1].legend()

        self._finish(fig, save_path, "Layer summary")
        return df

    def generate_report(self, state: PruningState, summary: Dict[str, Any],
                        save_dir: Optional[str] = None) -> List[Path]:
        """Write every plot for a run into ``save_dir``"""
        save_dir = Path(save_dir) if save_dir else self.save_dir
        save_dir.mkdir(parents=True, exist_ok=True)
        logger.info(f"Generating visualization report in {save_dir}")

        paths = []
        if any(record.ratio_history for record in state.layers):
            paths.append(save_dir / "pruned_ratio_history.png")
            self.plot_pruned_ratio_history(state, save_path=paths[-1])
        if summary.get("layers"):
            paths.append(save_dir / "layer_summary.png")
            self.plot_layer_summary(summary, save_path=paths[-1])
        for record in state.layers:
            paths.append(save_dir / f"mask_{record.name.replace('.', '_')}.png")
            self.plot_mask(record, save_path=paths[-1])
            if state.config.is_probabilistic or state.config.is_regularization:
                paths.append(save_dir / f"units_{record.name.replace('.', '_')}.png")
                self.plot_unit_history(record, state.config.method, save_path=paths[-1])

        logger.info("Visualization report generated successfully!")
        return paths
