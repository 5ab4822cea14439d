"""
Tests for the pruning engine driving whole models step by step
"""

import pytest
import torch
import torch.nn as nn
from pathlib import Path

# Import our modules
import sys
sys.path.append(str(Path(__file__).parent.parent / "src"))

from adaptive_pruning.config import LayerPruneConfig, PruneConfig, SolverConfig
from adaptive_pruning.engine import PruningEngine
from adaptive_pruning.errors import ConfigurationError
from adaptive_pruning.models import ModernMLP, SmallConvNet


def run_step(engine, model, optimizer=None, inputs=None):
    """One training step through every engine hook"""
    engine.begin_step()
    if optimizer is not None:
        optimizer.zero_grad()
    engine.before_forward()
    if inputs is not None:
        model(inputs).sum().backward()
    engine.after_backward()
    if optimizer is not None:
        optimizer.step()
    engine.after_update()


class TestEngineSetup:
    """Test cases for registration and queue wiring"""

    def test_registers_in_module_order(self):
        """Test convolutions and linears are registered in named_modules order"""
        model = SmallConvNet()
        engine = PruningEngine(model, PruneConfig(method="FP", unit="Row"))

        assert [c.name for c in engine.controllers] == ["convs.0", "convs.1", "classifier"]
        assert engine.state.conv_layer_count == 2
        assert engine.state.fc_layer_count == 1
        assert engine.outgoing[0] is engine.incoming[1]
        assert engine.outgoing[1] is engine.incoming[2]
        assert engine.outgoing[2] is None

    def test_no_queue_without_row_propagation(self):
        """Test update_row_col=False disables the queues"""
        engine = PruningEngine(ModernMLP(hidden_sizes=[8, 4]), PruneConfig(update_row_col=False))
        assert all(queue is None for queue in engine.outgoing)

    def test_not_registered_outside_training(self):
        """Test nothing is registered in evaluation mode"""
        engine = PruningEngine(ModernMLP(hidden_sizes=[8]), PruneConfig(), training=False)
        assert engine.controllers == []

    def test_layer_name_for(self):
        """Test weights map to their layer and biases to nothing"""
        model = ModernMLP(hidden_sizes=[8])
        engine = PruningEngine(model, PruneConfig())

        assert engine.layer_name_for(model.network[0].weight) == "network.0"
        assert engine.layer_name_for(model.network[0].bias) is None

    def test_build_optimizer_validates(self):
        """Test an optimizer is refused for an impossible combination"""
        engine = PruningEngine(ModernMLP(hidden_sizes=[8]), PruneConfig(method="FP", unit="Row"))
        with pytest.raises(ConfigurationError):
            engine.build_optimizer(SolverConfig(regularization_type="SelectiveReg"))


class TestFilterPruneScenario:
    """Hard top-k pruning with propagation into a grouped convolution"""

    def test_prune_and_propagate(self):
        """Test row 3 of the first layer removes columns 9..17 of group 1 downstream"""
        model = nn.Sequential(nn.Conv2d(3, 4, 1), nn.Conv2d(4, 6, 3, groups=2))
        with torch.no_grad():
            for row, total in enumerate([0.5, 0.9, 0.6, 0.05]):
                model[0].weight[row].fill_(total / 3)
            model[1].weight.fill_(1.0)
        config = PruneConfig(method="FP", unit="Row", num_once_prune=1, prune_interval=1,
                             layers={"0": LayerPruneConfig(prune_ratio=0.25)})
        engine = PruningEngine(model, config)

        engine.begin_step()
        engine.before_forward()

        first, second = engine.controllers[0].record, engine.controllers[1].record
        assert first.row_pruned.tolist() == [False, False, False, True]
        assert second.num_pruned_col == pytest.approx(4.5)
        assert bool(second.col_pruned[9:18, 1].all())
        assert not bool(second.col_pruned[:, 0].any())
        assert first.iter_prune_finished == 1
        assert second.iter_prune_finished is None  # nothing to prune there
        assert len(engine.outgoing[0]) == 0

        matrix = model[1].weight.data.view(6, 18)
        assert bool((matrix[3:6, 9:18] == 0).all())
        assert bool((matrix[0:3] == 1).all())

    def test_filter_prune_interval(self):
        """Test rows are only pruned on steps divisible by prune_interval"""
        model = nn.Sequential(nn.Linear(4, 8))
        config = PruneConfig(method="FP", unit="Row", prune_interval=3,
                             default_layer=LayerPruneConfig(prune_ratio=0.5))
        engine = PruningEngine(model, config)
        record = engine.controllers[0].record

        counts = []
        for _ in range(6):
            run_step(engine, model)
            counts.append(record.num_pruned_row)
        assert counts == [0, 0, 1, 1, 1, 2]
        # The ratio history only grows when the ratio changes
        assert record.ratio_history == [(1, 0.0), (3, 0.125), (6, 0.25)]


class TestPriorityGating:
    """Layers prune in priority order"""

    def test_priorities(self):
        """Test a layer waits until every lower priority value has finished"""
        torch.manual_seed(0)
        model = nn.Sequential(nn.Linear(8, 8), nn.Linear(8, 8), nn.Linear(8, 8))
        config = PruneConfig(
            method="FP", unit="Row", prune_interval=1, update_row_col=False,
            layers={str(i): LayerPruneConfig(prune_ratio=0.25, priority=i) for i in range(3)},
        )
        engine = PruningEngine(model, config)
        records = [c.record for c in engine.controllers]

        run_step(engine, model)
        assert [r.num_pruned_row for r in records] == [1, 0, 0]
        run_step(engine, model)
        assert [r.num_pruned_row for r in records] == [2, 1, 0]
        assert records[0].iter_prune_finished == 2
        run_step(engine, model)
        assert [r.num_pruned_row for r in records] == [2, 2, 1]
        assert not engine.state.all_layers_finished
        run_step(engine, model)
        assert [r.num_pruned_row for r in records] == [2, 2, 2]
        assert [r.iter_prune_finished for r in records] == [2, 3, 4]
        assert engine.state.all_layers_finished


class TestRegularizationScenario:
    """Regularization ramps a column to the target, then it is committed"""

    def test_ramp_then_commit(self):
        """Test the weakest column is pruned when its penalty reaches target_reg"""
        model = nn.Sequential(nn.Linear(4, 2, bias=False))
        with torch.no_grad():
            model[0].weight.copy_(torch.tensor([[0.1, 0.5, 1.0, 1.5], [0.1, 0.5, 1.0, 1.5]]))
        config = PruneConfig(method="Reg-L1", unit="Col", aa=0.25, target_reg=1.0,
                             default_layer=LayerPruneConfig(prune_ratio=0.25))
        engine = PruningEngine(model, config)
        optimizer = engine.build_optimizer(
            SolverConfig(learning_rate=0.0, weight_decay=0.0, regularization_type="SelectiveReg"))
        record = engine.controllers[0].record
        inputs = torch.ones(1, 4)

        for _ in range(3):
            run_step(engine, model, optimizer, inputs)
        assert record.history_reg[0].item() == pytest.approx(0.75)
        assert record.num_pruned_col == 0

        run_step(engine, model, optimizer, inputs)
        assert record.col_pruned[:, 0].tolist() == [True, False, False, False]
        assert bool((model[0].weight[:, 0] == 0).all())
        assert record.iter_prune_finished == 4
        assert engine.state.all_layers_finished

        # Finished layers are no longer regularized
        run_step(engine, model, optimizer, inputs)
        assert record.history_reg[0].item() == pytest.approx(1.0)


class TestProbabilisticScenario:
    """Probabilistic column pruning until the target is met"""

    def test_reaches_target_and_freezes_mask(self):
        """Test columns are committed one by one and the mask is frozen at the end"""
        torch.manual_seed(0)
        model = nn.Sequential(nn.Linear(8, 4, bias=False))
        config = PruneConfig(method="PP", unit="Col", aa=0.5, cgamma=1.0, seed=1,
                             default_layer=LayerPruneConfig(prune_ratio=0.25))
        engine = PruningEngine(model, config)
        record = engine.controllers[0].record

        ratios = []
        for _ in range(20):
            run_step(engine, model)
            ratios.append(record.pruned_ratio_col)
            if record.finished:
                break

        assert record.finished
        assert ratios == sorted(ratios)
        assert record.num_pruned_col == 2
        pruned = record.col_pruned[:, 0]
        assert bool((model[0].weight[:, pruned] == 0).all())
        assert not bool(record.mask[:, pruned].any())
        assert bool(record.mask[:, ~pruned].all())
        assert bool((record.history_prob[~pruned] == 1).all())

        # Frozen: further steps change nothing
        weight = model[0].weight.data.clone()
        run_step(engine, model)
        assert torch.equal(model[0].weight.data, weight)

    def test_rows_pruned_downstream_survive_weight_restore(self):
        """Test a row pruned while its weights are transiently masked stays zero after backward"""
        model = nn.Sequential(nn.Linear(3, 4, bias=False), nn.Linear(4, 2, bias=False))
        with torch.no_grad():
            model[0].weight.copy_(torch.tensor([[0.1, 1.0, 2.0]] * 4))
            model[1].weight.copy_(torch.tensor([[0.01, 1.0, 2.0, 3.0]] * 2))
        config = PruneConfig(method="PP-exp", unit="Col", aa=1.0, kk=0.25, seed=0, layers={
            "0": LayerPruneConfig(prune_ratio=0.6),
            "1": LayerPruneConfig(prune_ratio=0.5),
        })
        engine = PruningEngine(model, config)
        first, second = engine.controllers[0].record, engine.controllers[1].record
        inputs = torch.ones(1, 3)

        engine.begin_step()
        engine.before_forward()
        model(inputs).sum().backward()
        engine.after_backward()

        assert second.col_pruned[:, 0].tolist() == [True, False, False, False]
        assert first.row_pruned.tolist() == [True, False, False, False]
        assert bool((model[0].weight[0] == 0).all())
        assert bool((model[1].weight[:, 0] == 0).all())
        assert bool((model[0].weight[1:, 1:] != 0).all())

        # The row stays pruned on later steps
        run_step(engine, model, inputs=inputs)
        assert bool((model[0].weight[0] == 0).all())
        assert not bool(first.mask[0].any())


class TestRestoreAndSummary:
    """Mask restoration from weights and the progress summary"""

    def test_restore_masks_idempotent(self):
        """Test restoring twice from the same weights gives the same state"""
        model = nn.Sequential(nn.Linear(4, 4), nn.Linear(4, 2))
        with torch.no_grad():
            model[0].weight[1].zero_()
        config = PruneConfig(method="FP", unit="Row", layers={"0": LayerPruneConfig(prune_ratio=0.25)})
        engine = PruningEngine(model, config)

        engine.restore_masks()
        first = engine.summary()
        engine.restore_masks()
        second = engine.summary()

        assert first == second
        assert first["layers"][0]["num_pruned_row"] == 1
        assert first["layers"][0]["iter_prune_finished"] == 0

    def test_summary(self):
        """Test the summary lists every layer and the overall sparsity"""
        model = ModernMLP(hidden_sizes=[8])
        with torch.no_grad():
            model.network[0].weight.zero_()
        engine = PruningEngine(model, PruneConfig())
        summary = engine.summary()

        assert summary["method"] == "None"
        assert [layer["name"] for layer in summary["layers"]] == ["network.0", "network.3"]
        assert summary["sparsity"] == pytest.approx(784 * 8 / (784 * 8 + 8 * 10))

    def test_taylor_pruning_through_hooks(self):
        """Test Taylor pruning runs after backward on convolutions"""
        torch.manual_seed(0)
        model = SmallConvNet(conv_channels=[4, 8])
        config = PruneConfig(method="TP", unit="Row", prune_interval=1,
                             layers={"convs.0": LayerPruneConfig(prune_ratio=0.5)})
        engine = PruningEngine(model, config)
        inputs = torch.randn(2, 1, 28, 28)

        run_step(engine, model, inputs=inputs)
        first = engine.controllers[0].record
        assert first.num_pruned_row == 1

        # The pruned channel removes one 3x3 column block of the next convolution
        engine.begin_step()
        engine.before_forward()
        assert engine.controllers[1].record.num_pruned_col == 9
        assert int(engine.controllers[1].record.col_pruned[:, 0].sum()) == 9
        engine.detach()
