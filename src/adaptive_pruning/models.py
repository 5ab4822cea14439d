"""
Reference models for pruning experiments
"""

from typing import Dict, List

import torch
import torch.nn as nn
import torch.nn.functional as F


class ModernMLP(nn.Module):
    """Multi-Layer Perceptron, every Linear is prunable"""

    def __init__(self, input_size: int = 784, hidden_sizes: List[int] = None,
                 output_size: int = 10, dropout_rate: float = 0.2):
        super(ModernMLP, self).__init__()
        hidden_sizes = [300, 100] if hidden_sizes is None else hidden_sizes

        self.input_size = input_size
        self.hidden_sizes = hidden_sizes
        self.output_size = output_size

        layers = []
        prev_size = input_size

        for hidden_size in hidden_sizes:
            layers.extend([
                nn.Linear(prev_size, hidden_size),
                nn.ReLU(),
                nn.Dropout(dropout_rate)
            ])
            prev_size = hidden_size

        layers.append(nn.Linear(prev_size, output_size))

        self.network = nn.Sequential(*layers)
        self._initialize_weights()

    def _initialize_weights(self) -> None:
        """Initialize weights using Xavier initialization"""
        for module in self.modules():
            if isinstance(module, nn.Linear):
                nn.init.xavier_uniform_(module.weight)
                if module.bias is not None:
                    nn.init.zeros_(module.bias)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        x = x.view(x.size(0), -1)  # Flatten
        return self.network(x)

    def get_model_size(self) -> Dict[str, int]:
        """Parameter counts, zeros included"""
        total_params = sum(p.numel() for p in self.parameters())
        nonzero_params = sum(int((p != 0).sum().item()) for p in self.parameters())

        return {
            'total_parameters': total_params,
            'nonzero_parameters': nonzero_params,
            'model_size_mb': total_params * 4 / (1024 * 1024)  # Assuming float32
        }


class SmallConvNet(nn.Module):
    """Two 3x3 convolutions and a linear classifier for 28x28 single-channel images.

    The flattened feature map is channel-major, so every output channel of
    the last convolution feeds a contiguous block of classifier columns.
    """

    def __init__(self, in_channels: int = 1, conv_channels: List[int] = None,
                 output_size: int = 10, image_size: int = 28, dropout_rate: float = 0.2):
        super(SmallConvNet, self).__init__()
        conv_channels = [16, 32] if conv_channels is None else conv_channels

        convs = []
        prev = in_channels
        for channels in conv_channels:
            convs.append(nn.Conv2d(prev, channels, kernel_size=3, padding=1))
            prev = channels
        self.convs = nn.ModuleList(convs)

        spatial = image_size // (2 ** len(conv_channels))
        self.dropout = nn.Dropout(dropout_rate)
        self.classifier = nn.Linear(prev * spatial * spatial, output_size)
        self._initialize_weights()

    def _initialize_weights(self) -> None:
        for module in self.modules():
            if isinstance(module, nn.Conv2d):
                nn.init.kaiming_normal_(module.weight, mode='fan_out', nonlinearity='relu')
                nn.init.zeros_(module.bias)
            elif isinstance(module, nn.Linear):
                nn.init.xavier_uniform_(module.weight)
                nn.init.zeros_(module.bias)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        for conv in self.convs:
            x = F.max_pool2d(F.relu(conv(x)), 2)
        x = torch.flatten(x, 1)
        return self.classifier(self.dropout(x))

    def get_model_size(self) -> Dict[str, int]:
        total_params = sum(p.numel() for p in self.parameters())
        nonzero_params = sum(int((p != 0).sum().item()) for p in self.parameters())

        return {
            'total_parameters': total_params,
            'nonzero_parameters': nonzero_params,
            'model_size_mb': total_params * 4 / (1024 * 1024)
        }


def build_model(model_config) -> nn.Module:
    """Model for a ``ModelConfig``"""
    if model_config.architecture == "mlp":
        return ModernMLP(
            input_size=model_config.input_size,
            hidden_sizes=model_config.hidden_sizes,
            output_size=model_config.output_size,
            dropout_rate=model_config.dropout_rate,
        )
    if model_config.architecture == "conv":
        return SmallConvNet(
            conv_channels=model_config.conv_channels,
            output_size=model_config.output_size,
            dropout_rate=model_config.dropout_rate,
        )
    raise ValueError(f"Unknown architecture: {model_config.architecture}")
