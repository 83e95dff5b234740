import typing as t

import torch
import torch.nn as nn
import torch.nn.functional as F


class TrainOutput(t.NamedTuple):
    loss: torch.Tensor
    item: t.Any


class ClassificationOutput(t.NamedTuple):
    loss: torch.Tensor
    output: torch.Tensor   # [b, n_classes]
    targets: torch.Tensor  # [b]


class RegressionOutput(t.NamedTuple):
    loss: torch.Tensor
    output: torch.Tensor   # [b, *]
    targets: torch.Tensor  # [b, *]


class TrainStep(nn.Module):
    """
    A model the learner can train: `train_step` returns the loss to back-propagate together with the item given to
    the metrics, `valid_step` returns the item only.
    """
    def train_step(self, batch) -> TrainOutput:
        raise NotImplementedError

    def valid_step(self, batch):
        raise NotImplementedError


class MlpClassifier(TrainStep):
    def __init__(self, in_features, n_classes, hidden_size=64, n_hidden_layer=1, dropout=0.):
        super().__init__()

        layers = []
        size = in_features
        for _ in range(n_hidden_layer):
            layers += [nn.Linear(size, hidden_size), nn.ReLU(), nn.Dropout(dropout)]
            size = hidden_size
        layers += [nn.Linear(size, n_classes)]

        self.net = nn.Sequential(*layers)

    def forward(self, x):
        return self.net(x)

    def forward_classification(self, batch):
        x, targets = batch["x"], batch["y"]

        output = self(x)
        loss = F.cross_entropy(output, targets)

        return ClassificationOutput(loss, output, targets)

    def train_step(self, batch):
        item = self.forward_classification(batch)
        return TrainOutput(item.loss, item)

    def valid_step(self, batch):
        return self.forward_classification(batch)


class LinearRegressor(TrainStep):
    def __init__(self, in_features, out_features=1):
        super().__init__()
        self.linear = nn.Linear(in_features, out_features)

    def forward(self, x):
        return self.linear(x)

    def forward_regression(self, batch):
        x, targets = batch["x"], batch["y"]

        output = self(x)
        loss = F.mse_loss(output, targets)

        return RegressionOutput(loss, output, targets)

    def train_step(self, batch):
        item = self.forward_regression(batch)
        return TrainOutput(item.loss, item)

    def valid_step(self, batch):
        return self.forward_regression(batch)
