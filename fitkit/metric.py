import time
import typing as t

import torch

from fitkit.const import metric_format
from fitkit.math import weighted_mean
from fitkit.utils import get_batch_size, percent


class Progress(t.NamedTuple):
    items_processed: int
    items_total: int


class MetricMetadata(t.NamedTuple):
    progress: Progress
    epoch: int
    epoch_total: int
    iteration: int
    lr: t.Optional[float] = None


class MetricEntry(t.NamedTuple):
    name: str
    formatted: str
    serialize: str


class NumericEntry(t.NamedTuple):
    value: float
    count: int = 1

    def serialize(self):
        return f"{self.value},{self.count}"

    @classmethod
    def deserialize(cls, text):
        """
        Parse either `<value>,<count>` or a bare `<value>`.
        """
        parts = text.strip().split(",")

        if len(parts) == 1:
            return cls(float(parts[0]), 1)
        if len(parts) == 2:
            return cls(float(parts[0]), int(parts[1]))

        raise ValueError(f"Unable to parse numeric entry from '{text}'")


def aggregate(entries: t.Sequence[NumericEntry]) -> float:
    return weighted_mean([e.value for e in entries], [e.count for e in entries])


class LossInput(t.NamedTuple):
    tensor: torch.Tensor
    batch_size: int = 1


class AccuracyInput(t.NamedTuple):
    outputs: torch.Tensor  # [batch, classes]
    targets: torch.Tensor  # [batch]


class Metric:
    name = "Metric"

    def update(self, item, metadata: MetricMetadata) -> MetricEntry:
        raise NotImplementedError

    def clear(self):
        raise NotImplementedError

    def adapt(self, item):
        """
        Convert a learner output item into the input expected by `update`.
        """
        return item


class Numeric:
    """
    Marks a metric whose last update can be read as a number, i.e., it can be plotted.
    """
    def value(self) -> float:
        raise NotImplementedError


def is_numeric(metric):
    return isinstance(metric, Numeric)


class NumericMetricState:
    """
    Running, batch-size weighted mean of a numeric metric over an epoch.
    """
    def __init__(self):
        self.sum = 0.
        self.count = 0
        self.current = float("nan")

    def reset(self):
        self.sum = 0.
        self.count = 0
        self.current = float("nan")

    def mean(self):
        if self.count == 0:
            return float("nan")
        return self.sum / self.count

    def update(self, value: float, batch_size: int, name: str, *, fmt: str = metric_format,
               unit: str = "") -> MetricEntry:
        self.current = value
        if batch_size > 0:
            self.sum += value * batch_size
            self.count += batch_size

        formatted = f"epoch {self.mean():{fmt}}{unit} - batch {value:{fmt}}{unit}"
        serialize = NumericEntry(value, batch_size).serialize()

        return MetricEntry(name, formatted, serialize)


class LossMetric(Metric, Numeric):
    name = "Loss"

    def __init__(self):
        self.state = NumericMetricState()

    def adapt(self, item):
        targets = getattr(item, "targets", None)
        batch_size = get_batch_size(targets) if targets is not None else 1
        return LossInput(item.loss, batch_size)

    def update(self, item: LossInput, metadata: MetricMetadata) -> MetricEntry:
        loss = item.tensor.detach().float().mean().item()
        return self.state.update(loss, item.batch_size, self.name)

    def clear(self):
        self.state.reset()

    def value(self):
        return self.state.current


class AccuracyMetric(Metric, Numeric):
    """
    Percentage of examples whose highest scoring class equals the target. Targets equal to `pad_token` are ignored.
    """
    name = "Accuracy"

    def __init__(self, pad_token=None):
        self.pad_token = pad_token
        self.state = NumericMetricState()

    def adapt(self, item):
        return AccuracyInput(item.output, item.targets)

    def update(self, item: AccuracyInput, metadata: MetricMetadata) -> MetricEntry:
        outputs = item.outputs.detach()
        targets = item.targets.detach().to(outputs.device)

        predictions = torch.argmax(outputs, dim=-1)

        mask = torch.ones_like(targets, dtype=torch.bool)
        if self.pad_token is not None:
            mask = targets != self.pad_token

        n_correct = ((predictions == targets) & mask).sum().item()
        n_total = mask.sum().item()

        accuracy = percent(n_correct / n_total) if n_total > 0 else 0.

        return self.state.update(accuracy, n_total, self.name, fmt=".2f", unit=" %")

    def clear(self):
        self.state.reset()

    def value(self):
        return self.state.current


class LearningRateMetric(Metric, Numeric):
    name = "Learning Rate"

    def __init__(self):
        self.state = NumericMetricState()

    def adapt(self, item):
        return None

    def update(self, item, metadata: MetricMetadata) -> MetricEntry:
        if metadata.lr is None:
            # no optimizer step yet, keep the entry out of the epoch mean
            return self.state.update(float("nan"), 0, self.name, fmt=".2e")

        return self.state.update(metadata.lr, 1, self.name, fmt=".2e")

    def clear(self):
        self.state.reset()

    def value(self):
        return self.state.current


class IterationSpeedMetric(Metric, Numeric):
    """
    Number of iterations processed per second since the first update of the epoch.
    """
    name = "Iteration Speed"

    def __init__(self, clock=time.time):
        self.clock = clock
        self.state = NumericMetricState()
        self.start_time = None
        self.start_iteration = 0

    def adapt(self, item):
        return None

    def update(self, item, metadata: MetricMetadata) -> MetricEntry:
        now = self.clock()

        if self.start_time is None:
            self.start_time = now
            self.start_iteration = metadata.iteration - 1

        elapsed = now - self.start_time
        iterations = metadata.iteration - self.start_iteration
        speed = iterations / elapsed if elapsed > 0 else 0.

        return self.state.update(speed, 1, self.name, fmt=".2f", unit=" iter/sec")

    def clear(self):
        self.state.reset()
        self.start_time = None
        self.start_iteration = 0

    def value(self):
        return self.state.current
