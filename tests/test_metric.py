import math

import pytest
import torch

from fitkit.metric import NumericEntry, aggregate, NumericMetricState, LossMetric, AccuracyMetric, \
    LearningRateMetric, IterationSpeedMetric, MetricMetadata, Progress, LossInput, AccuracyInput, is_numeric, Metric
from fitkit.model import ClassificationOutput


@pytest.fixture
def metadata():
    return MetricMetadata(Progress(1, 10), epoch=1, epoch_total=2, iteration=1, lr=0.01)


def test_numeric_entry_serialize():
    assert NumericEntry(0.5, 4).serialize() == "0.5,4"


def test_numeric_entry_deserialize():
    assert NumericEntry.deserialize("0.5,4") == NumericEntry(0.5, 4)
    assert NumericEntry.deserialize("0.5") == NumericEntry(0.5, 1)

    with pytest.raises(ValueError):
        NumericEntry.deserialize("0.5,4,2")


def test_aggregate():
    assert aggregate([NumericEntry(1., 1), NumericEntry(4., 2)]) == pytest.approx(3.)


def test_numeric_metric_state():
    state = NumericMetricState()

    state.update(1., 1, "foo")
    entry = state.update(4., 2, "foo")

    assert state.mean() == pytest.approx(3.)
    assert entry.name == "foo"
    assert entry.formatted == "epoch 3.000 - batch 4.000"
    assert entry.serialize == "4.0,2"

    state.reset()
    assert math.isnan(state.mean())


def test_loss_metric(metadata):
    metric = LossMetric()

    metric.update(LossInput(torch.tensor(2.), 2), metadata)
    entry = metric.update(LossInput(torch.tensor(1.), 2), metadata)

    assert metric.value() == pytest.approx(1.)
    assert entry.formatted == "epoch 1.500 - batch 1.000"


def test_loss_metric_adapt():
    item = ClassificationOutput(torch.tensor(0.3), torch.zeros(5, 2), torch.zeros(5, dtype=torch.long))

    assert LossMetric().adapt(item).batch_size == 5


def test_accuracy_metric(metadata):
    metric = AccuracyMetric()
    outputs = torch.tensor([[0.9, 0.1], [0.2, 0.8], [0.7, 0.3], [0.4, 0.6]])
    targets = torch.tensor([0, 1, 1, 1])

    entry = metric.update(AccuracyInput(outputs, targets), metadata)

    assert metric.value() == pytest.approx(75.)
    assert entry.serialize == "75.0,4"


def test_accuracy_metric_given_pad_token(metadata):
    metric = AccuracyMetric(pad_token=-1)
    outputs = torch.tensor([[0.9, 0.1], [0.2, 0.8], [0.7, 0.3]])
    targets = torch.tensor([0, 0, -1])

    metric.update(AccuracyInput(outputs, targets), metadata)

    assert metric.value() == pytest.approx(50.)


def test_accuracy_metric_given_only_padding(metadata):
    metric = AccuracyMetric(pad_token=0)

    entry = metric.update(AccuracyInput(torch.rand(2, 3), torch.tensor([0, 0])), metadata)

    assert metric.value() == 0.
    assert entry.serialize == "0.0,0"


def test_learning_rate_metric(metadata):
    metric = LearningRateMetric()

    entry = metric.update(None, metadata)

    assert metric.value() == pytest.approx(0.01)
    assert "1.00e-02" in entry.formatted


def test_learning_rate_metric_given_no_lr(metadata):
    metric = LearningRateMetric()

    entry = metric.update(None, metadata._replace(lr=None))

    assert math.isnan(metric.value())
    assert entry.serialize == "nan,0"
    assert metric.state.count == 0


def test_iteration_speed_metric(metadata):
    times = iter([100., 102.])
    metric = IterationSpeedMetric(clock=lambda: next(times))

    metric.update(None, metadata)
    metric.update(None, metadata._replace(iteration=5))

    # 5 iterations in 2 seconds
    assert metric.value() == pytest.approx(2.5)


def test_is_numeric():
    assert is_numeric(LossMetric())
    assert not is_numeric(Metric())
