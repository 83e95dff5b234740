import logging
from unittest import mock

import pytest
import torch
import torch.utils.data as torchdata

from fitkit.callback import LearnerCallback, MetricWrapper, Metrics, MetricsCallback
from fitkit.checkpoint import CheckpointError
from fitkit.interrupter import TrainingInterrupter
from fitkit.learner import Learner, TrainEpoch, ValidEpoch
from fitkit.logger import InMemoryMetricLogger
from fitkit.lr_scheduler import ConstantLr
from fitkit.metric import LearningRateMetric, aggregate
from fitkit.dataset import SyntheticClassificationDataset
from fitkit.model import MlpClassifier


class RecordCallback(LearnerCallback):
    def __init__(self):
        self.train_items = []
        self.valid_items = []
        self.events = []
        self.closed = False

    def on_train_item(self, item):
        self.train_items.append(item)

    def on_valid_item(self, item):
        self.valid_items.append(item)

    def on_train_end_epoch(self, epoch):
        self.events.append(("train", epoch))

    def on_valid_end_epoch(self, epoch):
        self.events.append(("valid", epoch))

    def close(self):
        self.closed = True


@pytest.fixture
def loader():
    dataset = SyntheticClassificationDataset(32, n_features=4, n_classes=3, seed=0)
    return torchdata.DataLoader(dataset, batch_size=8)


@pytest.fixture
def model():
    torch.manual_seed(0)
    return MlpClassifier(4, 3, hidden_size=8)


@pytest.fixture
def optim(model):
    return torch.optim.SGD(model.parameters(), lr=0.1)


@pytest.fixture
def callback():
    return RecordCallback()


def make_learner(model, optim, callback, **kwargs):
    params = {"lr_scheduler": 0.1, "checkpointer": None, "num_epochs": 2}
    params.update(kwargs)
    return Learner(model, optim, callback=callback, **params)


def test_fit(loader, model, optim, callback):
    before = [p.detach().clone() for p in model.parameters()]

    out = make_learner(model, optim, callback).fit(loader, loader)

    assert out is model
    assert len(callback.train_items) == 8
    assert len(callback.valid_items) == 8
    assert callback.events == [("train", 1), ("valid", 1), ("train", 2), ("valid", 2)]
    assert callback.closed
    assert any(not torch.equal(b, p) for b, p in zip(before, model.parameters()))


def test_fit_items(loader, model, optim, callback):
    make_learner(model, optim, callback, num_epochs=1).fit(loader, loader)

    item = callback.train_items[-1]

    assert item.epoch == 1
    assert item.epoch_total == 1
    assert item.iteration == 4
    assert item.progress.items_processed == 4
    assert item.progress.items_total == 4
    assert item.lr == pytest.approx(0.1)
    assert callback.valid_items[0].lr is None


def test_fit_given_grad_accumulation(loader, model, optim, callback):
    with mock.patch.object(optim, "step", wraps=optim.step) as step:
        make_learner(model, optim, callback, num_epochs=1, grad_accumulation=3).fit(loader, loader)

    # 4 batches, the last one is discarded
    assert step.call_count == 1
    assert [item.lr for item in callback.train_items] == [None, None, pytest.approx(0.1), pytest.approx(0.1)]


def test_fit_given_grad_accumulation_aggregates_learning_rate(loader, model, optim):
    metrics = Metrics()
    metrics.train_numeric.append(MetricWrapper(LearningRateMetric()))
    logger_train = InMemoryMetricLogger()
    callback = MetricsCallback(mock.Mock(), metrics, logger_train, InMemoryMetricLogger())

    make_learner(model, optim, callback, num_epochs=1, grad_accumulation=2).fit(loader, loader)

    entries = logger_train.read_numeric("Learning Rate", 1)

    assert [entry.count for entry in entries] == [0, 1, 1, 1]
    assert aggregate(entries) == pytest.approx(0.1)


def test_train_epoch_given_invalid_grad_accumulation(loader):
    with pytest.raises(ValueError):
        TrainEpoch(loader, 1, 1, grad_accumulation=0)


def test_train_epoch_sums_gradients(loader, model):
    optim = mock.Mock()
    optim.param_groups = []
    epoch = TrainEpoch(loader, 1, 1, grad_accumulation=10)

    epoch.run(model, optim, ConstantLr(0.1), RecordCallback(), torch.device("cpu"), TrainingInterrupter())

    optim.step.assert_not_called()
    assert optim.zero_grad.call_count == 2


def test_fit_given_multiple_devices(loader, model, optim, callback):
    with mock.patch.object(optim, "step", wraps=optim.step) as step:
        make_learner(model, optim, callback, num_epochs=1, devices=["cpu", "cpu"]).fit(loader, loader)

    assert [item.iteration for item in callback.train_items] == [1, 2, 3, 4]
    assert step.call_count == 4


def test_fit_given_checkpoint(loader, model, optim, callback):
    checkpointer = mock.Mock()

    make_learner(model, optim, callback, num_epochs=3, checkpoint=2, checkpointer=checkpointer).fit(loader, loader)

    assert checkpointer.load_checkpoint.call_args[0][3] == 2
    assert {item.epoch for item in callback.train_items} == {3}
    assert checkpointer.checkpoint.call_args[0][3] == 3
    checkpointer.close.assert_called_once()


def test_fit_given_checkpoint_without_checkpointer(loader, model, optim, callback):
    with pytest.raises(CheckpointError):
        make_learner(model, optim, callback, checkpoint=1).fit(loader, loader)

    assert callback.closed


def test_fit_given_interrupt(loader, model, optim):
    interrupter = TrainingInterrupter()

    class StopCallback(RecordCallback):
        def on_train_item(self, item):
            super().on_train_item(item)
            interrupter.stop()

    callback = StopCallback()
    checkpointer = mock.Mock()

    make_learner(model, optim, callback, interrupter=interrupter, checkpointer=checkpointer).fit(loader, loader)

    assert len(callback.train_items) == 1
    assert callback.valid_items == []
    checkpointer.checkpoint.assert_not_called()
    assert callback.closed


def test_fit_given_multiple_devices_and_interrupt(loader, model, optim):
    interrupter = TrainingInterrupter()

    class StopCallback(RecordCallback):
        def on_train_item(self, item):
            super().on_train_item(item)
            interrupter.stop()

    callback = StopCallback()

    make_learner(model, optim, callback, devices=["cpu", "cpu"], interrupter=interrupter).fit(loader, loader)

    assert [item.iteration for item in callback.train_items] == [1]
    assert callback.valid_items == []


def test_fit_given_interrupt_does_not_log_completed(loader, model, optim, caplog):
    interrupter = TrainingInterrupter()

    class StopCallback(RecordCallback):
        def on_train_item(self, item):
            super().on_train_item(item)
            interrupter.stop()

    with caplog.at_level(logging.INFO):
        make_learner(model, optim, StopCallback(), interrupter=interrupter).fit(loader, loader)

    assert "Training interrupted." in caplog.messages
    assert "Training completed." not in caplog.messages


def test_fit_logs_completed(loader, model, optim, callback, caplog):
    with caplog.at_level(logging.INFO):
        make_learner(model, optim, callback, num_epochs=1).fit(loader, loader)

    assert "Training completed." in caplog.messages
    assert "Training interrupted." not in caplog.messages


def test_fit_resets_interrupter(loader, model, optim, callback):
    interrupter = TrainingInterrupter()
    interrupter.stop()

    make_learner(model, optim, callback, interrupter=interrupter).fit(loader, loader)

    assert len(callback.train_items) == 8
    assert len(callback.valid_items) == 8
    assert not interrupter.should_stop()


def test_fit_again_after_interrupt(loader, model, optim):
    interrupter = TrainingInterrupter()

    class StopCallback(RecordCallback):
        def on_train_item(self, item):
            super().on_train_item(item)
            interrupter.stop()

    learner = make_learner(model, optim, StopCallback(), num_epochs=1, interrupter=interrupter)
    learner.fit(loader, loader)

    learner.callback = RecordCallback()
    learner.fit(loader, loader)

    assert len(learner.callback.train_items) == 4
    assert len(learner.callback.valid_items) == 4


def test_valid_epoch_does_not_track_gradients(loader, model, callback):
    ValidEpoch(loader, 1, 1).run(model, callback, torch.device("cpu"), TrainingInterrupter())

    assert not callback.valid_items[0].item.loss.requires_grad
    assert model.training
