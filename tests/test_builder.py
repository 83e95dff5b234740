import logging
import os
from unittest import mock

import pytest
import torch
import torch.utils.data as torchdata

from fitkit.builder import LearnerBuilder
from fitkit.callback import AsyncTrainerCallback
from fitkit.checkpoint import JsonFileRecorder
from fitkit.dataset import SyntheticClassificationDataset
from fitkit.learner import Learner
from fitkit.log import uninstall_file_logger
from fitkit.logger import InMemoryMetricLogger
from fitkit.metric import LossMetric, AccuracyMetric, LearningRateMetric, Metric, aggregate
from fitkit.model import MlpClassifier


@pytest.fixture
def loader():
    dataset = SyntheticClassificationDataset(24, n_features=4, n_classes=3, seed=0)
    return torchdata.DataLoader(dataset, batch_size=8)


def make_model():
    torch.manual_seed(0)
    model = MlpClassifier(4, 3, hidden_size=8)
    return model, torch.optim.Adam(model.parameters(), lr=0.01)


@pytest.fixture
def renderer():
    return mock.Mock()


def test_build(tmp_path, renderer):
    model, optim = make_model()

    learner = LearnerBuilder(str(tmp_path)) \
        .renderer(renderer) \
        .log_to_file(False) \
        .num_epochs(3) \
        .grads_accumulation(2) \
        .build(model, optim, 0.01)

    try:
        assert isinstance(learner, Learner)
        assert isinstance(learner.callback, AsyncTrainerCallback)
        assert learner.num_epochs == 3
        assert learner.grad_accumulation == 2
        assert learner.checkpointer is None
        assert learner.devices == [torch.device("cpu")]
    finally:
        learner.close()


def test_build_given_invalid_settings(tmp_path):
    builder = LearnerBuilder(str(tmp_path))

    with pytest.raises(ValueError):
        builder.grads_accumulation(0)

    with pytest.raises(TypeError):
        builder.metric_train_plot(Metric())

    with pytest.raises(TypeError):
        builder.metric_valid_plot(Metric())


def test_interrupter_is_shared(tmp_path, renderer):
    builder = LearnerBuilder(str(tmp_path)).renderer(renderer).log_to_file(False)
    handle = builder.interrupter()

    learner = builder.build(*make_model(), 0.01)
    handle.stop()

    try:
        assert learner.interrupter.should_stop()
    finally:
        learner.close()


def test_fit_writes_metrics_and_checkpoints(tmp_path, loader, renderer):
    model, optim = make_model()

    learner = LearnerBuilder(str(tmp_path)) \
        .renderer(renderer) \
        .log_to_file(False) \
        .metric_train(LearningRateMetric()) \
        .metric_train_plot(LossMetric()) \
        .metric_valid_plot(LossMetric()) \
        .metric_valid_plot(AccuracyMetric()) \
        .with_file_checkpointer(2) \
        .num_epochs(3) \
        .build(model, optim, 0.01)

    learner.fit(loader, loader)

    checkpoint = tmp_path / "checkpoint"
    assert sorted(os.listdir(checkpoint)) == [
        "model-2.pt", "model-3.pt", "optim-2.pt", "optim-3.pt", "scheduler-2.pt", "scheduler-3.pt",
    ]
    assert (tmp_path / "train" / "epoch-3" / "loss.log").exists()
    assert (tmp_path / "train" / "epoch-1" / "learning_rate.log").exists()
    assert (tmp_path / "valid" / "epoch-2" / "accuracy.log").exists()
    renderer.close.assert_called_once()


def test_fit_resumes_from_checkpoint(tmp_path, loader, renderer):
    model, optim = make_model()
    LearnerBuilder(str(tmp_path)) \
        .renderer(renderer) \
        .log_to_file(False) \
        .with_file_checkpointer(2, JsonFileRecorder()) \
        .num_epochs(2) \
        .build(model, optim, 0.01) \
        .fit(loader, loader)

    restored, restored_optim = make_model()
    logger_train, logger_valid = InMemoryMetricLogger(), InMemoryMetricLogger()
    LearnerBuilder(str(tmp_path)) \
        .renderer(mock.Mock()) \
        .log_to_file(False) \
        .metric_loggers(logger_train, logger_valid) \
        .metric_valid_plot(LossMetric()) \
        .with_file_checkpointer(2, JsonFileRecorder()) \
        .checkpoint(2) \
        .num_epochs(2) \
        .build(restored, restored_optim, 0.01) \
        .fit(loader, loader)

    # no epoch left to run, the restored model equals the trained one
    for p, q in zip(model.parameters(), restored.parameters()):
        assert torch.equal(p, q)
    with pytest.raises(KeyError):
        logger_valid.read_numeric("Loss", 3)


def test_fit_given_resume_logs_under_the_right_epoch(tmp_path, loader):
    model, optim = make_model()
    LearnerBuilder(str(tmp_path)) \
        .renderer(mock.Mock()) \
        .log_to_file(False) \
        .with_file_checkpointer(1) \
        .num_epochs(1) \
        .build(model, optim, 0.01) \
        .fit(loader, loader)

    logger_train, logger_valid = InMemoryMetricLogger(), InMemoryMetricLogger()
    LearnerBuilder(str(tmp_path)) \
        .renderer(mock.Mock()) \
        .log_to_file(False) \
        .metric_loggers(logger_train, logger_valid) \
        .metric_valid_plot(LossMetric()) \
        .with_file_checkpointer(1) \
        .checkpoint(1) \
        .num_epochs(2) \
        .build(*make_model(), 0.01) \
        .fit(loader, loader)

    assert len(logger_valid.read_numeric("Loss", 2)) == 3
    assert aggregate(logger_valid.read_numeric("Loss", 2)) > 0


def test_build_given_log_to_file(tmp_path, renderer):
    learner = LearnerBuilder(str(tmp_path)).renderer(renderer).build(*make_model(), 0.01)
    learner.close()

    path = str(tmp_path / "experiment.log")
    handlers = [h for h in logging.getLogger().handlers if getattr(h, "baseFilename", None) == path]
    for handler in handlers:
        uninstall_file_logger(handler)

    assert len(handlers) == 1
    assert os.path.exists(path)
