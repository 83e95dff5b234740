import logging
import os

from fitkit.callback import AsyncTrainerCallback, Metrics, MetricsCallback, MetricWrapper
from fitkit.checkpoint import AsyncCheckpointer, FileCheckpointer, LearnerCheckpointer, TorchFileRecorder
from fitkit.config import get_global_device
from fitkit.interrupter import TrainingInterrupter
from fitkit.learner import Learner
from fitkit.log import install_file_logger
from fitkit.logger import FileMetricLogger
from fitkit.metric import is_numeric
from fitkit.renderer import default_renderer


class LearnerBuilder:
    """
    Configure and create a `Learner`. Every setter returns the builder itself, so calls can be chained:

        learner = LearnerBuilder("/tmp/experiment") \\
            .metric_train_plot(LossMetric()) \\
            .metric_valid_plot(LossMetric()) \\
            .with_file_checkpointer(2) \\
            .num_epochs(10) \\
            .build(model, optim, 1e-3)

    :param directory: Where checkpoints, metric logs and `experiment.log` are written
    """
    def __init__(self, directory):
        self.directory = directory
        self._num_epochs = 1
        self._checkpoint = None
        self._checkpointers = None
        self._grad_accumulation = None
        self._devices = [get_global_device() or "cpu"]
        self._metric_logger_train = None
        self._metric_logger_valid = None
        self._renderer = None
        self._metrics = Metrics()
        self._interrupter = TrainingInterrupter()
        self._log_to_file = True

    def metric_loggers(self, logger_train, logger_valid):
        """
        Replace the default file metric loggers.
        """
        self._metric_logger_train = logger_train
        self._metric_logger_valid = logger_valid
        return self

    def renderer(self, renderer):
        """
        Replace the default progress bar renderer.
        """
        self._renderer = renderer
        return self

    def metric_train(self, metric, adaptor=None):
        self._metrics.train.append(MetricWrapper(metric, adaptor))
        return self

    def metric_valid(self, metric, adaptor=None):
        self._metrics.valid.append(MetricWrapper(metric, adaptor))
        return self

    def metric_train_plot(self, metric, adaptor=None):
        """
        Register a training metric whose values are also given to the renderer as numbers.

        Only numeric metrics are accepted, a `TypeError` is raised otherwise.
        """
        _check_numeric(metric)
        self._metrics.train_numeric.append(MetricWrapper(metric, adaptor))
        return self

    def metric_valid_plot(self, metric, adaptor=None):
        _check_numeric(metric)
        self._metrics.valid_numeric.append(MetricWrapper(metric, adaptor))
        return self

    def grads_accumulation(self, accumulation):
        """
        Sum the gradients of `accumulation` consecutive iterations before each optimizer step.

        The effect is similar to multiplying both the batch size and the learning rate by `accumulation`, so it might
        be a good idea to reduce the learning rate.
        """
        if accumulation < 1:
            raise ValueError(f"Gradients accumulation must be a positive number, but {accumulation} was given")
        self._grad_accumulation = accumulation
        return self

    def num_epochs(self, num_epochs):
        self._num_epochs = num_epochs
        return self

    def devices(self, devices):
        self._devices = list(devices)
        return self

    def checkpoint(self, checkpoint):
        """
        The epoch from which the training must resume.
        """
        self._checkpoint = checkpoint
        return self

    def interrupter(self):
        """
        Return a handle which can be used to stop the training.
        """
        return self._interrupter.clone()

    def log_to_file(self, enabled):
        """
        When enabled (the default), log records are also written to `<directory>/experiment.log`.
        """
        self._log_to_file = enabled
        return self

    def with_file_checkpointer(self, num_keep, recorder=None):
        """
        Save model, optimizer and scheduler states at the end of each epoch into `<directory>/checkpoint`.

        Files are written and deleted asynchronously, so a crash might leave the last checkpoint unusable: keep at
        least two of them to be safe.
        """
        if recorder is None:
            recorder = TorchFileRecorder()

        directory = os.path.join(self.directory, "checkpoint")

        self._checkpointers = (
            AsyncCheckpointer(FileCheckpointer(recorder, directory, "model", num_keep)),
            AsyncCheckpointer(FileCheckpointer(recorder, directory, "optim", num_keep)),
            AsyncCheckpointer(FileCheckpointer(recorder, directory, "scheduler", num_keep)),
        )
        return self

    def build(self, model, optim, lr_scheduler):
        """
        Create the learner. `lr_scheduler` can be a plain learning rate.
        """
        if self._log_to_file:
            self.init_logger()

        renderer = self._renderer
        if renderer is None:
            renderer = default_renderer(self._interrupter.clone(), self._checkpoint)

        logger_train = self._metric_logger_train
        if logger_train is None:
            logger_train = FileMetricLogger(os.path.join(self.directory, "train"))

        logger_valid = self._metric_logger_valid
        if logger_valid is None:
            logger_valid = FileMetricLogger(os.path.join(self.directory, "valid"))

        callback = AsyncTrainerCallback(MetricsCallback(renderer, self._metrics, logger_train, logger_valid))

        checkpointer = None
        if self._checkpointers is not None:
            checkpointer = LearnerCheckpointer(*self._checkpointers)

        logging.debug(f"Built learner with {len(self._metrics)} metrics, {self._num_epochs} epochs, "
                      f"devices {self._devices}")

        return Learner(
            model=model,
            optim=optim,
            lr_scheduler=lr_scheduler,
            checkpointer=checkpointer,
            num_epochs=self._num_epochs,
            callback=callback,
            checkpoint=self._checkpoint,
            grad_accumulation=self._grad_accumulation,
            devices=self._devices,
            interrupter=self._interrupter,
        )

    def init_logger(self):
        install_file_logger(os.path.join(self.directory, "experiment.log"))


def _check_numeric(metric):
    if not is_numeric(metric):
        raise TypeError(f"Only numeric metrics can be plotted, but {type(metric).__name__} is not numeric")
