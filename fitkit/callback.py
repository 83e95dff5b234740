import logging
import queue
import threading
import typing as t

from fitkit.metric import Metric, MetricMetadata, Progress
from fitkit.renderer import MetricState, MetricsRenderer, TrainingProgress
from fitkit.utils import detach


class LearnerItem(t.NamedTuple):
    item: t.Any
    progress: Progress
    epoch: int
    epoch_total: int
    iteration: int
    lr: t.Optional[float] = None

    def metadata(self):
        return MetricMetadata(self.progress, self.epoch, self.epoch_total, self.iteration, self.lr)

    def training_progress(self):
        return TrainingProgress(self.progress, self.epoch, self.epoch_total, self.iteration)


class MetricWrapper:
    """
    Bind a metric to the function adapting learner items to the metric input. When `adaptor` is None the metric's
    own `adapt` is used.
    """
    def __init__(self, metric: Metric, adaptor=None):
        self.metric = metric
        self.adaptor = adaptor if adaptor is not None else metric.adapt

    @property
    def name(self):
        return self.metric.name

    def update(self, item: LearnerItem):
        return self.metric.update(self.adaptor(item.item), item.metadata())

    def value(self):
        return self.metric.value()

    def clear(self):
        self.metric.clear()


class Metrics:
    def __init__(self):
        self.train = []
        self.valid = []
        self.train_numeric = []
        self.valid_numeric = []

    def __len__(self):
        return len(self.train) + len(self.valid) + len(self.train_numeric) + len(self.valid_numeric)


class LearnerCallback:
    def on_train_item(self, item: LearnerItem):
        pass

    def on_valid_item(self, item: LearnerItem):
        pass

    def on_train_end_epoch(self, epoch: int):
        pass

    def on_valid_end_epoch(self, epoch: int):
        pass

    def close(self):
        pass


class MetricsCallback(LearnerCallback):
    """
    Update the registered metrics with every learner item, log each entry with the split's metric logger and
    forward the results to the renderer.
    """
    def __init__(self, renderer: MetricsRenderer, metrics: Metrics, logger_train, logger_valid):
        self.renderer = renderer
        self.metrics = metrics
        self.logger_train = logger_train
        self.logger_valid = logger_valid

    def on_train_item(self, item: LearnerItem):
        self.logger_train.set_epoch(item.epoch)

        for metric in self.metrics.train:
            entry = metric.update(item)
            self.logger_train.log(entry)
            self.renderer.update_train(MetricState(entry))

        for metric in self.metrics.train_numeric:
            entry = metric.update(item)
            self.logger_train.log(entry)
            self.renderer.update_train(MetricState(entry, metric.value()))

        self.renderer.render_train(item.training_progress())

    def on_valid_item(self, item: LearnerItem):
        self.logger_valid.set_epoch(item.epoch)

        for metric in self.metrics.valid:
            entry = metric.update(item)
            self.logger_valid.log(entry)
            self.renderer.update_valid(MetricState(entry))

        for metric in self.metrics.valid_numeric:
            entry = metric.update(item)
            self.logger_valid.log(entry)
            self.renderer.update_valid(MetricState(entry, metric.value()))

        self.renderer.render_valid(item.training_progress())

    def on_train_end_epoch(self, epoch: int):
        for metric in [*self.metrics.train, *self.metrics.train_numeric]:
            metric.clear()

        self.logger_train.end_epoch(epoch)
        self.renderer.end_epoch("train", epoch)

    def on_valid_end_epoch(self, epoch: int):
        for metric in [*self.metrics.valid, *self.metrics.valid_numeric]:
            metric.clear()

        self.logger_valid.end_epoch(epoch)
        self.renderer.end_epoch("valid", epoch)

    def close(self):
        self.renderer.close()


_stop = object()


class AsyncTrainerCallback(LearnerCallback):
    """
    Run a callback on a background thread. Events are queued in order and processed one at a time, so metric
    computation and logging never block the training loop.

    An exception raised by the wrapped callback is stored and raised again on the next event or on `close()`.
    """
    def __init__(self, callback: LearnerCallback, maxsize=0):
        self.callback = callback
        self.queue = queue.Queue(maxsize=maxsize)
        self.error = None
        self.closed = False

        self.worker = threading.Thread(target=self._run, name="fitkit-callback", daemon=True)
        self.worker.start()

    def _run(self):
        while True:
            event = self.queue.get()
            try:
                if event is _stop:
                    return
                if self.error is None:
                    method, arg = event
                    getattr(self.callback, method)(arg)
            except Exception as e:
                logging.exception("Error in learner callback")
                self.error = e
            finally:
                self.queue.task_done()

    def _raise_error(self):
        if self.error is not None:
            error, self.error = self.error, None
            raise error

    def _put(self, method, arg):
        self._raise_error()
        if self.closed:
            raise RuntimeError("Callback is closed")
        self.queue.put((method, arg))

    def on_train_item(self, item: LearnerItem):
        self._put("on_train_item", item._replace(item=detach(item.item)))

    def on_valid_item(self, item: LearnerItem):
        self._put("on_valid_item", item._replace(item=detach(item.item)))

    def on_train_end_epoch(self, epoch: int):
        self._put("on_train_end_epoch", epoch)

    def on_valid_end_epoch(self, epoch: int):
        self._put("on_valid_end_epoch", epoch)

    def flush(self):
        """
        Wait until every queued event has been processed.
        """
        self.queue.join()
        self._raise_error()

    def close(self):
        if self.closed:
            return

        self.closed = True
        self.queue.put(_stop)
        self.worker.join()

        try:
            self._raise_error()
        finally:
            self.callback.close()
