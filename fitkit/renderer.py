import logging
import signal
import threading
import time
import typing as t

from tqdm import tqdm

from fitkit.metric import MetricEntry, Progress
from fitkit.timeit import get_fancy_eta


class TrainingProgress(t.NamedTuple):
    progress: Progress
    epoch: int
    epoch_total: int
    iteration: int


class MetricState(t.NamedTuple):
    entry: MetricEntry
    value: t.Optional[float] = None

    @property
    def is_numeric(self):
        return self.value is not None


class MetricsRenderer:
    def update_train(self, state: MetricState):
        raise NotImplementedError

    def update_valid(self, state: MetricState):
        raise NotImplementedError

    def render_train(self, item: TrainingProgress):
        raise NotImplementedError

    def render_valid(self, item: TrainingProgress):
        raise NotImplementedError

    def end_epoch(self, split: str, epoch: int):
        pass

    def close(self):
        pass


class LogMetricsRenderer(MetricsRenderer):
    """
    Render the training progress as `logging.debug` lines and the numeric metrics at the end of each epoch as
    `logging.info` lines.
    """
    def __init__(self, clock=time.time):
        self.clock = clock
        self.metrics = {"Train": {}, "Valid": {}}
        self.start_time = {}

    def update_train(self, state: MetricState):
        self.metrics["Train"][state.entry.name] = state

    def update_valid(self, state: MetricState):
        self.metrics["Valid"][state.entry.name] = state

    def render_train(self, item: TrainingProgress):
        self._render("Train", item)

    def render_valid(self, item: TrainingProgress):
        self._render("Valid", item)

    def _render(self, mode, item: TrainingProgress):
        now = self.clock()
        key = (mode, item.epoch)
        start_time = self.start_time.setdefault(key, now)

        eta = get_fancy_eta(start_time, now, current=item.progress.items_processed, total=item.progress.items_total)
        metrics = ", ".join([f"{name}: {state.entry.formatted}" for name, state in self.metrics[mode].items()])

        logging.debug(f"{mode} epoch {item.epoch}/{item.epoch_total} "
                      f"{item.progress.items_processed}/{item.progress.items_total}, {metrics} | ETA: {eta}")

    def end_epoch(self, split: str, epoch: int):
        mode = split.capitalize()
        numeric = ", ".join([f"{name}: {state.entry.formatted}"
                             for name, state in self.metrics[mode].items() if state.is_numeric])
        if numeric:
            logging.info(f"{mode} epoch {epoch} completed. {numeric}")

        self.metrics[mode] = {}
        self.start_time.pop((mode, epoch), None)


class TqdmMetricsRenderer(MetricsRenderer):
    """
    Render one progress bar per split and epoch, with the latest metric values as postfix.

    While the renderer is open, the first Ctrl-C asks `interrupter` to stop the training at the end of the
    current iteration; a second one raises `KeyboardInterrupt` as usual.
    """
    def __init__(self, interrupter=None, checkpoint=None, bar=tqdm):
        self.interrupter = interrupter
        self.checkpoint = checkpoint
        self.bar = bar
        self.bars = {}
        self.metrics = {"train": {}, "valid": {}}
        self._previous_handler = None
        self._handler_installed = False

        if checkpoint is not None:
            logging.info(f"Resuming training after epoch {checkpoint}")

        self._install_signal_handler()

    def _install_signal_handler(self):
        if self.interrupter is None:
            return
        if threading.current_thread() is not threading.main_thread():
            return

        def handler(signum, frame):
            if self.interrupter.should_stop():
                raise KeyboardInterrupt
            logging.warning("Interrupt requested, training will stop at the end of the current iteration")
            self.interrupter.stop()

        self._previous_handler = signal.signal(signal.SIGINT, handler)
        self._handler_installed = True

    def update_train(self, state: MetricState):
        self.metrics["train"][state.entry.name] = state.entry.formatted

    def update_valid(self, state: MetricState):
        self.metrics["valid"][state.entry.name] = state.entry.formatted

    def render_train(self, item: TrainingProgress):
        self._render("train", item)

    def render_valid(self, item: TrainingProgress):
        self._render("valid", item)

    def _get_bar(self, split, item: TrainingProgress):
        key = (split, item.epoch)

        if key not in self.bars:
            description = f"{split.capitalize()} {item.epoch}/{item.epoch_total}"
            self.bars[key] = self.bar(total=item.progress.items_total, desc=description, leave=True)

        return self.bars[key]

    def _render(self, split, item: TrainingProgress):
        bar = self._get_bar(split, item)
        bar.set_postfix(self.metrics[split], refresh=False)
        bar.update(item.progress.items_processed - bar.n)

    def end_epoch(self, split: str, epoch: int):
        bar = self.bars.pop((split, epoch), None)
        if bar is not None:
            bar.close()
        self.metrics[split] = {}

    def close(self):
        for bar in self.bars.values():
            bar.close()
        self.bars = {}

        if self._handler_installed:
            signal.signal(signal.SIGINT, self._previous_handler or signal.default_int_handler)
            self._handler_installed = False


def default_renderer(interrupter, checkpoint=None):
    return TqdmMetricsRenderer(interrupter, checkpoint)
