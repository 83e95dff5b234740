import logging
import os
from collections import defaultdict

import wandb

from fitkit import iox
from fitkit.metric import MetricEntry, NumericEntry
from fitkit.utils import map_dict, sanitize_name


class MetricLogger:
    epoch = 1

    def set_epoch(self, epoch: int):
        self.epoch = epoch

    def log(self, entry: MetricEntry):
        raise NotImplementedError

    def end_epoch(self, epoch: int):
        raise NotImplementedError

    def read_numeric(self, name: str, epoch: int):
        raise NotImplementedError


class FileMetricLogger(MetricLogger):
    """
    Write metric entries on disk, one folder per epoch and one file per metric:

        <directory>/epoch-<epoch>/<metric name>.log

    Every line of a file is the serialized entry of one update.
    """
    def __init__(self, directory):
        self.directory = directory
        self.epoch = 1

    def get_filepath(self, name, epoch):
        return os.path.join(self.directory, f"epoch-{epoch}", f"{sanitize_name(name)}.log")

    def log(self, entry: MetricEntry):
        iox.append_line(self.get_filepath(entry.name, self.epoch), entry.serialize)

    def end_epoch(self, epoch: int):
        self.epoch = epoch + 1

    def read_numeric(self, name: str, epoch: int):
        filepath = self.get_filepath(name, epoch)

        if not os.path.exists(filepath):
            raise FileNotFoundError(f"No entries for metric '{name}' at epoch {epoch}: {filepath} does not exist")

        return [NumericEntry.deserialize(line) for line in iox.load_lines(filepath)]


class InMemoryMetricLogger(MetricLogger):
    def __init__(self):
        self.epoch = 1
        self.values = defaultdict(list)

    def log(self, entry: MetricEntry):
        self.values[(sanitize_name(entry.name), self.epoch)].append(entry.serialize)

    def end_epoch(self, epoch: int):
        self.epoch = epoch + 1

    def read_numeric(self, name: str, epoch: int):
        key = (sanitize_name(name), epoch)

        if key not in self.values:
            raise KeyError(f"No entries for metric '{name}' at epoch {epoch}")

        return [NumericEntry.deserialize(value) for value in self.values[key]]


class WandbMetricLogger(InMemoryMetricLogger):
    """
    Forward numeric entries to Weights & Biases as `<split>_<metric name>`, keeping a local copy to answer
    `read_numeric`. Entries that are not numeric are kept locally only.
    """
    def __init__(self, split):
        super().__init__()
        self.split = split

    def log(self, entry: MetricEntry):
        super().log(entry)

        try:
            value = NumericEntry.deserialize(entry.serialize).value
        except ValueError:
            logging.debug(f"Skipping non numeric entry {entry.name} for wandb")
            return

        values = map_dict({sanitize_name(entry.name): value}, key_fn=lambda name: f"{self.split}_{name}")
        wandb.log({**values, "epoch": self.epoch})
