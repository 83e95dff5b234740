import argparse
import logging

import numpy as np
import torch
import torch.utils.data as torchdata
import wandb

from fitkit.builder import LearnerBuilder
from fitkit.checkpoint import JsonFileRecorder, TorchFileRecorder
from fitkit.config import get_config, make_options, set_global_device
from fitkit.dataset import SyntheticClassificationDataset, split_dataset
from fitkit.getting_started import hello
from fitkit.logger import FileMetricLogger, WandbMetricLogger
from fitkit.math import get_best_epoch
from fitkit.metric import AccuracyMetric, IterationSpeedMetric, LearningRateMetric, LossMetric, aggregate
from fitkit.model import MlpClassifier
from fitkit.prettyprint import pp_tensor, ppf
from fitkit.renderer import LogMetricsRenderer, TqdmMetricsRenderer
from fitkit.utils import pivot

make_recorder = make_options("recorder", {"torch": TorchFileRecorder, "json": JsonFileRecorder})
make_renderer = make_options("renderer", {"tqdm": TqdmMetricsRenderer, "log": LogMetricsRenderer})


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Run the getting started example or train a classifier with "
                                                 "`fitkit`.")

    parser.add_argument("--num-epochs", type=int, default=None)
    parser.add_argument("--directory", type=str, default=None)
    parser.add_argument("--grad-accumulation", type=int, default=None)
    parser.add_argument("--checkpoint", type=int, default=None, help="Resume training after this epoch")
    parser.add_argument("--num-keep", type=int, default=None)
    parser.add_argument("--no-log-to-file", dest="log_to_file", action="store_false", default=None)
    parser.add_argument("--device-name", type=str, default=None)
    parser.add_argument("--devices", type=str, nargs="+", default=None)
    parser.add_argument("--learning-rate", type=float, default=None)
    parser.add_argument("--batch-size", type=int, default=None)
    parser.add_argument("--num-workers", type=int, default=None)
    parser.add_argument("--n-examples", type=int, default=None)
    parser.add_argument("--n-features", type=int, default=None)
    parser.add_argument("--n-classes", type=int, default=None)
    parser.add_argument("--hidden-size", type=int, default=None)
    parser.add_argument("--recorder", type=str, default=None)
    parser.add_argument("--renderer", type=str, default=None)
    parser.add_argument("--seed", type=int, default=None)

    parser.add_argument("--workflow", type=str, choices=["hello", "train"], default="train")

    parser.add_argument("--log-level", dest="log_level", type=int, default=logging.INFO, help="Log verbosity")
    parser.add_argument("--log-file", dest="log_file", type=str, default=None, help="Log filename")
    parser.add_argument("--use-wandb", dest="use_wandb", action="store_true", default=False, help="Wandb log")

    return parser.parse_args(argv)


def do_hello(device):
    print(pp_tensor(hello(device)))


def do_train(config, use_wandb=False):
    directory = config["directory"]

    dataset = SyntheticClassificationDataset(config["n_examples"], config["n_features"], config["n_classes"],
                                             seed=config["seed"])
    train_dataset, valid_dataset = split_dataset(dataset, seed=config["seed"])

    train_loader = torchdata.DataLoader(train_dataset, batch_size=config["batch_size"], shuffle=True,
                                        num_workers=config["num_workers"])
    valid_loader = torchdata.DataLoader(valid_dataset, batch_size=config["batch_size"],
                                        num_workers=config["num_workers"])

    model = MlpClassifier(config["n_features"], config["n_classes"], hidden_size=config["hidden_size"])
    optimizer = torch.optim.Adam(model.parameters(), config["learning_rate"])

    builder = LearnerBuilder(directory) \
        .metric_train(IterationSpeedMetric()) \
        .metric_train(LearningRateMetric()) \
        .metric_train_plot(LossMetric()) \
        .metric_valid_plot(LossMetric()) \
        .metric_train_plot(AccuracyMetric()) \
        .metric_valid_plot(AccuracyMetric()) \
        .with_file_checkpointer(config["num_keep"], make_recorder(config["recorder"])()) \
        .num_epochs(config["num_epochs"]) \
        .log_to_file(config["log_to_file"])

    if config["grad_accumulation"] is not None:
        builder = builder.grads_accumulation(config["grad_accumulation"])
    if config["checkpoint"] is not None:
        builder = builder.checkpoint(config["checkpoint"])
    if config["devices"] is not None:
        builder = builder.devices([torch.device(name) for name in config["devices"]])

    logger_valid = FileMetricLogger(f"{directory}/valid")
    if use_wandb:
        builder = builder.metric_loggers(WandbMetricLogger("train"), WandbMetricLogger("valid"))
        logger_valid = None
    else:
        builder = builder.metric_loggers(FileMetricLogger(f"{directory}/train"), logger_valid)

    if config["renderer"] == "tqdm":
        builder = builder.renderer(make_renderer("tqdm")(builder.interrupter(), config["checkpoint"]))
    else:
        builder = builder.renderer(make_renderer(config["renderer"])())

    learner = builder.build(model, optimizer, config["learning_rate"])
    learner.fit(train_loader, valid_loader)

    if logger_valid is not None:
        log_best_epoch(logger_valid, first_epoch=(config["checkpoint"] or 0) + 1, last_epoch=config["num_epochs"])


def log_best_epoch(logger, first_epoch, last_epoch):
    summaries = []

    for epoch in range(first_epoch, last_epoch + 1):
        try:
            summaries.append({
                "epoch": epoch,
                "loss": aggregate(logger.read_numeric(LossMetric.name, epoch)),
                "accuracy": aggregate(logger.read_numeric(AccuracyMetric.name, epoch)),
            })
        except FileNotFoundError:
            break

    if not summaries:
        return

    history = pivot(summaries)

    best_loss, loss = get_best_epoch(history["loss"], mode="min")
    best_accuracy, accuracy = get_best_epoch(history["accuracy"], mode="max")

    logging.info(f"Best validation loss at epoch {history['epoch'][best_loss - 1]}: {ppf(loss)}")
    logging.info(f"Best validation accuracy at epoch {history['epoch'][best_accuracy - 1]}: {ppf(accuracy)}")


def main(argv=None):
    args = parse_args(argv)

    config = get_config({
        "num_epochs": args.num_epochs,
        "directory": args.directory,
        "grad_accumulation": args.grad_accumulation,
        "checkpoint": args.checkpoint,
        "num_keep": args.num_keep,
        "log_to_file": args.log_to_file,
        "device_name": args.device_name,
        "devices": args.devices,
        "learning_rate": args.learning_rate,
        "batch_size": args.batch_size,
        "num_workers": args.num_workers,
        "n_examples": args.n_examples,
        "n_features": args.n_features,
        "n_classes": args.n_classes,
        "hidden_size": args.hidden_size,
        "recorder": args.recorder,
        "renderer": args.renderer,
        "seed": args.seed,
    })

    np.random.seed(config["seed"])
    torch.manual_seed(config["seed"])

    logging.basicConfig(filename=args.log_file, level=args.log_level)

    device = torch.device(config["device_name"])
    set_global_device(device)

    if args.workflow == "hello":
        do_hello(device)
        return

    wandb.init(project="fitkit", mode="online" if args.use_wandb else "disabled")
    wandb.config.update(config)

    logging.info(f"Training started with following parameters: {config}")

    try:
        do_train(config, use_wandb=args.use_wandb)
    finally:
        wandb.finish()


if __name__ == "__main__":
    main()
