import functools
import os
import tempfile
from typing import Any, Dict, Optional

__defaults = {
    "num_epochs": 1,
    "directory": os.path.join(tempfile.gettempdir(), "fitkit"),
    "grad_accumulation": None,
    "checkpoint": None,
    "num_keep": 2,
    "log_to_file": True,
    "device_name": "cpu",
    "devices": None,
    "learning_rate": 0.001,
    "batch_size": 32,
    "num_workers": 0,
    "n_examples": 1024,
    "n_features": 16,
    "n_classes": 4,
    "hidden_size": 64,
    "recorder": "torch",
    "renderer": "tqdm",
    "seed": 42,
}

__device = None


def get_config(config, defaults=None):
    """
    Returns current values or defaults
    """
    if defaults is None:
        defaults = __defaults

    # remove entries with None value to let defaults replace them
    config = {k: v for k, v in config.items() if v is not None}

    new_config = defaults.copy()
    new_config.update(config)

    return new_config


def make_options(name: str, options: Dict[str, Any]):
    def get_option(option: str, *, params: Optional[Dict[str, Any]] = None):
        if option not in options:
            raise ValueError(f"Provided option for {name} ({option}) is not supported. Please use one "
                             f"of {list(options.keys())}")

        if params is None:
            return options[option]

        return functools.partial(options[option], **params.get(option, {}))

    return get_option


def set_global_device(device):
    global __device
    __device = device


def get_global_device():
    return __device
