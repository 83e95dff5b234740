import numbers

import torch


class LrScheduler:
    def step(self) -> float:
        raise NotImplementedError

    def state_dict(self):
        raise NotImplementedError

    def load_state_dict(self, state_dict):
        raise NotImplementedError


class ConstantLr(LrScheduler):
    def __init__(self, lr):
        self.lr = float(lr)

    def step(self):
        return self.lr

    def state_dict(self):
        return {"lr": self.lr}

    def load_state_dict(self, state_dict):
        self.lr = float(state_dict["lr"])


class TorchLrScheduler(LrScheduler):
    """
    Adapt a `torch.optim.lr_scheduler` scheduler. The first call to `step` returns the initial learning rate, every
    following call advances the wrapped scheduler.
    """
    def __init__(self, scheduler):
        self.scheduler = scheduler
        self.started = False

    def step(self):
        if self.started:
            self.scheduler.step()
        self.started = True
        return self.scheduler.get_last_lr()[0]

    def state_dict(self):
        return {"scheduler": self.scheduler.state_dict(), "started": self.started}

    def load_state_dict(self, state_dict):
        self.scheduler.load_state_dict(state_dict["scheduler"])
        self.started = state_dict["started"]


def as_lr_scheduler(value):
    if isinstance(value, LrScheduler):
        return value
    if isinstance(value, numbers.Real) and not isinstance(value, bool):
        return ConstantLr(value)
    if isinstance(value, torch.optim.lr_scheduler.LRScheduler):
        return TorchLrScheduler(value)
    if all(hasattr(value, attr) for attr in ["step", "state_dict", "load_state_dict"]):
        return value

    raise TypeError(f"Unable to use {type(value).__name__} as learning rate scheduler. Please provide a number, a "
                    f"torch scheduler or an object with `step`, `state_dict` and `load_state_dict`")


def set_lr(optim, lr):
    for group in optim.param_groups:
        group["lr"] = lr
