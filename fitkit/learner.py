import copy
import logging
import time
from concurrent.futures import ThreadPoolExecutor

import torch

from fitkit.callback import LearnerItem
from fitkit.checkpoint import CheckpointError
from fitkit.config import get_global_device
from fitkit.interrupter import TrainingInterrupter
from fitkit.lr_scheduler import as_lr_scheduler, set_lr
from fitkit.metric import Progress
from fitkit.timeit import get_fancy_elapsed
from fitkit.utils import to_device


class TrainEpoch:
    def __init__(self, loader, epoch, epoch_total, grad_accumulation=None):
        if grad_accumulation is not None and grad_accumulation < 1:
            raise ValueError(f"Gradients accumulation must be a positive number, but {grad_accumulation} was given")

        self.loader = loader
        self.epoch = epoch
        self.epoch_total = epoch_total
        self.grad_accumulation = grad_accumulation or 1

    def run(self, model, optim, lr_scheduler, callback, device, interrupter):
        """
        Train `model` for one epoch on a single device.

        Gradients of `grad_accumulation` consecutive iterations are summed before the optimizer step, the learning
        rate scheduler advances once per optimizer step. Gradients left over at the end of the epoch are discarded.
        """
        logging.info(f"Executing training step for epoch {self.epoch}")

        n_batch = len(self.loader)
        n_accumulated = 0
        lr = None

        model.train()
        optim.zero_grad()

        for i, batch in enumerate(self.loader):
            iteration = i + 1

            output = model.train_step(to_device(batch, device))
            output.loss.backward()

            n_accumulated += 1
            if n_accumulated >= self.grad_accumulation:
                lr = self._step(optim, lr_scheduler)
                n_accumulated = 0

            callback.on_train_item(LearnerItem(output.item, Progress(iteration, n_batch), self.epoch,
                                               self.epoch_total, iteration, lr))

            if interrupter.should_stop():
                logging.info("Training interrupted.")
                break

        optim.zero_grad()
        callback.on_train_end_epoch(self.epoch)

    def run_multi_device(self, model, optim, lr_scheduler, callback, devices, interrupter):
        """
        Train `model` for one epoch on many devices.

        Batches are dealt round-robin to one model replica per device and computed concurrently. After each round
        the replicas' gradients are summed into `model`, which lives on the first device, and count as one
        accumulation step each.
        """
        logging.info(f"Executing training step for epoch {self.epoch} on {len(devices)} devices")

        n_batch = len(self.loader)
        n_accumulated = 0
        lr = None

        model.train()
        optim.zero_grad()

        replicas = [copy.deepcopy(model).to(device) for device in devices]
        main_device = devices[0]

        def compute_grads(replica, batch, device):
            replica.zero_grad()
            output = replica.train_step(to_device(batch, device))
            output.loss.backward()
            grads = [p.grad.detach().to(main_device) if p.grad is not None else None for p in replica.parameters()]
            return output.item, grads

        with ThreadPoolExecutor(max_workers=len(devices), thread_name_prefix="fitkit-device") as executor:
            iterator = iter(enumerate(self.loader))
            stop = False

            while not stop:
                group = [x for _, x in zip(devices, iterator)]
                if not group:
                    break

                state = model.state_dict()
                for replica in replicas[:len(group)]:
                    replica.load_state_dict(state)

                futures = [executor.submit(compute_grads, replica, batch, device)
                           for replica, device, (_, batch) in zip(replicas, devices, group)]

                for (i, _), future in zip(group, futures):
                    item, grads = future.result()
                    iteration = i + 1

                    _add_grads(model, grads)

                    n_accumulated += 1
                    if n_accumulated >= self.grad_accumulation:
                        lr = self._step(optim, lr_scheduler)
                        n_accumulated = 0

                    callback.on_train_item(LearnerItem(item, Progress(iteration, n_batch), self.epoch,
                                                       self.epoch_total, iteration, lr))

                    if interrupter.should_stop():
                        logging.info("Training interrupted.")
                        stop = True
                        break

        optim.zero_grad()
        callback.on_train_end_epoch(self.epoch)

    @staticmethod
    def _step(optim, lr_scheduler):
        lr = lr_scheduler.step()
        set_lr(optim, lr)
        optim.step()
        optim.zero_grad()
        return lr


def _add_grads(model, grads):
    for param, grad in zip(model.parameters(), grads):
        if grad is None:
            continue
        if param.grad is None:
            param.grad = grad.clone()
        else:
            param.grad += grad


class ValidEpoch:
    def __init__(self, loader, epoch, epoch_total):
        self.loader = loader
        self.epoch = epoch
        self.epoch_total = epoch_total

    def run(self, model, callback, device, interrupter):
        logging.info(f"Executing validation step for epoch {self.epoch}")

        n_batch = len(self.loader)

        model.eval()

        with torch.no_grad():
            for i, batch in enumerate(self.loader):
                iteration = i + 1

                item = model.valid_step(to_device(batch, device))

                callback.on_valid_item(LearnerItem(item, Progress(iteration, n_batch), self.epoch, self.epoch_total,
                                                   iteration))

                if interrupter.should_stop():
                    logging.info("Validation interrupted.")
                    break

        model.train()
        callback.on_valid_end_epoch(self.epoch)


class Learner:
    """
    Train a model for a number of epochs, validating and checkpointing it after each one. Usually created with
    `fitkit.builder.LearnerBuilder`.
    """
    def __init__(self, model, optim, lr_scheduler, checkpointer, num_epochs, callback, checkpoint=None,
                 grad_accumulation=None, devices=None, interrupter=None):
        if devices is None or len(devices) == 0:
            devices = [get_global_device() or torch.device("cpu")]

        self.model = model
        self.optim = optim
        self.lr_scheduler = as_lr_scheduler(lr_scheduler)
        self.checkpointer = checkpointer
        self.num_epochs = num_epochs
        self.callback = callback
        self.checkpoint = checkpoint
        self.grad_accumulation = grad_accumulation
        self.devices = [torch.device(device) for device in devices]
        self.interrupter = interrupter if interrupter is not None else TrainingInterrupter()

    def fit(self, dataloader_train, dataloader_valid):
        """
        Run the training loop and return the trained model.

        Epochs are numbered from 1. When `checkpoint` is given, model, optimizer and scheduler are restored from
        that epoch and the training resumes from the next one. The interrupter is reset on entry, so a stop request
        left over from a previous run does not end this one.
        """
        logging.info(f"Fitting {self.model}")

        device = self.devices[0]
        self.model.to(device)

        self.interrupter.reset()
        interrupted = False

        try:
            starting_epoch = self._restore(device)

            for epoch in range(starting_epoch, self.num_epochs + 1):
                start_time = time.time()

                epoch_train = TrainEpoch(dataloader_train, epoch, self.num_epochs, self.grad_accumulation)
                if len(self.devices) > 1:
                    epoch_train.run_multi_device(self.model, self.optim, self.lr_scheduler, self.callback,
                                                 self.devices, self.interrupter)
                else:
                    epoch_train.run(self.model, self.optim, self.lr_scheduler, self.callback, device,
                                    self.interrupter)

                if self.interrupter.should_stop():
                    interrupted = True
                    break

                epoch_valid = ValidEpoch(dataloader_valid, epoch, self.num_epochs)
                epoch_valid.run(self.model, self.callback, device, self.interrupter)

                if self.checkpointer is not None:
                    self.checkpointer.checkpoint(self.model, self.optim, self.lr_scheduler, epoch)

                logging.info(f"Complete epoch {epoch} in {get_fancy_elapsed(start_time)}")

                if self.interrupter.should_stop():
                    interrupted = True
                    break
        finally:
            self.close()

        if not interrupted:
            logging.info("Training completed.")

        return self.model

    def _restore(self, device):
        if self.checkpoint is None:
            return 1

        if self.checkpointer is None:
            raise CheckpointError(f"Unable to resume from epoch {self.checkpoint}: no checkpointer registered")

        self.checkpointer.load_checkpoint(self.model, self.optim, self.lr_scheduler, self.checkpoint, device=device)

        return self.checkpoint + 1

    def close(self):
        try:
            self.callback.close()
        finally:
            if self.checkpointer is not None:
                self.checkpointer.close()
