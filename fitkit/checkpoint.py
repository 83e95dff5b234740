import logging
import os
import queue
import threading

import numpy as np
import torch

from fitkit import iox


class CheckpointError(RuntimeError):
    pass


class FileRecorder:
    extension = None

    def save(self, record, path):
        raise NotImplementedError

    def load(self, path, device=None):
        raise NotImplementedError

    def get_filepath(self, path):
        return f"{path}.{self.extension}"


class TorchFileRecorder(FileRecorder):
    extension = "pt"

    def save(self, record, path):
        filepath = self.get_filepath(path)
        iox.makedirs_for(filepath)
        torch.save(record, filepath)
        return filepath

    def load(self, path, device=None):
        return torch.load(self.get_filepath(path), map_location=device)


class JsonFileRecorder(FileRecorder):
    """
    Store records as JSON. Tensors are written as `{"__tensor__": <nested values>, "dtype": <dtype>}`, so a record
    made of (nested) dictionaries, lists, numbers, strings and tensors can be restored.
    """
    extension = "json"

    def __init__(self, indent=None):
        self.indent = indent

    def save(self, record, path):
        filepath = self.get_filepath(path)
        iox.save_json(filepath, encode(record), indent=self.indent)
        return filepath

    def load(self, path, device=None):
        return decode(iox.load_json(self.get_filepath(path)), device=device)


def encode(x):
    if isinstance(x, torch.Tensor):
        array = x.detach().cpu().numpy()
        return {"__tensor__": array.tolist(), "dtype": str(array.dtype), "shape": list(array.shape)}
    if isinstance(x, dict):
        # json keys are strings, optimizer states are keyed by parameter index
        return {"__dict__": [[encode(k), encode(v)] for k, v in x.items()]}
    if isinstance(x, tuple):
        return {"__tuple__": [encode(v) for v in x]}
    if isinstance(x, list):
        return [encode(v) for v in x]
    return x


def decode(x, device=None):
    if isinstance(x, list):
        return [decode(v, device) for v in x]
    if not isinstance(x, dict):
        return x
    if "__tensor__" in x:
        array = np.array(x["__tensor__"], dtype=x["dtype"]).reshape(x["shape"])
        return torch.from_numpy(array).to(device) if device is not None else torch.from_numpy(array)
    if "__tuple__" in x:
        return tuple(decode(v, device) for v in x["__tuple__"])
    if "__dict__" in x:
        return {decode(k, device): decode(v, device) for k, v in x["__dict__"]}
    return {k: decode(v, device) for k, v in x.items()}


class Checkpointer:
    def save(self, epoch, record):
        raise NotImplementedError

    def restore(self, epoch, device=None):
        raise NotImplementedError

    def delete(self, epoch):
        raise NotImplementedError

    def close(self):
        pass


class FileCheckpointer(Checkpointer):
    """
    Save one file per epoch, `<directory>/<name>-<epoch>.<extension>`, keeping only the last `num_keep` ones.
    """
    def __init__(self, recorder: FileRecorder, directory, name, num_keep):
        if num_keep < 1:
            raise ValueError(f"At least one checkpoint must be kept, but num_keep = {num_keep}")

        self.recorder = recorder
        self.directory = directory
        self.name = name
        self.num_keep = num_keep

    def get_path(self, epoch):
        return os.path.join(self.directory, f"{self.name}-{epoch}")

    def save(self, epoch, record):
        filepath = self.recorder.save(record, self.get_path(epoch))
        logging.info(f"Saved checkpoint {self.name} of epoch {epoch} to {filepath}")

        if epoch > self.num_keep:
            self.delete(epoch - self.num_keep)

        return filepath

    def restore(self, epoch, device=None):
        filepath = self.recorder.get_filepath(self.get_path(epoch))

        if not os.path.exists(filepath):
            raise CheckpointError(f"Unable to restore checkpoint {self.name} of epoch {epoch}: {filepath} not found")

        record = self.recorder.load(self.get_path(epoch), device=device)
        logging.info(f"Loaded checkpoint {self.name} of epoch {epoch} from {filepath}")

        return record

    def delete(self, epoch):
        filepath = self.recorder.get_filepath(self.get_path(epoch))

        if iox.remove_if_exists(filepath):
            logging.debug(f"Deleted checkpoint {filepath}")


_stop = object()


class AsyncCheckpointer(Checkpointer):
    """
    Save and delete checkpoints on a background thread, in the order they are requested. `restore` waits for the
    pending operations before reading.
    """
    def __init__(self, checkpointer: Checkpointer):
        self.checkpointer = checkpointer
        self.queue = queue.Queue()
        self.error = None
        self.closed = False

        self.worker = threading.Thread(target=self._run, name="fitkit-checkpointer", daemon=True)
        self.worker.start()

    def _run(self):
        while True:
            message = self.queue.get()
            try:
                if message is _stop:
                    return
                action, args = message
                getattr(self.checkpointer, action)(*args)
            except Exception as e:
                logging.exception("Error in checkpointer")
                self.error = e
            finally:
                self.queue.task_done()

    def _raise_error(self):
        if self.error is not None:
            error, self.error = self.error, None
            raise CheckpointError(str(error)) from error

    def _put(self, action, *args):
        self._raise_error()
        if self.closed:
            raise CheckpointError("Checkpointer is closed")
        self.queue.put((action, args))

    def save(self, epoch, record):
        self._put("save", epoch, record)

    def delete(self, epoch):
        self._put("delete", epoch)

    def flush(self):
        self.queue.join()
        self._raise_error()

    def restore(self, epoch, device=None):
        self.flush()
        return self.checkpointer.restore(epoch, device=device)

    def close(self):
        if self.closed:
            return

        self.closed = True
        self.queue.put(_stop)
        self.worker.join()
        self._raise_error()


class LearnerCheckpointer:
    def __init__(self, model: Checkpointer, optim: Checkpointer, scheduler: Checkpointer):
        self.model = model
        self.optim = optim
        self.scheduler = scheduler

    def checkpoint(self, model, optim, scheduler, epoch):
        self.model.save(epoch, _copy_state(model.state_dict()))
        self.optim.save(epoch, _copy_state(optim.state_dict()))
        self.scheduler.save(epoch, _copy_state(scheduler.state_dict()))

    def load_checkpoint(self, model, optim, scheduler, epoch, device=None):
        model.load_state_dict(self.model.restore(epoch, device=device))
        optim.load_state_dict(self.optim.restore(epoch, device=device))
        scheduler.load_state_dict(self.scheduler.restore(epoch, device=device))

    def close(self):
        for checkpointer in [self.model, self.optim, self.scheduler]:
            checkpointer.close()


def _copy_state(state):
    # records are written from another thread while training goes on
    if isinstance(state, torch.Tensor):
        return state.detach().clone()
    if isinstance(state, dict):
        return {k: _copy_state(v) for k, v in state.items()}
    if isinstance(state, list):
        return [_copy_state(v) for v in state]
    if isinstance(state, tuple):
        return tuple(_copy_state(v) for v in state)
    return state
