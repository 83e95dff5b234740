from collections import defaultdict

import torch


def get_batch_size(batch):
    """
    Return the number of examples in `batch`, looking at the first tensor (or sequence) found in it.
    """
    if isinstance(batch, torch.Tensor):
        return batch.size()[0] if batch.dim() > 0 else 1
    if isinstance(batch, dict):
        return get_batch_size(next(iter(batch.values())))
    if isinstance(batch, (list, tuple)):
        first = batch[0]
        if isinstance(first, (torch.Tensor, dict, list, tuple)):
            return get_batch_size(first)
        return len(batch)
    return 1


def percent(x):
    return x * 100


def pivot(list_of_dict):
    """
    Returns a dictionary of list given a list of dictionaries.
    """
    dict_of_list = defaultdict(list)
    for el in list_of_dict:
        for key, val in el.items():
            dict_of_list[key].append(val)
    return dict_of_list


def identity(x):
    return x


def map_dict(d, *, key_fn=None, value_fn=None):
    """
    Returns a dictionary with keys updated according to `key_fn` and values updated according to `value_fn`. Functions
    are applied, respectively, on each key and value.
    """
    if key_fn is None:
        key_fn = identity

    if value_fn is None:
        value_fn = identity

    return {key_fn(k): value_fn(v) for k, v in d.items()}


def to_device(batch, device):
    """
    Move every tensor in `batch` to `device`, walking through dictionaries, lists and tuples.
    """
    if isinstance(batch, torch.Tensor):
        return batch.to(device)
    if isinstance(batch, dict):
        return {k: to_device(v, device) for k, v in batch.items()}
    if isinstance(batch, tuple) and hasattr(batch, "_fields"):
        return type(batch)(*[to_device(v, device) for v in batch])
    if isinstance(batch, (list, tuple)):
        return type(batch)(to_device(v, device) for v in batch)
    return batch


def detach(x):
    """
    Return a copy of `x` where tensors are detached from the autograd graph, preserving containers.
    """
    if isinstance(x, torch.Tensor):
        return x.detach()
    if isinstance(x, dict):
        return {k: detach(v) for k, v in x.items()}
    if isinstance(x, tuple) and hasattr(x, "_fields"):
        return type(x)(*[detach(v) for v in x])
    if isinstance(x, (list, tuple)):
        return type(x)(detach(v) for v in x)
    return x


def sanitize_name(name):
    return name.strip().lower().replace(" ", "_").replace("/", "_")
