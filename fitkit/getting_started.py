import torch

from fitkit.config import get_global_device


def hello(device=None):
    """
    Add a 2x2 tensor to a tensor of ones with the same shape, i.e.,

        [[2., 3.], [4., 5.]] + [[1., 1.], [1., 1.]] = [[3., 4.], [5., 6.]]

    :param device: Where tensors are created, defaults to the global device or cpu
    :return: A [2, 2] float tensor
    """
    if device is None:
        device = get_global_device() or torch.device("cpu")

    tensor_1 = torch.tensor([[2., 3.], [4., 5.]], device=device)
    tensor_2 = torch.ones_like(tensor_1)

    return tensor_1 + tensor_2
