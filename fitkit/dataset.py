import torch
import torch.utils.data as torchdata


class SyntheticClassificationDataset(torchdata.Dataset):
    """
    Gaussian blobs, one per class, with centers drawn at random. Examples are generated once, from `seed`.
    """
    def __init__(self, n_examples, n_features, n_classes, *, spread=1., seed=0):
        generator = torch.Generator().manual_seed(seed)

        centers = torch.randn(n_classes, n_features, generator=generator) * 3
        self.y = torch.randint(0, n_classes, (n_examples,), generator=generator)
        self.x = centers[self.y] + torch.randn(n_examples, n_features, generator=generator) * spread

    def __len__(self):
        return len(self.y)

    def __getitem__(self, idx):
        return {"x": self.x[idx], "y": self.y[idx]}


def split_dataset(dataset, ratio=0.8, seed=0):
    n_train = int(len(dataset) * ratio)
    n_valid = len(dataset) - n_train
    return torchdata.random_split(dataset, [n_train, n_valid], generator=torch.Generator().manual_seed(seed))
