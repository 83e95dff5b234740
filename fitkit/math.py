def get_max(xs):
    return max(xs)


def get_min(xs):
    return min(xs)


def get_argmax(xs):
    return xs.index(get_max(xs))


def get_argmin(xs):
    return xs.index(get_min(xs))


def weighted_mean(values, weights):
    """
    Return the mean of `values` where each value contributes proportionally to its weight.

    :param values: A sequence of numbers
    :param weights: A sequence of non-negative numbers, same length as `values`
    :return: A float, or `nan` when weights sum to zero. Values with zero weight are ignored, even `nan` ones
    """
    pairs = [(v, w) for v, w in zip(values, weights) if w != 0]
    total = sum(w for _, w in pairs)

    if total == 0:
        return float("nan")

    return sum(v * w for v, w in pairs) / total


def get_best_epoch(values, *, mode="min"):
    """
    Return the (1-indexed epoch, value) pair of the best value in `values`.
    """
    if mode not in ["min", "max"]:
        raise ValueError(f"Provided mode ({mode}) is not supported. Please use 'min' or 'max'")

    index = get_argmin(values) if mode == "min" else get_argmax(values)

    return index + 1, values[index]
