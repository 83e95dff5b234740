import time


def get_delta(start_time: float, end_time: float):
    return int(end_time - start_time)


def get_hms(seconds: int):
    hours, rest = divmod(seconds, 3600)
    minutes, seconds = divmod(rest, 60)

    return hours, minutes, seconds


def get_eta(elapsed: float, current: int, total: int):
    """
    Estimate the remaining time given the time spent to process `current` out of `total` items.
    """
    if current <= 0:
        return get_hms(0)

    per_item = elapsed / current
    return get_hms(int(per_item * (total - current)))


def get_fancy_time(hours: int, minutes: int, seconds: int):
    return f"{hours:02}:{minutes:02}:{seconds:02}"


def get_fancy_eta(start_time: float, end_time: float, current: int, total: int):
    return get_fancy_time(*get_eta(end_time - start_time, current, total))


def get_fancy_elapsed(start_time: float, end_time: float = None):
    if end_time is None:
        end_time = time.time()
    return get_fancy_time(*get_hms(get_delta(start_time, end_time)))
