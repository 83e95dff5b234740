import json
import os


def load_txt(filename):
    with open(filename, "r") as f:
        return f.read().split("\n")


def load_lines(filename):
    return [line for line in load_txt(filename) if line != ""]


def append_line(filename, line):
    makedirs_for(filename)
    with open(filename, "a") as f:
        f.write(f"{line}\n")


def load_json(filename):
    with open(filename, "r") as f:
        data = json.load(f)
    return data


def save_json(filename, data, *, indent=None):
    makedirs_for(filename)
    with open(filename, "w") as f:
        json.dump(data, f, indent=indent)


def makedirs_for(filename):
    folder = os.path.dirname(os.fspath(filename))
    if folder:
        os.makedirs(folder, exist_ok=True)


def remove_if_exists(filename):
    if os.path.exists(filename):
        os.remove(filename)
        return True
    return False
