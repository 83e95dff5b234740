import logging
import os
import sys

log_format = "%(asctime)s %(levelname)s %(name)s: %(message)s"

__installed = set()


def install_file_logger(file_path, level=logging.INFO):
    """
    Write every log record of the root logger into `file_path` and route uncaught exceptions to the log.

    Calling it twice with the same path does not duplicate the handler.

    :param file_path: The log file, parent directories are created when missing
    :param level: The minimum level written to file
    :return: The installed `logging.FileHandler`, or None when already installed
    """
    file_path = os.path.abspath(file_path)

    if file_path in __installed:
        return None

    os.makedirs(os.path.dirname(file_path), exist_ok=True)

    handler = logging.FileHandler(file_path)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(log_format))

    root = logging.getLogger()
    root.addHandler(handler)
    if root.level == logging.NOTSET or root.level > level:
        root.setLevel(level)

    install_excepthook()

    __installed.add(file_path)

    logging.info(f"Logging to {file_path}")

    return handler


def uninstall_file_logger(handler):
    root = logging.getLogger()
    root.removeHandler(handler)
    handler.close()
    __installed.discard(handler.baseFilename)


def install_excepthook():
    previous = sys.excepthook

    if getattr(previous, "_fitkit", False):
        return

    def excepthook(exc_type, exc_value, exc_traceback):
        if not issubclass(exc_type, KeyboardInterrupt):
            logging.critical("Uncaught exception", exc_info=(exc_type, exc_value, exc_traceback))
        previous(exc_type, exc_value, exc_traceback)

    excepthook._fitkit = True
    sys.excepthook = excepthook
