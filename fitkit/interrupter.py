import threading


class TrainingInterrupter:
    """
    A stop flag shared between the learner and whoever wants to end the training early (a renderer, a signal
    handler, another thread). Copies share the same flag.
    """
    def __init__(self, event=None):
        self._event = event if event is not None else threading.Event()

    def stop(self):
        self._event.set()

    def reset(self):
        self._event.clear()

    def should_stop(self):
        return self._event.is_set()

    def clone(self):
        return TrainingInterrupter(self._event)

    def __copy__(self):
        return self.clone()
