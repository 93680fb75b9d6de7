import logging
import signal
from typing import Callable, Protocol


class Drainable(Protocol):
    def request_shutdown(self) -> None: ...


def install_signal_handlers(crawler: Drainable, signals=(signal.SIGINT, signal.SIGTERM)) -> Callable[[], None]:
    """Route SIGINT/SIGTERM to a cooperative drain instead of exiting.

    The first signal asks the crawler to drain; handlers are then restored
    to their previous values so a second signal behaves as it normally
    would. Must be called from the main thread. Returns a callable that
    restores the previous handlers.
    """
    previous = {sig: signal.getsignal(sig) for sig in signals}

    def restore() -> None:
        for sig, handler in previous.items():
            signal.signal(sig, handler)

    def handle(signum, _frame) -> None:
        logging.warning("Received %s, finishing in-flight pages", signal.Signals(signum).name)
        restore()
        crawler.request_shutdown()

    for sig in signals:
        signal.signal(sig, handle)
    return restore
