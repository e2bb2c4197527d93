import logging
import sys

LOG_FORMAT = "%(asctime)s %(levelname)-8s [%(name)s] %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Attach a single stdout handler to the root logger.

    Safe to call more than once: an existing handler installed by this
    function is reused instead of stacking duplicates.
    """
    root = logging.getLogger()
    root.setLevel(level)
    for handler in root.handlers:
        if getattr(handler, "_pairchat", False):
            return
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler._pairchat = True  # type: ignore[attr-defined]
    root.addHandler(handler)
    # uvicorn's access log is noisy at INFO
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
