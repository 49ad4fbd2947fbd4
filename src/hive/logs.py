import logging
import sys

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def configure_logging(verbose: bool = False) -> None:
    """Send log records to stderr so stdout stays machine-readable."""
    root_logger = logging.getLogger()
    if root_logger.handlers:
        root_logger.setLevel(logging.DEBUG if verbose else logging.WARNING)
        return

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler(sys.stderr)],
    )
