"""Utility functions for the differential expression and enrichment pipeline."""

import logging
import platform
from pathlib import Path
from typing import Optional, Union

# Progress bar settings shared by every tqdm bar in the package
is_mac = platform.system() == 'Darwin'
tqdm_kwargs = {
    'position': 0,
    'leave': True,
    'ncols': 100,
    'dynamic_ncols': True,
    'ascii': is_mac,        # ASCII bars render better in the macOS terminal
    'disable': False,
}

_LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def setup_logging(log_dir: Optional[Union[str, Path]] = None, level=logging.INFO) -> logging.Logger:
    """Set up logging configuration.

    Installs a console handler and, when ``log_dir`` is given, a file handler
    writing ``pipeline.log``. Handlers from earlier calls are replaced.

    Args:
        log_dir: Directory to store log files
        level: Logging level

    Returns:
        The package logger
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    for handler in root_logger.handlers[:]:
        if getattr(handler, '_degsea', False):
            root_logger.removeHandler(handler)
            handler.close()

    if log_dir:
        log_dir = ensure_dir(Path(log_dir))
        file_handler = logging.FileHandler(log_dir / 'pipeline.log', mode='w')
        file_handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        file_handler._degsea = True
        root_logger.addHandler(file_handler)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(logging.Formatter('%(asctime)s - %(levelname)s - %(message)s'))
    console_handler._degsea = True
    root_logger.addHandler(console_handler)

    logger = logging.getLogger('degsea')
    logger.setLevel(level)
    logger.info("Logging initialised")
    return logger


def ensure_dir(path: Path) -> Path:
    """Ensure a directory exists, creating it if necessary.

    Args:
        path: Directory path

    Returns:
        Path object for the directory
    """
    path = Path(path)
    path.mkdir(parents=True, exist_ok=True)
    return path
