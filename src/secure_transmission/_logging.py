"""Logger factory for secure_transmission modules."""

import logging

_ROOT = "secure_transmission"

logging.getLogger(_ROOT).addHandler(logging.NullHandler())


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger inside the package namespace.

    Args:
        name: Module name, usually ``__name__``

    Returns:
        Logger whose records propagate to ``secure_transmission``
    """
    if name != _ROOT and not name.startswith(_ROOT + "."):
        name = f"{_ROOT}.{name}"
    return logging.getLogger(name)
