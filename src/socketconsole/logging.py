import logging


_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
_LOGGERS: dict[str, logging.Logger] = {}
_LEVEL = logging.WARN


def get_logger(name: str) -> logging.Logger:
    if name in _LOGGERS:
        return _LOGGERS[name]

    logger = logging.getLogger(name)
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(fmt=_FORMAT))
    logger.addHandler(handler)
    logger.setLevel(_LEVEL)
    _LOGGERS[name] = logger
    return logger


def set_debug(enabled: bool):
    """Switches every logger handed out by `get_logger` between DEBUG and WARN.

    Loggers created afterwards pick up the same level.
    """

    global _LEVEL
    _LEVEL = logging.DEBUG if enabled else logging.WARN
    for logger in _LOGGERS.values():
        logger.setLevel(_LEVEL)
