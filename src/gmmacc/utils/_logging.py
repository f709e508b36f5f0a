import sys

from loguru import logger

FORMAT = "<level>{level: <8}</level> | {message} - <cyan>{name}</cyan>:<cyan>{function}</cyan>"  # noqa E501


def _install_handler(level: str | int) -> None:
    # One stdout handler; replaces loguru's default stderr one
    logger.remove()
    logger.add(sys.stdout, level=level, colorize=True, format=FORMAT)


_install_handler("INFO")


def set_log_level(verbose: str | int | bool | None) -> None:
    """Set global log level for gmmacc.

    Parameters
    ----------
    verbose : str or int or bool or None
        A level name (``"DEBUG"``, ``"INFO"``, ``"WARNING"``, ``"ERROR"``,
        ``"CRITICAL"``, any case) or a numeric level such as ``logging.DEBUG``.
        ``True`` means ``"INFO"`` and ``False`` means ``"WARNING"``. ``None``
        means ``"INFO"``.

    Notes
    -----
    The handler writes to whatever ``sys.stdout`` is at call time, so calling
    this after redirecting stdout sends the logs there.
    """
    if verbose is None:
        verbose = "INFO"
    elif isinstance(verbose, bool):
        verbose = "INFO" if verbose else "WARNING"
    elif isinstance(verbose, str):
        verbose = verbose.upper()
    _install_handler(verbose)


def log(msg: str, level: str = "info", color: str = None, weight: str = None) -> None:
    """Log ``msg`` with loguru color markup.

    Example: log("Written accs to 1.acc", color="green", weight="bold")
    """
    if color:
        msg = f"<{color}>{msg}</{color}>"
    if weight == "bold":
        msg = f"<lvl>{msg}</lvl>"
    # depth=1 reports the caller, not this helper
    getattr(logger.opt(colors=True, depth=1), level)(msg)
