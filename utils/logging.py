import os
import time
import functools
import logging
from contextlib import contextmanager

# Configure logger
logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def get_logger(name=None):
    """
    Get a logger with the specified name or the calling module's name.
    This helps maintain consistent logging across the application.
    """
    if name is None:
        # Get the name of the module that called this function
        import inspect
        frame = inspect.stack()[1]
        module = inspect.getmodule(frame[0])
        name = module.__name__ if module else __name__

    return logging.getLogger(name)


def _format_value(value):
    text = str(value)
    if not text or any(ch.isspace() for ch in text) or '"' in text:
        return '"' + text.replace('"', '\\"') + '"'
    return text


def log_event(target_logger, event, level="INFO", **fields):
    """
    Emit a structured log event rendered as ``event key=value ...``.

    Args:
        target_logger: Logger (or any object with logging-style methods)
        event: Short dotted event name, e.g. "ingest.completed"
        level: Log level name
        **fields: Key/value pairs attached to the event

    Returns:
        The rendered message
    """
    parts = [event]
    parts.extend(f"{key}={_format_value(value)}" for key, value in fields.items())
    message = " ".join(parts)
    getattr(target_logger, level.lower())(message)
    return message


def timing_decorator(func=None, *, level="DEBUG", log_args=False):
    """
    Decorator that logs the execution time of a function

    Args:
        func: The function to decorate
        level: Log level ("DEBUG", "INFO", "WARNING", "ERROR")
        log_args: Whether to log function arguments
    """
    def decorator(fn):
        @functools.wraps(fn)
        def wrapper(*args, **kwargs):
            # Get logger from the module where the decorated function is defined
            fn_logger = logging.getLogger(fn.__module__)
            log_method = getattr(fn_logger, level.lower())

            if log_args:
                arg_str = ', '.join([str(arg) for arg in args])
                kwarg_str = ', '.join([f"{k}={v}" for k, v in kwargs.items()])
                all_args = ', '.join(filter(None, [arg_str, kwarg_str]))
                log_method(f"Calling {fn.__name__}({all_args})")

            start_time = time.monotonic()
            try:
                return fn(*args, **kwargs)
            finally:
                log_method(f"{fn.__name__} executed in {time.monotonic() - start_time:.4f} seconds")
        return wrapper

    # This allows the decorator to be used with or without arguments
    if func is not None:
        return decorator(func)
    return decorator


@contextmanager
def timer(name, level="DEBUG", logger_name=None):
    """
    Context manager for timing code blocks

    Example:
        with timer("Downloading upload"):
            # code to time
    """
    timer_logger = get_logger(logger_name or __name__)
    log_method = getattr(timer_logger, level.lower())

    start_time = time.monotonic()
    try:
        yield
    finally:
        log_method(f"{name} completed in {time.monotonic() - start_time:.4f} seconds")
