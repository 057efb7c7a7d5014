# Library of functions shared across pipspeak modules

"""
Copyright © 2025 Merck & Co., Inc., Rahway, NJ, USA and its affiliates. All rights reserved.
This file is part of pipspeak.

This source code is licensed under the MIT License found in the
LICENSE file in the root directory of this source tree.
"""

import functools
import logging
import os
import uuid

__version__ = "0.1.9"
try:
    with open(f"{os.path.dirname(__file__)}/.commit") as fp:
        __version__ = fp.read().strip() or __version__
except OSError:
    __version__ = os.getenv("PIPSPEAK_VERSION", __version__)


class PipspeakError(Exception):
    pass


class ConfigError(PipspeakError):
    """Malformed or inconsistent whitelist, spacer or layout configuration."""


class PairMismatchError(PipspeakError):
    """R1 and R2 streams are out of step with each other."""


class MalformedReadError(PipspeakError):
    """A single R1 read does not fit the declared layout."""


def wrap_exception(
    catch_exc: type[BaseException] | tuple[type[BaseException], ...],
    wrap_exc: type[BaseException],
    *exc_args,
    **exc_kwargs,
):
    def wrapper(func):
        @functools.wraps(func)
        def inner(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except catch_exc as e:
                raise wrap_exc(*(exc_args or (str(e),)), **exc_kwargs) from e

        return inner

    return wrapper


def logs_runtime(func):
    """
    Logs start and finish times for the wrapped process.
    Will create a logger with a unique ID for each call to the wrapped function
    Pass a logger via the `logger` kwarg to the wrapped function to use that instead
    """
    logger = logging.getLogger(f"{func.__name__}:{uuid.uuid4().int % 1_000_000_000}")

    @functools.wraps(func)
    def inner(*args, **kwargs):
        my_logger: logging.Logger = kwargs.pop("logger", logger)
        my_logger.info("Begin")
        ret = func(*args, **kwargs)
        my_logger.info("Finish")
        return ret

    return inner
