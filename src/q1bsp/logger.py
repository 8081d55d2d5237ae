"""Logging helpers used throughout the loader.

Loggers returned by :py:func:`get_logger` accept :external:py:meth:`str.format()` style
arguments instead of ``%`` formatting, and include any active :py:func:`context` names
in the record.
"""
from typing import (
    TYPE_CHECKING, Any, Callable, Dict, Generator, List, Mapping, Optional, Tuple, Type,
    Union, cast,
)
from pathlib import Path
from types import TracebackType
import contextlib
import contextvars
import logging
import os
import sys

from q1bsp import StringPath


__all__ = ['LoggerAdapter', 'get_handler', 'get_logger', 'init_logging', 'context']
# Only generic in stubs!
CTX_STACK: 'contextvars.ContextVar[List[str]]' = contextvars.ContextVar('q1bsp_logger')
# Set to 1 to show debug messages on the console.
DEBUG_ENV_VAR = 'Q1BSP_DEBUG'
LOG_SUFFIXES = ('.5', '.4', '.3', '.2', '.1', '')


class LogMessage:
    """Delay formatting a message until a handler actually needs the text."""
    fmt: str
    args: Tuple[object, ...]
    kwargs: Dict[str, object]

    def __init__(self, fmt: str, args: Tuple[object, ...], kwargs: Dict[str, object]) -> None:
        self.fmt = fmt
        self.args = args
        self.kwargs = kwargs

    def format_msg(self) -> str:
        """Apply the arguments, once."""
        # Messages without arguments are left alone, so braces can appear in them.
        if self.args or self.kwargs:
            self.fmt = str(self.fmt).format(*self.args, **self.kwargs)
            self.args = ()
            self.kwargs = {}
        return str(self.fmt)

    def __str__(self) -> str:
        """Format, indenting continuation lines so they stay attached to the record."""
        msg = self.format_msg()
        if '\n' not in msg:
            return msg
        lines = msg.rstrip('\n').split('\n')
        return '\n | '.join(lines) + '\n |___\n'


_SysExcInfoType = Union[
    Tuple[Type[BaseException], BaseException, Optional[TracebackType]],
    Tuple[None, None, None]
]
if TYPE_CHECKING:  # Only generic in stubs.
    _AdapterBase = logging.LoggerAdapter[logging.Logger]
else:
    _AdapterBase = logging.LoggerAdapter


class LoggerAdapter(_AdapterBase):
    """Adapter which wraps messages in :py:class:`LogMessage` and adds the context."""
    logger: logging.Logger

    def __init__(self, logger: logging.Logger) -> None:
        self.logger = logger
        logging.LoggerAdapter.__init__(self, logger, extra={})

    def log(
        self,
        level: int,
        msg: Any,
        *args: Any,
        exc_info: Union[None, bool, _SysExcInfoType, BaseException] = None,
        stack_info: bool = False,
        extra: Optional[Mapping[str, object]] = None,
        stacklevel: int = 0,
        **kwargs: Any,
    ) -> None:
        """Log a message, formatting ``args`` and ``kwargs`` with :external:py:meth:`str.format()`."""
        if not self.isEnabledFor(level):
            return
        ctx = ', '.join(CTX_STACK.get([]))

        new_extra = {} if extra is None else dict(extra)
        new_extra['q1bsp_context'] = f' ({ctx})' if ctx else ''

        # Skip over our frames, so funcName points at the caller.
        if sys.version_info >= (3, 10):
            stacklevel += 2

        # noinspection PyProtectedMember
        self.logger._log(
            level,
            LogMessage(str(msg), args, kwargs),
            (),
            extra=new_extra,
            exc_info=exc_info,
            stack_info=stack_info,
            stacklevel=stacklevel,
        )

    def __getattr__(self, attr: str) -> Any:
        """Delegate unknown methods to the logger."""
        return getattr(self.logger, attr)


class Formatter(logging.Formatter):
    """Formatter which tolerates records produced by other libraries."""
    def format(self, record: logging.LogRecord) -> str:
        """Records not made through our adapter have no context set."""
        record.__dict__.setdefault('q1bsp_context', '')
        return super().format(record)


def get_handler(filename: StringPath) -> logging.FileHandler:
    """Shift older logs up one suffix, then return a handler writing to a fresh file."""
    path = Path(filename)
    ext = ''.join(path.suffixes)

    try:
        path.with_suffix(LOG_SUFFIXES[0] + ext).unlink(missing_ok=True)
        for frm, to in zip(LOG_SUFFIXES[1:], LOG_SUFFIXES):
            try:
                path.with_suffix(frm + ext).rename(path.with_suffix(to + ext))
            except FileNotFoundError:
                pass
        try:
            return logging.FileHandler(path, mode='x', encoding='utf8')
        except FileExistsError:
            pass
    except PermissionError:
        pass

    # Another process holds the file, keep counting up until a free name appears.
    ind = 1
    while True:
        try:
            return logging.FileHandler(path.with_suffix(f'.{ind}{ext}'), mode='x', encoding='utf8')
        except (FileExistsError, PermissionError):
            pass
        ind += 1


def init_logging(
    filename: Optional[StringPath] = None,
    main_logger: str = '',
    *,
    error: Optional[Callable[[BaseException], object]] = None,
) -> logging.Logger:
    """Set up the root logger and its handlers, for applications using the loader.

    This also installs a :py:func:`sys.excepthook` so uncaught exceptions are logged.

    :param filename: If set, all logs are also written to this file, rotating older copies.
    :param main_logger: The name of the logger to return, inside the ``q1bsp`` hierarchy.
    :param error: Called with any uncaught exception, after it is logged.
    """
    logger = logging.getLogger()
    logger.setLevel(logging.DEBUG)

    # The log file gets more detail, since it's not read live.
    long_log_format = Formatter(
        '[{levelname}]{q1bsp_context} {module}.{funcName}(): {message}',
        style='{',
    )
    short_log_format = Formatter(
        '[{levelname[0]}]{q1bsp_context} {module}.{funcName}(): {message}',
        style='{',
    )

    if filename is not None:
        os.makedirs(os.path.dirname(os.path.abspath(filename)), exist_ok=True)
        log_handler = get_handler(filename)
        log_handler.setLevel(logging.DEBUG)
        log_handler.setFormatter(long_log_format)
        logger.addHandler(log_handler)

    if sys.stdout is not None:
        stdout_handler = logging.StreamHandler(sys.stdout)
        stdout_handler.setLevel(
            logging.DEBUG
            if os.environ.get(DEBUG_ENV_VAR, '0') == '1' else
            logging.INFO
        )
        stdout_handler.setFormatter(short_log_format)
        if sys.stderr is not None:
            # Warnings and errors go to stderr only.
            stdout_handler.addFilter(lambda record: record.levelno < logging.WARNING)
        logger.addHandler(stdout_handler)

    if sys.stderr is not None:
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setLevel(logging.WARNING)
        stderr_handler.setFormatter(short_log_format)
        logger.addHandler(stderr_handler)

    old_except_handler = sys.excepthook

    def except_handler(
        exc_type: Type[BaseException],
        exc_value: BaseException,
        exc_tb: Optional[TracebackType],
    ) -> None:
        """Log uncaught exceptions."""
        if isinstance(exc_value, SystemExit):
            return
        logger.error('Uncaught Exception:', exc_info=(exc_type, exc_value, exc_tb))
        if error is not None:
            error(exc_value)
        if old_except_handler is not sys.__excepthook__:
            old_except_handler(exc_type, exc_value, exc_tb)

    sys.excepthook = except_handler

    if main_logger:
        return get_logger(main_logger)
    return cast(logging.Logger, LoggerAdapter(logger))


def get_logger(name: str = '') -> logging.Logger:
    """Get a logger inside the ``q1bsp`` namespace, using :external:py:meth:`str.format()`."""
    if name:
        log = logging.getLogger('q1bsp.' + name)
    else:
        log = logging.getLogger('q1bsp')
    return cast(logging.Logger, LoggerAdapter(log))


@contextlib.contextmanager
def context(name: str) -> Generator[str, None, None]:
    """Include ``name`` in every message logged inside this block."""
    stack = CTX_STACK.get(None)
    if stack is None:
        stack = []
        CTX_STACK.set(stack)
    stack.append(name)
    try:
        yield name
    finally:
        popped = stack.pop()
        assert popped is name, f'Popped incorrect value: pop({popped!r}) != ctx({name!r})!'
