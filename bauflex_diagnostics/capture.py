"""Global error capture: uncaught exceptions, asyncio task failures and the
WARNING/ERROR log channels are mirrored into a :class:`DiagnosticLogger`.

Every hook chains to whatever was installed before it, so capture adds a
diagnostic record without changing how the process already reports errors.
"""

import logging
import sys
import threading
import traceback

from bauflex_diagnostics.models import Category, LogLevel

OWN_LOGGER_PREFIX = "bauflex_diagnostics"


class MirroringHandler(logging.Handler):
    """Logging handler that copies WARNING and ERROR records into the diagnostic log."""

    def __init__(self, diagnostic_logger):
        super().__init__(level=logging.WARNING)
        self._diagnostic_logger = diagnostic_logger
        self._local = threading.local()

    def emit(self, record):
        if record.name.startswith(OWN_LOGGER_PREFIX):
            return
        if getattr(self._local, "active", False):
            return
        self._local.active = True
        try:
            if record.levelno >= logging.ERROR:
                level, message, kind = LogLevel.ERROR, "Console Error", "console_error"
            else:
                level, message, kind = LogLevel.WARN, "Console Warning", "console_warn"
            stack = None
            if record.exc_info and record.exc_info[1] is not None:
                stack = "".join(traceback.format_exception(*record.exc_info))
            self._diagnostic_logger.log(
                level,
                Category.LOGIC,
                message,
                {"logger": record.name, "args": [record.getMessage()]},
                {"type": kind},
                stack,
            )
        except Exception:
            self.handleError(record)
        finally:
            self._local.active = False


class ErrorCapture:
    """Installs and restores the process-wide error hooks for one logger."""

    def __init__(self, diagnostic_logger, root_logger=None):
        self._diagnostic_logger = diagnostic_logger
        self._root_logger = root_logger or logging.getLogger()
        self._handler = MirroringHandler(diagnostic_logger)
        self._previous_excepthook = None
        self._previous_threading_hook = None
        self._loops = []
        self._installed = False

    @property
    def installed(self):
        return self._installed

    @property
    def handler(self):
        return self._handler

    def install(self):
        if self._installed:
            return
        self._previous_excepthook = sys.excepthook
        self._previous_threading_hook = threading.excepthook
        sys.excepthook = self._excepthook
        threading.excepthook = self._threading_excepthook
        self._root_logger.addHandler(self._handler)
        self._installed = True

    def uninstall(self):
        if not self._installed:
            return
        sys.excepthook = self._previous_excepthook
        threading.excepthook = self._previous_threading_hook
        self._root_logger.removeHandler(self._handler)
        for loop, previous in self._loops:
            loop.set_exception_handler(previous)
        self._loops = []
        self._installed = False

    def watch_loop(self, loop):
        """Capture unhandled task exceptions raised on an asyncio event loop."""
        previous = loop.get_exception_handler()
        self._loops.append((loop, previous))

        def handler(loop, context):
            self.record_async_failure(context)
            if previous is not None:
                previous(loop, context)
            else:
                loop.default_exception_handler(context)

        loop.set_exception_handler(handler)

    def record_uncaught(self, exc_type, exc, tb):
        self._diagnostic_logger.log(
            LogLevel.ERROR,
            Category.UI,
            f"Uncaught Error: {exc}",
            {"type": exc_type.__name__, "error": repr(exc)},
            {"type": "global_error"},
            "".join(traceback.format_exception(exc_type, exc, tb)),
        )

    def record_async_failure(self, context):
        exc = context.get("exception")
        reason = exc if exc is not None else context.get("message", "unknown")
        stack = None
        if exc is not None:
            stack = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        self._diagnostic_logger.log(
            LogLevel.ERROR,
            Category.LOGIC,
            f"Unhandled Async Rejection: {reason}",
            {"reason": repr(reason)},
            {"type": "promise_rejection"},
            stack,
        )

    def _excepthook(self, exc_type, exc, tb):
        if not issubclass(exc_type, KeyboardInterrupt):
            self.record_uncaught(exc_type, exc, tb)
        self._previous_excepthook(exc_type, exc, tb)

    def _threading_excepthook(self, args):
        if args.exc_type is not SystemExit:
            self.record_uncaught(args.exc_type, args.exc_value, args.exc_traceback)
        self._previous_threading_hook(args)
