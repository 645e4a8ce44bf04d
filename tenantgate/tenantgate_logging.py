import contextvars
import logging
import sys
from configparser import RawConfigParser
from contextlib import contextmanager
from logging import Logger
from logging import config as logging_config
from typing import TYPE_CHECKING, Any, Dict, Generator, List, Optional, Tuple, Union, cast

from tenantgate import config

if TYPE_CHECKING:
    from logging import LogRecord

# Default logging configuration
DEFAULT_LOGGING_CONFIG = {
    "version": 1,
    "disable_existing_loggers": False,
    "root": {"level": "INFO", "handlers": ["consoleHandler"]},
    "loggers": {
        "tenantgate": {
            "level": "INFO",
        },
    },
    "handlers": {
        "consoleHandler": {
            "class": "logging.StreamHandler",
            "level": "INFO",
            "formatter": "formatter_formatter",
            "stream": "ext://sys.stderr",
        }
    },
    "formatters": {
        "formatter_formatter": {
            "format": "%(asctime)s.%(msecs)03d - %(name)s - %(levelname)s - %(message)s",
            "datefmt": "%Y-%m-%d %H:%M:%S",
        },
    },
}

try:
    logging_config.dictConfig(DEFAULT_LOGGING_CONFIG)
except KeyError:
    logging.basicConfig(format="%(asctime)s %(name)-12s %(levelname)-8s %(message)s", level=logging.DEBUG)


request_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("request_id")


def annotate_logger(logger: Logger) -> None:
    """
    Adds a request ID filter to all handlers of the specified logger.

    Args:
        logger (Logger): The logger instance to annotate.
    """
    for handler in logger.handlers:
        if not any(isinstance(f, RequestIDFilter) for f in handler.filters):
            handler.addFilter(RequestIDFilter())


def _configure_logging_from_raw(raw_config: RawConfigParser) -> None:
    """
    Configures formatters, handlers and loggers from the ``formatter_*``,
    ``handler_*`` and ``logger_*`` sections of a RawConfigParser object.

    Args:
        raw_config (RawConfigParser): The source configuration containing logging sections.
    """
    formatters = {}
    for section in raw_config.sections():
        if section.startswith("formatter_"):
            formatter_name = section.split("_", 1)[1]
            formatter_options = dict(raw_config.items(section))
            format_str = formatter_options.get("format", "%(message)s")
            datefmt = formatter_options.get("datefmt", None)
            formatters[formatter_name] = logging.Formatter(format_str, datefmt)

    handlers = {}
    for section in raw_config.sections():
        if section.startswith("handler_"):
            handler_name = section.split("_", 1)[1]
            handler_options = dict(raw_config.items(section))
            handler_class = handler_options.get("class", "logging.StreamHandler")
            level = handler_options.get("level", "NOTSET").upper()
            formatter_name = handler_options.get("formatter", "NOTSET")

            args = _parse_args(handler_options.get("args", "()"))
            handler: logging.Handler
            if "StreamHandler" in handler_class:
                handler = logging.StreamHandler(stream=sys.stderr if not args else args[0])
            elif "FileHandler" in handler_class:
                if not args:
                    raise ValueError(f"Handler {handler_name} requires a file name")
                handler = logging.FileHandler(filename=args[0])
            else:
                raise ValueError(f"Unsupported handler class: {handler_class}")

            handler.setLevel(getattr(logging, level, logging.NOTSET))
            if formatter_name in formatters:
                handler.setFormatter(formatters[formatter_name])

            handlers[handler_name] = handler

    if "logger_root" in raw_config.sections():
        root_logger = logging.getLogger()
        root_options = dict(raw_config.items("logger_root"))
        level = root_options.get("level", "NOTSET").upper()
        handler_names = [name.strip() for name in root_options.get("handlers", "").split(",") if name]

        root_logger.setLevel(level)
        root_logger.handlers = []
        for handler_name in handler_names:
            if handler_name in handlers:
                root_logger.addHandler(handlers[handler_name])

    for section in raw_config.sections():
        if section.startswith("logger_") and section != "logger_root":
            logger_name = section.split("_", 1)[1]
            logger_options = dict(raw_config.items(section))
            level = logger_options.get("level", "NOTSET").upper()
            propagate = logger_options.get("propagate", "1") == "1"
            handler_names = [name.strip() for name in logger_options.get("handlers", "").split(",") if name]

            logger = logging.getLogger(logger_name)
            logger.setLevel(level)
            logger.propagate = propagate

            logger.handlers = []
            for handler_name in handler_names:
                if handler_name in handlers:
                    logger.addHandler(handlers[handler_name])


def _parse_args(args_str: str) -> Tuple[Any, ...]:
    """
    Parse the ``args`` option of a handler section, e.g. "(sys.stdout,)" or
    "('/var/log/tenantgate/gateway.log',)".

    Args:
        args_str (str): The string representation of arguments.

    Returns:
        tuple: A parsed tuple of arguments.
    """
    if args_str == "()":
        return ()

    if args_str.startswith("(") and args_str.endswith(")"):
        args_list = [arg.strip() for arg in args_str[1:-1].split(",") if arg.strip()]
        parsed_args: List[Any] = []
        for arg in args_list:
            if arg == "sys.stdout":
                parsed_args.append(sys.stdout)
            elif arg == "sys.stderr":
                parsed_args.append(sys.stderr)
            else:
                parsed_args.append(arg.strip("'\""))
        return tuple(parsed_args)

    raise ValueError(f"Invalid args format: {args_str}")


@contextmanager
def _safe_logging_configuration() -> Generator[None, None, None]:
    """
    Context manager to apply a logging configuration transactionally. If an
    error occurs, the root logger and every named logger are restored to their
    original handlers, levels and propagation.
    """
    existing_loggers: Dict[str, Dict[str, Union[List[logging.Handler], int, bool]]] = {
        name: {
            "handlers": list(logger.handlers),
            "level": logger.level,
            "propagate": logger.propagate,
        }
        for name, logger in logging.Logger.manager.loggerDict.items()
        if isinstance(logger, logging.Logger)
    }
    root_logger: Logger = logging.getLogger()
    root_backup: Dict[str, Union[List[logging.Handler], int]] = {
        "handlers": list(root_logger.handlers),
        "level": root_logger.level,
    }

    try:
        yield
    except Exception:
        for name, logger in logging.Logger.manager.loggerDict.items():
            if name in existing_loggers and isinstance(logger, logging.Logger):
                logger.handlers = cast(List[logging.Handler], existing_loggers[name]["handlers"])
                logger.level = cast(int, existing_loggers[name]["level"])
                logger.propagate = cast(bool, existing_loggers[name]["propagate"])
        root_logger.handlers = cast(List[logging.Handler], root_backup["handlers"])
        root_logger.setLevel(cast(int, root_backup["level"]))
        raise


def _safe_get_config(loggername: str) -> Optional[RawConfigParser]:
    try:
        return config.get_config("logging")
    except Exception as e:
        logging.getLogger(f"tenantgate.{loggername}").debug("No logging configuration available: %s", e)
        return None


def init_logging(loggername: str) -> Logger:
    """
    Initializes the logger ``tenantgate.<loggername>``.

    Applies the ``logging`` component configuration (if any) and attaches the
    request ID filter to the root handlers, so that every record carries the
    ``reqid``/``reqidf`` attributes.

    Args:
        loggername (str): The name of the logger to initialize.

    Returns:
        Logger: The initialized logger instance.
    """
    logger = logging.getLogger(f"tenantgate.{loggername}")

    component_config = _safe_get_config(loggername)

    if component_config and component_config.sections():
        try:
            with _safe_logging_configuration():
                _configure_logging_from_raw(component_config)
        except Exception as e:
            logger.error("Logging configuration error: %s", e)

    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("requests").setLevel(logging.WARNING)

    annotate_logger(logging.getLogger())

    return logger


class RequestIDFilter(logging.Filter):
    """
    A logging filter that adds the current request ID to log records.

    The request ID is read from the ``request_id_var`` context variable, which
    the access gateway sets for the duration of each authorization request.
    """

    def filter(self, record: "LogRecord") -> bool:
        reqid = request_id_var.get("")

        record.reqid = reqid
        record.reqidf = f"(reqid={reqid})" if reqid else ""

        return True
