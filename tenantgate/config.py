import ast
import logging
import os
import os.path
from configparser import RawConfigParser
from typing import Any, Dict, List, Optional

logging.basicConfig(level=logging.INFO)
base_logger = logging.getLogger("tenantgate.config")


def environ_bool(env_name: str, default: bool) -> bool:
    val = os.getenv(env_name, "default").lower()
    if val in ["on", "true", "1"]:
        return True
    if val in ["off", "false", "0"]:
        return False
    if val == "default":
        return default
    raise ValueError(
        f"Environment variable {env_name} set to invalid value " f"{val} (use either on/true/1 or off/false/0)"
    )


# allow testing mode
TEST_MODE = environ_bool("TENANTGATE_TEST", False)

# Possible paths for base configuration files
CONFIG_FILES = {
    "gateway": ["/etc/tenantgate/gateway.conf", "/usr/etc/tenantgate/gateway.conf"],
    "logging": ["/etc/tenantgate/logging.conf", "/usr/etc/tenantgate/logging.conf"],
}

# Paths to directories in which options can be overriden using configuration
# snippets
CONFIG_SNIPPETS_DIRS = {
    "gateway": ["/usr/etc/tenantgate/gateway.conf.d", "/etc/tenantgate/gateway.conf.d"],
    "logging": ["/usr/etc/tenantgate/logging.conf.d", "/etc/tenantgate/logging.conf.d"],
}

CONFIG_ENV = {
    "gateway": "",
    "logging": "",
}

# Add files from environment variables, if set
if "TENANTGATE_GATEWAY_CONFIG" in os.environ:
    CONFIG_ENV["gateway"] = os.environ["TENANTGATE_GATEWAY_CONFIG"]
if "TENANTGATE_LOGGING_CONFIG" in os.environ:
    CONFIG_ENV["logging"] = os.environ["TENANTGATE_LOGGING_CONFIG"]

# Single instance
_config: Optional[Dict[str, RawConfigParser]] = None


def _validate_config_files(component: str, file_paths: List[str], files_read: List[str]) -> None:
    """Log the configuration files that exist but could not be parsed.

    Args:
        component: The component name (e.g., 'gateway')
        file_paths: List of file paths that were attempted to be read
        files_read: List of files that ConfigParser successfully read
    """
    for file_path in file_paths:
        if not os.path.exists(file_path):
            continue

        if not os.access(file_path, os.R_OK):
            base_logger.error("Config file %s for %s exists but is not readable", file_path, component)
            continue

        if file_path not in files_read:
            base_logger.error(
                "Config file %s for %s exists but failed to parse, check it for duplicate options", file_path, component
            )


def get_config(component: str) -> RawConfigParser:
    """Find the configuration file to use for the given component and apply the
    overrides defined by configuration snippets.

    Configuration files are expected to be installed on /usr/etc/tenantgate or
    /etc/tenantgate. If a configuration file is found in /etc/tenantgate, the
    configuration file in /usr/etc/tenantgate is ignored.

    If a configuration file path is set through a TENANTGATE_*_CONFIG
    environment variable, all configuration from other files for that component
    is ignored.

    Overrides are applied from the snippets in /etc/tenantgate/<component>.conf.d
    in lexical order.
    """

    global _config

    if not _config:
        _config = {}

    if not component:
        raise Exception("No component provided to get_config")

    if component not in _config:
        # Use RawConfigParser, so we can also use it as the logging config
        _config[component] = RawConfigParser()

        if not CONFIG_ENV or not isinstance(CONFIG_ENV, dict):
            raise Exception("Invalid CONFIG_ENV")

        if not component in CONFIG_ENV:
            raise Exception(f"Invalid component '{component}'")

        if CONFIG_ENV[component]:
            if os.path.isfile(CONFIG_ENV[component]):
                config_files = _config[component].read(CONFIG_ENV[component])
                base_logger.info("Reading configuration from %s", config_files)
                return _config[component]

            base_logger.info(
                "Configuration file %s for %s set through environment variable not found, falling back to installed configuration",
                CONFIG_ENV[component],
                component,
            )

        if not CONFIG_FILES or not isinstance(CONFIG_FILES, dict):
            raise Exception("Invalid CONFIG_FILES")

        if not component in CONFIG_FILES:
            raise Exception(f"Invalid component {component}")

        if not any(os.path.exists(c) for c in CONFIG_FILES[component]):
            base_logger.debug("Config file not found in %s, using defaults for %s", CONFIG_FILES[component], component)
        else:
            for c in CONFIG_FILES[component]:
                # The first base configuration file found is used, the others
                # are ignored
                config_file = _config[component].read(c)
                _validate_config_files(component, [c], config_file)

                if config_file:
                    base_logger.info("Reading configuration from %s", config_file)

                    for d in (x for x in CONFIG_SNIPPETS_DIRS.get(component, []) if os.path.exists(x)):
                        snippets = sorted(
                            [os.path.join(d, f) for f in os.listdir(d) if f and os.path.isfile(os.path.join(d, f))]
                        )
                        applied_snippets = _config[component].read(snippets)
                        _validate_config_files(component, snippets, applied_snippets)

                        if applied_snippets:
                            base_logger.info("Applied configuration snippets from %s", d)

                    break

    return _config[component]


def _get_env(component: str, option: str, section: Optional[str]) -> Optional[str]:
    opt_section = f"_{section.upper()}" if section else ""
    env_name = f"TENANTGATE_{component.upper()}{opt_section}_{option.upper()}"
    env_value = os.environ.get(env_name, None)
    if env_value is not None:
        log_msg = f'option "{option}" on section {section} for component {component}.conf was overriden by environment variable {env_name}'
        base_logger.info(log_msg.replace("on section None ", ""))

    return env_value


def _get_raw(component: str, option: str, section: str) -> Optional[str]:
    cfg = get_config(component)
    if not cfg.has_section(section):
        return None
    return cfg.get(section, option, fallback=None)


def getlist(
    component: str, option: str, section: Optional[str] = None, fallback: Optional[List[Any]] = None
) -> List[Any]:
    env_value = _get_env(component, option, section)
    if not section:
        section = component

    if env_value is not None:
        read: Optional[str] = env_value.strip('" ')
    else:
        read = _get_raw(component, option, section)
        if read is None:
            if fallback is not None:
                return list(fallback)
            raise Exception(f"Could not find option '{option}' in section '{section}' of component '{component}'")
        read = read.strip('" ')

    if not read:
        return []

    try:
        l = ast.literal_eval(read)
        if isinstance(l, (list, tuple)):
            return [i.strip() if isinstance(i, str) else i for i in l]
        raise Exception(
            f"Config option '{option}' in section '{section}' " f"'of component {component} should be a list"
        )
    except Exception as e:
        raise Exception(
            f"Failed to get list from config for component '{component}', section '{section}', option '{option}'"
        ) from e


def get(component: str, option: str, section: Optional[str] = None, fallback: str = "") -> str:
    env_value = _get_env(component, option, section)
    if not section:
        section = component

    if env_value is not None:
        return env_value.strip('" ')

    return get_config(component).get(section, option, fallback=fallback).strip('" ')


def getint(component: str, option: str, section: Optional[str] = None, fallback: int = -1) -> int:
    env_value = _get_env(component, option, section)
    if not section:
        section = component

    if env_value is not None:
        return int(env_value)

    return get_config(component).getint(section, option, fallback=fallback)


def getboolean(component: str, option: str, section: Optional[str] = None, fallback: bool = False) -> bool:
    env_value = _get_env(component, option, section)
    if not section:
        section = component

    if env_value is not None:
        env_value_lower = env_value.lower().strip('" ')
        if env_value_lower not in RawConfigParser.BOOLEAN_STATES:
            return fallback
        return RawConfigParser.BOOLEAN_STATES[env_value_lower]

    return get_config(component).getboolean(section, option, fallback=fallback)


def getfloat(component: str, option: str, section: Optional[str] = None, fallback: float = -1.0) -> float:
    env_value = _get_env(component, option, section)
    if not section:
        section = component

    if env_value is not None:
        return float(env_value)

    return get_config(component).getfloat(section, option, fallback=fallback)


def has_option(component: str, option: str, section: Optional[str] = None) -> bool:
    env_value = _get_env(component, option, section)
    if not section:
        section = component

    if env_value is not None:
        return True

    return get_config(component).has_option(section, option)


# Gateway defaults, used when an option is absent from gateway.conf
DEFAULT_POLICY_MANIFEST = "/etc/tenantgate/policies.yaml"
DEFAULT_AUDIT_LOG = "/var/log/tenantgate/audit.jsonl"
DEFAULT_AUDIT_QUEUE_SIZE = 10000
DEFAULT_LIST_PREFIX_KEY = "s3:prefix"
DEFAULT_TIMEOUT = 60.0
DEFAULT_MAX_RETRIES = 5
