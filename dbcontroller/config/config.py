"""
Load the library config at import time, validate it and set up logging from it
"""

# Standard
import os

# First Party
import aconfig
import alog

# Local
from ..log_format import DatabaseJsonFormatter
from .validation import get_invalid_params

_CONFIG_DIR = os.path.dirname(__file__)


def _load(file_name: str, override_env_vars: bool) -> aconfig.Config:
    return aconfig.Config.from_yaml(
        os.path.join(_CONFIG_DIR, file_name),
        override_env_vars=override_env_vars,
    )


def configure_logging(config_obj: aconfig.Config):
    """(Re)configure alog from the logging keys of a library config"""
    alog.configure(
        default_level=config_obj.log_level,
        filters=config_obj.log_filters,
        formatter=DatabaseJsonFormatter() if config_obj.log_json else "pretty",
        thread_id=config_obj.log_thread_id,
    )


# Environment variables override the packaged defaults, the validation rules
# are fixed
library_config = _load("config.yaml", override_env_vars=True)
validation_config = _load("config_validation.yaml", override_env_vars=False)

invalid_params = get_invalid_params(library_config, validation_config)
assert (
    not invalid_params
), f"Library configuration found invalid values: {invalid_params}"

configure_logging(library_config)
