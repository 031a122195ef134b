"""
config.py
~~~~~~~~~

Logging setup and JSON loaders for training configs and network
definitions.
"""

import json
import logging
import os
from typing import Any, Dict

from fingers.exceptions import ConfigurationError
from fingers.network import NetworkDefinition
from fingers.training import TrainConfig

logger = logging.getLogger(__name__)

NOISY_LOGGERS = ['socketio', 'engineio', 'engineio.server',
                 'socketio.server', 'werkzeug']


def configure_logging() -> None:
    """
    Set up logging based on environment.

    - ``LOG_LEVEL`` picks the level (default INFO)
    - With ``FLASK_ENV=production`` third-party server logs are limited
      to warnings while ``fingers`` logs stay at INFO
    """
    log_level_str = os.getenv('LOG_LEVEL', 'INFO').upper()
    log_level = getattr(logging, log_level_str, logging.INFO)
    is_production = os.getenv('FLASK_ENV') == 'production'

    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    if is_production:
        for logger_name in NOISY_LOGGERS:
            logging.getLogger(logger_name).setLevel(logging.WARNING)
        logging.getLogger('fingers').setLevel(logging.INFO)


def _read_json(path: str, what: str) -> Dict[str, Any]:
    try:
        with open(path, 'r') as f:
            data = json.load(f)
    except FileNotFoundError as e:
        raise ConfigurationError(f"no {what} file at {path}") from e
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"malformed {what} file {path}: {e}") from e
    except OSError as e:
        raise ConfigurationError(f"cannot read {what} file {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigurationError(f"{what} file {path} must contain a JSON object")
    return data


def load_train_config(path: str) -> TrainConfig:
    """
    Load a :class:`TrainConfig` from a JSON file.

    Args:
        path: JSON file with the config fields

    Raises:
        ConfigurationError: If the file is missing, malformed or lacks
            a required field
    """
    conf = TrainConfig.from_dict(_read_json(path, 'train config'))
    logger.info(f"Loaded train config from {path}")
    return conf


def load_network_definition(path: str) -> NetworkDefinition:
    """
    Load a :class:`NetworkDefinition` from a JSON file.

    Raises:
        ConfigurationError: If the file is missing or malformed
    """
    defn = NetworkDefinition.from_dict(_read_json(path, 'network definition'))
    logger.info(f"Loaded network definition {defn.layers} from {path}")
    return defn
