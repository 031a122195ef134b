"""
test_config.py
~~~~~~~~~~~~~~

Tests for JSON config loading and logging setup.
"""

import json
import logging
import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from fingers.config import (
    configure_logging,
    load_network_definition,
    load_train_config,
)
from fingers.exceptions import ConfigurationError


def write_json(path, data):
    with open(path, 'w') as f:
        json.dump(data, f)
    return str(path)


@pytest.mark.unit
class TestLoadTrainConfig:
    """Test loading training configs from disk."""

    def test_valid_file(self, tmp_path):
        path = write_json(tmp_path / 'conf.json', {
            'learning_rate': 0.05,
            'momentum_rate': None,
            'validation_ratio': 0.1,
            'sequential_validation_failures_required': 5,
            'max_epochs': 1000,
            'epoch_log_period': 50,
        })

        conf = load_train_config(path)

        assert conf.learning_rate == 0.05
        assert conf.momentum_rate is None
        assert conf.log_period == 50

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError):
            load_train_config(str(tmp_path / 'nope.json'))

    def test_malformed_json(self, tmp_path):
        path = tmp_path / 'conf.json'
        path.write_text('{"learning_rate": ')
        with pytest.raises(ConfigurationError) as exc_info:
            load_train_config(str(path))
        assert 'malformed' in str(exc_info.value)

    def test_not_an_object(self, tmp_path):
        path = write_json(tmp_path / 'conf.json', [1, 2, 3])
        with pytest.raises(ConfigurationError):
            load_train_config(path)

    def test_missing_required_field(self, tmp_path):
        path = write_json(tmp_path / 'conf.json', {'learning_rate': 0.1})
        with pytest.raises(ConfigurationError):
            load_train_config(path)

    def test_out_of_range_value(self, tmp_path):
        path = write_json(tmp_path / 'conf.json', {
            'learning_rate': -1,
            'validation_ratio': 0.1,
            'sequential_validation_failures_required': 5,
        })
        with pytest.raises(ConfigurationError):
            load_train_config(path)


@pytest.mark.unit
class TestLoadNetworkDefinition:
    """Test loading network definitions from disk."""

    def test_valid_file(self, tmp_path):
        path = write_json(tmp_path / 'net.json', {
            'layers': [196, 30, 196],
            'activation_coeffs': [1.0, 1.0],
            'activation_fn': 'sigmoid',
        })

        defn = load_network_definition(path)

        assert defn.layers == [196, 30, 196]
        assert defn.layer_coefficients == [0.0, 1.0, 1.0]

    def test_activation_defaults_to_sigmoid(self, tmp_path):
        path = write_json(tmp_path / 'net.json', {
            'layers': [2, 1],
            'activation_coeffs': [1.0],
        })
        assert load_network_definition(path).activation_fn == 'sigmoid'

    def test_missing_layers(self, tmp_path):
        path = write_json(tmp_path / 'net.json', {'activation_coeffs': [1.0]})
        with pytest.raises(ConfigurationError):
            load_network_definition(path)


@pytest.mark.unit
class TestConfigureLogging:
    """Test environment-driven logging setup."""

    def test_production_quiets_server_loggers(self, monkeypatch):
        monkeypatch.setenv('FLASK_ENV', 'production')
        monkeypatch.setenv('LOG_LEVEL', 'DEBUG')
        previous = {
            name: logging.getLogger(name).level
            for name in ('werkzeug', 'engineio', 'fingers')
        }
        try:
            configure_logging()

            assert logging.getLogger('werkzeug').level == logging.WARNING
            assert logging.getLogger('engineio').level == logging.WARNING
            assert logging.getLogger('fingers').level == logging.INFO
        finally:
            for name, level in previous.items():
                logging.getLogger(name).setLevel(level)
