# Copyright 2010-2026 The Wazo Authors  (see the AUTHORS file)
# SPDX-License-Identifier: GPL-3.0-or-later

"""TFTP server configuration module.

Read raw parameter values from different sources and return a dictionary
with well-defined values.

The sources are, from the lowest to the highest priority: the default
values, the configuration file, the files of the extra configuration
directory (in alphabetical order) and the command line.

The following parameters are defined:
    config_file
    extra_config_files
    general:
        listen_address
        port
        root_dir
            The directory holding the files served.
        write_mode
            One of 'disabled', 'new' or 'overwrite'.
        exit_with_client
            Stop the server after its first transfer.
        verbose
        log_file
        security_log_file
    transfer:
        timeout
            Seconds to wait for an answer before retransmitting.
        max_retries
        max_blksize
        max_windowsize

"""
from __future__ import annotations

import logging
import os
from typing import Any, TypedDict, cast

import yaml
from twisted.python import usage

from wazo_tftp.tftp.options import (
    MAX_BLKSIZE,
    MAX_WINDOWSIZE,
    MIN_BLKSIZE,
    MIN_WINDOWSIZE,
)
from wazo_tftp.tftp.service import WRITE_MODES


class GeneralConfigDict(TypedDict):
    listen_address: str
    port: int
    root_dir: str
    write_mode: str
    exit_with_client: bool
    verbose: bool
    log_file: str
    security_log_file: str


class TransferConfigDict(TypedDict):
    timeout: float
    max_retries: int
    max_blksize: int
    max_windowsize: int


class TFTPConfigDict(TypedDict):
    config_file: str
    extra_config_files: str
    general: GeneralConfigDict
    transfer: TransferConfigDict


logger = logging.getLogger(__name__)

_DEFAULT_CONFIG: TFTPConfigDict = {
    'config_file': '/etc/wazo-tftp/config.yml',
    'extra_config_files': '/etc/wazo-tftp/conf.d',
    'general': {
        'listen_address': '0.0.0.0',
        'port': 69,
        'root_dir': '/var/lib/wazo-tftp',
        'write_mode': 'new',
        'exit_with_client': False,
        'verbose': False,
        'log_file': '/var/log/wazo-tftp.log',
        'security_log_file': '/var/log/wazo-tftp-fail2ban.log',
    },
    'transfer': {
        'timeout': 4,
        'max_retries': 4,
        'max_blksize': MAX_BLKSIZE,
        'max_windowsize': MAX_WINDOWSIZE,
    },
}

_OPTION_TO_PARAM_LIST = [
    # (<option name, (<section, param name>)>)
    ('listen-address', ('general', 'listen_address')),
    ('port', ('general', 'port')),
    ('root-dir', ('general', 'root_dir')),
    ('write-mode', ('general', 'write_mode')),
    ('log-file', ('general', 'log_file')),
    ('timeout', ('transfer', 'timeout')),
    ('max-retries', ('transfer', 'max_retries')),
    ('max-blksize', ('transfer', 'max_blksize')),
    ('max-windowsize', ('transfer', 'max_windowsize')),
]


class ConfigError(Exception):
    """Raise when an error occur while getting configuration."""

    pass


class Options(usage.Options):
    # The 'stderr' option should probably be defined somewhere else but
    # it's more practical to define it here. It SHOULD NOT be inserted
    # in the config though.
    optFlags = [
        ('stderr', 's', 'Log to standard error instead of the log file.'),
        ('verbose', 'v', 'Increase verbosity.'),
        ('exit-with-client', None, 'Exit after the first transfer.'),
    ]

    optParameters = [
        ('config-file', 'f', None, 'The configuration file'),
        ('listen-address', 'l', None, 'The address to listen on.'),
        ('port', 'p', None, 'The port to listen on.'),
        ('root-dir', 'd', None, 'The directory holding the files served.'),
        ('write-mode', 'w', None, 'One of disabled, new or overwrite.'),
        ('log-file', None, None, 'The log file.'),
        ('timeout', 't', None, 'Seconds to wait before retransmitting.'),
        ('max-retries', 'r', None, 'Retransmissions before giving up.'),
        ('max-blksize', None, None, 'The largest block size accepted.'),
        ('max-windowsize', None, None, 'The largest window size accepted.'),
    ]


def _convert_cli_to_config(options: Options) -> dict[str, Any]:
    raw_config: dict[str, Any] = {'general': {}, 'transfer': {}}
    for option_name, (section, param_name) in _OPTION_TO_PARAM_LIST:
        if options[option_name] is not None:
            raw_config[section][param_name] = options[option_name]
    if options['verbose']:
        raw_config['general']['verbose'] = True
    if options['exit-with-client']:
        raw_config['general']['exit_with_client'] = True
    if options['config-file'] is not None:
        raw_config['config_file'] = options['config-file']
    return raw_config


def _merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    result = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = _merge(result[key], value)
        else:
            result[key] = value
    return result


def _load_yaml_file(filename: str) -> dict[str, Any]:
    try:
        with open(filename) as f:
            content = yaml.safe_load(f)
    except FileNotFoundError:
        logger.debug('Configuration file %s does not exist', filename)
        return {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f'Could not read configuration file {filename}: {e}')

    if content is None:
        return {}
    if not isinstance(content, dict):
        raise ConfigError(f'Configuration file {filename} is not a mapping')
    return content


def _read_config_file_hierarchy(raw_config: dict[str, Any]) -> dict[str, Any]:
    file_config = _load_yaml_file(raw_config['config_file'])
    extra_dir = file_config.get('extra_config_files', raw_config['extra_config_files'])
    try:
        filenames = sorted(os.listdir(extra_dir))
    except FileNotFoundError:
        filenames = []
    except OSError as e:
        raise ConfigError(f'Could not list directory {extra_dir}: {e}')

    for filename in filenames:
        if filename.startswith('.') or not filename.endswith(('.yml', '.yaml')):
            continue
        file_config = _merge(
            file_config, _load_yaml_file(os.path.join(extra_dir, filename))
        )
    return file_config


def _convert_number(
    raw_config: dict[str, Any],
    section: str,
    param_name: str,
    lower: float,
    upper: float | None = None,
    type_: type = int,
) -> None:
    raw_value = raw_config[section][param_name]
    try:
        value = type_(raw_value)
    except (TypeError, ValueError):
        raise ConfigError(f'Invalid value for {section}.{param_name}: {raw_value!r}')
    if value < lower or (upper is not None and value > upper):
        raise ConfigError(
            f'Value for {section}.{param_name} out of range: {raw_value!r}'
        )
    raw_config[section][param_name] = value


def _check_and_convert_parameters(raw_config: dict[str, Any]) -> None:
    _convert_number(raw_config, 'general', 'port', 1, 65535)
    _convert_number(raw_config, 'transfer', 'timeout', 0.001, type_=float)
    _convert_number(raw_config, 'transfer', 'max_retries', 1)
    _convert_number(raw_config, 'transfer', 'max_blksize', MIN_BLKSIZE, MAX_BLKSIZE)
    _convert_number(
        raw_config, 'transfer', 'max_windowsize', MIN_WINDOWSIZE, MAX_WINDOWSIZE
    )

    write_mode = raw_config['general']['write_mode']
    if write_mode not in WRITE_MODES:
        raise ConfigError(f'Invalid write mode: {write_mode!r}')

    root_dir = raw_config['general']['root_dir']
    if not os.path.isdir(root_dir):
        raise ConfigError(f'Root directory {root_dir} does not exist')


def get_config(argv: Options) -> TFTPConfigDict:
    """Pull the raw parameters values from the configuration sources and
    return a config dictionary.
    """
    cli_config = _convert_cli_to_config(argv)
    base_config = _merge(cast(dict, _DEFAULT_CONFIG), cli_config)
    file_config = _read_config_file_hierarchy(base_config)
    raw_config = _merge(_merge(cast(dict, _DEFAULT_CONFIG), file_config), cli_config)
    _check_and_convert_parameters(raw_config)
    return cast(TFTPConfigDict, raw_config)
