import logging
import logging.handlers
import os
from datetime import datetime

import yaml

from lattice_planner.common.errors import ConfigurationError


def load_config_file(filename) -> dict:
    # open config file
    with open(filename, 'r') as stream:
        try:
            configs = yaml.safe_load(stream)
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"cannot parse config file {filename}: {exc}") from exc
    if not isinstance(configs, dict):
        raise ConfigurationError(f"config file {filename} must hold a mapping")
    return configs


def release_logger(logger):
    """
    Releases the logger
    :param logger: the logger to be released
    """
    handlers = logger.handlers[:]
    for handler in handlers:
        handler.close()
        logger.removeHandler(handler)


def initialize_logger(logger_name, config_file) -> logging.Logger:
    # create logger
    logger = logging.getLogger(logger_name)
    release_logger(logger)
    logging_cfg = config_file.get('logging', {}) if config_file else {}
    level = getattr(logging, str(logging_cfg.get('level', 'INFO')).upper(), logging.INFO)
    logger.setLevel(level)

    # create formatter
    formatter = logging.Formatter('%(asctime)s\t%(name)s\t%(levelname)s\t%(message)s')

    # create console handler
    if logging_cfg.get('log_to_console', True):
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    # create and handle log file
    if logging_cfg.get('log_to_file', False):
        log_file_dir = logging_cfg.get('log_file_dir', 'logs')
        date_time_string = ''
        if logging_cfg.get('add_timestamp_to_log_file', False):
            now = datetime.now()  # current date and time
            date_time_string = now.strftime("_%Y_%m_%d_%H-%M-%S")

        # if directory not exists create it
        os.makedirs(log_file_dir, exist_ok=True)

        log_file_path = os.path.join(log_file_dir, logging_cfg.get('log_file_name', 'lattice_planner') + date_time_string + ".log")
        file_handler = logging.handlers.RotatingFileHandler(log_file_path, maxBytes=10*1024*1024, backupCount=3)
        # set the level of logging to file
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    logger.info("Config file loaded and logger created.")
    return logger
