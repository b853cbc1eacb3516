"""
settings.py — Configuration and logging for the connect card scanner.
Tunables live in config.toml, secrets in the environment (.env).
"""

import logging
from pathlib import Path

import tomli
from dotenv import load_dotenv

load_dotenv()

DEFAULT_CONFIG_PATH = Path(__file__).with_name("config.toml")


def load_config(config_path=DEFAULT_CONFIG_PATH):
    with open(config_path, "rb") as f:
        config = tomli.load(f)
    return config


def setup_logging(config):
    level = getattr(logging, config["logging"]["log_level"].upper(), logging.INFO)
    handlers = []
    if config["logging"]["log_to_console"]:
        handlers.append(logging.StreamHandler())
    if config["logging"].get("log_file"):
        handlers.append(logging.FileHandler(config["logging"]["log_file"]))
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=handlers,
    )


def location_name(config, location_id):
    for location in config["organization"].get("locations", []):
        if location["id"] == location_id:
            return location["name"]
    return location_id


CONFIG = load_config()
