"""
Purpose: Load service configuration from the environment and the engine options file.
Usage: settings = load_settings(); UsiBridge(settings.engine_path, settings.engine_options, ...)

Environment:
  USI_ENGINE_PATH     engine binary (default: this interpreter running usi_reference_engine.py)
  USI_ENGINE_ARGS     extra engine arguments, shell-style quoting
  USI_ENGINE_CWD      engine working directory
  ENGINE_CONFIG_PATH  JSON object of USI option name -> value (default ./config.json)
  HOST, PORT          HTTP bind address
  LOG_LEVEL           root logger level
"""
from __future__ import annotations

import json
import logging
import os
import shlex
import sys
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional, Tuple, Union

logger = logging.getLogger(__name__)

OptionValue = Union[str, int, float, bool]

REFERENCE_ENGINE = os.path.abspath(os.path.join(os.path.dirname(__file__), "usi_reference_engine.py"))


@dataclass(frozen=True)
class Settings:
    engine_path: str
    engine_args: Tuple[str, ...] = ()
    engine_cwd: Optional[str] = None
    engine_options: Dict[str, OptionValue] = field(default_factory=dict)
    host: str = "127.0.0.1"
    port: int = 3000
    log_level: str = "INFO"


def load_engine_options(path: str) -> Dict[str, OptionValue]:
    """Read the options file; any problem yields no options and a warning."""
    try:
        with open(path, "r", encoding="utf-8") as fh:
            raw = json.load(fh)
    except (OSError, ValueError) as e:
        logger.warning('Could not load engine config from "%s": %s. Using empty options.', path, e)
        return {}
    if not isinstance(raw, dict):
        logger.warning('Engine config "%s" is not a JSON object. Using empty options.', path)
        return {}

    options: Dict[str, OptionValue] = {}
    for name, value in raw.items():
        if isinstance(value, (str, int, float, bool)):
            options[str(name)] = value
        else:
            logger.warning("Skipping engine option %r: unsupported value %r", name, value)
    return options


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    env = os.environ if env is None else env

    engine_path = env.get("USI_ENGINE_PATH") or ""
    raw_args = env.get("USI_ENGINE_ARGS")
    if engine_path:
        engine_args = tuple(shlex.split(raw_args)) if raw_args else ()
    else:
        # no engine configured: run the bundled reference engine
        engine_path = sys.executable
        engine_args = (REFERENCE_ENGINE,) + (tuple(shlex.split(raw_args)) if raw_args else ())

    config_path = env.get("ENGINE_CONFIG_PATH") or os.path.abspath("./config.json")

    try:
        port = int(env.get("PORT") or "3000")
    except ValueError:
        logger.warning("Invalid PORT %r; using 3000", env.get("PORT"))
        port = 3000

    return Settings(
        engine_path=engine_path,
        engine_args=engine_args,
        engine_cwd=env.get("USI_ENGINE_CWD") or None,
        engine_options=load_engine_options(config_path),
        host=env.get("HOST") or "127.0.0.1",
        port=port,
        log_level=(env.get("LOG_LEVEL") or "INFO").upper(),
    )
