import asyncio
from pathlib import Path
from typing import Dict, Iterable, List

import aiofiles

from stage_relay.core.logging_utils import get_module_logger


logger = get_module_logger("ConfigManager")


class ConfigManager:
    """Reads ``key = value`` config files into plain string dictionaries.

    Blank lines and ``#`` comments are skipped, inline comments are stripped
    and matching quotes around a value are removed. Typed access goes through
    the ``get_*`` helpers, which fall back to the default on bad input.
    """

    def __init__(self):
        self.lock = asyncio.Lock()

    def _parse_config_lines(self, lines: Iterable[str]) -> Dict[str, str]:
        config: Dict[str, str] = {}

        for raw_line in lines:
            line = raw_line.strip()
            if not line or line.startswith('#'):
                continue
            if '=' not in line:
                continue

            key, value = line.split('=', 1)
            key = key.strip()
            value = value.strip()

            if '#' in value:
                value = value.split('#')[0].strip()

            if (value.startswith('"') and value.endswith('"')) or (value.startswith("'") and value.endswith("'")):
                value = value[1:-1]

            config[key] = value

        return config

    def read_config(self, config_path: Path) -> Dict[str, str]:
        """Read a config file synchronously."""
        if not config_path.exists():
            logger.debug("Config file %s not found, using defaults", config_path)
            return {}

        try:
            with open(config_path, 'r', encoding='utf-8') as fh:
                return self._parse_config_lines(fh)
        except OSError as e:
            logger.error("Failed to read config %s: %s", config_path, e)
            return {}

    async def read_config_async(self, config_path: Path) -> Dict[str, str]:
        if not await asyncio.to_thread(config_path.exists):
            logger.debug("Config file %s not found, using defaults", config_path)
            return {}

        async with self.lock:
            try:
                async with aiofiles.open(config_path, 'r', encoding='utf-8') as f:
                    lines = await f.readlines()
            except OSError as e:
                logger.error("Failed to read config %s: %s", config_path, e)
                return {}

        return self._parse_config_lines(lines)

    def get_bool(self, config: Dict[str, str], key: str, default: bool = False) -> bool:
        if key not in config:
            return default

        value = config[key].lower()
        return value in ('true', '1', 'yes', 'on')

    def get_int(self, config: Dict[str, str], key: str, default: int = 0) -> int:
        if key not in config:
            return default

        try:
            return int(config[key])
        except ValueError:
            logger.warning("Invalid int value for %s: %s, using default %d", key, config[key], default)
            return default

    def get_float(self, config: Dict[str, str], key: str, default: float = 0.0) -> float:
        if key not in config:
            return default

        try:
            return float(config[key])
        except ValueError:
            logger.warning("Invalid float value for %s: %s, using default %f", key, config[key], default)
            return default

    def get_str(self, config: Dict[str, str], key: str, default: str = "") -> str:
        return config.get(key, default)

    def get_list(self, config: Dict[str, str], key: str, default: Iterable[str] = ()) -> List[str]:
        """Comma-separated values, whitespace trimmed, empty items dropped."""
        if key not in config:
            return list(default)
        return [item.strip() for item in config[key].split(',') if item.strip()]


_config_manager = ConfigManager()


def get_config_manager() -> ConfigManager:
    return _config_manager
