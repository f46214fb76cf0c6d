import os
import yaml
from dataclasses import fields
from typing import Any, Dict, List, Optional

from ..models import log, ConversionOptions, split_formats

DEFAULT_CONFIG_PATHS = ["epub_downloader.yaml", os.path.expanduser("~/.config/epub_downloader/config.yaml")]


class ConfigManager:
    """Conversion defaults read from YAML files; later files override earlier ones."""

    _instance = None

    def __init__(self, config_paths: Optional[List[str]] = None):
        self.values: Dict[str, Any] = {}
        for path in config_paths or []:
            self.load_config(path)

    @classmethod
    def get_instance(cls):
        if not cls._instance:
            cls._instance = cls(list(reversed(DEFAULT_CONFIG_PATHS)))
        return cls._instance

    def load_config(self, path: str):
        if not os.path.exists(path): return
        try:
            with open(path, 'r') as f:
                data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            log.warning(f"Failed to load config {path}: {e}")
            return
        if not data or not isinstance(data, dict):
            log.warning(f"Ignoring config {path}: expected a mapping")
            return
        known = {f.name for f in fields(ConversionOptions)} | {"media_format"}
        for key, value in data.items():
            if key not in known:
                log.warning(f"Unknown config key '{key}' in {path}")
                continue
            self.values[key] = value
        log.info(f"Loaded config from {path}")

    def options(self, **overrides) -> ConversionOptions:
        """ConversionOptions from the loaded defaults, with non-None overrides applied."""
        values = dict(self.values)
        if "media_format" in values:
            values["media_formats"] = split_formats(values.pop("media_format"))
        for key, value in overrides.items():
            if value is not None:
                values[key] = value
        return ConversionOptions(**values)
