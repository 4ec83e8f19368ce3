"""
Registry Configuration

Decides where the microarchitecture registry data is read from.

Configuration is loaded from (in order of precedence):
1. Environment variables (CPUARCH_DATA_PATH, CPUARCH_EXTENSION_PATH)
2. User config file (~/.config/cpuarch/config.json)
3. Project config file (.cpuarch/config.json in the project root)
4. Defaults (the JSON bundled with the package, no extension)
"""

import os
import json
import logging
from pathlib import Path
from dataclasses import dataclass, asdict
from typing import Optional, Dict, Any


logger = logging.getLogger(__name__)

BUNDLED_DATA_PATH = Path(__file__).parent / "data" / "microarchitectures.json"


@dataclass
class RegistryConfig:
    """Configuration for the microarchitecture registry."""

    data_path: Optional[Path] = None
    """JSON file replacing the bundled registry data. None uses the bundled file."""

    extension_path: Optional[Path] = None
    """JSON file loaded after the main data. It can add targets but never override them."""

    def __post_init__(self):
        if isinstance(self.data_path, str):
            self.data_path = Path(self.data_path)
        if isinstance(self.extension_path, str):
            self.extension_path = Path(self.extension_path)

    @property
    def resolved_data_path(self) -> Path:
        return self.data_path or BUNDLED_DATA_PATH

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result = asdict(self)
        for key in ("data_path", "extension_path"):
            if result[key] is not None:
                result[key] = str(result[key])
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RegistryConfig':
        """Create from dictionary, ignoring unknown keys."""
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


def _find_project_root() -> Optional[Path]:
    """Find the project root by looking for pyproject.toml or setup.py."""
    current = Path.cwd()
    for parent in [current] + list(current.parents):
        if (parent / 'pyproject.toml').exists() or (parent / 'setup.py').exists():
            return parent
    return None


def _user_config_dir() -> Path:
    if os.name == 'nt':
        return Path(os.environ.get('APPDATA', Path.home() / 'AppData' / 'Roaming'))
    return Path(os.environ.get('XDG_CONFIG_HOME', Path.home() / '.config'))


def _load_config_file(path: Path) -> Optional[Dict[str, Any]]:
    """Load configuration from a JSON file."""
    if not path.exists():
        return None
    try:
        with open(path) as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        logger.warning("Ignoring unreadable config file %s: %s", path, e)
        return None
    if not isinstance(data, dict):
        logger.warning("Ignoring config file %s: expected a JSON object", path)
        return None
    return data


def get_config() -> RegistryConfig:
    """
    Get the registry configuration.

    Loads configuration from environment variables and config files,
    with sensible defaults.

    Returns:
        RegistryConfig instance
    """
    config_data: Dict[str, Any] = {}

    # 1. Project config (.cpuarch/config.json)
    project_root = _find_project_root()
    if project_root:
        project_config = _load_config_file(project_root / '.cpuarch' / 'config.json')
        if project_config:
            config_data.update(project_config)

    # 2. User config (~/.config/cpuarch/config.json)
    user_config = _load_config_file(_user_config_dir() / 'cpuarch' / 'config.json')
    if user_config:
        config_data.update(user_config)

    # 3. Environment variables (highest precedence)
    env_data_path = os.environ.get('CPUARCH_DATA_PATH')
    if env_data_path:
        config_data['data_path'] = env_data_path

    env_extension_path = os.environ.get('CPUARCH_EXTENSION_PATH')
    if env_extension_path:
        config_data['extension_path'] = env_extension_path

    return RegistryConfig.from_dict(config_data)


def save_config(config: RegistryConfig, path: Optional[Path] = None) -> Path:
    """
    Save configuration to a file.

    Args:
        config: Configuration to save
        path: Path to save to (default: user config directory)

    Returns:
        The path written
    """
    if path is None:
        path = _user_config_dir() / 'cpuarch' / 'config.json'

    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, 'w') as f:
        json.dump(config.to_dict(), f, indent=2)
    return path
