"""
Microarchitecture Registry

Known CPU targets, their ancestry and their per-compiler optimization flags.

Usage:
    from cpuarch.registry import get_database, get_target

    database = get_database()
    haswell = get_target("haswell")

    haswell.ancestors()                       # ['ivybridge', 'x86_64_v3', ...]
    haswell > get_target("x86_64")            # True
    haswell.optimization_flags("gcc", "12.1") # '-march=haswell -mtune=haswell'
"""

from .microarchitecture import (
    GENERIC_VENDOR,
    CompilerEntry,
    Microarchitecture,
    compare_versions,
    generic_microarchitecture,
    parse_version,
    version_in_range,
)
from .database import (
    LoadResult,
    MicroarchitectureDatabase,
    RegistryLoadError,
    get_database,
    get_target,
    load_database,
    reset_database,
)
from .config import RegistryConfig, get_config, save_config

__all__ = [
    'GENERIC_VENDOR',
    'CompilerEntry',
    'Microarchitecture',
    'compare_versions',
    'generic_microarchitecture',
    'parse_version',
    'version_in_range',
    'LoadResult',
    'MicroarchitectureDatabase',
    'RegistryLoadError',
    'get_database',
    'get_target',
    'load_database',
    'reset_database',
    'RegistryConfig',
    'get_config',
    'save_config',
]
