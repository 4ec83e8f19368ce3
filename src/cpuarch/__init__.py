"""
cpuarch: CPU microarchitecture registry

A catalog of CPU microarchitectures (models and architecture levels), their
ancestry and per-compiler optimization flags, plus host detection that picks
the registry entry matching the running machine.
"""

from .registry import (
    CompilerEntry,
    LoadResult,
    Microarchitecture,
    MicroarchitectureDatabase,
    generic_microarchitecture,
    get_database,
    get_target,
)
from .detect import (
    DetectedCpuInfo,
    brand_string,
    compatible_microarchitectures,
    host,
)

__version__ = "0.1.0"

__all__ = [
    'CompilerEntry',
    'LoadResult',
    'Microarchitecture',
    'MicroarchitectureDatabase',
    'generic_microarchitecture',
    'get_database',
    'get_target',
    'DetectedCpuInfo',
    'brand_string',
    'compatible_microarchitectures',
    'host',
]
