"""
Host Detection and Matching

Probes the running CPU and maps the result to the best registry target.

Usage:
    from cpuarch.detect import host

    target = host()
    print(target.name, target.generic())
"""

from .cpuid import (
    Cpuid,
    CpuidRegisters,
    FeatureBit,
    FEATURE_BITS,
    RecordedCpuid,
)
from .detector import (
    DetectedCpuInfo,
    HostDetector,
    apple_model_from_brand,
    brand_string,
    convert_darwin_flags,
    detect_cpu_info,
    get_machine,
    info_from_cpuid,
    normalize_machine,
    parse_cpuinfo,
)
from .compatibility import (
    ArchFamily,
    compatible_microarchitectures,
    host,
    select_best,
)

__all__ = [
    'Cpuid',
    'CpuidRegisters',
    'FeatureBit',
    'FEATURE_BITS',
    'RecordedCpuid',
    'DetectedCpuInfo',
    'HostDetector',
    'apple_model_from_brand',
    'brand_string',
    'convert_darwin_flags',
    'detect_cpu_info',
    'get_machine',
    'info_from_cpuid',
    'normalize_machine',
    'parse_cpuinfo',
    'ArchFamily',
    'compatible_microarchitectures',
    'host',
    'select_best',
]
