"""
Host Detection Module

Collects the raw facts about the running CPU that the compatibility matcher
needs: vendor, feature flags, POWER generation, ARM part code, and on some
platforms a model name reported directly by the OS.

Sources, by platform:
- Linux: the first processor block of /proc/cpuinfo
- macOS: sysctl (machdep.cpu.*)
- Elsewhere: a CPUID register source when one is supplied, else py-cpuinfo
"""

import logging
import platform
import re
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Optional, Set

import cpuinfo

from ..registry import GENERIC_VENDOR, MicroarchitectureDatabase, get_database
from .cpuid import Cpuid


logger = logging.getLogger(__name__)

CPUINFO_PATH = Path("/proc/cpuinfo")

X86_MACHINES = ("x86_64", "i686", "i386")
PPC_MACHINES = ("ppc64", "ppc64le")

_POWER_GENERATION = re.compile(r"POWER(\d+)")

# /proc/cpuinfo `uarch` values that differ from registry names
_RISCV_UARCHS = {
    "sifive,u74-mc": "u74mc",
}

# Newest first
_APPLE_MODELS = ("m4", "m3", "m2", "m1")


@dataclass
class DetectedCpuInfo:
    """Raw facts about one CPU, as reported by the OS"""
    name: str = ""  # Model name, only when the OS reports one directly
    vendor: str = ""
    features: Set[str] = field(default_factory=set)
    generation: int = 0  # POWER only
    cpu_part: str = ""  # AArch64 only

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'vendor': self.vendor,
            'features': sorted(self.features),
            'generation': self.generation,
            'cpu_part': self.cpu_part,
        }


def normalize_machine(machine: str) -> str:
    """Map OS spellings of the architecture to registry family names."""
    machine = machine.strip().lower()
    if machine == 'arm64':
        return 'aarch64'
    if machine in ('amd64', 'x64'):
        return 'x86_64'
    return machine or 'unknown'


def normalize_x86_features(features: Iterable[str]) -> Set[str]:
    """Linux reports SSE3 as 'pni'; SSSE3 implies SSE3 as well."""
    result = set(features)
    if 'ssse3' in result or 'pni' in result:
        result.add('sse3')
    return result


def read_first_processor(text: str) -> Dict[str, str]:
    """Key/value pairs of the first processor block of /proc/cpuinfo."""
    data: Dict[str, str] = {}
    for line in text.splitlines():
        if ':' not in line:
            # Blank line ends a block
            if data:
                break
            continue
        key, _, value = line.partition(':')
        data[key.strip()] = value.strip()
    return data


def parse_cpuinfo(
    text: str,
    machine: str,
    database: Optional[MicroarchitectureDatabase] = None,
) -> DetectedCpuInfo:
    """
    Parse /proc/cpuinfo content for the given architecture.

    Args:
        text: Content of /proc/cpuinfo
        machine: Normalized machine name (see normalize_machine)
        database: Registry providing the ARM implementer table

    Returns:
        DetectedCpuInfo; fields the architecture does not use stay empty
    """
    data = read_first_processor(text)
    info = DetectedCpuInfo()

    if machine in X86_MACHINES:
        info.vendor = data.get('vendor_id', GENERIC_VENDOR)
        info.features = normalize_x86_features(data.get('flags', '').split())

    elif machine == 'aarch64':
        implementer = data.get('CPU implementer')
        if implementer is None:
            info.vendor = GENERIC_VENDOR
        else:
            if database is None:
                database = get_database()
            info.vendor = database.arm_vendors.get(implementer, implementer)
        info.features = set(data.get('Features', '').split())
        info.cpu_part = data.get('CPU part', '')

    elif machine in PPC_MACHINES:
        match = _POWER_GENERATION.search(data.get('cpu', ''))
        if match:
            info.generation = int(match.group(1))

    elif machine == 'riscv64':
        uarch = data.get('uarch')
        info.name = _RISCV_UARCHS.get(uarch, uarch) if uarch else 'riscv64'

    return info


def convert_darwin_flags(raw_flags: Iterable[str], conversions: Mapping[str, str]) -> Set[str]:
    """
    Translate macOS sysctl feature names to their Linux spelling.

    Each conversion key is a space-separated group of Darwin flags; when all
    of them are present, the Linux flags of the value are added. The raw
    flags are kept as well.
    """
    raw = {flag.lower() for flag in raw_flags if flag}
    features = set(raw)
    for darwin_flags, linux_flags in conversions.items():
        if all(flag in raw for flag in darwin_flags.split()):
            features.update(linux_flags.split())
    return features


def info_from_cpuid(cpuid: Cpuid) -> DetectedCpuInfo:
    """Vendor and features decoded from CPUID registers."""
    if not cpuid.is_supported:
        return DetectedCpuInfo()
    return DetectedCpuInfo(
        vendor=cpuid.vendor,
        features=normalize_x86_features(cpuid.features),
    )


def apple_model_from_brand(brand: str) -> str:
    """Registry name of an Apple Silicon chip, from its brand string."""
    brand = brand.lower()
    for model in _APPLE_MODELS:
        if model in brand:
            return model
    if 'apple' in brand:
        # Unknown Apple Silicon: assume the oldest
        return 'm1'
    return ''


class HostDetector:
    """
    Probe the running host for the facts the compatibility matcher uses.

    Probe failures are logged and produce empty facts, never exceptions.
    """

    def __init__(
        self,
        database: Optional[MicroarchitectureDatabase] = None,
        cpuid: Optional[Cpuid] = None,
    ):
        self._database = database
        self.cpuid = cpuid
        self.os_type = self._detect_os()

    @property
    def database(self) -> MicroarchitectureDatabase:
        if self._database is None:
            self._database = get_database()
        return self._database

    def _detect_os(self) -> str:
        """Detect operating system (linux, windows, macos)"""
        sys_name = platform.system().lower()

        if sys_name == 'linux':
            return 'linux'
        elif sys_name == 'windows':
            return 'windows'
        elif sys_name == 'darwin':
            return 'macos'
        else:
            return 'unknown'

    def _sysctl(self, name: str) -> str:
        """Value of a sysctl key, '' when unavailable."""
        try:
            result = subprocess.run(
                ['sysctl', '-n', name],
                capture_output=True,
                text=True,
                timeout=5
            )
        except (OSError, subprocess.SubprocessError) as e:
            logger.debug("sysctl %s failed: %s", name, e)
            return ''
        if result.returncode != 0:
            return ''
        return result.stdout.strip()

    def get_machine(self) -> str:
        """
        Architecture of the host, as a registry family name.

        On macOS the brand string wins over platform.machine(), which reports
        x86_64 for processes running under Rosetta on Apple Silicon.
        """
        if self.os_type == 'macos' and 'Apple' in self._sysctl('machdep.cpu.brand_string'):
            return 'aarch64'
        return normalize_machine(platform.machine())

    # ========================================================================
    # CPU Detection
    # ========================================================================

    def detect(self, machine: Optional[str] = None) -> DetectedCpuInfo:
        """
        Detect the raw CPU facts of the host.

        Args:
            machine: Architecture to interpret the facts for (default: get_machine())

        Returns:
            DetectedCpuInfo, empty if detection fails
        """
        machine = machine or self.get_machine()

        if self.os_type == 'linux':
            info = self._detect_linux(machine)
        elif self.os_type == 'macos':
            info = self._detect_macos(machine)
        else:
            info = self._detect_other(machine)

        logger.debug(
            "Detected %s host: vendor=%r name=%r features=%d",
            machine, info.vendor, info.name, len(info.features)
        )
        return info

    def _detect_linux(self, machine: str) -> DetectedCpuInfo:
        """Detect CPU on Linux via /proc/cpuinfo"""
        try:
            text = CPUINFO_PATH.read_text(encoding="utf-8", errors="replace")
        except OSError as e:
            logger.warning("Cannot read %s: %s", CPUINFO_PATH, e)
            return DetectedCpuInfo()
        return parse_cpuinfo(text, machine, self.database)

    def _detect_macos(self, machine: str) -> DetectedCpuInfo:
        """Detect CPU on macOS via sysctl"""
        info = DetectedCpuInfo()

        if machine == 'x86_64':
            info.vendor = self._sysctl('machdep.cpu.vendor')
            raw_flags = ' '.join(
                self._sysctl(key) for key in (
                    'machdep.cpu.features',
                    'machdep.cpu.leaf7_features',
                    'machdep.cpu.extfeatures',
                )
            ).split()
            features = convert_darwin_flags(raw_flags, self.database.darwin_flag_conversions)
            info.features = normalize_x86_features(features)

        elif machine == 'aarch64':
            info.vendor = 'Apple'
            info.name = apple_model_from_brand(self._sysctl('machdep.cpu.brand_string'))

        return info

    def _detect_other(self, machine: str) -> DetectedCpuInfo:
        """Detect CPU via a CPUID source, falling back to py-cpuinfo"""
        info = DetectedCpuInfo()
        if machine not in X86_MACHINES:
            return info

        if self.cpuid is not None and self.cpuid.is_supported:
            return info_from_cpuid(self.cpuid)

        try:
            cpu_info = cpuinfo.get_cpu_info()
        except Exception as e:
            logger.warning("py-cpuinfo detection failed: %s", e)
            return info

        info.vendor = cpu_info.get('vendor_id_raw', '')
        info.features = normalize_x86_features(cpu_info.get('flags', []))
        return info

    def brand_string(self) -> Optional[str]:
        """Marketing name of the CPU, None when the host does not report one."""
        if self.os_type == 'macos':
            return self._sysctl('machdep.cpu.brand_string') or None

        if self.cpuid is not None and self.cpuid.is_supported:
            return self.cpuid.brand_string or None

        try:
            cpu_info = cpuinfo.get_cpu_info()
        except Exception as e:
            logger.debug("py-cpuinfo brand lookup failed: %s", e)
            return None
        return cpu_info.get('brand_raw') or None


def get_machine() -> str:
    """Architecture of the running host (see HostDetector.get_machine)."""
    return HostDetector().get_machine()


def detect_cpu_info(database: Optional[MicroarchitectureDatabase] = None) -> DetectedCpuInfo:
    """Raw CPU facts of the running host."""
    return HostDetector(database).detect()


def brand_string() -> Optional[str]:
    """Marketing name of the running host's CPU (see HostDetector.brand_string)."""
    return HostDetector().brand_string()
