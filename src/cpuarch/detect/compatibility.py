"""
Compatibility Matcher

Maps the raw facts detected on a host to the single best registry target.

Matching runs in two phases:
1. Filter: every target of the host's architecture family that the facts
   can run is a candidate. Each family has its own compatibility predicate.
2. Select: find the most specific *generic* candidate (e.g. x86_64_v3) as a
   safe floor, then pick the deepest candidate strictly above that floor.

Usage:
    from cpuarch.detect import host, compatible_microarchitectures

    target = host()
    target.name                 # 'haswell'
    target.optimization_flags("gcc", "12.2")
"""

import logging
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from ..registry import (
    GENERIC_VENDOR,
    Microarchitecture,
    MicroarchitectureDatabase,
    generic_microarchitecture,
    get_database,
)
from .detector import DetectedCpuInfo, HostDetector


logger = logging.getLogger(__name__)


class ArchFamily(Enum):
    """Architecture families with a compatibility predicate."""
    X86_64 = "x86_64"
    AARCH64 = "aarch64"
    PPC64 = "ppc64"
    RISCV64 = "riscv64"

    @classmethod
    def from_machine(cls, machine: str) -> Optional['ArchFamily']:
        """Family for a normalized machine name, None when unsupported."""
        return _MACHINE_FAMILIES.get(machine)

    def root_name(self, machine: str) -> str:
        """
        Registry root the family's targets descend from.

        Big- and little-endian POWER are separate trees rooted at the machine
        name itself (ppc64, ppc64le).
        """
        if self is ArchFamily.PPC64:
            return machine
        return self.value

    def accepts(
        self,
        target: Microarchitecture,
        info: DetectedCpuInfo,
        root: str,
        database: MicroarchitectureDatabase,
    ) -> bool:
        """True when a host described by `info` can run code built for `target`."""
        return _PREDICATES[self](target, info, root, database)


_MACHINE_FAMILIES: Dict[str, ArchFamily] = {
    'x86_64': ArchFamily.X86_64,
    'i686': ArchFamily.X86_64,
    'i386': ArchFamily.X86_64,
    'aarch64': ArchFamily.AARCH64,
    'ppc64': ArchFamily.PPC64,
    'ppc64le': ArchFamily.PPC64,
    'riscv64': ArchFamily.RISCV64,
}


def _in_family(target: Microarchitecture, root: str) -> bool:
    return target.name == root or root in target.ancestors()


def _vendor_compatible(target: Microarchitecture, info: DetectedCpuInfo) -> bool:
    return target.vendor == GENERIC_VENDOR or target.vendor == info.vendor


def _features_present(target: Microarchitecture, info: DetectedCpuInfo) -> bool:
    return target.features <= set(info.features)


def _check_x86_64(target, info, root, database) -> bool:
    return (
        _in_family(target, root)
        and _vendor_compatible(target, info)
        and _features_present(target, info)
    )


def _check_aarch64(target, info, root, database) -> bool:
    # Architecture levels (armv8.xa) are not tracked by /proc/cpuinfo
    if target.vendor == GENERIC_VENDOR and target.name != root:
        return False
    if not _in_family(target, root) or not _vendor_compatible(target, info):
        return False

    if info.name:
        # The OS named the model: accept it and its ancestors
        model = database.get(info.name)
        if model is None:
            return target.name == root
        return target.name == model.name or target.name in model.ancestors()

    return _features_present(target, info)


def _check_ppc64(target, info, root, database) -> bool:
    return _in_family(target, root) and target.generation <= info.generation


def _check_riscv64(target, info, root, database) -> bool:
    return _in_family(target, root) and (
        target.name == info.name or target.vendor == GENERIC_VENDOR
    )


_PREDICATES: Dict[ArchFamily, Callable[..., bool]] = {
    ArchFamily.X86_64: _check_x86_64,
    ArchFamily.AARCH64: _check_aarch64,
    ArchFamily.PPC64: _check_ppc64,
    ArchFamily.RISCV64: _check_riscv64,
}


def _specificity(target: Microarchitecture) -> Tuple[int, int]:
    return len(target.ancestors()), len(target.features)


def _fallback(machine: str, database: MicroarchitectureDatabase) -> Microarchitecture:
    """Registry root named after the machine, else a synthetic generic target."""
    root = database.get(machine)
    if root is not None:
        return root
    logger.debug("No registry entry for %s, using a generic target", machine)
    return generic_microarchitecture(machine)


def compatible_microarchitectures(
    info: DetectedCpuInfo,
    machine: Optional[str] = None,
    database: Optional[MicroarchitectureDatabase] = None,
) -> List[Microarchitecture]:
    """
    All targets a host with the given facts can run.

    Args:
        info: Detected CPU facts
        machine: Normalized machine name (default: the running host's)
        database: Registry to search (default: get_database())

    Returns:
        Candidates in registry order. For an unsupported architecture, or
        when nothing matches, just the registry root named after the machine
        if there is one.
    """
    if database is None:
        database = get_database()
    if machine is None:
        machine = HostDetector(database).get_machine()

    family = ArchFamily.from_machine(machine)
    if family is not None:
        root = family.root_name(machine)
        candidates = [
            target for target in database.all().values()
            if family.accepts(target, info, root, database)
        ]
        if candidates:
            return candidates

    fallback = database.get(machine)
    return [fallback] if fallback is not None else []


def select_best(
    candidates: Sequence[Microarchitecture],
    info: DetectedCpuInfo,
    machine: str,
    database: Optional[MicroarchitectureDatabase] = None,
) -> Microarchitecture:
    """
    Pick the most specific candidate above the best generic one.

    Ties are broken by registry order: the first of equally deep candidates
    wins.
    """
    if database is None:
        database = get_database()

    if ArchFamily.from_machine(machine) is None or not candidates:
        return _fallback(machine, database)

    generics = [target for target in candidates if target.vendor == GENERIC_VENDOR]
    best_generic = max(generics, key=_specificity) if generics else None

    remaining = list(candidates)
    if info.cpu_part:
        same_part = [target for target in remaining if target.cpu_part == info.cpu_part]
        if same_part:
            remaining = same_part

    if best_generic is not None:
        above_generic = [target for target in remaining if target > best_generic]
        if above_generic:
            remaining = above_generic

    return max(remaining, key=_specificity)


def host(
    info: Optional[DetectedCpuInfo] = None,
    machine: Optional[str] = None,
    database: Optional[MicroarchitectureDatabase] = None,
) -> Microarchitecture:
    """
    Best registry target for a host.

    Args:
        info: Detected facts (default: probe the running host)
        machine: Normalized machine name (default: the running host's)
        database: Registry to match against (default: get_database())

    Returns:
        The selected Microarchitecture; never None
    """
    if database is None:
        database = get_database()

    detector = HostDetector(database)
    if machine is None:
        machine = detector.get_machine()
    if info is None:
        info = detector.detect(machine)

    candidates = compatible_microarchitectures(info, machine, database)
    best = select_best(candidates, info, machine, database)
    logger.debug("Host %s matched %s out of %d candidates", machine, best.name, len(candidates))
    return best
