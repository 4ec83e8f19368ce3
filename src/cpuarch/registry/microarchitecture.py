"""
Microarchitecture Model

A Microarchitecture is one named entry of the registry: a CPU model or an
architecture level. Targets only store the *names* of their parents; every
traversal (ancestors, family, generic ancestor, flag inheritance) resolves
those names through the database that created the target.

Usage:
    from cpuarch.registry import get_target

    haswell = get_target("haswell")
    haswell.family()                       # 'x86_64'
    haswell.generic()                      # 'x86_64_v3'
    "avx2" in haswell                      # True
    haswell.optimization_flags("gcc", "9.3")
"""

import logging
import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING, Dict, List, Mapping, Optional, Set, Tuple

if TYPE_CHECKING:
    from .database import MicroarchitectureDatabase


logger = logging.getLogger(__name__)

GENERIC_VENDOR = "generic"
"""Vendor sentinel for vendor-agnostic targets."""

NAME_PLACEHOLDER = "{name}"

_LEADING_DIGITS = re.compile(r"\d+")


@dataclass(frozen=True)
class CompilerEntry:
    """One version-range entry of a compiler table."""

    versions: str = ":"
    """Version range: 'min:', ':max', 'min:max' or ':'."""

    name: str = ""
    """Compiler-specific spelling of the target, substituted for {name}."""

    flags: str = ""
    """Flag template, may contain {name}."""

    warnings: str = ""
    """Optional warning recorded alongside the flags."""

    def satisfied_by(self, version: str) -> bool:
        return version_in_range(version, self.versions)

    def render(self, target_name: str) -> str:
        return self.flags.replace(NAME_PLACEHOLDER, self.name or target_name)


def parse_version(version: str) -> Tuple[int, ...]:
    """
    Parse a dotted version string into a tuple of integers.

    Each component contributes its leading digits. Components with no leading
    digits (garbage, negative numbers, empty pieces) count as zero.

    Examples:
        '11.0.9'  -> (11, 0, 9)
        '9-rc1'   -> (9,)
        'abc'     -> (0,)
    """
    components = []
    for part in version.strip().split("."):
        match = _LEADING_DIGITS.match(part)
        components.append(int(match.group()) if match else 0)
    return tuple(components)


def compare_versions(a: Tuple[int, ...], b: Tuple[int, ...]) -> int:
    """Three-way compare of two version tuples, shorter one padded with zeros."""
    width = max(len(a), len(b))
    padded_a = a + (0,) * (width - len(a))
    padded_b = b + (0,) * (width - len(b))
    if padded_a < padded_b:
        return -1
    if padded_a > padded_b:
        return 1
    return 0


def version_in_range(version: str, constraint: str) -> bool:
    """
    Check whether `version` lies inside an inclusive 'min:max' range.

    An empty bound is unbounded on that side. A constraint without a colon is
    treated as an exact version.
    """
    queried = parse_version(version)

    if ":" not in constraint:
        return compare_versions(queried, parse_version(constraint)) == 0

    lower, upper = constraint.split(":", 1)
    if lower.strip() and compare_versions(queried, parse_version(lower)) < 0:
        return False
    if upper.strip() and compare_versions(queried, parse_version(upper)) > 0:
        return False
    return True


@dataclass(frozen=True)
class Microarchitecture:
    """
    A CPU microarchitecture known to the registry.

    Equality compares name, vendor, features, parents, generation and CPU
    part. The ordering operators implement the specificity partial order:
    ``a < b`` when a's ancestor closure (itself plus its ancestors) is a
    proper subset of b's. Two unrelated targets are neither smaller nor
    larger than each other.
    """

    name: str
    parent_names: Tuple[str, ...] = ()
    vendor: str = GENERIC_VENDOR
    features: frozenset = frozenset()
    compilers: Mapping[str, Tuple[CompilerEntry, ...]] = field(
        default_factory=dict, compare=False, repr=False
    )
    generation: int = 0
    """POWER generation, 0 for every other family."""

    cpu_part: str = ""
    """AArch64 'CPU part' code, empty for every other family."""

    database: Optional["MicroarchitectureDatabase"] = field(
        default=None, compare=False, repr=False
    )
    """Database used to resolve parent names. None for synthetic targets."""

    def __post_init__(self):
        features = frozenset(self.features)
        if "ssse3" in features:
            features = features | {"sse3"}
        object.__setattr__(self, "features", features)
        object.__setattr__(self, "parent_names", tuple(self.parent_names))
        object.__setattr__(self, "compilers", MappingProxyType(dict(self.compilers)))

    def __str__(self) -> str:
        return self.name

    def __contains__(self, feature: str) -> bool:
        return self.has_feature(feature)

    def _resolve(self, name: str) -> Optional["Microarchitecture"]:
        if self.database is None:
            return None
        return self.database.get(name)

    @property
    def parents(self) -> List["Microarchitecture"]:
        """Direct parents that resolve in the owning database."""
        resolved = (self._resolve(name) for name in self.parent_names)
        return [parent for parent in resolved if parent is not None]

    def ancestors(self) -> List[str]:
        """
        All transitively reachable parent names.

        Direct parents come first, then each parent's own ancestors, with
        duplicates dropped. The target's own name is never included.
        """
        result: List[str] = []
        for parent_name in self.parent_names:
            if parent_name != self.name and parent_name not in result:
                result.append(parent_name)

        for parent in self.parents:
            for ancestor in parent.ancestors():
                if ancestor != self.name and ancestor not in result:
                    result.append(ancestor)
        return result

    def family(self) -> str:
        """Name of the root target (no parents) this target descends from."""
        if not self.parent_names:
            return self.name

        for ancestor_name in self.ancestors():
            ancestor = self._resolve(ancestor_name)
            if ancestor is not None and not ancestor.parent_names:
                return ancestor_name

        # Parents are not resolvable: nothing better to report
        return self.name

    def generic(self) -> str:
        """
        Name of the most specific vendor-agnostic target compatible with this one.

        Returns:
            The target's own name when it is generic, the generic ancestor
            with the largest ancestor set otherwise, or the family when no
            ancestor is generic.
        """
        if self.vendor == GENERIC_VENDOR:
            return self.name

        best_name = ""
        best_depth = -1
        for ancestor_name in self.ancestors():
            ancestor = self._resolve(ancestor_name)
            if ancestor is None or ancestor.vendor != GENERIC_VENDOR:
                continue
            depth = len(ancestor.ancestors())
            if depth > best_depth:
                best_name, best_depth = ancestor_name, depth

        return best_name or self.family()

    def has_feature(self, feature: str) -> bool:
        """
        Check a capability token, resolving feature aliases and family features.

        A token matches when it is in the target's own feature set, when it is
        an alias and one of its equivalent spellings is in the feature set, or
        when the target's family unconditionally implies it. Each resolution
        is a single hop.
        """
        if feature in self.features:
            return True

        if self.database is None:
            return False

        aliases = self.database.feature_aliases.get(feature)
        if aliases and any(alias in self.features for alias in aliases):
            return True

        families = self.database.family_features.get(feature)
        if families and self.family() in families:
            return True

        return False

    def optimization_flags(self, compiler: str, version: str) -> str:
        """
        Flags to optimize for this target with a given compiler version.

        Args:
            compiler: Compiler name as recorded in the registry ('gcc', 'clang', ...)
            version: Compiler version, e.g. '11.2.0'

        Returns:
            The rendered flag string, or '' when neither this target nor any
            ancestor records flags for that compiler version.
        """
        entry = self._matching_entry(compiler, version)
        if entry is not None:
            return entry.render(self.name)

        for ancestor_name in self.ancestors():
            ancestor = self._resolve(ancestor_name)
            if ancestor is None:
                continue
            flags = ancestor.optimization_flags(compiler, version)
            if flags:
                return flags

        logger.debug("No %s %s flags recorded for %s", compiler, version, self.name)
        return ""

    def optimization_warnings(self, compiler: str, version: str) -> str:
        """Warning text of the entry that optimization_flags() would use."""
        entry = self._matching_entry(compiler, version)
        if entry is not None:
            return entry.warnings

        for ancestor_name in self.ancestors():
            ancestor = self._resolve(ancestor_name)
            if ancestor is not None and ancestor.optimization_flags(compiler, version):
                return ancestor.optimization_warnings(compiler, version)
        return ""

    def _matching_entry(self, compiler: str, version: str) -> Optional[CompilerEntry]:
        for entry in self.compilers.get(compiler, ()):
            if entry.satisfied_by(version):
                return entry
        return None

    # Specificity order

    def _closure(self) -> Set[str]:
        return {self.name, *self.ancestors()}

    def __lt__(self, other):
        if not isinstance(other, Microarchitecture):
            return NotImplemented
        return self._closure() < other._closure()

    def __le__(self, other):
        if not isinstance(other, Microarchitecture):
            return NotImplemented
        return self == other or self < other

    def __gt__(self, other):
        if not isinstance(other, Microarchitecture):
            return NotImplemented
        return other < self

    def __ge__(self, other):
        if not isinstance(other, Microarchitecture):
            return NotImplemented
        return other <= self

    def to_dict(self) -> Dict:
        """Convert to the registry JSON shape (without the target name)."""
        result: Dict = {
            "from": list(self.parent_names),
            "vendor": self.vendor,
            "features": sorted(self.features),
        }
        if self.compilers:
            result["compilers"] = {
                compiler: [
                    {key: value for key, value in (
                        ("versions", entry.versions),
                        ("name", entry.name),
                        ("flags", entry.flags),
                        ("warnings", entry.warnings),
                    ) if value}
                    for entry in entries
                ]
                for compiler, entries in self.compilers.items()
            }
        if self.generation:
            result["generation"] = self.generation
        if self.cpu_part:
            result["cpupart"] = self.cpu_part
        return result


def generic_microarchitecture(name: str) -> Microarchitecture:
    """Synthetic vendor-agnostic target with no features and no parents."""
    return Microarchitecture(name=name, vendor=GENERIC_VENDOR)
