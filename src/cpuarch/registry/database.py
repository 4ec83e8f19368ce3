"""
Microarchitecture Database

Owns every known Microarchitecture plus the auxiliary tables that come with
the registry data (feature aliases, family features, Darwin flag conversions
and ARM implementer codes).

The registry source is a JSON document:

    {
      "microarchitectures": {
        "haswell": {
          "from": ["ivybridge", "x86_64_v3"],
          "vendor": "GenuineIntel",
          "features": ["avx2", "fma", ...],
          "compilers": {"gcc": [{"versions": "4.9:", "flags": "-march={name}"}]}
        },
        ...
      },
      "feature_aliases": {"sse4.1": {"any_of": ["sse4_1"]}},
      "conversions": {"darwin_flags": {...}, "arm_vendors": {...}}
    }

Loading never raises. Each load returns a LoadResult; a malformed source is
rejected as a whole and nothing from it is committed.
"""

import json
import threading
import logging
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Dict, Iterator, List, Mapping, Optional, Set, Tuple, Union

from .microarchitecture import GENERIC_VENDOR, CompilerEntry, Microarchitecture

if TYPE_CHECKING:
    from .config import RegistryConfig


logger = logging.getLogger(__name__)


class RegistryLoadError(ValueError):
    """Raised by the parser when registry data is malformed."""


@dataclass(frozen=True)
class LoadResult:
    """Outcome of loading one registry source."""

    ok: bool
    """True when the source parsed and was committed."""

    loaded: int = 0
    """Number of targets added by this load (already known names are skipped)."""

    error: Optional[str] = None
    """Why the source was rejected."""

    source: str = "<string>"

    def __bool__(self) -> bool:
        return self.ok


@dataclass
class _ParsedSource:
    targets: Dict[str, Dict[str, Any]]
    feature_aliases: Dict[str, Set[str]]
    family_features: Dict[str, Set[str]]
    darwin_flags: Dict[str, str]
    arm_vendors: Dict[str, str]


def _expect(condition: bool, message: str):
    if not condition:
        raise RegistryLoadError(message)


def _string_list(value: Any, where: str) -> List[str]:
    _expect(isinstance(value, list), f"{where}: expected a list")
    _expect(all(isinstance(item, str) for item in value), f"{where}: expected strings")
    return list(value)


def _string_map(value: Any, where: str) -> Dict[str, str]:
    _expect(isinstance(value, dict), f"{where}: expected an object")
    _expect(all(isinstance(v, str) for v in value.values()), f"{where}: expected string values")
    return dict(value)


def _parse_compilers(value: Any, where: str) -> Dict[str, Tuple[CompilerEntry, ...]]:
    _expect(isinstance(value, dict), f"{where}: expected an object")
    compilers = {}
    for compiler, entries in value.items():
        _expect(isinstance(entries, list), f"{where}.{compiler}: expected a list")
        parsed = []
        for index, entry in enumerate(entries):
            entry_where = f"{where}.{compiler}[{index}]"
            _expect(isinstance(entry, dict), f"{entry_where}: expected an object")
            fields = {}
            for key in ("versions", "name", "flags", "warnings"):
                if key in entry:
                    _expect(isinstance(entry[key], str), f"{entry_where}.{key}: expected a string")
                    fields[key] = entry[key]
            parsed.append(CompilerEntry(**fields))
        compilers[compiler] = tuple(parsed)
    return compilers


def _parse_target(name: str, data: Any) -> Dict[str, Any]:
    where = f"microarchitectures.{name}"
    _expect(isinstance(data, dict), f"{where}: expected an object")

    generation = data.get("generation", 0)
    _expect(
        isinstance(generation, int) and not isinstance(generation, bool),
        f"{where}.generation: expected an integer",
    )
    vendor = data.get("vendor", GENERIC_VENDOR)
    _expect(isinstance(vendor, str), f"{where}.vendor: expected a string")
    cpu_part = data.get("cpupart", "")
    _expect(isinstance(cpu_part, str), f"{where}.cpupart: expected a string")

    return {
        "name": name,
        "parent_names": tuple(_string_list(data.get("from", []), f"{where}.from")),
        "vendor": vendor,
        "features": frozenset(_string_list(data.get("features", []), f"{where}.features")),
        "compilers": _parse_compilers(data.get("compilers", {}), f"{where}.compilers"),
        "generation": generation,
        "cpu_part": cpu_part,
    }


def parse_registry(data: Any) -> _ParsedSource:
    """
    Validate a decoded registry document.

    Raises:
        RegistryLoadError: If any section has the wrong shape
    """
    _expect(isinstance(data, dict), "registry root: expected an object")

    uarchs = data.get("microarchitectures", {})
    _expect(isinstance(uarchs, dict), "microarchitectures: expected an object")
    targets = {name: _parse_target(name, entry) for name, entry in uarchs.items()}

    feature_aliases: Dict[str, Set[str]] = {}
    family_features: Dict[str, Set[str]] = {}
    aliases = data.get("feature_aliases", {})
    _expect(isinstance(aliases, dict), "feature_aliases: expected an object")
    for feature, alias_data in aliases.items():
        where = f"feature_aliases.{feature}"
        _expect(isinstance(alias_data, dict), f"{where}: expected an object")
        if "any_of" in alias_data:
            feature_aliases[feature] = set(_string_list(alias_data["any_of"], f"{where}.any_of"))
        if "families" in alias_data:
            family_features[feature] = set(
                _string_list(alias_data["families"], f"{where}.families")
            )

    conversions = data.get("conversions", {})
    _expect(isinstance(conversions, dict), "conversions: expected an object")
    darwin_flags = _string_map(conversions.get("darwin_flags", {}), "conversions.darwin_flags")
    arm_vendors = _string_map(conversions.get("arm_vendors", {}), "conversions.arm_vendors")

    return _ParsedSource(targets, feature_aliases, family_features, darwin_flags, arm_vendors)


class MicroarchitectureDatabase:
    """
    Name-keyed store of microarchitectures.

    Targets refer to their parents by name and resolve them through this
    database, so parents may be defined after their children in the source.
    Once populated the database is only read; concurrent readers need no
    locking.
    """

    def __init__(self):
        self._targets: Dict[str, Microarchitecture] = {}
        self._feature_aliases: Dict[str, frozenset] = {}
        self._family_features: Dict[str, frozenset] = {}
        self._darwin_flags: Dict[str, str] = {}
        self._arm_vendors: Dict[str, str] = {}

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "MicroarchitectureDatabase":
        """Create a database from one JSON file. Check `len()` to see if it loaded."""
        database = cls()
        database.load_from_file(path)
        return database

    @classmethod
    def from_string(cls, json_data: str) -> "MicroarchitectureDatabase":
        database = cls()
        database.load_from_string(json_data)
        return database

    # Loading

    def load_from_file(self, path: Union[str, Path]) -> LoadResult:
        """
        Load registry data from a JSON file.

        Args:
            path: Path to the JSON document

        Returns:
            LoadResult; a missing or unreadable file is a failed load
        """
        path = Path(path)
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as e:
            logger.warning("Cannot read registry data %s: %s", path, e)
            return LoadResult(ok=False, error=str(e), source=str(path))
        except UnicodeDecodeError as e:
            logger.warning("Malformed registry data in %s: %s", path, e)
            return LoadResult(ok=False, error=f"invalid UTF-8: {e}", source=str(path))
        return self.load_from_string(text, source=str(path))

    def load_from_string(self, json_data: str, source: str = "<string>") -> LoadResult:
        try:
            data = json.loads(json_data)
        except ValueError as e:
            logger.warning("Malformed registry data in %s: %s", source, e)
            return LoadResult(ok=False, error=f"invalid JSON: {e}", source=source)
        return self.load_from_dict(data, source=source)

    def load_from_dict(self, data: Any, source: str = "<dict>") -> LoadResult:
        """Load an already decoded registry document."""
        try:
            parsed = parse_registry(data)
            self._check_acyclic(parsed.targets)
        except RegistryLoadError as e:
            logger.warning("Rejected registry data from %s: %s", source, e)
            return LoadResult(ok=False, error=str(e), source=source)

        added = self._commit(parsed)
        logger.debug("Loaded %d microarchitectures from %s", added, source)
        return LoadResult(ok=True, loaded=added, source=source)

    def _check_acyclic(self, new_targets: Dict[str, Dict[str, Any]]):
        """Reject sources whose parent graph, merged with ours, has a cycle."""
        parents_of: Dict[str, Tuple[str, ...]] = {
            name: target.parent_names for name, target in self._targets.items()
        }
        for name, fields in new_targets.items():
            parents_of.setdefault(name, fields["parent_names"])

        done: Set[str] = set()
        for start in new_targets:
            if start in done:
                continue
            path: List[str] = []
            on_path: Set[str] = set()
            stack: List[Tuple[str, Iterator[str]]] = [(start, iter(parents_of.get(start, ())))]
            path.append(start)
            on_path.add(start)
            while stack:
                node, children = stack[-1]
                child = next(children, None)
                if child is None:
                    stack.pop()
                    path.pop()
                    on_path.discard(node)
                    done.add(node)
                    continue
                if child in on_path:
                    cycle = " -> ".join(path[path.index(child):] + [child])
                    raise RegistryLoadError(f"cyclic ancestry: {cycle}")
                if child in done:
                    continue
                stack.append((child, iter(parents_of.get(child, ()))))
                path.append(child)
                on_path.add(child)

    def _commit(self, parsed: _ParsedSource) -> int:
        added = 0
        for name, fields in parsed.targets.items():
            # First definition wins
            if name in self._targets:
                continue
            self._targets[name] = Microarchitecture(database=self, **fields)
            added += 1

        for feature, aliases in parsed.feature_aliases.items():
            self._feature_aliases.setdefault(feature, frozenset(aliases))
        for feature, families in parsed.family_features.items():
            self._family_features.setdefault(feature, frozenset(families))
        for key, value in parsed.darwin_flags.items():
            self._darwin_flags.setdefault(key, value)
        for key, value in parsed.arm_vendors.items():
            self._arm_vendors.setdefault(key, value)
        return added

    # Queries

    def get(self, name: str) -> Optional[Microarchitecture]:
        """Exact-name lookup, None when unknown."""
        return self._targets.get(name)

    def exists(self, name: str) -> bool:
        return name in self._targets

    def __contains__(self, name) -> bool:
        return name in self._targets

    def __getitem__(self, name: str) -> Microarchitecture:
        return self._targets[name]

    def __len__(self) -> int:
        return len(self._targets)

    def __iter__(self) -> Iterator[str]:
        return iter(self._targets)

    def all(self) -> Mapping[str, Microarchitecture]:
        """Read-only view of every target, in source order."""
        return MappingProxyType(self._targets)

    def all_names(self) -> List[str]:
        return list(self._targets)

    def by_family(self, family: str) -> List[Microarchitecture]:
        """All targets whose family is `family`, the root included."""
        return [target for target in self._targets.values() if target.family() == family]

    @property
    def feature_aliases(self) -> Mapping[str, frozenset]:
        return MappingProxyType(self._feature_aliases)

    @property
    def family_features(self) -> Mapping[str, frozenset]:
        return MappingProxyType(self._family_features)

    @property
    def darwin_flag_conversions(self) -> Mapping[str, str]:
        """Space-separated macOS sysctl flags -> space-separated Linux flag names."""
        return MappingProxyType(self._darwin_flags)

    @property
    def arm_vendors(self) -> Mapping[str, str]:
        """ARM 'CPU implementer' codes (e.g. '0x41') -> vendor names."""
        return MappingProxyType(self._arm_vendors)


# Default database, built on first access
_db_instance: Optional[MicroarchitectureDatabase] = None
_db_lock = threading.Lock()


def load_database(config: Optional["RegistryConfig"] = None) -> MicroarchitectureDatabase:
    """
    Build a new database from configuration.

    The main data file is loaded first, then the optional extension file. A
    failing extension is logged and skipped; the main data stays usable.

    Args:
        config: Registry configuration (default: get_config())

    Returns:
        MicroarchitectureDatabase, empty if the main data failed to load
    """
    from .config import get_config

    config = config or get_config()
    database = MicroarchitectureDatabase()

    result = database.load_from_file(config.resolved_data_path)
    if not result:
        logger.error("Microarchitecture registry is empty: %s", result.error)
        return database

    if config.extension_path is not None:
        extension = database.load_from_file(config.extension_path)
        if extension:
            logger.debug("Extension %s added %d targets", config.extension_path, extension.loaded)

    return database


def get_database() -> MicroarchitectureDatabase:
    """
    Get the process-wide microarchitecture database.

    The database is loaded once, on first call, even when several threads
    race to trigger it. Afterwards it is read-only.

    Returns:
        MicroarchitectureDatabase instance
    """
    global _db_instance

    database = _db_instance
    if database is None:
        with _db_lock:
            if _db_instance is None:
                _db_instance = load_database()
            database = _db_instance
    return database


def reset_database():
    """Drop the process-wide database so the next access reloads it (mainly for testing)."""
    global _db_instance
    with _db_lock:
        _db_instance = None


def get_target(name: str) -> Optional[Microarchitecture]:
    """Look up a target in the process-wide database."""
    return get_database().get(name)
