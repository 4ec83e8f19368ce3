"""
CPUID Feature Decoder

Turns the registers returned by the x86 CPUID instruction into a vendor
string, a brand string and a set of feature names spelled the way Linux
spells them in /proc/cpuinfo.

The decoder never executes CPUID itself. It is given a *register source*:
a callable ``(leaf, subleaf) -> CpuidRegisters``. Passing ``None`` models a
platform without the instruction; every query then answers with empty or
zero values instead of failing.

Usage:
    from cpuarch.detect.cpuid import Cpuid, RecordedCpuid

    cpuid = Cpuid(RecordedCpuid.from_dump(Path("cpuid.txt").read_text()))
    cpuid.vendor          # 'GenuineIntel'
    'avx2' in cpuid.features
    cpuid.brand_string    # 'Intel(R) Core(TM) i7-4770 CPU @ 3.40GHz'
"""

import logging
import re
from dataclasses import dataclass
from typing import Callable, Dict, FrozenSet, Mapping, Optional, Tuple


logger = logging.getLogger(__name__)

EXTENDED_LEAF_BASE = 0x80000000
BRAND_LEAVES = (0x80000002, 0x80000003, 0x80000004)


@dataclass(frozen=True)
class CpuidRegisters:
    """The four 32-bit registers returned by one CPUID query."""
    eax: int = 0
    ebx: int = 0
    ecx: int = 0
    edx: int = 0

    def register(self, name: str) -> int:
        return getattr(self, name)

    def to_bytes(self, *names: str) -> bytes:
        """Little-endian bytes of the named registers, in the given order."""
        return b"".join(self.register(name).to_bytes(4, "little") for name in names)


CpuidSource = Callable[[int, int], CpuidRegisters]


@dataclass(frozen=True)
class FeatureBit:
    """One row of the decode table: if the bit is set, the feature is present."""
    leaf: int
    subleaf: int
    register: str
    bit: int
    feature: str


def _bits(leaf: int, subleaf: int, register: str, bits: Mapping[int, str]) -> Tuple[FeatureBit, ...]:
    return tuple(
        FeatureBit(leaf, subleaf, register, bit, feature)
        for bit, feature in bits.items()
    )


FEATURE_BITS: Tuple[FeatureBit, ...] = (
    # Leaf 1: processor info and feature bits
    *_bits(1, 0, "edx", {
        0: "fpu", 23: "mmx", 25: "sse", 26: "sse2", 28: "ht",
    }),
    *_bits(1, 0, "ecx", {
        0: "pni", 1: "pclmulqdq", 9: "ssse3", 12: "fma", 13: "cx16",
        19: "sse4_1", 20: "sse4_2", 22: "movbe", 23: "popcnt", 25: "aes",
        26: "xsave", 28: "avx", 29: "f16c", 30: "rdrand",
    }),
    # Leaf 7, subleaf 0: structured extended features
    *_bits(7, 0, "ebx", {
        0: "fsgsbase", 3: "bmi1", 5: "avx2", 8: "bmi2", 16: "avx512f",
        17: "avx512dq", 18: "rdseed", 19: "adx", 21: "avx512ifma",
        23: "clflushopt", 24: "clwb", 26: "avx512pf", 27: "avx512er",
        28: "avx512cd", 29: "sha_ni", 30: "avx512bw", 31: "avx512vl",
    }),
    *_bits(7, 0, "ecx", {
        1: "avx512vbmi", 3: "pku", 5: "waitpkg", 6: "avx512_vbmi2", 8: "gfni",
        9: "vaes", 10: "vpclmulqdq", 11: "avx512_vnni", 12: "avx512_bitalg",
        14: "avx512_vpopcntdq", 22: "rdpid", 25: "cldemote", 27: "movdiri",
        28: "movdir64b",
    }),
    *_bits(7, 0, "edx", {
        8: "avx512_vp2intersect", 14: "serialize", 22: "amx_bf16",
        24: "amx_tile", 25: "amx_int8",
    }),
    # Leaf 7, subleaf 1
    *_bits(7, 1, "eax", {
        4: "avx_vnni", 5: "avx512_bf16",
    }),
    # Leaf 0xD, subleaf 1: XSAVE extensions
    *_bits(0xD, 1, "eax", {
        0: "xsaveopt", 1: "xsavec",
    }),
    # Extended leaf 0x80000001
    *_bits(0x80000001, 0, "ecx", {
        0: "lahf_lm", 5: "abm", 6: "sse4a", 11: "xop", 16: "fma4", 21: "tbm",
    }),
    *_bits(0x80000001, 0, "edx", {
        30: "3dnowext", 31: "3dnow",
    }),
)


def _c_string(raw: bytes) -> str:
    """Decode bytes as a NUL-terminated string."""
    return raw.split(b"\0", 1)[0].decode("latin-1")


class Cpuid:
    """
    Decoder over a CPUID register source.

    Queries are cached, so each (leaf, subleaf) pair is asked of the source
    at most once per decoder.
    """

    def __init__(self, source: Optional[CpuidSource] = None):
        self._source = source
        self._cache: Dict[Tuple[int, int], CpuidRegisters] = {}
        self._features: Optional[FrozenSet[str]] = None

    @property
    def is_supported(self) -> bool:
        return self._source is not None

    def query(self, leaf: int, subleaf: int = 0) -> CpuidRegisters:
        """Registers for one leaf/subleaf; all zero when CPUID is unavailable."""
        if self._source is None:
            return CpuidRegisters()
        key = (leaf, subleaf)
        if key not in self._cache:
            self._cache[key] = self._source(leaf, subleaf)
        return self._cache[key]

    @property
    def vendor(self) -> str:
        """12-character vendor id, e.g. 'GenuineIntel' or 'AuthenticAMD'."""
        return _c_string(self.query(0).to_bytes("ebx", "edx", "ecx"))

    @property
    def highest_basic_leaf(self) -> int:
        return self.query(0).eax

    @property
    def highest_extended_leaf(self) -> int:
        return self.query(EXTENDED_LEAF_BASE).eax

    def supports_leaf(self, leaf: int) -> bool:
        """True when `leaf` is within the basic or extended range the CPU reports."""
        if not self.is_supported:
            return False
        if leaf >= EXTENDED_LEAF_BASE:
            return self.highest_extended_leaf >= leaf
        return self.highest_basic_leaf >= leaf

    @property
    def features(self) -> FrozenSet[str]:
        """Feature names whose bit is set, consulting only supported leaves."""
        if self._features is None:
            found = set()
            for row in FEATURE_BITS:
                if not self.supports_leaf(row.leaf):
                    continue
                value = self.query(row.leaf, row.subleaf).register(row.register)
                if value & (1 << row.bit):
                    found.add(row.feature)
            self._features = frozenset(found)
            logger.debug("CPUID reports %d features for vendor %r", len(found), self.vendor)
        return self._features

    @property
    def brand_string(self) -> str:
        """Processor brand string, or '' when leaf 0x80000004 is not available."""
        if not self.supports_leaf(BRAND_LEAVES[-1]):
            return ""
        raw = b"".join(
            self.query(leaf).to_bytes("eax", "ebx", "ecx", "edx") for leaf in BRAND_LEAVES
        )
        return _c_string(raw).rstrip(" \0")


# A register line of `cpuid -r`:
#    0x00000001 0x00: eax=0x000306c3 ebx=0x00100800 ecx=0x7ffafbff edx=0xbfebfbff
_DUMP_LINE = re.compile(
    r"^\s*0x(?P<leaf>[0-9a-fA-F]+)\s+0x(?P<subleaf>[0-9a-fA-F]+):"
    r"\s+eax=0x(?P<eax>[0-9a-fA-F]+)\s+ebx=0x(?P<ebx>[0-9a-fA-F]+)"
    r"\s+ecx=0x(?P<ecx>[0-9a-fA-F]+)\s+edx=0x(?P<edx>[0-9a-fA-F]+)"
)
_DUMP_CPU_HEADER = re.compile(r"^\s*CPU\s+\d+:\s*$")


class RecordedCpuid:
    """
    Register source replaying previously captured CPUID results.

    Leaves that were not captured read as all-zero registers, which is what a
    CPU reports for a leaf beyond its range on most implementations.
    """

    def __init__(self, registers: Mapping[Tuple[int, int], CpuidRegisters]):
        self._registers = dict(registers)

    def __call__(self, leaf: int, subleaf: int = 0) -> CpuidRegisters:
        return self._registers.get((leaf, subleaf), CpuidRegisters())

    def __len__(self) -> int:
        return len(self._registers)

    @classmethod
    def from_dump(cls, text: str) -> 'RecordedCpuid':
        """
        Parse the output of ``cpuid -r``.

        Only the first CPU block is used; every core of a package reports the
        same feature bits.
        """
        registers: Dict[Tuple[int, int], CpuidRegisters] = {}
        seen_header = False
        for line in text.splitlines():
            if _DUMP_CPU_HEADER.match(line):
                if seen_header:
                    break
                seen_header = True
                continue

            match = _DUMP_LINE.match(line)
            if not match:
                continue
            values = {key: int(value, 16) for key, value in match.groupdict().items()}
            key = (values.pop("leaf"), values.pop("subleaf"))
            registers.setdefault(key, CpuidRegisters(**values))

        logger.debug("Parsed %d CPUID leaves from dump", len(registers))
        return cls(registers)
