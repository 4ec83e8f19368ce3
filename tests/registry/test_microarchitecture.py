"""
Tests for the Microarchitecture model.

Covers ancestry, family and generic queries, feature lookup with aliases,
the specificity order and optimization flag selection, mostly against the
registry data bundled with the package.
"""

import itertools

import pytest

from cpuarch.registry import (
    GENERIC_VENDOR,
    Microarchitecture,
    MicroarchitectureDatabase,
    generic_microarchitecture,
)
from cpuarch.registry.config import BUNDLED_DATA_PATH


@pytest.fixture(scope="module")
def database():
    db = MicroarchitectureDatabase.from_file(BUNDLED_DATA_PATH)
    assert len(db) > 0
    return db


# =============================================================================
# Ancestry
# =============================================================================

class TestAncestors:
    """Tests for Microarchitecture.ancestors()"""

    def test_root_has_no_ancestors(self, database):
        assert database["x86_64"].ancestors() == []
        assert database["aarch64"].ancestors() == []

    def test_direct_parents_come_first(self, database):
        ancestors = database["haswell"].ancestors()
        assert ancestors[:2] == ["ivybridge", "x86_64_v3"]
        assert "x86_64" in ancestors

    def test_parents_then_their_ancestors(self, database):
        ancestors = database["neoverse_n1"].ancestors()
        assert ancestors == ["cortex_a72", "armv8.2a", "aarch64", "armv8.1a"]

    def test_no_duplicates(self, database):
        for target in database.all().values():
            ancestors = target.ancestors()
            assert len(ancestors) == len(set(ancestors)), target.name

    def test_never_contains_itself(self, database):
        for target in database.all().values():
            assert target.name not in target.ancestors()

    def test_parents_property_resolves_names(self, database):
        parents = database["haswell"].parents
        assert [parent.name for parent in parents] == ["ivybridge", "x86_64_v3"]


class TestFamily:
    """Tests for Microarchitecture.family()"""

    @pytest.mark.parametrize("name,family", [
        ("x86_64", "x86_64"),
        ("haswell", "x86_64"),
        ("zen4", "x86_64"),
        ("m2", "aarch64"),
        ("neoverse_v1", "aarch64"),
        ("power9", "ppc64"),
        ("power9le", "ppc64le"),
        ("u74mc", "riscv64"),
    ])
    def test_family(self, database, name, family):
        assert database[name].family() == family

    def test_family_is_always_a_root(self, database):
        for target in database.all().values():
            assert database[target.family()].parent_names == ()


class TestGeneric:
    """Tests for Microarchitecture.generic()"""

    @pytest.mark.parametrize("name,generic", [
        ("x86_64_v2", "x86_64_v2"),
        ("nocona", "x86_64"),
        ("nehalem", "x86_64_v2"),
        ("haswell", "x86_64_v3"),
        ("zen3", "x86_64_v3"),
        ("skylake_avx512", "x86_64_v4"),
        ("neoverse_n1", "armv8.2a"),
        ("m1", "armv8.4a"),
        ("power9le", "ppc64le"),
        ("u74mc", "riscv64"),
    ])
    def test_generic(self, database, name, generic):
        assert database[name].generic() == generic

    def test_generic_is_self_generic_ancestor_or_family(self, database):
        for target in database.all().values():
            generic = target.generic()
            if generic == target.name or generic == target.family():
                continue
            assert generic in target.ancestors()
            assert database[generic].vendor == GENERIC_VENDOR


class TestSyntheticGeneric:
    """Tests for generic_microarchitecture()"""

    def test_synthetic_target(self):
        target = generic_microarchitecture("sparc64")
        assert target.name == "sparc64"
        assert target.vendor == GENERIC_VENDOR
        assert target.features == frozenset()
        assert target.parent_names == ()
        assert target.ancestors() == []
        assert target.family() == "sparc64"
        assert target.generic() == "sparc64"
        assert target.optimization_flags("gcc", "12.1") == ""
        assert not target.has_feature("sse2")


# =============================================================================
# Features
# =============================================================================

class TestFeatures:
    """Tests for Microarchitecture.has_feature()"""

    def test_own_feature(self, database):
        assert database["haswell"].has_feature("avx2")
        assert "avx2" in database["haswell"]
        assert "avx512f" not in database["haswell"]

    def test_ssse3_implies_sse3(self, database):
        for target in database.all().values():
            if target.has_feature("ssse3"):
                assert target.has_feature("sse3"), target.name

    def test_ssse3_implication_on_construction(self):
        target = Microarchitecture(name="custom", features={"ssse3"})
        assert target.features == frozenset({"ssse3", "sse3"})

    def test_alias(self, database):
        assert "sse4.1" in database["nehalem"]
        assert "sse4.2" in database["haswell"]
        assert "sse4.1" not in database["nocona"]

    def test_alias_any_of(self, database):
        assert "avx512" in database["skylake_avx512"]
        assert "avx512" not in database["haswell"]
        assert "neon" in database["neoverse_n1"]

    def test_family_feature(self, database):
        assert "altivec" in database["power9le"]
        assert "altivec" in database["ppc64"]
        assert "neon" in database["aarch64"]
        assert "sse2" in database["x86_64"]
        assert "altivec" not in database["haswell"]

    @pytest.mark.parametrize("token", ["", "no_such_feature", "AVX2", " avx2"])
    def test_unknown_tokens(self, database, token):
        assert not database["haswell"].has_feature(token)

    def test_alias_resolution_is_single_hop(self):
        db = MicroarchitectureDatabase()
        db.load_from_dict({
            "microarchitectures": {"root": {"features": ["c"]}},
            "feature_aliases": {
                "a": {"any_of": ["b"]},
                "b": {"any_of": ["c"]},
            },
        })
        assert db["root"].has_feature("b")
        assert not db["root"].has_feature("a")


# =============================================================================
# Specificity order
# =============================================================================

class TestSpecificityOrder:
    """Tests for the comparison operators"""

    def test_descendant_is_greater(self, database):
        x86_64, haswell = database["x86_64"], database["haswell"]
        assert x86_64 < haswell
        assert haswell > x86_64
        assert x86_64 <= haswell
        assert haswell >= x86_64

    def test_irreflexive(self, database):
        haswell = database["haswell"]
        assert not haswell < haswell
        assert not haswell > haswell
        assert haswell <= haswell
        assert haswell >= haswell

    def test_siblings_are_incomparable(self, database):
        haswell, zen3 = database["haswell"], database["zen3"]
        assert not haswell < zen3
        assert not haswell > zen3
        assert haswell != zen3

    def test_different_families_are_incomparable(self, database):
        assert not database["x86_64"] < database["aarch64"]
        assert not database["x86_64"] > database["aarch64"]

    def test_exactly_one_relation(self, database):
        """For any pair: ==, <, > or incomparable, and never two of them"""
        for a, b in itertools.product(database.all().values(), repeat=2):
            relations = [a == b, a < b, a > b]
            assert sum(relations) <= 1, (a.name, b.name)
            assert (a <= b) == (a < b or a == b)

    def test_transitive(self, database):
        targets = list(database.all().values())
        smaller = {
            (a.name, b.name) for a, b in itertools.product(targets, repeat=2) if a < b
        }
        for a, b in smaller:
            for c in targets:
                if (b, c.name) in smaller:
                    assert (a, c.name) in smaller

    def test_comparison_with_other_types(self, database):
        with pytest.raises(TypeError):
            database["haswell"] < "x86_64"

    def test_equality_ignores_owning_database(self, database):
        other = MicroarchitectureDatabase.from_file(BUNDLED_DATA_PATH)
        assert other["haswell"] == database["haswell"]
        assert hash(other["haswell"]) == hash(database["haswell"])

    def test_equality_compares_features(self):
        a = Microarchitecture(name="t", features={"avx"})
        b = Microarchitecture(name="t", features={"avx2"})
        assert a != b


# =============================================================================
# Optimization flags
# =============================================================================

class TestOptimizationFlags:
    """Tests for Microarchitecture.optimization_flags()"""

    def test_own_entry(self, database):
        assert database["haswell"].optimization_flags("gcc", "9.3.0") == "-march=haswell -mtune=haswell"

    def test_first_matching_entry_with_name_override(self, database):
        assert database["haswell"].optimization_flags("gcc", "4.8.2") == "-march=core-avx2 -mtune=core-avx2"
        assert database["nehalem"].optimization_flags("gcc", "4.7") == "-march=corei7 -mtune=corei7"

    def test_name_override(self, database):
        assert database["zen3"].optimization_flags("gcc", "11.2") == "-march=znver3 -mtune=znver3"
        assert database["x86_64_v3"].optimization_flags("gcc", "12.1") == "-march=x86-64-v3 -mtune=generic"

    def test_versioned_fallback_entry(self, database):
        flags = database["x86_64_v3"].optimization_flags("gcc", "10.2")
        assert flags.startswith("-march=x86-64 -mtune=generic -mcx16")
        assert "-mavx2" in flags

    def test_inherited_from_nearest_ancestor(self, database):
        """broadwell has no apple-clang entry, haswell does"""
        assert database["broadwell"].optimization_flags("apple-clang", "12.0") == "-march=haswell -mtune=haswell"
        assert database["m2"].optimization_flags("clang", "13.0") == "-mcpu=apple-m1"

    def test_unknown_compiler(self, database):
        assert database["haswell"].optimization_flags("xlc", "16.1") == ""

    @pytest.mark.parametrize("version", ["", "abc", "-1", "0.1"])
    def test_unsupported_versions(self, database, version):
        assert database["haswell"].optimization_flags("gcc", version) == ""

    def test_compiler_table_is_read_only(self, database):
        compilers = database["haswell"].compilers
        with pytest.raises(TypeError):
            compilers["gcc"] = ()
        with pytest.raises(TypeError):
            del compilers["clang"]
        assert database["haswell"].optimization_flags("gcc", "9.3.0") == "-march=haswell -mtune=haswell"

    def test_warnings(self, database):
        power8 = database["power8"]
        assert power8.optimization_flags("gcc", "4.8.5") == "-mcpu=power7 -mtune=power7"
        assert "GCC 4.8" in power8.optimization_warnings("gcc", "4.8.5")
        assert power8.optimization_warnings("gcc", "9.1") == ""


class TestToDict:
    """Tests for Microarchitecture.to_dict()"""

    def test_registry_shape(self, database):
        data = database["power9le"].to_dict()
        assert data["from"] == ["power8le"]
        assert data["vendor"] == "IBM"
        assert data["generation"] == 9
        assert data["compilers"]["gcc"][0] == {
            "versions": "6.0:",
            "name": "power9",
            "flags": "-mcpu={name} -mtune={name}",
        }

    def test_round_trip_through_a_database(self, database):
        source = {"microarchitectures": {
            name: target.to_dict() for name, target in database.all().items()
        }}
        copy = MicroarchitectureDatabase()
        assert copy.load_from_dict(source).ok
        for name, target in database.all().items():
            assert copy[name] == target
            assert copy[name].optimization_flags("gcc", "12.1") == target.optimization_flags("gcc", "12.1")
