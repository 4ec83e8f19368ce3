"""
Tests for the cpuarch command line tool.

Most tests call main() in-process and inspect captured output; one runs the
module the way a user would, in a subprocess.
"""

import json
import subprocess
import sys
from pathlib import Path

import pytest

from cpuarch.cli import build_parser, main


DATA_DIR = Path(__file__).parent.parent / "detect" / "data"


def run_main(capsys, *args):
    """Run the CLI in-process and return (exit code, stdout, stderr)"""
    code = main(list(args))
    captured = capsys.readouterr()
    return code, captured.out, captured.err


@pytest.fixture
def small_registry(tmp_path):
    path = tmp_path / "registry.json"
    path.write_text(json.dumps({"microarchitectures": {
        "x86_64": {},
        "custom": {"from": ["x86_64"], "vendor": "Acme", "features": ["avx"]},
    }}))
    return path


# =============================================================================
# Registry queries
# =============================================================================

class TestList:
    """Tests for `cpuarch list`"""

    def test_text(self, capsys):
        code, out, _ = run_main(capsys, "list")
        assert code == 0
        assert "MICROARCHITECTURES" in out
        assert "haswell" in out
        assert "neoverse_n1" in out

    def test_family_filter(self, capsys):
        code, out, _ = run_main(capsys, "list", "--family", "ppc64le", "--format", "json")
        assert code == 0
        names = [entry["name"] for entry in json.loads(out)]
        assert names == ["ppc64le", "power8le", "power9le", "power10le"]

    def test_custom_registry(self, capsys, small_registry):
        code, out, _ = run_main(capsys, "--registry", str(small_registry), "list", "--format", "json")
        assert code == 0
        data = json.loads(out)
        assert [entry["name"] for entry in data] == ["x86_64", "custom"]
        assert data[1]["ancestors"] == ["x86_64"]


class TestShow:
    """Tests for `cpuarch show`"""

    def test_text(self, capsys):
        code, out, _ = run_main(capsys, "show", "haswell")
        assert code == 0
        assert "MICROARCHITECTURE: haswell" in out
        assert "GenuineIntel" in out
        assert "x86_64_v3" in out
        assert "avx2" in out

    def test_json(self, capsys):
        code, out, _ = run_main(capsys, "show", "power9", "--format", "json")
        assert code == 0
        data = json.loads(out)
        assert data["name"] == "power9"
        assert data["family"] == "ppc64"
        assert data["generation"] == 9

    def test_unknown(self, capsys):
        code, _, err = run_main(capsys, "show", "zen9")
        assert code == 1
        assert "unknown microarchitecture 'zen9'" in err


class TestFlags:
    """Tests for `cpuarch flags`"""

    def test_flags(self, capsys):
        code, out, _ = run_main(capsys, "flags", "haswell", "gcc", "9.3.0")
        assert code == 0
        assert out.strip() == "-march=haswell -mtune=haswell"

    def test_warning_goes_to_stderr(self, capsys):
        code, out, err = run_main(capsys, "flags", "power8", "gcc", "4.8.5")
        assert code == 0
        assert out.strip() == "-mcpu=power7 -mtune=power7"
        assert "GCC 4.8" in err

    def test_no_flags(self, capsys):
        code, out, err = run_main(capsys, "flags", "haswell", "gcc", "0.1")
        assert code == 1
        assert out == ""
        assert "No flags recorded" in err


class TestFeature:
    """Tests for `cpuarch feature`"""

    def test_present(self, capsys):
        code, out, _ = run_main(capsys, "feature", "skylake_avx512", "avx512")
        assert code == 0
        assert "has avx512" in out

    def test_absent(self, capsys):
        code, out, _ = run_main(capsys, "feature", "haswell", "avx512")
        assert code == 1
        assert "does not have avx512" in out


class TestCompare:
    """Tests for `cpuarch compare`"""

    @pytest.mark.parametrize("first,second,relation", [
        ("haswell", "x86_64_v3", ">"),
        ("x86_64", "zen3", "<"),
        ("m1", "m1", "=="),
        ("haswell", "zen3", "unrelated to"),
    ])
    def test_relation(self, capsys, first, second, relation):
        code, out, _ = run_main(capsys, "compare", first, second)
        assert code == 0
        assert out.strip() == f"{first} {relation} {second}"

    def test_unknown(self, capsys):
        code, _, err = run_main(capsys, "compare", "haswell", "nope")
        assert code == 1
        assert "nope" in err


# =============================================================================
# Host detection
# =============================================================================

class TestHost:
    """Tests for `cpuarch host` on captured data"""

    def test_cpuinfo_text(self, capsys):
        code, out, _ = run_main(
            capsys, "host", "--cpuinfo", str(DATA_DIR / "cpuinfo_zen3.txt"), "--machine", "x86_64"
        )
        assert code == 0
        assert "Best match: zen3" in out
        assert "AuthenticAMD" in out

    def test_cpuinfo_json(self, capsys):
        code, out, _ = run_main(
            capsys, "host",
            "--cpuinfo", str(DATA_DIR / "cpuinfo_power9le.txt"),
            "--machine", "ppc64le",
            "--format", "json",
        )
        assert code == 0
        data = json.loads(out)
        assert data["machine"] == "ppc64le"
        assert data["brand"] is None
        assert data["detected"]["generation"] == 9
        assert data["host"]["name"] == "power9le"
        assert "ppc64le" in data["candidates"]

    def test_cpuid_dump(self, capsys):
        code, out, _ = run_main(
            capsys, "host",
            "--cpuid-dump", str(DATA_DIR / "cpuid_haswell.txt"),
            "--machine", "x86_64",
            "--format", "json",
        )
        assert code == 0
        assert json.loads(out)["host"]["name"] == "haswell"

    def test_capture_with_undecodable_bytes(self, capsys, tmp_path):
        capture = tmp_path / "cpuinfo.txt"
        capture.write_bytes(
            (DATA_DIR / "cpuinfo_zen3.txt").read_bytes().replace(b"Processor", b"Processor \xe9")
        )
        code, out, _ = run_main(capsys, "host", "--cpuinfo", str(capture), "--machine", "x86_64")
        assert code == 0
        assert "Best match: zen3" in out

    def test_missing_capture(self, capsys, tmp_path):
        code, _, err = run_main(
            capsys, "host", "--cpuinfo", str(tmp_path / "missing.txt"), "--machine", "x86_64"
        )
        assert code == 1
        assert "Error:" in err

    def test_sources_are_exclusive(self, capsys):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["host", "--cpuinfo", "a", "--cpuid-dump", "b"])


class TestParser:
    """Tests for argument parsing"""

    def test_command_is_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])

    def test_subprocess(self):
        result = subprocess.run(
            [sys.executable, "-m", "cpuarch.cli", "flags", "zen3", "gcc", "11.2"],
            capture_output=True,
            text=True,
            timeout=60
        )
        assert result.returncode == 0
        assert result.stdout.strip() == "-march=znver3 -mtune=znver3"
