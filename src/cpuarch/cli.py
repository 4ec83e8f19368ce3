#!/usr/bin/env python3
"""
cpuarch command line tool

Query the microarchitecture registry and detect the host CPU.

Usage:
    cpuarch list --family aarch64
    cpuarch show haswell
    cpuarch flags haswell gcc 12.2.0
    cpuarch feature zen3 avx2
    cpuarch compare haswell x86_64_v3
    cpuarch host
    cpuarch host --cpuinfo /tmp/cpuinfo.txt --machine aarch64 --format json
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

from .registry import (
    Microarchitecture,
    MicroarchitectureDatabase,
    get_config,
    get_database,
    load_database,
)
from .detect import (
    Cpuid,
    DetectedCpuInfo,
    HostDetector,
    RecordedCpuid,
    compatible_microarchitectures,
    info_from_cpuid,
    parse_cpuinfo,
    select_best,
)


logger = logging.getLogger(__name__)


def _open_database(args) -> MicroarchitectureDatabase:
    if args.registry:
        config = get_config()
        config.data_path = Path(args.registry)
        logger.debug("Using registry data from %s", config.data_path)
        return load_database(config)
    return get_database()


def _lookup(database: MicroarchitectureDatabase, name: str) -> Optional[Microarchitecture]:
    target = database.get(name)
    if target is None:
        print(f"Error: unknown microarchitecture '{name}'", file=sys.stderr)
    return target


def _describe(target: Microarchitecture) -> dict:
    result = {'name': target.name}
    result.update(target.to_dict())
    result['family'] = target.family()
    result['generic'] = target.generic()
    result['ancestors'] = target.ancestors()
    return result


def cmd_list(args) -> int:
    database = _open_database(args)
    targets = database.by_family(args.family) if args.family else list(database.all().values())

    if args.format == 'json':
        print(json.dumps([_describe(target) for target in targets], indent=2))
        return 0

    print("=" * 80)
    title = f"MICROARCHITECTURES ({args.family})" if args.family else "MICROARCHITECTURES"
    print(f"{title}: {len(targets)}")
    print("=" * 80)
    print(f"{'Name':<20} {'Vendor':<15} {'Family':<10} {'Parents'}")
    print("-" * 80)
    for target in targets:
        parents = ", ".join(target.parent_names) or "-"
        print(f"{target.name:<20} {target.vendor:<15} {target.family():<10} {parents}")
    print()
    return 0


def cmd_show(args) -> int:
    database = _open_database(args)
    target = _lookup(database, args.name)
    if target is None:
        return 1

    if args.format == 'json':
        print(json.dumps(_describe(target), indent=2))
        return 0

    print("=" * 80)
    print(f"MICROARCHITECTURE: {target.name}")
    print("=" * 80)
    print(f"  Vendor:     {target.vendor}")
    print(f"  Family:     {target.family()}")
    print(f"  Generic:    {target.generic()}")
    print(f"  Parents:    {', '.join(target.parent_names) or '-'}")
    print(f"  Ancestors:  {', '.join(target.ancestors()) or '-'}")
    if target.generation:
        print(f"  Generation: {target.generation}")
    if target.cpu_part:
        print(f"  CPU part:   {target.cpu_part}")
    print()
    print(f"Features ({len(target.features)}):")
    print("-" * 80)
    if target.features:
        print("  " + " ".join(sorted(target.features)))
    print()
    print("Compilers:")
    print("-" * 80)
    for compiler, entries in target.compilers.items():
        for entry in entries:
            print(f"  {compiler:<12} {entry.versions:<12} {entry.render(target.name)}")
    print()
    return 0


def cmd_flags(args) -> int:
    database = _open_database(args)
    target = _lookup(database, args.name)
    if target is None:
        return 1

    flags = target.optimization_flags(args.compiler, args.version)
    if not flags:
        print(
            f"No flags recorded for {args.compiler}@{args.version} on {target.name}",
            file=sys.stderr
        )
        return 1

    warnings = target.optimization_warnings(args.compiler, args.version)
    if warnings:
        print(f"Warning: {warnings}", file=sys.stderr)
    print(flags)
    return 0


def cmd_feature(args) -> int:
    database = _open_database(args)
    target = _lookup(database, args.name)
    if target is None:
        return 1

    present = target.has_feature(args.feature)
    print(f"{target.name} {'has' if present else 'does not have'} {args.feature}")
    return 0 if present else 1


def cmd_compare(args) -> int:
    database = _open_database(args)
    first = _lookup(database, args.first)
    second = _lookup(database, args.second)
    if first is None or second is None:
        return 1

    if first == second:
        relation = "=="
    elif first < second:
        relation = "<"
    elif first > second:
        relation = ">"
    else:
        relation = "unrelated to"
    print(f"{first.name} {relation} {second.name}")
    return 0


def _facts_from_args(args, detector: HostDetector, machine: str) -> DetectedCpuInfo:
    if args.cpuinfo:
        text = Path(args.cpuinfo).read_text(encoding="utf-8", errors="replace")
        return parse_cpuinfo(text, machine, detector.database)
    if args.cpuid_dump:
        text = Path(args.cpuid_dump).read_text(encoding="utf-8", errors="replace")
        cpuid = Cpuid(RecordedCpuid.from_dump(text))
        return info_from_cpuid(cpuid)
    return detector.detect(machine)


def cmd_host(args) -> int:
    database = _open_database(args)
    detector = HostDetector(database)
    machine = args.machine or detector.get_machine()

    try:
        info = _facts_from_args(args, detector, machine)
    except OSError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    candidates = compatible_microarchitectures(info, machine, database)
    best = select_best(candidates, info, machine, database)
    live = not (args.cpuinfo or args.cpuid_dump)
    brand = detector.brand_string() if live else None

    if args.format == 'json':
        result = {
            'machine': machine,
            'brand': brand,
            'detected': info.to_dict(),
            'candidates': [target.name for target in candidates],
            'host': _describe(best),
        }
        print(json.dumps(result, indent=2))
        return 0

    print("=" * 80)
    print("HOST MICROARCHITECTURE")
    print("=" * 80)
    print(f"  Machine:    {machine}")
    if brand:
        print(f"  Brand:      {brand}")
    print(f"  Vendor:     {info.vendor or '-'}")
    if info.name:
        print(f"  Model:      {info.name}")
    print(f"  Features:   {len(info.features)} detected")
    print()
    print(f"  Best match: {best.name}")
    print(f"  Generic:    {best.generic()}")
    print(f"  Family:     {best.family()}")
    print(f"  Candidates: {', '.join(target.name for target in candidates) or '-'}")
    print()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cpuarch",
        description="Query the CPU microarchitecture registry and detect the host",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Everything the registry knows about AArch64
  cpuarch list --family aarch64

  # Flags to optimize for Zen 3 with GCC 11
  cpuarch flags zen3 gcc 11.2

  # Match a /proc/cpuinfo captured on another machine
  cpuarch host --cpuinfo cpuinfo.txt --machine ppc64le
        """
    )
    parser.add_argument(
        "--registry",
        help="Registry JSON file to use instead of the configured one"
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable debug logging"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    list_parser = subparsers.add_parser("list", help="List known microarchitectures")
    list_parser.add_argument("--family", help="Only targets of this family (e.g. x86_64)")
    list_parser.add_argument("--format", choices=["text", "json"], default="text")
    list_parser.set_defaults(func=cmd_list)

    show_parser = subparsers.add_parser("show", help="Show one microarchitecture")
    show_parser.add_argument("name")
    show_parser.add_argument("--format", choices=["text", "json"], default="text")
    show_parser.set_defaults(func=cmd_show)

    flags_parser = subparsers.add_parser("flags", help="Optimization flags for a compiler")
    flags_parser.add_argument("name")
    flags_parser.add_argument("compiler", help="Compiler name, e.g. gcc, clang, apple-clang")
    flags_parser.add_argument("version", help="Compiler version, e.g. 12.2.0")
    flags_parser.set_defaults(func=cmd_flags)

    feature_parser = subparsers.add_parser("feature", help="Check whether a target has a feature")
    feature_parser.add_argument("name")
    feature_parser.add_argument("feature")
    feature_parser.set_defaults(func=cmd_feature)

    compare_parser = subparsers.add_parser("compare", help="Compare the specificity of two targets")
    compare_parser.add_argument("first")
    compare_parser.add_argument("second")
    compare_parser.set_defaults(func=cmd_compare)

    host_parser = subparsers.add_parser("host", help="Detect the host microarchitecture")
    source = host_parser.add_mutually_exclusive_group()
    source.add_argument("--cpuinfo", help="Use this /proc/cpuinfo capture instead of probing")
    source.add_argument("--cpuid-dump", help="Use this `cpuid -r` capture instead of probing")
    host_parser.add_argument("--machine", help="Architecture of the capture (default: this host's)")
    host_parser.add_argument("--format", choices=["text", "json"], default="text")
    host_parser.set_defaults(func=cmd_host)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s"
    )
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
