"""CLI entry point for image-puppet."""

from __future__ import annotations

import argparse
import dataclasses
import signal
from pathlib import Path
from typing import Dict, List, Optional

from imagepuppet.config import Settings, parse_settings
from imagepuppet.constants import _SENSITIVE_FIELDS, STATE_DIR, WORK_DIR
from imagepuppet.controller import BuildPool
from imagepuppet.exceptions import ConfigurationError, PuppetError
from imagepuppet.models import BuildResult, Specification, describe_action
from imagepuppet.provider import create_provider, check_providers
from imagepuppet.specfile import load_spec
from imagepuppet.utils import ensure_directory, kvm_available, log


def parse_variables(pairs: List[str]) -> Dict[str, str]:
    variables: Dict[str, str] = {}
    for pair in pairs:
        name, sep, value = pair.partition("=")
        if not sep or not name:
            raise ConfigurationError(f"--var expects NAME=VALUE (got '{pair}')")
        variables[name] = value
    return variables


def _print_dataclass(obj, indent: str = "  ") -> None:
    for field in dataclasses.fields(obj):
        value = getattr(obj, field.name)
        if field.name in _SENSITIVE_FIELDS and value is not None:
            print(f"{indent}{field.name}: ********")
        elif dataclasses.is_dataclass(value):
            print(f"{indent}{field.name}:")
            _print_dataclass(value, indent + "  ")
        else:
            print(f"{indent}{field.name}: {value}")


def show_config(spec: Specification, settings: Settings) -> None:
    """Print the resolved build description and engine settings."""
    print(f"{spec.name}:")
    print("  provider:")
    _print_dataclass(spec.provider, "    ")
    if spec.credentials is not None:
        print("  login:")
        _print_dataclass(spec.credentials, "    ")
    print("  stages:")
    for stage in spec.ordered_stages():
        print(f"    {stage.kind.value}:")
        for index, action in enumerate(stage.actions):
            print(f"      [{index}] {describe_action(action)}")
    print("  pack:")
    _print_dataclass(spec.pack, "    ")
    print("  settings:")
    _print_dataclass(settings, "    ")


def list_providers(settings: Settings) -> None:
    for kind, problem in check_providers(settings).items():
        if problem is None:
            print(f"  {kind:<12} available")
        else:
            print(f"  {kind:<12} unavailable ({problem})")


def dry_run(specs: List[Specification], settings: Settings) -> int:
    ok = True
    for spec in specs:
        log("INFO", f"=== {spec.name} ===")
        show_config(spec, settings)
        try:
            create_provider(spec.provider.kind, settings).check_available()
        except PuppetError as exc:
            log("ERROR", f"Provider:    {spec.provider.kind} NOT available ({exc})")
            ok = False
        else:
            log("SUCCESS", f"Provider:    {spec.provider.kind} available")
        if spec.provider.boot_iso is not None:
            if spec.provider.boot_iso.exists():
                log("SUCCESS", f"Boot ISO:    {spec.provider.boot_iso} (found)")
            else:
                log("ERROR", f"Boot ISO:    {spec.provider.boot_iso} (NOT FOUND)")
                ok = False
    if any(spec.provider.kind in ("qemu", "libvirt") for spec in specs) and not kvm_available():
        log("WARN", "KVM:         NOT available (will use TCG, 10-50x slower)")
    log("INFO", "=== Dry-run complete (no VM started) ===")
    return 0 if ok else 1


def print_summary(results: List[BuildResult]) -> None:
    for result in results:
        elapsed = sum(stage.elapsed for stage in result.stages)
        if result.success:
            artifact = f" -> {result.artifact}" if result.artifact else ""
            log("SUCCESS", f"{result.name} [{result.build_id}] done in {elapsed:.0f}s{artifact}")
        elif result.cancelled:
            log("WARN", f"{result.name} [{result.build_id}] cancelled")
        else:
            error = result.error
            context = f" ({error.context()})" if error is not None else ""
            log("ERROR", f"{result.name} [{result.build_id}] failed: {error}{context}")
        for warning in result.warnings:
            log("WARN", f"  {warning}")


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Build custom OS images by driving a puppet VM")
    parser.add_argument("specs", nargs="*", type=Path, metavar="SPEC", help="YAML build description(s)")
    parser.add_argument(
        "--var",
        action="append",
        default=[],
        metavar="NAME=VALUE",
        help="Template variable for ${NAME} placeholders (repeatable)",
    )
    parser.add_argument("--workers", type=int, default=None, help="Concurrent builds (default: BUILD_WORKERS or 2)")
    parser.add_argument("--workdir", type=Path, default=None, help=f"Working directory root (default: {WORK_DIR})")
    parser.add_argument("--list-providers", action="store_true", help="Show which providers are usable and exit")
    parser.add_argument("--show-config", action="store_true", help="Show resolved build configuration and exit")
    parser.add_argument("--dry-run", action="store_true", help="Validate builds and environment, then exit")
    args = parser.parse_args(argv)

    try:
        settings = parse_settings()
    except ConfigurationError as exc:
        log("ERROR", str(exc))
        return 1

    if args.list_providers:
        list_providers(settings)
        return 0

    if not args.specs:
        parser.error("at least one SPEC is required")
    if args.workers is not None and args.workers < 1:
        parser.error("--workers must be >= 1")

    try:
        variables = parse_variables(args.var)
        specs = [load_spec(path, variables) for path in args.specs]
    except ConfigurationError as exc:
        log("ERROR", f"{exc} ({exc.context()})")
        return 1

    if args.show_config:
        for spec in specs:
            show_config(spec, settings)
        return 0

    if args.dry_run:
        return dry_run(specs, settings)

    workdir = args.workdir or WORK_DIR
    ensure_directory(workdir)
    ensure_directory(STATE_DIR)
    pool = BuildPool(settings=settings, workers=args.workers, workdir=workdir)

    def _request_cancel(signum, frame):
        sig_name = signal.Signals(signum).name
        log("INFO", f"{sig_name} received, cancelling builds")
        pool.cancel_all(f"cancelled by {sig_name}")

    prev_sigterm = signal.signal(signal.SIGTERM, _request_cancel)
    prev_sigint = signal.signal(signal.SIGINT, _request_cancel)
    try:
        results = pool.run(specs)
    except PuppetError as exc:
        log("ERROR", str(exc))
        return 1
    except Exception as exc:
        log("ERROR", f"Unexpected error: {exc}")
        log("ERROR", "This is likely a bug. Please report it with the output above.")
        import traceback

        traceback.print_exc()
        return 1
    finally:
        signal.signal(signal.SIGTERM, prev_sigterm)
        signal.signal(signal.SIGINT, prev_sigint)

    print_summary(results)
    return 0 if all(result.success for result in results) else 1

