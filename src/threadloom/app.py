"""Command-line entry point for building model-ready context from files."""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from dataclasses import is_dataclass
from pathlib import Path
from typing import Any, Dict, Literal, Mapping, Optional, Sequence, TextIO, get_args, get_origin, get_type_hints

from .context.builder import ContextBuilder
from .services.config_loader import ConfigValidationError, load_agent_config, load_session, load_user_profile
from .services.settings import ContextLimitSettings, Settings, SettingsStore
from .utils import logging as logging_utils

_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_FALSE_VALUES = {"0", "false", "no", "off", "disabled"}
_LOGGER = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_CONFIG_ERROR = 1
EXIT_USAGE = 2


def configure_logging(debug: bool = False, *, log_dir: str | None = None, force: bool = False) -> None:
    """Configure logging for the command-line run."""

    level = logging.DEBUG if debug else logging.WARNING
    logging_utils.setup_logging(level, log_dir=log_dir, force=force)
    _LOGGER.debug("Logging configured (level=%s)", logging.getLevelName(level))


def load_settings(
    path: Optional[Path] = None,
    *,
    store: SettingsStore | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> Settings:
    """Load persisted settings or fall back to defaults."""

    active_store = store or SettingsStore(path)
    try:
        return active_store.load(overrides=overrides)
    except (OSError, TypeError, ValueError) as exc:
        _LOGGER.warning("Failed to load settings from %s: %s", active_store.path, exc)
        return Settings()


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point invoked by the `threadloom` console script."""

    parser = _build_parser()
    args = parser.parse_args(argv)

    debug = _env_flag("THREADLOOM_DEBUG", default=False)
    configure_logging(debug, force=True)

    settings_path = args.settings_path or os.environ.get("THREADLOOM_SETTINGS_PATH")
    resolved_path = Path(settings_path).expanduser() if settings_path else None
    settings_store = SettingsStore(resolved_path)
    try:
        cli_overrides = _coerce_cli_overrides(args.overrides or [])
    except ValueError as exc:
        print(f"Invalid --set override: {exc}", file=sys.stderr)
        return EXIT_USAGE

    settings = load_settings(resolved_path, store=settings_store, overrides=cli_overrides or None)

    if args.dump_settings:
        _dump_settings(settings, settings_store, overrides=cli_overrides)
        return EXIT_OK

    if settings.debug_logging or settings.log_dir:
        configure_logging(debug or settings.debug_logging, log_dir=settings.log_dir, force=True)

    if args.command != "build":
        parser.print_usage(sys.stderr)
        return EXIT_USAGE
    return _run_build(args, settings)


def _run_build(args: argparse.Namespace, settings: Settings, *, stream: TextIO | None = None) -> int:
    destination = stream or sys.stdout
    try:
        session = load_session(args.session)
        agent = load_agent_config(args.agent)
        profile = load_user_profile(args.profile) if args.profile else None
    except ConfigValidationError as exc:
        print(str(exc), file=sys.stderr)
        for error in exc.errors:
            print(f"  - {error}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    builder = ContextBuilder(settings=settings)
    result = builder.build_sync(session, agent, profile, budget=args.budget)
    json.dump(result.to_dict(), destination, indent=2, ensure_ascii=False, default=str)
    destination.write("\n")
    if result.warnings:
        _LOGGER.info("Context built with %d warning(s)", len(result.warnings))
    return EXIT_OK


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="threadloom",
        description="Build the message list a chat session would send to a model.",
    )
    parser.add_argument(
        "--dump-settings",
        action="store_true",
        help="Print the effective settings payload and exit.",
    )
    parser.add_argument(
        "--settings-path",
        metavar="PATH",
        help="Override the default ~/.threadloom/settings.json path.",
    )
    parser.add_argument(
        "--set",
        dest="overrides",
        metavar="KEY=VALUE",
        action="append",
        default=[],
        help="Override persisted settings for this run (repeatable; dotted keys reach context_limit).",
    )
    subparsers = parser.add_subparsers(dest="command")
    build = subparsers.add_parser("build", help="Run the context pipeline and print the result as JSON.")
    build.add_argument("--session", required=True, metavar="PATH", help="Session tree (JSON or YAML).")
    build.add_argument("--agent", required=True, metavar="PATH", help="Agent config (YAML or JSON).")
    build.add_argument("--profile", metavar="PATH", help="User profile (YAML or JSON).")
    build.add_argument("--budget", type=int, metavar="N", help="Context budget overriding the configured limit.")
    return parser


def _env_flag(name: str, *, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


def _coerce_cli_overrides(items: Sequence[str]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    if not items:
        return overrides

    for entry in items:
        if "=" not in entry:
            raise ValueError(f"Override '{entry}' must use KEY=VALUE syntax.")
        key, raw_value = entry.split("=", 1)
        key = key.strip()
        if not key:
            raise ValueError("Override is missing a field name.")
        owner: type = Settings
        field_name = key
        if key.startswith("context_limit."):
            owner, field_name = ContextLimitSettings, key.split(".", 1)[1]
        fields = owner.__dataclass_fields__  # type: ignore[attr-defined]
        if field_name not in fields:
            raise ValueError(f"Unknown setting '{key}'.")
        annotation = get_type_hints(owner).get(field_name, fields[field_name].type)
        overrides[key] = _coerce_value(annotation, raw_value.strip())
    return overrides


def _coerce_value(annotation: Any, raw_value: str) -> Any:
    if get_origin(annotation) is Literal:
        choices = get_args(annotation)
        if raw_value not in choices:
            raise ValueError(f"Expected one of {', '.join(map(str, choices))}, got '{raw_value}'.")
        return raw_value

    target = _resolve_annotation(annotation)
    normalized = raw_value.strip()

    if normalized.lower() in {"none", "null"} and _is_optional(annotation):
        return None
    if target is str or target is Any:
        return normalized
    if target is bool:
        return _parse_bool(normalized)
    if target is int:
        return int(normalized, 10)
    if target is float:
        return float(normalized)
    if get_origin(target) is Literal:
        return _coerce_value(target, normalized)
    if is_dataclass(target):
        try:
            payload = json.loads(normalized or "{}")
        except json.JSONDecodeError as exc:
            raise ValueError("Dataclass overrides must be valid JSON") from exc
        if hasattr(target, "from_dict"):
            return target.from_dict(payload)  # type: ignore[union-attr]
        if isinstance(target, type):
            return target(**payload)
        raise ValueError("Dataclass override target is not instantiable")
    if target is dict:
        try:
            return json.loads(normalized or "{}")
        except json.JSONDecodeError as exc:
            raise ValueError("Dict overrides must be valid JSON objects") from exc
    return normalized


def _resolve_annotation(annotation: Any) -> Any:
    origin = get_origin(annotation)
    if origin is None:
        return annotation
    if origin in {list, dict}:
        return origin
    args = [arg for arg in get_args(annotation) if arg is not type(None)]
    if not args:
        return origin
    return args[0]


def _is_optional(annotation: Any) -> bool:
    return type(None) in get_args(annotation)


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"Cannot coerce '{value}' to a boolean.")


def _dump_settings(
    settings: Settings,
    store: SettingsStore,
    *,
    overrides: Mapping[str, Any],
    stream: TextIO | None = None,
) -> None:
    destination = stream or sys.stdout
    metadata = {
        "path": str(store.path),
        "cli_overrides": sorted(overrides.keys()),
        "environment_variables": _active_env_overrides(),
    }
    output = {"settings": settings.to_dict(), "meta": metadata}
    json.dump(output, destination, indent=2)
    destination.write("\n")


def _active_env_overrides() -> list[str]:
    return sorted(name for name in os.environ if name.startswith("THREADLOOM_"))
