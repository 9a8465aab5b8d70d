from __future__ import annotations

import os
import re
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import yaml

from ..contracts import CONFIG_SCHEMA, validate
from ..errors import ConfigError
from ..exit_codes import ERR_CONFIG

CONFIG_FILE_NAMES = ("book-verify.yaml", "book-verify.yml")
DEFAULT_MASK_REPLACEMENT = "<masked>"


@dataclass(frozen=True)
class MaskPattern:
    pattern: re.Pattern[str]
    replacement: str = DEFAULT_MASK_REPLACEMENT

    @classmethod
    def compile(cls, raw: str, replacement: str = DEFAULT_MASK_REPLACEMENT) -> "MaskPattern":
        try:
            return cls(re.compile(raw), replacement)
        except re.error as exc:
            raise ConfigError(f"invalid mask pattern `{raw}`: {exc}") from exc


@dataclass(frozen=True)
class CommandRunnerSpec:
    command: tuple[str, ...]
    extension: str = ".txt"


@dataclass(frozen=True)
class VerifyConfig:
    timeout_seconds: float = 5.0
    run_timeout_seconds: float | None = None
    workers: int = 4
    mask_patterns: tuple[MaskPattern, ...] = ()
    ellipsis: bool = True
    fail_fast: bool = False
    report_format: str = "text"
    include: tuple[str, ...] = ("**/*.md",)
    exclude: tuple[str, ...] = ()
    keep_scratch: bool = False
    scratch_root: Path | None = None
    python: str = sys.executable
    runners: Mapping[str, CommandRunnerSpec] = field(default_factory=dict)
    config_path: Path | None = None


def find_config_file(source_root: Path) -> Path | None:
    for name in CONFIG_FILE_NAMES:
        candidate = source_root / name
        if candidate.is_file():
            return candidate
    return None


def load_yaml_config(path: Path) -> dict[str, Any]:
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle)
    except OSError as exc:
        raise ConfigError(f"cannot read config {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"invalid YAML in {path}: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: root must be a mapping")
    validate(CONFIG_SCHEMA, data, code=ERR_CONFIG)
    return data


def _env_overrides(env: Mapping[str, str]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    raw_timeout = env.get("BOOK_VERIFY_TIMEOUT_SECONDS", "").strip()
    if raw_timeout:
        try:
            out["timeout_seconds"] = float(raw_timeout)
        except ValueError as exc:
            raise ConfigError(f"BOOK_VERIFY_TIMEOUT_SECONDS must be a number, got `{raw_timeout}`") from exc
    raw_workers = env.get("BOOK_VERIFY_WORKERS", "").strip()
    if raw_workers:
        try:
            out["workers"] = int(raw_workers)
        except ValueError as exc:
            raise ConfigError(f"BOOK_VERIFY_WORKERS must be an integer, got `{raw_workers}`") from exc
    raw_scratch = env.get("BOOK_VERIFY_SCRATCH_ROOT", "").strip()
    if raw_scratch:
        out["scratch_root"] = raw_scratch
    return out


def _compile_masks(rows: list[Any]) -> tuple[MaskPattern, ...]:
    masks: list[MaskPattern] = []
    for row in rows:
        if isinstance(row, str):
            masks.append(MaskPattern.compile(row))
        else:
            masks.append(MaskPattern.compile(row["pattern"], row.get("replacement", DEFAULT_MASK_REPLACEMENT)))
    return tuple(masks)


def _runner_specs(raw: Any) -> dict[str, CommandRunnerSpec]:
    if not isinstance(raw, Mapping):
        raise ConfigError("runners must map a language to {command, extension}")
    specs: dict[str, CommandRunnerSpec] = {}
    for lang, spec in raw.items():
        command = spec.get("command") if isinstance(spec, Mapping) else None
        if not isinstance(command, (list, tuple)) or not command or not all(isinstance(p, str) for p in command):
            raise ConfigError(f"runners.{lang}.command must be a non-empty list of strings")
        if not command[0].strip():
            raise ConfigError(f"runners.{lang}.command must name an executable")
        extension = spec.get("extension", f".{str(lang).lower()}")
        if not isinstance(extension, str) or not extension.startswith("."):
            raise ConfigError(f"runners.{lang}.extension must start with a dot")
        specs[str(lang).lower()] = CommandRunnerSpec(command=tuple(command), extension=extension)
    return specs


def load_config(
    source_root: Path,
    config_path: Path | None = None,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, Any] | None = None,
    extra_masks: tuple[str, ...] = (),
) -> VerifyConfig:
    """Layer defaults < YAML file < environment < explicit overrides."""
    env = os.environ if env is None else env
    if config_path is not None and not config_path.is_file():
        raise ConfigError(f"config file not found: {config_path}")
    resolved_path = config_path or find_config_file(source_root)
    data: dict[str, Any] = load_yaml_config(resolved_path) if resolved_path else {}
    data.update(_env_overrides(env))
    data.update({key: value for key, value in (overrides or {}).items() if value is not None})

    timeout_seconds = float(data.get("timeout_seconds", 5.0))
    if timeout_seconds <= 0:
        raise ConfigError("timeout_seconds must be positive")
    run_timeout = data.get("run_timeout_seconds")
    if run_timeout is not None and float(run_timeout) <= 0:
        raise ConfigError("run_timeout_seconds must be positive")
    workers = int(data.get("workers", 4))
    if workers < 1:
        raise ConfigError("workers must be at least 1")
    report_format = str(data.get("report_format", "text"))
    if report_format not in {"text", "json"}:
        raise ConfigError(f"unsupported report format: {report_format}")
    scratch_root = data.get("scratch_root")
    runners = _runner_specs(data.get("runners") or {})
    return VerifyConfig(
        timeout_seconds=timeout_seconds,
        run_timeout_seconds=(float(run_timeout) if run_timeout is not None else None),
        workers=workers,
        mask_patterns=_compile_masks(list(data.get("mask_patterns", []))) + _compile_masks(list(extra_masks)),
        ellipsis=bool(data.get("ellipsis", True)),
        fail_fast=bool(data.get("fail_fast", False)),
        report_format=report_format,
        include=tuple(data.get("include", ("**/*.md",))),
        exclude=tuple(data.get("exclude", ())),
        keep_scratch=bool(data.get("keep_scratch", False)),
        scratch_root=(Path(scratch_root) if scratch_root else None),
        python=str(data.get("python", sys.executable)),
        runners=runners,
        config_path=resolved_path,
    )
