"""Configuration management for the buildfarm client."""

import os
import re
import tomllib
from pathlib import Path
from typing import Any, Self

import tomli_w
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from .constants import DEFAULT_BUILD_PORT, FROM_SOURCE_LOG_DIR, LOG_DIR
from .models import FilterSet

DEFAULT_CONFIG_FILE = "buildfarm.toml"


class ConfigError(Exception):
    """Fatal configuration problem detected before a run starts."""


class OptionalStepConfig(BaseModel):
    """Schedule for an optional step such as build-docs or find-typedefs.

    All conditions must hold for the step to run. ``dow`` lists days of the
    week (0=Sunday) on which the step is *not* run.
    """

    branches: list[str] | None = None
    min_hour: int | None = Field(default=None, ge=0, le=23)
    max_hour: int | None = Field(default=None, ge=0, le=23)
    dow: list[int] = Field(default_factory=list)
    min_hours_since: float | None = Field(default=None, ge=0)


class BuildFarmConfig(BaseModel):
    """Root configuration for a buildfarm animal."""

    animal: str = Field(description="Name this machine reports as")
    secret: str = Field(default="", description="Shared secret for signing reports")
    target: str = Field(
        default="http://localhost:8080/cgi-bin/pgstatus.pl",
        description="URL the report transaction is posted to",
    )
    build_root: Path | None = Field(default=None, description="Absolute build root")
    scm_url: str = "https://git.postgresql.org/git/postgresql.git"
    scm_timeout_secs: int = Field(default=0, ge=0)
    wait_timeout: int = Field(default=0, ge=0)
    force_every: float | dict[str, float] | None = None
    trigger_include: str | None = None
    trigger_exclude: str | None = None
    keep_error_builds: bool = False
    rm_worktrees: bool = False
    make: str = "make"
    make_jobs: int = Field(default=1, ge=1)
    use_vpath: bool = False
    use_accache: bool = True
    ccache_failure_remove: bool = False
    base_port: int | None = None
    branch_ports: dict[str, int] = Field(default_factory=dict)
    locales: list[str] = Field(default_factory=lambda: ["C"])
    config_opts: list[str] = Field(default_factory=list)
    config_env: dict[str, str] = Field(default_factory=dict)
    build_env: dict[str, str] = Field(default_factory=dict)
    extra_config: dict[str, list[str]] = Field(default_factory=dict)
    modules: list[str] = Field(default_factory=list)
    optional_steps: dict[str, OptionalStepConfig] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def accept_legacy_trigger_filter(cls, data: Any) -> Any:
        """Treat ``trigger_filter`` as the legacy name of ``trigger_exclude``."""
        if isinstance(data, dict) and "trigger_filter" in data:
            data = dict(data)
            data["trigger_exclude"] = data.pop("trigger_filter")
        return data

    @field_validator("trigger_include", "trigger_exclude")
    @classmethod
    def validate_regex(cls, value: str | None) -> str | None:
        if value is not None:
            try:
                re.compile(value)
            except re.error as e:
                raise ValueError(f"invalid regular expression {value!r}: {e}") from e
        return value

    @field_validator("optional_steps", mode="before")
    @classmethod
    def normalize_step_names(cls, value: Any) -> Any:
        """Accept ``build_docs`` style keys for ``build-docs``."""
        if isinstance(value, dict):
            return {key.replace("_", "-"): conf for key, conf in value.items()}
        return value

    def force_every_for(self, branch: str) -> float | None:
        """Heartbeat interval in hours for a branch, or None for no heartbeat."""
        if isinstance(self.force_every, dict):
            return self.force_every.get(branch, self.force_every.get("default"))
        return self.force_every

    def build_port(self, branch: str) -> int:
        """Port the test cluster listens on for this branch.

        Derived from ``base_port`` and the branch name so that branches
        building concurrently on one machine don't collide.
        """
        if self.base_port is None:
            return self.branch_ports.get(branch, DEFAULT_BUILD_PORT)
        data = branch.encode()
        j = 0
        for i in range(0, len(data) - 1, 2):
            j ^= int.from_bytes(data[i : i + 2], "little")
        return self.base_port + j % 220

    def extra_config_for(self, branch: str) -> list[str]:
        """Extra postgresql.conf lines for a branch, DEFAULT lines first."""
        return [*self.extra_config.get("DEFAULT", []), *self.extra_config.get(branch, [])]

    def summary(self) -> dict[str, Any]:
        """Configuration as reported to the server, without the secret."""
        return self.model_dump(mode="json", exclude={"secret"})


class RunOptions(BaseModel):
    """Per-invocation options coming from the command line."""

    branch: str = "HEAD"
    explicit_branch: bool = False
    nosend: bool = False
    nostatus: bool = False
    force: bool = False
    from_source: Path | None = None
    from_source_clean: Path | None = None
    find_typedefs: bool = False
    keepall: bool = False
    verbose: int = 0
    quiet: bool = False
    test: bool = False
    skip_steps: str = ""
    only_steps: str = ""
    config_path: Path | None = None
    config_set: list[str] = Field(default_factory=list)
    invocation_args: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def apply_implied_flags(self) -> Self:
        if self.from_source and self.from_source_clean:
            raise ValueError("only one of --from-source and --from-source-clean allowed")
        if self.skip_steps.strip() and self.only_steps.strip():
            raise ValueError("only one of --skip-steps and --only-steps allowed")
        if self.test:
            self.verbose = self.verbose or 1
            self.force = True
            self.nostatus = True
            self.nosend = True
        if self.source_dir is not None:
            self.verbose = self.verbose or 1
            self.nosend = True
            self.nostatus = True
        return self

    @property
    def source_dir(self) -> Path | None:
        """Explicit source tree, from either --from-source flavour."""
        source = self.from_source or self.from_source_clean
        return source.absolute() if source is not None else None

    @property
    def log_dir_name(self) -> str:
        return FROM_SOURCE_LOG_DIR if self.source_dir else LOG_DIR

    def filters(self) -> FilterSet:
        return FilterSet.from_strings(self.skip_steps, self.only_steps)


def parse_run_options(**kwargs: Any) -> RunOptions:
    """Build RunOptions, turning validation failures into ConfigError."""
    try:
        return RunOptions(**kwargs)
    except ValidationError as e:
        raise ConfigError(_first_error(e)) from None


def _first_error(e: ValidationError) -> str:
    err = e.errors()[0]
    message = str(err["msg"]).removeprefix("Value error, ")
    if err.get("loc"):
        return f"{'.'.join(str(p) for p in err['loc'])}: {message}"
    return message


def _parse_override_value(raw: str) -> Any:
    """Parse a --config-set value as TOML, falling back to a plain string."""
    try:
        return tomllib.loads(f"v = {raw}")["v"]
    except tomllib.TOMLDecodeError:
        return raw


def apply_overrides(data: dict[str, Any], config_set: list[str]) -> dict[str, Any]:
    """Apply ``key.sub=value`` overrides to raw config data.

    Args:
        data: Raw configuration mapping (modified copy is returned)
        config_set: Overrides from --config-set

    Returns:
        New mapping with overrides applied

    Raises:
        ConfigError: If an override is not of the form key=value
    """
    result = dict(data)
    for item in config_set:
        key, sep, raw = item.partition("=")
        if not sep or not key.strip():
            raise ConfigError(f"invalid --config-set value {item!r}, expected key=value")
        parts = key.strip().split(".")
        target = result
        for part in parts[:-1]:
            existing = target.get(part)
            target[part] = dict(existing) if isinstance(existing, dict) else {}
            target = target[part]
        target[parts[-1]] = _parse_override_value(raw.strip())
    return result


def load_config(config_path: Path, config_set: list[str] | None = None) -> BuildFarmConfig:
    """Load config from a TOML file.

    Args:
        config_path: Path to the configuration file
        config_set: Optional key=value overrides

    Returns:
        Validated configuration

    Raises:
        ConfigError: If the file is missing, unreadable or invalid
    """
    if not config_path.exists():
        raise ConfigError(f"config file not found: {config_path}")
    try:
        with open(config_path, "rb") as f:
            data = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"cannot parse {config_path}: {e}") from e

    data = apply_overrides(data, config_set or [])
    data.setdefault("build_root", str(config_path.absolute().parent / "buildroot"))
    try:
        return BuildFarmConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"{config_path}: {_first_error(e)}") from None


def validate_environment(config: BuildFarmConfig) -> Path:
    """Check settings that must hold before any lock is taken.

    Returns:
        The absolute build root

    Raises:
        ConfigError: On a missing or relative build root, or when run as root
    """
    if config.build_root is None:
        raise ConfigError("no build_root configured")
    if not config.build_root.is_absolute():
        raise ConfigError(f"build_root {config.build_root} not absolute")
    if hasattr(os, "geteuid") and os.geteuid() == 0:
        raise ConfigError("cannot run as root")
    return config.build_root


def write_config_template(config_path: Path, animal: str = "your-animal") -> Path:
    """Write default config template.

    Args:
        config_path: Where to write the TOML file
        animal: Animal name to put in the template

    Returns:
        Path to the written config file
    """
    template = {
        "animal": animal,
        "secret": "change-me",
        "target": "http://localhost:8080/cgi-bin/pgstatus.pl",
        "build_root": str(config_path.absolute().parent / "buildroot"),
        "scm_url": "https://git.postgresql.org/git/postgresql.git",
        "scm_timeout_secs": 3600,
        "wait_timeout": 4 * 3600,
        "force_every": {"default": 168},
        "keep_error_builds": False,
        "make": "make",
        "make_jobs": 2,
        "base_port": 5678,
        "locales": ["C"],
        "config_opts": [
            "--enable-cassert",
            "--enable-debug",
            "--enable-nls",
            "--enable-tap-tests",
            "--with-perl",
        ],
        "build_env": {},
        "extra_config": {"DEFAULT": ["log_line_prefix = '%m [%p] '"]},
        "modules": [],
        "optional_steps": {"build-docs": {"min_hours_since": 24}},
    }
    with open(config_path, "wb") as f:
        tomli_w.dump(template, f)
    return config_path
