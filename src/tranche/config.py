"""Configuration parsing from ``.tranche.yml``."""

from __future__ import annotations

import logging
import os
import re
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

CONFIG_FILENAME = ".tranche.yml"

_ENV_VAR_RE = re.compile(r"\$\{(\w+)\}")
_TRUTHY = {True, "true", "1", "yes"}
_SECRET_KEYS = {"github_token", "elevated_token", "reporting_token", "dsn"}
_MASK = "****"

_DEFAULT_COMMAND = [
    "pytest",
    "--cov=.",
    "--cov-report=lcov:{output}",
    "{tests}",
]


def _resolve_env_vars(value: str) -> str:
    """Replace ``${VAR_NAME}`` placeholders with environment variable values."""

    def _replace(match: re.Match[str]) -> str:
        var = match.group(1)
        resolved = os.environ.get(var)
        if resolved is None:
            logger.warning("Environment variable %s is not set (referenced in config)", var)
            return ""
        return resolved

    return _ENV_VAR_RE.sub(_replace, value)


def _resolve_dict(data: dict[str, Any]) -> dict[str, Any]:
    """Recursively resolve environment variables in a dictionary."""
    result: dict[str, Any] = {}
    for key, value in data.items():
        if isinstance(value, str):
            result[key] = _resolve_env_vars(value)
        elif isinstance(value, dict):
            result[key] = _resolve_dict(value)
        elif isinstance(value, list):
            result[key] = [
                _resolve_env_vars(item) if isinstance(item, str) else item for item in value
            ]
        else:
            result[key] = value
    return result


def _section(raw: dict[str, Any], name: str) -> dict[str, Any]:
    value = raw.get(name, {})
    return value if isinstance(value, dict) else {}


def _str_list(value: Any, default: list[str]) -> list[str]:
    if value is None:
        return list(default)
    if isinstance(value, str):
        return [value]
    return [str(item) for item in value]


def _first_env(*names: str) -> str:
    for name in names:
        value = os.environ.get(name)
        if value:
            return value
    return ""


@dataclass
class ShardingConfig:
    """How the test corpus is split."""

    count: int = 4
    """Number of tranches (the matrix width)."""

    test_patterns: list[str] = field(default_factory=lambda: ["tests/**/test_*.py"])
    """Glob patterns, relative to the project root, that identify tests."""


@dataclass
class RunnerConfig:
    """How one tranche's tests are executed."""

    command: list[str] = field(default_factory=lambda: list(_DEFAULT_COMMAND))
    """Command template. ``{index}``, ``{count}`` and ``{output}`` are
    substituted; a bare ``{tests}`` argument expands to the selected tests."""

    coverage_output: str = "coverage-{index}.lcov"
    """Coverage file the command writes, relative to the project root."""

    env: dict[str, str] = field(default_factory=dict)
    """Extra environment variables for the test command."""


@dataclass
class RetryConfig:
    """Retry policy for tranche jobs."""

    max_attempts: int = 2
    """Total attempts per tranche, including the first."""

    timeout_minutes: float = 30
    """Per-attempt timeout in minutes."""

    retry_wait_seconds: float = 30
    """Pause between attempts in seconds."""

    job_timeout_minutes: float = 0
    """Overall limit for all attempts in minutes (0 = unlimited)."""


@dataclass
class ArtifactConfig:
    """Where per-tranche artifacts are kept between jobs."""

    directory: str = ".tranche/artifacts"
    """Artifact store root, relative to the project root."""

    pattern: str = "coverage-*.lcov"
    """Pattern the aggregation step downloads."""

    run_id: str = ""
    """Run namespace (defaults to ``GITHUB_RUN_ID`` or ``local``)."""


@dataclass
class CoverageConfig:
    """Merged coverage outputs and health thresholds."""

    lower_threshold: float = 50.0
    """Below this line rate (percent) coverage is failing (red)."""

    upper_threshold: float = 75.0
    """Below this line rate (percent) coverage is a warning (yellow)."""

    output_dir: str = "."
    """Directory the merged outputs are written to."""

    lcov_file: str = "coverage.lcov"
    """Merged LCOV output file name."""

    cobertura_file: str = "coverage.xml"
    """Cobertura XML output file name."""

    summary_file: str = "code-coverage-results.md"
    """Markdown summary output file name."""

    badge: bool = True
    """Include a badge link in the markdown summary."""


@dataclass
class GateConfig:
    """Which events run the pipeline and with what privileges."""

    workflow_name: str = "test"
    """Workflow name; the concurrency group is ``{workflow_name}-{ref}``."""

    push_branches: list[str] = field(default_factory=lambda: ["main", "mise"])
    """Branches whose pushes trigger a run."""

    tag_patterns: list[str] = field(default_factory=lambda: ["v*"])
    """Tag patterns whose pushes trigger a run."""

    pull_request_branches: list[str] = field(default_factory=lambda: ["main"])
    """Target branches for which pull requests trigger a run."""

    allow_manual: bool = True
    """Allow ``workflow_dispatch`` triggers."""

    canonical_repository: str = ""
    """``owner/name``; pull requests from it are privileged."""

    full_run_branches: list[str] = field(default_factory=lambda: ["release"])
    """Branches on which ``TEST_ALL=1`` is exported to the tests."""

    required_jobs: list[str] = field(default_factory=lambda: ["build", "lint"])
    """Jobs besides the tranches that must succeed."""

    cancel_in_progress: bool = True
    """Cancel an in-flight run of the same concurrency group."""


@dataclass
class PublishConfig:
    """Pull request comment and external reporting service."""

    github_token: str = ""
    """Default token for the GitHub API."""

    elevated_token: str = ""
    """Bot token used for privileged runs (falls back to ``github_token``)."""

    api_url: str = "https://api.github.com"
    """GitHub REST API root."""

    comment_header: str = "coverage"
    """Header identifying the sticky comment."""

    recreate_comment: bool = True
    """Delete and recreate the sticky comment instead of editing it."""

    reporting_url: str = ""
    """Coverage reporting service endpoint (empty = disabled)."""

    reporting_token: str = ""
    """Project token for the reporting service."""

    timeout: float = 30.0
    """HTTP timeout in seconds."""


@dataclass
class SentryConfig:
    """Sentry error monitoring configuration."""

    enabled: bool = False
    """Opt-in flag. No Sentry data sent unless True."""

    dsn: str = ""
    """Sentry DSN."""

    traces_sample_rate: float = 0.0
    """Fraction of transactions sent for tracing (0.0-1.0)."""

    environment: str = ""
    """Override environment tag (auto-detected if empty)."""

    send_default_pii: bool = False
    """Kept False for privacy."""


@dataclass
class TrancheConfig:
    """Complete configuration from ``.tranche.yml``."""

    root: str
    """Project root directory."""

    sharding: ShardingConfig = field(default_factory=ShardingConfig)
    runner: RunnerConfig = field(default_factory=RunnerConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    artifacts: ArtifactConfig = field(default_factory=ArtifactConfig)
    coverage: CoverageConfig = field(default_factory=CoverageConfig)
    gate: GateConfig = field(default_factory=GateConfig)
    publish: PublishConfig = field(default_factory=PublishConfig)
    sentry: SentryConfig = field(default_factory=SentryConfig)

    raw: dict[str, Any] = field(default_factory=dict)
    """Raw parsed YAML for debugging."""

    @property
    def root_path(self) -> Path:
        return Path(self.root)

    @property
    def run_id(self) -> str:
        return self.artifacts.run_id or os.environ.get("GITHUB_RUN_ID", "") or "local"


def _parse_sharding(raw: dict[str, Any]) -> ShardingConfig:
    section = _section(raw, "sharding")
    default = ShardingConfig()
    return ShardingConfig(
        count=int(section.get("count", os.environ.get("TEST_TRANCHE_COUNT", default.count))),
        test_patterns=_str_list(section.get("test_patterns"), default.test_patterns),
    )


def _parse_runner(raw: dict[str, Any]) -> RunnerConfig:
    section = _section(raw, "runner")
    default = RunnerConfig()
    command = section.get("command")
    if isinstance(command, str):
        command = command.split()
    env_raw = section.get("env", {})
    return RunnerConfig(
        command=_str_list(command, default.command),
        coverage_output=str(section.get("coverage_output", default.coverage_output)),
        env={str(k): str(v) for k, v in env_raw.items()} if isinstance(env_raw, dict) else {},
    )


def _parse_retry(raw: dict[str, Any]) -> RetryConfig:
    section = _section(raw, "retry")
    default = RetryConfig()
    return RetryConfig(
        max_attempts=int(section.get("max_attempts", default.max_attempts)),
        timeout_minutes=float(section.get("timeout_minutes", default.timeout_minutes)),
        retry_wait_seconds=float(section.get("retry_wait_seconds", default.retry_wait_seconds)),
        job_timeout_minutes=float(
            section.get("job_timeout_minutes", default.job_timeout_minutes) or 0
        ),
    )


def _parse_artifacts(raw: dict[str, Any]) -> ArtifactConfig:
    section = _section(raw, "artifacts")
    default = ArtifactConfig()
    return ArtifactConfig(
        directory=str(section.get("directory", default.directory)),
        pattern=str(section.get("pattern", default.pattern)),
        run_id=str(section.get("run_id", "")),
    )


def _parse_coverage(raw: dict[str, Any]) -> CoverageConfig:
    section = _section(raw, "coverage")
    default = CoverageConfig()
    thresholds = section.get("thresholds")
    lower, upper = default.lower_threshold, default.upper_threshold
    if isinstance(thresholds, str) and " " in thresholds.strip():
        # "50 75", as accepted by the summary action
        lower_s, upper_s = thresholds.split()[:2]
        lower, upper = float(lower_s), float(upper_s)
    return CoverageConfig(
        lower_threshold=float(section.get("lower_threshold", lower)),
        upper_threshold=float(section.get("upper_threshold", upper)),
        output_dir=str(section.get("output_dir", default.output_dir)),
        lcov_file=str(section.get("lcov_file", default.lcov_file)),
        cobertura_file=str(section.get("cobertura_file", default.cobertura_file)),
        summary_file=str(section.get("summary_file", default.summary_file)),
        badge=section.get("badge", default.badge) in _TRUTHY,
    )


def _parse_gate(raw: dict[str, Any]) -> GateConfig:
    section = _section(raw, "gate")
    default = GateConfig()
    return GateConfig(
        workflow_name=str(
            section.get("workflow_name", os.environ.get("GITHUB_WORKFLOW", default.workflow_name))
        ),
        push_branches=_str_list(section.get("push_branches"), default.push_branches),
        tag_patterns=_str_list(section.get("tag_patterns"), default.tag_patterns),
        pull_request_branches=_str_list(
            section.get("pull_request_branches"), default.pull_request_branches
        ),
        allow_manual=section.get("allow_manual", default.allow_manual) in _TRUTHY,
        canonical_repository=str(section.get("canonical_repository", "")),
        full_run_branches=_str_list(section.get("full_run_branches"), default.full_run_branches),
        required_jobs=_str_list(section.get("required_jobs"), default.required_jobs),
        cancel_in_progress=section.get("cancel_in_progress", default.cancel_in_progress)
        in _TRUTHY,
    )


def _parse_publish(raw: dict[str, Any]) -> PublishConfig:
    section = _section(raw, "publish")
    default = PublishConfig()
    return PublishConfig(
        github_token=str(
            section.get("github_token", _first_env("TRANCHE_GITHUB_TOKEN", "GITHUB_TOKEN"))
        ),
        elevated_token=str(
            section.get("elevated_token", os.environ.get("TRANCHE_ELEVATED_TOKEN", ""))
        ),
        api_url=str(section.get("api_url", os.environ.get("GITHUB_API_URL", default.api_url))),
        comment_header=str(section.get("comment_header", default.comment_header)),
        recreate_comment=section.get("recreate_comment", default.recreate_comment) in _TRUTHY,
        reporting_url=str(
            section.get("reporting_url", os.environ.get("TRANCHE_REPORTING_URL", ""))
        ),
        reporting_token=str(
            section.get("reporting_token", os.environ.get("CODACY_PROJECT_TOKEN", ""))
        ),
        timeout=float(section.get("timeout", default.timeout)),
    )


def _parse_sentry(raw: dict[str, Any]) -> SentryConfig:
    section = _section(raw, "sentry")
    enabled_raw = section.get("enabled", os.environ.get("TRANCHE_SENTRY_ENABLED", ""))
    return SentryConfig(
        enabled=enabled_raw in _TRUTHY,
        dsn=str(section.get("dsn", os.environ.get("TRANCHE_SENTRY_DSN", ""))),
        traces_sample_rate=float(
            section.get(
                "traces_sample_rate",
                os.environ.get("TRANCHE_SENTRY_TRACES_SAMPLE_RATE", "0.0"),
            )
        ),
        environment=str(section.get("environment", "")),
        send_default_pii=False,
    )


def load_config(root: str | Path) -> TrancheConfig:
    """Load and parse the complete ``.tranche.yml`` configuration.

    Falls back to defaults and environment variables when the YAML file is
    missing or incomplete.
    """
    root_path = Path(root).resolve()
    config_file = root_path / CONFIG_FILENAME

    raw: dict[str, Any] = {}
    if config_file.is_file():
        parsed = yaml.safe_load(config_file.read_text(encoding="utf-8"))
        if isinstance(parsed, dict):
            raw = _resolve_dict(parsed)
        elif parsed is not None:
            logger.warning("%s is not a mapping; using defaults", config_file)

    return TrancheConfig(
        root=str(root_path),
        sharding=_parse_sharding(raw),
        runner=_parse_runner(raw),
        retry=_parse_retry(raw),
        artifacts=_parse_artifacts(raw),
        coverage=_parse_coverage(raw),
        gate=_parse_gate(raw),
        publish=_parse_publish(raw),
        sentry=_parse_sentry(raw),
        raw=raw,
    )


def config_to_dict(config: TrancheConfig, *, mask_secrets: bool = True) -> dict[str, Any]:
    """Plain-dict view of ``config`` for display, with secrets masked."""
    data = asdict(config)
    data.pop("raw", None)
    if mask_secrets:
        for section in data.values():
            if not isinstance(section, dict):
                continue
            for key in _SECRET_KEYS & section.keys():
                if section[key]:
                    section[key] = _MASK
    return data


# ── Validation ───────────────────────────────────────────────────


def _validate_sharding(sharding: ShardingConfig) -> list[str]:
    errors: list[str] = []
    if sharding.count < 1:
        errors.append(f"sharding.count must be at least 1 (got: {sharding.count})")
    if not sharding.test_patterns:
        errors.append("sharding.test_patterns must not be empty")
    return errors


def _validate_runner(runner: RunnerConfig) -> list[str]:
    errors: list[str] = []
    if not runner.command:
        errors.append("runner.command must not be empty")
    if not runner.coverage_output:
        errors.append("runner.coverage_output must not be empty")
    elif Path(runner.coverage_output).is_absolute():
        errors.append(
            f"runner.coverage_output must be relative to the project root "
            f"(got: {runner.coverage_output})"
        )
    return errors


def _validate_retry(retry: RetryConfig) -> list[str]:
    errors: list[str] = []
    if retry.max_attempts < 1:
        errors.append(f"retry.max_attempts must be at least 1 (got: {retry.max_attempts})")
    if retry.timeout_minutes <= 0:
        errors.append(f"retry.timeout_minutes must be positive (got: {retry.timeout_minutes})")
    if retry.retry_wait_seconds < 0:
        errors.append(
            f"retry.retry_wait_seconds must be non-negative (got: {retry.retry_wait_seconds})"
        )
    if retry.job_timeout_minutes < 0:
        errors.append(
            f"retry.job_timeout_minutes must be non-negative (got: {retry.job_timeout_minutes})"
        )
    return errors


def _validate_coverage(coverage: CoverageConfig) -> list[str]:
    """Validate coverage threshold settings."""
    max_percentage = 100.0
    errors: list[str] = []

    if not 0.0 <= coverage.lower_threshold <= max_percentage:
        errors.append(
            f"coverage.lower_threshold must be between 0 and 100 "
            f"(got: {coverage.lower_threshold})"
        )
    if not 0.0 <= coverage.upper_threshold <= max_percentage:
        errors.append(
            f"coverage.upper_threshold must be between 0 and 100 "
            f"(got: {coverage.upper_threshold})"
        )
    if coverage.lower_threshold > coverage.upper_threshold:
        errors.append(
            f"coverage.lower_threshold must not exceed coverage.upper_threshold "
            f"(got: {coverage.lower_threshold} > {coverage.upper_threshold})"
        )
    return errors


def _validate_publish(publish: PublishConfig) -> list[str]:
    errors: list[str] = []
    if publish.reporting_url and not publish.reporting_url.startswith(("http://", "https://")):
        errors.append(
            f"publish.reporting_url must start with http:// or https:// "
            f"(got: {publish.reporting_url})"
        )
    if publish.timeout <= 0:
        errors.append(f"publish.timeout must be positive (got: {publish.timeout})")
    return errors


def _validate_sentry(sentry: SentryConfig) -> list[str]:
    errors: list[str] = []
    if sentry.enabled and not sentry.dsn:
        errors.append("sentry.dsn is required when sentry.enabled is true")
    if not 0.0 <= sentry.traces_sample_rate <= 1.0:
        errors.append(
            f"sentry.traces_sample_rate must be between 0.0 and 1.0 "
            f"(got: {sentry.traces_sample_rate})"
        )
    return errors


def validate_config(config: TrancheConfig) -> list[str]:
    """Validate the configuration and return a list of error messages.

    Returns an empty list if the configuration is valid.
    """
    errors: list[str] = []
    if not config.root:
        errors.append("root is required")
    errors.extend(_validate_sharding(config.sharding))
    errors.extend(_validate_runner(config.runner))
    errors.extend(_validate_retry(config.retry))
    errors.extend(_validate_coverage(config.coverage))
    errors.extend(_validate_publish(config.publish))
    errors.extend(_validate_sentry(config.sentry))
    return errors
