#!/usr/bin/env python3
"""
cadence.py

YAML-driven schedule compiler for containerized scheduled jobs.

Turns each job's schedule ("@daily", "@every 1h30m", "0 9 * * 1-5") into the
event scheduler's cron(...)/rate(...) expression, and its timeout/retries into
the state machine's TimeoutSeconds/MaxAttempts fields.
"""

from __future__ import annotations

import argparse
import json
import logging
import re
import sys
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Tuple

try:
    import yaml
except ImportError:  # pragma: no cover - dependency check at runtime
    yaml = None

try:
    from croniter import croniter
except ImportError:  # pragma: no cover - dependency check at runtime
    croniter = None


LOG_FILE = "cadence.log"
DEFAULT_CONFIG = "cadence.yaml"
VALID_EXPORT_FORMATS = {"yaml", "json"}

EVERY_PREFIX = "@every "
PRESET_PREFIX = "@"
INVALID_SCHEDULE_PREFIX = "schedule is not valid cron, rate, or preset: "
CRON_TRANSLATE_PREFIX = "parse cron schedule: "
RATE_TRANSLATE_PREFIX = "parse fixed interval: "

CRON_FIELD_COUNT = 5
MINUTE, HOUR, DAY_OF_MONTH, MONTH, DAY_OF_WEEK = range(CRON_FIELD_COUNT)
WILDCARD = "*"
PLACEHOLDER = "?"

PRESETS: Dict[str, str] = {
    "@yearly": "0 0 1 1 *",
    "@annually": "0 0 1 1 *",
    "@monthly": "0 0 1 * *",
    "@weekly": "0 0 * * 0",
    "@daily": "0 0 * * *",
    "@midnight": "0 0 * * *",
    "@hourly": "0 * * * *",
}

MONTH_ABBR_TO_NUM = {
    "jan": 1,
    "feb": 2,
    "mar": 3,
    "apr": 4,
    "may": 5,
    "jun": 6,
    "jul": 7,
    "aug": 8,
    "sep": 9,
    "oct": 10,
    "nov": 11,
    "dec": 12,
}
DAY_ABBR_TO_CRON = {
    "sun": 0,
    "mon": 1,
    "tue": 2,
    "wed": 3,
    "thu": 4,
    "fri": 5,
    "sat": 6,
}

# Nanoseconds per duration unit.
DURATION_UNITS: Dict[str, int] = {
    "ns": 1,
    "us": 1_000,
    "µs": 1_000,
    "μs": 1_000,
    "ms": 1_000_000,
    "s": 1_000_000_000,
    "m": 60 * 1_000_000_000,
    "h": 60 * 60 * 1_000_000_000,
}
DURATION_PART_RE = re.compile(r"(\d*)(\.\d*)?([^\d.]*)")
DOW_NUMBER_RE = re.compile(r"(?<![/\d])\d+")

ONE_SECOND = timedelta(seconds=1)
ONE_MINUTE = timedelta(minutes=1)
ONE_HOUR = timedelta(hours=1)


class CadenceError(Exception):
    """Base error for cadence."""


class ConfigError(CadenceError):
    """Manifest or schedule validation error."""


class MissingFieldError(ConfigError):
    """A required manifest field is absent."""


class FieldCountMismatchError(ConfigError):
    """Cron expression does not have exactly five fields."""


class ConflictingDayFieldsError(ConfigError):
    """Both day-of-month and day-of-week are constrained."""


class UnknownDescriptorError(ConfigError):
    """Unrecognized @preset name."""


class BelowMinimumGranularityError(ConfigError):
    """Duration is finer than the platform resolution."""


class NonWholeUnitError(ConfigError):
    """Duration is not a whole number of supported units."""


class NegativeRetryCountError(ConfigError):
    """Retry count below zero."""


class ParseFailureError(ConfigError):
    """Malformed cron token or duration string."""


def setup_logging() -> logging.Logger:
    logger = logging.getLogger("cadence")
    if logger.handlers:
        return logger
    logger.setLevel(logging.INFO)
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(message)s")
    file_handler = logging.FileHandler(LOG_FILE, encoding="utf-8")
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(formatter)
    logger.addHandler(file_handler)
    logger.addHandler(stream_handler)
    return logger


logger = setup_logging()


@dataclass(frozen=True)
class CronField:
    name: str
    minimum: int
    maximum: int
    names: Dict[str, int]
    allows_placeholder: bool = False


CRON_FIELDS: Tuple[CronField, ...] = (
    CronField("minute", 0, 59, {}),
    CronField("hour", 0, 23, {}),
    CronField("day-of-month", 1, 31, {}, allows_placeholder=True),
    CronField("month", 1, 12, MONTH_ABBR_TO_NUM),
    CronField("day-of-week", 0, 6, DAY_ABBR_TO_CRON, allows_placeholder=True),
)


@dataclass(frozen=True)
class ExecutionPolicy:
    timeout_seconds: Optional[int] = None
    max_attempts: Optional[int] = None

    def to_payload(self) -> Dict[str, int]:
        payload: Dict[str, int] = {}
        if self.timeout_seconds is not None:
            payload["Timeout"] = self.timeout_seconds
        if self.max_attempts is not None:
            payload["Retries"] = self.max_attempts
        return payload


@dataclass(frozen=True)
class JobSpec:
    name: str
    schedule: str
    timeout: str
    retries: int
    enabled: bool = True


@dataclass(frozen=True)
class JobRuntime:
    spec: JobSpec
    schedule_expression: str
    policy: ExecutionPolicy
    index: int

    def render_inputs(self) -> Dict[str, Any]:
        """Values handed to the template renderer for this job."""
        inputs: Dict[str, Any] = {"ScheduleExpression": self.schedule_expression}
        state_machine = self.policy.to_payload()
        if state_machine:
            inputs["StateMachine"] = state_machine
        return inputs


def require_yaml_dependency() -> None:
    if yaml is None:
        raise CadenceError(
            "Missing required dependency: PyYAML. Install with: pip install -e ."
        )


def require_croniter_dependency() -> None:
    if croniter is None:
        raise CadenceError(
            "Missing required dependency: croniter. Install with: pip install -e ."
        )


def _prefixed(exc: ConfigError, prefix: str) -> ConfigError:
    return type(exc)(f"{prefix}{exc}")


# ---------------------------------------------------------------------------
# Durations
# ---------------------------------------------------------------------------


def parse_duration(value: str) -> timedelta:
    """Parse a duration such as "1h30m", "90s", "1.5h" or "-5m".

    Accepts a signed sequence of decimal numbers, each with a unit suffix
    (ns, us, µs, ms, s, m, h). A bare "0" is also accepted. Precision below
    one microsecond is truncated.
    """
    original = value
    text = value
    negative = False
    if text[:1] in ("-", "+"):
        negative = text[0] == "-"
        text = text[1:]
    if text == "0":
        return timedelta(0)
    if not text:
        raise ParseFailureError(f'time: invalid duration "{original}"')

    total_ns = Decimal(0)
    pos = 0
    while pos < len(text):
        match = DURATION_PART_RE.match(text, pos)
        whole, fraction, unit = match.group(1), match.group(2), match.group(3)
        if not whole and (fraction is None or fraction == "."):
            raise ParseFailureError(f'time: invalid duration "{original}"')
        if not unit:
            raise ParseFailureError(f'time: missing unit in duration "{original}"')
        if unit not in DURATION_UNITS:
            raise ParseFailureError(f'time: unknown unit "{unit}" in duration "{original}"')
        try:
            amount = Decimal((whole or "0") + (fraction or ""))
        except InvalidOperation as exc:  # pragma: no cover - regex guarantees digits
            raise ParseFailureError(f'time: invalid duration "{original}"') from exc
        total_ns += amount * DURATION_UNITS[unit]
        pos = match.end()

    micros = int(total_ns / 1000)
    try:
        return timedelta(microseconds=-micros if negative else micros)
    except OverflowError as exc:
        raise ParseFailureError(f'time: invalid duration "{original}"') from exc


def _whole_multiple(duration: timedelta, unit: timedelta) -> bool:
    return duration % unit == timedelta(0)


# ---------------------------------------------------------------------------
# Presets and cron fields
# ---------------------------------------------------------------------------


def resolve_preset(name: str) -> List[str]:
    expression = PRESETS.get(name.strip().lower())
    if expression is None:
        raise UnknownDescriptorError(f"unrecognized descriptor: {name}")
    return expression.split()


def _parse_cron_value(raw: str, field: CronField, token: str) -> int:
    lowered = raw.lower()
    if lowered in field.names:
        return field.names[lowered]
    if not raw.isdigit():
        raise ParseFailureError(f'invalid token "{token}" in {field.name} field')
    value = int(raw)
    if value < field.minimum or value > field.maximum:
        raise ParseFailureError(
            f'value "{raw}" out of bounds {field.minimum}-{field.maximum} in {field.name} field'
        )
    return value


def validate_cron_token(token: str, field: CronField) -> str:
    if token == PLACEHOLDER:
        if not field.allows_placeholder:
            raise ParseFailureError(f'invalid token "{token}" in {field.name} field')
        return token

    for part in token.split(","):
        if not part:
            raise ParseFailureError(f'invalid token "{token}" in {field.name} field')
        base = part
        if "/" in part:
            base, step = part.split("/", 1)
            if not step.isdigit() or int(step) <= 0:
                raise ParseFailureError(f'invalid step "{part}" in {field.name} field')
        if base == WILDCARD:
            continue
        if "-" in base:
            left, right = base.split("-", 1)
            start = _parse_cron_value(left, field, token)
            end = _parse_cron_value(right, field, token)
            if start > end:
                raise ParseFailureError(f'invalid range "{base}" in {field.name} field')
            continue
        _parse_cron_value(base, field, token)
    return token


def validate_cron_fields(fields: List[str]) -> List[str]:
    """Check field count and token syntax of a five-field cron expression."""
    require_croniter_dependency()
    if len(fields) != CRON_FIELD_COUNT:
        raise FieldCountMismatchError(
            f"expected exactly {CRON_FIELD_COUNT} fields, found {len(fields)}: [{' '.join(fields)}]"
        )
    for token, field in zip(fields, CRON_FIELDS):
        validate_cron_token(token, field)

    expression = " ".join(WILDCARD if token == PLACEHOLDER else token for token in fields)
    if not croniter.is_valid(expression):
        raise ParseFailureError(f'invalid cron expression "{" ".join(fields)}"')
    return list(fields)


def normalize_day_fields(day_of_month: str, day_of_week: str) -> Tuple[str, str]:
    """Return (dom, dow) with exactly one of them set to "?"."""
    if day_of_week in (WILDCARD, PLACEHOLDER):
        if day_of_month == PLACEHOLDER:
            return WILDCARD, PLACEHOLDER
        return day_of_month, PLACEHOLDER
    if day_of_month in (WILDCARD, PLACEHOLDER):
        return PLACEHOLDER, day_of_week
    raise ConflictingDayFieldsError("cannot specify both DOW and DOM in cron expression")


def increment_day_of_week(day_of_week: str) -> str:
    """Shift 0-indexed weekday numbers (0=Sunday) to 1-indexed (1=Sunday).

    Step sizes and weekday names are left alone.
    """
    return DOW_NUMBER_RE.sub(lambda match: str(int(match.group(0)) + 1), day_of_week)


def render_cron(tokens: List[str]) -> str:
    """Place the "?", renumber weekdays and render already validated fields."""
    tokens = list(tokens)
    day_of_month, day_of_week = normalize_day_fields(tokens[DAY_OF_MONTH], tokens[DAY_OF_WEEK])
    tokens[DAY_OF_MONTH] = day_of_month
    tokens[DAY_OF_WEEK] = increment_day_of_week(day_of_week)
    return f"cron({' '.join(tokens)} {WILDCARD})"


def translate_cron(fields: List[str]) -> str:
    return render_cron(validate_cron_fields(fields))


# ---------------------------------------------------------------------------
# Fixed intervals
# ---------------------------------------------------------------------------


def _pluralize(count: int, unit: str) -> str:
    return f"{count} {unit}" if count == 1 else f"{count} {unit}s"


def translate_rate(duration: timedelta) -> str:
    if duration < ONE_MINUTE:
        raise BelowMinimumGranularityError("duration must be greater than or equal to 1 minute")
    if not _whole_multiple(duration, ONE_MINUTE):
        raise NonWholeUnitError("duration must be a whole number of minutes or hours")
    if _whole_multiple(duration, ONE_HOUR):
        return f"rate({_pluralize(duration // ONE_HOUR, 'hour')})"
    return f"rate({_pluralize(duration // ONE_MINUTE, 'minute')})"


# ---------------------------------------------------------------------------
# Compiler
# ---------------------------------------------------------------------------


def compile_schedule(spec: str, job_name: str) -> str:
    """Compile a preset, "@every <duration>" or cron schedule for job_name."""
    spec = (spec or "").strip()
    if not spec:
        raise MissingFieldError(f'missing required field "schedule" in manifest for job {job_name}')

    if spec.startswith(EVERY_PREFIX):
        try:
            duration = parse_duration(spec[len(EVERY_PREFIX):].strip())
        except ParseFailureError as exc:
            raise ParseFailureError(
                f"{INVALID_SCHEDULE_PREFIX}failed to parse duration {spec}: {exc}"
            ) from exc
        try:
            expression = translate_rate(duration)
        except ConfigError as exc:
            raise _prefixed(exc, RATE_TRANSLATE_PREFIX) from exc
        logger.debug("Compiled fixed interval %r for %s as %s", spec, job_name, expression)
        return expression

    if spec.startswith(PRESET_PREFIX):
        try:
            fields = resolve_preset(spec)
        except ConfigError as exc:
            raise _prefixed(exc, INVALID_SCHEDULE_PREFIX) from exc
    else:
        fields = spec.split()

    try:
        tokens = validate_cron_fields(fields)
    except ConfigError as exc:
        raise _prefixed(exc, INVALID_SCHEDULE_PREFIX) from exc
    try:
        expression = render_cron(tokens)
    except ConfigError as exc:
        raise _prefixed(exc, CRON_TRANSLATE_PREFIX) from exc
    logger.debug("Compiled cron schedule %r for %s as %s", spec, job_name, expression)
    return expression


def derive_policy(timeout: str, retries: int) -> ExecutionPolicy:
    if retries < 0:
        raise NegativeRetryCountError("number of retries cannot be negative")
    max_attempts = retries if retries > 0 else None

    timeout_seconds: Optional[int] = None
    if timeout:
        duration = parse_duration(timeout)
        if duration < ONE_SECOND:
            raise BelowMinimumGranularityError("timeout must be greater than or equal to 1 second")
        if not _whole_multiple(duration, ONE_SECOND):
            raise NonWholeUnitError("timeout must be a whole number of seconds, minutes, or hours")
        timeout_seconds = duration // ONE_SECOND

    return ExecutionPolicy(timeout_seconds=timeout_seconds, max_attempts=max_attempts)


def compile_job(job: JobSpec, index: int = 0) -> JobRuntime:
    try:
        expression = compile_schedule(job.schedule, job.name)
        policy = derive_policy(job.timeout, job.retries)
    except ConfigError as exc:
        raise _prefixed(exc, f'Error: job "{job.name}": ') from exc
    return JobRuntime(spec=job, schedule_expression=expression, policy=policy, index=index)


def compile_jobs(jobs: List[JobSpec]) -> List[JobRuntime]:
    runtimes: List[JobRuntime] = []
    for idx, job in enumerate(jobs):
        runtime = compile_job(job, idx)
        logger.info("Compiled %s: %s", job.name, runtime.schedule_expression)
        runtimes.append(runtime)
    return runtimes


# ---------------------------------------------------------------------------
# Manifest
# ---------------------------------------------------------------------------


def ensure_bool(value: Any, field_path: str, default: bool) -> bool:
    if value is None:
        return default
    if not isinstance(value, bool):
        raise ConfigError(f"Error: {field_path} must be true or false.")
    return value


def ensure_int(value: Any, field_path: str, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"Error: {field_path} must be an integer.")
    return value


def ensure_str(value: Any, field_path: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"Error: {field_path} must be a non-empty string.")
    return value.strip()


def optional_str(value: Any, field_path: str, default: str = "") -> str:
    if value is None:
        return default
    if not isinstance(value, str):
        raise ConfigError(f"Error: {field_path} must be a string.")
    return value.strip()


def _load_config_payload(config_path: Path) -> Dict[str, Any]:
    require_yaml_dependency()
    if not config_path.exists():
        raise ConfigError(f"Error: Config file not found: {config_path}")

    try:
        payload = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Error: Failed to parse YAML in {config_path}: {exc}") from exc

    if not isinstance(payload, dict):
        raise ConfigError("Error: Top-level config must be a mapping.")
    return payload


def parse_config(config_path: Path) -> List[JobSpec]:
    payload = _load_config_payload(config_path)

    unknown_top = set(payload.keys()) - {"version", "defaults", "jobs"}
    if unknown_top:
        raise ConfigError(f"Error: Unknown top-level keys: {sorted(unknown_top)}.")

    defaults = payload.get("defaults", {}) or {}
    if not isinstance(defaults, dict):
        raise ConfigError("Error: defaults must be a mapping.")
    unknown_defaults = set(defaults.keys()) - {"timeout", "retries"}
    if unknown_defaults:
        raise ConfigError(f"Error: Unknown keys in defaults: {sorted(unknown_defaults)}.")
    default_timeout = optional_str(defaults.get("timeout"), "defaults.timeout")
    default_retries = ensure_int(defaults.get("retries"), "defaults.retries", 0)

    jobs_raw = payload.get("jobs")
    if not isinstance(jobs_raw, list) or not jobs_raw:
        raise ConfigError("Error: jobs must be a non-empty list.")

    seen_names: Set[str] = set()
    jobs: List[JobSpec] = []

    for idx, job_raw in enumerate(jobs_raw):
        path = f"jobs[{idx}]"
        if not isinstance(job_raw, dict):
            raise ConfigError(f"Error: {path} must be a mapping.")

        unknown_job = set(job_raw.keys()) - {"name", "enabled", "schedule", "timeout", "retries"}
        if unknown_job:
            raise ConfigError(f"Error: Unknown keys in {path}: {sorted(unknown_job)}.")

        name = ensure_str(job_raw.get("name"), f"{path}.name")
        if name in seen_names:
            raise ConfigError(f'Error: Duplicate job name "{name}".')
        seen_names.add(name)

        jobs.append(
            JobSpec(
                name=name,
                # A missing schedule is reported by compile_schedule.
                schedule=optional_str(job_raw.get("schedule"), f"{path}.schedule"),
                timeout=optional_str(job_raw.get("timeout"), f"{path}.timeout", default_timeout),
                retries=ensure_int(job_raw.get("retries"), f"{path}.retries", default_retries),
                enabled=ensure_bool(job_raw.get("enabled"), f"{path}.enabled", True),
            )
        )

    return jobs


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def filter_jobs(runtimes: List[JobRuntime], job_name: Optional[str], include_disabled: bool = False) -> List[JobRuntime]:
    selected = runtimes
    if job_name:
        selected = [runtime for runtime in selected if runtime.spec.name == job_name]
        if not selected:
            raise CadenceError(f'Unknown job "{job_name}".')
    if include_disabled:
        return selected
    selected = [runtime for runtime in selected if runtime.spec.enabled]
    if not selected:
        raise CadenceError("No enabled jobs selected.")
    return selected


def _optional_text(value: Optional[int], suffix: str = "") -> str:
    return "default" if value is None else f"{value}{suffix}"


def command_validate(config_path: Path) -> int:
    runtimes = compile_jobs(parse_config(config_path))
    enabled_count = sum(1 for runtime in runtimes if runtime.spec.enabled)
    print(f"Config valid: {config_path}")
    print(f"Total jobs: {len(runtimes)}")
    print(f"Enabled jobs: {enabled_count}")
    for runtime in runtimes:
        print(f"- {runtime.spec.name}: {runtime.schedule_expression}")
    return 0


def command_compile(config_path: Path, job_name: Optional[str]) -> int:
    runtimes = compile_jobs(parse_config(config_path))
    selected = filter_jobs(runtimes, job_name, include_disabled=True)
    for runtime in selected:
        spec = runtime.spec
        print("=" * 80)
        print(f"Job: {spec.name} (enabled={spec.enabled})")
        print(f"Schedule: {spec.schedule}")
        print(f"Expression: {runtime.schedule_expression}")
        print(f"Timeout: {_optional_text(runtime.policy.timeout_seconds, 's')}")
        print(f"Max attempts: {_optional_text(runtime.policy.max_attempts)}")
    print("=" * 80)
    return 0


def command_export(config_path: Path, job_name: Optional[str], output_format: str) -> int:
    if output_format not in VALID_EXPORT_FORMATS:
        raise CadenceError(
            f'--format must be one of {sorted(VALID_EXPORT_FORMATS)}, got "{output_format}".'
        )
    runtimes = compile_jobs(parse_config(config_path))
    selected = filter_jobs(runtimes, job_name, include_disabled=False)
    document = {runtime.spec.name: runtime.render_inputs() for runtime in selected}
    if output_format == "json":
        print(json.dumps(document, indent=2))
    else:
        print(yaml.safe_dump(document, sort_keys=False), end="")
    return 0


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="cadence scheduled job compiler",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--config",
        default=DEFAULT_CONFIG,
        help=f"Path to cadence YAML manifest (default: {DEFAULT_CONFIG})",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    validate_parser = subparsers.add_parser("validate", help="Validate manifest and compile schedules")
    validate_parser.add_argument(
        "--config",
        default=argparse.SUPPRESS,
        help=f"Path to manifest (default: {DEFAULT_CONFIG})",
    )

    compile_parser = subparsers.add_parser("compile", help="Show compiled schedule and execution policy")
    compile_parser.add_argument(
        "--config",
        default=argparse.SUPPRESS,
        help=f"Path to manifest (default: {DEFAULT_CONFIG})",
    )
    compile_parser.add_argument("--job", help="Compile a single job by name")

    export_parser = subparsers.add_parser("export", help="Export template renderer inputs")
    export_parser.add_argument(
        "--config",
        default=argparse.SUPPRESS,
        help=f"Path to manifest (default: {DEFAULT_CONFIG})",
    )
    export_parser.add_argument("--job", help="Export one job by name")
    export_parser.add_argument(
        "--format",
        default="yaml",
        choices=sorted(VALID_EXPORT_FORMATS),
        help="Output format (default: yaml)",
    )

    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    config_path = Path(args.config or DEFAULT_CONFIG).resolve()

    try:
        if args.command == "validate":
            return command_validate(config_path)
        if args.command == "compile":
            return command_compile(config_path, job_name=args.job)
        if args.command == "export":
            return command_export(config_path, job_name=args.job, output_format=args.format)
        raise CadenceError(f"Unsupported command: {args.command}")
    except CadenceError as exc:
        logger.error(str(exc))
        return 1
    except Exception as exc:  # pragma: no cover - defensive
        logger.exception("Unexpected error: %s", exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
