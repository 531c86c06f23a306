from __future__ import annotations

import argparse
import logging
import os
from collections.abc import Mapping, Sequence
from dataclasses import dataclass

from regcreds.src.retry import (
    DEFAULT_RETRY_STRATEGY,
    DEFAULT_TOKEN_RETRIES,
    DEFAULT_TOKEN_RETRY_DELAY_SECONDS,
    RETRY_STRATEGIES,
    RetryConfig,
)

LOGGER = logging.getLogger(__name__)

TOKEN_RETRY_TYPE_ENV = "TOKEN_RETRY_TYPE"
TOKEN_RETRIES_ENV = "TOKEN_RETRIES"
TOKEN_RETRY_DELAY_ENV = "TOKEN_RETRY_DELAY"
AWS_ACCOUNT_ENV = "awsaccount"
AWS_REGION_ENV = "awsregion"
AWS_ASSUME_ROLE_ENV = "aws_assume_role"
HEALTH_PORT_ENV = "HEALTH_PORT"


class ConfigError(RuntimeError):
    """Raised when the refresher configuration is invalid."""


@dataclass(frozen=True)
class RefresherConfig:
    """Immutable process configuration resolved from flags and environment at startup."""

    retry: RetryConfig
    secret_name: str
    aws_region: str
    aws_account_ids: tuple[str, ...]
    aws_assume_role: str
    excluded_namespaces: tuple[str, ...]
    skip_kube_system: bool
    refresh_minutes: int
    health_port: int


TRUE_WORDS = frozenset({"1", "t", "true", "yes", "on"})
FALSE_WORDS = frozenset({"0", "f", "false", "no", "off"})


def parse_bool(value: str | None) -> bool:
    """Parse a boolean flag value, rejecting anything that is not a known word."""
    if value is None:
        return False
    normalized = value.strip().lower()
    if normalized in TRUE_WORDS:
        return True
    if normalized in FALSE_WORDS:
        return False
    raise argparse.ArgumentTypeError(f"invalid boolean value: {value!r}")


def split_csv(value: str) -> tuple[str, ...]:
    return tuple(part.strip() for part in value.split(",") if part.strip())


def validate_retry_config(strategy: str, max_retries: int, delay_seconds: int) -> RetryConfig:
    """Return a :class:`RetryConfig`, substituting defaults for invalid values.

    Invalid values are never fatal; each substitution is logged at error level.
    """
    if strategy not in RETRY_STRATEGIES:
        LOGGER.error(
            "Unknown retry strategy %r! Defaulting to %s", strategy, DEFAULT_RETRY_STRATEGY
        )
        strategy = DEFAULT_RETRY_STRATEGY
    if max_retries < 0:
        LOGGER.error(
            "Cannot use a negative number of retries! Defaulting to %d", DEFAULT_TOKEN_RETRIES
        )
        max_retries = DEFAULT_TOKEN_RETRIES
    if delay_seconds < 0:
        LOGGER.error(
            "Cannot use a negative retry delay! Defaulting to %d seconds",
            DEFAULT_TOKEN_RETRY_DELAY_SECONDS,
        )
        delay_seconds = DEFAULT_TOKEN_RETRY_DELAY_SECONDS
    return RetryConfig(strategy=strategy, max_retries=max_retries, delay_seconds=delay_seconds)


def _env_non_negative_int(env: Mapping[str, str], name: str, current: int, default: int) -> int:
    raw = env.get(name, "")
    if not raw:
        return current
    try:
        value = int(raw)
    except ValueError:
        LOGGER.error("Unable to parse value of environment variable %s: %r", name, raw)
        return current
    if value < 0:
        LOGGER.error(
            "Cannot use a negative value for environment variable %s! Defaulting to %d",
            name,
            default,
        )
        return default
    return value


def apply_retry_env_overrides(retry: RetryConfig, env: Mapping[str, str]) -> RetryConfig:
    """Overlay ``TOKEN_RETRY_*`` environment variables on flag-derived retry settings.

    Empty variables are ignored.  Invalid values fall back to the defaults,
    except unparsable integers, which keep the flag value.
    """
    strategy = retry.strategy
    raw_strategy = env.get(TOKEN_RETRY_TYPE_ENV, "")
    if raw_strategy:
        if raw_strategy in RETRY_STRATEGIES:
            strategy = raw_strategy
        else:
            LOGGER.error(
                "Unknown retry strategy %r in %s! Defaulting to %s",
                raw_strategy,
                TOKEN_RETRY_TYPE_ENV,
                DEFAULT_RETRY_STRATEGY,
            )
            strategy = DEFAULT_RETRY_STRATEGY

    return RetryConfig(
        strategy=strategy,
        max_retries=_env_non_negative_int(
            env, TOKEN_RETRIES_ENV, retry.max_retries, DEFAULT_TOKEN_RETRIES
        ),
        delay_seconds=_env_non_negative_int(
            env, TOKEN_RETRY_DELAY_ENV, retry.delay_seconds, DEFAULT_TOKEN_RETRY_DELAY_SECONDS
        ),
    )


def env_int(
    env: Mapping[str, str],
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {value}")
    return value


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="regcreds",
        description="Keep registry pull secrets fresh in every namespace",
    )
    parser.add_argument(
        "--excluded-namespaces",
        default="",
        help="Comma separated list of namespaces that do NOT need updated secrets",
    )
    parser.add_argument("--aws-secret-name", default="awsecr-cred", help="Pull secret name")
    parser.add_argument("--aws-region", default="us-east-1", help="AWS region of the registry")
    parser.add_argument(
        "--aws-assume-role",
        "--aws_assume_role",
        dest="aws_assume_role",
        default="",
        help="Role ARN to assume before requesting registry tokens",
    )
    parser.add_argument(
        "--refresh-mins",
        type=int,
        default=60,
        help="Minutes between full refreshes of every namespace (60)",
    )
    parser.add_argument(
        "--skip-kube-system",
        type=parse_bool,
        nargs="?",
        const=True,
        default=True,
        help="Do not set pull secrets on the kube-system namespace (true)",
    )
    parser.add_argument(
        "--no-skip-kube-system",
        dest="skip_kube_system",
        action="store_false",
        help="Set pull secrets on the kube-system namespace too",
    )
    parser.add_argument(
        "--token-retry-type",
        default=DEFAULT_RETRY_STRATEGY,
        help="Retry timer used for token generation: simple or exponential (simple)",
    )
    parser.add_argument(
        "--token-retries",
        type=int,
        default=DEFAULT_TOKEN_RETRIES,
        help="Number of times to retry token generation (3)",
    )
    parser.add_argument(
        "--token-retry-delay",
        type=int,
        default=DEFAULT_TOKEN_RETRY_DELAY_SECONDS,
        help="Seconds to wait before retrying token generation (5)",
    )
    parser.add_argument(
        "--health-port", type=int, default=8080, help="Port for health and metrics (8080)"
    )
    return parser


def load_config(
    argv: Sequence[str] | None = None, env: Mapping[str, str] | None = None
) -> RefresherConfig:
    """Resolve the refresher configuration.

    Resolution order for each setting: non-empty environment override, then
    command-line flag, then built-in default.  Retry settings are validated
    with fallback to defaults; a bad refresh interval or health port raises
    :class:`ConfigError`.
    """
    values = env if env is not None else os.environ
    args = build_parser().parse_args(argv)

    retry = validate_retry_config(args.token_retry_type, args.token_retries, args.token_retry_delay)
    retry = apply_retry_env_overrides(retry, values)

    if args.refresh_mins < 1:
        raise ConfigError(f"--refresh-mins must be >= 1, got: {args.refresh_mins}")

    health_port = env_int(values, HEALTH_PORT_ENV, args.health_port, minimum=1, maximum=65535)

    account_ids = split_csv(values.get(AWS_ACCOUNT_ENV, "")) or ("",)

    return RefresherConfig(
        retry=retry,
        secret_name=args.aws_secret_name,
        aws_region=values.get(AWS_REGION_ENV) or args.aws_region,
        aws_account_ids=account_ids,
        aws_assume_role=values.get(AWS_ASSUME_ROLE_ENV) or args.aws_assume_role,
        excluded_namespaces=split_csv(args.excluded_namespaces),
        skip_kube_system=args.skip_kube_system,
        refresh_minutes=args.refresh_mins,
        health_port=health_port,
    )
