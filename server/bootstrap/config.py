"""Server configuration and CLI argument parsing.

Every setting is resolved independently: an explicitly passed flag wins over
the matching environment variable, which wins over the built-in default.
"""

import argparse
import os
import socket
import sys
from dataclasses import dataclass
from typing import Callable, Mapping, NoReturn, Optional, Sequence

from server.domain.durations import format_duration, parse_duration

DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 8080
DEFAULT_MAX_BODY_SIZE = 1024 * 1024
DEFAULT_MAX_DURATION = 10.0
DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_LOG_DESTINATION = "stderr"
DEFAULT_LOG_FORMAT = "json"

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
LOG_FORMATS = ("json", "text")
TRUTHY_ENV_VALUES = {"1", "true"}

INT64_MIN = -(2**63)
INT64_MAX = 2**63 - 1


class ConfigError(Exception):
    """Raised when a flag, environment variable or combination is invalid."""

    def __init__(
        self,
        message: str,
        source: Optional[str] = None,
        raw_value: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.source = source
        self.raw_value = raw_value


@dataclass(frozen=True)
class ResolvedConfig:
    """Effective runtime configuration, built once and never mutated."""

    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    max_body_size: int = DEFAULT_MAX_BODY_SIZE
    max_duration: float = DEFAULT_MAX_DURATION
    tls_cert_path: Optional[str] = None
    tls_key_path: Optional[str] = None
    use_real_hostname: bool = False
    hostname: Optional[str] = None
    log_level: str = DEFAULT_LOG_LEVEL
    log_destination: str = DEFAULT_LOG_DESTINATION
    log_format: str = DEFAULT_LOG_FORMAT

    def __post_init__(self) -> None:
        if bool(self.tls_cert_path) != bool(self.tls_key_path):
            raise ConfigError("https cert and key must both be provided")
        if self.max_body_size < 0:
            raise ConfigError("max body size must not be negative")
        if self.max_duration < 0:
            raise ConfigError("max duration must not be negative")
        if self.use_real_hostname and not self.hostname:
            raise ConfigError("use-real-hostname=true requires a resolved hostname")

    @property
    def serve_tls(self) -> bool:
        """True when both TLS certificate and key paths are configured."""
        return bool(self.tls_cert_path and self.tls_key_path)


class ConfigArgumentParser(argparse.ArgumentParser):
    """Argument parser that reports flag errors with full usage and status 1."""

    def error(self, message: str) -> NoReturn:
        sys.stderr.write(f"Error: {message}\n\n")
        self.print_help(sys.stderr)
        sys.exit(1)


def _duration_arg(value: str) -> float:
    try:
        return parse_duration(value)
    except ValueError as error:
        raise argparse.ArgumentTypeError(f"invalid value {value!r}: {error}") from error


def _int64_arg(value: str) -> int:
    try:
        return _parse_int64(value)
    except ValueError as error:
        raise argparse.ArgumentTypeError(f"invalid value {value!r}: {error}") from error


def _parse_int64(value: str) -> int:
    number = int(value, 10)
    if not INT64_MIN <= number <= INT64_MAX:
        raise ValueError("value out of range")
    return number


def build_parser() -> ConfigArgumentParser:
    """Return the parser for all server flags.

    Flags default to ``None`` so the resolver can tell an explicitly passed
    value apart from an omitted one.
    """
    parser = ConfigArgumentParser(
        description="HTTP request and response testing service"
    )
    parser.add_argument(
        "-host",
        "--host",
        default=None,
        help=f"Host to listen on (default {DEFAULT_HOST}, env HOST)",
    )
    parser.add_argument(
        "-port",
        "--port",
        type=int,
        default=None,
        help=f"Port to listen on (default {DEFAULT_PORT}, env PORT)",
    )
    parser.add_argument(
        "-https-cert-file",
        "--https-cert-file",
        default=None,
        help="HTTPS server certificate file (env HTTPS_CERT_FILE)",
    )
    parser.add_argument(
        "-https-key-file",
        "--https-key-file",
        default=None,
        help="HTTPS server private key file (env HTTPS_KEY_FILE)",
    )
    parser.add_argument(
        "-max-body-size",
        "--max-body-size",
        type=_int64_arg,
        default=None,
        help=(
            "Maximum size of request or response, in bytes "
            f"(default {DEFAULT_MAX_BODY_SIZE}, env MAX_BODY_SIZE)"
        ),
    )
    parser.add_argument(
        "-max-duration",
        "--max-duration",
        type=_duration_arg,
        default=None,
        help=(
            "Maximum duration a response may take "
            f"(default {format_duration(DEFAULT_MAX_DURATION)}, env MAX_DURATION)"
        ),
    )
    parser.add_argument(
        "-use-real-hostname",
        "--use-real-hostname",
        action="store_true",
        help=(
            "Expose the real hostname in the /hostname endpoint instead of a "
            "dummy value (env USE_REAL_HOSTNAME=1|true)"
        ),
    )
    parser.add_argument(
        "-log-level",
        "--log-level",
        default=None,
        type=str.upper,
        choices=LOG_LEVELS,
        help=f"Log level (default {DEFAULT_LOG_LEVEL}, env LOG_LEVEL)",
    )
    parser.add_argument(
        "-log-destination",
        "--log-destination",
        default=None,
        help=(
            "stdout, stderr or a file path "
            f"(default {DEFAULT_LOG_DESTINATION}, env LOG_DESTINATION)"
        ),
    )
    parser.add_argument(
        "-log-format",
        "--log-format",
        default=None,
        type=str.lower,
        choices=LOG_FORMATS,
        help=f"Log record format (default {DEFAULT_LOG_FORMAT}, env LOG_FORMAT)",
    )
    return parser


def _env_value(
    environ: Mapping[str, str], name: str, parse: Callable[[str], object], default
):
    raw = environ.get(name, "")
    if raw == "":
        return default
    try:
        return parse(raw)
    except ValueError as error:
        raise ConfigError(
            f"invalid value {raw!r} for env var {name}: {error}", name, raw
        ) from error


def _choice(choices: Sequence[str], normalize: Callable[[str], str]):
    def parse(raw: str) -> str:
        value = normalize(raw)
        if value not in choices:
            raise ValueError(f"must be one of {', '.join(choices)}")
        return value

    return parse


def _resolve(flag_value, environ, name, parse, default):
    if flag_value is not None:
        return flag_value
    return _env_value(environ, name, parse, default)


def _require_non_negative(value, flag_value, flag: str, env_name: str, raw: str) -> None:
    if value >= 0:
        return
    source = f"flag {flag}" if flag_value is not None else f"env var {env_name}"
    raise ConfigError(
        f"invalid value {raw!r} for {source}: must not be negative", source, raw
    )


def resolve_config(
    argv: Sequence[str],
    environ: Optional[Mapping[str, str]] = None,
    hostname_lookup: Callable[[], str] = socket.gethostname,
) -> ResolvedConfig:
    """Merge flags, environment variables and defaults into a ResolvedConfig.

    Raises ConfigError naming the offending source when a value is invalid.
    Flag syntax errors are reported by the parser itself.
    """
    env = os.environ if environ is None else environ
    args = build_parser().parse_args(argv)

    host = _resolve(args.host, env, "HOST", str, DEFAULT_HOST)
    port = _resolve(args.port, env, "PORT", lambda raw: int(raw, 10), DEFAULT_PORT)

    max_body_size = _resolve(
        args.max_body_size, env, "MAX_BODY_SIZE", _parse_int64, DEFAULT_MAX_BODY_SIZE
    )
    _require_non_negative(
        max_body_size,
        args.max_body_size,
        "-max-body-size",
        "MAX_BODY_SIZE",
        str(max_body_size),
    )

    max_duration = _resolve(
        args.max_duration, env, "MAX_DURATION", parse_duration, DEFAULT_MAX_DURATION
    )
    _require_non_negative(
        max_duration,
        args.max_duration,
        "-max-duration",
        "MAX_DURATION",
        format_duration(max_duration),
    )

    cert_path = _resolve(args.https_cert_file, env, "HTTPS_CERT_FILE", str, "")
    key_path = _resolve(args.https_key_file, env, "HTTPS_KEY_FILE", str, "")
    if bool(cert_path) != bool(key_path):
        raise ConfigError("https cert and key must both be provided")

    use_real_hostname = (
        args.use_real_hostname
        or env.get("USE_REAL_HOSTNAME", "") in TRUTHY_ENV_VALUES
    )
    hostname = None
    if use_real_hostname:
        try:
            hostname = hostname_lookup()
        except OSError as error:
            raise ConfigError(
                f"use-real-hostname=true but hostname lookup failed: {error}"
            ) from error
        if not hostname:
            raise ConfigError(
                "use-real-hostname=true but hostname lookup returned an empty name"
            )

    log_level = _resolve(
        args.log_level,
        env,
        "LOG_LEVEL",
        _choice(LOG_LEVELS, str.upper),
        DEFAULT_LOG_LEVEL,
    )
    log_destination = _resolve(
        args.log_destination, env, "LOG_DESTINATION", str, DEFAULT_LOG_DESTINATION
    )
    log_format = _resolve(
        args.log_format,
        env,
        "LOG_FORMAT",
        _choice(LOG_FORMATS, str.lower),
        DEFAULT_LOG_FORMAT,
    )

    return ResolvedConfig(
        host=host,
        port=port,
        max_body_size=max_body_size,
        max_duration=max_duration,
        tls_cert_path=cert_path or None,
        tls_key_path=key_path or None,
        use_real_hostname=use_real_hostname,
        hostname=hostname,
        log_level=log_level,
        log_destination=log_destination,
        log_format=log_format,
    )


def load_config(
    argv: Sequence[str],
    environ: Optional[Mapping[str, str]] = None,
    hostname_lookup: Callable[[], str] = socket.gethostname,
) -> ResolvedConfig:
    """Resolve configuration or exit with status 1 after printing usage."""
    try:
        return resolve_config(argv, environ, hostname_lookup)
    except ConfigError as error:
        sys.stderr.write(f"Error: {error}\n\n")
        build_parser().print_help(sys.stderr)
        sys.exit(1)
