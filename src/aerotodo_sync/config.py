"""Runtime configuration for the calendar sync engine.

Reads Google OAuth client settings and engine tuning knobs from CLI args,
environment variables, .env files, and YAML config file fallbacks.

Precedence (highest to lowest):
    CLI args > Environment variables > .env file > YAML config > Built-in defaults

Environment variables:
    GOOGLE_CLIENT_ID: OAuth client id (required)
    GOOGLE_CLIENT_SECRET: OAuth client secret (required)
    AEROTODO_CALENDAR_ID: Target calendar (optional, default: primary)
    AEROTODO_SETTINGS_FILE: Settings document path (optional)
    AEROTODO_TIME_ZONE: Time zone for timed events (optional, default: UTC)
    AEROTODO_SYNC_INTERVAL: Seconds between cycles (optional, default: 60)
    AEROTODO_REQUEST_TIMEOUT: Per-request timeout in seconds (optional, default: 30)
    AEROTODO_MAX_ATTEMPTS: Attempts per remote call (optional, default: 3)
    AEROTODO_DEBUG: Enable debug logging (optional, default: false)
"""

import logging
import os
from dataclasses import dataclass
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_API_BASE = "https://www.googleapis.com/calendar/v3"
DEFAULT_SETTINGS_FILE = "~/.aerotodo_sync/settings.json"


@dataclass
class Config:
    client_id: str
    client_secret: str
    token_url: str = GOOGLE_TOKEN_URL
    api_base: str = GOOGLE_API_BASE
    calendar_id: str = "primary"
    settings_file: str = DEFAULT_SETTINGS_FILE
    time_zone: str = "UTC"
    sync_interval: float = 60.0
    request_timeout: float = 30.0
    max_attempts: int = 3
    backoff_base: float = 1.0
    backoff_max: float = 30.0
    refresh_margin: float = 300.0
    window_past_days: int = 30
    window_future_days: int = 60
    debug: bool = False


def validate_config(config: Config) -> None:
    """Validate configuration values and raise ValueError if invalid.

    Args:
        config: Config instance to validate.

    Raises:
        ValueError: If an endpoint URL is malformed, credentials are
            empty, or a numeric knob is out of range.
    """
    for name in ("token_url", "api_base"):
        url = getattr(config, name).strip()
        if not url.startswith(("http://", "https://")):
            raise ValueError(
                f"Invalid {name} '{url}': must start with http:// or https://"
            )
        if not urlparse(url).hostname:
            raise ValueError(
                f"Invalid {name} '{url}': URL must include a hostname"
            )
        setattr(config, name, url.removesuffix("/"))

    if not config.client_id.strip():
        raise ValueError(
            "Google client id cannot be empty. Set GOOGLE_CLIENT_ID environment variable."
        )

    if not config.client_secret.strip():
        raise ValueError(
            "Google client secret cannot be empty. Set GOOGLE_CLIENT_SECRET environment variable."
        )

    if not config.calendar_id.strip():
        raise ValueError("Calendar id cannot be empty.")

    if config.sync_interval < 1:
        raise ValueError(
            f"Invalid sync interval {config.sync_interval}: must be at least 1 second"
        )

    if not (1 <= config.max_attempts <= 10):
        raise ValueError(
            f"Invalid max attempts {config.max_attempts}: must be between 1 and 10"
        )

    if config.request_timeout <= 0:
        raise ValueError(
            f"Invalid request timeout {config.request_timeout}: must be positive"
        )


def _get_bool_env(key: str) -> bool | None:
    """Return True/False from env var, or None if unset."""
    val = os.getenv(key)
    if val is None:
        return None
    return val.lower() in ("true", "1", "yes", "on")


def _get_number_env(
    key: str, cast: type, low: float, high: float
) -> float | int | None:
    """Parse a numeric env var within ``[low, high]``, or None if unset."""
    raw = os.getenv(key)
    if raw is None:
        return None
    try:
        value = cast(raw)
    except ValueError:
        raise ValueError(
            f"Invalid {key} '{raw}': must be a number between {low} and {high}"
        ) from None
    if not (low <= value <= high):
        raise ValueError(
            f"Invalid {key} '{raw}': must be a number between {low} and {high}"
        )
    return value


def load_config(
    client_id: str | None = None,
    client_secret: str | None = None,
    calendar_id: str | None = None,
    settings_file: str | None = None,
    debug: bool = False,
    yaml_fallbacks: dict | None = None,
) -> Config:
    """Load configuration with unified precedence.

    Resolution order for each field (highest to lowest):
        CLI arg > env var / .env > yaml_fallbacks > built-in default

    The caller is responsible for calling ``load_dotenv()`` before this
    function so that .env values are available via ``os.getenv()``.

    Args:
        client_id: Override OAuth client id.
        client_secret: Override OAuth client secret.
        calendar_id: Override target calendar id.
        settings_file: Override settings document path.
        debug: Enable debug logging (CLI flag).
        yaml_fallbacks: Flat dict of values from the YAML config file
            (``google`` and ``sync`` sections merged).  Used as fallback
            when CLI arg and env var are both unset.

    Returns:
        Validated Config instance.

    Raises:
        ValueError: If required config (client id, client secret) is
            missing after checking all sources, or a value is invalid.
    """
    fb = yaml_fallbacks or {}

    # --- String fields: CLI > env > YAML > error/default ---

    final_client_id = (
        client_id or os.getenv("GOOGLE_CLIENT_ID") or fb.get("client_id")
    )
    if not final_client_id:
        raise ValueError(
            "Google client id not found. Set GOOGLE_CLIENT_ID environment variable, "
            "pass --client-id CLI argument, or add 'client_id' to config.yml."
        )

    final_client_secret = (
        client_secret
        or os.getenv("GOOGLE_CLIENT_SECRET")
        or fb.get("client_secret")
    )
    if not final_client_secret:
        raise ValueError(
            "Google client secret not found. Set GOOGLE_CLIENT_SECRET environment variable "
            "or add 'client_secret' to config.yml."
        )

    final_calendar_id = (
        calendar_id
        or os.getenv("AEROTODO_CALENDAR_ID")
        or fb.get("calendar_id")
        or "primary"
    )
    final_settings_file = (
        settings_file
        or os.getenv("AEROTODO_SETTINGS_FILE")
        or fb.get("settings_file")
        or DEFAULT_SETTINGS_FILE
    )
    final_time_zone = (
        os.getenv("AEROTODO_TIME_ZONE") or fb.get("time_zone") or "UTC"
    )

    # --- Boolean fields: CLI > env > YAML > default ---

    if debug:
        final_debug = True
    else:
        env_debug = _get_bool_env("AEROTODO_DEBUG")
        if env_debug is not None:
            final_debug = env_debug
        else:
            final_debug = bool(fb.get("debug", False))

    # --- Numeric fields: env > YAML > default ---

    interval = _get_number_env("AEROTODO_SYNC_INTERVAL", float, 1, 86400)
    if interval is None:
        interval = float(fb.get("interval_seconds", 60.0))

    timeout = _get_number_env("AEROTODO_REQUEST_TIMEOUT", float, 1, 600)
    if timeout is None:
        timeout = float(fb.get("request_timeout", 30.0))

    attempts = _get_number_env("AEROTODO_MAX_ATTEMPTS", int, 1, 10)
    if attempts is None:
        attempts = int(fb.get("max_attempts", 3))

    config = Config(
        client_id=final_client_id.strip(),
        client_secret=final_client_secret.strip(),
        token_url=fb.get("token_url") or GOOGLE_TOKEN_URL,
        api_base=fb.get("api_base") or GOOGLE_API_BASE,
        calendar_id=final_calendar_id.strip(),
        settings_file=final_settings_file,
        time_zone=final_time_zone,
        sync_interval=interval,
        request_timeout=timeout,
        max_attempts=attempts,
        backoff_base=float(fb.get("backoff_base", 1.0)),
        backoff_max=float(fb.get("backoff_max", 30.0)),
        refresh_margin=float(fb.get("refresh_margin_seconds", 300.0)),
        window_past_days=int(fb.get("window_past_days", 30)),
        window_future_days=int(fb.get("window_future_days", 60)),
        debug=final_debug,
    )

    validate_config(config)

    return config
