import os
from dataclasses import dataclass
from functools import lru_cache

MAX_RETRY_ATTEMPTS = 3


@dataclass(frozen=True)
class Config:
    env: str
    log_level: str
    state_uri: str
    heartbeat_timeout_seconds: int
    sweep_interval_seconds: int
    max_parallelism: int
    max_attempts: int
    backoff_seconds: float
    transfer_timeout_seconds: int
    install_timeout_seconds: int
    health_timeout_seconds: int
    rollback_batch_size: int
    wave_failure_threshold: float
    max_caution_extensions: int
    caution_extension_seconds: int
    catchup_settle_seconds: int
    catchup_max_attempts: int
    transport: str
    signing_secret: str | None = None
    api_key: str | None = None

    @classmethod
    def from_env(cls) -> "Config":
        env = os.getenv("ENV", "dev").strip().lower()
        log_level = os.getenv("LOG_LEVEL", "INFO").strip().upper()
        state_uri = os.getenv("FLEET_STATE_URI", "./fleetwave_data").strip()
        if not state_uri:
            raise ValueError("FLEET_STATE_URI must not be empty")

        heartbeat_timeout_seconds = _parse_positive_int(
            "FLEET_HEARTBEAT_TIMEOUT_SECONDS", "300"
        )
        sweep_interval_seconds = _parse_positive_int(
            "FLEET_SWEEP_INTERVAL_SECONDS", "30"
        )
        max_parallelism = _parse_positive_int("FLEET_MAX_PARALLELISM", "16")
        max_attempts = min(
            MAX_RETRY_ATTEMPTS,
            _parse_positive_int("FLEET_MAX_ATTEMPTS", str(MAX_RETRY_ATTEMPTS)),
        )
        backoff_seconds = _parse_float(os.getenv("FLEET_BACKOFF_SECONDS", "1.0"))
        if backoff_seconds < 0:
            raise ValueError("FLEET_BACKOFF_SECONDS must be >= 0")
        transfer_timeout_seconds = _parse_positive_int(
            "FLEET_TRANSFER_TIMEOUT_SECONDS", "300"
        )
        install_timeout_seconds = _parse_positive_int(
            "FLEET_INSTALL_TIMEOUT_SECONDS", "300"
        )
        health_timeout_seconds = _parse_positive_int(
            "FLEET_HEALTH_TIMEOUT_SECONDS", "30"
        )
        rollback_batch_size = _parse_positive_int("FLEET_ROLLBACK_BATCH_SIZE", "32")
        wave_failure_threshold = _parse_float(
            os.getenv("FLEET_WAVE_FAILURE_THRESHOLD", "0.2")
        )
        if not 0.0 <= wave_failure_threshold <= 1.0:
            raise ValueError("FLEET_WAVE_FAILURE_THRESHOLD must be between 0 and 1")
        max_caution_extensions = int(os.getenv("FLEET_MAX_CAUTION_EXTENSIONS", "2"))
        if max_caution_extensions < 0:
            raise ValueError("FLEET_MAX_CAUTION_EXTENSIONS must be >= 0")
        caution_extension_seconds = _parse_positive_int(
            "FLEET_CAUTION_EXTENSION_SECONDS", "600"
        )
        catchup_settle_seconds = int(os.getenv("FLEET_CATCHUP_SETTLE_SECONDS", "600"))
        if catchup_settle_seconds < 0:
            raise ValueError("FLEET_CATCHUP_SETTLE_SECONDS must be >= 0")
        catchup_max_attempts = _parse_positive_int("FLEET_CATCHUP_MAX_ATTEMPTS", "5")
        transport = os.getenv("FLEET_TRANSPORT", "dryrun").strip().lower()
        if transport not in {"dryrun"}:
            raise ValueError("FLEET_TRANSPORT must be one of: dryrun")

        return cls(
            env=env,
            log_level=log_level,
            state_uri=state_uri,
            heartbeat_timeout_seconds=heartbeat_timeout_seconds,
            sweep_interval_seconds=sweep_interval_seconds,
            max_parallelism=max_parallelism,
            max_attempts=max_attempts,
            backoff_seconds=backoff_seconds,
            transfer_timeout_seconds=transfer_timeout_seconds,
            install_timeout_seconds=install_timeout_seconds,
            health_timeout_seconds=health_timeout_seconds,
            rollback_batch_size=rollback_batch_size,
            wave_failure_threshold=wave_failure_threshold,
            max_caution_extensions=max_caution_extensions,
            caution_extension_seconds=caution_extension_seconds,
            catchup_settle_seconds=catchup_settle_seconds,
            catchup_max_attempts=catchup_max_attempts,
            transport=transport,
            signing_secret=os.getenv("FLEET_SIGNING_SECRET") or None,
            api_key=os.getenv("FLEET_API_KEY") or None,
        )


def _parse_positive_int(name: str, default: str) -> int:
    raw = os.getenv(name, default)
    try:
        value = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer") from exc
    if value <= 0:
        raise ValueError(f"{name} must be > 0")
    return value


def _parse_float(value: str) -> float:
    try:
        return float(value)
    except ValueError as exc:
        raise ValueError(f"Invalid float value: {value}") from exc


@lru_cache(maxsize=1)
def get_config() -> Config:
    return Config.from_env()
