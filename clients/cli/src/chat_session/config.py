from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

DEFAULT_API_URL = "http://127.0.0.1:8080"
DEFAULT_TOKEN_PATH = Path.home() / ".chat_session" / "tokens.json"


@dataclass(frozen=True)
class ReconnectPolicy:
    initial_delay_s: float = 1.0
    max_delay_s: float = 5.0
    factor: float = 2.0
    jitter: float = 0.5
    max_attempts: int = 0

    @property
    def unlimited(self) -> bool:
        return self.max_attempts <= 0

    def delay_for(self, attempt: int, rand: float = 0.5) -> float:
        """Backoff before reconnect ``attempt`` (1-based); ``rand`` is in [0, 1)."""

        base = self.initial_delay_s * (self.factor ** max(attempt - 1, 0))
        if self.jitter:
            deviation = base * self.jitter
            base = base - deviation + 2 * deviation * rand
        return max(0.0, min(base, self.max_delay_s))


@dataclass(frozen=True)
class ClientConfig:
    api_url: str = DEFAULT_API_URL
    socket_url: str = ""
    role: str = "client"
    token_path: Path = DEFAULT_TOKEN_PATH
    refresh_margin_s: int = 30
    request_timeout_s: float = 15.0
    handshake_timeout_s: float = 10.0
    history_page_size: int = 30
    typing_ttl_ms: int = 2500
    near_bottom_px: int = 120
    max_reauth_attempts: int = 3
    reconnect: ReconnectPolicy = ReconnectPolicy()

    @property
    def resolved_socket_url(self) -> str:
        if self.socket_url:
            return self.socket_url
        return f"{self.api_url.rstrip('/')}/v1/ws"

    @property
    def typing_ttl_s(self) -> float:
        return self.typing_ttl_ms / 1000


def _parse_str(name: str, default: str) -> str:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip()


def _parse_non_negative_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer") from exc
    if parsed < 0:
        raise ValueError(f"{name} must be non-negative")
    return parsed


def _parse_positive_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        parsed = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number") from exc
    if parsed <= 0:
        raise ValueError(f"{name} must be positive")
    return parsed


def load_client_config_from_env() -> ClientConfig:
    api_url = _parse_str("CHAT_API_URL", DEFAULT_API_URL)
    reconnect = ReconnectPolicy(
        initial_delay_s=_parse_positive_float("CHAT_RECONNECT_INITIAL_S", 1.0),
        max_delay_s=_parse_positive_float("CHAT_RECONNECT_MAX_S", 5.0),
        max_attempts=_parse_non_negative_int("CHAT_RECONNECT_ATTEMPTS", 0),
    )
    if reconnect.max_delay_s < reconnect.initial_delay_s:
        raise ValueError("CHAT_RECONNECT_MAX_S must not be below CHAT_RECONNECT_INITIAL_S")
    return ClientConfig(
        api_url=api_url,
        socket_url=_parse_str("CHAT_SOCKET_URL", ""),
        role=_parse_str("CHAT_ROLE", "client"),
        token_path=Path(_parse_str("CHAT_TOKEN_PATH", str(DEFAULT_TOKEN_PATH))).expanduser(),
        refresh_margin_s=_parse_non_negative_int("CHAT_REFRESH_MARGIN_S", 30),
        request_timeout_s=_parse_positive_float("CHAT_REQUEST_TIMEOUT_S", 15.0),
        handshake_timeout_s=_parse_positive_float("CHAT_HANDSHAKE_TIMEOUT_S", 10.0),
        history_page_size=max(1, _parse_non_negative_int("CHAT_HISTORY_PAGE_SIZE", 30)),
        typing_ttl_ms=_parse_non_negative_int("CHAT_TYPING_TTL_MS", 2500),
        near_bottom_px=_parse_non_negative_int("CHAT_NEAR_BOTTOM_PX", 120),
        max_reauth_attempts=max(1, _parse_non_negative_int("CHAT_MAX_REAUTH_ATTEMPTS", 3)),
        reconnect=reconnect,
    )
