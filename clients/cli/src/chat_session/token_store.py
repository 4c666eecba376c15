"""Persist the access/refresh token pair."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

from .config import DEFAULT_TOKEN_PATH


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: Optional[str]


def _atomic_write_json(path: Path, payload: Dict[str, object]) -> None:
    path = path.expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    content = json.dumps(payload, indent=2, sort_keys=True)

    fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        handle.write(content)
        handle.flush()
        os.fsync(handle.fileno())
    os.replace(tmp_path, path)


class MemoryTokenStore:
    def __init__(self, pair: TokenPair | None = None) -> None:
        self._pair = pair

    def load(self) -> Optional[TokenPair]:
        return self._pair

    def save(self, pair: TokenPair) -> None:
        self._pair = pair

    def clear(self) -> None:
        self._pair = None


class FileTokenStore:
    """JSON file holding the token pair, written atomically with 0600 permissions."""

    def __init__(self, path: Path | str = DEFAULT_TOKEN_PATH) -> None:
        self.path = Path(path).expanduser()

    def load(self) -> Optional[TokenPair]:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (json.JSONDecodeError, ValueError):
            return None

        if not isinstance(data, dict):
            return None
        access_token = data.get("access_token")
        refresh_token = data.get("refresh_token")
        if not isinstance(access_token, str) or not access_token:
            return None
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token if isinstance(refresh_token, str) and refresh_token else None,
        )

    def save(self, pair: TokenPair) -> None:
        _atomic_write_json(
            self.path,
            {"access_token": pair.access_token, "refresh_token": pair.refresh_token},
        )

    def clear(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
