"""Remote configuration, per-user credentials and logging setup."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass
from pathlib import Path

from filelock import FileLock, Timeout

from .errors import CorruptError, IOFailureError, NotFoundError
from .ignore import META_DIR
from .objects import atomic_write

HOME_ENV_VAR = "STRATA_HOME"
REMOTE_FILE = "remote.json"
CREDENTIALS_FILE = "credentials.json"


def strata_home() -> Path:
    """Per-user directory: ``$STRATA_HOME`` or ``~/.strata``."""
    override = os.environ.get(HOME_ENV_VAR)
    return Path(override) if override else Path.home() / ".strata"


@dataclass(frozen=True)
class RemoteConfig:
    """Where a repository pushes to and pulls from."""

    base_url: str
    repo_key: str

    @classmethod
    def load(cls, root: str | os.PathLike) -> RemoteConfig:
        path = Path(root) / META_DIR / REMOTE_FILE
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            raise NotFoundError("No remote configured; run `strata remote <url> <repo>` first") from None
        except ValueError as e:
            raise CorruptError(f"Unparsable {REMOTE_FILE}: {e}") from e
        try:
            return cls(base_url=data["baseUrl"], repo_key=data["repoKey"])
        except (KeyError, TypeError) as e:
            raise CorruptError(f"Malformed {REMOTE_FILE}: missing {e}") from e

    def save(self, root: str | os.PathLike) -> None:
        body = {"baseUrl": self.base_url, "repoKey": self.repo_key}
        atomic_write(Path(root) / META_DIR / REMOTE_FILE, json.dumps(body, indent=2).encode("utf-8"))


@dataclass(frozen=True)
class Credentials:
    base_url: str
    user_id: str
    email: str
    token: str


class CredentialStore:
    """Tokens per remote base URL in ``<home>/credentials.json`` (mode 600)."""

    def __init__(self, home: str | os.PathLike | None = None) -> None:
        self.home = Path(home) if home is not None else strata_home()
        self.path = self.home / CREDENTIALS_FILE
        self.lock_path = self.home / (CREDENTIALS_FILE + ".lock")

    def _lock(self) -> FileLock:
        self.home.mkdir(mode=0o700, parents=True, exist_ok=True)
        return FileLock(str(self.lock_path), timeout=10)

    def _read(self) -> dict[str, dict]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except ValueError as e:
            raise CorruptError(f"Unparsable credentials file: {e}") from e
        return data if isinstance(data, dict) else {}

    def _write(self, data: dict[str, dict]) -> None:
        atomic_write(self.path, json.dumps(data, indent=2, sort_keys=True).encode("utf-8"))
        if os.name != "nt":
            os.chmod(self.path, 0o600)

    def get(self, base_url: str) -> Credentials | None:
        entry = self._read().get(base_url.rstrip("/"))
        if not entry:
            return None
        try:
            return Credentials(base_url.rstrip("/"), entry["userId"], entry["email"], entry["token"])
        except KeyError as e:
            raise CorruptError(f"Credentials for {base_url} missing {e}") from e

    def require(self, base_url: str) -> Credentials:
        creds = self.get(base_url)
        if creds is None:
            raise NotFoundError(f"No credentials for {base_url}; run `strata login` first")
        return creds

    def save(self, creds: Credentials) -> None:
        try:
            with self._lock():
                data = self._read()
                entry = asdict(creds)
                data[creds.base_url.rstrip("/")] = {
                    "userId": entry["user_id"],
                    "email": entry["email"],
                    "token": entry["token"],
                }
                self._write(data)
        except Timeout as e:
            raise IOFailureError("Cannot acquire lock on credentials file") from e

    def remove(self, base_url: str) -> bool:
        try:
            with self._lock():
                data = self._read()
                removed = data.pop(base_url.rstrip("/"), None) is not None
                if removed:
                    self._write(data)
                return removed
        except Timeout as e:
            raise IOFailureError("Cannot acquire lock on credentials file") from e


def configure_logging(verbose: bool = False) -> None:
    """Route library logging through rich; DEBUG when verbose."""
    from rich.console import Console
    from rich.logging import RichHandler

    level = logging.DEBUG if verbose else logging.WARNING
    root = logging.getLogger("strata")
    root.handlers[:] = [
        RichHandler(console=Console(stderr=True), show_path=verbose, rich_tracebacks=verbose)
    ]
    root.setLevel(level)
