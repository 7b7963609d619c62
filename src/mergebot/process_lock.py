from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
import errno
import json
import os
from pathlib import Path
import secrets

from mergebot.config import escaped_bot_name


class ProcessLockError(RuntimeError):
    """Raised when another mergebot process already owns the bot's state."""


@dataclass(frozen=True)
class LockOwner:
    pid: int | None
    bot_name: str | None
    started_at: str | None
    token: str | None


_NO_OWNER = LockOwner(pid=None, bot_name=None, started_at=None, token=None)


def lock_path_for(base_dir: Path, bot_name: str) -> Path:
    return base_dir / f"{escaped_bot_name(bot_name)}.lock"


@contextmanager
def bot_process_lock(*, base_dir: Path, bot_name: str) -> Iterator[Path]:
    lock = BotProcessLock(lock_path=lock_path_for(base_dir, bot_name), bot_name=bot_name)
    lock.acquire()
    try:
        yield lock.path
    finally:
        lock.release()


class BotProcessLock:
    """Exclusive ``O_EXCL`` lock file holding the owner's pid and a random token.

    A lock left behind by a dead process is reclaimed once; release only
    removes the file when it still carries this instance's token.
    """

    def __init__(self, *, lock_path: Path, bot_name: str) -> None:
        self.path = lock_path
        self._bot_name = bot_name
        self._token: str | None = None

    def acquire(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        for _ in range(2):
            try:
                fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
            except FileExistsError:
                if self._reclaim_if_stale():
                    continue
                raise ProcessLockError(self._held_message()) from None
            token = secrets.token_hex(16)
            try:
                payload = {
                    "pid": os.getpid(),
                    "bot_name": self._bot_name,
                    "started_at": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ"),
                    "token": token,
                }
                os.write(fd, (json.dumps(payload, sort_keys=True) + "\n").encode("utf-8"))
                os.fsync(fd)
            except Exception:
                os.close(fd)
                _unlink_quietly(self.path)
                raise
            os.close(fd)
            self._token = token
            return
        raise ProcessLockError(self._held_message())

    def release(self) -> None:
        token, self._token = self._token, None
        if token is None:
            return
        if read_lock_owner(self.path).token != token:
            return
        _unlink_quietly(self.path)

    def _reclaim_if_stale(self) -> bool:
        owner = read_lock_owner(self.path)
        if owner.pid is None or owner.pid == os.getpid():
            return False
        if pid_is_running(owner.pid):
            return False
        try:
            os.unlink(self.path)
        except FileNotFoundError:
            return True
        except OSError:
            return False
        return True

    def _held_message(self) -> str:
        owner = read_lock_owner(self.path)
        details = ", ".join(
            part
            for part in (
                f"pid={owner.pid}" if owner.pid is not None else "",
                f"started_at={owner.started_at}" if owner.started_at else "",
            )
            if part
        )
        suffix = f" ({details})" if details else ""
        return (
            f"Another mergebot instance for bot {self._bot_name!r} appears active{suffix}. "
            f"Lock file: {self.path}. Remove the lock file if that process is gone, then retry."
        )


def read_lock_owner(lock_path: Path) -> LockOwner:
    try:
        text = lock_path.read_text(encoding="utf-8").strip()
    except OSError:
        return _NO_OWNER
    if not text:
        return _NO_OWNER
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        return _NO_OWNER
    if not isinstance(payload, dict):
        return _NO_OWNER
    pid = payload.get("pid")
    bot_name = payload.get("bot_name")
    started_at = payload.get("started_at")
    token = payload.get("token")
    return LockOwner(
        pid=pid if isinstance(pid, int) and not isinstance(pid, bool) else None,
        bot_name=bot_name if isinstance(bot_name, str) else None,
        started_at=started_at if isinstance(started_at, str) else None,
        token=token if isinstance(token, str) else None,
    )


def pid_is_running(pid: int) -> bool:
    if pid < 1:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError as exc:
        return exc.errno != errno.ESRCH
    return True


def _unlink_quietly(path: Path) -> None:
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass
