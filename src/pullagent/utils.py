"""Shared utilities for pullagent."""

import json
import os
import subprocess  # nosec B404
import tempfile
import time
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import structlog

log = structlog.get_logger("pullagent.utils")


def now_iso() -> str:
    return datetime.now(UTC).isoformat()


@contextmanager
def timed_operation(
    name: str,
    log: structlog.stdlib.BoundLogger | None = None,
    **extra: Any,
) -> Iterator[dict[str, Any]]:
    """Context manager that measures elapsed time for an operation.

    Usage::

        with timed_operation("fetch", log=log) as timing:
            do_something()
        print(timing["elapsed_ms"])

    Yields:
        A mutable dict that will contain ``elapsed_ms`` after the block exits.
    """
    start = time.perf_counter()
    result: dict[str, Any] = {}
    try:
        yield result
    finally:
        result["elapsed_ms"] = round((time.perf_counter() - start) * 1000, 2)
        if log:
            log.info(name, duration_ms=result["elapsed_ms"], **extra)


def atomic_write_text(path: Path, content: str, mode: int = 0o644) -> None:
    """Write ``content`` to ``path`` via a temp file and rename.

    Readers see either the old file or the new one, never a partial write.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    tmp_path = Path(tmp_name)
    try:
        os.fchmod(fd, mode)
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(content)
            fh.flush()
            os.fsync(fh.fileno())
        tmp_path.replace(path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise


def atomic_write_json(path: Path, data: Mapping[str, Any], mode: int = 0o644) -> None:
    atomic_write_text(path, json.dumps(data, indent=2, sort_keys=True) + "\n", mode=mode)


def read_json(path: Path) -> dict[str, Any] | None:
    """Return the JSON object stored at ``path``, or None if absent or unreadable."""
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return None
    except (OSError, ValueError):
        log.warning("json_read_failed", path=str(path))
        return None
    return data if isinstance(data, dict) else None


def append_jsonl(path: Path, entry: Mapping[str, Any]) -> None:
    """Append one JSON line to ``path``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as fh:
        fh.write(json.dumps(entry, sort_keys=True) + "\n")


def run_cmd(
    args: Sequence[str],
    *,
    cwd: Path | str | None = None,
    env: Mapping[str, str] | None = None,
    timeout: int = 120,
    input_text: str | None = None,
) -> str | None:
    """Run a command and return stdout, or None on failure."""
    full_env = {**os.environ, **env} if env else None
    try:
        proc = subprocess.run(  # nosec B603
            list(args),
            cwd=cwd,
            env=full_env,
            input=input_text,
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
    except subprocess.TimeoutExpired:
        log.warning("command_timed_out", cmd=" ".join(args), timeout=timeout)
        return None
    except OSError as exc:
        log.warning("command_error", cmd=" ".join(args), error=str(exc))
        return None

    if proc.returncode != 0:
        log.warning(
            "command_failed",
            cmd=" ".join(args),
            returncode=proc.returncode,
            stderr=proc.stderr[:500],
        )
        return None

    return proc.stdout
