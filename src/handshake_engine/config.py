"""Configuration and credential-record files for the ``handshake`` CLI.

The engine itself never touches the filesystem; this module is how the
command-line front end gets its inputs:

* **Directory layout** -- XDG Base Directory compliant on Linux/BSD,
  ``~/.handshake-engine/`` on macOS and Windows. See :func:`get_config_dir`.
* **Engine config** -- an optional ``config.json`` in the config directory,
  deserialised into :class:`~handshake_engine.models.EngineConfig`.
* **Credential records** -- one JSON file per handshake, loaded with
  :func:`load_record` and written back with :func:`save_record` when tokens
  change.
* **Credential references** -- field values written as ``env:NAME`` or
  ``file:PATH`` are expanded by :func:`resolve_credential` so secrets need
  not live in the record file.

All file writes use an atomic temp-file-then-rename strategy
(:func:`_atomic_write`).
"""

from __future__ import annotations

import json
import os
import platform
import tempfile
from pathlib import Path
from typing import Any, Optional

from handshake_engine.exceptions import ConfigError
from handshake_engine.models import CredentialRecord, EngineConfig

_APP_NAME = "handshake-engine"
_CONFIG_FILENAME = "config.json"
_CREDENTIAL_PREFIXES = ("env:", "file:")


# --- XDG path resolution ---


def _is_xdg_platform() -> bool:
    """Return True if the platform supports XDG Base Directory spec (Linux/FreeBSD)."""
    return platform.system() == "Linux" or platform.system().endswith("BSD")


def get_config_dir() -> Path:
    """Return the configuration directory, creating it if necessary.

    On Linux/BSD: ``$XDG_CONFIG_HOME/handshake-engine/`` (default
    ``~/.config/handshake-engine/``). On macOS/Windows: ``~/.handshake-engine/``.

    Returns:
        Absolute path to the configuration directory (guaranteed to exist).
    """
    if _is_xdg_platform():
        env_value = os.environ.get("XDG_CONFIG_HOME", "")
        base = Path(env_value) if env_value else Path.home() / ".config"
        path = base / _APP_NAME
    else:
        path = Path.home() / f".{_APP_NAME}"
    path.mkdir(parents=True, exist_ok=True)
    return path


# --- Atomic file writes ---


def _atomic_write(path: Path, data: str) -> None:
    """Write data to file atomically using temp file + rename.

    The temporary file is created in the same directory as *path* so that
    ``os.replace`` is an atomic rename on POSIX systems.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = None
    tmp_path: Optional[str] = None
    try:
        fd = tempfile.NamedTemporaryFile(
            mode="w",
            dir=path.parent,
            prefix=f".{path.name}.",
            suffix=".tmp",
            delete=False,
            encoding="utf-8",
        )
        tmp_path = fd.name
        fd.write(data)
        fd.flush()
        os.fsync(fd.fileno())
        fd.close()
        fd = None
        os.replace(tmp_path, path)
    except BaseException:
        if fd is not None:
            fd.close()
        if tmp_path is not None:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
        raise


# --- Engine config ---


def load_engine_config(path: Optional[Path] = None) -> EngineConfig:
    """Load engine defaults from *path* (``<config_dir>/config.json`` by default).

    Returns:
        The deserialised :class:`~handshake_engine.models.EngineConfig`, or
        a default instance when the file does not exist.

    Raises:
        ConfigError: If the file contains invalid JSON or values outside
            their allowed ranges.
    """
    path = path or get_config_dir() / _CONFIG_FILENAME
    if not path.is_file():
        return EngineConfig()
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        return EngineConfig.model_validate(data)
    except (json.JSONDecodeError, ValueError) as exc:
        raise ConfigError(f"Invalid engine config at {path}: {exc}") from exc


# --- Credential records ---


def load_record(path: Path) -> CredentialRecord:
    """Load a credential record from a JSON file.

    Raises:
        ConfigError: If the file does not exist, is not valid JSON, or is
            not a valid record (for example, lacks ``protocol_type``).
    """
    if not path.is_file():
        raise ConfigError(f"Credential record not found: {path}")
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        return CredentialRecord.model_validate(data)
    except (json.JSONDecodeError, ValueError) as exc:
        raise ConfigError(f"Invalid credential record at {path}: {exc}") from exc


def save_record(record: CredentialRecord, path: Path) -> None:
    """Persist *record* atomically to *path*."""
    data = record.model_dump(mode="json", exclude_none=True)
    _atomic_write(path, json.dumps(data, indent=2) + "\n")


# --- Credential source resolution ---


def resolve_credential(source: str) -> str:
    """Resolve a credential from its source descriptor.

    Supported formats:
        - ``"env:VAR_NAME"`` -- reads ``os.environ["VAR_NAME"]``
        - ``"file:/path/to/file"`` -- reads file content, stripped of whitespace

    Raises:
        ConfigError: If the source can't be resolved.
    """
    if source.startswith("env:"):
        var_name = source[4:]
        value = os.environ.get(var_name)
        if value is None:
            raise ConfigError(
                f"Environment variable '{var_name}' is not set (source: {source})"
            )
        return value

    if source.startswith("file:"):
        path = Path(source[5:]).expanduser()
        if not path.is_file():
            raise ConfigError(f"Credential file not found: {path} (source: {source})")
        try:
            return path.read_text(encoding="utf-8").strip()
        except OSError as exc:
            raise ConfigError(f"Cannot read credential file {path}: {exc}") from exc

    raise ConfigError(f"Unknown credential source format: {source}")


def resolve_fields(fields: dict[str, Any]) -> dict[str, Any]:
    """Return *fields* with every ``env:``/``file:`` string value resolved.

    The input is not modified, so the unresolved references are what gets
    written back to disk.
    """
    return {
        key: resolve_credential(value)
        if isinstance(value, str) and value.startswith(_CREDENTIAL_PREFIXES)
        else value
        for key, value in fields.items()
    }
