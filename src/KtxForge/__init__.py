"""Provide package metadata and shared paths for `KtxForge`."""

import logging as _logging
import os as _os
from pathlib import Path as _Path

__version__ = "0.4.0"
_logger = _logging.getLogger("texture_pipeline")


def _bin_dir_candidates():
    env = _os.environ.get("KTXFORGE_BIN_DIR")
    if env:
        yield _Path(env).expanduser()

    pkg_dir = _Path(__file__).resolve().parent
    # Wheel/package-data layout (if bundled).
    yield pkg_dir / "bin"
    # Editable/repo layout: src/KtxForge -> project_root/bin.
    yield pkg_dir.parent.parent / "bin"
    # Working-directory fallback for external deployments.
    yield _Path.cwd() / "bin"


def _resolve_bin_dir() -> _Path:
    seen = []
    for candidate in _bin_dir_candidates():
        seen.append(str(candidate))
        if candidate.is_dir():
            return candidate
    # Keep a deterministic fallback even when missing.
    fallback = _Path(__file__).resolve().parent / "bin"
    _logger.debug(
        "No bundled tool directory found under KTXFORGE_BIN_DIR/package/repo/cwd "
        "(checked: %s). Falling back to %s; the encoder then relies on "
        "compression.tool_path or ktx on PATH, which it tries before this directory.",
        ", ".join(seen),
        fallback,
    )
    return fallback


BIN_DIR = _resolve_bin_dir()

__all__ = ["__version__", "BIN_DIR"]
