"""Splice the metadata block into an encoder-produced KTX2 file.

The container is always rewritten in full from its parsed representation
and written to a temp file that is renamed over the destination, so the
output path only ever holds a complete, verified container.
"""

import logging
import os
import shutil
import threading
from typing import Optional

from ..core import IOFailureError, Ktx2Container, MalformedContainerError

logger = logging.getLogger("texture_pipeline.inject")

DEFAULT_KEY = "pc.meta"


def _tmp_path_for(path: str) -> str:
    return f"{path}.tmp.{os.getpid()}.{threading.get_ident()}"


def write_atomic(path: str, data: bytes):
    """Write *data* to *path* via temp file + ``os.replace``."""
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    tmp_path = _tmp_path_for(path)
    try:
        with open(tmp_path, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except OSError as exc:
        raise IOFailureError(f"Failed to write container: {exc}", stage="inject",
                             path=path) from exc
    finally:
        if os.path.exists(tmp_path):
            try:
                os.remove(tmp_path)
            except OSError:
                pass


def move_atomic(src: str, dst: str):
    """Move a finished container into place without a partial window at *dst*."""
    os.makedirs(os.path.dirname(dst) or ".", exist_ok=True)
    tmp_path = _tmp_path_for(dst)
    try:
        shutil.copyfile(src, tmp_path)
        os.replace(tmp_path, dst)
    except OSError as exc:
        raise IOFailureError(f"Failed to move container: {exc}", stage="inject",
                             path=dst) from exc
    finally:
        if os.path.exists(tmp_path):
            try:
                os.remove(tmp_path)
            except OSError:
                pass


class MetadataInjector:
    """Insert a key/value entry into a KTX2 container and repair its offsets."""

    def __init__(self, key: str = DEFAULT_KEY):
        self.key = key

    def inject(self, container_path: str, block: bytes,
               output_path: Optional[str] = None) -> Ktx2Container:
        """Rewrite *container_path* with *block* under ``self.key``.

        Writes to *output_path* (default: in place) and returns the parsed
        result. The caller must serialize concurrent rewrites of one path.
        """
        output_path = output_path or container_path
        try:
            with open(container_path, "rb") as f:
                data = f.read()
        except OSError as exc:
            raise IOFailureError(f"Cannot read container: {exc}", stage="inject",
                                 path=container_path) from exc

        source = Ktx2Container.parse(data, path=container_path)
        rewritten = source.with_key_value(self.key, block)
        result = Ktx2Container.parse(rewritten, path=output_path)
        self._verify(source, result, output_path, block)
        write_atomic(output_path, rewritten)
        logger.info(
            "Injected %d-byte '%s' entry into %s (%d -> %d bytes, %d level(s))",
            len(block), self.key, output_path, len(data), len(rewritten),
            len(result.levels),
        )
        return result

    def _verify(self, before: Ktx2Container, after: Ktx2Container, path: str, block: bytes):
        if after.key_values.get(self.key) != bytes(block):
            raise MalformedContainerError(
                "Injected entry did not read back identically", stage="inject",
                path=path, expected=len(block),
                actual=len(after.key_values.get(self.key, b"")),
            )
        if len(before.levels) != len(after.levels):
            raise MalformedContainerError(
                "Level count changed during rewrite", stage="inject", path=path,
                expected=len(before.levels), actual=len(after.levels),
            )
        for index in range(len(before.levels)):
            if before.level_bytes(index) != after.level_bytes(index):
                raise MalformedContainerError(
                    f"Level {index} data moved without its index entry", stage="inject",
                    path=path,
                    expected=before.levels[index].byte_offset,
                    actual=after.levels[index].byte_offset,
                )
        for key, value in before.key_values.items():
            if key != self.key and after.key_values.get(key) != value:
                raise MalformedContainerError(
                    f"Existing key '{key}' changed during rewrite", stage="inject",
                    path=path,
                )
