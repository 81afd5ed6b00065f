"""Invoke the external block-compression tool (KTX-Software ``ktx create``).

The rest of the pipeline only sees the narrow `TextureEncoder` interface:
ordered input images + settings + output path in, `EncoderResult` out. Tests
substitute their own encoder and never need the real executable.
"""

import logging
import os
import platform
import shutil
import signal
import subprocess
import sys
import threading
import time
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from .. import BIN_DIR
from ..config import CompressionConfig
from ..core import ConversionCancelledError, ExternalToolFailureError, IOFailureError

logger = logging.getLogger("texture_pipeline.encode")

# Known Windows NTSTATUS crash codes (as signed int32)
_CRASH_CODES_WIN = {
    -1073741819: "ACCESS_VIOLATION (0xC0000005)",
    -1073741795: "ILLEGAL_INSTRUCTION (0xC000001D)",
    -1073740791: "STACK_BUFFER_OVERRUN (0xC0000409)",
    -1073741571: "STACK_OVERFLOW (0xC00000FD)",
    -1073741515: "DLL_NOT_FOUND (0xC0000135)",
    -1073741511: "ENTRYPOINT_NOT_FOUND (0xC0000139)",
}

_MAX_ATTEMPTS = 3
_POLL_SECONDS = 0.25


def _is_crash_code(returncode: int) -> Optional[str]:
    """Return a human-readable crash description, or None if not a crash."""
    if sys.platform == "win32":
        desc = _CRASH_CODES_WIN.get(returncode)
        if desc:
            return desc
        if returncode < 0:
            return f"NTSTATUS 0x{returncode & 0xFFFFFFFF:08X}"
        return None
    # Unix: negative returncode means killed by signal
    if returncode < 0:
        sig_num = -returncode
        try:
            return f"{signal.Signals(sig_num).name} (signal {sig_num})"
        except ValueError:
            return f"signal {sig_num}"
    return None


def _forward_output(text: str, tool_label: str, stream_name: str,
                    level: int, max_lines: int = 120) -> None:
    """Log subprocess output line-by-line at the given level."""
    if not text or not text.strip():
        return
    lines = text.splitlines()
    if len(lines) > max_lines:
        logger.log(level, "[%s] ... %d earlier %s lines omitted",
                   tool_label, len(lines) - max_lines, stream_name)
        lines = lines[-max_lines:]
    for line in lines:
        if len(line) > 500:
            line = line[:500] + "..."
        logger.log(level, "[%s] %s: %s", tool_label, stream_name, line)


def _is_transient_tool_failure(text: str, returncode: int) -> bool:
    """Return True when the failure likely came from temporary I/O contention."""
    msg = (text or "").lower()
    transient_markers = (
        "sharing violation",
        "being used by another process",
        "temporarily unavailable",
        "resource busy",
        "access is denied",
    )
    if any(marker in msg for marker in transient_markers):
        return True
    return returncode == 1 and ("lock" in msg or "busy" in msg)


@dataclass
class EncoderSettings:
    """Arguments handed to the tool, derived from `CompressionConfig`."""

    vk_format: str = "R8G8B8A8_UNORM"
    encode: str = "uastc"
    uastc_quality: int = 2
    uastc_rdo: bool = False
    uastc_rdo_lambda: float = 1.0
    etc1s_compression_level: int = 1
    etc1s_quality: int = 128
    supercompression: bool = True
    zstd_level: int = 15
    threads: int = 0
    generate_mipmaps: bool = False
    mipmap_filter: str = "lanczos4"
    normal_mode: bool = False
    timeout_seconds: int = 300

    @classmethod
    def from_config(cls, cfg: CompressionConfig, srgb: bool = False,
                    generate_mipmaps: bool = False, mipmap_filter: str = "lanczos4",
                    normal_mode: bool = False) -> "EncoderSettings":
        return cls(
            vk_format="R8G8B8A8_SRGB" if srgb else "R8G8B8A8_UNORM",
            encode=cfg.encode,
            uastc_quality=cfg.uastc_quality,
            uastc_rdo=cfg.uastc_rdo,
            uastc_rdo_lambda=cfg.uastc_rdo_lambda,
            etc1s_compression_level=cfg.etc1s_compression_level,
            etc1s_quality=cfg.etc1s_quality,
            supercompression=cfg.supercompression,
            zstd_level=cfg.zstd_level,
            threads=cfg.threads,
            generate_mipmaps=generate_mipmaps,
            mipmap_filter=mipmap_filter,
            normal_mode=normal_mode,
            timeout_seconds=cfg.tool_timeout_seconds,
        )


@dataclass
class EncoderResult:
    exit_code: int
    duration: float
    stdout: str = ""
    stderr: str = ""
    output_path: str = ""
    command: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.exit_code == 0


class TextureEncoder:
    """Interface: ordered input images + settings -> one container file."""

    label = "encoder"

    def encode(self, input_paths: Sequence[str], output_path: str,
               settings: EncoderSettings,
               cancel_event: Optional[threading.Event] = None) -> EncoderResult:
        raise NotImplementedError


def build_ktx_create_command(tool_path: str, input_paths: Sequence[str],
                             output_path: str, settings: EncoderSettings) -> List[str]:
    """Assemble ``ktx create`` arguments; inputs always precede the output."""
    uastc = settings.encode == "uastc"
    cmd = [tool_path, "create", "--format", settings.vk_format,
           "--encode", "uastc" if uastc else "basis-lz"]
    if len(input_paths) > 1:
        cmd += ["--levels", str(len(input_paths))]
    elif settings.generate_mipmaps:
        cmd += ["--generate-mipmap", "--mipmap-filter", settings.mipmap_filter]
    if uastc:
        cmd += ["--uastc-quality", str(settings.uastc_quality)]
        if settings.uastc_rdo:
            cmd += ["--uastc-rdo", "--uastc-rdo-l", f"{settings.uastc_rdo_lambda:.3f}"]
        # BasisLZ is itself a supercompression scheme; zstd only applies to UASTC.
        if settings.supercompression:
            cmd += ["--zstd", str(settings.zstd_level)]
    else:
        cmd += ["--clevel", str(settings.etc1s_compression_level),
                "--qlevel", str(settings.etc1s_quality)]
    if settings.threads > 0:
        cmd += ["--threads", str(settings.threads)]
    if settings.normal_mode:
        cmd.append("--normal-mode")
    cmd += [str(p) for p in input_paths]
    cmd.append(str(output_path))
    return cmd


def _discard(path: str):
    try:
        os.remove(path)
        logger.debug("Discarded partial output %s", path)
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.warning("Could not remove partial output %s: %s", path, exc)


class KtxCreateEncoder(TextureEncoder):
    """Run ``ktx create`` as a subprocess with retries and crash reporting."""

    label = "ktx"

    def __init__(self, tool_path: str = ""):
        self._configured_path = tool_path
        self._tool_path: Optional[str] = None
        self._tool_resolved = False

    def resolve_tool(self) -> Optional[str]:
        """Resolve and cache the ``ktx`` executable path."""
        if self._tool_resolved:
            return self._tool_path
        self._tool_resolved = True

        tool_path = None
        if self._configured_path:
            if os.path.isfile(self._configured_path):
                tool_path = self._configured_path
            else:
                logger.warning("Configured ktx tool_path does not exist: %s",
                               self._configured_path)
        if not tool_path:
            tool_path = shutil.which("ktx")
        if not tool_path:
            exe_suffix = ".exe" if platform.system() == "Windows" else ""
            candidates = []
            for ktx_dir in sorted(BIN_DIR.glob("KTX-Software*"), reverse=True):
                candidates.append(ktx_dir / f"ktx{exe_suffix}")
                candidates.append(ktx_dir / "bin" / f"ktx{exe_suffix}")
            candidates.append(BIN_DIR / f"ktx{exe_suffix}")
            for candidate in candidates:
                if candidate.is_file():
                    tool_path = str(candidate)
                    break

        if tool_path:
            logger.info("Using KTX tool: %s", tool_path)
        else:
            logger.warning(
                "ktx tool not found. Install KTX-Software 4.x from "
                "https://github.com/KhronosGroup/KTX-Software or set "
                "compression.tool_path."
            )
        self._tool_path = tool_path
        return tool_path

    def encode(self, input_paths, output_path, settings, cancel_event=None):
        if not input_paths:
            raise ValueError("At least one input image is required")
        for path in input_paths:
            if not os.path.isfile(path):
                raise IOFailureError("Encoder input missing", stage="encode", path=path)

        tool_path = self.resolve_tool()
        if not tool_path:
            raise ExternalToolFailureError(
                "ktx tool not found", stage="encode", path=output_path,
                expected="ktx on PATH, in BIN_DIR or compression.tool_path",
                actual=None,
            )

        os.makedirs(os.path.dirname(output_path) or ".", exist_ok=True)
        _discard(output_path)
        cmd = build_ktx_create_command(tool_path, input_paths, output_path, settings)
        try:
            result = self._run_tool(cmd, output_path, settings.timeout_seconds, cancel_event)
        except ConversionCancelledError:
            _discard(output_path)
            raise

        if not result.success:
            _discard(output_path)
            raise ExternalToolFailureError(
                "ktx create failed", stage="encode", path=output_path,
                expected=0, actual=result.exit_code, exit_code=result.exit_code,
            )
        if not os.path.isfile(output_path) or os.path.getsize(output_path) == 0:
            raise ExternalToolFailureError(
                "ktx create exited cleanly but produced no output",
                stage="encode", path=output_path, expected="non-empty file",
                actual=None, exit_code=result.exit_code,
            )
        logger.info(
            "ktx create: %d level input(s) -> %s (%d bytes, %.2fs)",
            len(input_paths), output_path, os.path.getsize(output_path), result.duration,
        )
        return result

    @staticmethod
    def _wait(proc: subprocess.Popen, timeout: int,
              cancel_event: Optional[threading.Event]):
        """Wait for *proc*, honoring the timeout and cancellation.

        Returns ``(stdout, stderr, timed_out)``.
        """
        deadline = time.monotonic() + timeout
        while True:
            try:
                stdout, stderr = proc.communicate(timeout=_POLL_SECONDS)
                return stdout or "", stderr or "", False
            except subprocess.TimeoutExpired:
                pass
            if cancel_event is not None and cancel_event.is_set():
                proc.kill()
                proc.communicate()
                raise ConversionCancelledError("Encoding cancelled", stage="encode")
            if time.monotonic() >= deadline:
                proc.kill()
                stdout, stderr = proc.communicate()
                return stdout or "", stderr or "", True

    def _run_tool(self, cmd: List[str], source_info: str, timeout: int,
                  cancel_event: Optional[threading.Event] = None) -> EncoderResult:
        """Run the tool with output forwarding, crash detection and retries."""
        logger.debug("Running %s: %s", self.label, " ".join(cmd))
        output_path = cmd[-1]
        result = None
        for attempt in range(1, _MAX_ATTEMPTS + 1):
            started = time.monotonic()
            try:
                proc = subprocess.Popen(
                    cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True,
                    encoding="utf-8", errors="replace",
                )
            except FileNotFoundError as exc:
                raise ExternalToolFailureError(
                    "ktx tool not found", stage="encode", path=cmd[0]
                ) from exc
            except PermissionError as exc:
                raise ExternalToolFailureError(
                    "ktx tool is not executable", stage="encode", path=cmd[0]
                ) from exc

            stdout, stderr, timed_out = self._wait(proc, timeout, cancel_event)
            duration = time.monotonic() - started
            if timed_out:
                _forward_output(stdout, self.label, "stdout", logging.ERROR, max_lines=10)
                _forward_output(stderr, self.label, "stderr", logging.ERROR, max_lines=10)
                _discard(output_path)
                raise ExternalToolFailureError(
                    f"ktx create timed out after {timeout}s", stage="encode",
                    path=source_info, expected=f"<= {timeout}s",
                    actual=f"{duration:.1f}s",
                )

            result = EncoderResult(proc.returncode, duration, stdout, stderr,
                                   output_path, list(cmd))
            if proc.returncode == 0:
                _forward_output(stdout, self.label, "stdout", logging.DEBUG, max_lines=200)
                _forward_output(stderr, self.label, "stderr", logging.DEBUG, max_lines=200)
                return result

            _forward_output(stdout, self.label, "stdout", logging.ERROR)
            _forward_output(stderr, self.label, "stderr", logging.ERROR)
            crash = _is_crash_code(proc.returncode)
            if crash:
                logger.error("%s crashed processing %s: %s (exit code %d)",
                             self.label, source_info, crash, proc.returncode)
            else:
                logger.error("%s failed for %s with exit code %d",
                             self.label, source_info, proc.returncode)

            if (attempt < _MAX_ATTEMPTS and not crash
                    and _is_transient_tool_failure(f"{stdout}\n{stderr}", proc.returncode)):
                delay = 0.3 * attempt
                logger.warning(
                    "%s retrying after transient failure (%s), attempt %d/%d in %.1fs",
                    self.label, source_info, attempt + 1, _MAX_ATTEMPTS, delay,
                )
                time.sleep(delay)
                continue
            break
        return result
