"""Drive the external KTX-Software encoder (``toktx`` or ``ktx create``).

Block compression is never done in-process: the encoder is located on
disk, fed pre-built mip PNGs and run as a subprocess.
"""

import asyncio
import logging
import os
import platform
import shutil
import signal
import sys
from pathlib import Path
from typing import List, Optional

from ..config import (
    CompressionFormat,
    CompressionSettings,
    EncoderConfig,
    SupercompressionScheme,
)
from ..errors import ConfigurationError, EncodingError

logger = logging.getLogger("texture_conversion.encoder")

_VERSION_TIMEOUT = 30

# Known Windows NTSTATUS crash codes (as signed int32)
_CRASH_CODES_WIN = {
    -1073741819: "ACCESS_VIOLATION (0xC0000005)",
    -1073741795: "ILLEGAL_INSTRUCTION (0xC000001D)",
    -1073740791: "STACK_BUFFER_OVERRUN (0xC0000409)",
    -1073741571: "STACK_OVERFLOW (0xC00000FD)",
    -1073741515: "DLL_NOT_FOUND (0xC0000135)",
}


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
        omitted = len(lines) - max_lines
        logger.log(level, "[%s] ... %d earlier %s lines omitted",
                   tool_label, omitted, stream_name)
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
    )
    if any(marker in msg for marker in transient_markers):
        return True
    return returncode in (1, 2) and ("lock" in msg or "busy" in msg)


def tool_flavor(tool_path: str, configured: str = "auto") -> str:
    """Return ``"toktx"`` or ``"ktx"`` for a resolved executable."""
    if configured in ("toktx", "ktx"):
        return configured
    stem = Path(tool_path).stem.lower()
    return "toktx" if stem.startswith("toktx") else "ktx"


async def _kill(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is None:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
    await proc.wait()


class KtxEncoder:
    """Locate, probe and run the KTX2 encoder for one conversion at a time."""

    def __init__(self, config: Optional[EncoderConfig] = None):
        self.config = config or EncoderConfig()
        self._tool_path: Optional[str] = None
        self._tool_resolved = False

    @property
    def flavor(self) -> str:
        tool = self.resolve_tool()
        return tool_flavor(tool or self.config.tool, self.config.tool)

    def resolve_tool(self) -> Optional[str]:
        """Resolve and cache the encoder path: config, PATH, then bundled bin/."""
        if self._tool_resolved:
            return self._tool_path
        self._tool_resolved = True

        tool_path = self.config.tool_path or None
        if tool_path and not os.path.isfile(tool_path):
            logger.warning("Configured encoder.tool_path does not exist: %s", tool_path)
            tool_path = None

        names = ["toktx", "ktx"] if self.config.tool == "auto" else [self.config.tool]
        if not tool_path:
            for name in names:
                tool_path = shutil.which(name)
                if tool_path:
                    break

        # Fallback: check bundled tools in bin/ (platform-aware)
        if not tool_path:
            from .. import BIN_DIR
            exe_suffix = ".exe" if platform.system() == "Windows" else ""
            candidates = []
            for ktx_dir in sorted(BIN_DIR.glob("KTX-Software*"), reverse=True):
                if ktx_dir.is_dir():
                    for name in names:
                        candidates.append(ktx_dir / "bin" / f"{name}{exe_suffix}")
                        candidates.append(ktx_dir / f"{name}{exe_suffix}")
            for name in names:
                candidates.append(BIN_DIR / f"{name}{exe_suffix}")
            for candidate in candidates:
                if candidate.is_file():
                    tool_path = str(candidate)
                    logger.info("Using bundled encoder: %s", tool_path)
                    break

        if not tool_path:
            logger.warning(
                "KTX encoder '%s' not found. Set encoder.tool_path in config "
                "or install KTX-Software on PATH.", self.config.tool,
            )
        self._tool_path = tool_path
        return tool_path

    async def is_available(self) -> bool:
        """Return True when ``<tool> --version`` exits with code 0."""
        tool = self.resolve_tool()
        if not tool:
            return False
        try:
            proc = await asyncio.create_subprocess_exec(
                tool, "--version",
                stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            logger.error("Encoder %s could not be started: %s", tool, exc)
            return False
        try:
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=_VERSION_TIMEOUT)
        except asyncio.TimeoutError:
            await _kill(proc)
            logger.error("Encoder %s did not answer --version in %ds", tool, _VERSION_TIMEOUT)
            return False
        except asyncio.CancelledError:
            await _kill(proc)
            raise
        if proc.returncode != 0:
            logger.warning("Encoder %s --version exited with %d", tool, proc.returncode)
            return False
        logger.debug("Encoder version: %s", stdout.decode(errors="replace").strip())
        return True

    def build_command(self, mip_paths: List[str], output_path: str,
                      settings: CompressionSettings, srgb: bool,
                      has_alpha: bool = True) -> List[str]:
        """Build the argv for the resolved tool flavor."""
        tool = self.resolve_tool()
        if not tool:
            raise ConfigurationError(
                f"KTX encoder '{self.config.tool}' not found; set encoder.tool_path"
            )
        if not mip_paths:
            raise ValueError("At least one input image is required")
        if self.flavor == "toktx":
            return [tool] + self._toktx_args(mip_paths, output_path, settings, srgb, has_alpha)
        return [tool] + self._ktx_create_args(mip_paths, output_path, settings, srgb, has_alpha)

    @staticmethod
    def _toktx_args(mip_paths, output_path, settings, srgb, has_alpha) -> List[str]:
        args = ["--t2"]
        if settings.compression_format == CompressionFormat.UASTC:
            args += ["--encode", "uastc", "--uastc_quality", str(settings.uastc_quality)]
            if settings.use_rdo:
                args += ["--uastc_rdo_l", f"{settings.rdo_lambda:g}"]
            scheme = settings.supercompression_scheme
            if scheme == SupercompressionScheme.ZSTD:
                args += ["--zcmp", str(settings.supercompression_level)]
            elif scheme == SupercompressionScheme.ZLIB:
                logger.warning("toktx has no zlib supercompression; writing without it")
        else:
            args += ["--encode", "etc1s",
                     "--clevel", str(settings.compression_level),
                     "--qlevel", str(settings.quality_level)]
        args += ["--assign_oetf", "srgb" if srgb else "linear"]
        args += ["--target_type", "RGBA" if has_alpha else "RGB"]
        if len(mip_paths) > 1:
            args += ["--mipmap", "--levels", str(len(mip_paths))]
        elif not settings.use_custom_mipmaps:
            args.append("--genmipmap")
        if settings.threads > 0:
            args += ["--threads", str(settings.threads)]
        return args + [output_path] + list(mip_paths)

    @staticmethod
    def _ktx_create_args(mip_paths, output_path, settings, srgb, has_alpha) -> List[str]:
        channels = "R8G8B8A8" if has_alpha else "R8G8B8"
        args = ["create", "--format", f"{channels}_{'SRGB' if srgb else 'UNORM'}"]
        if settings.compression_format == CompressionFormat.UASTC:
            args += ["--encode", "uastc", "--uastc-quality", str(settings.uastc_quality)]
            if settings.use_rdo:
                args += ["--uastc-rdo", "--uastc-rdo-l", f"{settings.rdo_lambda:g}"]
            scheme = settings.supercompression_scheme
            if scheme == SupercompressionScheme.ZSTD:
                args += ["--zstd", str(settings.supercompression_level)]
            elif scheme == SupercompressionScheme.ZLIB:
                args += ["--zlib", str(settings.supercompression_level)]
        else:
            args += ["--encode", "basis-lz",
                     "--clevel", str(settings.compression_level),
                     "--qlevel", str(settings.quality_level)]
        if len(mip_paths) > 1:
            args += ["--levels", str(len(mip_paths))]
        elif not settings.use_custom_mipmaps:
            args.append("--generate-mipmap")
        if settings.threads > 0:
            args += ["--threads", str(settings.threads)]
        return args + list(mip_paths) + [output_path]

    async def encode(self, mip_paths: List[str], output_path: str,
                     settings: CompressionSettings, srgb: bool,
                     has_alpha: bool = True) -> str:
        """Run the encoder once and return its combined output.

        Raises `ConfigurationError` when no encoder is installed and
        `EncodingError` on a nonzero exit, a timeout or a missing output.
        Cancellation kills the running process before propagating.
        """
        cmd = self.build_command(mip_paths, output_path, settings, srgb, has_alpha)
        tool_label = self.flavor
        os.makedirs(os.path.dirname(output_path) or ".", exist_ok=True)
        logger.debug("Running %s: %s", tool_label, " ".join(cmd))

        max_attempts = max(1, self.config.max_attempts)
        timeout = max(1, self.config.timeout_seconds)
        for attempt in range(1, max_attempts + 1):
            try:
                proc = await asyncio.create_subprocess_exec(
                    *cmd, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE,
                )
            except OSError as exc:
                raise EncodingError(f"{tool_label} could not be started: {exc}") from exc

            try:
                stdout_b, stderr_b = await asyncio.wait_for(proc.communicate(), timeout=timeout)
            except asyncio.TimeoutError:
                await _kill(proc)
                raise EncodingError(
                    f"{tool_label} timed out after {timeout}s for {output_path}"
                ) from None
            except asyncio.CancelledError:
                await _kill(proc)
                logger.info("%s cancelled; process terminated (%s)", tool_label, output_path)
                raise

            stdout = stdout_b.decode("utf-8", errors="replace")
            stderr = stderr_b.decode("utf-8", errors="replace")
            merged_output = f"{stdout}\n{stderr}".strip()

            if proc.returncode == 0:
                _forward_output(stdout, tool_label, "stdout", logging.DEBUG, max_lines=200)
                _forward_output(stderr, tool_label, "stderr", logging.DEBUG, max_lines=200)
                if not os.path.isfile(output_path) or os.path.getsize(output_path) == 0:
                    raise EncodingError(
                        f"{tool_label} exited cleanly but produced no output: {output_path}",
                        returncode=0, output=merged_output,
                    )
                return merged_output

            # Failure
            _forward_output(stdout, tool_label, "stdout", logging.ERROR)
            _forward_output(stderr, tool_label, "stderr", logging.ERROR)
            crash = _is_crash_code(proc.returncode)
            if (attempt < max_attempts and not crash
                    and _is_transient_tool_failure(merged_output, proc.returncode)):
                delay = 0.3 * attempt
                logger.warning(
                    "%s retrying after transient failure (%s), attempt %d/%d in %.1fs",
                    tool_label, output_path, attempt + 1, max_attempts, delay,
                )
                await asyncio.sleep(delay)
                continue
            if crash:
                message = (f"{tool_label} crashed: {crash} "
                           f"(exit code {proc.returncode})")
            else:
                message = f"{tool_label} failed with exit code {proc.returncode}"
            if merged_output:
                message = f"{message}: {merged_output.splitlines()[-1]}"
            raise EncodingError(message, returncode=proc.returncode, output=merged_output)

        raise EncodingError(f"{tool_label} failed after {max_attempts} attempts")
