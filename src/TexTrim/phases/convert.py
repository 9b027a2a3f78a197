"""Drive the external texture converter (texconv-compatible command line).

One `Converter.convert` call is one blocking process invocation. The
process exit code is the only success signal; retries are the
scheduler's business.
"""

import logging
import os
import platform
import shutil
import subprocess
import sys
from pathlib import Path
from typing import Optional, Tuple

from ..config import ConverterConfig
from ..errors import ConversionError
from ..core.records import Recipe

logger = logging.getLogger("texture_optimizer.convert")

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
            import signal
            return f"{signal.Signals(sig_num).name} (signal {sig_num})"
        except ValueError:
            return f"signal {sig_num}"
    return None


def _forward_output(text: str, tool_label: str, stream_name: str,
                    level: int, max_lines: int = 40) -> None:
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


class Converter:
    """Run the configured converter for one texture at a time."""

    def __init__(self, cfg: ConverterConfig):
        self.cfg = cfg
        self._tool_path: Optional[str] = None
        self._tool_resolved = False

    def resolve_tool(self) -> Optional[str]:
        """Resolve and cache the converter executable.

        Order: ``tool_path`` from config, ``PATH``, then the bundled
        ``bin/`` directory.
        """
        if self._tool_resolved:
            return self._tool_path
        self._tool_resolved = True

        tool_path = self.cfg.tool_path or shutil.which(self.cfg.tool)
        if not tool_path:
            from .. import BIN_DIR
            exe_suffix = ".exe" if platform.system() == "Windows" else ""
            candidate = BIN_DIR / f"{self.cfg.tool}{exe_suffix}"
            if candidate.is_file():
                tool_path = str(candidate)
                logger.info("Using bundled converter: %s", tool_path)

        if not tool_path:
            logger.warning(
                "Converter '%s' not found. Set converter.tool_path in config "
                "or install it on PATH.", self.cfg.tool,
            )
        self._tool_path = tool_path
        return tool_path

    def build_command(self, tool_path: str, input_path: str, output_dir: str,
                      recipe: Recipe, target_size: Optional[Tuple[int, int]] = None) -> list:
        cmd = [
            tool_path, "-nologo", "-y",
            "-f", recipe.target_format.value,
            "-o", output_dir,
        ]
        if target_size:
            cmd.extend(["-w", str(target_size[0]), "-h", str(target_size[1])])
        # texconv: -m 0 builds the full chain, -m 1 keeps only the top level.
        cmd.extend(["-m", "0" if recipe.resize.keep_mips else "1"])
        cmd.extend(self.cfg.extra_args)
        cmd.append(input_path)
        return cmd

    def convert(self, input_path: str, output_dir: str, recipe: Recipe,
                target_size: Optional[Tuple[int, int]] = None) -> str:
        """Convert ``input_path`` into ``output_dir``.

        Returns the path of the written ``.dds`` file.

        Raises:
            ConversionError: tool missing, nonzero exit, timeout, or no
                output file after a zero exit.
        """
        tool_path = self.resolve_tool()
        if not tool_path:
            raise ConversionError(f"converter '{self.cfg.tool}' is not available")

        os.makedirs(output_dir, exist_ok=True)
        cmd = self.build_command(tool_path, input_path, output_dir, recipe, target_size)
        label = self.cfg.tool
        logger.debug("Running %s: %s", label, " ".join(cmd))
        try:
            proc = subprocess.run(
                cmd, capture_output=True, timeout=self.cfg.timeout_seconds, text=True,
                encoding="utf-8", errors="replace",
            )
        except FileNotFoundError as exc:
            raise ConversionError(f"{label} not found: {cmd[0]}") from exc
        except PermissionError as exc:
            raise ConversionError(f"{label} is not executable: {cmd[0]}") from exc
        except subprocess.TimeoutExpired as exc:
            raise ConversionError(
                f"{label} timed out after {self.cfg.timeout_seconds}s for {input_path}",
                timed_out=True,
            ) from exc

        if proc.returncode != 0:
            _forward_output(proc.stdout, label, "stdout", logging.DEBUG)
            _forward_output(proc.stderr, label, "stderr", logging.WARNING)
            crash = _is_crash_code(proc.returncode)
            detail = f"crashed: {crash}" if crash else f"exit code {proc.returncode}"
            raise ConversionError(
                f"{label} failed for {input_path} ({detail})",
                returncode=proc.returncode,
            )
        _forward_output(proc.stdout, label, "stdout", logging.DEBUG)

        # texconv writes <output_dir>/<input stem>.dds, sometimes upper-cased.
        stem = Path(input_path).stem
        for name in (f"{stem}.dds", f"{stem}.DDS"):
            produced = os.path.join(output_dir, name)
            if os.path.isfile(produced):
                return produced
        raise ConversionError(
            f"{label} exited 0 but wrote no output for {input_path}",
            returncode=proc.returncode,
        )
