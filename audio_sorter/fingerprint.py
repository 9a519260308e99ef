"""
Acoustic fingerprinting through Chromaprint's ``fpcalc`` tool.

Installation:
  macOS:  brew install chromaprint
  Linux:  apt install libchromaprint-tools
  or set FPCALC_PATH to the binary.

The fingerprint is the compressed base64 string fpcalc prints by default
(the same format AcoustID accepts), treated as an opaque token for equality.
"""

from __future__ import annotations

import json
import shutil
import subprocess
from pathlib import Path
from typing import Optional

from loguru import logger

from .errors import FingerprintError

DEFAULT_LENGTH_SECONDS = 120


def find_fpcalc() -> Optional[str]:
    """Return the fpcalc executable on PATH, or None."""
    return shutil.which("fpcalc")


class Fingerprinter:
    """
    Computes Chromaprint fingerprints with a per-call timeout.

    Usage:
        fp = Fingerprinter(timeout=60).compute("/music/song.flac")
    """

    def __init__(
        self,
        fpcalc_path: Optional[str] = None,
        timeout: float = 60.0,
        length: int = DEFAULT_LENGTH_SECONDS,
    ) -> None:
        self.fpcalc_path = fpcalc_path or find_fpcalc()
        self.timeout = timeout
        self.length = length
        if not self.fpcalc_path:
            logger.warning("fpcalc not found — fingerprinting will fail. Install Chromaprint or set FPCALC_PATH.")

    @property
    def available(self) -> bool:
        return bool(self.fpcalc_path)

    def compute(self, path: str) -> str:
        """
        Fingerprint the audio file at *path*.

        Raises:
            FingerprintError: fpcalc missing, timed out, exited non-zero, or
                produced no fingerprint.
        """
        if not self.fpcalc_path:
            raise FingerprintError("fpcalc executable not found")

        cmd = [self.fpcalc_path, "-json", "-length", str(self.length), str(Path(path))]
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as exc:
            raise FingerprintError(f"fpcalc timed out after {self.timeout:.0f}s") from exc
        except OSError as exc:
            raise FingerprintError(f"Could not run fpcalc: {exc}") from exc

        if result.returncode != 0:
            detail = (result.stderr or "").strip().splitlines()
            raise FingerprintError(
                f"fpcalc exited with {result.returncode}: {detail[-1] if detail else 'no output'}"
            )

        try:
            data = json.loads(result.stdout)
        except json.JSONDecodeError as exc:
            raise FingerprintError("fpcalc returned invalid JSON") from exc

        fingerprint = data.get("fingerprint")
        if not fingerprint or not isinstance(fingerprint, str):
            raise FingerprintError("No fingerprint generated")
        return fingerprint
