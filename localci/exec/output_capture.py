"""
Step output capture.

Raw process output is decoded, masked, and then bounded: results keep at most
TEXT_LIMIT_BYTES per stream and the full masked text spills to the logs
directory when one is configured. Masking always happens before anything is
stored or written.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from ..security.secrets import SecretMasker


@dataclass
class CapturedOutput:
    """Masked, bounded stdout/stderr of one step."""
    stdout: str = ""
    stderr: str = ""
    truncated: bool = False
    stdout_log: Optional[str] = None
    stderr_log: Optional[str] = None


def decode_output(data: Optional[bytes]) -> str:
    if not data:
        return ""
    if isinstance(data, str):
        return data
    return data.decode('utf-8', errors='replace')


class OutputCapture:
    """Masks and truncates step output, spilling full text to logs."""

    TEXT_LIMIT_BYTES = 64 * 1024

    def __init__(self, masker: SecretMasker, logs_dir: Optional[Path] = None):
        """
        Initialize output capture.

        Args:
            masker: Masker applied before anything is kept
            logs_dir: Directory for full output of truncated streams
        """
        self.masker = masker
        self.logs_dir = logs_dir
        if self.logs_dir is not None:
            self.logs_dir.mkdir(exist_ok=True, parents=True)

    def capture(self, stdout: bytes, stderr: bytes, log_name: str) -> CapturedOutput:
        """
        Process one step's raw output.

        Args:
            stdout: Raw stdout bytes
            stderr: Raw stderr bytes
            log_name: File stem for spilled output (e.g. "<job>.<step>")
        """
        result = CapturedOutput()
        result.stdout, truncated_out, result.stdout_log = self._bound(
            self.masker.mask_text(decode_output(stdout)), f"{log_name}.stdout"
        )
        result.stderr, truncated_err, result.stderr_log = self._bound(
            self.masker.mask_text(decode_output(stderr)), f"{log_name}.stderr"
        )
        result.truncated = truncated_out or truncated_err
        return result

    def _bound(self, text: str, file_name: str):
        encoded = text.encode('utf-8')
        if len(encoded) <= self.TEXT_LIMIT_BYTES:
            return text, False, None

        # Cut at the byte limit; a character split at the cut is dropped
        output = encoded[:self.TEXT_LIMIT_BYTES].decode('utf-8', 'ignore')

        log_path = None
        if self.logs_dir is not None:
            path = self.logs_dir / _safe_file_name(file_name)
            path.write_text(text, encoding='utf-8')
            log_path = str(path)
        return output, True, log_path


def _safe_file_name(name: str) -> str:
    return "".join(c if c.isalnum() or c in "._-" else "_" for c in name)
