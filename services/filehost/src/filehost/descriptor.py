"""JAD descriptors for uploaded Java ME archives.

Feature phones install a MIDlet by first downloading its JAD, which points
at the JAR. The JAD is produced by the external ``jadmaker`` tool and then
patched so it points back at this service.
"""

from __future__ import annotations

import logging
import re
import subprocess
from pathlib import Path

from .errors import DescriptorToolUnavailable

logger = logging.getLogger(__name__)

ARCHIVE_SUFFIX = ".jar"
DESCRIPTOR_SUFFIX = ".jad"
DESCRIPTOR_EXTENSION = DESCRIPTOR_SUFFIX.lstrip(".")

_INFO_URL_RE = re.compile(r"^MIDlet-Info-URL: .*?(\r?)$", re.MULTILINE)
# jadmaker sometimes glues the size field onto the end of the previous line
_GLUED_JAR_SIZE_RE = re.compile(r"([^\r\n])MIDlet-Jar-Size: ")


def is_archive(name: str) -> bool:
    return name.lower().endswith(ARCHIVE_SUFFIX)


def descriptor_name(original_name: str) -> str:
    if is_archive(original_name):
        return original_name[: -len(ARCHIVE_SUFFIX)] + DESCRIPTOR_SUFFIX
    return original_name + DESCRIPTOR_SUFFIX


def patch_descriptor(text: str, file_id: str, base_url: str) -> str:
    base_url = base_url.rstrip("/")

    jar_url_re = re.compile(rf"^MIDlet-Jar-URL: {re.escape(file_id)}(\r?)$", re.MULTILINE)
    text = jar_url_re.sub(
        lambda m: f"MIDlet-Jar-URL: {base_url}/{file_id}{ARCHIVE_SUFFIX}{m.group(1)}", text
    )
    text = _INFO_URL_RE.sub(lambda m: f"MIDlet-Info-URL: {base_url}{m.group(1)}", text)
    newline = "\r\n" if "\r\n" in text else "\n"
    text = _GLUED_JAR_SIZE_RE.sub(lambda m: f"{m.group(1)}{newline}MIDlet-Jar-Size: ", text)
    return text


class DescriptorBuilder:
    def __init__(self, tool: str = "jadmaker", timeout: float = 30.0):
        self.tool = tool
        self.timeout = timeout

    def _run_tool(self, archive: Path) -> None:
        try:
            proc = subprocess.run(
                [self.tool, str(archive)],
                cwd=str(archive.parent),
                capture_output=True,
                text=True,
                errors="replace",
                timeout=self.timeout,
            )
        except OSError as e:
            logger.error("Descriptor tool %r is not available: %s", self.tool, e)
            raise DescriptorToolUnavailable(Path(self.tool).name) from e
        except subprocess.TimeoutExpired as e:
            logger.error("Descriptor tool %r timed out after %ss", self.tool, self.timeout)
            raise DescriptorToolUnavailable(Path(self.tool).name) from e

        if proc.returncode != 0:
            logger.error(
                "Descriptor tool %r exited with %d: %s",
                self.tool,
                proc.returncode,
                proc.stderr[-2000:],
            )
            raise DescriptorToolUnavailable(Path(self.tool).name)

    def build(self, archive: Path, file_id: str, original_name: str, base_url: str) -> Path:
        """Generate and patch the JAD for a scratch copy of an archive.

        ``archive`` must be named after the bare file ID: jadmaker writes that
        name into the MIDlet-Jar-URL line, which is what gets rewritten to an
        absolute URL. The copy is consumed; the patched JAD is written next
        to it and its path returned.
        """
        workdir = archive.parent
        generated = workdir / f"{file_id}{DESCRIPTOR_SUFFIX}"

        try:
            self._run_tool(archive)
        finally:
            archive.unlink(missing_ok=True)

        try:
            raw = generated.read_bytes()
        except FileNotFoundError as e:
            logger.error("Descriptor tool %r produced no output for %s", self.tool, file_id)
            raise DescriptorToolUnavailable(Path(self.tool).name) from e
        finally:
            generated.unlink(missing_ok=True)

        text = patch_descriptor(raw.decode("utf-8", errors="surrogateescape"), file_id, base_url)

        out_name = Path(descriptor_name(original_name)).name
        if not out_name:
            out_name = generated.name
        out_path = workdir / out_name
        out_path.write_bytes(text.encode("utf-8", errors="surrogateescape"))
        return out_path
