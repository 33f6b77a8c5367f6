from __future__ import annotations

import logging
import mimetypes
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Sequence

from .descriptor import DESCRIPTOR_EXTENSION, DESCRIPTOR_SUFFIX, DescriptorBuilder, descriptor_name, is_archive
from .errors import FileNotFoundOrExpired, NotAnArchive, TooManyFiles
from .ids import is_valid_id
from .models import StoredFile
from .ratelimit import RateLimiter
from .schemas import UploadedLink
from .storage import EphemeralStore, ScratchDir

logger = logging.getLogger(__name__)

THEME_SUFFIX = ".nth"

# guessed types for these make phones refuse the download
MEDIA_TYPE_OVERRIDES = {
    THEME_SUFFIX: "application/vnd.nok-s40theme",
    DESCRIPTOR_SUFFIX: "text/vnd.sun.j2me.app-descriptor",
    ".jar": "application/java-archive",
}


def media_type_for(filename: str) -> str:
    suffix = Path(filename).suffix.lower()
    if suffix in MEDIA_TYPE_OVERRIDES:
        return MEDIA_TYPE_OVERRIDES[suffix]
    guessed, _ = mimetypes.guess_type(filename, strict=False)
    return guessed or "application/octet-stream"


@dataclass
class UploadPart:
    filename: str
    size: int
    stream: BinaryIO


@dataclass
class Download:
    path: Path
    filename: str
    media_type: str
    scratch: ScratchDir


class FileHostService:
    def __init__(
        self,
        store: EphemeralStore,
        limiter: RateLimiter,
        descriptors: DescriptorBuilder,
        max_files: int = 10,
    ):
        self.store = store
        self.limiter = limiter
        self.descriptors = descriptors
        self.max_files = max_files

    def upload(self, client_key: str, parts: Sequence[UploadPart], base_url: str) -> list[UploadedLink]:
        # 1) request-level checks
        if len(parts) > self.max_files:
            raise TooManyFiles(self.max_files)
        request_bytes = sum(p.size for p in parts)

        # 2) budget check, commit and usage record under the client's lock
        stored: list[StoredFile] = []
        with self.limiter.admit(client_key, request_bytes):
            try:
                for part in parts:
                    stored.append(self.store.put(part.filename, part.stream))
            except BaseException:
                self._rollback(stored)
                raise

        logger.info(
            "Accepted %d file(s), %d bytes from %s", len(stored), request_bytes, client_key
        )
        return [self._link(record, base_url) for record in stored]

    def _rollback(self, stored: list[StoredFile]) -> None:
        for record in stored:
            try:
                self.store.discard(record.id)
            except Exception as e:
                logger.error("Failed to roll back upload %s: %s", record.id, e)

    def _link(self, record: StoredFile, base_url: str) -> UploadedLink:
        path = f"/{record.id}"
        # lets clients that sniff the URL path see the theme type
        if record.original_name.lower().endswith(THEME_SUFFIX):
            path += THEME_SUFFIX
        url = base_url.rstrip("/") + path

        descriptor_url = None
        if is_archive(record.original_name):
            descriptor_url = url + DESCRIPTOR_SUFFIX

        return UploadedLink(
            id=record.id,
            original_name=record.original_name,
            url=url,
            descriptor_url=descriptor_url,
            expires_at=record.expires_at,
        )

    def download(self, file_id: str, extension: str | None, base_url: str) -> Download:
        """Prepare a scratch copy of a stored file for streaming.

        Without an extension the file is served under its original name.
        ``jad`` builds a descriptor for an archive. Any other extension serves
        the same bytes as ``<id>.<extension>``. The caller owns the returned
        scratch directory and must release it once the response is done.
        """
        if not is_valid_id(file_id):
            raise FileNotFoundOrExpired()
        record = self.store.resolve(file_id)

        wants_descriptor = extension is not None and extension.lower() == DESCRIPTOR_EXTENSION
        if wants_descriptor and not is_archive(record.original_name):
            raise NotAnArchive()

        scratch = self.store.scratch()
        try:
            copy = self.store.copy_to(record, scratch.path / record.id)
            if wants_descriptor:
                path = self.descriptors.build(copy, record.id, record.original_name, base_url)
                filename = descriptor_name(record.original_name)
            elif extension is None:
                path = copy
                filename = record.original_name
            else:
                path = copy
                filename = f"{record.id}.{extension}"
        except BaseException:
            scratch.release()
            raise

        return Download(path=path, filename=filename, media_type=media_type_for(filename), scratch=scratch)
