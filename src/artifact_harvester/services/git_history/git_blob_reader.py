"""Read content objects (blobs) of changed paths from the git object store."""

import base64
import logging
from typing import Dict, Iterable, List, Optional

from ...errors import BlobReadFailure, GitCallTimeout, GitCommandError
from ...utils.git_runner import GitRunner
from .models import BlobContent, ContentEncoding, FileChange

logger = logging.getLogger(__name__)


def classify_content(data: bytes, sniff_bytes: int = 4096) -> ContentEncoding:
    """UTF-8 text unless a NUL byte shows up in the leading window.

    Bytes without NUL that are not valid UTF-8 are also stored as base64 so
    the payload stays lossless.
    """
    if b"\x00" in data[:sniff_bytes]:
        return ContentEncoding.BASE64
    try:
        data.decode("utf-8")
    except UnicodeDecodeError:
        return ContentEncoding.BASE64
    return ContentEncoding.UTF8


def encode_blob(blob_id: str, data: bytes, sniff_bytes: int = 4096) -> BlobContent:
    encoding = classify_content(data, sniff_bytes)
    if encoding == ContentEncoding.UTF8:
        content = data.decode("utf-8")
    else:
        content = base64.b64encode(data).decode("ascii")
    return BlobContent(blob_id=blob_id, size=len(data), encoding=encoding, content=content)


def parse_batch_output(output: bytes) -> Dict[str, bytes]:
    """Parse ``git cat-file --batch`` output into ``{object id: raw bytes}``.

    Each object is ``<id> <type> <size>LF<content>LF``; unknown ids yield
    ``<id> missing LF`` and are left out of the result.
    """
    objects: Dict[str, bytes] = {}
    pos = 0
    while pos < len(output):
        end = output.find(b"\n", pos)
        if end == -1:
            break
        header = output[pos:end].decode("ascii", errors="replace").split()
        pos = end + 1
        if len(header) == 2 and header[1] == "missing":
            continue
        if len(header) != 3:
            raise BlobReadFailure(f"Unexpected cat-file header: {' '.join(header)!r}")
        object_id, _object_type, size_field = header
        size = int(size_field)
        objects[object_id] = output[pos : pos + size]
        pos += size + 1
    return objects


class BlobSnapshotReader:
    """Reads and encodes the blobs referenced by a commit's changes."""

    def __init__(self, runner: GitRunner, sniff_bytes: int = 4096):
        self.runner = runner
        self.sniff_bytes = sniff_bytes

    def read_changes(self, changes: Iterable[FileChange]) -> Dict[str, BlobContent]:
        """Read every blob referenced by non-deleted changes.

        Sizes are written back onto the changes.

        Raises:
            BlobReadFailure: If any referenced blob cannot be read
        """
        readable: List[FileChange] = [c for c in changes if c.has_content]
        blobs = self.read_blobs([c.blob_id for c in readable if c.blob_id])
        for change in readable:
            change.size = blobs[change.blob_id].size
        return blobs

    def read_blobs(self, blob_ids: Iterable[str]) -> Dict[str, BlobContent]:
        """Read several blobs with a single ``git cat-file --batch`` call."""
        wanted = list(dict.fromkeys(blob_ids))
        if not wanted:
            return {}
        try:
            output = self.runner.run(
                ["cat-file", "--batch"],
                input=("\n".join(wanted) + "\n").encode("ascii"),
            )
        except (GitCommandError, GitCallTimeout) as e:
            raise BlobReadFailure(f"Failed to read blobs: {e}") from e

        raw = parse_batch_output(output)
        missing = [blob_id for blob_id in wanted if blob_id not in raw]
        if missing:
            raise BlobReadFailure(
                f"Failed to read blob(s): {', '.join(m[:12] for m in missing)}"
            )
        return {
            blob_id: encode_blob(blob_id, raw[blob_id], self.sniff_bytes)
            for blob_id in wanted
        }

    def read_blob(self, blob_id: str) -> Optional[BlobContent]:
        """Read one blob, or None if it does not exist."""
        try:
            return self.read_blobs([blob_id])[blob_id]
        except BlobReadFailure as e:
            logger.debug(f"Blob {blob_id[:12]} unavailable: {e}")
            return None
