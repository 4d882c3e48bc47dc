import asyncio, os, tempfile, uuid
from pathlib import Path
from typing import Optional

import structlog

from .models import Artifact

logger = structlog.get_logger()

ARTIFACT_DIR = os.getenv("ARTIFACT_DIR") or tempfile.gettempdir()


def _safe_name(original_name: str) -> str:
    name = Path(original_name or "upload").name
    return "".join(c if c.isalnum() or c in "._-" else "_" for c in name)[:100] or "upload"


class ArtifactStore:
    """
    Writes job inputs to temp files and deletes them again.

    release() is idempotent and never raises: a failed unlink is logged and
    swallowed so cleanup can't stop a response from reaching the client.
    """

    def __init__(self, root: Optional[str] = None):
        self.root = Path(root or ARTIFACT_DIR)
        self.created_count = 0
        self.released_count = 0

    @property
    def live_count(self) -> int:
        return self.created_count - self.released_count

    async def write(self, data: bytes, original_name: str) -> Artifact:
        path = self.root / f"bg-in-{uuid.uuid4()}-{_safe_name(original_name)}"
        try:
            await asyncio.to_thread(path.write_bytes, data)
        except Exception:
            path.unlink(missing_ok=True)
            raise
        self.created_count += 1
        logger.debug("artifact_written", path=str(path), size=len(data))
        return Artifact(path=path, size_bytes=len(data))

    async def release(self, artifact: Optional[Artifact]) -> None:
        if artifact is None or artifact.released:
            return
        artifact.released = True
        self.released_count += 1
        try:
            await asyncio.to_thread(artifact.path.unlink, missing_ok=True)
        except OSError as e:
            logger.error("artifact_cleanup_failed", path=str(artifact.path), error=str(e))
        except Exception:
            logger.exception("artifact_cleanup_failed", path=str(artifact.path))
