import asyncio, io, time
from abc import ABC, abstractmethod
from typing import Any, Optional

import structlog
from prometheus_client import Histogram

from ..common.errors import TransformError
from ..common.models import Artifact, OutputOptions

logger = structlog.get_logger()

ENGINE_SECONDS = Histogram("cutout_engine_seconds", "Time spent inside the background-removal engine (sec)",
                           buckets=(0.5, 1, 2, 3, 5, 8, 13, 21, 34, 55))


class TransformationGateway(ABC):
    """
    Narrow capability over the external image engine. Implementations must
    surface every failure as TransformError; callers never retry.
    """

    @abstractmethod
    async def transform(self, artifact: Artifact, options: OutputOptions) -> bytes:
        ...


class RembgGateway(TransformationGateway):
    """
    Runs rembg in a worker thread so the event loop keeps admitting and
    rejecting requests while an image is processed.
    """

    def __init__(self, model_name: str = "u2net"):
        self.model_name = model_name
        self._session: Optional[Any] = None

    def _get_session(self):
        if self._session is None:
            from rembg import new_session
            self._session = new_session(self.model_name)
        return self._session

    def _run(self, artifact: Artifact, options: OutputOptions) -> bytes:
        try:
            from rembg import remove
        except ImportError as e:
            raise TransformError(f"background removal engine unavailable: {e}") from e

        data = artifact.path.read_bytes()
        out = remove(data, session=self._get_session())
        if options.format == "png":
            return out

        from PIL import Image
        buf = io.BytesIO()
        with Image.open(io.BytesIO(out)) as img:
            img.save(buf, format=options.format.upper(), quality=int(options.quality * 100))
        return buf.getvalue()

    async def transform(self, artifact: Artifact, options: OutputOptions) -> bytes:
        if artifact.released or not artifact.path.exists():
            raise TransformError(f"input artifact missing: {artifact.path.name}")
        t0 = time.time()
        try:
            out = await asyncio.to_thread(self._run, artifact, options)
        except TransformError:
            raise
        except Exception as e:
            raise TransformError(str(e) or type(e).__name__) from e
        finally:
            ENGINE_SECONDS.observe(time.time() - t0)
        if not out:
            raise TransformError("engine returned no data")
        logger.debug("engine_done", model=self.model_name, out_bytes=len(out))
        return out
