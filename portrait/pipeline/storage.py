"""Storage area: one directory holding every job's media, partitioned by identifier so concurrent jobs never share a path."""
import logging
import os
from pathlib import Path
from typing import Union

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


def partial_path_for(output_path: PathLike) -> Path:
    """Sibling path a writer fills before renaming it onto output_path."""
    output_path = Path(output_path)
    return output_path.with_name(output_path.stem + ".partial" + output_path.suffix)


class StorageArea:
    """Maps a job identifier to its input, partial-output and output paths under root."""

    def __init__(self, root: PathLike):
        self.root = Path(root)

    def ensure(self) -> "StorageArea":
        self.root.mkdir(parents=True, exist_ok=True)
        return self

    def input_path(self, identifier: str) -> Path:
        return self.root / f"{identifier}-input.mp4"

    def partial_path(self, identifier: str) -> Path:
        return partial_path_for(self.output_path(identifier))

    def output_path(self, identifier: str) -> Path:
        return self.root / f"{identifier}-portrait.mp4"

    def discard(self, *paths: PathLike) -> None:
        """Remove each path if present. A missing file is fine; any other OS error is logged and re-raised."""
        for p in paths:
            try:
                os.unlink(p)
                logger.debug("storage_discarded", extra={"path": str(p)})
            except FileNotFoundError:
                continue
            except OSError:
                logger.error("storage_discard_failed", exc_info=True, extra={"path": str(p)})
                raise
