# storage/file_placement.py
# ============================================================================
# PRINTDESK v1.0 - FILE PLACEMENT
# ============================================================================
# One directory per order identifier under the upload root:
#
#   <UPLOAD_ROOT>/<identifier>/<original filename>
#
# Blocking filesystem calls run in the default executor.
# ============================================================================

import asyncio
import os
import shutil
from pathlib import Path
from typing import List, Optional, Sequence

import structlog

from orders.errors import DuplicateIdentifier, StorageFailure
from orders.models import IncomingFile

logger = structlog.get_logger().bind(component="file_placement")


class FilePlacementManager:
    """
    Binds uploaded documents to an order's identifier-named directory.

    Handles:
    - Moving staged uploads into the identifier directory
    - Renaming the directory when the identifier changes
    - Cleanup when an order could not be persisted
    - Safe lookup for downloads
    """

    def __init__(self, root: Path):
        self.root = Path(root)

    def directory_for(self, identifier: str) -> Path:
        if not identifier or os.sep in identifier or identifier in (".", ".."):
            raise StorageFailure(f"Unusable identifier for a directory name: {identifier!r}")
        return self.root / identifier

    async def _run(self, func, *args):
        return await asyncio.get_event_loop().run_in_executor(None, func, *args)

    # =========================================================================
    # PLACEMENT
    # =========================================================================

    async def place(self, identifier: str, incoming: Sequence[IncomingFile]) -> List[str]:
        """
        Move each staged upload into the identifier directory, keeping its
        original base name. Returns stored paths in upload order.

        The directory must not exist yet; an existing one belongs to another
        order and raises DuplicateIdentifier without touching its contents.
        """
        target_dir = self.directory_for(identifier)
        try:
            stored = await self._run(self._place_sync, target_dir, list(incoming))
        except FileExistsError:
            logger.warning("placement_directory_taken", identifier=identifier)
            raise DuplicateIdentifier(identifier)
        except OSError as e:
            logger.error("file_placement_failed", identifier=identifier, error=str(e))
            raise StorageFailure(f"Could not store files for {identifier}: {e}") from e

        logger.info("files_placed", identifier=identifier, count=len(stored))
        return stored

    def _place_sync(self, target_dir: Path, incoming: List[IncomingFile]) -> List[str]:
        target_dir.parent.mkdir(parents=True, exist_ok=True)
        target_dir.mkdir()
        stored = []
        try:
            for upload in incoming:
                name = Path(upload.filename).name
                if not name:
                    raise OSError(f"Empty filename for upload {upload.path}")
                destination = target_dir / name
                shutil.move(str(upload.path), str(destination))
                stored.append(str(destination))
        except OSError:
            shutil.rmtree(target_dir, ignore_errors=True)
            raise
        return stored

    # =========================================================================
    # RELOCATION
    # =========================================================================

    async def relocate(self, old_identifier: str, new_identifier: str, paths: Sequence[str]) -> List[str]:
        """
        Rename the directory of `old_identifier` to `new_identifier` and
        rewrite the directory component of every path.

        If the old directory is gone nothing on disk changes. When the new
        directory already holds the files (an earlier call finished the
        rename) the rewritten paths are returned; otherwise the paths come
        back unchanged.
        """
        old_dir = self.directory_for(old_identifier)
        new_dir = self.directory_for(new_identifier)
        rewritten = [str(new_dir / Path(p).name) for p in paths]

        try:
            moved = await self._run(self._relocate_sync, old_dir, new_dir)
        except OSError as e:
            logger.error("file_relocation_failed",
                         old_identifier=old_identifier,
                         new_identifier=new_identifier,
                         error=str(e))
            raise StorageFailure(
                f"Could not move files from {old_identifier} to {new_identifier}: {e}"
            ) from e

        if moved:
            logger.info("files_relocated", old_identifier=old_identifier, new_identifier=new_identifier)
            return rewritten

        if new_dir.is_dir():
            logger.info("files_already_relocated", old_identifier=old_identifier, new_identifier=new_identifier)
            return rewritten

        logger.warning("relocation_source_missing", old_identifier=old_identifier)
        return list(paths)

    def _relocate_sync(self, old_dir: Path, new_dir: Path) -> bool:
        if not old_dir.is_dir():
            return False
        if new_dir.exists():
            if not old_dir.exists():
                return False
            raise FileExistsError(f"Target directory already exists: {new_dir}")
        try:
            os.rename(old_dir, new_dir)
        except FileNotFoundError:
            # A concurrent relocation got there first
            if new_dir.is_dir():
                return False
            raise
        return True

    # =========================================================================
    # CLEANUP & LOOKUP
    # =========================================================================

    async def discard(self, identifier: str) -> None:
        """Remove an identifier's directory after a failed persist."""
        target_dir = self.directory_for(identifier)
        try:
            await self._run(shutil.rmtree, target_dir)
            logger.info("files_discarded", identifier=identifier)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.error("file_discard_failed", identifier=identifier, error=str(e))

    def resolve(self, identifier: str, filename: str) -> Optional[Path]:
        """Path of a stored document, or None if missing or outside the order directory."""
        try:
            order_dir = self.directory_for(identifier).resolve()
        except StorageFailure:
            return None
        candidate = (order_dir / filename).resolve()
        if candidate.parent != order_dir or not candidate.is_file():
            return None
        return candidate
