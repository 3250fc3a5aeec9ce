"""Bounded breadth-first discovery of image files under a store folder."""

import logging
import re
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, List, Optional

from geophoto.error_handling import ErrorAnalyzer
from geophoto.models import ScanTask


logger = logging.getLogger(__name__)


MAX_SCAN_DEPTH = 3
MAX_SCAN_FILES = 500
SKIP_FOLDER_NAMES: FrozenSet[str] = frozenset({"thumbs", "thumbnails", "ai", "results", "tmp", "healthchecks"})
IMAGE_EXTENSIONS: FrozenSet[str] = frozenset({"jpg", "jpeg", "png", "webp"})

_NUMBER_RUN = re.compile(r"(\d+)")


def _basename(path: str) -> str:
    return path.rstrip("/").rsplit("/", 1)[-1]


def is_skipped_folder(path: str) -> bool:
    """True for folders that never hold content (thumbnails, AI output, scratch)."""
    return _basename(path).lower() in SKIP_FOLDER_NAMES


def is_image_file(path: str) -> bool:
    name = _basename(path)
    if "." not in name:
        return False
    return name.rsplit(".", 1)[-1].lower() in IMAGE_EXTENSIONS


def natural_sort_key(path: str) -> List[Any]:
    """Sort key that compares digit runs numerically: ``image2`` before ``image10``."""
    parts = _NUMBER_RUN.split(path.lower())
    return [(0, int(part), part) if part.isdigit() else (1, 0, part) for part in parts if part != ""]


def sort_paths(paths: List[str]) -> List[str]:
    return sorted(paths, key=natural_sort_key)


@dataclass
class ScanReport:
    """Outcome of one scan, including folders whose listing failed."""
    files: List[str] = field(default_factory=list)
    folders_listed: int = 0
    truncated: bool = False
    errors: List[Dict[str, str]] = field(default_factory=list)


class BoundedRecursiveScanner:
    """Collect image files below a root folder, bounded in depth and count.

    The root is listed at depth 0 and subfolders are only descended into
    while ``depth < max_depth``. The scan stops as soon as ``max_files``
    paths have been collected.
    """

    def __init__(
        self,
        resolver,
        *,
        max_depth: int = MAX_SCAN_DEPTH,
        max_files: int = MAX_SCAN_FILES,
        skip_folder: Optional[Callable[[str], bool]] = None,
        is_content: Optional[Callable[[str], bool]] = None,
    ):
        self.resolver = resolver
        self.max_depth = max_depth
        self.max_files = max_files
        self.skip_folder = skip_folder or is_skipped_folder
        self.is_content = is_content or is_image_file

    async def scan_report(self, root: str, bucket_host: Optional[str] = None) -> ScanReport:
        report = ScanReport()
        queue = deque([ScanTask(root.strip("/"), 0)])

        while queue:
            task = queue.popleft()
            try:
                listing = await self.resolver.list_folder(task.path, bucket_host)
            except Exception as e:
                category = ErrorAnalyzer.categorize_error(e).value
                logger.warning(f"Listing {task.path or '/'} failed ({category}); treating it as empty: {e}")
                report.errors.append({'path': task.path, 'error': str(e), 'category': category})
                continue
            report.folders_listed += 1

            for file_path in listing.files:
                if not self.is_content(file_path):
                    continue
                report.files.append(file_path)
                if len(report.files) >= self.max_files:
                    report.truncated = True
                    logger.info(f"Scan of {root or '/'} hit the {self.max_files} file cap")
                    return report

            if task.depth < self.max_depth:
                for folder in listing.subfolders:
                    if not self.skip_folder(folder):
                        queue.append(ScanTask(folder, task.depth + 1))

        logger.debug(
            f"Scan of {root or '/'} found {len(report.files)} files in {report.folders_listed} folders"
        )
        return report

    async def scan(self, root: str, bucket_host: Optional[str] = None) -> List[str]:
        """Return the matching file paths in discovery order (unsorted)."""
        report = await self.scan_report(root, bucket_host)
        return report.files
