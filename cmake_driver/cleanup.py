"""
cmake_driver.cleanup
~~~~~~~~~~~~~~~~~~~~

Removal of CMake build artifacts.

Two levels of cleaning are supported:
    1. ``CMakeCache.txt``: deleted before a clean reconfigure, or when the
       generator, executable or kit changes (CMake refuses to reuse a cache
       produced by another generator or compiler).
    2. The whole build directory ("nuke"): when the build directory setting
       changes, or on explicit request.

Usage:
    from cmake_driver.cleanup import delete_cache_file, nuke_build_directory
    nuke_build_directory("/path/to/build")
"""

from __future__ import annotations

import logging
import os
import shutil

logger = logging.getLogger(__name__)


def _empty_stats() -> dict:
    return {"files_removed": 0, "dirs_removed": 0, "bytes_freed": 0, "errors": []}


def _directory_size(path: str) -> int:
    return sum(
        os.path.getsize(os.path.join(dp, f))
        for dp, _, fnames in os.walk(path)
        for f in fnames
        if not os.path.islink(os.path.join(dp, f))
    )


def delete_cache_file(
    build_directory: str,
    cache_filename: str = "CMakeCache.txt",
    dry_run: bool = False,
) -> dict:
    """
    Remove the CMake cache file from a build directory, if present.

    Returns:
        Summary dict with counts: ``files_removed``, ``dirs_removed``,
        ``bytes_freed``, ``errors``.
    """
    stats = _empty_stats()
    cache_file = os.path.join(os.path.abspath(build_directory), cache_filename)
    if not os.path.isfile(cache_file):
        return stats

    size = os.path.getsize(cache_file)
    if dry_run:
        logger.info("[dry-run] Would remove: %s (%d bytes)", cache_file, size)
        return stats

    logger.info("Deleting cache file %s...", cache_file)
    try:
        os.remove(cache_file)
        stats["files_removed"] += 1
        stats["bytes_freed"] += size
        logger.info("Done")
    except OSError as e:
        logger.warning("Failed to remove %s: %s", cache_file, e)
        stats["errors"].append(str(e))
    return stats


def nuke_build_directory(build_directory: str, dry_run: bool = False) -> dict:
    """
    Recursively delete the build directory.

    Returns:
        Summary dict with counts: ``files_removed``, ``dirs_removed``,
        ``bytes_freed``, ``errors``.
    """
    stats = _empty_stats()
    build_dir = os.path.abspath(build_directory)
    if not os.path.isdir(build_dir):
        logger.debug("Build dir %s does not exist, nothing to delete", build_dir)
        return stats

    total = _directory_size(build_dir)
    if dry_run:
        logger.info("[dry-run] Would remove directory: %s (~%d bytes)", build_dir, total)
        return stats

    logger.info("Deleting build dir %s...", build_dir)
    try:
        shutil.rmtree(build_dir)
        stats["dirs_removed"] += 1
        stats["bytes_freed"] += total
        logger.info("Done (%.1f MB freed)", total / (1024 * 1024))
    except OSError as e:
        logger.warning("Failed to remove build dir %s: %s", build_dir, e)
        stats["errors"].append(str(e))
    return stats
