#!/usr/bin/env python3
"""
simulator.py — Slow-writer simulator for aclsentry testing.

Mimics an external application dropping measurement files into a watched
tree: it creates nested directories, creates a file, keeps it exclusively
locked while writing to it for a while, then releases it.  Run it
alongside ``aclsentry watch`` to see the readiness gate wait for the
writer and the policy being applied once the file is released.

Usage
-----
    # Create /tmp/watch/a/b/new.txt and hold it for 1.2 seconds
    python -m aclsentry.simulator --target-dir /tmp/watch --hold 1.2

    # Create several files in a burst
    python -m aclsentry.simulator --target-dir /tmp/watch --num-files 20 --hold 0.2
"""

from __future__ import annotations

import argparse
import fcntl
import logging
import os
import tempfile
import time

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("aclsentry.simulator")


def write_held_file(path: str, hold: float = 1.2, chunks: int = 4) -> None:
    """Create *path*, keep it exclusively locked for *hold* seconds while writing, release it."""
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    delay = hold / max(chunks, 1)
    with open(path, "w", encoding="utf-8") as fh:
        fcntl.flock(fh.fileno(), fcntl.LOCK_EX)
        try:
            for i in range(chunks):
                fh.write(f"measurement {i}: {time.time():.3f}\n")
                fh.flush()
                time.sleep(delay)
        finally:
            fcntl.flock(fh.fileno(), fcntl.LOCK_UN)
    logger.info("Released %s after %.1f s", path, hold)


def simulate_drop(
    target_dir: str,
    subdirs: tuple[str, ...] = ("a", "b"),
    num_files: int = 1,
    hold: float = 1.2,
) -> list[str]:
    """Create *num_files* held files below ``target_dir/<subdirs...>``.

    Returns the created paths.
    """
    directory = os.path.join(target_dir, *subdirs)
    os.makedirs(directory, exist_ok=True)
    logger.info("Dropping %d file(s) into %s", num_files, directory)

    paths: list[str] = []
    for i in range(num_files):
        name = "new.txt" if num_files == 1 else f"measurement_{i:03d}.txt"
        path = os.path.join(directory, name)
        write_held_file(path, hold=hold)
        paths.append(path)
    return paths


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def main() -> None:
    parser = argparse.ArgumentParser(
        prog="aclsentry-simulator",
        description="Simulate an application slowly writing files into a watched tree.",
    )
    parser.add_argument(
        "--target-dir",
        default=None,
        help="Watched root to write into (default: auto-created temp dir).",
    )
    parser.add_argument(
        "--subdirs",
        nargs="*",
        default=["a", "b"],
        help="Nested directories to create below the root (default: a b).",
    )
    parser.add_argument(
        "--num-files",
        type=int,
        default=1,
        help="Number of files to create (default: 1).",
    )
    parser.add_argument(
        "--hold",
        type=float,
        default=1.2,
        help="Seconds each file stays locked (default: 1.2).",
    )
    args = parser.parse_args()

    target = args.target_dir or tempfile.mkdtemp(prefix="aclsentry_sim_")
    paths = simulate_drop(target, tuple(args.subdirs), args.num_files, args.hold)
    logger.info("Created %d file(s) in %s", len(paths), target)


if __name__ == "__main__":
    main()
