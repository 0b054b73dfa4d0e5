"""Artifact inventory and manifest generation.

This module handles:
- Listing the outputs of declared targets that exist on disk
- Computing checksums
- Generating and writing the build manifest
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from kernel_imagegen.builds.graph import TargetGraph
from kernel_imagegen.config import ProjectLayout, ToolchainConfig
from kernel_imagegen.types import ArtifactInfo

logger = logging.getLogger(__name__)

# Default chunk size for hashing
HASH_CHUNK_SIZE = 64 * 1024  # 64KB


def compute_file_hash(
    file_path: Path,
    chunk_size: int = HASH_CHUNK_SIZE,
) -> str:
    """Compute SHA-256 hash of a file.

    Args:
        file_path: Path to the file.
        chunk_size: Size of chunks for streaming hash.

    Returns:
        SHA-256 hex digest.
    """
    sha256 = hashlib.sha256()
    with file_path.open("rb") as f:
        while chunk := f.read(chunk_size):
            sha256.update(chunk)
    return sha256.hexdigest()


def collect_artifacts(graph: TargetGraph, root: Path | None = None) -> list[ArtifactInfo]:
    """List existing outputs of every declared target.

    Args:
        graph: Target graph.
        root: Directory for computing relative paths; absolute if None
              or if the output lies outside it.

    Returns:
        ArtifactInfo for each output present on disk, in declaration order.
    """
    artifacts: list[ArtifactInfo] = []
    for target in graph:
        path = target.output
        if not path.is_file():
            continue
        stat = path.stat()
        display = path
        if root is not None and path.is_relative_to(root):
            display = path.relative_to(root)
        artifacts.append(
            ArtifactInfo(
                path=display.as_posix(),
                kind=target.kind.value,
                size_bytes=stat.st_size,
                modified_at=datetime.fromtimestamp(
                    stat.st_mtime, tz=timezone.utc
                ).isoformat(),
                sha256=compute_file_hash(path),
                target=target.name,
            )
        )
    logger.debug("Found %d artifact(s)", len(artifacts))
    return artifacts


def generate_manifest(
    artifacts: list[ArtifactInfo],
    toolchain: ToolchainConfig | None = None,
    built: list[str] | None = None,
) -> dict[str, Any]:
    """Generate a build manifest.

    The manifest contains:
    - List of artifacts with metadata
    - Target architecture and triple
    - Targets rebuilt by the run that wrote it
    - Summary statistics

    Args:
        artifacts: Collected artifacts.
        toolchain: Optional toolchain the artifacts were built with.
        built: Optional aliases of targets rebuilt in this run.

    Returns:
        Manifest dictionary suitable for JSON serialization.
    """
    manifest: dict[str, Any] = {
        "version": "1.0",
        "generated_at": datetime.now(timezone.utc).isoformat(),
        "artifacts": [asdict(a) for a in artifacts],
    }
    if toolchain is not None:
        manifest["arch"] = toolchain.arch
        manifest["target_triple"] = toolchain.target_triple
    if built is not None:
        manifest["built"] = built

    manifest["summary"] = {
        "total_artifacts": len(artifacts),
        "total_size_bytes": sum(a.size_bytes for a in artifacts),
        "kinds": sorted({a.kind for a in artifacts}),
    }
    return manifest


def write_manifest(
    manifest: dict[str, Any],
    output_path: Path,
) -> Path:
    """Write manifest to a JSON file.

    Args:
        manifest: Manifest dictionary.
        output_path: Output file path.

    Returns:
        Path to written manifest file.
    """
    output_path.parent.mkdir(parents=True, exist_ok=True)

    with output_path.open("w", encoding="utf-8") as f:
        json.dump(manifest, f, indent=2, sort_keys=True)

    logger.info("Wrote manifest to %s", output_path)
    return output_path


def record_manifest(
    graph: TargetGraph,
    layout: ProjectLayout,
    toolchain: ToolchainConfig,
    built: list[str],
) -> Path:
    """Collect artifacts and write the manifest under the output root."""
    artifacts = collect_artifacts(graph, root=layout.project_root)
    manifest = generate_manifest(artifacts, toolchain=toolchain, built=built)
    return write_manifest(manifest, layout.manifest_path)


__all__ = [
    "HASH_CHUNK_SIZE",
    "collect_artifacts",
    "compute_file_hash",
    "generate_manifest",
    "record_manifest",
    "write_manifest",
]
