"""
Local Model Scanner

Recursively scans the model root for .gguf files. Split models
(name-00001-of-00004.gguf, ...) are grouped into a single entry that points
at the first shard, which is the file the engine must be given to load them.
"""

import os
import re
import logging
from dataclasses import dataclass, field, asdict
from typing import Dict, List, Optional


logger = logging.getLogger(__name__)

SPLIT_PATTERN = re.compile(r"-(\d{5})-of-(\d{5})\.gguf$", re.IGNORECASE)


@dataclass
class LocalModel:
    """
    A model found under the model root.

    Attributes:
        name: Path relative to the model root (base name for split models)
        path: Absolute path to load (first shard for split models)
        size: Total size in bytes (all shards)
        modified: Most recent modification time (epoch seconds)
        is_split: Model is stored as multiple shards
        part_count: Declared number of shards
        parts_found: Shards present on disk
        incomplete: Some shards are missing
        alias: Operator-assigned alias
    """

    name: str
    path: str
    size: int
    modified: float
    is_split: bool = False
    part_count: int = 1
    parts_found: int = 1
    incomplete: bool = False
    alias: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class _SplitGroup:
    name: str
    total_parts: int
    size: int = 0
    modified: float = 0.0
    parts: List[tuple] = field(default_factory=list)


def split_part_info(filename: str) -> Optional[tuple]:
    """
    Return (part_number, total_parts, base_name) for a shard file, else None.
    """
    match = SPLIT_PATTERN.search(filename)
    if not match:
        return None
    base_name = SPLIT_PATTERN.sub(".gguf", filename)
    return int(match.group(1)), int(match.group(2)), base_name


def scan_local_models(
    models_dir: str,
    aliases: Optional[Dict[str, str]] = None
) -> List[LocalModel]:
    """
    Scan the model root for model files.

    Args:
        models_dir: Model root directory
        aliases: Mapping of model name -> alias

    Returns:
        Single-file models in walk order followed by grouped split models
    """
    aliases = aliases or {}
    models: List[LocalModel] = []
    splits: Dict[str, _SplitGroup] = {}

    if not os.path.isdir(models_dir):
        logger.warning(f"Models directory does not exist: {models_dir}")
        return models

    for root, dirs, files in os.walk(models_dir):
        dirs.sort()
        prefix = os.path.relpath(root, models_dir)
        prefix = "" if prefix == "." else prefix.replace(os.sep, "/")

        for filename in sorted(files):
            if not filename.lower().endswith(".gguf"):
                continue

            full_path = os.path.join(root, filename)
            try:
                stats = os.stat(full_path)
            except OSError as e:
                logger.warning(f"Cannot stat {full_path}: {e}")
                continue

            relative = f"{prefix}/{filename}" if prefix else filename
            info = split_part_info(filename)

            if info is None:
                models.append(
                    LocalModel(
                        name=relative,
                        path=full_path,
                        size=stats.st_size,
                        modified=stats.st_mtime,
                    )
                )
                continue

            part_num, total_parts, base_name = info
            group_name = f"{prefix}/{base_name}" if prefix else base_name
            group = splits.setdefault(group_name, _SplitGroup(group_name, total_parts))
            group.size += stats.st_size
            group.modified = max(group.modified, stats.st_mtime)
            group.parts.append((part_num, full_path))

    for group in splits.values():
        group.parts.sort()
        models.append(
            LocalModel(
                name=group.name,
                path=group.parts[0][1],
                size=group.size,
                modified=group.modified,
                is_split=True,
                part_count=group.total_parts,
                parts_found=len(group.parts),
                incomplete=len(group.parts) != group.total_parts,
            )
        )

    for model in models:
        model.alias = aliases.get(model.name)

    return models
