"""
Stroke partitioning.

Pure filters, no I/O: which strokes already belong to a block, which are new,
and which are removed on explicit caller request.
"""

import logging
from dataclasses import dataclass, field
from typing import Iterable, List

from ..models import Stroke


@dataclass
class Partition:
    """Strokes split by block association. Deleted strokes appear in neither list."""
    associated: List[Stroke] = field(default_factory=list)
    unassociated: List[Stroke] = field(default_factory=list)


@dataclass
class DeletionResult:
    survivors: List[Stroke] = field(default_factory=list)
    removed_ids: List[str] = field(default_factory=list)


def partition(strokes: Iterable[Stroke]) -> Partition:
    """Split strokes into associated and unassociated, skipping deleted ones."""
    result = Partition()
    for stroke in strokes:
        if stroke.deleted:
            continue
        if stroke.block_uuid is not None:
            result.associated.append(stroke)
        else:
            result.unassociated.append(stroke)
    return result


def apply_explicit_deletions(strokes: Iterable[Stroke], deleted_ids: Iterable[str]) -> DeletionResult:
    """
    Remove exactly the strokes whose id the caller named.

    The number of removed strokes is reported for information only and must
    not drive any further deletion.
    """
    targets = set(deleted_ids)
    result = DeletionResult()
    for stroke in strokes:
        if stroke.id in targets:
            result.removed_ids.append(stroke.id)
        else:
            result.survivors.append(stroke)

    missing = targets - set(result.removed_ids)
    if missing:
        logging.info(f"{len(missing)} requested stroke deletions matched no stroke")
    if result.removed_ids:
        logging.info(f"Removed {len(result.removed_ids)} strokes on explicit request")
    return result
