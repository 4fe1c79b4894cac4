"""
Update candidate selection.

Picks the tag a service should move to from the tags its registry offers.
"""

import logging
from typing import Callable, Iterable, Optional

from updates.ignore_rules import parse_version

logger = logging.getLogger(__name__)

IgnorePredicate = Callable[[str], bool]


def _never_ignored(tag: str) -> bool:
    return False


def select_candidate_tag(
    current_tag: str,
    tags: Iterable[str],
    is_ignored: IgnorePredicate = _never_ignored,
) -> Optional[str]:
    """
    Select the best upgrade tag.

    1. If the current tag parses as semver (see parse_version), return the
       highest non-ignored tag that is strictly newer. Tags that parse to the
       same version keep the first one seen.
    2. Otherwise, or if nothing newer exists, fall back to the byte-wise
       largest tag that is neither current nor ignored.

    Examples:
        >>> select_candidate_tag("5.2", ["5.3", "5.10"])
        '5.10'
        >>> select_candidate_tag("latest", ["alpine", "bookworm"])
        'bookworm'
    """
    tags = list(tags)
    current_version = parse_version(current_tag)

    if current_version is not None:
        best_tag = None
        best_version = None
        for tag in tags:
            if tag == current_tag or is_ignored(tag):
                continue
            version = parse_version(tag)
            if version is None or version <= current_version:
                continue
            if best_version is None or version > best_version:
                best_tag, best_version = tag, version
        if best_tag is not None:
            return best_tag

    fallback = None
    for tag in tags:
        if tag == current_tag or is_ignored(tag):
            continue
        if fallback is None or tag.encode("utf-8") > fallback.encode("utf-8"):
            fallback = tag
    return fallback


def resolve_candidate(
    current_tag: str,
    tags: Iterable[str],
    is_ignored: IgnorePredicate,
) -> Optional[str]:
    """
    Candidate honoring ignore rules, falling back to ignored tags.

    A non-ignored candidate wins. When ignore rules remove every option the
    ignored tag is still returned; callers flag it as ignore-matched instead
    of reporting no update.
    """
    tags = list(tags)
    candidate = select_candidate_tag(current_tag, tags, is_ignored)
    if candidate:
        return candidate
    candidate = select_candidate_tag(current_tag, tags, _never_ignored)
    if candidate:
        logger.debug(f"Only ignored tags are newer than {current_tag}, surfacing {candidate}")
    return candidate
