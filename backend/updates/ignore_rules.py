"""
Ignore rules for update candidates.

An ignore rule suppresses tags for one service. Four matcher kinds:

    exact   - tag equals the value
    prefix  - tag starts with the value
    regex   - value is a regular expression searched in the tag
    semver  - tag (coerced to semver) satisfies a version requirement
              such as ">=5.4, <6" or "^1.2" or "5.*"

Invalid patterns never match; they are logged once and otherwise ignored so a
bad rule cannot break a check cycle.

Version requirements follow Cargo's rules: bare versions are caret
requirements, partial versions widen the comparator, and a pre-release tag
only matches when some comparator names the same major.minor.patch with a
pre-release of its own.
"""

import enum
import functools
import logging
import re
from dataclasses import dataclass
from typing import FrozenSet, Iterable, Optional, Tuple

import semantic_version
import semver

logger = logging.getLogger(__name__)

__all__ = [
    'IgnoreKind',
    'IgnoreRule',
    'IgnoreRuleMatcher',
    'parse_version',
    'is_strict_semver',
    'VersionRequirement',
    'parse_requirement',
    'requirement_matches',
    'rule_matches',
]


def parse_version(tag: str) -> Optional[semver.Version]:
    """
    Parse a tag as a semantic version with coercion.

    One component is read as X.0.0 and two as X.Y.0; anything else must be a
    valid three-component version. A leading "v" is allowed.

    Examples:
        >>> str(parse_version("5"))
        '5.0.0'
        >>> str(parse_version("v5.3"))
        '5.3.0'
        >>> parse_version("5.3-alpine") is None
        True
    """
    text = tag.strip()
    if text.startswith("v"):
        text = text[1:]
    if not text:
        return None

    parts = text.split(".")
    if len(parts) == 1:
        text = f"{text}.0.0"
    elif len(parts) == 2:
        text = f"{text}.0"

    try:
        return semver.Version.parse(text)
    except ValueError:
        return None


def is_strict_semver(tag: str) -> bool:
    """True for a full three-component version, optional leading "v" allowed"""
    text = tag.strip()
    if text.startswith("v"):
        text = text[1:]
    try:
        semver.Version.parse(text)
    except ValueError:
        return False
    return True


class IgnoreKind(str, enum.Enum):
    EXACT = "exact"
    PREFIX = "prefix"
    REGEX = "regex"
    SEMVER = "semver"


@dataclass(frozen=True)
class IgnoreRule:
    id: int
    service_id: Optional[int]
    kind: IgnoreKind
    value: str
    enabled: bool = True
    note: Optional[str] = None


# Version requirements

_COMPARATOR_RE = re.compile(r"^(>=|<=|>|<|=|\^|~)?v?(.*)$")
_WILDCARDS = ("*", "x", "X")


@dataclass(frozen=True)
class VersionRequirement:
    """A parsed requirement plus the versions its pre-release comparators name"""
    spec: semantic_version.SimpleSpec
    prerelease_cores: FrozenSet[Tuple[int, int, int]] = frozenset()


def _simple_block(text: str) -> Tuple[str, Optional[Tuple[int, int, int]]]:
    """
    Rewrite one Cargo comparator in SimpleSpec syntax.

    Returns the block and, for a comparator with a pre-release, its
    major.minor.patch.
    """
    text = "".join(text.split())
    op, version = _COMPARATOR_RE.match(text).groups()
    if not version:
        raise ValueError("missing version in requirement")

    parts = version.split("+", 1)[0].split("-", 1)[0].split(".")
    wildcard = any(part in _WILDCARDS for part in parts)
    if wildcard:
        if op not in (None, "="):
            raise ValueError(f"wildcard not allowed with operator {op}")
        version = ".".join("*" if part in _WILDCARDS else part for part in parts)

    if op is None:
        # "1.*" is a wildcard (exact on the given parts); "1.2" is caret
        op = "=" if wildcard else "^"
    if op == "^" and len(parts) < 3 and (len(parts) == 1 or parts[0] == "0"):
        # ^1 and ^0.2 cover the same range as =1 and =0.2
        op = "="
    if op == "=":
        op = "=="

    core = None
    if "-" in version:
        pinned = semantic_version.Version(version)
        if pinned.prerelease:
            core = (pinned.major, pinned.minor, pinned.patch)
    return f"{op}{version}", core


@functools.lru_cache(maxsize=256)
def parse_requirement(text: str) -> VersionRequirement:
    """
    Parse a comma separated Cargo-style version requirement.

    Raises:
        ValueError: requirement is empty or malformed
    """
    text = text.strip()
    if not text:
        raise ValueError("empty requirement")

    blocks = []
    cores = set()
    for part in text.split(","):
        block, core = _simple_block(part)
        blocks.append(block)
        if core is not None:
            cores.add(core)
    return VersionRequirement(
        spec=semantic_version.SimpleSpec(",".join(blocks)),
        prerelease_cores=frozenset(cores),
    )


def requirement_matches(requirement: VersionRequirement, version: semver.Version) -> bool:
    """
    Cargo matching: a pre-release version also needs a comparator with a
    pre-release on the same major.minor.patch.
    """
    if not requirement.spec.match(semantic_version.Version(str(version))):
        return False
    if not version.prerelease:
        return True
    return (version.major, version.minor, version.patch) in requirement.prerelease_cores


@functools.lru_cache(maxsize=256)
def _compile(pattern: str) -> Optional[re.Pattern]:
    try:
        return re.compile(pattern)
    except re.error as e:
        logger.warning(f"Invalid ignore regex {pattern!r}: {e}")
        return None


def rule_matches(kind: IgnoreKind, value: str, tag: str) -> bool:
    """
    Evaluate one matcher against a tag.

    Examples:
        >>> rule_matches(IgnoreKind.PREFIX, "5.4", "5.4.1")
        True
        >>> rule_matches(IgnoreKind.SEMVER, ">=6", "5.9")
        False
    """
    kind = IgnoreKind(kind)

    if kind == IgnoreKind.EXACT:
        return tag == value
    if kind == IgnoreKind.PREFIX:
        return tag.startswith(value)
    if kind == IgnoreKind.REGEX:
        pattern = _compile(value)
        return bool(pattern and pattern.search(tag))

    version = parse_version(tag)
    if version is None:
        return False
    try:
        comparators = parse_requirement(value)
    except ValueError as e:
        logger.warning(f"Invalid ignore version requirement {value!r}: {e}")
        return False
    return requirement_matches(comparators, version)


class IgnoreRuleMatcher:
    """
    The enabled rules scoped to one service.

    Usage:
        matcher = IgnoreRuleMatcher(rules)
        if matcher.is_ignored("5.4"): ...
        rule = matcher.first_match("5.4")
    """

    def __init__(self, rules: Iterable[IgnoreRule] = ()):
        self.rules = [r for r in rules if r.enabled]

    def first_match(self, tag: str) -> Optional[IgnoreRule]:
        for rule in self.rules:
            if rule_matches(rule.kind, rule.value, tag):
                return rule
        return None

    def is_ignored(self, tag: str) -> bool:
        return self.first_match(tag) is not None

    def __len__(self) -> int:
        return len(self.rules)
