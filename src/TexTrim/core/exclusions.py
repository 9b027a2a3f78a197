"""Per-game exclusion rules.

Rule files are plain text, one pattern per line. ``#`` starts a comment
line. A pattern without ``/`` is matched against the file name; a pattern
with ``/`` is matched segment by segment from the start of the logical
path, so a directory pattern covers everything below it. Each segment may
contain at most one ``*`` wildcard.
"""

import fnmatch
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

from .. import EXCLUSIONS_DIR
from ..config import SUPPORTED_GAMES
from ..errors import ConfigError
from .paths import normalize_logical_path
from .records import ExclusionRule

logger = logging.getLogger("texture_optimizer.exclusions")


def _segment_matches(pattern: str, value: str) -> bool:
    if "*" not in pattern:
        return pattern == value
    # Only "*" is a wildcard; "?" and "[" match themselves.
    escaped = pattern.replace("[", "[[]").replace("?", "[?]")
    return fnmatch.fnmatchcase(value, escaped)


def _split_pattern(raw: str) -> Tuple[str, ...]:
    cleaned = raw.strip().replace("\\", "/").lower().strip("/")
    return tuple(s for s in cleaned.split("/") if s not in ("", "."))


def rule_matches(rule: ExclusionRule, logical_path: str) -> bool:
    """True when ``rule`` covers an already normalized logical path."""
    pattern = _split_pattern(rule.pattern)
    parts = logical_path.split("/")
    if len(pattern) == 1:
        return _segment_matches(pattern[0], parts[-1])
    if len(parts) < len(pattern):
        return False
    return all(_segment_matches(p, v) for p, v in zip(pattern, parts))


@dataclass(frozen=True)
class ExclusionMatcher:
    """Ordered exclusion rules of one game."""

    game: str
    rules: Tuple[ExclusionRule, ...] = ()

    def __len__(self) -> int:
        return len(self.rules)

    @property
    def patterns(self) -> List[str]:
        return [r.pattern for r in self.rules]

    def match_rule(self, logical_path: str) -> Optional[ExclusionRule]:
        """Return the first rule excluding ``logical_path``, or None."""
        try:
            path = normalize_logical_path(logical_path)
        except ValueError:
            return None
        for rule in self.rules:
            if rule_matches(rule, path):
                return rule
        return None

    def matches(self, logical_path: str) -> bool:
        return self.match_rule(logical_path) is not None


def parse_rules(lines: Iterable[str], game: str, source: str = "<memory>") -> List[ExclusionRule]:
    """Parse pattern lines, keeping order and dropping duplicates.

    Raises:
        ConfigError: a segment uses more than one wildcard.
    """
    rules: List[ExclusionRule] = []
    seen = set()
    for lineno, line in enumerate(lines, 1):
        text = line.strip()
        if not text or text.startswith("#"):
            continue
        segments = _split_pattern(text)
        if not segments:
            continue
        if any(seg.count("*") > 1 for seg in segments):
            raise ConfigError(
                f"{source}:{lineno}: pattern '{text}' uses more than one wildcard in a segment"
            )
        key = "/".join(segments)
        if key in seen:
            continue
        seen.add(key)
        rules.append(ExclusionRule(pattern=key, game=game))
    return rules


def rules_path(game_id: str, rules_dir: Optional[str] = None) -> Optional[str]:
    """Locate ``<game_id>.txt`` in ``rules_dir`` or the bundled rules."""
    for directory in (rules_dir, str(EXCLUSIONS_DIR)):
        if not directory:
            continue
        candidate = os.path.join(directory, f"{game_id}.txt")
        if os.path.isfile(candidate):
            return candidate
    return None


def load(game_id: str, rules_dir: Optional[str] = None,
         extra_patterns: Iterable[str] = ()) -> ExclusionMatcher:
    """Load the exclusion rules of ``game_id``.

    ``extra_patterns`` are appended after the file's own rules.

    Raises:
        ConfigError: unknown game, unreadable rule file or bad pattern.
    """
    game = (game_id or "").strip().lower()
    path = rules_path(game, rules_dir) if game else None
    if path is None:
        if game not in SUPPORTED_GAMES:
            raise ConfigError(
                f"Unknown game '{game_id}'; expected one of {list(SUPPORTED_GAMES)}"
            )
        raise ConfigError(f"No exclusion rule file found for game '{game}'")

    try:
        text = Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"Failed to read exclusion rules '{path}': {exc}") from exc

    rules = parse_rules(text.splitlines(), game, path)
    extra = parse_rules(extra_patterns, game, "extra_patterns")
    known = {r.pattern for r in rules}
    rules.extend(r for r in extra if r.pattern not in known)
    logger.debug("Loaded %d exclusion rule(s) for %s from %s", len(rules), game, path)
    return ExclusionMatcher(game=game, rules=tuple(rules))
