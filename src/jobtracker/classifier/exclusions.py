"""Sender exclusion rules applied before any inference budget is spent.

Each exclusion-list entry compiles once per run into a tagged rule:

- EXACT: a full address ("noreply@company.com")
- DOMAIN_SUFFIX: an @-prefixed domain ("@company.com")
- SUBSTRING: anything else ("newsletter")

An entry matches when the sender address equals it, when it is an
@-entry the address ends with, or when the address contains it. Because
containment applies to every entry, the rule kind decides which reason is
reported rather than whether a rule can match. No regex is used, so there
is no ReDoS risk.

Usage:
    from jobtracker.classifier.exclusions import ExclusionFilter

    exclusions = ExclusionFilter.from_entries(["@company.com", "newsletter"])
    if exclusions.is_excluded("Jane Doe <noreply@company.com>"):
        ...
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Literal

from jobtracker.core.logging import get_logger

logger = get_logger(__name__)

RuleKind = Literal["exact", "domain_suffix", "substring"]


def extract_address(from_header: str) -> str:
    """Lowercased sender address from a ``From`` header value.

    ``"Jane Doe <Jane@Example.com>"`` becomes ``"jane@example.com"``; a value
    without angle brackets is returned lowercased and trimmed as a whole.
    """
    normalized = from_header.lower().strip()
    start = normalized.find("<")
    if start != -1:
        end = normalized.rfind(">")
        if end > start + 1:
            return normalized[start + 1 : end]
    return normalized


@dataclass(frozen=True, slots=True)
class ExclusionRule:
    """One compiled exclusion-list entry.

    Attributes:
        pattern: Lowercased, trimmed entry text
        kind: How the entry was written (decides the reported reason)
    """

    pattern: str
    kind: RuleKind

    @classmethod
    def compile(cls, entry: str) -> ExclusionRule | None:
        """Compile a raw entry; blank entries yield None."""
        pattern = entry.lower().strip()
        if not pattern:
            return None
        if pattern.startswith("@"):
            return cls(pattern=pattern, kind="domain_suffix")
        if "@" in pattern:
            return cls(pattern=pattern, kind="exact")
        return cls(pattern=pattern, kind="substring")

    def match(self, address: str) -> str | None:
        """Return a match reason if ``address`` is excluded by this rule."""
        if self.kind == "exact" and address == self.pattern:
            return f"sender is {self.pattern}"
        if self.kind == "domain_suffix" and address.endswith(self.pattern):
            return f"sender domain is {self.pattern}"
        if self.pattern in address:
            return f"sender contains '{self.pattern}'"
        return None


@dataclass(frozen=True, slots=True)
class ExclusionMatch:
    """Result of an exclusion match.

    Attributes:
        rule: The rule that matched
        address: The extracted sender address
        match_reason: Human-readable explanation of why the rule matched
    """

    rule: ExclusionRule
    address: str
    match_reason: str


def compile_exclusions(entries: Iterable[str] | None) -> list[ExclusionRule]:
    """Compile an exclusion list, dropping blank and duplicate entries."""
    rules: list[ExclusionRule] = []
    seen: set[str] = set()
    for entry in entries or []:
        rule = ExclusionRule.compile(entry)
        if rule is not None and rule.pattern not in seen:
            seen.add(rule.pattern)
            rules.append(rule)
    return rules


class ExclusionFilter:
    """Decides per message whether it must be dropped before inference.

    Rules are evaluated in order; the first match wins.
    """

    def __init__(self, rules: list[ExclusionRule]):
        self.rules = rules

    @classmethod
    def from_entries(cls, entries: Iterable[str] | None) -> ExclusionFilter:
        """Build a filter straight from a user's exclusion list."""
        return cls(compile_exclusions(entries))

    def match(self, from_header: str) -> ExclusionMatch | None:
        """Check a ``From`` header value against every rule.

        Args:
            from_header: Raw ``From`` header value

        Returns:
            ExclusionMatch if a rule matched, None otherwise
        """
        if not self.rules:
            return None

        address = extract_address(from_header)
        for rule in self.rules:
            reason = rule.match(address)
            if reason:
                return ExclusionMatch(rule=rule, address=address, match_reason=reason)
        return None

    def is_excluded(self, from_header: str) -> bool:
        """True if any rule excludes this sender."""
        return self.match(from_header) is not None


def is_excluded(from_header: str, exclusion_list: Iterable[str] | None) -> bool:
    """Convenience function: compile ``exclusion_list`` and test one sender.

    Prefer ExclusionFilter when checking many messages against one list.
    """
    return ExclusionFilter.from_entries(exclusion_list).is_excluded(from_header)
