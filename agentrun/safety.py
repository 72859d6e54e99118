"""
Safety Gate - decides whether a proposed action may run.

WHAT THIS FILE DOES:
-------------------
`check(action, rules)` evaluates an action description against an ordered
rule list and returns a SafetyCheckResult. It is a pure function: no I/O, no
state, same answer for the same inputs.

EVALUATION ORDER:
----------------
    1. The FIRST matching deny rule wins outright     -> allowed=False
    2. Otherwise the FIRST matching confirm rule wins -> requires_confirmation
    3. Otherwise the action is allowed (risk "low"); a matching allow rule is
       reported as the matched rule but never overrides a deny or confirm.

PATTERNS:
--------
Matching is case-insensitive.
    "re:<regex>"        regex search anywhere in the description
    "git * --force*"    glob (any of * ? [) matched against the whole description
    "force push"        every term must appear somewhere ("git push --force" matches)
"""

import fnmatch
import re
from typing import Iterable, Optional

from .schemas import RiskLevel, RuleType, SafetyCheckResult, SafetyRule

REGEX_PREFIX = "re:"
GLOB_CHARS = ("*", "?", "[")

# Nested quantifiers that can backtrack catastrophically
_REDOS_PATTERNS = [
    re.compile(r"\(\.\*\)[+*]"),
    re.compile(r"\(\.\+\)[+*]"),
    re.compile(r"\(\[[^\]]*\][+*]\)[+*]"),
]


# =============================================================================
# DEFAULT RULES
# =============================================================================

def _rule(id: str, type: str, pattern: str, description: str, category: str) -> SafetyRule:
    return SafetyRule(id=id, type=type, pattern=pattern, description=description, category=category)


DEFAULT_RULES: tuple[SafetyRule, ...] = (
    # File operations
    _rule("deny-system-files", "deny", "*/etc/*", "System configuration files are off-limits", "file"),
    _rule("deny-env-files", "deny", "*.env*", "Environment files require manual editing", "file"),
    _rule("deny-ssh-keys", "deny", "*/.ssh/*", "SSH keys are off-limits", "file"),
    _rule("deny-git-internal", "deny", "*/.git/*", "Git internal files should not be modified directly", "file"),
    _rule("confirm-delete", "confirm", "delete:*", "File deletion requires confirmation", "file"),
    _rule("confirm-config-edit", "confirm", "edit:*config.*", "Configuration file changes require confirmation", "file"),
    # Terminal operations
    _rule("deny-sudo", "deny", "sudo *", "Sudo commands are not allowed", "terminal"),
    _rule("deny-rm-rf-root", "deny", "re:rm\\s+-rf\\s+/(\\s|$)", "Deleting root is absolutely forbidden", "terminal"),
    _rule("deny-chmod-777", "deny", "chmod 777 *", "World-writable permissions are not allowed", "terminal"),
    _rule("deny-curl-pipe-bash", "deny", "re:(curl|wget)\\s.*\\|\\s*(ba)?sh", "Piping downloads to a shell is not allowed", "terminal"),
    _rule("confirm-rm-rf", "confirm", "rm -rf *", "Recursive force delete requires confirmation", "terminal"),
    _rule("confirm-npm-install", "confirm", "npm install *", "Package installation requires confirmation", "terminal"),
    _rule("confirm-pip-install", "confirm", "pip install *", "Package installation requires confirmation", "terminal"),
    _rule("confirm-git-push", "confirm", "git push*", "Git push requires confirmation", "terminal"),
    # Network operations
    _rule("deny-localhost-admin", "deny", "fetch:*localhost*/admin*", "Admin endpoints are off-limits", "network"),
    _rule("confirm-external-fetch", "confirm", "fetch:http*", "External API calls require confirmation", "network"),
    # System operations
    _rule("deny-shutdown", "deny", "shutdown*", "System shutdown is not allowed", "system"),
    _rule("deny-reboot", "deny", "reboot*", "System reboot is not allowed", "system"),
    _rule("deny-killall", "deny", "killall *", "Killing all processes is not allowed", "system"),
)


def default_rules() -> list[SafetyRule]:
    """Get a copy of the built-in rule set."""
    return [rule.model_copy() for rule in DEFAULT_RULES]


def effective_rules(rules: Iterable[SafetyRule], include_defaults: bool = True) -> list[SafetyRule]:
    """Agent rules first, then (optionally) the built-in ones."""
    combined = list(rules)
    if include_defaults:
        combined.extend(DEFAULT_RULES)
    return combined


# =============================================================================
# PATTERN MATCHING
# =============================================================================

def matches(action: str, pattern: str) -> bool:
    """Case-insensitive match of one pattern against an action description."""
    if pattern.startswith(REGEX_PREFIX):
        try:
            return re.search(pattern[len(REGEX_PREFIX):], action, re.IGNORECASE) is not None
        except re.error:
            return False

    action_lower = action.lower()
    pattern_lower = pattern.lower()

    if any(ch in pattern_lower for ch in GLOB_CHARS):
        return fnmatch.fnmatchcase(action_lower, pattern_lower)

    terms = pattern_lower.split()
    return bool(terms) and all(term in action_lower for term in terms)


def _risk_level(action: str, rule: SafetyRule) -> RiskLevel:
    if rule.type == RuleType.DENY:
        return RiskLevel.HIGH
    if rule.type == RuleType.CONFIRM:
        lowered = action.lower()
        if "--force" in lowered or "rm -rf" in lowered:
            return RiskLevel.HIGH
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


# =============================================================================
# PUBLIC API
# =============================================================================

def check(action: str, rules: Iterable[SafetyRule]) -> SafetyCheckResult:
    """
    Evaluate an action description against an ordered rule list.

    Args:
        action: Description of the proposed action
        rules: Rules in priority order

    Returns:
        SafetyCheckResult (deny beats confirm beats allow)
    """
    first_confirm: Optional[SafetyRule] = None
    first_allow: Optional[SafetyRule] = None

    for rule in rules:
        if not matches(action, rule.pattern):
            continue
        if rule.type == RuleType.DENY:
            return SafetyCheckResult(
                allowed=False,
                requires_confirmation=False,
                reason=rule.description or f"Blocked by rule '{rule.pattern}'",
                risk_level=_risk_level(action, rule),
                matched_rule=rule,
            )
        if rule.type == RuleType.CONFIRM and first_confirm is None:
            first_confirm = rule
        elif rule.type == RuleType.ALLOW and first_allow is None:
            first_allow = rule

    if first_confirm is not None:
        return SafetyCheckResult(
            allowed=True,
            requires_confirmation=True,
            reason=first_confirm.description or f"Rule '{first_confirm.pattern}' requires confirmation",
            risk_level=_risk_level(action, first_confirm),
            matched_rule=first_confirm,
        )

    return SafetyCheckResult(
        allowed=True,
        requires_confirmation=False,
        reason=first_allow.description if first_allow else None,
        risk_level=RiskLevel.LOW,
        matched_rule=first_allow,
    )


def check_many(actions: Iterable[str], rules: Iterable[SafetyRule]) -> dict[str, SafetyCheckResult]:
    """Check several actions against the same rules."""
    rule_list = list(rules)
    return {action: check(action, rule_list) for action in actions}


def validate_pattern(pattern: str) -> tuple[bool, Optional[str]]:
    """
    Validate a rule pattern before it is saved.

    Returns:
        (is_valid, error_message) - error_message is None if valid
    """
    if not pattern.strip():
        return False, "Pattern cannot be empty"

    if pattern.startswith(REGEX_PREFIX):
        expression = pattern[len(REGEX_PREFIX):]
        for dangerous in _REDOS_PATTERNS:
            if dangerous.search(expression):
                return False, "Pattern contains potentially dangerous regex constructs"
        try:
            re.compile(expression)
        except re.error as e:
            return False, f"Invalid pattern: {e}"

    return True, None


def format_check_result(result: SafetyCheckResult) -> str:
    """One-line summary for terminals and logs."""
    if not result.allowed:
        return f"BLOCKED: {result.reason or 'Action not allowed'}"
    if result.requires_confirmation:
        return f"CONFIRM: {result.reason or 'Action requires confirmation'}"
    return "ALLOWED"
