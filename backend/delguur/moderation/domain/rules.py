"""Violation rule table: what happens to a listing for each violation type."""

from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping, Optional

from delguur.moderation.domain.models import (
    ModerationAction,
    RefundPolicy,
    ViolationSeverity,
    ViolationType,
)


@dataclass(frozen=True, slots=True)
class ViolationRule:
    type: ViolationType
    severity: ViolationSeverity
    action: ModerationAction
    refund_policy: RefundPolicy
    appeal_allowed: bool
    description: str
    refund_percent: Optional[int] = None


def _rule(
    type_: ViolationType,
    severity: ViolationSeverity,
    action: ModerationAction,
    appeal_allowed: bool,
    description: str,
) -> ViolationRule:
    return ViolationRule(
        type=type_,
        severity=severity,
        action=action,
        refund_policy=RefundPolicy.NONE,
        appeal_allowed=appeal_allowed,
        description=description,
    )


_CRITICAL = ViolationSeverity.CRITICAL
_MAJOR = ViolationSeverity.MAJOR
_MINOR = ViolationSeverity.MINOR

VIOLATION_RULES: Mapping[ViolationType, ViolationRule] = MappingProxyType(
    {
        rule.type: rule
        for rule in (
            _rule(ViolationType.FOREIGN_PRODUCT, _CRITICAL, ModerationAction.DELETE, True,
                  "Foreign manufactured products are not allowed"),
            _rule(ViolationType.COUNTERFEIT, _CRITICAL, ModerationAction.DELETE, False,
                  "Counterfeit or fake products are strictly prohibited"),
            _rule(ViolationType.ILLEGAL_CONTENT, _CRITICAL, ModerationAction.DELETE, False,
                  "Illegal content is strictly prohibited"),
            _rule(ViolationType.SPAM, _MAJOR, ModerationAction.DELETE, True,
                  "Spam content detected"),
            _rule(ViolationType.SCAM, _CRITICAL, ModerationAction.DELETE, False,
                  "Fraudulent or scam listing"),
            _rule(ViolationType.WRONG_CATEGORY, _MINOR, ModerationAction.REQUEST_EDIT, True,
                  "Wrong category selected"),
            _rule(ViolationType.LOW_QUALITY, _MINOR, ModerationAction.REQUEST_EDIT, True,
                  "Image or content quality is too low"),
            _rule(ViolationType.DUPLICATE, _MINOR, ModerationAction.WARN, True,
                  "Duplicate listing detected"),
            _rule(ViolationType.OTHER, _MINOR, ModerationAction.WARN, True,
                  "Other policy violation"),
        )
    }
)

_missing = set(ViolationType) - set(VIOLATION_RULES)
if _missing:  # pragma: no cover - guarded at import
    raise RuntimeError(f"violation rules missing for: {sorted(m.value for m in _missing)}")


def coerce_violation_type(value: ViolationType | str) -> ViolationType:
    """Map free-form input onto a violation type, falling back to `other`."""
    if isinstance(value, ViolationType):
        return value
    try:
        return ViolationType(str(value).strip().lower())
    except ValueError:
        return ViolationType.OTHER


def get_rule(violation_type: ViolationType | str) -> ViolationRule:
    return VIOLATION_RULES[coerce_violation_type(violation_type)]


def list_rules() -> list[ViolationRule]:
    return [VIOLATION_RULES[v] for v in ViolationType]
