"""
Role-permission condition evaluation.

A condition map narrows when a role-permission row applies:
`{"region": "north", "tier": 2}` permits only when the caller's context
carries *every* declared key with an equal value.  Equality only; no
ranges, negation, wildcards or partial matches.
"""

from collections.abc import Mapping
from typing import Any, Union

from household_access.core.errors import MalformedConditionError

Scalar = Union[str, int, float, bool, None]
Conditions = Mapping[str, Scalar]

_SCALAR_TYPES = (str, int, float, bool, type(None))


def _require_conditions(raw: Any) -> Conditions:
    if not isinstance(raw, Mapping):
        raise MalformedConditionError(f"conditions must be a mapping, got {type(raw).__name__}")
    for key, value in raw.items():
        if not isinstance(key, str) or not isinstance(value, _SCALAR_TYPES):
            raise MalformedConditionError(f"condition {key!r} is not a string→scalar pair")
    return raw


def is_unconditioned(raw: Any) -> bool:
    return raw is None or (isinstance(raw, Mapping) and not raw)


def _scalar_equal(expected: Scalar, actual: Any) -> bool:
    # bool is an int subclass; keep True and 1 distinct
    if isinstance(expected, bool) or isinstance(actual, bool):
        return type(expected) is type(actual) and expected == actual
    return expected == actual


def conditions_met(raw: Any, context: Mapping[str, Any] | None) -> bool:
    """
    True when `raw` is empty or every declared key matches `context`.

    Raises MalformedConditionError when the stored map is not a flat
    string→scalar mapping; callers on the permission-check path turn
    that into a denial.
    """
    if is_unconditioned(raw):
        return True
    declared = _require_conditions(raw)
    if not context:
        return False
    for key, expected in declared.items():
        if key not in context or not _scalar_equal(expected, context[key]):
            return False
    return True
