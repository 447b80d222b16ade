"""Per-device automation rules and condition testing."""

from __future__ import annotations

import threading
import uuid
from dataclasses import asdict, dataclass, field, fields
from typing import Any, Mapping

from loguru import logger

from pinlink.gpio.errors import NotFoundError, ValidationError
from pinlink.gpio.expression import ExpressionEvaluator
from pinlink.utils.helpers import iso_now

_IMMUTABLE_FIELDS = frozenset({"id", "created_at", "trigger_count", "last_triggered"})
_FIELD_ALIASES = {
    "createdAt": "created_at",
    "updatedAt": "updated_at",
    "lastTriggered": "last_triggered",
    "triggerCount": "trigger_count",
}


def _new_rule_id() -> str:
    return uuid.uuid4().hex[:12]


@dataclass(slots=True)
class Rule:
    name: str
    condition: str
    action: str
    enabled: bool = True
    id: str = field(default_factory=_new_rule_id)
    created_at: str = field(default_factory=iso_now)
    updated_at: str | None = None
    last_triggered: str | None = None
    trigger_count: int = 0
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        extra = data.pop("extra")
        data.update(extra)
        return data


_RULE_FIELDS = frozenset(f.name for f in fields(Rule)) - {"extra"}


def _require_text(value: Any, label: str) -> str:
    text = str(value or "").strip()
    if not text:
        raise ValidationError(f"{label} is required")
    return text


class RuleStore:
    """Ordered rule list per device; ids are generated and never change."""

    def __init__(self, evaluator: ExpressionEvaluator | None = None) -> None:
        self.evaluator = evaluator or ExpressionEvaluator()
        self._rules: dict[str, list[Rule]] = {}
        self._lock = threading.Lock()

    def _device_rules(self, device_id: str) -> list[Rule]:
        with self._lock:
            return self._rules.setdefault(device_id, [])

    def create(
        self,
        device_id: str,
        *,
        name: str,
        condition: str,
        action: str,
        enabled: bool = True,
    ) -> Rule:
        rule = Rule(
            name=_require_text(name, "name"),
            condition=_require_text(condition, "condition"),
            action=_require_text(action, "action"),
            enabled=bool(enabled),
        )
        rules = self._device_rules(device_id)
        with self._lock:
            while any(r.id == rule.id for r in rules):
                rule.id = _new_rule_id()
            rules.append(rule)
        logger.info(f"GPIO rule created: {rule.name} id={rule.id} device={device_id}")
        return rule

    def get(self, device_id: str, rule_id: str) -> Rule:
        rules = self._device_rules(device_id)
        with self._lock:
            for rule in rules:
                if rule.id == rule_id:
                    return rule
        raise NotFoundError("Rule not found", rule_id=rule_id)

    def list(self, device_id: str) -> list[Rule]:
        rules = self._device_rules(device_id)
        with self._lock:
            return list(rules)

    def update(self, device_id: str, rule_id: str, updates: Mapping[str, Any]) -> Rule:
        """Shallow-merge `updates` over the rule; id and counters are kept.

        Every field is checked before any is applied, so a rejected update
        leaves the rule untouched.
        """
        changes: dict[str, Any] = {}
        extra: dict[str, Any] = {}
        for raw_key, value in updates.items():
            key = _FIELD_ALIASES.get(str(raw_key), str(raw_key))
            if key in _IMMUTABLE_FIELDS or key in {"device_id", "deviceId"}:
                continue
            if key in {"name", "condition", "action"}:
                changes[key] = _require_text(value, key)
            elif key == "enabled":
                if not isinstance(value, bool):
                    raise ValidationError("enabled must be a boolean")
                changes[key] = value
            elif key in _RULE_FIELDS:
                changes[key] = value
            else:
                extra[key] = value

        rules = self._device_rules(device_id)
        with self._lock:
            rule = next((r for r in rules if r.id == rule_id), None)
            if rule is None:
                raise NotFoundError("Rule not found", rule_id=rule_id)
            for key, value in changes.items():
                setattr(rule, key, value)
            rule.extra.update(extra)
            rule.updated_at = iso_now()
        logger.info(f"GPIO rule updated: {rule.name} id={rule.id}")
        return rule

    def delete(self, device_id: str, rule_id: str) -> Rule:
        rules = self._device_rules(device_id)
        with self._lock:
            for index, rule in enumerate(rules):
                if rule.id == rule_id:
                    del rules[index]
                    break
            else:
                raise NotFoundError("Rule not found", rule_id=rule_id)
        logger.info(f"GPIO rule deleted: {rule.name} id={rule_id}")
        return rule

    def record_trigger(self, device_id: str, rule_id: str) -> Rule:
        """Bump trigger bookkeeping; for an external trigger loop."""
        rules = self._device_rules(device_id)
        with self._lock:
            rule = next((r for r in rules if r.id == rule_id), None)
            if rule is None:
                raise NotFoundError("Rule not found", rule_id=rule_id)
            rule.trigger_count += 1
            rule.last_triggered = iso_now()
        return rule

    def test(self, condition: str, values: Mapping[str, Any] | None = None) -> bool:
        """Evaluate a condition against `values` without storing anything."""
        return self.evaluator.evaluate(condition, values or {})

    def matching(self, device_id: str, values: Mapping[str, Any]) -> list[Rule]:
        """Enabled rules whose condition holds for `values`."""
        return [rule for rule in self.list(device_id) if rule.enabled and self.test(rule.condition, values)]
