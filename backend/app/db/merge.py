"""Declarative merge rules for the order ledger upsert.

A ``MergePolicy`` maps each ledger column to a ``Rule``. The same policy is
evaluated two ways:

- ``apply()`` merges plain dicts in Python, so the rules can be tested
  without a database;
- ``update_clause()`` renders the ``SET`` clause of an
  ``INSERT ... ON CONFLICT (session_id) DO UPDATE`` statement, so the merge
  happens atomically inside the storage engine.

Both read the *existing* row's status when deciding sticky-paid rules, which
matches SQL semantics where every SET expression sees the pre-update row.
"""
import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from sqlalchemy import case, func

PAID = "paid"


class Rule(enum.Enum):
    INSERT_ONLY = "insert_only"        # written when the row is created, never merged
    REPLACE = "replace"                # incoming value wins
    FIRST_NON_NULL = "first_non_null"  # existing value wins unless it is NULL
    NON_EMPTY = "non_empty"            # incoming value wins only when non-empty
    STICKY_PAID = "sticky_paid"        # existing value kept once the row is paid


@dataclass(frozen=True)
class MergePolicy:
    name: str
    rules: Mapping[str, Rule] = field(default_factory=dict)
    default: Rule = Rule.REPLACE

    def rule_for(self, column: str) -> Rule:
        return self.rules.get(column, self.default)

    def prepare(self, patch: Mapping[str, Any]) -> Dict[str, Any]:
        """Normalise a patch: empty values under NON_EMPTY become None (never stored empty)"""
        prepared = {}
        for column, value in patch.items():
            if self.rule_for(column) is Rule.NON_EMPTY and not value:
                value = None
            prepared[column] = value
        return prepared

    def apply(self, existing: Optional[Mapping[str, Any]], patch: Mapping[str, Any]) -> Dict[str, Any]:
        """Pure-Python evaluation of the merge; ``existing`` is None when the row is absent"""
        prepared = self.prepare(patch)
        if existing is None:
            return dict(prepared)

        merged = dict(existing)
        is_paid = existing.get("status") == PAID
        for column, value in prepared.items():
            rule = self.rule_for(column)
            current = existing.get(column)
            if rule is Rule.INSERT_ONLY:
                continue
            if rule is Rule.REPLACE:
                merged[column] = value
            elif rule is Rule.FIRST_NON_NULL:
                merged[column] = current if current is not None else value
            elif rule is Rule.NON_EMPTY:
                if value:
                    merged[column] = value
            elif rule is Rule.STICKY_PAID:
                merged[column] = current if is_paid else value
        return merged

    def update_clause(self, table, excluded, patch: Mapping[str, Any]) -> Dict[str, Any]:
        """Build the ``set_`` mapping for ``on_conflict_do_update``"""
        prepared = self.prepare(patch)
        is_paid = table.c.status == PAID
        clause: Dict[str, Any] = {}
        for column, value in prepared.items():
            rule = self.rule_for(column)
            existing_col = table.c[column]
            incoming = excluded[column]
            if rule is Rule.INSERT_ONLY:
                continue
            if rule is Rule.REPLACE:
                clause[column] = incoming
            elif rule is Rule.FIRST_NON_NULL:
                clause[column] = func.coalesce(existing_col, incoming)
            elif rule is Rule.NON_EMPTY:
                if value:
                    clause[column] = incoming
            elif rule is Rule.STICKY_PAID:
                clause[column] = case((is_paid, existing_col), else_=incoming)

        # onupdate defaults are not applied to ON CONFLICT updates
        if "updated_at" in table.c:
            clause["updated_at"] = datetime.now(timezone.utc)
        return clause
