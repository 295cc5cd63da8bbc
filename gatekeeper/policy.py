"""
Request payload parsing and statement gating.

Gating looks only at the statement text, trimmed and lower-cased. It is a
surface keyword check, not a SQL parser: values are kept out of the text by
parameter binding, and anything cleverer than a leading verb or a listed
keyword goes straight through.

Rules, first failure wins:
  1. no ";" anywhere (one statement per request)
  2. must start with an allowed verb
  3. must not start with, or contain, a denied keyword
     ("word" mode matches whole words, "substring" mode any fragment, so
     a column like truncated_at is rejected in substring mode)
"""
import re
from dataclasses import dataclass
from typing import Optional

from gatekeeper.errors import ClientInputError, ErrorKind

STATEMENT_KEYS = ("statement", "query", "sql")
PARAMETER_KEYS = ("parameters", "params")
BINDING_KEYS = ("targetBinding", "binding")


@dataclass(frozen=True)
class QueryPayload:
    statement: str
    parameters: tuple = ()
    target_binding: Optional[str] = None


@dataclass(frozen=True)
class GateDecision:
    allowed: bool
    rule: Optional[str] = None
    reason: Optional[str] = None
    keyword: Optional[str] = None

    @property
    def kind(self) -> Optional[ErrorKind]:
        return None if self.allowed else ErrorKind.POLICY_VIOLATION

    @property
    def status(self) -> int:
        return 200 if self.allowed else self.kind.status


ALLOW = GateDecision(allowed=True)


def _first(data: dict, keys):
    for key in keys:
        if key in data:
            return data[key]
    return None


def parse_payload(data) -> QueryPayload:
    """Build a QueryPayload from the decoded JSON body."""
    if not isinstance(data, dict):
        raise ClientInputError("Invalid request: body must be a JSON object.")

    statement = _first(data, STATEMENT_KEYS)
    if not isinstance(statement, str) or not statement.strip():
        raise ClientInputError('Invalid request: "statement" property must be a non-empty string.')

    parameters = _first(data, PARAMETER_KEYS)
    if parameters is None:
        parameters = []
    if not isinstance(parameters, list):
        raise ClientInputError('Invalid request: "parameters" property must be an array.')

    target = _first(data, BINDING_KEYS)
    if target is not None and (not isinstance(target, str) or not target):
        raise ClientInputError('Invalid request: "targetBinding" property must be a non-empty string.')

    return QueryPayload(statement=statement, parameters=tuple(parameters), target_binding=target)


def normalize(statement: str) -> str:
    return statement.strip().lower()


def denied_keyword(normalized: str, keywords, mode: str = "word") -> Optional[str]:
    for kw in sorted(keywords):
        if normalized.startswith(kw):
            return kw
        if mode == "substring":
            if kw in normalized:
                return kw
        elif re.search(rf"\b{re.escape(kw)}\b", normalized):
            return kw
    return None


def check_statement(statement: str, config) -> GateDecision:
    s = normalize(statement)

    if ";" in s:
        return GateDecision(
            allowed=False,
            rule="multi_statement",
            reason="Forbidden: Multiple SQL statements are not allowed.",
        )

    if not any(s.startswith(verb) for verb in config.allowed_verbs):
        verbs = sorted(v.upper() for v in config.allowed_verbs)
        listed = verbs[0] if len(verbs) == 1 else ", ".join(verbs[:-1]) + " and " + verbs[-1]
        return GateDecision(
            allowed=False,
            rule="verb",
            reason=f"Forbidden: Operation not allowed. Only {listed} are permitted.",
        )

    keyword = denied_keyword(s, config.denied_keywords, config.deny_match)
    if keyword is not None:
        return GateDecision(
            allowed=False,
            rule="deny_list",
            reason=f"Forbidden: Destructive operation {keyword.upper()} is not allowed.",
            keyword=keyword,
        )

    return ALLOW
