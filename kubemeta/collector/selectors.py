"""Compile watch filters into Kubernetes label and field selector strings."""

from __future__ import annotations

import re

from kubemeta.models.config import FieldFilter, FilterOperator, Filters

# Field path used to scope the pod watch to a single node.
POD_NODE_FIELD = "spec.nodeName"

_RE_QUALIFIED_NAME = re.compile(
    r"^(?:[a-z0-9](?:[-a-z0-9]*[a-z0-9])?(?:\.[a-z0-9](?:[-a-z0-9]*[a-z0-9])?)*/)?"
    r"[A-Za-z0-9](?:[-A-Za-z0-9_.]*[A-Za-z0-9])?$"
)
_RE_LABEL_VALUE = re.compile(r"^(?:(?:[A-Za-z0-9][-A-Za-z0-9_.]*)?[A-Za-z0-9])?$")
_MAX_LABEL_VALUE_LENGTH = 63

_SINGLE_VALUE_OPERATORS = {FilterOperator.EQUALS, FilterOperator.DOUBLE_EQUALS, FilterOperator.NOT_EQUALS}


def _label_requirement(f: FieldFilter) -> str:
    if f.op in (FilterOperator.IN, FilterOperator.NOT_IN):
        raise ValueError(f"label filters don't support operator: '{f.op.value}'")
    if not _RE_QUALIFIED_NAME.match(f.key):
        raise ValueError(f"invalid label key: '{f.key}'")
    if f.op in _SINGLE_VALUE_OPERATORS:
        if len(f.value) > _MAX_LABEL_VALUE_LENGTH or not _RE_LABEL_VALUE.match(f.value):
            raise ValueError(f"invalid label value: '{f.value}'")
        return f"{f.key}{f.op.value}{f.value}"
    if f.op == FilterOperator.EXISTS:
        return f.key
    return f"!{f.key}"


def _field_requirement(f: FieldFilter) -> str:
    if f.op == FilterOperator.EQUALS:
        return f"{f.key}={f.value}"
    if f.op == FilterOperator.NOT_EQUALS:
        return f"{f.key}!={f.value}"
    raise ValueError(f"field filters don't support operator: '{f.op.value}'")


def selectors_from_filters(filters: Filters) -> tuple[str, str]:
    """Return ``(label_selector, field_selector)`` for the pod watch.

    Raises:
        ValueError: a filter uses an operator the selector kind cannot express,
            or a label key/value is malformed.
    """
    label_selector = ",".join(_label_requirement(f) for f in filters.labels)
    field_terms = [_field_requirement(f) for f in filters.fields]
    if filters.node:
        field_terms.append(f"{POD_NODE_FIELD}={filters.node}")
    return label_selector, ",".join(field_terms)
