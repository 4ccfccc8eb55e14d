"""Interpolation of variables, count indexes and cross-resource references.

Three expression forms may appear inside declared attribute values:

* ``${var.name}``            substituted from ``variables`` when the file is loaded
* ``${count.index}``         substituted while expanding ``count``
* ``${kind.name.output}``    reference to another resource's output, resolved at
                             apply time (``kind.name[2].output`` for counted ones)

An expression that makes up an entire string is replaced by the raw value, so
``"${var.replicas}"`` can yield an int. Expressions embedded in a longer string
are interpolated with ``str()``.
"""

import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional, Set

RESERVED_KINDS = frozenset({'var', 'count', 'self'})

VARIABLE_PATTERN = re.compile(r"\$\{var\.([A-Za-z_][A-Za-z0-9_]*)\}")
COUNT_PATTERN = re.compile(r"\$\{count\.index\}")
REFERENCE_PATTERN = re.compile(
    r"\$\{([a-z][a-z0-9_]*)\.([A-Za-z0-9_\-]+(?:\[\d+\])?)\.([A-Za-z0-9_]+)\}"
)


@dataclass(frozen=True, order=True)
class Reference:
    """A pointer at one output of another resource."""

    address: str
    output: str

    def __str__(self) -> str:
        return f"${{{self.address}.{self.output}}}"


class UnresolvedReference(KeyError):
    """Raised when a referenced output is not available."""

    def __init__(self, reference: Reference):
        super().__init__(str(reference))
        self.reference = reference


def _walk(value: Any, transform: Callable[[str], Any]) -> Any:
    if isinstance(value, str):
        return transform(value)
    if isinstance(value, Mapping):
        return {k: _walk(v, transform) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_walk(v, transform) for v in value]
    return value


def _substitute(text: str, pattern: re.Pattern, lookup: Callable[[re.Match], Any]) -> Any:
    whole = pattern.fullmatch(text)
    if whole:
        return lookup(whole)
    return pattern.sub(lambda m: str(lookup(m)), text)


def _iter_strings(value: Any):
    if isinstance(value, str):
        yield value
    elif isinstance(value, Mapping):
        for v in value.values():
            yield from _iter_strings(v)
    elif isinstance(value, (list, tuple)):
        for v in value:
            yield from _iter_strings(v)


def find_references(value: Any) -> Set[Reference]:
    """Collect every cross-resource reference in a (nested) value."""
    found = set()
    for text in _iter_strings(value):
        for match in REFERENCE_PATTERN.finditer(text):
            kind, name, output = match.groups()
            if kind in RESERVED_KINDS:
                continue
            found.add(Reference(address=f"{kind}.{name}", output=output))
    return found


def substitute_variables(
    value: Any,
    variables: Mapping[str, Any],
    count_index: Optional[int] = None
) -> Any:
    """Replace ``${var.x}`` and ``${count.index}`` in a (nested) value.

    Raises:
        KeyError: If a variable is not defined
        ValueError: If ``${count.index}`` is used outside a counted resource
    """
    def lookup_variable(match: re.Match) -> Any:
        name = match.group(1)
        if name not in variables:
            raise KeyError(f"Undefined variable: {name}")
        return variables[name]

    def lookup_count(match: re.Match) -> Any:
        if count_index is None:
            raise ValueError("${count.index} used on a resource without count")
        return count_index

    def transform(text: str) -> Any:
        result = _substitute(text, VARIABLE_PATTERN, lookup_variable)
        if isinstance(result, str):
            result = _substitute(result, COUNT_PATTERN, lookup_count)
        return result

    return _walk(value, transform)


def resolve_references(value: Any, outputs: Callable[[str], Optional[Dict[str, Any]]]) -> Any:
    """Replace cross-resource references with concrete output values.

    Args:
        value: Declared attribute value (possibly nested)
        outputs: Returns the outputs mapping of an address, or None if the
            resource has not been applied

    Raises:
        UnresolvedReference: If an address or output is unavailable
    """
    def lookup(match: re.Match) -> Any:
        kind, name, output = match.groups()
        if kind in RESERVED_KINDS:
            return match.group(0)
        reference = Reference(address=f"{kind}.{name}", output=output)
        produced = outputs(reference.address)
        if produced is None or output not in produced:
            raise UnresolvedReference(reference)
        return produced[output]

    return _walk(value, lambda text: _substitute(text, REFERENCE_PATTERN, lookup))
